"""
Blob storage for admin uploads (post and story images).

Backends, picked by STORAGE_BACKEND:

- local: files under STORAGE_LOCAL_DIR, served by GET /storage/<key>
- firebase: the app's Cloud Storage bucket (the mobile app reads media from there)
- s3: any S3-compatible bucket through boto3
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

from app.wellness_admin.docstore import DocumentStoreError, firebase_app


class StorageError(RuntimeError):
    pass


class Storage:
    def put_bytes(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError


def upload_metadata(original_name: str | None) -> dict[str, str]:
    meta = {"uploadedAt": datetime.now(timezone.utc).isoformat()}
    if original_name:
        meta["originalName"] = original_name
    return meta


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path
    public_base_url: str = ""

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        if not safe_key or ".." in safe_key.split("/"):
            raise StorageError(f"Invalid storage key: {key}")
        return self.root / safe_key

    def put_bytes(self, key, data, *, content_type=None, metadata=None) -> None:
        p = self._path(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Upload failed for {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        try:
            return self._path(key).open("rb")
        except OSError as e:
            raise StorageError(f"Cannot read {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def public_url(self, key: str) -> str:
        base = self.public_base_url.rstrip("/") or "/storage"
        return f"{base}/{key.lstrip('/')}"


@dataclass(frozen=True)
class FirebaseStorage(Storage):
    bucket_name: str
    project_id: str = ""
    credentials_json: str = ""

    def _bucket(self):
        try:
            from firebase_admin import storage  # type: ignore
        except Exception as e:  # pragma: no cover
            raise StorageError("firebase-admin required for Firebase storage. Install firebase-admin.") from e
        try:
            app = firebase_app(self.project_id, self.credentials_json, storage_bucket=self.bucket_name)
        except DocumentStoreError as e:
            raise StorageError(str(e)) from e
        return storage.bucket(self.bucket_name or None, app=app)

    def put_bytes(self, key, data, *, content_type=None, metadata=None) -> None:
        blob = self._bucket().blob(key)
        if metadata:
            blob.metadata = dict(metadata)
        try:
            blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
            # Media URLs are handed to the mobile app as plain public links.
            blob.make_public()
        except Exception as e:
            raise StorageError(f"Upload failed for {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        import io

        try:
            return io.BytesIO(self._bucket().blob(key).download_as_bytes())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Cannot read {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return bool(self._bucket().blob(key).exists())

    def public_url(self, key: str) -> str:
        return f"https://storage.googleapis.com/{self._bucket().name}/{key}"


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    public_base_url: str = ""

    def _client(self):
        try:
            import boto3  # type: ignore
        except Exception as e:  # pragma: no cover
            raise StorageError("boto3 required for S3 storage. Install boto3.") from e
        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key, data, *, content_type=None, metadata=None) -> None:
        extra: dict[str, object] = {"ACL": "public-read"}
        if content_type:
            extra["ContentType"] = content_type
        if metadata:
            extra["Metadata"] = dict(metadata)
        try:
            self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Upload failed for {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        try:
            obj = self._client().get_object(Bucket=self.bucket, Key=key)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Cannot read {key}: {e}") from e
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError  # type: ignore

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Cannot check {key}: {e}") from e
        return True

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        if self.endpoint:
            return f"https://{self.bucket}.{self.endpoint}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    public_base = (config.get("STORAGE_PUBLIC_BASE_URL") or "").strip()
    if backend == "firebase":
        return FirebaseStorage(
            bucket_name=(config.get("FIREBASE_STORAGE_BUCKET") or "").strip(),
            project_id=(config.get("FIREBASE_PROJECT_ID") or "").strip(),
            credentials_json=(config.get("FIREBASE_CREDENTIALS_JSON") or "").strip(),
        )
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
            public_base_url=public_base,
        )
    # Relative STORAGE_LOCAL_DIR resolves against the working directory.
    root = Path(config.get("STORAGE_LOCAL_DIR") or "storage").resolve()
    return LocalStorage(root=root, public_base_url=public_base)
