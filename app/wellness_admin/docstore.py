"""
Document store used for app end-user, content and engagement data.

Paths follow the collection/document convention: a collection path has an odd
number of segments ("users", "users/<uid>/moods"), a document path an even
number ("users/<uid>"). Two backends:

- SqlDocumentStore: JSON rows in the `documents` table (dev, tests, small installs)
- FirestoreDocumentStore: Cloud Firestore through firebase-admin
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from flask import Flask, current_app
from sqlalchemy import or_
from werkzeug.security import generate_password_hash

from app.wellness_admin.models import AppAccount, StoredDocument, new_id

logger = logging.getLogger(__name__)

WHERE_OPS = ("==", "!=", "<", "<=", ">", ">=", "in", "array-contains")


class DocumentStoreError(RuntimeError):
    pass


class DocumentNotFound(DocumentStoreError):
    pass


class AccountExists(DocumentStoreError):
    pass


@dataclass
class Document:
    id: str
    data: dict[str, Any] = field(default_factory=dict)
    collection: str = ""

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"


def split_path(path: str) -> tuple[str, str]:
    """`users/u1/moods/m1` -> (`users/u1/moods`, `m1`)."""
    parts = [p for p in path.strip("/").split("/") if p]
    if len(parts) < 2 or len(parts) % 2:
        raise DocumentStoreError(f"Not a document path: {path}")
    return "/".join(parts[:-1]), parts[-1]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value: Any) -> datetime | None:
    """Accept datetimes, ISO strings, epoch seconds/millis, or {"seconds": ..} maps."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, dict):
        secs = value.get("seconds", value.get("_seconds"))
        if isinstance(secs, (int, float)):
            return datetime.fromtimestamp(secs, tz=timezone.utc)
        return None
    if isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return None


def _like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def iso(value: Any) -> str | None:
    dt = to_datetime(value)
    return dt.isoformat().replace("+00:00", "Z") if dt else None


class DocumentStore:
    def get(self, path: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        raise NotImplementedError

    def update(self, path: str, fields: dict[str, Any]) -> None:
        """Merge fields into an existing document; DocumentNotFound if absent."""
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError

    def add(self, collection: str, data: dict[str, Any]) -> str:
        raise NotImplementedError

    def query(
        self,
        collection: str,
        *,
        where: Iterable[tuple[str, str, Any]] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        start_after: str | None = None,
    ) -> list[Document]:
        raise NotImplementedError

    def count(self, collection: str, *, where: Iterable[tuple[str, str, Any]] = ()) -> int:
        return len(self.query(collection, where=where))

    def list_ids(self, collection: str) -> list[str]:
        return [d.id for d in self.query(collection)]

    def delete_collection(self, collection: str) -> int:
        """
        Delete every document in the collection, including the sub-collections
        nested under them, and return how many documents were removed.
        """
        raise NotImplementedError

    def delete_where(self, collection: str, where: Iterable[tuple[str, str, Any]]) -> int:
        docs = self.query(collection, where=where)
        for d in docs:
            self.delete(d.path)
        return len(docs)

    def exists(self, path: str) -> bool:
        return self.get(path) is not None

    # ---------- app end-user accounts ----------
    def create_account(self, email: str, password: str, *, display_name: str | None = None) -> str:
        raise NotImplementedError

    def get_account_by_email(self, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def delete_account(self, uid: str) -> bool:
        raise NotImplementedError


# ---------- SQL backend ----------
def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return {"$date": dt.astimezone(timezone.utc).isoformat()}
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {"$date"}:
            return datetime.fromisoformat(value["$date"])
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def _sort_key(value: Any) -> tuple:
    if isinstance(value, bool):
        return (0, float(value))
    if isinstance(value, (int, float)):
        return (0, float(value))
    if isinstance(value, datetime):
        return (1, to_datetime(value).timestamp())  # type: ignore[union-attr]
    if isinstance(value, str):
        return (2, value)
    return (3, json.dumps(value, sort_keys=True, default=str))


def _matches(data: dict[str, Any], fld: str, op: str, expected: Any) -> bool:
    actual = data.get(fld)
    if op == "==":
        return actual == expected
    if op == "!=":
        return actual is not None and actual != expected
    if op == "in":
        return actual in (expected or [])
    if op == "array-contains":
        return isinstance(actual, list) and expected in actual
    if actual is None:
        return False
    try:
        a, b = _sort_key(actual), _sort_key(expected)
    except TypeError:
        return False
    if a[0] != b[0]:
        return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    raise DocumentStoreError(f"Unsupported where operator: {op}")


class SqlDocumentStore(DocumentStore):
    def __init__(self, sessionmaker) -> None:
        self._sessionmaker = sessionmaker

    def _row(self, s, collection: str, doc_id: str) -> StoredDocument | None:
        return (
            s.query(StoredDocument)
            .filter(StoredDocument.collection == collection, StoredDocument.doc_id == doc_id)
            .one_or_none()
        )

    def get(self, path: str) -> dict[str, Any] | None:
        collection, doc_id = split_path(path)
        with self._sessionmaker() as s:
            row = self._row(s, collection, doc_id)
            return _decode(json.loads(row.data_json)) if row else None

    def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        collection, doc_id = split_path(path)
        with self._sessionmaker() as s:
            row = self._row(s, collection, doc_id)
            now = datetime.utcnow()
            if row is None:
                row = StoredDocument(collection=collection, doc_id=doc_id, created_at=now)
                s.add(row)
                current: dict[str, Any] = {}
            else:
                current = json.loads(row.data_json) if merge else {}
            current.update(_encode(dict(data)))
            row.data_json = json.dumps(current, default=str)
            row.updated_at = now
            s.commit()

    def update(self, path: str, fields: dict[str, Any]) -> None:
        collection, doc_id = split_path(path)
        with self._sessionmaker() as s:
            row = self._row(s, collection, doc_id)
            if row is None:
                raise DocumentNotFound(f"No document to update: {path}")
            current = json.loads(row.data_json)
            current.update(_encode(dict(fields)))
            row.data_json = json.dumps(current, default=str)
            row.updated_at = datetime.utcnow()
            s.commit()

    def delete(self, path: str) -> None:
        collection, doc_id = split_path(path)
        with self._sessionmaker() as s:
            s.query(StoredDocument).filter(
                StoredDocument.collection == collection, StoredDocument.doc_id == doc_id
            ).delete(synchronize_session=False)
            s.commit()

    def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = new_id()[:20]
        self.set(f"{collection.strip('/')}/{doc_id}", data)
        return doc_id

    def query(
        self,
        collection: str,
        *,
        where: Iterable[tuple[str, str, Any]] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        start_after: str | None = None,
    ) -> list[Document]:
        collection = collection.strip("/")
        where = list(where)
        for _f, op, _v in where:
            if op not in WHERE_OPS:
                raise DocumentStoreError(f"Unsupported where operator: {op}")
        with self._sessionmaker() as s:
            rows = (
                s.query(StoredDocument)
                .filter(StoredDocument.collection == collection)
                .order_by(StoredDocument.doc_id.asc())
                .all()
            )
            docs = [Document(id=r.doc_id, data=_decode(json.loads(r.data_json)), collection=collection) for r in rows]

        docs = [d for d in docs if all(_matches(d.data, f, op, v) for f, op, v in where)]

        if order_by:
            # Firestore excludes documents missing the order field.
            docs = [d for d in docs if d.data.get(order_by) is not None]
            docs.sort(key=lambda d: _sort_key(d.data[order_by]), reverse=descending)

        if start_after:
            ids = [d.id for d in docs]
            if start_after in ids:
                docs = docs[ids.index(start_after) + 1 :]

        if limit is not None:
            docs = docs[: max(int(limit), 0)]
        return docs

    def delete_collection(self, collection: str) -> int:
        collection = collection.strip("/")
        nested = _like_escape(collection) + "/%"
        with self._sessionmaker() as s:
            n = (
                s.query(StoredDocument)
                .filter(
                    or_(
                        StoredDocument.collection == collection,
                        StoredDocument.collection.like(nested, escape="\\"),
                    )
                )
                .delete(synchronize_session=False)
            )
            s.commit()
            return int(n or 0)

    def create_account(self, email: str, password: str, *, display_name: str | None = None) -> str:
        email = email.strip().lower()
        with self._sessionmaker() as s:
            if s.query(AppAccount).filter(AppAccount.email == email).one_or_none():
                raise AccountExists(f"Account already exists: {email}")
            acct = AppAccount(
                email=email,
                password_hash=generate_password_hash(password),
                display_name=display_name,
                email_verified=False,
            )
            s.add(acct)
            s.commit()
            return acct.uid

    def get_account_by_email(self, email: str) -> dict[str, Any] | None:
        with self._sessionmaker() as s:
            acct = s.query(AppAccount).filter(AppAccount.email == email.strip().lower()).one_or_none()
            if not acct:
                return None
            return {"uid": acct.uid, "email": acct.email, "displayName": acct.display_name}

    def delete_account(self, uid: str) -> bool:
        with self._sessionmaker() as s:
            n = s.query(AppAccount).filter(AppAccount.uid == uid).delete(synchronize_session=False)
            s.commit()
            return bool(n)


# ---------- Firestore backend ----------
def firebase_app(project_id: str = "", credentials_json: str = "", storage_bucket: str = ""):
    """The default firebase-admin app, initialised on first use and shared by Firestore, Storage and FCM."""
    try:
        import firebase_admin  # type: ignore
        from firebase_admin import credentials  # type: ignore
    except Exception as e:  # pragma: no cover
        raise DocumentStoreError("firebase-admin required for Firebase backends. Install firebase-admin.") from e
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass
    cred = credentials.Certificate(json.loads(credentials_json)) if credentials_json else credentials.ApplicationDefault()
    options: dict[str, str] = {}
    if project_id:
        options["projectId"] = project_id
    if storage_bucket:
        options["storageBucket"] = storage_bucket
    return firebase_admin.initialize_app(cred, options or None)


class FirestoreDocumentStore(DocumentStore):
    def __init__(self, project_id: str, credentials_json: str = "") -> None:
        self.project_id = project_id
        self.credentials_json = credentials_json
        self._app = None

    def _firebase(self):
        if self._app is None:
            self._app = firebase_app(self.project_id, self.credentials_json)
        return self._app

    def _db(self):
        from firebase_admin import firestore  # type: ignore

        return firestore.client(self._firebase())

    def get(self, path: str) -> dict[str, Any] | None:
        snap = self._db().document(path).get()
        return snap.to_dict() if snap.exists else None

    def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        self._db().document(path).set(data, merge=merge)

    def update(self, path: str, fields: dict[str, Any]) -> None:
        from google.api_core import exceptions as gexc  # type: ignore

        try:
            self._db().document(path).update(fields)
        except gexc.NotFound as e:
            raise DocumentNotFound(f"No document to update: {path}") from e

    def delete(self, path: str) -> None:
        self._db().document(path).delete()

    def add(self, collection: str, data: dict[str, Any]) -> str:
        _ts, ref = self._db().collection(collection).add(data)
        return ref.id

    def query(
        self,
        collection: str,
        *,
        where: Iterable[tuple[str, str, Any]] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        start_after: str | None = None,
    ) -> list[Document]:
        from firebase_admin import firestore  # type: ignore
        from google.cloud.firestore_v1.base_query import FieldFilter  # type: ignore

        db = self._db()
        coll = db.collection(collection)
        q = coll
        for fld, op, value in where:
            if op not in WHERE_OPS:
                raise DocumentStoreError(f"Unsupported where operator: {op}")
            q = q.where(filter=FieldFilter(fld, op, value))
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            q = q.order_by(order_by, direction=direction)
        if start_after:
            snap = coll.document(start_after).get()
            if snap.exists:
                q = q.start_after(snap)
        if limit is not None:
            q = q.limit(int(limit))
        return [Document(id=d.id, data=d.to_dict() or {}, collection=collection) for d in q.stream()]

    def count(self, collection: str, *, where: Iterable[tuple[str, str, Any]] = ()) -> int:
        from google.cloud.firestore_v1.base_query import FieldFilter  # type: ignore

        q = self._db().collection(collection)
        for fld, op, value in where:
            q = q.where(filter=FieldFilter(fld, op, value))
        result = q.count().get()
        return int(result[0][0].value)

    def list_ids(self, collection: str) -> list[str]:
        return [ref.id for ref in self._db().collection(collection).list_documents()]

    def delete_collection(self, collection: str, batch_size: int = 500) -> int:
        db = self._db()
        return int(db.recursive_delete(db.collection(collection.strip("/")), chunk_size=batch_size) or 0)

    def create_account(self, email: str, password: str, *, display_name: str | None = None) -> str:
        from firebase_admin import auth  # type: ignore

        try:
            rec = auth.create_user(
                email=email,
                password=password,
                display_name=display_name or None,
                email_verified=False,
                app=self._firebase(),
            )
        except auth.EmailAlreadyExistsError as e:
            raise AccountExists(f"Account already exists: {email}") from e
        return rec.uid

    def get_account_by_email(self, email: str) -> dict[str, Any] | None:
        from firebase_admin import auth  # type: ignore

        try:
            rec = auth.get_user_by_email(email, app=self._firebase())
        except auth.UserNotFoundError:
            return None
        return {"uid": rec.uid, "email": rec.email, "displayName": rec.display_name}

    def delete_account(self, uid: str) -> bool:
        from firebase_admin import auth  # type: ignore

        try:
            auth.delete_user(uid, app=self._firebase())
        except auth.UserNotFoundError:
            return False
        return True


def docstore_from_config(app: Flask) -> DocumentStore:
    backend = (app.config.get("DOCSTORE_BACKEND") or "sql").strip().lower()
    if backend == "firestore":
        return FirestoreDocumentStore(
            project_id=(app.config.get("FIREBASE_PROJECT_ID") or "").strip(),
            credentials_json=(app.config.get("FIREBASE_CREDENTIALS_JSON") or "").strip(),
        )
    return SqlDocumentStore(app.extensions["sqlalchemy_sessionmaker"])


def get_docstore() -> DocumentStore:
    store = current_app.extensions.get("docstore")
    if store is None:
        store = docstore_from_config(current_app)
        current_app.extensions["docstore"] = store
    return store
