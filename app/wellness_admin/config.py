import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    providers_database_url: str
    session_ttl_hours: int

    docstore_backend: str
    firebase_project_id: str
    firebase_credentials_json: str

    storage_backend: str
    storage_public_base_url: str
    storage_local_dir: str
    firebase_storage_bucket: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    posthog_host: str
    posthog_project_id: str
    posthog_personal_api_key: str

    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_pass: str
    smtp_from: str
    smtp_secure: bool
    app_url: str
    trusted_proxy_hops: int
    notifications_cron_secret: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    database_url = _getenv("DATABASE_URL", "sqlite:///wellness_admin.db")
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=database_url,
        # Provider directory lives in its own database in production.
        providers_database_url=_getenv("PROVIDERS_DATABASE_URL", database_url),
        session_ttl_hours=_getenv_int("SESSION_TTL_HOURS", 24 * 7),
        docstore_backend=_getenv("DOCSTORE_BACKEND", "sql"),
        firebase_project_id=_getenv("FIREBASE_PROJECT_ID", ""),
        firebase_credentials_json=_getenv("FIREBASE_CREDENTIALS_JSON", ""),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_public_base_url=_getenv("STORAGE_PUBLIC_BASE_URL", ""),
        storage_local_dir=_getenv("STORAGE_LOCAL_DIR", "storage"),
        firebase_storage_bucket=_getenv("FIREBASE_STORAGE_BUCKET", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        posthog_host=_getenv("POSTHOG_HOST", "https://eu.i.posthog.com"),
        posthog_project_id=_getenv("POSTHOG_PROJECT_ID", ""),
        posthog_personal_api_key=_getenv("POSTHOG_PERSONAL_API_KEY", ""),
        smtp_host=_getenv("SMTP_HOST", ""),
        smtp_port=_getenv_int("SMTP_PORT", 587),
        smtp_user=_getenv("SMTP_USER", ""),
        smtp_pass=_getenv("SMTP_PASS", ""),
        smtp_from=_getenv("SMTP_FROM", ""),
        smtp_secure=_getenv("SMTP_SECURE", "false").lower() in ("1", "true", "yes"),
        app_url=_getenv("APP_URL", "http://localhost:5000"),
        # Reverse proxies in front of the app; 0 means X-Forwarded-For is ignored.
        trusted_proxy_hops=_getenv_int("TRUSTED_PROXY_HOPS", 0),
        notifications_cron_secret=_getenv("NOTIFICATIONS_CRON_SECRET", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "PROVIDERS_DATABASE_URL": s.providers_database_url,
        "SESSION_TTL_HOURS": s.session_ttl_hours,
        "DOCSTORE_BACKEND": s.docstore_backend,
        "FIREBASE_PROJECT_ID": s.firebase_project_id,
        "FIREBASE_CREDENTIALS_JSON": s.firebase_credentials_json,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_PUBLIC_BASE_URL": s.storage_public_base_url,
        "STORAGE_LOCAL_DIR": s.storage_local_dir,
        "FIREBASE_STORAGE_BUCKET": s.firebase_storage_bucket,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "POSTHOG_HOST": s.posthog_host,
        "POSTHOG_PROJECT_ID": s.posthog_project_id,
        "POSTHOG_PERSONAL_API_KEY": s.posthog_personal_api_key,
        "SMTP_HOST": s.smtp_host,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USER": s.smtp_user,
        "SMTP_PASS": s.smtp_pass,
        "SMTP_FROM": s.smtp_from,
        "SMTP_SECURE": s.smtp_secure,
        "APP_URL": s.app_url,
        "TRUSTED_PROXY_HOPS": s.trusted_proxy_hops,
        "NOTIFICATIONS_CRON_SECRET": s.notifications_cron_secret,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # image uploads are capped at 10MB per file in the handler
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
