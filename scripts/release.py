"""
Release-phase helper.

Steps, in order:
1. Check the environment: DATABASE_URL must be set (and not sqlite in
   production); the Firestore backend needs FIREBASE_PROJECT_ID.
2. Upgrade the admin database to the latest alembic revision.
3. Make sure the provider directory has its table when it lives in a
   separate database (PROVIDERS_DATABASE_URL), since alembic only manages
   the admin database.
4. Seed RBAC roles/permissions, the security policy row and the first
   superadmin (idempotent).

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _require_env(name: str) -> str:
    value = _env(name)
    if not value:
        raise RuntimeError(f"{name} is not set; the release step cannot continue.")
    return value


def check_environment() -> str:
    db_url = _require_env("DATABASE_URL")
    if _env("ENV").lower() in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL points at sqlite while ENV is production; use Postgres.")
    if _env("DOCSTORE_BACKEND", "sql").lower() == "firestore":
        _require_env("FIREBASE_PROJECT_ID")
    return db_url


def upgrade_admin_schema(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def ensure_provider_directory(db_url: str) -> bool:
    """Create the providers table on a separate directory database. Returns True when it was created."""
    providers_url = _env("PROVIDERS_DATABASE_URL")
    if not providers_url or providers_url == db_url:
        return False

    from sqlalchemy import inspect

    from app.wellness_admin.modules.providers.models import Provider
    from scripts._db_utils import create_script_engine

    engine = create_script_engine(providers_url)
    try:
        if inspect(engine).has_table(Provider.__tablename__):
            return False
        Provider.__table__.create(bind=engine)
        return True
    finally:
        engine.dispose()


def run_release() -> None:
    db_url = check_environment()
    print(f"[release] wellness-admin, ENV={_env('ENV') or '(unset)'}", flush=True)

    print("[release] alembic upgrade head", flush=True)
    upgrade_admin_schema(db_url)

    if ensure_provider_directory(db_url):
        print("[release] created providers table on PROVIDERS_DATABASE_URL", flush=True)

    print("[release] seeding RBAC and superadmin", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("[release] done", flush=True)


if __name__ == "__main__":
    run_release()
