from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def _make_engine(db_url: str) -> Engine:
    is_postgres = db_url.startswith("postgres")
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres:
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": 30,
            }
        )
    return create_engine(db_url, **engine_kwargs)


def _make_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    engine = _make_engine(db_url)
    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = _make_sessionmaker(engine)

    # The provider directory shares the engine unless it points at its own database.
    providers_url = app.config.get("PROVIDERS_DATABASE_URL") or db_url
    providers_engine = engine if providers_url == db_url else _make_engine(providers_url)
    app.extensions["providers_engine"] = providers_engine
    app.extensions["providers_sessionmaker"] = _make_sessionmaker(providers_engine)


def _request_session(attr: str, maker_key: str, app: Flask | None) -> Session:
    s = getattr(g, attr, None)
    if s is not None:
        return s
    if app is None:
        from flask import current_app

        app = current_app
    s = app.extensions[maker_key]()
    setattr(g, attr, s)
    return s


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session for the admin store. Use inside request handlers.
    """
    return _request_session("db_session", "sqlalchemy_sessionmaker", app)


def providers_session(app: Flask | None = None) -> Session:
    """Request-scoped session for the provider directory (PROVIDERS_DATABASE_URL)."""
    return _request_session("providers_session", "providers_sessionmaker", app)


def teardown_db_session(_exc: BaseException | None) -> None:
    for attr in ("db_session", "providers_session"):
        s: Session | None = getattr(g, attr, None)
        if s is not None:
            try:
                s.close()
            except Exception:
                logger.exception("Failed to close %s", attr)
            setattr(g, attr, None)


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests: yields a session and commits/rolls back.
    """
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
