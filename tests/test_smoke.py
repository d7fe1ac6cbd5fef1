from datetime import datetime, timedelta

import pyotp
import pytest
from werkzeug.security import generate_password_hash

from app.wellness_admin import auth as auth_module
from app.wellness_admin import backend_config_problems, create_app
from app.wellness_admin.cache import cache
from app.wellness_admin.db import session_scope
from app.wellness_admin.models import AuditEvent, AuthSession, Base, SecuritySettings, User


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "PROVIDERS_DATABASE_URL", "TRUSTED_PROXY_HOPS"):
        monkeypatch.delenv(k, raising=False)
    auth_module._login_attempts.clear()
    cache.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add(SecuritySettings(id="global", login_alert_emails=[], ip_allowlist=[]))
        s.add(
            User(
                email="admin@example.com",
                name="Admin",
                password_hash=generate_password_hash("pw"),
                role="superadmin",
                is_active=True,
                password_changed_at=datetime.utcnow(),
            )
        )
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="admin@example.com", password="pw"):
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    if r.status_code == 200:
        client.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrfToken"]
    return r


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_check_users_and_csrf_are_public(client):
    r = client.get("/api/auth/check-users")
    assert r.status_code == 200
    assert r.json["hasUsers"] is True

    r = client.get("/api/auth/csrf")
    assert r.status_code == 200
    assert r.json["csrfToken"]


def test_login_me_logout(client):
    # Anonymous is rejected
    r = client.get("/api/auth/me")
    assert r.status_code == 401

    r = _login(client)
    assert r.status_code == 200
    assert r.json["twoFactorRequired"] is False
    assert r.json["user"]["email"] == "admin@example.com"

    r = client.get("/api/auth/me")
    assert r.status_code == 200
    assert r.json["isSuperadmin"] is True
    assert "users:manage" in r.json["permissions"]["keys"]

    r = client.post("/api/auth/logout")
    assert r.status_code == 200
    r = client.get("/api/auth/me")
    assert r.status_code == 401


def test_login_rejects_bad_password_and_audits(client, app):
    r = _login(client, password="wrong")
    assert r.status_code == 401
    assert r.json["error"] == "Invalid email or password"

    with session_scope(app) as s:
        actions = [e.action for e in s.query(AuditEvent).all()]
    assert "LOGIN_FAILED" in actions


def test_login_rate_limited_after_five_attempts(client):
    for _ in range(5):
        assert _login(client, password="wrong").status_code == 401
    r = _login(client)
    assert r.status_code == 429


def test_login_rate_limit_ignores_forwarded_for(client):
    codes = []
    for i in range(8):
        r = client.post(
            "/api/auth/login",
            json={"email": "admin@example.com", "password": "wrong"},
            headers={"X-Forwarded-For": f"10.0.0.{i}"},
        )
        codes.append(r.status_code)
    assert codes[:5] == [401] * 5
    assert codes[5:] == [429] * 3


def test_allowlist_checks_peer_address_not_forwarded_for(client, app):
    with session_scope(app) as s:
        row = s.get(SecuritySettings, "global")
        row.ip_allowlist_enabled = True
        row.ip_allowlist = ["10.0.0.1"]
    r = client.post(
        "/api/auth/login",
        json={"email": "admin@example.com", "password": "pw"},
        headers={"X-Forwarded-For": "10.0.0.1"},
    )
    assert r.status_code == 403
    assert r.json["error"] == "IP address not allowed"

    with session_scope(app) as s:
        s.get(SecuritySettings, "global").ip_allowlist = ["127.0.0.0/8"]
    assert _login(client).status_code == 200


def test_trusted_proxy_hops_honours_forwarded_for(app, monkeypatch):
    monkeypatch.setenv("TRUSTED_PROXY_HOPS", "1")
    proxied = create_app()
    with session_scope(proxied) as s:
        row = s.get(SecuritySettings, "global")
        row.ip_allowlist_enabled = True
        row.ip_allowlist = ["10.0.0.1"]
    c = proxied.test_client()
    r = c.post(
        "/api/auth/login",
        json={"email": "admin@example.com", "password": "pw"},
        headers={"X-Forwarded-For": "10.0.0.1"},
    )
    assert r.status_code == 200


def test_mutations_require_csrf_token(client):
    _login(client)
    client.environ_base.pop("HTTP_X_CSRF_TOKEN", None)
    r = client.patch("/api/account/profile", json={"phone": "555"})
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]


def test_unknown_route_returns_json_404(client):
    r = client.get("/api/nope")
    assert r.status_code == 404
    assert "error" in r.json


def test_expired_session_is_dropped(client, app):
    _login(client)
    with session_scope(app) as s:
        for row in s.query(AuthSession).all():
            row.expires_at = datetime.utcnow() - timedelta(minutes=1)
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    with session_scope(app) as s:
        assert s.query(AuthSession).count() == 0


def test_change_password_enforces_policy(client, app):
    _login(client)
    r = client.post("/api/auth/change-password", json={"currentPassword": "pw", "newPassword": "short"})
    assert r.status_code == 400
    assert r.json["errors"]

    r = client.post("/api/auth/change-password", json={"currentPassword": "nope", "newPassword": "Str0ng!Password"})
    assert r.status_code == 401

    r = client.post("/api/auth/change-password", json={"currentPassword": "pw", "newPassword": "Str0ng!Password"})
    assert r.status_code == 200

    client.post("/api/auth/logout")
    assert _login(client, password="Str0ng!Password").status_code == 200


def test_must_change_password_blocks_api_with_409(client, app):
    with session_scope(app) as s:
        s.query(User).filter(User.email == "admin@example.com").one().must_change_password = True
    _login(client)

    r = client.get("/api/users")
    assert r.status_code == 409
    assert r.json["error"] == "password_change_required"

    # auth endpoints stay reachable so the password can be changed
    assert client.get("/api/auth/me").status_code == 200


def test_enforced_two_factor_blocks_until_enabled(client, app):
    with session_scope(app) as s:
        s.get(SecuritySettings, "global").enforce_two_factor_for_all = True
    _login(client)
    r = client.get("/api/providers")
    assert r.status_code == 409
    assert r.json["error"] == "two_factor_setup_required"


def test_two_factor_enable_and_login_flow(client, app):
    _login(client)
    r = client.post("/api/auth/two-factor/enable", json={"password": "pw"})
    assert r.status_code == 200
    secret = r.json["secret"]
    backup_codes = r.json["backupCodes"]
    assert len(backup_codes) == 10
    assert r.json["totpURI"].startswith("otpauth://")

    r = client.post("/api/auth/two-factor/verify", json={"code": pyotp.TOTP(secret).now()})
    assert r.status_code == 200
    assert r.json["twoFactorEnabled"] is True

    client.post("/api/auth/logout")
    r = _login(client)
    assert r.status_code == 200
    assert r.json["twoFactorRequired"] is True
    client.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrfToken"]

    # Pending sessions are not signed in yet
    assert client.get("/api/auth/me").status_code == 401

    r = client.post("/api/auth/two-factor/verify", json={"code": "000000x"})
    assert r.status_code == 401

    # Backup codes work once
    r = client.post("/api/auth/two-factor/verify", json={"code": backup_codes[0]})
    assert r.status_code == 200
    assert client.get("/api/auth/me").status_code == 200

    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "admin@example.com").one()
        assert len(user.two_factor.backup_codes) == 9


def test_session_cap_revokes_oldest(client, app):
    with session_scope(app) as s:
        s.get(SecuritySettings, "global").max_active_sessions_per_user = 1
    first = app.test_client()
    assert _login(first).status_code == 200
    second = app.test_client()
    assert _login(second).status_code == 200

    assert second.get("/api/auth/me").status_code == 200
    assert first.get("/api/auth/me").status_code == 401


def test_production_refuses_sqlite(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-real-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()


def test_backend_config_problems():
    assert backend_config_problems({"DOCSTORE_BACKEND": "sql", "STORAGE_BACKEND": "local"}) == []
    assert backend_config_problems({"DOCSTORE_BACKEND": "firestore", "FIREBASE_PROJECT_ID": "p", "STORAGE_BACKEND": "firebase"}) == []
    problems = backend_config_problems({"DOCSTORE_BACKEND": "firestore", "STORAGE_BACKEND": "s3", "S3_BUCKET": "b"})
    assert problems == [
        "DOCSTORE_BACKEND=firestore without FIREBASE_PROJECT_ID",
        "STORAGE_BACKEND=s3 missing S3_ENDPOINT, S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY",
    ]
    assert backend_config_problems({"STORAGE_BACKEND": "gcs"}) == ["unknown STORAGE_BACKEND='gcs', uploads go to local files"]
