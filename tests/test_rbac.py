from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.wellness_admin import auth as auth_module
from app.wellness_admin import create_app
from app.wellness_admin.cache import cache
from app.wellness_admin.db import session_scope
from app.wellness_admin.docstore import SqlDocumentStore
from app.wellness_admin.models import AuditEvent, Base, Role, SecuritySettings, User, UserRole
from app.wellness_admin.rbac import (
    count_superadmins,
    initialize_rbac,
    permission_id,
    role_id,
    user_has_permission,
    user_permission_keys,
)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "DOCSTORE_BACKEND"):
        monkeypatch.delenv(k, raising=False)
    auth_module._login_attempts.clear()
    cache.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add(SecuritySettings(id="global", login_alert_emails=[], ip_allowlist=[]))
        s.add(
            User(
                id="u_root",
                email="root@example.com",
                name="Root",
                password_hash=generate_password_hash("pw"),
                role="superadmin",
            )
        )
        s.add(
            User(
                id="u_member",
                email="member@example.com",
                name="Member",
                password_hash=generate_password_hash("pw"),
                role="member",
            )
        )
    return app


def _client(app, email):
    c = app.test_client()
    r = c.post("/api/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    c.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrfToken"]
    return c


@pytest.fixture()
def root(app):
    c = _client(app, "root@example.com")
    r = c.post("/api/rbac/initialize")
    assert r.status_code == 200
    return c


def test_initialize_is_idempotent_and_migrates_legacy_roles(app, root):
    r = root.post("/api/rbac/initialize")
    assert r.status_code == 200
    assert r.json["rolesCreated"] == 0

    r = root.get("/api/rbac/roles")
    names = sorted(role["name"] for role in r.json["roles"])
    assert names == ["admin", "editor", "moderator", "superadmin", "viewer"]

    r = root.get("/api/rbac/permissions")
    assert "providers" in r.json["grouped"]
    assert {p["action"] for p in r.json["grouped"]["providers"]} == {"read", "write", "delete", "manage"}

    with session_scope(app) as s:
        assert count_superadmins(s) == 1
        root_user = s.get(User, "u_root")
        assert [ra.role_id for ra in root_user.role_assignments] == [role_id("superadmin")]


def test_initialize_requires_admin_role(app, root):
    member = _client(app, "member@example.com")
    r = member.post("/api/rbac/initialize")
    assert r.status_code == 403


def test_member_without_roles_is_forbidden(app, root):
    member = _client(app, "member@example.com")
    r = member.get("/api/rbac/roles")
    assert r.status_code == 403
    assert r.json["error"] == "Forbidden: missing permission admin:read"


def test_assigning_a_role_grants_its_permissions(app, root):
    r = root.post("/api/rbac/users/u_member/roles", json={"roleId": role_id("viewer")})
    assert r.status_code == 200

    member = _client(app, "member@example.com")
    assert member.get("/api/rbac/roles").status_code == 200
    # viewer is read-only
    r = member.post("/api/rbac/roles", json={"name": "auditors"})
    assert r.status_code == 403

    r = root.post("/api/rbac/users/u_member/roles", json={"roleId": role_id("viewer")})
    assert r.status_code == 400
    assert r.json["error"] == "Role already assigned"

    r = root.get("/api/rbac/users/u_member/roles")
    assert [a["role"]["name"] for a in r.json["roles"]] == ["viewer"]

    r = root.delete(f"/api/rbac/users/u_member/roles?roleId={role_id('viewer')}")
    assert r.status_code == 200
    assert member.get("/api/rbac/roles").status_code == 403


def test_expired_role_assignment_is_ignored(app, root):
    past = (datetime.utcnow() - timedelta(days=1)).isoformat() + "Z"
    r = root.post("/api/rbac/users/u_member/roles", json={"roleId": role_id("viewer"), "expiresAt": past})
    assert r.status_code == 200

    member = _client(app, "member@example.com")
    assert member.get("/api/rbac/roles").status_code == 403

    r = root.post("/api/rbac/users/u_member/roles", json={"roleId": role_id("editor"), "expiresAt": "soon"})
    assert r.status_code == 400


def test_cannot_remove_last_superadmin(app, root):
    r = root.delete(f"/api/rbac/users/u_root/roles?roleId={role_id('superadmin')}")
    assert r.status_code == 400
    assert r.json["error"] == "Cannot remove the last superadmin"


def test_create_custom_role_and_audit(app, root):
    r = root.post(
        "/api/rbac/roles",
        json={
            "name": "Support Desk",
            "description": "Reads users",
            "permissionIds": [permission_id("users", "read")],
        },
    )
    assert r.status_code == 201
    assert r.json["role"]["id"] == "role_support_desk"
    assert [p["id"] for p in r.json["role"]["permissions"]] == ["perm_users_read"]

    r = root.post("/api/rbac/roles", json={"name": "Support Desk"})
    assert r.status_code == 400

    r = root.post("/api/rbac/roles", json={"name": "Broken", "permissionIds": ["perm_nope_read"]})
    assert r.status_code == 400
    assert "perm_nope_read" in r.json["error"]

    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "ROLE_CREATED").count() == 1
        assert s.get(Role, "role_broken") is None


def test_create_admin_user_returns_password(app, root):
    r = root.post(
        "/api/rbac/users",
        json={
            "email": "New.Admin@Example.com",
            "name": "New Admin",
            "roleIds": [role_id("moderator")],
            "returnPassword": True,
        },
    )
    assert r.status_code == 201
    assert r.json["email"] == "new.admin@example.com"
    assert r.json["roles"] == [{"id": role_id("moderator"), "name": "moderator"}]
    password = r.json["temporaryPassword"]

    c = app.test_client()
    r = c.post("/api/auth/login", json={"email": "new.admin@example.com", "password": password})
    assert r.status_code == 200

    r = root.post("/api/rbac/users", json={"email": "new.admin@example.com", "name": "Again"})
    assert r.status_code == 400


def test_only_superadmin_creates_admin_users(app, root):
    root.post("/api/rbac/users/u_member/roles", json={"roleId": role_id("admin")})
    member = _client(app, "member@example.com")
    r = member.post("/api/rbac/users", json={"email": "x@example.com", "name": "X"})
    assert r.status_code == 403


def test_reset_password_revokes_sessions(app, root):
    member = _client(app, "member@example.com")
    r = root.post("/api/rbac/users/u_member/reset-password", json={"password": "temporary-pass", "returnPassword": True})
    assert r.status_code == 200
    assert r.json["temporaryPassword"] == "temporary-pass"

    assert member.get("/api/auth/me").status_code == 401
    with session_scope(app) as s:
        assert s.get(User, "u_member").must_change_password is True


def test_resource_scoped_permission_applies_to_one_document(app, root):
    store = SqlDocumentStore(app.extensions["sqlalchemy_sessionmaker"])
    store.set("posts/p1", {"ownerId": "a", "mediaUrl": "https://x/1.jpg"})
    store.set("posts/p2", {"ownerId": "b", "mediaUrl": "https://x/2.jpg"})

    r = root.post(
        "/api/rbac/users/u_member/permissions",
        json={"resourceType": "posts", "resourceId": "p1", "permissions": ["read"]},
    )
    assert r.status_code == 201
    grant_id = r.json["permission"]["id"]

    member = _client(app, "member@example.com")
    assert member.get("/api/posts/p1").status_code == 200
    assert member.get("/api/posts/p2").status_code == 403
    # Scoped grants never open the collection listing
    assert member.get("/api/posts").status_code == 403
    assert member.delete("/api/posts/p1").status_code == 403

    r = root.patch(
        "/api/rbac/users/u_member/permissions",
        json={"permissionId": grant_id, "permissions": ["read", "delete"]},
    )
    assert r.status_code == 200
    assert member.delete("/api/posts/p1").status_code == 200

    r = root.delete(f"/api/rbac/users/u_member/permissions?permissionId={grant_id}")
    assert r.status_code == 200
    assert member.get("/api/posts/p2").status_code == 403

    r = root.delete("/api/rbac/users/u_member/permissions?permissionId=missing")
    assert r.status_code == 404


def test_resource_permission_validation(app, root):
    r = root.post("/api/rbac/users/u_member/permissions", json={"resourceType": "posts", "permissions": []})
    assert r.status_code == 400
    r = root.post("/api/rbac/users/u_member/permissions", json={"resourceType": "nope", "permissions": ["read"]})
    assert r.status_code == 400
    r = root.post("/api/rbac/users/u_member/permissions", json={"resourceType": "posts", "permissions": ["fly"]})
    assert r.status_code == 400
    r = root.get("/api/rbac/users/missing/permissions")
    assert r.status_code == 404


def test_permission_helpers(app):
    with session_scope(app) as s:
        initialize_rbac(s)
        member = s.get(User, "u_member")
        member.role_assignments.append(UserRole(user_id="u_member", role_id=role_id("moderator")))
        s.flush()

        assert user_has_permission(member, "users", "write")
        assert not user_has_permission(member, "users", "delete")
        assert not user_has_permission(member, "analytics", "read")
        keys = user_permission_keys(member)
        assert "posts:read" in keys
        assert "analytics:read" not in keys

        legacy_admin = User(email="legacy@example.com", password_hash="x", role="admin", is_active=True)
        assert user_has_permission(legacy_admin, "analytics", "delete")
        assert not user_has_permission(legacy_admin, "providers", "read")
        assert "providers:manage" in user_permission_keys(legacy_admin)

        member.is_active = False
        assert not user_has_permission(member, "users", "read")
