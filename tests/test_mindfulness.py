from datetime import datetime, timezone

import pytest
from werkzeug.security import generate_password_hash

from app.wellness_admin import auth as auth_module
from app.wellness_admin import create_app
from app.wellness_admin.cache import cache
from app.wellness_admin.db import session_scope
from app.wellness_admin.docstore import SqlDocumentStore
from app.wellness_admin.models import AuditEvent, Base, SecuritySettings, User
from app.wellness_admin.modules.mindfulness.service import (
    as_bool,
    as_int,
    clamp_list_limit,
    exercise_update_from_payload,
    normalize_id,
    normalize_tags,
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
        s.add(User(email="root@example.com", name="Root", password_hash=generate_password_hash("pw"), role="superadmin"))
        s.add(User(email="editor@example.com", name="Editor", password_hash=generate_password_hash("pw"), role="admin"))
    return app


def _login(c, email="root@example.com"):
    r = c.post("/api/auth/login", json={"email": email, "password": "pw"})
    c.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrfToken"]
    return c


@pytest.fixture()
def store(app):
    return SqlDocumentStore(app.extensions["sqlalchemy_sessionmaker"])


@pytest.fixture()
def client(app):
    return _login(app.test_client())


def test_category_crud(app, client, store):
    r = client.post("/api/mindfulness/categories", json={"description": "no name"})
    assert r.status_code == 400

    r = client.post(
        "/api/mindfulness/categories",
        json={"name": "Sleep Well!", "order": "2", "isActive": "false"},
    )
    assert r.status_code == 200
    cat = r.json["category"]
    assert cat["id"] == "SleepWell"
    assert cat["name"] == "sleep well!"
    assert cat["displayName"] == "sleep well!"
    assert cat["order"] == 2
    assert cat["isActive"] is False
    assert cat["iconName"] == "self_improvement"

    client.post("/api/mindfulness/categories", json={"id": "focus", "name": "Focus", "order": 1})

    r = client.get("/api/mindfulness/categories")
    assert [c["id"] for c in r.json["categories"]] == ["focus", "SleepWell"]
    r = client.get("/api/mindfulness/categories?activeOnly=true")
    assert [c["id"] for c in r.json["categories"]] == ["focus"]

    r = client.patch("/api/mindfulness/categories/focus", json={"displayName": "Deep Focus", "order": "x"})
    assert r.status_code == 200
    assert r.json["category"]["displayName"] == "Deep Focus"
    assert r.json["category"]["order"] == 0
    assert store.get("mindfulness_categories/focus")["name"] == "focus"

    r = client.get("/api/mindfulness/categories/none")
    assert r.status_code == 404
    assert r.json == {"error": "Category not found", "category": None}
    assert client.patch("/api/mindfulness/categories/none", json={"name": "x"}).status_code == 404

    assert client.delete("/api/mindfulness/categories/focus").status_code == 200
    assert client.delete("/api/mindfulness/categories/focus").status_code == 404

    with session_scope(app) as s:
        actions = sorted(e.action for e in s.query(AuditEvent).filter(AuditEvent.entity_type == "mindfulness_category"))
    assert actions == [
        "MINDFULNESS_CATEGORY_DELETED",
        "MINDFULNESS_CATEGORY_SAVED",
        "MINDFULNESS_CATEGORY_SAVED",
        "MINDFULNESS_CATEGORY_UPDATED",
    ]


def test_exercise_crud(client, store):
    assert client.post("/api/mindfulness/exercises", json={"title": "Breathe"}).status_code == 400

    r = client.post(
        "/api/mindfulness/exercises",
        json={
            "id": "box-breathing",
            "title": "Box breathing",
            "category": "Breathing",
            "tags": "calm, focus,",
            "rating": 9,
            "durationMinutes": 0,
            "difficulty": "",
        },
    )
    assert r.status_code == 200
    ex = r.json["exercise"]
    assert ex["id"] == "box-breathing"
    assert ex["category"] == "breathing"
    assert ex["tags"] == ["calm", "focus"]
    assert ex["rating"] == 5.0
    assert ex["durationMinutes"] == 1
    assert ex["difficulty"] == "beginner"
    assert ex["artist"] == "Unknown"
    assert ex["imageUrl"].startswith("https://")

    r = client.post("/api/mindfulness/exercises", json={"title": "Body scan", "category": "sleep"})
    generated = r.json["exercise"]["id"]
    assert len(generated) == 21

    store.set(
        "mindfulness_exercises/legacy",
        {"title": "Old", "category": "sleep", "isActive": False, "createdAt": datetime(2020, 1, 1, tzinfo=timezone.utc)},
    )

    r = client.get("/api/mindfulness/exercises?category=SLEEP")
    assert [e["id"] for e in r.json["exercises"]] == [generated, "legacy"]
    r = client.get("/api/mindfulness/exercises?category=sleep&activeOnly=1")
    assert [e["id"] for e in r.json["exercises"]] == [generated]

    r = client.patch("/api/mindfulness/exercises/box-breathing", json={"featured": "yes", "playCount": -3})
    assert r.status_code == 200
    assert r.json["exercise"]["featured"] is True
    assert r.json["exercise"]["playCount"] == 0
    assert r.json["exercise"]["title"] == "Box breathing"

    r = client.get("/api/mindfulness/exercises/nope")
    assert r.status_code == 404
    assert r.json["exercise"] is None

    assert client.delete("/api/mindfulness/exercises/box-breathing").status_code == 200
    assert store.get("mindfulness_exercises/box-breathing") is None


def test_catalog_requires_mindfulness_permission(app):
    editor = _login(app.test_client(), "editor@example.com")
    r = editor.get("/api/mindfulness/categories")
    assert r.status_code == 403
    assert r.json["error"] == "Forbidden: missing permission mindfulness:read"


def test_coercion_helpers():
    assert as_bool("Yes") is True
    assert as_bool("off", default=True) is True
    assert as_bool(0) is False
    assert as_int("3.9") == 3
    assert as_int(True, 7) == 7
    assert as_int("nan", 4) == 4
    assert clamp_list_limit("9999") == 500
    assert clamp_list_limit(None) == 200
    assert normalize_id(" a b/c_d-1 ") == "abc_d-1"
    assert normalize_tags(["x", " ", 3, "y "]) == ["x", "y"]
    assert exercise_update_from_payload({"title": " T ", "unknown": 1}) == {"title": "T"}
