import io
from datetime import datetime, timedelta, timezone

import pytest
from werkzeug.security import generate_password_hash

from app.wellness_admin import auth as auth_module
from app.wellness_admin import create_app
from app.wellness_admin.cache import cache
from app.wellness_admin.db import session_scope
from app.wellness_admin.docstore import SqlDocumentStore
from app.wellness_admin.models import AuditEvent, Base, SecuritySettings, User
from app.wellness_admin.modules.app_users.engagement import points_update_from_payload
from app.wellness_admin.modules.app_users.service import (
    AppUserError,
    bulk_create_users,
    delete_user_cascade,
    parse_users_csv,
)
from app.wellness_admin.push import PushError
from app.wellness_admin.rate_limit import users_limiter


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
    users_limiter.reset()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add(SecuritySettings(id="global", login_alert_emails=[], ip_allowlist=[]))
        s.add(
            User(
                id="u_admin",
                email="admin@example.com",
                name="Admin",
                password_hash=generate_password_hash("pw"),
                role="superadmin",
            )
        )
    return app


@pytest.fixture()
def store(app):
    return SqlDocumentStore(app.extensions["sqlalchemy_sessionmaker"])


@pytest.fixture()
def client(app):
    c = app.test_client()
    r = c.post("/api/auth/login", json={"email": "admin@example.com", "password": "pw"})
    c.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrfToken"]
    return c


def _seed_users(store, n=3):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for i in range(n):
        store.set(
            f"users/user{i}",
            {"firstname": f"First{i}", "email": f"user{i}@example.com", "time": base + timedelta(days=i), "points": i * 10},
        )


def test_list_users_paginates_and_caches(client, store):
    _seed_users(store)
    store.set("users/no_time", {"firstname": "Legacy"})

    r = client.get("/api/users?limit=2")
    assert r.status_code == 200
    assert r.headers["X-Cache"] == "MISS"
    assert [u["id"] for u in r.json["users"]] == ["user2", "user1"]
    assert r.json["hasMore"] is True
    assert r.json["users"][0]["signedUpAt"].startswith("2024-01-03")

    r = client.get("/api/users?limit=2")
    assert r.headers["X-Cache"] == "HIT"

    r = client.get("/api/users?limit=2&lastDocId=user1")
    assert r.headers["X-Cache"] == "N/A"
    # documents without a signup time are not listed
    assert [u["id"] for u in r.json["users"]] == ["user0"]
    assert r.json["hasMore"] is False


def test_list_users_rate_limited(client):
    for _ in range(20):
        assert client.get("/api/users").status_code == 200
    r = client.get("/api/users")
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1
    assert r.headers["X-RateLimit-Limit"] == "20"


def test_rate_limit_ignores_rotating_forwarded_for(client):
    for i in range(20):
        assert client.get("/api/users", headers={"X-Forwarded-For": f"10.9.0.{i}"}).status_code == 200
    r = client.get("/api/users", headers={"X-Forwarded-For": "10.9.1.1", "X-Real-IP": "10.9.1.2"})
    assert r.status_code == 429


def test_create_user_and_duplicates(client, store):
    r = client.post(
        "/api/users/create",
        json={"email": "new@example.com", "password": "longenough", "firstname": "New", "username": "NewOne"},
    )
    assert r.status_code == 200
    uid = r.json["userId"]

    doc = store.get(f"users/{uid}")
    assert doc["usernameLowercase"] == "newone"
    assert len(doc["health_stats"]) == 6
    assert store.get(f"user_tags/{uid}") == {"initialize": "start"}
    assert store.get_account_by_email("NEW@example.com")["uid"] == uid

    r = client.post("/api/users/create", json={"email": "new@example.com", "password": "longenough"})
    assert r.status_code == 400
    assert r.json["error"] == "User with this email already exists"

    r = client.post("/api/users/create", json={"email": "x@example.com", "password": "short"})
    assert r.status_code == 400


def test_create_invalidates_user_list_cache(client, store):
    _seed_users(store, 1)
    assert len(client.get("/api/users").json["users"]) == 1
    client.post("/api/users/create", json={"email": "a@example.com", "password": "longenough"})
    r = client.get("/api/users")
    assert r.headers["X-Cache"] == "MISS"
    assert len(r.json["users"]) == 2


def test_bulk_upload(client, store):
    csv_text = (
        "Email,FirstName,LastName,Age,Password\n"
        "one@example.com,One,Uno,30,password-one\n"
        ",Missing,Email,,\n"
        "two@example.com,Two,Dos,abc,\n"
    )
    r = client.post(
        "/api/users/bulk-upload",
        data={"file": (io.BytesIO(csv_text.encode()), "users.csv")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 200
    assert r.json["created"] == 2
    assert r.json["failed"] == 1
    ok = {row["email"]: row for row in r.json["results"]["successful"]}
    assert ok["one@example.com"]["password"] == "password-one"
    assert len(ok["two@example.com"]["password"]) == 12
    assert r.json["results"]["errors"] == [{"email": "unknown", "error": "Email is required"}]

    one = store.get(f"users/{ok['one@example.com']['userId']}")
    assert one["age"] == 30
    two = store.get(f"users/{ok['two@example.com']['userId']}")
    assert two["age"] is None

    r = client.post("/api/users/bulk-upload", data={}, content_type="multipart/form-data")
    assert r.status_code == 400


def test_bulk_create_sees_rows_created_earlier_in_the_upload(store):
    rows = [{"email": f"user{i}@example.com", "password": "password-x"} for i in range(12)]
    rows.append({"email": "USER0@example.com", "password": "password-y"})
    result = bulk_create_users(store, rows)
    assert result["created"] == 12
    assert result["results"]["errors"] == [{"email": "USER0@example.com", "error": "User already exists"}]
    assert store.get_account_by_email("user11@example.com") is not None


def test_parse_users_csv_errors():
    with pytest.raises(AppUserError):
        parse_users_csv("email\n")
    with pytest.raises(AppUserError):
        parse_users_csv("email,name\na@example.com\n")
    assert parse_users_csv('email,name\n"a@example.com","A, B"\n') == [{"email": "a@example.com", "name": "A, B"}]
    rows = parse_users_csv('Email,Bio\n\na@example.com,"line one\nline two"\nb@example.com,\n')
    assert rows == [
        {"email": "a@example.com", "bio": "line one\nline two"},
        {"email": "b@example.com", "bio": ""},
    ]
    with pytest.raises(AppUserError, match="Row 3 has 3 columns, expected 2"):
        parse_users_csv("email,name\na@example.com,A\nb@example.com,B,extra\n")


def test_get_patch_user(client, store):
    _seed_users(store, 1)
    store.update("users/user0", {"fcmToken": "tok-123"})

    r = client.get("/api/users/user0")
    assert r.status_code == 200
    assert r.json["user"]["fcmToken"] == "tok-123"

    assert client.get("/api/users/missing").status_code == 404

    r = client.patch("/api/users/user0", json={"username": "MixedCase", "role": "ignored"})
    assert r.status_code == 200
    doc = store.get("users/user0")
    assert doc["usernameLowercase"] == "mixedcase"
    assert "role" not in doc

    assert client.patch("/api/users/missing", json={"bio": "x"}).status_code == 404


def test_delete_user_cascade(app, client, store):
    _seed_users(store, 2)
    store.set("users/user0/mood/m1", {"x": 1})
    store.set("posts/p1", {"ownerId": "user0"})
    store.set("posts/p2", {"ownerId": "user1"})
    store.set("comments/p1/comments/c1", {"text": "hi"})
    store.set("likes/l1", {"userId": "user0"})
    store.set("likes/l2", {"userId": "user1"})
    store.set("chats/c1", {"users": ["user0", "user1"]})
    store.set("userTags/user0", {"a": 1})
    store.set("user_tags/user0", {"initialize": "start"})

    r = client.delete("/api/users/user0")
    assert r.status_code == 200

    assert store.get("users/user0") is None
    assert store.get("users/user0/mood/m1") is None
    assert store.get("posts/p1") is None
    assert store.get("comments/p1/comments/c1") is None
    assert store.get("likes/l1") is None
    assert store.get("chats/c1") is None
    assert store.get("userTags/user0") is None
    assert store.get("user_tags/user0") is None
    # other users are untouched
    assert store.get("users/user1") is not None
    assert store.get("posts/p2") is not None
    assert store.get("likes/l2") is not None

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "APP_USER_DELETED").one()
        assert ev.entity_id == "user0"


class _FlakyStore(SqlDocumentStore):
    """Fails every delete under users/<id>/mood, the way a backend outage would."""

    def delete_collection(self, collection: str) -> int:
        if collection.endswith("/mood"):
            raise RuntimeError("backend unavailable")
        return super().delete_collection(collection)


def test_delete_cascade_continues_after_failing_step(app, client, store, monkeypatch):
    _seed_users(store, 1)
    store.set("users/user0/mood/m1", {"x": 1})
    store.set("users/user0/water/w1", {"x": 1})
    store.set("likes/l1", {"userId": "user0"})

    flaky = _FlakyStore(app.extensions["sqlalchemy_sessionmaker"])
    removed, failed = delete_user_cascade(flaky, "user0")
    assert failed == {"mood": "backend unavailable"}
    assert removed["mood"] == 0
    assert store.get("users/user0/water/w1") is None
    assert store.get("likes/l1") is None
    assert store.get("users/user0") is None
    assert store.get("users/user0/mood/m1") is not None

    _seed_users(store, 1)
    monkeypatch.setattr("app.wellness_admin.modules.app_users.admin.get_docstore", lambda: flaky)
    r = client.delete("/api/users/user0")
    assert r.status_code == 200
    assert r.json["failedSteps"] == {"mood": "backend unavailable"}
    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "APP_USER_DELETED").one()
        assert ev.severity == "critical"


def test_engagement_views(client, store):
    _seed_users(store, 1)
    now = datetime.now(timezone.utc)
    store.set("users/user0/moods/m1", {"moodEmoji": "🙂", "intensity": 4, "createdAt": now})
    store.set("users/user0/moods/m2", {"moodEmoji": "😢", "intensity": 2, "createdAt": now - timedelta(days=2)})
    store.set("water_logs/user0/logs/w1", {"amountMl": 500, "timestamp": now})
    store.set("water_logs/user0/logs/w2", {"amountMl": 250, "timestamp": now})

    r = client.get("/api/users/user0/mood")
    assert r.status_code == 200
    assert [m["id"] for m in r.json["moods"]] == ["m1", "m2"]
    assert r.json["summary"]["totalMoods"] == 2
    assert r.json["summary"]["averageMoodIntensity"] == 3

    r = client.get("/api/users/user0/water")
    assert r.json["summary"]["totalIntakeMl"] == 750
    assert r.json["summary"]["todayIntakeMl"] == 750
    assert r.json["summary"]["uniqueDays"] == 1

    for view in ("nutrition", "fitness", "finance", "mindfulness", "wellsphere", "onboarding"):
        r = client.get(f"/api/users/user0/{view}")
        assert r.status_code == 200, view

    r = client.get("/api/users/user0/analytics")
    assert r.status_code == 200
    assert r.json["moods"]["total"] == 2
    assert r.json["water"]["totalLogs"] == 2


def test_points(client, store):
    _seed_users(store, 1)
    r = client.get("/api/users/user0/points")
    assert r.json["points"]["level"] == 1

    r = client.patch("/api/users/user0/points", json={"totalPoints": 250})
    assert r.status_code == 200
    r = client.get("/api/users/user0/points")
    assert r.json["points"]["totalPoints"] == 250
    assert r.json["points"]["level"] == 3

    r = client.patch("/api/users/user0/points", json={"totalPoints": -1})
    assert r.status_code == 400
    assert client.patch("/api/users/missing/points", json={"level": 2}).status_code == 404


def test_points_payload_validation():
    update, errors = points_update_from_payload({"totalPoints": 120, "level": 7, "earnedPoints": []})
    assert update == {"totalPoints": 120, "points": 120, "level": 7}
    assert errors == ["earnedPoints must be an object"]


def test_send_push_notification(app, client, store):
    _seed_users(store, 2)
    store.update("users/user0", {"fcm_token": "device-token-0"})

    r = client.post("/api/users/user0/fcm", json={"title": "Hi", "body": "There", "data": {"n": 1}})
    assert r.status_code == 200
    assert r.json["messageId"].startswith("local-")

    logged = store.query("admin_notifications")
    assert len(logged) == 1
    assert logged[0].data["sentBy"] == "u_admin"

    r = client.post("/api/users/user1/fcm", json={"title": "Hi", "body": "There"})
    assert r.status_code == 400
    assert client.post("/api/users/user0/fcm", json={"title": "Hi"}).status_code == 400


def test_invalid_push_token_is_cleared(app, client, store):
    _seed_users(store, 1)
    store.update("users/user0", {"fcm_token": "stale"})

    class _Rejecting:
        def send(self, token, payload):
            raise PushError("Requested entity was not found.", invalid_token=True)

    app.extensions["push_sender"] = _Rejecting()
    r = client.post("/api/users/user0/fcm", json={"title": "Hi", "body": "There"})
    assert r.status_code == 502
    assert store.get("users/user0")["fcm_token"] is None
