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
from app.wellness_admin.modules.content.service import is_expired


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in (
        "S3_ENDPOINT",
        "S3_REGION",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "STORAGE_PUBLIC_BASE_URL",
        "DOCSTORE_BACKEND",
    ):
        monkeypatch.delenv(k, raising=False)
    # local uploads land under ./storage
    monkeypatch.chdir(tmp_path)
    auth_module._login_attempts.clear()
    cache.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add(SecuritySettings(id="global", login_alert_emails=[], ip_allowlist=[]))
        s.add(User(email="admin@example.com", name="Admin", password_hash=generate_password_hash("pw"), role="admin"))
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


def test_post_lifecycle(app, client, store):
    store.set("users/owner1", {"username": "owner"})

    r = client.post("/api/posts", json={"ownerId": "owner1"})
    assert r.status_code == 400
    assert r.json["error"] == "ownerId and mediaUrl are required"

    r = client.post("/api/posts", json={"ownerId": "ghost", "mediaUrl": "https://cdn.example.com/a.jpg"})
    assert r.status_code == 404

    r = client.post(
        "/api/posts",
        json={"ownerId": "owner1", "mediaUrl": "https://cdn.example.com/a.jpg", "description": "Sunrise"},
    )
    assert r.status_code == 201
    post = r.json["post"]
    assert post["username"] == "owner"
    assert post["likesCount"] == 0
    post_id = post["id"]

    r = client.get("/api/posts")
    assert [p["id"] for p in r.json["posts"]] == [post_id]
    assert r.json["hasMore"] is False

    assert client.get(f"/api/posts/{post_id}").json["post"]["description"] == "Sunrise"
    assert client.get("/api/posts/missing").status_code == 404

    store.set(f"comments/{post_id}/comments/c1", {"text": "nice"})
    store.set("notifications/owner1/notifications/n1", {"postId": post_id})
    store.set("notifications/owner1/notifications/n2", {"postId": "other"})

    r = client.delete(f"/api/posts/{post_id}")
    assert r.status_code == 200
    assert store.get(f"posts/{post_id}") is None
    assert store.get(f"comments/{post_id}/comments/c1") is None
    assert store.get("notifications/owner1/notifications/n1") is None
    assert store.get("notifications/owner1/notifications/n2") is not None
    assert client.delete(f"/api/posts/{post_id}").status_code == 404

    with session_scope(app) as s:
        actions = sorted(e.action for e in s.query(AuditEvent).filter(AuditEvent.entity_type == "post"))
    assert actions == ["POST_CREATED", "POST_DELETED"]


def test_posts_paginate_newest_first(client, store):
    base = datetime(2024, 3, 1, tzinfo=timezone.utc)
    for i in range(3):
        store.set(f"posts/p{i}", {"ownerId": "o", "timestamp": base + timedelta(hours=i), "likes": {"a": True}})

    r = client.get("/api/posts?limit=2")
    assert [p["id"] for p in r.json["posts"]] == ["p2", "p1"]
    assert r.json["hasMore"] is True
    assert r.json["lastDocId"] == "p1"
    assert r.json["posts"][0]["likesCount"] == 1

    r = client.get("/api/posts?limit=2&lastDocId=p1")
    assert [p["id"] for p in r.json["posts"]] == ["p0"]


def test_stories_hide_expired(client, store):
    store.set("users/u1", {"username": "storyteller", "photoUrl": "https://cdn.example.com/me.png"})

    r = client.post("/api/stories", json={"userId": "u1", "imageUrl": "https://cdn.example.com/s.jpg"})
    assert r.status_code == 201
    story = r.json["story"]
    assert story["userDp"] == "https://cdn.example.com/me.png"
    assert story["expiresAt"] > story["timestamp"]

    old = datetime.now(timezone.utc) - timedelta(days=2)
    store.set("stories/old", {"userId": "u1", "timestamp": old, "expiresAt": old + timedelta(hours=24)})

    r = client.get("/api/stories")
    assert [s["id"] for s in r.json["stories"]] == [story["id"]]

    # expired stories are still reachable directly
    assert client.get("/api/stories/old").status_code == 200
    assert client.delete("/api/stories/old").status_code == 200
    assert client.get("/api/stories/old").status_code == 404

    assert client.post("/api/stories", json={"userId": "u1"}).status_code == 400


def test_stories_paginate_past_expired(client, store):
    now = datetime.now(timezone.utc)
    live_until = now + timedelta(hours=20)
    store.set("stories/s0", {"userId": "u1", "timestamp": now - timedelta(hours=1), "expiresAt": live_until})
    store.set("stories/gone", {"userId": "u1", "timestamp": now - timedelta(hours=2), "expiresAt": now - timedelta(minutes=1)})
    store.set("stories/s1", {"userId": "u1", "timestamp": now - timedelta(hours=3), "expiresAt": live_until})
    store.set("stories/s2", {"userId": "u1", "timestamp": now - timedelta(hours=4), "expiresAt": live_until})

    r = client.get("/api/stories?limit=2")
    assert [s["id"] for s in r.json["stories"]] == ["s0", "s1"]
    assert r.json["hasMore"] is True
    assert r.json["lastDocId"] == "s1"

    r = client.get("/api/stories?limit=2&lastDocId=s1")
    assert [s["id"] for s in r.json["stories"]] == ["s2"]
    assert r.json["hasMore"] is False
    assert r.json["lastDocId"] is None

    r = client.get("/api/stories?limit=1&lastDocId=s0")
    assert [s["id"] for s in r.json["stories"]] == ["s1"]
    assert r.json["lastDocId"] == "s1"

    # a batch of only expired stories gives an empty page that still moves the cursor
    store.set("stories/gone2", {"userId": "u1", "timestamp": now - timedelta(hours=2, minutes=30), "expiresAt": now - timedelta(minutes=1)})
    r = client.get("/api/stories?limit=1&lastDocId=s0")
    assert r.json["stories"] == []
    assert r.json["hasMore"] is True
    assert r.json["lastDocId"] == "gone2"


def test_is_expired():
    now = datetime(2024, 1, 2, tzinfo=timezone.utc)
    assert is_expired({"expiresAt": datetime(2024, 1, 1, tzinfo=timezone.utc)}, now)
    assert not is_expired({"expiresAt": datetime(2024, 1, 3, tzinfo=timezone.utc)}, now)
    assert not is_expired({}, now)


def test_reports_listing_and_updates(client, store):
    store.set("users/rep", {"username": "reporter", "email": "rep@example.com"})
    store.set("posts/p1", {"ownerId": "o", "description": "bad post"})
    t = datetime(2024, 5, 1, tzinfo=timezone.utc)
    store.set("post_reports/r1", {"postId": "p1", "reporterId": "rep", "reason": "spam", "status": "pending", "createdAt": t})
    store.set(
        "story_reports/r2",
        {"storyId": "gone", "reporterId": "rep", "status": "resolved", "createdAt": t + timedelta(hours=1)},
    )
    store.set(
        "user_reports/r3",
        {"reportedUserId": "rep", "reporterId": "nobody", "status": "pending", "createdAt": t + timedelta(hours=2)},
    )

    r = client.get("/api/reports")
    assert r.status_code == 200
    assert [rep["id"] for rep in r.json["reports"]] == ["r3", "r2", "r1"]
    assert r.json["counts"]["total"] == 3
    assert r.json["counts"]["pending"] == 2
    assert r.json["counts"]["resolved"] == 1

    post_report = r.json["postReports"][0]
    assert post_report["reporterInfo"]["username"] == "reporter"
    assert post_report["reportedPostInfo"]["description"] == "bad post"
    assert r.json["storyReports"][0]["reportedStoryInfo"] is None
    assert r.json["userReports"][0]["reporterInfo"] is None

    r = client.get("/api/reports?type=posts&status=pending")
    assert [rep["id"] for rep in r.json["reports"]] == ["r1"]

    assert client.get("/api/reports?type=comments").status_code == 400
    assert client.get("/api/reports?status=closed").status_code == 400

    r = client.patch("/api/reports/r1", json={"status": "reviewed", "reportType": "post"})
    assert r.status_code == 200
    assert store.get("post_reports/r1")["status"] == "reviewed"

    assert client.patch("/api/reports/r1", json={"status": "reviewed"}).status_code == 400
    assert client.patch("/api/reports/r1", json={"status": "done", "reportType": "post"}).status_code == 400
    assert client.patch("/api/reports/nope", json={"status": "reviewed", "reportType": "post"}).status_code == 404

    assert client.delete("/api/reports/r2").status_code == 400
    assert client.delete("/api/reports/r2?type=story").status_code == 200
    assert store.get("story_reports/r2") is None
    assert client.delete("/api/reports/r2?type=story").status_code == 404


def test_upload_image_and_serve_locally(client):
    png = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
    r = client.post(
        "/api/upload",
        data={"file": (io.BytesIO(png), "pic.png", "image/png")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 200
    assert r.json["key"].startswith("connect/")
    assert r.json["key"].endswith(".png")
    assert r.json["url"] == f"/storage/{r.json['key']}"

    served = client.get(r.json["url"])
    assert served.status_code == 200
    assert served.mimetype == "image/png"
    assert served.data == png

    r = client.post(
        "/api/upload",
        data={"file": (io.BytesIO(b"hello"), "notes.txt", "text/plain")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert r.json["error"] == "Invalid file type. Only images are allowed."

    assert client.post("/api/upload", data={}, content_type="multipart/form-data").status_code == 400
    assert client.get("/storage/connect/missing.png").status_code == 404
