import pytest
from werkzeug.security import generate_password_hash

from app.wellness_admin import auth as auth_module
from app.wellness_admin import create_app
from app.wellness_admin.cache import cache
from app.wellness_admin.db import session_scope
from app.wellness_admin.docstore import SqlDocumentStore
from app.wellness_admin.models import AuditEvent, Base, SecuritySettings, User
from app.wellness_admin.modules.explore.service import normalize_priority, sort_videos, today_date_id


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in ("DOCSTORE_BACKEND", "TRUSTED_PROXY_HOPS"):
        monkeypatch.delenv(k, raising=False)
    auth_module._login_attempts.clear()
    cache.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add(SecuritySettings(id="global", login_alert_emails=[], ip_allowlist=[]))
        s.add(User(email="admin@example.com", name="Admin", password_hash=generate_password_hash("pw"), role="admin"))
        s.add(User(email="viewer@example.com", name="Viewer", password_hash=generate_password_hash("pw"), role="viewer"))
    return app


@pytest.fixture()
def store(app):
    return SqlDocumentStore(app.extensions["sqlalchemy_sessionmaker"])


def _login(app, email):
    c = app.test_client()
    r = c.post("/api/auth/login", json={"email": email, "password": "pw"})
    c.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrfToken"]
    return c


@pytest.fixture()
def client(app):
    return _login(app, "admin@example.com")


def _add(client, date_id, **fields):
    payload = {"title": "Item", "media_type": "video", "media_url": "https://cdn.example.com/a.mp4", "media_category": "calm"}
    payload.update(fields)
    payload["dateId"] = date_id
    r = client.post("/api/explore", json=payload)
    assert r.status_code == 200, r.json
    return r.json["video"]


def test_create_validates_media(client):
    r = client.post("/api/explore", json={"title": "x", "media_type": "video"})
    assert r.status_code == 400
    assert r.json["error"] == "title, media_type, and media_category are required"

    r = client.post("/api/explore", json={"title": "x", "media_type": "audio", "media_category": "calm"})
    assert r.json["error"] == "media_url is required for audio/video"

    r = client.post("/api/explore", json={"title": "x", "media_type": "article", "media_category": "calm"})
    assert r.json["error"] == "For articles, provide either media_url or media_text (markdown)."

    r = client.post(
        "/api/explore",
        json={"title": "x", "media_type": "Video", "media_category": "calm", "media_url": "https://youtu.be/abc"},
    )
    assert r.status_code == 400
    assert r.json["error"].startswith("YouTube links are not supported")

    r = client.post("/api/explore", json={"title": "x", "media_type": "article", "media_category": "calm", "dateId": "2024-01-01", "media_text": "# hi"})
    assert r.status_code == 400
    assert r.json["error"] == "dateId must be in YYYYMMDD format"


def test_landing_crud_keeps_items_sorted(app, client, store):
    low = _add(client, "20240101", title="Low", priority=1, media_category="Calm", img_url="https://cdn.example.com/l.jpg")
    high = _add(client, "20240101", title="High", priority="5")
    article = _add(client, "20240101", title="Read", media_type="article", media_url="", media_text="# Breathe", media_category="focus", priority=3)

    assert low["media_category"] == "calm"
    assert low["thumbnail"] == low["img_url"] == "https://cdn.example.com/l.jpg"
    assert high["priority"] == 5

    r = client.get("/api/explore?dateId=20240101")
    assert r.json["exists"] is True
    assert [v["title"] for v in r.json["videos"]] == ["High", "Read", "Low"]
    assert [v["id"] for v in store.get("explore_landings/20240101")["videos"]] == [high["id"], article["id"], low["id"]]

    r = client.get("/api/explore?dateId=20240101&category=CALM")
    assert {v["title"] for v in r.json["videos"]} == {"High", "Low"}

    r = client.get("/api/explore?dateId=20230101")
    assert r.json == {"videos": [], "dateId": "20230101", "exists": False}

    r = client.put("/api/explore", json={"dateId": "20240101", "videoId": low["id"], "priority": "9.7", "media_type": "AUDIO", "thumbnail": "https://cdn.example.com/t.jpg"})
    assert r.status_code == 200
    updated = r.json["video"]
    assert updated["priority"] == 9
    assert updated["media_type"] == "audio"
    assert updated["img_url"] == "https://cdn.example.com/t.jpg"
    assert updated["created_at"] == low["created_at"]
    assert client.get("/api/explore?dateId=20240101").json["videos"][0]["id"] == low["id"]

    assert client.put("/api/explore", json={"dateId": "20240101"}).status_code == 400
    r = client.put("/api/explore", json={"dateId": "20240101", "videoId": "missing"})
    assert r.status_code == 404
    assert r.json["error"] == "Video not found"
    r = client.put("/api/explore", json={"dateId": "20230101", "videoId": low["id"]})
    assert r.json["error"] == "Document not found for the specified date"

    assert client.delete("/api/explore?dateId=20240101").json["error"] == "videoId is required"
    assert client.delete("/api/explore?dateId=20240101&videoId=missing").status_code == 404
    r = client.delete(f"/api/explore?dateId=20240101&videoId={article['id']}")
    assert r.status_code == 200
    assert r.json["message"] == "Video deleted successfully"
    assert len(store.get("explore_landings/20240101")["videos"]) == 2

    with session_scope(app) as s:
        actions = {e.action for e in s.query(AuditEvent).all()}
    assert {"EXPLORE_ITEM_CREATED", "EXPLORE_ITEM_UPDATED", "EXPLORE_ITEM_DELETED"} <= actions


def test_default_date_is_today(client):
    video = _add(client, "")
    r = client.get("/api/explore")
    assert r.json["dateId"] == today_date_id()
    assert [v["id"] for v in r.json["videos"]] == [video["id"]]


def test_dates_listing(client, store):
    store.set("explore_landings/20240101", {"videos": [{"id": "a"}]})
    store.set("explore_landings/20240305", {"videos": [{"id": "b"}, {"id": "c"}]})
    store.set("explore_landings/20231231", {})

    r = client.get("/api/explore/dates")
    assert r.json["total"] == 3
    assert r.json["dates"] == [
        {"dateId": "20240305", "exists": True, "videoCount": 2},
        {"dateId": "20240101", "exists": True, "videoCount": 1},
        {"dateId": "20231231", "exists": True, "videoCount": 0},
    ]


def test_copy_between_dates(client, store):
    store.set(
        "explore_landings/20240101",
        {
            "videos": [
                {"id": "s1", "title": "One", "priority": 2, "created_at": "2024-01-01T08:00:00Z"},
                {"id": "s2", "title": "Two", "priority": 1, "created_at": "2024-01-01T08:00:00Z"},
            ],
            "layouts": {"hero": "s1"},
        },
    )
    store.set("explore_landings/20240102", {"videos": [{"id": "keep", "title": "Kept", "priority": 0}]})
    store.set("explore_landings/20240109", {"videos": []})

    r = client.post("/api/explore/copy", json={"sourceDateId": "20240101"})
    assert r.status_code == 400
    assert r.json["error"] == "sourceDateId and targetDateIds (array) are required"

    r = client.post("/api/explore/copy", json={"sourceDateId": "20230101", "targetDateIds": ["20240102"]})
    assert r.status_code == 404
    assert r.json["error"] == "Source date 20230101 not found"

    r = client.post("/api/explore/copy", json={"sourceDateId": "20240109", "targetDateIds": ["20240102"]})
    assert r.json["error"] == "Source date has no videos to copy"

    r = client.post(
        "/api/explore/copy",
        json={"sourceDateId": "20240101", "targetDateIds": ["20240102", "20240103", "tomorrow"], "copyLayouts": True},
    )
    assert r.status_code == 200
    assert r.json["summary"] == {"total": 3, "successful": 2, "failed": 1}
    first, second, bad = r.json["results"]
    assert first == {"targetDateId": "20240102", "success": True, "videosCopied": 2, "totalVideos": 3}
    assert second["totalVideos"] == 2
    assert bad["success"] is False

    target = store.get("explore_landings/20240102")
    assert [v["title"] for v in target["videos"]] == ["One", "Two", "Kept"]
    assert not {"s1", "s2"} & {v["id"] for v in target["videos"]}
    assert target["layouts"] == {"hero": "s1"}
    assert "layouts" in store.get("explore_landings/20240103")


def test_viewer_cannot_edit_explore(app, client):
    _add(client, "20240101")
    viewer = _login(app, "viewer@example.com")
    assert viewer.post("/api/explore", json={"title": "x"}).status_code == 403
    assert viewer.delete("/api/explore?dateId=20240101&videoId=x").status_code == 403


def test_sort_and_priority_helpers():
    items = [
        {"id": "b", "priority": 1, "created_at": "2024-01-01T00:00:00Z"},
        {"id": "a", "priority": 1, "created_at": "2024-01-01T00:00:00Z"},
        {"id": "c", "priority": 1, "created_at": "2024-02-01T00:00:00Z"},
        {"id": "d", "priority": 4},
    ]
    assert [v["id"] for v in sort_videos(items)] == ["d", "c", "a", "b"]
    assert normalize_priority("2.9") == 2
    assert normalize_priority(float("inf")) == 0
    assert normalize_priority(True) == 0
    assert normalize_priority("abc") == 0
