from datetime import datetime, timedelta, timezone

import pytest
from werkzeug.security import generate_password_hash

from app.wellness_admin import auth as auth_module
from app.wellness_admin import create_app
from app.wellness_admin.cache import cache
from app.wellness_admin.db import session_scope
from app.wellness_admin.docstore import SqlDocumentStore, to_datetime, utcnow
from app.wellness_admin.models import AuditEvent, Base, SecuritySettings, User
from app.wellness_admin.modules.notifications.router import (
    next_local_time,
    next_weekday_time,
    normalize_days,
    recurrence_fields,
)
from app.wellness_admin.push import PushError

CRON_SECRET = "cron-secret"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFICATIONS_CRON_SECRET", CRON_SECRET)
    for k in ("DOCSTORE_BACKEND", "TRUSTED_PROXY_HOPS"):
        monkeypatch.delenv(k, raising=False)
    auth_module._login_attempts.clear()
    cache.clear()

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
        s.add(User(email="editor@example.com", name="Editor", password_hash=generate_password_hash("pw"), role="admin"))
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


def _cron(app, task="all", secret=CRON_SECRET):
    headers = {"X-Cron-Secret": secret} if secret is not None else {}
    return app.test_client().post(f"/api/notifications/cron?task={task}", headers=headers)


def _seed_users(store):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    store.set("users/u1", {"firstname": "One", "fcm_token": "tok-1", "tz_offset_minutes": 60, "time": base})
    store.set("users/u2", {"firstname": "Two", "time": base + timedelta(days=1)})
    store.set("users/u3", {"firstname": "Three", "fcmToken": "tok-3", "time": base + timedelta(days=2)})


def _queue_item(store, queue_id, **fields):
    item = {
        "category": "admin",
        "type": "iki_home",
        "title": "Hello",
        "body": "World",
        "recipient_id": "u1",
        "status": "pending",
        "scheduled_at": utcnow() - timedelta(minutes=5),
    }
    item.update(fields)
    store.set(f"notification_queue/{queue_id}", item)


def _message(**fields):
    payload = {"title": "Hi", "body": "There", "type": "iki_home", "audience": {"mode": "users", "userIds": ["u1"]}, "schedule": {"mode": "now"}}
    payload.update(fields)
    return payload


def test_enqueue_validates_payload(client, store):
    _seed_users(store)
    r = client.post("/api/notifications/queue", json={"title": "Hi"})
    assert r.status_code == 400
    assert r.json["error"] == "title, body, and type are required"

    assert client.post("/api/notifications/queue", json=_message(audience=None)).json["error"] == "audience is required"
    assert client.post("/api/notifications/queue", json=_message(schedule={})).json["error"] == "schedule is required"
    r = client.post("/api/notifications/queue", json=_message(schedule={"mode": "at_user_local", "hour": "8", "minute": 0}))
    assert r.json["error"] == "schedule.hour and schedule.minute must be numbers for at_user_local"
    r = client.post("/api/notifications/queue", json=_message(schedule={"mode": "at_utc", "atUtc": "soon"}))
    assert r.json["error"] == "Invalid schedule.atUtc"
    r = client.post("/api/notifications/queue", json=_message(audience={"mode": "users", "userIds": [" ", ""]}))
    assert r.json["error"] == "No users selected"


def test_enqueue_for_users_and_send_now(app, client, store):
    _seed_users(store)
    r = client.post(
        "/api/notifications/queue",
        json=_message(
            audience={"mode": "users", "userIds": ["u1", "u2", "ghost", "u1"]},
            schedule={"mode": "at_user_local", "hour": 9, "minute": 30},
            data={"screen": "home"},
        ),
    )
    assert r.status_code == 200
    assert r.json == {"ok": True, "mode": "users", "created": 2}

    items = client.get("/api/notifications/queue").json["items"]
    assert sorted(i["recipient_id"] for i in items) == ["u1", "u2"]
    by_user = {i["recipient_id"]: i for i in items}
    stored = store.get(f"notification_queue/{by_user['u1']['id']}")
    assert (stored["hour"], stored["minute"], stored["tz_offset_minutes"]) == (9, 30, 60)
    local = to_datetime(stored["scheduled_at"]) + timedelta(minutes=60)
    assert (local.hour, local.minute) == (9, 30)

    r = client.post(f"/api/notifications/queue/{by_user['u1']['id']}/send", json={"force": False})
    assert r.status_code == 409
    assert "scheduled in the future" in r.json["message"]

    r = client.post(f"/api/notifications/queue/{by_user['u1']['id']}/send")
    assert r.status_code == 200
    assert r.json["sent"] == 1
    assert store.get(f"notification_queue/{by_user['u1']['id']}")["status"] == "sent"

    r = client.post(f"/api/notifications/queue/{by_user['u2']['id']}/send")
    assert r.json["failed"] == 1
    assert store.get(f"notification_queue/{by_user['u2']['id']}")["error"] == "Recipient has no FCM token"

    r = client.post(f"/api/notifications/queue/{by_user['u1']['id']}/send")
    assert r.status_code == 409
    assert r.json["message"] == "Queue item is not pending (status=sent)"
    assert client.post("/api/notifications/queue/missing/send").status_code == 404

    with session_scope(app) as s:
        actions = {e.action for e in s.query(AuditEvent).all()}
    assert {"NOTIFICATION_ENQUEUED", "NOTIFICATION_SENT_NOW"} <= actions


def test_queue_listing_filters_and_cancel(client, store):
    _seed_users(store)
    _queue_item(store, "q1")
    _queue_item(store, "q2", status="sent")

    assert [i["id"] for i in client.get("/api/notifications/queue").json["items"]] == ["q1"]
    assert {i["id"] for i in client.get("/api/notifications/queue?status=all").json["items"]} == {"q1", "q2"}
    assert client.get("/api/notifications/queue?status=bogus").status_code == 400

    store.update("notification_queue/q1", {"repeat": "daily", "remaining_occurrences": 3})
    assert client.patch("/api/notifications/queue/missing", json={}).status_code == 404
    r = client.patch("/api/notifications/queue/q1", json={})
    assert r.json == {"ok": True}
    item = store.get("notification_queue/q1")
    assert item["status"] == "skipped"
    assert item["skipped_reason"] == "manual_removed"
    assert item["repeat"] is None

    stats = client.get("/api/notifications/stats").json
    assert stats["stats"] == {"pending": 0, "sent": 1, "failed": 0, "skipped": 1}
    assert stats["configSummary"]["autoCronEnabled"] is True


def test_globally_disabled_blocks_enqueue_and_pauses_sending(client, store):
    _seed_users(store)
    _queue_item(store, "q1")
    r = client.put("/api/notifications/config", json={"config": {"globalEnabled": False}})
    assert r.status_code == 200
    assert r.json["config"]["globalEnabled"] is False

    r = client.post("/api/notifications/queue", json=_message())
    assert r.status_code == 409
    r = client.post("/api/notifications/queue/q1/send")
    assert r.status_code == 409
    assert r.json["paused"] is True
    assert store.get("notification_queue/q1")["status"] == "pending"


def test_config_merges_partial_updates(client):
    config = client.get("/api/notifications/config").json["config"]
    assert config["connect"]["rateLimitsMs"]["connect_comment"] == 60_000
    assert config["engagement"]["schedule"]["water"] == {"hour": 8, "minute": 0}

    r = client.put("/api/notifications/config", json={"connect": {"rateLimitsMs": {"connect_like": 1000}}})
    limits = r.json["config"]["connect"]["rateLimitsMs"]
    assert limits["connect_like"] == 1000
    assert limits["connect_comment"] == 60_000
    assert r.json["config"]["connect"]["enabled"] is True

    assert client.put("/api/notifications/config", json={"connect": "off"}).status_code == 400
    assert client.put("/api/notifications/config", json=["x"]).status_code == 400


def test_cron_requires_shared_secret(app, store):
    assert _cron(app, secret=None).status_code == 401
    assert _cron(app, secret="wrong").status_code == 401
    assert _cron(app, task="bogus").status_code == 400

    app.config["NOTIFICATIONS_CRON_SECRET"] = ""
    r = _cron(app)
    assert r.status_code == 500
    assert r.json["error"] == "NOTIFICATIONS_CRON_SECRET is not configured"


def test_cron_processes_due_items(app, client, store):
    _seed_users(store)
    _queue_item(store, "due")
    _queue_item(store, "later", scheduled_at=utcnow() + timedelta(hours=2))

    r = _cron(app, task="process")
    assert r.status_code == 200
    assert r.json["process"] == {"processed": 1, "sent": 1, "failed": 0, "skipped": 0, "paused": False}
    assert store.get("notification_queue/due")["status"] == "sent"
    assert store.get("notification_queue/later")["status"] == "pending"

    client.put("/api/notifications/config", json={"autoCronEnabled": False})
    r = _cron(app, task="process")
    assert r.json["skipped"] is True


def test_recurring_item_is_rescheduled_until_occurrences_run_out(app, store):
    _seed_users(store)
    _queue_item(store, "daily", repeat="daily", hour=7, minute=0, tz_offset_minutes=60, remaining_occurrences=2)

    _cron(app, task="process")
    item = store.get("notification_queue/daily")
    assert item["status"] == "pending"
    assert item["remaining_occurrences"] == 1
    next_at = to_datetime(item["scheduled_at"])
    assert next_at > utcnow()
    assert (next_at + timedelta(minutes=60)).hour == 7

    store.update("notification_queue/daily", {"scheduled_at": utcnow() - timedelta(minutes=1)})
    _cron(app, task="process")
    assert store.get("notification_queue/daily")["status"] == "sent"


def test_dedupe_and_connect_gates(app, client, store):
    _seed_users(store)
    earlier = utcnow() - timedelta(minutes=10)
    _queue_item(store, "d1", dedupe_key="promo:u1", dedupe_window_ms=60_000, scheduled_at=earlier)
    _queue_item(store, "d2", dedupe_key="promo:u1", dedupe_window_ms=60_000)
    _queue_item(store, "c1", category="connect", type="connect_comment", sender_id="s1", scheduled_at=earlier)
    _queue_item(store, "c2", category="connect", type="connect_comment", sender_id="s1")
    _queue_item(store, "b1", category="connect", type="connect_like", sender_id="spammer")
    client.put("/api/notifications/config", json={"connect": {"blockedSenders": ["spammer"]}})

    r = _cron(app, task="process")
    assert r.json["process"]["sent"] == 2
    assert store.get("notification_queue/d2")["skipped_reason"] == "deduped"
    assert store.get("notification_queue/c2")["skipped_reason"] == "rate_limited"
    assert store.get("notification_queue/c2")["retry_after_ms"] > 0
    assert store.get("notification_queue/b1")["skipped_reason"] == "blocked_sender"


def test_disabled_category_stays_pending(app, client, store):
    _seed_users(store)
    _queue_item(store, "e1", category="engagement")
    client.put("/api/notifications/config", json={"engagement": {"enabled": False}})

    r = _cron(app, task="process")
    assert r.json["process"]["skipped"] == 1
    assert store.get("notification_queue/e1")["status"] == "pending"


def test_invalid_token_fails_item_and_clears_token(app, store):
    _seed_users(store)
    _queue_item(store, "q1")

    class _Rejecting:
        def send(self, token, payload):
            raise PushError("Requested entity was not found.", invalid_token=True)

    app.extensions["push_sender"] = _Rejecting()
    r = _cron(app, task="process")
    assert r.json["process"]["failed"] == 1
    item = store.get("notification_queue/q1")
    assert item["status"] == "failed"
    assert item["error_code"] == "invalid_token"
    assert store.get("users/u1")["fcm_token"] is None


def test_payload_carries_type_and_sender(app, store):
    _seed_users(store)
    _queue_item(store, "q1", type="mindscape_mood", sender_name="Coach", data={"n": 1})
    sent = []

    class _Recording:
        def send(self, token, payload):
            sent.append((token, payload))
            return "m-1"

    app.extensions["push_sender"] = _Recording()
    _cron(app, task="process")
    token, payload = sent[0]
    assert token == "tok-1"
    assert payload["notification"] == {"title": "Hello", "body": "World"}
    assert payload["data"]["type"] == "mindscape_mood"
    assert payload["data"]["sender_name"] == "Coach"
    assert payload["data"]["n"] == "1"


def test_broadcast_expands_then_completes(app, client, store):
    _seed_users(store)
    r = client.post("/api/notifications/queue", json=_message(audience={"mode": "all"}))
    assert r.json["mode"] == "broadcast"
    broadcast_id = r.json["broadcastId"]

    r = _cron(app, task="broadcasts")
    assert r.json["broadcasts"] == {"processed": 1, "expanded": 3}
    queued = store.query("notification_queue", where=[("campaign_id", "==", broadcast_id)])
    assert sorted(d.data["recipient_id"] for d in queued) == ["u1", "u2", "u3"]

    _cron(app, task="broadcasts")
    listed = client.get("/api/notifications/broadcasts").json["broadcasts"]
    assert listed[0]["id"] == broadcast_id
    assert listed[0]["status"] == "completed"
    assert listed[0]["total_enqueued"] == 3

    r = client.post(f"/api/notifications/broadcasts/{broadcast_id}/purge")
    assert r.json == {"ok": True, "updated": 3}
    assert {d.data["skipped_reason"] for d in store.query("notification_queue")} == {"broadcast_cancelled"}


def test_broadcast_status_updates(client, store):
    _seed_users(store)
    broadcast_id = client.post("/api/notifications/queue", json=_message(audience={"mode": "all"})).json["broadcastId"]

    assert client.patch("/api/notifications/broadcasts/missing", json={"status": "cancelled"}).status_code == 404
    assert client.patch(f"/api/notifications/broadcasts/{broadcast_id}", json={}).json["error"] == "status is required"
    assert client.patch(f"/api/notifications/broadcasts/{broadcast_id}", json={"status": "paused"}).json["error"] == "Invalid status"

    r = client.patch(f"/api/notifications/broadcasts/{broadcast_id}", json={"status": "cancelled"})
    assert r.json == {"ok": True}
    broadcast = store.get(f"notification_broadcasts/{broadcast_id}")
    assert broadcast["status"] == "cancelled"
    assert broadcast["cancelled_at"] is not None


def test_engagement_schedule_runs_once_per_user(app, store):
    now = utcnow()
    store.set("users/fresh", {"fcm_token": "tok", "fcm_token_updated_at": now, "tz_offset_minutes": -300})
    store.set("users/silent", {"fcm_token_updated_at": now})

    r = _cron(app, task="schedule")
    assert r.json["schedule"] == {"scanned": 2, "scheduled": 2, "disabled": False}
    queued = store.query("notification_queue", where=[("recipient_id", "==", "fresh")])
    assert len([d for d in queued if d.id.startswith("intro_")]) == 7
    recurring = [d for d in queued if d.id.startswith("recurring_")]
    assert len(recurring) == 6
    assert {d.data["repeat"] for d in recurring} == {"daily"}
    water = store.get("notification_queue/recurring_fresh_water_advertisement")
    assert (to_datetime(water["scheduled_at"]) - timedelta(minutes=300)).hour == 8
    assert store.get("users/fresh")["engagement_first_time_scheduled"] is True

    r = _cron(app, task="schedule")
    assert r.json["schedule"]["scheduled"] == 0


def test_notification_routes_need_fcm_permission(app):
    c = app.test_client()
    r = c.post("/api/auth/login", json={"email": "editor@example.com", "password": "pw"})
    c.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrfToken"]
    assert c.get("/api/notifications/queue").status_code == 403
    assert c.post("/api/notifications/queue", json=_message()).status_code == 403


def test_local_time_helpers():
    now = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)  # Monday
    assert next_local_time(now, 60, 9, 0) == datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc)
    assert next_local_time(now, 60, 12, 0) == datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)
    # 3 = Wednesday
    assert next_weekday_time(now, 60, 9, 0, [3]) == datetime(2024, 1, 3, 8, 0, tzinfo=timezone.utc)
    assert next_weekday_time(now, 0, 9, 0, []) == datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)
    assert normalize_days([3, "1", 9, 3, "x"]) == [1, 3]

    assert recurrence_fields({"mode": "none"}) == {}
    assert recurrence_fields({"mode": "every_n_days", "intervalDays": 0, "occurrences": 2.5}) == {
        "repeat": "every_n_days",
        "interval_days": 1,
        "remaining_occurrences": 2,
    }
