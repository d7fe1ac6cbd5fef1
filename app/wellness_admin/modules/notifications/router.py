"""
Notification queue engine.

Queue items live in `notification_queue`; each one targets a single
recipient and is delivered by the configured push sender once its
`scheduled_at` has passed. Recurring items are rescheduled to the next
local-clock slot after each send instead of being marked sent.

The router config (`notification_config/global`) is a partial document;
`load_config` fills every missing key from DEFAULT_CONFIG so callers
always see the full shape.
"""
from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from app.wellness_admin.docstore import Document, DocumentStore, to_datetime, utcnow
from app.wellness_admin.modules.app_users.service import fcm_token_of
from app.wellness_admin.push import PushError, PushSender, build_message_payload

logger = logging.getLogger(__name__)

QUEUE = "notification_queue"
BROADCASTS = "notification_broadcasts"
DEDUPE = "notification_dedupe"
CONNECT_RATE_LIMITS = "connect_notification_rate_limits"
CONFIG_PATH = "notification_config/global"

QUEUE_STATUSES = ("pending", "sent", "failed", "skipped")
REPEAT_MODES = ("daily", "every_n_days", "weekdays")
ENGAGEMENT_FEATURES = ("water", "daily_checkin", "mood", "meal_tracking", "journal", "gratitude")

DEFAULT_CONFIG: dict[str, Any] = {
    "globalEnabled": True,
    "processingEnabled": True,
    # Cron calls are no-ops when false; manual sends from the admin still work.
    "autoCronEnabled": True,
    "connect": {
        "enabled": True,
        "rateLimitsMs": {
            "connect_comment": 60_000,
            "connect_general": 5 * 60_000,
            "connect_friend_request": 10 * 60_000,
        },
        "blockedSenders": [],
    },
    "engagement": {
        "enabled": True,
        "firstTimeEnabled": True,
        "recurringEnabled": True,
        "schedule": {
            "water": {"hour": 8, "minute": 0},
            "daily_checkin": {"hour": 9, "minute": 0},
            "mood": {"hour": 10, "minute": 0},
            "meal_tracking": {"hour": 12, "minute": 0},
            "journal": {"hour": 20, "minute": 0},
            "gratitude": {"hour": 21, "minute": 0},
        },
        "templates": {
            "intro": {
                "water": {
                    "title": "Stay Hydrated",
                    "body": "Track your water intake! Start with a glass of water and build a healthy habit.",
                },
                "daily_checkin": {
                    "title": "Daily Wellness Check",
                    "body": "Quick daily check-in! Track your sleep, energy, and overall wellbeing.",
                },
                "mood": {
                    "title": "How Are You Feeling?",
                    "body": "Track your mood throughout the day. It helps you understand your emotional patterns!",
                },
                "meal_tracking": {
                    "title": "Track Your Meals",
                    "body": "Good nutrition is key to wellness. Start logging your meals to build healthy eating habits!",
                },
                "journal": {
                    "title": "Start Journaling",
                    "body": "Writing helps you process your thoughts and emotions. Try your first journal entry!",
                },
                "gratitude": {
                    "title": "Practice Gratitude",
                    "body": "What are you grateful for today? Gratitude practice boosts happiness and wellbeing!",
                },
            },
            "recurring": {
                "water": {"title": "Stay Hydrated", "body": "Don't forget to track your water intake today!"},
                "daily_checkin": {
                    "title": "Daily Wellness Check",
                    "body": "How are you feeling today? Take a moment for your daily check-in!",
                },
                "mood": {"title": "How Are You Feeling?", "body": "Track your mood to understand your emotional patterns better!"},
                "meal_tracking": {"title": "Track Your Meals", "body": "Log your meals to build healthy eating habits!"},
                "journal": {"title": "Journal Time", "body": "Reflect on your day and process your thoughts through journaling!"},
                "gratitude": {
                    "title": "Gratitude Moment",
                    "body": "What are you grateful for today? Practice gratitude for better wellbeing!",
                },
            },
        },
        "recurringRules": {key: {"repeat": "daily"} for key in ENGAGEMENT_FEATURES},
    },
}

# Screen each engagement feature opens in the app.
_ENGAGEMENT_TYPES = {
    "water": "water_general",
    "daily_checkin": "wellsphere_general",
    "mood": "mindscape_mood",
    "meal_tracking": "nutrition_general",
    "journal": "mindscape_journal",
    "gratitude": "mindscape_gratitude",
}

WELCOME_DELAY = timedelta(minutes=2)
SHORT_DEDUPE_WINDOW_MS = 2 * 60_000
# Intro pushes go out once per user.
ONCE_DEDUPE_WINDOW_MS = 10 * 365 * 24 * 60 * 60_000


# ---------- config ----------
def _deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def load_config(store: DocumentStore) -> dict[str, Any]:
    data = store.get(CONFIG_PATH) or {}
    data.pop("updated_at", None)
    config = _deep_merge(DEFAULT_CONFIG, data)
    if not isinstance(config["connect"].get("blockedSenders"), list):
        config["connect"]["blockedSenders"] = []
    if not isinstance(config["connect"].get("rateLimitsMs"), dict):
        config["connect"]["rateLimitsMs"] = dict(DEFAULT_CONFIG["connect"]["rateLimitsMs"])
    return config


def config_patch_problem(patch: Any) -> str | None:
    if not isinstance(patch, dict):
        return "Invalid config payload"
    for key in ("connect", "engagement"):
        if key in patch and not isinstance(patch[key], dict):
            return f"{key} must be an object"
    return None


def save_config(store: DocumentStore, patch: dict[str, Any]) -> dict[str, Any]:
    """Merge `patch` into the stored config and return the effective config."""
    current = store.get(CONFIG_PATH) or {}
    current.pop("updated_at", None)
    merged = _deep_merge(current, patch)
    store.set(CONFIG_PATH, {**merged, "updated_at": utcnow()})
    return load_config(store)


def config_summary(config: dict[str, Any]) -> dict[str, bool]:
    return {
        "globalEnabled": bool(config["globalEnabled"]),
        "processingEnabled": bool(config["processingEnabled"]),
        "autoCronEnabled": bool(config["autoCronEnabled"]),
        "connectEnabled": bool(config["connect"]["enabled"]),
        "engagementEnabled": bool(config["engagement"]["enabled"]),
        "firstTimeEnabled": bool(config["engagement"]["firstTimeEnabled"]),
        "recurringEnabled": bool(config["engagement"]["recurringEnabled"]),
    }


# ---------- scheduling ----------
def as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def clamp(n: int, low: int, high: int) -> int:
    return min(max(n, low), high)


def normalize_days(value: Any) -> list[int]:
    """Weekday list, 0=Sunday..6=Saturday, deduplicated and sorted."""
    if not isinstance(value, list):
        return []
    days = {as_int(v, -1) for v in value}
    return sorted(d for d in days if 0 <= d <= 6)


def next_local_time(now: datetime, tz_offset_minutes: int, hour: int, minute: int) -> datetime:
    """Next UTC instant at which the recipient's wall clock reads hour:minute (strictly after now)."""
    offset = timedelta(minutes=tz_offset_minutes)
    local_now = now + offset
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate += timedelta(days=1)
    return candidate - offset


def next_weekday_time(now: datetime, tz_offset_minutes: int, hour: int, minute: int, days: list[int]) -> datetime:
    days = normalize_days(days)
    if not days:
        return next_local_time(now, tz_offset_minutes, hour, minute)
    offset = timedelta(minutes=tz_offset_minutes)
    candidate = next_local_time(now, tz_offset_minutes, hour, minute) + offset
    for _ in range(7):
        if (candidate.weekday() + 1) % 7 in days:
            return candidate - offset
        candidate += timedelta(days=1)
    return next_local_time(now, tz_offset_minutes, hour, minute)


def recurrence_fields(recurrence: dict[str, Any] | None) -> dict[str, Any]:
    """Queue-item repeat fields for a {"mode": ...} recurrence block."""
    rec = recurrence if isinstance(recurrence, dict) else {}
    mode = rec.get("mode") or "none"
    if mode not in REPEAT_MODES:
        return {}
    fields: dict[str, Any] = {"repeat": mode}
    if mode == "every_n_days":
        fields["interval_days"] = max(1, as_int(rec.get("intervalDays"), 1))
    if mode == "weekdays":
        fields["days_of_week"] = normalize_days(rec.get("daysOfWeek"))
    occurrences = rec.get("occurrences")
    if isinstance(occurrences, (int, float)) and not isinstance(occurrences, bool):
        fields["remaining_occurrences"] = max(1, int(occurrences))
    return fields


def _next_occurrence(item: dict[str, Any], now: datetime) -> datetime:
    tz = as_int(item.get("tz_offset_minutes"), 0)
    hour = clamp(as_int(item.get("hour"), 0), 0, 23)
    minute = clamp(as_int(item.get("minute"), 0), 0, 59)
    repeat = item.get("repeat")
    if repeat == "every_n_days":
        interval = max(1, as_int(item.get("interval_days"), 1))
        return next_local_time(now, tz, hour, minute) + timedelta(days=interval - 1)
    if repeat == "weekdays":
        return next_weekday_time(now, tz, hour, minute, item.get("days_of_week") or [])
    return next_local_time(now, tz, hour, minute)


def stringify_data(data: dict[str, Any] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in (data or {}).items():
        if value is None:
            continue
        out[str(key)] = value if isinstance(value, str) else json.dumps(value)
    return out


# ---------- processing ----------
@dataclass
class Outcome:
    outcome: str  # sent | failed | skipped | deferred
    counted_as: str  # sent | failed | skipped
    message: str = ""


def _mark(store: DocumentStore, path: str, **fields: Any) -> None:
    store.set(path, {**fields, "updated_at": utcnow()}, merge=True)


def _connect_allowed(store: DocumentStore, sender_id: str, recipient_id: str, kind: str, cooldown_ms: int, now: datetime) -> int:
    """0 when the send may go ahead, else the milliseconds left on the cooldown."""
    path = f"{CONNECT_RATE_LIMITS}/{sender_id}-{recipient_id}"
    last = to_datetime((store.get(path) or {}).get(kind))
    if last is not None:
        elapsed_ms = int((now - last).total_seconds() * 1000)
        if elapsed_ms < cooldown_ms:
            return cooldown_ms - elapsed_ms
    store.set(path, {kind: now, "updated_at": now, "sender_id": sender_id, "recipient_id": recipient_id}, merge=True)
    return 0


def process_item(store: DocumentStore, sender: PushSender, config: dict[str, Any], doc: Document) -> Outcome:
    item = doc.data
    path = doc.path
    category = str(item.get("category") or "")
    kind = str(item.get("type") or "")
    title = str(item.get("title") or "")
    body = str(item.get("body") or "")
    recipient_id = str(item.get("recipient_id") or "")
    sender_id = str(item.get("sender_id") or "")
    now = utcnow()

    # Disabled categories stay pending until re-enabled.
    if category == "connect" and not config["connect"]["enabled"]:
        return Outcome("deferred", "skipped", "Connect processing disabled")
    if category == "engagement" and not config["engagement"]["enabled"]:
        return Outcome("deferred", "skipped", "Engagement processing disabled")

    if category == "connect" and sender_id and sender_id in config["connect"]["blockedSenders"]:
        _mark(store, path, status="skipped", skipped_reason="blocked_sender")
        return Outcome("skipped", "skipped", "Blocked sender")

    if not kind or not title or not body or not recipient_id:
        _mark(store, path, status="failed", error="Missing required fields (type/title/body/recipient_id)")
        return Outcome("failed", "failed", "Missing required fields")

    dedupe_key = str(item.get("dedupe_key") or "").strip()
    dedupe_window_ms = as_int(item.get("dedupe_window_ms"), 0)
    if dedupe_key and dedupe_window_ms > 0:
        last_sent = to_datetime((store.get(f"{DEDUPE}/{dedupe_key}") or {}).get("sent_at"))
        if last_sent is not None:
            age_ms = (now - last_sent).total_seconds() * 1000
            if 0 <= age_ms < dedupe_window_ms:
                _mark(store, path, status="skipped", skipped_reason="deduped")
                return Outcome("skipped", "skipped", "Deduped")

    if kind.startswith("connect_") and sender_id:
        cooldown_ms = as_int(config["connect"]["rateLimitsMs"].get(kind), 0)
        if cooldown_ms > 0:
            retry_after_ms = _connect_allowed(store, sender_id, recipient_id, kind, cooldown_ms, now)
            if retry_after_ms:
                _mark(store, path, status="skipped", skipped_reason="rate_limited", retry_after_ms=retry_after_ms)
                return Outcome("skipped", "skipped", "Rate limited")

    token = fcm_token_of(store.get(f"users/{recipient_id}") or {})
    if not token or not str(token).strip():
        _mark(store, path, status="failed", error="Recipient has no FCM token")
        return Outcome("failed", "failed", "Recipient has no FCM token")

    data = stringify_data(
        {
            **(item.get("data") if isinstance(item.get("data"), dict) else {}),
            "recipient_id": recipient_id,
            "sender_id": sender_id or None,
            "sender_name": item.get("sender_name") or None,
            "sender_avatar": item.get("sender_avatar") or None,
        }
    )
    try:
        sender.send(str(token), build_message_payload(title, body, data, recipient_id, kind=kind))
    except PushError as e:
        if e.invalid_token:
            store.set(
                f"users/{recipient_id}",
                {"fcm_token": None, "fcmToken": None, "device_token": None, "fcm_token_invalidated_at": now},
                merge=True,
            )
            logger.info("Cleared invalid push token for user %s", recipient_id)
        _mark(store, path, status="failed", error=str(e) or "FCM send failed", error_code="invalid_token" if e.invalid_token else None)
        return Outcome("failed", "failed", str(e) or "FCM send failed")

    if dedupe_key and dedupe_window_ms > 0:
        store.set(
            f"{DEDUPE}/{dedupe_key}",
            {"dedupe_key": dedupe_key, "sent_at": now, "type": kind, "recipient_id": recipient_id, "sender_id": sender_id or None},
            merge=True,
        )

    remaining = item.get("remaining_occurrences")
    next_remaining = max(0, int(remaining) - 1) if isinstance(remaining, (int, float)) and not isinstance(remaining, bool) else None
    end_at = to_datetime(item.get("end_at"))
    stop = (next_remaining == 0) or (end_at is not None and now >= end_at)

    if item.get("repeat") in REPEAT_MODES and not stop:
        next_at = _next_occurrence(item, now)
        if end_at is not None and next_at > end_at:
            _mark(store, path, status="sent", sent_at=now)
        else:
            fields: dict[str, Any] = {"status": "pending", "last_sent_at": now, "scheduled_at": next_at}
            if next_remaining is not None:
                fields["remaining_occurrences"] = next_remaining
            _mark(store, path, **fields)
    else:
        _mark(store, path, status="sent", sent_at=now)
    return Outcome("sent", "sent", "Sent")


def _paused(config: dict[str, Any]) -> bool:
    return not config["globalEnabled"] or not config["processingEnabled"]


def process_due(store: DocumentStore, sender: PushSender, config: dict[str, Any], *, limit: int) -> dict[str, Any]:
    """Deliver pending items whose scheduled time has passed, oldest first."""
    counts = {"processed": 0, "sent": 0, "failed": 0, "skipped": 0}
    if _paused(config):
        return {**counts, "paused": True}
    docs = store.query(
        QUEUE,
        where=[("status", "==", "pending"), ("scheduled_at", "<=", utcnow())],
        order_by="scheduled_at",
        limit=limit,
    )
    for doc in docs:
        counts["processed"] += 1
        counts[process_item(store, sender, config, doc).counted_as] += 1
    logger.info("Notification queue run: %s", counts)
    return {**counts, "paused": False}


def process_one(store: DocumentStore, sender: PushSender, config: dict[str, Any], queue_id: str, *, force: bool = True) -> dict[str, Any]:
    base = {"processed": 0, "sent": 0, "failed": 0, "skipped": 0}
    if _paused(config):
        return {"ok": False, "paused": True, **base, "message": "Notifications are paused (globalEnabled/processingEnabled)"}
    path = f"{QUEUE}/{queue_id}"
    item = store.get(path)
    if item is None:
        return {"ok": False, "paused": False, **base, "message": "Queue item not found"}
    status = item.get("status")
    if status and status != "pending":
        return {"ok": False, "paused": False, **base, "message": f"Queue item is not pending (status={status})"}
    scheduled_at = to_datetime(item.get("scheduled_at"))
    if not force and scheduled_at is not None and scheduled_at > utcnow():
        return {"ok": False, "paused": False, **base, "message": "Queue item is scheduled in the future (use force=true)"}

    result = process_item(store, sender, config, Document(id=queue_id, data=item, collection=QUEUE))
    counts = {**base, "processed": 1, result.counted_as: 1}
    return {"ok": True, "paused": False, **counts, "outcome": result.outcome, "message": result.message or None}


def queue_stats(store: DocumentStore) -> dict[str, int]:
    return {status: store.count(QUEUE, where=[("status", "==", status)]) for status in QUEUE_STATUSES}


# ---------- engagement ----------
def _slot(slots: dict[str, Any], key: str) -> tuple[int, int]:
    slot = slots.get(key) if isinstance(slots.get(key), dict) else {}
    default = DEFAULT_CONFIG["engagement"]["schedule"][key]
    return (
        clamp(as_int(slot.get("hour"), default["hour"]), 0, 23),
        clamp(as_int(slot.get("minute"), default["minute"]), 0, 59),
    )


def _engagement_item(user_id: str, kind: str, title: str, body: str, at: datetime, dedupe_key: str, window_ms: int) -> dict[str, Any]:
    now = utcnow()
    return {
        "category": "engagement",
        "type": kind,
        "title": title,
        "body": body,
        "recipient_id": user_id,
        "status": "pending",
        "scheduled_at": at,
        "created_at": now,
        "updated_at": now,
        "dedupe_key": dedupe_key,
        "dedupe_window_ms": window_ms,
    }


def schedule_engagement(store: DocumentStore, config: dict[str, Any], *, limit: int) -> dict[str, Any]:
    """
    Queue the one-off intro pushes and the recurring feature reminders for
    users with a push token who have not been scheduled yet. Queue ids are
    derived from user and feature, so overlapping runs rewrite the same items.
    """
    engagement = config["engagement"]
    if not config["globalEnabled"] or not engagement["enabled"]:
        return {"scanned": 0, "scheduled": 0, "disabled": True}

    users = store.query("users", order_by="fcm_token_updated_at", descending=True, limit=limit)
    scheduled = 0
    for user in users:
        if not fcm_token_of(user.data):
            continue
        tz = as_int(user.data.get("tz_offset_minutes"), 0)
        now = utcnow()
        slots = engagement["schedule"]

        if engagement["firstTimeEnabled"] and not user.data.get("engagement_first_time_scheduled"):
            intros = [
                (
                    "welcome_intro",
                    "iki_home",
                    "Welcome!",
                    "Let's build healthy habits together. We'll introduce you to some amazing features!",
                    now + WELCOME_DELAY,
                )
            ]
            for key in ENGAGEMENT_FEATURES:
                tpl = engagement["templates"]["intro"][key]
                at = next_local_time(now, tz, *_slot(slots, key))
                intros.append((f"{key}_intro", _ENGAGEMENT_TYPES[key], tpl["title"], tpl["body"], at))
            for intro_id, kind, title, body, at in intros:
                store.set(
                    f"{QUEUE}/intro_{user.id}_{intro_id}",
                    _engagement_item(user.id, kind, title, body, at, f"intro:{user.id}:{intro_id}", ONCE_DEDUPE_WINDOW_MS),
                    merge=True,
                )
            store.set(
                f"users/{user.id}",
                {"engagement_first_time_scheduled": True, "engagement_first_time_scheduled_at": now},
                merge=True,
            )
            scheduled += 1

        if engagement["recurringEnabled"] and not user.data.get("engagement_recurring_scheduled"):
            for key in ENGAGEMENT_FEATURES:
                rule = engagement["recurringRules"].get(key) or {"repeat": "daily"}
                repeat = rule.get("repeat") if rule.get("repeat") in REPEAT_MODES else "daily"
                hour, minute = _slot(slots, key)
                days = normalize_days(rule.get("daysOfWeek"))
                if repeat == "weekdays":
                    at = next_weekday_time(now, tz, hour, minute, days)
                else:
                    at = next_local_time(now, tz, hour, minute)
                tpl = engagement["templates"]["recurring"][key]
                item = _engagement_item(
                    user.id, _ENGAGEMENT_TYPES[key], tpl["title"], tpl["body"], at,
                    f"recurring:{user.id}:{key}_advertisement", SHORT_DEDUPE_WINDOW_MS,
                )
                item.update({"repeat": repeat, "hour": hour, "minute": minute, "tz_offset_minutes": tz})
                if repeat == "every_n_days":
                    item["interval_days"] = max(1, as_int(rule.get("intervalDays"), 1))
                if repeat == "weekdays":
                    item["days_of_week"] = days
                occurrences = rule.get("occurrences")
                if isinstance(occurrences, (int, float)) and not isinstance(occurrences, bool):
                    item["remaining_occurrences"] = max(1, int(occurrences))
                store.set(f"{QUEUE}/recurring_{user.id}_{key}_advertisement", item, merge=True)
            store.set(
                f"users/{user.id}",
                {"engagement_recurring_scheduled": True, "engagement_recurring_scheduled_at": now},
                merge=True,
            )
            scheduled += 1

    return {"scanned": len(users), "scheduled": scheduled, "disabled": False}
