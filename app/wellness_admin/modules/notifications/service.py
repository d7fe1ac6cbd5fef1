"""
Admin-authored notifications: direct enqueues for selected users and
"all users" broadcasts that the cron expands into queue items page by page.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from app.wellness_admin.docstore import Document, DocumentStore, iso, to_datetime, utcnow
from app.wellness_admin.models import new_id
from app.wellness_admin.modules.notifications.router import (
    BROADCASTS,
    QUEUE,
    QUEUE_STATUSES,
    SHORT_DEDUPE_WINDOW_MS,
    as_int,
    clamp,
    next_local_time,
    recurrence_fields,
)

logger = logging.getLogger(__name__)

SCHEDULE_MODES = ("now", "at_utc", "at_user_local")
BROADCAST_STATUSES = ("pending", "cancelled", "completed", "failed")
BROADCAST_BATCH_SIZE = 300
DEFAULT_SENDER_NAME = "Admin"

_RECURRENCE_CLEARED = {"repeat": None, "interval_days": None, "days_of_week": None, "remaining_occurrences": None}


class NotificationError(ValueError):
    pass


def clamp_limit(raw: Any, default: int, maximum: int) -> int:
    return clamp(as_int(raw, default) or default, 1, maximum)


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


# ---------- serialization ----------
def queue_item_dict(doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "status": data.get("status") or "pending",
        "category": data.get("category") or None,
        "type": data.get("type") or None,
        "title": data.get("title") or "",
        "body": data.get("body") or "",
        "recipient_id": data.get("recipient_id") or None,
        "sender_id": data.get("sender_id") or None,
        "sender_name": data.get("sender_name") or None,
        "campaign_kind": data.get("campaign_kind") or None,
        "campaign_id": data.get("campaign_id") or None,
        "repeat": data.get("repeat") or None,
        "interval_days": data.get("interval_days") or None,
        "days_of_week": data.get("days_of_week") or None,
        "remaining_occurrences": data.get("remaining_occurrences"),
        "scheduled_at": iso(data.get("scheduled_at")),
        "created_at": iso(data.get("created_at")),
        "updated_at": iso(data.get("updated_at")),
        "last_sent_at": iso(data.get("last_sent_at")),
        "sent_at": iso(data.get("sent_at")),
        "error": data.get("error") or None,
        "error_code": data.get("error_code") or None,
        "skipped_reason": data.get("skipped_reason") or None,
        "retry_after_ms": data.get("retry_after_ms") or None,
    }


def broadcast_dict(doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "status": data.get("status") or "pending",
        "category": data.get("category") or "admin",
        "title": data.get("title") or "",
        "body": data.get("body") or "",
        "type": data.get("type") or "",
        "schedule": data.get("schedule") or None,
        "recurrence": data.get("recurrence") or None,
        "batch_size": data.get("batch_size") or None,
        "cursor_last_doc_id": data.get("cursor_last_doc_id") or None,
        "total_enqueued": data.get("total_enqueued") or 0,
        "created_at": iso(data.get("created_at")),
        "updated_at": iso(data.get("updated_at")),
        "completed_at": iso(data.get("completed_at")),
        "cancelled_at": iso(data.get("cancelled_at")),
        "error": data.get("error") or None,
    }


# ---------- queue ----------
def list_queue(store: DocumentStore, *, status: str, limit: int, cursor: str | None) -> tuple[list[dict[str, Any]], str | None]:
    status = (status or "pending").strip().lower()
    if status != "all" and status not in QUEUE_STATUSES:
        raise NotificationError("Invalid status filter")
    where = [] if status == "all" else [("status", "==", status)]
    docs = store.query(QUEUE, where=where, order_by="scheduled_at", limit=limit, start_after=cursor or None)
    return [queue_item_dict(d.id, d.data) for d in docs], (docs[-1].id if docs else None)


def cancel_queue_item(store: DocumentStore, queue_id: str, reason: str = "") -> None:
    now = utcnow()
    store.set(
        f"{QUEUE}/{queue_id}",
        {
            "status": "skipped",
            "skipped_reason": reason.strip() or "manual_removed",
            "removed_at": now,
            # A removed item never comes back, recurring or not.
            **_RECURRENCE_CLEARED,
            "end_at": None,
            "updated_at": now,
        },
        merge=True,
    )


def validate_message(payload: dict[str, Any]) -> tuple[str, str, str, dict[str, Any], dict[str, Any]]:
    title = _text(payload.get("title"))
    body = _text(payload.get("body"))
    kind = _text(payload.get("type"))
    if not title or not body or not kind:
        raise NotificationError("title, body, and type are required")

    audience = payload.get("audience")
    if not isinstance(audience, dict) or audience.get("mode") not in ("users", "all"):
        raise NotificationError("audience is required")
    schedule = payload.get("schedule")
    if not isinstance(schedule, dict) or schedule.get("mode") not in SCHEDULE_MODES:
        raise NotificationError("schedule is required")
    if schedule["mode"] == "at_user_local":
        for key in ("hour", "minute"):
            value = schedule.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise NotificationError("schedule.hour and schedule.minute must be numbers for at_user_local")
    if schedule["mode"] == "at_utc" and to_datetime(schedule.get("atUtc")) is None:
        raise NotificationError("Invalid schedule.atUtc")
    return title, body, kind, audience, schedule


def _local_slot(schedule: dict[str, Any]) -> tuple[int, int]:
    return clamp(as_int(schedule.get("hour"), 8), 0, 23), clamp(as_int(schedule.get("minute"), 0), 0, 59)


def scheduled_time(schedule: dict[str, Any], tz_offset_minutes: int, now: datetime) -> datetime:
    mode = schedule.get("mode")
    if mode == "at_utc":
        return to_datetime(schedule.get("atUtc")) or now
    if mode == "at_user_local":
        return next_local_time(now, tz_offset_minutes, *_local_slot(schedule))
    return now


def queue_item_for(
    user_id: str,
    user_data: dict[str, Any],
    message: dict[str, Any],
    schedule: dict[str, Any],
    recurrence: dict[str, Any] | None,
    *,
    dedupe_key: str,
    now: datetime,
) -> dict[str, Any]:
    tz = user_data.get("tz_offset_minutes")
    tz = tz if isinstance(tz, int) and not isinstance(tz, bool) else 0
    item = {
        **message,
        "recipient_id": user_id,
        "status": "pending",
        "scheduled_at": scheduled_time(schedule, tz, now),
        "created_at": now,
        "updated_at": now,
        "tz_offset_minutes": tz,
        "dedupe_key": dedupe_key,
        "dedupe_window_ms": SHORT_DEDUPE_WINDOW_MS,
    }
    if schedule.get("mode") == "at_user_local":
        item["hour"], item["minute"] = _local_slot(schedule)
    item.update(recurrence_fields(recurrence))
    return item


def enqueue(store: DocumentStore, payload: dict[str, Any]) -> dict[str, Any]:
    """
    Queue a message. `audience.mode == "all"` records a broadcast job for the
    cron to expand; a user list is queued immediately, one item per existing
    user (unknown ids are skipped).
    """
    title, body, kind, audience, schedule = validate_message(payload)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    category = _text(payload.get("category")) or "admin"
    sender_name = _text(payload.get("sender_name")) or DEFAULT_SENDER_NAME
    sender_avatar = _text(payload.get("sender_avatar"))
    recurrence = payload.get("recurrence") if isinstance(payload.get("recurrence"), dict) else {"mode": "none"}
    now = utcnow()

    if audience["mode"] == "all":
        broadcast_id = store.add(
            BROADCASTS,
            {
                "status": "pending",
                "category": category,
                "title": title,
                "body": body,
                "type": kind,
                "data": data,
                "sender_name": sender_name,
                "sender_avatar": sender_avatar,
                "schedule": schedule,
                "recurrence": recurrence,
                "created_at": now,
                "updated_at": now,
                "batch_size": BROADCAST_BATCH_SIZE,
                "cursor_last_doc_id": None,
                "total_enqueued": 0,
            },
        )
        return {"ok": True, "mode": "broadcast", "broadcastId": broadcast_id}

    raw_ids = audience.get("userIds") if isinstance(audience.get("userIds"), list) else []
    user_ids = list(dict.fromkeys(_text(u) for u in raw_ids if _text(u)))
    if not user_ids:
        raise NotificationError("No users selected")

    message = {
        "category": category,
        "type": kind,
        "title": title,
        "body": body,
        "sender_name": sender_name,
        "sender_avatar": sender_avatar,
        "data": data,
    }
    created = 0
    for user_id in user_ids:
        user_data = store.get(f"users/{user_id}")
        if user_data is None:
            continue
        queue_id = new_id()[:20]
        item = queue_item_for(user_id, user_data, message, schedule, recurrence, dedupe_key=f"admin:{queue_id}", now=now)
        store.set(f"{QUEUE}/{queue_id}", item)
        created += 1
    return {"ok": True, "mode": "users", "created": created}


# ---------- broadcasts ----------
def list_broadcasts(store: DocumentStore, *, limit: int) -> list[dict[str, Any]]:
    docs = store.query(BROADCASTS, order_by="created_at", descending=True, limit=limit)
    return [broadcast_dict(d.id, d.data) for d in docs]


def set_broadcast_status(store: DocumentStore, broadcast_id: str, status: str) -> None:
    if status not in BROADCAST_STATUSES:
        raise NotificationError("Invalid status")
    now = utcnow()
    fields: dict[str, Any] = {"status": status, "updated_at": now}
    if status == "cancelled":
        fields["cancelled_at"] = now
    if status == "completed":
        fields["completed_at"] = now
    store.set(f"{BROADCASTS}/{broadcast_id}", fields, merge=True)


def purge_broadcast(store: DocumentStore, broadcast_id: str, *, limit: int) -> int:
    """Skip up to `limit` still-pending queue items that came from the broadcast."""
    docs = store.query(
        QUEUE,
        where=[("campaign_kind", "==", "broadcast"), ("campaign_id", "==", broadcast_id), ("status", "==", "pending")],
        order_by="scheduled_at",
        limit=limit,
    )
    now = utcnow()
    for d in docs:
        store.set(
            d.path,
            {"status": "skipped", "skipped_reason": "broadcast_cancelled", **_RECURRENCE_CLEARED, "updated_at": now},
            merge=True,
        )
    return len(docs)


def _expand_broadcast(store: DocumentStore, doc: Document, batch_size: int, now: datetime) -> int:
    data = doc.data
    path = doc.path
    schedule = data.get("schedule") if isinstance(data.get("schedule"), dict) else {"mode": "now"}

    if schedule.get("mode") == "at_utc":
        at = to_datetime(schedule.get("atUtc"))
        if at is None:
            store.set(path, {"status": "failed", "error": "Invalid schedule.atUtc", "updated_at": now}, merge=True)
            return 0
        if at > now:
            return 0

    page = clamp(as_int(data.get("batch_size"), batch_size) or batch_size, 50, 500)
    users = store.query(
        "users", order_by="time", descending=True, limit=page, start_after=data.get("cursor_last_doc_id") or None
    )
    if not users:
        store.set(path, {"status": "completed", "completed_at": now, "updated_at": now}, merge=True)
        return 0

    title, body, kind = _text(data.get("title")), _text(data.get("body")), _text(data.get("type"))
    if not title or not body or not kind:
        store.set(path, {"status": "failed", "error": "Missing title/body/type", "updated_at": now}, merge=True)
        return 0

    message = {
        "category": _text(data.get("category")) or "admin",
        "type": kind,
        "title": title,
        "body": body,
        "sender_name": data.get("sender_name") or DEFAULT_SENDER_NAME,
        "sender_avatar": data.get("sender_avatar") or "",
        "data": data.get("data") if isinstance(data.get("data"), dict) else {},
        "campaign_kind": "broadcast",
        "campaign_id": doc.id,
    }
    recurrence = data.get("recurrence") if isinstance(data.get("recurrence"), dict) else None
    for user in users:
        item = queue_item_for(
            user.id, user.data, message, schedule, recurrence, dedupe_key=f"broadcast:{doc.id}:{user.id}", now=now
        )
        store.set(f"{QUEUE}/{new_id()[:20]}", item)

    store.set(
        path,
        {
            "cursor_last_doc_id": users[-1].id,
            "total_enqueued": as_int(data.get("total_enqueued"), 0) + len(users),
            "updated_at": now,
        },
        merge=True,
    )
    return len(users)


def process_broadcasts(store: DocumentStore, *, batch_size: int, max_broadcasts: int = 5) -> dict[str, int]:
    """Expand one page of recipients for each of the first few pending broadcasts."""
    now = utcnow()
    processed = expanded = 0
    for doc in store.query(BROADCASTS, where=[("status", "==", "pending")], limit=max_broadcasts):
        processed += 1
        expanded += _expand_broadcast(store, doc, batch_size, now)
    if expanded:
        logger.info("Expanded %s broadcast recipients across %s broadcasts", expanded, processed)
    return {"processed": processed, "expanded": expanded}


# Screens the app can open from a push; `value` is sent as the message type.
NOTIFICATION_TYPES = [
    {"value": "iki_home", "label": "Home", "category": "core"},
    {"value": "notifications", "label": "Notifications page", "category": "core"},
    {"value": "water_general", "label": "Water - Add/Log", "category": "water"},
    {"value": "water_reminder", "label": "Water - Reminder", "category": "water"},
    {"value": "water_challenges", "label": "Water - Challenges", "category": "water"},
    {"value": "water_progress", "label": "Water - Progress", "category": "water"},
    {"value": "mindscape_mood", "label": "Mood", "category": "mindscape"},
    {"value": "mindscape_journal", "label": "Journal", "category": "mindscape"},
    {"value": "mindscape_gratitude", "label": "Gratitude", "category": "mindscape"},
    {"value": "mindscape_general", "label": "Mindscape - Home", "category": "mindscape"},
    {"value": "mindscape_therapy", "label": "Therapy", "category": "mindscape"},
    {"value": "wellsphere_general", "label": "Wellsphere - Home", "category": "wellsphere"},
    {"value": "wellsphere_symptoms", "label": "Wellsphere - Symptoms", "category": "wellsphere"},
    {"value": "wellsphere_drugs", "label": "Wellsphere - Drugs", "category": "wellsphere"},
    {"value": "wellsphere_appointments", "label": "Wellsphere - Appointments", "category": "wellsphere"},
    {"value": "wellsphere_condition", "label": "Wellsphere - Condition", "category": "wellsphere"},
    {"value": "wellsphere_insights", "label": "Wellsphere - Insights", "category": "wellsphere"},
    {"value": "nutrition_general", "label": "Nutrition - Entry", "category": "nutrition"},
    {"value": "nutrition_home", "label": "Nutrition - Home", "category": "nutrition"},
    {"value": "fitness_general", "label": "Fitness - Entry", "category": "fitness"},
    {"value": "fitness_compete", "label": "Fitness - Leaderboard", "category": "fitness"},
    {"value": "fitness_profile", "label": "Fitness - Profile", "category": "fitness"},
    {"value": "fitness_store", "label": "Fitness - Store", "category": "fitness"},
    {"value": "fitness_stats", "label": "Fitness - Stats", "category": "fitness"},
    {"value": "finance_tips", "label": "Finance - Tips", "category": "finance"},
    {"value": "finance_news", "label": "Finance - News", "category": "finance"},
    {"value": "finance_investment", "label": "Finance - Investment", "category": "finance"},
    {"value": "finance_tracker", "label": "Finance - Tracker", "category": "finance"},
    {"value": "finance_general", "label": "Finance - General", "category": "finance"},
    {"value": "finance_adviser", "label": "Finance - Adviser", "category": "finance"},
    {"value": "connect_chat", "label": "Connect - Chat", "category": "connect"},
    {"value": "connect_comment", "label": "Connect - Comment", "category": "connect"},
    {"value": "connect_like", "label": "Connect - Like", "category": "connect"},
    {"value": "connect_general", "label": "Connect - General", "category": "connect"},
    {"value": "connect_friend_request", "label": "Connect - Friend request", "category": "connect"},
    {"value": "connect_single_post", "label": "Connect - Post", "category": "connect"},
]
