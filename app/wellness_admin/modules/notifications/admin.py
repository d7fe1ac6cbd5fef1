from __future__ import annotations

import hmac
import logging

from flask import Blueprint, current_app, g, jsonify, request

from app.wellness_admin.audit import record_event
from app.wellness_admin.db import db_session
from app.wellness_admin.docstore import get_docstore
from app.wellness_admin.models import User
from app.wellness_admin.modules.notifications.router import (
    BROADCASTS,
    QUEUE,
    config_patch_problem,
    config_summary,
    load_config,
    process_due,
    process_one,
    queue_stats,
    save_config,
    schedule_engagement,
)
from app.wellness_admin.modules.notifications.service import (
    NOTIFICATION_TYPES,
    NotificationError,
    cancel_queue_item,
    clamp_limit,
    enqueue,
    list_broadcasts,
    list_queue,
    process_broadcasts,
    purge_broadcast,
    set_broadcast_status,
)
from app.wellness_admin.push import get_push_sender
from app.wellness_admin.rbac import require_permission

logger = logging.getLogger(__name__)

bp = Blueprint("notifications", __name__)

CRON_TASKS = ("all", "schedule", "broadcasts", "process")
CRON_SECRET_HEADERS = ("X-Cron-Secret", "X-Notifications-Cron-Secret")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _audit(action: str, entity_type: str, entity_id: str, message: str, severity: str = "info", metadata: dict | None = None) -> None:
    s = db_session()
    record_event(
        s,
        actor=_current_user(),
        action=action,
        severity=severity,
        message=message,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata,
    )
    s.commit()


@bp.get("/types")
@require_permission("fcm", "read")
def notification_types():
    return jsonify({"types": NOTIFICATION_TYPES})


# ---------- config / stats ----------
@bp.get("/config")
@require_permission("fcm", "manage")
def config_get():
    return jsonify({"config": load_config(get_docstore())})


@bp.put("/config")
@require_permission("fcm", "manage")
def config_put():
    body = request.get_json(silent=True)
    patch = body.get("config", body) if isinstance(body, dict) else body
    problem = config_patch_problem(patch)
    if problem:
        return jsonify({"error": problem}), 400
    config = save_config(get_docstore(), patch)
    _audit(
        "NOTIFICATION_CONFIG_UPDATED",
        "notification_config",
        "global",
        "notification router config updated",
        severity="medium",
        metadata={"keys": sorted(patch)},
    )
    return jsonify({"ok": True, "config": config})


@bp.get("/stats")
@require_permission("fcm", "manage")
def stats():
    store = get_docstore()
    return jsonify({"stats": queue_stats(store), "configSummary": config_summary(load_config(store))})


# ---------- queue ----------
@bp.get("/queue")
@require_permission("fcm", "manage")
def queue_list():
    try:
        items, next_cursor = list_queue(
            get_docstore(),
            status=request.args.get("status") or "pending",
            limit=clamp_limit(request.args.get("limit"), 50, 200),
            cursor=request.args.get("cursor"),
        )
    except NotificationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"items": items, "nextCursor": next_cursor})


@bp.post("/queue")
@require_permission("fcm", "manage")
def queue_create():
    store = get_docstore()
    if not load_config(store)["globalEnabled"]:
        return jsonify({"error": "Notifications are globally disabled"}), 409
    try:
        result = enqueue(store, request.get_json(silent=True) or {})
    except NotificationError as e:
        return jsonify({"error": str(e)}), 400

    if result["mode"] == "broadcast":
        _audit("NOTIFICATION_BROADCAST_CREATED", "notification_broadcast", result["broadcastId"], "broadcast to all users queued", severity="medium")
    else:
        _audit("NOTIFICATION_ENQUEUED", "notification_queue", "", f"notification queued for {result['created']} user(s)", metadata={"created": result["created"]})
    return jsonify(result)


@bp.patch("/queue/<queue_id>")
@require_permission("fcm", "manage")
def queue_cancel(queue_id: str):
    store = get_docstore()
    if not store.exists(f"{QUEUE}/{queue_id}"):
        return jsonify({"error": "Queue item not found"}), 404
    body = request.get_json(silent=True) or {}
    reason = body.get("reason") if isinstance(body.get("reason"), str) else ""
    cancel_queue_item(store, queue_id, reason)
    _audit("NOTIFICATION_REMOVED", "notification_queue", queue_id, f"queued notification removed: {queue_id}")
    return jsonify({"ok": True})


@bp.post("/queue/<queue_id>/send")
@require_permission("fcm", "manage")
def queue_send(queue_id: str):
    store = get_docstore()
    body = request.get_json(silent=True) or {}
    force = body.get("force", True) is not False
    result = process_one(store, get_push_sender(), load_config(store), queue_id, force=force)
    if not result["ok"]:
        status = 404 if not result["paused"] and "not found" in (result.get("message") or "") else 409
        return jsonify(result), status
    _audit("NOTIFICATION_SENT_NOW", "notification_queue", queue_id, f"queued notification sent manually: {queue_id}")
    return jsonify(result)


# ---------- broadcasts ----------
@bp.get("/broadcasts")
@require_permission("fcm", "manage")
def broadcasts_list():
    return jsonify({"broadcasts": list_broadcasts(get_docstore(), limit=clamp_limit(request.args.get("limit"), 30, 100))})


@bp.patch("/broadcasts/<broadcast_id>")
@require_permission("fcm", "manage")
def broadcasts_update(broadcast_id: str):
    store = get_docstore()
    if not store.exists(f"{BROADCASTS}/{broadcast_id}"):
        return jsonify({"error": "Broadcast not found"}), 404
    body = request.get_json(silent=True) or {}
    status = str(body.get("status") or "").strip()
    if not status:
        return jsonify({"error": "status is required"}), 400
    try:
        set_broadcast_status(store, broadcast_id, status)
    except NotificationError as e:
        return jsonify({"error": str(e)}), 400
    _audit("NOTIFICATION_BROADCAST_UPDATED", "notification_broadcast", broadcast_id, f"broadcast {broadcast_id} set to {status}")
    return jsonify({"ok": True})


@bp.post("/broadcasts/<broadcast_id>/purge")
@require_permission("fcm", "manage")
def broadcasts_purge(broadcast_id: str):
    updated = purge_broadcast(get_docstore(), broadcast_id, limit=clamp_limit(request.args.get("limit"), 300, 400))
    if updated:
        _audit(
            "NOTIFICATION_BROADCAST_PURGED",
            "notification_broadcast",
            broadcast_id,
            f"{updated} pending item(s) skipped for broadcast {broadcast_id}",
            severity="medium",
        )
    return jsonify({"ok": True, "updated": updated})


# ---------- cron ----------
def _cron_auth_failure():
    expected = (current_app.config.get("NOTIFICATIONS_CRON_SECRET") or "").strip()
    if not expected:
        logger.error("Notification cron called but NOTIFICATIONS_CRON_SECRET is not configured")
        return jsonify({"error": "NOTIFICATIONS_CRON_SECRET is not configured"}), 500
    got = next((request.headers.get(h) for h in CRON_SECRET_HEADERS if request.headers.get(h)), "")
    if not hmac.compare_digest(got.encode(), expected.encode()):
        return jsonify({"error": "Unauthorized"}), 401
    return None


@bp.post("/cron")
def cron():
    """Scheduler entry point, authenticated by shared secret instead of a session."""
    failure = _cron_auth_failure()
    if failure:
        return failure

    task = (request.args.get("task") or "all").strip().lower()
    if task not in CRON_TASKS:
        return jsonify({"ok": False, "error": f"Unknown task {task!r}"}), 400
    limit = clamp_limit(request.args.get("limit"), 100, 500)

    store = get_docstore()
    config = load_config(store)
    if not config["autoCronEnabled"]:
        return jsonify(
            {
                "ok": True,
                "task": task,
                "skipped": True,
                "reason": "Automation disabled in notification config (autoCronEnabled=false)",
            }
        )

    results: dict[str, object] = {}
    if task in ("all", "schedule"):
        results["schedule"] = schedule_engagement(store, config, limit=min(limit, 200))
    if task in ("all", "broadcasts"):
        results["broadcasts"] = process_broadcasts(store, batch_size=min(limit, 300))
    if task in ("all", "process"):
        results["process"] = process_due(store, get_push_sender(), config, limit=limit)
    logger.info("Notification cron task=%s results=%s", task, results)
    return jsonify({"ok": True, "task": task, **results})
