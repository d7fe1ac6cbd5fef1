from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from app.wellness_admin.cache import cache, create_cache_key
from app.wellness_admin.db import db_session
from app.wellness_admin.docstore import DocumentNotFound, get_docstore, utcnow
from app.wellness_admin.models import User
from app.wellness_admin.modules.analytics.service import user_rollup
from app.wellness_admin.modules.app_users import engagement
from app.wellness_admin.modules.app_users.service import (
    USERS_MAX_LIMIT,
    USERS_PAGE_CACHE_TTL,
    AppUserError,
    audit_user_deleted,
    bulk_create_users,
    create_app_user,
    delete_user_cascade,
    fcm_token_of,
    list_users,
    parse_users_csv,
    update_user,
    user_dict,
)
from app.wellness_admin.push import PushError, build_message_payload, get_push_sender
from app.wellness_admin.rate_limit import rate_limited, users_limiter
from app.wellness_admin.rbac import require_permission

logger = logging.getLogger(__name__)

bp = Blueprint("app_users", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _user_or_404(user_id: str):
    data = get_docstore().get(f"users/{user_id}")
    if data is None:
        return None, (jsonify({"error": "User not found"}), 404)
    return data, None


# ---------- Directory ----------
@bp.get("")
@require_permission("users", "read")
@rate_limited(users_limiter)
def users_list():
    limit = min(max(request.args.get("limit", 50, type=int) or 50, 1), USERS_MAX_LIMIT)
    last_doc_id = (request.args.get("lastDocId") or "").strip() or None
    key = create_cache_key("users", {"limit": limit, "page": last_doc_id or "first"})

    state = "N/A"
    body = None
    if not last_doc_id:
        body = cache.get(key)
        state = "HIT" if body is not None else "MISS"
    if body is None:
        body = list_users(get_docstore(), limit=limit, last_doc_id=last_doc_id)
        if not last_doc_id:
            cache.set(key, body, USERS_PAGE_CACHE_TTL)

    resp = jsonify(body)
    resp.headers["X-Cache"] = state
    resp.headers["X-RateLimit-Remaining"] = str(getattr(g, "rate_limit_remaining", ""))
    return resp


@bp.post("/create")
@require_permission("users", "write")
def users_create():
    payload = request.get_json(silent=True) or {}
    try:
        uid = create_app_user(get_docstore(), payload, payload.get("password") or "")
    except AppUserError as e:
        return jsonify({"error": str(e)}), 400
    cache.delete_by_prefix("users")
    return jsonify(
        {"success": True, "message": "User created successfully", "userId": uid, "email": payload.get("email")}
    )


@bp.post("/bulk-upload")
@require_permission("users", "write")
def users_bulk_upload():
    f = request.files.get("file")
    if not f:
        return jsonify({"error": "CSV file is required"}), 400
    text = f.read().decode("utf-8-sig", errors="replace")
    try:
        rows = parse_users_csv(text)
    except AppUserError as e:
        return jsonify({"error": f"CSV parsing error: {e}"}), 400
    result = bulk_create_users(get_docstore(), rows)
    cache.delete_by_prefix("users")
    logger.info("Bulk upload by %s: %s created, %s failed", _current_user().email, result["created"], result["failed"])
    return jsonify(result)


# ---------- Single user ----------
@bp.get("/<user_id>")
@require_permission("users", "read", resource_id_arg="user_id")
def users_get(user_id: str):
    data, err = _user_or_404(user_id)
    if err:
        return err
    return jsonify({"user": user_dict(user_id, data, detail=True)})


@bp.patch("/<user_id>")
@require_permission("users", "write", resource_id_arg="user_id")
def users_patch(user_id: str):
    try:
        update_user(get_docstore(), user_id, request.get_json(silent=True) or {})
    except DocumentNotFound:
        return jsonify({"error": "User not found"}), 404
    cache.delete_by_prefix("users")
    return jsonify({"success": True, "message": "User updated successfully"})


@bp.delete("/<user_id>")
@require_permission("users", "delete", resource_id_arg="user_id")
def users_delete(user_id: str):
    removed, failed = delete_user_cascade(get_docstore(), user_id)
    s = db_session()
    audit_user_deleted(s, _current_user(), user_id, removed, failed)
    s.commit()
    cache.delete_by_prefix("users")
    if failed:
        return jsonify(
            {
                "success": True,
                "message": "User deleted; some associated data could not be removed",
                "failedSteps": failed,
            }
        )
    return jsonify({"success": True, "message": "User and all associated data deleted successfully"})


# ---------- Engagement ----------
@bp.get("/<user_id>/mood")
@require_permission("mood", "read", resource_id_arg="user_id")
def user_mood(user_id: str):
    return jsonify(engagement.mood_view(get_docstore(), user_id))


@bp.get("/<user_id>/water")
@require_permission("water", "read", resource_id_arg="user_id")
def user_water(user_id: str):
    return jsonify(engagement.water_view(get_docstore(), user_id))


@bp.get("/<user_id>/nutrition")
@require_permission("nutrition", "read", resource_id_arg="user_id")
def user_nutrition(user_id: str):
    return jsonify(engagement.nutrition_view(get_docstore(), user_id))


@bp.get("/<user_id>/fitness")
@require_permission("fitness", "read", resource_id_arg="user_id")
def user_fitness(user_id: str):
    return jsonify(engagement.fitness_view(get_docstore(), user_id))


@bp.get("/<user_id>/finance")
@require_permission("finance", "read", resource_id_arg="user_id")
def user_finance(user_id: str):
    return jsonify(engagement.finance_view(get_docstore(), user_id))


@bp.get("/<user_id>/mindfulness")
@require_permission("mindfulness", "read", resource_id_arg="user_id")
def user_mindfulness(user_id: str):
    return jsonify(engagement.mindfulness_view(get_docstore(), user_id))


@bp.get("/<user_id>/wellsphere")
@require_permission("wellsphere", "read", resource_id_arg="user_id")
def user_wellsphere(user_id: str):
    return jsonify(engagement.wellsphere_view(get_docstore(), user_id))


@bp.get("/<user_id>/onboarding")
@require_permission("onboarding", "read", resource_id_arg="user_id")
def user_onboarding(user_id: str):
    return jsonify(engagement.onboarding_view(get_docstore(), user_id))


@bp.get("/<user_id>/analytics")
@require_permission("analytics", "read", resource_id_arg="user_id")
def user_analytics(user_id: str):
    resp = jsonify(user_rollup(get_docstore(), user_id))
    resp.headers["Cache-Control"] = "private, max-age=300"
    return resp


# ---------- Points ----------
@bp.get("/<user_id>/points")
@require_permission("points", "read", resource_id_arg="user_id")
def user_points_get(user_id: str):
    data, err = _user_or_404(user_id)
    if err:
        return err
    return jsonify({"points": engagement.points_dict(data)})


@bp.patch("/<user_id>/points")
@require_permission("points", "write", resource_id_arg="user_id")
def user_points_patch(user_id: str):
    update, errors = engagement.points_update_from_payload(request.get_json(silent=True) or {})
    if errors:
        return jsonify({"error": errors[0], "errors": errors}), 400
    update["updatedAt"] = utcnow()
    try:
        get_docstore().update(f"users/{user_id}", update)
    except DocumentNotFound:
        return jsonify({"error": "User not found"}), 404
    cache.delete_by_prefix("users")
    return jsonify({"success": True, "message": "Points updated successfully"})


# ---------- Push ----------
@bp.post("/<user_id>/fcm")
@require_permission("fcm", "write", resource_id_arg="user_id")
def user_fcm(user_id: str):
    payload = request.get_json(silent=True) or {}
    title = (payload.get("title") or "").strip()
    body = (payload.get("body") or "").strip()
    custom = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    if not title or not body:
        return jsonify({"error": "Title and body are required"}), 400

    store = get_docstore()
    data, err = _user_or_404(user_id)
    if err:
        return err
    token = fcm_token_of(data)
    if not token:
        return jsonify({"error": "User does not have an FCM token registered"}), 400

    try:
        message_id = get_push_sender().send(token, build_message_payload(title, body, custom, user_id))
    except PushError as e:
        if e.invalid_token:
            store.update(f"users/{user_id}", {"fcm_token": None, "fcmToken": None, "device_token": None})
            logger.info("Cleared invalid push token for user %s", user_id)
        raise

    store.add(
        "admin_notifications",
        {
            "userId": user_id,
            "title": title,
            "body": body,
            "data": custom,
            "sentAt": utcnow(),
            "messageId": message_id,
            "sentBy": _current_user().id,
        },
    )
    return jsonify({"success": True, "message": "Notification sent successfully", "messageId": message_id})
