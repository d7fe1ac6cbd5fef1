from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.wellness_admin.audit import record_event
from app.wellness_admin.db import db_session
from app.wellness_admin.docstore import get_docstore
from app.wellness_admin.models import User
from app.wellness_admin.modules.explore.service import (
    ExploreError,
    ExploreNotFound,
    add_video,
    copy_date,
    delete_video,
    list_dates,
    list_videos,
    resolve_date_id,
    update_video,
)
from app.wellness_admin.rbac import require_permission

bp = Blueprint("explore", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _audit(action: str, entity_id: str, message: str, severity: str = "info", metadata: dict | None = None) -> None:
    s = db_session()
    record_event(
        s,
        actor=_current_user(),
        action=action,
        severity=severity,
        message=message,
        entity_type="explore_landing",
        entity_id=entity_id,
        metadata=metadata,
    )
    s.commit()


@bp.get("")
@require_permission("explore", "read")
def explore_list():
    try:
        date_id = resolve_date_id(request.args.get("dateId"))
    except ExploreError as e:
        return jsonify({"error": str(e)}), 400
    videos, exists = list_videos(get_docstore(), date_id, request.args.get("category") or "")
    return jsonify({"videos": videos, "dateId": date_id, "exists": exists})


@bp.post("")
@require_permission("explore", "write")
def explore_create():
    payload = request.get_json(silent=True) or {}
    try:
        date_id = resolve_date_id(payload.get("dateId"))
        video = add_video(get_docstore(), date_id, payload)
    except ExploreError as e:
        return jsonify({"error": str(e)}), 400
    _audit("EXPLORE_ITEM_CREATED", date_id, f"explore item added: {date_id}/{video['id']}")
    return jsonify({"success": True, "video": video, "dateId": date_id})


@bp.put("")
@require_permission("explore", "write")
def explore_update():
    payload = request.get_json(silent=True) or {}
    video_id = (payload.get("videoId") or "").strip() if isinstance(payload.get("videoId"), str) else ""
    if not video_id:
        return jsonify({"error": "videoId is required"}), 400
    try:
        date_id = resolve_date_id(payload.get("dateId"))
        video = update_video(get_docstore(), date_id, video_id, payload)
    except ExploreError as e:
        return jsonify({"error": str(e)}), 400
    except ExploreNotFound as e:
        return jsonify({"error": str(e)}), 404
    _audit("EXPLORE_ITEM_UPDATED", date_id, f"explore item updated: {date_id}/{video_id}")
    return jsonify({"success": True, "video": video, "dateId": date_id})


@bp.delete("")
@require_permission("explore", "delete")
def explore_delete():
    video_id = (request.args.get("videoId") or "").strip()
    if not video_id:
        return jsonify({"error": "videoId is required"}), 400
    try:
        date_id = resolve_date_id(request.args.get("dateId"))
        delete_video(get_docstore(), date_id, video_id)
    except ExploreError as e:
        return jsonify({"error": str(e)}), 400
    except ExploreNotFound as e:
        return jsonify({"error": str(e)}), 404
    _audit("EXPLORE_ITEM_DELETED", date_id, f"explore item deleted: {date_id}/{video_id}", severity="medium")
    return jsonify({"success": True, "message": "Video deleted successfully", "dateId": date_id})


@bp.get("/dates")
@require_permission("explore", "read")
def explore_dates():
    dates = list_dates(get_docstore())
    return jsonify({"dates": dates, "total": len(dates)})


@bp.post("/copy")
@require_permission("explore", "write")
def explore_copy():
    payload = request.get_json(silent=True) or {}
    source = payload.get("sourceDateId")
    targets = payload.get("targetDateIds")
    if not isinstance(source, str) or not source.strip() or not isinstance(targets, list):
        return jsonify({"error": "sourceDateId and targetDateIds (array) are required"}), 400
    try:
        source_id = resolve_date_id(source)
        results = copy_date(get_docstore(), source_id, targets, copy_layouts=payload.get("copyLayouts") is True)
    except ExploreNotFound as e:
        return jsonify({"error": str(e)}), 404
    except ExploreError as e:
        return jsonify({"error": str(e)}), 400

    successful = sum(1 for r in results if r["success"])
    _audit(
        "EXPLORE_DATE_COPIED",
        source_id,
        f"explore items copied from {source_id} to {successful} date(s)",
        metadata={"targets": [r["targetDateId"] for r in results], "failed": len(results) - successful},
    )
    return jsonify(
        {
            "success": True,
            "sourceDateId": source_id,
            "results": results,
            "summary": {"total": len(results), "successful": successful, "failed": len(results) - successful},
        }
    )
