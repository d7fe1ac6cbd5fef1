from __future__ import annotations

import logging

from flask import Blueprint, current_app, g, jsonify, request

from app.wellness_admin.audit import record_event
from app.wellness_admin.db import db_session
from app.wellness_admin.docstore import get_docstore, utcnow
from app.wellness_admin.models import User
from app.wellness_admin.modules.content.service import (
    REPORT_COLLECTIONS,
    ContentError,
    create_post,
    create_story,
    delete_post,
    list_posts,
    list_reports,
    list_stories,
    post_dict,
    report_collection,
    store_upload,
    story_dict,
    validate_report_status,
)
from app.wellness_admin.modules.security_admin.service import clamp_limit
from app.wellness_admin.rbac import require_permission
from app.wellness_admin.storage import storage_from_config

logger = logging.getLogger(__name__)

bp = Blueprint("content", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _cursor() -> str | None:
    return (request.args.get("lastDocId") or "").strip() or None


def _audit(action: str, entity_type: str, entity_id: str, message: str, severity: str = "info", **metadata) -> None:
    s = db_session()
    record_event(
        s,
        actor=_current_user(),
        action=action,
        severity=severity,
        message=message,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or None,
    )
    s.commit()


# ---------- Posts ----------
@bp.get("/posts")
@require_permission("posts", "read")
def posts_list():
    limit = clamp_limit(request.args.get("limit"), 20, 1, 100)
    return jsonify(list_posts(get_docstore(), limit=limit, last_doc_id=_cursor()))


@bp.post("/posts")
@require_permission("posts", "write")
def posts_create():
    try:
        post = create_post(get_docstore(), request.get_json(silent=True) or {})
    except ContentError as e:
        return jsonify({"error": str(e)}), 400
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    _audit("POST_CREATED", "post", post["id"], f"Created post for {post['ownerId']}")
    return jsonify({"success": True, "post": post}), 201


@bp.get("/posts/<post_id>")
@require_permission("posts", "read", resource_id_arg="post_id")
def posts_get(post_id: str):
    data = get_docstore().get(f"posts/{post_id}")
    if data is None:
        return jsonify({"error": "Post not found"}), 404
    return jsonify({"post": post_dict(post_id, data)})


@bp.delete("/posts/<post_id>")
@require_permission("posts", "delete", resource_id_arg="post_id")
def posts_delete(post_id: str):
    store = get_docstore()
    data = store.get(f"posts/{post_id}")
    if data is None:
        return jsonify({"error": "Post not found"}), 404
    delete_post(store, post_id, data)
    _audit("POST_DELETED", "post", post_id, "Deleted post", severity="medium", ownerId=data.get("ownerId"))
    return jsonify({"success": True, "message": "Post deleted successfully"})


# ---------- Stories ----------
@bp.get("/stories")
@require_permission("stories", "read")
def stories_list():
    limit = clamp_limit(request.args.get("limit"), 20, 1, 100)
    return jsonify(list_stories(get_docstore(), limit=limit, last_doc_id=_cursor()))


@bp.post("/stories")
@require_permission("stories", "write")
def stories_create():
    try:
        story = create_story(get_docstore(), request.get_json(silent=True) or {})
    except ContentError as e:
        return jsonify({"error": str(e)}), 400
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    _audit("STORY_CREATED", "story", story["id"], f"Created story for {story['userId']}")
    return jsonify({"success": True, "story": story}), 201


@bp.get("/stories/<story_id>")
@require_permission("stories", "read", resource_id_arg="story_id")
def stories_get(story_id: str):
    data = get_docstore().get(f"stories/{story_id}")
    if data is None:
        return jsonify({"error": "Story not found"}), 404
    return jsonify({"story": story_dict(story_id, data)})


@bp.delete("/stories/<story_id>")
@require_permission("stories", "delete", resource_id_arg="story_id")
def stories_delete(story_id: str):
    store = get_docstore()
    data = store.get(f"stories/{story_id}")
    if data is None:
        return jsonify({"error": "Story not found"}), 404
    store.delete(f"stories/{story_id}")
    _audit("STORY_DELETED", "story", story_id, "Deleted story", severity="medium", userId=data.get("userId"))
    return jsonify({"success": True, "message": "Story deleted successfully"})


# ---------- Reports ----------
@bp.get("/reports")
@require_permission("posts", "read")
def reports_list():
    report_type = (request.args.get("type") or "all").strip().lower()
    if report_type not in ("all", "posts", "stories", "users"):
        return jsonify({"error": "Invalid type. Must be one of: all, posts, stories, users"}), 400
    status = (request.args.get("status") or "").strip().lower() or None
    if status == "all":
        status = None
    if status:
        try:
            validate_report_status(status)
        except ContentError as e:
            return jsonify({"error": str(e)}), 400
    limit = clamp_limit(request.args.get("limit"), 50, 1, 200)
    return jsonify(
        list_reports(get_docstore(), report_type=report_type, status=status, limit=limit, last_doc_id=_cursor())
    )


@bp.patch("/reports/<report_id>")
@require_permission("posts", "write")
def reports_patch(report_id: str):
    payload = request.get_json(silent=True) or {}
    if not payload.get("status"):
        return jsonify({"error": "status is required"}), 400
    try:
        status = validate_report_status(payload.get("status"))
        collection = report_collection(payload.get("reportType"))
    except ContentError as e:
        return jsonify({"error": str(e)}), 400

    store = get_docstore()
    if not store.exists(f"{collection}/{report_id}"):
        return jsonify({"error": "Report not found"}), 404
    store.update(f"{collection}/{report_id}", {"status": status, "updatedAt": utcnow()})
    _audit("REPORT_UPDATED", "report", report_id, f"Report marked {status}", reportType=payload.get("reportType"))
    return jsonify({"success": True, "message": "Report updated successfully"})


@bp.delete("/reports/<report_id>")
@require_permission("posts", "delete")
def reports_delete(report_id: str):
    report_type = (request.args.get("type") or "").strip().lower()
    if report_type not in REPORT_COLLECTIONS:
        return jsonify({"error": "Valid report type is required (post, story, user)"}), 400
    store = get_docstore()
    path = f"{REPORT_COLLECTIONS[report_type]}/{report_id}"
    if not store.exists(path):
        return jsonify({"error": "Report not found"}), 404
    store.delete(path)
    _audit("REPORT_DELETED", "report", report_id, "Deleted report", severity="medium", reportType=report_type)
    return jsonify({"success": True, "message": "Report deleted successfully"})


# ---------- Upload ----------
@bp.post("/upload")
@require_permission("upload", "write")
def upload():
    f = request.files.get("file")
    if not f or not f.filename:
        return jsonify({"error": "No file provided"}), 400
    try:
        result = store_upload(storage_from_config(current_app.config), f.read(), f.mimetype or "", f.filename)
    except ContentError as e:
        return jsonify({"error": str(e)}), 400
    logger.info("Upload %s by %s", result["key"], _current_user().email)
    return jsonify({"success": True, **result})
