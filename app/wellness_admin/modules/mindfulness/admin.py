from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.wellness_admin.audit import record_event
from app.wellness_admin.db import db_session
from app.wellness_admin.docstore import get_docstore
from app.wellness_admin.models import User
from app.wellness_admin.modules.mindfulness.service import (
    CATEGORIES,
    EXERCISES,
    CatalogError,
    apply_update,
    as_bool,
    as_str,
    category_dict,
    category_update_from_payload,
    clamp_list_limit,
    create_category,
    create_exercise,
    exercise_dict,
    exercise_update_from_payload,
    list_categories,
    list_exercises,
)
from app.wellness_admin.rbac import require_permission

bp = Blueprint("mindfulness", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _audit(action: str, entity_type: str, entity_id: str, severity: str = "info") -> None:
    s = db_session()
    record_event(
        s,
        actor=_current_user(),
        action=action,
        severity=severity,
        message=f"{action.replace('_', ' ').lower()}: {entity_id}",
        entity_type=entity_type,
        entity_id=entity_id,
    )
    s.commit()


# ---------- Categories ----------
@bp.get("/categories")
@require_permission("mindfulness", "read")
def categories_list():
    return jsonify(
        {
            "categories": list_categories(
                get_docstore(),
                active_only=as_bool(request.args.get("activeOnly")),
                limit=clamp_list_limit(request.args.get("limit")),
            )
        }
    )


@bp.get("/categories/<category_id>")
@require_permission("mindfulness", "read")
def categories_get(category_id: str):
    data = get_docstore().get(f"{CATEGORIES}/{category_id}")
    if data is None:
        return jsonify({"error": "Category not found", "category": None}), 404
    return jsonify({"category": category_dict(category_id, data)})


@bp.post("/categories")
@require_permission("mindfulness", "write")
def categories_create():
    try:
        category = create_category(get_docstore(), request.get_json(silent=True) or {})
    except CatalogError as e:
        return jsonify({"error": str(e)}), 400
    _audit("MINDFULNESS_CATEGORY_SAVED", "mindfulness_category", category["id"])
    return jsonify({"success": True, "category": category})


@bp.patch("/categories/<category_id>")
@require_permission("mindfulness", "write")
def categories_update(category_id: str):
    store = get_docstore()
    path = f"{CATEGORIES}/{category_id}"
    if not store.exists(path):
        return jsonify({"error": "Category not found"}), 404
    data = apply_update(store, path, category_update_from_payload(request.get_json(silent=True) or {}))
    _audit("MINDFULNESS_CATEGORY_UPDATED", "mindfulness_category", category_id)
    return jsonify({"success": True, "category": category_dict(category_id, data)})


@bp.delete("/categories/<category_id>")
@require_permission("mindfulness", "delete")
def categories_delete(category_id: str):
    store = get_docstore()
    path = f"{CATEGORIES}/{category_id}"
    if not store.exists(path):
        return jsonify({"error": "Category not found"}), 404
    store.delete(path)
    _audit("MINDFULNESS_CATEGORY_DELETED", "mindfulness_category", category_id, severity="medium")
    return jsonify({"success": True})


# ---------- Exercises ----------
@bp.get("/exercises")
@require_permission("mindfulness", "read")
def exercises_list():
    return jsonify(
        {
            "exercises": list_exercises(
                get_docstore(),
                category=as_str(request.args.get("category")).lower(),
                active_only=as_bool(request.args.get("activeOnly")),
                limit=clamp_list_limit(request.args.get("limit")),
            )
        }
    )


@bp.get("/exercises/<exercise_id>")
@require_permission("mindfulness", "read")
def exercises_get(exercise_id: str):
    data = get_docstore().get(f"{EXERCISES}/{exercise_id}")
    if data is None:
        return jsonify({"error": "Exercise not found", "exercise": None}), 404
    return jsonify({"exercise": exercise_dict(exercise_id, data)})


@bp.post("/exercises")
@require_permission("mindfulness", "write")
def exercises_create():
    try:
        exercise = create_exercise(get_docstore(), request.get_json(silent=True) or {})
    except CatalogError as e:
        return jsonify({"error": str(e)}), 400
    _audit("MINDFULNESS_EXERCISE_SAVED", "mindfulness_exercise", exercise["id"])
    return jsonify({"success": True, "exercise": exercise})


@bp.patch("/exercises/<exercise_id>")
@require_permission("mindfulness", "write")
def exercises_update(exercise_id: str):
    store = get_docstore()
    path = f"{EXERCISES}/{exercise_id}"
    if not store.exists(path):
        return jsonify({"error": "Exercise not found"}), 404
    data = apply_update(store, path, exercise_update_from_payload(request.get_json(silent=True) or {}))
    _audit("MINDFULNESS_EXERCISE_UPDATED", "mindfulness_exercise", exercise_id)
    return jsonify({"success": True, "exercise": exercise_dict(exercise_id, data)})


@bp.delete("/exercises/<exercise_id>")
@require_permission("mindfulness", "delete")
def exercises_delete(exercise_id: str):
    store = get_docstore()
    path = f"{EXERCISES}/{exercise_id}"
    if not store.exists(path):
        return jsonify({"error": "Exercise not found"}), 404
    store.delete(path)
    _audit("MINDFULNESS_EXERCISE_DELETED", "mindfulness_exercise", exercise_id, severity="medium")
    return jsonify({"success": True})
