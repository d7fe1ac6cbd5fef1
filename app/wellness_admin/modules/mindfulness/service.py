"""
Mindfulness catalog: categories and exercises shown in the app's mindfulness tab.

Both live in top-level collections (`mindfulness_categories`,
`mindfulness_exercises`). Incoming values are coerced rather than rejected so
the admin UI can send form strings ("true", "5", "a, b").
"""
from __future__ import annotations

import re
from typing import Any

from app.wellness_admin.docstore import DocumentStore, iso, utcnow
from app.wellness_admin.models import new_id

CATEGORIES = "mindfulness_categories"
EXERCISES = "mindfulness_exercises"

DEFAULT_LIST_LIMIT = 200
MAX_LIST_LIMIT = 500
DEFAULT_ICON = "self_improvement"
DEFAULT_COLOR = "#6C63FF"
DEFAULT_IMAGE = "https://source.unsplash.com/featured/?meditation"

_ID_STRIP = re.compile(r"[^a-zA-Z0-9_-]")


class CatalogError(ValueError):
    pass


def as_str(value: Any, default: str = "") -> str:
    return value.strip() if isinstance(value, str) else default


def as_optional_str(value: Any) -> str | None:
    return as_str(value) or None


def as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("true", "1", "yes"):
            return True
        if v in ("false", "0", "no"):
            return False
    return default


def as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    if f != f or f in (float("inf"), float("-inf")):
        return default
    return int(f)


def as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    if f != f or f in (float("inf"), float("-inf")):
        return default
    return f


def normalize_id(value: Any) -> str:
    return _ID_STRIP.sub("", as_str(value))


def normalize_tags(value: Any) -> list[str]:
    if isinstance(value, list):
        return [t.strip() for t in value if isinstance(t, str) and t.strip()]
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return []


def normalize_difficulty(value: Any) -> str:
    return as_str(value).lower() or "beginner"


def clamp_list_limit(raw: Any) -> int:
    return min(max(as_int(raw, DEFAULT_LIST_LIMIT), 1), MAX_LIST_LIMIT)


# ---------- Categories ----------
def category_dict(doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "name": data.get("name") or "",
        "displayName": data.get("displayName") or "",
        "description": data.get("description") or "",
        "iconName": data.get("iconName") or DEFAULT_ICON,
        "color": data.get("color") or DEFAULT_COLOR,
        "order": data.get("order") or 0,
        "isActive": data.get("isActive", True) is not False,
        "createdAt": iso(data.get("createdAt")),
        "updatedAt": iso(data.get("updatedAt")),
    }


def list_categories(store: DocumentStore, *, active_only: bool, limit: int) -> list[dict[str, Any]]:
    where = [("isActive", "==", True)] if active_only else []
    docs = store.query(CATEGORIES, where=where, order_by="order", limit=limit)
    return [category_dict(d.id, d.data) for d in docs]


def create_category(store: DocumentStore, payload: dict[str, Any]) -> dict[str, Any]:
    cat_id = normalize_id(payload.get("id") or payload.get("name"))
    name = as_str(payload.get("name") or cat_id).lower()
    display_name = as_str(payload.get("displayName") or name)
    if not cat_id or not name or not display_name:
        raise CatalogError("id (or name), name, and displayName are required")

    now = utcnow()
    data = {
        "id": cat_id,
        "name": name,
        "displayName": display_name,
        "description": as_str(payload.get("description")),
        "iconName": as_str(payload.get("iconName")) or DEFAULT_ICON,
        "color": as_str(payload.get("color")) or DEFAULT_COLOR,
        "order": as_int(payload.get("order")),
        "isActive": as_bool(payload.get("isActive"), True),
        "createdAt": now,
        "updatedAt": now,
    }
    store.set(f"{CATEGORIES}/{cat_id}", data, merge=True)
    return category_dict(cat_id, store.get(f"{CATEGORIES}/{cat_id}") or data)


_CATEGORY_FIELDS = {
    "name": lambda v: as_str(v).lower(),
    "displayName": as_str,
    "description": as_str,
    "iconName": lambda v: as_str(v) or DEFAULT_ICON,
    "color": as_str,
    "order": as_int,
    "isActive": lambda v: as_bool(v, True),
}


def category_update_from_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: coerce(payload[k]) for k, coerce in _CATEGORY_FIELDS.items() if k in payload}


# ---------- Exercises ----------
def exercise_dict(doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    tags = data.get("tags")
    return {
        "id": doc_id,
        "title": data.get("title") or "",
        "description": data.get("description") or "",
        "artist": data.get("artist") or "Unknown",
        "soundcloudUrl": data.get("soundcloudUrl") or None,
        "videoUrl": data.get("videoUrl") or None,
        "backgroundSoundUrl": data.get("backgroundSoundUrl") or None,
        "durationMinutes": data.get("durationMinutes") or 0,
        "imageUrl": data.get("imageUrl") or "",
        "thumbnailUrl": data.get("thumbnailUrl") or None,
        "category": data.get("category") or "",
        "tags": tags if isinstance(tags, list) else [],
        "difficulty": data.get("difficulty") or "beginner",
        "featured": bool(data.get("featured")),
        "popular": bool(data.get("popular")),
        "playCount": data.get("playCount") or 0,
        "rating": data.get("rating") or 0,
        "isActive": data.get("isActive", True) is not False,
        "createdAt": iso(data.get("createdAt")),
        "updatedAt": iso(data.get("updatedAt")),
    }


def list_exercises(store: DocumentStore, *, category: str, active_only: bool, limit: int) -> list[dict[str, Any]]:
    where: list[tuple[str, str, Any]] = []
    if category:
        where.append(("category", "==", category))
    if active_only:
        where.append(("isActive", "==", True))
    docs = store.query(EXERCISES, where=where, order_by="createdAt", descending=True, limit=limit)
    return [exercise_dict(d.id, d.data) for d in docs]


def create_exercise(store: DocumentStore, payload: dict[str, Any]) -> dict[str, Any]:
    title = as_str(payload.get("title"))
    category = as_str(payload.get("category")).lower()
    if not title or not category:
        raise CatalogError("title and category are required")

    ex_id = normalize_id(payload.get("id")) or new_id()[:21]
    now = utcnow()
    data = {
        "id": ex_id,
        "title": title,
        "description": as_str(payload.get("description")),
        "artist": as_str(payload.get("artist")) or "Unknown",
        "soundcloudUrl": as_optional_str(payload.get("soundcloudUrl")),
        "videoUrl": as_optional_str(payload.get("videoUrl")),
        "backgroundSoundUrl": as_optional_str(payload.get("backgroundSoundUrl")),
        "durationMinutes": max(as_int(payload.get("durationMinutes"), 5), 1),
        "imageUrl": as_str(payload.get("imageUrl")) or DEFAULT_IMAGE,
        "thumbnailUrl": as_optional_str(payload.get("thumbnailUrl")),
        "category": category,
        "tags": normalize_tags(payload.get("tags")),
        "difficulty": normalize_difficulty(payload.get("difficulty")),
        "featured": as_bool(payload.get("featured")),
        "popular": as_bool(payload.get("popular")),
        "playCount": max(as_int(payload.get("playCount")), 0),
        "rating": max(min(as_float(payload.get("rating")), 5.0), 0.0),
        "isActive": as_bool(payload.get("isActive"), True),
        "createdAt": now,
        "updatedAt": now,
    }
    store.set(f"{EXERCISES}/{ex_id}", data, merge=True)
    return exercise_dict(ex_id, store.get(f"{EXERCISES}/{ex_id}") or data)


_EXERCISE_FIELDS = {
    "title": as_str,
    "description": as_str,
    "artist": lambda v: as_str(v) or "Unknown",
    "category": lambda v: as_str(v).lower(),
    "difficulty": normalize_difficulty,
    "durationMinutes": lambda v: max(as_int(v, 5), 1),
    "playCount": lambda v: max(as_int(v), 0),
    "rating": lambda v: max(min(as_float(v), 5.0), 0.0),
    "featured": as_bool,
    "popular": as_bool,
    "isActive": lambda v: as_bool(v, True),
    "soundcloudUrl": as_optional_str,
    "videoUrl": as_optional_str,
    "backgroundSoundUrl": as_optional_str,
    "imageUrl": as_str,
    "thumbnailUrl": as_optional_str,
    "tags": normalize_tags,
}


def exercise_update_from_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: coerce(payload[k]) for k, coerce in _EXERCISE_FIELDS.items() if k in payload}


def apply_update(store: DocumentStore, path: str, update: dict[str, Any]) -> dict[str, Any]:
    """Merge `update` plus a fresh updatedAt into the document; returns the stored data."""
    update = dict(update)
    update["updatedAt"] = utcnow()
    store.set(path, update, merge=True)
    return store.get(path) or update
