from __future__ import annotations

import csv
import io
import logging
import secrets
import string
from typing import TYPE_CHECKING, Any

from app.wellness_admin.audit import record_event
from app.wellness_admin.docstore import AccountExists, DocumentStore, DocumentStoreError, iso, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.wellness_admin.models import User

logger = logging.getLogger(__name__)

USERS_PAGE_CACHE_TTL = 60  # seconds; first page only
USERS_MAX_LIMIT = 100
_EXTRA_COLUMNS = "__extra__"

USER_SUBCOLLECTIONS = (
    "nutrition",
    "fitness",
    "mood",
    "water",
    "mindfulness",
    "finance",
    "drugs",
    "emergency_contacts",
    "medical_info",
    "wellsphere",
    "legalChatMessages",
    "legalWellness",
    "sukiChatMessages",
)

DEFAULT_HEALTH_STATS = (
    ("quarterly_wellness", "Quarterly Wellness"),
    ("prevention_wellness", "Prevention Wellness"),
    ("nutritional_wellness", "Nutritional Wellness"),
    ("mental_wellness", "Mental Wellness"),
    ("physical_wellness", "Physical Wellness"),
    ("financial_wellness", "Financial Wellness"),
)

PATCHABLE_FIELDS = (
    "firstname",
    "lastname",
    "username",
    "email",
    "phone",
    "country",
    "bio",
    "gender",
    "birthday",
    "age",
    "activityLevel",
    "bodyWeightKg",
    "points",
    "isOnline",
)

_PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


class AppUserError(ValueError):
    pass


def fcm_token_of(data: dict[str, Any]) -> str | None:
    return data.get("fcm_token") or data.get("fcmToken") or data.get("device_token") or None


def user_dict(doc_id: str, data: dict[str, Any], *, detail: bool = False) -> dict[str, Any]:
    out = {
        "id": doc_id,
        "firstname": data.get("firstname") or "",
        "lastname": data.get("lastname") or "",
        "username": data.get("username") or "",
        "email": data.get("email") or "",
        "photoUrl": data.get("photoUrl") or "",
        "country": data.get("country") or "",
        "bio": data.get("bio") or "",
        "gender": data.get("gender") or "",
        "birthday": data.get("birthday") or "",
        "phone": data.get("phone") or "",
        "signedUpAt": iso(data.get("time")),
        "lastSeen": iso(data.get("lastSeen")),
        "isOnline": bool(data.get("isOnline") or False),
        "points": data.get("points") or 0,
        "activityLevel": data.get("activityLevel") or "",
        "bodyWeightKg": data.get("bodyWeightKg") or None,
        "age": data.get("age") or None,
        "onboardingData": data.get("onboardingData") or None,
        "healthStats": data.get("health_stats") or [],
    }
    if detail:
        out["fcmToken"] = fcm_token_of(data)
    return out


def list_users(store: DocumentStore, *, limit: int, last_doc_id: str | None) -> dict[str, Any]:
    docs = store.query("users", order_by="time", descending=True, limit=limit, start_after=last_doc_id or None)
    users = [user_dict(d.id, d.data) for d in docs]
    return {
        "users": users,
        "total": len(users),
        "hasMore": len(docs) == limit,
        "lastDocId": docs[-1].id if docs else None,
    }


def patch_from_payload(payload: dict[str, Any]) -> dict[str, Any]:
    update: dict[str, Any] = {}
    for key in PATCHABLE_FIELDS:
        if key in payload:
            update[key] = payload[key]
    if "username" in update:
        username = update["username"]
        update["usernameLowercase"] = username.lower() if isinstance(username, str) else username
    return update


def update_user(store: DocumentStore, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    update = patch_from_payload(payload)
    update["updatedAt"] = utcnow()
    store.update(f"users/{user_id}", update)
    return update


def _delete_doc_if_exists(store: DocumentStore, path: str) -> None:
    if store.exists(path):
        store.delete(path)


def delete_user_cascade(store: DocumentStore, user_id: str) -> tuple[dict[str, int], dict[str, str]]:
    """
    Remove an app user and everything hanging off them.

    Each step is attempted independently; a failing step is logged and the
    rest still run, so a partially-migrated user can always be removed.
    Returns (removed counts per step, error message per failed step).
    """
    removed: dict[str, int] = {}
    failed: dict[str, str] = {}

    def step(name: str, fn) -> None:
        try:
            removed[name] = int(fn() or 0)
        except Exception as e:
            logger.exception("User delete %s: step %s failed", user_id, name)
            removed[name] = 0
            failed[name] = str(e) or type(e).__name__

    for sub in USER_SUBCOLLECTIONS:
        step(sub, lambda sub=sub: store.delete_collection(f"users/{user_id}/{sub}"))

    step("wellsphere_profile", lambda: _delete_doc_if_exists(store, f"wellsphere_profiles/{user_id}"))

    def _nested(root: str, sub: str):
        n = store.delete_collection(f"{root}/{user_id}/{sub}")
        _delete_doc_if_exists(store, f"{root}/{user_id}")
        return n

    step("symptoms", lambda: _nested("symptoms", "entries"))
    step("dailycheckin", lambda: _nested("dailycheckin", "dates"))

    def _posts():
        posts = store.query("posts", where=[("ownerId", "==", user_id)])
        for p in posts:
            store.delete_collection(f"comments/{p.id}/comments")
            _delete_doc_if_exists(store, f"comments/{p.id}")
            store.delete(p.path)
        return len(posts)

    step("posts", _posts)
    step("likes", lambda: store.delete_where("likes", [("userId", "==", user_id)]))
    step("commentLikes", lambda: store.delete_where("commentLikes", [("userId", "==", user_id)]))
    step("notifications", lambda: _nested("notifications", "notifications"))
    step("stories", lambda: store.delete_where("stories", [("userId", "==", user_id)]))

    def _tags():
        # Both spellings are in use: the app writes camelCase, account creation snake_case.
        for root in ("userTags", "obQuestions", "user_tags", "ob_questions"):
            _delete_doc_if_exists(store, f"{root}/{user_id}")

    step("userTags", _tags)
    step("chats", lambda: store.delete_where("chats", [("users", "array-contains", user_id)]))
    step(
        "favoriteUsers",
        lambda: store.delete_where("favoriteUsers", [("userId", "==", user_id)])
        + store.delete_where("favoriteUsers", [("favoriteUserId", "==", user_id)]),
    )
    step("chatIds", lambda: store.delete_where("chatIds", [("userId", "==", user_id)]))
    step("user", lambda: store.delete(f"users/{user_id}"))
    step("account", lambda: store.delete_account(user_id))
    return removed, failed


def audit_user_deleted(
    s: "Session", actor: "User", user_id: str, removed: dict[str, int], failed: dict[str, str] | None = None
) -> None:
    record_event(
        s,
        actor=actor,
        action="APP_USER_DELETED",
        message=f"App user {user_id} and associated data deleted",
        entity_type="app_user",
        entity_id=user_id,
        severity="critical" if failed else "high",
        metadata={"removed": {k: v for k, v in removed.items() if v}, "failedSteps": failed or {}},
    )


# ---------- Creation ----------
def generate_password(length: int = 12) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def default_health_stats() -> list[dict[str, Any]]:
    return [{"id": sid, "name": name, "value": 0} for sid, name in DEFAULT_HEALTH_STATS]


def _display_name(firstname: str, lastname: str, username: str) -> str | None:
    if firstname and lastname:
        return f"{firstname} {lastname}"
    return firstname or username or None


def _to_int(raw: Any) -> int | None:
    try:
        return int(str(raw).strip()) if raw not in (None, "") else None
    except ValueError:
        return None


def _to_float(raw: Any) -> float | None:
    try:
        return float(str(raw).strip()) if raw not in (None, "") else None
    except ValueError:
        return None


def create_app_user(store: DocumentStore, fields: dict[str, Any], password: str) -> str:
    """Create the auth account and the `users/<uid>` document. Returns the uid."""
    email = (fields.get("email") or "").strip()
    if not email or not password:
        raise AppUserError("Email and password are required")
    if len(password) < 8:
        raise AppUserError("Password must be at least 8 characters")
    if store.get_account_by_email(email) is not None:
        raise AppUserError("User with this email already exists")

    firstname = (fields.get("firstname") or "").strip()
    lastname = (fields.get("lastname") or "").strip()
    username = (fields.get("username") or "").strip()
    try:
        uid = store.create_account(email, password, display_name=_display_name(firstname, lastname, username))
    except AccountExists as e:
        raise AppUserError("User with this email already exists") from e

    store.set(
        f"users/{uid}",
        {
            "firstname": firstname,
            "lastname": lastname,
            "phone": (fields.get("phone") or "").strip(),
            "username": username,
            "usernameLowercase": username.lower(),
            "email": email,
            "time": utcnow(),
            "id": uid,
            "bio": "",
            "country": (fields.get("country") or "").strip(),
            "photoUrl": "",
            "gender": (fields.get("gender") or "").strip(),
            "birthday": (fields.get("birthday") or "").strip(),
            "points": 0,
            "age": fields.get("age") or None,
            "activityLevel": (fields.get("activityLevel") or "").strip(),
            "bodyWeightKg": fields.get("bodyWeightKg") or None,
            "health_stats": default_health_stats(),
            "onboardingCompleted": False,
            "onboardingData": None,
        },
    )
    store.set(f"user_tags/{uid}", {"initialize": "start"})
    store.set(f"ob_questions/{uid}", {"initialize": "start"})
    return uid


def parse_users_csv(text: str) -> list[dict[str, str]]:
    """Header row plus one or more data rows; header names are lowercased."""
    reader = csv.DictReader(io.StringIO(text), restkey=_EXTRA_COLUMNS)
    headers = [h.strip().lower() for h in reader.fieldnames or []]
    reader.fieldnames = headers
    out: list[dict[str, str]] = []
    for row in reader:
        extra = row.pop(_EXTRA_COLUMNS, None) or []
        width = sum(1 for v in row.values() if v is not None) + len(extra)
        if width != len(headers):
            raise AppUserError(f"Row {reader.line_num} has {width} columns, expected {len(headers)}")
        out.append({h: (v or "").strip() for h, v in row.items()})
    if not out:
        raise AppUserError("CSV must have at least a header row and one data row")
    return out


def _row_fields(row: dict[str, str]) -> dict[str, Any]:
    return {
        "email": row.get("email", ""),
        "firstname": row.get("firstname", ""),
        "lastname": row.get("lastname", ""),
        "username": row.get("username", ""),
        "phone": row.get("phone", ""),
        "country": row.get("country", ""),
        "gender": row.get("gender", ""),
        "birthday": row.get("birthday", ""),
        "age": _to_int(row.get("age")),
        "activityLevel": row.get("activitylevel") or row.get("activity_level") or "",
        "bodyWeightKg": _to_float(row.get("bodyweightkg")),
    }


def bulk_create_users(store: DocumentStore, rows: list[dict[str, str]]) -> dict[str, Any]:
    """Create accounts row by row; a failing row is reported and the rest continue."""
    successful: list[dict[str, str]] = []
    errors: list[dict[str, str]] = []

    for row in rows:
        email = (row.get("email") or "").strip()
        if not email:
            errors.append({"email": "unknown", "error": "Email is required"})
            continue
        if store.get_account_by_email(email) is not None:
            errors.append({"email": email, "error": "User already exists"})
            continue
        password = (row.get("password") or "").strip() or generate_password()
        try:
            uid = create_app_user(store, _row_fields(row), password)
        except (AppUserError, DocumentStoreError) as e:
            errors.append({"email": email, "error": str(e)})
            continue
        successful.append({"email": email, "userId": uid, "password": password})

    return {
        "success": True,
        "message": f"Processed {len(rows)} users",
        "created": len(successful),
        "failed": len(errors),
        "results": {"successful": successful, "errors": errors},
    }
