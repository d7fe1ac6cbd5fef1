from __future__ import annotations

from datetime import timedelta
from typing import Any

from app.wellness_admin.docstore import Document, DocumentStore, iso, to_datetime, utcnow
from app.wellness_admin.models import new_id
from app.wellness_admin.storage import Storage, upload_metadata

STORY_TTL = timedelta(hours=24)

REPORT_STATUSES = ("pending", "reviewed", "resolved", "dismissed")
REPORT_COLLECTIONS = {"post": "post_reports", "story": "story_reports", "user": "user_reports"}
# ?type= on the listing uses plural names
REPORT_LIST_TYPES = {"posts": "post", "stories": "story", "users": "user"}

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class ContentError(ValueError):
    pass


def short_doc_id() -> str:
    return new_id()[:20]


# ---------- Posts ----------
def post_dict(doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    likes = data.get("likes") if isinstance(data.get("likes"), dict) else {}
    return {
        "id": doc_id,
        "postId": data.get("postId") or doc_id,
        "ownerId": data.get("ownerId") or "",
        "username": data.get("username") or "",
        "description": data.get("description") or "",
        "mediaUrl": data.get("mediaUrl") or "",
        "location": data.get("location") or "",
        "timestamp": iso(data.get("timestamp")),
        "likes": likes,
        "likesCount": len(likes),
    }


def _page(docs: list[Document], limit: int) -> tuple[bool, str | None]:
    has_more = len(docs) == limit
    return has_more, docs[-1].id if has_more and docs else None


def list_posts(store: DocumentStore, *, limit: int, last_doc_id: str | None) -> dict[str, Any]:
    docs = store.query("posts", order_by="timestamp", descending=True, limit=limit, start_after=last_doc_id)
    has_more, cursor = _page(docs, limit)
    return {"posts": [post_dict(d.id, d.data) for d in docs], "hasMore": has_more, "lastDocId": cursor}


def create_post(store: DocumentStore, payload: dict[str, Any]) -> dict[str, Any]:
    owner_id = (payload.get("ownerId") or "").strip()
    media_url = (payload.get("mediaUrl") or "").strip()
    if not owner_id or not media_url:
        raise ContentError("ownerId and mediaUrl are required")
    owner = store.get(f"users/{owner_id}")
    if owner is None:
        raise LookupError("User not found")

    post_id = short_doc_id()
    data = {
        "id": post_id,
        "postId": post_id,
        "ownerId": owner_id,
        "username": owner.get("username") or "",
        "mediaUrl": media_url,
        "description": payload.get("description") or "",
        "location": payload.get("location") or "",
        "timestamp": utcnow(),
        "likes": {},
    }
    store.set(f"posts/{post_id}", data)
    return post_dict(post_id, data)


def delete_post(store: DocumentStore, post_id: str, data: dict[str, Any]) -> None:
    store.delete(f"posts/{post_id}")
    store.delete_collection(f"comments/{post_id}/comments")
    if store.exists(f"comments/{post_id}"):
        store.delete(f"comments/{post_id}")
    owner_id = data.get("ownerId")
    if owner_id:
        store.delete_where(f"notifications/{owner_id}/notifications", [("postId", "==", post_id)])


# ---------- Stories ----------
def story_dict(doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "storyId": data.get("storyId") or doc_id,
        "userId": data.get("userId") or "",
        "username": data.get("username") or "",
        "userDp": data.get("userDp") or "",
        "imageUrl": data.get("imageUrl") or "",
        "caption": data.get("caption") or "",
        "timestamp": iso(data.get("timestamp")),
        "expiresAt": iso(data.get("expiresAt")),
        "viewers": data.get("viewers") or [],
        "whoCanSee": data.get("whoCanSee") or [],
    }


def is_expired(data: dict[str, Any], now=None) -> bool:
    expires = to_datetime(data.get("expiresAt"))
    return expires is not None and expires <= (now or utcnow())


def list_stories(store: DocumentStore, *, limit: int, last_doc_id: str | None) -> dict[str, Any]:
    # Over-fetch so expired stories don't leave the page short.
    batch = limit * 2
    docs = store.query("stories", order_by="timestamp", descending=True, limit=batch, start_after=last_doc_id)
    now = utcnow()
    live: list[dict[str, Any]] = []
    consumed = 0
    for doc in docs:
        if len(live) == limit:
            break
        consumed += 1
        if not is_expired(doc.data, now):
            live.append(story_dict(doc.id, doc.data))
    # The cursor is the last document looked at, so skipped live stories stay reachable.
    has_more = consumed < len(docs) or len(docs) == batch
    cursor = docs[consumed - 1].id if has_more and consumed else None
    return {"stories": live, "hasMore": has_more, "lastDocId": cursor}


def create_story(store: DocumentStore, payload: dict[str, Any]) -> dict[str, Any]:
    user_id = (payload.get("userId") or "").strip()
    image_url = (payload.get("imageUrl") or "").strip()
    if not user_id or not image_url:
        raise ContentError("userId and imageUrl are required")
    user = store.get(f"users/{user_id}")
    if user is None:
        raise LookupError("User not found")

    story_id = short_doc_id()
    now = utcnow()
    who = payload.get("whoCanSee")
    data = {
        "storyId": story_id,
        "userId": user_id,
        "username": user.get("username") or "",
        "userDp": user.get("photoUrl") or "",
        "imageUrl": image_url,
        "caption": payload.get("caption") or "",
        "viewers": [],
        "whoCanSee": who if isinstance(who, list) else [],
        "timestamp": now,
        "expiresAt": now + STORY_TTL,
    }
    store.set(f"stories/{story_id}", data)
    return story_dict(story_id, data)


# ---------- Reports ----------
def _user_info(store: DocumentStore, user_id: str | None) -> dict[str, Any] | None:
    if not user_id:
        return None
    data = store.get(f"users/{user_id}")
    if data is None:
        return None
    return {
        "id": user_id,
        "username": data.get("username") or "",
        "email": data.get("email") or "",
        "photoUrl": data.get("photoUrl") or "",
    }


def _report_base(doc: Document, report_type: str, store: DocumentStore) -> dict[str, Any]:
    data = doc.data
    return {
        "id": doc.id,
        "reportType": report_type,
        "reporterId": data.get("reporterId") or "",
        "reporterInfo": _user_info(store, data.get("reporterId")),
        "reason": data.get("reason") or "",
        "additionalDetails": data.get("additionalDetails") or "",
        "status": data.get("status") or "pending",
        "createdAt": iso(data.get("createdAt")),
        "updatedAt": iso(data.get("updatedAt")),
    }


def _post_report(store: DocumentStore, doc: Document) -> dict[str, Any]:
    out = _report_base(doc, "post", store)
    post_id = doc.data.get("postId") or ""
    target = store.get(f"posts/{post_id}") if post_id else None
    out["postId"] = post_id
    out["reportedPostInfo"] = (
        {
            "id": post_id,
            "description": target.get("description") or "",
            "mediaUrl": target.get("mediaUrl") or "",
            "ownerId": target.get("ownerId") or "",
            "username": target.get("username") or "",
        }
        if target is not None
        else None
    )
    return out


def _story_report(store: DocumentStore, doc: Document) -> dict[str, Any]:
    out = _report_base(doc, "story", store)
    story_id = doc.data.get("storyId") or ""
    target = store.get(f"stories/{story_id}") if story_id else None
    out["storyId"] = story_id
    out["reportedStoryInfo"] = (
        {
            "id": story_id,
            "caption": target.get("caption") or "",
            "imageUrl": target.get("imageUrl") or "",
            "userId": target.get("userId") or "",
            "username": target.get("username") or "",
        }
        if target is not None
        else None
    )
    return out


def _user_report(store: DocumentStore, doc: Document) -> dict[str, Any]:
    out = _report_base(doc, "user", store)
    out["reportedUserId"] = doc.data.get("reportedUserId") or ""
    out["reportedUserInfo"] = _user_info(store, doc.data.get("reportedUserId"))
    return out


_REPORT_BUILDERS = {"post": _post_report, "story": _story_report, "user": _user_report}


def list_reports(
    store: DocumentStore, *, report_type: str, status: str | None, limit: int, last_doc_id: str | None
) -> dict[str, Any]:
    wanted = list(REPORT_COLLECTIONS) if report_type == "all" else [REPORT_LIST_TYPES.get(report_type, report_type)]
    results: dict[str, list[dict[str, Any]]] = {"post": [], "story": [], "user": []}
    for kind in wanted:
        if kind not in REPORT_COLLECTIONS:
            continue
        where = [("status", "==", status)] if status else []
        # Cursor only applies when a single report type is listed.
        cursor = last_doc_id if report_type != "all" else None
        docs = store.query(
            REPORT_COLLECTIONS[kind], where=where, order_by="createdAt", descending=True, limit=limit, start_after=cursor
        )
        results[kind] = [_REPORT_BUILDERS[kind](store, d) for d in docs]

    merged = results["post"] + results["story"] + results["user"]
    # ISO-8601 UTC strings sort chronologically.
    merged.sort(key=lambda r: r["createdAt"] or "", reverse=True)
    counts = {
        "total": len(merged),
        "posts": len(results["post"]),
        "stories": len(results["story"]),
        "users": len(results["user"]),
    }
    for st in REPORT_STATUSES:
        counts[st] = sum(1 for r in merged if r["status"] == st)
    return {
        "reports": merged,
        "postReports": results["post"],
        "storyReports": results["story"],
        "userReports": results["user"],
        "counts": counts,
    }


def report_collection(report_type: str | None) -> str:
    if not report_type:
        raise ContentError("reportType is required")
    if report_type not in REPORT_COLLECTIONS:
        raise ContentError("Invalid reportType. Must be one of: post, story, user")
    return REPORT_COLLECTIONS[report_type]


def validate_report_status(status: str | None) -> str:
    if status not in REPORT_STATUSES:
        raise ContentError("Invalid status. Must be one of: pending, reviewed, resolved, dismissed")
    return status


# ---------- Upload ----------
def store_upload(
    storage: Storage, data: bytes, content_type: str, original_name: str | None = None
) -> dict[str, str]:
    ext = ALLOWED_IMAGE_TYPES.get((content_type or "").lower())
    if ext is None:
        raise ContentError("Invalid file type. Only images are allowed.")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ContentError("File size too large. Maximum size is 10MB.")
    key = f"connect/{short_doc_id()}.{ext}"
    storage.put_bytes(key, data, content_type=content_type, metadata=upload_metadata(original_name))
    return {"url": storage.public_url(key), "key": key}
