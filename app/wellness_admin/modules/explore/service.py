"""
Explore landings.

One document per calendar day in `explore_landings/<YYYYMMDD>` carries a
`videos` array (video, audio and article items) and optionally `layouts`.
The app reads the array as-is, so every write keeps it sorted: priority
descending, then newest first, then id.
"""
from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any

from app.wellness_admin.docstore import DocumentStore, to_datetime, utcnow
from app.wellness_admin.models import new_id

logger = logging.getLogger(__name__)

LANDINGS = "explore_landings"

_DATE_ID = re.compile(r"^\d{8}$")
_YOUTUBE_HOSTS = ("youtube.com", "youtu.be")


class ExploreError(ValueError):
    pass


class ExploreNotFound(LookupError):
    pass


def today_date_id(now: datetime | None = None) -> str:
    return (now or utcnow()).strftime("%Y%m%d")


def resolve_date_id(raw: Any) -> str:
    value = raw.strip() if isinstance(raw, str) else ""
    if not value:
        return today_date_id()
    if not _DATE_ID.match(value):
        raise ExploreError("dateId must be in YYYYMMDD format")
    return value


def _lower(value: Any) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_priority(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        f = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(f):
        return 0
    return int(f)


def normalize_tags(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v if isinstance(v, str) else str(v) for v in value if v is not None]


def _sort_key(item: dict[str, Any]) -> tuple:
    created = to_datetime(item.get("created_at"))
    item_id = item.get("id")
    return (
        -normalize_priority(item.get("priority")),
        -(created.timestamp() if created else 0.0),
        item_id if isinstance(item_id, str) else "",
    )


def sort_videos(videos: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(videos, key=_sort_key)


def videos_of(data: dict[str, Any] | None) -> list[dict[str, Any]]:
    videos = (data or {}).get("videos")
    if not isinstance(videos, list):
        return []
    return [v for v in videos if isinstance(v, dict)]


def validate_new_item(payload: dict[str, Any]) -> None:
    title = _text(payload.get("title"))
    media_type = _lower(payload.get("media_type"))
    category = _lower(payload.get("media_category"))
    url = _text(payload.get("media_url"))
    text = _text(payload.get("media_text"))

    if not title or not media_type or not category:
        raise ExploreError("title, media_type, and media_category are required")
    if media_type == "article":
        if not url and not text:
            raise ExploreError("For articles, provide either media_url or media_text (markdown).")
        return
    if not url:
        raise ExploreError("media_url is required for audio/video")
    if media_type == "video" and any(host in url.lower() for host in _YOUTUBE_HOSTS):
        raise ExploreError("YouTube links are not supported. Provide a direct video URL (e.g. mp4).")


def list_videos(store: DocumentStore, date_id: str, category: str = "") -> tuple[list[dict[str, Any]], bool]:
    data = store.get(f"{LANDINGS}/{date_id}")
    if data is None:
        return [], False
    videos = videos_of(data)
    wanted = category.strip().lower()
    if wanted:
        videos = [v for v in videos if _lower(v.get("media_category")) == wanted]
    return sort_videos(videos), True


def add_video(store: DocumentStore, date_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    validate_new_item(payload)
    image = _text(payload.get("img_url")) or _text(payload.get("thumbnail"))
    video = {
        "id": new_id(),
        "title": _text(payload.get("title")),
        "media_type": _lower(payload.get("media_type")),
        "media_url": _text(payload.get("media_url")),
        "media_text": _text(payload.get("media_text")),
        "media_desc": _text(payload.get("media_desc")),
        "media_category": _lower(payload.get("media_category")),
        "media_tags": normalize_tags(payload.get("media_tags")),
        "img_url": image,
        "thumbnail": image,
        "priority": normalize_priority(payload.get("priority")),
        "created_at": utcnow().isoformat().replace("+00:00", "Z"),
    }
    path = f"{LANDINGS}/{date_id}"
    videos = videos_of(store.get(path))
    videos.append(video)
    store.set(path, {"videos": sort_videos(videos), "updated_at": utcnow()}, merge=True)
    return video


def update_video(store: DocumentStore, date_id: str, video_id: str, updates: dict[str, Any]) -> dict[str, Any]:
    path = f"{LANDINGS}/{date_id}"
    data = store.get(path)
    if data is None:
        raise ExploreNotFound("Document not found for the specified date")
    videos = videos_of(data)
    index = next((i for i, v in enumerate(videos) if v.get("id") == video_id), None)
    if index is None:
        raise ExploreNotFound("Video not found")

    changes = {k: v for k, v in updates.items() if k not in ("id", "dateId", "videoId", "created_at")}
    merged = {**videos[index], **changes}
    if "priority" in changes:
        merged["priority"] = normalize_priority(changes["priority"])
    for key in ("media_type", "media_category"):
        if key in changes:
            merged[key] = _lower(changes[key])
    if "media_tags" in changes:
        merged["media_tags"] = normalize_tags(changes["media_tags"])
    if "img_url" in changes or "thumbnail" in changes:
        image = _text(changes.get("img_url")) or _text(changes.get("thumbnail"))
        merged["img_url"] = image
        merged["thumbnail"] = image

    videos[index] = merged
    store.set(path, {"videos": sort_videos(videos), "updated_at": utcnow()}, merge=True)
    return merged


def delete_video(store: DocumentStore, date_id: str, video_id: str) -> None:
    path = f"{LANDINGS}/{date_id}"
    data = store.get(path)
    if data is None:
        raise ExploreNotFound("Document not found for the specified date")
    videos = videos_of(data)
    remaining = [v for v in videos if v.get("id") != video_id]
    if len(remaining) == len(videos):
        raise ExploreNotFound("Video not found")
    store.set(path, {"videos": remaining, "updated_at": utcnow()}, merge=True)


def list_dates(store: DocumentStore) -> list[dict[str, Any]]:
    dates = [
        {"dateId": d.id, "exists": True, "videoCount": len(videos_of(d.data))}
        for d in store.query(LANDINGS)
    ]
    dates.sort(key=lambda d: d["dateId"], reverse=True)
    return dates


def copy_date(
    store: DocumentStore,
    source_date_id: str,
    target_date_ids: list[str],
    *,
    copy_layouts: bool = False,
) -> list[dict[str, Any]]:
    """
    Append copies of the source day's items to each target day. Copies get
    fresh ids and timestamps; items already on a target day are kept. One
    failing target does not stop the others.
    """
    source = store.get(f"{LANDINGS}/{source_date_id}")
    if source is None:
        raise ExploreNotFound(f"Source date {source_date_id} not found")
    source_videos = videos_of(source)
    if not source_videos:
        raise ExploreError("Source date has no videos to copy")

    results: list[dict[str, Any]] = []
    for target in target_date_ids:
        target_id = _text(target)
        try:
            if not _DATE_ID.match(target_id):
                raise ExploreError("dateId must be in YYYYMMDD format")
            path = f"{LANDINGS}/{target_id}"
            existing = videos_of(store.get(path))
            stamp = utcnow().isoformat().replace("+00:00", "Z")
            copies = [{**v, "id": new_id(), "created_at": stamp} for v in source_videos]
            doc: dict[str, Any] = {"videos": sort_videos(existing + copies), "updated_at": utcnow()}
            if copy_layouts and "layouts" in source:
                doc["layouts"] = source["layouts"]
            store.set(path, doc, merge=True)
        except ExploreError as e:
            results.append({"targetDateId": target_id, "success": False, "error": str(e)})
            continue
        except Exception as e:
            logger.exception("Explore copy to %s failed", target_id)
            results.append({"targetDateId": target_id, "success": False, "error": str(e) or type(e).__name__})
            continue
        results.append(
            {
                "targetDateId": target_id,
                "success": True,
                "videosCopied": len(copies),
                "totalVideos": len(existing) + len(copies),
            }
        )
    return results
