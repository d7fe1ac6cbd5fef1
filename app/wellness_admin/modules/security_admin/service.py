from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.wellness_admin.docstore import to_datetime
from app.wellness_admin.models import AuditEvent, AuthSession, User
from app.wellness_admin.privacy import mask_email, mask_name, redact_free_text, short_id

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


AUDIT_COLUMNS = (
    "id",
    "createdAt",
    "userId",
    "userName",
    "userEmail",
    "action",
    "severity",
    "message",
    "ipAddress",
    "userAgent",
    "metadata",
)

PROFILE_FIELDS = {"fullName": 150, "phone": 100, "organization": 200, "jobTitle": 150}


def clamp_limit(raw: str | None, default: int, lo: int, hi: int) -> int:
    try:
        n = int(raw) if raw not in (None, "") else default
    except (TypeError, ValueError):
        n = default
    if n == 0:
        n = default
    return min(max(n, lo), hi)


def _parse_when(raw: str | None) -> datetime | None:
    dt = to_datetime((raw or "").strip() or None)
    # Stored timestamps are naive UTC.
    return dt.replace(tzinfo=None) if dt else None


def list_audit_events(s: "Session", args: dict[str, Any]) -> tuple[list[dict[str, Any]], int]:
    limit = clamp_limit(args.get("limit"), 50, 1, 200)
    q = s.query(AuditEvent, User).outerjoin(User, User.id == AuditEvent.actor_user_id)

    severities = [v.strip() for v in (args.get("severity") or "").split(",") if v.strip()]
    if severities:
        q = q.filter(AuditEvent.severity.in_(severities))
    if args.get("userId"):
        q = q.filter(AuditEvent.actor_user_id == args["userId"])
    if args.get("action"):
        q = q.filter(AuditEvent.action == args["action"])
    if args.get("q"):
        q = q.filter(AuditEvent.message.ilike(f"%{args['q']}%"))
    since = _parse_when(args.get("since"))
    if since:
        q = q.filter(AuditEvent.created_at >= since)
    until = _parse_when(args.get("until"))
    if until:
        q = q.filter(AuditEvent.created_at <= until)

    rows = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()
    items = []
    for ev, user in rows:
        items.append(
            {
                "id": ev.id,
                "userId": ev.actor_user_id,
                "action": ev.action,
                "severity": ev.severity,
                "message": ev.message,
                "ipAddress": ev.client_ip,
                "userAgent": ev.user_agent,
                "metadata": json.loads(ev.metadata_json) if ev.metadata_json else None,
                "createdAt": ev.created_at.isoformat() if ev.created_at else None,
                "userName": user.name if user else None,
                "userEmail": user.email if user else ev.actor_user_email,
            }
        )
    return items, limit


def mask_audit_item(item: dict[str, Any]) -> dict[str, Any]:
    out = dict(item)
    out["userId"] = short_id(item.get("userId"))
    out["userName"] = mask_name(item.get("userName"))
    out["userEmail"] = mask_email(item.get("userEmail"))
    out["message"] = redact_free_text(item.get("message"))
    out["ipAddress"] = None
    out["userAgent"] = None
    out["metadata"] = None
    return out


def list_active_sessions(s: "Session", args: dict[str, Any]) -> tuple[list[dict[str, Any]], int]:
    limit = clamp_limit(args.get("limit"), 100, 1, 500)
    q = (
        s.query(AuthSession, User)
        .join(User, User.id == AuthSession.user_id)
        .filter(AuthSession.expires_at > datetime.utcnow())
        .filter(AuthSession.two_factor_verified.is_(True))
    )
    if args.get("userId"):
        q = q.filter(AuthSession.user_id == args["userId"])
    email = args.get("email") or args.get("q")
    if email:
        q = q.filter(User.email.ilike(f"%{email}%"))
    rows = q.order_by(AuthSession.created_at.desc()).limit(limit).all()
    sessions = [
        {
            "id": sess.id,
            "userId": sess.user_id,
            "createdAt": sess.created_at.isoformat() if sess.created_at else None,
            "updatedAt": sess.updated_at.isoformat() if sess.updated_at else None,
            "expiresAt": sess.expires_at.isoformat() if sess.expires_at else None,
            "ipAddress": sess.ip_address,
            "userAgent": sess.user_agent,
            "userName": user.name,
            "userEmail": user.email,
        }
        for sess, user in rows
    ]
    return sessions, limit


def mask_session_item(item: dict[str, Any]) -> dict[str, Any]:
    out = dict(item)
    out["userId"] = short_id(item.get("userId"))
    out["userName"] = mask_name(item.get("userName"))
    out["userEmail"] = mask_email(item.get("userEmail"))
    out["ipAddress"] = None
    out["userAgent"] = None
    return out


def sanitize_profile_value(value: Any, max_length: int) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_length]


def profile_update_from_payload(payload: dict[str, Any]) -> dict[str, str]:
    return {k: sanitize_profile_value(payload[k], n) for k, n in PROFILE_FIELDS.items() if k in payload}
