import json
import logging
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.wellness_admin.models import AuditEvent, User

logger = logging.getLogger(__name__)

SEVERITIES = ("info", "low", "medium", "high", "critical")


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    severity: str = "info",
    message: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper. Caller commits.
    """
    if severity not in SEVERITIES:
        severity = "info"
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        severity=severity,
        message=message,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=client_ip() if in_request else None,
        user_agent=(request.headers.get("User-Agent") if in_request else None),
    )
    s.add(ev)
    if severity in ("high", "critical"):
        logger.warning("audit %s (%s) actor=%s request_id=%s", action, severity, ev.actor_user_email, rid)
    return ev


def request_ip() -> str | None:
    """
    Peer address for security decisions (login throttling, IP allowlist).
    Only forwarded headers from TRUSTED_PROXY_HOPS proxies are honoured,
    through ProxyFix.
    """
    return request.remote_addr


def client_ip() -> str | None:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket address. Display only."""
    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (request.headers.get("X-Real-IP") or "").strip()
    if real_ip:
        return real_ip
    return request.remote_addr
