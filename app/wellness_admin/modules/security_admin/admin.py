from __future__ import annotations

from datetime import datetime

from flask import Blueprint, Response, g, jsonify, request

from app.wellness_admin.audit import client_ip, record_event
from app.wellness_admin.db import db_session
from app.wellness_admin.docstore import get_docstore, utcnow
from app.wellness_admin.export import to_csv
from app.wellness_admin.mailer import send_login_alert
from app.wellness_admin.models import AuthSession, User
from app.wellness_admin.modules.security_admin.service import (
    AUDIT_COLUMNS,
    list_active_sessions,
    list_audit_events,
    mask_audit_item,
    mask_session_item,
    profile_update_from_payload,
    sanitize_profile_value,
)
from app.wellness_admin.rbac import ensure_security_permissions, require_login, require_permission
from app.wellness_admin.security import (
    get_security_settings,
    normalize_settings_input,
    settings_to_dict,
    update_security_settings,
)

bp = Blueprint("security_admin", __name__)
account_bp = Blueprint("account", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _privacy_requested() -> bool:
    return (request.args.get("privacy") or "").strip().lower() in ("1", "true", "yes")


@bp.before_app_request
def _ensure_security_permissions_once():
    # security:* permissions were added after the first RBAC seed.
    from flask import current_app

    if current_app.config.get("_security_permissions_ensured") or not request.path.startswith("/api/admin/security"):
        return None
    s = db_session()
    ensure_security_permissions(s)
    s.commit()
    current_app.config["_security_permissions_ensured"] = True
    return None


# ---------- Settings ----------
@bp.get("/security/settings")
@require_permission("security", "read")
def settings_get():
    s = db_session()
    row = get_security_settings(s)
    s.commit()
    return jsonify(settings_to_dict(row))


@bp.post("/security/settings")
@require_permission("security", "manage")
def settings_post():
    s = db_session()
    changes = normalize_settings_input(request.get_json(silent=True) or {})
    before, after, changed_keys = update_security_settings(s, changes, _current_user())
    record_event(
        s,
        actor=_current_user(),
        action="SECURITY_SETTINGS_UPDATED",
        severity="high",
        message="Security settings updated",
        entity_type="security_settings",
        entity_id="global",
        metadata={"changedKeys": changed_keys, "before": before, "after": after},
    )
    s.commit()
    return jsonify(after)


# ---------- Audit log ----------
@bp.get("/security/audit-log")
@require_permission("security", "read")
def audit_log():
    s = db_session()
    items, limit = list_audit_events(s, request.args.to_dict())
    if _privacy_requested():
        items = [mask_audit_item(i) for i in items]
    if (request.args.get("format") or "").lower() == "csv":
        body = to_csv(items, AUDIT_COLUMNS)
        stamp = datetime.utcnow().strftime("%Y%m%d-%H%M%S")
        return Response(
            body,
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="audit-log-{stamp}.csv"'},
        )
    return jsonify({"items": items, "limit": limit})


# ---------- Sessions ----------
@bp.get("/security/sessions")
@require_permission("security", "read")
def sessions_list():
    s = db_session()
    sessions, limit = list_active_sessions(s, request.args.to_dict())
    if _privacy_requested():
        sessions = [mask_session_item(i) for i in sessions]
    settings = get_security_settings(s)
    s.commit()
    return jsonify(
        {
            "sessions": sessions,
            "limit": limit,
            "policy": {"maxActiveSessionsPerUser": settings.max_active_sessions_per_user},
        }
    )


@bp.delete("/security/sessions/<session_id>")
@require_permission("security", "manage")
def session_revoke(session_id: str):
    s = db_session()
    target = s.get(AuthSession, session_id)
    if target is None:
        return jsonify({"error": "Session not found"}), 404
    record_event(
        s,
        actor=_current_user(),
        action="SESSION_REVOKED",
        severity="medium",
        message=f"Session revoked for {target.user.email if target.user else target.user_id}",
        entity_type="session",
        entity_id=target.id,
        metadata={"userId": target.user_id},
    )
    s.delete(target)
    s.commit()
    return jsonify({"success": True})


@bp.post("/security/log-login")
@require_login()
def log_login():
    user = _current_user()
    s = db_session()
    ip = client_ip()
    user_agent = request.headers.get("User-Agent")
    record_event(
        s,
        actor=user,
        action="LOGIN_SUCCESS",
        severity="medium",
        message="User logged in to the admin dashboard",
        metadata={"email": user.email},
    )
    s.commit()
    settings = get_security_settings(s)
    if settings.login_alert_enabled and user.email:
        send_login_alert(
            list(settings.login_alert_emails or []),
            user_email=user.email,
            login_at=datetime.utcnow(),
            ip_address=ip,
            user_agent=user_agent,
        )
    return jsonify({"logged": True})


@bp.get("/check-role")
@require_login()
def check_role():
    user = _current_user()
    return jsonify({"role": user.role or "admin", "userId": user.id})


# ---------- Account profile ----------
@account_bp.get("/profile")
@require_login()
def profile_get():
    user = _current_user()
    data = get_docstore().get(f"admin_profiles/{user.id}")
    if data is None:
        return jsonify({"fullName": user.name or "", "phone": "", "organization": "", "jobTitle": ""})
    return jsonify(
        {
            "fullName": sanitize_profile_value(data.get("fullName") or user.name or "", 200),
            "phone": sanitize_profile_value(data.get("phone"), 200),
            "organization": sanitize_profile_value(data.get("organization"), 200),
            "jobTitle": sanitize_profile_value(data.get("jobTitle"), 200),
        }
    )


@account_bp.patch("/profile")
@require_login()
def profile_patch():
    user = _current_user()
    update = profile_update_from_payload(request.get_json(silent=True) or {})
    if not update:
        return jsonify({"error": "No fields to update"}), 400
    get_docstore().set(f"admin_profiles/{user.id}", {**update, "updatedAt": utcnow()}, merge=True)
    return jsonify({"success": True})
