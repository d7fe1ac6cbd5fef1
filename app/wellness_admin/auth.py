from __future__ import annotations

import secrets
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

import pyotp
from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.wellness_admin.audit import record_event, request_ip
from app.wellness_admin.db import db_session
from app.wellness_admin.mailer import send_login_alert
from app.wellness_admin.models import AuthSession, TwoFactor, User
from app.wellness_admin.rbac import is_superadmin, require_login, user_permission_keys
from app.wellness_admin.security import (
    ensure_csrf_token,
    get_security_settings,
    ip_allowed,
    password_change_required,
    validate_password,
)

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

TOTP_ISSUER = "Wellness Admin"
BACKUP_CODE_COUNT = 10

# Endpoints reachable without a CSRF token and before policy checks.
PUBLIC_ENDPOINTS = {"auth.login", "auth.logout", "auth.csrf", "auth.check_users", "auth.two_factor_verify"}


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _clear_session_cookie() -> None:
    session.pop("session_token", None)


def load_current_user() -> None:
    """
    Resolves g.current_user / g.auth_session from the session token stored in
    the signed cookie. Sessions still waiting for the TOTP step are exposed as
    g.pending_session only. Also assigns a per-request request_id.
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.auth_session = None
    g.pending_session = None

    token = session.get("session_token")
    if not token:
        return

    try:
        s = db_session()
        auth_session = s.query(AuthSession).filter(AuthSession.token == token).one_or_none()
        if not auth_session or auth_session.expires_at <= datetime.utcnow():
            if auth_session:
                s.delete(auth_session)
                s.commit()
            _clear_session_cookie()
            return
        user = auth_session.user
        if not user or not user.is_active:
            _clear_session_cookie()
            return
        if not auth_session.two_factor_verified:
            g.pending_session = auth_session
            return
        g.current_user = user
        g.auth_session = auth_session
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        _clear_session_cookie()


def policy_block_reason(user: User) -> str | None:
    """Returns the 409 error code that blocks a signed-in user, if any."""
    settings = get_security_settings(db_session())
    if settings.enforce_two_factor_for_all and not user.two_factor_enabled:
        return "two_factor_setup_required"
    if password_change_required(user, settings):
        return "password_change_required"
    return None


def enforce_session_cap(s, user: User, max_sessions: int, *, keep: AuthSession | None = None) -> int:
    """Revoke the oldest sessions beyond `max_sessions` (0 = unlimited)."""
    if max_sessions <= 0:
        return 0
    now = datetime.utcnow()
    active = (
        s.query(AuthSession)
        .filter(AuthSession.user_id == user.id, AuthSession.expires_at > now)
        .order_by(AuthSession.created_at.desc(), AuthSession.id.desc())
        .all()
    )
    if keep is not None:
        active = [keep] + [a for a in active if a.id != keep.id]
    revoked = 0
    for extra in active[max_sessions:]:
        s.delete(extra)
        revoked += 1
    return revoked


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name or None,
        "email": user.email or None,
        "twoFactorEnabled": bool(user.two_factor_enabled),
        "mustChangePassword": bool(user.must_change_password),
    }


def _audit_login_success(s, user: User, auth_session: AuthSession) -> None:
    settings = get_security_settings(s)
    record_event(
        s,
        actor=user,
        action="LOGIN_SUCCESS",
        severity="medium",
        message="User signed in",
        entity_type="session",
        entity_id=auth_session.id,
    )
    s.commit()
    if settings.login_alert_enabled:
        send_login_alert(
            list(settings.login_alert_emails or []),
            user_email=user.email,
            login_at=datetime.utcnow(),
            ip_address=auth_session.ip_address,
            user_agent=auth_session.user_agent,
        )


@bp.get("/csrf")
def csrf():
    return jsonify({"csrfToken": ensure_csrf_token()})


@bp.get("/check-users")
def check_users():
    s = db_session()
    return jsonify({"hasUsers": s.query(User.id).first() is not None})


@bp.post("/login")
def login():
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    ip = request_ip() or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    try:
        s = db_session()
        settings = get_security_settings(s)
        if settings.ip_allowlist_enabled and not ip_allowed(ip, list(settings.ip_allowlist or [])):
            record_event(
                s,
                actor=None,
                action="LOGIN_BLOCKED_IP",
                severity="high",
                message="Login attempt from an address outside the allowlist",
                metadata={"email": email},
            )
            s.commit()
            return jsonify({"error": "IP address not allowed"}), 403

        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="LOGIN_FAILED",
                severity="low",
                message="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            return jsonify({"error": "Invalid email or password"}), 401

        now = datetime.utcnow()
        auth_session = AuthSession(
            token=secrets.token_urlsafe(48),
            user_id=user.id,
            ip_address=ip,
            user_agent=request.headers.get("User-Agent"),
            two_factor_verified=not user.two_factor_enabled,
            expires_at=now + timedelta(hours=int(current_app.config.get("SESSION_TTL_HOURS") or 168)),
            created_at=now,
            updated_at=now,
        )
        s.add(auth_session)
        s.flush()
        enforce_session_cap(s, user, settings.max_active_sessions_per_user, keep=auth_session)
        s.commit()

        session["session_token"] = auth_session.token
        _login_attempts[ip].clear()

        if user.two_factor_enabled:
            return jsonify({"success": True, "twoFactorRequired": True, "csrfToken": ensure_csrf_token()})

        _audit_login_success(s, user, auth_session)
        return jsonify(
            {
                "success": True,
                "twoFactorRequired": False,
                "user": user_payload(user),
                "csrfToken": ensure_csrf_token(),
            }
        )
    except Exception:
        current_app.logger.exception("Login crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    token = session.get("session_token")
    if token:
        auth_session = s.query(AuthSession).filter(AuthSession.token == token).one_or_none()
        if auth_session:
            record_event(
                s,
                actor=auth_session.user,
                action="LOGOUT",
                severity="info",
                entity_type="session",
                entity_id=auth_session.id,
            )
            s.delete(auth_session)
            s.commit()
    _clear_session_cookie()
    return jsonify({"success": True})


@bp.get("/me")
@require_login()
def me():
    user: User = g.current_user
    keys = user_permission_keys(user)
    role_permissions = {}
    for role in user.active_roles():
        for perm in role.permissions:
            role_permissions[perm.id] = perm
    return jsonify(
        {
            "user": user_payload(user),
            "roles": [r.name for r in user.active_roles()],
            "isSuperadmin": is_superadmin(user),
            "legacyRole": user.role or None,
            "permissions": {
                "keys": sorted(keys),
                "roleBased": [
                    {"id": p.id, "resource": p.resource, "action": p.action, "description": p.description or None}
                    for p in role_permissions.values()
                ],
                "resourceBased": [
                    {
                        "id": rp.id,
                        "resourceType": rp.resource_type,
                        "resourceId": rp.resource_id,
                        "permissions": list(rp.permissions or []),
                        "conditions": rp.conditions,
                    }
                    for rp in user.resource_permissions
                ],
            },
        }
    )


@bp.post("/change-password")
@require_login()
def change_password():
    user: User = g.current_user
    payload = request.get_json(silent=True) or {}
    current_password = payload.get("currentPassword") or ""
    new_password = payload.get("newPassword") or ""
    if not current_password or not new_password:
        return jsonify({"error": "Current password and new password are required"}), 400

    s = db_session()
    settings = get_security_settings(s)
    errors = validate_password(new_password, settings)
    if errors:
        return jsonify({"error": errors[0], "errors": errors}), 400

    if not check_password_hash(user.password_hash, current_password):
        return jsonify({"error": "Current password is incorrect"}), 401

    now = datetime.utcnow()
    user.password_hash = generate_password_hash(new_password)
    user.must_change_password = False
    user.password_changed_at = now
    user.updated_at = now
    record_event(s, actor=user, action="PASSWORD_CHANGED", severity="medium", message="User changed their password")
    s.commit()
    return jsonify({"success": True, "message": "Password changed successfully"})


# ---------- Two-factor ----------
def _new_backup_codes() -> list[str]:
    return [secrets.token_hex(4) for _ in range(BACKUP_CODE_COUNT)]


def _verify_code(tf: TwoFactor, code: str) -> bool:
    code = (code or "").strip().replace(" ", "")
    if not code:
        return False
    if code.isdigit() and len(code) == 6 and pyotp.TOTP(tf.secret).verify(code, valid_window=1):
        return True
    remaining = list(tf.backup_codes or [])
    for i, hashed in enumerate(remaining):
        if check_password_hash(hashed, code):
            # Backup codes are single-use.
            tf.backup_codes = remaining[:i] + remaining[i + 1 :]
            return True
    return False


@bp.post("/two-factor/enable")
@require_login()
def two_factor_enable():
    user: User = g.current_user
    payload = request.get_json(silent=True) or {}
    if not check_password_hash(user.password_hash, payload.get("password") or ""):
        return jsonify({"error": "Invalid password"}), 401

    s = db_session()
    secret = pyotp.random_base32()
    codes = _new_backup_codes()
    tf = user.two_factor
    if tf is None:
        tf = TwoFactor(user_id=user.id, secret=secret, backup_codes=[])
        user.two_factor = tf
    tf.secret = secret
    tf.backup_codes = [generate_password_hash(c) for c in codes]
    # Stays disabled until the first code is verified.
    user.two_factor_enabled = False
    s.commit()
    uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=TOTP_ISSUER)
    return jsonify({"totpURI": uri, "secret": secret, "backupCodes": codes})


@bp.post("/two-factor/verify")
def two_factor_verify():
    payload = request.get_json(silent=True) or {}
    code = str(payload.get("code") or "")
    s = db_session()

    pending: AuthSession | None = getattr(g, "pending_session", None)
    if pending is not None:
        user = pending.user
        tf = user.two_factor
        if tf is None or not _verify_code(tf, code):
            record_event(s, actor=user, action="TWO_FACTOR_FAILED", severity="medium", message="Invalid two-factor code")
            s.commit()
            return jsonify({"error": "Invalid two-factor code"}), 401
        pending.two_factor_verified = True
        pending.updated_at = datetime.utcnow()
        s.commit()
        _audit_login_success(s, user, pending)
        return jsonify({"success": True, "user": user_payload(user), "csrfToken": ensure_csrf_token()})

    user = getattr(g, "current_user", None)
    if user is None:
        return jsonify({"error": "Unauthorized"}), 401
    tf = user.two_factor
    if tf is None:
        return jsonify({"error": "Two-factor setup has not been started"}), 400
    if not _verify_code(tf, code):
        return jsonify({"error": "Invalid two-factor code"}), 401
    if not user.two_factor_enabled:
        user.two_factor_enabled = True
        user.updated_at = datetime.utcnow()
        record_event(s, actor=user, action="TWO_FACTOR_ENABLED", severity="medium", message="Two-factor authentication enabled")
    s.commit()
    return jsonify({"success": True, "twoFactorEnabled": True})


@bp.post("/two-factor/disable")
@require_login()
def two_factor_disable():
    user: User = g.current_user
    payload = request.get_json(silent=True) or {}
    if not check_password_hash(user.password_hash, payload.get("password") or ""):
        return jsonify({"error": "Invalid password"}), 401

    s = db_session()
    if get_security_settings(s).enforce_two_factor_for_all:
        return jsonify({"error": "Two-factor authentication is required by the security policy"}), 400
    user.two_factor = None
    user.two_factor_enabled = False
    user.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="TWO_FACTOR_DISABLED", severity="high", message="Two-factor authentication disabled")
    s.commit()
    return jsonify({"success": True, "twoFactorEnabled": False})
