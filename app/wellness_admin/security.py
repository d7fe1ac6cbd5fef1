from __future__ import annotations

import ipaddress
import re
import secrets
from datetime import datetime, timedelta
from typing import Any

from flask import Request, session
from sqlalchemy.orm import Session

from app.wellness_admin.models import SecuritySettings, User

GLOBAL_ID = "global"

# camelCase API name -> SecuritySettings attribute
SETTINGS_FIELDS: dict[str, str] = {
    "enforceTwoFactorForAll": "enforce_two_factor_for_all",
    "loginAlertEnabled": "login_alert_enabled",
    "loginAlertEmails": "login_alert_emails",
    "ipAllowlistEnabled": "ip_allowlist_enabled",
    "ipAllowlist": "ip_allowlist",
    "passwordMinLength": "password_min_length",
    "passwordRequireUppercase": "password_require_uppercase",
    "passwordRequireNumber": "password_require_number",
    "passwordRequireSpecial": "password_require_special",
    "passwordExpirationDays": "password_expiration_days",
    "forcePasswordChangeOnFirstLogin": "force_password_change_on_first_login",
    "maxActiveSessionsPerUser": "max_active_sessions_per_user",
}

_BOOL_FIELDS = (
    "enforceTwoFactorForAll",
    "loginAlertEnabled",
    "ipAllowlistEnabled",
    "passwordRequireUppercase",
    "passwordRequireNumber",
    "passwordRequireSpecial",
    "forcePasswordChangeOnFirstLogin",
)

# (min, max) inclusive
_INT_BOUNDS: dict[str, tuple[int, int]] = {
    "passwordMinLength": (1, 128),
    "passwordExpirationDays": (0, 3650),
    "maxActiveSessionsPerUser": (0, 1000),
}

_SPECIAL_RE = re.compile(r"[^\w\s]")


# ---------- CSRF ----------
def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from header, form, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")

    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")

    return bool(token and token == session.get("csrf_token"))


# ---------- Settings ----------
def coerce_string_list(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    if isinstance(value, str):
        return [v.strip() for v in re.split(r"[,\n]", value) if v.strip()]
    return []


def get_security_settings(s: Session) -> SecuritySettings:
    """Load the global settings row, creating it with defaults on first use."""
    row = s.get(SecuritySettings, GLOBAL_ID)
    if row is None:
        row = SecuritySettings(id=GLOBAL_ID, login_alert_emails=[], ip_allowlist=[])
        s.add(row)
        s.flush()
    return row


def settings_to_dict(row: SecuritySettings) -> dict[str, Any]:
    out: dict[str, Any] = {"id": row.id}
    for api_name, attr in SETTINGS_FIELDS.items():
        value = getattr(row, attr)
        if api_name in ("loginAlertEmails", "ipAllowlist"):
            value = coerce_string_list(value)
        out[api_name] = value
    out["updatedAt"] = row.updated_at.isoformat() if row.updated_at else None
    return out


def normalize_settings_input(raw: dict[str, Any]) -> dict[str, Any]:
    """
    Keep only well-typed fields: real booleans, bounded integers, and string
    lists (list or comma/newline separated string). Anything else is dropped.
    """
    out: dict[str, Any] = {}
    if not isinstance(raw, dict):
        return out

    for key in _BOOL_FIELDS:
        if isinstance(raw.get(key), bool):
            out[key] = raw[key]

    if "loginAlertEmails" in raw:
        emails: list[str] = []
        for e in coerce_string_list(raw["loginAlertEmails"]):
            e = e.lower()
            if "@" in e and e not in emails:
                emails.append(e)
        out["loginAlertEmails"] = emails

    if "ipAllowlist" in raw:
        ips: list[str] = []
        for ip in coerce_string_list(raw["ipAllowlist"]):
            if ip not in ips:
                ips.append(ip)
        out["ipAllowlist"] = ips

    for key, (lo, hi) in _INT_BOUNDS.items():
        value = raw.get(key)
        if isinstance(value, bool) or value is None:
            continue
        try:
            n = int(value)
        except (TypeError, ValueError):
            continue
        if isinstance(value, float) and not value.is_integer():
            continue
        if lo <= n <= hi:
            out[key] = n
    return out


def update_security_settings(s: Session, changes: dict[str, Any], actor: User | None) -> tuple[dict, dict, list[str]]:
    """Apply normalized changes. Returns (before, after, changed_keys)."""
    row = get_security_settings(s)
    before = settings_to_dict(row)
    changed: list[str] = []
    for api_name, value in changes.items():
        attr = SETTINGS_FIELDS.get(api_name)
        if not attr:
            continue
        if before.get(api_name) != value:
            changed.append(api_name)
        setattr(row, attr, value)
    row.updated_at = datetime.utcnow()
    row.updated_by = actor.id if actor else None
    after = settings_to_dict(row)
    return before, after, changed


def validate_password(password: str | None, settings: SecuritySettings) -> list[str]:
    """Check a candidate password against the policy. Returns list of errors."""
    if not password or not isinstance(password, str):
        return ["Password is required"]
    errors: list[str] = []
    if len(password) < settings.password_min_length:
        errors.append(f"Password must be at least {settings.password_min_length} characters long")
    if settings.password_require_uppercase and not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if settings.password_require_number and not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if settings.password_require_special and not _SPECIAL_RE.search(password):
        errors.append("Password must contain at least one special character")
    return errors


def ip_allowed(ip: str | None, allowlist: list[str]) -> bool:
    """Exact address or CIDR match. Unparseable entries only match literally."""
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return ip in allowlist
    for entry in allowlist:
        entry = entry.strip()
        if not entry:
            continue
        if entry == ip:
            return True
        try:
            if "/" in entry and addr in ipaddress.ip_network(entry, strict=False):
                return True
            if "/" not in entry and addr == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


def password_expired(user: User, settings: SecuritySettings, now: datetime | None = None) -> bool:
    days = settings.password_expiration_days or 0
    if days <= 0:
        return False
    changed_at = user.password_changed_at or user.created_at
    if changed_at is None:
        return False
    return (now or datetime.utcnow()) - changed_at > timedelta(days=days)


def password_change_required(user: User, settings: SecuritySettings) -> bool:
    return bool(user.must_change_password) or password_expired(user, settings)
