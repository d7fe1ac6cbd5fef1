from __future__ import annotations

import re

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"\+?\d[\d\s().-]{6,}\d")


def short_id(value: str | None, keep: int = 6) -> str:
    if not value:
        return ""
    value = str(value)
    return value if len(value) <= keep else f"{value[:keep]}…"


def mask_email(email: str | None) -> str:
    if not email or "@" not in email:
        return email or ""
    local, domain = email.split("@", 1)
    head = local[:1] if local else ""
    return f"{head}***@{domain}"


def mask_phone(phone: str | None) -> str:
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if len(digits) <= 4:
        return "*" * len(digits)
    return "*" * (len(digits) - 4) + digits[-4:]


def mask_name(name: str | None) -> str:
    if not name:
        return ""
    return " ".join(f"{part[:1]}." for part in name.split() if part)


def user_label(name: str | None, email: str | None, user_id: str | None, *, privacy: bool) -> str:
    if not privacy:
        return name or email or (user_id or "")
    if name:
        return mask_name(name)
    if email:
        return mask_email(email)
    return short_id(user_id)


def redact_free_text(text: str | None) -> str:
    """Replace email addresses and phone-like digit runs in free text."""
    if not text:
        return text or ""
    text = _EMAIL_RE.sub(lambda m: mask_email(m.group(0)), text)
    return _PHONE_RE.sub(lambda m: mask_phone(m.group(0)), text)
