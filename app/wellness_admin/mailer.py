from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage

from flask import current_app

logger = logging.getLogger(__name__)


class MailerError(RuntimeError):
    pass


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: str
    password: str
    sender: str
    secure: bool


def smtp_config(config: dict) -> SmtpConfig | None:
    host = (config.get("SMTP_HOST") or "").strip()
    user = (config.get("SMTP_USER") or "").strip()
    password = (config.get("SMTP_PASS") or "").strip()
    sender = (config.get("SMTP_FROM") or "").strip()
    if not host or not user or not password or not sender:
        return None
    port = int(config.get("SMTP_PORT") or 587)
    secure = bool(config.get("SMTP_SECURE")) or port == 465
    return SmtpConfig(host=host, port=port, user=user, password=password, sender=sender, secure=secure)


def send_email(to: str, subject: str, body: str) -> None:
    """Send a plain-text email. Raises MailerError when SMTP is missing or fails."""
    cfg = smtp_config(current_app.config)
    if cfg is None:
        raise MailerError("SMTP is not configured. Set SMTP_HOST/SMTP_PORT/SMTP_USER/SMTP_PASS/SMTP_FROM.")

    msg = EmailMessage()
    msg["From"] = cfg.sender
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        if cfg.secure:
            with smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=20) as server:
                server.login(cfg.user, cfg.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(cfg.host, cfg.port, timeout=20) as server:
                server.starttls()
                server.login(cfg.user, cfg.password)
                server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise MailerError(f"SMTP send failed: {e}") from e


def send_credentials_email(to: str, *, name: str | None, temporary_password: str, roles: list[str] | None = None) -> None:
    login_url = f"{(current_app.config.get('APP_URL') or '').rstrip('/')}/login"
    roles_line = ", ".join(roles) if roles else "-"
    body = "\n".join(
        [
            f"Hi{' ' + name if name else ''},",
            "",
            "A Wellness Admin account has been created for you.",
            "",
            f"Login: {login_url}",
            f"Email: {to}",
            f"Temporary password: {temporary_password}",
            f"Roles: {roles_line}",
            "",
            "Please sign in and change your password immediately.",
        ]
    )
    send_email(to, "Your Wellness Admin account credentials", body)


def send_password_reset_email(to: str, *, name: str | None, temporary_password: str) -> None:
    login_url = f"{(current_app.config.get('APP_URL') or '').rstrip('/')}/login"
    body = "\n".join(
        [
            f"Hi{' ' + name if name else ''},",
            "",
            "Your Wellness Admin password has been reset by an administrator.",
            "",
            f"Login: {login_url}",
            f"Temporary password: {temporary_password}",
            "",
            "You will be asked to choose a new password after signing in.",
        ]
    )
    send_email(to, "Your Wellness Admin password was reset", body)


def send_login_alert(
    recipients: list[str],
    *,
    user_email: str,
    login_at: datetime,
    ip_address: str | None,
    user_agent: str | None,
) -> None:
    """Best effort: missing SMTP or a failed send is logged, never raised."""
    if not recipients:
        return
    if smtp_config(current_app.config) is None:
        logger.warning("SMTP is not configured; login alert email was skipped.")
        return
    lines = [
        "A Wellness Admin user just signed in.",
        "",
        f"User: {user_email}",
        f"Time (UTC): {login_at.isoformat()}",
    ]
    if ip_address:
        lines.append(f"IP address: {ip_address}")
    if user_agent:
        lines.append(f"User agent: {user_agent}")
    lines += ["", "If this was not you, please investigate immediately and rotate credentials."]
    body = "\n".join(lines)
    for to in recipients:
        try:
            send_email(to, f"Wellness Admin login: {user_email}", body)
        except MailerError as e:
            logger.warning("Login alert to %s failed: %s", to, e)
