from __future__ import annotations

import logging
from typing import Any

from flask import Flask, current_app

from app.wellness_admin.models import new_id

logger = logging.getLogger(__name__)


class PushError(RuntimeError):
    def __init__(self, message: str, *, invalid_token: bool = False) -> None:
        super().__init__(message)
        self.invalid_token = invalid_token


def build_message_payload(
    title: str, body: str, data: dict[str, Any] | None, user_id: str, *, kind: str = "admin_message"
) -> dict[str, Any]:
    """Notification payload shared by every sender (FCM data values must be strings)."""
    merged = {str(k): str(v) for k, v in (data or {}).items()}
    merged.update({"type": kind, "userId": user_id})
    return {
        "notification": {"title": title, "body": body},
        "data": merged,
        "android": {"priority": "high", "notification": {"sound": "default", "channelId": "default"}},
        "apns": {"payload": {"aps": {"sound": "default", "badge": 1}}},
    }


class PushSender:
    def send(self, token: str, payload: dict[str, Any]) -> str:
        """Deliver to one device token and return the provider message id."""
        raise NotImplementedError


class LogPushSender(PushSender):
    """Development sender: logs the message instead of delivering it."""

    def send(self, token: str, payload: dict[str, Any]) -> str:
        message_id = f"local-{new_id()}"
        logger.info(
            "push (not delivered) token=%s… title=%s message_id=%s",
            token[:8],
            payload["notification"]["title"],
            message_id,
        )
        return message_id


class FirebasePushSender(PushSender):
    def __init__(self, firebase_app_factory) -> None:
        self._firebase_app_factory = firebase_app_factory

    def send(self, token: str, payload: dict[str, Any]) -> str:
        try:
            from firebase_admin import exceptions as fb_exc  # type: ignore
            from firebase_admin import messaging  # type: ignore
        except Exception as e:  # pragma: no cover
            raise PushError("firebase-admin required for push notifications. Install firebase-admin.") from e

        android = payload["android"]
        aps = payload["apns"]["payload"]["aps"]
        message = messaging.Message(
            token=token,
            notification=messaging.Notification(**payload["notification"]),
            data=payload["data"],
            android=messaging.AndroidConfig(
                priority=android["priority"],
                notification=messaging.AndroidNotification(
                    sound=android["notification"]["sound"],
                    channel_id=android["notification"]["channelId"],
                ),
            ),
            apns=messaging.APNSConfig(payload=messaging.APNSPayload(aps=messaging.Aps(sound=aps["sound"], badge=aps["badge"]))),
        )
        try:
            return messaging.send(message, app=self._firebase_app_factory())
        except (messaging.UnregisteredError, fb_exc.InvalidArgumentError) as e:
            raise PushError(str(e), invalid_token=True) from e
        except fb_exc.FirebaseError as e:
            raise PushError(str(e)) from e


def push_sender_from_config(app: Flask) -> PushSender:
    backend = (app.config.get("DOCSTORE_BACKEND") or "sql").strip().lower()
    if backend == "firestore":
        from app.wellness_admin.docstore import firebase_app

        project_id = (app.config.get("FIREBASE_PROJECT_ID") or "").strip()
        credentials_json = (app.config.get("FIREBASE_CREDENTIALS_JSON") or "").strip()
        return FirebasePushSender(lambda: firebase_app(project_id, credentials_json))
    return LogPushSender()


def get_push_sender() -> PushSender:
    sender = current_app.extensions.get("push_sender")
    if sender is None:
        sender = push_sender_from_config(current_app)
        current_app.extensions["push_sender"] = sender
    return sender
