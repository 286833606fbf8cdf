"""Web Push delivery and notification payloads."""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Optional

from pywebpush import WebPushException, webpush

from .. import config
from ..constants import NOTIFICATION_ICON
from ..log import Logger, get_logger
from ..models.grades import TrackedGrade

logger = get_logger(__name__)

GONE_STATUS_CODES = (404, 410)


class PushOutcome(str, Enum):
    OK = "ok"
    GONE = "gone"
    ERROR = "error"


def grade_notification(grade: TrackedGrade) -> dict[str, Any]:
    title = grade.title or grade.code
    return {
        "title": "📊 New Grade Available!",
        "body": f"New grade: {title} - {grade.grade}",
        "icon": NOTIFICATION_ICON,
        "badge": NOTIFICATION_ICON,
        "tag": f"grade-{grade.identity_key}",
        "data": {"url": "/"},
    }


def disabled_notification(inactivity_days: int) -> dict[str, Any]:
    return {
        "title": "Notifications disabled",
        "body": (
            f"This device has not opened the app for {inactivity_days} days, so grade "
            "notifications were turned off. Open the app to enable them again."
        ),
        "icon": NOTIFICATION_ICON,
        "badge": NOTIFICATION_ICON,
        "tag": "notifications-disabled",
        "data": {"url": "/"},
    }


class PushSender:
    """Sends Web Push messages signed with the service's VAPID key.

    ``pywebpush`` is blocking, so each send runs in a worker thread.
    """

    def __init__(self, private_key: str = config.VAPID_PRIVATE_KEY,
                 public_key: str = config.VAPID_PUBLIC_KEY,
                 subject: str = config.VAPID_EMAIL, ttl: int = 24 * 3600):
        self.private_key = private_key
        self.public_key = public_key
        self.subject = subject if subject.startswith(("mailto:", "https:")) else f"mailto:{subject}"
        self.ttl = ttl

    @property
    def is_configured(self) -> bool:
        return bool(self.private_key and self.public_key)

    def _send_sync(self, subscription: dict, payload: dict):
        webpush(
            subscription_info=subscription,
            data=json.dumps(payload, ensure_ascii=False),
            vapid_private_key=self.private_key,
            vapid_claims={"sub": self.subject},
            ttl=self.ttl,
        )

    async def send(self, subscription: dict, payload: dict, log: Logger = logger) -> PushOutcome:
        """Deliver ``payload``. GONE means the subscription must be dropped."""
        if not self.is_configured:
            log.warning("[Push] VAPID keys not configured, notification not sent.")
            return PushOutcome.ERROR
        if not subscription or not subscription.get("endpoint"):
            return PushOutcome.GONE
        try:
            await asyncio.to_thread(self._send_sync, subscription, payload)
        except WebPushException as e:
            status: Optional[int] = getattr(e.response, "status_code", None)
            if status in GONE_STATUS_CODES:
                log.info(f"[Push] Subscription gone (HTTP {status}).")
                return PushOutcome.GONE
            log.error(f"[Push] Send failed: {e}")
            return PushOutcome.ERROR
        except Exception as e:
            log.error(f"[Push] Send failed: {e}")
            return PushOutcome.ERROR
        log.info(f"[Push] Sent '{payload.get('tag', '')}'.")
        return PushOutcome.OK
