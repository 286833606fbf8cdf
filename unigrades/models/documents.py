"""Durable per-user documents: push subscriptions and usage statistics."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import Field

from ..constants import ALLOWED_CHECK_INTERVALS, DEFAULT_CHECK_INTERVAL
from .grades import CamelModel, TrackedGrade


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_interval(value: Any) -> int:
    """Coerce ``value`` to an allowed check interval; anything else becomes the default."""
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        return DEFAULT_CHECK_INTERVAL
    if isinstance(value, float) and value != minutes:
        return DEFAULT_CHECK_INTERVAL
    return minutes if minutes in ALLOWED_CHECK_INTERVALS else DEFAULT_CHECK_INTERVAL


def encode_password(password: str) -> str:
    return base64.b64encode(password.encode("utf-8")).decode("ascii")


def decode_password(encoded: str) -> Optional[str]:
    """Decode a stored password, or None if it is missing or corrupt."""
    if not encoded:
        return None
    try:
        return base64.b64decode(encoded.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None


# ── Subscriptions ────────────────────────────────────────────────────────────


class SentNotification(CamelModel):
    notification_key: str
    sent_at: datetime = Field(default_factory=utcnow)


class DeviceSubscription(CamelModel):
    """One subscribed device of a user."""

    device_id: str
    device_model: str = ""
    push_subscription: dict[str, Any] = Field(default_factory=dict)
    last_seen_grades: list[TrackedGrade] = Field(default_factory=list)
    sent_notifications: list[SentNotification] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)

    def sent_keys(self) -> set[str]:
        return {entry.notification_key for entry in self.sent_notifications}

    def record_sent(self, key: str, limit: int, sent_at: Optional[datetime] = None) -> None:
        """Append ``key`` to the sent log, keeping only the newest ``limit`` entries."""
        self.sent_notifications.append(SentNotification(notification_key=key, sent_at=sent_at or utcnow()))
        if len(self.sent_notifications) > limit:
            self.sent_notifications = self.sent_notifications[-limit:]


class SubscriptionDocument(CamelModel):
    """Notification subscription of one user, keyed by username."""

    username: str
    password_base64: str = ""
    check_interval_minutes: int = DEFAULT_CHECK_INTERVAL
    auto_solve_enabled: bool = True
    consent_accepted_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    # set on every login attempt, successful or not
    last_attempt_at: Optional[datetime] = None
    devices: list[DeviceSubscription] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def find_device(self, device_id: str) -> Optional[DeviceSubscription]:
        for device in self.devices:
            if device.device_id == device_id:
                return device
        return None

    def remove_device(self, device_id: str) -> bool:
        before = len(self.devices)
        self.devices = [d for d in self.devices if d.device_id != device_id]
        return len(self.devices) != before


# ── Statistics ───────────────────────────────────────────────────────────────


class DeviceStats(CamelModel):
    device_id: str
    device_model: str = ""
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    online_opens: int = 0
    offline_opens: int = 0


class StatisticsDocument(CamelModel):
    """Monotonic usage counters of one user, keyed by username."""

    username: str
    counters: dict[str, int] = Field(default_factory=dict)
    devices: list[DeviceStats] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def device(self, device_id: str, device_model: str = "") -> DeviceStats:
        for entry in self.devices:
            if entry.device_id == device_id:
                if device_model:
                    entry.device_model = device_model
                return entry
        entry = DeviceStats(device_id=device_id, device_model=device_model)
        self.devices.append(entry)
        return entry
