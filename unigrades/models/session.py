"""Pydantic models and enums for portal session state."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class SessionStatus(str, Enum):
    """Externally visible status of a session, as returned by ``GET /status``."""

    LOADING = "loading"
    MANUAL_CAPTCHA = "manual_captcha"
    COMPLETED = "completed"
    ERROR = "error"
    EXPIRED = "expired"  # never stored; reported when the token is absent

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ERROR)


class FlowState(str, Enum):
    """Internal state of the portal flow driving one session."""

    NAVIGATING = "navigating"
    AWAITING_CAPTCHA = "awaiting_captcha"
    AUTO_SOLVING = "auto_solving"
    MANUAL_CAPTCHA = "manual_captcha"
    VERIFYING = "verifying"
    SCRAPING = "scraping"
    COMPLETED = "completed"
    ERROR = "error"


class OwnerMeta(BaseModel):
    """Who a session belongs to."""

    username: str = ""
    device_id: str = ""
    device_model: str = ""
