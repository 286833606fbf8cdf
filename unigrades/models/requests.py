"""Request bodies accepted by the HTTP service."""

from __future__ import annotations

from typing import Any

from pydantic import Field, field_validator

from ..constants import DEFAULT_CHECK_INTERVAL
from .documents import normalize_interval
from .grades import CamelModel


class LoginRequest(CamelModel):
    username: str = ""
    password: str = ""
    device_id: str = ""
    device_model: str = ""


class RefreshGradesRequest(CamelModel):
    cookies: list[dict[str, Any]] = Field(default_factory=list)
    username: str = ""
    password_base64: str = ""
    device_id: str = ""
    device_model: str = ""
    auto_solve_enabled: bool = True


class SolveCaptchaRequest(CamelModel):
    token: str = ""
    answer: str = ""


class TokenRequest(CamelModel):
    token: str = ""


class DeviceRequest(CamelModel):
    username: str = ""
    device_id: str = ""


class SubscribeRequest(CamelModel):
    username: str = ""
    password_base64: str = ""
    device_id: str = ""
    device_model: str = ""
    push_subscription: dict[str, Any] = Field(default_factory=dict)
    check_interval_minutes: int = DEFAULT_CHECK_INTERVAL
    consent_accepted: bool = False
    auto_solve_enabled: bool = True

    @field_validator("check_interval_minutes", mode="before")
    @classmethod
    def _snap_interval(cls, value: Any) -> int:
        return normalize_interval(value)


class IntervalRequest(CamelModel):
    username: str = ""
    check_interval_minutes: int = DEFAULT_CHECK_INTERVAL

    @field_validator("check_interval_minutes", mode="before")
    @classmethod
    def _snap_interval(cls, value: Any) -> int:
        return normalize_interval(value)


class AppOpenRequest(CamelModel):
    username: str = ""
    device_id: str = ""
    device_model: str = ""
    offline_open_delta: int = Field(default=0, ge=0)
    count_online_open: bool = False
