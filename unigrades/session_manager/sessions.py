"""In-memory session store: one browser automation instance per opaque token."""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from ..log import Logger, get_logger, with_context
from ..models.session import FlowState, OwnerMeta, SessionStatus
from .browser import BrowserDriver

logger = get_logger(__name__)


@dataclass
class Session:
    """Live state of one grade refresh.

    Only the flow currently holding ``lock`` may touch ``driver``.
    """

    token: str
    driver: BrowserDriver
    owner: OwnerMeta
    auto_solve: bool = True
    status: SessionStatus = SessionStatus.LOADING
    flow_state: FlowState = FlowState.NAVIGATING
    captcha_frame: Any = None
    captcha_image: str = ""
    message: str = ""
    error: str = ""
    result: Optional[dict] = None
    manual_captcha_counted: bool = False
    last_active: float = field(default_factory=time.monotonic)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    log: Logger = logger

    def touch(self):
        self.last_active = time.monotonic()

    def set_flow_state(self, state: FlowState):
        if state != self.flow_state:
            self.log.info(f"[Portal] {self.flow_state.value} -> {state.value}")
        self.flow_state = state
        self.touch()

    def complete(self, result: dict) -> bool:
        """Move to ``completed``. Returns False if a terminal status was already set."""
        if self.status.is_terminal:
            return False
        self.status = SessionStatus.COMPLETED
        self.result = result
        self.set_flow_state(FlowState.COMPLETED)
        return True

    def fail(self, error: str) -> bool:
        """Move to ``error``. Returns False if a terminal status was already set."""
        if self.status.is_terminal:
            return False
        self.status = SessionStatus.ERROR
        self.error = error
        self.set_flow_state(FlowState.ERROR)
        return True

    def await_manual(self, captcha_image: str, message: str):
        self.status = SessionStatus.MANUAL_CAPTCHA
        self.captcha_image = captcha_image
        self.message = message
        self.set_flow_state(FlowState.MANUAL_CAPTCHA)

    def snapshot(self) -> dict:
        """The ``GET /status`` body for the current status."""
        if self.status == SessionStatus.COMPLETED:
            return {"status": self.status.value, **(self.result or {})}
        if self.status == SessionStatus.ERROR:
            return {"status": self.status.value, "error": self.error}
        if self.status == SessionStatus.MANUAL_CAPTCHA:
            return {
                "status": self.status.value,
                "token": self.token,
                "captchaImage": self.captcha_image,
                "message": self.message,
            }
        return {"status": SessionStatus.LOADING.value}


class SessionStore:
    """The only place that creates, looks up and destroys sessions."""

    def __init__(self, log: Logger = logger):
        self._sessions: dict[str, Session] = {}
        self._log = log

    def __len__(self) -> int:
        return len(self._sessions)

    def _new_token(self) -> str:
        while True:
            token = secrets.token_urlsafe(24)
            if token not in self._sessions:
                return token

    def create(self, driver: BrowserDriver, owner: OwnerMeta, auto_solve: bool = True) -> Session:
        token = self._new_token()
        session = Session(
            token=token,
            driver=driver,
            owner=owner,
            auto_solve=auto_solve,
            log=with_context(self._log, token=token, username=owner.username),
        )
        self._sessions[token] = session
        driver.on_disconnect(lambda: self._on_browser_lost(token))
        session.log.info(f"Session created ({len(self._sessions)} live)")
        return session

    def get(self, token: str) -> Optional[Session]:
        if not token:
            return None
        return self._sessions.get(token)

    def _discard(self, token: str) -> Optional[Session]:
        return self._sessions.pop(token, None)

    def _on_browser_lost(self, token: str):
        session = self._sessions.get(token)
        if session is None or session.status.is_terminal:
            return
        session.log.warning("Browser lost, dropping session.")
        self._discard(token)

    async def close(self, token: str):
        """Close the owned browser and forget the session. Idempotent."""
        session = self._discard(token)
        if session is None:
            return
        try:
            await session.driver.close()
        except Exception as e:
            session.log.warning(f"Browser teardown failed: {e}")
        session.log.info("Session closed.")

    async def release_browser(self, session: Session):
        """Close the browser but keep the entry so its terminal status can still be read."""
        try:
            await session.driver.close()
        except Exception as e:
            session.log.warning(f"Browser teardown failed: {e}")

    async def take_status(self, token: str) -> dict:
        """Report the status of ``token``; terminal statuses are returned once, then deleted."""
        session = self.get(token)
        if session is None:
            return {"status": SessionStatus.EXPIRED.value}
        body = session.snapshot()
        if session.status.is_terminal:
            await self.close(token)
        return body

    def for_user(self, username: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.owner.username == username]

    async def close_user(self, username: str) -> int:
        sessions = self.for_user(username)
        for session in sessions:
            await self.close(session.token)
        return len(sessions)

    async def close_all(self):
        for token in list(self._sessions):
            await self.close(token)
