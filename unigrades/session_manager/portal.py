"""Portal Flow Orchestrator: captcha handling between an authenticated page and the scraper.

Interactive flow of one session::

    navigating -> awaiting_captcha -> (auto_solving -> verifying)* -> manual_captcha
                                                           |
                                                           +-> scraping -> completed

with ``error`` reachable from every state. The unattended variant used by the
background worker never stops at ``manual_captcha``; it fails instead.
"""

from __future__ import annotations

import asyncio
import base64
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .. import config
from ..constants import (
    ACADEMIC_IVIEW_URL,
    GRADES_FRAME_MARKERS,
    PORTAL_HOME_URL,
    SELECTORS,
    SUBMIT_BUTTON_TEXTS,
    VERIFY_ERROR_SELECTORS,
    VERIFY_ERROR_TEXTS,
    VERIFY_SUCCESS_SELECTORS,
    VERIFY_SUCCESS_TEXTS,
)
from ..database.repository import UsageCounters
from ..errors import (
    CaptchaElementError,
    CaptchaUnsolvedError,
    FrameNotFoundError,
    IncorrectCaptchaError,
    NavigationError,
    VerificationTimeoutError,
)
from ..log import Logger, get_logger
from ..models.grades import ScrapeResult
from ..models.session import FlowState, SessionStatus
from .browser import BrowserDriver, debug_screenshot
from .captcha import CaptchaChannel, CaptchaSolver
from .scraper import ScrapeExecutor
from .sessions import Session, SessionStore

logger = get_logger(__name__)

MANUAL_MESSAGE_AUTO_FAILED = "Automatic captcha solving failed. Please solve it manually."
MANUAL_MESSAGE_AUTO_DISABLED = "Captcha auto-solve is disabled. Please solve it manually."


def to_data_uri(image: bytes) -> str:
    return f"data:image/png;base64,{base64.b64encode(image).decode('ascii')}"


# ── Outcome detection ────────────────────────────────────────────────────────


class VerifyOutcome(str, Enum):
    SUCCESS = "success"
    INCORRECT = "incorrect"


class OutcomeDetector(ABC):
    """Reads the portal's reaction to a submitted captcha from one frame."""

    @abstractmethod
    async def detect(self, driver: BrowserDriver, frame: Any) -> Optional[VerifyOutcome]: ...


class MarkupOutcomeDetector(OutcomeDetector):
    """Detects the outcome from message icons and texts of the portal's current markup."""

    def __init__(self, success_selectors: list[str] = VERIFY_SUCCESS_SELECTORS,
                 success_texts: list[str] = VERIFY_SUCCESS_TEXTS,
                 error_selectors: list[str] = VERIFY_ERROR_SELECTORS,
                 error_texts: list[str] = VERIFY_ERROR_TEXTS,
                 content_selector: str = SELECTORS["grades_table"]):
        self.success_selectors = success_selectors
        self.success_texts = success_texts
        self.error_selectors = error_selectors
        self.error_texts = error_texts
        self.content_selector = content_selector

    async def _any_selector(self, driver: BrowserDriver, frame: Any, selectors: list[str]) -> bool:
        return bool(selectors) and await driver.query(", ".join(selectors), frame)

    async def detect(self, driver: BrowserDriver, frame: Any) -> Optional[VerifyOutcome]:
        text = await driver.inner_text(None, frame)
        if await self._any_selector(driver, frame, self.success_selectors) or any(t in text for t in self.success_texts):
            return VerifyOutcome.SUCCESS
        if await self._any_selector(driver, frame, self.error_selectors) or any(t in text for t in self.error_texts):
            return VerifyOutcome.INCORRECT
        if self.content_selector and await driver.query(self.content_selector, frame):
            return VerifyOutcome.SUCCESS
        return None


# ── Orchestrator ─────────────────────────────────────────────────────────────


class PortalFlow:
    """Drives captcha resolution for sessions (interactive) and for the worker (unattended)."""

    def __init__(self, sessions: SessionStore, solver: CaptchaSolver, executor: ScrapeExecutor,
                 counters: UsageCounters, detector: Optional[OutcomeDetector] = None,
                 handoff: Optional[Callable[[Session], Awaitable[None]]] = None,
                 auto_solve_globally: bool = not config.DISABLE_AUTO_CAPTCHA,
                 max_auto_attempts: int = config.MAX_AUTO_ATTEMPTS,
                 verify_timeout_s: float = config.VERIFY_TIMEOUT_SECONDS,
                 frame_timeout_ms: int = 12000,
                 refresh_timeout_s: float = 10.0,
                 poll_interval_s: float = 0.3):
        self.sessions = sessions
        self.solver = solver
        self.executor = executor
        self.counters = counters
        self.detector = detector or MarkupOutcomeDetector()
        self.handoff = handoff
        self.auto_solve_globally = auto_solve_globally
        self.max_auto_attempts = max_auto_attempts
        self.verify_timeout_s = verify_timeout_s
        self.frame_timeout_ms = frame_timeout_ms
        self.refresh_timeout_s = refresh_timeout_s
        self.poll_interval_s = poll_interval_s

    # ── Browser steps ────────────────────────────────────────────────────

    async def navigate_to_work_area(self, driver: BrowserDriver, log: Logger = logger):
        log.info("[Portal] Navigating to Academic Work iView...")
        for attempt in range(1, 3):
            try:
                status = await driver.navigate(ACADEMIC_IVIEW_URL, timeout_ms=config.BROWSER_TIMEOUT)
                if status != 404:
                    return
            except Exception as e:
                log.warning(f"[Portal] Navigation attempt {attempt} failed: {e}")
        log.warning("[Portal] Direct navigation failed, attempting portal home fallback.")
        try:
            await driver.navigate(PORTAL_HOME_URL, timeout_ms=config.BROWSER_TIMEOUT)
        except Exception as e:
            raise NavigationError(f"Portal unreachable: {e}") from e

    def active_frame(self, driver: BrowserDriver, frame: Any) -> Any:
        """``frame`` if still attached, else the current captcha/grades frame, if any."""
        if frame is not None and not driver.is_detached(frame):
            return frame
        for candidate in driver.frames():
            if any(marker in driver.frame_url(candidate) for marker in GRADES_FRAME_MARKERS):
                return candidate
        return None

    async def locate_captcha_frame(self, driver: BrowserDriver, log: Logger = logger) -> Any:
        frame = await driver.wait_for_frame(GRADES_FRAME_MARKERS, timeout_ms=self.frame_timeout_ms)
        if frame is None:
            await debug_screenshot(driver, "frame_missing", log)
            raise FrameNotFoundError("Captcha/Grades frame not found.")
        return frame

    async def _captcha_selector(self, driver: BrowserDriver, frame: Any, log: Logger) -> str:
        selector = SELECTORS["captcha_image"]
        if await driver.wait_for_selector(selector, frame, timeout_ms=10000):
            return selector
        log.warning("[Portal] Captcha selector wait timed out, trying fallback...")
        fallback = SELECTORS["captcha_image_fallback"]
        if await driver.query(fallback, frame):
            return fallback
        raise CaptchaElementError("Captcha element not found")

    async def capture_captcha(self, driver: BrowserDriver, frame: Any, log: Logger = logger) -> bytes:
        log.info("[Portal] Capturing captcha element...")
        selector = await self._captcha_selector(driver, frame, log)
        return await driver.screenshot_element(selector, frame)

    async def refresh_captcha(self, driver: BrowserDriver, frame: Any, log: Logger = logger) -> Optional[bytes]:
        """Ask the portal for a new captcha and return its screenshot, or None on failure."""
        log.info("[Portal] Refreshing captcha...")
        try:
            active = self.active_frame(driver, frame)
            if active is None:
                raise CaptchaElementError("Refresh failed: frame lost")

            old_src = await driver.get_attribute(SELECTORS["captcha_image"], "src", active) or ""
            if not await driver.click(SELECTORS["captcha_refresh"], active):
                log.info("[Portal] Refresh button not found.")
                return None

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.refresh_timeout_s
            while True:
                src = await driver.get_attribute(SELECTORS["captcha_image"], "src", active)
                if src and src != old_src:
                    break
                if loop.time() >= deadline:
                    log.warning("[Portal] Timed out waiting for captcha src change, proceeding anyway.")
                    break
                await asyncio.sleep(self.poll_interval_s)

            active = self.active_frame(driver, active)
            return await self.capture_captcha(driver, active, log)
        except Exception as e:
            log.error(f"[Portal] Error refreshing captcha: {e}")
            return None

    async def submit_and_verify(self, driver: BrowserDriver, frame: Any, answer: str, log: Logger = logger) -> bool:
        """Type ``answer``, submit, and wait for the portal's verdict across all frames.

        Raises:
            IncorrectCaptchaError: the portal rejected the code.
            VerificationTimeoutError: no verdict within the window.
            CaptchaElementError: the form is gone.
        """
        active = self.active_frame(driver, frame)
        if active is None:
            raise CaptchaElementError("Captcha frame lost")
        if not await driver.query(SELECTORS["captcha_input"], active):
            raise CaptchaElementError("Could not find captcha input")

        await driver.type(SELECTORS["captcha_input"], answer, active, clear=True)
        submitted = await driver.click(SELECTORS["captcha_submit"], active)
        if not submitted:
            submitted = await driver.click_text(SELECTORS["captcha_submit_candidates"], SUBMIT_BUTTON_TEXTS, active)
        if not submitted:
            raise CaptchaElementError("Could not find captcha submit button")

        log.info("[Portal] Waiting for captcha verification result...")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.verify_timeout_s
        while loop.time() < deadline:
            for candidate in driver.frames():
                if driver.is_detached(candidate):
                    continue
                try:
                    outcome = await self.detector.detect(driver, candidate)
                except Exception:
                    # frame navigated away mid-evaluation
                    continue
                if outcome == VerifyOutcome.SUCCESS:
                    log.info("[Portal] Verification success.")
                    return True
                if outcome == VerifyOutcome.INCORRECT:
                    log.info("[Portal] Verification error flagged by portal.")
                    raise IncorrectCaptchaError()
            await driver.wait_for_network_idle(timeout_ms=2000)
            await asyncio.sleep(self.poll_interval_s)

        if await driver.query(SELECTORS["grades_table"]):
            return True
        await debug_screenshot(driver, "verify_timeout", log)
        raise VerificationTimeoutError("Verification timed out (no success indicator found)")

    # ── Interactive flow ─────────────────────────────────────────────────

    def auto_solve_enabled(self, session: Session) -> bool:
        return session.auto_solve and self.auto_solve_globally and self.solver.is_configured

    async def _hand_off(self, session: Session):
        session.status = SessionStatus.LOADING
        if self.handoff is not None:
            await self.handoff(session)
        else:
            await self.executor.run(session)

    async def _enter_manual(self, session: Session, image: bytes, message: str):
        session.await_manual(to_data_uri(image), message)
        if not session.manual_captcha_counted:
            session.manual_captcha_counted = True
            await self.counters.bump(
                session.owner.username, UsageCounters.MANUAL_CAPTCHA_REQUIRED,
                device_id=session.owner.device_id, device_model=session.owner.device_model,
            )

    async def _fail(self, session: Session, error: Exception):
        session.log.error(f"[Portal] Flow error: {error}")
        await debug_screenshot(session.driver, "portal_error", session.log)
        await self.sessions.release_browser(session)
        session.fail(str(error))

    async def start(self, session: Session, skip_navigation: bool = False):
        """Run the flow for ``session`` until scraping is handed off or a human is needed.

        The caller must hold ``session.lock``. Errors never escape; they become
        the session's ``error`` status.
        """
        driver, log = session.driver, session.log
        try:
            if not skip_navigation:
                session.set_flow_state(FlowState.NAVIGATING)
                await self.navigate_to_work_area(driver, log)

            session.set_flow_state(FlowState.AWAITING_CAPTCHA)
            frame = await self.locate_captcha_frame(driver, log)
            session.captcha_frame = frame
            image = await self.capture_captcha(driver, frame, log)

            if not self.auto_solve_enabled(session):
                await self._enter_manual(session, image, MANUAL_MESSAGE_AUTO_DISABLED)
                return

            for attempt in range(1, self.max_auto_attempts + 1):
                session.set_flow_state(FlowState.AUTO_SOLVING)
                answer = await self.solver.solve_text(image, CaptchaChannel.INTERACTIVE, log)
                if answer:
                    log.info(f"[Portal] Auto-solving attempt {attempt}/{self.max_auto_attempts}: {answer}")
                    session.set_flow_state(FlowState.VERIFYING)
                    try:
                        await self.submit_and_verify(driver, session.captcha_frame, answer, log)
                        await self._hand_off(session)
                        return
                    except IncorrectCaptchaError as e:
                        log.warning(f"[Portal] Auto-solve attempt {attempt} rejected: {e}")
                        await self.counters.bump(
                            session.owner.username, UsageCounters.AUTO_SOLVE_WRONG,
                            device_id=session.owner.device_id, device_model=session.owner.device_model,
                        )
                else:
                    log.warning(f"[Portal] Auto-solve attempt {attempt}: <no answer>")

                # a fresh image either for the next attempt or for the human
                refreshed = await self.refresh_captcha(driver, session.captcha_frame, log)
                if refreshed is None:
                    if attempt < self.max_auto_attempts:
                        log.warning("[Portal] Could not refresh captcha, breaking auto-solve loop.")
                        break
                    continue
                image = refreshed
                session.captcha_frame = self.active_frame(driver, session.captcha_frame) or session.captcha_frame

            log.info("[Portal] All auto-solve attempts exhausted. Falling back to manual captcha.")
            await self._enter_manual(session, image, MANUAL_MESSAGE_AUTO_FAILED)
        except Exception as e:
            await self._fail(session, e)

    async def solve_manual(self, session: Session, answer: str) -> list[dict]:
        """Verify a human answer for ``session``; returns the current cookies on success.

        The caller must hold ``session.lock`` and schedule the scrape afterwards.
        Rejected answers leave the session waiting for another manual attempt.
        """
        session.set_flow_state(FlowState.VERIFYING)
        try:
            await self.submit_and_verify(session.driver, session.captcha_frame, answer, session.log)
        except Exception:
            session.set_flow_state(FlowState.MANUAL_CAPTCHA)
            raise
        session.status = SessionStatus.LOADING
        session.set_flow_state(FlowState.SCRAPING)
        await self.counters.bump(
            session.owner.username, UsageCounters.MANUAL_CAPTCHA_SOLVED,
            device_id=session.owner.device_id, device_model=session.owner.device_model,
        )
        return await session.driver.cookies()

    async def refresh_for_session(self, session: Session) -> Optional[str]:
        """New captcha image for a session waiting on a human, as a data URI."""
        image = await self.refresh_captcha(session.driver, session.captcha_frame, session.log)
        if image is None:
            return None
        session.captcha_frame = self.active_frame(session.driver, session.captcha_frame) or session.captcha_frame
        session.captcha_image = to_data_uri(image)
        session.touch()
        return session.captcha_image

    # ── Unattended flow ──────────────────────────────────────────────────

    async def run_unattended(self, driver: BrowserDriver, log: Logger = logger) -> ScrapeResult:
        """Pass the captcha without a human and return the scraped grades.

        Raises:
            CaptchaUnsolvedError: every automatic attempt failed.
        """
        await self.navigate_to_work_area(driver, log)
        frame = await self.locate_captcha_frame(driver, log)
        image = await self.capture_captcha(driver, frame, log)

        for attempt in range(1, self.max_auto_attempts + 1):
            answer = await self.solver.solve_text(image, CaptchaChannel.UNATTENDED, log)
            if answer:
                log.info(f"[Portal] Unattended attempt {attempt}/{self.max_auto_attempts}: {answer}")
                try:
                    await self.submit_and_verify(driver, frame, answer, log)
                    return await self.executor.extract(driver, log)
                except IncorrectCaptchaError:
                    log.warning(f"[Portal] Unattended attempt {attempt} rejected by portal.")
            else:
                log.warning(f"[Portal] Unattended attempt {attempt}: <no answer>")

            if attempt < self.max_auto_attempts:
                refreshed = await self.refresh_captcha(driver, frame, log)
                if refreshed is None:
                    break
                image = refreshed
                frame = self.active_frame(driver, frame) or frame

        raise CaptchaUnsolvedError("Could not auto-solve captcha")
