"""Async Scrape Executor: extracts grades once the captcha is passed and finalizes the session."""

from __future__ import annotations

from typing import Awaitable, Callable

from ..constants import SELECTORS
from ..database.repository import UsageCounters
from ..log import Logger, get_logger
from ..models.grades import ScrapeResult
from ..models.session import FlowState
from .browser import BrowserDriver
from .parser import scrape
from .sessions import Session, SessionStore

logger = get_logger(__name__)

ScrapeFn = Callable[[BrowserDriver, Logger], Awaitable[ScrapeResult]]


class ScrapeExecutor:
    """Runs the page scraper with bounded retries.

    An empty transcript is a valid result: after ``attempts`` empty reads one
    last unconditional read is accepted as-is.
    """

    def __init__(self, sessions: SessionStore, counters: UsageCounters,
                 scrape_fn: ScrapeFn = scrape, attempts: int = 3, content_wait_ms: int = 8000):
        self._sessions = sessions
        self._counters = counters
        self._scrape = scrape_fn
        self._attempts = attempts
        self._content_wait_ms = content_wait_ms

    async def extract(self, driver: BrowserDriver, log: Logger = logger) -> ScrapeResult:
        for attempt in range(1, self._attempts + 1):
            result = await self._scrape(driver, log)
            if result.grades:
                return result
            log.info(f"[Scrape] Attempt {attempt}/{self._attempts} found no grades, waiting for content...")
            await driver.wait_for_selector(SELECTORS["table_like"], timeout_ms=self._content_wait_ms)
        return await self._scrape(driver, log)

    async def run(self, session: Session):
        """Scrape ``session``'s page and move it to ``completed`` or ``error``.

        The caller must hold ``session.lock``.
        """
        log = session.log
        session.set_flow_state(FlowState.SCRAPING)
        try:
            result = await self.extract(session.driver, log)
            cookies = await session.driver.cookies()
        except Exception as e:
            log.error(f"[Scrape] Background scrape failed: {e}")
            await self._sessions.release_browser(session)
            if session.fail(str(e)):
                await self._counters.bump(
                    session.owner.username, UsageCounters.FAILED_REFRESHES,
                    device_id=session.owner.device_id, device_model=session.owner.device_model,
                )
            return

        await self._sessions.release_browser(session)
        if self._sessions.get(session.token) is not session:
            log.info("[Scrape] Session vanished while scraping, dropping result.")
            return

        session.complete({
            "grades": [g.to_json_dict() for g in result.grades],
            "studentInfo": result.student_info.to_json_dict(),
            "cookies": cookies,
        })
        log.info(f"[Scrape] Completed with {len(result.grades)} grades.")
