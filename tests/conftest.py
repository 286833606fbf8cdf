"""
pytest configuration and shared fixtures
"""

from __future__ import annotations

from typing import Any, Callable, Optional

import pytest

from unigrades.constants import GRADES_FRAME_PREFIX, SELECTORS
from unigrades.database.models import open_db
from unigrades.database.repository import StatisticsRepository, SubscriptionRepository, UsageCounters
from unigrades.notifications.push import PushOutcome
from unigrades.session_manager.browser import BrowserDriver
from unigrades.session_manager.captcha import CaptchaChannel

GRADES_FRAME_URL = f"{GRADES_FRAME_PREFIX}?sap-client=100"

GRADES_HTML = """
<html><body>
<table id="WD1A-GRADES">
  <thead>
    <tr>
      <th>Module Semester</th><th>Κωδικός</th><th>Τίτλος</th><th>Grade Symbol</th>
      <th>Academic year</th><th>Acad. Session</th><th>Attm.Credits</th><th>Bkg Status</th>
    </tr>
  </thead>
  <tbody id="WD1A-contentTBody">
    <tr>
      <td>1</td><td>CEID_101</td><td>Mathematics I</td><td>8,5</td>
      <td>2023-2024</td><td>Winter</td><td>6</td><td>Passed</td>
    </tr>
    <tr>
      <td>2</td><td>CEID_202</td><td>Physics</td><td></td>
      <td>2023-2024</td><td>Spring</td><td>5</td><td></td>
    </tr>
  </tbody>
</table>
</body></html>
"""

SESSION_COOKIES = [
    {"name": "MYSAPSSO2", "value": "sso-token", "domain": "progress.upatras.gr", "path": "/"},
    {"name": "saplb", "value": "lb", "domain": "progress.upatras.gr", "path": "/"},
]


class FakeDriver(BrowserDriver):
    """In-memory stand-in for the portal as seen through a browser.

    The captcha accepts ``correct_answer``; any other submitted code makes the
    page show the portal's error text until the captcha is refreshed.
    """

    def __init__(self, correct_answer: str = "ABC123", login_error: str = "",
                 body_empty: bool = False, has_frame: bool = True, verify_signal: bool = True,
                 html: str = GRADES_HTML, refresh_works: bool = True):
        self.correct_answer = correct_answer
        self.login_error = login_error
        self.body_empty = body_empty
        self.has_frame = has_frame
        self.verify_signal = verify_signal
        self.html = html
        self.refresh_works = refresh_works

        self.visited: list[str] = []
        self.typed: dict[str, str] = {}
        self.submitted: list[str] = []
        self.injected_cookies: list[dict] = []
        self.logged_in = False
        self.verified = False
        self.page_text = ""
        self.captcha_version = 1
        self.connected = True
        self.closed = False
        self._current_url = ""
        self._disconnect_callbacks: list[Callable[[], None]] = []

    # helpers for tests

    def disconnect(self):
        self.connected = False
        for callback in self._disconnect_callbacks:
            callback()

    # BrowserDriver

    @property
    def url(self) -> str:
        return self._current_url

    async def navigate(self, url: str, timeout_ms: int = 0) -> Optional[int]:
        self.visited.append(url)
        self._current_url = url
        return 200

    async def wait_for_frame(self, markers: list[str], timeout_ms: int) -> Optional[Any]:
        return "grades" if self.has_frame else None

    def frames(self) -> list[Any]:
        return ["main", "grades"] if self.has_frame else ["main"]

    def frame_url(self, frame: Any) -> str:
        return GRADES_FRAME_URL if frame == "grades" else self._current_url

    def is_detached(self, frame: Any) -> bool:
        return False

    async def wait_for_selector(self, selector: str, frame: Any = None, timeout_ms: int = 10000) -> bool:
        return await self.query(selector, frame)

    async def query(self, selector: str, frame: Any = None) -> bool:
        if selector == SELECTORS["login_error"]:
            return bool(self.login_error)
        if selector == "body *":
            return not self.body_empty
        if selector == SELECTORS["grades_table"]:
            return self.verified
        if "SuccessMessage" in selector or "ErrorMessage" in selector:
            return False
        return True

    async def inner_text(self, selector: Optional[str] = None, frame: Any = None) -> str:
        if selector == SELECTORS["login_error"]:
            return self.login_error
        return self.page_text

    async def get_attribute(self, selector: str, name: str, frame: Any = None) -> Optional[str]:
        if name == "src":
            return f"/captcha?v={self.captcha_version}"
        return None

    async def screenshot_element(self, selector: str, frame: Any = None) -> bytes:
        return f"captcha-{self.captcha_version}".encode()

    async def click(self, selector: str, frame: Any = None) -> bool:
        if selector == SELECTORS["captcha_submit"]:
            answer = self.typed.get(SELECTORS["captcha_input"], "")
            self.submitted.append(answer)
            if not self.verify_signal:
                return True
            if answer == self.correct_answer:
                self.verified = True
                self.page_text = "OK!"
            else:
                self.page_text = "ERROR! Λάθος κωδικός"
            return True
        if selector == SELECTORS["captcha_refresh"]:
            if not self.refresh_works:
                return False
            self.captcha_version += 1
            self.page_text = ""
            return True
        if selector == SELECTORS["login_button"]:
            self.logged_in = not self.login_error
            return True
        return True

    async def click_text(self, selector: str, texts: list[str], frame: Any = None) -> bool:
        return False

    async def type(self, selector: str, text: str, frame: Any = None, clear: bool = True) -> None:
        self.typed[selector] = text

    async def wait_for_network_idle(self, timeout_ms: int = 2000) -> None:
        return None

    async def content(self, frame: Any = None) -> str:
        return self.html if frame == "grades" else "<html></html>"

    async def cookies(self) -> list[dict]:
        if self.logged_in or self.injected_cookies:
            return [dict(c) for c in SESSION_COOKIES]
        return []

    async def set_cookies(self, cookies: list[dict]) -> None:
        self.injected_cookies = list(cookies)

    def is_connected(self) -> bool:
        return self.connected

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._disconnect_callbacks.append(callback)

    async def screenshot_page(self, path: str) -> None:
        return None

    async def close(self) -> None:
        self.closed = True
        self.connected = False


class FakeSolver:
    """Returns queued answers; None once the queue is empty."""

    def __init__(self, answers: Optional[list[Optional[str]]] = None, configured: bool = True):
        self.answers = list(answers or [])
        self.configured = configured
        self.channels: list[CaptchaChannel] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def solve_text(self, image: bytes, channel: CaptchaChannel = CaptchaChannel.INTERACTIVE, log=None):
        self.channels.append(channel)
        return self.answers.pop(0) if self.answers else None


class FakePush:
    """Records sends; outcomes can be forced per subscription endpoint."""

    def __init__(self, outcomes: Optional[dict[str, PushOutcome]] = None):
        self.outcomes = outcomes or {}
        self.sent: list[tuple[dict, dict]] = []
        self.public_key = "test-public-key"

    @property
    def is_configured(self) -> bool:
        return True

    async def send(self, subscription: dict, payload: dict, log=None) -> PushOutcome:
        outcome = self.outcomes.get(subscription.get("endpoint", ""), PushOutcome.OK)
        if outcome == PushOutcome.OK:
            self.sent.append((subscription, payload))
        return outcome


class DriverFactory:
    """Hands out FakeDrivers built with ``options`` and remembers them."""

    def __init__(self, **options):
        self.options = options
        self.drivers: list[FakeDriver] = []

    async def __call__(self) -> FakeDriver:
        driver = FakeDriver(**self.options)
        self.drivers.append(driver)
        return driver

    @property
    def last(self) -> FakeDriver:
        return self.drivers[-1]


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
async def db():
    conn = await open_db(":memory:")
    yield conn
    await conn.close()


@pytest.fixture
def subscriptions(db):
    return SubscriptionRepository(db)


@pytest.fixture
def statistics(db):
    return StatisticsRepository(db)


@pytest.fixture
def counters(statistics):
    return UsageCounters(statistics)
