"""Browser automation capability: a narrow driver interface and its Camoufox implementation."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional

from camoufox.async_api import AsyncCamoufox
from playwright.async_api import BrowserContext, Frame, Page
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from ..config import BROWSER_HEADLESS, BROWSER_TIMEOUT, DEBUG_SCREENSHOTS, SCREENSHOT_DIR
from ..constants import PORTAL_DOMAIN, VIEWPORT
from ..log import Logger, get_logger

logger = get_logger(__name__)


class BrowserDriver(ABC):
    """Everything the portal flow, login and worker need from a browser.

    ``frame`` arguments are opaque handles returned by :meth:`frames` or
    :meth:`wait_for_frame`; ``None`` means the top-level page.
    """

    @abstractmethod
    async def navigate(self, url: str, timeout_ms: int = BROWSER_TIMEOUT) -> Optional[int]:
        """Load ``url`` and return the HTTP status, if any."""

    @abstractmethod
    async def wait_for_frame(self, markers: list[str], timeout_ms: int) -> Optional[Any]:
        """Wait for a frame whose URL contains one of ``markers``."""

    @abstractmethod
    def frames(self) -> list[Any]: ...

    @abstractmethod
    def frame_url(self, frame: Any) -> str: ...

    @abstractmethod
    def is_detached(self, frame: Any) -> bool: ...

    @abstractmethod
    async def wait_for_selector(self, selector: str, frame: Any = None, timeout_ms: int = 10000) -> bool: ...

    @abstractmethod
    async def query(self, selector: str, frame: Any = None) -> bool:
        """True if ``selector`` matches at least one element."""

    @abstractmethod
    async def inner_text(self, selector: Optional[str] = None, frame: Any = None) -> str:
        """Text of the first match of ``selector``, or of the whole body."""

    @abstractmethod
    async def get_attribute(self, selector: str, name: str, frame: Any = None) -> Optional[str]: ...

    @abstractmethod
    async def screenshot_element(self, selector: str, frame: Any = None) -> bytes: ...

    @abstractmethod
    async def click(self, selector: str, frame: Any = None) -> bool:
        """Click the first match; False if nothing matched."""

    @abstractmethod
    async def click_text(self, selector: str, texts: list[str], frame: Any = None) -> bool:
        """Click the first match of ``selector`` whose text contains any of ``texts``."""

    @abstractmethod
    async def type(self, selector: str, text: str, frame: Any = None, clear: bool = True) -> None: ...

    @abstractmethod
    async def wait_for_network_idle(self, timeout_ms: int = 2000) -> None: ...

    @abstractmethod
    async def content(self, frame: Any = None) -> str: ...

    @abstractmethod
    async def cookies(self) -> list[dict]: ...

    @abstractmethod
    async def set_cookies(self, cookies: list[dict]) -> None: ...

    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    def on_disconnect(self, callback: Callable[[], None]) -> None:
        """Register ``callback`` for an unexpected browser exit."""

    @abstractmethod
    async def screenshot_page(self, path: str) -> None: ...

    @abstractmethod
    async def close(self) -> None:
        """Tear the browser down. Must be safe to call more than once."""

    @property
    def url(self) -> str:
        return ""


class PlaywrightDriver(BrowserDriver):
    """BrowserDriver over one Camoufox browser, context and page."""

    def __init__(self, camoufox, browser, context: BrowserContext, page: Page):
        self._camoufox = camoufox
        self._browser = browser
        self._context = context
        self._page = page
        self._closing = False
        self._closed = False
        self._disconnect_callbacks: list[Callable[[], None]] = []
        browser.on("disconnected", self._handle_disconnect)

    @property
    def url(self) -> str:
        return self._page.url

    def _target(self, frame: Optional[Frame]):
        return frame if frame is not None else self._page

    def _handle_disconnect(self, *_):
        if self._closing:
            return
        logger.warning("Browser disconnected unexpectedly.")
        for callback in list(self._disconnect_callbacks):
            try:
                callback()
            except Exception as e:
                logger.warning(f"Disconnect callback failed: {e}")

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._disconnect_callbacks.append(callback)

    async def navigate(self, url: str, timeout_ms: int = BROWSER_TIMEOUT) -> Optional[int]:
        response = await self._page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        return response.status if response else None

    async def wait_for_frame(self, markers: list[str], timeout_ms: int) -> Optional[Frame]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        while loop.time() < deadline:
            for frame in self._page.frames:
                if any(marker in frame.url for marker in markers):
                    return frame
            await asyncio.sleep(0.25)
        return None

    def frames(self) -> list[Frame]:
        return list(self._page.frames)

    def frame_url(self, frame: Frame) -> str:
        return frame.url

    def is_detached(self, frame: Frame) -> bool:
        return frame.is_detached()

    async def wait_for_selector(self, selector: str, frame: Optional[Frame] = None, timeout_ms: int = 10000) -> bool:
        try:
            await self._target(frame).wait_for_selector(selector, timeout=timeout_ms)
            return True
        except PlaywrightTimeout:
            return False

    async def query(self, selector: str, frame: Optional[Frame] = None) -> bool:
        return await self._target(frame).query_selector(selector) is not None

    async def inner_text(self, selector: Optional[str] = None, frame: Optional[Frame] = None) -> str:
        target = self._target(frame)
        if selector is None:
            return await target.evaluate("() => document.body ? document.body.innerText : ''")
        element = await target.query_selector(selector)
        return (await element.inner_text()).strip() if element else ""

    async def get_attribute(self, selector: str, name: str, frame: Optional[Frame] = None) -> Optional[str]:
        element = await self._target(frame).query_selector(selector)
        if element is None:
            return None
        # the live property, so relative src values resolve the same way the page sees them
        return await element.evaluate(f"(el) => el[{name!r}] ?? el.getAttribute({name!r})")

    async def screenshot_element(self, selector: str, frame: Optional[Frame] = None) -> bytes:
        target = self._target(frame)
        element = await target.query_selector(selector)
        if element is None:
            raise PlaywrightError(f"Element not found: {selector}")
        try:
            await target.wait_for_function(
                "(el) => el.complete === undefined || (el.complete && el.naturalWidth > 0)",
                arg=element,
                timeout=5000,
            )
        except PlaywrightTimeout:
            logger.warning("Image load wait timed out, proceeding anyway.")
        return await element.screenshot(timeout=60000)

    async def click(self, selector: str, frame: Optional[Frame] = None) -> bool:
        element = await self._target(frame).query_selector(selector)
        if element is None:
            return False
        try:
            await element.click()
        except PlaywrightError:
            await element.evaluate("(el) => el.click()")
        return True

    async def click_text(self, selector: str, texts: list[str], frame: Optional[Frame] = None) -> bool:
        for element in await self._target(frame).query_selector_all(selector):
            text = (await element.inner_text() or "").strip()
            if any(t in text for t in texts):
                await element.click()
                return True
        return False

    async def type(self, selector: str, text: str, frame: Optional[Frame] = None, clear: bool = True) -> None:
        target = self._target(frame)
        if clear:
            await target.fill(selector, "")
        await target.type(selector, text)

    async def wait_for_network_idle(self, timeout_ms: int = 2000) -> None:
        try:
            await self._page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeout:
            pass

    async def content(self, frame: Optional[Frame] = None) -> str:
        return await self._target(frame).content()

    async def cookies(self) -> list[dict]:
        return await self._context.cookies()

    async def set_cookies(self, cookies: list[dict]) -> None:
        await self._context.add_cookies(sanitize_cookies(cookies))

    def is_connected(self) -> bool:
        return not self._closed and self._browser.is_connected()

    async def screenshot_page(self, path: str) -> None:
        await self._page.screenshot(path=path, full_page=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closing = True
        self._closed = True
        try:
            await self._context.close()
        except Exception as e:
            logger.warning(f"Error closing context: {e}")
        try:
            await self._camoufox.__aexit__(None, None, None)
        except Exception as e:
            logger.warning(f"Error closing camoufox: {e}")


async def launch_driver(headless: Optional[bool] = None) -> PlaywrightDriver:
    """Launch an isolated Camoufox browser with a single page."""
    use_headless = headless if headless is not None else BROWSER_HEADLESS
    logger.info(f"Launching Camoufox (headless={use_headless})...")

    camoufox = AsyncCamoufox(
        headless=use_headless,
        humanize=True,
        i_know_what_im_doing=True,
        config={"forceScopeAccess": True},
        disable_coop=True,
    )
    browser = await camoufox.__aenter__()
    try:
        context = await browser.new_context(viewport=VIEWPORT)
        page = await context.new_page()
        page.set_default_timeout(BROWSER_TIMEOUT)
    except Exception:
        await camoufox.__aexit__(None, None, None)
        raise
    return PlaywrightDriver(camoufox, browser, context, page)


def sanitize_cookies(cookies: list[dict]) -> list[dict]:
    """Normalize cookies captured by a client before injecting them into a fresh browser."""
    sanitized = []
    for cookie in cookies:
        if not cookie.get("name"):
            continue
        domain = cookie.get("domain") or ""
        if not domain or "localhost" in domain:
            domain = PORTAL_DOMAIN
        domain = domain.replace("https://", "").replace("http://", "").split(":")[0]
        same_site = str(cookie.get("sameSite") or "Lax").capitalize()
        if same_site not in ("Strict", "Lax", "None"):
            same_site = "Lax"
        sanitized.append({
            "name": cookie["name"],
            "value": str(cookie.get("value", "")),
            "domain": domain,
            "path": cookie.get("path") or "/",
            "secure": cookie.get("secure", True),
            "httpOnly": cookie.get("httpOnly", False),
            "sameSite": same_site,
        })
    return sanitized


async def debug_screenshot(driver: BrowserDriver, name: str, log: Logger = logger) -> None:
    """Save a full-page screenshot when DEBUG_SCREENSHOTS is on."""
    if not DEBUG_SCREENSHOTS:
        return
    try:
        SCREENSHOT_DIR.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
        path = SCREENSHOT_DIR / f"{timestamp}_{name}.png"
        await driver.screenshot_page(str(path))
        log.info(f"Debug screenshot saved: {path}")
    except Exception as e:
        log.warning(f"Failed to take debug screenshot: {e}")
