"""Credential/Login Driver: drives the portal's identity-provider form."""

from __future__ import annotations

import asyncio

from ..config import BROWSER_TIMEOUT
from ..constants import (
    ACADEMIC_IVIEW_URL,
    LOGIN_IDP_HOST,
    LOGIN_UNKNOWN_USER_MARKER,
    LOGIN_WRONG_PASSWORD_MARKER,
    PORTAL_BASE,
    SELECTORS,
    SESSION_COOKIE_NAMES,
)
from ..errors import CredentialError, NavigationError
from ..log import Logger, get_logger
from .browser import BrowserDriver, debug_screenshot

logger = get_logger(__name__)


def classify_login_error(text: str) -> CredentialError:
    """Map the portal's error banner to a typed credential error."""
    if LOGIN_UNKNOWN_USER_MARKER in text:
        return CredentialError(CredentialError.UNKNOWN_USERNAME, "Unknown username")
    if LOGIN_WRONG_PASSWORD_MARKER in text:
        return CredentialError(CredentialError.WRONG_PASSWORD, "Wrong password")
    return CredentialError(CredentialError.OTHER, text or "Login failed")


async def _locate_username_field(driver: BrowserDriver, log: Logger) -> str:
    selector = SELECTORS["login_username"]
    if await driver.wait_for_selector(selector, timeout_ms=3000):
        return selector

    if LOGIN_IDP_HOST not in driver.url and await driver.click(SELECTORS["login_link"]):
        log.info("[Login] Following portal login link...")
        await driver.wait_for_network_idle(timeout_ms=10000)

    alternative = SELECTORS["login_username_alt"]
    if not await driver.wait_for_selector(f"{selector}, {alternative}", timeout_ms=5000):
        await debug_screenshot(driver, "login_form_missing", log)
        raise NavigationError("Login form not found")
    return selector if await driver.query(selector) else alternative


async def wait_for_session_cookies(driver: BrowserDriver, timeout_s: float = 15.0) -> list[dict]:
    """Poll cookies until one of the portal's session cookies shows up."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while True:
        cookies = await driver.cookies()
        if any(c.get("name") in SESSION_COOKIE_NAMES for c in cookies):
            return cookies
        if loop.time() >= deadline:
            raise NavigationError("Login was not confirmed by the portal")
        await asyncio.sleep(0.5)


async def login(driver: BrowserDriver, username: str, password: str, log: Logger = logger,
                cookie_timeout_s: float = 15.0) -> list[dict]:
    """Sign in and return the session cookies.

    Raises:
        CredentialError: the portal rejected the credentials.
        NavigationError: the form could not be driven or login was not confirmed.
    """
    log.info("[Login] Navigating to login page...")
    await driver.navigate(PORTAL_BASE, timeout_ms=BROWSER_TIMEOUT)

    username_selector = await _locate_username_field(driver, log)
    log.info("[Login] Entering credentials...")
    await driver.type(username_selector, username)
    await driver.type(SELECTORS["login_password"], password)

    if not await driver.wait_for_selector(SELECTORS["login_button"], timeout_ms=5000):
        raise NavigationError("Login button not found")
    log.info("[Login] Submitting login form...")
    await driver.click(SELECTORS["login_button"])
    await driver.wait_for_network_idle(timeout_ms=10000)

    if await driver.query(SELECTORS["login_error"]):
        error = classify_login_error(await driver.inner_text(SELECTORS["login_error"]))
        log.info(f"[Login] Login error detected: {error.message}")
        raise error

    cookies = await wait_for_session_cookies(driver, cookie_timeout_s)
    log.info(f"[Login] Login successful ({len(cookies)} cookies).")
    return cookies


async def open_with_cookies(driver: BrowserDriver, cookies: list[dict], log: Logger = logger) -> bool:
    """Inject ``cookies`` and open the grades work area. False if the portal session expired."""
    await driver.set_cookies(cookies)
    log.info("[Login] Navigating to the grades work area with session cookies...")
    await driver.navigate(ACADEMIC_IVIEW_URL, timeout_ms=BROWSER_TIMEOUT)
    if not await driver.query("body *"):
        log.info("[Login] Cookies expired (empty body). Login required.")
        return False
    return True
