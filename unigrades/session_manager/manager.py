"""Grades service HTTP API.

Runs the aiohttp server that fronts the portal automation: every grade refresh
gets its own browser and an opaque token the client polls.

Endpoints:
    POST  /login                            - Sign in, return portal cookies
    POST  /refresh-grades                   - Open the portal with cookies, start a session
    GET   /status                           - Poll a session (terminal states are read once)
    POST  /solve-captcha                    - Submit a human captcha answer
    POST  /refresh-captcha                  - New captcha image for a waiting session
    POST  /logout                           - Close a user's sessions, drop the device subscription
    GET   /notifications/settings           - Subscription state for a user/device
    POST  /notifications/subscribe          - Subscribe a device to grade pushes
    POST  /notifications/unsubscribe-device - Remove one device
    POST  /notifications/unsubscribe-all    - Remove the whole subscription
    PATCH /notifications/interval           - Change the check interval
    POST  /statistics/app-open              - Record app opens
    GET   /push/vapid-key                   - Public VAPID key for the client
    GET   /health                           - Liveness
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Optional, Type, TypeVar, Union

import aiosqlite
from aiohttp import web
from pydantic import BaseModel, ValidationError

from .. import config
from ..constants import DEFAULT_CHECK_INTERVAL
from ..database.models import open_db
from ..database.repository import StatisticsRepository, SubscriptionRepository, UsageCounters
from ..errors import CredentialError, StoreUnavailableError
from ..log import get_logger, with_context
from ..models.documents import (
    DeviceSubscription,
    StatisticsDocument,
    SubscriptionDocument,
    decode_password,
    utcnow,
)
from ..models.requests import (
    AppOpenRequest,
    DeviceRequest,
    IntervalRequest,
    LoginRequest,
    RefreshGradesRequest,
    SolveCaptchaRequest,
    SubscribeRequest,
    TokenRequest,
)
from ..models.session import OwnerMeta, SessionStatus
from ..notifications.push import PushSender
from ..notifications.worker import NotificationWorker
from .browser import BrowserDriver, launch_driver, sanitize_cookies
from .captcha import CaptchaSolver, build_solver
from .login import login, open_with_cookies
from .portal import PortalFlow
from .scraper import ScrapeExecutor
from .sessions import Session, SessionStore

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
DriverFactory = Callable[[], Awaitable[BrowserDriver]]


class GradesService:
    """Owns the session store, the document store and the background worker."""

    def __init__(self, driver_factory: DriverFactory = launch_driver,
                 solver: Optional[CaptchaSolver] = None,
                 push: Optional[PushSender] = None,
                 db_path: Union[str, Path] = config.DB_PATH,
                 store_enabled: bool = config.STORE_ENABLED,
                 worker_enabled: bool = config.WORKER_ENABLED):
        self.driver_factory = driver_factory
        self.solver = solver or build_solver()
        self.push = push or PushSender()
        self.db_path = db_path
        self.store_enabled = store_enabled
        self.worker_enabled = worker_enabled

        self.sessions = SessionStore(logger)
        self.db: aiosqlite.Connection | None = None
        self.subscriptions: SubscriptionRepository | None = None
        self.statistics: StatisticsRepository | None = None
        self.counters = UsageCounters(None)
        self.executor: ScrapeExecutor | None = None
        self.flow: PortalFlow | None = None
        self.worker: NotificationWorker | None = None
        self._tasks: set[asyncio.Task] = set()

    async def setup(self):
        """Open the document store (if enabled) and wire the flow components."""
        if self.store_enabled:
            try:
                if str(self.db_path) != ":memory:":
                    config.ensure_dirs()
                self.db = await open_db(str(self.db_path))
                self.subscriptions = SubscriptionRepository(self.db)
                self.statistics = StatisticsRepository(self.db)
            except Exception as e:
                logger.error(f"[Store] Unavailable, notifications and statistics disabled: {e}")
                self.db = None
        else:
            logger.info("[Store] Disabled by configuration.")

        self.counters = UsageCounters(self.statistics, logger)
        self.executor = ScrapeExecutor(self.sessions, self.counters)
        self.flow = PortalFlow(self.sessions, self.solver, self.executor, self.counters,
                               handoff=self.schedule_scrape)

        if self.worker_enabled and self.subscriptions is not None:
            self.worker = NotificationWorker(
                self.subscriptions, self.flow, self.push, self.counters,
                driver_factory=self.driver_factory,
            )
            self.worker.start()

    async def cleanup(self):
        """Stop the worker, cancel running flows and close every browser."""
        if self.worker:
            await self.worker.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.sessions.close_all()
        if self.db:
            await self.db.close()

    @property
    def store_available(self) -> bool:
        return self.subscriptions is not None

    def require_subscriptions(self) -> SubscriptionRepository:
        if self.subscriptions is None:
            raise StoreUnavailableError("Notification store unavailable")
        return self.subscriptions

    # ── Background flows ─────────────────────────────────────────────────

    def spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_locked(self, session: Session, step: Callable[[Session], Awaitable[None]]):
        async with session.lock:
            if self.sessions.get(session.token) is not session:
                session.log.info("Session gone before its flow step ran.")
                return
            await step(session)

    def start_flow(self, session: Session, skip_navigation: bool = True) -> asyncio.Task:
        return self.spawn(self._run_locked(
            session, lambda s: self.flow.start(s, skip_navigation=skip_navigation)
        ))

    async def schedule_scrape(self, session: Session):
        """Handoff target of the flow: scraping runs after the current holder releases the lock."""
        self.spawn(self._run_locked(session, self.executor.run))

    async def wait_idle(self):
        """Wait until no background flow is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Device bookkeeping ───────────────────────────────────────────────

    async def touch_device(self, username: str, device_id: str, password_base64: str = ""):
        """Refresh ``lastSeenAt`` of a subscribed device; best-effort."""
        if self.subscriptions is None or not username or not device_id:
            return
        try:
            async with self.subscriptions.lock:
                doc = await self.subscriptions.find(username)
                device = doc.find_device(device_id) if doc else None
                if device is None:
                    return
                device.last_seen_at = utcnow()
                if password_base64 and decode_password(password_base64) is not None:
                    doc.password_base64 = password_base64
                await self.subscriptions.upsert(doc)
        except Exception as e:
            logger.warning(f"[Store] Could not update device {device_id} of {username}: {e}")


SERVICE_KEY = web.AppKey("manager", GradesService)


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _parse(request: web.Request, model: Type[ModelT]) -> ModelT:
    body = await request.json() if request.can_read_body else {}
    if not isinstance(body, dict):
        raise ValueError("JSON object expected")
    return model.model_validate(body)


def _error(message: str, status: int, **extra) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


def _invalid(e: Exception) -> web.Response:
    if isinstance(e, ValidationError):
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        return _error(f"Invalid {field}: {first.get('msg', 'invalid value')}", 400)
    return _error(f"Invalid request: {e}", 400)


def _session_expired() -> web.Response:
    return _error("Session expired", 404)


def _store_failed(e: Exception) -> web.Response:
    logger.error(f"[Store] Operation failed: {e}")
    return _error("Notification store unavailable", 503)


# ── Portal Handlers ──────────────────────────────────────────────────────────


async def handle_login(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    try:
        body = await _parse(request, LoginRequest)
    except Exception as e:
        return _invalid(e)
    if not body.username or not body.password:
        return _error("Missing credentials", 400)

    log = with_context(logger, username=body.username)
    log.info("Login request received")
    driver = None
    try:
        driver = await svc.driver_factory()
        cookies = await login(driver, body.username, body.password, log)
    except CredentialError as e:
        await svc.counters.bump(body.username, UsageCounters.LOGIN_FAILURES,
                                device_id=body.device_id, device_model=body.device_model)
        return _error(e.message, 401)
    except Exception as e:
        log.error(f"Login error: {e}", exc_info=True)
        return _error(str(e), 500)
    finally:
        if driver is not None:
            await driver.close()

    await svc.counters.bump(body.username, UsageCounters.LOGINS,
                            device_id=body.device_id, device_model=body.device_model)
    return web.json_response({"success": True, "cookies": cookies})


async def handle_refresh_grades(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    try:
        body = await _parse(request, RefreshGradesRequest)
    except Exception as e:
        return _invalid(e)
    if not body.cookies:
        return _error("No session cookies provided. Please login first.", 400)

    log = with_context(logger, username=body.username)
    log.info("Grade refresh request received")
    driver = None
    try:
        driver = await svc.driver_factory()
        valid = await open_with_cookies(driver, sanitize_cookies(body.cookies), log)
    except Exception as e:
        log.error(f"Grade refresh error: {e}", exc_info=True)
        if driver is not None:
            await driver.close()
        return _error(str(e), 500)

    if not valid:
        await driver.close()
        return _error("Session expired. Please login again.", 401, expired=True)

    owner = OwnerMeta(username=body.username, device_id=body.device_id, device_model=body.device_model)
    session = svc.sessions.create(driver, owner, auto_solve=body.auto_solve_enabled)
    await svc.counters.bump(body.username, UsageCounters.GRADE_REFRESHES,
                            device_id=body.device_id, device_model=body.device_model)
    await svc.touch_device(body.username, body.device_id, body.password_base64)

    # already on the work area
    svc.start_flow(session, skip_navigation=True)
    return web.json_response({"token": session.token, "status": SessionStatus.LOADING.value})


async def handle_status(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    token = request.query.get("token", "")
    if not token:
        return _error("Missing token", 400)
    return web.json_response(await svc.sessions.take_status(token))


async def _locked_session(svc: GradesService, session: Session) -> Optional[web.Response]:
    """Checks done after acquiring ``session.lock``; a response means stop."""
    if svc.sessions.get(session.token) is not session:
        return _session_expired()
    if not session.driver.is_connected():
        await svc.sessions.close(session.token)
        return _error("Browser session lost", 500)
    if session.status != SessionStatus.MANUAL_CAPTCHA:
        return _error("Session is not waiting for a captcha", 409)
    return None


async def handle_solve_captcha(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    try:
        body = await _parse(request, SolveCaptchaRequest)
    except Exception as e:
        return _invalid(e)

    session = svc.sessions.get(body.token)
    if session is None:
        return _session_expired()
    if not body.answer.strip():
        return _error("Missing captcha answer", 400)

    async with session.lock:
        rejected = await _locked_session(svc, session)
        if rejected is not None:
            return rejected
        try:
            cookies = await svc.flow.solve_manual(session, body.answer.strip())
        except Exception as e:
            session.log.warning(f"Captcha solve error: {e}")
            if not session.driver.is_connected():
                await svc.sessions.close(session.token)
                return _error("Browser session lost", 500)
            return _error(str(e), 400)
        await svc.schedule_scrape(session)

    return web.json_response({"status": SessionStatus.LOADING.value, "cookies": cookies})


async def handle_refresh_captcha(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    try:
        body = await _parse(request, TokenRequest)
    except Exception as e:
        return _invalid(e)

    session = svc.sessions.get(body.token)
    if session is None:
        return _session_expired()

    async with session.lock:
        rejected = await _locked_session(svc, session)
        if rejected is not None:
            return rejected
        image = await svc.flow.refresh_for_session(session)

    if image is None:
        return _error("Failed to refresh captcha", 500)
    return web.json_response({"captchaImage": image})


async def handle_logout(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    try:
        body = await _parse(request, DeviceRequest)
    except Exception as e:
        return _invalid(e)

    closed = await svc.sessions.close_user(body.username) if body.username else 0
    removed = False
    if svc.subscriptions is not None and body.username and body.device_id:
        try:
            async with svc.subscriptions.lock:
                doc = await svc.subscriptions.find(body.username)
                if doc is not None and doc.remove_device(body.device_id):
                    await svc.subscriptions.save_or_delete(doc)
                    removed = True
        except Exception as e:
            logger.error(f"[Store] Could not remove device {body.device_id} of {body.username}: {e}")
    logger.info(f"Logout {body.username}: {closed} session(s) closed, subscription removed={removed}")
    return web.json_response({"success": True, "removedSubscription": removed})


# ── Notification Handlers ────────────────────────────────────────────────────


async def handle_notification_settings(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    username = request.query.get("username", "")
    device_id = request.query.get("deviceId", "")
    if not username:
        return _error("Missing username", 400)
    try:
        repo = svc.require_subscriptions()
    except StoreUnavailableError as e:
        return _error(str(e), 503)

    await svc.touch_device(username, device_id)
    try:
        doc = await repo.find(username)
    except Exception as e:
        return _store_failed(e)
    if doc is None:
        return web.json_response({
            "hasSubscriptionDoc": False,
            "currentDeviceSubscribed": False,
            "checkIntervalMinutes": DEFAULT_CHECK_INTERVAL,
            "autoSolveEnabled": True,
            "devices": [],
        })
    return web.json_response({
        "hasSubscriptionDoc": True,
        "currentDeviceSubscribed": bool(device_id) and doc.find_device(device_id) is not None,
        "checkIntervalMinutes": doc.check_interval_minutes,
        "autoSolveEnabled": doc.auto_solve_enabled,
        "devices": [
            {
                "deviceId": d.device_id,
                "deviceModel": d.device_model,
                "createdAt": d.created_at.isoformat(),
                "lastSeenAt": d.last_seen_at.isoformat(),
                "isCurrentDevice": d.device_id == device_id,
            }
            for d in doc.devices
        ],
    })


async def handle_subscribe(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    try:
        body = await _parse(request, SubscribeRequest)
    except Exception as e:
        return _invalid(e)
    try:
        repo = svc.require_subscriptions()
    except StoreUnavailableError as e:
        return _error(str(e), 503)

    if not body.username or not body.device_id:
        return _error("Missing username or deviceId", 400)
    if not body.push_subscription.get("endpoint"):
        return _error("Invalid push subscription", 400)
    if decode_password(body.password_base64) is None:
        return _error("Missing or invalid password", 400)

    try:
        async with repo.lock:
            doc = await repo.find(body.username)
            if doc is None:
                if not body.consent_accepted:
                    return _error("Consent is required to enable notifications", 400)
                doc = SubscriptionDocument(username=body.username)
            elif not body.consent_accepted and doc.consent_accepted_at is None:
                return _error("Consent is required to enable notifications", 400)

            now = utcnow()
            device = doc.find_device(body.device_id)
            if device is None:
                if len(doc.devices) >= config.MAX_DEVICES_PER_USER:
                    return _error(
                        f"Notifications are limited to {config.MAX_DEVICES_PER_USER} devices. "
                        "Disable them on another device first.", 400,
                    )
                device = DeviceSubscription(device_id=body.device_id)
                doc.devices.append(device)

            device.device_model = body.device_model or device.device_model
            device.push_subscription = body.push_subscription
            device.updated_at = now
            device.last_seen_at = now

            doc.password_base64 = body.password_base64
            doc.check_interval_minutes = body.check_interval_minutes
            doc.auto_solve_enabled = body.auto_solve_enabled
            if body.consent_accepted:
                doc.consent_accepted_at = doc.consent_accepted_at or now
            await repo.upsert(doc)
    except Exception as e:
        return _store_failed(e)

    logger.info(f"[Push] Device {body.device_id} of {body.username} subscribed ({len(doc.devices)} device(s)).")
    return web.json_response({
        "success": True,
        "checkIntervalMinutes": doc.check_interval_minutes,
        "deviceCount": len(doc.devices),
    })


async def handle_unsubscribe_device(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    try:
        body = await _parse(request, DeviceRequest)
        repo = svc.require_subscriptions()
    except StoreUnavailableError as e:
        return _error(str(e), 503)
    except Exception as e:
        return _invalid(e)
    if not body.username or not body.device_id:
        return _error("Missing username or deviceId", 400)

    try:
        async with repo.lock:
            doc = await repo.find(body.username)
            removed = doc is not None and doc.remove_device(body.device_id)
            remaining = await repo.save_or_delete(doc) if removed else doc is not None
    except Exception as e:
        return _store_failed(e)
    return web.json_response({"success": True, "removed": removed, "hasSubscriptionDoc": remaining})


async def handle_unsubscribe_all(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    try:
        body = await _parse(request, DeviceRequest)
        repo = svc.require_subscriptions()
    except StoreUnavailableError as e:
        return _error(str(e), 503)
    except Exception as e:
        return _invalid(e)
    if not body.username:
        return _error("Missing username", 400)

    try:
        async with repo.lock:
            removed = await repo.delete(body.username)
    except Exception as e:
        return _store_failed(e)
    return web.json_response({"success": True, "removed": removed})


async def handle_interval(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    try:
        body = await _parse(request, IntervalRequest)
        repo = svc.require_subscriptions()
    except StoreUnavailableError as e:
        return _error(str(e), 503)
    except Exception as e:
        return _invalid(e)
    if not body.username:
        return _error("Missing username", 400)

    try:
        async with repo.lock:
            doc = await repo.find(body.username)
            if doc is None:
                return _error("No subscription found", 404)
            doc.check_interval_minutes = body.check_interval_minutes
            await repo.upsert(doc)
    except Exception as e:
        return _store_failed(e)
    return web.json_response({"success": True, "checkIntervalMinutes": body.check_interval_minutes})


async def handle_app_open(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    try:
        body = await _parse(request, AppOpenRequest)
    except Exception as e:
        return _invalid(e)
    if not body.username or not body.device_id:
        return _error("Missing username or deviceId", 400)
    if svc.statistics is None:
        return web.json_response({"success": True, "recorded": False})

    def mutate(doc: StatisticsDocument):
        device = doc.device(body.device_id, body.device_model)
        device.last_seen_at = utcnow()
        if body.count_online_open:
            device.online_opens += 1
            doc.counters[UsageCounters.ONLINE_OPENS] = doc.counters.get(UsageCounters.ONLINE_OPENS, 0) + 1
        if body.offline_open_delta:
            device.offline_opens += body.offline_open_delta
            doc.counters[UsageCounters.OFFLINE_OPENS] = (
                doc.counters.get(UsageCounters.OFFLINE_OPENS, 0) + body.offline_open_delta
            )

    try:
        await svc.statistics.update(body.username, mutate)
    except Exception as e:
        logger.warning(f"[Stats] App-open not recorded for {body.username}: {e}")
        return web.json_response({"success": True, "recorded": False})
    await svc.touch_device(body.username, body.device_id)
    return web.json_response({"success": True, "recorded": True})


async def handle_vapid_key(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    return web.json_response({"publicKey": svc.push.public_key})


async def handle_health(request: web.Request) -> web.Response:
    svc: GradesService = request.app[SERVICE_KEY]
    return web.json_response({
        "status": "ok",
        "sessions": len(svc.sessions),
        "storeAvailable": svc.store_available,
        "workerRunning": bool(svc.worker and svc.worker.running),
    })


# ── App Factory ──────────────────────────────────────────────────────────────


async def on_startup(app: web.Application):
    svc: GradesService = app[SERVICE_KEY]
    await svc.setup()
    logger.info(f"Grades service started on {config.HOST}:{config.PORT}")


async def on_cleanup(app: web.Application):
    svc: GradesService = app[SERVICE_KEY]
    await svc.cleanup()
    logger.info("Grades service stopped.")


def create_app(service: Optional[GradesService] = None) -> web.Application:
    app = web.Application()
    app[SERVICE_KEY] = service or GradesService()
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_post("/login", handle_login)
    app.router.add_post("/refresh-grades", handle_refresh_grades)
    app.router.add_get("/status", handle_status)
    app.router.add_post("/solve-captcha", handle_solve_captcha)
    app.router.add_post("/refresh-captcha", handle_refresh_captcha)
    app.router.add_post("/logout", handle_logout)

    app.router.add_get("/notifications/settings", handle_notification_settings)
    app.router.add_post("/notifications/subscribe", handle_subscribe)
    app.router.add_post("/notifications/unsubscribe-device", handle_unsubscribe_device)
    app.router.add_post("/notifications/unsubscribe-all", handle_unsubscribe_all)
    app.router.add_patch("/notifications/interval", handle_interval)

    app.router.add_post("/statistics/app-open", handle_app_open)
    app.router.add_get("/push/vapid-key", handle_vapid_key)
    app.router.add_get("/health", handle_health)

    return app


def main():
    """Run the grades service as a standalone HTTP service."""
    app = create_app()
    web.run_app(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
