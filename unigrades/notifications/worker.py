"""Background Notification Worker.

One recurring tick walks every subscription document sequentially:

1. Snap a drifted ``checkIntervalMinutes`` back to the allowed set
2. Skip users checked or attempted within their interval
3. Drop devices that have been inactive too long (with a last push)
4. Skip users whose stored password cannot be decoded
5. Record the attempt, log in and pass the captcha unattended
6. Push every grade value that is new for its course occurrence
7. Drop devices whose push subscription is gone
8. Persist the per-device snapshots and ``lastCheckedAt`` in one write
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .. import config
from ..database.repository import SubscriptionRepository, UsageCounters
from ..log import Logger, get_logger, with_context
from ..models.documents import (
    DeviceSubscription,
    SentNotification,
    SubscriptionDocument,
    decode_password,
    normalize_interval,
    utcnow,
)
from ..models.grades import ScrapeResult, TrackedGrade
from ..session_manager.browser import BrowserDriver, launch_driver
from ..session_manager.login import login
from ..session_manager.portal import PortalFlow
from .push import PushOutcome, PushSender, disabled_notification, grade_notification
from .tracking import changed_grades, merge_seen, track

logger = get_logger(__name__)

DriverFactory = Callable[[], Awaitable[BrowserDriver]]


@dataclass
class DeviceUpdate:
    """What one check produced for one device."""

    last_seen_grades: list[TrackedGrade]
    sent_notifications: list[SentNotification]
    pushed: int = 0
    gone: bool = False


@dataclass
class CheckReport:
    username: str
    skipped: str = ""
    pushed: int = 0
    removed_devices: list[str] = field(default_factory=list)
    deleted: bool = False


class NotificationWorker:
    """Periodically checks subscribed users' grades and pushes changes."""

    def __init__(self, subscriptions: SubscriptionRepository, flow: PortalFlow, push: PushSender,
                 counters: UsageCounters, driver_factory: DriverFactory = launch_driver,
                 tick_seconds: float = config.WORKER_TICK_SECONDS,
                 user_delay_seconds: float = config.WORKER_USER_DELAY_SECONDS,
                 inactivity_days: int = config.DEVICE_INACTIVITY_DAYS,
                 sent_limit: int = config.SENT_NOTIFICATIONS_LIMIT,
                 clock: Callable[[], datetime] = utcnow,
                 log: Logger = logger):
        self.subscriptions = subscriptions
        self.flow = flow
        self.push = push
        self.counters = counters
        self.driver_factory = driver_factory
        self.tick_seconds = tick_seconds
        self.user_delay_seconds = user_delay_seconds
        self.inactivity = timedelta(days=inactivity_days)
        self.inactivity_days = inactivity_days
        self.sent_limit = sent_limit
        self.clock = clock
        self.log = log
        self._busy = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        self.log.info(f"[Worker] Started (tick every {self.tick_seconds}s).")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.log.info("[Worker] Stopped.")

    async def _loop(self):
        while True:
            await asyncio.sleep(self.tick_seconds)
            try:
                await self.tick()
            except Exception as e:
                self.log.error(f"[Worker] Tick failed: {e}", exc_info=True)

    # ── Tick ─────────────────────────────────────────────────────────────

    async def tick(self) -> list[CheckReport]:
        """Check every subscribed user once. Overlapping ticks are skipped."""
        if self._busy:
            self.log.info("[Worker] Previous tick still running, skipping.")
            return []
        self._busy = True
        reports = []
        try:
            usernames = await self.subscriptions.usernames()
            if usernames:
                self.log.info(f"[Worker] Checking {len(usernames)} subscribed user(s)...")
            for index, username in enumerate(usernames):
                try:
                    reports.append(await self.check_user(username))
                except Exception as e:
                    self.log.error(f"[Worker] Check failed for {username}: {e}", exc_info=True)
                    reports.append(CheckReport(username=username, skipped="error"))
                if index < len(usernames) - 1:
                    await asyncio.sleep(self.user_delay_seconds)
        finally:
            self._busy = False
        return reports

    # ── Per user ─────────────────────────────────────────────────────────

    async def check_user(self, username: str) -> CheckReport:
        log = with_context(self.log, username=username)
        report = CheckReport(username=username)

        doc = await self._normalize_interval(username, log)
        if doc is None:
            report.skipped = "missing"
            return report

        now = self.clock()
        last = max(filter(None, (doc.last_checked_at, doc.last_attempt_at)), default=None)
        if last and now - last < timedelta(minutes=doc.check_interval_minutes):
            report.skipped = "interval"
            return report

        doc = await self._prune_inactive(doc, now, report, log)
        if doc is None:
            report.deleted = True
            return report

        password = decode_password(doc.password_base64)
        if password is None:
            log.warning("[Worker] Stored password cannot be decoded, skipping user.")
            report.skipped = "password"
            return report

        # a failing login must not be retried before the interval elapses
        await self._record_attempt(username, now)
        result = await self._fetch_grades(username, password, log)
        if result is None:
            report.skipped = "fetch"
            return report

        current = track(result.grades)
        updates = {}
        for device in doc.devices:
            update = await self._notify_device(device, current, log)
            updates[device.device_id] = update
            report.pushed += update.pushed
            if update.gone:
                report.removed_devices.append(device.device_id)

        if report.pushed:
            await self.counters.bump(username, UsageCounters.NOTIFICATIONS_SENT, report.pushed)
        report.deleted = not await self._persist(username, updates, now, log)
        return report

    async def _normalize_interval(self, username: str, log: Logger) -> Optional[SubscriptionDocument]:
        async with self.subscriptions.lock:
            doc = await self.subscriptions.find(username)
            if doc is None:
                return None
            interval = normalize_interval(doc.check_interval_minutes)
            if interval != doc.check_interval_minutes:
                log.info(f"[Worker] Normalizing interval {doc.check_interval_minutes} -> {interval}.")
                doc.check_interval_minutes = interval
                await self.subscriptions.upsert(doc)
            return doc

    async def _prune_inactive(self, doc: SubscriptionDocument, now: datetime, report: CheckReport,
                              log: Logger) -> Optional[SubscriptionDocument]:
        stale = [d for d in doc.devices if now - d.last_seen_at >= self.inactivity]
        if not stale:
            return doc

        for device in stale:
            log.info(f"[Worker] Device {device.device_id} inactive since {device.last_seen_at.isoformat()}, removing.")
            await self.push.send(device.push_subscription, disabled_notification(self.inactivity_days), log)
            report.removed_devices.append(device.device_id)

        stale_ids = {d.device_id for d in stale}
        async with self.subscriptions.lock:
            fresh = await self.subscriptions.find(doc.username)
            if fresh is None:
                return None
            fresh.devices = [d for d in fresh.devices if d.device_id not in stale_ids]
            if not await self.subscriptions.save_or_delete(fresh):
                log.info("[Worker] No devices left, subscription deleted.")
                return None
            return fresh

    async def _record_attempt(self, username: str, now: datetime):
        async with self.subscriptions.lock:
            doc = await self.subscriptions.find(username)
            if doc is not None:
                doc.last_attempt_at = now
                await self.subscriptions.upsert(doc)

    async def _fetch_grades(self, username: str, password: str, log: Logger) -> Optional[ScrapeResult]:
        driver = None
        try:
            driver = await self.driver_factory()
            await login(driver, username, password, log)
            result = await self.flow.run_unattended(driver, log)
            log.info(f"[Worker] Fetched {len(result.grades)} grades.")
            return result
        except Exception as e:
            log.warning(f"[Worker] Grade check aborted: {e}")
            return None
        finally:
            if driver is not None:
                try:
                    await driver.close()
                except Exception as e:
                    log.warning(f"[Worker] Browser teardown failed: {e}")

    async def _notify_device(self, device: DeviceSubscription, current: list[TrackedGrade],
                             log: Logger) -> DeviceUpdate:
        working = device.model_copy(deep=True)
        update = DeviceUpdate(
            last_seen_grades=list(device.last_seen_grades),
            sent_notifications=working.sent_notifications,
        )
        if not device.last_seen_grades:
            log.info(f"[Worker] Baseline snapshot for device {device.device_id}.")
            update.last_seen_grades = current
            return update

        sent = device.sent_keys()
        failed = set()
        for grade in changed_grades(device.last_seen_grades, current):
            key = grade.notification_key()
            if key in sent:
                continue
            outcome = await self.push.send(device.push_subscription, grade_notification(grade), log)
            if outcome == PushOutcome.GONE:
                update.gone = True
                return update
            if outcome == PushOutcome.ERROR:
                failed.add(grade.identity_key)
                continue
            working.record_sent(key, self.sent_limit, sent_at=self.clock())
            sent.add(key)
            update.pushed += 1

        update.sent_notifications = working.sent_notifications
        update.last_seen_grades = merge_seen(
            device.last_seen_grades, [g for g in current if g.identity_key not in failed]
        )
        return update

    async def _persist(self, username: str, updates: dict[str, DeviceUpdate], now: datetime, log: Logger) -> bool:
        """Apply ``updates`` to the current document. Returns False if it was deleted."""
        async with self.subscriptions.lock:
            doc = await self.subscriptions.find(username)
            if doc is None:
                return False
            survivors = []
            for device in doc.devices:
                update = updates.get(device.device_id)
                if update is None:
                    survivors.append(device)
                    continue
                if update.gone:
                    log.info(f"[Worker] Push subscription of device {device.device_id} gone, removing.")
                    continue
                device.last_seen_grades = update.last_seen_grades
                device.sent_notifications = update.sent_notifications
                device.updated_at = now
                survivors.append(device)
            doc.devices = survivors
            doc.last_checked_at = now
            saved = await self.subscriptions.save_or_delete(doc)
            if not saved:
                log.info("[Worker] No devices left, subscription deleted.")
            return saved
