"""
Background notification worker tests
"""

from datetime import datetime, timedelta, timezone

import pytest

from unigrades.database.repository import UsageCounters
from unigrades.models.documents import (
    DeviceSubscription,
    SentNotification,
    SubscriptionDocument,
    encode_password,
)
from unigrades.models.grades import TrackedGrade
from unigrades.notifications.push import PushOutcome
from unigrades.notifications.tracking import changed_grades, merge_seen
from unigrades.notifications.worker import NotificationWorker
from unigrades.session_manager.portal import PortalFlow
from unigrades.session_manager.scraper import ScrapeExecutor
from unigrades.session_manager.sessions import SessionStore

from conftest import GRADES_HTML, DriverFactory, FakePush, FakeSolver

MATH_KEY = "CEID_101::2023-2024::1::Winter"


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


def _math(grade=""):
    return TrackedGrade(code="CEID_101", year="2023-2024", semester="1", session="Winter",
                        grade=grade, title="Mathematics I")


def _device(device_id="d1", seen=None, last_seen_at=None, sent=None):
    return DeviceSubscription(
        device_id=device_id,
        push_subscription={"endpoint": f"https://push.example/{device_id}", "keys": {}},
        last_seen_grades=seen or [],
        sent_notifications=sent or [],
        last_seen_at=last_seen_at or datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc),
    )


def _doc(*devices, password="secret", interval=30):
    return SubscriptionDocument(
        username="alice",
        password_base64=encode_password(password) if password else "!!!",
        check_interval_minutes=interval,
        devices=list(devices),
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def push():
    return FakePush()


@pytest.fixture
def drivers():
    return DriverFactory()


@pytest.fixture
def solver():
    return FakeSolver(["ABC123"] * 10)


@pytest.fixture
def worker(subscriptions, counters, push, drivers, solver, clock):
    store = SessionStore()
    executor = ScrapeExecutor(store, counters, content_wait_ms=1)
    flow = PortalFlow(store, solver, executor, counters, auto_solve_globally=True,
                      poll_interval_s=0.001, verify_timeout_s=0.05)
    return NotificationWorker(subscriptions, flow, push, counters, driver_factory=drivers,
                              user_delay_seconds=0, clock=clock)


class TestTracking:
    """Change detection"""

    def test_baseline_reports_nothing(self):
        assert changed_grades([], [_math("8.5")]) == []

    def test_value_change_and_new_occurrence(self):
        previous = [_math("")]
        physics = TrackedGrade(code="CEID_202", year="2023-2024", semester="2", session="Spring", grade="6")
        changed = changed_grades(previous, [_math("8.5"), physics])
        assert [g.code for g in changed] == ["CEID_101", "CEID_202"]

    def test_empty_and_unchanged_values_ignored(self):
        assert changed_grades([_math("8.5")], [_math("8.5")]) == []
        assert changed_grades([_math("8.5")], [_math("")]) == []

    def test_merge_seen_by_identity(self):
        merged = merge_seen([_math("")], [_math("8.5")])
        assert [g.grade for g in merged] == ["8.5"]


class TestWorkerTick:
    """Per-user checks"""

    @pytest.mark.asyncio
    async def test_new_grade_pushed_exactly_once(self, worker, subscriptions, push, clock, statistics):
        await subscriptions.upsert(_doc(_device(seen=[_math("")])))

        await worker.tick()

        assert len(push.sent) == 1
        assert "Mathematics I" in push.sent[0][1]["body"]
        doc = await subscriptions.find("alice")
        device = doc.devices[0]
        assert [e.notification_key for e in device.sent_notifications] == [f"{MATH_KEY}::8.5"]
        assert doc.last_checked_at == clock.now
        stats = await statistics.find("alice")
        assert stats.counters[UsageCounters.NOTIFICATIONS_SENT] == 1

        clock.advance(minutes=31)
        await worker.tick()

        assert len(push.sent) == 1
        doc = await subscriptions.find("alice")
        assert len(doc.devices[0].sent_notifications) == 1

    @pytest.mark.asyncio
    async def test_sent_log_blocks_repeat_even_if_snapshot_regresses(self, worker, subscriptions, push):
        sent = [SentNotification(notification_key=f"{MATH_KEY}::8.5")]
        await subscriptions.upsert(_doc(_device(seen=[_math("")], sent=sent)))

        await worker.tick()

        assert push.sent == []
        doc = await subscriptions.find("alice")
        assert doc.devices[0].last_seen_grades[0].grade == "8.5"

    @pytest.mark.asyncio
    async def test_first_check_is_baseline(self, worker, subscriptions, push):
        await subscriptions.upsert(_doc(_device()))

        await worker.tick()

        assert push.sent == []
        doc = await subscriptions.find("alice")
        assert {g.code for g in doc.devices[0].last_seen_grades} == {"CEID_101", "CEID_202"}

    @pytest.mark.asyncio
    async def test_recently_checked_user_skipped(self, worker, subscriptions, drivers, clock):
        doc = _doc(_device(seen=[_math("")]), interval=60)
        doc.last_checked_at = clock.now - timedelta(minutes=59)
        await subscriptions.upsert(doc)

        reports = await worker.tick()

        assert reports[0].skipped == "interval"
        assert drivers.drivers == []

    @pytest.mark.asyncio
    async def test_drifted_interval_normalized(self, worker, subscriptions):
        await subscriptions.upsert(_doc(_device(seen=[_math("8.5")]), interval=45))

        await worker.tick()

        assert (await subscriptions.find("alice")).check_interval_minutes == 30

    @pytest.mark.asyncio
    async def test_inactive_device_pruned_and_document_deleted(self, worker, subscriptions, push, clock, drivers):
        stale = clock.now - timedelta(days=14)
        await subscriptions.upsert(_doc(_device(last_seen_at=stale)))

        reports = await worker.tick()

        assert reports[0].deleted
        assert await subscriptions.find("alice") is None
        assert push.sent[0][1]["tag"] == "notifications-disabled"
        assert drivers.drivers == []

    @pytest.mark.asyncio
    async def test_inactive_device_pruned_active_kept(self, worker, subscriptions, clock):
        stale = clock.now - timedelta(days=20)
        await subscriptions.upsert(_doc(_device("old", last_seen_at=stale), _device("new", seen=[_math("8.5")])))

        await worker.tick()

        doc = await subscriptions.find("alice")
        assert [d.device_id for d in doc.devices] == ["new"]

    @pytest.mark.asyncio
    async def test_undecodable_password_skips_user(self, worker, subscriptions, drivers):
        await subscriptions.upsert(_doc(_device(seen=[_math("")]), password=None))

        reports = await worker.tick()

        assert reports[0].skipped == "password"
        assert drivers.drivers == []
        doc = await subscriptions.find("alice")
        assert len(doc.devices) == 1
        assert doc.last_checked_at is None

    @pytest.mark.asyncio
    async def test_gone_subscription_removes_device(self, worker, subscriptions, push):
        push.outcomes["https://push.example/d1"] = PushOutcome.GONE
        await subscriptions.upsert(_doc(_device("d1", seen=[_math("")]), _device("d2", seen=[_math("")])))

        await worker.tick()

        doc = await subscriptions.find("alice")
        assert [d.device_id for d in doc.devices] == ["d2"]
        assert len(push.sent) == 1

    @pytest.mark.asyncio
    async def test_gone_last_device_deletes_document(self, worker, subscriptions, push):
        push.outcomes["https://push.example/d1"] = PushOutcome.GONE
        await subscriptions.upsert(_doc(_device("d1", seen=[_math("")])))

        await worker.tick()

        assert await subscriptions.find("alice") is None

    @pytest.mark.asyncio
    async def test_push_error_retried_next_tick(self, worker, subscriptions, push, clock):
        push.outcomes["https://push.example/d1"] = PushOutcome.ERROR
        await subscriptions.upsert(_doc(_device("d1", seen=[_math("")])))

        await worker.tick()
        doc = await subscriptions.find("alice")
        assert doc.devices[0].sent_notifications == []
        assert doc.devices[0].last_seen_grades[0].grade == ""

        push.outcomes.clear()
        clock.advance(minutes=31)
        await worker.tick()
        assert len(push.sent) == 1

    @pytest.mark.asyncio
    async def test_login_failure_leaves_state_untouched(self, subscriptions, counters, push, clock):
        drivers = DriverFactory(login_error="Λανθασμένος κωδικός")
        store = SessionStore()
        flow = PortalFlow(store, FakeSolver(["ABC123"]), ScrapeExecutor(store, counters), counters)
        worker = NotificationWorker(subscriptions, flow, push, counters, driver_factory=drivers,
                                    user_delay_seconds=0, clock=clock)
        await subscriptions.upsert(_doc(_device(seen=[_math("")])))

        reports = await worker.tick()

        assert reports[0].skipped == "fetch"
        assert drivers.last.closed
        doc = await subscriptions.find("alice")
        assert doc.last_checked_at is None
        assert doc.devices[0].last_seen_grades[0].grade == ""
        assert doc.last_attempt_at == clock.now

    @pytest.mark.asyncio
    async def test_unattended_captcha_failure_aborts(self, subscriptions, counters, push, clock, drivers):
        store = SessionStore()
        flow = PortalFlow(store, FakeSolver([]), ScrapeExecutor(store, counters), counters,
                          poll_interval_s=0.001)
        worker = NotificationWorker(subscriptions, flow, push, counters, driver_factory=drivers,
                                    user_delay_seconds=0, clock=clock)
        await subscriptions.upsert(_doc(_device(seen=[_math("")])))

        reports = await worker.tick()

        assert reports[0].skipped == "fetch"
        assert push.sent == []

    @pytest.mark.asyncio
    async def test_one_user_failure_does_not_stop_others(self, worker, subscriptions, push):
        await subscriptions.upsert(_doc(_device(seen=[_math("")])))
        bob = _doc(_device("b1", seen=[_math("")]))
        bob.username = "bob"
        await subscriptions.upsert(bob)

        original = worker.check_user

        async def flaky(username):
            if username == "alice":
                raise RuntimeError("boom")
            return await original(username)

        worker.check_user = flaky
        reports = await worker.tick()

        assert [r.username for r in reports] == ["alice", "bob"]
        assert reports[0].skipped == "error"
        assert len(push.sent) == 1

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self, worker):
        worker._busy = True
        assert await worker.tick() == []

    @pytest.mark.asyncio
    async def test_failed_login_not_retried_within_interval(self, subscriptions, counters, push, clock):
        drivers = DriverFactory(login_error="Λανθασμένος κωδικός")
        store = SessionStore()
        flow = PortalFlow(store, FakeSolver(["ABC123"]), ScrapeExecutor(store, counters), counters)
        worker = NotificationWorker(subscriptions, flow, push, counters, driver_factory=drivers,
                                    user_delay_seconds=0, clock=clock)
        await subscriptions.upsert(_doc(_device(seen=[_math("")]), interval=1440))

        for _ in range(5):
            await worker.tick()
            clock.advance(minutes=1)

        assert len(drivers.drivers) == 1
        doc = await subscriptions.find("alice")
        assert doc.last_checked_at is None

        clock.advance(minutes=1440)
        await worker.tick()
        assert len(drivers.drivers) == 2

    @pytest.mark.asyncio
    async def test_sent_log_trimmed_across_ticks(self, subscriptions, counters, push, drivers, solver, clock):
        store = SessionStore()
        flow = PortalFlow(store, solver, ScrapeExecutor(store, counters, content_wait_ms=1), counters,
                          auto_solve_globally=True, poll_interval_s=0.001, verify_timeout_s=0.05)
        worker = NotificationWorker(subscriptions, flow, push, counters, driver_factory=drivers,
                                    user_delay_seconds=0, sent_limit=2, clock=clock)
        old = [SentNotification(notification_key="old-1"), SentNotification(notification_key="old-2")]
        await subscriptions.upsert(_doc(_device(seen=[_math("")], sent=old)))

        await worker.tick()

        doc = await subscriptions.find("alice")
        assert [e.notification_key for e in doc.devices[0].sent_notifications] == ["old-2", f"{MATH_KEY}::8.5"]

        drivers.options["html"] = GRADES_HTML.replace("<td>Physics</td><td></td>", "<td>Physics</td><td>6</td>")
        clock.advance(minutes=31)
        await worker.tick()

        doc = await subscriptions.find("alice")
        assert [e.notification_key for e in doc.devices[0].sent_notifications] == [
            f"{MATH_KEY}::8.5",
            "CEID_202::2023-2024::2::Spring::6",
        ]
        assert len(push.sent) == 2
