"""
HTTP service end-to-end tests
"""

import runpy
from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

from unigrades.database.repository import UsageCounters
from unigrades.models.documents import encode_password
from unigrades.session_manager.manager import SERVICE_KEY, GradesService, create_app

from conftest import SESSION_COOKIES, DriverFactory, FakePush, FakeSolver


def _service(drivers=None, solver=None, store_enabled=True):
    return GradesService(
        driver_factory=drivers or DriverFactory(),
        solver=solver or FakeSolver(["ABC123"]),
        push=FakePush(),
        db_path=":memory:",
        store_enabled=store_enabled,
        worker_enabled=False,
    )


@asynccontextmanager
async def running(service):
    async with TestClient(TestServer(create_app(service))) as client:
        yield client


def _subscribe_body(device_id="d1", consent=True, interval=60):
    return {
        "username": "alice",
        "passwordBase64": encode_password("secret"),
        "deviceId": device_id,
        "deviceModel": "Pixel",
        "pushSubscription": {"endpoint": f"https://push.example/{device_id}", "keys": {}},
        "checkIntervalMinutes": interval,
        "consentAccepted": consent,
        "autoSolveEnabled": True,
    }


class TestLoginEndpoint:
    """POST /login"""

    @pytest.mark.asyncio
    async def test_returns_cookies_without_fetching_grades(self):
        drivers = DriverFactory()
        service = _service(drivers)
        async with running(service) as client:
            resp = await client.post("/login", json={"username": "alice", "password": "secret", "deviceId": "d1"})
            body = await resp.json()

            assert resp.status == 200
            assert body["success"] is True
            assert {c["name"] for c in body["cookies"]} >= {"MYSAPSSO2"}
            assert "grades" not in body
            assert drivers.last.closed
            stats = await service.statistics.find("alice")
            assert stats.counters[UsageCounters.LOGINS] == 1

    @pytest.mark.asyncio
    async def test_wrong_password(self):
        service = _service(DriverFactory(login_error="Λανθασμένος κωδικός"))
        async with running(service) as client:
            resp = await client.post("/login", json={"username": "alice", "password": "bad"})
            assert resp.status == 401
            assert (await resp.json())["error"] == "Wrong password"
            stats = await service.statistics.find("alice")
            assert stats.counters[UsageCounters.LOGIN_FAILURES] == 1

    @pytest.mark.asyncio
    async def test_unknown_username(self):
        async with running(_service(DriverFactory(login_error="Άγνωστο όνομα"))) as client:
            resp = await client.post("/login", json={"username": "nobody", "password": "x"})
            assert resp.status == 401
            assert (await resp.json())["error"] == "Unknown username"

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        async with running(_service()) as client:
            resp = await client.post("/login", json={"username": "alice"})
            assert resp.status == 400


class TestGradeRefresh:
    """refresh-grades / status / captcha endpoints"""

    @pytest.mark.asyncio
    async def test_auto_solve_to_completed(self):
        service = _service()
        async with running(service) as client:
            resp = await client.post("/refresh-grades", json={
                "cookies": SESSION_COOKIES, "username": "alice", "deviceId": "d1", "autoSolveEnabled": True,
            })
            body = await resp.json()
            assert resp.status == 200
            assert body["status"] == "loading"
            token = body["token"]

            await service.wait_idle()

            resp = await client.get("/status", params={"token": token})
            status = await resp.json()
            assert status["status"] == "completed"
            assert [g["code"] for g in status["grades"]] == ["CEID_101", "CEID_202"]
            assert status["grades"][0]["grade"] == "8.5"
            assert "studentInfo" in status
            assert status["cookies"]

            resp = await client.get("/status", params={"token": token})
            assert await resp.json() == {"status": "expired"}

    @pytest.mark.asyncio
    async def test_manual_captcha_path(self):
        drivers = DriverFactory()
        service = _service(drivers, FakeSolver(["WRONG1", "WRONG2"]))
        async with running(service) as client:
            resp = await client.post("/refresh-grades", json={"cookies": SESSION_COOKIES, "username": "alice"})
            token = (await resp.json())["token"]
            await service.wait_idle()

            status = await (await client.get("/status", params={"token": token})).json()
            assert status["status"] == "manual_captcha"
            assert status["token"] == token
            assert status["captchaImage"].startswith("data:image/png;base64,")
            assert status["message"]

            resp = await client.post("/solve-captcha", json={"token": token, "answer": "NOPE00"})
            assert resp.status == 400
            status = await (await client.get("/status", params={"token": token})).json()
            assert status["status"] == "manual_captcha"

            resp = await client.post("/solve-captcha", json={"token": token, "answer": "ABC123"})
            body = await resp.json()
            assert resp.status == 200
            assert body["status"] == "loading"
            assert isinstance(body["cookies"], list)

            await service.wait_idle()
            status = await (await client.get("/status", params={"token": token})).json()
            assert status["status"] == "completed"
            assert len(status["grades"]) == 2
            assert drivers.last.closed

    @pytest.mark.asyncio
    async def test_expired_cookies(self):
        drivers = DriverFactory(body_empty=True)
        async with running(_service(drivers)) as client:
            resp = await client.post("/refresh-grades", json={"cookies": SESSION_COOKIES, "username": "alice"})
            body = await resp.json()
            assert resp.status == 401
            assert body["expired"] is True
            assert drivers.last.closed

    @pytest.mark.asyncio
    async def test_missing_cookies(self):
        async with running(_service()) as client:
            resp = await client.post("/refresh-grades", json={"cookies": []})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_refresh_captcha(self):
        service = _service(solver=FakeSolver([]))
        async with running(service) as client:
            resp = await client.post("/refresh-grades", json={"cookies": SESSION_COOKIES, "username": "alice"})
            token = (await resp.json())["token"]
            await service.wait_idle()
            before = (await (await client.get("/status", params={"token": token})).json())["captchaImage"]

            resp = await client.post("/refresh-captcha", json={"token": token})
            body = await resp.json()
            assert resp.status == 200
            assert body["captchaImage"] != before

    @pytest.mark.asyncio
    async def test_unknown_token(self):
        async with running(_service()) as client:
            resp = await client.post("/solve-captcha", json={"token": "nope", "answer": "ABC123"})
            assert resp.status == 404
            assert (await resp.json())["error"] == "Session expired"
            resp = await client.post("/refresh-captcha", json={"token": "nope"})
            assert resp.status == 404
            resp = await client.get("/status")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_lost_browser_expires_session(self):
        drivers = DriverFactory()
        service = _service(drivers, FakeSolver([]))
        async with running(service) as client:
            resp = await client.post("/refresh-grades", json={"cookies": SESSION_COOKIES, "username": "alice"})
            token = (await resp.json())["token"]
            await service.wait_idle()

            drivers.last.disconnect()

            resp = await client.post("/solve-captcha", json={"token": token, "answer": "ABC123"})
            assert resp.status == 404
            status = await (await client.get("/status", params={"token": token})).json()
            assert status == {"status": "expired"}


class TestNotificationEndpoints:
    """Subscription management"""

    @pytest.mark.asyncio
    async def test_subscribe_requires_consent(self):
        async with running(_service()) as client:
            resp = await client.post("/notifications/subscribe", json=_subscribe_body(consent=False))
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_subscribe_and_settings(self):
        async with running(_service()) as client:
            resp = await client.post("/notifications/subscribe", json=_subscribe_body())
            assert resp.status == 200

            resp = await client.get("/notifications/settings", params={"username": "alice", "deviceId": "d1"})
            settings = await resp.json()
            assert settings["hasSubscriptionDoc"] is True
            assert settings["currentDeviceSubscribed"] is True
            assert settings["checkIntervalMinutes"] == 60
            assert settings["devices"][0]["deviceId"] == "d1"

            resp = await client.get("/notifications/settings", params={"username": "alice", "deviceId": "other"})
            assert (await resp.json())["currentDeviceSubscribed"] is False

    @pytest.mark.asyncio
    async def test_device_limit(self):
        async with running(_service()) as client:
            assert (await client.post("/notifications/subscribe", json=_subscribe_body("d1"))).status == 200
            assert (await client.post("/notifications/subscribe", json=_subscribe_body("d2"))).status == 200
            resp = await client.post("/notifications/subscribe", json=_subscribe_body("d3"))
            assert resp.status == 400
            # re-subscribing a known device is not a new device
            assert (await client.post("/notifications/subscribe", json=_subscribe_body("d1"))).status == 200

    @pytest.mark.asyncio
    async def test_interval_snapped(self):
        async with running(_service()) as client:
            await client.post("/notifications/subscribe", json=_subscribe_body())
            resp = await client.patch("/notifications/interval", json={"username": "alice", "checkIntervalMinutes": 45})
            assert (await resp.json())["checkIntervalMinutes"] == 30
            resp = await client.patch("/notifications/interval", json={"username": "alice", "checkIntervalMinutes": 1440})
            assert (await resp.json())["checkIntervalMinutes"] == 1440

    @pytest.mark.asyncio
    async def test_unsubscribe_last_device_deletes_document(self):
        async with running(_service()) as client:
            await client.post("/notifications/subscribe", json=_subscribe_body())
            resp = await client.post("/notifications/unsubscribe-device", json={"username": "alice", "deviceId": "d1"})
            body = await resp.json()
            assert body["removed"] is True
            assert body["hasSubscriptionDoc"] is False

    @pytest.mark.asyncio
    async def test_unsubscribe_all(self):
        async with running(_service()) as client:
            await client.post("/notifications/subscribe", json=_subscribe_body("d1"))
            await client.post("/notifications/subscribe", json=_subscribe_body("d2"))
            resp = await client.post("/notifications/unsubscribe-all", json={"username": "alice"})
            assert (await resp.json())["removed"] is True
            resp = await client.get("/notifications/settings", params={"username": "alice"})
            assert (await resp.json())["hasSubscriptionDoc"] is False

    @pytest.mark.asyncio
    async def test_logout_removes_device_subscription(self):
        service = _service(solver=FakeSolver([]))
        async with running(service) as client:
            await client.post("/notifications/subscribe", json=_subscribe_body())
            await client.post("/refresh-grades", json={"cookies": SESSION_COOKIES, "username": "alice"})
            await service.wait_idle()
            assert len(service.sessions) == 1

            resp = await client.post("/logout", json={"username": "alice", "deviceId": "d1"})
            body = await resp.json()

            assert body == {"success": True, "removedSubscription": True}
            assert len(service.sessions) == 0

    @pytest.mark.asyncio
    async def test_store_failure_at_runtime(self):
        service = _service()
        async with running(service) as client:
            await client.post("/notifications/subscribe", json=_subscribe_body())
            await service.db.close()
            service.db = None

            resp = await client.post("/logout", json={"username": "alice", "deviceId": "d1"})
            assert resp.status == 200
            assert await resp.json() == {"success": True, "removedSubscription": False}

            resp = await client.get("/notifications/settings", params={"username": "alice", "deviceId": "d1"})
            assert resp.status == 503
            resp = await client.post("/notifications/subscribe", json=_subscribe_body())
            assert resp.status == 503
            resp = await client.post("/notifications/unsubscribe-device", json={"username": "alice", "deviceId": "d1"})
            assert resp.status == 503
            resp = await client.post("/notifications/unsubscribe-all", json={"username": "alice"})
            assert resp.status == 503
            resp = await client.patch("/notifications/interval", json={"username": "alice", "checkIntervalMinutes": 60})
            assert resp.status == 503

    @pytest.mark.asyncio
    async def test_store_unavailable(self):
        async with running(_service(store_enabled=False)) as client:
            resp = await client.get("/notifications/settings", params={"username": "alice"})
            assert resp.status == 503
            resp = await client.post("/notifications/subscribe", json=_subscribe_body())
            assert resp.status == 503
            resp = await client.post("/statistics/app-open", json={"username": "alice", "deviceId": "d1"})
            assert (await resp.json())["recorded"] is False


class TestMiscEndpoints:
    """Statistics, VAPID key and health"""

    @pytest.mark.asyncio
    async def test_app_open_counts(self):
        service = _service()
        async with running(service) as client:
            resp = await client.post("/statistics/app-open", json={
                "username": "alice", "deviceId": "d1", "deviceModel": "Pixel",
                "offlineOpenDelta": 3, "countOnlineOpen": True,
            })
            assert (await resp.json())["recorded"] is True

            stats = await service.statistics.find("alice")
            assert stats.counters[UsageCounters.ONLINE_OPENS] == 1
            assert stats.counters[UsageCounters.OFFLINE_OPENS] == 3
            assert stats.devices[0].offline_opens == 3
            assert stats.devices[0].device_model == "Pixel"

    @pytest.mark.asyncio
    async def test_vapid_key_and_health(self):
        async with running(_service()) as client:
            assert await (await client.get("/push/vapid-key")).json() == {"publicKey": "test-public-key"}
            health = await (await client.get("/health")).json()
            assert health == {"status": "ok", "sessions": 0, "storeAvailable": True, "workerRunning": False}


class TestAppWiring:
    """Application factory and entry point"""

    def test_service_stored_under_typed_key(self):
        service = _service()
        assert create_app(service)[SERVICE_KEY] is service

    def test_module_entry_point_runs_service(self):
        with patch("unigrades.session_manager.manager.main") as main:
            runpy.run_module("unigrades", run_name="__main__")
        main.assert_called_once_with()
