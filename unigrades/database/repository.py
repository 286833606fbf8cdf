"""Async repositories for the subscription and statistics documents."""

from __future__ import annotations

import asyncio
import json
from typing import Callable, Optional

import aiosqlite
from pydantic import ValidationError

from ..log import Logger, get_logger
from ..models.documents import StatisticsDocument, SubscriptionDocument, utcnow

logger = get_logger(__name__)


class _DocumentRepository:
    """Upsert/find/delete of JSON documents keyed by username."""

    table = ""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db
        self.lock = asyncio.Lock()

    async def _find_raw(self, username: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT doc FROM {self.table} WHERE username = ?", (username,)
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.error(f"Corrupt {self.table} document for {username}, ignoring it")
            return None

    async def _upsert_raw(self, username: str, doc_json: str):
        await self._db.execute(
            f"""
            INSERT INTO {self.table} (username, doc, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(username) DO UPDATE SET
                doc = excluded.doc,
                updated_at = excluded.updated_at
            """,
            (username, doc_json, utcnow().isoformat()),
        )
        await self._db.commit()

    async def delete(self, username: str) -> bool:
        """Delete the document of ``username``. Returns True if one existed."""
        cursor = await self._db.execute(f"DELETE FROM {self.table} WHERE username = ?", (username,))
        await self._db.commit()
        return cursor.rowcount > 0

    async def usernames(self) -> list[str]:
        async with self._db.execute(f"SELECT username FROM {self.table} ORDER BY username") as cursor:
            return [row[0] async for row in cursor]


class SubscriptionRepository(_DocumentRepository):
    """Push subscription documents."""

    table = "subscriptions"

    async def find(self, username: str) -> Optional[SubscriptionDocument]:
        raw = await self._find_raw(username)
        if raw is None:
            return None
        try:
            return SubscriptionDocument.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Invalid subscription document for {username}: {e}")
            return None

    async def upsert(self, doc: SubscriptionDocument):
        doc.updated_at = utcnow()
        await self._upsert_raw(doc.username, doc.model_dump_json(by_alias=True))

    async def save_or_delete(self, doc: SubscriptionDocument) -> bool:
        """Persist ``doc``, or delete it when no device entries remain.

        Returns True if the document still exists afterwards.
        """
        if not doc.devices:
            await self.delete(doc.username)
            return False
        await self.upsert(doc)
        return True


class StatisticsRepository(_DocumentRepository):
    """Usage statistics documents; only ever updated additively."""

    table = "statistics"

    async def find(self, username: str) -> Optional[StatisticsDocument]:
        raw = await self._find_raw(username)
        if raw is None:
            return None
        try:
            return StatisticsDocument.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Invalid statistics document for {username}: {e}")
            return None

    async def update(self, username: str, mutate: Callable[[StatisticsDocument], None]) -> StatisticsDocument:
        """Read-modify-write the statistics document of ``username``."""
        async with self.lock:
            doc = await self.find(username) or StatisticsDocument(username=username)
            mutate(doc)
            doc.updated_at = utcnow()
            await self._upsert_raw(username, doc.model_dump_json(by_alias=True))
            return doc

    async def increment(self, username: str, counter: str, amount: int = 1, device_id: str = "", device_model: str = ""):
        def mutate(doc: StatisticsDocument):
            doc.counters[counter] = doc.counters.get(counter, 0) + amount
            if device_id:
                doc.device(device_id, device_model).last_seen_at = utcnow()

        return await self.update(username, mutate)


class UsageCounters:
    """Best-effort counter increments that never fail the calling flow."""

    LOGINS = "logins"
    LOGIN_FAILURES = "loginFailures"
    GRADE_REFRESHES = "gradeRefreshes"
    FAILED_REFRESHES = "failedRefreshes"
    AUTO_SOLVE_WRONG = "autoSolveWrong"
    MANUAL_CAPTCHA_REQUIRED = "manualCaptchaRequired"
    MANUAL_CAPTCHA_SOLVED = "manualCaptchaSolved"
    ONLINE_OPENS = "onlineOpens"
    OFFLINE_OPENS = "offlineOpens"
    NOTIFICATIONS_SENT = "notificationsSent"

    def __init__(self, stats: Optional[StatisticsRepository], log: Logger = logger):
        self._stats = stats
        self._log = log

    async def bump(self, username: str, counter: str, amount: int = 1, device_id: str = "", device_model: str = ""):
        if self._stats is None or not username or amount <= 0:
            return
        try:
            await self._stats.increment(username, counter, amount, device_id, device_model)
        except Exception as e:
            self._log.warning(f"[Stats] Could not increment {counter} for {username}: {e}")
