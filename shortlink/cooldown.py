"""Anonymous rate limiting through a per-source cooldown window.

Every anonymous link submission ``touch``-es its source address. While the
row is younger than ``NON_USER_COOLDOWN`` minutes the source is in cooldown
and may not create another link. A ``CooldownSweeper`` deletes expired rows on
a fixed interval, independently of request handling.

Key Behaviours
===============
- ``touch`` is an upsert keyed by source, so a sweep racing a touch can only
  lose the older row; the most recent write always wins.
- ``sweep`` only removes rows older than the window and is idempotent.
- Source keys are compared lower-cased (IPv6 literals arrive in either case).
"""

import asyncio
import datetime
import logging

from shortlink.clock import Clock, utcnow
from shortlink.store import LinkStore

__all__ = ["CooldownStore", "CooldownSweeper"]


class CooldownStore:
    def __init__(self, store: LinkStore, clock: Clock = utcnow):
        self._store = store
        self._clock = clock

    async def touch(self, source_key: str) -> None:
        await self._store.upsert_ip(source_key.lower(), self._clock())

    async def is_in_cooldown(self, source_key: str, window_minutes: int) -> bool:
        since = self._clock() - datetime.timedelta(minutes=window_minutes)
        return await self._store.find_ip(source_key.lower(), since=since) is not None

    async def sweep(self, window_minutes: int) -> int:
        before = self._clock() - datetime.timedelta(minutes=window_minutes)
        return await self._store.delete_stale_ips(before)


class CooldownSweeper:
    """Recurring background task that purges expired cooldown rows."""

    def __init__(
        self,
        cooldowns: CooldownStore,
        window_minutes: int,
        interval_seconds: float,
        logger: logging.Logger | None = None,
    ):
        self._cooldowns = cooldowns
        self._window_minutes = window_minutes
        self._interval = interval_seconds
        self._logger = logger or logging.getLogger("shortlink.cooldown")
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="cooldown-sweeper")
        self._logger.info(f"Cooldown sweeper started, every {self._interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._logger.info("Cooldown sweeper stopped")

    async def run_once(self) -> int:
        removed = await self._cooldowns.sweep(self._window_minutes)
        if removed:
            self._logger.info(f"Swept {removed} expired cooldown records")
        return removed

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                self._logger.error(f"Cooldown sweep error: {exc}")
            await asyncio.sleep(self._interval)
