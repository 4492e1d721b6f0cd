"""Anonymous cooldown store and sweeper tests."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from shortlink.cooldown import CooldownStore, CooldownSweeper
from shortlink.models import IP
from shortlink.store import LinkStore


async def _ip_rows(store: LinkStore) -> int:
    async with store._session_factory() as session:
        return await session.scalar(select(func.count()).select_from(IP))


@pytest.mark.asyncio
async def test_touch_puts_source_in_cooldown(store: LinkStore, clock) -> None:
    cooldowns = CooldownStore(store, clock=clock)

    assert not await cooldowns.is_in_cooldown("203.0.113.7", 10)
    await cooldowns.touch("203.0.113.7")
    assert await cooldowns.is_in_cooldown("203.0.113.7", 10)


@pytest.mark.asyncio
async def test_cooldown_ends_after_window(store: LinkStore, clock) -> None:
    cooldowns = CooldownStore(store, clock=clock)
    await cooldowns.touch("203.0.113.7")

    clock.advance(minutes=9, seconds=59)
    assert await cooldowns.is_in_cooldown("203.0.113.7", 10)

    clock.advance(seconds=2)
    assert not await cooldowns.is_in_cooldown("203.0.113.7", 10)


@pytest.mark.asyncio
async def test_touch_never_duplicates(store: LinkStore, clock) -> None:
    cooldowns = CooldownStore(store, clock=clock)
    await cooldowns.touch("2001:DB8::1")
    clock.advance(minutes=30)
    await cooldowns.touch("2001:db8::1")

    assert await _ip_rows(store) == 1
    assert await cooldowns.is_in_cooldown("2001:db8::1", 10)


@pytest.mark.asyncio
async def test_sweep_removes_only_expired(store: LinkStore, clock) -> None:
    cooldowns = CooldownStore(store, clock=clock)
    await cooldowns.touch("198.51.100.1")
    clock.advance(minutes=15)
    await cooldowns.touch("198.51.100.2")

    assert await cooldowns.sweep(10) == 1
    assert await cooldowns.is_in_cooldown("198.51.100.2", 10)
    assert await _ip_rows(store) == 1


@pytest.mark.asyncio
async def test_sweep_is_idempotent(store: LinkStore, clock) -> None:
    cooldowns = CooldownStore(store, clock=clock)
    await cooldowns.touch("198.51.100.1")
    clock.advance(minutes=20)

    assert await cooldowns.sweep(10) == 1
    assert await cooldowns.sweep(10) == 0


@pytest.mark.asyncio
async def test_sweeper_lifecycle(store: LinkStore, clock) -> None:
    cooldowns = CooldownStore(store, clock=clock)
    await cooldowns.touch("198.51.100.1")
    clock.advance(minutes=20)

    sweeper = CooldownSweeper(cooldowns, window_minutes=10, interval_seconds=0.01)
    sweeper.start()
    assert sweeper.running
    await asyncio.sleep(0.1)
    await sweeper.stop()

    assert not sweeper.running
    assert await _ip_rows(store) == 0


@pytest.mark.asyncio
async def test_sweeper_survives_errors() -> None:
    cooldowns = AsyncMock(spec=CooldownStore)
    calls = []

    async def flaky_sweep(window_minutes: int) -> int:
        calls.append(window_minutes)
        if len(calls) == 1:
            raise RuntimeError("db down")
        return 0

    cooldowns.sweep = AsyncMock(side_effect=flaky_sweep)

    sweeper = CooldownSweeper(cooldowns, window_minutes=10, interval_seconds=0.01)
    sweeper.start()
    await asyncio.sleep(0.05)
    assert sweeper.running
    await sweeper.stop()

    assert cooldowns.sweep.await_count >= 2
