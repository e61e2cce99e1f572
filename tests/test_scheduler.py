"""
Tests for ScheduledLoop and local wall-clock alignment
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from conftest import settle
from plc_telemetry.common.scheduler import ScheduledLoop, next_boundary

IST = timezone(timedelta(hours=5, minutes=30))


@pytest.fixture
def india_local_time(monkeypatch):
    # POSIX zone string; needs no tz database
    monkeypatch.setenv("TZ", "IST-5:30")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


def test_hour_boundary_follows_local_clock():
    now = datetime(2024, 3, 15, 9, 40, tzinfo=IST).timestamp()

    boundary = next_boundary(now, 3600, utc_offset=19800)

    assert boundary == datetime(2024, 3, 15, 10, 0, tzinfo=IST).timestamp()


def test_hour_boundary_in_utc():
    now = datetime(2024, 3, 15, 9, 40, tzinfo=timezone.utc).timestamp()

    boundary = next_boundary(now, 3600, utc_offset=0)

    assert boundary == datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc).timestamp()


def test_exact_boundary_moves_to_the_next_one():
    now = datetime(2024, 3, 15, 10, 0, tzinfo=IST).timestamp()

    assert next_boundary(now, 3600, utc_offset=19800) == now + 3600
    assert next_boundary(now, 60, utc_offset=19800) == now + 60


def test_boundary_uses_process_zone_by_default(india_local_time):
    now = datetime(2024, 3, 15, 23, 59, 30, tzinfo=IST).timestamp()

    boundary = next_boundary(now, 86400)

    assert boundary == datetime(2024, 3, 16, 0, 0, tzinfo=IST).timestamp()


def test_loop_runs_immediately_and_stops():
    calls = []

    async def tick():
        calls.append(time.time())

    async def scenario():
        loop = ScheduledLoop(0.02, tick, name="fast", run_immediately=True)
        await loop.start()
        await settle(0.09)
        loop.stop()
        count = len(calls)
        await settle(0.05)
        return loop, count

    loop, count = asyncio.run(scenario())

    assert count >= 3
    assert len(calls) == count
    assert not loop.running
    assert loop.execution_count == count


def test_aligned_loop_waits_for_boundary():
    calls = []

    async def tick():
        calls.append(1)

    async def scenario():
        loop = ScheduledLoop(3600, tick, name="hourly", align=True)
        await loop.start()
        await settle()
        loop.stop()

    asyncio.run(scenario())

    assert calls == []


def test_callback_errors_are_counted():
    async def tick():
        raise RuntimeError("boom")

    async def scenario():
        loop = ScheduledLoop(0.02, tick, name="failing", run_immediately=True)
        await loop.start()
        await settle(0.05)
        loop.stop()
        return loop.get_stats()

    stats = asyncio.run(scenario())

    assert stats["error_count"] >= 1
    assert stats["execution_count"] == 0


def test_interval_must_be_positive():
    async def tick():
        pass

    with pytest.raises(ValueError):
        ScheduledLoop(0, tick)
