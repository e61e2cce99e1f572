"""
Tests for the polling scheduler: snapshots, statistics, in-flight guard,
stop semantics, ring buffers and raw sample appends
"""

import asyncio
import time

import pytest

from conftest import settle, worst_loop_gap
from plc_telemetry.common.config import DeviceKey, PollRegistration, Protocol, ProtocolConfig
from plc_telemetry.common.exceptions import (
    AddressError,
    CommunicationError,
    StorageError,
    ValidationError,
)
from plc_telemetry.common.timestamp import to_ms
from plc_telemetry.services.connection_registry import ConnectionRegistry
from plc_telemetry.services.polling import ALL_ZERO_MESSAGE, OFFLINE_THRESHOLD, PollingScheduler
from plc_telemetry.storage.local_db import LocalDatabase

SLOW = 60000  # ms; only the immediate first tick runs during a test


def _scheduler(settings, factory, db=None, clock=None) -> PollingScheduler:
    registry = ConnectionRegistry(settings, factory)
    return PollingScheduler(registry, db, settings, clock)


def _registration(key, points=("50", "51"), interval_ms=SLOW) -> PollRegistration:
    return PollRegistration.create(
        key.host, key.port, list(points), interval_ms, ProtocolConfig(protocol=key.protocol)
    )


class BrokenDatabase(LocalDatabase):
    def insert_samples(self, samples):
        raise StorageError("disk I/O error", operation="insert_samples")


# ============================================================================
# Registration
# ============================================================================

def test_snapshot_after_first_tick(settings, factory, db, clock, modbus_key):
    """Modbus 10.0.0.5:502, points 50/51 read as 256/255"""
    factory.plant(modbus_key).values.update({"50": 256, "51": 255})

    async def scenario():
        scheduler = _scheduler(settings, factory, db, clock)
        started = await scheduler.register_polling(_registration(modbus_key, interval_ms=1000))
        await settle()
        snapshot = scheduler.get_snapshot(modbus_key)
        await scheduler.stop_all()
        return started, snapshot

    started, snapshot = asyncio.run(scenario())

    assert started
    assert snapshot.values == {"50": 256.0, "51": 255.0}
    assert snapshot.last_update == to_ms(clock())
    assert snapshot.error is None
    assert snapshot.point_errors == {}


def test_registration_is_idempotent(settings, factory, clock, modbus_key):
    factory.plant(modbus_key).values["50"] = 1

    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        first = await scheduler.register_polling(_registration(modbus_key))
        second = await scheduler.register_polling(
            _registration(modbus_key, points=("60",), interval_ms=500)
        )
        registration = scheduler.get_registration(modbus_key)
        keys = scheduler.registered_keys()
        await scheduler.stop_all()
        return first, second, registration, keys

    first, second, registration, keys = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert registration.points == ("50", "51")
    assert registration.interval_ms == SLOW
    assert keys == [modbus_key]
    assert len(factory.created_for(modbus_key)) == 1


def test_concurrent_registrations_start_one_loop(settings, factory, clock, modbus_key):
    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        results = await asyncio.gather(
            *(scheduler.register_polling(_registration(modbus_key)) for _ in range(5))
        )
        await scheduler.stop_all()
        return results

    results = asyncio.run(scenario())

    assert sorted(results) == [False, False, False, False, True]
    assert len(factory.drivers) == 1


def test_slow_connect_does_not_block_other_registrations(settings, factory, clock, modbus_key):
    other = DeviceKey("10.0.0.6", 502, Protocol.MODBUS)

    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        factory.plant(modbus_key).gate = asyncio.Event()
        first = asyncio.create_task(scheduler.register_polling(_registration(modbus_key)))
        await settle(0.01)

        duplicate = await scheduler.register_polling(_registration(modbus_key))
        second = await asyncio.wait_for(scheduler.register_polling(_registration(other)), 0.5)
        first_registered_early = scheduler.is_registered(modbus_key)

        factory.plant(modbus_key).gate.set()
        first_result = await first
        await scheduler.stop_all()
        return duplicate, second, first_registered_early, first_result

    duplicate, second, first_registered_early, first_result = asyncio.run(scenario())

    assert duplicate is False
    assert second is True
    assert not first_registered_early
    assert first_result is True


def test_unreachable_device_leaves_nothing_registered(settings, factory, clock, modbus_key):
    factory.plant(modbus_key).point_errors["50"] = "Modbus error: illegal address"

    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        with pytest.raises(CommunicationError):
            await scheduler.register_polling(_registration(modbus_key))
        return scheduler

    scheduler = asyncio.run(scenario())

    assert not scheduler.is_registered(modbus_key)
    assert scheduler.get_snapshot(modbus_key) is None
    assert not scheduler.registry.get_stats()["connections"][str(modbus_key)]["pinned"]


def test_demo_registration_skips_connectivity_check(settings, factory, clock):
    key = DeviceKey("demo", 0, Protocol.DEMO)

    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        await scheduler.register_polling(_registration(key, points=("D400",)))
        reads_before_tick = factory.plant(key).reads
        await scheduler.stop_all()
        return reads_before_tick

    assert asyncio.run(scenario()) == 0


def test_invalid_point_rejects_registration(settings, factory, clock):
    key = DeviceKey("10.0.0.7", 5002, Protocol.MC)

    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        with pytest.raises(AddressError):
            await scheduler.register_polling(_registration(key, points=("D400", "Q1")))
        return scheduler

    scheduler = asyncio.run(scenario())

    assert not scheduler.is_registered(key)
    assert factory.drivers == []


@pytest.mark.parametrize(
    "host, port, points, interval_ms",
    [
        (None, 502, ["50"], 1000),
        ("10.0.0.5", None, ["50"], 1000),
        ("10.0.0.5", 70000, ["50"], 1000),
        ("10.0.0.5", 502, [], 1000),
        ("10.0.0.5", 502, ["  "], 1000),
        ("10.0.0.5", 502, ["50"], 0),
    ],
)
def test_registration_validation(host, port, points, interval_ms):
    with pytest.raises(ValidationError):
        PollRegistration.create(host, port, points, interval_ms, ProtocolConfig(protocol=Protocol.MODBUS))


# ============================================================================
# Failures and recovery
# ============================================================================

def test_consecutive_failures_then_recovery(settings, factory, db, clock, modbus_key):
    plant = factory.plant(modbus_key)
    plant.values.update({"50": 256, "51": 255})

    async def scenario():
        scheduler = _scheduler(settings, factory, db, clock)
        await scheduler.register_polling(_registration(modbus_key))
        await settle()

        plant.link_down = True
        for _ in range(3):
            await scheduler.poll_now(modbus_key)
        failed_snapshot = scheduler.get_snapshot(modbus_key)
        failed_stats = scheduler.get_statistics(modbus_key).to_dict()

        plant.link_down = False
        recovered_snapshot = await scheduler.poll_now(modbus_key)
        recovered_stats = scheduler.get_statistics(modbus_key).to_dict()
        await scheduler.stop_all()
        return failed_snapshot, failed_stats, recovered_snapshot, recovered_stats

    failed_snapshot, failed_stats, recovered_snapshot, recovered_stats = asyncio.run(scenario())

    assert failed_snapshot.error
    assert failed_snapshot.values == {"50": 256.0, "51": 255.0}
    assert failed_stats["consecutive_failures"] == OFFLINE_THRESHOLD == 3
    assert failed_stats["failed_polls"] == 3
    assert failed_stats["online"] is False

    assert recovered_snapshot.error is None
    assert recovered_snapshot.values == {"50": 256.0, "51": 255.0}
    assert recovered_stats["consecutive_failures"] == 0
    assert recovered_stats["successful_polls"] == 2
    assert recovered_stats["total_polls"] == 5
    assert recovered_stats["online"] is True


def test_failed_points_are_not_zero(settings, factory, db, clock, modbus_key):
    plant = factory.plant(modbus_key)
    plant.values["50"] = 256

    async def scenario():
        scheduler = _scheduler(settings, factory, db, clock)
        await scheduler.register_polling(_registration(modbus_key))
        await settle()
        plant.point_errors["51"] = "Modbus error: illegal address"
        snapshot = await scheduler.poll_now(modbus_key)
        await scheduler.stop_all()
        return snapshot

    snapshot = asyncio.run(scenario())

    assert snapshot.values == {"50": 256.0}
    assert "51" not in snapshot.values
    assert snapshot.point_errors == {"51": "Modbus error: illegal address"}
    assert snapshot.warning == "1 of 2 points unavailable"
    assert sorted(s.point_id for s in db.fetch_samples()) == ["50", "50", "51"]


def test_all_points_failing_is_a_failed_tick(settings, factory, clock, modbus_key):
    plant = factory.plant(modbus_key)
    plant.values.update({"50": 1, "51": 1})

    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        await scheduler.register_polling(_registration(modbus_key))
        await settle()
        plant.point_errors.update({"50": "timeout", "51": "timeout"})
        snapshot = await scheduler.poll_now(modbus_key)
        stats = scheduler.get_statistics(modbus_key)
        await scheduler.stop_all()
        return snapshot, stats

    snapshot, stats = asyncio.run(scenario())

    assert snapshot.values == {"50": 1.0, "51": 1.0}
    assert "All point reads failed" in snapshot.error
    assert set(snapshot.point_errors) == {"50", "51"}
    assert stats.consecutive_failures == 1


def test_failed_tick_keeps_last_values(settings, factory, db, clock, modbus_key):
    plant = factory.plant(modbus_key)
    plant.values.update({"50": 256, "51": 255})

    async def scenario():
        scheduler = _scheduler(settings, factory, db, clock)
        await scheduler.register_polling(_registration(modbus_key))
        await settle()
        good = scheduler.get_snapshot(modbus_key)

        clock.advance(seconds=30)
        plant.link_down = True
        failed = await scheduler.poll_now(modbus_key)
        await scheduler.stop_all()
        return good, failed

    good, failed = asyncio.run(scenario())

    assert failed.values == good.values == {"50": 256.0, "51": 255.0}
    assert failed.error
    assert good.error is None
    assert failed.last_update == to_ms(clock()) > good.last_update


def test_all_zero_response_counts_as_failure(settings, factory, db, clock, modbus_key):
    async def scenario():
        scheduler = _scheduler(settings, factory, db, clock)
        await scheduler.register_polling(_registration(modbus_key))
        await settle()
        return scheduler.get_snapshot(modbus_key), scheduler.get_statistics(modbus_key)

    snapshot, stats = asyncio.run(scenario())

    assert snapshot.values == {"50": 0.0, "51": 0.0}
    assert snapshot.warning == ALL_ZERO_MESSAGE
    assert snapshot.error == ALL_ZERO_MESSAGE
    assert stats.all_zero_responses == 1
    assert stats.consecutive_failures == 1
    # Values are still recorded
    assert len(db.fetch_samples()) == 2


def test_all_zero_response_as_warning_only(settings, factory, clock, modbus_key):
    lenient = settings.model_copy(update={"all_zero_is_failure": False})

    async def scenario():
        scheduler = _scheduler(lenient, factory, clock=clock)
        await scheduler.register_polling(_registration(modbus_key))
        await settle()
        return scheduler.get_snapshot(modbus_key), scheduler.get_statistics(modbus_key)

    snapshot, stats = asyncio.run(scenario())

    assert snapshot.error is None
    assert snapshot.warning == ALL_ZERO_MESSAGE
    assert stats.all_zero_responses == 1
    assert stats.consecutive_failures == 0
    assert stats.successful_polls == 1


def test_storage_failure_keeps_snapshot(settings, factory, clock, modbus_key):
    factory.plant(modbus_key).values.update({"50": 1, "51": 2})
    broken = BrokenDatabase(settings.db_path)

    async def scenario():
        scheduler = _scheduler(settings, factory, broken, clock)
        await scheduler.register_polling(_registration(modbus_key))
        await settle()
        return (
            scheduler.get_snapshot(modbus_key),
            scheduler.get_statistics(modbus_key),
            scheduler.get_recent_history("50", modbus_key),
        )

    snapshot, stats, history = asyncio.run(scenario())

    assert snapshot.values == {"50": 1.0, "51": 2.0}
    assert stats.storage_failures == 1
    assert stats.successful_polls == 1
    assert [h.value for h in history] == [1.0]


class SlowDatabase(LocalDatabase):
    def insert_samples(self, samples):
        time.sleep(0.3)
        return super().insert_samples(samples)


def test_slow_store_insert_runs_off_the_event_loop(settings, factory, clock, modbus_key):
    factory.plant(modbus_key).values.update({"50": 7, "51": 8})
    slow = SlowDatabase(settings.db_path)

    async def scenario():
        done = asyncio.Event()
        watcher = asyncio.create_task(worst_loop_gap(done))
        scheduler = _scheduler(settings, factory, slow, clock)
        await scheduler.register_polling(_registration(modbus_key))
        await settle(0.45)
        done.set()
        worst_gap = await watcher
        await scheduler.stop_all()
        return worst_gap

    worst_gap = asyncio.run(scenario())

    assert worst_gap < 0.2
    assert len(slow.fetch_samples()) == 2


# ============================================================================
# Concurrency and stop
# ============================================================================

def test_overlapping_tick_is_skipped(settings, factory, clock, modbus_key):
    plant = factory.plant(modbus_key)
    plant.values.update({"50": 5, "51": 6})

    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        await scheduler.register_polling(_registration(modbus_key))

        plant.gate = asyncio.Event()
        await settle()  # first tick is now blocked inside the read
        await scheduler.poll_now(modbus_key)
        skipped = scheduler.get_statistics(modbus_key).skipped_ticks

        plant.gate.set()
        await settle()
        stats = scheduler.get_statistics(modbus_key)
        await scheduler.stop_all()
        return skipped, stats

    skipped, stats = asyncio.run(scenario())

    assert skipped == 1
    assert stats.total_polls == 1
    assert stats.successful_polls == 1


def test_result_after_stop_is_discarded(settings, factory, db, clock, modbus_key):
    plant = factory.plant(modbus_key)
    plant.values.update({"50": 5, "51": 6})

    async def scenario():
        scheduler = _scheduler(settings, factory, db, clock)
        await scheduler.register_polling(_registration(modbus_key))

        plant.gate = asyncio.Event()
        await settle()
        stopped = await scheduler.stop_polling(modbus_key)

        plant.gate.set()
        await settle()
        return scheduler, stopped

    scheduler, stopped = asyncio.run(scenario())

    assert stopped
    assert not scheduler.is_registered(modbus_key)
    snapshot = scheduler.get_snapshot(modbus_key)
    assert snapshot.values == {}
    assert snapshot.last_update == 0
    assert scheduler.get_statistics(modbus_key).total_polls == 0
    assert scheduler.get_statistics(modbus_key).successful_polls == 0
    assert db.fetch_samples() == []


def test_stop_unknown_key(settings, factory, modbus_key):
    async def scenario():
        return await _scheduler(settings, factory).stop_polling(modbus_key)

    assert asyncio.run(scenario()) is False


def test_poll_now_requires_registration(settings, factory, modbus_key):
    async def scenario():
        await _scheduler(settings, factory).poll_now(modbus_key)

    with pytest.raises(ValidationError):
        asyncio.run(scenario())


def test_stop_then_register_again(settings, factory, clock, modbus_key):
    factory.plant(modbus_key).values["50"] = 3

    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        await scheduler.register_polling(_registration(modbus_key))
        await scheduler.stop_polling(modbus_key)
        again = await scheduler.register_polling(_registration(modbus_key, points=("50",)))
        registration = scheduler.get_registration(modbus_key)
        await scheduler.stop_all()
        return again, registration

    again, registration = asyncio.run(scenario())

    assert again
    assert registration.points == ("50",)
    # Same driver reused; the registry never held two for the key
    assert len(factory.created_for(modbus_key)) == 1


def test_devices_poll_independently(settings, factory, clock):
    fast = DeviceKey("10.0.0.11", 502, Protocol.MODBUS)
    slow = DeviceKey("10.0.0.12", 502, Protocol.MODBUS)
    factory.plant(fast).values.update({"50": 1, "51": 1})
    factory.plant(slow).values.update({"50": 2, "51": 2})

    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        await scheduler.register_polling(_registration(fast, interval_ms=50))
        await scheduler.register_polling(_registration(slow, interval_ms=80))
        await settle(0.4)

        await scheduler.stop_polling(fast)
        fast_polls = scheduler.get_statistics(fast).total_polls
        slow_polls = scheduler.get_statistics(slow).total_polls

        await settle(0.4)
        result = (
            fast_polls,
            scheduler.get_statistics(fast).total_polls,
            slow_polls,
            scheduler.get_statistics(slow).total_polls,
            scheduler.get_snapshot(slow),
        )
        await scheduler.stop_all()
        return result

    fast_before, fast_after, slow_before, slow_after, slow_snapshot = asyncio.run(scenario())

    assert fast_before >= 2
    assert fast_after == fast_before
    assert slow_after > slow_before
    assert slow_snapshot.values == {"50": 2.0, "51": 2.0}


# ============================================================================
# Ring buffers and raw samples
# ============================================================================

def test_ring_buffer_keeps_most_recent(settings, factory, db, clock, modbus_key):
    short = settings.model_copy(update={"history_limit": 3})
    plant = factory.plant(modbus_key)

    async def scenario():
        scheduler = _scheduler(short, factory, db, clock)
        plant.values.update({"50": 100, "51": 1})
        await scheduler.register_polling(_registration(modbus_key))
        await settle()
        for i in range(1, 5):
            clock.advance(seconds=1)
            plant.values["50"] = 100 + i
            await scheduler.poll_now(modbus_key)
        history = scheduler.get_recent_history("50", modbus_key)
        merged = scheduler.get_recent_history("50")
        await scheduler.stop_all()
        return history, merged

    history, merged = asyncio.run(scenario())

    assert [h.value for h in history] == [102.0, 103.0, 104.0]
    assert history[0].timestamp < history[-1].timestamp
    assert merged == history
    # The store keeps every sample
    assert len(db.fetch_samples(point_id="50")) == 5


def test_samples_are_labelled_with_device_key(settings, factory, db, clock, modbus_key):
    factory.plant(modbus_key).values.update({"50": 7, "51": 8})

    async def scenario():
        scheduler = _scheduler(settings, factory, db, clock)
        await scheduler.register_polling(_registration(modbus_key))
        await settle()
        await scheduler.stop_all()

    asyncio.run(scenario())

    samples = db.fetch_samples()
    assert {(s.point_id, s.value) for s in samples} == {("50", 7.0), ("51", 8.0)}
    assert all(s.label == "10.0.0.5:502/modbus" for s in samples)
    assert all(s.timestamp == to_ms(clock()) for s in samples)


def test_status_report(settings, factory, clock, modbus_key):
    factory.plant(modbus_key).values.update({"50": 7, "51": 8})

    async def scenario():
        scheduler = _scheduler(settings, factory, clock=clock)
        await scheduler.register_polling(_registration(modbus_key))
        await settle()
        status = scheduler.get_status()
        await scheduler.stop_all()
        return status

    status = asyncio.run(scenario())
    entry = status["10.0.0.5:502/modbus"]

    assert entry["polling"]
    assert entry["points"] == ["50", "51"]
    assert entry["interval_ms"] == SLOW
    assert entry["statistics"]["successful_polls"] == 1
