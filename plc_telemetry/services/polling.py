"""
Polling Scheduler

One background loop per registered device key. Each tick reads the full
point set, refreshes the in-memory snapshot and ring buffers, appends the
successful values to the raw sample log and updates polling statistics.

Consumers read snapshots at their own pace; they never trigger a device
read themselves (except through poll_now).
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field, replace

from ..common.config import DeviceKey, EngineSettings, PollRegistration
from ..common.exceptions import CommunicationError, DeviceError, StorageError, ValidationError
from ..common.logging_setup import get_service_logger, log_poll_failure
from ..common.scheduler import ScheduledLoop
from ..common.timestamp import Clock, system_clock, to_ms
from ..drivers.addressing import parse_points
from ..drivers.base import PointResult
from ..storage.local_db import LocalDatabase, RawSample
from .connection_registry import ConnectionRegistry

logger = get_service_logger("services.polling")

# Consecutive failures before a device is reported offline
OFFLINE_THRESHOLD = 3

ALL_ZERO_MESSAGE = "All values are zero; check the controller connection"


@dataclass
class Snapshot:
    """
    Latest read result for one device key.

    A failed tick keeps the last good values and sets error and last_update.
    """
    values: dict[str, float] = field(default_factory=dict)
    point_errors: dict[str, str] = field(default_factory=dict)
    last_update: int = 0  # epoch ms
    error: str | None = None
    warning: str | None = None

    def to_dict(self) -> dict:
        return {
            "values": dict(self.values),
            "point_errors": dict(self.point_errors),
            "last_update": self.last_update,
            "error": self.error,
            "warning": self.warning,
        }


@dataclass
class PollingStatistics:
    """Per-device tick counters"""
    total_polls: int = 0
    successful_polls: int = 0
    failed_polls: int = 0
    consecutive_failures: int = 0
    all_zero_responses: int = 0
    skipped_ticks: int = 0
    storage_failures: int = 0
    last_poll_time: int = 0
    last_success_time: int = 0
    last_error: str | None = None
    last_duration_ms: float = 0

    @property
    def online(self) -> bool:
        return self.consecutive_failures < OFFLINE_THRESHOLD

    def to_dict(self) -> dict:
        return {
            "total_polls": self.total_polls,
            "successful_polls": self.successful_polls,
            "failed_polls": self.failed_polls,
            "consecutive_failures": self.consecutive_failures,
            "all_zero_responses": self.all_zero_responses,
            "skipped_ticks": self.skipped_ticks,
            "storage_failures": self.storage_failures,
            "last_poll_time": self.last_poll_time,
            "last_success_time": self.last_success_time,
            "last_error": self.last_error,
            "last_duration_ms": round(self.last_duration_ms, 1),
            "online": self.online,
        }


@dataclass(frozen=True)
class HistoryPoint:
    timestamp: int
    point_id: str
    value: float

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "point_id": self.point_id, "value": self.value}


@dataclass
class _PolledDevice:
    registration: PollRegistration
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    loop: ScheduledLoop | None = None
    active: bool = True


class PollingScheduler:
    """
    Background polling for registered devices.

    Features:
    - Idempotent registration per device key (first registration wins)
    - Connectivity check before the loop starts (skipped for demo devices)
    - Per-device in-flight guard: a tick that finds the previous one still
      running is skipped and counted
    - Results of a stopped device's in-flight read are discarded
    - Storage failures are counted; snapshot and ring buffers keep serving
    - Sample inserts run in a worker thread, off the event loop
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        db: LocalDatabase | None = None,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
    ):
        self.registry = registry
        self.db = db
        self.settings = settings or registry.settings
        self.clock = clock or system_clock

        self._devices: dict[DeviceKey, _PolledDevice] = {}
        self._snapshots: dict[DeviceKey, Snapshot] = {}
        self._stats: dict[DeviceKey, PollingStatistics] = {}
        self._history: dict[tuple[DeviceKey, str], deque[HistoryPoint]] = {}
        self._pending: set[DeviceKey] = set()

    async def _run_db(self, func, *args):
        """Run a blocking LocalDatabase method in a thread to avoid blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_polling(self, registration: PollRegistration) -> bool:
        """
        Register a device and start its loop.

        Returns:
            True if polling started, False if the key was already registered

        Raises:
            ValidationError: a point cannot be addressed for the protocol
            CommunicationError: connectivity check failed
        """
        key = registration.key
        config = registration.protocol_config

        if key in self._devices or key in self._pending:
            logger.info(f"Polling for {key} already registered; ignoring new registration")
            return False

        # Resolve every point now so bad identifiers fail registration
        parse_points(registration.points, config.protocol, config.address_mapping)

        # Reserve the key; other devices may register while this one connects
        self._pending.add(key)
        try:
            await self.registry.pin(key, config)
            if not registration.simulated:
                try:
                    await self._check_first_point(registration)
                except DeviceError:
                    await self.registry.unpin(key)
                    raise
        finally:
            self._pending.discard(key)

        device = _PolledDevice(registration=registration)
        device.loop = ScheduledLoop(
            registration.interval_s,
            lambda: self._tick(device),
            name=str(key),
            run_immediately=True,
        )
        self._devices[key] = device
        self._snapshots[key] = Snapshot()
        self._stats[key] = PollingStatistics()
        await device.loop.start()

        logger.info(
            f"Polling registered: {key}, interval {registration.interval_ms}ms, "
            f"{len(registration.points)} points, demo={'Y' if registration.simulated else 'N'}"
        )
        if registration.interval_ms > 10000:
            logger.warning(
                f"Polling interval for {key} is over 10s; some controllers drop idle connections"
            )
        return True

    async def _check_first_point(self, registration: PollRegistration) -> None:
        """Read the first point once; fail registration if it is unavailable"""
        first = registration.points[0]
        async with self.registry.lease(registration.key, registration.protocol_config) as driver:
            results = await driver.read([first])

        result = results.get(first)
        if result is None or not result.ok:
            reason = result.error if result else "no response"
            raise CommunicationError(
                f"Connectivity check of {first} failed: {reason}",
                device_key=str(registration.key),
                host=registration.key.host,
                port=registration.key.port,
            )

    async def stop_polling(self, key: DeviceKey) -> bool:
        """
        Stop a device's loop.

        A read already in flight is not cancelled; its result is dropped.
        The last snapshot and statistics stay readable.
        """
        device = self._devices.pop(key, None)
        if device is None:
            return False

        device.active = False
        if device.loop:
            device.loop.stop()
        await self.registry.unpin(key)

        logger.info(f"Polling stopped for {key}")
        return True

    async def stop_all(self) -> None:
        for key in list(self._devices):
            await self.stop_polling(key)

    def is_registered(self, key: DeviceKey) -> bool:
        return key in self._devices

    def get_registration(self, key: DeviceKey) -> PollRegistration | None:
        device = self._devices.get(key)
        return device.registration if device else None

    def registered_keys(self) -> list[DeviceKey]:
        return list(self._devices)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def _tick(self, device: _PolledDevice) -> None:
        key = device.registration.key
        if device.lock.locked():
            stats = self._stats[key]
            stats.skipped_ticks += 1
            logger.warning(f"Skipping tick for {key}: previous poll still running")
            return

        async with device.lock:
            await self._poll(device)

    async def poll_now(self, key: DeviceKey) -> Snapshot:
        """
        Run one tick immediately.

        Skipped (and counted) if a tick for the key is already running.

        Raises:
            ValidationError: key is not registered
        """
        device = self._devices.get(key)
        if device is None:
            raise ValidationError(f"Polling for {key} is not registered", field="device_key")

        await self._tick(device)
        return self._snapshots[key]

    async def _poll(self, device: _PolledDevice) -> None:
        registration = device.registration
        key = registration.key
        stats = self._stats[key]

        start = time.monotonic()
        poll_time = to_ms(self.clock())

        try:
            async with self.registry.lease(key, registration.protocol_config) as driver:
                results = await driver.read(registration.points)
        except DeviceError as e:
            if not device.active:
                logger.debug(f"Discarding failed poll of stopped device {key}")
                return
            stats.total_polls += 1
            stats.last_poll_time = poll_time
            duration_ms = (time.monotonic() - start) * 1000
            self._record_failure(key, e.message, duration_ms)
            return

        if not device.active:
            logger.debug(f"Discarding poll result of stopped device {key}")
            return

        stats.total_polls += 1
        stats.last_poll_time = poll_time
        duration_ms = (time.monotonic() - start) * 1000
        await self._record_results(key, results, duration_ms)

    async def _record_results(
        self,
        key: DeviceKey,
        results: dict[str, PointResult],
        duration_ms: float,
    ) -> None:
        stats = self._stats[key]
        stats.last_duration_ms = duration_ms
        timestamp = to_ms(self.clock())

        values = {p: r.value for p, r in results.items() if r.ok}
        point_errors = {p: r.error or "read failed" for p, r in results.items() if not r.ok}

        if not values:
            message = "; ".join(f"{p}: {err}" for p, err in point_errors.items()) or "no values"
            self._record_failure(
                key, f"All point reads failed ({message})", duration_ms, point_errors
            )
            return

        all_zero = all(v == 0 for v in values.values())
        snapshot = Snapshot(
            values=values,
            point_errors=point_errors,
            last_update=timestamp,
        )

        was_offline = not stats.online
        if all_zero:
            stats.all_zero_responses += 1
            snapshot.warning = ALL_ZERO_MESSAGE
            logger.warning(
                f"All-zero response from {key} "
                f"(total {stats.all_zero_responses}, took {duration_ms:.0f}ms)",
                extra={"device": str(key), "all_zero_responses": stats.all_zero_responses},
            )

        if all_zero and self.settings.all_zero_is_failure:
            stats.failed_polls += 1
            stats.consecutive_failures += 1
            stats.last_error = ALL_ZERO_MESSAGE
            snapshot.error = ALL_ZERO_MESSAGE
            self._check_offline(key, stats)
        else:
            stats.successful_polls += 1
            stats.last_success_time = timestamp
            stats.consecutive_failures = 0
            if was_offline:
                logger.info(f"Device {key} back online")

        if point_errors and not snapshot.warning:
            snapshot.warning = f"{len(point_errors)} of {len(results)} points unavailable"

        self._snapshots[key] = snapshot

        for point_id, value in values.items():
            buffer = self._history.get((key, point_id))
            if buffer is None:
                buffer = deque(maxlen=self.settings.history_limit)
                self._history[(key, point_id)] = buffer
            buffer.append(HistoryPoint(timestamp, point_id, value))

        if self.db is not None:
            samples = [
                RawSample(timestamp=timestamp, point_id=p, value=v, label=str(key))
                for p, v in values.items()
            ]
            try:
                await self._run_db(self.db.insert_samples, samples)
            except StorageError as e:
                stats.storage_failures += 1
                logger.error(f"Failed to store samples for {key}: {e}")

        logger.debug(
            f"Poll success {key}: {len(values)} values, {len(point_errors)} unavailable "
            f"({duration_ms:.0f}ms)"
        )

    def _record_failure(
        self,
        key: DeviceKey,
        message: str,
        duration_ms: float,
        point_errors: dict[str, str] | None = None,
    ) -> None:
        stats = self._stats[key]
        stats.failed_polls += 1
        stats.consecutive_failures += 1
        stats.last_error = message
        stats.last_duration_ms = duration_ms

        # Last good values stay readable; error marks them stale
        previous = self._snapshots.get(key) or Snapshot()
        self._snapshots[key] = replace(
            previous,
            last_update=to_ms(self.clock()),
            error=message,
            point_errors=point_errors if point_errors is not None else previous.point_errors,
        )

        log_poll_failure(logger.logger, str(key), message, stats.consecutive_failures, duration_ms)
        self._check_offline(key, stats)

    def _check_offline(self, key: DeviceKey, stats: PollingStatistics) -> None:
        # Escalate once, on the tick that crosses the threshold
        if stats.consecutive_failures == OFFLINE_THRESHOLD:
            logger.error(
                f"Device {key} offline after {OFFLINE_THRESHOLD} consecutive failures",
                extra={"device": str(key), "consecutive_failures": stats.consecutive_failures},
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_snapshot(self, key: DeviceKey) -> Snapshot | None:
        return self._snapshots.get(key)

    def get_all_snapshots(self) -> dict[str, Snapshot]:
        return {str(key): snapshot for key, snapshot in self._snapshots.items()}

    def get_statistics(self, key: DeviceKey) -> PollingStatistics | None:
        return self._stats.get(key)

    def get_recent_history(self, point_id: str, key: DeviceKey | None = None) -> list[HistoryPoint]:
        """Most recent in-memory samples of a point, oldest first"""
        if key is not None:
            return list(self._history.get((key, point_id), ()))

        merged = [
            sample
            for (_, pid), buffer in self._history.items()
            if pid == point_id
            for sample in buffer
        ]
        merged.sort(key=lambda s: s.timestamp)
        return merged[-self.settings.history_limit:]

    def get_status(self) -> dict:
        """Registration, statistics and loop metrics for every known key"""
        status = {}
        for key, stats in self._stats.items():
            device = self._devices.get(key)
            entry = {
                "polling": device is not None,
                "statistics": stats.to_dict(),
            }
            if device is not None:
                entry["interval_ms"] = device.registration.interval_ms
                entry["points"] = list(device.registration.points)
                entry["demo"] = device.registration.simulated
                if device.loop:
                    entry["scheduler"] = device.loop.get_stats()
            status[str(key)] = entry
        return status
