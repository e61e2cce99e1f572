"""
Engine

Explicitly constructed owner of the registry, scheduler, hourly energy
service and store. One Engine is created at process start and handed to
whatever needs it (the HTTP API, tests); nothing is kept in module
globals.
"""

import asyncio

from ..common.config import (
    DEFAULT_ENERGY_POINT,
    DeviceKey,
    EngineSettings,
    PollRegistration,
    ProtocolConfig,
    load_registrations_file,
)
from ..common.exceptions import DeviceError, PlcTelemetryError, StorageError, ValidationError
from ..common.logging_setup import get_service_logger
from ..common.scheduler import ScheduledLoop
from ..common.timestamp import Clock, last_n_dates, system_clock
from ..drivers.base import PointResult
from ..storage.local_db import DailyRow, LocalDatabase, RawSample
from ..storage.queries import HistoryQueries
from .connection_registry import ConnectionRegistry, DriverFactory
from .hourly_energy import HourlyEnergyService
from .polling import HistoryPoint, PollingScheduler, Snapshot

logger = get_service_logger("services.engine")


def make_key(host: str | None, port: int | None, config: ProtocolConfig) -> DeviceKey:
    """Build a validated device key for ad-hoc operations"""
    if config.simulated:
        host = host or "demo"
        port = port or 0
    if not host:
        raise ValidationError("Host is required", field="host")
    if not config.simulated and (port is None or not 0 < int(port) <= 65535):
        raise ValidationError(f"Invalid port: {port}", field="port")
    return DeviceKey(host=host, port=int(port), protocol=config.protocol)


class Engine:
    """
    Polling engine facade.

    Features:
    - Registration and snapshot access for continuously polled devices
    - Ad-hoc reads and writes through the shared connection registry
    - Hourly energy accumulation
    - History queries, range deletes and periodic retention cleanup
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        db: LocalDatabase | None = None,
        registry: ConnectionRegistry | None = None,
        clock: Clock | None = None,
        driver_factory: DriverFactory | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.clock = clock or system_clock
        self.db = db or LocalDatabase(self.settings.db_path)
        self.registry = registry or ConnectionRegistry(self.settings, driver_factory)
        self.queries = HistoryQueries(self.db, self.clock)
        self.scheduler = PollingScheduler(self.registry, self.db, self.settings, self.clock)
        self.hourly = HourlyEnergyService(self.registry, self.db, self.settings, self.clock)

        self._retention: ScheduledLoop | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def _run_db(self, func, *args):
        """Run a blocking store call in a thread to avoid blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the registry sweep, retention job and startup registrations"""
        if self._running:
            return
        self._running = True

        await self.registry.start()

        self._retention = ScheduledLoop(
            self.settings.retention_interval_s,
            self._retention_tick,
            name="retention",
        )
        await self._retention.start()

        if self.settings.devices_file:
            await self._load_startup_devices()

        logger.info(f"Engine started (db={self.settings.db_path})")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._retention:
            self._retention.stop()
            self._retention = None

        self.hourly.stop()
        await self.scheduler.stop_all()
        await self.registry.stop()
        logger.info("Engine stopped")

    async def _load_startup_devices(self) -> None:
        devices = load_registrations_file(self.settings.devices_file)

        for registration in devices.polling:
            try:
                await self.scheduler.register_polling(registration)
            except PlcTelemetryError as e:
                logger.error(f"Startup registration of {registration.key} failed: {e.message}")

        for hourly in devices.hourly_energy:
            await self.hourly.start(hourly.key, hourly.protocol_config, hourly.point)

    async def _retention_tick(self) -> None:
        try:
            deleted = await self._run_db(
                self.queries.cleanup_older_than, self.settings.retention_days
            )
        except StorageError as e:
            logger.error(f"Retention cleanup failed: {e}")
            return
        logger.info(f"Retention cleanup removed {deleted} samples")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def register_polling(
        self,
        host: str | None,
        port: int | None,
        points: list[str],
        interval_ms: int,
        protocol_config: ProtocolConfig,
    ) -> bool:
        """
        Start background polling for a device. Idempotent per device key.

        Returns:
            True if newly registered, False if already polling

        Raises:
            ValidationError: bad host/port, points or interval
            CommunicationError: connectivity check failed
        """
        registration = PollRegistration.create(host, port, points, interval_ms, protocol_config)
        return await self.scheduler.register_polling(registration)

    async def stop_polling(self, key: DeviceKey) -> bool:
        return await self.scheduler.stop_polling(key)

    def get_snapshot(self, key: DeviceKey) -> Snapshot | None:
        return self.scheduler.get_snapshot(key)

    def get_all_snapshots(self) -> dict[str, Snapshot]:
        return self.scheduler.get_all_snapshots()

    def get_recent_history(self, point_id: str, key: DeviceKey | None = None) -> list[HistoryPoint]:
        return self.scheduler.get_recent_history(point_id, key)

    async def poll_now(self, key: DeviceKey) -> Snapshot:
        return await self.scheduler.poll_now(key)

    def get_polling_status(self) -> dict:
        return {
            "devices": self.scheduler.get_status(),
            "connections": self.registry.get_stats(),
            "hourly_energy": self.hourly.get_status(),
        }

    # ------------------------------------------------------------------
    # Ad-hoc device access
    # ------------------------------------------------------------------

    async def read_points(
        self,
        key: DeviceKey,
        config: ProtocolConfig,
        points: list[str],
    ) -> dict[str, PointResult]:
        """One-off read; the driver is swept once idle unless it is polled"""
        if not points:
            raise ValidationError("At least one point is required", field="points")
        async with self.registry.lease(key, config) as driver:
            return await driver.read(points)

    async def write_point(
        self,
        key: DeviceKey,
        config: ProtocolConfig,
        point_id: str,
        value: float,
    ) -> None:
        async with self.registry.lease(key, config) as driver:
            await driver.write(point_id, value)

    async def check_connection(self, key: DeviceKey, config: ProtocolConfig) -> dict:
        """Connect (if needed) and report the outcome"""
        try:
            async with self.registry.lease(key, config) as driver:
                await driver.connect()
                return {"connected": driver.is_connected, "error": None, **driver.describe()}
        except DeviceError as e:
            return {"connected": False, "error": e.message, "device_key": str(key)}

    # ------------------------------------------------------------------
    # Hourly energy
    # ------------------------------------------------------------------

    async def start_hourly_energy(
        self,
        key: DeviceKey,
        config: ProtocolConfig,
        point: str = DEFAULT_ENERGY_POINT,
    ) -> bool:
        return await self.hourly.start(key, config, point)

    def stop_hourly_energy(self) -> None:
        self.hourly.stop()

    async def get_current_day(self) -> DailyRow:
        return await self.hourly.get_current_day()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_point_history(
        self,
        point_id: str,
        hours_back: float | None = None,
        limit: int | None = None,
    ) -> list[RawSample]:
        return self.queries.get_point_history(point_id, hours_back, limit)

    def get_day_data(self, date: str) -> DailyRow | None:
        return self.queries.get_day_data(date)

    def get_date_range_data(self, from_date: str, to_date: str) -> list[DailyRow]:
        return self.queries.get_date_range_data(from_date, to_date)

    def get_energy_summary(self) -> dict:
        return self.queries.get_energy_summary()

    def query_samples(
        self,
        from_date: str,
        to_date: str,
        point_id: str | None = None,
        limit: int | None = None,
    ) -> list[RawSample]:
        return self.queries.query_samples(from_date, to_date, point_id, limit)

    def list_points(self) -> list[str]:
        """Points with stored samples plus points currently polled"""
        try:
            stored = set(self.db.distinct_points())
        except StorageError as e:
            logger.error(f"Failed to list stored points: {e}")
            stored = set()

        for key in self.scheduler.registered_keys():
            registration = self.scheduler.get_registration(key)
            if registration:
                stored.update(registration.points)
        return sorted(stored)

    def delete_by_range(
        self,
        from_date: str,
        to_date: str,
        point_id: str | None = None,
        kind: str = "samples",
    ) -> int:
        return self.queries.delete_by_range(from_date, to_date, point_id, kind)

    def cleanup_older_than(self, days: int) -> int:
        return self.queries.cleanup_older_than(days)

    def get_storage_stats(self) -> dict:
        return self.db.get_stats()

    def reset_storage(self, seed_days: int = 0) -> dict:
        """Clear the store, optionally filling the last seed_days with demo rows"""
        result = self.db.reset()
        if seed_days:
            result["seeded_dates"] = self.seed_demo_days(seed_days)
        return result

    def seed_demo_days(self, days: int) -> list[str]:
        """Fill the last `days` dates (ending today) with demo hourly values"""
        if not 1 <= days <= 365:
            raise ValidationError(f"days must be 1..365, got {days}", field="days")

        dates = last_n_dates(self.clock().date(), days)
        for date in dates:
            self.queries.seed_demo_day(date)
        logger.info(f"Seeded demo energy data for {len(dates)} days")
        return dates
