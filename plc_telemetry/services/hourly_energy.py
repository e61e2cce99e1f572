"""
Hourly Energy Service

Reads the daily energy accumulator (D6100 by default) at the top of
every hour and stores it in that hour's column of today's daily_energy
row. Date and hour come from the server clock when the read completes.
"""

import asyncio

from ..common.config import DEFAULT_ENERGY_POINT, DeviceKey, EngineSettings, ProtocolConfig
from ..common.exceptions import DeviceError, StorageError
from ..common.logging_setup import get_service_logger
from ..common.scheduler import ScheduledLoop
from ..common.timestamp import Clock, format_date, system_clock, to_ms
from ..storage.local_db import DailyRow, LocalDatabase
from .connection_registry import ConnectionRegistry

logger = get_service_logger("services.hourly_energy")

HOUR_SECONDS = 3600.0


class HourlyEnergyService:
    """
    Top-of-hour accumulator polling.

    Keeps today's row in memory. When the date changes between polls the
    cache is reloaded from the store for the new date (or starts at zero),
    and the previous date's row is never written again.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        db: LocalDatabase,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
        interval_seconds: float = HOUR_SECONDS,
    ):
        self.registry = registry
        self.db = db
        self.settings = settings or registry.settings
        self.clock = clock or system_clock
        self.interval_seconds = interval_seconds

        self._loop: ScheduledLoop | None = None
        self._key: DeviceKey | None = None
        self._config: ProtocolConfig | None = None
        self._point = DEFAULT_ENERGY_POINT
        self._current: DailyRow | None = None

        self.poll_count = 0
        self.last_error: str | None = None
        self.last_value: float | None = None

    async def _run_db(self, func, *args):
        """Run a blocking LocalDatabase method in a thread to avoid blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    @property
    def is_active(self) -> bool:
        return self._loop is not None

    @property
    def device_key(self) -> DeviceKey | None:
        return self._key

    async def start(
        self,
        key: DeviceKey,
        config: ProtocolConfig,
        point: str = DEFAULT_ENERGY_POINT,
    ) -> bool:
        """
        Start (or restart) hourly polling for a device.

        Polls once immediately, then at every hour boundary.

        Returns:
            Result of the immediate poll
        """
        self.stop()

        self._key = key
        self._config = config
        self._point = point
        await self._load_day(format_date(self.clock()))

        ok = await self.poll_once()

        self._loop = ScheduledLoop(
            self.interval_seconds,
            self._scheduled_poll,
            name="hourly-energy",
            align=True,
        )
        await self._loop.start()
        logger.info(f"Hourly energy polling started for {key} ({point})")
        return ok

    def stop(self) -> None:
        if self._loop:
            self._loop.stop()
            self._loop = None
            logger.info(f"Hourly energy polling stopped for {self._key}")

    async def _scheduled_poll(self) -> None:
        await self.poll_once()

    async def _load_day(self, date: str) -> None:
        try:
            row = await self._run_db(self.db.fetch_day, date)
        except StorageError as e:
            logger.error(f"Failed to load day {date}: {e}")
            row = None
        self._current = row or DailyRow(date=date, last_update=to_ms(self.clock()))

    async def _roll_over_if_needed(self, today: str) -> None:
        if self._current is None or self._current.date != today:
            if self._current is not None:
                logger.info(f"Date changed from {self._current.date} to {today}, reloading")
            await self._load_day(today)

    async def poll_once(self) -> bool:
        """
        Read the accumulator and store it in the current hour column.

        Returns:
            True if a value was read and stored
        """
        if self._key is None or self._config is None:
            logger.warning("No device configured for hourly energy polling")
            return False

        await self._roll_over_if_needed(format_date(self.clock()))

        try:
            async with self.registry.lease(self._key, self._config) as driver:
                results = await driver.read([self._point])
        except DeviceError as e:
            self.last_error = e.message
            logger.error(f"Hourly poll of {self._key} failed: {e.message}")
            return False

        result = results.get(self._point)
        if result is None or not result.ok:
            self.last_error = result.error if result else "no response"
            logger.warning(f"Invalid value for {self._point}: {self.last_error}")
            return False

        # Bucket by the wall clock at the moment of the successful read
        now = self.clock()
        date = format_date(now)
        hour = now.hour
        timestamp = to_ms(now)
        await self._roll_over_if_needed(date)

        self._current.hours[hour] = result.value
        self._current.last_update = timestamp
        self.last_value = result.value
        self.poll_count += 1

        try:
            await self._run_db(self.db.upsert_hour, date, hour, result.value, timestamp)
        except StorageError as e:
            self.last_error = e.message
            logger.error(f"Failed to save {date} {hour}:00: {e}")
            return False

        self.last_error = None
        logger.info(f"Saved {date} {hour}:00 = {result.value}Wh")
        return True

    async def get_current_day(self) -> DailyRow:
        """Today's row as held in memory"""
        await self._roll_over_if_needed(format_date(self.clock()))
        return DailyRow(
            date=self._current.date,
            hours=list(self._current.hours),
            last_update=self._current.last_update,
        )

    def get_status(self) -> dict:
        return {
            "active": self.is_active,
            "device_key": str(self._key) if self._key else None,
            "point": self._point,
            "poll_count": self.poll_count,
            "last_value": self.last_value,
            "last_error": self.last_error,
            "scheduler": self._loop.get_stats() if self._loop else None,
        }
