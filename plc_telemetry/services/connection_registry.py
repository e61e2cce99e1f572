"""
Connection Registry

Owns every driver instance. At most one driver exists per DeviceKey;
callers obtain it through lease() for the duration of one operation
and never keep it across awaits.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from ..common.config import DeviceKey, EngineSettings, ProtocolConfig
from ..common.logging_setup import get_service_logger
from ..common.scheduler import ScheduledLoop
from ..drivers.base import PlcDriver
from ..drivers.factory import create_driver

logger = get_service_logger("services.registry")

DriverFactory = Callable[[DeviceKey, ProtocolConfig, EngineSettings], PlcDriver]


@dataclass
class RegistryEntry:
    """A registered driver"""
    driver: PlcDriver
    config: ProtocolConfig
    last_used: float = field(default_factory=time.monotonic)
    use_count: int = 0
    busy: int = 0          # active leases
    pinned: bool = False   # owned by the polling scheduler; never swept


class ConnectionRegistry:
    """
    Driver registry keyed by device.

    Manages drivers by:
    - Reusing the driver for an existing key (first protocol config wins)
    - Busy flag held for the duration of each lease
    - Pinning drivers owned by the polling scheduler
    - Periodic sweep of idle, unpinned, not-busy drivers
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        driver_factory: DriverFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or EngineSettings()
        self._factory = driver_factory or create_driver
        self._clock = clock
        self._entries: dict[DeviceKey, RegistryEntry] = {}
        self._lock = asyncio.Lock()
        self._sweeper: ScheduledLoop | None = None

    @property
    def idle_timeout(self) -> float:
        return self.settings.idle_timeout_s

    async def start(self) -> None:
        """Start the idle sweep"""
        if self._sweeper:
            return
        self._sweeper = ScheduledLoop(
            self.settings.sweep_interval_s,
            self._sweep_tick,
            name="registry-sweep",
        )
        await self._sweeper.start()
        logger.info("Connection registry started")

    async def stop(self) -> None:
        """Stop the sweep and close all drivers"""
        if self._sweeper:
            self._sweeper.stop()
            self._sweeper = None

        async with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()

        for key, entry in entries:
            await entry.driver.disconnect()

        logger.info("Connection registry stopped")

    async def _sweep_tick(self) -> None:
        await self.sweep_idle()

    def _get_or_create_locked(self, key: DeviceKey, config: ProtocolConfig) -> RegistryEntry:
        entry = self._entries.get(key)
        if entry is None:
            driver = self._factory(key, config, self.settings)
            entry = RegistryEntry(driver=driver, config=config, last_used=self._clock())
            self._entries[key] = entry
            logger.debug(f"Created driver for {key}")
        elif entry.config != config:
            logger.debug(f"Reusing driver for {key}; ignoring differing protocol config")

        entry.last_used = self._clock()
        entry.use_count += 1
        return entry

    async def get_or_create(self, key: DeviceKey, config: ProtocolConfig) -> PlcDriver:
        """
        Get the driver for a key, creating it on first use.

        Refreshes the last-used time of an existing entry.
        """
        async with self._lock:
            return self._get_or_create_locked(key, config).driver

    @asynccontextmanager
    async def lease(self, key: DeviceKey, config: ProtocolConfig) -> AsyncIterator[PlcDriver]:
        """Hold the driver for one operation; the sweep skips busy entries"""
        async with self._lock:
            entry = self._get_or_create_locked(key, config)
            entry.busy += 1

        try:
            yield entry.driver
        finally:
            entry.busy -= 1
            entry.last_used = self._clock()

    async def pin(self, key: DeviceKey, config: ProtocolConfig) -> PlcDriver:
        """Mark a key as scheduler-owned"""
        async with self._lock:
            entry = self._get_or_create_locked(key, config)
            entry.pinned = True
            return entry.driver

    async def unpin(self, key: DeviceKey) -> None:
        """Return a key to ad-hoc use; it is swept once idle"""
        async with self._lock:
            entry = self._entries.get(key)
            if entry:
                entry.pinned = False
                entry.last_used = self._clock()

    def get(self, key: DeviceKey) -> PlcDriver | None:
        entry = self._entries.get(key)
        return entry.driver if entry else None

    def __contains__(self, key: DeviceKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def close(self, key: DeviceKey) -> bool:
        """Force close and evict one driver"""
        async with self._lock:
            entry = self._entries.pop(key, None)

        if entry is None:
            return False

        await entry.driver.disconnect()
        logger.debug(f"Closed driver: {key}")
        return True

    async def sweep_idle(self) -> int:
        """
        Disconnect and evict drivers idle longer than idle_timeout.

        Pinned entries and entries with an active lease are kept.
        """
        now = self._clock()
        removed: list[tuple[DeviceKey, RegistryEntry]] = []

        async with self._lock:
            for key, entry in list(self._entries.items()):
                if entry.pinned or entry.busy > 0:
                    continue
                if now - entry.last_used > self.idle_timeout:
                    removed.append((key, self._entries.pop(key)))

        for key, entry in removed:
            await entry.driver.disconnect()
            logger.debug(f"Closed idle driver: {key}")

        if removed:
            logger.info(f"Cleaned up {len(removed)} idle connections")
        return len(removed)

    def get_stats(self) -> dict:
        """Get registry statistics"""
        now = self._clock()
        return {
            "total_connections": len(self._entries),
            "idle_timeout_s": self.idle_timeout,
            "connections": {
                str(key): {
                    "protocol": entry.config.protocol.value,
                    "use_count": entry.use_count,
                    "connected": entry.driver.is_connected,
                    "pinned": entry.pinned,
                    "busy": entry.busy > 0,
                    "idle_s": round(now - entry.last_used, 1),
                }
                for key, entry in self._entries.items()
            },
        }
