"""
Shared fixtures: in-memory fake controller, injectable clock, settings
with a temporary SQLite file.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pytest

from plc_telemetry.common.config import DeviceKey, EngineSettings, Protocol, ProtocolConfig
from plc_telemetry.drivers.addressing import PointAddress
from plc_telemetry.drivers.base import PlcDriver, PointResult
from plc_telemetry.storage.local_db import LocalDatabase


@dataclass
class FakePlant:
    """Scripted controller state, shared by every driver built for a key"""
    values: dict[str, float] = field(default_factory=dict)
    point_errors: dict[str, str] = field(default_factory=dict)
    refuse_connect: bool = False
    link_down: bool = False
    gate: asyncio.Event | None = None
    reads: int = 0
    writes: list[tuple[str, float]] = field(default_factory=list)


class FakeDriver(PlcDriver):
    """PlcDriver backed by a FakePlant instead of a socket"""

    def __init__(self, key, config, plant: FakePlant, **kwargs):
        super().__init__(key, config, **kwargs)
        self.plant = plant
        self._connected = False
        self.open_count = 0
        self.close_count = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def _open(self) -> None:
        if self.plant.refuse_connect:
            raise ConnectionRefusedError("connection refused")
        self._connected = True
        self.open_count += 1

    async def _close(self) -> None:
        if self._connected:
            self.close_count += 1
        self._connected = False

    async def _read_point(self, address: PointAddress) -> PointResult:
        self.plant.reads += 1
        if self.plant.gate is not None:
            await self.plant.gate.wait()
        if self.plant.link_down:
            raise ConnectionResetError("link down")
        if address.point_id in self.plant.point_errors:
            return PointResult.failure(self.plant.point_errors[address.point_id])
        return PointResult.success(self.plant.values.get(address.point_id, 0.0))

    async def _write_point(self, address: PointAddress, value: float) -> None:
        self.plant.writes.append((address.point_id, value))
        self.plant.values[address.point_id] = value


class FakeDriverFactory:
    """Driver factory for the registry; records every driver it builds"""

    def __init__(self):
        self.plants: dict[DeviceKey, FakePlant] = {}
        self.drivers: list[FakeDriver] = []

    def plant(self, key: DeviceKey) -> FakePlant:
        return self.plants.setdefault(key, FakePlant())

    def __call__(self, key: DeviceKey, config: ProtocolConfig, settings: EngineSettings) -> FakeDriver:
        driver = FakeDriver(
            key,
            config,
            self.plant(key),
            request_timeout=settings.request_timeout_s,
            connect_timeout=settings.connect_timeout_s,
        )
        self.drivers.append(driver)
        return driver

    def created_for(self, key: DeviceKey) -> list[FakeDriver]:
        return [d for d in self.drivers if d.key == key]


class FakeClock:
    """Settable server-local wall clock"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def settle(seconds: float = 0.05) -> None:
    """Let background loops run their pending iterations"""
    await asyncio.sleep(seconds)


async def worst_loop_gap(done: asyncio.Event, tick: float = 0.01) -> float:
    """Longest wake-up delay seen by a task sleeping `tick` seconds until `done`"""
    worst = 0.0
    last = time.monotonic()
    while not done.is_set():
        await asyncio.sleep(tick)
        now = time.monotonic()
        worst = max(worst, now - last)
        last = now
    return worst


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        db_path=tmp_path / "test.db",
        request_timeout_s=1.0,
        connect_timeout_s=1.0,
        idle_timeout_s=60.0,
        sweep_interval_s=3600.0,
        retention_interval_s=86400.0,
        devices_file=None,
    )


@pytest.fixture
def db(settings):
    return LocalDatabase(settings.db_path)


@pytest.fixture
def factory():
    return FakeDriverFactory()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 15, 9, 30, 0))


@pytest.fixture
def modbus_key():
    return DeviceKey("10.0.0.5", 502, Protocol.MODBUS)
