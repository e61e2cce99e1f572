"""
Simulated Controller

In-memory register map that behaves like a small plant:
- D400..D470 (step 10): current temperatures with noise, D401..D471 set points
- D4000 voltage, D4002 current, D4024 active power, D4030 frequency
- D4032 forward active energy (Wh) with noise
- D6100 daily energy accumulator, grows on every read

Registers that were never written read as 0, like cleared PLC memory.
"""

import random

from ..common.logging_setup import get_service_logger
from .addressing import PointAddress
from .base import PlcDriver, PointResult

logger = get_service_logger("drivers.simulated")

ENERGY_POINT = "D4032"
ACCUMULATOR_POINT = "D6100"


def _is_temperature(point_id: str) -> bool:
    if not point_id.startswith("D") or not point_id[1:].isdigit():
        return False
    number = int(point_id[1:])
    return 400 <= number <= 470 and number % 10 == 0


class SimulatedDriver(PlcDriver):
    """Demo driver; never touches the network"""

    def __init__(self, *args, seed: int | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._rng = random.Random(seed)
        self._connected = False
        self.memory: dict[str, float] = {}
        self._seed_memory()

    def _seed_memory(self) -> None:
        for i in range(0, 71, 10):
            self.memory[f"D{400 + i}"] = round(30 + self._rng.random() * 10, 1)
            self.memory[f"D{401 + i}"] = 40.0

        self.memory["D4000"] = 220.0
        self.memory["D4002"] = 10.0
        self.memory["D4024"] = 2200.0
        self.memory["D4030"] = 60.0
        self.memory[ENERGY_POINT] = 15000.0
        self.memory[ACCUMULATOR_POINT] = 1000.0

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def _open(self) -> None:
        self._connected = True

    async def _close(self) -> None:
        self._connected = False

    async def _read_point(self, address: PointAddress) -> PointResult:
        name = address.point_id.strip().upper()
        value = self.memory.get(name, 0.0)

        if _is_temperature(name):
            value = round(value + self._rng.random() - 0.5, 1)
        elif name == ENERGY_POINT:
            value = float(round(value + (self._rng.random() - 0.5) * 10))
        elif name == ACCUMULATOR_POINT:
            value = float(round(value + 500 + self._rng.random() * 1000))

        if name in self.memory:
            self.memory[name] = value
        return PointResult.success(value)

    async def _write_point(self, address: PointAddress, value: float) -> None:
        name = address.point_id.strip().upper()
        self.memory[name] = float(value)
        logger.debug(f"Simulated write {name} = {value}")
