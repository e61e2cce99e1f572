"""
Services

- connection_registry.py - One driver per device key, idle sweep
- polling.py - Background polling, snapshots, statistics
- hourly_energy.py - Top-of-hour accumulator polling
- engine.py - Engine facade tying everything together
"""

from .connection_registry import ConnectionRegistry
from .engine import Engine, make_key
from .hourly_energy import HourlyEnergyService
from .polling import OFFLINE_THRESHOLD, PollingScheduler, PollingStatistics, Snapshot

__all__ = [
    "ConnectionRegistry",
    "Engine",
    "make_key",
    "HourlyEnergyService",
    "OFFLINE_THRESHOLD",
    "PollingScheduler",
    "PollingStatistics",
    "Snapshot",
]
