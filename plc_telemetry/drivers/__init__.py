"""
Protocol Drivers

- addressing.py - Point identifier parsing
- base.py - PlcDriver interface and PointResult
- mc_client.py - MELSEC MC 3E binary driver
- modbus_client.py - Modbus TCP driver (pymodbus)
- simulated.py - In-memory demo controller
- factory.py - Driver selection by protocol
"""

from .addressing import PointAddress, parse_point, parse_points
from .base import PlcDriver, PointResult, with_timeout
from .factory import create_driver
from .mc_client import McDriver
from .modbus_client import ModbusDriver
from .simulated import SimulatedDriver

__all__ = [
    "PointAddress",
    "parse_point",
    "parse_points",
    "PlcDriver",
    "PointResult",
    "with_timeout",
    "create_driver",
    "McDriver",
    "ModbusDriver",
    "SimulatedDriver",
]
