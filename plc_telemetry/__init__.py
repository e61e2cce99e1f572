"""
PLC Telemetry

Polling engine and time-series store for MELSEC MC-protocol and
Modbus TCP controllers.
"""

__version__ = "0.1.0"
