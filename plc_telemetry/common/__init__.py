"""
Common Utilities

Shared modules used across drivers, services and storage:
- config.py - Configuration dataclasses and engine settings
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Interval scheduler
- timestamp.py - Calendar day helpers
"""

from .config import (
    AddressMapping,
    DeviceFile,
    DeviceKey,
    EngineSettings,
    HourlyEnergyRegistration,
    PollRegistration,
    Protocol,
    ProtocolConfig,
    load_protocol_config,
    load_registrations,
    load_registrations_file,
)
from .exceptions import (
    PlcTelemetryError,
    ConfigError,
    ValidationError,
    AddressError,
    DeviceError,
    CommunicationError,
    ProtocolError,
    WriteError,
    StorageError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    log_device_read,
    log_device_write,
    log_poll_failure,
)
from .scheduler import ScheduledLoop

__all__ = [
    # Config
    "AddressMapping",
    "DeviceFile",
    "DeviceKey",
    "EngineSettings",
    "HourlyEnergyRegistration",
    "PollRegistration",
    "Protocol",
    "ProtocolConfig",
    "load_protocol_config",
    "load_registrations",
    "load_registrations_file",
    # Exceptions
    "PlcTelemetryError",
    "ConfigError",
    "ValidationError",
    "AddressError",
    "DeviceError",
    "CommunicationError",
    "ProtocolError",
    "WriteError",
    "StorageError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "log_device_read",
    "log_device_write",
    "log_poll_failure",
    # Scheduling
    "ScheduledLoop",
]
