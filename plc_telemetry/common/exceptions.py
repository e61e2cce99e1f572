"""
Custom Exception Classes for PLC Telemetry

Hierarchical exception structure for error handling across the
drivers, services and storage layers.
"""


class PlcTelemetryError(Exception):
    """Base exception for all engine errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(PlcTelemetryError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(f"Config Error: {message}", recoverable)


class ValidationError(ConfigError):
    """Invalid registration or query arguments, rejected synchronously"""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message, recoverable=False)


class AddressError(ValidationError):
    """Point identifier could not be resolved to a register"""

    def __init__(self, message: str, point_id: str | None = None):
        self.point_id = point_id
        super().__init__(message, field="point")


class DeviceError(PlcTelemetryError):
    """Device communication errors"""

    def __init__(
        self,
        message: str,
        device_key: str | None = None,
        recoverable: bool = True,
    ):
        self.device_key = device_key
        super().__init__(f"Device Error: {message}", recoverable)


class CommunicationError(DeviceError):
    """Transport or timeout failure talking to a controller"""

    def __init__(
        self,
        message: str,
        device_key: str | None = None,
        host: str | None = None,
        port: int | None = None,
    ):
        self.host = host
        self.port = port
        super().__init__(message, device_key, recoverable=True)


class ProtocolError(DeviceError):
    """Controller rejected a request or answered with a malformed frame"""

    def __init__(
        self,
        message: str,
        device_key: str | None = None,
        point_id: str | None = None,
        code: int | None = None,
    ):
        self.point_id = point_id
        self.code = code
        super().__init__(message, device_key, recoverable=True)


class WriteError(ProtocolError):
    """Single-register write was rejected"""

    def __init__(
        self,
        message: str,
        device_key: str | None = None,
        point_id: str | None = None,
        value: float | None = None,
        code: int | None = None,
    ):
        self.value = value
        super().__init__(message, device_key, point_id, code)


class StorageError(PlcTelemetryError):
    """Local database I/O failure"""

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(f"Storage Error: {message}", recoverable=True)
