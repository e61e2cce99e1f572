"""
Driver Factory

Selects the driver class for a protocol once, when the driver is created.
"""

from ..common.config import DeviceKey, EngineSettings, Protocol, ProtocolConfig
from ..common.exceptions import ConfigError
from .base import PlcDriver
from .mc_client import McDriver
from .modbus_client import ModbusDriver
from .simulated import SimulatedDriver

DRIVER_CLASSES: dict[Protocol, type[PlcDriver]] = {
    Protocol.MC: McDriver,
    Protocol.MODBUS: ModbusDriver,
    Protocol.DEMO: SimulatedDriver,
}


def create_driver(
    key: DeviceKey,
    protocol_config: ProtocolConfig,
    settings: EngineSettings | None = None,
) -> PlcDriver:
    """
    Build a driver for a device key.

    Raises:
        ConfigError: protocol has no driver
    """
    if key.protocol != protocol_config.protocol:
        raise ConfigError(
            f"Device key {key} does not match protocol {protocol_config.protocol.value}"
        )

    driver_class = DRIVER_CLASSES.get(protocol_config.protocol)
    if driver_class is None:
        raise ConfigError(f"No driver for protocol {protocol_config.protocol}")

    settings = settings or EngineSettings()
    return driver_class(
        key,
        protocol_config,
        request_timeout=settings.request_timeout_s,
        connect_timeout=settings.connect_timeout_s,
    )
