"""
Configuration Dataclasses

Type-safe configuration structures for the polling engine.
Runtime settings come from the environment (PLC_TELEMETRY_*),
device registrations from a YAML document.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigError, ValidationError

DEFAULT_DB_PATH = Path("data/energy.db")
DEFAULT_ENERGY_POINT = "D6100"
DEFAULT_PORT = 502
DEMO_HOST = "demo"


class Protocol(str, Enum):
    """Supported controller protocols"""
    MC = "mc"          # MELSEC MC protocol, 3E binary frame
    MODBUS = "modbus"  # Modbus TCP
    DEMO = "demo"      # In-memory simulated controller


@dataclass(frozen=True)
class AddressMapping:
    """
    Linear transform from D-register numbers to Modbus register offsets.

    offset = number - d_address_base + modbus_offset
    """
    d_address_base: int = 0
    modbus_offset: int = 0


@dataclass(frozen=True)
class ProtocolConfig:
    """How to talk to one controller"""
    protocol: Protocol = Protocol.MC
    slave_id: int = 1
    address_mapping: AddressMapping = field(default_factory=AddressMapping)
    timeout_s: float | None = None  # None = use EngineSettings.request_timeout_s

    @property
    def simulated(self) -> bool:
        return self.protocol == Protocol.DEMO


@dataclass(frozen=True)
class DeviceKey:
    """Identifies one physical link: host:port qualified by protocol"""
    host: str
    port: int
    protocol: Protocol = Protocol.MC

    def __str__(self) -> str:
        return f"{self.host}:{self.port}/{self.protocol.value}"

    @classmethod
    def parse(cls, text: str) -> "DeviceKey":
        """Parse "host:port[/protocol]" back into a key"""
        protocol = Protocol.MC
        address = text
        if "/" in text:
            address, proto_text = text.rsplit("/", 1)
            try:
                protocol = Protocol(proto_text)
            except ValueError:
                raise ValidationError(f"Unknown protocol '{proto_text}'", field="protocol")

        host, sep, port_text = address.rpartition(":")
        if not sep or not host:
            raise ValidationError(f"Invalid device key '{text}'", field="device_key")
        try:
            port = int(port_text)
        except ValueError:
            raise ValidationError(f"Invalid port in device key '{text}'", field="port")
        return cls(host=host, port=port, protocol=protocol)


@dataclass(frozen=True)
class PollRegistration:
    """Immutable polling request for one device key"""
    key: DeviceKey
    points: tuple[str, ...]
    interval_ms: int
    protocol_config: ProtocolConfig

    @property
    def simulated(self) -> bool:
        return self.protocol_config.simulated

    @property
    def interval_s(self) -> float:
        return self.interval_ms / 1000.0

    @classmethod
    def create(
        cls,
        host: str | None,
        port: int | None,
        points: list[str] | tuple[str, ...],
        interval_ms: int,
        protocol_config: ProtocolConfig,
    ) -> "PollRegistration":
        """
        Build and validate a registration.

        Raises:
            ValidationError: missing host/port, empty point set or bad interval
        """
        if protocol_config.simulated:
            host = host or DEMO_HOST
            port = port or 0
        if not host:
            raise ValidationError("Host is required", field="host")
        if not protocol_config.simulated and (port is None or not 0 < int(port) <= 65535):
            raise ValidationError(f"Invalid port: {port}", field="port")

        # Keep first occurrence order, drop duplicates and blanks
        unique = tuple(dict.fromkeys(p.strip() for p in points if p and p.strip()))
        if not unique:
            raise ValidationError("At least one point is required", field="points")
        if interval_ms is None or int(interval_ms) <= 0:
            raise ValidationError(f"Invalid interval: {interval_ms}", field="interval_ms")

        key = DeviceKey(host=host, port=int(port), protocol=protocol_config.protocol)
        return cls(
            key=key,
            points=unique,
            interval_ms=int(interval_ms),
            protocol_config=protocol_config,
        )


@dataclass(frozen=True)
class HourlyEnergyRegistration:
    """Hourly accumulation polling for one device"""
    key: DeviceKey
    protocol_config: ProtocolConfig
    point: str = DEFAULT_ENERGY_POINT


@dataclass
class DeviceFile:
    """Contents of the startup devices YAML file"""
    polling: list[PollRegistration] = field(default_factory=list)
    hourly_energy: list[HourlyEnergyRegistration] = field(default_factory=list)


class EngineSettings(BaseSettings):
    """
    Engine runtime settings loaded from environment variables.

    Every field can be overridden with PLC_TELEMETRY_<FIELD>, e.g.
    PLC_TELEMETRY_DB_PATH=/var/lib/plc/energy.db
    """
    db_path: Path = DEFAULT_DB_PATH
    request_timeout_s: float = 10.0
    connect_timeout_s: float = 5.0
    idle_timeout_s: float = 300.0
    sweep_interval_s: float = 60.0
    history_limit: int = 20
    retention_days: int = 7
    retention_interval_s: float = 86400.0
    all_zero_is_failure: bool = True
    devices_file: Path | None = None

    model_config = SettingsConfigDict(
        env_prefix="PLC_TELEMETRY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def load_protocol_config(data: dict) -> ProtocolConfig:
    """Load ProtocolConfig from a dictionary (YAML/JSON body)"""
    try:
        protocol = Protocol(data.get("protocol", "mc"))
    except ValueError:
        raise ValidationError(f"Unknown protocol '{data.get('protocol')}'", field="protocol")

    mapping_data = data.get("address_mapping") or {}
    mapping = AddressMapping(
        d_address_base=int(mapping_data.get("d_address_base", 0)),
        modbus_offset=int(mapping_data.get("modbus_offset", 0)),
    )

    return ProtocolConfig(
        protocol=protocol,
        slave_id=int(data.get("slave_id", 1)),
        address_mapping=mapping,
        timeout_s=data.get("timeout_s"),
    )


def load_registrations(data: dict[str, Any]) -> DeviceFile:
    """Load startup registrations from a dictionary (e.g., parsed YAML)"""
    polling = []
    for d in data.get("devices", []) or []:
        protocol_config = load_protocol_config(d)
        polling.append(PollRegistration.create(
            host=d.get("host"),
            port=d.get("port", None if protocol_config.simulated else DEFAULT_PORT),
            points=d.get("points", []),
            interval_ms=d.get("interval_ms", 2000),
            protocol_config=protocol_config,
        ))

    hourly = []
    for h in data.get("hourly_energy", []) or []:
        protocol_config = load_protocol_config(h)
        host = h.get("host") or (DEMO_HOST if protocol_config.simulated else None)
        if not host:
            raise ValidationError("Host is required", field="host")
        hourly.append(HourlyEnergyRegistration(
            key=DeviceKey(
                host=host,
                port=int(h.get("port", 0 if protocol_config.simulated else DEFAULT_PORT)),
                protocol=protocol_config.protocol,
            ),
            protocol_config=protocol_config,
            point=h.get("point", DEFAULT_ENERGY_POINT),
        ))

    return DeviceFile(polling=polling, hourly_energy=hourly)


def load_registrations_file(path: Path) -> DeviceFile:
    """Read and parse the devices YAML file"""
    if not path.exists():
        raise ConfigError(f"Devices file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Devices file {path} must contain a mapping")

    return load_registrations(data)
