"""
Point Address Resolution

Turns textual point identifiers ("D400", "M10", "X1F,2", "50") into
structured PointAddress values. Resolution happens once per point when a
driver is configured; drivers never re-parse strings on the read path.
"""

import re
from dataclasses import dataclass

from ..common.config import AddressMapping, Protocol
from ..common.exceptions import AddressError

MAX_REGISTER = 65535
MAX_MC_POINTS = 960  # MC 3E batch read limit (words)


@dataclass(frozen=True)
class McDevice:
    """MC protocol device class"""
    code: int      # binary device code
    is_bit: bool
    radix: int     # 16 for X/Y/B/W, 10 otherwise


MC_DEVICES: dict[str, McDevice] = {
    "D": McDevice(0xA8, False, 10),
    "W": McDevice(0xB4, False, 16),
    "R": McDevice(0xAF, False, 10),
    "ZR": McDevice(0xB0, False, 10),
    "M": McDevice(0x90, True, 10),
    "X": McDevice(0x9C, True, 16),
    "Y": McDevice(0x9D, True, 16),
    "B": McDevice(0xA0, True, 16),
    "L": McDevice(0x92, True, 10),
}

_MC_PATTERN = re.compile(r"^(ZR|[DWRMXYBL])([0-9A-F]+)(?:,(\d+))?$")
_D_PATTERN = re.compile(r"^D?(\d+)$")


@dataclass(frozen=True)
class PointAddress:
    """
    A resolved register address.

    Attributes:
        point_id: Identifier as registered (used as the result key)
        protocol: Protocol the address was resolved for
        device: Register class ("D", "M", "HR" for Modbus holding registers)
        offset: Numeric register offset after any transform
        count: Number of consecutive values to request
    """
    point_id: str
    protocol: Protocol
    device: str
    offset: int
    count: int = 1

    @property
    def is_bit(self) -> bool:
        mc = MC_DEVICES.get(self.device)
        return bool(mc and mc.is_bit)


def parse_mc_point(point_id: str) -> PointAddress:
    """
    Parse "<device><number>[,<count>]" for the MC protocol.

    A missing count is read as ",1".
    """
    text = point_id.strip().upper()
    match = _MC_PATTERN.match(text)
    if not match:
        raise AddressError(f"Invalid MC address '{point_id}'", point_id=point_id)

    device, number_text, count_text = match.groups()
    code = MC_DEVICES[device]
    try:
        number = int(number_text, code.radix)
    except ValueError:
        raise AddressError(
            f"Invalid {device} device number '{number_text}' in '{point_id}'",
            point_id=point_id,
        )

    count = int(count_text) if count_text else 1
    if not 1 <= count <= MAX_MC_POINTS:
        raise AddressError(f"Invalid point count {count} in '{point_id}'", point_id=point_id)
    if number > 0xFFFFFF:
        raise AddressError(f"Device number out of range in '{point_id}'", point_id=point_id)

    return PointAddress(point_id, Protocol.MC, device, number, count)


def parse_modbus_point(point_id: str, mapping: AddressMapping) -> PointAddress:
    """
    Parse "D<number>" or a bare number for Modbus TCP.

    Modbus offset = (D number - d_address_base) + modbus_offset
    e.g. d_address_base=400 maps D400 to 0, D401 to 1.
    """
    text = point_id.strip().upper()
    match = _D_PATTERN.match(text)
    if not match:
        raise AddressError(f"Invalid Modbus address '{point_id}'", point_id=point_id)

    number = int(match.group(1))
    offset = number - mapping.d_address_base + mapping.modbus_offset
    if not 0 <= offset <= MAX_REGISTER:
        raise AddressError(
            f"Address '{point_id}' maps to register {offset}, outside 0..{MAX_REGISTER} "
            f"(base={mapping.d_address_base}, offset={mapping.modbus_offset})",
            point_id=point_id,
        )

    return PointAddress(point_id, Protocol.MODBUS, "HR", offset)


def parse_demo_point(point_id: str) -> PointAddress:
    """Simulated memory accepts any identifier"""
    match = _D_PATTERN.match(point_id.strip().upper())
    offset = int(match.group(1)) if match else 0
    return PointAddress(point_id, Protocol.DEMO, "D", offset)


def parse_point(
    point_id: str,
    protocol: Protocol,
    mapping: AddressMapping | None = None,
) -> PointAddress:
    """
    Resolve a point identifier for a protocol.

    Raises:
        AddressError: if the identifier is not valid for the protocol
    """
    if not point_id or not point_id.strip():
        raise AddressError("Empty point identifier", point_id=point_id)

    if protocol == Protocol.MC:
        return parse_mc_point(point_id)
    if protocol == Protocol.MODBUS:
        return parse_modbus_point(point_id, mapping or AddressMapping())
    return parse_demo_point(point_id)


def parse_points(
    point_ids: list[str] | tuple[str, ...],
    protocol: Protocol,
    mapping: AddressMapping | None = None,
) -> list[PointAddress]:
    return [parse_point(p, protocol, mapping) for p in point_ids]
