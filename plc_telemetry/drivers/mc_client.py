"""
MELSEC MC Protocol Driver (3E frame, binary)

Batch read (0x0401) and batch write (0x1401) of word and bit devices
over a plain TCP stream. One request is outstanding per connection.

Request layout (little-endian fields):
    50 00        subheader
    00           network number
    FF           PC number
    FF 03        request destination module I/O (0x03FF)
    00           station number
    LL LL        request data length (from monitoring timer to end)
    10 00        monitoring timer (0x0010 = 4s in 250ms units)
    CC CC        command
    SS SS        subcommand (0x0000 word units, 0x0001 bit units)
    NN NN NN     head device number
    DC           device code
    PP PP        number of device points
    ...          write data

Response layout:
    D0 00 | network | PC | I/O (2) | station | length (2) | end code (2) | data
"""

import asyncio
import struct

from ..common.exceptions import ProtocolError, WriteError
from ..common.logging_setup import get_service_logger
from .addressing import MC_DEVICES, PointAddress
from .base import PlcDriver, PointResult

logger = get_service_logger("drivers.mc")

REQUEST_SUBHEADER = 0x5000
RESPONSE_SUBHEADER = 0xD000
NETWORK_NO = 0x00
PC_NO = 0xFF
MODULE_IO = 0x03FF
STATION_NO = 0x00
MONITORING_TIMER = 0x0010

CMD_BATCH_READ = 0x0401
CMD_BATCH_WRITE = 0x1401
SUB_WORD = 0x0000
SUB_BIT = 0x0001

RESPONSE_HEADER_SIZE = 9  # subheader .. data length


def _access_route() -> bytes:
    return struct.pack("<BBHB", NETWORK_NO, PC_NO, MODULE_IO, STATION_NO)


def _device_field(address: PointAddress) -> bytes:
    """Head device number (3 bytes LE), device code, point count"""
    code = MC_DEVICES[address.device].code
    return (
        address.offset.to_bytes(3, "little")
        + bytes([code])
        + struct.pack("<H", address.count)
    )


def _frame(command: int, subcommand: int, body: bytes) -> bytes:
    payload = struct.pack("<HHH", MONITORING_TIMER, command, subcommand) + body
    return (
        struct.pack(">H", REQUEST_SUBHEADER)
        + _access_route()
        + struct.pack("<H", len(payload))
        + payload
    )


def build_read_request(address: PointAddress) -> bytes:
    """Batch read of address.count points starting at the head device"""
    subcommand = SUB_BIT if address.is_bit else SUB_WORD
    return _frame(CMD_BATCH_READ, subcommand, _device_field(address))


def build_write_request(address: PointAddress, value: float) -> bytes:
    """Batch write of a single point"""
    single = PointAddress(address.point_id, address.protocol, address.device, address.offset, 1)
    if address.is_bit:
        # One bit per nibble, high nibble first
        data = bytes([0x10 if value else 0x00])
        return _frame(CMD_BATCH_WRITE, SUB_BIT, _device_field(single) + data)

    word = int(round(value))
    if not -32768 <= word <= 65535:
        raise WriteError(
            f"Value {value} does not fit a 16-bit register",
            point_id=address.point_id,
            value=value,
        )
    data = struct.pack("<H", word & 0xFFFF)
    return _frame(CMD_BATCH_WRITE, SUB_WORD, _device_field(single) + data)


def parse_response_header(header: bytes) -> int:
    """
    Validate the fixed response header and return the data length.

    Raises:
        ProtocolError: wrong size or subheader
    """
    if len(header) != RESPONSE_HEADER_SIZE:
        raise ProtocolError(f"Short MC response header ({len(header)} bytes)")
    subheader = struct.unpack(">H", header[0:2])[0]
    if subheader != RESPONSE_SUBHEADER:
        raise ProtocolError(f"Unexpected MC response subheader 0x{subheader:04X}")
    return struct.unpack("<H", header[7:9])[0]


def split_end_code(body: bytes) -> tuple[int, bytes]:
    """Separate the end code from the response data"""
    if len(body) < 2:
        raise ProtocolError("MC response missing end code")
    return struct.unpack("<H", body[0:2])[0], body[2:]


def decode_words(data: bytes, count: int) -> tuple[int, ...]:
    """Signed 16-bit words"""
    if len(data) < count * 2:
        raise ProtocolError(f"Expected {count * 2} data bytes, got {len(data)}")
    return struct.unpack(f"<{count}h", data[: count * 2])


def decode_bits(data: bytes, count: int) -> tuple[int, ...]:
    """Bit units: two points per byte, high nibble first"""
    if len(data) < (count + 1) // 2:
        raise ProtocolError(f"Expected {(count + 1) // 2} data bytes, got {len(data)}")
    bits = []
    for i in range(count):
        byte = data[i // 2]
        nibble = (byte >> 4) if i % 2 == 0 else (byte & 0x0F)
        bits.append(1 if nibble else 0)
    return tuple(bits)


class McDriver(PlcDriver):
    """
    Mitsubishi MC protocol client.

    Features:
    - 3E binary frames over asyncio streams
    - Word (D, W, R, ZR) and bit (M, X, Y, B, L) devices
    - Non-zero end codes reported per point, not as transport errors
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def _open(self) -> None:
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)

    async def _close(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug(f"Close of {self.host}:{self.port} reported: {e}")

    async def _round_trip(self, request: bytes) -> tuple[int, bytes]:
        if self._reader is None or self._writer is None:
            raise ConnectionResetError("MC connection closed")

        self._writer.write(request)
        await self._writer.drain()

        header = await self._reader.readexactly(RESPONSE_HEADER_SIZE)
        try:
            length = parse_response_header(header)
        except ProtocolError:
            # Stream is out of sync; start over on the next request
            await self._close()
            raise
        body = await self._reader.readexactly(length)
        return split_end_code(body)

    async def _read_point(self, address: PointAddress) -> PointResult:
        try:
            end_code, data = await self._round_trip(build_read_request(address))
        except ProtocolError as e:
            return PointResult.failure(e.message)
        if end_code != 0:
            return PointResult.failure(f"MC end code 0x{end_code:04X}")

        try:
            if address.is_bit:
                values = decode_bits(data, address.count)
            else:
                values = decode_words(data, address.count)
        except ProtocolError as e:
            return PointResult.failure(e.message)

        return PointResult.success(float(values[0]), raw=values)

    async def _write_point(self, address: PointAddress, value: float) -> None:
        request = build_write_request(address, value)
        end_code, _ = await self._round_trip(request)
        if end_code != 0:
            raise WriteError(
                f"MC write rejected with end code 0x{end_code:04X}",
                device_key=str(self.key),
                point_id=address.point_id,
                value=value,
                code=end_code,
            )
