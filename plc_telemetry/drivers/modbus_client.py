"""
Modbus TCP Driver

Wrapper around pymodbus AsyncModbusTcpClient. D-register style point
identifiers are mapped to holding register offsets through the
configured AddressMapping.
"""

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusException

from ..common.exceptions import WriteError
from ..common.logging_setup import get_service_logger
from .addressing import PointAddress
from .base import PlcDriver, PointResult

logger = get_service_logger("drivers.modbus")


class ModbusDriver(PlcDriver):
    """
    Async Modbus TCP client.

    Handles:
    - FC03 read of one holding register per point
    - FC06 single register write
    - Unit id from ProtocolConfig.slave_id
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client: AsyncModbusTcpClient | None = None

    @property
    def slave_id(self) -> int:
        return self.config.slave_id

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.connected

    async def _open(self) -> None:
        self._client = AsyncModbusTcpClient(
            host=self.host,
            port=self.port,
            timeout=self.request_timeout,
            retries=0,
        )
        connected = await self._client.connect()
        if not connected:
            raise ConnectionRefusedError(f"Modbus connect to {self.host}:{self.port} failed")

    async def _close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    async def _read_point(self, address: PointAddress) -> PointResult:
        if self._client is None:
            raise ConnectionResetError("Modbus connection closed")

        try:
            response = await self._client.read_holding_registers(
                address=address.offset,
                count=address.count,
                device_id=self.slave_id,
            )
        except ConnectionException as e:
            raise ConnectionResetError(str(e))
        except ModbusException as e:
            return PointResult.failure(f"Modbus exception: {e}")

        if response.isError():
            return PointResult.failure(f"Modbus error: {response}")

        registers = tuple(response.registers)
        if not registers:
            return PointResult.failure("Empty Modbus response")

        logger.debug(
            f"Read {self.host}:{self.port} unit={self.slave_id} "
            f"reg={address.offset} -> {registers[0]}"
        )
        return PointResult.success(float(registers[0]), raw=registers)

    async def _write_point(self, address: PointAddress, value: float) -> None:
        if self._client is None:
            raise ConnectionResetError("Modbus connection closed")

        register_value = int(round(value))
        if not -32768 <= register_value <= 65535:
            raise WriteError(
                f"Value {value} does not fit a 16-bit register",
                device_key=str(self.key),
                point_id=address.point_id,
                value=value,
            )

        try:
            response = await self._client.write_register(
                address=address.offset,
                value=register_value & 0xFFFF,
                device_id=self.slave_id,
            )
        except ConnectionException as e:
            raise ConnectionResetError(str(e))
        except ModbusException as e:
            raise WriteError(
                f"Modbus exception: {e}",
                device_key=str(self.key),
                point_id=address.point_id,
                value=value,
            )

        if response.isError():
            raise WriteError(
                f"Write failed: {response}",
                device_key=str(self.key),
                point_id=address.point_id,
                value=value,
            )

        logger.debug(
            f"Write successful: {self.host}:{self.port} unit={self.slave_id} "
            f"reg={address.offset} value={register_value}"
        )
