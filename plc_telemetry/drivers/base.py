"""
Protocol Driver Interface

Every controller protocol implements PlcDriver. Reads return one tagged
PointResult per requested point, so a failed point is never confused
with a measured zero.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, TypeVar

from ..common.config import DeviceKey, Protocol, ProtocolConfig
from ..common.exceptions import AddressError, CommunicationError, WriteError
from ..common.logging_setup import get_service_logger, log_device_read, log_device_write
from .addressing import PointAddress, parse_point

logger = get_service_logger("drivers")

T = TypeVar("T")

DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 5.0


@dataclass(frozen=True)
class PointResult:
    """Outcome of reading one point: a value or an error, never both"""
    ok: bool
    value: float | None = None
    error: str | None = None
    raw: tuple[int, ...] = ()

    @classmethod
    def success(cls, value: float, raw: tuple[int, ...] = ()) -> "PointResult":
        return cls(ok=True, value=value, raw=raw)

    @classmethod
    def failure(cls, error: str) -> "PointResult":
        return cls(ok=False, error=error)

    def value_or(self, default: float | None = None) -> float | None:
        return self.value if self.ok else default


async def with_timeout(
    awaitable: Awaitable[T],
    seconds: float,
    what: str,
    device_key: str | None = None,
) -> T:
    """
    Race an operation against a timer.

    Raises:
        CommunicationError: if the operation does not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise CommunicationError(f"{what} timeout after {seconds:g}s", device_key=device_key)


class PlcDriver(ABC):
    """
    Base class for protocol drivers.

    Subclasses implement the transport (_open, _close) and a single-point
    round trip (_read_point, _write_point). The base class handles:
    - Lazy connect on first read/write
    - Address resolution cached per point identifier
    - One request at a time on the connection
    - Request timeouts
    """

    def __init__(
        self,
        key: DeviceKey,
        config: ProtocolConfig,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        self.key = key
        self.config = config
        self.request_timeout = config.timeout_s or request_timeout
        self.connect_timeout = connect_timeout

        self._addresses: dict[str, PointAddress] = {}
        self._io_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()

    @property
    def protocol(self) -> Protocol:
        return self.config.protocol

    @property
    def host(self) -> str:
        return self.key.host

    @property
    def port(self) -> int:
        return self.key.port

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def _open(self) -> None:
        """Open the transport. Raise OSError on failure."""

    @abstractmethod
    async def _close(self) -> None:
        """Close the transport. Must not raise."""

    @abstractmethod
    async def _read_point(self, address: PointAddress) -> PointResult:
        """One round trip for one point. Transport errors propagate as OSError."""

    @abstractmethod
    async def _write_point(self, address: PointAddress, value: float) -> None:
        """One single-register write. Raise WriteError if rejected."""

    def resolve(self, point_id: str) -> PointAddress:
        """Resolve (and cache) the register address of a point"""
        address = self._addresses.get(point_id)
        if address is None:
            address = parse_point(point_id, self.protocol, self.config.address_mapping)
            self._addresses[point_id] = address
        return address

    async def connect(self) -> None:
        """
        Establish the transport. No-op when already connected.

        Raises:
            CommunicationError: on transport failure or timeout
        """
        async with self._connect_lock:
            if self.is_connected:
                return
            try:
                await asyncio.wait_for(self._open(), timeout=self.connect_timeout)
                reason = None
            except asyncio.TimeoutError:
                reason = f"timeout after {self.connect_timeout:g}s"
            except OSError as e:
                reason = str(e) or type(e).__name__

            if reason is not None or not self.is_connected:
                await self._close()
                raise CommunicationError(
                    f"Cannot connect to {self.host}:{self.port}: {reason or 'not connected'}",
                    device_key=str(self.key),
                    host=self.host,
                    port=self.port,
                )
            logger.info(f"Connected to {self.protocol.value} device at {self.host}:{self.port}")

    async def disconnect(self) -> None:
        """Tear down the transport. No-op when already disconnected."""
        async with self._connect_lock:
            if not self.is_connected:
                return
            await self._close()
            logger.info(f"Disconnected from {self.host}:{self.port}")

    async def read(self, points: list[str] | tuple[str, ...]) -> dict[str, PointResult]:
        """
        Read each point with one round trip.

        Unresolvable points and rejected requests become failed results.
        A transport failure aborts the whole read.

        Raises:
            CommunicationError: connection lost, refused or timed out
        """
        results: dict[str, PointResult] = {}
        pending: list[PointAddress] = []
        for point_id in points:
            try:
                pending.append(self.resolve(point_id))
            except AddressError as e:
                results[point_id] = PointResult.failure(e.message)

        if pending:
            await self.connect()

        for address in pending:
            result = await self._request(self._read_point(address), f"Read {address.point_id}")
            results[address.point_id] = result
            if not result.ok:
                log_device_read(logger.logger, str(self.key), address.point_id, None, False, result.error)

        # Preserve request order
        return {p: results[p] for p in points if p in results}

    async def write(self, point_id: str, value: float) -> None:
        """
        Write a single register.

        Raises:
            AddressError: unresolvable point
            CommunicationError: transport failure or timeout
            WriteError: controller rejected the write
        """
        address = self.resolve(point_id)
        await self.connect()

        try:
            await self._request(self._write_point(address, value), f"Write {point_id}")
        except (CommunicationError, WriteError):
            log_device_write(logger.logger, str(self.key), point_id, value, success=False)
            raise

        log_device_write(logger.logger, str(self.key), point_id, value)

    async def _request(self, operation: Awaitable[T], what: str) -> T:
        """Run one round trip under the connection lock and request timeout"""
        async with self._io_lock:
            try:
                return await with_timeout(operation, self.request_timeout, what, str(self.key))
            except CommunicationError:
                # Connection state is unknown after a timeout
                await self._close()
                raise
            except (OSError, asyncio.IncompleteReadError) as e:
                await self._close()
                raise CommunicationError(
                    f"{what} failed: {str(e) or type(e).__name__}",
                    device_key=str(self.key),
                    host=self.host,
                    port=self.port,
                )

    def describe(self) -> dict[str, Any]:
        return {
            "device_key": str(self.key),
            "protocol": self.protocol.value,
            "host": self.host,
            "port": self.port,
            "connected": self.is_connected,
            "resolved_points": len(self._addresses),
        }
