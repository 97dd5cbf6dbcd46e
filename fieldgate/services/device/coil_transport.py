"""
Coil Transports

Two ways of driving the coils of one piece of equipment:

- NormalCoilTransport: reads come from the device, writes are acknowledged
  and optionally verified by reading the coils back.
- WriteOnlyCoilTransport: for devices that cannot reply. Reads come from
  the command cache, writes are sent once without waiting for confirmation.

A transport is chosen once per control session (see create_transport).
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Mapping

from fieldgate.common.exceptions import (
    CommunicationError,
    DeviceError,
    ProtocolError,
    ValidationError,
    WriteError,
)
from fieldgate.common.logging_setup import get_service_logger
from fieldgate.services.registers.mapping import CoilChannel
from .command_cache import CommandCache
from .connection_pool import ConnectionPool
from .modbus_client import KIND_EXCEPTION, KIND_PROTOCOL, ModbusClient, ReadResult

logger = get_service_logger("device.coils")


# Largest coil counts allowed in one request
MAX_READ_COILS = 2000  # FC01
MAX_WRITE_COILS = 1968  # FC15


def coil_span(channels: list[CoilChannel], limit: int | None = None) -> tuple[int, int]:
    """
    (start address, quantity) of the contiguous range covering all channels.

    Raises:
        ValidationError: the range needs more than `limit` coils
    """
    addresses = [c.address for c in channels]
    start = min(addresses)
    quantity = max(addresses) - start + 1
    if limit is not None and quantity > limit:
        raise ValidationError(
            f"Coil range {start}-{start + quantity - 1} spans {quantity} coils, "
            f"more than the {limit} allowed in one request"
        )
    return start, quantity


def read_failure(
    result: ReadResult,
    equipment_id: int | str | None,
    equipment_name: str | None,
    host: str,
    port: int,
) -> DeviceError:
    """Exception describing a failed ReadResult"""
    if result.kind in (KIND_EXCEPTION, KIND_PROTOCOL):
        return ProtocolError(
            result.error or "Invalid response",
            equipment_id=equipment_id,
            equipment_name=equipment_name,
            exception_code=result.exception_code,
        )
    return CommunicationError(
        result.error or "No response",
        equipment_id=equipment_id,
        equipment_name=equipment_name,
        host=host,
        port=port,
        timed_out=result.kind == "timeout",
    )


class CoilTransport(ABC):
    """Coil I/O for one piece of equipment"""

    #: whether states reported by this transport were confirmed by the device
    confirmed: bool = True

    def __init__(
        self,
        pool: ConnectionPool,
        host: str,
        port: int,
        slave_id: int,
        channels: list[CoilChannel],
        equipment_id: int | str | None = None,
        equipment_name: str | None = None,
    ):
        self._pool = pool
        self.host = host
        self.port = port
        self.slave_id = slave_id
        self.channels = list(channels)
        self.equipment_id = equipment_id
        self.equipment_name = equipment_name or f"{host}:{port}/{slave_id}"

    async def _client(self) -> tuple[ModbusClient, asyncio.Lock]:
        return await self._pool.get_connection(self.host, self.port)

    def _attach(self, error: DeviceError) -> DeviceError:
        if error.equipment_id is None:
            error.equipment_id = self.equipment_id
        if error.equipment_name is None:
            error.equipment_name = self.equipment_name
        return error

    @abstractmethod
    async def read_all(self) -> dict[int, bool]:
        """Current state of every channel"""

    @abstractmethod
    async def write_one(self, address: int, value: bool) -> dict[int, bool]:
        """Write one coil. Returns the channel states it changed."""

    @abstractmethod
    async def write_all(self, value: bool) -> dict[int, bool]:
        """Write every coil in the channel span. Returns the channel states it changed."""


class NormalCoilTransport(CoilTransport):
    """
    Reads and writes against a device that answers.

    Writes are retried by the client. With verify enabled, the written
    coils are read back and compared.
    """

    confirmed = True

    VERIFY_DELAY_MS = 50

    def __init__(self, *args, verify: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.verify = verify

    async def read_all(self) -> dict[int, bool]:
        if not self.channels:
            return {}

        start, quantity = coil_span(self.channels, MAX_READ_COILS)
        client, lock = await self._client()
        async with lock:
            result = await client.read_coils(start, quantity, slave_id=self.slave_id)

        if not result.success:
            raise read_failure(
                result, self.equipment_id, self.equipment_name, self.host, self.port
            )

        return {c.address: result.bits[c.address - start] for c in self.channels}

    async def write_one(self, address: int, value: bool) -> dict[int, bool]:
        client, lock = await self._client()
        async with lock:
            try:
                await client.write_coil(address, value, slave_id=self.slave_id)
                if self.verify:
                    await self._verify(client, address, [value])
            except DeviceError as e:
                raise self._attach(e)

        return {address: bool(value)}

    async def write_all(self, value: bool) -> dict[int, bool]:
        start, quantity = coil_span(self.channels, MAX_WRITE_COILS)
        values = [bool(value)] * quantity

        client, lock = await self._client()
        async with lock:
            try:
                await client.write_coils(start, values, slave_id=self.slave_id)
                if self.verify:
                    await self._verify(client, start, values)
            except DeviceError as e:
                raise self._attach(e)

        return {c.address: bool(value) for c in self.channels}

    async def _verify(self, client: ModbusClient, start: int, expected: list[bool]) -> None:
        """Read back written coils. Raises WriteError on mismatch."""
        await asyncio.sleep(self.VERIFY_DELAY_MS / 1000)

        result = await client.read_coils(start, len(expected), slave_id=self.slave_id)
        if not result.success:
            # The write itself was acknowledged
            logger.warning(
                f"Write verification read failed for {self.equipment_name} "
                f"coil={start}: {result.error}"
            )
            return

        if result.bits != expected:
            logger.warning(
                f"Write verification failed for {self.equipment_name} "
                f"coil={start}: wrote {expected}, read {result.bits}"
            )
            raise WriteError(
                f"Command not taken: expected {expected}, got {result.bits}",
                register=start,
                value=expected if len(expected) > 1 else expected[0],
            )


class WriteOnlyCoilTransport(CoilTransport):
    """
    Coil control for devices that cannot reply.

    State is the last commanded vector in the shared command cache. Frames
    are sent once; a missing reply is expected and not an error.
    """

    confirmed = False

    def __init__(self, *args, cache: CommandCache, **kwargs):
        super().__init__(*args, **kwargs)
        self._cache = cache

    def _cache_key(self) -> int | str:
        if self.equipment_id is not None:
            return self.equipment_id
        return f"{self.host}:{self.port}/{self.slave_id}"

    async def read_all(self) -> dict[int, bool]:
        cached: Mapping[int, bool] = self._cache.get(self._cache_key()) or {}
        return {c.address: bool(cached.get(c.address, False)) for c in self.channels}

    async def write_one(self, address: int, value: bool) -> dict[int, bool]:
        client, lock = await self._client()
        async with lock:
            try:
                await client.write_coil(
                    address, value, slave_id=self.slave_id, fire_and_forget=True
                )
            except DeviceError as e:
                raise self._attach(e)

        changes = {address: bool(value)}
        await self._cache.apply(self._cache_key(), changes)
        return changes

    async def write_all(self, value: bool) -> dict[int, bool]:
        start, quantity = coil_span(self.channels, MAX_WRITE_COILS)

        client, lock = await self._client()
        async with lock:
            try:
                await client.write_coils(
                    start, [bool(value)] * quantity, slave_id=self.slave_id, fire_and_forget=True
                )
            except DeviceError as e:
                raise self._attach(e)

        changes = {c.address: bool(value) for c in self.channels}
        await self._cache.apply(self._cache_key(), changes)
        return changes


def create_transport(
    write_only: bool,
    pool: ConnectionPool,
    cache: CommandCache,
    host: str,
    port: int,
    slave_id: int,
    channels: list[CoilChannel],
    equipment_id: int | str | None = None,
    equipment_name: str | None = None,
    verify: bool = True,
) -> CoilTransport:
    """Pick the transport variant for a device"""
    common = dict(
        pool=pool,
        host=host,
        port=port,
        slave_id=slave_id,
        channels=channels,
        equipment_id=equipment_id,
        equipment_name=equipment_name,
    )
    if write_only:
        return WriteOnlyCoilTransport(cache=cache, **common)
    return NormalCoilTransport(verify=verify, **common)
