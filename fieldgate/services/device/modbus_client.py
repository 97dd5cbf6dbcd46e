"""
Async Modbus Client

Wrapper around pymodbus for Modbus TCP and RTU-over-TCP gateway traffic.
Every request is bounded by asyncio.wait_for; transport failures are
retried with exponential backoff.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

from fieldgate.common.config import RegisterDataType
from fieldgate.common.exceptions import CommunicationError, ProtocolError, WriteError
from fieldgate.common.logging_setup import get_service_logger
from .calibration import decode_registers

logger = get_service_logger("device.modbus")


# Failure kinds reported in ReadResult.kind
KIND_TIMEOUT = "timeout"
KIND_CONNECTION = "connection"
KIND_EXCEPTION = "exception"  # device answered with a Modbus exception response
KIND_PROTOCOL = "protocol"


@dataclass
class ReadResult:
    """Result of a coil or register read operation"""
    success: bool
    value: float | int | None = None
    raw_registers: list[int] | None = None
    bits: list[bool] | None = None
    error: str | None = None
    kind: str | None = None
    exception_code: int | None = None
    elapsed_ms: float = 0.0

    @property
    def device_answered(self) -> bool:
        """True when any reply came back, including an exception response"""
        return self.success or self.kind == KIND_EXCEPTION


@dataclass
class DeviceInfoResult:
    """Result of a Read Device Identification (FC43 / MEI 14) request"""
    success: bool
    objects: dict[int, str] = field(default_factory=dict)
    error: str | None = None
    kind: str | None = None
    exception_code: int | None = None


class _ExceptionResponse(Exception):
    """Raised internally when the device returns an exception response"""

    def __init__(self, response: Any):
        self.response = response
        self.exception_code = getattr(response, "exception_code", None)
        super().__init__(str(response))


class ModbusClient:
    """
    Async Modbus TCP client.

    Handles:
    - Modbus TCP connections and RTU-over-TCP gateways (unit id per request)
    - Coil reads/writes (FC01, FC05, FC15)
    - Register reads (FC03, FC04) with data type conversion
    - Device identification (FC43 / MEI 14)
    """

    def __init__(
        self,
        host: str,
        port: int = 502,
        timeout: float = 5.0,
        retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay

        self._client: AsyncModbusTcpClient | None = None
        self._lock = asyncio.Lock()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    async def connect(self) -> bool:
        """Establish connection to Modbus device"""
        async with self._lock:
            if self._connected:
                return True

            try:
                # Retries are handled here, not inside pymodbus
                self._client = AsyncModbusTcpClient(
                    host=self.host,
                    port=self.port,
                    timeout=self.timeout,
                    retries=0,
                )

                await asyncio.wait_for(self._client.connect(), timeout=self.timeout)
                self._connected = bool(self._client.connected)

                if self._connected:
                    logger.debug(f"Connected to Modbus device at {self.endpoint}")
                else:
                    logger.warning(f"Failed to connect to Modbus device at {self.endpoint}")

                return self._connected

            except (asyncio.TimeoutError, OSError, ModbusException) as e:
                logger.error(f"Connection error to {self.endpoint}: {e}")
                self._connected = False
                return False

    async def disconnect(self) -> None:
        """Close connection"""
        async with self._lock:
            if self._client:
                self._client.close()
                self._client = None
            self._connected = False
            logger.debug(f"Disconnected from {self.endpoint}")

    async def _ensure_connected(self) -> bool:
        """Ensure connection is established"""
        if not self._connected:
            return await self.connect()

        # Check if still connected
        if self._client and not self._client.connected:
            self._connected = False
            return await self.connect()

        return True

    async def _request(
        self,
        description: str,
        call: Callable[[], Awaitable[Any]],
        retries: int | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Execute one Modbus request.

        Transport failures (not connected, timeout, connection dropped) are
        retried with exponential backoff. An exception response is returned
        by the device on purpose and is raised at once as _ExceptionResponse.

        Raises:
            CommunicationError: no usable reply after all attempts
            ProtocolError: malformed reply
            _ExceptionResponse: device answered with an exception code
        """
        attempts = max(1, self.retries if retries is None else retries)
        timeout = self.timeout if timeout is None else timeout
        last_error: Exception | None = None

        for attempt in range(attempts):
            if not await self._ensure_connected():
                last_error = CommunicationError(
                    f"Not connected to {self.endpoint}",
                    host=self.host,
                    port=self.port,
                )
            else:
                try:
                    response = await asyncio.wait_for(call(), timeout=timeout)
                except asyncio.TimeoutError:
                    last_error = CommunicationError(
                        f"{description} timed out after {timeout:.3g}s",
                        host=self.host,
                        port=self.port,
                        timed_out=True,
                    )
                except ConnectionException as e:
                    self._connected = False
                    last_error = CommunicationError(
                        f"{description}: connection lost: {e}",
                        host=self.host,
                        port=self.port,
                    )
                except ModbusIOException as e:
                    # pymodbus reports "no response received" as an IO error
                    last_error = CommunicationError(
                        f"{description}: no response: {e}",
                        host=self.host,
                        port=self.port,
                        timed_out=True,
                    )
                except ModbusException as e:
                    last_error = ProtocolError(f"{description}: {e}")
                except ValueError as e:
                    # Request rejected by pymodbus before sending
                    raise ProtocolError(f"{description}: invalid request: {e}")
                else:
                    if response is None:
                        last_error = ProtocolError(f"{description}: empty response")
                    elif response.isError():
                        raise _ExceptionResponse(response)
                    else:
                        return response

            if attempt < attempts - 1:
                delay = self.retry_delay * (2 ** attempt)
                logger.debug(
                    f"{description} failed, retrying in {delay:.2f}s "
                    f"({attempt + 1}/{attempts}): {last_error}"
                )
                await asyncio.sleep(delay)

        raise last_error

    async def _read(
        self,
        description: str,
        call: Callable[[], Awaitable[Any]],
        retries: int | None,
        timeout: float | None,
    ) -> tuple[Any, ReadResult | None, float]:
        """Run a read request, mapping failures to a failed ReadResult"""
        started = time.monotonic()
        try:
            response = await self._request(description, call, retries, timeout)
            return response, None, (time.monotonic() - started) * 1000
        except _ExceptionResponse as e:
            elapsed = (time.monotonic() - started) * 1000
            return None, ReadResult(
                success=False,
                error=f"Modbus error: {e}",
                kind=KIND_EXCEPTION,
                exception_code=e.exception_code,
                elapsed_ms=elapsed,
            ), elapsed
        except CommunicationError as e:
            elapsed = (time.monotonic() - started) * 1000
            kind = KIND_TIMEOUT if e.timed_out else KIND_CONNECTION
            return None, ReadResult(
                success=False, error=e.message, kind=kind, elapsed_ms=elapsed
            ), elapsed
        except ProtocolError as e:
            elapsed = (time.monotonic() - started) * 1000
            return None, ReadResult(
                success=False, error=e.message, kind=KIND_PROTOCOL, elapsed_ms=elapsed
            ), elapsed

    async def read_coils(
        self,
        address: int,
        count: int,
        slave_id: int = 1,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> ReadResult:
        """
        Read a contiguous block of coils (FC01).

        Returns:
            ReadResult with `bits` holding exactly `count` values
        """
        response, failed, elapsed = await self._read(
            f"read_coils {self.endpoint} slave={slave_id} addr={address} count={count}",
            lambda: self._client.read_coils(address=address, count=count, device_id=slave_id),
            retries,
            timeout,
        )
        if failed:
            return failed

        bits = list(response.bits)[:count]
        if len(bits) < count:
            return ReadResult(
                success=False,
                error=f"Short coil response: expected {count} bits, got {len(bits)}",
                kind=KIND_PROTOCOL,
                elapsed_ms=elapsed,
            )

        return ReadResult(success=True, bits=[bool(b) for b in bits], elapsed_ms=elapsed)

    async def read_holding_registers(
        self,
        address: int,
        count: int,
        slave_id: int = 1,
        datatype: RegisterDataType = RegisterDataType.UINT16,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> ReadResult:
        """
        Read holding registers with data type conversion.

        Args:
            address: Starting register address
            count: Number of registers to read
            slave_id: Modbus slave (unit) ID
            datatype: Data type for conversion
            retries: Attempts for this request (defaults to client setting)
            timeout: Per-attempt timeout in seconds

        Returns:
            ReadResult with converted value
        """
        response, failed, elapsed = await self._read(
            f"read_holding {self.endpoint} slave={slave_id} addr={address} count={count}",
            lambda: self._client.read_holding_registers(
                address=address, count=count, device_id=slave_id
            ),
            retries,
            timeout,
        )
        if failed:
            return failed
        return self._register_result(response.registers, datatype, elapsed)

    async def read_input_registers(
        self,
        address: int,
        count: int,
        slave_id: int = 1,
        datatype: RegisterDataType = RegisterDataType.UINT16,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> ReadResult:
        """Read input registers with data type conversion"""
        response, failed, elapsed = await self._read(
            f"read_input {self.endpoint} slave={slave_id} addr={address} count={count}",
            lambda: self._client.read_input_registers(
                address=address, count=count, device_id=slave_id
            ),
            retries,
            timeout,
        )
        if failed:
            return failed
        return self._register_result(response.registers, datatype, elapsed)

    async def read_discrete_inputs(
        self,
        address: int,
        count: int,
        slave_id: int = 1,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> ReadResult:
        """Read discrete inputs (FC02)"""
        response, failed, elapsed = await self._read(
            f"read_discrete {self.endpoint} slave={slave_id} addr={address} count={count}",
            lambda: self._client.read_discrete_inputs(
                address=address, count=count, device_id=slave_id
            ),
            retries,
            timeout,
        )
        if failed:
            return failed
        bits = [bool(b) for b in list(response.bits)[:count]]
        return ReadResult(success=True, bits=bits, value=int(bits[0]) if bits else None, elapsed_ms=elapsed)

    def _register_result(
        self,
        registers: list[int],
        datatype: RegisterDataType,
        elapsed: float,
    ) -> ReadResult:
        try:
            value = decode_registers(list(registers), datatype)
        except ValueError as e:
            return ReadResult(
                success=False,
                error=str(e),
                kind=KIND_PROTOCOL,
                raw_registers=list(registers),
                elapsed_ms=elapsed,
            )
        return ReadResult(
            success=True,
            value=value,
            raw_registers=list(registers),
            elapsed_ms=elapsed,
        )

    async def write_coil(
        self,
        address: int,
        value: bool,
        slave_id: int = 1,
        retries: int | None = None,
        timeout: float | None = None,
        fire_and_forget: bool = False,
    ) -> bool:
        """
        Write a single coil (FC05).

        With fire_and_forget the frame is sent once and a missing reply is
        not an error.

        Returns:
            True if the device acknowledged the write, False if the frame was
            sent but no reply was awaited successfully

        Raises:
            CommunicationError: could not send the frame / no reply
            WriteError: device rejected the write
        """
        return await self._write(
            f"write_coil {self.endpoint} slave={slave_id} addr={address} value={value}",
            lambda: self._client.write_coil(address=address, value=bool(value), device_id=slave_id),
            address,
            bool(value),
            retries,
            timeout,
            fire_and_forget,
        )

    async def write_coils(
        self,
        address: int,
        values: list[bool],
        slave_id: int = 1,
        retries: int | None = None,
        timeout: float | None = None,
        fire_and_forget: bool = False,
    ) -> bool:
        """Write a contiguous block of coils (FC15). See write_coil."""
        values = [bool(v) for v in values]
        return await self._write(
            f"write_coils {self.endpoint} slave={slave_id} addr={address} count={len(values)}",
            lambda: self._client.write_coils(address=address, values=values, device_id=slave_id),
            address,
            values,
            retries,
            timeout,
            fire_and_forget,
        )

    async def write_register(
        self,
        address: int,
        value: int,
        slave_id: int = 1,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Write a single holding register (FC06)"""
        return await self._write(
            f"write_register {self.endpoint} slave={slave_id} addr={address} value={value}",
            lambda: self._client.write_register(address=address, value=value, device_id=slave_id),
            address,
            value,
            retries,
            timeout,
            False,
        )

    async def _write(
        self,
        description: str,
        call: Callable[[], Awaitable[Any]],
        address: int,
        value: Any,
        retries: int | None,
        timeout: float | None,
        fire_and_forget: bool,
    ) -> bool:
        if fire_and_forget:
            retries = 1

        try:
            await self._request(description, call, retries, timeout)
        except _ExceptionResponse as e:
            raise WriteError(
                f"Write rejected by device (exception code {e.exception_code})",
                register=address,
                value=value,
            )
        except CommunicationError as e:
            if fire_and_forget and e.timed_out:
                # Frame went out on a live connection; the device never replies
                logger.debug(f"{description}: sent without reply")
                return False
            raise

        logger.debug(f"Write successful: {description}")
        return True

    async def read_device_information(
        self,
        slave_id: int = 1,
        read_code: int = 1,
        object_id: int = 0,
        timeout: float | None = None,
    ) -> DeviceInfoResult:
        """
        Read Device Identification (FC43 / MEI 14), basic category by default.

        Returns:
            DeviceInfoResult with object code -> decoded string
        """
        description = f"read_device_information {self.endpoint} slave={slave_id}"
        try:
            response = await self._request(
                description,
                lambda: self._client.read_device_information(
                    read_code=read_code, object_id=object_id, device_id=slave_id
                ),
                retries=1,
                timeout=timeout,
            )
        except _ExceptionResponse as e:
            return DeviceInfoResult(
                success=False,
                error=f"Modbus error: {e}",
                kind=KIND_EXCEPTION,
                exception_code=e.exception_code,
            )
        except CommunicationError as e:
            kind = KIND_TIMEOUT if e.timed_out else KIND_CONNECTION
            return DeviceInfoResult(success=False, error=e.message, kind=kind)
        except ProtocolError as e:
            return DeviceInfoResult(success=False, error=e.message, kind=KIND_PROTOCOL)

        objects = {}
        for code, raw in (getattr(response, "information", None) or {}).items():
            if isinstance(raw, list):
                raw = b"".join(raw)
            if isinstance(raw, bytes):
                text = raw.decode("ascii", errors="replace")
            else:
                text = str(raw)
            text = text.strip().rstrip("\x00").strip()
            if text:
                objects[int(code)] = text

        return DeviceInfoResult(success=True, objects=objects)
