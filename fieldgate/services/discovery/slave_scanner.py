"""
Slave Discovery Scanner

Probes a range of unit ids behind one Modbus TCP gateway to find the RTU
devices attached to it. Each probe is a minimal holding register read with
a short timeout and a single attempt; silence is the normal case and is
not reported as an error.
"""

import asyncio
import ipaddress
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fieldgate.common.config import MAX_SLAVE_ID, MIN_SLAVE_ID
from fieldgate.common.exceptions import CommunicationError, ValidationError
from fieldgate.common.logging_setup import get_service_logger, log_scan_progress
from fieldgate.services.device.modbus_client import KIND_EXCEPTION, ModbusClient

logger = get_service_logger("discovery.slaves")

DEFAULT_SAMPLE_SIZE = 8


class ScanConfig(BaseModel):
    """Slave scan request"""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    host: str
    port: int = Field(502, ge=1, le=65535)
    start_slave_id: int = Field(1, alias="startSlaveId", ge=MIN_SLAVE_ID, le=MAX_SLAVE_ID)
    end_slave_id: int = Field(MAX_SLAVE_ID, alias="endSlaveId", ge=MIN_SLAVE_ID, le=MAX_SLAVE_ID)
    timeout_ms: int = Field(500, alias="timeoutMs", ge=100, le=5000)
    concurrency: int = Field(1, ge=1, le=50)
    register: int = Field(0, ge=0, le=65535)
    count: int = Field(1, ge=1, le=125)

    @field_validator("host")
    @classmethod
    def _ipv4_host(cls, value: str) -> str:
        value = value.strip()
        try:
            ipaddress.IPv4Address(value)
        except ValueError:
            raise ValueError("Valid host IP address is required")
        return value

    @model_validator(mode="after")
    def _ordered_range(self) -> "ScanConfig":
        if self.start_slave_id > self.end_slave_id:
            raise ValueError("Start slave ID must be less than or equal to end slave ID")
        return self

    @property
    def total(self) -> int:
        return self.end_slave_id - self.start_slave_id + 1

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000


def parse_scan_config(data: dict | ScanConfig) -> ScanConfig:
    """
    Validate a scan request.

    Raises:
        ValidationError: one message per invalid field
    """
    if isinstance(data, ScanConfig):
        return data
    try:
        return ScanConfig.model_validate(data)
    except pydantic.ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err.get('loc', ())) or 'config'}: {err.get('msg')}"
            for err in e.errors()
        ]
        raise ValidationError(f"Invalid scan config: {errors[0]}", errors=errors)


@dataclass(frozen=True)
class ScanProgress:
    scanned: int
    total: int
    discovered: int
    percentage: int
    done: bool = False
    cancelled: bool = False
    slave_id: int | None = None  # last probed id

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "total": self.total,
            "discovered": self.discovered,
            "percentage": self.percentage,
            "done": self.done,
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True)
class DiscoveredSlave:
    slave_id: int
    response_time_ms: int
    sample_data: tuple[int, ...] = ()
    exception_code: int | None = None

    def to_dict(self) -> dict:
        data = {
            "slaveId": self.slave_id,
            "responseTimeMs": self.response_time_ms,
            "sampleData": list(self.sample_data),
        }
        if self.exception_code is not None:
            data["exceptionCode"] = self.exception_code
        return data


@dataclass
class SlaveScanResult:
    host: str
    port: int
    start_slave_id: int
    end_slave_id: int
    total: int
    scanned: int = 0
    cancelled: bool = False
    discovered: list[DiscoveredSlave] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "scanned": {
                "start": self.start_slave_id,
                "end": self.end_slave_id,
                "total": self.total,
                "probed": self.scanned,
            },
            "cancelled": self.cancelled,
            "discovered": [d.to_dict() for d in self.discovered],
            "count": len(self.discovered),
        }


ClientFactory = Callable[[str, int, float], ModbusClient]
ProgressCallback = Callable[[ScanProgress], None]


def default_client_factory(host: str, port: int, timeout: float) -> ModbusClient:
    return ModbusClient(host=host, port=port, timeout=timeout, retries=1)


class SlaveScanner:
    """
    Scan one gateway for responding unit ids.

    Usage:
        scanner = SlaveScanner(config)
        result = await scanner.run(on_progress=print)

    or iterate progress events:
        async for event in scanner.stream():
            ...
        result = scanner.result
    """

    def __init__(
        self,
        config: ScanConfig | dict,
        client_factory: ClientFactory | None = None,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        cancel_event: asyncio.Event | None = None,
    ):
        self.config = parse_scan_config(config)
        self._client_factory = client_factory or default_client_factory
        self._sample_size = sample_size
        self._cancel = cancel_event or asyncio.Event()
        self._scanned = 0
        self._discovered: list[DiscoveredSlave] = []
        self.result: SlaveScanResult | None = None

    @property
    def target(self) -> str:
        return f"{self.config.host}:{self.config.port}"

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop issuing probes. Probes in flight finish or time out."""
        if not self._cancel.is_set():
            logger.info(f"Slave scan of {self.target} cancelled after {self._scanned} probes")
        self._cancel.set()

    def _progress(self, slave_id: int | None = None, final: bool = False) -> ScanProgress:
        total = self.config.total
        complete = self._scanned >= total
        done = complete or final
        return ScanProgress(
            scanned=self._scanned,
            total=total,
            discovered=len(self._discovered),
            percentage=100 if done else self._scanned * 100 // total,
            done=done,
            cancelled=done and not complete,
            slave_id=slave_id,
        )

    async def _probe(self, client: ModbusClient, slave_id: int) -> Optional[DiscoveredSlave]:
        result = await client.read_holding_registers(
            self.config.register,
            self.config.count,
            slave_id=slave_id,
            retries=1,
            timeout=self.config.timeout_s,
        )
        if result.success:
            logger.debug(f"Slave {slave_id} responded in {result.elapsed_ms:.0f}ms")
            return DiscoveredSlave(
                slave_id=slave_id,
                response_time_ms=int(round(result.elapsed_ms)),
                sample_data=tuple((result.raw_registers or [])[: self._sample_size]),
            )
        if result.kind == KIND_EXCEPTION:
            # An exception reply still proves a device is listening at this id
            logger.debug(f"Slave {slave_id} answered with exception {result.exception_code}")
            return DiscoveredSlave(
                slave_id=slave_id,
                response_time_ms=int(round(result.elapsed_ms)),
                exception_code=result.exception_code,
            )
        return None

    async def run(self, on_progress: ProgressCallback | None = None) -> SlaveScanResult:
        """
        Run the scan.

        Raises:
            CommunicationError: the gateway itself is unreachable
        """
        config = self.config
        self._scanned = 0
        self._discovered = []

        logger.info(
            f"Starting slave scan on {self.target} for IDs "
            f"{config.start_slave_id}-{config.end_slave_id}",
            extra={"target": self.target, "total": config.total},
        )

        first = self._client_factory(config.host, config.port, config.timeout_s)
        if not await first.connect():
            raise CommunicationError(
                f"Gateway {self.target} is unreachable",
                host=config.host,
                port=config.port,
            )

        clients = [first]
        for _ in range(min(config.concurrency, config.total) - 1):
            client = self._client_factory(config.host, config.port, config.timeout_s)
            if await client.connect():
                clients.append(client)
            else:
                break

        pending = iter(range(config.start_slave_id, config.end_slave_id + 1))

        def emit(event: ScanProgress) -> None:
            log_scan_progress(logger, self.target, event.scanned, event.total, event.discovered)
            if on_progress:
                on_progress(event)

        async def worker(client: ModbusClient) -> None:
            for slave_id in pending:
                if self._cancel.is_set():
                    return
                found = await self._probe(client, slave_id)
                self._scanned += 1
                if found:
                    self._discovered.append(found)
                emit(self._progress(slave_id))

        try:
            await asyncio.gather(*(worker(c) for c in clients))
        finally:
            for client in clients:
                await client.disconnect()

        if self._scanned < config.total:
            emit(self._progress(final=True))

        self.result = SlaveScanResult(
            host=config.host,
            port=config.port,
            start_slave_id=config.start_slave_id,
            end_slave_id=config.end_slave_id,
            total=config.total,
            scanned=self._scanned,
            cancelled=self._scanned < config.total,
            discovered=sorted(self._discovered, key=lambda d: d.slave_id),
        )

        logger.info(
            f"Slave scan complete. Found {len(self.result.discovered)} responding slaves "
            f"out of {self._scanned} scanned",
            extra={"target": self.target, "discovered": len(self.result.discovered)},
        )
        return self.result

    async def stream(self) -> AsyncIterator[ScanProgress]:
        """Run the scan, yielding a progress event after each probe"""
        queue: asyncio.Queue[ScanProgress] = asyncio.Queue()
        task = asyncio.create_task(self.run(on_progress=queue.put_nowait))
        finished = False

        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)

                if getter in done:
                    event = getter.result()
                    finished = event.done
                    yield event
                    if finished:
                        break
                    continue

                getter.cancel()
                while not queue.empty():
                    event = queue.get_nowait()
                    finished = event.done
                    yield event
                    if finished:
                        break
                # Re-raises a scan-level failure
                task.result()
                break
        finally:
            if not finished and not task.done():
                # Consumer stopped early
                self.cancel()
            await task
