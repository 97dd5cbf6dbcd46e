"""Shared fakes for fieldgate tests. No test touches the network."""

import asyncio

import pytest

from fieldgate.services.device.modbus_client import (
    KIND_CONNECTION,
    KIND_EXCEPTION,
    KIND_TIMEOUT,
    DeviceInfoResult,
    ReadResult,
)
from fieldgate.common.exceptions import CommunicationError
from fieldgate.services.device.calibration import decode_registers


class FakeCoilDevice:
    """
    In-memory coil bank that speaks the ModbusClient coil API.

    Set `fail_reads` / `fail_writes` to make requests fail, or `ignore_writes`
    to acknowledge writes without changing state.
    """

    def __init__(self, size: int = 8):
        self.coils = [False] * size
        self.fail_reads = False
        self.fail_writes = False
        self.ignore_writes = False
        self.reads = 0
        self.writes: list[tuple] = []
        self.write_delay = 0.0

    async def read_coils(self, address, count, slave_id=1, retries=None, timeout=None):
        self.reads += 1
        if self.fail_reads:
            return ReadResult(success=False, error="No response", kind=KIND_TIMEOUT)
        return ReadResult(success=True, bits=list(self.coils[address:address + count]))

    async def write_coil(self, address, value, slave_id=1, retries=None, timeout=None, fire_and_forget=False):
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        self.writes.append(("coil", address, bool(value), fire_and_forget))
        if self.fail_writes:
            raise CommunicationError("Not connected", host="fake", port=502)
        if not self.ignore_writes:
            self.coils[address] = bool(value)
        return not fire_and_forget

    async def write_coils(self, address, values, slave_id=1, retries=None, timeout=None, fire_and_forget=False):
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        self.writes.append(("coils", address, list(values), fire_and_forget))
        if self.fail_writes:
            raise CommunicationError("Not connected", host="fake", port=502)
        if not self.ignore_writes:
            for offset, value in enumerate(values):
                self.coils[address + offset] = bool(value)
        return not fire_and_forget


class FakePool:
    """ConnectionPool stand-in handing out one client and one lock"""

    def __init__(self, client):
        self.client = client
        self.lock = asyncio.Lock()
        self.requests = 0

    async def get_connection(self, host, port):
        self.requests += 1
        return self.client, self.lock

    async def start(self):
        pass

    async def stop(self):
        pass

    def get_stats(self):
        return {"total_connections": 1, "connections": {}}


class FakeGatewayClient:
    """
    A gateway with a fixed set of responding slave ids.

    `responders` maps slave id -> registers; `exception_ids` answer with a
    Modbus exception; every other id times out.
    """

    def __init__(self, responders=None, exception_ids=(), reachable=True, on_probe=None):
        self.responders = responders or {}
        self.exception_ids = set(exception_ids)
        self.reachable = reachable
        self.on_probe = on_probe
        self.probed: list[int] = []
        self.disconnected = False

    async def connect(self):
        return self.reachable

    async def disconnect(self):
        self.disconnected = True

    async def read_holding_registers(self, address, count, slave_id=1, datatype=None, retries=None, timeout=None):
        self.probed.append(slave_id)
        if self.on_probe:
            self.on_probe(slave_id)
        if slave_id in self.responders:
            registers = list(self.responders[slave_id])[:count]
            return ReadResult(success=True, raw_registers=registers, value=registers[0], elapsed_ms=12.4)
        if slave_id in self.exception_ids:
            return ReadResult(success=False, error="Modbus error", kind=KIND_EXCEPTION, exception_code=2, elapsed_ms=8.0)
        return ReadResult(success=False, error="timed out", kind=KIND_TIMEOUT, elapsed_ms=500.0)


class FakeEndpointClient:
    """A Modbus TCP endpoint for network scans"""

    def __init__(self, open_port=True, info=None):
        self.open_port = open_port
        self.info = info
        self.disconnected = False

    async def connect(self):
        return self.open_port

    async def disconnect(self):
        self.disconnected = True

    async def read_device_information(self, slave_id=1, read_code=1, object_id=0, timeout=None):
        if self.info is None:
            return DeviceInfoResult(success=False, error="timed out", kind=KIND_TIMEOUT)
        if self.info == "exception":
            return DeviceInfoResult(success=False, error="Modbus error", kind=KIND_EXCEPTION, exception_code=1)
        if self.info == "refused":
            return DeviceInfoResult(success=False, error="connection lost", kind=KIND_CONNECTION)
        return DeviceInfoResult(success=True, objects=dict(self.info))


class FakeMeter(FakeCoilDevice):
    """Coil bank plus input/holding registers"""

    def __init__(self):
        super().__init__()
        self.input_registers = {0: 253, 1: 655}
        self.holding_registers = {10: 1500}
        self.fail_registers = False

    def _registers(self, table, address, count, datatype):
        if self.fail_registers:
            return ReadResult(success=False, error="timed out", kind=KIND_TIMEOUT)
        registers = [table.get(address + i, 0) for i in range(count)]
        return ReadResult(success=True, value=decode_registers(registers, datatype), raw_registers=registers)

    async def read_input_registers(self, address, count, slave_id=1, datatype="uint16", retries=None, timeout=None):
        return self._registers(self.input_registers, address, count, datatype)

    async def read_holding_registers(self, address, count, slave_id=1, datatype="uint16", retries=None, timeout=None):
        return self._registers(self.holding_registers, address, count, datatype)


def relay_mappings(count: int = 4) -> list[dict]:
    return [
        {"name": f"Relay {i + 1}", "register": str(i), "type": "coil", "dataType": "bool", "access": "readwrite"}
        for i in range(count)
    ]


@pytest.fixture
def coil_device():
    return FakeCoilDevice()


@pytest.fixture
def fake_pool(coil_device):
    return FakePool(coil_device)
