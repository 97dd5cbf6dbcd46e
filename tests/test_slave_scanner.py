"""Slave id discovery behind a gateway."""

import asyncio

import pytest

from conftest import FakeGatewayClient
from fieldgate.common.exceptions import CommunicationError, ValidationError
from fieldgate.services.discovery.slave_scanner import (
    ScanConfig,
    SlaveScanner,
    parse_scan_config,
)

pytestmark = pytest.mark.asyncio


def scanner_for(client, **config):
    base = {"host": "192.168.1.50", "port": 502, "startSlaveId": 1, "endSlaveId": 5}
    base.update(config)
    return SlaveScanner(base, client_factory=lambda host, port, timeout: client)


async def test_only_responding_slave_is_discovered():
    client = FakeGatewayClient(responders={3: [100, 200, 300]})
    events = []

    result = await scanner_for(client).run(on_progress=events.append)

    assert [d.slave_id for d in result.discovered] == [3]
    assert result.discovered[0].sample_data == (100,)
    assert result.discovered[0].response_time_ms == 12
    assert client.probed == [1, 2, 3, 4, 5]
    assert client.disconnected


async def test_progress_reaches_100_when_all_probed():
    client = FakeGatewayClient(responders={3: [1]})
    events = []

    await scanner_for(client).run(on_progress=events.append)

    assert [e.scanned for e in events] == [1, 2, 3, 4, 5]
    assert [e.percentage for e in events] == [20, 40, 60, 80, 100]
    assert [e.done for e in events] == [False, False, False, False, True]
    assert events[-1].discovered == 1
    assert not events[-1].cancelled


async def test_cancel_after_second_probe_stops_scan():
    scanner = None

    def on_probe(slave_id):
        if slave_id == 2:
            scanner.cancel()

    client = FakeGatewayClient(on_probe=on_probe)
    scanner = scanner_for(client, endSlaveId=10)
    events = []

    result = await scanner.run(on_progress=events.append)

    assert client.probed == [1, 2]
    assert result.scanned == 2
    assert result.cancelled
    assert events[-1].done and events[-1].cancelled
    assert events[-1].percentage == 100


async def test_external_cancel_event():
    cancel = asyncio.Event()
    cancel.set()
    client = FakeGatewayClient()

    scanner = SlaveScanner(
        {"host": "192.168.1.50", "startSlaveId": 1, "endSlaveId": 3},
        client_factory=lambda host, port, timeout: client,
        cancel_event=cancel,
    )
    result = await scanner.run()

    assert client.probed == []
    assert result.cancelled


async def test_exception_response_counts_as_present():
    client = FakeGatewayClient(exception_ids={4})

    result = await scanner_for(client).run()

    assert len(result.discovered) == 1
    assert result.discovered[0].slave_id == 4
    assert result.discovered[0].exception_code == 2
    assert result.discovered[0].sample_data == ()


async def test_unreachable_gateway_is_an_error():
    client = FakeGatewayClient(reachable=False)

    with pytest.raises(CommunicationError):
        await scanner_for(client).run()
    assert client.probed == []


async def test_bounded_parallel_probes_cover_range_once():
    responders = {2: [7], 9: [8, 9]}
    clients = []

    def factory(host, port, timeout):
        client = FakeGatewayClient(responders=responders)
        clients.append(client)
        return client

    scanner = SlaveScanner(
        {"host": "10.1.1.1", "startSlaveId": 1, "endSlaveId": 12, "concurrency": 3},
        client_factory=factory,
    )
    result = await scanner.run()

    probed = sorted(s for c in clients for s in c.probed)
    assert len(clients) == 3
    assert probed == list(range(1, 13))
    assert [d.slave_id for d in result.discovered] == [2, 9]


async def test_sample_data_is_truncated():
    client = FakeGatewayClient(responders={1: list(range(20))})
    scanner = SlaveScanner(
        {"host": "10.1.1.1", "startSlaveId": 1, "endSlaveId": 1, "count": 20},
        client_factory=lambda host, port, timeout: client,
    )

    result = await scanner.run()

    assert result.discovered[0].sample_data == tuple(range(8))


async def test_stream_yields_events_then_result():
    client = FakeGatewayClient(responders={2: [5]})
    scanner = scanner_for(client, endSlaveId=3)

    events = [event async for event in scanner.stream()]

    assert [e.scanned for e in events] == [1, 2, 3]
    assert events[-1].done
    assert [d.slave_id for d in scanner.result.discovered] == [2]


async def test_result_to_dict():
    client = FakeGatewayClient(responders={3: [1, 2]})
    data = (await scanner_for(client).run()).to_dict()

    assert data["count"] == 1
    assert data["discovered"][0] == {"slaveId": 3, "responseTimeMs": 12, "sampleData": [1]}


@pytest.mark.parametrize(
    "config",
    [
        {"host": "not-an-ip"},
        {"host": "10.0.0.1", "startSlaveId": 10, "endSlaveId": 2},
        {"host": "10.0.0.1", "startSlaveId": 0},
        {"host": "10.0.0.1", "endSlaveId": 248},
        {"host": "10.0.0.1", "timeoutMs": 50},
        {"host": "10.0.0.1", "port": 70000},
    ],
)
async def test_invalid_scan_config(config):
    with pytest.raises(ValidationError):
        parse_scan_config(config)


async def test_scan_config_defaults():
    config = parse_scan_config({"host": " 10.0.0.1 "})

    assert isinstance(config, ScanConfig)
    assert config.host == "10.0.0.1"
    assert config.total == 247
    assert config.timeout_s == 0.5
