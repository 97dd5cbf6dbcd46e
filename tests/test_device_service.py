"""DeviceService facade over sessions, store and discovery."""

import asyncio
import json

import pytest

from conftest import FakeEndpointClient, FakeGatewayClient, FakeMeter, FakePool, relay_mappings
from fieldgate.common.config import BusyPolicy, GatewayConfig, ModbusSettings
from fieldgate.common.exceptions import (
    CommunicationError,
    DeviceBusyError,
    EquipmentNotFoundError,
    ValidationError,
)
from fieldgate.services.device.coil_transport import WriteOnlyCoilTransport
from fieldgate.services.device.service import DeviceService
from fieldgate.services.discovery.service import DiscoveryService
from fieldgate.services.equipment.store import InMemoryEquipmentStore

pytestmark = pytest.mark.asyncio


EQUIPMENT = [
    {"id": 1, "name": "Relay board", "address": "10.0.0.5:502", "slave_id": 1, "register_mappings": relay_mappings(4)},
    {"id": 2, "name": "Pump relays", "address": "10.0.0.6", "slave_id": 3, "write_only": True, "register_mappings": relay_mappings(2)},
    {
        "id": 3,
        "name": "Greenhouse sensor",
        "address": "10.0.0.7:502",
        "slave_id": 2,
        "calibration_offset": -0.5,
        "register_mappings": [
            {"name": "Temperature", "register": "0", "type": "input", "dataType": "int16", "access": "read", "scale": 0.1, "unit": "°C"},
            {"name": "Setpoint", "register": "10", "type": "holding", "dataType": "uint16", "access": "readwrite"},
            {"name": "Fan", "register": "0", "type": "coil", "dataType": "bool", "access": "readwrite"},
        ],
    },
    {"id": 4, "name": "Zigbee plug", "address": "zb-01", "protocol": "zigbee"},
]


def make_service(device=None, busy_policy=BusyPolicy.QUEUE, discovery_factory=None, networks=None):
    config = GatewayConfig(modbus=ModbusSettings(busy_policy=busy_policy), equipment=EQUIPMENT)
    store = InMemoryEquipmentStore(config.equipment)
    discovery = DiscoveryService(
        store,
        config.scan,
        client_factory=discovery_factory,
        networks_provider=(lambda: networks) if networks is not None else None,
    )
    device = device or FakeMeter()
    return DeviceService(config, store=store, connection_pool=FakePool(device), discovery=discovery), device


async def test_write_all_then_read_marks_equipment_online():
    service, device = make_service()

    await service.write_all_coils(1, True)
    snapshot = await service.read_coils("Relay board")

    assert snapshot.states() == {0: True, 1: True, 2: True, 3: True}
    equipment = await service.store.get(1)
    assert equipment.status == "online"
    assert equipment.last_communication == snapshot.last_communication


async def test_read_failure_marks_equipment_error():
    service, device = make_service()
    device.fail_reads = True

    with pytest.raises(CommunicationError):
        await service.read_coils(1)

    assert (await service.store.get(1)).status == "error"
    assert service.snapshots()[0].last_error.startswith("Could not verify current state")


async def test_write_only_read_does_not_touch_status():
    service, device = make_service()

    snapshot = await service.read_coils(2)
    assert snapshot.write_only
    assert (await service.store.get(2)).status == "offline"

    await service.write_coil(2, 1, True)
    snapshot = await service.read_coils(2)

    assert snapshot.states() == {0: False, 1: True}
    assert (await service.store.get(2)).status == "online"
    assert device.reads == 0


async def test_session_is_reused_and_rebuilt_on_mode_change():
    service, _ = make_service()

    first = await service.session_for(1)
    assert await service.session_for("Relay board") is first

    await service.store.update(1, write_only=True)
    rebuilt = await service.session_for(1)

    assert rebuilt is not first
    assert isinstance(rebuilt._transport, WriteOnlyCoilTransport)


async def test_non_modbus_equipment_is_rejected():
    service, _ = make_service()

    with pytest.raises(ValidationError):
        await service.read_coils(4)
    with pytest.raises(EquipmentNotFoundError):
        await service.read_coils(42)


async def test_busy_reject_does_not_mark_error():
    device = FakeMeter()
    device.write_delay = 0.05
    service, _ = make_service(device=device, busy_policy=BusyPolicy.REJECT)

    first = asyncio.create_task(service.write_coil(1, 0, True))
    await asyncio.sleep(0.01)

    with pytest.raises(DeviceBusyError):
        await service.write_coil(1, 1, True)
    await first

    assert (await service.store.get(1)).status == "online"


async def test_apply_calibration_persists_validated_values():
    service, _ = make_service()

    assert await service.apply_calibration(3, "0.25", "abc") == {"offset": 0.25, "scale": 1.0}
    assert await service.apply_calibration(3, None, 0) == {"offset": 0.0, "scale": 0.0}

    equipment = await service.store.get(3)
    assert equipment.calibration_offset == 0.0
    assert equipment.calibration_scale == 0.0


async def test_read_point_applies_mapping_and_equipment_calibration():
    service, _ = make_service()

    reading = await service.read_point(3, "Temperature")

    assert reading["raw"] == 253
    assert reading["value"] == 24.8
    assert reading["unit"] == "°C"
    assert (await service.store.get(3)).status == "online"


async def test_read_point_holding_and_coil():
    service, device = make_service()
    device.coils[0] = True

    setpoint = await service.read_point(3, "Setpoint")
    fan = await service.read_point(3, "Fan")

    assert setpoint["raw"] == 1500
    assert setpoint["value"] == 1499.5  # equipment offset applies to every register
    assert fan["raw"] is True and fan["value"] is True


async def test_read_point_errors():
    service, device = make_service()

    with pytest.raises(ValidationError):
        await service.read_point(3, "Pressure")
    with pytest.raises(ValidationError):
        await service.read_point(2, "Relay 1")

    device.fail_registers = True
    with pytest.raises(CommunicationError):
        await service.read_point(3, "Temperature")
    assert (await service.store.get(3)).status == "error"


async def test_register_map_operations():
    service, _ = make_service()

    assert len(service.expand_preset(4)) == 6
    assert len(service.expand_preset("generic-vfd")) == 5
    assert len(service.load_preset("generic-th-sensor")) == 2

    exported = service.export_register_map(service.expand_preset(8))
    assert service.import_register_map(exported) == service.expand_preset(8)


async def test_scan_and_provision_through_service():
    gateway = FakeGatewayClient(responders={2: [10], 5: [20]})
    service, _ = make_service(discovery_factory=lambda host, port, timeout: gateway)

    result = await service.scan_slave_ids({"host": "10.0.0.9", "startSlaveId": 1, "endSlaveId": 6})
    provisioned = await service.create_equipment_from_slaves("10.0.0.9", 502, result.discovered)

    assert [d.slave_id for d in result.discovered] == [2, 5]
    assert [e.name for e in provisioned.created] == ["Modbus Device 2", "Modbus Device 5"]
    assert len(await service.store.list()) == len(EQUIPMENT) + 2


async def test_network_scan_excludes_known_equipment():
    endpoints = {
        "10.0.0.5:502": FakeEndpointClient(info={0: "Acme"}),
        "10.0.0.8:502": FakeEndpointClient(info={4: "Meter X"}),
    }

    def factory(host, port, timeout):
        return endpoints.get(f"{host}:{port}", FakeEndpointClient(open_port=False))

    service, _ = make_service(discovery_factory=factory)
    result = await service.scan_network(target="10.0.0.5-8", ports=[502])

    assert [d.address for d in result.discovered] == ["10.0.0.8:502"]
    assert result.existing_devices_found == 1


async def test_health_handler():
    service, _ = make_service()
    await service.start(health_server=False)
    await service.read_coils(1)

    response = await service._health_handler(None)
    body = json.loads(response.text)

    assert body["status"] == "healthy"
    assert body["sessions"] == 1
    assert body["service"] == "device"

    sessions = json.loads((await service._sessions_handler(None)).text)
    assert sessions[0]["equipment_name"] == "Relay board"

    await service.stop()
    body = json.loads((await service._health_handler(None)).text)
    assert body["status"] == "unhealthy"


async def test_schedule_coil_executes_immediately_with_auto_off():
    service, device = make_service()

    result = await service.schedule_coil(1, 2, True, duration_s=0.01)

    assert result["status"] == "executed"
    assert result["snapshot"]["channels"][2]["state"] is True
    assert [t["key"] for t in service.timers.active_timers()] == ["off:1:2"]

    await service.timers.wait()
    assert device.coils[2] is False


async def test_schedule_coil_delayed_start_and_reschedule():
    service, device = make_service()

    first = await service.schedule_coil("Relay board", 0, True, delay_s=10)
    second = await service.schedule_coil("Relay board", 0, True, delay_s=0.01)

    assert first["status"] == second["status"] == "scheduled"
    assert len(service.timers) == 1
    assert device.writes == []

    await service.timers.wait()
    assert device.coils[0] is True
    assert [w[:3] for w in device.writes] == [("coil", 0, True)]


async def test_schedule_coil_rejects_unknown_channel_and_cancels():
    service, _ = make_service()

    with pytest.raises(ValidationError):
        await service.schedule_coil(1, 9, True)

    await service.schedule_coil(1, 1, True, delay_s=10)
    await service.schedule_coil(1, 3, True, delay_s=10)
    assert await service.cancel_coil_timers(1, 1) == 1
    assert await service.cancel_coil_timers(1) == 1
    assert len(service.timers) == 0


async def test_poll_equipment_updates_status():
    service, _ = make_service()

    result = await service.poll_equipment("Greenhouse sensor")

    assert result["success"] is True
    equipment = await service.store.get(3)
    assert equipment.status == "online"
    assert equipment.last_reading == 24.8
    assert [d["equipment_id"] for d in service.polling_status()["devices"]] == [1, 3]

    with pytest.raises(ValidationError):
        await service.poll_equipment("Pump relays")


async def test_health_reports_polling_and_timers():
    service, _ = make_service()
    await service.start(health_server=False)
    await service.schedule_coil(1, 0, True, delay_s=10)

    body = json.loads((await service._health_handler(None)).text)
    timers = json.loads((await service._timers_handler(None)).text)
    polling = json.loads((await service._polling_handler(None)).text)

    assert body["polled_devices"] == 2
    assert body["pending_timers"] == 1
    assert timers[0]["key"] == "delay:1:0"
    assert polling["running"] is True

    await service.stop()
    assert len(service.timers) == 0
    assert service.polling_status()["running"] is False
