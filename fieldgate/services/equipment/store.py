"""
Equipment Store

The gateway core reads equipment records and writes back calibration,
status and last-communication fields. Persistence belongs to the host
application; InMemoryEquipmentStore is the default implementation, seeded
from the configuration file.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from typing import Any

from fieldgate.common.config import (
    MAX_POLLING_INTERVAL_MS,
    MAX_SLAVE_ID,
    MIN_POLLING_INTERVAL_MS,
    MIN_SLAVE_ID,
    Protocol,
)
from fieldgate.common.exceptions import EquipmentNotFoundError, ValidationError
from fieldgate.common.logging_setup import get_service_logger
from fieldgate.services.device.calibration import coerce_calibration
from fieldgate.services.registers.mapping import RegisterMap, validate_register_map

logger = get_service_logger("equipment.store")

DEFAULT_MODBUS_PORT = 502


def parse_tcp_address(address: str, default_port: int = DEFAULT_MODBUS_PORT) -> tuple[str, int]:
    """
    Split "host:port" into (host, port).

    A bare host uses default_port. Serial paths are rejected.

    Raises:
        ValidationError: empty address, serial path or bad port
    """
    address = (address or "").strip()
    if not address:
        raise ValidationError("Equipment address is empty")
    if address.startswith("/") or address.upper().startswith("COM"):
        raise ValidationError(f"Not a TCP address: {address!r}")

    host, sep, port_text = address.rpartition(":")
    if not sep:
        return address, default_port

    try:
        port = int(port_text)
    except ValueError:
        raise ValidationError(f"Invalid port in address {address!r}")
    if not host or not 1 <= port <= 65535:
        raise ValidationError(f"Invalid address {address!r}")
    return host, port


@dataclass
class Equipment:
    """A field device record"""
    id: int
    name: str
    address: str
    protocol: Protocol = Protocol.MODBUS
    slave_id: int = 1
    polling_interval_ms: int = 1000
    register_mappings: RegisterMap = field(default_factory=list)
    write_only: bool = False
    calibration_offset: float = 0.0
    calibration_scale: float = 1.0
    enabled: bool = True
    status: str = "offline"
    type: str = "sensor"
    description: str = ""
    zone_id: int | None = None
    last_communication: str | None = None
    last_reading: Any = None
    last_error: str | None = None

    @property
    def endpoint(self) -> tuple[str, int]:
        return parse_tcp_address(self.address)

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["protocol"] = self.protocol.value
        data["register_mappings"] = [m.to_dict() for m in self.register_mappings]
        return data


def build_equipment(equipment_id: int, data: dict[str, Any]) -> Equipment:
    """
    Validate a raw equipment record.

    Raises:
        ValidationError: every invalid field listed in `errors`
    """
    errors: list[str] = []

    name = str(data.get("name") or "").strip()
    if not name:
        errors.append("name is required")

    address = str(data.get("address") or "").strip()
    if not address:
        errors.append("address is required")

    try:
        protocol = Protocol(data.get("protocol", Protocol.MODBUS.value))
    except ValueError:
        errors.append(f"unknown protocol {data.get('protocol')!r}")
        protocol = Protocol.MODBUS

    slave_id = data.get("slave_id", 1)
    if isinstance(slave_id, bool) or not isinstance(slave_id, int) or not MIN_SLAVE_ID <= slave_id <= MAX_SLAVE_ID:
        errors.append(f"slave_id must be between {MIN_SLAVE_ID} and {MAX_SLAVE_ID}")

    polling = data.get("polling_interval_ms", 1000)
    if isinstance(polling, bool) or not isinstance(polling, int) or not (
        MIN_POLLING_INTERVAL_MS <= polling <= MAX_POLLING_INTERVAL_MS
    ):
        errors.append(
            f"polling_interval_ms must be between {MIN_POLLING_INTERVAL_MS} "
            f"and {MAX_POLLING_INTERVAL_MS}"
        )

    mappings: RegisterMap = []
    try:
        mappings = validate_register_map(data.get("register_mappings") or [])
    except ValidationError as e:
        errors.extend(e.errors)

    calibration = coerce_calibration(data.get("calibration_offset"), data.get("calibration_scale"))

    if errors:
        raise ValidationError(f"Invalid equipment record: {errors[0]}", errors=errors)

    return Equipment(
        id=equipment_id,
        name=name,
        address=address,
        protocol=protocol,
        slave_id=slave_id,
        polling_interval_ms=polling,
        register_mappings=mappings,
        write_only=bool(data.get("write_only", False)),
        calibration_offset=calibration["offset"],
        calibration_scale=calibration["scale"],
        enabled=bool(data.get("enabled", True)),
        status=str(data.get("status", "offline")),
        type=str(data.get("type", "sensor")),
        description=str(data.get("description") or ""),
        zone_id=data.get("zone_id"),
    )


class EquipmentStore(ABC):
    """Equipment lookup and persistence callback used by the core"""

    @abstractmethod
    async def get(self, equipment_ref: int | str) -> Equipment:
        """Look up by id (or name). Raises EquipmentNotFoundError."""

    @abstractmethod
    async def list(self) -> list[Equipment]:
        ...

    @abstractmethod
    async def create(self, data: dict[str, Any]) -> Equipment:
        ...

    @abstractmethod
    async def update(self, equipment_id: int, **changes: Any) -> Equipment:
        ...


class InMemoryEquipmentStore(EquipmentStore):
    """Equipment records kept in a dict"""

    UPDATABLE_FIELDS = {
        "name", "address", "slave_id", "polling_interval_ms", "write_only",
        "calibration_offset", "calibration_scale", "enabled", "status",
        "last_communication", "last_reading", "last_error", "zone_id", "type",
        "description",
    }

    def __init__(self, records: list[dict[str, Any]] | None = None):
        self._items: dict[int, Equipment] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

        for record in records or []:
            equipment_id = int(record.get("id") or self._next_id)
            self._items[equipment_id] = build_equipment(equipment_id, record)
            self._next_id = max(self._next_id, equipment_id + 1)

    async def get(self, equipment_ref: int | str) -> Equipment:
        try:
            return self._items[int(equipment_ref)]
        except (KeyError, TypeError, ValueError):
            pass
        for item in self._items.values():
            if item.name == equipment_ref:
                return item
        raise EquipmentNotFoundError(equipment_ref)

    async def list(self) -> list[Equipment]:
        return list(self._items.values())

    async def create(self, data: dict[str, Any]) -> Equipment:
        async with self._lock:
            equipment = build_equipment(self._next_id, data)
            self._items[equipment.id] = equipment
            self._next_id += 1
            logger.info(
                f"Created equipment {equipment.name} ({equipment.address} slave {equipment.slave_id})",
                extra={"equipment_id": equipment.id},
            )
            return equipment

    async def update(self, equipment_id: int, **changes: Any) -> Equipment:
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        async with self._lock:
            current = self._items.get(int(equipment_id))
            if current is None:
                raise EquipmentNotFoundError(equipment_id)
            updated = replace(current, **changes)
            self._items[updated.id] = updated
            return updated
