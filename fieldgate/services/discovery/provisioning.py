"""
Bulk equipment creation from discovered slaves.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable

from fieldgate.common.config import MAX_SLAVE_ID, MIN_SLAVE_ID
from fieldgate.common.exceptions import ValidationError
from fieldgate.common.logging_setup import get_service_logger
from fieldgate.services.equipment.store import Equipment, EquipmentStore

logger = get_service_logger("discovery.provisioning")

DEFAULT_NAME_PREFIX = "Modbus Device"


@dataclass
class ProvisionResult:
    created: list[Equipment] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.created)

    def to_dict(self) -> dict:
        return {
            "created": [e.to_dict() for e in self.created],
            "count": self.count,
            "errors": list(self.errors),
        }


def _slave_entry(slave: Any) -> dict[str, Any]:
    """Accept 5, "5", {"slaveId": 5, ...} or a DiscoveredSlave"""
    if isinstance(slave, dict):
        return slave
    if hasattr(slave, "slave_id"):
        return {"slaveId": slave.slave_id}
    return {"slaveId": slave}


def _parse_slave_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        slave_id = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    if not MIN_SLAVE_ID <= slave_id <= MAX_SLAVE_ID:
        return None
    return slave_id


async def create_equipment_from_slaves(
    store: EquipmentStore,
    host: str,
    port: int,
    slaves: Iterable[Any],
    name_prefix: str = DEFAULT_NAME_PREFIX,
) -> ProvisionResult:
    """
    Create one equipment record per discovered slave id.

    Records are named "{name_prefix} {slave_id}" unless an entry carries its
    own name, use address "host:port" and start offline. Invalid ids and
    (address, slave_id) pairs that already exist are reported per id.
    """
    slaves = list(slaves or [])
    if not host or not slaves:
        raise ValidationError("Host and slaves are required")

    address = f"{host}:{port}"
    prefix = (name_prefix or DEFAULT_NAME_PREFIX).strip() or DEFAULT_NAME_PREFIX
    taken = {(e.address, e.slave_id) for e in await store.list()}
    result = ProvisionResult()

    for slave in slaves:
        entry = _slave_entry(slave)
        raw_id = entry.get("slaveId", entry.get("slave_id"))
        slave_id = _parse_slave_id(raw_id)
        if slave_id is None:
            result.errors.append({"slaveId": raw_id, "error": "Invalid slave ID"})
            continue

        if (address, slave_id) in taken:
            result.errors.append({
                "slaveId": slave_id,
                "error": "Equipment with this address and slave ID already exists",
            })
            continue

        try:
            equipment = await store.create({
                "name": entry.get("name") or f"{prefix} {slave_id}",
                "description": entry.get("description") or f"Modbus device discovered at slave ID {slave_id}",
                "type": entry.get("type") or "sensor",
                "protocol": "modbus",
                "address": address,
                "slave_id": slave_id,
                "status": "offline",
                "polling_interval_ms": int(entry.get("pollingInterval") or 1000),
            })
        except ValidationError as e:
            result.errors.append({"slaveId": slave_id, "error": e.message})
            continue

        taken.add((address, slave_id))
        result.created.append(equipment)

    logger.info(
        f"Created {result.count} equipment record(s) at {address}, {len(result.errors)} error(s)",
        extra={"address": address, "created_count": result.count, "error_count": len(result.errors)},
    )
    return result
