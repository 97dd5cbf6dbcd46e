"""
Equipment Service - equipment records consumed by the device and discovery services
"""

from .store import (
    Equipment,
    EquipmentStore,
    InMemoryEquipmentStore,
    build_equipment,
    parse_tcp_address,
)

__all__ = [
    "Equipment",
    "EquipmentStore",
    "InMemoryEquipmentStore",
    "build_equipment",
    "parse_tcp_address",
]
