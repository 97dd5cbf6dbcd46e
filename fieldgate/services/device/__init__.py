"""
Device Service - Modbus Communication

Responsibilities:
- Maintain Modbus TCP connections (one per gateway host:port)
- Coil control sessions for normal and write-only equipment
- Register reads with calibration
- Track equipment online/offline status

DeviceService lives in fieldgate.services.device.service.
"""

from .calibration import (
    apply_reading_calibration,
    calibrate,
    coerce_calibration,
    decode_registers,
    register_count,
)
from .coil_controller import CoilControlSession, CoilSnapshot, CoilState, SessionPhase
from .coil_transport import (
    CoilTransport,
    NormalCoilTransport,
    WriteOnlyCoilTransport,
    create_transport,
)
from .command_cache import CommandCache
from .connection_pool import ConnectionPool
from .modbus_client import DeviceInfoResult, ModbusClient, ReadResult

__all__ = [
    "apply_reading_calibration",
    "calibrate",
    "coerce_calibration",
    "decode_registers",
    "register_count",
    "CoilControlSession",
    "CoilSnapshot",
    "CoilState",
    "SessionPhase",
    "CoilTransport",
    "NormalCoilTransport",
    "WriteOnlyCoilTransport",
    "create_transport",
    "CommandCache",
    "ConnectionPool",
    "DeviceInfoResult",
    "ModbusClient",
    "ReadResult",
]
