"""
Calibration Transform

Linear correction of raw readings: calibrated = raw * scale + offset.
Also decodes raw register words into typed values.
"""

import math
import struct
from typing import Any

from fieldgate.common.config import RegisterDataType

DEFAULT_SCALE = 1.0
DEFAULT_OFFSET = 0.0

# Decimal places kept on calibrated readings
READING_PRECISION = 3


def calibrate(raw: float, scale: float = DEFAULT_SCALE, offset: float = DEFAULT_OFFSET) -> float:
    """Apply value * scale + offset"""
    return raw * scale + offset


def _coerce_number(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return number


def coerce_calibration(offset: Any, scale: Any) -> dict[str, float]:
    """
    Validate calibration inputs.

    Non-numeric or non-finite values fall back to the defaults
    (offset 0, scale 1). An explicit 0 is kept.
    """
    return {
        "offset": _coerce_number(offset, DEFAULT_OFFSET),
        "scale": _coerce_number(scale, DEFAULT_SCALE),
    }


def _get(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def apply_reading_calibration(raw: float, mapping: Any = None, equipment: Any = None) -> float:
    """
    Calibrate one polled reading.

    Mapping-level scale/offset are applied first, then the equipment's
    calibration_scale/calibration_offset. Result rounded to 3 decimals.
    """
    value = float(raw)

    mapping_cal = coerce_calibration(_get(mapping, "offset"), _get(mapping, "scale"))
    value = calibrate(value, mapping_cal["scale"], mapping_cal["offset"])

    equipment_cal = coerce_calibration(
        _get(equipment, "calibration_offset"),
        _get(equipment, "calibration_scale"),
    )
    value = calibrate(value, equipment_cal["scale"], equipment_cal["offset"])

    return round(value, READING_PRECISION)


REGISTER_COUNTS = {
    RegisterDataType.BOOL: 1,
    RegisterDataType.UINT16: 1,
    RegisterDataType.INT16: 1,
    RegisterDataType.UINT32: 2,
    RegisterDataType.INT32: 2,
    RegisterDataType.FLOAT32: 2,
}


def register_count(datatype: RegisterDataType) -> int:
    """Number of 16-bit registers a data type occupies"""
    return REGISTER_COUNTS.get(RegisterDataType(datatype), 1)


def decode_registers(registers: list[int], datatype: RegisterDataType) -> float | int | None:
    """
    Convert raw registers to a typed value (big-endian, high word first).

    Returns None for an empty list or a non-finite float.

    Raises:
        ValueError: fewer registers than the data type needs
    """
    if not registers:
        return None

    datatype = RegisterDataType(datatype)
    needed = register_count(datatype)
    if len(registers) < needed:
        raise ValueError(
            f"{datatype.value} needs {needed} registers, got {len(registers)}"
        )

    if datatype == RegisterDataType.BOOL:
        return 1 if registers[0] else 0

    if datatype == RegisterDataType.UINT16:
        return registers[0]

    if datatype == RegisterDataType.INT16:
        value = registers[0]
        if value >= 0x8000:
            value -= 0x10000
        return value

    if datatype == RegisterDataType.UINT32:
        return (registers[0] << 16) | registers[1]

    if datatype == RegisterDataType.INT32:
        value = (registers[0] << 16) | registers[1]
        if value >= 0x80000000:
            value -= 0x100000000
        return value

    # FLOAT32
    packed = struct.pack(">HH", registers[0], registers[1])
    value = struct.unpack(">f", packed)[0]
    if math.isnan(value) or math.isinf(value):
        return None
    return value
