"""Calibration transform and register decoding."""

import math
import struct

import pytest

from fieldgate.common.config import RegisterDataType
from fieldgate.services.device.calibration import (
    apply_reading_calibration,
    calibrate,
    coerce_calibration,
    decode_registers,
    register_count,
)


def test_calibrate_linear():
    assert calibrate(10, scale=2, offset=3) == 23
    assert calibrate(10) == 10


def test_calibrate_zero_scale_is_constant():
    assert calibrate(1234.5, scale=0, offset=7) == 7


@pytest.mark.parametrize(
    "offset,scale,expected",
    [
        ("1.5", "2", {"offset": 1.5, "scale": 2.0}),
        (None, None, {"offset": 0.0, "scale": 1.0}),
        ("", "  ", {"offset": 0.0, "scale": 1.0}),
        ("abc", "x", {"offset": 0.0, "scale": 1.0}),
        (float("nan"), float("inf"), {"offset": 0.0, "scale": 1.0}),
        (True, False, {"offset": 0.0, "scale": 1.0}),
        (0, 0, {"offset": 0.0, "scale": 0.0}),
        ("0", "0.0", {"offset": 0.0, "scale": 0.0}),
    ],
)
def test_coerce_calibration(offset, scale, expected):
    assert coerce_calibration(offset, scale) == expected


def test_reading_calibration_mapping_then_equipment():
    mapping = {"scale": 0.1, "offset": None}
    equipment = {"calibration_scale": 1.0, "calibration_offset": -0.5}

    # 253 * 0.1 = 25.3, then -0.5
    assert apply_reading_calibration(253, mapping, equipment) == 24.8


def test_reading_calibration_rounds_to_three_places():
    assert apply_reading_calibration(1, {"scale": 1 / 3}) == 0.333


def test_reading_calibration_without_settings_is_identity():
    assert apply_reading_calibration(42) == 42.0


@pytest.mark.parametrize(
    "datatype,count",
    [
        (RegisterDataType.BOOL, 1),
        (RegisterDataType.UINT16, 1),
        (RegisterDataType.INT16, 1),
        (RegisterDataType.UINT32, 2),
        (RegisterDataType.INT32, 2),
        (RegisterDataType.FLOAT32, 2),
    ],
)
def test_register_count(datatype, count):
    assert register_count(datatype) == count


def test_decode_integers():
    assert decode_registers([0xFFFF], RegisterDataType.UINT16) == 65535
    assert decode_registers([0xFFFF], RegisterDataType.INT16) == -1
    assert decode_registers([0x0001, 0x0002], RegisterDataType.UINT32) == 0x00010002
    assert decode_registers([0xFFFF, 0xFFFE], RegisterDataType.INT32) == -2
    assert decode_registers([5], RegisterDataType.BOOL) == 1
    assert decode_registers([0], "bool") == 0


def test_decode_float32_big_endian():
    high, low = struct.unpack(">HH", struct.pack(">f", 230.5))
    assert decode_registers([high, low], RegisterDataType.FLOAT32) == pytest.approx(230.5)


def test_decode_float32_nan_is_none():
    high, low = struct.unpack(">HH", struct.pack(">f", math.nan))
    assert decode_registers([high, low], RegisterDataType.FLOAT32) is None


def test_decode_empty_and_short():
    assert decode_registers([], RegisterDataType.UINT16) is None
    with pytest.raises(ValueError):
        decode_registers([1], RegisterDataType.UINT32)
