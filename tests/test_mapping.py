"""Register mapping validation and coil channel derivation."""

import pytest

from fieldgate.common.config import RegisterDataType, RegisterType
from fieldgate.common.exceptions import ValidationError
from fieldgate.services.registers.mapping import (
    CoilChannel,
    RegisterMapping,
    controllable_channels,
    parse_mapping,
    validate_register_map,
)


def _mapping(**overrides):
    data = {"name": "Temperature", "register": "10", "type": "input", "dataType": "int16", "access": "read"}
    data.update(overrides)
    return data


def test_parse_mapping_accepts_string_register():
    mapping = parse_mapping(_mapping())

    assert mapping.register == 10
    assert mapping.type == RegisterType.INPUT
    assert mapping.data_type == RegisterDataType.INT16


def test_parse_mapping_strips_name():
    assert parse_mapping(_mapping(name="  Temp  ")).name == "Temp"


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "   "},
        {"register": "-1"},
        {"register": "70000"},
        {"register": 65536},
        {"register": "0x10"},
        {"register": True},
        {"type": "analog"},
        {"dataType": "float64"},
        {"access": "admin"},
        {"type": "coil", "dataType": "uint16"},
    ],
)
def test_parse_mapping_rejects(overrides):
    with pytest.raises(ValidationError):
        parse_mapping(_mapping(**overrides))


def test_parse_mapping_rejects_non_object():
    with pytest.raises(ValidationError):
        parse_mapping(["name", 1], index=0)


def test_mapping_is_frozen():
    mapping = parse_mapping(_mapping())
    with pytest.raises(Exception):
        mapping.name = "Other"


def test_to_dict_keeps_register_as_string():
    data = parse_mapping(_mapping(unit="°C", scale=0.1)).to_dict()

    assert data == {
        "name": "Temperature",
        "register": "10",
        "type": "input",
        "dataType": "int16",
        "access": "read",
        "unit": "°C",
        "scale": 0.1,
    }


def test_validate_register_map_reports_every_error():
    with pytest.raises(ValidationError) as exc:
        validate_register_map([
            _mapping(name=""),
            _mapping(name="Ok", register="1"),
            _mapping(name="Bad", access="nope"),
        ])

    assert len(exc.value.errors) == 2
    assert exc.value.errors[0].startswith("mappings[0]")
    assert exc.value.errors[1].startswith("mappings[2]")


def test_validate_register_map_rejects_duplicate_address_and_type():
    with pytest.raises(ValidationError) as exc:
        validate_register_map([_mapping(name="A"), _mapping(name="B")])

    assert "duplicate input register 10" in exc.value.errors[0]


def test_same_address_in_different_tables_is_allowed():
    mappings = validate_register_map([
        _mapping(name="Setpoint", register="0", type="holding", dataType="uint16", access="readwrite"),
        _mapping(name="Run", register="0", type="coil", dataType="bool", access="readwrite"),
    ])

    assert len(mappings) == 2


def test_controllable_channels_filters_coil_readwrite():
    mappings = validate_register_map([
        _mapping(name="Run", register="3", type="coil", dataType="bool", access="readwrite", label="Pump"),
        _mapping(name="Alarm", register="4", type="coil", dataType="bool", access="read"),
        _mapping(name="Level", register="0", type="holding", dataType="uint16", access="readwrite"),
    ])

    assert controllable_channels(mappings) == [CoilChannel(address=3, name="Pump")]


def test_controllable_channels_from_raw_dicts_falls_back_to_position():
    raw = [
        {"name": "Level", "register": "0", "type": "holding", "access": "read"},
        {"name": "Valve", "register": "abc", "type": "coil", "access": "readwrite"},
    ]

    assert controllable_channels(raw) == [CoilChannel(address=1, name="Valve")]


def test_controllable_property():
    mapping = RegisterMapping(name="R", register=0, type="coil", dataType="bool", access="readwrite")
    assert mapping.controllable
    assert mapping.display_name == "R"


def test_parse_mapping_accepts_highest_address():
    assert parse_mapping(_mapping(register="65535")).register == 65535
