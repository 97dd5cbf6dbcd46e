"""Relay presets and the template catalog."""

import pytest

from fieldgate.common.config import AccessMode, RegisterDataType, RegisterType
from fieldgate.common.exceptions import ValidationError
from fieldgate.services.registers.mapping import controllable_channels
from fieldgate.services.registers.presets import (
    BAUD_RATE_CONFIG_REGISTER,
    DEVICE_ADDRESS_CONFIG_REGISTER,
    PRESET_CATALOG,
    expand_preset,
    get_template,
    list_presets,
    load_preset,
)


@pytest.mark.parametrize("channels", [4, 6, 8, 16, 32])
def test_expand_preset_layout(channels):
    mappings = expand_preset(channels)

    assert len(mappings) == channels + 2
    coils = mappings[:channels]
    assert [m.register for m in coils] == list(range(channels))
    assert [m.name for m in coils] == [f"Relay {i}" for i in range(1, channels + 1)]
    assert all(m.type == RegisterType.COIL for m in coils)
    assert all(m.data_type == RegisterDataType.BOOL for m in coils)
    assert all(m.access == AccessMode.READWRITE for m in coils)

    baud, address = mappings[channels:]
    assert baud.register == BAUD_RATE_CONFIG_REGISTER == 8192
    assert address.register == DEVICE_ADDRESS_CONFIG_REGISTER == 16384
    assert baud.type == address.type == RegisterType.HOLDING
    assert baud.data_type == address.data_type == RegisterDataType.UINT16


def test_expand_preset_channels_are_controllable():
    channels = controllable_channels(expand_preset(8))

    assert [c.address for c in channels] == list(range(8))
    assert channels[0].name == "Relay 1"


@pytest.mark.parametrize("bad", [0, -1, True, "8", 2.5])
def test_expand_preset_rejects_bad_counts(bad):
    with pytest.raises(ValidationError):
        expand_preset(bad)


def test_load_preset_returns_deep_copy():
    first = load_preset("waveshare-relay-4ch")
    first.clear()

    second = load_preset("waveshare-relay-4ch")
    assert len(second) == 6
    assert len(PRESET_CATALOG["waveshare-relay-4ch"].register_mappings) == 6


def test_get_template_is_independent_of_catalog():
    template = get_template("generic-vfd")
    template.name = "Changed"
    template.register_mappings.pop()

    assert PRESET_CATALOG["generic-vfd"].name == "Generic VFD Controller"
    assert len(PRESET_CATALOG["generic-vfd"].register_mappings) == 5


def test_unknown_preset():
    with pytest.raises(ValidationError) as exc:
        load_preset("no-such-device")
    assert "available" in exc.value.errors[0]


def test_vfd_keeps_coil_and_holding_at_same_address():
    mappings = load_preset("generic-vfd")
    zero = [m for m in mappings if m.register == 0]

    assert {m.type for m in zero} == {RegisterType.HOLDING, RegisterType.COIL}


def test_list_presets_filters_by_category():
    relays = list_presets("relay")

    assert {p["key"] for p in relays} == {
        "waveshare-relay-4ch",
        "waveshare-relay-6ch",
        "waveshare-relay-8ch",
        "waveshare-relay-16ch",
        "waveshare-relay-32ch",
    }
    assert all(p["category"] == "relay" for p in relays)
    assert len(list_presets()) == len(PRESET_CATALOG)
    assert list_presets("nothing") == []
