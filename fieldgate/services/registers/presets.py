"""
Register Presets Catalog

Named device templates that expand into concrete register maps. Used to
seed new equipment configurations.
"""

import copy
from dataclasses import dataclass, field

from fieldgate.common.config import AccessMode, Protocol, RegisterDataType, RegisterType
from fieldgate.common.exceptions import ValidationError

from .mapping import RegisterMap, RegisterMapping, validate_register_map


# Configuration holding registers of the Waveshare Modbus RTU relay family.
# Every channel-count variant of the family uses these same two addresses.
BAUD_RATE_CONFIG_REGISTER = 8192  # 0x2000
DEVICE_ADDRESS_CONFIG_REGISTER = 16384  # 0x4000

RELAY_CHANNEL_COUNTS = (4, 6, 8, 16, 32)


def expand_preset(channel_count: int) -> RegisterMap:
    """
    Build the register map of an N-channel relay module.

    Coils "Relay 1".."Relay N" at addresses 0..N-1 followed by the baud
    rate and device address configuration registers.
    """
    if isinstance(channel_count, bool) or not isinstance(channel_count, int) or channel_count < 1:
        raise ValidationError(f"Channel count must be a positive integer, got {channel_count!r}")

    mappings = [
        RegisterMapping(
            name=f"Relay {i + 1}",
            register=i,
            type=RegisterType.COIL,
            data_type=RegisterDataType.BOOL,
            access=AccessMode.READWRITE,
        )
        for i in range(channel_count)
    ]
    mappings.append(RegisterMapping(
        name="Baud Rate Config",
        register=BAUD_RATE_CONFIG_REGISTER,
        type=RegisterType.HOLDING,
        data_type=RegisterDataType.UINT16,
        access=AccessMode.READWRITE,
    ))
    mappings.append(RegisterMapping(
        name="Device Address Config",
        register=DEVICE_ADDRESS_CONFIG_REGISTER,
        type=RegisterType.HOLDING,
        data_type=RegisterDataType.UINT16,
        access=AccessMode.READWRITE,
    ))
    return mappings


@dataclass
class DeviceTemplate:
    """A named preset with its default connection parameters"""
    key: str
    name: str
    category: str
    manufacturer: str
    model: str
    description: str
    register_mappings: RegisterMap = field(default_factory=list)
    protocol: Protocol = Protocol.MODBUS
    default_slave_id: int = 1
    default_polling_interval_ms: int = 1000

    def summary(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "category": self.category,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "description": self.description,
            "protocol": self.protocol.value,
            "default_slave_id": self.default_slave_id,
            "default_polling_interval_ms": self.default_polling_interval_ms,
            "register_count": len(self.register_mappings),
        }


def _relay_template(channels: int) -> DeviceTemplate:
    return DeviceTemplate(
        key=f"waveshare-relay-{channels}ch",
        name=f"Waveshare {channels}-Channel Relay",
        category="relay",
        manufacturer="Waveshare",
        model=f"{channels}CH-RTU",
        description=(
            f"Waveshare Modbus RTU {channels}-channel relay module with baud "
            "rate and address configuration registers"
        ),
        register_mappings=expand_preset(channels),
    )


def _points(*rows: tuple[str, int, str, str, str]) -> RegisterMap:
    return validate_register_map(
        {"name": n, "register": r, "type": t, "dataType": d, "access": a}
        for n, r, t, d, a in rows
    )


def _build_catalog() -> dict[str, DeviceTemplate]:
    templates = [_relay_template(n) for n in RELAY_CHANNEL_COUNTS]

    templates.append(DeviceTemplate(
        key="generic-th-sensor",
        name="Generic Temperature/Humidity Sensor",
        category="sensor",
        manufacturer="Generic",
        model="TH-SENSOR",
        description="Generic Modbus temperature and humidity sensor",
        default_polling_interval_ms=5000,
        register_mappings=_points(
            ("Temperature", 0, "input", "int16", "read"),
            ("Humidity", 1, "input", "uint16", "read"),
        ),
    ))
    templates.append(DeviceTemplate(
        key="generic-power-meter",
        name="Generic Power Meter",
        category="meter",
        manufacturer="Generic",
        model="PWR-METER",
        description="Generic Modbus power meter with voltage, current, power and energy readings",
        register_mappings=_points(
            ("Voltage", 0, "input", "float32", "read"),
            ("Current", 2, "input", "float32", "read"),
            ("Power", 4, "input", "float32", "read"),
            ("Energy", 6, "input", "float32", "read"),
        ),
    ))
    templates.append(DeviceTemplate(
        key="generic-vfd",
        name="Generic VFD Controller",
        category="controller",
        manufacturer="Generic",
        model="VFD-CTRL",
        description="Generic Variable Frequency Drive with frequency control and monitoring",
        default_polling_interval_ms=500,
        register_mappings=_points(
            ("Frequency Setpoint", 0, "holding", "uint16", "readwrite"),
            ("Actual Frequency", 1, "input", "uint16", "read"),
            ("Motor Current", 2, "input", "uint16", "read"),
            ("Motor Voltage", 3, "input", "uint16", "read"),
            ("Run/Stop Command", 0, "coil", "bool", "readwrite"),
        ),
    ))

    return {t.key: t for t in templates}


PRESET_CATALOG: dict[str, DeviceTemplate] = _build_catalog()


def get_template(key: str) -> DeviceTemplate:
    """Return a deep copy of a catalog template."""
    template = PRESET_CATALOG.get(key)
    if template is None:
        raise ValidationError(
            f"Unknown preset: {key!r}",
            errors=[f"Unknown preset {key!r}; available: {', '.join(PRESET_CATALOG)}"],
        )
    return copy.deepcopy(template)


def load_preset(key: str) -> RegisterMap:
    """
    Register map of a named preset.

    The returned list is a deep copy; changing it never changes the catalog.
    """
    return get_template(key).register_mappings


def list_presets(category: str | None = None) -> list[dict]:
    """Summaries of the catalog, optionally filtered by category"""
    return [
        t.summary()
        for t in PRESET_CATALOG.values()
        if category is None or t.category == category
    ]
