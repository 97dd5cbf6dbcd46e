"""
Register Service - register map model, presets and import/export

Responsibilities:
- Validate register maps (types, access modes, data types, duplicates)
- Derive controllable coil channels
- Expand relay presets and serve the template catalog
- Import and export register maps as JSON
"""

from .mapping import (
    CoilChannel,
    RegisterMap,
    RegisterMapping,
    controllable_channels,
    parse_mapping,
    validate_register_map,
)
from .presets import (
    BAUD_RATE_CONFIG_REGISTER,
    DEVICE_ADDRESS_CONFIG_REGISTER,
    PRESET_CATALOG,
    DeviceTemplate,
    expand_preset,
    get_template,
    list_presets,
    load_preset,
)
from .transfer import export_register_map, export_register_map_json, import_register_map

__all__ = [
    "CoilChannel",
    "RegisterMap",
    "RegisterMapping",
    "controllable_channels",
    "parse_mapping",
    "validate_register_map",
    "BAUD_RATE_CONFIG_REGISTER",
    "DEVICE_ADDRESS_CONFIG_REGISTER",
    "PRESET_CATALOG",
    "DeviceTemplate",
    "expand_preset",
    "get_template",
    "list_presets",
    "load_preset",
    "export_register_map",
    "export_register_map_json",
    "import_register_map",
]
