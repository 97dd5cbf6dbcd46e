"""
Register Mapping Model

Typed description of a device's addressable points and the helpers that
validate a register map and derive its controllable coil channels.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fieldgate.common.config import AccessMode, RegisterDataType, RegisterType
from fieldgate.common.exceptions import ValidationError


class RegisterMapping(BaseModel):
    """One addressable point on a device."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, use_enum_values=False)

    name: str
    register: int = Field(ge=0, le=65535)  # zero-based protocol address
    type: RegisterType
    data_type: RegisterDataType = Field(alias="dataType")
    access: AccessMode
    label: Optional[str] = None  # display override
    unit: Optional[str] = None
    scale: Optional[float] = None
    offset: Optional[float] = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
        return value

    @field_validator("register", mode="before")
    @classmethod
    def _register_from_string(cls, value: Any) -> Any:
        # Stored maps keep the address as a decimal string
        if isinstance(value, str):
            value = value.strip()
            try:
                return int(value, 10)
            except ValueError:
                raise ValueError(f"register is not a decimal address: {value!r}")
        if isinstance(value, bool):
            raise ValueError("register must be an integer")
        return value

    @model_validator(mode="after")
    def _coil_is_bool(self) -> "RegisterMapping":
        if self.type == RegisterType.COIL and self.data_type != RegisterDataType.BOOL:
            raise ValueError(
                f"coil mapping '{self.name}' must use dataType 'bool', "
                f"got '{self.data_type.value}'"
            )
        return self

    @property
    def controllable(self) -> bool:
        return self.type == RegisterType.COIL and self.access == AccessMode.READWRITE

    @property
    def display_name(self) -> str:
        return self.label or self.name

    def to_dict(self) -> dict:
        """Plain-object form used for export and storage (register as string)."""
        data = {
            "name": self.name,
            "register": str(self.register),
            "type": self.type.value,
            "dataType": self.data_type.value,
            "access": self.access.value,
        }
        for key in ("label", "unit", "scale", "offset"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


# An ordered register map
RegisterMap = list[RegisterMapping]


def _format_errors(prefix: str, err: pydantic.ValidationError) -> list[str]:
    errors = []
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", ())) or "mapping"
        errors.append(f"{prefix}{loc}: {item.get('msg')}")
    return errors


def parse_mapping(data: Any, index: int | None = None) -> RegisterMapping:
    """Validate one mapping (dict or RegisterMapping)."""
    if isinstance(data, RegisterMapping):
        return data
    prefix = f"mappings[{index}]." if index is not None else ""
    if not isinstance(data, dict):
        raise ValidationError(
            f"{prefix or 'mapping '}must be an object",
            errors=[f"{prefix}must be an object"],
        )
    try:
        return RegisterMapping.model_validate(data)
    except pydantic.ValidationError as e:
        errors = _format_errors(prefix, e)
        raise ValidationError(f"Invalid register mapping: {errors[0]}", errors=errors)


def validate_register_map(mappings: Iterable[Any]) -> RegisterMap:
    """
    Validate a register map.

    Every entry is checked and all problems are reported together.
    Duplicate (register, type) pairs are rejected.

    Raises:
        ValidationError: with one message per problem in `errors`
    """
    result: RegisterMap = []
    errors: list[str] = []
    seen: dict[tuple[int, RegisterType], int] = {}

    for index, entry in enumerate(mappings):
        try:
            mapping = parse_mapping(entry, index)
        except ValidationError as e:
            errors.extend(e.errors)
            continue

        key = (mapping.register, mapping.type)
        if key in seen:
            errors.append(
                f"mappings[{index}]: duplicate {mapping.type.value} register "
                f"{mapping.register} (first defined at mappings[{seen[key]}])"
            )
            continue
        seen[key] = index
        result.append(mapping)

    if errors:
        raise ValidationError(
            f"Register map has {len(errors)} error(s): {errors[0]}", errors=errors
        )
    return result


@dataclass(frozen=True)
class CoilChannel:
    """A controllable coil derived from a register map"""
    address: int
    name: str


def _field(entry: Any, name: str, default: Any = None) -> Any:
    if isinstance(entry, dict):
        return entry.get(name, default)
    return getattr(entry, name, default)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def controllable_channels(mappings: Iterable[Any]) -> list[CoilChannel]:
    """
    Coil channels that can be switched (type coil, access readwrite).

    Accepts validated mappings or raw stored dicts. The address is the
    integer form of `register`; an unparseable register falls back to the
    entry's position in the full map.
    """
    channels = []
    for index, entry in enumerate(mappings):
        if _enum_value(_field(entry, "type")) != RegisterType.COIL.value:
            continue
        if _enum_value(_field(entry, "access")) != AccessMode.READWRITE.value:
            continue

        raw = _field(entry, "register")
        try:
            address = int(str(raw).strip(), 10)
        except (TypeError, ValueError):
            address = index

        name = _field(entry, "label") or _field(entry, "name") or f"Coil {address}"
        channels.append(CoilChannel(address=address, name=name))
    return channels
