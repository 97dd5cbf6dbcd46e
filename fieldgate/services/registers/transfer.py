"""
Register map import/export.

Export envelope:
    {"version": "1.0", "exported_at": ISO8601, "mappings": [...]}
"""

import json
from datetime import datetime, timezone
from typing import Any

from fieldgate.common.exceptions import ValidationError
from fieldgate.common.logging_setup import get_service_logger

from .mapping import RegisterMap, RegisterMapping, validate_register_map

logger = get_service_logger("registers.transfer")

EXPORT_VERSION = "1.0"


def export_register_map(mappings: RegisterMap) -> dict:
    """Serialize a register map to the export envelope (register as decimal string)."""
    return {
        "version": EXPORT_VERSION,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "mappings": [m.to_dict() for m in mappings],
    }


def export_register_map_json(mappings: RegisterMap, indent: int | None = 2) -> str:
    return json.dumps(export_register_map(mappings), indent=indent)


def import_register_map(payload: Any) -> RegisterMap:
    """
    Import a register map.

    Accepts a JSON string, a bare list of mappings, or an object with a
    `mappings` list. Entries without `name` or `register` are dropped.
    The remaining entries must be valid.

    Raises:
        ValidationError: unparseable payload or invalid entries
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Register map is not valid JSON: {e}")

    if isinstance(payload, dict):
        entries = payload.get("mappings")
        if not isinstance(entries, list):
            raise ValidationError("Register map object must contain a 'mappings' list")
    elif isinstance(payload, list):
        entries = payload
    else:
        raise ValidationError(
            f"Register map must be a list or an object with 'mappings', got {type(payload).__name__}"
        )

    kept = []
    dropped = 0
    for entry in entries:
        if isinstance(entry, RegisterMapping):
            kept.append(entry)
            continue
        if not isinstance(entry, dict) or not _present(entry.get("name")) or not _present(entry.get("register")):
            dropped += 1
            continue
        entry = dict(entry)
        entry["register"] = _register_string(entry["register"])
        kept.append(entry)

    if dropped:
        logger.info(
            f"Dropped {dropped} mapping(s) without name or register",
            extra={"dropped": dropped, "kept": len(kept)},
        )

    return validate_register_map(kept)


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _register_string(value: Any) -> str:
    # 5, 5.0 and "5" all become "5"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()
