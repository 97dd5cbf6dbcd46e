"""
Command Cache

Last commanded coil states for write-only equipment, keyed by equipment id.
Each entry is replaced as a whole; a reader gets either the previous or the
new vector. Optionally persisted through a StateFileStore.
"""

import asyncio
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping

from fieldgate.common.logging_setup import get_service_logger
from fieldgate.common.state import StateFileStore

logger = get_service_logger("device.command_cache")

STATE_KEY = "coil_commands"


class CommandCache:
    """Shared last-commanded coil vectors"""

    def __init__(self, store: StateFileStore | None = None):
        self._vectors: dict[str, Mapping[int, bool]] = {}
        self._updated_at: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._store = store

        if store is not None:
            self._load(store.read(STATE_KEY, use_cache=False))

    def _load(self, data: dict) -> None:
        for equipment_id, entry in data.get("equipment", {}).items():
            try:
                states = {int(addr): bool(value) for addr, value in entry.get("states", {}).items()}
            except (AttributeError, TypeError, ValueError):
                logger.warning(f"Ignoring unreadable cached coil states for {equipment_id}")
                continue
            self._vectors[equipment_id] = MappingProxyType(states)
            self._updated_at[equipment_id] = entry.get("updated_at", "")
        if self._vectors:
            logger.info(f"Loaded cached coil commands for {len(self._vectors)} equipment")

    def get(self, equipment_id: int | str) -> Mapping[int, bool] | None:
        """Current vector (read-only), or None if nothing was commanded yet"""
        return self._vectors.get(str(equipment_id))

    def updated_at(self, equipment_id: int | str) -> str | None:
        return self._updated_at.get(str(equipment_id))

    async def apply(self, equipment_id: int | str, changes: Mapping[int, bool]) -> Mapping[int, bool]:
        """Merge changes into the vector and publish the result as a new vector"""
        key = str(equipment_id)
        async with self._lock:
            merged = dict(self._vectors.get(key, {}))
            merged.update({int(addr): bool(value) for addr, value in changes.items()})
            vector = MappingProxyType(merged)
            self._vectors[key] = vector
            self._updated_at[key] = datetime.now(timezone.utc).isoformat()
            self._persist()
            return vector

    async def clear(self, equipment_id: int | str) -> None:
        key = str(equipment_id)
        async with self._lock:
            self._vectors.pop(key, None)
            self._updated_at.pop(key, None)
            self._persist()

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.write(STATE_KEY, {
                "equipment": {
                    key: {
                        "states": {str(addr): value for addr, value in vector.items()},
                        "updated_at": self._updated_at.get(key, ""),
                    }
                    for key, vector in self._vectors.items()
                }
            })
        except OSError as e:
            logger.error(f"Failed to persist coil command cache: {e}")
