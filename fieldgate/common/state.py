"""
Persistent State Files

JSON state files kept under a state directory. Writes go to a temp file
first and are renamed into place, so a reader sees either the old or the
new document.
"""

import json
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path


def default_state_dir() -> Path:
    """State directory from FIELDGATE_STATE_DIR, else a per-user default"""
    env_dir = os.environ.get("FIELDGATE_STATE_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".fieldgate" / "state"


class StateFileStore:
    """
    File-based key/value state.

    Each key becomes `<state_dir>/<key>.json`. Recently read documents are
    cached for a short TTL to avoid file I/O on every access.
    """

    def __init__(self, state_dir: str | Path | None = None, cache_ttl: float = 0.1):
        self.state_dir = Path(state_dir) if state_dir else default_state_dir()
        self._cache: dict[str, tuple[dict, float]] = {}
        self._cache_ttl = cache_ttl
        self._lock = threading.Lock()

    def _ensure_dir(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        return self.state_dir / f"{key}.json"

    def write(self, key: str, data: dict) -> None:
        """
        Write state with atomic rename.

        Args:
            key: State key (becomes filename without .json)
            data: Dictionary to serialize as JSON
        """
        self._ensure_dir()
        path = self._get_path(key)

        data_with_meta = {
            **data,
            "_updated_at": datetime.now(timezone.utc).isoformat(),
        }

        temp_path = path.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data_with_meta, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        temp_path.replace(path)

        with self._lock:
            self._cache[key] = (data_with_meta, time.time())

    def read(self, key: str, use_cache: bool = True) -> dict:
        """
        Read state from file with optional caching.

        Returns:
            Dictionary from JSON file, or empty dict if missing or unreadable
        """
        if use_cache:
            with self._lock:
                if key in self._cache:
                    data, timestamp = self._cache[key]
                    if time.time() - timestamp < self._cache_ttl:
                        return data

        path = self._get_path(key)
        if not path.exists():
            return {}

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError):
            return {}

        with self._lock:
            self._cache[key] = (data, time.time())
        return data

    def delete(self, key: str) -> bool:
        """Delete state file. Returns True if a file was removed."""
        path = self._get_path(key)

        with self._lock:
            self._cache.pop(key, None)

        if path.exists():
            path.unlink()
            return True
        return False

    def list_keys(self) -> list[str]:
        self._ensure_dir()
        return sorted(p.stem for p in self.state_dir.glob("*.json"))
