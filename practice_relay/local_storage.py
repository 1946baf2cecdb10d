"""
Durable local key-value storage.

Each key is stored as a JSON file in a directory (default ``~/.practice_relay``).
Writes go to a temporary file first and are moved into place, so a crash mid-write
leaves the previous value intact.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from loguru import logger


class JsonFileStorage:
    """Key-value storage backed by one JSON file per key."""

    def __init__(self, directory: Path):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Any | None:
        """Load a value, returning None when it is absent or unreadable."""
        filepath = self._path(key)
        if not filepath.exists():
            return None

        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Could not read {} from local storage: {}", key, exc)
            return None

    def set(self, key: str, value: Any) -> Path:
        """Persist a value atomically."""
        filepath = self._path(key)
        tmp_path = filepath.with_suffix(".json.tmp")

        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f, indent=2)
        os.replace(tmp_path, filepath)

        return filepath

    def delete(self, key: str) -> bool:
        filepath = self._path(key)
        if filepath.exists():
            filepath.unlink()
            return True
        return False
