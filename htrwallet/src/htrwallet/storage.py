"""
Durable key-value store used to persist wallet data.

Values are strings; structured data is stored as JSON. No transactional
guarantees are assumed beyond single-key atomicity.
"""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from loguru import logger


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> str | None:
        """Get value for key, None if missing"""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Set value for key"""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove key if present"""

    def get_json(self, key: str) -> Any:
        raw = self.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value))

    def get_int(self, key: str, default: int) -> int:
        raw = self.get(key)
        if raw is None:
            return default
        return int(raw)

    def has(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryStore(KeyValueStore):
    """In-process store, mostly useful for tests and one-shot commands."""

    def __init__(self, data: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(data or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """
    Store backed by a single JSON file.

    Every write rewrites the file through a temporary file and os.replace, so
    a crash leaves either the old or the new content.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._data: dict[str, str] = {}
        if self.path.exists():
            self._data = json.loads(self.path.read_text())
            logger.debug(f"Loaded {len(self._data)} keys from {self.path}")

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data))
        os.chmod(tmp_path, 0o600)  # Restrict permissions
        os.replace(tmp_path, self.path)
