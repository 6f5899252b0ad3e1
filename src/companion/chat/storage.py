"""Key/value storage backends for the conversation log and memory.

The log and memory never touch the filesystem directly; they receive a
storage object exposing ``get`` / ``set`` / ``remove`` by key.  Two
backends are provided:

1. **MemoryStorage**: a dict, for tests and throwaway sessions.
2. **JsonFileStorage**: one JSON object on disk holding every key, so
   state survives restarts without requiring a database.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    """Protocol that all storage backends implement."""

    def get(self, key: str) -> Optional[str]:
        """Return the stored text for ``key`` or None."""
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class MemoryStorage:
    """In-process storage backed by a plain dict."""

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStorage:
    """Storage persisted as a single JSON object file.

    Parameters
    ----------
    path : Path or str
        Location of the JSON file.  Created on first write if it does
        not exist.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            # Corrupted file, start fresh.
            logger.warning("Storage file %s is corrupted, ignoring it", self.path)
            return {}
        if not isinstance(raw, dict):
            return {}
        return {k: v for k, v in raw.items() if isinstance(v, str)}

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)
