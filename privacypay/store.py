# privacypay/store.py
"""
Key-value string storage for the device inbox key.

Mirrors the browser's localStorage: string keys to string values, scoped to
one origin (here: one JSON file). The vault treats a store that cannot be
read or written as `StorageUnavailable` and falls back to an ephemeral key.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

from privacypay.errors import StorageUnavailable


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str) -> None: ...
    def set_many(self, values: Dict[str, str]) -> None: ...
    def remove(self, key: str) -> None: ...


class MemoryStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def set_many(self, values: Dict[str, str]) -> None:
        self._data.update(values)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class JsonFileStore:
    """One JSON object on disk. Every write rewrites the file atomically."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _state(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StorageUnavailable(f"Cannot read key store {self.path}: {e}") from e
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _save(self, st: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(st, indent=2))
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageUnavailable(f"Cannot write key store {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        return self._state().get(key)

    def set(self, key: str, value: str) -> None:
        st = self._state()
        st[key] = value
        self._save(st)

    def set_many(self, values: Dict[str, str]) -> None:
        """All of `values` land in one file rewrite, or none do."""
        st = self._state()
        st.update(values)
        self._save(st)

    def remove(self, key: str) -> None:
        st = self._state()
        if st.pop(key, None) is not None:
            self._save(st)


class UnavailableStore:
    """Stands in for a host with no persistence medium (server-side rendering, locked-down sandbox)."""

    def get(self, key: str) -> Optional[str]:
        raise StorageUnavailable()

    def set(self, key: str, value: str) -> None:
        raise StorageUnavailable()

    def set_many(self, values: Dict[str, str]) -> None:
        raise StorageUnavailable()

    def remove(self, key: str) -> None:
        raise StorageUnavailable()
