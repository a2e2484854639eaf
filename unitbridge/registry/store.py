"""
Namespaced persistent key-value store.

All entries live in one JSON file (default ~/.unitbridge/slots.json). Every
write replaces the file atomically, so a value returned by put() is durable
before the caller uses it.
"""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..exceptions import StoreError

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class JsonStore:
    """
    Key-value store backed by a single JSON file.

    Keys are prefixed with `namespace` on disk so several components (or
    several bridge instances) can share one file without collisions.
    Any I/O or decode failure raises StoreError.
    """

    def __init__(self, path: Path, namespace: str = ""):
        self.path = Path(path)
        self.namespace = namespace
        self._entries: Optional[Dict[str, Any]] = None

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def _load(self) -> Dict[str, Any]:
        if self._entries is not None:
            return self._entries

        if not self.path.exists():
            self._entries = {}
            return self._entries

        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"Cannot read store {self.path}: {e}") from e

        entries = data.get("entries") if isinstance(data, dict) else None
        if not isinstance(entries, dict):
            raise StoreError(f"Store {self.path} has no entries table")

        self._entries = entries
        logger.debug(f"Loaded {len(entries)} entries from {self.path}")
        return self._entries

    def _save(self, entries: Dict[str, Any]) -> None:
        data = {
            "version": STORE_VERSION,
            "updated": time.time(),
            "entries": entries,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, 'w') as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StoreError(f"Cannot write store {self.path}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(self._full_key(key), default)

    def put(self, key: str, value: Any) -> None:
        """Store a value and flush it to disk before returning."""
        entries = dict(self._load())
        entries[self._full_key(key)] = value
        self._save(entries)
        self._entries = entries

    def delete(self, key: str) -> bool:
        """Remove a key. Returns False if it did not exist."""
        entries = dict(self._load())
        if entries.pop(self._full_key(key), None) is None:
            return False
        self._save(entries)
        self._entries = entries
        return True

    def keys(self, prefix: str = "") -> List[str]:
        """All keys (without namespace) starting with `prefix`."""
        full_prefix = self._full_key(prefix)
        skip = len(self.namespace)
        return sorted(k[skip:] for k in self._load() if k.startswith(full_prefix))

    def reload(self) -> None:
        """Forget the cached contents; the next access re-reads the file."""
        self._entries = None
