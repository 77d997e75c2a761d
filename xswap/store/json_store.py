"""
JSON file store.

Keeps every collection in one JSON document on disk and rewrites it
atomically (temp file + os.replace) after each mutation. Suited to a
single coordinator process.
"""

import json
import logging
import os
import tempfile

from ..errors import PersistenceError
from .base import MemoryStore

log = logging.getLogger(__name__)


class JSONFileStore(MemoryStore):
    """MemoryStore persisted to a JSON document."""

    def __init__(self, path: str):
        super().__init__()
        self.path = os.path.expanduser(path)
        self._closed = True

    def open(self):
        """Load the document from disk (missing file = empty store)."""
        with self._lock:
            if os.path.exists(self.path):
                try:
                    with open(self.path, "r") as f:
                        self._data = json.load(f)
                except (OSError, ValueError) as e:
                    raise PersistenceError(f"Failed to load {self.path}: {e}")
                count = sum(len(v) for v in self._data.values())
                log.info(f"Loaded {count} records from {self.path}")
            else:
                self._data = {}
            self._closed = False

    def close(self):
        with self._lock:
            self._closed = True

    def _commit(self):
        directory = os.path.dirname(self.path) or "."
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".xswap-", suffix=".json", dir=directory)
            with os.fdopen(fd, "w") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            log.error(f"Failed to save {self.path}: {e}")
            raise PersistenceError(f"Failed to save {self.path}: {e}")
