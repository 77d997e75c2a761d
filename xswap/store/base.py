"""
Record stores for xswap.

A store holds plain dict documents grouped in collections ("swaps",
"monitors"). Every mutation is a single-record read-modify-write under a
per-record lock and bumps the record's ``version``; there are no
multi-record transactions.
"""

import copy
import logging
import threading
from typing import Optional, Dict, Any, Callable, List

from ..errors import PersistenceError, RecordNotFound

log = logging.getLogger(__name__)

Mutation = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


class RecordStore:
    """Store interface used by SwapRepository."""

    def open(self):
        pass

    def close(self):
        pass

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def get(self, collection: str, record_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def insert(self, collection: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def upsert(self, collection: str, record_id: str, mutation: Mutation) -> Dict[str, Any]:
        raise NotImplementedError

    def list(self, collection: str,
             predicate: Callable[[Dict[str, Any]], bool] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def append_history(self, collection: str, record_id: str,
                       event: Dict[str, Any]) -> Dict[str, Any]:
        """Append one entry to ``history`` of an existing record."""
        def _append(data):
            if not data:
                raise RecordNotFound(f"{collection}/{record_id} not found",
                                     collection=collection, record_id=record_id)
            data.setdefault("history", []).append(copy.deepcopy(event))
            return data
        return self.upsert(collection, record_id, _append)


class MemoryStore(RecordStore):
    """
    In-process store.

    Callers always get deep copies; a mutation function receives a private
    copy and its result replaces the stored record atomically.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()                 # Protects _data and _record_locks
        self._record_locks: Dict[tuple, threading.Lock] = {}
        self._closed = False

    def _record_lock(self, collection: str, record_id: str) -> threading.Lock:
        key = (collection, record_id)
        with self._lock:
            lock = self._record_locks.get(key)
            if lock is None:
                lock = self._record_locks[key] = threading.Lock()
            return lock

    def _check_open(self):
        if self._closed:
            raise PersistenceError("Store is closed")

    def _commit(self):
        """Hook run under ``_lock`` after every change."""

    def open(self):
        self._closed = False

    def close(self):
        self._closed = True

    def get(self, collection: str, record_id: str) -> Dict[str, Any]:
        self._check_open()
        with self._lock:
            data = self._data.get(collection, {}).get(record_id)
            if data is None:
                raise RecordNotFound(f"{collection}/{record_id} not found",
                                     collection=collection, record_id=record_id)
            return copy.deepcopy(data)

    def insert(self, collection: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self._check_open()
        with self._lock:
            records = self._data.setdefault(collection, {})
            if record_id in records:
                raise PersistenceError(f"{collection}/{record_id} already exists",
                                       collection=collection, record_id=record_id)
            stored = copy.deepcopy(data)
            stored["version"] = 1
            records[record_id] = stored
            try:
                self._commit()
            except PersistenceError:
                records.pop(record_id, None)
                raise
            return copy.deepcopy(stored)

    def upsert(self, collection: str, record_id: str, mutation: Mutation) -> Dict[str, Any]:
        """
        Atomic read-modify-write of one record.

        ``mutation`` gets a copy of the current record ({} when absent) and
        returns the new record, or None to keep its in-place edits.
        """
        self._check_open()
        with self._record_lock(collection, record_id):
            with self._lock:
                current = self._data.get(collection, {}).get(record_id)
                working = copy.deepcopy(current) if current is not None else {}
                version = int(working.get("version", 0))

            result = mutation(working)
            updated = working if result is None else result
            updated["version"] = version + 1

            with self._lock:
                records = self._data.setdefault(collection, {})
                previous = records.get(record_id)
                records[record_id] = copy.deepcopy(updated)
                try:
                    self._commit()
                except PersistenceError:
                    if previous is None:
                        records.pop(record_id, None)
                    else:
                        records[record_id] = previous
                    raise
            return copy.deepcopy(updated)

    def list(self, collection: str,
             predicate: Callable[[Dict[str, Any]], bool] = None) -> List[Dict[str, Any]]:
        self._check_open()
        with self._lock:
            records = [copy.deepcopy(r) for r in self._data.get(collection, {}).values()]
        if predicate:
            records = [r for r in records if predicate(r)]
        return records
