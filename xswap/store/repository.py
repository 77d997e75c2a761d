"""
Typed access to swaps and monitors on top of a RecordStore.

Every store call goes through ``_with_retry``: retryable PersistenceErrors
are retried with exponential backoff, anything else propagates. An
operation is not complete until the store accepted it.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional, Callable, List

from ..core import ChainType, SwapStatus
from ..errors import PersistenceError, ValidationError
from ..models import SwapRecord, SwapEvent, EscrowMonitor, monitor_id
from .base import RecordStore, MemoryStore
from .json_store import JSONFileStore

log = logging.getLogger(__name__)

SWAPS = "swaps"
MONITORS = "monitors"

DEFAULT_DB_PATH = "~/.xswap/swaps.json"


@dataclass
class StoreConfig:
    """Persistence configuration."""
    backend: str = "json"               # "json" or "memory"
    path: str = DEFAULT_DB_PATH
    retry_attempts: int = 3
    retry_backoff: float = 0.2          # Seconds, doubled per attempt

    @classmethod
    def from_env(cls) -> "StoreConfig":
        return cls(
            backend=os.environ.get("XSWAP_DB_BACKEND", "json"),
            path=os.environ.get("XSWAP_DB_PATH", DEFAULT_DB_PATH),
            retry_attempts=int(os.environ.get("XSWAP_DB_RETRY_ATTEMPTS", "3")),
        )


def open_store(config: StoreConfig) -> RecordStore:
    """Build and open the configured store."""
    if config.backend == "memory":
        store = MemoryStore()
    elif config.backend == "json":
        store = JSONFileStore(config.path)
    else:
        raise ValidationError(f"Unknown store backend: {config.backend}")
    store.open()
    return store


class SwapRepository:
    """SwapRecord / EscrowMonitor persistence with retry."""

    def __init__(self, store: RecordStore, config: StoreConfig = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.config = config or StoreConfig(backend="memory")
        self._sleep = sleep

    def _with_retry(self, operation: str, fn):
        attempts = max(1, self.config.retry_attempts)
        for attempt in range(attempts):
            try:
                return fn()
            except PersistenceError as e:
                if not e.retryable or attempt == attempts - 1:
                    raise
                delay = self.config.retry_backoff * (2 ** attempt)
                log.warning(f"{operation} failed ({e.message}), retry {attempt + 1}/{attempts - 1} in {delay:.2f}s")
                self._sleep(delay)

    def close(self):
        self.store.close()

    # =========================================================================
    # Swaps
    # =========================================================================

    def create_swap(self, record: SwapRecord) -> SwapRecord:
        data = self._with_retry(
            f"create swap {record.swap_id}",
            lambda: self.store.insert(SWAPS, record.swap_id, record.to_dict(include_secret=True)),
        )
        return SwapRecord.from_dict(data)

    def get_swap(self, swap_id: str) -> SwapRecord:
        data = self._with_retry(f"get swap {swap_id}", lambda: self.store.get(SWAPS, swap_id))
        return SwapRecord.from_dict(data)

    def update_swap(self, swap_id: str, mutate: Callable[[SwapRecord], None]) -> SwapRecord:
        """
        Read-modify-write one swap.

        ``mutate`` edits the SwapRecord in place; it runs under the record
        lock and may raise to abort without writing.
        """
        def _mutation(data):
            if not data:
                self.store.get(SWAPS, swap_id)      # Raises RecordNotFound
            record = SwapRecord.from_dict(data)
            mutate(record)
            return record.to_dict(include_secret=True)

        data = self._with_retry(f"update swap {swap_id}",
                                lambda: self.store.upsert(SWAPS, swap_id, _mutation))
        return SwapRecord.from_dict(data)

    def append_swap_event(self, swap_id: str, event: SwapEvent) -> SwapRecord:
        """Append one history entry, updating the status projection."""
        return self.update_swap(swap_id, lambda record: record.record(event))

    def list_swaps(self, status: Optional[SwapStatus] = None) -> List[SwapRecord]:
        predicate = None
        if status is not None:
            predicate = lambda d: d.get("status") == status.value
        records = self._with_retry("list swaps", lambda: self.store.list(SWAPS, predicate))
        swaps = [SwapRecord.from_dict(d) for d in records]
        swaps.sort(key=lambda s: s.created_at)
        return swaps

    # =========================================================================
    # Monitors
    # =========================================================================

    def create_monitor(self, monitor: EscrowMonitor) -> EscrowMonitor:
        data = self._with_retry(
            f"create monitor {monitor.monitor_id}",
            lambda: self.store.insert(MONITORS, monitor.monitor_id, monitor.to_dict()),
        )
        return EscrowMonitor.from_dict(data)

    def get_monitor(self, swap_id: str, chain_type: ChainType) -> EscrowMonitor:
        mid = monitor_id(swap_id, chain_type)
        data = self._with_retry(f"get monitor {mid}", lambda: self.store.get(MONITORS, mid))
        return EscrowMonitor.from_dict(data)

    def find_monitor(self, swap_id: str, chain_type: ChainType) -> Optional[EscrowMonitor]:
        matches = self.list_monitors(swap_id, chain_type)
        return matches[0] if matches else None

    def update_monitor(self, swap_id: str, chain_type: ChainType,
                       mutate: Callable[[EscrowMonitor], None]) -> EscrowMonitor:
        mid = monitor_id(swap_id, chain_type)

        def _mutation(data):
            if not data:
                self.store.get(MONITORS, mid)
            monitor = EscrowMonitor.from_dict(data)
            mutate(monitor)
            return monitor.to_dict()

        data = self._with_retry(f"update monitor {mid}",
                                lambda: self.store.upsert(MONITORS, mid, _mutation))
        return EscrowMonitor.from_dict(data)

    def list_monitors(self, swap_id: Optional[str] = None,
                      chain_type: Optional[ChainType] = None) -> List[EscrowMonitor]:
        def predicate(d):
            if swap_id is not None and d.get("swap_id") != swap_id:
                return False
            if chain_type is not None and d.get("chain_type") != chain_type.value:
                return False
            return True

        records = self._with_retry("list monitors", lambda: self.store.list(MONITORS, predicate))
        monitors = [EscrowMonitor.from_dict(d) for d in records]
        monitors.sort(key=lambda m: (m.created_at, m.chain_type.value))
        return monitors
