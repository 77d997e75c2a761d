"""
Persistence for swap and monitor records.
"""

from .base import RecordStore, MemoryStore
from .json_store import JSONFileStore
from .repository import SwapRepository, StoreConfig, open_store, SWAPS, MONITORS

__all__ = [
    "RecordStore",
    "MemoryStore",
    "JSONFileStore",
    "SwapRepository",
    "StoreConfig",
    "open_store",
    "SWAPS",
    "MONITORS",
]
