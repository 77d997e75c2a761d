"""
Swap coordination for xswap.

Orchestrates EVM <-> XRP Ledger swaps using HTLCs.
"""

from .resolver import Resolver
from .coordinator import SwapCoordinator, SwapConfig, SwapRequest, InitiateResult, ActionResult
from .watcher import EscrowWatcher, WatcherConfig, WatchReport

__all__ = [
    "Resolver",
    "SwapCoordinator",
    "SwapConfig",
    "SwapRequest",
    "InitiateResult",
    "ActionResult",
    "EscrowWatcher",
    "WatcherConfig",
    "WatchReport",
]
