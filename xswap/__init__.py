"""
xswap - HTLC Cross-Chain Swap Coordinator

Atomic swaps between EVM escrows (EscrowFactory / EscrowDst) and native
XRP Ledger escrows, locked by one secret.

Usage:
    from xswap import SwapCoordinator, SwapRequest, SwapConfig
    from xswap import EVMClient, EVMConfig, XRPLClient, XRPLConfig
    from xswap.store import SwapRepository, StoreConfig, open_store

    # Initialize clients
    evm = EVMClient(EVMConfig.from_env()).connect()
    xrpl = XRPLClient(XRPLConfig.from_env()).connect()
    repo = SwapRepository(open_store(StoreConfig.from_env()))

    # Create coordinator
    coordinator = SwapCoordinator(evm, xrpl, repo, SwapConfig.from_env())

    # Lock both legs, later claim with the revealed secret
    result = coordinator.initiate(request)
    coordinator.claim(result.swap_id, "XRPL")
"""

from .core import (
    SwapStatus,
    ChainType,
    MonitorStatus,
    Action,
    TransactionRequest,
    SubmitResult,
    Confirmation,
    ChainClient,
    RIPPLE_EPOCH_OFFSET,
)
from .errors import (
    SwapError,
    ValidationError,
    RangeError,
    PreconditionError,
    StateTransitionError,
    ChainSubmissionError,
    ConfirmationTimeout,
    ChainRevertError,
    EncodingMismatchError,
    PersistenceError,
    RecordNotFound,
)
from .models import SwapRecord, SwapEvent, EscrowMonitor, MonitorEvent, derive_swap_status

from .chains.evm import EVMClient, EVMConfig
from .chains.xrpl import XRPLClient, XRPLConfig

from .swap.resolver import Resolver
from .swap.coordinator import SwapCoordinator, SwapConfig, SwapRequest, InitiateResult, ActionResult
from .swap.watcher import EscrowWatcher, WatcherConfig

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapStatus",
    "ChainType",
    "MonitorStatus",
    "Action",
    "TransactionRequest",
    "SubmitResult",
    "Confirmation",
    "ChainClient",
    "RIPPLE_EPOCH_OFFSET",
    # Errors
    "SwapError",
    "ValidationError",
    "RangeError",
    "PreconditionError",
    "StateTransitionError",
    "ChainSubmissionError",
    "ConfirmationTimeout",
    "ChainRevertError",
    "EncodingMismatchError",
    "PersistenceError",
    "RecordNotFound",
    # Records
    "SwapRecord",
    "SwapEvent",
    "EscrowMonitor",
    "MonitorEvent",
    "derive_swap_status",
    # Clients
    "EVMClient",
    "EVMConfig",
    "XRPLClient",
    "XRPLConfig",
    # Swap
    "Resolver",
    "SwapCoordinator",
    "SwapConfig",
    "SwapRequest",
    "InitiateResult",
    "ActionResult",
    "EscrowWatcher",
    "WatcherConfig",
]
