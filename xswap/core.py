"""
Core types and interfaces for xswap.
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from .errors import ValidationError


class SwapStatus(Enum):
    """Swap lifecycle states (aggregate, most recent transition)."""
    INITIATED = "INITIATED"                        # Record created, commitment generated
    EVM_ORDER_CREATED = "EVM_ORDER_CREATED"        # DstEscrow deployed on EVM
    NON_EVM_ESCROW_LOCKED = "NON_EVM_ESCROW_LOCKED"  # EscrowCreate validated on ledger
    SECRET_REVEALED = "SECRET_REVEALED"            # Secret disclosed by a claim
    EVM_CLAIMED = "EVM_CLAIMED"
    NON_EVM_CLAIMED = "NON_EVM_CLAIMED"
    COMPLETED = "COMPLETED"                        # Derived: both legs claimed
    EVM_REFUNDED = "EVM_REFUNDED"
    NON_EVM_REFUNDED = "NON_EVM_REFUNDED"
    FAILED = "FAILED"


TERMINAL_SWAP_STATUSES = frozenset({
    SwapStatus.COMPLETED,
    SwapStatus.EVM_REFUNDED,
    SwapStatus.NON_EVM_REFUNDED,
    SwapStatus.FAILED,
})


class ChainType(Enum):
    """Chain family of a leg."""
    EVM = "EVM"
    XRPL = "XRPL"


class MonitorStatus(Enum):
    """Per-leg escrow monitor states."""
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"    # Claimed
    CANCELED = "CANCELED"    # Refunded
    FAILED = "FAILED"        # Last attempt failed (see retryable flag)


class Action(Enum):
    CLAIM = "claim"
    REFUND = "refund"


# Status a successful action moves the swap to, per leg
CLAIMED_STATUS = {
    ChainType.EVM: SwapStatus.EVM_CLAIMED,
    ChainType.XRPL: SwapStatus.NON_EVM_CLAIMED,
}
REFUNDED_STATUS = {
    ChainType.EVM: SwapStatus.EVM_REFUNDED,
    ChainType.XRPL: SwapStatus.NON_EVM_REFUNDED,
}
LOCKED_STATUS = {
    ChainType.EVM: SwapStatus.EVM_ORDER_CREATED,
    ChainType.XRPL: SwapStatus.NON_EVM_ESCROW_LOCKED,
}


def parse_chain_type(value) -> ChainType:
    """Accept ChainType or its string name ("EVM", "xrpl", ...)."""
    if isinstance(value, ChainType):
        return value
    try:
        return ChainType(str(value).upper())
    except ValueError:
        raise ValidationError(f"Unknown chain type: {value}")


def parse_action(value) -> Action:
    if isinstance(value, Action):
        return value
    try:
        return Action(str(value).lower())
    except ValueError:
        raise ValidationError(f"Invalid action: {value}. Must be 'claim' or 'refund'")


# =============================================================================
# Chain collaborator types
# =============================================================================

@dataclass
class TransactionRequest:
    """An unsigned transaction for a chain client to submit.

    For EVM legs ``payload`` holds ``to``/``data``/``value``; for ledger legs
    it holds the XRPL ``tx_json``.
    """
    chain_type: ChainType
    action: str                 # approve, create_escrow, claim, refund
    target: str                 # Contract address or escrow owner
    payload: Dict[str, Any]
    caller: Optional[str] = None
    swap_id: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_type": self.chain_type.value,
            "action": self.action,
            "target": self.target,
            "payload": self.payload,
            "caller": self.caller,
            "swap_id": self.swap_id,
            "description": self.description,
        }


@dataclass
class SubmitResult:
    tx_hash: str


@dataclass
class Confirmation:
    """Outcome of waiting for a submitted transaction."""
    tx_hash: str
    success: bool
    block_timestamp: Optional[int] = None
    block_ref: Optional[int] = None     # Block number or ledger index
    logs: List[Dict[str, Any]] = field(default_factory=list)
    reason: Optional[str] = None        # Revert reason / engine result
    details: Dict[str, Any] = field(default_factory=dict)


class ChainClient:
    """
    Chain submission collaborator.

    The coordinator depends only on these operations; concrete clients
    live in ``xswap.chains``.
    """

    chain_type: ChainType

    @property
    def address(self) -> Optional[str]:
        """Account the client signs for, if any."""
        return None

    def submit(self, tx_request: TransactionRequest) -> SubmitResult:
        raise NotImplementedError

    def await_confirmation(self, tx_hash: str, timeout: float) -> Confirmation:
        raise NotImplementedError

    def get_block_timestamp(self, block_ref) -> int:
        raise NotImplementedError

    def close(self):
        pass


# =============================================================================
# Constants
# =============================================================================

# Seconds between Unix epoch and Ripple epoch (2000-01-01T00:00:00Z)
RIPPLE_EPOCH_OFFSET = 946684800

# Default escrow windows (seconds after lock)
DEFAULT_EVM_WITHDRAWAL_DELAY = 10
DEFAULT_EVM_PUBLIC_WITHDRAWAL_DELAY = 30
DEFAULT_EVM_CANCELLATION_DELAY = 10 * 60
DEFAULT_SRC_CANCELLATION_DELAY = 4 * 60 * 60
DEFAULT_LEDGER_FINISH_DELAY = 30
DEFAULT_LEDGER_CANCEL_DELAY = 10 * 60

# Default wait for a chain confirmation (seconds)
DEFAULT_CONFIRMATION_TIMEOUT = 120
