"""
Swap and monitor records.

SwapRecord is the aggregate root for one swap. Its ``history`` is an
append-only event log and the source of truth; ``status`` is a cached
projection of the latest transition in that log.

EscrowMonitor tracks one leg of one swap and references the swap by id
only. Both are plain dataclasses that round-trip through ``to_dict`` /
``from_dict`` so any document store can hold them.
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Iterable

from .core import SwapStatus, ChainType, MonitorStatus
from .errors import StateTransitionError


def _opt_int(value) -> Optional[int]:
    return None if value is None else int(value)


# =============================================================================
# Swap history
# =============================================================================

@dataclass
class SwapEvent:
    """One history entry of a swap.

    ``transition`` is False for entries that record an attempt without
    moving the swap (a failed claim keeps the prior status).
    """
    timestamp: int
    status: SwapStatus
    tx_hash: Optional[str] = None
    chain_type: Optional[ChainType] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    transition: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "chain_type": self.chain_type.value if self.chain_type else None,
            "details": dict(self.details),
            "error_message": self.error_message,
            "transition": self.transition,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapEvent":
        chain = data.get("chain_type")
        return cls(
            timestamp=int(data["timestamp"]),
            status=SwapStatus(data["status"]),
            tx_hash=data.get("tx_hash"),
            chain_type=ChainType(chain) if chain else None,
            details=dict(data.get("details") or {}),
            error_message=data.get("error_message"),
            transition=data.get("transition", True),
        )


# Fields never written to disk before the reveal step
SENSITIVE_FIELDS = ("secret",)


@dataclass
class SwapRecord:
    """Durable state of one swap."""
    swap_id: str
    status: SwapStatus
    created_at: int

    # Parties: maker locks, taker claims, per leg
    maker_evm_address: str
    taker_evm_address: str
    maker_xrpl_address: str
    taker_xrpl_address: str

    # Assets
    evm_token: str
    evm_amount: int
    xrpl_amount: int                    # drops
    safety_deposit: int = 0
    evm_chain_id: Optional[int] = None

    # Commitment
    hashlock: str = ""
    condition: str = ""
    secret: Optional[str] = None        # Set only at the reveal step

    # EVM leg
    evm_factory_address: Optional[str] = None
    evm_escrow_address: Optional[str] = None
    evm_order_hash: Optional[str] = None
    evm_timelocks: Optional[int] = None          # Packed, as sent at creation
    evm_timelock_stages: List[str] = field(default_factory=list)
    evm_deployed_at: Optional[int] = None        # From the creation block
    evm_public_withdraw_at: Optional[int] = None
    evm_cancel_at: Optional[int] = None
    src_cancellation_at: Optional[int] = None
    evm_tx_hash: Optional[str] = None
    evm_claim_tx_hash: Optional[str] = None
    evm_refund_tx_hash: Optional[str] = None

    # Ledger leg (Unix times; converted to Ripple time only on the wire)
    xrpl_sequence: Optional[int] = None          # EscrowCreate Sequence
    xrpl_finish_after: Optional[int] = None
    xrpl_cancel_after: Optional[int] = None
    xrpl_tx_hash: Optional[str] = None
    xrpl_claim_tx_hash: Optional[str] = None
    xrpl_refund_tx_hash: Optional[str] = None

    error_message: Optional[str] = None
    history: List[SwapEvent] = field(default_factory=list)
    version: int = 0

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def record(self, event: SwapEvent) -> SwapEvent:
        """
        Append one history entry.

        Timestamps are clamped so history never goes back in time. A
        transition updates the cached status; any entry carrying an error
        updates ``error_message``.
        """
        if self.history and event.timestamp < self.history[-1].timestamp:
            event.timestamp = self.history[-1].timestamp
        self.history.append(event)
        if event.transition:
            self.status = event.status
        if event.error_message:
            self.error_message = event.error_message
        return event

    def apply(self, status: SwapStatus, timestamp: int = None, tx_hash: str = None,
              chain_type: ChainType = None, error_message: str = None,
              transition: bool = True, **details) -> SwapEvent:
        """Convenience wrapper around ``record``."""
        return self.record(SwapEvent(
            timestamp=int(timestamp if timestamp is not None else time.time()),
            status=status,
            tx_hash=tx_hash,
            chain_type=chain_type,
            details=details,
            error_message=error_message,
            transition=transition,
        ))

    def project_status(self) -> Optional[SwapStatus]:
        """Status implied by history alone (latest transition)."""
        for event in reversed(self.history):
            if event.transition:
                return event.status
        return None

    def has_status(self, status: SwapStatus) -> bool:
        return any(e.transition and e.status == status for e in self.history)

    def events_for(self, chain_type: ChainType) -> List[SwapEvent]:
        return [e for e in self.history if e.chain_type == chain_type]

    # -------------------------------------------------------------------------
    # Per-leg accessors
    # -------------------------------------------------------------------------

    def leg_maker(self, chain_type: ChainType) -> str:
        if chain_type == ChainType.EVM:
            return self.maker_evm_address
        return self.maker_xrpl_address

    def leg_taker(self, chain_type: ChainType) -> str:
        if chain_type == ChainType.EVM:
            return self.taker_evm_address
        return self.taker_xrpl_address

    def claim_tx_hash(self, chain_type: ChainType) -> Optional[str]:
        if chain_type == ChainType.EVM:
            return self.evm_claim_tx_hash
        return self.xrpl_claim_tx_hash

    def refund_tx_hash(self, chain_type: ChainType) -> Optional[str]:
        if chain_type == ChainType.EVM:
            return self.evm_refund_tx_hash
        return self.xrpl_refund_tx_hash

    def set_claim_tx_hash(self, chain_type: ChainType, tx_hash: str):
        if chain_type == ChainType.EVM:
            self.evm_claim_tx_hash = tx_hash
        else:
            self.xrpl_claim_tx_hash = tx_hash

    def set_refund_tx_hash(self, chain_type: ChainType, tx_hash: str):
        if chain_type == ChainType.EVM:
            self.evm_refund_tx_hash = tx_hash
        else:
            self.xrpl_refund_tx_hash = tx_hash

    def claim_opens_at(self, chain_type: ChainType) -> Optional[int]:
        if chain_type == ChainType.EVM:
            return self.evm_public_withdraw_at
        return self.xrpl_finish_after

    def refund_opens_at(self, chain_type: ChainType) -> Optional[int]:
        if chain_type == ChainType.EVM:
            return self.evm_cancel_at
        return self.xrpl_cancel_after

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        data = {
            "swap_id": self.swap_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "maker_evm_address": self.maker_evm_address,
            "taker_evm_address": self.taker_evm_address,
            "maker_xrpl_address": self.maker_xrpl_address,
            "taker_xrpl_address": self.taker_xrpl_address,
            "evm_token": self.evm_token,
            "evm_amount": str(self.evm_amount),
            "xrpl_amount": str(self.xrpl_amount),
            "safety_deposit": str(self.safety_deposit),
            "evm_chain_id": self.evm_chain_id,
            "hashlock": self.hashlock,
            "condition": self.condition,
            "secret": self.secret,
            "evm_factory_address": self.evm_factory_address,
            "evm_escrow_address": self.evm_escrow_address,
            "evm_order_hash": self.evm_order_hash,
            # uint256 as string: JSON consumers choke on big ints
            "evm_timelocks": str(self.evm_timelocks) if self.evm_timelocks is not None else None,
            "evm_timelock_stages": list(self.evm_timelock_stages),
            "evm_deployed_at": self.evm_deployed_at,
            "evm_public_withdraw_at": self.evm_public_withdraw_at,
            "evm_cancel_at": self.evm_cancel_at,
            "src_cancellation_at": self.src_cancellation_at,
            "evm_tx_hash": self.evm_tx_hash,
            "evm_claim_tx_hash": self.evm_claim_tx_hash,
            "evm_refund_tx_hash": self.evm_refund_tx_hash,
            "xrpl_sequence": self.xrpl_sequence,
            "xrpl_finish_after": self.xrpl_finish_after,
            "xrpl_cancel_after": self.xrpl_cancel_after,
            "xrpl_tx_hash": self.xrpl_tx_hash,
            "xrpl_claim_tx_hash": self.xrpl_claim_tx_hash,
            "xrpl_refund_tx_hash": self.xrpl_refund_tx_hash,
            "error_message": self.error_message,
            "history": [e.to_dict() for e in self.history],
            "version": self.version,
        }
        if not include_secret:
            for key in SENSITIVE_FIELDS:
                data.pop(key, None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapRecord":
        timelocks = data.get("evm_timelocks")
        return cls(
            swap_id=data["swap_id"],
            status=SwapStatus(data["status"]),
            created_at=int(data["created_at"]),
            maker_evm_address=data["maker_evm_address"],
            taker_evm_address=data["taker_evm_address"],
            maker_xrpl_address=data["maker_xrpl_address"],
            taker_xrpl_address=data["taker_xrpl_address"],
            evm_token=data["evm_token"],
            evm_amount=int(data["evm_amount"]),
            xrpl_amount=int(data["xrpl_amount"]),
            safety_deposit=int(data.get("safety_deposit") or 0),
            evm_chain_id=_opt_int(data.get("evm_chain_id")),
            hashlock=data.get("hashlock", ""),
            condition=data.get("condition", ""),
            secret=data.get("secret"),
            evm_factory_address=data.get("evm_factory_address"),
            evm_escrow_address=data.get("evm_escrow_address"),
            evm_order_hash=data.get("evm_order_hash"),
            evm_timelocks=_opt_int(timelocks),
            evm_timelock_stages=list(data.get("evm_timelock_stages") or []),
            evm_deployed_at=_opt_int(data.get("evm_deployed_at")),
            evm_public_withdraw_at=_opt_int(data.get("evm_public_withdraw_at")),
            evm_cancel_at=_opt_int(data.get("evm_cancel_at")),
            src_cancellation_at=_opt_int(data.get("src_cancellation_at")),
            evm_tx_hash=data.get("evm_tx_hash"),
            evm_claim_tx_hash=data.get("evm_claim_tx_hash"),
            evm_refund_tx_hash=data.get("evm_refund_tx_hash"),
            xrpl_sequence=_opt_int(data.get("xrpl_sequence")),
            xrpl_finish_after=_opt_int(data.get("xrpl_finish_after")),
            xrpl_cancel_after=_opt_int(data.get("xrpl_cancel_after")),
            xrpl_tx_hash=data.get("xrpl_tx_hash"),
            xrpl_claim_tx_hash=data.get("xrpl_claim_tx_hash"),
            xrpl_refund_tx_hash=data.get("xrpl_refund_tx_hash"),
            error_message=data.get("error_message"),
            history=[SwapEvent.from_dict(e) for e in data.get("history", [])],
            version=int(data.get("version", 0)),
        )


# =============================================================================
# Escrow monitors
# =============================================================================

@dataclass
class MonitorEvent:
    timestamp: int
    status: MonitorStatus
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    retryable: Optional[bool] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "error_message": self.error_message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitorEvent":
        return cls(
            timestamp=int(data["timestamp"]),
            status=MonitorStatus(data["status"]),
            tx_hash=data.get("tx_hash"),
            error_message=data.get("error_message"),
            retryable=data.get("retryable"),
            details=dict(data.get("details") or {}),
        )


TERMINAL_MONITOR_STATUSES = frozenset({MonitorStatus.RESOLVED, MonitorStatus.CANCELED})

# Forward-only moves; FAILED may repeat (each retry that fails)
MONITOR_TRANSITIONS = {
    MonitorStatus.PENDING: {MonitorStatus.FAILED, MonitorStatus.RESOLVED, MonitorStatus.CANCELED},
    MonitorStatus.FAILED: {MonitorStatus.FAILED, MonitorStatus.RESOLVED, MonitorStatus.CANCELED},
    MonitorStatus.RESOLVED: set(),
    MonitorStatus.CANCELED: set(),
}


def monitor_id(swap_id: str, chain_type: ChainType) -> str:
    return f"{swap_id}:{chain_type.value}"


@dataclass
class EscrowMonitor:
    """Tracking record for one leg of one swap."""
    swap_id: str
    chain_type: ChainType
    status: MonitorStatus
    tx_hash: str                        # Lock transaction
    secret_hash: str
    timelock: int                       # Unix time the leg becomes refundable
    created_at: int
    resolution_tx_hash: Optional[str] = None
    retry_count: int = 0
    retryable: bool = False
    last_checked_at: Optional[int] = None
    error_message: Optional[str] = None
    history: List[MonitorEvent] = field(default_factory=list)
    version: int = 0

    @property
    def monitor_id(self) -> str:
        return monitor_id(self.swap_id, self.chain_type)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_MONITOR_STATUSES

    def advance(self, status: MonitorStatus, timestamp: int = None, tx_hash: str = None,
                error_message: str = None, retryable: bool = False, **details) -> MonitorEvent:
        """
        Move the monitor forward and append a history entry.

        Raises:
            StateTransitionError: on a backward move or any move out of
                a terminal status
        """
        if status not in MONITOR_TRANSITIONS[self.status]:
            raise StateTransitionError(
                f"Monitor {self.monitor_id} cannot move {self.status.value} -> {status.value}",
                monitor_id=self.monitor_id,
            )

        ts = int(timestamp if timestamp is not None else time.time())
        if self.history and ts < self.history[-1].timestamp:
            ts = self.history[-1].timestamp

        event = MonitorEvent(
            timestamp=ts,
            status=status,
            tx_hash=tx_hash,
            error_message=error_message,
            retryable=retryable if status == MonitorStatus.FAILED else None,
            details=details,
        )
        self.history.append(event)
        self.status = status

        if status == MonitorStatus.FAILED:
            self.retry_count += 1
            self.retryable = retryable
            self.error_message = error_message
        else:
            self.resolution_tx_hash = tx_hash
            self.retryable = False
        return event

    def to_dict(self) -> Dict[str, Any]:
        return {
            "monitor_id": self.monitor_id,
            "swap_id": self.swap_id,
            "chain_type": self.chain_type.value,
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "secret_hash": self.secret_hash,
            "timelock": self.timelock,
            "created_at": self.created_at,
            "resolution_tx_hash": self.resolution_tx_hash,
            "retry_count": self.retry_count,
            "retryable": self.retryable,
            "last_checked_at": self.last_checked_at,
            "error_message": self.error_message,
            "history": [e.to_dict() for e in self.history],
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscrowMonitor":
        return cls(
            swap_id=data["swap_id"],
            chain_type=ChainType(data["chain_type"]),
            status=MonitorStatus(data["status"]),
            tx_hash=data["tx_hash"],
            secret_hash=data["secret_hash"],
            timelock=int(data["timelock"]),
            created_at=int(data["created_at"]),
            resolution_tx_hash=data.get("resolution_tx_hash"),
            retry_count=int(data.get("retry_count", 0)),
            retryable=bool(data.get("retryable", False)),
            last_checked_at=_opt_int(data.get("last_checked_at")),
            error_message=data.get("error_message"),
            history=[MonitorEvent.from_dict(e) for e in data.get("history", [])],
            version=int(data.get("version", 0)),
        )


def derive_swap_status(monitors: Iterable[EscrowMonitor]) -> Optional[SwapStatus]:
    """
    Aggregate status implied by the two legs.

    Only COMPLETED is derived: it needs a monitor for each chain and both
    RESOLVED. Anything else returns None (the swap keeps its own status).
    """
    by_chain = {m.chain_type: m for m in monitors}
    if set(by_chain) != {ChainType.EVM, ChainType.XRPL}:
        return None
    if all(m.status == MonitorStatus.RESOLVED for m in by_chain.values()):
        return SwapStatus.COMPLETED
    return None
