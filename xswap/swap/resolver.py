"""
Claim / refund decisions for one leg of a swap.

The Resolver checks who is asking and whether the leg's time window is
open, then builds the exact transaction for the action. It never touches
the network; the coordinator submits what it returns and reports the
outcome back through ``record_success`` / ``record_failure``.

Windows per leg:

    EVM   claim  >= DstPublicWithdrawal    refund >= DstCancellation
    XRPL  claim  >= FinishAfter            refund >= CancelAfter

EVM windows are computed from the packed timelocks rebased onto the
on-chain deployment timestamp.
"""

import logging
import time
from typing import Optional, Callable

from ..core import (
    Action,
    ChainType,
    TransactionRequest,
    CLAIMED_STATUS,
    REFUNDED_STATUS,
    SwapStatus,
    parse_action,
    parse_chain_type,
)
from ..errors import PreconditionError, ValidationError, SwapError
from ..htlc import commitment, evm as evm_htlc, xrpl as xrpl_htlc
from ..htlc.timelocks import Stage, stage_time
from ..models import SwapRecord
from ..store import SwapRepository

log = logging.getLogger(__name__)


def same_address(chain_type: ChainType, a: Optional[str], b: Optional[str]) -> bool:
    """EVM addresses compare case-insensitively; XRPL addresses exactly."""
    if not a or not b:
        return False
    if chain_type == ChainType.EVM:
        return a.lower() == b.lower()
    return a == b


class Resolver:
    """Decides whether a leg may be claimed or refunded and builds the tx."""

    def __init__(self, repository: SwapRepository, clock: Callable[[], float] = time.time):
        self.repository = repository
        self.clock = clock

    # =========================================================================
    # Windows
    # =========================================================================

    def claim_opens_at(self, swap: SwapRecord, leg: ChainType,
                       deployed_at: Optional[int] = None) -> int:
        if leg == ChainType.EVM:
            return stage_time(swap.evm_timelocks, Stage.DST_PUBLIC_WITHDRAWAL,
                              self._deployed_at(swap, deployed_at))
        self._require_ledger_lock(swap)
        return swap.xrpl_finish_after

    def refund_opens_at(self, swap: SwapRecord, leg: ChainType,
                        deployed_at: Optional[int] = None) -> int:
        if leg == ChainType.EVM:
            return stage_time(swap.evm_timelocks, Stage.DST_CANCELLATION,
                              self._deployed_at(swap, deployed_at))
        self._require_ledger_lock(swap)
        return swap.xrpl_cancel_after

    def _deployed_at(self, swap: SwapRecord, deployed_at: Optional[int]) -> int:
        if swap.evm_escrow_address is None or swap.evm_timelocks is None:
            raise PreconditionError(f"Swap {swap.swap_id}: EVM escrow not created", check="not_locked")
        if deployed_at is None:
            deployed_at = swap.evm_deployed_at
        if deployed_at is None:
            raise PreconditionError(
                f"Swap {swap.swap_id}: on-chain deployment time unknown", check="not_locked")
        return int(deployed_at)

    def _require_ledger_lock(self, swap: SwapRecord):
        if swap.xrpl_sequence is None or swap.xrpl_cancel_after is None:
            raise PreconditionError(f"Swap {swap.swap_id}: ledger escrow not created", check="not_locked")

    # =========================================================================
    # Decision
    # =========================================================================

    def resolve(self, swap: SwapRecord, leg, action, caller: str,
                secret: Optional[str] = None, now: Optional[int] = None,
                deployed_at: Optional[int] = None) -> TransactionRequest:
        """
        Validate a claim/refund and build its transaction.

        Args:
            swap: Current swap record
            leg: ChainType (or name) of the leg to act on
            action: "claim" or "refund"
            caller: Account that will sign the transaction
            secret: Secret for a claim (falls back to the revealed one)
            now: Current Unix time (defaults to the resolver clock)
            deployed_at: On-chain EVM deployment time, overrides the record

        Returns:
            TransactionRequest for the leg's chain

        Raises:
            ValidationError: malformed input or a secret that does not open
                the hashlock
            PreconditionError: wrong_caller, too_early, missing_secret or
                not_locked
            EncodingMismatchError: condition and hashlock disagree
        """
        leg = parse_chain_type(leg)
        action = parse_action(action)
        if not caller:
            raise ValidationError("caller is required")
        now = int(self.clock() if now is None else now)

        if action == Action.CLAIM:
            return self._resolve_claim(swap, leg, caller, secret, now, deployed_at)
        return self._resolve_refund(swap, leg, caller, now, deployed_at)

    def _resolve_claim(self, swap, leg, caller, secret, now, deployed_at) -> TransactionRequest:
        taker = swap.leg_taker(leg)
        if not same_address(leg, caller, taker):
            raise PreconditionError(
                f"Only the {leg.value} taker {taker} can claim",
                check="wrong_caller", caller=caller, expected=taker)

        secret = secret or swap.secret
        if not secret:
            raise PreconditionError("Secret not revealed and not supplied", check="missing_secret")
        secret = commitment.ensure_secret(secret, swap.hashlock, swap.condition)

        opens_at = self.claim_opens_at(swap, leg, deployed_at)
        if now < opens_at:
            raise PreconditionError(
                f"{leg.value} claim opens at {opens_at} (now {now})",
                check="too_early", opens_at=opens_at, now=now)

        if leg == ChainType.EVM:
            immutables = self.immutables(swap, self._deployed_at(swap, deployed_at))
            payload = evm_htlc.build_call(
                swap.evm_escrow_address, evm_htlc.encode_withdraw("0x" + secret, immutables))
            target = swap.evm_escrow_address
            description = f"withdraw from {swap.evm_escrow_address}"
        else:
            payload = xrpl_htlc.escrow_finish(
                account=caller,
                owner=swap.maker_xrpl_address,
                offer_sequence=swap.xrpl_sequence,
                condition=swap.condition,
                fulfillment=commitment.fulfillment_for(secret),
            )
            target = swap.maker_xrpl_address
            description = f"EscrowFinish {swap.maker_xrpl_address}/{swap.xrpl_sequence}"

        log.info(f"Swap {swap.swap_id}: {leg.value} claim resolved for {caller}")
        return TransactionRequest(
            chain_type=leg,
            action=Action.CLAIM.value,
            target=target,
            payload=payload,
            caller=caller,
            swap_id=swap.swap_id,
            description=description,
        )

    def _resolve_refund(self, swap, leg, caller, now, deployed_at) -> TransactionRequest:
        maker = swap.leg_maker(leg)
        if not same_address(leg, caller, maker):
            raise PreconditionError(
                f"Only the {leg.value} maker {maker} can refund",
                check="wrong_caller", caller=caller, expected=maker)

        opens_at = self.refund_opens_at(swap, leg, deployed_at)
        if now < opens_at:
            raise PreconditionError(
                f"{leg.value} refund opens at {opens_at} (now {now})",
                check="too_early", opens_at=opens_at, now=now)

        if leg == ChainType.EVM:
            immutables = self.immutables(swap, self._deployed_at(swap, deployed_at))
            payload = evm_htlc.build_call(swap.evm_escrow_address, evm_htlc.encode_cancel(immutables))
            target = swap.evm_escrow_address
            description = f"cancel {swap.evm_escrow_address}"
        else:
            payload = xrpl_htlc.escrow_cancel(
                account=caller,
                owner=swap.maker_xrpl_address,
                offer_sequence=swap.xrpl_sequence,
            )
            target = swap.maker_xrpl_address
            description = f"EscrowCancel {swap.maker_xrpl_address}/{swap.xrpl_sequence}"

        log.info(f"Swap {swap.swap_id}: {leg.value} refund resolved for {caller}")
        return TransactionRequest(
            chain_type=leg,
            action=Action.REFUND.value,
            target=target,
            payload=payload,
            caller=caller,
            swap_id=swap.swap_id,
            description=description,
        )

    @staticmethod
    def immutables(swap: SwapRecord, deployed_at: int) -> evm_htlc.Immutables:
        """EVM escrow immutables as the contract holds them on-chain."""
        return evm_htlc.Immutables(
            order_hash=swap.evm_order_hash,
            hashlock=swap.hashlock,
            maker=swap.maker_evm_address,
            taker=swap.taker_evm_address,
            token=swap.evm_token,
            amount=swap.evm_amount,
            safety_deposit=swap.safety_deposit,
            timelocks=swap.evm_timelocks,
        ).rebased(deployed_at)

    # =========================================================================
    # Outcome recording
    # =========================================================================

    def record_success(self, swap_id: str, leg, action, tx_hash: str,
                       timestamp: Optional[int] = None, **details) -> SwapRecord:
        """
        Record a confirmed claim/refund: one history entry plus the
        leg's claim/refund hash. Re-recording the same hash is a no-op.
        """
        leg = parse_chain_type(leg)
        action = parse_action(action)
        ts = int(self.clock() if timestamp is None else timestamp)

        def _mutate(record: SwapRecord):
            if action == Action.CLAIM:
                if record.claim_tx_hash(leg) == tx_hash:
                    return
                record.set_claim_tx_hash(leg, tx_hash)
                status = CLAIMED_STATUS[leg]
            else:
                if record.refund_tx_hash(leg) == tx_hash:
                    return
                record.set_refund_tx_hash(leg, tx_hash)
                status = REFUNDED_STATUS[leg]
            record.apply(status, timestamp=ts, tx_hash=tx_hash, chain_type=leg,
                         action=action.value, **details)

        swap = self.repository.update_swap(swap_id, _mutate)
        log.info(f"Swap {swap_id}: {leg.value} {action.value} confirmed ({tx_hash})")
        return swap

    def record_failure(self, swap_id: str, leg, action, error: Exception,
                       timestamp: Optional[int] = None, tx_hash: Optional[str] = None) -> SwapRecord:
        """Record a failed attempt without changing the swap status."""
        leg = parse_chain_type(leg)
        action = parse_action(action)
        ts = int(self.clock() if timestamp is None else timestamp)

        details = {"action": action.value}
        if isinstance(error, SwapError):
            details.update(kind=error.kind, retryable=error.retryable)
            if getattr(error, "check", None):
                details["check"] = error.check
            if error.details.get("cause"):
                details["cause"] = error.details["cause"]
        else:
            details.update(kind=type(error).__name__, retryable=False)

        swap = self.repository.update_swap(
            swap_id,
            lambda record: record.apply(
                SwapStatus.FAILED, timestamp=ts, tx_hash=tx_hash, chain_type=leg,
                error_message=str(error), transition=False, **details),
        )
        log.warning(f"Swap {swap_id}: {leg.value} {action.value} failed: {error}")
        return swap
