"""
Swap Coordinator for xswap.

Orchestrates an HTLC swap between an EVM escrow and an XRP Ledger escrow.

Swap Flow:
1. Generate secret, hashlock and condition; persist the swap (INITIATED)
2. Lock both legs concurrently:
   - EVM: approve (ERC20 only) + EscrowFactory.createDstEscrow
   - XRPL: EscrowCreate with the condition
   Each confirmed lock gets an EscrowMonitor
3. Secret goes back to the maker only; it is persisted at the first claim
4. Claim (taker, after the public withdrawal / FinishAfter time) or
   refund (maker, after the cancellation / CancelAfter time) per leg
5. Reconciliation derives COMPLETED once both monitors are RESOLVED
"""

import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable

from web3 import Web3

from ..core import (
    Action,
    ChainClient,
    ChainType,
    MonitorStatus,
    SwapStatus,
    TransactionRequest,
    parse_action,
    parse_chain_type,
    DEFAULT_EVM_WITHDRAWAL_DELAY,
    DEFAULT_EVM_PUBLIC_WITHDRAWAL_DELAY,
    DEFAULT_EVM_CANCELLATION_DELAY,
    DEFAULT_SRC_CANCELLATION_DELAY,
    DEFAULT_LEDGER_FINISH_DELAY,
    DEFAULT_LEDGER_CANCEL_DELAY,
    DEFAULT_CONFIRMATION_TIMEOUT,
)
from ..errors import (
    SwapError,
    ValidationError,
    PreconditionError,
    ChainSubmissionError,
    ChainRevertError,
    EncodingMismatchError,
    PersistenceError,
)
from ..htlc import commitment, timelocks as tl, evm as evm_htlc, xrpl as xrpl_htlc
from ..models import SwapRecord, EscrowMonitor, MonitorEvent, derive_swap_status
from ..store import SwapRepository
from .resolver import Resolver, same_address

log = logging.getLogger(__name__)


@dataclass
class SwapConfig:
    """Swap coordinator configuration."""
    factory_address: str = ""
    order_tag: str = "XSwapOrder"
    evm_chain_id: Optional[int] = None

    # EVM escrow windows (seconds after creation)
    evm_withdrawal_delay: int = DEFAULT_EVM_WITHDRAWAL_DELAY
    evm_public_withdrawal_delay: int = DEFAULT_EVM_PUBLIC_WITHDRAWAL_DELAY
    evm_cancellation_delay: int = DEFAULT_EVM_CANCELLATION_DELAY
    src_cancellation_delay: int = DEFAULT_SRC_CANCELLATION_DELAY

    # Ledger escrow windows (seconds after creation)
    ledger_finish_delay: int = DEFAULT_LEDGER_FINISH_DELAY
    ledger_cancel_delay: int = DEFAULT_LEDGER_CANCEL_DELAY

    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    parallel_locks: bool = True

    @classmethod
    def from_env(cls) -> "SwapConfig":
        chain_id = os.environ.get("XSWAP_EVM_CHAIN_ID")
        return cls(
            factory_address=os.environ.get("XSWAP_FACTORY_ADDRESS", ""),
            order_tag=os.environ.get("XSWAP_ORDER_TAG", cls.order_tag),
            evm_chain_id=int(chain_id) if chain_id else None,
            evm_cancellation_delay=int(os.environ.get(
                "XSWAP_EVM_CANCELLATION_DELAY", DEFAULT_EVM_CANCELLATION_DELAY)),
            ledger_cancel_delay=int(os.environ.get(
                "XSWAP_LEDGER_CANCEL_DELAY", DEFAULT_LEDGER_CANCEL_DELAY)),
            confirmation_timeout=float(os.environ.get(
                "XSWAP_CONFIRMATION_TIMEOUT", DEFAULT_CONFIRMATION_TIMEOUT)),
        )


@dataclass
class SwapRequest:
    """Parameters of a new swap.

    Per leg, the maker locks the funds (and may refund them), the taker
    receives them (and claims).
    """
    maker_evm_address: str
    taker_evm_address: str
    maker_xrpl_address: str
    taker_xrpl_address: str
    evm_token: str
    evm_amount: int
    xrpl_amount: int                # drops
    safety_deposit: int = 0

    def validate(self):
        for name in ("maker_evm_address", "taker_evm_address", "evm_token"):
            if not Web3.is_address(getattr(self, name) or ""):
                raise ValidationError(f"Invalid {name}: {getattr(self, name)}")
        xrpl_htlc.require_address(self.maker_xrpl_address, "maker address")
        xrpl_htlc.require_address(self.taker_xrpl_address, "taker address")
        if int(self.evm_amount) <= 0:
            raise ValidationError("evm_amount must be positive")
        if int(self.xrpl_amount) <= 0:
            raise ValidationError("xrpl_amount must be positive")
        if int(self.safety_deposit) < 0:
            raise ValidationError("safety_deposit cannot be negative")


@dataclass
class InitiateResult:
    """Result of initiate(). ``secret`` is for the maker only."""
    swap_id: str
    status: SwapStatus
    secret: str
    hashlock: str
    condition: str
    evm_tx_hash: Optional[str] = None
    evm_escrow_address: Optional[str] = None
    xrpl_tx_hash: Optional[str] = None
    xrpl_sequence: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swap_id": self.swap_id,
            "status": self.status.value,
            "secret": self.secret,
            "hashlock": self.hashlock,
            "condition": self.condition,
            "evm_tx_hash": self.evm_tx_hash,
            "evm_escrow_address": self.evm_escrow_address,
            "xrpl_tx_hash": self.xrpl_tx_hash,
            "xrpl_sequence": self.xrpl_sequence,
        }


@dataclass
class ActionResult:
    """Result of a claim or refund."""
    swap_id: str
    chain_type: ChainType
    action: Action
    tx_hash: Optional[str]
    status: SwapStatus
    already_resolved: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "swap_id": self.swap_id,
            "chain_type": self.chain_type.value,
            "action": self.action.value,
            "tx_hash": self.tx_hash,
            "status": self.status.value,
            "already_resolved": self.already_resolved,
            "details": self.details,
        }


class SwapCoordinator:
    """
    Drives swaps through their lifecycle.

    Chain clients and the repository are injected; the coordinator holds no
    connection state of its own. The generated secret is kept in memory
    until the claim that reveals it, a refund, or a failed lock.

    Each claim or refund is checked against the account of the client
    that signs it: maker clients for locks and refunds, taker clients
    (when given) for claims.
    """

    def __init__(self, evm_client: ChainClient, ledger_client: ChainClient,
                 repository: SwapRepository, config: SwapConfig = None,
                 clock: Callable[[], float] = time.time,
                 evm_taker_client: Optional[ChainClient] = None,
                 ledger_taker_client: Optional[ChainClient] = None):
        # Maker-side clients lock and refund; taker-side clients claim
        self.evm_client = evm_client
        self.ledger_client = ledger_client
        self.evm_taker_client = evm_taker_client
        self.ledger_taker_client = ledger_taker_client
        self.repository = repository
        self.config = config or SwapConfig()
        self.clock = clock
        self.resolver = Resolver(repository, clock)

        # Unrevealed secrets, by swap id
        self._secrets: Dict[str, str] = {}
        self._secrets_lock = threading.Lock()

        # (swap_id, leg, action) currently being submitted
        self._in_flight = set()
        self._in_flight_lock = threading.Lock()

    def _now(self) -> int:
        return int(self.clock())

    def _client(self, leg: ChainType, action: Optional[Action] = None) -> ChainClient:
        """Client that signs ``action`` on ``leg``. Claims fall back to the maker client."""
        if action == Action.CLAIM:
            taker = self.evm_taker_client if leg == ChainType.EVM else self.ledger_taker_client
            if taker is not None:
                return taker
        return self.evm_client if leg == ChainType.EVM else self.ledger_client

    def _clients(self) -> List[ChainClient]:
        clients = [self.evm_client, self.ledger_client, self.evm_taker_client, self.ledger_taker_client]
        return [c for c in clients if c is not None]

    # =========================================================================
    # Initiation
    # =========================================================================

    def _schedule(self, now: int) -> Dict[tl.Stage, int]:
        cfg = self.config
        schedule = {
            tl.Stage.DST_WITHDRAWAL: now + cfg.evm_withdrawal_delay,
            tl.Stage.DST_PUBLIC_WITHDRAWAL: now + cfg.evm_public_withdrawal_delay,
            tl.Stage.DST_CANCELLATION: now + cfg.evm_cancellation_delay,
        }
        # Stages at deployedAt would unpack as unset
        for stage, ts in schedule.items():
            if ts <= now:
                raise ValidationError(f"Timelock stage {stage.name} must be after creation time")
        if not (schedule[tl.Stage.DST_WITHDRAWAL]
                <= schedule[tl.Stage.DST_PUBLIC_WITHDRAWAL]
                < schedule[tl.Stage.DST_CANCELLATION]):
            raise ValidationError("EVM windows must satisfy withdrawal <= public withdrawal < cancellation")
        if now + cfg.src_cancellation_delay < schedule[tl.Stage.DST_CANCELLATION]:
            raise ValidationError("Source cancellation must not precede destination cancellation")
        if cfg.ledger_finish_delay >= cfg.ledger_cancel_delay:
            raise ValidationError("Ledger FinishAfter must be earlier than CancelAfter")
        return schedule

    def initiate(self, request: SwapRequest, timeout: Optional[float] = None) -> InitiateResult:
        """
        Create a swap and lock both legs.

        Args:
            request: Swap parameters
            timeout: Per-leg confirmation timeout (defaults to config)

        Returns:
            InitiateResult, including the secret for the maker

        Raises:
            The first leg error, after it was recorded in the swap history.
            A leg that did lock stays locked and has its monitor.
        """
        request.validate()
        if not Web3.is_address(self.config.factory_address or ""):
            raise ValidationError("Escrow factory address not configured")
        for leg, maker in ((ChainType.EVM, request.maker_evm_address),
                           (ChainType.XRPL, request.maker_xrpl_address)):
            signer = self.evm_client.address if leg == ChainType.EVM else self.ledger_client.address
            if not signer:
                raise ValidationError(f"{leg.value} client has no signing account")
            if not same_address(leg, signer, maker):
                raise ValidationError(f"{leg.value} client signs for {signer}, not maker {maker}")

        timeout = self.config.confirmation_timeout if timeout is None else timeout
        now = self._now()
        schedule = self._schedule(now)
        packed = tl.pack(now, schedule)

        secret = commitment.generate()
        commitment.ensure_consistent(secret.hashlock, secret.condition)

        swap_id = str(uuid.uuid4())
        record = SwapRecord(
            swap_id=swap_id,
            status=SwapStatus.INITIATED,
            created_at=now,
            maker_evm_address=Web3.to_checksum_address(request.maker_evm_address),
            taker_evm_address=Web3.to_checksum_address(request.taker_evm_address),
            maker_xrpl_address=request.maker_xrpl_address,
            taker_xrpl_address=request.taker_xrpl_address,
            evm_token=Web3.to_checksum_address(request.evm_token),
            evm_amount=int(request.evm_amount),
            xrpl_amount=int(request.xrpl_amount),
            safety_deposit=int(request.safety_deposit),
            evm_chain_id=self.config.evm_chain_id,
            hashlock=secret.hashlock,
            condition=secret.condition,
            evm_factory_address=Web3.to_checksum_address(self.config.factory_address),
            evm_order_hash=evm_htlc.order_hash_for(self.config.order_tag),
            evm_timelocks=packed,
            evm_timelock_stages=[s.name for s in schedule],
            src_cancellation_at=now + self.config.src_cancellation_delay,
            xrpl_finish_after=now + self.config.ledger_finish_delay,
            xrpl_cancel_after=now + self.config.ledger_cancel_delay,
        )
        record.apply(SwapStatus.INITIATED, timestamp=now, hashlock=secret.hashlock)
        self.repository.create_swap(record)

        with self._secrets_lock:
            self._secrets[swap_id] = secret.secret

        log.info(f"Swap {swap_id} initiated: hashlock={secret.hashlock[:10]}...")

        errors = self._lock_legs(swap_id, timeout)
        if errors:
            # The maker never receives this secret; locked legs can only be refunded
            self._forget_secret(swap_id)
            first = errors.get(ChainType.EVM) or errors.get(ChainType.XRPL)
            raise first

        swap = self.repository.get_swap(swap_id)
        return InitiateResult(
            swap_id=swap_id,
            status=swap.status,
            secret=secret.secret,
            hashlock=swap.hashlock,
            condition=swap.condition,
            evm_tx_hash=swap.evm_tx_hash,
            evm_escrow_address=swap.evm_escrow_address,
            xrpl_tx_hash=swap.xrpl_tx_hash,
            xrpl_sequence=swap.xrpl_sequence,
        )

    def _lock_legs(self, swap_id: str, timeout: float) -> Dict[ChainType, Exception]:
        workflows = {
            ChainType.EVM: self._lock_evm,
            ChainType.XRPL: self._lock_ledger,
        }
        errors: Dict[ChainType, Exception] = {}

        if self.config.parallel_locks:
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"lock-{swap_id[:8]}") as pool:
                futures = {leg: pool.submit(fn, swap_id, timeout) for leg, fn in workflows.items()}
                for leg, future in futures.items():
                    try:
                        future.result()
                    except Exception as e:
                        errors[leg] = e
        else:
            for leg, fn in workflows.items():
                try:
                    fn(swap_id, timeout)
                except Exception as e:
                    errors[leg] = e
        return errors

    def _confirm(self, client: ChainClient, tx_request: TransactionRequest, timeout: float):
        submitted = client.submit(tx_request)
        confirmation = client.await_confirmation(submitted.tx_hash, timeout)
        if not confirmation.success:
            raise ChainRevertError(
                f"{tx_request.chain_type.value} {tx_request.action} failed on-chain",
                reason=confirmation.reason,
                tx_hash=confirmation.tx_hash,
            )
        return confirmation

    def _lock_evm(self, swap_id: str, timeout: float):
        """EVM leg: approve (ERC20) then createDstEscrow."""
        try:
            swap = self.repository.get_swap(swap_id)
            factory = swap.evm_factory_address
            immutables = Resolver.immutables(swap, swap.created_at)

            if not evm_htlc.is_native(swap.evm_token):
                self._confirm(self.evm_client, TransactionRequest(
                    chain_type=ChainType.EVM,
                    action="approve",
                    target=swap.evm_token,
                    payload=evm_htlc.build_call(
                        swap.evm_token, evm_htlc.encode_approve(factory, swap.evm_amount)),
                    swap_id=swap_id,
                    description=f"approve {factory}",
                ), timeout)

            confirmation = self._confirm(self.evm_client, TransactionRequest(
                chain_type=ChainType.EVM,
                action="create_escrow",
                target=factory,
                payload=evm_htlc.build_call(
                    factory,
                    evm_htlc.encode_create_dst_escrow(immutables, swap.src_cancellation_at),
                    value=evm_htlc.create_dst_escrow_value(immutables),
                ),
                swap_id=swap_id,
                description="createDstEscrow",
            ), timeout)

            created = evm_htlc.parse_dst_escrow_created(confirmation.logs, factory)
            if created is None:
                raise ChainRevertError(
                    "DstEscrowCreated event not found in receipt", tx_hash=confirmation.tx_hash)
            if created.hashlock.lower() != swap.hashlock.lower():
                raise EncodingMismatchError(
                    "Escrow was created with a different hashlock",
                    expected=swap.hashlock, actual=created.hashlock)

            deployed_at = confirmation.block_timestamp
            if deployed_at is None:
                deployed_at = self.evm_client.get_block_timestamp(confirmation.block_ref)
        except Exception as e:
            self._record_lock_failure(swap_id, ChainType.EVM, e)
            raise

        public_withdraw_at = tl.stage_time(swap.evm_timelocks, tl.Stage.DST_PUBLIC_WITHDRAWAL, deployed_at)
        cancel_at = tl.stage_time(swap.evm_timelocks, tl.Stage.DST_CANCELLATION, deployed_at)

        def _mutate(record: SwapRecord):
            record.evm_tx_hash = confirmation.tx_hash
            record.evm_escrow_address = created.escrow
            record.evm_deployed_at = deployed_at
            record.evm_public_withdraw_at = public_withdraw_at
            record.evm_cancel_at = cancel_at
            record.apply(SwapStatus.EVM_ORDER_CREATED, timestamp=self._now(),
                         tx_hash=confirmation.tx_hash, chain_type=ChainType.EVM,
                         escrow=created.escrow, deployed_at=deployed_at)

        self.repository.update_swap(swap_id, _mutate)
        self._create_monitor(swap_id, ChainType.EVM, confirmation.tx_hash, swap.hashlock, cancel_at)
        log.info(f"Swap {swap_id}: EVM escrow {created.escrow} deployed at {deployed_at}")

    def _lock_ledger(self, swap_id: str, timeout: float):
        """Ledger leg: EscrowCreate from maker to taker."""
        try:
            swap = self.repository.get_swap(swap_id)
            confirmation = self._confirm(self.ledger_client, TransactionRequest(
                chain_type=ChainType.XRPL,
                action="create_escrow",
                target=swap.taker_xrpl_address,
                payload=xrpl_htlc.escrow_create(
                    account=swap.maker_xrpl_address,
                    destination=swap.taker_xrpl_address,
                    amount_drops=swap.xrpl_amount,
                    condition=swap.condition,
                    finish_after=swap.xrpl_finish_after,
                    cancel_after=swap.xrpl_cancel_after,
                ),
                caller=swap.maker_xrpl_address,
                swap_id=swap_id,
                description="EscrowCreate",
            ), timeout)

            sequence = confirmation.details.get("sequence")
            if sequence is None:
                raise ChainSubmissionError(
                    f"EscrowCreate {confirmation.tx_hash} has no Sequence", tx_hash=confirmation.tx_hash)
        except Exception as e:
            self._record_lock_failure(swap_id, ChainType.XRPL, e)
            raise

        def _mutate(record: SwapRecord):
            record.xrpl_tx_hash = confirmation.tx_hash
            record.xrpl_sequence = int(sequence)
            record.apply(SwapStatus.NON_EVM_ESCROW_LOCKED, timestamp=self._now(),
                         tx_hash=confirmation.tx_hash, chain_type=ChainType.XRPL,
                         offer_sequence=int(sequence))

        self.repository.update_swap(swap_id, _mutate)
        self._create_monitor(swap_id, ChainType.XRPL, confirmation.tx_hash, swap.hashlock,
                             swap.xrpl_cancel_after)
        log.info(f"Swap {swap_id}: XRPL escrow locked (sequence {sequence})")

    def _create_monitor(self, swap_id: str, leg: ChainType, tx_hash: str,
                        secret_hash: str, timelock: int) -> EscrowMonitor:
        now = self._now()
        return self.repository.create_monitor(EscrowMonitor(
            swap_id=swap_id,
            chain_type=leg,
            status=MonitorStatus.PENDING,
            tx_hash=tx_hash,
            secret_hash=secret_hash,
            timelock=timelock,
            created_at=now,
            history=[MonitorEvent(timestamp=now, status=MonitorStatus.PENDING, tx_hash=tx_hash)],
        ))

    def _record_lock_failure(self, swap_id: str, leg: ChainType, error: Exception):
        kind = error.kind if isinstance(error, SwapError) else type(error).__name__
        log.error(f"Swap {swap_id}: {leg.value} lock failed: {error}")
        try:
            self.repository.update_swap(swap_id, lambda record: record.apply(
                SwapStatus.FAILED, timestamp=self._now(), chain_type=leg,
                error_message=str(error), stage="lock", kind=kind))
        except PersistenceError as e:
            log.error(f"Swap {swap_id}: could not record {leg.value} lock failure: {e}")

    # =========================================================================
    # Secret
    # =========================================================================

    def reveal_secret(self, swap_id: str, secret: Optional[str] = None) -> SwapRecord:
        """
        Persist the secret (once) with a SECRET_REVEALED entry.

        Uses the supplied secret or the one generated at initiation.
        """
        with self._secrets_lock:
            secret = secret or self._secrets.get(swap_id)
        if not secret:
            swap = self.repository.get_swap(swap_id)
            if swap.secret:
                return swap
            raise PreconditionError(f"Swap {swap_id}: secret unknown", check="missing_secret")

        def _mutate(record: SwapRecord):
            normalized = commitment.ensure_secret(secret, record.hashlock, record.condition)
            if record.secret:
                return
            record.secret = normalized
            record.apply(SwapStatus.SECRET_REVEALED, timestamp=self._now(),
                         secret_prefix=normalized[:8])

        swap = self.repository.update_swap(swap_id, _mutate)
        self._forget_secret(swap_id)
        log.info(f"Swap {swap_id}: secret revealed ({swap.secret[:8]}...)")
        return swap

    def _forget_secret(self, swap_id: str):
        with self._secrets_lock:
            self._secrets.pop(swap_id, None)

    def has_private_secret(self, swap_id: str) -> bool:
        """Whether an unrevealed secret for ``swap_id`` is still held in memory."""
        with self._secrets_lock:
            return swap_id in self._secrets

    # =========================================================================
    # Claim / Refund
    # =========================================================================

    def claim(self, swap_id: str, leg, caller: Optional[str] = None,
              secret: Optional[str] = None, timeout: Optional[float] = None) -> ActionResult:
        """Claim one leg (taker, after its public withdrawal time)."""
        return self._act(swap_id, leg, Action.CLAIM, caller, secret, timeout)

    def refund(self, swap_id: str, leg, caller: Optional[str] = None,
               timeout: Optional[float] = None) -> ActionResult:
        """Refund one leg (maker, after its cancellation time)."""
        return self._act(swap_id, leg, Action.REFUND, caller, None, timeout)

    def _begin(self, key):
        with self._in_flight_lock:
            if key in self._in_flight:
                raise PreconditionError(
                    f"{key[2].value} already in flight for {key[1].value} leg of {key[0]}",
                    check="in_flight")
            self._in_flight.add(key)

    def _end(self, key):
        with self._in_flight_lock:
            self._in_flight.discard(key)

    def _act(self, swap_id: str, leg, action, caller: Optional[str],
             secret: Optional[str], timeout: Optional[float]) -> ActionResult:
        leg = parse_chain_type(leg)
        action = parse_action(action)
        timeout = self.config.confirmation_timeout if timeout is None else timeout
        client = self._client(leg, action)
        signer = client.address
        caller = caller or signer
        key = (swap_id, leg, action)

        swap = self.repository.get_swap(swap_id)

        try:
            self._begin(key)
        except PreconditionError as e:
            self._record_action_failure(swap_id, leg, action, e)
            raise

        tx_hash = None
        try:
            if not signer:
                raise ValidationError(f"{leg.value} {action.value} client has no signing account")
            if not same_address(leg, caller, signer):
                raise PreconditionError(
                    f"{leg.value} {action.value} is signed by {signer}, not {caller}",
                    check="wrong_caller", caller=caller, signer=signer)
            monitor = self.repository.find_monitor(swap_id, leg)
            if monitor is None:
                raise PreconditionError(f"Swap {swap_id}: {leg.value} leg is not locked",
                                        check="not_locked")
            if monitor.is_terminal:
                done = MonitorStatus.RESOLVED if action == Action.CLAIM else MonitorStatus.CANCELED
                if monitor.status == done:
                    log.info(f"Swap {swap_id}: {leg.value} {action.value} already done")
                    return ActionResult(swap_id, leg, action, monitor.resolution_tx_hash,
                                        swap.status, already_resolved=True)
                raise PreconditionError(
                    f"Swap {swap_id}: {leg.value} leg already {monitor.status.value}",
                    check="leg_closed", monitor_status=monitor.status.value)

            if action == Action.CLAIM:
                with self._secrets_lock:
                    secret = secret or swap.secret or self._secrets.get(swap_id)

            tx_request = self.resolver.resolve(
                swap, leg, action, caller, secret=secret, now=self._now(),
                deployed_at=swap.evm_deployed_at)

            if action == Action.CLAIM:
                self.reveal_secret(swap_id, secret)

            submitted = client.submit(tx_request)
            tx_hash = submitted.tx_hash
            confirmation = client.await_confirmation(tx_hash, timeout)
            if not confirmation.success:
                raise ChainRevertError(
                    f"{leg.value} {action.value} reverted: {confirmation.reason}",
                    reason=confirmation.reason, tx_hash=tx_hash)
        except SwapError as e:
            self._record_action_failure(swap_id, leg, action, e, tx_hash)
            raise
        except Exception as e:
            log.exception(f"Swap {swap_id}: unexpected {leg.value} {action.value} error")
            error = ChainSubmissionError(
                f"{leg.value} {action.value} failed: {e!r}", cause=type(e).__name__)
            self._record_action_failure(swap_id, leg, action, error, tx_hash)
            raise error from e
        finally:
            self._end(key)

        swap = self.resolver.record_success(
            swap_id, leg, action, confirmation.tx_hash, timestamp=self._now(),
            block_timestamp=confirmation.block_timestamp)

        done = MonitorStatus.RESOLVED if action == Action.CLAIM else MonitorStatus.CANCELED

        def _advance(m: EscrowMonitor):
            if m.status == done and m.resolution_tx_hash == confirmation.tx_hash:
                return
            m.advance(done, timestamp=self._now(), tx_hash=confirmation.tx_hash)

        self.repository.update_monitor(swap_id, leg, _advance)
        if action == Action.REFUND:
            self._forget_secret(swap_id)
        swap = self.reconcile(swap_id)
        return ActionResult(swap_id, leg, action, confirmation.tx_hash, swap.status,
                            details={"block_timestamp": confirmation.block_timestamp})

    def _record_action_failure(self, swap_id: str, leg: ChainType, action: Action,
                               error: SwapError, tx_hash: Optional[str] = None):
        try:
            self.resolver.record_failure(swap_id, leg, action, error, timestamp=self._now(),
                                         tx_hash=tx_hash)
            if isinstance(error, (ChainSubmissionError, ChainRevertError)):
                self.repository.update_monitor(swap_id, leg, lambda m: m.advance(
                    MonitorStatus.FAILED, timestamp=self._now(), tx_hash=tx_hash,
                    error_message=error.message, retryable=error.retryable,
                    kind=error.kind, action=action.value))
        except (PersistenceError, SwapError) as e:
            log.error(f"Swap {swap_id}: could not record {leg.value} {action.value} failure: {e}")

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile(self, swap_id: str) -> SwapRecord:
        """
        Read swap and monitors, then derive.

        Monitors lagging behind a recorded claim/refund hash are advanced;
        COMPLETED is recorded once both monitors are RESOLVED.
        """
        swap = self.repository.get_swap(swap_id)
        monitors = self.repository.list_monitors(swap_id)

        for i, monitor in enumerate(monitors):
            if monitor.is_terminal:
                continue
            claim_hash = swap.claim_tx_hash(monitor.chain_type)
            refund_hash = swap.refund_tx_hash(monitor.chain_type)
            if claim_hash:
                target, tx_hash = MonitorStatus.RESOLVED, claim_hash
            elif refund_hash:
                target, tx_hash = MonitorStatus.CANCELED, refund_hash
            else:
                continue
            log.info(f"Swap {swap_id}: repairing {monitor.chain_type.value} monitor -> {target.value}")
            monitors[i] = self.repository.update_monitor(
                swap_id, monitor.chain_type,
                lambda m: None if m.is_terminal else m.advance(
                    target, timestamp=self._now(), tx_hash=tx_hash, reconciled=True))

        if derive_swap_status(monitors) == SwapStatus.COMPLETED and not swap.has_status(SwapStatus.COMPLETED):
            def _complete(record: SwapRecord):
                if record.has_status(SwapStatus.COMPLETED):
                    return
                record.apply(SwapStatus.COMPLETED, timestamp=self._now(),
                             evm_claim_tx_hash=record.evm_claim_tx_hash,
                             xrpl_claim_tx_hash=record.xrpl_claim_tx_hash)

            swap = self.repository.update_swap(swap_id, _complete)
            log.info(f"Swap {swap_id}: COMPLETED")
        return swap

    def reconcile_all(self) -> List[SwapRecord]:
        """Reconcile every swap that is not COMPLETED. Errors are per swap."""
        results = []
        for swap in self.repository.list_swaps():
            if swap.status == SwapStatus.COMPLETED:
                continue
            try:
                results.append(self.reconcile(swap.swap_id))
            except SwapError as e:
                log.error(f"Reconcile {swap.swap_id} failed: {e}")
        return results

    # =========================================================================
    # Queries
    # =========================================================================

    def get_swap(self, swap_id: str) -> SwapRecord:
        return self.repository.get_swap(swap_id)

    def list_swaps(self, status: Optional[SwapStatus] = None) -> List[SwapRecord]:
        return self.repository.list_swaps(status)

    def get_monitors(self, swap_id: str) -> List[EscrowMonitor]:
        self.repository.get_swap(swap_id)
        return self.repository.list_monitors(swap_id)

    def close(self):
        """Close injected clients and the repository."""
        for client in self._clients():
            client.close()
        self.repository.close()
