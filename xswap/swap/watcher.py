"""
Escrow Watcher for xswap.

Periodically reconciles swaps with their escrow monitors and reports:
- legs whose cancellation time passed while still unresolved (refund due)
- retryable failures still under the retry budget (retry due)
- swaps that became COMPLETED

Polling is bounded: fixed interval, optional max iterations, stop event.
"""

import time
import logging
import os
import threading
from typing import Callable, Optional, List, Set
from dataclasses import dataclass, field

from ..core import SwapStatus, MonitorStatus
from ..errors import ConfirmationTimeout, SwapError
from ..models import SwapRecord, EscrowMonitor
from .coordinator import SwapCoordinator

log = logging.getLogger(__name__)


@dataclass
class WatcherConfig:
    """Watcher configuration."""
    poll_interval: float = 10.0         # seconds
    max_retries: int = 3                # per monitor
    max_iterations: Optional[int] = None
    auto_refund: bool = False           # Refund due legs with the coordinator's clients

    @classmethod
    def from_env(cls) -> "WatcherConfig":
        return cls(
            poll_interval=float(os.environ.get("XSWAP_WATCH_INTERVAL", "10")),
            max_retries=int(os.environ.get("XSWAP_WATCH_MAX_RETRIES", "3")),
            auto_refund=os.environ.get("XSWAP_AUTO_REFUND", "").lower() in ("1", "true", "yes"),
        )


@dataclass
class WatchReport:
    """Outcome of one watcher pass."""
    checked: int = 0
    refund_due: List[EscrowMonitor] = field(default_factory=list)
    retry_due: List[EscrowMonitor] = field(default_factory=list)
    completed: List[SwapRecord] = field(default_factory=list)


class EscrowWatcher:
    """
    Background service that watches escrow monitors.

    Events:
    - on_refund_due(monitor, swap): leg refundable and not resolved
    - on_retry_due(monitor, swap): last attempt failed, retry allowed
    - on_completed(swap): both legs claimed
    """

    def __init__(self, coordinator: SwapCoordinator, config: WatcherConfig = None,
                 clock: Callable[[], float] = time.time):
        self.coordinator = coordinator
        self.repository = coordinator.repository
        self.config = config or WatcherConfig()
        self.clock = clock

        # Callbacks
        self.on_refund_due: Optional[Callable[[EscrowMonitor, SwapRecord], None]] = None
        self.on_retry_due: Optional[Callable[[EscrowMonitor, SwapRecord], None]] = None
        self.on_completed: Optional[Callable[[SwapRecord], None]] = None

        # State
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._completed_seen: Set[str] = set()
        self.iterations = 0

    def start(self):
        """Start watcher in background thread."""
        if self._thread and self._thread.is_alive():
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._watch_loop, name="escrow-watcher", daemon=True)
        self._thread.start()
        log.info("Escrow watcher started")

    def stop(self, timeout: float = 5.0):
        """Stop watcher."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        log.info("Escrow watcher stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _watch_loop(self):
        """Main watch loop."""
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                log.error(f"Watcher error: {e}")

            self.iterations += 1
            if self.config.max_iterations is not None and self.iterations >= self.config.max_iterations:
                log.info(f"Watcher reached {self.iterations} iterations")
                break
            self._stop.wait(self.config.poll_interval)

    def _emit(self, name: str, callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            log.error(f"Handler error for {name}: {e}")

    # =========================================================================
    # One pass
    # =========================================================================

    def run_once(self) -> WatchReport:
        """Reconcile every open swap and classify its legs."""
        report = WatchReport()
        now = int(self.clock())

        for swap in self.repository.list_swaps():
            if swap.status == SwapStatus.COMPLETED and swap.swap_id in self._completed_seen:
                continue
            try:
                swap = self.coordinator.reconcile(swap.swap_id)
            except SwapError as e:
                log.error(f"Reconcile {swap.swap_id} failed: {e}")
                continue
            report.checked += 1

            if swap.status == SwapStatus.COMPLETED:
                if swap.swap_id not in self._completed_seen:
                    self._completed_seen.add(swap.swap_id)
                    report.completed.append(swap)
                    self._emit("completed", self.on_completed, swap)
                continue

            for monitor in self.repository.list_monitors(swap.swap_id):
                if monitor.is_terminal:
                    continue
                monitor = self._touch(monitor, now)
                self._check_monitor(swap, monitor, now, report)

        return report

    def _touch(self, monitor: EscrowMonitor, now: int) -> EscrowMonitor:
        def _stamp(m: EscrowMonitor):
            m.last_checked_at = now
        return self.repository.update_monitor(monitor.swap_id, monitor.chain_type, _stamp)

    def _check_monitor(self, swap: SwapRecord, monitor: EscrowMonitor, now: int, report: WatchReport):
        if now >= monitor.timelock:
            log.warning(f"Swap {swap.swap_id}: {monitor.chain_type.value} leg refundable since {monitor.timelock}")
            report.refund_due.append(monitor)
            self._emit("refund_due", self.on_refund_due, monitor, swap)
            if self.config.auto_refund:
                try:
                    self.coordinator.refund(swap.swap_id, monitor.chain_type)
                except SwapError as e:
                    log.error(f"Auto-refund {swap.swap_id}/{monitor.chain_type.value} failed: {e}")
            return

        if (monitor.status == MonitorStatus.FAILED and monitor.retryable
                and monitor.retry_count < self.config.max_retries):
            report.retry_due.append(monitor)
            self._emit("retry_due", self.on_retry_due, monitor, swap)

    def watch_single_swap(self, swap_id: str, timeout: int = 3600,
                          poll_interval: Optional[float] = None) -> SwapRecord:
        """
        Watch a single swap until completion or timeout.

        Blocking call - use for CLI or testing. Returns once the swap is
        COMPLETED or both legs are closed.

        Args:
            swap_id: Swap to watch
            timeout: Max seconds to wait

        Returns:
            Final swap record

        Raises:
            ConfirmationTimeout: swap still open after ``timeout`` seconds
        """
        interval = self.config.poll_interval if poll_interval is None else poll_interval
        deadline = time.monotonic() + timeout

        while True:
            swap = self.coordinator.reconcile(swap_id)
            if swap.status == SwapStatus.COMPLETED:
                return swap
            monitors = self.repository.list_monitors(swap_id)
            if len(monitors) == 2 and all(m.is_terminal for m in monitors):
                return swap

            if time.monotonic() >= deadline or self._stop.wait(interval):
                break

        raise ConfirmationTimeout(f"Swap {swap_id} did not finish in {timeout}s", swap_id=swap_id)
