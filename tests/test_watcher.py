#!/usr/bin/env python3
"""
EscrowWatcher tests: refund-due and retry-due detection, completion
reporting, auto-refund and the bounded background loop.
"""

import time
import unittest

from xswap.core import ChainType, MonitorStatus, SwapStatus
from xswap.errors import ChainSubmissionError, ConfirmationTimeout
from xswap.store import MemoryStore, SwapRepository
from xswap.swap import SwapCoordinator, SwapConfig, SwapRequest, EscrowWatcher, WatcherConfig

from tests.fakes import (
    T0, FACTORY, TOKEN, MAKER_EVM, TAKER_EVM, MAKER_XRPL, TAKER_XRPL,
    FakeClock, fake_evm, fake_ledger,
)


class WatcherTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock(T0)
        self.evm = fake_evm()
        self.ledger = fake_ledger()
        self.ledger_taker = fake_ledger(address=TAKER_XRPL)
        self.repo = SwapRepository(MemoryStore())
        self.coordinator = SwapCoordinator(
            self.evm, self.ledger, self.repo,
            SwapConfig(factory_address=FACTORY, parallel_locks=False),
            clock=self.clock,
            evm_taker_client=fake_evm(address=TAKER_EVM),
            ledger_taker_client=self.ledger_taker,
        )
        self.swap_id = self.coordinator.initiate(SwapRequest(
            maker_evm_address=MAKER_EVM,
            taker_evm_address=TAKER_EVM,
            maker_xrpl_address=MAKER_XRPL,
            taker_xrpl_address=TAKER_XRPL,
            evm_token=TOKEN,
            evm_amount=1_000_000,
            xrpl_amount=25_000_000,
        )).swap_id

    def make_watcher(self, **config):
        return EscrowWatcher(self.coordinator, WatcherConfig(poll_interval=0, **config), clock=self.clock)


class TestRunOnce(WatcherTestCase):

    def test_nothing_due_before_timelocks(self):
        self.clock.now = T0 + 100
        report = self.make_watcher().run_once()
        self.assertEqual(report.checked, 1)
        self.assertEqual(report.refund_due, [])
        self.assertEqual(report.retry_due, [])

        monitor = self.repo.get_monitor(self.swap_id, ChainType.EVM)
        self.assertEqual(monitor.last_checked_at, T0 + 100)

    def test_refund_due_after_cancel_time(self):
        watcher = self.make_watcher()
        seen = []
        watcher.on_refund_due = lambda monitor, swap: seen.append(monitor.chain_type)

        self.clock.now = T0 + 601
        report = watcher.run_once()
        self.assertEqual([m.chain_type for m in report.refund_due], [ChainType.XRPL])

        self.clock.now = T0 + 605
        report = watcher.run_once()
        self.assertEqual({m.chain_type for m in report.refund_due}, {ChainType.EVM, ChainType.XRPL})
        self.assertEqual(seen.count(ChainType.XRPL), 2)

    def test_retry_due_for_retryable_failure(self):
        self.clock.now = T0 + 40
        self.ledger_taker.submit_errors["claim"] = ChainSubmissionError("connection reset")
        with self.assertRaises(ChainSubmissionError):
            self.coordinator.claim(self.swap_id, ChainType.XRPL, caller=TAKER_XRPL)

        watcher = self.make_watcher(max_retries=2)
        report = watcher.run_once()
        self.assertEqual([m.chain_type for m in report.retry_due], [ChainType.XRPL])

        self.ledger_taker.submit_errors["claim"] = ChainSubmissionError("connection reset")
        with self.assertRaises(ChainSubmissionError):
            self.coordinator.claim(self.swap_id, ChainType.XRPL, caller=TAKER_XRPL)
        self.assertEqual(watcher.run_once().retry_due, [])

    def test_completed_reported_once(self):
        self.clock.now = T0 + 40
        self.coordinator.claim(self.swap_id, ChainType.XRPL, caller=TAKER_XRPL)
        self.coordinator.claim(self.swap_id, ChainType.EVM, caller=TAKER_EVM)

        watcher = self.make_watcher()
        completed = []
        watcher.on_completed = completed.append

        self.assertEqual(len(watcher.run_once().completed), 1)
        self.assertEqual(watcher.run_once().completed, [])
        self.assertEqual(len(completed), 1)

    def test_callback_errors_are_contained(self):
        watcher = self.make_watcher()

        def boom(monitor, swap):
            raise RuntimeError("handler bug")

        watcher.on_refund_due = boom
        self.clock.now = T0 + 700
        self.assertEqual(len(watcher.run_once().refund_due), 2)


class TestAutoRefund(WatcherTestCase):

    def test_refunds_due_legs(self):
        self.clock.now = T0 + 700
        self.make_watcher(auto_refund=True).run_once()

        for leg in ChainType:
            self.assertEqual(self.repo.get_monitor(self.swap_id, leg).status, MonitorStatus.CANCELED)
        swap = self.repo.get_swap(self.swap_id)
        self.assertTrue(swap.has_status(SwapStatus.EVM_REFUNDED))
        self.assertTrue(swap.has_status(SwapStatus.NON_EVM_REFUNDED))


class TestLoop(WatcherTestCase):

    def test_bounded_background_loop(self):
        watcher = self.make_watcher(max_iterations=3)
        watcher.start()
        deadline = time.monotonic() + 5
        while watcher.running and time.monotonic() < deadline:
            time.sleep(0.01)
        watcher.stop()

        self.assertFalse(watcher.running)
        self.assertEqual(watcher.iterations, 3)

    def test_loop_survives_unexpected_errors(self):
        calls = []
        reconcile = self.coordinator.reconcile

        def _flaky(swap_id):
            calls.append(swap_id)
            if len(calls) == 1:
                raise RuntimeError("malformed record")
            return reconcile(swap_id)

        self.coordinator.reconcile = _flaky
        watcher = self.make_watcher(max_iterations=5)
        watcher.start()
        deadline = time.monotonic() + 5
        while watcher.running and time.monotonic() < deadline:
            time.sleep(0.01)
        watcher.stop()

        self.assertEqual(watcher.iterations, 5)
        self.assertEqual(len(calls), 5)

    def test_watch_single_swap(self):
        self.clock.now = T0 + 40
        self.coordinator.claim(self.swap_id, ChainType.XRPL, caller=TAKER_XRPL)
        self.coordinator.claim(self.swap_id, ChainType.EVM, caller=TAKER_EVM)

        swap = self.make_watcher().watch_single_swap(self.swap_id, timeout=1)
        self.assertEqual(swap.status, SwapStatus.COMPLETED)

    def test_watch_single_swap_timeout(self):
        with self.assertRaises(ConfirmationTimeout):
            self.make_watcher().watch_single_swap(self.swap_id, timeout=0, poll_interval=0)


if __name__ == "__main__":
    unittest.main()
