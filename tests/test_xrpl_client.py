#!/usr/bin/env python3
"""
XRP Ledger transaction builders and XRPLClient tests.

The client runs against httpx.MockTransport serving canned rippled
JSON-RPC responses.
"""

import json
import unittest

import httpx

from xswap.chains.xrpl import XRPLClient, XRPLConfig
from xswap.core import ChainType, TransactionRequest, RIPPLE_EPOCH_OFFSET
from xswap.errors import ChainRevertError, ChainSubmissionError, ConfirmationTimeout, PreconditionError, ValidationError
from xswap.htlc import commitment, xrpl as xrpl_htlc

from tests.fakes import T0, MAKER_XRPL, TAKER_XRPL, SECRET_ONE

C = commitment.from_secret(SECRET_ONE)


class TestBuilders(unittest.TestCase):

    def test_ripple_time(self):
        self.assertEqual(xrpl_htlc.to_ripple_time(RIPPLE_EPOCH_OFFSET), 0)
        self.assertEqual(xrpl_htlc.from_ripple_time(0), 946684800)
        self.assertEqual(xrpl_htlc.from_ripple_time(xrpl_htlc.to_ripple_time(T0)), T0)
        with self.assertRaises(ValidationError):
            xrpl_htlc.to_ripple_time(RIPPLE_EPOCH_OFFSET - 1)

    def test_addresses(self):
        self.assertTrue(xrpl_htlc.is_valid_address(MAKER_XRPL))
        self.assertTrue(xrpl_htlc.is_valid_address(TAKER_XRPL))
        # One character changed breaks the checksum
        self.assertFalse(xrpl_htlc.is_valid_address(MAKER_XRPL[:-1] + "j"))
        self.assertFalse(xrpl_htlc.is_valid_address("0x" + "11" * 20))
        self.assertFalse(xrpl_htlc.is_valid_address(None))

    def test_escrow_create(self):
        tx = xrpl_htlc.escrow_create(MAKER_XRPL, TAKER_XRPL, 25_000_000, C.condition.lower(),
                                     finish_after=T0 + 30, cancel_after=T0 + 600)
        self.assertEqual(tx, {
            "TransactionType": "EscrowCreate",
            "Account": MAKER_XRPL,
            "Destination": TAKER_XRPL,
            "Amount": "25000000",
            "Condition": C.condition,
            "FinishAfter": T0 + 30 - RIPPLE_EPOCH_OFFSET,
            "CancelAfter": T0 + 600 - RIPPLE_EPOCH_OFFSET,
        })

    def test_escrow_create_rejections(self):
        with self.assertRaises(ValidationError):
            xrpl_htlc.escrow_create(MAKER_XRPL, TAKER_XRPL, 1, C.condition, T0 + 600, T0 + 600)
        with self.assertRaises(ValidationError):
            xrpl_htlc.escrow_create(MAKER_XRPL, TAKER_XRPL, 0, C.condition, None, T0 + 600)
        with self.assertRaises(ValidationError):
            xrpl_htlc.escrow_create(MAKER_XRPL, TAKER_XRPL, 1, C.hashlock, None, T0 + 600)

    def test_finish_and_cancel(self):
        finish = xrpl_htlc.escrow_finish(TAKER_XRPL, MAKER_XRPL, 7, C.condition, C.fulfillment)
        self.assertEqual(finish["Fulfillment"], C.fulfillment)
        self.assertEqual(finish["OfferSequence"], 7)

        cancel = xrpl_htlc.escrow_cancel(MAKER_XRPL, MAKER_XRPL, 7)
        self.assertEqual(set(cancel), {"TransactionType", "Account", "Owner", "OfferSequence"})

    def test_finish_fee(self):
        # 36-byte fulfillment: 33 + ceil(36 / 16) = 36 units
        self.assertEqual(xrpl_htlc.finish_fee_drops(10, C.fulfillment), 360)


class FakeRippled:
    """Dispatches JSON-RPC methods to canned results."""

    def __init__(self):
        self.calls = []
        self.results = {
            "account_info": [{"account_data": {"Sequence": 41}, "status": "success"}],
            "ledger_current": [{"ledger_current_index": 1000, "status": "success"}],
            "submit": [{"engine_result": "tesSUCCESS", "tx_json": {"hash": "ABC123"}, "status": "success"}],
            "tx": [{"validated": True, "ledger_index": 1003, "date": 800_000_000,
                    "meta": {"TransactionResult": "tesSUCCESS"},
                    "tx_json": {"Sequence": 41, "Account": MAKER_XRPL, "TransactionType": "EscrowCreate"},
                    "status": "success"}],
            "ledger": [{"ledger": {"close_time": 800_000_010}, "status": "success"}],
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        self.calls.append((method, body["params"][0]))
        queue = self.results[method]
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(200, json={"result": result})

    def params(self, method):
        return [p for m, p in self.calls if m == method]


def not_found():
    return {"status": "error", "error": "txnNotFound", "error_message": "Transaction not found."}


class TestXRPLClient(unittest.TestCase):

    def setUp(self):
        self.rippled = FakeRippled()
        self.signed = []
        self.ticks = [0.0]

        def signer(tx):
            self.signed.append(tx)
            return "DEADBEEF", "ABC123"

        def clock():
            self.ticks[0] += 1.0
            return self.ticks[0]

        self.client = XRPLClient(
            XRPLConfig(rpc_url="http://rippled.test", account=MAKER_XRPL, fee_drops=10, poll_interval=0),
            signer=signer,
            transport=httpx.MockTransport(self.rippled),
            sleep=lambda s: None,
            clock=clock,
        ).connect()

    def tearDown(self):
        self.client.close()

    def request(self, payload, action="create_escrow"):
        return TransactionRequest(chain_type=ChainType.XRPL, action=action, target=TAKER_XRPL, payload=payload)

    def test_submit_autofills(self):
        tx = xrpl_htlc.escrow_create(MAKER_XRPL, TAKER_XRPL, 5, C.condition, T0 + 30, T0 + 600)
        result = self.client.submit(self.request(tx))

        self.assertEqual(result.tx_hash, "ABC123")
        signed = self.signed[0]
        self.assertEqual(signed["Sequence"], 41)
        self.assertEqual(signed["Fee"], "10")
        self.assertEqual(signed["LastLedgerSequence"], 1020)
        self.assertEqual(self.rippled.params("submit"), [{"tx_blob": "DEADBEEF"}])
        self.assertNotIn("Sequence", tx)

    def test_finish_fee_autofill(self):
        tx = xrpl_htlc.escrow_finish(MAKER_XRPL, TAKER_XRPL, 7, C.condition, C.fulfillment)
        self.client.submit(self.request(tx, action="claim"))
        self.assertEqual(self.signed[0]["Fee"], "360")

    def test_rejects_other_accounts(self):
        finish = xrpl_htlc.escrow_finish(TAKER_XRPL, MAKER_XRPL, 7, C.condition, C.fulfillment)
        with self.assertRaises(PreconditionError) as ctx:
            self.client.submit(self.request(finish, action="claim"))
        self.assertEqual(ctx.exception.check, "wrong_caller")

        cancel = xrpl_htlc.escrow_cancel(MAKER_XRPL, MAKER_XRPL, 7)
        request = TransactionRequest(ChainType.XRPL, "refund", MAKER_XRPL, cancel, caller=TAKER_XRPL)
        with self.assertRaises(PreconditionError):
            self.client.submit(request)

        self.assertEqual(self.signed, [])
        self.assertEqual(self.rippled.calls, [])

    def test_requires_account(self):
        client = XRPLClient(XRPLConfig(rpc_url="http://rippled.test"),
                            transport=httpx.MockTransport(self.rippled)).connect()
        with self.assertRaises(ValidationError):
            client.submit(self.request(xrpl_htlc.escrow_cancel(MAKER_XRPL, MAKER_XRPL, 7), "refund"))
        client.close()

    def test_malformed_replies(self):
        self.rippled.results["account_info"] = [{"status": "success"}]
        with self.assertRaises(ChainSubmissionError):
            self.client.get_sequence(MAKER_XRPL)

        self.rippled.results["ledger"] = [{"ledger": {}, "status": "success"}]
        with self.assertRaises(ChainSubmissionError):
            self.client.get_block_timestamp(1003)

    def test_sign_reply_without_blob(self):
        self.rippled.results["sign"] = [{"tx_json": {"hash": "ABC123"}, "status": "success"}]
        client = XRPLClient(
            XRPLConfig(rpc_url="http://rippled.test", account=MAKER_XRPL, seed="sEdTestSeed"),
            transport=httpx.MockTransport(self.rippled),
        ).connect()
        with self.assertRaises(ChainSubmissionError):
            client.submit(self.request(xrpl_htlc.escrow_cancel(MAKER_XRPL, MAKER_XRPL, 7), "refund"))
        self.assertEqual(self.rippled.params("submit"), [])
        client.close()

    def test_tec_result_is_revert(self):
        self.rippled.results["submit"] = [{"engine_result": "tecNO_PERMISSION", "status": "success"}]
        with self.assertRaises(ChainRevertError) as ctx:
            self.client.submit(self.request(xrpl_htlc.escrow_cancel(MAKER_XRPL, MAKER_XRPL, 7), "refund"))
        self.assertEqual(ctx.exception.reason, "tecNO_PERMISSION")

    def test_rejected_submission(self):
        self.rippled.results["submit"] = [{"engine_result": "telINSUF_FEE_P", "status": "success"}]
        with self.assertRaises(ChainSubmissionError):
            self.client.submit(self.request(xrpl_htlc.escrow_cancel(MAKER_XRPL, MAKER_XRPL, 7), "refund"))

    def test_rpc_error(self):
        self.rippled.results["account_info"] = [{"status": "error", "error": "actNotFound"}]
        with self.assertRaises(ChainSubmissionError) as ctx:
            self.client.get_sequence(MAKER_XRPL)
        self.assertEqual(ctx.exception.details["error"], "actNotFound")

    def test_http_error(self):
        client = XRPLClient(XRPLConfig(rpc_url="http://rippled.test"),
                            transport=httpx.MockTransport(lambda r: httpx.Response(503))).connect()
        with self.assertRaises(ChainSubmissionError):
            client.get_current_ledger()
        client.close()

    def test_await_confirmation_polls_until_validated(self):
        self.rippled.results["tx"] = [not_found(), {"validated": False, "status": "success"}] + self.rippled.results["tx"]
        confirmation = self.client.await_confirmation("ABC123", timeout=30)

        self.assertTrue(confirmation.success)
        self.assertEqual(confirmation.block_timestamp, 800_000_000 + RIPPLE_EPOCH_OFFSET)
        self.assertEqual(confirmation.block_ref, 1003)
        self.assertEqual(confirmation.details["sequence"], 41)
        self.assertEqual(len(self.rippled.params("tx")), 3)

    def test_api_v1_flat_result(self):
        self.rippled.results["tx"] = [{"validated": True, "ledger_index": 1003,
                                       "meta": {"TransactionResult": "tesSUCCESS"},
                                       "Sequence": 9, "Account": MAKER_XRPL,
                                       "TransactionType": "EscrowCreate", "status": "success"}]
        confirmation = self.client.await_confirmation("ABC123", timeout=30)
        self.assertEqual(confirmation.details["sequence"], 9)
        # No date: falls back to the ledger close time
        self.assertEqual(confirmation.block_timestamp, 800_000_010 + RIPPLE_EPOCH_OFFSET)

    def test_failed_validation(self):
        self.rippled.results["tx"][0]["meta"] = {"TransactionResult": "tecNO_TARGET"}
        confirmation = self.client.await_confirmation("ABC123", timeout=30)
        self.assertFalse(confirmation.success)
        self.assertEqual(confirmation.reason, "tecNO_TARGET")

    def test_confirmation_timeout(self):
        self.rippled.results["tx"] = [not_found()]
        with self.assertRaises(ConfirmationTimeout) as ctx:
            self.client.await_confirmation("ABC123", timeout=3)
        self.assertEqual(ctx.exception.tx_hash, "ABC123")

    def test_other_tx_errors_propagate(self):
        self.rippled.results["tx"] = [{"status": "error", "error": "invalidParams"}]
        with self.assertRaises(ChainSubmissionError):
            self.client.await_confirmation("ABC123", timeout=3)

    def test_rejects_evm_requests(self):
        with self.assertRaises(ValidationError):
            self.client.submit(TransactionRequest(ChainType.EVM, "claim", "0x", {}))

    def test_address(self):
        self.assertEqual(self.client.address, MAKER_XRPL)
        self.assertIsNone(XRPLClient(XRPLConfig()).address)


if __name__ == "__main__":
    unittest.main()
