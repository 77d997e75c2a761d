#!/usr/bin/env python3
"""
EVM escrow encoding and EVMClient tests (web3 mocked, signing real).
"""

import unittest
from unittest.mock import MagicMock

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from xswap.chains.evm import EVMClient, EVMConfig
from xswap.core import ChainType, TransactionRequest
from xswap.errors import ChainRevertError, ChainSubmissionError, ConfirmationTimeout, PreconditionError, ValidationError
from xswap.htlc import evm as evm_htlc, timelocks as tl
from xswap.swap.resolver import Resolver

from tests.fakes import (
    T0, FACTORY, ESCROW, TOKEN, NATIVE, TAKER_EVM, SECRET_ONE,
    locked_swap, escrow_created_log, decode_immutables,
)

PRIVATE_KEY = "0x" + "4c" * 32


class TestEncoding(unittest.TestCase):

    def setUp(self):
        self.swap = locked_swap()
        self.immutables = Resolver.immutables(self.swap, T0 + 5)

    def test_known_selectors(self):
        self.assertEqual(evm_htlc.selector(evm_htlc.APPROVE_SIG).hex(), "095ea7b3")
        self.assertEqual(len(evm_htlc.selector(evm_htlc.WITHDRAW_SIG)), 4)
        self.assertEqual(
            evm_htlc.DST_ESCROW_CREATED_TOPIC,
            Web3.to_hex(Web3.keccak(text="DstEscrowCreated(address,bytes32,uint256)")),
        )

    def test_order_hash(self):
        order_hash = evm_htlc.order_hash_for("XSwapOrder")
        self.assertEqual(len(bytes.fromhex(order_hash[2:])), 32)
        self.assertTrue(bytes.fromhex(order_hash[2:]).startswith(b"XSwapOrder\x00"))
        with self.assertRaises(ValidationError):
            evm_htlc.order_hash_for("x" * 32)

    def test_immutables_tuple(self):
        values = self.immutables.as_tuple()
        self.assertEqual(values[0], bytes.fromhex(self.swap.evm_order_hash[2:]))
        self.assertEqual(values[4], int(TOKEN, 16))
        self.assertEqual(tl.get_deployed_at(values[7]), T0 + 5)

    def test_rebased_copy(self):
        moved = self.immutables.rebased(T0 + 99)
        self.assertEqual(tl.get_deployed_at(moved.timelocks), T0 + 99)
        self.assertEqual(tl.get_deployed_at(self.immutables.timelocks), T0 + 5)

    def test_withdraw_and_cancel_calldata(self):
        withdraw = evm_htlc.encode_withdraw("0x" + SECRET_ONE, self.immutables)
        secret, values = decode_immutables(withdraw, ["bytes32", evm_htlc.IMMUTABLES_TYPE])
        self.assertEqual(secret.hex(), SECRET_ONE)
        self.assertEqual(values, self.immutables.as_tuple())

        public = evm_htlc.encode_public_withdraw(SECRET_ONE, self.immutables)
        self.assertNotEqual(public[:10], withdraw[:10])
        self.assertEqual(public[10:], withdraw[10:])

        cancel = evm_htlc.encode_cancel(self.immutables)
        self.assertTrue(cancel.startswith(Web3.to_hex(evm_htlc.selector(evm_htlc.CANCEL_SIG))))

    def test_secret_must_be_bytes32(self):
        with self.assertRaises(ValidationError):
            evm_htlc.encode_withdraw("0x1234", self.immutables)

    def test_create_value(self):
        self.assertEqual(evm_htlc.create_dst_escrow_value(self.immutables), 1000)
        native = Resolver.immutables(locked_swap(token=NATIVE), T0)
        self.assertEqual(evm_htlc.create_dst_escrow_value(native), 1_001_000)
        self.assertTrue(evm_htlc.is_native(""))

    def test_approve(self):
        data = evm_htlc.encode_approve(FACTORY, 5)
        spender, amount = decode_immutables(data, ["address", "uint256"])
        self.assertEqual(spender.lower(), FACTORY)
        self.assertEqual(amount, 5)
        with self.assertRaises(ValidationError):
            evm_htlc.encode_approve("0x1234")

    def test_build_call(self):
        call = evm_htlc.build_call(ESCROW, "0xdead", value=3, gas=90000)
        self.assertEqual(call, {"to": Web3.to_checksum_address(ESCROW), "data": "0xdead",
                                "value": 3, "gas": 90000})


class TestEscrowCreatedEvent(unittest.TestCase):

    def setUp(self):
        self.hashlock = bytes.fromhex("ab" * 32)
        self.entry = escrow_created_log(FACTORY, ESCROW, self.hashlock, int(TAKER_EVM, 16))

    def test_parse(self):
        event = evm_htlc.parse_dst_escrow_created([{"topics": ["0x" + "00" * 32]}, self.entry], FACTORY)
        self.assertEqual(event.escrow, Web3.to_checksum_address(ESCROW))
        self.assertEqual(event.hashlock, "0x" + "ab" * 32)
        self.assertEqual(event.taker.lower(), TAKER_EVM)

    def test_parse_bytes_fields(self):
        entry = dict(self.entry, topics=[bytes.fromhex(evm_htlc.DST_ESCROW_CREATED_TOPIC[2:])],
                     data=bytes.fromhex(self.entry["data"][2:]))
        self.assertIsNotNone(evm_htlc.parse_dst_escrow_created([entry]))

    def test_other_emitter_ignored(self):
        self.assertIsNone(evm_htlc.parse_dst_escrow_created([self.entry], "0x" + "99" * 20))
        self.assertIsNone(evm_htlc.parse_dst_escrow_created([]))


class TestEVMClient(unittest.TestCase):

    def setUp(self):
        self.w3 = MagicMock()
        self.w3.eth.get_transaction_count.return_value = 3
        self.w3.eth.gas_price = 1_000_000_000
        self.w3.eth.estimate_gas.return_value = 100_000
        self.w3.eth.send_raw_transaction.return_value = b"\xaa" * 32
        self.client = EVMClient(EVMConfig(chain_id=84532, private_key=PRIVATE_KEY), web3=self.w3)
        self.request = TransactionRequest(
            chain_type=ChainType.EVM,
            action="claim",
            target=ESCROW,
            payload=evm_htlc.build_call(ESCROW, "0xdeadbeef"),
        )

    def test_submit(self):
        result = self.client.submit(self.request)
        self.assertEqual(result.tx_hash, "0x" + "aa" * 32)

        tx = self.w3.eth.estimate_gas.call_args[0][0]
        self.assertEqual(tx["nonce"], 3)
        self.assertEqual(tx["gasPrice"], 1_100_000_000)
        self.assertEqual(tx["from"], self.client.address)
        self.w3.eth.get_transaction_count.assert_called_with(self.client.address, "pending")

    def test_caller_must_be_signer(self):
        request = TransactionRequest(ChainType.EVM, "claim", ESCROW, self.request.payload, caller=TAKER_EVM)
        with self.assertRaises(PreconditionError) as ctx:
            self.client.submit(request)
        self.assertEqual(ctx.exception.check, "wrong_caller")
        self.w3.eth.send_raw_transaction.assert_not_called()

        request.caller = self.client.address.lower()
        self.assertEqual(self.client.submit(request).tx_hash, "0x" + "aa" * 32)

    def test_estimate_revert(self):
        self.w3.eth.estimate_gas.side_effect = ContractLogicError("execution reverted: InvalidTime()")
        with self.assertRaises(ChainRevertError):
            self.client.submit(self.request)
        self.w3.eth.send_raw_transaction.assert_not_called()

    def test_rpc_failure(self):
        self.w3.eth.send_raw_transaction.side_effect = ConnectionError("reset")
        with self.assertRaises(ChainSubmissionError):
            self.client.submit(self.request)

    def test_requires_key_and_chain(self):
        with self.assertRaises(ValidationError):
            EVMClient(EVMConfig(), web3=self.w3).submit(self.request)
        ledger_request = TransactionRequest(ChainType.XRPL, "claim", "r", {})
        with self.assertRaises(ValidationError):
            self.client.submit(ledger_request)

    def test_confirmation(self):
        self.w3.eth.wait_for_transaction_receipt.return_value = {
            "blockNumber": 12,
            "status": 1,
            "transactionHash": b"\xaa" * 32,
            "gasUsed": 21000,
            "logs": [{
                "address": FACTORY,
                "topics": [bytes.fromhex(evm_htlc.DST_ESCROW_CREATED_TOPIC[2:])],
                "data": b"\x01\x02",
                "logIndex": 0,
            }],
        }
        self.w3.eth.get_block.return_value = {"timestamp": T0 + 5}

        confirmation = self.client.await_confirmation("0x" + "aa" * 32, timeout=5)
        self.assertTrue(confirmation.success)
        self.assertEqual(confirmation.block_timestamp, T0 + 5)
        self.assertEqual(confirmation.block_ref, 12)
        self.assertEqual(confirmation.logs[0]["topics"], [evm_htlc.DST_ESCROW_CREATED_TOPIC])
        self.assertEqual(confirmation.logs[0]["data"], "0x0102")

    def test_reverted_receipt(self):
        self.w3.eth.wait_for_transaction_receipt.return_value = {
            "blockNumber": 12, "status": 0, "transactionHash": b"\xaa" * 32, "logs": []}
        self.w3.eth.get_block.return_value = {"timestamp": T0}
        confirmation = self.client.await_confirmation("0x" + "aa" * 32, timeout=5)
        self.assertFalse(confirmation.success)
        self.assertEqual(confirmation.reason, "execution reverted")

    def test_confirmation_timeout(self):
        self.w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("slow")
        with self.assertRaises(ConfirmationTimeout) as ctx:
            self.client.await_confirmation("0x" + "aa" * 32, timeout=1)
        self.assertTrue(ctx.exception.retryable)

    def test_not_connected(self):
        with self.assertRaises(ChainSubmissionError):
            EVMClient(EVMConfig(private_key=PRIVATE_KEY)).get_block_timestamp(1)


if __name__ == "__main__":
    unittest.main()
