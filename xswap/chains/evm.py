"""
EVM chain client for xswap.

Signs and submits TransactionRequests with web3.py + eth-account and maps
receipts to Confirmations. The connection is opened explicitly with
``connect()`` (or as a context manager) and injected into the coordinator.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Dict, Any

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError

from ..core import ChainClient, ChainType, TransactionRequest, SubmitResult, Confirmation
from ..errors import (
    ChainSubmissionError,
    ChainRevertError,
    ConfirmationTimeout,
    PreconditionError,
    ValidationError,
)

log = logging.getLogger(__name__)


@dataclass
class EVMConfig:
    """EVM chain configuration."""
    rpc_url: str = "https://sepolia.base.org"
    chain_id: int = 84532  # Base Sepolia
    private_key: str = ""  # For signing
    gas_price_multiplier: float = 1.1
    default_gas: int = 350000
    request_timeout: int = 30

    @classmethod
    def from_env(cls, role: str = "") -> "EVMConfig":
        """Read config; ``role="taker"`` reads the key from XSWAP_EVM_TAKER_PRIVATE_KEY."""
        key_var = f"XSWAP_EVM_{role.upper()}_PRIVATE_KEY" if role else "XSWAP_EVM_PRIVATE_KEY"
        return cls(
            rpc_url=os.environ.get("XSWAP_EVM_RPC_URL", cls.rpc_url),
            chain_id=int(os.environ.get("XSWAP_EVM_CHAIN_ID", cls.chain_id)),
            private_key=os.environ.get(key_var, ""),
        )


def _log_to_dict(entry) -> Dict[str, Any]:
    return {
        "address": entry["address"],
        "topics": [Web3.to_hex(t) for t in entry["topics"]],
        "data": Web3.to_hex(entry["data"]),
        "log_index": entry.get("logIndex"),
    }


class EVMClient(ChainClient):
    """
    web3.py client for one EVM chain and one signing account.

    Usage:
        with EVMClient(EVMConfig.from_env()) as evm:
            result = evm.submit(tx_request)
            confirmation = evm.await_confirmation(result.tx_hash, timeout=120)
    """

    chain_type = ChainType.EVM

    def __init__(self, config: EVMConfig, web3: Optional[Web3] = None):
        self.config = config
        self._web3 = web3
        self._account = Account.from_key(config.private_key) if config.private_key else None

    def connect(self) -> "EVMClient":
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(
                self.config.rpc_url,
                request_kwargs={"timeout": self.config.request_timeout},
            ))
            log.info(f"EVM client connected to {self.config.rpc_url} (chain {self.config.chain_id})")
        return self

    def close(self):
        self._web3 = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def web3(self) -> Web3:
        if self._web3 is None:
            raise ChainSubmissionError("EVM client is not connected")
        return self._web3

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account else None

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(self, tx_request: TransactionRequest) -> SubmitResult:
        """
        Sign and broadcast an EVM TransactionRequest.

        Gas is estimated (a revert at estimation raises ChainRevertError);
        gasPrice is the node price times ``gas_price_multiplier``.
        """
        if tx_request.chain_type != ChainType.EVM:
            raise ValidationError(f"EVM client cannot submit {tx_request.chain_type.value} transactions")
        if self._account is None:
            raise ValidationError("No EVM private key configured")
        if tx_request.caller and tx_request.caller.lower() != self._account.address.lower():
            raise PreconditionError(
                f"EVM client signs for {self._account.address}, not {tx_request.caller}",
                check="wrong_caller", caller=tx_request.caller, signer=self._account.address)

        w3 = self.web3
        payload = tx_request.payload
        tx = {
            "from": self._account.address,
            "to": Web3.to_checksum_address(payload["to"]),
            "data": payload["data"],
            "value": int(payload.get("value", 0)),
            "chainId": self.config.chain_id,
        }

        try:
            tx["nonce"] = w3.eth.get_transaction_count(self._account.address, "pending")
            tx["gasPrice"] = int(w3.eth.gas_price * self.config.gas_price_multiplier)
            if payload.get("gas"):
                tx["gas"] = int(payload["gas"])
            else:
                try:
                    tx["gas"] = int(w3.eth.estimate_gas(tx) * 1.2)
                except ContractLogicError as e:
                    raise ChainRevertError(
                        f"{tx_request.action} would revert: {e}",
                        reason=str(e),
                    )
                except Web3RPCError as e:
                    log.warning(f"Gas estimation failed ({e}), using default gas {self.config.default_gas}")
                    tx["gas"] = self.config.default_gas

            signed = self._account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        except (ChainRevertError, ValidationError):
            raise
        except Exception as e:
            log.error(f"EVM {tx_request.action} submission failed: {e}")
            raise ChainSubmissionError(f"EVM {tx_request.action} submission failed: {e}")

        tx_hash_hex = Web3.to_hex(tx_hash)
        log.info(f"EVM {tx_request.action} sent: {tx_hash_hex}")
        return SubmitResult(tx_hash=tx_hash_hex)

    def await_confirmation(self, tx_hash: str, timeout: float) -> Confirmation:
        w3 = self.web3
        try:
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted:
            raise ConfirmationTimeout(
                f"EVM tx {tx_hash} not mined within {timeout}s", tx_hash=tx_hash)
        except Exception as e:
            raise ChainSubmissionError(f"Failed to fetch receipt for {tx_hash}: {e}")

        block_number = receipt["blockNumber"]
        block_timestamp = self.get_block_timestamp(block_number)
        success = receipt["status"] == 1

        if not success:
            log.warning(f"EVM tx {tx_hash} reverted in block {block_number}")

        return Confirmation(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            success=success,
            block_timestamp=block_timestamp,
            block_ref=block_number,
            logs=[_log_to_dict(entry) for entry in receipt.get("logs", [])],
            reason=None if success else "execution reverted",
            details={"gas_used": receipt.get("gasUsed")},
        )

    def get_block_timestamp(self, block_ref) -> int:
        try:
            block = self.web3.eth.get_block(block_ref)
        except Exception as e:
            raise ChainSubmissionError(f"Failed to fetch block {block_ref}: {e}")
        return int(block["timestamp"])

