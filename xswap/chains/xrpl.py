"""
XRP Ledger client for xswap.

JSON-RPC over httpx against a rippled node. Transactions are autofilled
(Sequence, Fee, LastLedgerSequence), signed by an injected signer and
submitted as blobs; confirmation polls ``tx`` until the transaction is in
a validated ledger.

Both rippled API v1 (flat ``tx`` result) and v2 (``tx_json`` nested)
responses are accepted.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, Tuple

import httpx

from ..core import ChainClient, ChainType, TransactionRequest, SubmitResult, Confirmation
from ..errors import ChainSubmissionError, ChainRevertError, ConfirmationTimeout, PreconditionError, ValidationError
from ..htlc.xrpl import from_ripple_time, finish_fee_drops

log = logging.getLogger(__name__)

# Preliminary engine results that mean "accepted for consideration"
ACCEPTED_PRELIMINARY = {"tesSUCCESS", "terQUEUED"}

# signer(tx_json) -> (tx_blob, tx_hash)
Signer = Callable[[Dict[str, Any]], Tuple[str, str]]


@dataclass
class XRPLConfig:
    """XRP Ledger configuration."""
    rpc_url: str = "https://s.altnet.rippletest.net:51234"
    account: str = ""              # Classic address the client signs for
    seed: str = ""                 # Family seed, used by the rippled sign RPC
    fee_drops: int = 12
    ledger_offset: int = 20        # LastLedgerSequence = current + offset
    poll_interval: float = 1.0
    request_timeout: float = 15.0

    @classmethod
    def from_env(cls, role: str = "") -> "XRPLConfig":
        """Read config; ``role="taker"`` reads XSWAP_XRPL_TAKER_ACCOUNT / XSWAP_XRPL_TAKER_SEED."""
        prefix = f"XSWAP_XRPL_{role.upper()}_" if role else "XSWAP_XRPL_"
        return cls(
            rpc_url=os.environ.get("XSWAP_XRPL_RPC_URL", cls.rpc_url),
            account=os.environ.get(prefix + "ACCOUNT", ""),
            seed=os.environ.get(prefix + "SEED", ""),
        )


def _tx_body(result: Dict[str, Any]) -> Dict[str, Any]:
    """Transaction fields from a ``tx`` result (API v2 nests them)."""
    return result.get("tx_json") or result


def _field(result: Dict[str, Any], method: str, *path: str):
    """Nested field of an RPC result; a missing one is a bad node reply."""
    value = result
    for key in path:
        if not isinstance(value, dict) or key not in value:
            raise ChainSubmissionError(
                f"XRPL {method} reply has no {'.'.join(path)}", method=method)
        value = value[key]
    return value


class XRPLClient(ChainClient):
    """
    rippled JSON-RPC client for one account.

    Usage:
        with XRPLClient(XRPLConfig.from_env()) as xrpl:
            result = xrpl.submit(tx_request)
            confirmation = xrpl.await_confirmation(result.tx_hash, timeout=60)
    """

    chain_type = ChainType.XRPL

    def __init__(self, config: XRPLConfig, signer: Optional[Signer] = None,
                 transport: Optional[httpx.BaseTransport] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._signer = signer or self._rippled_sign
        self._transport = transport
        self._http: Optional[httpx.Client] = None
        self._sleep = sleep
        self._clock = clock

    def connect(self) -> "XRPLClient":
        if self._http is None or self._http.is_closed:
            self._http = httpx.Client(timeout=self.config.request_timeout, transport=self._transport)
            log.info(f"XRPL client connected to {self.config.rpc_url}")
        return self

    def close(self):
        if self._http is not None:
            self._http.close()
            self._http = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def address(self) -> Optional[str]:
        return self.config.account or None

    # =========================================================================
    # JSON-RPC
    # =========================================================================

    def _call(self, method: str, params: Dict[str, Any] = None) -> Dict[str, Any]:
        """Make a rippled JSON-RPC call and return ``result``."""
        if self._http is None:
            raise ChainSubmissionError("XRPL client is not connected")
        payload = {"method": method, "params": [params or {}]}
        try:
            response = self._http.post(self.config.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ChainSubmissionError(f"XRPL {method} failed: {e}")
        except ValueError as e:
            raise ChainSubmissionError(f"XRPL {method} returned invalid JSON: {e}")

        result = data.get("result", {}) if isinstance(data, dict) else None
        if not isinstance(result, dict):
            raise ChainSubmissionError(f"XRPL {method} returned a malformed reply")
        if result.get("status") == "error":
            raise ChainSubmissionError(
                f"XRPL {method} error: {result.get('error_message') or result.get('error')}",
                error=result.get("error"),
            )
        return result

    def get_sequence(self, account: str) -> int:
        result = self._call("account_info", {"account": account, "ledger_index": "current"})
        return int(_field(result, "account_info", "account_data", "Sequence"))

    def get_current_ledger(self) -> int:
        return int(_field(self._call("ledger_current"), "ledger_current", "ledger_current_index"))

    def autofill(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        tx = dict(tx)
        if "Sequence" not in tx:
            tx["Sequence"] = self.get_sequence(tx["Account"])
        if "Fee" not in tx:
            fee = self.config.fee_drops
            if tx.get("TransactionType") == "EscrowFinish" and tx.get("Fulfillment"):
                fee = finish_fee_drops(self.config.fee_drops, tx["Fulfillment"])
            tx["Fee"] = str(fee)
        if "LastLedgerSequence" not in tx:
            tx["LastLedgerSequence"] = self.get_current_ledger() + self.config.ledger_offset
        return tx

    def _rippled_sign(self, tx: Dict[str, Any]) -> Tuple[str, str]:
        """Sign through the node's ``sign`` method with the configured seed."""
        if not self.config.seed:
            raise ValidationError("No XRPL seed configured")
        result = self._call("sign", {"tx_json": tx, "secret": self.config.seed})
        return _field(result, "sign", "tx_blob"), _field(result, "sign", "tx_json", "hash")

    # =========================================================================
    # ChainClient
    # =========================================================================

    def submit(self, tx_request: TransactionRequest) -> SubmitResult:
        if tx_request.chain_type != ChainType.XRPL:
            raise ValidationError(f"XRPL client cannot submit {tx_request.chain_type.value} transactions")
        account = self.address
        if not account:
            raise ValidationError("No XRPL account configured")
        for claimed in (tx_request.payload.get("Account"), tx_request.caller):
            if claimed and claimed != account:
                raise PreconditionError(
                    f"XRPL client signs for {account}, not {claimed}",
                    check="wrong_caller", caller=claimed, signer=account)

        tx = self.autofill(tx_request.payload)
        tx_blob, tx_hash = self._signer(tx)

        result = self._call("submit", {"tx_blob": tx_blob})
        engine_result = result.get("engine_result", "")
        tx_hash = _tx_body(result).get("hash", tx_hash)

        if engine_result.startswith("tec"):
            raise ChainRevertError(
                f"XRPL {tx_request.action} failed: {engine_result}",
                reason=engine_result,
                tx_hash=tx_hash,
            )
        if engine_result not in ACCEPTED_PRELIMINARY:
            raise ChainSubmissionError(
                f"XRPL {tx_request.action} rejected: {engine_result} "
                f"{result.get('engine_result_message', '')}".strip(),
                engine_result=engine_result,
            )

        log.info(f"XRPL {tx_request.action} submitted: {tx_hash} ({engine_result})")
        return SubmitResult(tx_hash=tx_hash)

    def await_confirmation(self, tx_hash: str, timeout: float) -> Confirmation:
        """
        Poll ``tx`` until validated.

        Raises:
            ConfirmationTimeout: not validated within ``timeout`` seconds
        """
        deadline = self._clock() + timeout
        while True:
            try:
                result = self._call("tx", {"transaction": tx_hash})
            except ChainSubmissionError as e:
                if e.details.get("error") != "txnNotFound":
                    raise
                result = {}

            if result.get("validated"):
                return self._to_confirmation(tx_hash, result)

            if self._clock() >= deadline:
                raise ConfirmationTimeout(
                    f"XRPL tx {tx_hash} not validated within {timeout}s", tx_hash=tx_hash)
            self._sleep(self.config.poll_interval)

    def _to_confirmation(self, tx_hash: str, result: Dict[str, Any]) -> Confirmation:
        body = _tx_body(result)
        meta = result.get("meta") or {}
        engine_result = meta.get("TransactionResult")
        success = engine_result == "tesSUCCESS"
        ledger_index = result.get("ledger_index") or body.get("ledger_index")

        ripple_date = result.get("date", body.get("date"))
        if ripple_date is not None:
            block_timestamp = from_ripple_time(ripple_date)
        elif ledger_index is not None:
            block_timestamp = self.get_block_timestamp(ledger_index)
        else:
            block_timestamp = None

        if not success:
            log.warning(f"XRPL tx {tx_hash} validated with {engine_result}")

        return Confirmation(
            tx_hash=tx_hash,
            success=success,
            block_timestamp=block_timestamp,
            block_ref=int(ledger_index) if ledger_index is not None else None,
            reason=None if success else engine_result,
            details={
                "sequence": body.get("Sequence"),
                "account": body.get("Account"),
                "transaction_type": body.get("TransactionType"),
            },
        )

    def get_block_timestamp(self, block_ref) -> int:
        """Close time (Unix) of a validated ledger."""
        result = self._call("ledger", {"ledger_index": block_ref})
        return from_ripple_time(_field(result, "ledger", "ledger", "close_time"))
