"""
XRP Ledger escrow transactions for xswap.

Pure builders for EscrowCreate / EscrowFinish / EscrowCancel with a
PREIMAGE-SHA-256 condition. ``xswap.chains.xrpl.XRPLClient`` autofills,
signs and submits them.

XRPL time fields (FinishAfter, CancelAfter, close_time) count seconds since
the Ripple epoch, 2000-01-01T00:00:00Z.
"""

from typing import Dict, Any, Optional

import base58

from ..core import RIPPLE_EPOCH_OFFSET
from ..errors import ValidationError
from . import commitment

# Smallest escrow amount worth locking (drops)
MIN_ESCROW_DROPS = 1
DROPS_PER_XRP = 1_000_000


def to_ripple_time(unix_ts: int) -> int:
    ripple = int(unix_ts) - RIPPLE_EPOCH_OFFSET
    if ripple < 0:
        raise ValidationError(f"Timestamp {unix_ts} predates the Ripple epoch")
    return ripple


def from_ripple_time(ripple_ts: int) -> int:
    return int(ripple_ts) + RIPPLE_EPOCH_OFFSET


def is_valid_address(address: str) -> bool:
    """Classic r-address with a valid base58check checksum."""
    if not isinstance(address, str) or not address.startswith("r"):
        return False
    if not 25 <= len(address) <= 35:
        return False
    try:
        decoded = base58.b58decode_check(address, alphabet=base58.XRP_ALPHABET)
    except ValueError:
        return False
    # 1 type byte (0x00 = account id) + 20 byte account id
    return len(decoded) == 21 and decoded[0] == 0


def require_address(address: str, name: str = "address") -> str:
    if not is_valid_address(address):
        raise ValidationError(f"Invalid XRPL {name}: {address}")
    return address


def _drops(amount) -> str:
    try:
        drops = int(amount)
    except (TypeError, ValueError):
        raise ValidationError(f"Amount must be an integer number of drops: {amount}")
    if drops < MIN_ESCROW_DROPS:
        raise ValidationError("Escrow amount must be positive")
    return str(drops)


def escrow_create(account: str, destination: str, amount_drops, condition: str,
                  finish_after: Optional[int], cancel_after: int) -> Dict[str, Any]:
    """
    Build an EscrowCreate locking XRP behind a crypto-condition.

    Args:
        account: Escrow owner (maker of this leg)
        destination: Account that may finish the escrow (taker)
        amount_drops: Amount in drops
        condition: PREIMAGE-SHA-256 condition, hex
        finish_after: Unix time before which the escrow cannot finish
        cancel_after: Unix time after which the escrow can be canceled

    Returns:
        tx_json dict (unsigned, not autofilled)
    """
    require_address(account, "account")
    require_address(destination, "destination")
    commitment.decode_condition(condition)

    if finish_after is not None and finish_after >= cancel_after:
        raise ValidationError("FinishAfter must be earlier than CancelAfter")

    tx = {
        "TransactionType": "EscrowCreate",
        "Account": account,
        "Destination": destination,
        "Amount": _drops(amount_drops),
        "Condition": condition.upper(),
        "CancelAfter": to_ripple_time(cancel_after),
    }
    if finish_after is not None:
        tx["FinishAfter"] = to_ripple_time(finish_after)
    return tx


def escrow_finish(account: str, owner: str, offer_sequence: int,
                  condition: str, fulfillment: str) -> Dict[str, Any]:
    """EscrowFinish releasing the escrow with the revealed fulfillment."""
    require_address(account, "account")
    require_address(owner, "owner")
    commitment.decode_condition(condition)
    commitment.decode_fulfillment(fulfillment)
    return {
        "TransactionType": "EscrowFinish",
        "Account": account,
        "Owner": owner,
        "OfferSequence": int(offer_sequence),
        "Condition": condition.upper(),
        "Fulfillment": fulfillment.upper(),
    }


def escrow_cancel(account: str, owner: str, offer_sequence: int) -> Dict[str, Any]:
    require_address(account, "account")
    require_address(owner, "owner")
    return {
        "TransactionType": "EscrowCancel",
        "Account": account,
        "Owner": owner,
        "OfferSequence": int(offer_sequence),
    }


def finish_fee_drops(base_fee: int, fulfillment: str) -> int:
    """
    Fee for an EscrowFinish carrying a fulfillment:
    base * (33 + ceil(len(fulfillment bytes) / 16)).
    """
    size = len(commitment.decode_fulfillment(fulfillment)) + len(commitment.FULFILLMENT_PREFIX)
    return int(base_fee) * (33 + (size + 15) // 16)
