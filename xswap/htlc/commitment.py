"""
Secret commitments shared by both legs.

One 32-byte secret is committed to twice:

- EVM hashlock: raw SHA-256 digest, passed to the escrow as bytes32
- XRPL crypto-condition: PREIMAGE-SHA-256 condition / fulfillment pair

Condition and hashlock carry the same digest, so revealing the secret on
either chain is sufficient proof on the other.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Dict, Union

from ..errors import ValidationError, EncodingMismatchError

SECRET_SIZE = 32

# DER: [0] constructed, len 34 -> [0] preimage, len 32
FULFILLMENT_PREFIX = bytes([0xA0, 0x22, 0x80, 0x20])
# DER: [0] constructed, len 37 -> [0] fingerprint, len 32 ... [1] cost, len 1
CONDITION_PREFIX = bytes([0xA0, 0x25, 0x80, 0x20])
CONDITION_SUFFIX = bytes([0x81, 0x01, 0x20])

CONDITION_SIZE = len(CONDITION_PREFIX) + 32 + len(CONDITION_SUFFIX)
FULFILLMENT_SIZE = len(FULFILLMENT_PREFIX) + SECRET_SIZE

BytesLike = Union[bytes, str]


@dataclass(frozen=True)
class Commitment:
    """Secret plus its two on-chain encodings."""
    secret: str         # 64 hex chars, lower case, no 0x
    hashlock: str       # 0x-prefixed bytes32 hex
    condition: str      # Upper-case hex, 39 bytes
    fulfillment: str    # Upper-case hex, 36 bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "secret": self.secret,
            "hashlock": self.hashlock,
            "condition": self.condition,
            "fulfillment": self.fulfillment,
        }

    def public(self) -> Dict[str, str]:
        """Commitment without the secret or fulfillment."""
        return {"hashlock": self.hashlock, "condition": self.condition}


def _to_bytes(value: BytesLike, name: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be bytes or hex string")
    text = value[2:] if value.lower().startswith("0x") else value
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise ValidationError(f"{name} is not valid hex")


def secret_bytes(secret: BytesLike) -> bytes:
    raw = _to_bytes(secret, "secret")
    if len(raw) != SECRET_SIZE:
        raise ValidationError(f"secret must be {SECRET_SIZE} bytes, got {len(raw)}")
    return raw


def normalize_secret(secret: BytesLike) -> str:
    return secret_bytes(secret).hex()


def hashlock_for(secret: BytesLike) -> str:
    return "0x" + hashlib.sha256(secret_bytes(secret)).hexdigest()


def fulfillment_for(secret: BytesLike) -> str:
    return (FULFILLMENT_PREFIX + secret_bytes(secret)).hex().upper()


def condition_for(secret: BytesLike) -> str:
    digest = hashlib.sha256(secret_bytes(secret)).digest()
    return condition_from_digest(digest)


def condition_from_digest(digest: BytesLike) -> str:
    raw = _to_bytes(digest, "digest")
    if len(raw) != 32:
        raise ValidationError("digest must be 32 bytes")
    return (CONDITION_PREFIX + raw + CONDITION_SUFFIX).hex().upper()


def decode_condition(condition: BytesLike) -> bytes:
    """Return the SHA-256 fingerprint inside a PREIMAGE-SHA-256 condition."""
    raw = _to_bytes(condition, "condition")
    if (len(raw) != CONDITION_SIZE
            or not raw.startswith(CONDITION_PREFIX)
            or not raw.endswith(CONDITION_SUFFIX)):
        raise ValidationError("condition is not a PREIMAGE-SHA-256 condition")
    return raw[len(CONDITION_PREFIX):len(CONDITION_PREFIX) + 32]


def decode_fulfillment(fulfillment: BytesLike) -> bytes:
    """Return the preimage inside a PREIMAGE-SHA-256 fulfillment."""
    raw = _to_bytes(fulfillment, "fulfillment")
    if len(raw) != FULFILLMENT_SIZE or not raw.startswith(FULFILLMENT_PREFIX):
        raise ValidationError("fulfillment is not a PREIMAGE-SHA-256 fulfillment")
    return raw[len(FULFILLMENT_PREFIX):]


def hashlock_bytes(hashlock: BytesLike) -> bytes:
    raw = _to_bytes(hashlock, "hashlock")
    if len(raw) != 32:
        raise ValidationError("hashlock must be 32 bytes")
    return raw


# =============================================================================
# Generation
# =============================================================================

def from_secret(secret: BytesLike) -> Commitment:
    """Derive the full commitment from a known secret."""
    raw = secret_bytes(secret)
    return Commitment(
        secret=raw.hex(),
        hashlock=hashlock_for(raw),
        condition=condition_for(raw),
        fulfillment=fulfillment_for(raw),
    )


def generate() -> Commitment:
    """Generate a fresh random secret and its commitments."""
    return from_secret(secrets.token_bytes(SECRET_SIZE))


# =============================================================================
# Verification
# =============================================================================

def verify_hashlock(secret: BytesLike, hashlock: BytesLike) -> bool:
    try:
        expected = hashlock_bytes(hashlock)
        actual = hashlib.sha256(secret_bytes(secret)).digest()
    except ValidationError:
        return False
    return hmac.compare_digest(actual, expected)


def verify_condition(secret: BytesLike, condition: BytesLike) -> bool:
    try:
        expected = decode_condition(condition)
        actual = hashlib.sha256(secret_bytes(secret)).digest()
    except ValidationError:
        return False
    return hmac.compare_digest(actual, expected)


def is_condition(value: BytesLike) -> bool:
    try:
        decode_condition(value)
        return True
    except ValidationError:
        return False


def verify(secret: BytesLike, commitment: BytesLike) -> bool:
    """
    Check a secret against either encoding.

    ``commitment`` may be a 32-byte hashlock or a 39-byte condition.
    """
    if is_condition(commitment):
        return verify_condition(secret, commitment)
    return verify_hashlock(secret, commitment)


def ensure_consistent(hashlock: BytesLike, condition: BytesLike):
    """
    Raise EncodingMismatchError unless condition and hashlock commit to the
    same digest.
    """
    try:
        digest = decode_condition(condition)
        expected = hashlock_bytes(hashlock)
    except ValidationError as e:
        raise EncodingMismatchError(f"Cannot compare commitments: {e.message}")
    if not hmac.compare_digest(digest, expected):
        raise EncodingMismatchError(
            "Ledger condition does not encode the EVM hashlock",
            hashlock="0x" + expected.hex(),
            condition_digest="0x" + digest.hex(),
        )


def ensure_secret(secret: BytesLike, hashlock: BytesLike, condition: BytesLike = None) -> str:
    """
    Validate a secret before it is used in a claim.

    Raises ValidationError when the secret does not open the hashlock and
    EncodingMismatchError when it opens the hashlock but not the condition.
    Returns the normalized secret hex.
    """
    normalized = normalize_secret(secret)
    if not verify_hashlock(normalized, hashlock):
        raise ValidationError("Secret does not match hashlock")
    if condition is not None:
        ensure_consistent(hashlock, condition)
        if not verify_condition(normalized, condition):
            raise EncodingMismatchError("Secret opens the hashlock but not the ledger condition")
    return normalized
