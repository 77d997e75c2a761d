"""
EVM escrow encoding for xswap.

Builds calldata for the 1inch-style EscrowFactory / EscrowDst contracts and
decodes the factory's DstEscrowCreated event. Nothing here talks to a node;
``xswap.chains.evm.EVMClient`` signs and submits what these helpers build.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Dict, Any, List, Tuple

from eth_abi import encode as abi_encode, decode as abi_decode
from web3 import Web3

from ..errors import ValidationError
from . import timelocks as tl

log = logging.getLogger(__name__)

NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"
MAX_UINT256 = (1 << 256) - 1

# Immutables tuple, as it appears in every escrow function signature
IMMUTABLES_TYPE = "(bytes32,bytes32,uint256,uint256,uint256,uint256,uint256,uint256)"

WITHDRAW_SIG = f"withdraw(bytes32,{IMMUTABLES_TYPE})"
PUBLIC_WITHDRAW_SIG = f"publicWithdraw(bytes32,{IMMUTABLES_TYPE})"
CANCEL_SIG = f"cancel({IMMUTABLES_TYPE})"
CREATE_DST_ESCROW_SIG = f"createDstEscrow({IMMUTABLES_TYPE},uint256)"
APPROVE_SIG = "approve(address,uint256)"

DST_ESCROW_CREATED_SIG = "DstEscrowCreated(address,bytes32,uint256)"

# Minimal ABI (only functions we use), kept for contract introspection tools
IMMUTABLES_COMPONENTS = [
    {"name": "orderHash", "type": "bytes32"},
    {"name": "hashlock", "type": "bytes32"},
    {"name": "maker", "type": "uint256"},
    {"name": "taker", "type": "uint256"},
    {"name": "token", "type": "uint256"},
    {"name": "amount", "type": "uint256"},
    {"name": "safetyDeposit", "type": "uint256"},
    {"name": "timelocks", "type": "uint256"},
]

ESCROW_FACTORY_ABI = [
    {
        "name": "createDstEscrow",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "dstImmutables", "type": "tuple", "components": IMMUTABLES_COMPONENTS},
            {"name": "srcCancellationTimestamp", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "DstEscrowCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "escrow", "type": "address", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
            {"name": "taker", "type": "uint256", "indexed": False},
        ],
    },
]

ESCROW_DST_ABI = [
    {
        "name": "withdraw",
        "type": "function",
        "inputs": [
            {"name": "secret", "type": "bytes32"},
            {"name": "immutables", "type": "tuple", "components": IMMUTABLES_COMPONENTS},
        ],
        "outputs": [],
    },
    {
        "name": "publicWithdraw",
        "type": "function",
        "inputs": [
            {"name": "secret", "type": "bytes32"},
            {"name": "immutables", "type": "tuple", "components": IMMUTABLES_COMPONENTS},
        ],
        "outputs": [],
    },
    {
        "name": "cancel",
        "type": "function",
        "inputs": [
            {"name": "immutables", "type": "tuple", "components": IMMUTABLES_COMPONENTS},
        ],
        "outputs": [],
    },
]


def selector(signature: str) -> bytes:
    """First 4 bytes of keccak256(signature)."""
    return bytes(Web3.keccak(text=signature)[:4])


def event_topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))


DST_ESCROW_CREATED_TOPIC = event_topic(DST_ESCROW_CREATED_SIG)


def _bytes32(value, name: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        text = str(value)
        text = text[2:] if text.lower().startswith("0x") else text
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise ValidationError(f"{name} is not valid hex")
    if len(raw) != 32:
        raise ValidationError(f"{name} must be 32 bytes, got {len(raw)}")
    return raw


def order_hash_for(tag: str) -> str:
    """
    Right-pad a short ASCII tag into a bytes32 order hash
    (ethers' encodeBytes32String).
    """
    raw = tag.encode("utf-8")
    if len(raw) > 31:
        raise ValidationError("order tag must be at most 31 bytes")
    return "0x" + raw.ljust(32, b"\x00").hex()


def address_to_uint(address: str) -> int:
    if not Web3.is_address(address):
        raise ValidationError(f"Invalid EVM address: {address}")
    return int(address, 16)


def uint_to_address(value: int) -> str:
    return Web3.to_checksum_address("0x" + (value & ((1 << 160) - 1)).to_bytes(20, "big").hex())


def is_native(token: str) -> bool:
    return not token or int(token, 16) == 0


# =============================================================================
# Immutables
# =============================================================================

@dataclass(frozen=True)
class Immutables:
    """Escrow immutables; the escrow address is derived from their hash."""
    order_hash: str
    hashlock: str
    maker: str
    taker: str
    token: str
    amount: int
    safety_deposit: int
    timelocks: int

    def as_tuple(self) -> Tuple:
        return (
            _bytes32(self.order_hash, "order_hash"),
            _bytes32(self.hashlock, "hashlock"),
            address_to_uint(self.maker),
            address_to_uint(self.taker),
            address_to_uint(self.token or NATIVE_TOKEN),
            int(self.amount),
            int(self.safety_deposit),
            int(self.timelocks),
        )

    def rebased(self, deployed_at: int) -> "Immutables":
        """Copy with timelocks rebased onto the on-chain deployment time."""
        return replace(self, timelocks=tl.rebase(self.timelocks, deployed_at))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_hash": self.order_hash,
            "hashlock": self.hashlock,
            "maker": self.maker,
            "taker": self.taker,
            "token": self.token,
            "amount": str(self.amount),
            "safety_deposit": str(self.safety_deposit),
            "timelocks": str(self.timelocks),
        }


# =============================================================================
# Calldata builders
# =============================================================================

def _calldata(signature: str, types: List[str], values: List) -> str:
    return Web3.to_hex(selector(signature) + abi_encode(types, values))


def encode_withdraw(secret, immutables: Immutables) -> str:
    return _calldata(WITHDRAW_SIG, ["bytes32", IMMUTABLES_TYPE],
                     [_bytes32(secret, "secret"), immutables.as_tuple()])


def encode_public_withdraw(secret, immutables: Immutables) -> str:
    return _calldata(PUBLIC_WITHDRAW_SIG, ["bytes32", IMMUTABLES_TYPE],
                     [_bytes32(secret, "secret"), immutables.as_tuple()])


def encode_cancel(immutables: Immutables) -> str:
    return _calldata(CANCEL_SIG, [IMMUTABLES_TYPE], [immutables.as_tuple()])


def encode_create_dst_escrow(immutables: Immutables, src_cancellation_timestamp: int) -> str:
    return _calldata(CREATE_DST_ESCROW_SIG, [IMMUTABLES_TYPE, "uint256"],
                     [immutables.as_tuple(), int(src_cancellation_timestamp)])


def encode_approve(spender: str, amount: int = MAX_UINT256) -> str:
    if not Web3.is_address(spender):
        raise ValidationError(f"Invalid spender address: {spender}")
    return _calldata(APPROVE_SIG, ["address", "uint256"],
                     [Web3.to_checksum_address(spender), int(amount)])


def create_dst_escrow_value(immutables: Immutables) -> int:
    """msg.value for createDstEscrow: deposit, plus amount for native token."""
    value = int(immutables.safety_deposit)
    if is_native(immutables.token):
        value += int(immutables.amount)
    return value


def build_call(to: str, data: str, value: int = 0, gas: Optional[int] = None) -> Dict[str, Any]:
    """EVM payload for a TransactionRequest."""
    payload = {
        "to": Web3.to_checksum_address(to),
        "data": data,
        "value": int(value),
    }
    if gas:
        payload["gas"] = int(gas)
    return payload


# =============================================================================
# Events
# =============================================================================

@dataclass
class DstEscrowCreated:
    escrow: str
    hashlock: str
    taker: str


def _hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return str(value)


def parse_dst_escrow_created(logs: List[Dict[str, Any]],
                             factory: Optional[str] = None) -> Optional[DstEscrowCreated]:
    """
    Find and decode DstEscrowCreated in receipt logs.

    All three fields are non-indexed and live in the log data.

    Args:
        logs: Receipt logs (dicts with address/topics/data)
        factory: Only accept logs emitted by this address

    Returns:
        DstEscrowCreated or None if the event is absent
    """
    for entry in logs or []:
        topics = [_hex(t).lower() for t in entry.get("topics", [])]
        if not topics or topics[0] != DST_ESCROW_CREATED_TOPIC.lower():
            continue
        if factory and str(entry.get("address", "")).lower() != factory.lower():
            continue

        data = entry.get("data") or b""
        if isinstance(data, str):
            data = bytes.fromhex(data[2:] if data.startswith("0x") else data)
        escrow, hashlock, taker = abi_decode(["address", "bytes32", "uint256"], bytes(data))
        log.debug(f"DstEscrowCreated: escrow={escrow}")
        return DstEscrowCreated(
            escrow=Web3.to_checksum_address(escrow),
            hashlock=Web3.to_hex(hashlock),
            taker=uint_to_address(taker),
        )
    return None
