"""
HTLC primitives for xswap.

- timelocks: packed seven-stage EVM timelock schedule
- commitment: secret, hashlock and PREIMAGE-SHA-256 condition
- evm: EscrowFactory / EscrowDst calldata
- xrpl: EscrowCreate / EscrowFinish / EscrowCancel
"""

from .timelocks import Stage, Timelocks, pack, unpack, rebase
from .commitment import Commitment, generate, from_secret, verify, ensure_consistent
from .evm import Immutables

__all__ = [
    "Stage",
    "Timelocks",
    "pack",
    "unpack",
    "rebase",
    "Commitment",
    "generate",
    "from_secret",
    "verify",
    "ensure_consistent",
    "Immutables",
]
