"""
Chain clients for xswap.

Each client implements ``xswap.core.ChainClient`` for one chain family.
"""

from .evm import EVMClient, EVMConfig
from .xrpl import XRPLClient, XRPLConfig

__all__ = ["EVMClient", "EVMConfig", "XRPLClient", "XRPLConfig"]
