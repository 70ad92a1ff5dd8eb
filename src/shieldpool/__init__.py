"""
shieldpool: client-side spend engine for a shielded (privacy) pool.

Usage:
    from shieldpool import ShieldedWallet, EngineConfig, TokenKind
    wallet = ShieldedWallet.from_config(EngineConfig.from_env())
"""

from shieldpool.config import EngineConfig
from shieldpool.core.models import Note, SpendResult, TokenKind, create_note
from shieldpool.core.state import WalletState
from shieldpool.engine.wallet import ShieldedWallet

__version__ = "0.1.0"
__all__ = [
    "EngineConfig",
    "Note",
    "ShieldedWallet",
    "SpendResult",
    "TokenKind",
    "WalletState",
    "create_note",
]
