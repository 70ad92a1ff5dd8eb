"""
shieldpool.crypto — hashing primitives and the local Merkle mirror.

Provides:
- Note commitments and nullifiers in independent BLAKE2b domains
- Fresh field scalars for secrets, blinding factors and rho
- MerkleMirror: incremental commitment tree with authentication paths
"""

from shieldpool.crypto.hashing import (
    FIELD_MODULUS,
    hash_nodes,
    note_commitment,
    note_nullifier,
    random_scalar,
)
from shieldpool.crypto.merkle import (
    DEFAULT_TREE_HEIGHT,
    MerkleMirror,
    MerklePath,
)

__all__ = [
    "DEFAULT_TREE_HEIGHT",
    "FIELD_MODULUS",
    "MerkleMirror",
    "MerklePath",
    "hash_nodes",
    "note_commitment",
    "note_nullifier",
    "random_scalar",
]
