"""
Note hashing primitives for the shielded pool.

Provides:
- random_scalar: uniformly sampled field elements for secrets, blinding and rho
- note_commitment: Hash(secret, amount, token, blinding)
- note_nullifier: Hash(secret, rho)
- hash_nodes: Merkle interior node hash

Mathematical foundation:
    cm = H_commit(secret || amount || token || blinding)
    nf = H_nullifier(secret || rho)

    Both use BLAKE2b-256 with distinct personalisation strings, so a
    commitment and a nullifier derived from the same secret live in
    independent hash domains and cannot be correlated without `secret`.

    All scalars are elements of the BN254 scalar field (the field the
    spend and consolidation circuits operate over), serialized as 32-byte
    big-endian integers.
"""

from __future__ import annotations

import hashlib
import secrets

# ==============================================================================
# Field and domain constants
# ==============================================================================

# BN254 scalar field modulus
FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617

# BLAKE2b personalisation strings (max 16 bytes each)
COMMITMENT_DOMAIN = b"shieldpool.cm.v1"
NULLIFIER_DOMAIN = b"shieldpool.nf.v1"
MERKLE_DOMAIN = b"shieldpool.mk.v1"
TOKEN_DOMAIN = b"shieldpool.tk.v1"

DIGEST_SIZE = 32


def _field_bytes(value: int) -> bytes:
    """Serialize a field element as 32 big-endian bytes."""
    if value < 0 or value >= FIELD_MODULUS:
        raise ValueError(f"Value out of field range: {value}")
    return value.to_bytes(DIGEST_SIZE, "big")


def _digest(domain: bytes, *parts: bytes) -> str:
    h = hashlib.blake2b(digest_size=DIGEST_SIZE, person=domain)
    for part in parts:
        h.update(part)
    return h.hexdigest()


# ==============================================================================
# Scalars
# ==============================================================================


def random_scalar() -> int:
    """
    Sample a fresh non-zero field element.

    Used for note secrets, blinding factors and rho. Every consolidated or
    change output gets freshly sampled scalars, so it is indistinguishable
    from an organic deposit.
    """
    return secrets.randbelow(FIELD_MODULUS - 1) + 1


def token_field(token: str) -> int:
    """Map a token kind name to a field element."""
    raw = hashlib.blake2b(token.encode(), digest_size=DIGEST_SIZE, person=TOKEN_DOMAIN).digest()
    return int.from_bytes(raw, "big") % FIELD_MODULUS


# ==============================================================================
# Commitments & nullifiers
# ==============================================================================


def note_commitment(secret: int, amount: int, token: str, blinding: int) -> str:
    """
    Compute the public commitment of a note.

    Args:
        secret: The owner-held note secret.
        amount: Amount in the smallest unit (must be non-negative).
        token: Token kind name (e.g. 'SOL').
        blinding: Random blinding scalar.

    Returns:
        64-character hex digest.
    """
    if amount < 0:
        raise ValueError(f"Amount must be non-negative, got {amount}")
    return _digest(
        COMMITMENT_DOMAIN,
        _field_bytes(secret),
        _field_bytes(amount),
        _field_bytes(token_field(token)),
        _field_bytes(blinding),
    )


def note_nullifier(secret: int, rho: int) -> str:
    """
    Compute the nullifier of a note.

    The nullifier is deterministic per (secret, rho): spending the same note
    twice always publishes the same value, which the ledger rejects.
    """
    return _digest(NULLIFIER_DOMAIN, _field_bytes(secret), _field_bytes(rho))


def hash_nodes(left: str, right: str) -> str:
    """Hash two Merkle nodes (hex) into their parent."""
    return _digest(MERKLE_DOMAIN, bytes.fromhex(left), bytes.fromhex(right))
