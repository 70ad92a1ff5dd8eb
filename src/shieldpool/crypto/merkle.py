"""
Merkle Mirror: local append-only copy of the ledger's commitment tree.

The mirror is an incremental binary tree of fixed height H (capacity 2**H).
Leaves are note commitments in the exact order the ledger accepted them;
empty positions hold per-level zero hashes, so the root of a partially
filled tree matches the ledger's root for the same leaf prefix.

The mirror is only ever advanced from confirmed ledger state (`sync`) and
must be a prefix of the ledger's tree. Authentication paths built from it
are valid only while `root()` equals the ledger's current root.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from shieldpool.crypto.hashing import DIGEST_SIZE, hash_nodes
from shieldpool.errors import MerkleTreeFull, StateReconciliationError

logger = logging.getLogger("shieldpool.merkle")

DEFAULT_TREE_HEIGHT = 20
ZERO_LEAF = "00" * DIGEST_SIZE


def zero_hashes(height: int) -> list[str]:
    """Return the empty-subtree hash for every level 0..height."""
    zeros = [ZERO_LEAF]
    for _ in range(height):
        zeros.append(hash_nodes(zeros[-1], zeros[-1]))
    return zeros


class LeafSource(Protocol):
    """The subset of the ledger API the mirror needs to reconcile."""

    def current_root(self) -> str: ...

    def leaves(self, start: int = 0) -> list[str]: ...


@dataclass(frozen=True)
class MerklePath:
    """
    Authentication path for one leaf.

    Attributes:
        leaf_index: Position of the leaf in the tree.
        leaf: The commitment at that position.
        siblings: Sibling hashes from the leaf level up to just below the root.
        path_indices: 0 if the node is a left child at that level, 1 if right.
        root: The root the path authenticates against.
    """
    leaf_index: int
    leaf: str
    siblings: list[str]
    path_indices: list[int]
    root: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "leafIndex": self.leaf_index,
            "leaf": self.leaf,
            "pathElements": list(self.siblings),
            "pathIndices": list(self.path_indices),
            "root": self.root,
        }


class MerkleMirror:
    """
    Incremental Merkle tree mirroring the ledger's commitment tree.

    Usage:
        mirror = MerkleMirror(height=20)
        idx = mirror.append(note.commitment)
        path = mirror.auth_path(idx)
        assert MerkleMirror.verify_path(path)
    """

    def __init__(self, height: int = DEFAULT_TREE_HEIGHT, leaves: list[str] | None = None) -> None:
        if height <= 0:
            raise ValueError(f"Tree height must be positive, got {height}")
        self.height = height
        self._zeros = zero_hashes(height)
        # _levels[0] are leaves; _levels[h] holds filled nodes at level h
        self._levels: list[list[str]] = [[] for _ in range(height + 1)]
        for leaf in leaves or []:
            self.append(leaf)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        """Number of leaves appended so far."""
        return len(self._levels[0])

    @property
    def capacity(self) -> int:
        return 1 << self.height

    def __len__(self) -> int:
        return self.size

    def leaf(self, index: int) -> str:
        if index < 0 or index >= self.size:
            raise IndexError(f"Leaf index {index} out of range (size {self.size})")
        return self._levels[0][index]

    def leaves(self) -> list[str]:
        return list(self._levels[0])

    def index_of(self, commitment: str) -> int | None:
        try:
            return self._levels[0].index(commitment)
        except ValueError:
            return None

    def root(self) -> str:
        """Current root. An empty tree has the all-zero subtree root."""
        top = self._levels[self.height]
        return top[0] if top else self._zeros[self.height]

    def auth_path(self, index: int) -> MerklePath:
        """
        Build the authentication path for the leaf at `index`.

        Raises:
            IndexError: If the leaf has not been appended.
        """
        leaf = self.leaf(index)
        siblings: list[str] = []
        path_indices: list[int] = []
        idx = index
        for level in range(self.height):
            sibling_idx = idx ^ 1
            nodes = self._levels[level]
            siblings.append(nodes[sibling_idx] if sibling_idx < len(nodes) else self._zeros[level])
            path_indices.append(idx & 1)
            idx >>= 1
        return MerklePath(
            leaf_index=index,
            leaf=leaf,
            siblings=siblings,
            path_indices=path_indices,
            root=self.root(),
        )

    @staticmethod
    def verify_path(path: MerklePath) -> bool:
        """Recompute the root from a path and compare."""
        current = path.leaf
        for sibling, bit in zip(path.siblings, path.path_indices):
            current = hash_nodes(sibling, current) if bit else hash_nodes(current, sibling)
        return current == path.root

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, commitment: str) -> int:
        """
        Append a confirmed commitment and update the path to the root.

        Returns:
            The new leaf's index.

        Raises:
            MerkleTreeFull: If the tree is at capacity.
        """
        if self.size >= self.capacity:
            raise MerkleTreeFull(f"Merkle tree of height {self.height} is full")
        if len(bytes.fromhex(commitment)) != DIGEST_SIZE:
            raise ValueError(f"Leaf must be {DIGEST_SIZE} bytes")

        index = self.size
        self._levels[0].append(commitment)
        idx = index
        for level in range(self.height):
            parent = idx >> 1
            nodes = self._levels[level]
            left = nodes[parent * 2]
            right = nodes[parent * 2 + 1] if parent * 2 + 1 < len(nodes) else self._zeros[level]
            value = hash_nodes(left, right)
            upper = self._levels[level + 1]
            if parent < len(upper):
                upper[parent] = value
            else:
                upper.append(value)
            idx = parent
        return index

    def sync(self, ledger: LeafSource) -> int:
        """
        Pull leaves the mirror is missing from the ledger and verify the root.

        If the local prefix has diverged from the ledger (root mismatch after
        catching up), the mirror is rebuilt from the ledger's full leaf list.

        Returns:
            Number of leaves appended.

        Raises:
            StateReconciliationError: If the rebuilt mirror still disagrees.
        """
        before = self.size
        self.extend(ledger.leaves(before), start=before)
        ledger_root = ledger.current_root()
        if self.root() == ledger_root:
            if self.size != before:
                logger.debug(f"Merkle mirror advanced {before} -> {self.size} leaves")
            return self.size - before

        logger.warning(f"Merkle mirror diverged from ledger at size {self.size}; rebuilding")
        rebuilt = MerkleMirror(height=self.height, leaves=ledger.leaves(0))
        if rebuilt.root() != ledger.current_root():
            raise StateReconciliationError(
                f"Merkle mirror root {rebuilt.root()[:16]}... does not match ledger after rebuild"
            )
        self.adopt(rebuilt)
        return self.size - before

    def extend(self, commitments: list[str], start: int | None = None) -> int:
        """
        Append `commitments`, read from the ledger beginning at leaf `start`.

        Leaves the mirror already holds (appended since the read) are skipped.

        Returns:
            Number of leaves appended.
        """
        offset = 0 if start is None else self.size - start
        if offset < 0:
            raise ValueError(f"Leaves start at {start}, beyond the mirror's {self.size} leaves")
        for commitment in commitments[offset:]:
            self.append(commitment)
        return max(0, len(commitments) - offset)

    def adopt(self, other: MerkleMirror) -> None:
        """Replace this mirror's contents with `other`'s (same height)."""
        if other.height != self.height:
            raise ValueError(f"Cannot adopt a tree of height {other.height} into height {self.height}")
        self._levels = [list(level) for level in other._levels]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {"height": self.height, "leaves": self.leaves()}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> MerkleMirror:
        return cls(height=int(d["height"]), leaves=list(d.get("leaves", [])))
