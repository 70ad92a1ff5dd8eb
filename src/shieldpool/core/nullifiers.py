"""
Nullifier Mirror: local append-only record of nullifiers known to be spent.

The ledger is authoritative. The mirror only lets the engine skip proof
generation for notes that are already spent; every submission is still
re-validated by the ledger.
"""

from __future__ import annotations

import threading
from pathlib import Path

from shieldpool.core.storage import atomic_write_json, read_json


class NullifierMirror:
    """Ordered, idempotent set of spent nullifiers (confirmation order)."""

    def __init__(self, path: str | Path | None = None, lock: threading.RLock | None = None) -> None:
        self.path = Path(path).expanduser() if path else None
        self.lock = lock or threading.RLock()
        self._order: list[str] = []
        self._known: set[str] = set()
        if self.path:
            for nf in read_json(self.path, default={"nullifiers": []}).get("nullifiers", []):
                self._insert(nf)

    def contains(self, nullifier: str) -> bool:
        return nullifier in self._known

    __contains__ = contains

    def __len__(self) -> int:
        return len(self._order)

    def to_list(self) -> list[str]:
        with self.lock:
            return list(self._order)

    def add(self, nullifier: str) -> bool:
        """Record one confirmed nullifier. Returns False if it was already known."""
        return bool(self.add_many([nullifier]))

    def add_many(self, nullifiers: list[str], persist: bool = True) -> list[str]:
        """
        Record confirmed nullifiers in confirmation order.

        Returns:
            The nullifiers that were new.
        """
        with self.lock:
            added = [nf for nf in nullifiers if self._insert(nf)]
            if added and persist:
                self.save()
            return added

    def save(self) -> None:
        if self.path is None:
            return
        with self.lock:
            atomic_write_json(self.path, {"version": 1, "nullifiers": list(self._order)})

    def _insert(self, nullifier: str) -> bool:
        if nullifier in self._known:
            return False
        self._known.add(nullifier)
        self._order.append(nullifier)
        return True
