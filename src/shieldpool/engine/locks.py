"""
Per-(owner, token kind) exclusion for spend pipelines.

Two pipelines for the same pair would plan against the same unspent notes
and race on their nullifiers, so the second caller is refused instead of
queued.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from shieldpool.core.models import TokenKind
from shieldpool.errors import SpendInProgress


class SpendLockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, TokenKind], threading.Lock] = {}

    def _lock_for(self, owner: str, token_kind: TokenKind) -> threading.Lock:
        key = (owner, TokenKind(token_kind))
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, owner: str, token_kind: TokenKind) -> Iterator[None]:
        """
        Hold the pipeline lock for (owner, token kind).

        Raises:
            SpendInProgress: If another pipeline already holds it.
        """
        lock = self._lock_for(owner, token_kind)
        if not lock.acquire(blocking=False):
            raise SpendInProgress(
                f"A spend for {owner}/{TokenKind(token_kind).value} is already in progress"
            )
        try:
            yield
        finally:
            lock.release()

    def is_held(self, owner: str, token_kind: TokenKind) -> bool:
        return self._lock_for(owner, token_kind).locked()
