"""
NoteStore: persisted collection of notes owned by the local identity.

The store is the source of truth for "what can I spend". Notes are never
deleted: spent notes are kept as history for auditing and so that retried
operations can recognise notes they already consumed.

Ordering contract relied on by the planner and the consolidation engine:
unspent notes come out by descending amount, ties broken by insertion
order (oldest first).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from shieldpool.core.models import Note, TokenKind
from shieldpool.core.storage import RecordCipher, atomic_write_json, read_json
from shieldpool.errors import DuplicateCommitment, LeafIndexImmutable

logger = logging.getLogger("shieldpool.note_store")


class UnspentNotes:
    """
    Lazy, restartable view over the unspent notes of one (owner, token kind).

    Every iteration takes a fresh snapshot of the store, so the view can be
    iterated again after the store changes.
    """

    def __init__(self, store: NoteStore, owner: str, token_kind: TokenKind) -> None:
        self._store = store
        self.owner = owner
        self.token_kind = TokenKind(token_kind)

    def __iter__(self) -> Iterator[Note]:
        with self._store.lock:
            matching = [
                n.model_copy()
                for n in self._store._notes.values()
                if not n.spent and n.owner == self.owner and n.token_kind == self.token_kind
            ]
        # sorted() is stable, so equal amounts keep insertion order
        yield from sorted(matching, key=lambda n: -n.amount)

    def __len__(self) -> int:
        return sum(1 for _ in self)


class NoteStore:
    """
    Idempotent, persisted note collection keyed by nullifier.

    Usage:
        store = NoteStore(path="~/.shieldpool/notes.json")
        store.add_note(note)
        for note in store.unspent_notes("alice", TokenKind.SOL):
            ...
        store.mark_spent(note.nullifier)
    """

    def __init__(
        self,
        path: str | Path | None = None,
        lock: threading.RLock | None = None,
        cipher: RecordCipher | None = None,
    ) -> None:
        """
        Args:
            path: JSON record location. None keeps the store in memory only.
            lock: Lock shared with the other local mirrors, if any.
            cipher: Seals the record on disk; notes carry spending secrets.
        """
        self.path = Path(path).expanduser() if path else None
        self.cipher = cipher
        self.lock = lock or threading.RLock()
        self._notes: dict[str, Note] = {}
        self._commitments: dict[str, str] = {}
        self._clock = 0
        self._defer_depth = 0
        self._dirty = False
        if self.path:
            self._load()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_note(self, note: Note) -> bool:
        """
        Insert a note. A note whose nullifier is already known is ignored.

        Returns:
            True if inserted, False if it was a duplicate.

        Raises:
            DuplicateCommitment: If a different nullifier claims an existing commitment.
        """
        with self.lock:
            if note.nullifier in self._notes:
                logger.warning(f"Ignoring duplicate note {note.short()}: nullifier already stored")
                return False
            if note.commitment in self._commitments:
                raise DuplicateCommitment(
                    f"Commitment {note.commitment[:16]}... already belongs to another note"
                )
            self._clock += 1
            stored = note.model_copy(update={"created_at": self._clock})
            self._notes[stored.nullifier] = stored
            self._commitments[stored.commitment] = stored.nullifier
            self._persist()
            logger.debug(f"Added note {stored.short()} for {stored.owner}")
            return True

    def mark_spent(self, nullifier: str) -> bool:
        """
        Flip one note to spent after the ledger confirmed its nullifier.

        Returns:
            True if a note transitioned, False if unknown or already spent.
        """
        with self.lock:
            note = self._notes.get(nullifier)
            if note is None:
                logger.warning(f"mark_spent: unknown nullifier {nullifier[:16]}...")
                return False
            if note.spent:
                return False
            note.spent = True
            self._persist()
            return True

    def assign_leaf_index(self, nullifier: str, leaf_index: int) -> None:
        """
        Record where the ledger placed a note's commitment.

        Raises:
            KeyError: If the note is unknown.
            LeafIndexImmutable: If a different index was already assigned.
        """
        with self.lock:
            note = self._notes[nullifier]
            if note.leaf_index == leaf_index:
                return
            if note.leaf_index is not None:
                raise LeafIndexImmutable(
                    f"Note {note.short()} already at leaf {note.leaf_index}, refusing {leaf_index}"
                )
            note.leaf_index = leaf_index
            self._persist()

    @contextmanager
    def deferred(self) -> Iterator[None]:
        """Group several mutations into a single write of the record."""
        with self.lock:
            self._defer_depth += 1
            try:
                yield
            finally:
                self._defer_depth -= 1
                if self._defer_depth == 0 and self._dirty:
                    self._write()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, nullifier: str) -> Note | None:
        with self.lock:
            note = self._notes.get(nullifier)
            return note.model_copy() if note else None

    def get_by_commitment(self, commitment: str) -> Note | None:
        with self.lock:
            nullifier = self._commitments.get(commitment)
            return self.get(nullifier) if nullifier else None

    def unspent_notes(self, owner: str, token_kind: TokenKind) -> UnspentNotes:
        """Unspent notes for (owner, token kind), descending by amount."""
        return UnspentNotes(self, owner, token_kind)

    def balance(self, owner: str, token_kind: TokenKind) -> int:
        """Sum of unspent amounts for (owner, token kind)."""
        return sum(n.amount for n in self.unspent_notes(owner, token_kind))

    def all_notes(self) -> list[Note]:
        with self.lock:
            return [n.model_copy() for n in self._notes.values()]

    def __len__(self) -> int:
        return len(self._notes)

    def __contains__(self, nullifier: object) -> bool:
        return nullifier in self._notes

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        if self._defer_depth:
            self._dirty = True
        else:
            self._write()

    def _write(self) -> None:
        self._dirty = False
        if self.path is None:
            return
        atomic_write_json(self.path, {
            "version": 1,
            "notes": [n.model_dump(mode="json") for n in self._notes.values()],
        }, cipher=self.cipher)

    def _load(self) -> None:
        data = read_json(self.path, default={"version": 1, "notes": []}, cipher=self.cipher)
        for raw in data.get("notes", []):
            note = Note.model_validate(raw)
            self._notes[note.nullifier] = note
            self._commitments[note.commitment] = note.nullifier
            self._clock = max(self._clock, note.created_at)
        logger.debug(f"Loaded {len(self._notes)} notes from {self.path}")
