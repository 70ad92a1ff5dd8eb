"""
WalletState: the Note Store, Merkle Mirror and Nullifier Mirror as one unit.

All three share a single re-entrant lock. Confirmed ledger events are
applied through `apply_confirmed_step`, which mutates the three together
and persists them before releasing the lock, so a concurrent reader (a
balance query, the HTTP API) always observes a consistent snapshot. The
lock is never held across a ledger request.

Persisted layout (one directory):
    merkle.json      the mirror's leaf sequence
    nullifiers.json  spent nullifiers in confirmation order
    notes.json       one record per note (encrypted)
    pending.json     submissions awaiting a verdict (encrypted)

A confirmed step is written in that order. Every prefix of the sequence
reopens cleanly: the mirror may run ahead of the notes, never behind, and
a step whose notes were not written is still in pending.json.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from pathlib import Path

from shieldpool.core.ledger import Confirmed, Ledger
from shieldpool.core.models import Note, PendingStep, TokenKind
from shieldpool.core.note_store import NoteStore
from shieldpool.core.nullifiers import NullifierMirror
from shieldpool.core.storage import DEFAULT_KDF_ITERATIONS, RecordCipher, atomic_write_json, read_json
from shieldpool.crypto.merkle import DEFAULT_TREE_HEIGHT, MerkleMirror
from shieldpool.errors import StateReconciliationError

logger = logging.getLogger("shieldpool.state")

NOTES_FILE = "notes.json"
MERKLE_FILE = "merkle.json"
NULLIFIERS_FILE = "nullifiers.json"
PENDING_FILE = "pending.json"


@dataclass(frozen=True)
class BalanceSnapshot:
    """A consistent read of one (owner, token kind)."""
    owner: str
    token_kind: TokenKind
    balance: int
    unspent_count: int
    merkle_root: str
    tree_size: int
    spent_nullifiers: int


class WalletState:
    """
    Local state of the shielded wallet.

    Usage:
        state = WalletState.open("~/.shieldpool", passphrase=key)   # durable
        state = WalletState.in_memory(tree_height=20)                # tests
    """

    def __init__(
        self,
        notes: NoteStore,
        mirror: MerkleMirror,
        nullifiers: NullifierMirror,
        lock: threading.RLock,
        directory: Path | None = None,
        cipher: RecordCipher | None = None,
    ) -> None:
        self.notes = notes
        self.mirror = mirror
        self.nullifiers = nullifiers
        self.lock = lock
        self.directory = directory
        self.cipher = cipher
        self._pending: dict[str, PendingStep] = {}

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def in_memory(cls, tree_height: int = DEFAULT_TREE_HEIGHT) -> WalletState:
        lock = threading.RLock()
        return cls(
            notes=NoteStore(lock=lock),
            mirror=MerkleMirror(height=tree_height),
            nullifiers=NullifierMirror(lock=lock),
            lock=lock,
        )

    @classmethod
    def open(
        cls,
        directory: str | Path,
        tree_height: int = DEFAULT_TREE_HEIGHT,
        passphrase: str | bytes | None = None,
        kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
    ) -> WalletState:
        """
        Load (or create) durable state from `directory` and reconcile it.

        Args:
            directory: Where the records live.
            tree_height: Height of the ledger's commitment tree.
            passphrase: Key material for the encrypted note records.
            kdf_iterations: PBKDF2 iterations for new records.

        Raises:
            ValueError: If no passphrase is given.
            StoreDecryptionError: If the passphrase does not open the records.
            StateReconciliationError: If the three records disagree.
        """
        if not passphrase:
            raise ValueError("A store passphrase is required to keep notes on disk")
        directory = Path(directory).expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        lock = threading.RLock()
        cipher = RecordCipher(passphrase, iterations=kdf_iterations)

        merkle_data = read_json(directory / MERKLE_FILE)
        if merkle_data is None:
            mirror = MerkleMirror(height=tree_height)
        else:
            mirror = MerkleMirror.from_dict(merkle_data)
            if mirror.height != tree_height:
                raise StateReconciliationError(
                    f"Persisted tree height {mirror.height} does not match configured {tree_height}"
                )

        state = cls(
            notes=NoteStore(directory / NOTES_FILE, lock=lock, cipher=cipher),
            mirror=mirror,
            nullifiers=NullifierMirror(directory / NULLIFIERS_FILE, lock=lock),
            lock=lock,
            directory=directory,
            cipher=cipher,
        )
        pending = read_json(directory / PENDING_FILE, default={"pending": []}, cipher=cipher)
        for raw in pending.get("pending", []):
            entry = PendingStep.model_validate(raw)
            state._pending[entry.step_id] = entry
        state.reconcile()
        return state

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def reconcile(self) -> None:
        """
        Check that every confirmed note sits at its leaf in the mirror, and
        that notes whose nullifier is recorded as spent are marked spent.
        """
        with self.lock:
            for note in self.notes.all_notes():
                if note.leaf_index is None:
                    continue
                if note.leaf_index >= self.mirror.size:
                    raise StateReconciliationError(
                        f"Note {note.short()} references leaf {note.leaf_index}, "
                        f"mirror only has {self.mirror.size} leaves"
                    )
                if self.mirror.leaf(note.leaf_index) != note.commitment:
                    raise StateReconciliationError(
                        f"Leaf {note.leaf_index} does not hold the commitment of note {note.short()}"
                    )
            with self.notes.deferred():
                for note in self.notes.all_notes():
                    if not note.spent and note.nullifier in self.nullifiers:
                        logger.warning(f"Repairing note {note.short()}: nullifier recorded as spent")
                        self.notes.mark_spent(note.nullifier)
            if self._pending:
                logger.info(f"{len(self._pending)} submissions await a ledger verdict")

    def sync_with_ledger(self, ledger: Ledger) -> bool:
        """
        Bring the Merkle Mirror up to the ledger's current tree.

        Returns:
            True if the mirror changed.
        """
        with self.lock:
            start = self.mirror.size
            before = self.mirror.root()
        leaves = ledger.leaves(start)
        ledger_root = ledger.current_root()

        with self.lock:
            self.mirror.extend(leaves, start=start)
            current = self.mirror.root() == ledger_root
        if not current:
            logger.warning(f"Merkle mirror diverged from ledger near leaf {start}; rebuilding")
            rebuilt = MerkleMirror(height=self.mirror.height, leaves=ledger.leaves(0))
            if rebuilt.root() != ledger.current_root():
                raise StateReconciliationError(
                    f"Merkle mirror root {rebuilt.root()[:16]}... does not match ledger after rebuild"
                )
            with self.lock:
                self.mirror.adopt(rebuilt)

        with self.lock:
            changed = self.mirror.root() != before
            if changed:
                self._save_mirror()
            return changed

    # ------------------------------------------------------------------
    # Submissions in flight
    # ------------------------------------------------------------------

    def record_pending(self, consumed: list[str], outputs: list[Note], keep_owner: str | None = None) -> PendingStep:
        """Persist a step's output notes before its submission leaves the process."""
        entry = PendingStep(
            step_id=secrets.token_hex(8),
            nullifiers=list(consumed),
            outputs=[n.model_copy() for n in outputs],
            keep_owner=keep_owner,
        )
        with self.lock:
            self._pending[entry.step_id] = entry
            self._save_pending()
        return entry

    def pending_steps(self) -> list[PendingStep]:
        with self.lock:
            return list(self._pending.values())

    def discard_pending(self, step_id: str) -> None:
        with self.lock:
            if self._pending.pop(step_id, None) is not None:
                self._save_pending()

    def resolve_pending(self, ledger: Ledger) -> dict[str, list[Note]]:
        """
        Settle submissions whose verdict never reached this process.

        A step whose output commitments are in the ledger tree is applied as
        confirmed. A step whose inputs were consumed by some other submission
        is dropped. Anything else may still land and stays pending.

        Returns:
            Placed output notes per promoted step id.
        """
        entries = self.pending_steps()
        if not entries:
            return {}
        self.sync_with_ledger(ledger)

        promoted: dict[str, list[Note]] = {}
        for entry in entries:
            with self.lock:
                indices = [self.mirror.index_of(c) for c in entry.commitments]
            if entry.outputs and all(i is not None for i in indices):
                promoted[entry.step_id] = self._promote(entry, indices)
                continue

            published = ledger.spent_nullifiers(entry.nullifiers)
            if not entry.outputs and published and published == set(entry.nullifiers):
                promoted[entry.step_id] = self._promote(entry, [])
            elif published:
                logger.warning(
                    f"Dropping pending step {entry.step_id}: its inputs were consumed by another submission"
                )
                self.discard_pending(entry.step_id)
        return promoted

    def _promote(self, entry: PendingStep, indices: list[int]) -> list[Note]:
        logger.warning(f"Recovered pending step {entry.step_id}: outputs found at leaves {indices}")
        return self.apply_confirmed_step(
            entry.nullifiers,
            list(entry.outputs),
            Confirmed(new_leaf_indices=indices),
            keep_owner=entry.keep_owner,
            pending_id=entry.step_id,
        )

    # ------------------------------------------------------------------
    # Confirmed events
    # ------------------------------------------------------------------

    def apply_confirmed_step(
        self,
        consumed: list[str],
        outputs: list[Note],
        confirmed: Confirmed,
        ledger: Ledger | None = None,
        keep_owner: str | None = None,
        pending_id: str | None = None,
    ) -> list[Note]:
        """
        Record one confirmed submission as a single transactional update.

        Args:
            consumed: Nullifiers the submission published, in ledger order.
            outputs: Output notes, in the order their commitments were appended.
            confirmed: The ledger's confirmation (carries the new leaf indices).
            ledger: Used to pull foreign leaves if the new indices are not
                contiguous with the mirror.
            keep_owner: If set, only outputs owned by this identity are stored;
                every output still advances the mirror.
            pending_id: The pending record this confirmation settles.

        Returns:
            All output notes with their leaf indices, in output order.

        Raises:
            StateReconciliationError: If the confirmed leaves don't match the outputs.
        """
        indices = confirmed.new_leaf_indices
        if len(indices) != len(outputs):
            raise StateReconciliationError(
                f"Ledger confirmed {len(indices)} leaves for {len(outputs)} outputs"
            )
        with self.lock:
            contiguous = self._contiguous(indices)
        if not contiguous and ledger is not None:
            self.sync_with_ledger(ledger)

        with self.lock:
            if self._contiguous(indices):
                for note in outputs:
                    self.mirror.append(note.commitment)
            for note, index in zip(outputs, indices):
                if index >= self.mirror.size or self.mirror.leaf(index) != note.commitment:
                    raise StateReconciliationError(
                        f"Confirmed leaf {index} does not match output {note.short()}"
                    )
            self._save_mirror()
            self.nullifiers.add_many(consumed)

            placed: list[Note] = []
            with self.notes.deferred():
                for nullifier in consumed:
                    self.notes.mark_spent(nullifier)
                for note, index in zip(outputs, indices):
                    if keep_owner is None or note.owner == keep_owner:
                        self.notes.add_note(note)
                        self.notes.assign_leaf_index(note.nullifier, index)
                        placed.append(self.notes.get(note.nullifier))
                    else:
                        placed.append(note.model_copy(update={"leaf_index": index}))

            if pending_id is not None:
                self.discard_pending(pending_id)
            return placed

    def record_spent_nullifiers(self, nullifiers: list[str]) -> list[str]:
        """
        Record nullifiers the ledger reports as already published.

        Returns:
            The nullifiers that belonged to local notes not yet marked spent.
        """
        with self.lock, self.notes.deferred():
            self.nullifiers.add_many(nullifiers)
            return [nf for nf in nullifiers if self.notes.mark_spent(nf)]

    def add_confirmed_note(self, note: Note, leaf_index: int, ledger: Ledger) -> Note:
        """
        Store a note created outside the engine (a deposit) once its
        commitment is on the ledger at `leaf_index`.

        Raises:
            StateReconciliationError: If the ledger holds a different leaf there.
        """
        if self.mirror.size <= leaf_index:
            self.sync_with_ledger(ledger)
        with self.lock:
            if leaf_index >= self.mirror.size or self.mirror.leaf(leaf_index) != note.commitment:
                raise StateReconciliationError(
                    f"Ledger leaf {leaf_index} does not hold the commitment of note {note.short()}"
                )
            with self.notes.deferred():
                self.notes.add_note(note)
                self.notes.assign_leaf_index(note.nullifier, leaf_index)
            return self.notes.get(note.nullifier)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balance(self, owner: str, token_kind: TokenKind) -> int:
        return self.snapshot(owner, token_kind).balance

    def snapshot(self, owner: str, token_kind: TokenKind) -> BalanceSnapshot:
        with self.lock:
            unspent = list(self.notes.unspent_notes(owner, token_kind))
            return BalanceSnapshot(
                owner=owner,
                token_kind=TokenKind(token_kind),
                balance=sum(n.amount for n in unspent),
                unspent_count=len(unspent),
                merkle_root=self.mirror.root(),
                tree_size=self.mirror.size,
                spent_nullifiers=len(self.nullifiers),
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _contiguous(self, indices: list[int]) -> bool:
        return indices == list(range(self.mirror.size, self.mirror.size + len(indices)))

    def _save_mirror(self) -> None:
        if self.directory is not None:
            atomic_write_json(self.directory / MERKLE_FILE, self.mirror.to_dict())

    def _save_pending(self) -> None:
        if self.directory is not None:
            atomic_write_json(
                self.directory / PENDING_FILE,
                {"version": 1, "pending": [p.model_dump(mode="json") for p in self._pending.values()]},
                cipher=self.cipher,
            )
