"""
Consolidation Engine: merges many small notes into few larger ones so a
spend fits within the spend circuit's input limit.

Round structure:
    1. Take every unspent note of the token kind, in planner order.
    2. Partition into consecutive batches of `max_consolidation_inputs`;
       the last batch holds whatever remains (never empty).
    3. Every batch of two or more notes becomes one consolidation proof
       with a single fresh output note. A trailing single-note batch is
       carried into the next round unchanged.
    4. If outputs + carried notes still exceed `max_spend_inputs`,
       repeat on that set.

Output notes get freshly sampled secret, blinding and rho, so a merged note
cannot be linked to the notes it replaced. The whole multi-round plan is
computed up front: every output amount is known locally before the
ledger confirms anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from shieldpool.core.models import ConsolidationBatch, Note, TokenKind, create_note
from shieldpool.core.note_store import NoteStore
from shieldpool.errors import ConsolidationExhausted

logger = logging.getLogger("shieldpool.consolidation")

DEFAULT_MAX_ROUNDS = 4


def partition_notes(notes: list[Note], batch_size: int) -> list[list[Note]]:
    """Split `notes` into consecutive batches of `batch_size`; the last may be shorter."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [notes[i:i + batch_size] for i in range(0, len(notes), batch_size)]


def rounds_needed(note_count: int, batch_size: int, limit: int) -> int:
    """Number of rounds needed to bring `note_count` notes down to `limit`."""
    if batch_size < 2:
        raise ValueError(f"batch_size must be >= 2, got {batch_size}")
    rounds = 0
    count = note_count
    while count > limit:
        count = -(-count // batch_size)
        rounds += 1
    return rounds


@dataclass(frozen=True)
class ConsolidationPlan:
    """
    A complete multi-round consolidation schedule.

    Attributes:
        rounds: Batches per round, executed in order.
        resulting_notes: Notes the final spend will plan against, in planner order.
        carried: Notes that skipped at least one round untouched.
    """
    rounds: list[list[ConsolidationBatch]] = field(default_factory=list)
    resulting_notes: list[Note] = field(default_factory=list)
    carried: list[Note] = field(default_factory=list)

    @property
    def batches(self) -> list[ConsolidationBatch]:
        return [batch for round_batches in self.rounds for batch in round_batches]

    @property
    def round_count(self) -> int:
        return len(self.rounds)

    @property
    def step_count(self) -> int:
        return len(self.batches)


class ConsolidationEngine:
    """
    Builds consolidation schedules from the Note Store.

    Usage:
        engine = ConsolidationEngine(store, max_rounds=4)
        plan = engine.plan("alice", TokenKind.SOL, target=9,
                           max_spend_inputs=4, max_consolidation_inputs=8)
    """

    def __init__(self, store: NoteStore, max_rounds: int = DEFAULT_MAX_ROUNDS) -> None:
        self.store = store
        self.max_rounds = max_rounds

    def plan(
        self,
        owner: str,
        token_kind: TokenKind,
        target: int,
        max_spend_inputs: int,
        max_consolidation_inputs: int,
    ) -> ConsolidationPlan:
        """
        Schedule consolidation rounds until the spend circuit can cover `target`.

        Raises:
            ValueError: If max_consolidation_inputs < 2.
            ConsolidationExhausted: If the balance is below target, a round
                makes no progress, or max_rounds would be exceeded.
        """
        if max_consolidation_inputs < 2:
            raise ValueError(
                f"max_consolidation_inputs must be >= 2, got {max_consolidation_inputs}"
            )
        token_kind = TokenKind(token_kind)
        current = list(self.store.unspent_notes(owner, token_kind))
        total = sum(n.amount for n in current)
        if total < target:
            raise ConsolidationExhausted(
                f"insufficient balance: {total} < {target} {token_kind.value}", len(current)
            )

        rounds: list[list[ConsolidationBatch]] = []
        carried_ever: list[Note] = []
        while len(current) > max_spend_inputs:
            if len(rounds) >= self.max_rounds:
                raise ConsolidationExhausted(
                    f"{self.max_rounds} rounds left {len(current)} notes above the limit of {max_spend_inputs}",
                    len(current),
                )
            round_index = len(rounds)
            batches: list[ConsolidationBatch] = []
            carried: list[Note] = []
            for group in partition_notes(current, max_consolidation_inputs):
                if len(group) == 1:
                    carried.extend(group)
                    continue
                output = create_note(owner, token_kind, sum(n.amount for n in group))
                batches.append(ConsolidationBatch(inputs=tuple(group), output=output, round_index=round_index))

            next_notes = carried + [b.output for b in batches]
            if not batches or len(next_notes) >= len(current):
                raise ConsolidationExhausted(
                    f"round {round_index + 1} made no progress on {len(current)} notes", len(current)
                )
            # carried notes are older than this round's outputs, so they win ties
            current = sorted(next_notes, key=lambda n: -n.amount)
            carried_ever.extend(carried)
            rounds.append(batches)
            logger.info(
                f"Consolidation round {round_index + 1}: {len(batches)} batches, "
                f"{len(carried)} carried, {len(current)} notes remain"
            )

        return ConsolidationPlan(rounds=rounds, resulting_notes=current, carried=carried_ever)
