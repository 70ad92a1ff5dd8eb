"""
Spend Planner: chooses which notes a single spend circuit invocation consumes.

Selection is greedy over unspent notes in store order (descending amount,
oldest first on ties): whole notes are taken while the running sum is below
the target and the circuit still has free inputs. If the sum overshoots,
the last (smallest) selected note is split into a payment part and a
change part. If `max_inputs` notes cannot reach the target the result is
`Infeasible`, which callers answer with consolidation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from shieldpool.core.models import Infeasible, Note, SpendPlan, SplitOutput, TokenKind
from shieldpool.core.note_store import NoteStore

logger = logging.getLogger("shieldpool.planner")


def select_notes(
    notes: Iterable[Note],
    target: int,
    max_inputs: int,
    fee: int = 0,
) -> SpendPlan | Infeasible:
    """
    Plan a spend of `target` from `notes`, which must already be in planner order.

    Raises:
        ValueError: If target is not positive or max_inputs < 1.
    """
    if target <= 0:
        raise ValueError(f"Spend amount must be positive, got {target}")
    if max_inputs < 1:
        raise ValueError(f"max_inputs must be >= 1, got {max_inputs}")

    candidates = list(notes)
    selected: list[Note] = []
    total = 0
    for note in candidates:
        if total >= target or len(selected) >= max_inputs:
            break
        selected.append(note)
        total += note.amount

    if total < target:
        return Infeasible(
            needed=target,
            available=sum(n.amount for n in candidates),
            max_inputs=max_inputs,
            note_count=len(candidates),
        )

    split = None
    if total > target:
        excess = total - target
        last = selected[-1]
        split = SplitOutput(source=last, payment_amount=last.amount - excess, change_amount=excess)

    return SpendPlan(
        inputs=tuple(selected),
        split=split,
        recipient_amount=target,
        fee=fee,
        max_inputs=max_inputs,
    )


class SpendPlanner:
    """
    Plans spends against the Note Store.

    Usage:
        planner = SpendPlanner(store)
        plan = planner.plan("alice", TokenKind.SOL, 7, max_inputs=4)
        if isinstance(plan, Infeasible):
            ...  # consolidate first
    """

    def __init__(self, store: NoteStore, fee_per_step: int = 0) -> None:
        self.store = store
        self.fee_per_step = fee_per_step

    def plan(self, owner: str, token_kind: TokenKind, amount: int, max_inputs: int) -> SpendPlan | Infeasible:
        result = select_notes(
            self.store.unspent_notes(owner, token_kind),
            amount,
            max_inputs,
            fee=self.fee_per_step,
        )
        if isinstance(result, Infeasible):
            logger.debug(
                f"Spend of {amount} {TokenKind(token_kind).value} infeasible with {max_inputs} inputs "
                f"({result.note_count} notes, {result.available} available)"
            )
        return result

    def estimate_fee(self, step_count: int) -> int:
        """Fee obligation for a pipeline of `step_count` submissions."""
        return self.fee_per_step * max(step_count, 0)
