"""
Core data models for the shielded pool.
All amounts are unsigned integers in the token's smallest unit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from shieldpool.crypto.hashing import note_commitment, note_nullifier, random_scalar


class TokenKind(str, Enum):
    """Closed set of assets the pool supports."""
    SOL = "SOL"
    NOC = "NOC"


class CircuitId(str, Enum):
    """Circuits the external prover can prove."""
    TRANSFER_SPEND = "transfer-spend"
    WITHDRAW_SPEND = "withdraw-spend"
    CONSOLIDATE = "consolidate"


class ProgressStage(str, Enum):
    PROVING = "proving"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"


class StepAction(str, Enum):
    CONSOLIDATE = "consolidate"
    SPEND = "spend"


class Note(BaseModel):
    """
    A shielded value record owned by the local identity.

    `commitment` and `nullifier` are checked against the secret material at
    construction, so a persisted record cannot silently drift from the
    values the circuits will recompute.
    """
    secret: int
    amount: int = Field(ge=0)
    token_kind: TokenKind
    blinding: int
    rho: int
    commitment: str
    nullifier: str
    owner: str
    leaf_index: int | None = None
    spent: bool = False
    created_at: int = 0

    @model_validator(mode="after")
    def _check_hashes(self) -> Note:
        expected_cm = note_commitment(self.secret, self.amount, self.token_kind.value, self.blinding)
        if self.commitment != expected_cm:
            raise ValueError("Note integrity check failed: commitment doesn't match (secret, amount, token, blinding)")
        if self.nullifier != note_nullifier(self.secret, self.rho):
            raise ValueError("Note integrity check failed: nullifier doesn't match (secret, rho)")
        return self

    @property
    def confirmed(self) -> bool:
        """True once the ledger has accepted the commitment."""
        return self.leaf_index is not None

    def short(self) -> str:
        return f"{self.nullifier[:12]}...({self.amount} {self.token_kind.value})"


def create_note(owner: str, token_kind: TokenKind, amount: int) -> Note:
    """
    Sample a fresh note with new secret, blinding and rho.

    Used for deposits and for every output the engine creates
    (consolidation merges, payment and change outputs).
    """
    token_kind = TokenKind(token_kind)
    secret = random_scalar()
    blinding = random_scalar()
    rho = random_scalar()
    return Note(
        secret=secret,
        amount=amount,
        token_kind=token_kind,
        blinding=blinding,
        rho=rho,
        commitment=note_commitment(secret, amount, token_kind.value, blinding),
        nullifier=note_nullifier(secret, rho),
        owner=owner,
    )


class PendingStep(BaseModel):
    """
    A submission whose outcome is not yet known locally.

    Written before the relay call so that output notes survive a lost
    confirmation: once the ledger holds the output commitments the step is
    promoted into the Note Store, whichever relay attempt landed it.
    """
    step_id: str
    nullifiers: list[str]
    outputs: list[Note]
    keep_owner: str | None = None

    @property
    def commitments(self) -> list[str]:
        return [n.commitment for n in self.outputs]


# ==============================================================================
# Planning value objects (never persisted)
# ==============================================================================


@dataclass(frozen=True)
class SplitOutput:
    """
    The single split of a spend plan.

    The `source` note is consumed in full; `payment_amount` goes to the
    recipient and `change_amount` returns to the owner as a new note.
    """
    source: Note
    payment_amount: int
    change_amount: int


@dataclass(frozen=True)
class SpendPlan:
    """
    Notes selected for one spend circuit invocation.

    Attributes:
        inputs: Notes to consume, in selection order (descending amount).
        split: The optional single split on the last-selected note.
        recipient_amount: Amount delivered to the recipient.
        fee: Fee obligation for this step, in the fee token.
        max_inputs: The circuit input limit the plan was built against.
    """
    inputs: tuple[Note, ...]
    split: SplitOutput | None
    recipient_amount: int
    fee: int
    max_inputs: int

    @property
    def input_total(self) -> int:
        return sum(n.amount for n in self.inputs)

    @property
    def change_amount(self) -> int:
        return self.split.change_amount if self.split else 0

    @property
    def is_exact(self) -> bool:
        return self.split is None

    @property
    def nullifiers(self) -> list[str]:
        return [n.nullifier for n in self.inputs]


@dataclass(frozen=True)
class Infeasible:
    """Planner result when `max_inputs` notes cannot cover the target."""
    needed: int
    available: int
    max_inputs: int
    note_count: int

    @property
    def insufficient_balance(self) -> bool:
        """True when even consolidating every note could not cover the target."""
        return self.available < self.needed


@dataclass(frozen=True)
class ConsolidationBatch:
    """
    Up to `max_consolidation_inputs` same-token notes merged into one fresh note.

    The output amount always equals the sum of the inputs.
    """
    inputs: tuple[Note, ...]
    output: Note
    round_index: int

    def __post_init__(self) -> None:
        if not self.inputs:
            raise ValueError("Consolidation batch cannot be empty")
        kinds = {n.token_kind for n in self.inputs}
        if len(kinds) != 1 or self.output.token_kind not in kinds:
            raise ValueError(f"Consolidation batch mixes token kinds: {sorted(k.value for k in kinds)}")
        if sum(n.amount for n in self.inputs) != self.output.amount:
            raise ValueError("Consolidation batch does not conserve value")

    @property
    def size(self) -> int:
        return len(self.inputs)

    @property
    def nullifiers(self) -> list[str]:
        return [n.nullifier for n in self.inputs]


# ==============================================================================
# Progress & results
# ==============================================================================


@dataclass(frozen=True)
class ProgressEvent:
    """One stage transition of one pipeline step."""
    step_index: int
    step_count: int
    stage: ProgressStage
    action: StepAction
    batch_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepIndex": self.step_index,
            "stepCount": self.step_count,
            "stage": self.stage.value,
            "action": self.action.value,
            "batchSize": self.batch_size,
        }


@dataclass
class SpendResult:
    """
    Outcome of a successful `spend`.

    `final_note` is the payment note for transfers; for withdrawals it is
    the change note (or None when the plan was exact).
    """
    plan: SpendPlan
    total_steps: int
    final_note: Note | None
    change_note: Note | None = None
    consolidation_rounds: int = 0
    fee_estimate: int = 0
    events: list[ProgressEvent] = field(default_factory=list)
