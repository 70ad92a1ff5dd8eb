from pydantic import BaseModel, Field

from shieldpool.core.models import TokenKind


class SpendRequest(BaseModel):
    """Request model for a spend (transfer or withdrawal)."""

    owner: str = Field(..., description="Local identity whose notes are spent")
    token_kind: TokenKind = Field(..., description="Asset to spend")
    amount: int = Field(..., gt=0, description="Amount in the token's smallest unit")
    recipient: str | None = Field(
        None,
        description="Identity receiving a shielded transfer. Defaults to the owner.",
    )
    withdraw_to: str | None = Field(
        None,
        description="Public address for a withdrawal. Mutually exclusive with recipient.",
    )
    max_spend_inputs: int | None = Field(None, ge=1, description="Override of the spend circuit input limit")
    max_consolidation_inputs: int | None = Field(
        None, ge=2, description="Override of the consolidation circuit input limit"
    )


class PaymentNote(BaseModel):
    """
    Full opening of a note created for another identity.

    The wallet does not keep notes it does not own, so this is the only copy
    of the recipient's spending material. Scalars are decimal strings.
    """

    owner: str
    token_kind: TokenKind
    amount: int
    secret: str
    blinding: str
    rho: str
    commitment: str
    leaf_index: int | None = None


class SpendResponse(BaseModel):
    """Response model for a completed spend."""

    total_steps: int = Field(..., description="Submissions made, consolidations included")
    consolidation_rounds: int = Field(..., description="Consolidation rounds executed before the spend")
    recipient_amount: int = Field(..., description="Amount delivered")
    change_amount: int = Field(..., description="Amount returned to the owner as a change note")
    fee_estimate: int = Field(..., description="Estimated fee for all steps")
    final_commitment: str | None = Field(None, description="Commitment of the payment (or change) note")
    final_leaf_index: int | None = Field(None, description="Leaf index of the final note")
    payment_note: PaymentNote | None = Field(
        None,
        description="Opening of a payment note for another recipient, to be delivered to them",
    )
    events: list[dict] = Field(default_factory=list, description="Progress events in order")


class BalanceResponse(BaseModel):
    """Response model for a balance query."""

    owner: str
    token_kind: TokenKind
    balance: int = Field(..., description="Sum of unspent note amounts")
    unspent_count: int = Field(..., description="Number of unspent notes")
    merkle_root: str = Field(..., description="Root of the local Merkle mirror")
    tree_size: int = Field(..., description="Leaves in the local Merkle mirror")


class NoteResponse(BaseModel):
    """Public view of one unspent note. Secret material is never returned."""

    commitment: str
    amount: int
    token_kind: TokenKind
    leaf_index: int | None = None
    created_at: int


class RelayerStatusResponse(BaseModel):
    """Health and counters of one relay endpoint."""

    url: str
    healthy: bool
    failure_count: int
    success_count: int
    total_failures: int
    last_health_check: float | None = None
    last_error: str | None = None
