from fastapi import APIRouter, HTTPException, Request

from shieldpool.api.models import (
    BalanceResponse,
    NoteResponse,
    PaymentNote,
    RelayerStatusResponse,
    SpendRequest,
    SpendResponse,
)
from shieldpool.core.models import TokenKind

router = APIRouter(tags=["Shielded Wallet"])


def get_wallet(request: Request):
    """Dependency to retrieve the initialized ShieldedWallet from app state."""
    wallet = getattr(request.app.state, "wallet", None)
    if not wallet:
        raise HTTPException(status_code=500, detail="shielded wallet not initialized")
    return wallet


@router.get("/balance/{owner}/{token_kind}", response_model=BalanceResponse)
def balance(request: Request, owner: str, token_kind: TokenKind):
    """
    Balance of one owner in one token kind, read under the state lock.
    Runs in the threadpool: a spend may hold the lock while it applies a step.
    """
    wallet = get_wallet(request)
    snap = wallet.state.snapshot(owner, token_kind)
    return BalanceResponse(
        owner=snap.owner,
        token_kind=snap.token_kind,
        balance=snap.balance,
        unspent_count=snap.unspent_count,
        merkle_root=snap.merkle_root,
        tree_size=snap.tree_size,
    )


@router.get("/notes/{owner}/{token_kind}", response_model=list[NoteResponse])
def list_notes(request: Request, owner: str, token_kind: TokenKind):
    """
    List unspent notes, largest first.
    Secrets, blinding factors and nullifiers stay local.
    """
    wallet = get_wallet(request)
    return [
        NoteResponse(
            commitment=n.commitment,
            amount=n.amount,
            token_kind=n.token_kind,
            leaf_index=n.leaf_index,
            created_at=n.created_at,
        )
        for n in wallet.unspent_notes(owner, token_kind)
    ]


@router.post("/spend", response_model=SpendResponse)
def spend(request: Request, req: SpendRequest):
    """
    Spend from the owner's notes, consolidating first when the spend
    circuit's input limit is too small.

    Blocks until the final step is confirmed. Calling again after a failure
    resumes from whatever the ledger already confirmed.
    """
    wallet = get_wallet(request)
    result = wallet.spend(
        req.owner,
        req.token_kind,
        req.amount,
        max_spend_inputs=req.max_spend_inputs,
        max_consolidation_inputs=req.max_consolidation_inputs,
        recipient=req.recipient,
        withdraw_to=req.withdraw_to,
    )
    final = result.final_note
    payment = None
    if final is not None and req.withdraw_to is None and final.owner != req.owner:
        # the recipient's note is not kept locally; its opening goes back to the caller
        payment = PaymentNote(
            owner=final.owner,
            token_kind=final.token_kind,
            amount=final.amount,
            secret=str(final.secret),
            blinding=str(final.blinding),
            rho=str(final.rho),
            commitment=final.commitment,
            leaf_index=final.leaf_index,
        )
    return SpendResponse(
        total_steps=result.total_steps,
        consolidation_rounds=result.consolidation_rounds,
        recipient_amount=result.plan.recipient_amount,
        change_amount=result.plan.change_amount,
        fee_estimate=result.fee_estimate,
        final_commitment=final.commitment if final else None,
        final_leaf_index=final.leaf_index if final else None,
        payment_note=payment,
        events=[e.to_dict() for e in result.events],
    )


@router.get("/relayers", response_model=list[RelayerStatusResponse])
def relayers(request: Request):
    """Health and counters of every configured relay endpoint."""
    wallet = get_wallet(request)
    return [RelayerStatusResponse(**s) for s in wallet.relayer_status()]
