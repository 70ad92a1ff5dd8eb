"""core module init"""
from shieldpool.core.ledger import Confirmed, Ledger, LedgerClient, Rejected
from shieldpool.core.models import (
    CircuitId,
    ConsolidationBatch,
    Infeasible,
    Note,
    ProgressEvent,
    ProgressStage,
    SpendPlan,
    SpendResult,
    SplitOutput,
    StepAction,
    TokenKind,
    create_note,
)
from shieldpool.core.note_store import NoteStore
from shieldpool.core.nullifiers import NullifierMirror
from shieldpool.core.prover import ProofResult, Prover, ProverClient
from shieldpool.core.state import BalanceSnapshot, WalletState

__all__ = [
    "BalanceSnapshot",
    "CircuitId",
    "Confirmed",
    "ConsolidationBatch",
    "Infeasible",
    "Ledger",
    "LedgerClient",
    "Note",
    "NoteStore",
    "NullifierMirror",
    "ProgressEvent",
    "ProgressStage",
    "ProofResult",
    "Prover",
    "ProverClient",
    "Rejected",
    "SpendPlan",
    "SpendResult",
    "SplitOutput",
    "StepAction",
    "TokenKind",
    "WalletState",
    "create_note",
]
