"""
Error taxonomy for the shielded pool engine.

Recoverable conditions (stale roots, proof timeouts, single relay outages)
are retried inside the failing step and only surface once their retry
budget is spent. Everything raised out of `ShieldedWallet.spend` leaves the
local state resumable: re-invoking `spend` is always safe.
"""

from __future__ import annotations


class ShieldPoolError(Exception):
    """Base class for all shielded pool engine errors."""
    pass


# ------------------------------------------------------------------
# Local state
# ------------------------------------------------------------------


class DuplicateCommitment(ShieldPoolError):
    """Raised when a note with a new nullifier reuses an existing commitment."""
    pass


class LeafIndexImmutable(ShieldPoolError):
    """Raised when a note's leaf index would be reassigned to a different value."""
    pass


class MerkleTreeFull(ShieldPoolError):
    """Raised when appending beyond the tree's 2**height capacity."""
    pass


class StateReconciliationError(ShieldPoolError):
    """Raised when persisted notes, leaves and nullifiers disagree, or the mirror diverges from the ledger."""
    pass


class StoreDecryptionError(ShieldPoolError):
    """Raised when an encrypted note record cannot be opened with the given passphrase."""
    pass


# ------------------------------------------------------------------
# Planning & consolidation
# ------------------------------------------------------------------


class ConsolidationExhausted(ShieldPoolError):
    """
    Raised when consolidation cannot bring the note count within the spend
    circuit's input limit: too many rounds, no progress, or insufficient
    total balance.
    """

    def __init__(self, reason: str, residual_unspent: int) -> None:
        self.reason = reason
        self.residual_unspent = residual_unspent
        super().__init__(f"Consolidation exhausted: {reason} ({residual_unspent} unspent notes remain)")


# ------------------------------------------------------------------
# Prover
# ------------------------------------------------------------------


class ProverError(ShieldPoolError):
    """Raised when the prover service returns an unexpected error."""
    pass


class ProofTimeout(ProverError):
    """Raised when a single proof request times out. Retried in place."""
    pass


class InvalidWitness(ProverError):
    """Raised when the prover rejects the witness. Never retried."""
    pass


class ProofGenerationFailed(ProverError):
    """Raised when a step exhausts its proof retries."""

    def __init__(self, circuit_id: str, attempts: int, last_error: Exception | None = None) -> None:
        self.circuit_id = circuit_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Proof generation for {circuit_id} failed after {attempts} attempts: {last_error}")


# ------------------------------------------------------------------
# Ledger & relay
# ------------------------------------------------------------------


class LedgerError(ShieldPoolError):
    """Raised when the ledger API returns an error."""
    pass


class StaleRootDetected(ShieldPoolError):
    """Raised when the proof's Merkle root no longer matches the ledger root. Recovered locally."""

    def __init__(self, local_root: str, ledger_root: str) -> None:
        self.local_root = local_root
        self.ledger_root = ledger_root
        super().__init__(f"Stale Merkle root {local_root[:16]}..., ledger is at {ledger_root[:16]}...")


class ConcurrentSpendDetected(ShieldPoolError):
    """Raised when a nullifier this step consumes was already published elsewhere."""

    def __init__(self, nullifiers: list[str]) -> None:
        self.nullifiers = list(nullifiers)
        shown = ", ".join(n[:16] + "..." for n in self.nullifiers)
        super().__init__(f"Nullifier already spent on ledger: {shown}")


class SubmissionRejected(ShieldPoolError):
    """Raised when the ledger rejects a submission for a non-recoverable reason."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Submission rejected by ledger: {reason}")


class AllEndpointsFailed(ShieldPoolError):
    """Raised when every relay attempt for one submission failed."""

    def __init__(self, attempts: int, last_error: str | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"All relayer attempts failed after {attempts} tries. Last error: {last_error}")


# ------------------------------------------------------------------
# Orchestration
# ------------------------------------------------------------------


class SpendInProgress(ShieldPoolError):
    """Raised when a spend pipeline for the same (owner, token kind) is already running."""
    pass


class SpendCancelled(ShieldPoolError):
    """Raised when the caller cancels before a step's submission was acknowledged."""

    def __init__(self, completed_steps: int) -> None:
        self.completed_steps = completed_steps
        super().__init__(f"Spend cancelled after {completed_steps} confirmed steps")
