"""
Staged Executor — drives a pipeline of proof-and-submit steps.

A pipeline is `[round 1 consolidations..., round 2 consolidations...,
final spend]`, executed strictly in order because later steps consume the
outputs of earlier ones. Each step:

    1. Pre-filters its inputs against known spent nullifiers.
    2. Syncs the Merkle Mirror if the ledger root moved.
    3. Builds the witness and requests a proof (retrying timeouts).
    4. Re-reads the ledger root; a moved root means re-sync and re-prove.
    5. Honours cancellation, records the step's outputs as pending, then
       submits through the relayers.
    6. Waits for the ledger's verdict and applies a confirmation to
       local state in one atomic update.

A submission whose verdict is lost (the confirmation request fails, or a
relay times out after forwarding) leaves its outputs in the pending
record. `WalletState.resolve_pending` promotes them once the ledger tree
shows the output commitments.

Confirmed steps are never rolled back. A halted pipeline leaves every
confirmed output in the Note Store, so calling `spend` again plans from
the new state and continues where the previous run stopped.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from shieldpool.core.ledger import Confirmed, Ledger, Rejected
from shieldpool.core.models import (
    CircuitId,
    ConsolidationBatch,
    Note,
    PendingStep,
    ProgressEvent,
    ProgressStage,
    StepAction,
)
from shieldpool.core.prover import ProofResult, Prover
from shieldpool.core.state import WalletState
from shieldpool.engine.retry import RetryPolicy
from shieldpool.errors import (
    ConcurrentSpendDetected,
    LedgerError,
    ProofGenerationFailed,
    ProofTimeout,
    SpendCancelled,
    StaleRootDetected,
    StateReconciliationError,
    SubmissionRejected,
)
from shieldpool.relayer.failover import RelayReceipt

logger = logging.getLogger("shieldpool.executor")

ProgressCallback = Callable[[ProgressEvent], None]


class Relay(Protocol):
    def submit(self, payload: dict[str, Any]) -> RelayReceipt: ...


@dataclass(frozen=True)
class PipelineStep:
    """
    One circuit invocation: consume `inputs`, append `outputs`.

    Attributes:
        action: consolidate or spend (reported in progress events).
        circuit: The circuit the prover runs.
        inputs: Notes to consume; resolved against the store at execution time.
        outputs: Fresh notes whose commitments the ledger appends, in order.
        public_amount: Amount leaving the pool (withdrawals only).
        recipient: Public destination of a withdrawal.
    """
    action: StepAction
    circuit: CircuitId
    inputs: tuple[Note, ...]
    outputs: tuple[Note, ...]
    public_amount: int = 0
    recipient: str | None = None

    @property
    def nullifiers(self) -> list[str]:
        return [n.nullifier for n in self.inputs]

    @classmethod
    def from_batch(cls, batch: ConsolidationBatch) -> PipelineStep:
        return cls(
            action=StepAction.CONSOLIDATE,
            circuit=CircuitId.CONSOLIDATE,
            inputs=batch.inputs,
            outputs=(batch.output,),
        )


@dataclass
class StepOutcome:
    """Result of one confirmed step."""
    step: PipelineStep
    confirmation: Confirmed
    outputs: list[Note] = field(default_factory=list)
    proof_attempts: int = 0
    stale_root_retries: int = 0


class StagedExecutor:
    """
    Usage:
        executor = StagedExecutor(state, prover, ledger, relayers)
        outcome = executor.run_step(step, step_index=1, step_count=3, owner="alice")
    """

    def __init__(
        self,
        state: WalletState,
        prover: Prover,
        ledger: Ledger,
        relay: Relay,
        proof_retry: RetryPolicy | None = None,
        max_stale_root_retries: int = 3,
    ) -> None:
        self.state = state
        self.prover = prover
        self.ledger = ledger
        self.relay = relay
        self.proof_retry = proof_retry or RetryPolicy()
        self.max_stale_root_retries = max_stale_root_retries

    def run_step(
        self,
        step: PipelineStep,
        step_index: int,
        step_count: int,
        owner: str,
        on_progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
        completed_steps: int = 0,
    ) -> StepOutcome:
        """
        Prove, submit and confirm one step.

        Raises:
            ConcurrentSpendDetected: An input nullifier was published elsewhere.
            ProofGenerationFailed: Proof retries exhausted.
            InvalidWitness: The prover rejected the witness.
            StaleRootDetected: The root kept moving past max_stale_root_retries.
            SpendCancelled: `cancel` was set before submission.
            SubmissionRejected: The ledger refused the step for another reason.
            AllEndpointsFailed: No relayer accepted the submission.
        """
        label = f"step {step_index}/{step_count} ({step.action.value})"

        def emit(stage: ProgressStage) -> None:
            if on_progress is not None:
                on_progress(ProgressEvent(
                    step_index=step_index,
                    step_count=step_count,
                    stage=stage,
                    action=step.action,
                    batch_size=len(step.inputs),
                ))

        self._check_cancel(cancel, completed_steps)
        self._prefilter(step)

        pending: PendingStep | None = None
        local_root = ledger_root = ""
        for stale_retries in range(self.max_stale_root_retries + 1):
            if stale_retries:
                logger.warning(f"{label}: ledger root moved, re-proving (retry {stale_retries})")
            self._sync_if_stale()
            witness, local_root = self._witness(step)

            emit(ProgressStage.PROVING)
            attempts = 0

            def request() -> ProofResult:
                nonlocal attempts
                attempts += 1
                return self.prover.request_proof(step.circuit, witness)

            proof = self.proof_retry.run(
                request,
                retry_on=(ProofTimeout,),
                on_exhausted=lambda n, e: ProofGenerationFailed(step.circuit.value, n, e),
                label=f"{label} proof",
            )

            ledger_root = self.ledger.current_root()
            if ledger_root != local_root:
                continue

            self._check_cancel(cancel, completed_steps)
            if pending is None:
                pending = self.state.record_pending(step.nullifiers, list(step.outputs), keep_owner=owner)
            emit(ProgressStage.SUBMITTING)
            verdict = self._submit(step, proof, local_root, label)

            if isinstance(verdict, Rejected):
                if verdict.stale_root:
                    ledger_root = self.ledger.current_root()
                    continue
                if verdict.nullifier_spent:
                    landed = self.state.resolve_pending(self.ledger).get(pending.step_id)
                    if landed:
                        # an earlier relay attempt of this same step was accepted
                        confirmation = Confirmed(new_leaf_indices=[n.leaf_index for n in landed])
                        logger.info(
                            f"{label} was already accepted by the ledger at leaves {confirmation.new_leaf_indices}"
                        )
                        emit(ProgressStage.CONFIRMED)
                        return StepOutcome(
                            step=step,
                            confirmation=confirmation,
                            outputs=landed,
                            proof_attempts=attempts,
                            stale_root_retries=stale_retries,
                        )
                    published = verdict.nullifiers or sorted(self.ledger.spent_nullifiers(step.nullifiers))
                    self.state.record_spent_nullifiers(published)
                    raise ConcurrentSpendDetected(published)
                raise SubmissionRejected(verdict.reason)

            outputs = self.state.apply_confirmed_step(
                step.nullifiers,
                list(step.outputs),
                verdict,
                ledger=self.ledger,
                keep_owner=owner,
                pending_id=pending.step_id,
            )
            logger.info(
                f"{label} confirmed at slot {verdict.slot}: "
                f"{len(step.inputs)} in, leaves {verdict.new_leaf_indices}"
            )
            emit(ProgressStage.CONFIRMED)
            return StepOutcome(
                step=step,
                confirmation=verdict,
                outputs=outputs,
                proof_attempts=attempts,
                stale_root_retries=stale_retries,
            )

        raise StaleRootDetected(local_root, ledger_root)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _prefilter(self, step: PipelineStep) -> None:
        known = [nf for nf in step.nullifiers if nf in self.state.nullifiers]
        unknown = [nf for nf in step.nullifiers if nf not in self.state.nullifiers]
        published = known + sorted(self.ledger.spent_nullifiers(unknown))
        if published:
            self.state.record_spent_nullifiers(published)
            raise ConcurrentSpendDetected(published)

    def _sync_if_stale(self) -> None:
        if self.state.mirror.root() != self.ledger.current_root():
            self.state.sync_with_ledger(self.ledger)

    def _witness(self, step: PipelineStep) -> tuple[dict[str, Any], str]:
        with self.state.lock:
            root = self.state.mirror.root()
            inputs = []
            for planned in step.inputs:
                note = self.state.notes.get(planned.nullifier)
                if note is None or note.leaf_index is None:
                    raise StateReconciliationError(
                        f"Input note {planned.short()} is not confirmed in the local store"
                    )
                path = self.state.mirror.auth_path(note.leaf_index)
                if path.leaf != note.commitment:
                    raise StateReconciliationError(
                        f"Mirror leaf {note.leaf_index} does not hold input {note.short()}"
                    )
                inputs.append({
                    "secret": str(note.secret),
                    "amount": str(note.amount),
                    "blinding": str(note.blinding),
                    "rho": str(note.rho),
                    "nullifier": note.nullifier,
                    "merklePath": path.to_dict(),
                })

        witness = {
            "root": root,
            "tokenKind": step.inputs[0].token_kind.value,
            "inputs": inputs,
            "outputs": [
                {
                    "secret": str(n.secret),
                    "amount": str(n.amount),
                    "blinding": str(n.blinding),
                    "commitment": n.commitment,
                }
                for n in step.outputs
            ],
            "publicAmount": str(step.public_amount),
            "recipient": step.recipient,
        }
        return witness, root

    def _submit(self, step: PipelineStep, proof: ProofResult, root: str, label: str) -> Confirmed | Rejected:
        payload = {
            "circuit_id": step.circuit.value,
            "proof": proof.proof_bytes,
            "public_inputs": {
                "root": root,
                "nullifiers": step.nullifiers,
                "output_commitments": [n.commitment for n in step.outputs],
                "public_amount": step.public_amount,
                "recipient": step.recipient,
                "signals": list(proof.public_signals),
            },
        }
        try:
            receipt = self.relay.submit(payload)
        except SubmissionRejected as e:
            return Rejected(reason=e.reason)
        try:
            return self.ledger.confirmation(receipt.confirmation_handle)
        except LedgerError:
            logger.warning(
                f"{label}: no verdict for relayed submission {receipt.confirmation_handle}; "
                f"its outputs stay pending until the ledger is checked again"
            )
            raise

    @staticmethod
    def _check_cancel(cancel: threading.Event | None, completed_steps: int) -> None:
        if cancel is not None and cancel.is_set():
            raise SpendCancelled(completed_steps)
