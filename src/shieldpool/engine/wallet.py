"""
ShieldedWallet — the caller-facing entry point of the engine.

Usage:
    wallet = ShieldedWallet.from_config(EngineConfig.from_env())
    wallet.record_deposit(note, leaf_index=42)
    result = wallet.spend("alice", TokenKind.SOL, 7, recipient="bob")
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from shieldpool.config import EngineConfig
from shieldpool.core.ledger import Ledger, LedgerClient
from shieldpool.core.models import (
    CircuitId,
    Infeasible,
    Note,
    ProgressEvent,
    SpendPlan,
    SpendResult,
    StepAction,
    TokenKind,
    create_note,
)
from shieldpool.core.prover import Prover, ProverClient
from shieldpool.core.state import WalletState
from shieldpool.engine.consolidation import ConsolidationEngine
from shieldpool.engine.executor import PipelineStep, ProgressCallback, Relay, StagedExecutor
from shieldpool.engine.locks import SpendLockRegistry
from shieldpool.engine.planner import SpendPlanner
from shieldpool.engine.retry import RetryPolicy
from shieldpool.errors import ConsolidationExhausted
from shieldpool.relayer.failover import RelayerFailoverManager

logger = logging.getLogger("shieldpool.wallet")


class ShieldedWallet:
    """
    Plans, consolidates and executes spends over local shielded notes.

    Args:
        state: Note Store, Merkle Mirror and Nullifier Mirror.
        prover: Proving service client.
        ledger: Ledger client (authoritative tree and nullifier set).
        relay: Relayer pool used for submissions.
        config: Limits and timeouts; defaults apply if omitted.
        proof_retry: Override of the proof retry policy (tests inject a no-op sleep).
    """

    def __init__(
        self,
        state: WalletState,
        prover: Prover,
        ledger: Ledger,
        relay: Relay,
        config: EngineConfig | None = None,
        proof_retry: RetryPolicy | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.state = state
        self.prover = prover
        self.ledger = ledger
        self.relay = relay
        self.locks = SpendLockRegistry()
        self.planner = SpendPlanner(state.notes, fee_per_step=self.config.fee_per_step)
        self.consolidation = ConsolidationEngine(state.notes, max_rounds=self.config.max_rounds)
        self.executor = StagedExecutor(
            state,
            prover,
            ledger,
            relay,
            proof_retry=proof_retry or RetryPolicy(
                attempts=self.config.proof_retries,
                base=self.config.backoff_base,
                cap=self.config.backoff_cap,
            ),
            max_stale_root_retries=self.config.max_stale_root_retries,
        )

    @classmethod
    def from_config(cls, config: EngineConfig) -> ShieldedWallet:
        """Build a wallet with HTTP clients for the prover, ledger and relayers."""
        if config.data_dir:
            state = WalletState.open(
                config.data_dir,
                tree_height=config.tree_height,
                passphrase=config.store_passphrase,
            )
        else:
            state = WalletState.in_memory(tree_height=config.tree_height)
        relay = RelayerFailoverManager(
            config.relayer_endpoints,
            submit_timeout=config.relay_timeout,
            health_timeout=config.health_timeout,
            health_interval=config.health_interval,
            max_attempts=config.relay_attempts,
            failure_threshold=config.failure_threshold,
        )
        return cls(
            state=state,
            prover=ProverClient(config.prover_url, timeout=config.proof_timeout),
            ledger=LedgerClient(config.ledger_url),
            relay=relay,
            config=config,
        )

    # ------------------------------------------------------------------
    # Spending
    # ------------------------------------------------------------------

    def spend(
        self,
        owner: str,
        token_kind: TokenKind,
        amount: int,
        max_spend_inputs: int | None = None,
        max_consolidation_inputs: int | None = None,
        recipient: str | None = None,
        withdraw_to: str | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> SpendResult:
        """
        Spend `amount` of `token_kind`, consolidating first if needed.

        With `withdraw_to` the amount leaves the pool to that public address
        (withdraw-spend circuit). Otherwise it becomes a new shielded note for
        `recipient` (transfer-spend circuit; defaults to the owner).

        Raises:
            ValueError: If amount or an input limit is out of range, or both
                recipient and withdraw_to are set.
            SpendInProgress: If a spend for (owner, token_kind) is already running.
            ConsolidationExhausted: If consolidation cannot make the spend feasible.
            ShieldPoolError: Any step failure; confirmed steps stay recorded.
        """
        if amount <= 0:
            raise ValueError(f"Spend amount must be positive, got {amount}")
        if recipient is not None and withdraw_to is not None:
            raise ValueError("Pass either recipient or withdraw_to, not both")
        token_kind = TokenKind(token_kind)
        spend_limit = self.config.max_spend_inputs if max_spend_inputs is None else max_spend_inputs
        batch_limit = (
            self.config.max_consolidation_inputs if max_consolidation_inputs is None else max_consolidation_inputs
        )
        if spend_limit < 1:
            raise ValueError(f"max_spend_inputs must be >= 1, got {spend_limit}")
        if batch_limit < 2:
            raise ValueError(f"max_consolidation_inputs must be >= 2, got {batch_limit}")

        with self.locks.hold(owner, token_kind):
            events: list[ProgressEvent] = []

            def progress(event: ProgressEvent) -> None:
                events.append(event)
                if on_progress is not None:
                    on_progress(event)

            self.state.sync_with_ledger(self.ledger)
            self.recover_pending()

            steps: list[PipelineStep] = []
            rounds = 0
            plan = self.planner.plan(owner, token_kind, amount, spend_limit)
            if isinstance(plan, Infeasible):
                logger.info(
                    f"Spend of {amount} {token_kind.value} needs consolidation "
                    f"({plan.note_count} notes, limit {spend_limit})"
                )
                schedule = self.consolidation.plan(owner, token_kind, amount, spend_limit, batch_limit)
                steps = [PipelineStep.from_batch(batch) for batch in schedule.batches]
                rounds = schedule.round_count

            total_steps = len(steps) + 1
            for index, step in enumerate(steps, start=1):
                self.executor.run_step(
                    step, index, total_steps, owner,
                    on_progress=progress, cancel=cancel, completed_steps=index - 1,
                )

            plan = self.planner.plan(owner, token_kind, amount, spend_limit)
            if isinstance(plan, Infeasible):
                raise ConsolidationExhausted(
                    f"spend of {amount} still infeasible after consolidation", plan.note_count
                )

            step, payment, change = self._spend_step(plan, owner, token_kind, recipient, withdraw_to)
            outcome = self.executor.run_step(
                step, total_steps, total_steps, owner,
                on_progress=progress, cancel=cancel, completed_steps=total_steps - 1,
            )
            placed = {n.nullifier: n for n in outcome.outputs}
            change_note = placed[change.nullifier] if change else None
            final_note = placed[payment.nullifier] if payment else change_note

            logger.info(
                f"Spent {amount} {token_kind.value} for {owner} in {total_steps} steps "
                f"({rounds} consolidation rounds)"
            )
            return SpendResult(
                plan=plan,
                total_steps=total_steps,
                final_note=final_note,
                change_note=change_note,
                consolidation_rounds=rounds,
                fee_estimate=self.planner.estimate_fee(total_steps),
                events=events,
            )

    @staticmethod
    def _spend_step(
        plan: SpendPlan,
        owner: str,
        token_kind: TokenKind,
        recipient: str | None,
        withdraw_to: str | None,
    ) -> tuple[PipelineStep, Note | None, Note | None]:
        change = create_note(owner, token_kind, plan.change_amount) if plan.split else None
        if withdraw_to is not None:
            step = PipelineStep(
                action=StepAction.SPEND,
                circuit=CircuitId.WITHDRAW_SPEND,
                inputs=plan.inputs,
                outputs=(change,) if change else (),
                public_amount=plan.recipient_amount,
                recipient=withdraw_to,
            )
            return step, None, change

        payment = create_note(recipient or owner, token_kind, plan.recipient_amount)
        step = PipelineStep(
            action=StepAction.SPEND,
            circuit=CircuitId.TRANSFER_SPEND,
            inputs=plan.inputs,
            outputs=(payment, change) if change else (payment,),
        )
        return step, payment, change

    # ------------------------------------------------------------------
    # Deposits & queries
    # ------------------------------------------------------------------

    def record_deposit(self, note: Note, leaf_index: int) -> Note:
        """Store a deposited note once the ledger holds its commitment at `leaf_index`."""
        stored = self.state.add_confirmed_note(note, leaf_index, self.ledger)
        logger.info(f"Recorded deposit {stored.short()} at leaf {leaf_index}")
        return stored

    def recover_pending(self) -> list[Note]:
        """
        Settle submissions whose ledger verdict was lost (a dropped
        confirmation, a relay that timed out after forwarding).

        Returns:
            Output notes recovered into local state, including payment notes
            for other recipients, which the caller must still deliver.
        """
        recovered = self.state.resolve_pending(self.ledger)
        notes = [note for placed in recovered.values() for note in placed]
        if notes:
            logger.info(f"Recovered {len(notes)} output notes from {len(recovered)} unconfirmed submissions")
        return notes

    def balance(self, owner: str, token_kind: TokenKind) -> int:
        return self.state.balance(owner, token_kind)

    def unspent_notes(self, owner: str, token_kind: TokenKind) -> list[Note]:
        with self.state.lock:
            return list(self.state.notes.unspent_notes(owner, token_kind))

    def relayer_status(self) -> list[dict[str, Any]]:
        status = getattr(self.relay, "status", None)
        return status() if callable(status) else []

    def close(self) -> None:
        for client in (self.prover, self.ledger, self.relay):
            close = getattr(client, "close", None)
            if callable(close):
                close()
