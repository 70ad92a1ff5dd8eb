"""
End-to-end tests for ShieldedWallet.spend and the Staged Executor.

The ledger and prover are in-memory fakes; relay submissions go through a
real RelayerFailoverManager on an httpx.MockTransport (see conftest.py).
"""

import threading

import pytest

from shieldpool.core.models import CircuitId, ProgressStage, StepAction, TokenKind, create_note
from shieldpool.errors import (
    AllEndpointsFailed,
    ConcurrentSpendDetected,
    ConsolidationExhausted,
    InvalidWitness,
    LedgerError,
    ProofGenerationFailed,
    ProofTimeout,
    SpendCancelled,
    SpendInProgress,
    StaleRootDetected,
    StateReconciliationError,
    SubmissionRejected,
)

from conftest import FORWARD_THEN_TIMEOUT

SOL = TokenKind.SOL


class TestSimpleSpend:

    def test_seven_from_a_single_ten(self, wallet, fund, ledger):
        fund("alice", SOL, [10])
        result = wallet.spend("alice", SOL, 7, recipient="bob")

        assert result.total_steps == 1
        assert result.consolidation_rounds == 0
        assert result.final_note.amount == 7
        assert result.final_note.owner == "bob"
        assert result.final_note.leaf_index is not None
        assert result.change_note.amount == 3
        assert wallet.balance("alice", SOL) == 3
        assert result.final_note.nullifier not in wallet.state.notes
        assert wallet.state.mirror.root() == ledger.current_root()

    def test_transfer_to_self_keeps_payment_note(self, wallet, fund):
        fund("alice", SOL, [10])
        result = wallet.spend("alice", SOL, 10)
        assert result.change_note is None
        assert result.final_note.owner == "alice"
        assert wallet.balance("alice", SOL) == 10

    def test_progress_events_in_stage_order(self, wallet, fund):
        fund("alice", SOL, [5])
        seen = []
        result = wallet.spend("alice", SOL, 5, recipient="bob", on_progress=seen.append)
        stages = [e.stage for e in seen]
        assert stages == [ProgressStage.PROVING, ProgressStage.SUBMITTING, ProgressStage.CONFIRMED]
        assert all(e.action == StepAction.SPEND and e.step_count == 1 for e in seen)
        assert result.events == seen

    def test_value_conservation_and_unique_nullifiers(self, wallet, fund, ledger):
        fund("alice", SOL, [6, 4, 3])
        result = wallet.spend("alice", SOL, 9, recipient="bob")
        assert result.plan.input_total == result.final_note.amount + result.change_note.amount
        assert len(ledger.spent) == len(set(ledger.spent)) == 2
        assert wallet.state.nullifiers.to_list() == ledger.spent

    def test_fee_estimate_reported(self, wallet, fund):
        wallet.planner.fee_per_step = 100
        fund("alice", SOL, [1] * 9)
        result = wallet.spend("alice", SOL, 9)
        assert result.fee_estimate == 200


class TestWithdraw:

    def test_withdraw_with_change(self, wallet, fund, prover):
        fund("alice", SOL, [10])
        result = wallet.spend("alice", SOL, 4, withdraw_to="PubKey111")
        assert prover.calls[-1][0] == CircuitId.WITHDRAW_SPEND
        assert prover.calls[-1][1]["recipient"] == "PubKey111"
        assert result.final_note is result.change_note
        assert result.final_note.amount == 6
        assert wallet.balance("alice", SOL) == 6

    def test_exact_withdraw_has_no_final_note(self, wallet, fund):
        fund("alice", SOL, [10])
        result = wallet.spend("alice", SOL, 10, withdraw_to="PubKey111")
        assert result.final_note is None
        assert wallet.balance("alice", SOL) == 0

    def test_recipient_and_withdraw_are_exclusive(self, wallet, fund):
        fund("alice", SOL, [10])
        with pytest.raises(ValueError):
            wallet.spend("alice", SOL, 1, recipient="bob", withdraw_to="PubKey111")


class TestConsolidatingSpend:

    def test_nine_unit_notes(self, wallet, fund, prover):
        fund("alice", SOL, [1] * 9)
        seen = []
        result = wallet.spend("alice", SOL, 9, on_progress=seen.append)

        assert result.total_steps == 2
        assert result.consolidation_rounds == 1
        assert [c for c, _ in prover.calls] == [CircuitId.CONSOLIDATE, CircuitId.TRANSFER_SPEND]
        assert [e.step_index for e in seen] == [1, 1, 1, 2, 2, 2]
        assert seen[0].action == StepAction.CONSOLIDATE
        assert seen[0].batch_size == 8
        assert sorted(n.amount for n in result.plan.inputs) == [1, 8]
        assert wallet.balance("alice", SOL) == 9
        assert len(wallet.state.nullifiers) == 10

    def test_insufficient_balance_raises_exhausted(self, wallet, fund, prover):
        fund("alice", SOL, [1] * 9)
        with pytest.raises(ConsolidationExhausted):
            wallet.spend("alice", SOL, 10)
        assert prover.calls == []

    def test_resume_after_failed_final_spend(self, wallet, fund, prover):
        fund("alice", SOL, [1] * 9)
        prover.script = [None, InvalidWitness("bad witness")]
        with pytest.raises(InvalidWitness):
            wallet.spend("alice", SOL, 9, recipient="bob")

        # The confirmed consolidation survives the failure
        assert sorted(n.amount for n in wallet.unspent_notes("alice", SOL)) == [1, 8]

        result = wallet.spend("alice", SOL, 9, recipient="bob")
        assert result.total_steps == 1
        assert wallet.balance("alice", SOL) == 0

    def test_two_rounds_for_forty_unit_notes(self, wallet, fund, prover):
        fund("alice", SOL, [1] * 40)
        seen = []
        result = wallet.spend("alice", SOL, 40, on_progress=seen.append)

        assert result.consolidation_rounds == 2
        assert result.total_steps == 7
        assert [c for c, _ in prover.calls] == [CircuitId.CONSOLIDATE] * 6 + [CircuitId.TRANSFER_SPEND]
        assert [e.batch_size for e in seen if e.stage == ProgressStage.PROVING] == [8, 8, 8, 8, 8, 5, 1]
        assert result.final_note.amount == 40
        assert wallet.balance("alice", SOL) == 40
        assert len(wallet.unspent_notes("alice", SOL)) == 1

    def test_resume_after_relays_exhausted(self, wallet, fund, relayers, relay_statuses):
        fund("alice", SOL, [1] * 9)

        def on_progress(event):
            if event.stage == ProgressStage.CONFIRMED and event.action == StepAction.CONSOLIDATE:
                relay_statuses.update({"relay-a": [503] * 3, "relay-b": [503] * 3})

        with pytest.raises(AllEndpointsFailed) as exc:
            wallet.spend("alice", SOL, 9, on_progress=on_progress)
        assert exc.value.attempts == 3
        assert sorted(n.amount for n in wallet.unspent_notes("alice", SOL)) == [1, 8]
        assert len(wallet.state.pending_steps()) == 1

        relay_statuses.clear()
        result = wallet.spend("alice", SOL, 9)
        assert result.total_steps == 1
        assert wallet.balance("alice", SOL) == 9

        # the abandoned submission is dropped once its inputs are consumed
        assert wallet.recover_pending() == []
        assert wallet.state.pending_steps() == []

    def test_explicit_zero_limit_refused(self, wallet, fund, prover):
        fund("alice", SOL, [1] * 9)
        with pytest.raises(ValueError):
            wallet.spend("alice", SOL, 9, max_spend_inputs=0)
        with pytest.raises(ValueError):
            wallet.spend("alice", SOL, 9, max_consolidation_inputs=0)
        assert prover.calls == []


class TestStaleRoot:

    def test_root_moves_during_proving(self, wallet, fund, prover, ledger):
        fund("alice", SOL, [10])
        prover.on_prove = lambda: ledger.foreign_activity(1)
        result = wallet.spend("alice", SOL, 7, recipient="bob")
        assert len(prover.calls) == 2
        assert len(ledger.processed) == 1
        assert result.final_note.leaf_index == 2
        assert wallet.state.mirror.root() == ledger.current_root()

    def test_stale_root_rejection_reproves(self, wallet, fund, prover, ledger):
        fund("alice", SOL, [10])
        ledger.before_process = lambda: ledger.foreign_activity(1)
        wallet.spend("alice", SOL, 7, recipient="bob")
        assert len(prover.calls) == 2
        assert len(ledger.submissions) == 2
        assert wallet.balance("alice", SOL) == 3

    def test_persistent_stale_root_gives_up(self, wallet, fund, ledger):
        fund("alice", SOL, [10])
        ledger.forced_rejections = ["stale_root"] * 10
        with pytest.raises(StaleRootDetected):
            wallet.spend("alice", SOL, 7, recipient="bob")
        assert wallet.balance("alice", SOL) == 10


class TestConcurrentSpend:

    def test_published_nullifier_caught_before_proving(self, wallet, fund, prover, ledger):
        (note,) = fund("alice", SOL, [10])
        ledger.publish_nullifier(note.nullifier)
        with pytest.raises(ConcurrentSpendDetected) as exc:
            wallet.spend("alice", SOL, 7, recipient="bob")
        assert exc.value.nullifiers == [note.nullifier]
        assert prover.calls == []
        assert wallet.balance("alice", SOL) == 0
        assert note.nullifier in wallet.state.nullifiers

    def test_nullifier_spent_rejection(self, wallet, fund, ledger):
        (note,) = fund("alice", SOL, [10])
        ledger.before_process = lambda: ledger.publish_nullifier(note.nullifier)
        with pytest.raises(ConcurrentSpendDetected):
            wallet.spend("alice", SOL, 7, recipient="bob")
        assert wallet.state.notes.get(note.nullifier).spent

    def test_other_rejection_is_fatal(self, wallet, fund, ledger):
        fund("alice", SOL, [10])
        ledger.forced_rejections = ["invalid_proof"]
        with pytest.raises(SubmissionRejected) as exc:
            wallet.spend("alice", SOL, 7, recipient="bob")
        assert exc.value.reason == "invalid_proof"
        assert wallet.balance("alice", SOL) == 10


class TestProofRetries:

    def test_timeouts_retried_with_backoff(self, wallet, fund, prover, sleeps):
        fund("alice", SOL, [10])
        prover.script = [ProofTimeout("slow"), ProofTimeout("slow")]
        wallet.spend("alice", SOL, 7, recipient="bob")
        assert len(prover.calls) == 3
        assert sleeps == [0.5, 1.0]

    def test_retries_exhausted(self, wallet, fund, prover, ledger, sleeps):
        fund("alice", SOL, [10])
        prover.script = [ProofTimeout("slow")] * 3
        with pytest.raises(ProofGenerationFailed) as exc:
            wallet.spend("alice", SOL, 7, recipient="bob")
        assert exc.value.attempts == 3
        assert ledger.submissions == {}
        assert wallet.balance("alice", SOL) == 10

    def test_invalid_witness_not_retried(self, wallet, fund, prover, sleeps):
        fund("alice", SOL, [10])
        prover.script = [InvalidWitness("bad")]
        with pytest.raises(InvalidWitness):
            wallet.spend("alice", SOL, 7, recipient="bob")
        assert len(prover.calls) == 1
        assert sleeps == []


class TestCancellationAndLocking:

    def test_cancel_before_start(self, wallet, fund, prover):
        fund("alice", SOL, [10])
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SpendCancelled) as exc:
            wallet.spend("alice", SOL, 7, cancel=cancel)
        assert exc.value.completed_steps == 0
        assert prover.calls == []

    def test_cancel_between_steps_keeps_confirmed_work(self, wallet, fund):
        fund("alice", SOL, [1] * 9)
        cancel = threading.Event()

        def on_progress(event):
            if event.stage == ProgressStage.CONFIRMED:
                cancel.set()

        with pytest.raises(SpendCancelled) as exc:
            wallet.spend("alice", SOL, 9, on_progress=on_progress, cancel=cancel)
        assert exc.value.completed_steps == 1
        assert sorted(n.amount for n in wallet.unspent_notes("alice", SOL)) == [1, 8]

    def test_second_spend_for_same_pair_refused(self, wallet, fund):
        fund("alice", SOL, [10])
        with wallet.locks.hold("alice", SOL):
            with pytest.raises(SpendInProgress):
                wallet.spend("alice", SOL, 1)

    def test_other_token_not_blocked(self, wallet, fund):
        fund("alice", TokenKind.NOC, [5])
        with wallet.locks.hold("alice", SOL):
            result = wallet.spend("alice", TokenKind.NOC, 5)
        assert result.final_note.token_kind == TokenKind.NOC

    def test_lock_released_after_failure(self, wallet, fund):
        fund("alice", SOL, [2])
        with pytest.raises(ConsolidationExhausted):
            wallet.spend("alice", SOL, 5)
        assert not wallet.locks.is_held("alice", SOL)


class TestDeposits:

    def test_record_deposit_is_idempotent(self, wallet, fund):
        (note,) = fund("alice", SOL, [10])
        wallet.record_deposit(note, note.leaf_index)
        assert wallet.balance("alice", SOL) == 10

    def test_record_deposit_wrong_leaf(self, wallet, ledger):
        note = create_note("alice", SOL, 10)
        ledger.foreign_activity(1)
        with pytest.raises(StateReconciliationError):
            wallet.record_deposit(note, 0)


def lose_first_confirmation(ledger):
    original = ledger.confirmation
    lost = []

    def confirmation(handle):
        if not lost:
            lost.append(handle)
            raise LedgerError(f"Submission {handle} still pending after 90.0s")
        return original(handle)

    ledger.confirmation = confirmation
    return lost


class TestLostVerdicts:

    def test_lost_confirmation_recovered(self, wallet, fund, ledger):
        fund("alice", SOL, [10])
        lose_first_confirmation(ledger)
        with pytest.raises(LedgerError):
            wallet.spend("alice", SOL, 7, recipient="bob")
        assert len(ledger.processed) == 1
        assert len(wallet.state.pending_steps()) == 1

        recovered = wallet.recover_pending()
        assert sorted((n.owner, n.amount) for n in recovered) == [("alice", 3), ("bob", 7)]
        assert all(n.leaf_index is not None for n in recovered)
        assert wallet.balance("alice", SOL) == 3
        assert wallet.state.pending_steps() == []
        assert wallet.state.mirror.root() == ledger.current_root()

    def test_next_spend_settles_lost_step_first(self, wallet, fund, ledger, prover):
        fund("alice", SOL, [10])
        lose_first_confirmation(ledger)
        with pytest.raises(LedgerError):
            wallet.spend("alice", SOL, 7, recipient="bob")

        result = wallet.spend("alice", SOL, 3, recipient="carol")
        assert result.total_steps == 1
        assert result.plan.inputs[0].amount == 3
        assert wallet.balance("alice", SOL) == 0
        assert len(ledger.processed) == 2
        assert len(prover.calls) == 2

    def test_relay_timeout_after_forwarding(self, wallet, fund, ledger, prover, relay_statuses):
        fund("alice", SOL, [10])
        relay_statuses["relay-a"] = [FORWARD_THEN_TIMEOUT]

        result = wallet.spend("alice", SOL, 7, recipient="bob")

        # the first copy landed; the resubmissions are refused as stale, then as double spends
        assert len(ledger.processed) == 1
        assert len(ledger.submissions) == 3
        assert len(prover.calls) == 2
        assert result.final_note.owner == "bob"
        assert result.final_note.leaf_index == 1
        assert wallet.balance("alice", SOL) == 3
        assert wallet.state.pending_steps() == []

    def test_refused_step_leaves_nothing_behind(self, wallet, fund, ledger):
        (note,) = fund("alice", SOL, [10])
        ledger.before_process = lambda: ledger.publish_nullifier(note.nullifier)
        with pytest.raises(ConcurrentSpendDetected):
            wallet.spend("alice", SOL, 7, recipient="bob")
        assert wallet.recover_pending() == []
        assert wallet.state.pending_steps() == []
