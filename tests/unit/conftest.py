"""
Shared fakes for the engine tests: an in-memory ledger, a scriptable
prover, and relay endpoints served through httpx.MockTransport.
"""

import json
import threading

import httpx
import pytest

from shieldpool.config import EngineConfig
from shieldpool.core.ledger import Confirmed, Rejected
from shieldpool.core.models import TokenKind, create_note
from shieldpool.core.prover import ProofResult
from shieldpool.core.state import WalletState
from shieldpool.crypto.merkle import MerkleMirror
from shieldpool.engine.retry import RetryPolicy
from shieldpool.engine.wallet import ShieldedWallet
from shieldpool.relayer.failover import RelayerFailoverManager

TEST_TREE_HEIGHT = 16

# Queued in relay statuses: forward the submission, then time out before answering
FORWARD_THEN_TIMEOUT = "forward-then-timeout"


class FakeLedger:
    """In-memory ledger: authoritative tree + nullifier set."""

    def __init__(self, height=TEST_TREE_HEIGHT):
        self.tree = MerkleMirror(height=height)
        self.spent = []
        self.submissions = {}
        self.forced_rejections = []
        self.before_process = None
        self.processed = []
        self._slot = 0
        self._lock = threading.Lock()

    # Ledger protocol

    def current_root(self):
        return self.tree.root()

    def leaves(self, start=0):
        return self.tree.leaves()[start:]

    def spent_nullifiers(self, nullifiers):
        return set(nullifiers) & set(self.spent)

    def confirmation(self, handle):
        return self.submissions[handle]

    # Test helpers

    def deposit(self, commitment):
        return self.tree.append(commitment)

    def foreign_activity(self, count=1):
        """Someone else's notes land in the tree, moving the root."""
        for _ in range(count):
            self.tree.append(create_note("stranger", TokenKind.SOL, 1).commitment)

    def publish_nullifier(self, nullifier):
        self.spent.append(nullifier)

    def process(self, payload):
        with self._lock:
            if self.before_process is not None:
                hook, self.before_process = self.before_process, None
                hook()
            handle = f"sub-{len(self.submissions)}"
            public = payload["public_inputs"]
            if self.forced_rejections:
                verdict = Rejected(reason=self.forced_rejections.pop(0))
            elif public["root"] != self.tree.root():
                verdict = Rejected(reason="stale_root")
            elif any(nf in self.spent for nf in public["nullifiers"]):
                verdict = Rejected(
                    reason="nullifier_spent",
                    nullifiers=[nf for nf in public["nullifiers"] if nf in self.spent],
                )
            else:
                self.spent.extend(public["nullifiers"])
                indices = [self.tree.append(c) for c in public["output_commitments"]]
                self._slot += 1
                verdict = Confirmed(new_leaf_indices=indices, slot=self._slot, signature=f"sig-{handle}")
                self.processed.append(payload)
            self.submissions[handle] = verdict
            return handle


class FakeProver:
    """Returns a dummy proof; `script` entries that are exceptions are raised in order."""

    def __init__(self):
        self.calls = []
        self.script = []
        self.on_prove = None

    def request_proof(self, circuit_id, witness):
        self.calls.append((circuit_id, witness))
        if self.on_prove is not None:
            hook, self.on_prove = self.on_prove, None
            hook()
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
        return ProofResult(proof_bytes=f"proof-{len(self.calls)}", public_signals=[witness["root"]], prover_ms=5)


def relay_transport(ledger, statuses=None):
    """
    MockTransport for relay endpoints that forwards submissions to `ledger`.

    statuses maps host -> list of HTTP status codes to return before
    forwarding (e.g. {"relay-a": [503, 503]}). FORWARD_THEN_TIMEOUT forwards
    the submission and then raises a read timeout.
    """
    statuses = statuses if statuses is not None else {}

    def handler(request):
        host = request.url.host
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        queued = statuses.get(host)
        if queued:
            status = queued.pop(0)
            if status == FORWARD_THEN_TIMEOUT:
                ledger.process(json.loads(request.content))
                raise httpx.ReadTimeout("relay timed out", request=request)
            return httpx.Response(status, json={"error": "unavailable"})
        handle = ledger.process(json.loads(request.content))
        return httpx.Response(200, json={"signature": f"sig-{handle}", "confirmation_handle": handle})

    return httpx.MockTransport(handler)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def prover():
    return FakeProver()


@pytest.fixture
def relay_statuses():
    """Per-host status codes the relays return before forwarding; tests may fill it."""
    return {}


@pytest.fixture
def relayers(ledger, relay_statuses):
    manager = RelayerFailoverManager(
        ["http://relay-a", "http://relay-b"],
        transport=relay_transport(ledger, relay_statuses),
    )
    yield manager
    manager.close()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def wallet(ledger, prover, relayers, sleeps):
    config = EngineConfig(tree_height=TEST_TREE_HEIGHT, max_spend_inputs=4, max_consolidation_inputs=8)
    state = WalletState.in_memory(tree_height=TEST_TREE_HEIGHT)
    return ShieldedWallet(
        state=state,
        prover=prover,
        ledger=ledger,
        relay=relayers,
        config=config,
        proof_retry=RetryPolicy(attempts=3, base=0.5, cap=4.0, sleep=sleeps.append),
    )


@pytest.fixture
def fund(wallet, ledger):
    """Deposit notes of the given amounts for an owner and record them."""

    def _fund(owner, token_kind, amounts):
        notes = []
        for amount in amounts:
            note = create_note(owner, token_kind, amount)
            index = ledger.deposit(note.commitment)
            notes.append(wallet.record_deposit(note, index))
        return notes

    return _fund
