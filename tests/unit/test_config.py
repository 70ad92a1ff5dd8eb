"""
Unit tests for EngineConfig, RetryPolicy and SpendLockRegistry.
"""

import pytest

from shieldpool.config import EngineConfig
from shieldpool.core.models import TokenKind
from shieldpool.engine.locks import SpendLockRegistry
from shieldpool.engine.retry import RetryPolicy
from shieldpool.errors import ProofGenerationFailed, ProofTimeout, SpendInProgress


# --- EngineConfig ---

def test_defaults():
    config = EngineConfig()
    assert config.tree_height == 20
    assert config.max_spend_inputs == 4
    assert config.max_consolidation_inputs == 8
    assert config.relay_attempts == 3
    assert config.failure_threshold == 2
    assert config.health_interval == 30.0


def test_from_env(monkeypatch):
    monkeypatch.setenv("SHIELDPOOL_RELAYER_ENDPOINTS", "http://a, http://b,")
    monkeypatch.setenv("SHIELDPOOL_MAX_SPEND_INPUTS", "2")
    monkeypatch.setenv("SHIELDPOOL_PROOF_TIMEOUT", "45.5")
    monkeypatch.setenv("SHIELDPOOL_DATA_DIR", "/tmp/sp")
    config = EngineConfig.from_env()
    assert config.relayer_endpoints == ["http://a", "http://b"]
    assert config.max_spend_inputs == 2
    assert config.proof_timeout == 45.5
    assert config.data_dir == "/tmp/sp"
    assert config.max_consolidation_inputs == 8
    assert config.store_passphrase is None


def test_store_passphrase_from_env_not_in_repr(monkeypatch):
    monkeypatch.setenv("SHIELDPOOL_STORE_PASSPHRASE", "hunter2")
    config = EngineConfig.from_env()
    assert config.store_passphrase == "hunter2"
    assert "hunter2" not in repr(config)


def test_from_env_bad_number(monkeypatch):
    monkeypatch.setenv("SHIELDPOOL_MAX_ROUNDS", "many")
    with pytest.raises(ValueError, match="SHIELDPOOL_MAX_ROUNDS"):
        EngineConfig.from_env()


def test_consolidation_limit_must_merge():
    with pytest.raises(ValueError):
        EngineConfig(max_consolidation_inputs=1)


# --- RetryPolicy ---

class TestRetryPolicy:

    @pytest.mark.parametrize("attempts", [0, -1])
    def test_needs_at_least_one_attempt(self, attempts):
        with pytest.raises(ValueError):
            RetryPolicy(attempts=attempts)

    def test_delays_double_and_cap(self):
        policy = RetryPolicy(attempts=6, base=1.0, cap=5.0)
        assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_returns_after_transient_failures(self):
        sleeps = []
        outcomes = [ProofTimeout("t"), "ok"]

        def fn():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        policy = RetryPolicy(attempts=3, base=0.1, sleep=sleeps.append)
        assert policy.run(fn, retry_on=(ProofTimeout,)) == "ok"
        assert sleeps == [0.1]

    def test_exhausted_builds_error(self):
        def fn():
            raise ProofTimeout("t")

        policy = RetryPolicy(attempts=2, base=0, sleep=lambda s: None)
        with pytest.raises(ProofGenerationFailed) as exc:
            policy.run(fn, retry_on=(ProofTimeout,), on_exhausted=lambda n, e: ProofGenerationFailed("c", n, e))
        assert exc.value.attempts == 2
        assert isinstance(exc.value.last_error, ProofTimeout)

    def test_other_errors_propagate(self):
        calls = []

        def fn():
            calls.append(1)
            raise KeyError("x")

        with pytest.raises(KeyError):
            RetryPolicy(sleep=lambda s: None).run(fn, retry_on=(ProofTimeout,))
        assert len(calls) == 1


# --- SpendLockRegistry ---

def test_lock_is_per_owner_and_token():
    locks = SpendLockRegistry()
    with locks.hold("alice", TokenKind.SOL):
        assert locks.is_held("alice", TokenKind.SOL)
        with pytest.raises(SpendInProgress):
            with locks.hold("alice", TokenKind.SOL):
                pass
        with locks.hold("alice", TokenKind.NOC):
            pass
        with locks.hold("bob", TokenKind.SOL):
            pass
    assert not locks.is_held("alice", TokenKind.SOL)
