"""
Engine configuration.

Every limit and timeout the engine uses lives here. Values can be loaded
from `SHIELDPOOL_*` environment variables for the HTTP server.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from shieldpool.crypto.merkle import DEFAULT_TREE_HEIGHT


@dataclass
class EngineConfig:
    """
    Limits, timeouts and service locations for one wallet.

    Args:
        tree_height:              Height of the ledger's commitment tree
        max_spend_inputs:         Input limit of the spend circuits
        max_consolidation_inputs: Input limit of the consolidation circuit
        max_rounds:               Consolidation rounds allowed before giving up
        proof_timeout:            Seconds to wait for one proof
        proof_retries:            Proof attempts per step before failing the step
        backoff_base:             First retry delay in seconds (doubles per attempt)
        backoff_cap:              Upper bound on a single retry delay
        max_stale_root_retries:   Re-proofs allowed when the ledger root moves
        relay_timeout:            Seconds to wait for one relay submission
        relay_attempts:           Total relay attempts per submission
        failure_threshold:        Consecutive failures before a relayer is unhealthy
        health_interval:          Seconds between relayer health checks
        health_timeout:           Timeout of one health check
        fee_per_step:             Estimated fee per staged submission (reported only)
        store_passphrase:         Key material for the encrypted note records (required with data_dir)
    """
    data_dir: str | None = None
    prover_url: str = "http://127.0.0.1:8787"
    ledger_url: str = "http://127.0.0.1:8899"
    relayer_endpoints: list[str] = field(default_factory=list)
    store_passphrase: str | None = field(default=None, repr=False)

    tree_height: int = DEFAULT_TREE_HEIGHT
    max_spend_inputs: int = 4
    max_consolidation_inputs: int = 8
    max_rounds: int = 4

    proof_timeout: float = 120.0
    proof_retries: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    max_stale_root_retries: int = 3

    relay_timeout: float = 60.0
    relay_attempts: int = 3
    failure_threshold: int = 2
    health_interval: float = 30.0
    health_timeout: float = 5.0

    fee_per_step: int = 0

    def __post_init__(self) -> None:
        if self.max_spend_inputs < 1:
            raise ValueError(f"max_spend_inputs must be >= 1, got {self.max_spend_inputs}")
        if self.max_consolidation_inputs < 2:
            raise ValueError(
                f"max_consolidation_inputs must be >= 2, got {self.max_consolidation_inputs}"
            )
        if self.proof_retries < 1 or self.relay_attempts < 1:
            raise ValueError("proof_retries and relay_attempts must be >= 1")

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Build a config from SHIELDPOOL_* environment variables, falling back to defaults."""
        defaults = cls()
        endpoints = os.getenv("SHIELDPOOL_RELAYER_ENDPOINTS", "")
        return cls(
            data_dir=os.getenv("SHIELDPOOL_DATA_DIR", defaults.data_dir),
            store_passphrase=os.getenv("SHIELDPOOL_STORE_PASSPHRASE") or None,
            prover_url=os.getenv("SHIELDPOOL_PROVER_URL", defaults.prover_url),
            ledger_url=os.getenv("SHIELDPOOL_LEDGER_URL", defaults.ledger_url),
            relayer_endpoints=[e.strip() for e in endpoints.split(",") if e.strip()],
            tree_height=_env_int("SHIELDPOOL_TREE_HEIGHT", defaults.tree_height),
            max_spend_inputs=_env_int("SHIELDPOOL_MAX_SPEND_INPUTS", defaults.max_spend_inputs),
            max_consolidation_inputs=_env_int(
                "SHIELDPOOL_MAX_CONSOLIDATION_INPUTS", defaults.max_consolidation_inputs
            ),
            max_rounds=_env_int("SHIELDPOOL_MAX_ROUNDS", defaults.max_rounds),
            proof_timeout=_env_float("SHIELDPOOL_PROOF_TIMEOUT", defaults.proof_timeout),
            proof_retries=_env_int("SHIELDPOOL_PROOF_RETRIES", defaults.proof_retries),
            backoff_base=_env_float("SHIELDPOOL_BACKOFF_BASE", defaults.backoff_base),
            backoff_cap=_env_float("SHIELDPOOL_BACKOFF_CAP", defaults.backoff_cap),
            max_stale_root_retries=_env_int(
                "SHIELDPOOL_MAX_STALE_ROOT_RETRIES", defaults.max_stale_root_retries
            ),
            relay_timeout=_env_float("SHIELDPOOL_RELAY_TIMEOUT", defaults.relay_timeout),
            relay_attempts=_env_int("SHIELDPOOL_RELAY_ATTEMPTS", defaults.relay_attempts),
            failure_threshold=_env_int("SHIELDPOOL_FAILURE_THRESHOLD", defaults.failure_threshold),
            health_interval=_env_float("SHIELDPOOL_HEALTH_INTERVAL", defaults.health_interval),
            health_timeout=_env_float("SHIELDPOOL_HEALTH_TIMEOUT", defaults.health_timeout),
            fee_per_step=_env_int("SHIELDPOOL_FEE_PER_STEP", defaults.fee_per_step),
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
