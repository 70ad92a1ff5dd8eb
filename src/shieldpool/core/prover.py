"""
ProverClient: REST client for the external proving service.

Proof generation is treated as a pure function of (circuit, witness):
retrying with the same inputs is always safe. No proof is checked
locally; the ledger decides validity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from shieldpool.core.models import CircuitId
from shieldpool.errors import InvalidWitness, ProofTimeout, ProverError

logger = logging.getLogger("shieldpool.prover")

# Proof generation for the larger circuits takes tens of seconds
DEFAULT_PROOF_TIMEOUT = 120.0


@dataclass(frozen=True)
class ProofResult:
    """A generated proof and the public signals it commits to."""
    proof_bytes: str
    public_signals: list[str] = field(default_factory=list)
    prover_ms: int = 0


class Prover(Protocol):
    def request_proof(self, circuit_id: CircuitId, witness: dict[str, Any]) -> ProofResult: ...


class ProverClient:
    """
    Synchronous client for the prover service.

    Usage:
        prover = ProverClient("http://localhost:8787")
        result = prover.request_proof(CircuitId.CONSOLIDATE, witness)
    """

    def __init__(
        self,
        prover_url: str,
        timeout: float = DEFAULT_PROOF_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.prover_url = prover_url.rstrip("/")
        self._client = httpx.Client(
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def request_proof(self, circuit_id: CircuitId, witness: dict[str, Any]) -> ProofResult:
        """
        Request a proof for one circuit invocation.

        Raises:
            ProofTimeout: If the prover did not answer within the timeout.
            InvalidWitness: If the prover rejected the witness (HTTP 400/422).
            ProverError: For any other failure.
        """
        circuit = CircuitId(circuit_id).value
        url = f"{self.prover_url}/prove/{circuit}"
        logger.debug(f"Requesting {circuit} proof from {url}")
        try:
            response = self._client.post(url, json=witness)
        except httpx.TimeoutException as e:
            raise ProofTimeout(f"Proof request for {circuit} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProverError(f"Unable to reach prover at {url}: {e}") from e

        if response.status_code in (400, 422):
            raise InvalidWitness(f"Prover rejected {circuit} witness: {self._error_detail(response)}")
        if response.status_code == 504:
            raise ProofTimeout(f"Prover gateway timed out on {circuit}")
        if response.status_code != 200:
            raise ProverError(
                f"Prover request failed ({circuit}) with status {response.status_code}: "
                f"{self._error_detail(response)}"
            )

        data = response.json()
        result = ProofResult(
            proof_bytes=str(data["proofBytes"]),
            public_signals=[str(s) for s in data.get("publicInputs", [])],
            prover_ms=int(data.get("proverMs", 0)),
        )
        logger.info(f"{circuit} proof generated in {result.prover_ms}ms")
        return result

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text
        if isinstance(payload, dict) and "error" in payload:
            return str(payload["error"])
        return response.text

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> ProverClient:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()
