"""
LedgerClient: REST client for the ledger that holds the authoritative
commitment tree and nullifier set.

The ledger is the sole source of truth for spent/unspent status; every
local mirror is a cache of what this client reports.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from shieldpool.errors import LedgerError

# Rejection reasons the engine recovers from or classifies
REJECT_STALE_ROOT = "stale_root"
REJECT_NULLIFIER_SPENT = "nullifier_spent"


@dataclass(frozen=True)
class Confirmed:
    """
    The ledger accepted a submission and appended its output commitments.

    `slot` is None when the confirmation was reconstructed from the tree
    rather than reported by the ledger.
    """
    new_leaf_indices: list[int]
    slot: int | None = None
    signature: str | None = None


@dataclass(frozen=True)
class Rejected:
    """The ledger refused a submission."""
    reason: str
    nullifiers: list[str] = field(default_factory=list)

    @property
    def stale_root(self) -> bool:
        return self.reason == REJECT_STALE_ROOT

    @property
    def nullifier_spent(self) -> bool:
        return self.reason == REJECT_NULLIFIER_SPENT


Confirmation = Confirmed | Rejected


class Ledger(Protocol):
    """Operations the engine invokes on the ledger."""

    def current_root(self) -> str: ...

    def leaves(self, start: int = 0) -> list[str]: ...

    def spent_nullifiers(self, nullifiers: list[str]) -> set[str]: ...

    def confirmation(self, handle: str) -> Confirmation: ...


def parse_confirmation(data: dict[str, Any]) -> Confirmation | None:
    """Decode a submission status document; None while still pending."""
    status = data.get("status")
    if status == "confirmed":
        return Confirmed(
            new_leaf_indices=[int(i) for i in data.get("newLeafIndices", [])],
            slot=int(data.get("slot", 0)),
            signature=data.get("signature"),
        )
    if status == "rejected":
        return Rejected(reason=str(data.get("reason", "unknown")), nullifiers=list(data.get("nullifiers", [])))
    if status == "pending":
        return None
    raise LedgerError(f"Unknown submission status: {status!r}")


class LedgerClient:
    """
    Synchronous client for the ledger API.

    Usage:
        ledger = LedgerClient("http://localhost:8899")
        root = ledger.current_root()
        result = ledger.confirmation(receipt.confirmation_handle)
    """

    def __init__(
        self,
        ledger_url: str,
        timeout: float = 15.0,
        confirmation_timeout: float = 90.0,
        poll_interval: float = 1.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.ledger_url = ledger_url.rstrip("/")
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._client = httpx.Client(
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Commitment tree
    # ------------------------------------------------------------------

    def current_root(self) -> str:
        """Return the ledger's current Merkle root (hex)."""
        return str(self._get("/api/v1/tree/root")["root"])

    def leaves(self, start: int = 0) -> list[str]:
        """Return accepted commitments from `start` onwards, in tree order."""
        data = self._get(f"/api/v1/tree/leaves?start={start}")
        return [str(c) for c in data.get("leaves", [])]

    # ------------------------------------------------------------------
    # Nullifiers
    # ------------------------------------------------------------------

    def spent_nullifiers(self, nullifiers: list[str]) -> set[str]:
        """Return the subset of `nullifiers` already published on the ledger."""
        if not nullifiers:
            return set()
        data = self._post("/api/v1/nullifiers/check", {"nullifiers": list(nullifiers)})
        return set(data.get("spent", []))

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def confirmation(self, handle: str) -> Confirmation:
        """
        Wait for the ledger's verdict on a relayed submission.

        Raises:
            LedgerError: If the submission is still pending after
                `confirmation_timeout` seconds.
        """
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            result = parse_confirmation(self._get(f"/api/v1/submissions/{handle}"))
            if result is not None:
                return result
            if time.monotonic() >= deadline:
                raise LedgerError(f"Submission {handle} still pending after {self.confirmation_timeout}s")
            time.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get(self, path: str) -> Any:
        url = f"{self.ledger_url}{path}"
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            raise LedgerError(f"Ledger request failed for {url}: {e}") from e
        if response.status_code != 200:
            raise LedgerError(f"API error {response.status_code} for {url}: {response.text}")
        return response.json()

    def _post(self, path: str, body: dict[str, Any]) -> Any:
        url = f"{self.ledger_url}{path}"
        try:
            response = self._client.post(url, json=body)
        except httpx.HTTPError as e:
            raise LedgerError(f"Ledger request failed for {url}: {e}") from e
        if response.status_code != 200:
            raise LedgerError(f"API error {response.status_code} for {url}: {response.text}")
        return response.json()

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> LedgerClient:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()
