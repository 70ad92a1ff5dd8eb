"""
Relayer Failover Manager — submits proofs through a pool of relay endpoints.

Selection is round-robin over healthy endpoints:
    - Each attempt of one submission goes to the next healthy endpoint it
      has not tried yet. Only when every healthy endpoint has failed it
      does a healthy endpoint get a second attempt.
    - A transport error, timeout or 5xx response counts as a failure and
      moves the cursor past the endpoint. Once its consecutive failures
      reach `failure_threshold` it is marked unhealthy.
    - A success resets the endpoint's consecutive failures and advances
      the cursor, so consecutive submissions rotate across endpoints.
    - With no healthy endpoint left, the least-failed one is tried,
      preferring endpoints this submission has not tried.

A 4xx response is the ledger (through the relay) refusing the payload; it
says nothing about the endpoint and is surfaced as SubmissionRejected.

A background thread polls `GET {url}/health` on a fixed interval, which is
how unhealthy endpoints come back into rotation.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any

import httpx

from shieldpool.errors import AllEndpointsFailed, SubmissionRejected

logger = logging.getLogger("shieldpool.relayer")

DEFAULT_SUBMIT_TIMEOUT = 60.0
DEFAULT_HEALTH_TIMEOUT = 5.0
DEFAULT_HEALTH_INTERVAL = 30.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_FAILURE_THRESHOLD = 2


@dataclass
class RelayEndpoint:
    """
    Health and bookkeeping for one relay endpoint.

    Attributes:
        url: Base URL of the relay.
        healthy: Whether the endpoint is in rotation.
        failure_count: Consecutive failures, reset on success.
        success_count: Successful submissions.
        total_failures: Failures over the endpoint's lifetime.
        last_health_check: Unix time of the last health check, if any.
        last_error: Most recent failure description.
    """
    url: str
    healthy: bool = True
    failure_count: int = 0
    success_count: int = 0
    total_failures: int = 0
    last_health_check: float | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RelayReceipt:
    """Acknowledgement of a relayed submission."""
    signature: str
    confirmation_handle: str
    endpoint: str


class RelayerFailoverManager:
    """
    Usage:
        relayers = RelayerFailoverManager(["https://relay-a", "https://relay-b"])
        relayers.start()
        receipt = relayers.submit({"circuit_id": "transfer-spend", "proof": ..., "public_inputs": [...]})
        relayers.stop()
    """

    def __init__(
        self,
        endpoints: list[str],
        submit_timeout: float = DEFAULT_SUBMIT_TIMEOUT,
        health_timeout: float = DEFAULT_HEALTH_TIMEOUT,
        health_interval: float = DEFAULT_HEALTH_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not endpoints:
            raise ValueError("At least one relayer endpoint is required")
        self.endpoints = [RelayEndpoint(url=url.rstrip("/")) for url in endpoints]
        self.submit_timeout = submit_timeout
        self.health_timeout = health_timeout
        self.health_interval = health_interval
        self.max_attempts = max_attempts
        self.failure_threshold = failure_threshold
        self._client = httpx.Client(headers={"Content-Type": "application/json"}, transport=transport)
        self._lock = threading.Lock()
        self._cursor = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background health-check thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._health_loop, name="relayer-health", daemon=True)
        self._thread.start()
        logger.info(f"Relayer health checks started for {len(self.endpoints)} endpoints")

    def stop(self) -> None:
        """Stop the health-check thread and wait for it to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.health_timeout + 1.0)
            self._thread = None

    def _health_loop(self) -> None:
        while not self._stop.is_set():
            self.check_health()
            if self._stop.wait(self.health_interval):
                break

    def check_health(self) -> dict[str, bool]:
        """Check every endpoint once and update its health flag."""
        results: dict[str, bool] = {}
        for endpoint in self.endpoints:
            healthy, error = self._check_endpoint(endpoint.url)
            with self._lock:
                was_healthy = endpoint.healthy
                endpoint.healthy = healthy
                endpoint.last_health_check = time.time()
                if healthy:
                    if not was_healthy:
                        endpoint.failure_count = 0
                        logger.info(f"Relayer {endpoint.url} is healthy again")
                else:
                    endpoint.last_error = error
                    if was_healthy:
                        logger.warning(f"Relayer {endpoint.url} failed health check: {error}")
            results[endpoint.url] = healthy
        return results

    def _check_endpoint(self, url: str) -> tuple[bool, str | None]:
        try:
            response = self._client.get(f"{url}/health", timeout=self.health_timeout)
        except httpx.HTTPError as e:
            return False, f"health check failed: {e}"
        if response.status_code != 200:
            return False, f"health check returned {response.status_code}"
        try:
            status = response.json().get("status")
        except ValueError:
            return False, "health check returned invalid JSON"
        if status != "ok":
            return False, f"relayer reports status {status!r}"
        return True, None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, payload: dict[str, Any]) -> RelayReceipt:
        """
        Relay one proof submission.

        Raises:
            SubmissionRejected: If a relay answered 4xx.
            AllEndpointsFailed: If `max_attempts` attempts all failed.
        """
        last_error: str | None = None
        tried: set[str] = set()
        for attempt in range(1, self.max_attempts + 1):
            endpoint = self._select(tried)
            tried.add(endpoint.url)
            url = f"{endpoint.url}/relay/submit"
            try:
                response = self._client.post(url, json=payload, timeout=self.submit_timeout)
            except httpx.HTTPError as e:
                last_error = f"{endpoint.url}: {type(e).__name__}: {e}"
                self._record_failure(endpoint, last_error)
                continue

            if response.status_code >= 500:
                last_error = f"{endpoint.url}: HTTP {response.status_code}"
                self._record_failure(endpoint, last_error)
                continue
            if response.status_code >= 400:
                raise SubmissionRejected(self._rejection_reason(response))

            data = response.json()
            self._record_success(endpoint)
            logger.info(f"Submission relayed via {endpoint.url} (attempt {attempt})")
            return RelayReceipt(
                signature=str(data["signature"]),
                confirmation_handle=str(data["confirmation_handle"]),
                endpoint=endpoint.url,
            )

        raise AllEndpointsFailed(self.max_attempts, last_error)

    def status(self) -> list[dict[str, Any]]:
        """Snapshot of every endpoint's health and counters."""
        with self._lock:
            return [endpoint.to_dict() for endpoint in self.endpoints]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _select(self, tried: set[str]) -> RelayEndpoint:
        with self._lock:
            count = len(self.endpoints)
            order = [self.endpoints[(self._cursor + offset) % count] for offset in range(count)]
            for endpoint in order:
                if endpoint.healthy and endpoint.url not in tried:
                    return endpoint
            # every healthy endpoint already failed this submission: go round again
            for endpoint in order:
                if endpoint.healthy:
                    return endpoint
            # nobody is healthy: try the endpoint that has failed least
            fallback = min(order, key=lambda e: (e.url in tried, e.failure_count, e.total_failures))
            logger.warning(f"No healthy relayer, falling back to {fallback.url}")
            return fallback

    def _record_failure(self, endpoint: RelayEndpoint, error: str) -> None:
        with self._lock:
            endpoint.failure_count += 1
            endpoint.total_failures += 1
            endpoint.last_error = error
            self._cursor = (self.endpoints.index(endpoint) + 1) % len(self.endpoints)
            logger.warning(f"Relay attempt failed: {error}")
            if endpoint.healthy and endpoint.failure_count >= self.failure_threshold:
                endpoint.healthy = False
                logger.warning(
                    f"Relayer {endpoint.url} marked unhealthy after {endpoint.failure_count} consecutive failures"
                )

    def _record_success(self, endpoint: RelayEndpoint) -> None:
        with self._lock:
            endpoint.failure_count = 0
            endpoint.success_count += 1
            endpoint.last_error = None
            self._cursor = (self.endpoints.index(endpoint) + 1) % len(self.endpoints)

    @staticmethod
    def _rejection_reason(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(payload, dict):
            return str(payload.get("reason") or payload.get("error") or payload)
        return str(payload)

    def close(self) -> None:
        self.stop()
        self._client.close()

    def __enter__(self) -> RelayerFailoverManager:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()
