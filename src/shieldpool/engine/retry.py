"""
Bounded retry with exponential backoff, local to one pipeline step.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger("shieldpool.retry")

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Retry a callable on selected exceptions.

    Delay before attempt n (n >= 2) is `base * 2**(n-2)`, capped at `cap`.
    `sleep` is injectable so tests run without waiting.
    """
    attempts: int = 3
    base: float = 1.0
    cap: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {self.attempts}")

    def delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""
        return min(self.cap, self.base * (2 ** (attempt - 1)))

    def run(
        self,
        fn: Callable[[], T],
        retry_on: tuple[type[BaseException], ...],
        on_exhausted: Callable[[int, BaseException], BaseException] | None = None,
        label: str = "operation",
    ) -> T:
        """
        Call `fn` until it succeeds or `attempts` calls have failed.

        Exceptions outside `retry_on` propagate immediately. When retries run
        out, `on_exhausted(attempts, last_error)` builds the exception to
        raise; otherwise the last error is re-raised.
        """
        last_error: BaseException | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                return fn()
            except retry_on as e:
                last_error = e
                if attempt == self.attempts:
                    break
                wait = self.delay(attempt)
                logger.warning(f"{label} failed (attempt {attempt}/{self.attempts}): {e}; retrying in {wait:.1f}s")
                self.sleep(wait)

        if last_error is None:
            raise ValueError(f"{label}: retry policy allows no attempts")
        if on_exhausted is not None:
            raise on_exhausted(self.attempts, last_error) from last_error
        raise last_error
