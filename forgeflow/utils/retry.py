from __future__ import annotations

import random
from typing import Optional

from pydantic import BaseModel

from ..errors import StepError


def compute_backoff(
    attempt: int, base: float = 1.0, cap: float = 300.0, jitter: float = 0.0
) -> float:
    """Compute capped exponential backoff (``base * 2 ** attempt``) with jitter."""
    delay = min(cap, base * (2 ** attempt))
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


class RetryDecision(BaseModel):
    """Outcome of evaluating a failed attempt."""

    retry: bool
    delay: float = 0.0
    reason: str = ""


class RetryPolicy(BaseModel):
    """Bounded exponential retries for failed steps."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 300.0
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following failed attempt number ``attempt``."""
        return compute_backoff(
            attempt, base=self.backoff_base, cap=self.backoff_cap, jitter=self.jitter
        )

    def evaluate(
        self, error: StepError, attempt: int, max_attempts: Optional[int] = None
    ) -> RetryDecision:
        """Decide whether the step gets another attempt.

        Args:
            error: Failure raised by the attempt.
            attempt: 1-based number of the attempt that just failed.
            max_attempts: Per-step override of ``self.max_attempts``.
        """
        limit = max_attempts or self.max_attempts
        if not error.retryable:
            return RetryDecision(retry=False, reason="terminal error")
        if attempt >= limit:
            return RetryDecision(retry=False, reason=f"exhausted {limit} attempts")
        return RetryDecision(retry=True, delay=self.delay_for(attempt))
