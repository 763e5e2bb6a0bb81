from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Callable, TypeVar

from .errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[ProviderError], bool]


def is_transient(error: ProviderError) -> bool:
    return error.transient


def is_server_side(error: ProviderError) -> bool:
    return error.transient and not error.rate_limited


@dataclass
class RetryAttempt:
    attempt_index: int
    max_attempts: int
    last_error: ProviderError | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for a single model call.

    Only ``ProviderError`` values accepted by ``retry_on`` are retried.
    Everything else, and the last error once attempts run out, propagates
    unchanged so the caller still sees the original classification.
    """

    max_attempts: int = 2
    base_delay_s: float = 2.0
    max_jitter_s: float = 1.0
    sleep: Callable[[float], None] = time.sleep
    retry_on: RetryPredicate = is_transient

    def delay_for(self, attempt_index: int) -> float:
        jitter = random.uniform(0.0, self.max_jitter_s) if self.max_jitter_s > 0 else 0.0
        return self.base_delay_s * (2**attempt_index) + jitter

    def with_retry_on(self, predicate: RetryPredicate) -> RetryPolicy:
        return replace(self, retry_on=predicate)

    def run(self, fn: Callable[[], T]) -> T:
        attempts = max(1, self.max_attempts)
        state = RetryAttempt(attempt_index=0, max_attempts=attempts)
        while True:
            try:
                return fn()
            except ProviderError as exc:
                state.last_error = exc
                is_last = state.attempt_index >= attempts - 1
                if is_last or not self.retry_on(exc):
                    raise
                delay = self.delay_for(state.attempt_index)
                logger.warning(
                    "model call failed (%s), retrying in %.2fs (attempt %d/%d)",
                    exc.category,
                    delay,
                    state.attempt_index + 1,
                    attempts,
                )
                self.sleep(delay)
                state.attempt_index += 1
