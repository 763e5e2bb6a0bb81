from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, TypeVar

from .errors import ProviderError
from .models import ModelTier
from .retry import RetryPolicy, is_server_side

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]
Sleep = Callable[[float], None]


class RequestPacer:
    """Keeps outbound model calls at least ``min_interval_s`` apart across all callers."""

    def __init__(self, min_interval_s: float = 1.0, *, clock: Clock = time.monotonic, sleep: Sleep = time.sleep) -> None:
        self.min_interval_s = max(0.0, min_interval_s)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request_at: float | None = None

    @property
    def last_request_at(self) -> float | None:
        return self._last_request_at

    def wait_turn(self) -> float:
        # Reserve the slot under the lock, wait outside it.
        with self._lock:
            now = self._clock()
            if self._last_request_at is None:
                slot = now
            else:
                slot = max(now, self._last_request_at + self.min_interval_s)
            self._last_request_at = slot
        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay


class CircuitBreaker:
    def __init__(self, cooldown_s: float = 60.0, *, clock: Clock = time.monotonic) -> None:
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._lock = threading.Lock()
        self._locked_until: dict[ModelTier, float] = {}

    def is_open(self, tier: ModelTier) -> bool:
        return self.remaining(tier) > 0

    def remaining(self, tier: ModelTier) -> float:
        with self._lock:
            locked_until = self._locked_until.get(tier)
            if locked_until is None:
                return 0.0
            return max(0.0, locked_until - self._clock())

    def trip(self, tier: ModelTier) -> None:
        with self._lock:
            self._locked_until[tier] = self._clock() + self.cooldown_s

    def reset(self) -> None:
        with self._lock:
            self._locked_until.clear()


class ModelFallbackOrchestrator:
    """Run a model call on the preferred tier, falling back to the secondary tier.

    One instance is meant to be shared by every caller in the process: its
    pacer and breaker are what protect the provider's combined rate limit.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        *,
        min_interval_s: float = 1.0,
        cooldown_s: float = 60.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = time.sleep,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy(sleep=sleep)
        self.pacer = RequestPacer(min_interval_s, clock=clock, sleep=sleep)
        self.breaker = CircuitBreaker(cooldown_s, clock=clock)
        self._stats_lock = threading.Lock()
        self._stats = {"primary_calls": 0, "secondary_calls": 0, "fallbacks": 0}

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def _paced(self, task: Callable[[ModelTier], T], tier: ModelTier) -> Callable[[], T]:
        def _call() -> T:
            self.pacer.wait_turn()
            self._count("primary_calls" if tier == ModelTier.PRIMARY else "secondary_calls")
            return task(tier)

        return _call

    def _run_secondary(self, task: Callable[[ModelTier], T]) -> T:
        return self.retry_policy.run(self._paced(task, ModelTier.SECONDARY))

    def execute(self, task: Callable[[ModelTier], T], preferred: ModelTier = ModelTier.PRIMARY) -> T:
        if preferred == ModelTier.SECONDARY:
            return self._run_secondary(task)

        if self.breaker.is_open(ModelTier.PRIMARY):
            logger.info(
                "primary tier cooling down for %.1fs, calling secondary directly",
                self.breaker.remaining(ModelTier.PRIMARY),
            )
            return self._run_secondary(task)

        # A rate limit on the primary tier is answered by falling back, not by waiting.
        primary_policy = self.retry_policy.with_retry_on(is_server_side)
        try:
            return primary_policy.run(self._paced(task, ModelTier.PRIMARY))
        except ProviderError as exc:
            if exc.rate_limited:
                self.breaker.trip(ModelTier.PRIMARY)
                logger.warning(
                    "primary tier rate limited, switching to secondary for %.0fs",
                    self.breaker.cooldown_s,
                )
            else:
                logger.warning("primary tier failed (%s), switching to secondary", exc.category)
        except Exception as exc:
            logger.warning("primary tier failed (%s), switching to secondary", type(exc).__name__)

        self._count("fallbacks")
        return self._run_secondary(task)

    def stats(self) -> dict[str, Any]:
        with self._stats_lock:
            snapshot: dict[str, Any] = dict(self._stats)
        snapshot["breaker_open"] = self.breaker.is_open(ModelTier.PRIMARY)
        return snapshot
