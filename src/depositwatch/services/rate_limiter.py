from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from threading import Lock
from time import monotonic, sleep


@dataclass(frozen=True)
class ExplorerBudget:
    name: str
    rps: float
    burst: int

    def validate(self) -> None:
        if self.rps <= 0:
            raise ValueError(f"ExplorerBudget[{self.name}] rps must be > 0")
        if self.burst < 1:
            raise ValueError(f"ExplorerBudget[{self.name}] burst must be >= 1")


@dataclass
class _Bucket:
    budget: ExplorerBudget
    tokens: float
    updated_at: float
    cooldown_until: float = 0.0

    def refill(self, now: float) -> None:
        elapsed = now - self.updated_at
        if elapsed > 0:
            self.tokens = min(float(self.budget.burst), self.tokens + elapsed * self.budget.rps)
            self.updated_at = now

    def wait_seconds(self, now: float) -> float:
        self.refill(now)
        if self.cooldown_until > now:
            return self.cooldown_until - now
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.budget.rps


class TokenBucketRateLimiter:
    """Per-explorer token buckets shared by every request to the same provider.

    Groups without their own budget get a private bucket sized by "default".
    """

    def __init__(
        self,
        budgets: Mapping[str, ExplorerBudget],
        *,
        clock: Callable[[], float] = monotonic,
        sleep_fn: Callable[[float], None] = sleep,
    ) -> None:
        if "default" not in budgets:
            raise ValueError("budgets must include 'default'")
        for budget in budgets.values():
            budget.validate()

        self._budgets = dict(budgets)
        self._clock = clock
        self._sleep = sleep_fn
        self._lock = Lock()
        self._buckets: dict[str, _Bucket] = {}

    def _bucket(self, group: str) -> _Bucket:
        bucket = self._buckets.get(group)
        if bucket is None:
            budget = self._budgets.get(group, self._budgets["default"])
            bucket = _Bucket(budget=budget, tokens=float(budget.burst), updated_at=self._clock())
            self._buckets[group] = bucket
        return bucket

    def acquire(self, group: str) -> float:
        """Block until a token is available; returns the seconds spent waiting."""
        waited = 0.0
        while True:
            with self._lock:
                bucket = self._bucket(group)
                wait = bucket.wait_seconds(self._clock())
                if wait <= 0.0:
                    bucket.tokens -= 1.0
                    return waited
            self._sleep(wait)
            waited += wait

    def penalize_on_429(self, group: str, retry_after_seconds: float | None = None) -> None:
        with self._lock:
            bucket = self._bucket(group)
            bucket.tokens = 0.0
            if retry_after_seconds is not None and retry_after_seconds > 0:
                cooldown = retry_after_seconds
            else:
                cooldown = min(1.5, max(0.25, 1.0 / bucket.budget.rps))
            bucket.cooldown_until = max(bucket.cooldown_until, self._clock() + cooldown)


DEFAULT_EXPLORER_BUDGETS: Mapping[str, ExplorerBudget] = {
    "default": ExplorerBudget(name="default", rps=2.0, burst=2),
    "mempool": ExplorerBudget(name="mempool", rps=4.0, burst=4),
    "sochain": ExplorerBudget(name="sochain", rps=1.0, burst=2),
    "etherscan": ExplorerBudget(name="etherscan", rps=4.0, burst=4),
}


def default_explorer_rate_limiter() -> TokenBucketRateLimiter:
    return TokenBucketRateLimiter(DEFAULT_EXPLORER_BUDGETS)
