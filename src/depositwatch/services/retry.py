from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with multiplicative jitter in [0.5, 1.5).

    A server-provided Retry-After replaces the computed delay but is still
    capped at max_delay_seconds. Once the accumulated sleep would pass
    max_total_sleep_seconds the last error is raised instead of waiting.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 0.4
    max_delay_seconds: float = 4.0
    max_total_sleep_seconds: float | None = 8.0
    jitter_seed: int | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("delay values must be >= 0")

    def delay_for(self, attempt: int, prng: random.Random, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return min(self.max_delay_seconds, retry_after)
        ceiling = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, attempt - 1)))
        return ceiling * (0.5 + prng.random())


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay_seconds: float
    error_type: str
    used_retry_after: bool = False


def parse_retry_after_seconds(value: str | None) -> float | None:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    candidate = (value or "").strip()
    if not candidate:
        return None
    try:
        seconds = float(candidate)
    except ValueError:
        try:
            when = parsedate_to_datetime(candidate)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        return max(0.0, (when - datetime.now(UTC)).total_seconds())
    return seconds if seconds >= 0 else None


def retry_with_backoff(  # noqa: UP047
    fn: Callable[[], T],
    *,
    policy: BackoffPolicy,
    retry_on: tuple[type[Exception], ...],
    should_retry: Callable[[Exception], bool] | None = None,
    retry_after_getter: Callable[[Exception], str | None] | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> T:
    prng = random.Random(policy.jitter_seed)
    slept = 0.0
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                raise
            if should_retry is not None and not should_retry(exc):
                raise
            retry_after = parse_retry_after_seconds(retry_after_getter(exc)) if retry_after_getter else None
            delay = policy.delay_for(attempt, prng, retry_after)
            if policy.max_total_sleep_seconds is not None and slept + delay > policy.max_total_sleep_seconds:
                raise
            slept += delay
            if on_retry is not None:
                on_retry(
                    RetryAttempt(
                        attempt=attempt,
                        delay_seconds=delay,
                        error_type=type(exc).__name__,
                        used_retry_after=retry_after is not None,
                    )
                )
            sleep_fn(delay)
