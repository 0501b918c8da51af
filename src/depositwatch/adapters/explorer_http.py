from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Callable, Iterable
from time import sleep
from typing import Any

import httpx

from depositwatch.domain.errors import NotFoundOnChain, TransientNetworkError
from depositwatch.observability import get_instrumentation
from depositwatch.security.redaction import sanitize_mapping, sanitize_text
from depositwatch.services.rate_limiter import TokenBucketRateLimiter, default_explorer_rate_limiter
from depositwatch.services.retry import (
    BackoffPolicy,
    RetryAttempt,
    parse_retry_after_seconds,
    retry_with_backoff,
)

logger = logging.getLogger(__name__)

_ERROR_SNIPPET_LIMIT = 240
EXPLORER_BACKOFF = BackoffPolicy(
    max_attempts=3,
    base_delay_seconds=0.4,
    max_delay_seconds=4.0,
    max_total_sleep_seconds=8.0,
    jitter_seed=17,
)


def _is_permanent_transport_error(exc: httpx.TransportError) -> bool:
    permanent_errors = (
        httpx.UnsupportedProtocol,
        httpx.ProtocolError,
        httpx.LocalProtocolError,
    )
    if isinstance(exc, permanent_errors):
        return True

    cause = getattr(exc, "__cause__", None)
    return isinstance(cause, ssl.SSLCertVerificationError)


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    if isinstance(exc, httpx.TransportError):
        return not _is_permanent_transport_error(exc)
    return False


def _response_snippet(response: httpx.Response, known_secrets: Iterable[str]) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT], known_secrets)


class ExplorerHttpClient:
    """Blocking GET client for one block explorer.

    Every call is rate limited per explorer group and retried with jittered
    backoff on timeouts, transport errors, 429 and 5xx. A 404 is reported as
    NotFoundOnChain; every other failure surfaces as TransientNetworkError.
    """

    def __init__(
        self,
        base_url: str,
        *,
        group: str,
        timeout: float | httpx.Timeout = 10.0,
        transport: httpx.BaseTransport | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        known_secrets: Iterable[str] = (),
    ) -> None:
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=min(5.0, timeout))
        )
        self.group = group
        self.client = httpx.Client(
            base_url=base_url,
            timeout=resolved_timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._rate_limiter = rate_limiter or default_explorer_rate_limiter()
        self._sleep_fn = sleep_fn
        self._known_secrets = tuple(secret for secret in known_secrets if secret)

    def __enter__(self) -> ExplorerHttpClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def close(self) -> None:
        self.client.close()

    def _safe_sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            sleep(seconds)
            return
        raise RuntimeError("Blocking retry sleep called from an active event loop")

    def _sanitize(self, text: str) -> str:
        return sanitize_text(text, self._known_secrets)

    def _request(self, path: str, params: dict[str, str] | None = None) -> httpx.Response:
        group = self.group

        def _call() -> httpx.Response:
            waited = self._rate_limiter.acquire(group)
            get_instrumentation().histogram("rate_limiter_wait_seconds", waited, attrs={"group": group})
            with get_instrumentation().trace("explorer_call", attrs={"group": group}):
                response = self.client.get(path, params=params)
            get_instrumentation().counter(
                "explorer_requests_total",
                1,
                attrs={"group": group, "status": str(response.status_code)},
            )
            if response.status_code == 404:
                raise NotFoundOnChain()
            if response.status_code >= 500 or response.status_code == 429:
                response.raise_for_status()
            if response.status_code >= 400:
                raise TransientNetworkError(
                    f"{group} returned status={response.status_code}: "
                    f"{_response_snippet(response, self._known_secrets)}",
                    status_code=response.status_code,
                )
            return response

        def _retry_after(exc: Exception) -> str | None:
            response = getattr(exc, "response", None)
            if response is None:
                return None
            return response.headers.get("Retry-After")

        def _on_retry(attempt: RetryAttempt) -> None:
            get_instrumentation().counter("explorer_retry_total", 1, attrs={"group": group})
            logger.debug(
                "explorer_request_retry",
                extra={
                    "extra": {
                        "group": group,
                        "path": self._sanitize(path),
                        "attempt": attempt.attempt,
                        "delay_s": round(attempt.delay_seconds, 3),
                    }
                },
            )

        try:
            return retry_with_backoff(
                _call,
                policy=EXPLORER_BACKOFF,
                retry_on=(
                    httpx.TimeoutException,
                    httpx.TransportError,
                    httpx.HTTPStatusError,
                ),
                retry_after_getter=_retry_after,
                should_retry=_should_retry,
                on_retry=_on_retry,
                sleep_fn=self._safe_sleep,
            )
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            if status_code == 429:
                retry_after_s = parse_retry_after_seconds(exc.response.headers.get("Retry-After"))
                self._rate_limiter.penalize_on_429(group, retry_after_s)
                get_instrumentation().counter("explorer_429_total", 1, attrs={"group": group})
            raise TransientNetworkError(
                f"{group} returned status={status_code}", status_code=status_code
            ) from exc
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{group} request timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(
                self._sanitize(f"{group} transport error: {type(exc).__name__}: {exc}")
            ) from exc

    def get_json(self, path: str, params: dict[str, str] | None = None) -> Any:
        response = self._request(path, params)
        try:
            return response.json()
        except ValueError as exc:
            logger.warning(
                "explorer_invalid_json",
                extra={
                    "extra": {
                        "group": self.group,
                        "params": sanitize_mapping(params or {}),
                        "body": _response_snippet(response, self._known_secrets),
                    }
                },
            )
            raise TransientNetworkError(f"{self.group} returned a non-JSON payload") from exc

    def get_text(self, path: str, params: dict[str, str] | None = None) -> str:
        return self._request(path, params).text.strip()
