from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

import requests

from .errors import FetchError
from .upstream import FetchResult

SleepFn = Callable[[float], None]


@dataclass(frozen=True)
class RetryConfig:
    """
    Bounded backoff for batch fetches.

    max_attempts counts the first try. The delay after failure n is
    base_delay_seconds * 2**(n-1), capped at max_delay_seconds, unless the
    upstream asked for a longer Retry-After (itself capped at
    retry_after_cap_seconds).
    """

    max_attempts: int = 2
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    retry_after_cap_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.retry_after_cap_seconds < 0:
            raise ValueError("retry_after_cap_seconds must be >= 0")

    def delay_after(self, failure: int, retry_after: float | None = None) -> float:
        delay = min(self.max_delay_seconds, self.base_delay_seconds * 2 ** max(0, failure - 1))
        if retry_after is not None and retry_after > 0:
            delay = max(delay, min(retry_after, self.retry_after_cap_seconds))
        return delay


@dataclass(frozen=True)
class RetryEvent:
    url: str
    failure: int
    max_attempts: int
    delay_seconds: float
    reason: str | None
    error: str


OnRetryFn = Callable[[RetryEvent], None]


def is_retryable_fetch_error(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Retry policy for upstream fetches made by the batch processor:
    - HTTP 429 (honouring Retry-After when the upstream sent one)
    - HTTP 5xx
    - network errors (connection failures, timeouts)
    """
    if isinstance(exc, FetchError):
        code = exc.status_code
        if code is None:
            cause = exc.__cause__
            if isinstance(cause, (requests.ConnectionError, requests.Timeout)):
                return True, None, "network_error"
            return False, None, "invalid_response"
        if code == 429:
            return True, exc.retry_after, "http_429"
        if code >= 500:
            return True, exc.retry_after, f"http_{code}"
        return False, None, f"http_{code}"

    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True, None, "network_error"

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True, None, "network_error"

    return False, None, None


def fetch_with_retries(
    fetch: Callable[[], FetchResult],
    *,
    url: str,
    cfg: RetryConfig,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
) -> FetchResult:
    """Run one upstream fetch, retrying rate limits, 5xx and network failures."""
    sleeper = sleep_fn or time.sleep
    failure = 0
    while True:
        try:
            return fetch()
        except Exception as exc:
            failure += 1
            retryable, retry_after, reason = is_retryable_fetch_error(exc)
            if not retryable or failure >= cfg.max_attempts:
                raise

            delay = cfg.delay_after(failure, retry_after)
            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        url=url,
                        failure=failure,
                        max_attempts=cfg.max_attempts,
                        delay_seconds=delay,
                        reason=reason,
                        error=(str(exc) or type(exc).__name__).strip(),
                    )
                )
            if delay > 0:
                sleeper(delay)
