from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import httpx

from qdr_harvester.crawler.rate_limiter import RateLimiterClosed, TokenBucket

logger = logging.getLogger(__name__)

BODY_EXCERPT_CHARS = 500


class ErrorKind(str, Enum):
    HTTP_STATUS = "http_status"
    MALFORMED = "malformed"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CANCELLED = "cancelled"


@dataclass
class RetryState:
    attempt: int = 0
    delays: list[float] = field(default_factory=list)

    def record(self, delay: float) -> None:
        self.delays.append(delay)


@dataclass
class FetchResult:
    ok: bool
    url: str = ""
    payload: Any = None
    status_code: int | None = None
    attempts: int = 0
    error_kind: ErrorKind | None = None
    error: str | None = None
    body_excerpt: str | None = None
    delays: list[float] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    def describe(self) -> str:
        if self.ok:
            return f"ok ({self.status_code})"
        kind = self.error_kind.value if self.error_kind else "error"
        return f"{kind}: {self.error}"


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _excerpt(response: httpx.Response) -> str:
    try:
        return response.text[:BODY_EXCERPT_CHARS]
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""


class RetryExecutor:
    """Run one request with classification and exponential backoff.

    ``execute`` never raises for network or HTTP failures; callers branch on
    ``FetchResult.ok``. Attempts go through the shared rate limiter.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        initial_backoff: float = 0.8,
        jitter: float = 0.0,
        max_backoff: float = 120.0,
        limiter: TokenBucket | None = None,
        stop_event: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.jitter = jitter
        self.max_backoff = max_backoff
        self.limiter = limiter
        self._stop = stop_event
        self._sleep = sleep
        self._uniform = uniform
        self._lock = threading.Lock()
        self.total_retries = 0

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        delay = self.initial_backoff * (2 ** (attempt - 1))
        if self.jitter > 0:
            delay += self._uniform(0.0, self.jitter)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_backoff)

    def _stopped(self) -> bool:
        return self._stop is not None and self._stop.is_set()

    def _pause(self, delay: float) -> bool:
        """Sleep ``delay``; return True when a stop was requested meanwhile."""

        if self._sleep is not None:
            self._sleep(delay)
            return self._stopped()
        if self._stop is not None:
            return self._stop.wait(delay)
        time.sleep(delay)
        return False

    def _cancelled(self, url: str, state: RetryState) -> FetchResult:
        return FetchResult(
            ok=False,
            url=url,
            attempts=state.attempt,
            error_kind=ErrorKind.CANCELLED,
            error="stop requested",
            delays=state.delays,
        )

    def execute(
        self,
        request_fn: Callable[[], httpx.Response],
        *,
        url: str = "",
    ) -> FetchResult:
        state = RetryState()
        last_error = "no attempt made"
        last_status: int | None = None

        while state.attempt <= self.max_retries:
            if self._stopped():
                return self._cancelled(url, state)
            if self.limiter is not None:
                try:
                    self.limiter.acquire()
                except RateLimiterClosed:
                    return self._cancelled(url, state)

            state.attempt += 1
            retry_after: float | None = None
            try:
                response = request_fn()
            except (httpx.UnsupportedProtocol, httpx.InvalidURL) as exc:
                return FetchResult(
                    ok=False,
                    url=url,
                    attempts=state.attempt,
                    error_kind=ErrorKind.HTTP_STATUS,
                    error=f"invalid request: {exc}",
                    delays=state.delays,
                )
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                last_status = None
            except httpx.DecodingError as exc:
                return FetchResult(
                    ok=False,
                    url=url,
                    attempts=state.attempt,
                    error_kind=ErrorKind.MALFORMED,
                    error=f"undecodable body: {exc}",
                    delays=state.delays,
                )
            except httpx.HTTPError as exc:
                # redirect loops and other request errors that retrying will not fix
                return FetchResult(
                    ok=False,
                    url=url,
                    attempts=state.attempt,
                    error_kind=ErrorKind.HTTP_STATUS,
                    error=f"{type(exc).__name__}: {exc}",
                    delays=state.delays,
                )
            else:
                status = response.status_code
                last_status = status
                if status == 429 or status >= 500:
                    last_error = f"HTTP {status}"
                    retry_after = parse_retry_after(response.headers.get("Retry-After"))
                elif not 200 <= status < 300:
                    return FetchResult(
                        ok=False,
                        url=url,
                        status_code=status,
                        attempts=state.attempt,
                        error_kind=ErrorKind.HTTP_STATUS,
                        error=f"HTTP {status}",
                        body_excerpt=_excerpt(response),
                        delays=state.delays,
                    )
                else:
                    try:
                        payload = response.json()
                    except ValueError as exc:
                        return FetchResult(
                            ok=False,
                            url=url,
                            status_code=status,
                            attempts=state.attempt,
                            error_kind=ErrorKind.MALFORMED,
                            error=f"non-JSON body: {exc}",
                            body_excerpt=_excerpt(response),
                            delays=state.delays,
                        )
                    return FetchResult(
                        ok=True,
                        url=url,
                        payload=payload,
                        status_code=status,
                        attempts=state.attempt,
                        delays=state.delays,
                    )

            if state.attempt > self.max_retries:
                break
            delay = self.backoff_delay(state.attempt, retry_after)
            state.record(delay)
            with self._lock:
                self.total_retries += 1
            logger.debug(
                "Retryable failure for %s (%s); retry %d/%d in %.2fs",
                url,
                last_error,
                state.attempt,
                self.max_retries,
                delay,
            )
            if self._pause(delay):
                return self._cancelled(url, state)

        return FetchResult(
            ok=False,
            url=url,
            status_code=last_status,
            attempts=state.attempt,
            error_kind=ErrorKind.RETRIES_EXHAUSTED,
            error=f"failed after {state.attempt} attempts: {last_error}",
            delays=state.delays,
        )


__all__ = [
    "BODY_EXCERPT_CHARS",
    "ErrorKind",
    "FetchResult",
    "RetryExecutor",
    "RetryState",
    "parse_retry_after",
]
