from __future__ import annotations

import threading
from typing import Callable

import httpx
import pytest

from qdr_harvester.crawler.retry import ErrorKind, RetryExecutor, parse_retry_after

URL = "https://qdr.test/search"


def _client(responses: list[httpx.Response | Exception]) -> tuple[httpx.Client, list[int]]:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        item = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    return httpx.Client(transport=httpx.MockTransport(handler)), calls


def _request(client: httpx.Client) -> Callable[[], httpx.Response]:
    return lambda: client.get(URL)


def test_429_then_200_records_exactly_one_retry() -> None:
    client, calls = _client([httpx.Response(429), httpx.Response(200, json={"ok": 1})])
    sleeps: list[float] = []
    executor = RetryExecutor(initial_backoff=0.8, sleep=sleeps.append)

    result = executor.execute(_request(client), url=URL)

    assert result.ok
    assert result.payload == {"ok": 1}
    assert result.retries == 1
    assert len(calls) == 2
    assert sleeps == [0.8]
    assert executor.total_retries == 1


def test_backoff_doubles_until_retries_exhausted() -> None:
    client, calls = _client([httpx.Response(503)])
    sleeps: list[float] = []
    executor = RetryExecutor(max_retries=3, initial_backoff=0.5, sleep=sleeps.append)

    result = executor.execute(_request(client), url=URL)

    assert not result.ok
    assert result.error_kind is ErrorKind.RETRIES_EXHAUSTED
    assert result.attempts == 4
    assert len(calls) == 4
    assert sleeps == [0.5, 1.0, 2.0]
    assert result.status_code == 503


def test_jitter_is_added_to_the_base_delay() -> None:
    executor = RetryExecutor(initial_backoff=1.0, jitter=0.2, uniform=lambda lo, hi: hi)
    assert executor.backoff_delay(1) == pytest.approx(1.2)
    assert executor.backoff_delay(3) == pytest.approx(4.2)


def test_retry_after_raises_the_delay() -> None:
    client, _calls = _client(
        [httpx.Response(429, headers={"Retry-After": "5"}), httpx.Response(200, json=[])]
    )
    sleeps: list[float] = []
    executor = RetryExecutor(initial_backoff=0.1, sleep=sleeps.append)

    assert executor.execute(_request(client)).ok
    assert sleeps == [5.0]


def test_client_error_is_fatal_and_captures_body() -> None:
    client, calls = _client([httpx.Response(404, text="x" * 800)])
    sleeps: list[float] = []
    executor = RetryExecutor(sleep=sleeps.append)

    result = executor.execute(_request(client), url=URL)

    assert not result.ok
    assert result.error_kind is ErrorKind.HTTP_STATUS
    assert result.status_code == 404
    assert result.body_excerpt == "x" * 500
    assert len(calls) == 1
    assert sleeps == []


def test_malformed_body_does_not_consume_a_retry() -> None:
    client, calls = _client([httpx.Response(200, text="<html>oops</html>")])
    executor = RetryExecutor(sleep=lambda _d: None)

    result = executor.execute(_request(client))

    assert result.error_kind is ErrorKind.MALFORMED
    assert result.attempts == 1
    assert result.retries == 0
    assert len(calls) == 1


def test_transport_errors_are_retried() -> None:
    client, calls = _client(
        [httpx.ConnectError("reset"), httpx.ReadTimeout("slow"), httpx.Response(200, json={})]
    )
    executor = RetryExecutor(initial_backoff=0.01, sleep=lambda _d: None)

    result = executor.execute(_request(client))

    assert result.ok
    assert result.attempts == 3
    assert len(calls) == 3


def test_stop_during_backoff_cancels() -> None:
    client, calls = _client([httpx.Response(500)])
    stop = threading.Event()
    executor = RetryExecutor(stop_event=stop, sleep=lambda _d: stop.set())

    result = executor.execute(_request(client))

    assert result.error_kind is ErrorKind.CANCELLED
    assert len(calls) == 1


def test_parse_retry_after() -> None:
    assert parse_retry_after("3") == 3.0
    assert parse_retry_after("0") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
    assert parse_retry_after(None) is None


def test_redirect_loop_is_a_fatal_request_failure() -> None:
    calls: list[int] = []

    def loop(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(302, headers={"Location": str(request.url)})

    client = httpx.Client(transport=httpx.MockTransport(loop), follow_redirects=True)
    sleeps: list[float] = []
    executor = RetryExecutor(sleep=sleeps.append)

    result = executor.execute(_request(client), url=URL)

    assert not result.ok
    assert result.error_kind is ErrorKind.HTTP_STATUS
    assert "TooManyRedirects" in (result.error or "")
    assert result.attempts == 1
    assert sleeps == []
    assert executor.total_retries == 0


def test_undecodable_body_is_malformed() -> None:
    client, calls = _client([httpx.DecodingError("Error -3 while decompressing data")])
    executor = RetryExecutor(sleep=lambda _d: None)

    result = executor.execute(_request(client), url=URL)

    assert result.error_kind is ErrorKind.MALFORMED
    assert result.attempts == 1
    assert len(calls) == 1
