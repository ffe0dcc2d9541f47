from __future__ import annotations

import threading
import time

import pytest

from qdr_harvester.crawler.pool import BoundedExecutor, ScopePool
from qdr_harvester.errors import CheckpointStoreError
from qdr_harvester.models import ScopeOutcome, ScopeState


def _done(key: str, items: int = 1) -> ScopeOutcome:
    return ScopeOutcome(scope=key, state=ScopeState.COMPLETED, items=items)


def test_failing_scope_does_not_affect_siblings() -> None:
    errors: list[str] = []

    def worker(key: str) -> ScopeOutcome:
        if key == "FRA_eqf3":
            raise RuntimeError("boom")
        return _done(key)

    pool: ScopePool[str] = ScopePool(3, on_error=lambda key, _exc: errors.append(key))
    outcomes = pool.run(["DEU_eqf4", "FRA_eqf3", "ITA_eqf5"], worker, key=lambda k: k)

    assert [o.scope for o in outcomes] == ["DEU_eqf4", "FRA_eqf3", "ITA_eqf5"]
    assert [o.state for o in outcomes] == [
        ScopeState.COMPLETED,
        ScopeState.PAUSED,
        ScopeState.COMPLETED,
    ]
    assert outcomes[1].error == "RuntimeError: boom"
    assert errors == ["FRA_eqf3"]


def test_concurrency_is_bounded() -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def worker(key: str) -> ScopeOutcome:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1
        return _done(key)

    pool: ScopePool[str] = ScopePool(2)
    outcomes = pool.run([f"s{i}" for i in range(8)], worker, key=lambda k: k)

    assert len(outcomes) == 8
    assert peak <= 2


def test_fatal_error_stops_the_run_and_is_reraised() -> None:
    stop = threading.Event()

    def worker(key: str) -> ScopeOutcome:
        if key == "bad":
            raise CheckpointStoreError("disk gone")
        return _done(key)

    pool: ScopePool[str] = ScopePool(1, stop_event=stop)
    with pytest.raises(CheckpointStoreError):
        pool.run(["bad", "later"], worker, key=lambda k: k)
    assert stop.is_set()


def test_units_after_stop_are_not_started() -> None:
    stop = threading.Event()
    stop.set()
    started: list[str] = []

    def worker(key: str) -> ScopeOutcome:
        started.append(key)
        return _done(key)

    outcomes = ScopePool(2, stop_event=stop).run(["a", "b"], worker, key=lambda k: k)

    assert started == []
    assert all(o.error == "not started" for o in outcomes)


def test_bounded_executor_blocks_when_full() -> None:
    release = threading.Event()
    executor = BoundedExecutor(1, max_pending=2)
    executor.submit(release.wait)
    executor.submit(release.wait)

    submitted = threading.Event()

    def third() -> None:
        executor.submit(lambda: None)
        submitted.set()

    thread = threading.Thread(target=third)
    thread.start()
    assert not submitted.wait(0.1)

    release.set()
    assert submitted.wait(2.0)
    thread.join(timeout=2.0)
    executor.shutdown()
