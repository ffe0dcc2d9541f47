from __future__ import annotations

import signal
from pathlib import Path

import pytest

from qdr_harvester.crawler.checkpoint import CheckpointStore
from qdr_harvester.crawler.runner import CrawlRun, Heartbeat
from qdr_harvester.errors import OutputUnavailableError
from qdr_harvester.models import CheckpointEntry, RunSummary, ScopeOutcome, ScopeState
from qdr_harvester.settings import CrawlSettings


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_heartbeat_detects_stall() -> None:
    clock = _Clock()
    heartbeat = Heartbeat(interval=60, stall_after=300, clock=clock)

    clock.now = 200
    assert not heartbeat.check()

    clock.now = 400
    assert heartbeat.check()

    heartbeat.beat("DEU_eqf4")
    assert heartbeat.idle_seconds() == 0
    assert heartbeat.updates == 1
    assert not heartbeat.check()


def test_exit_codes() -> None:
    done = ScopeOutcome(scope="a", state=ScopeState.COMPLETED, items=3)
    paused = ScopeOutcome(scope="b", state=ScopeState.PAUSED, error="HTTP 404")

    assert RunSummary(outcomes=[done]).exit_code == 0
    assert RunSummary(outcomes=[done, paused]).exit_code == 3
    assert RunSummary(outcomes=[done], interrupted=True).exit_code == 130
    assert RunSummary(outcomes=[done, paused]).total_items == 3


def test_run_collects_outcomes_and_flushes(tmp_path: Path) -> None:
    run = CrawlRun(CrawlSettings(scope_concurrency=2))
    store = run.register_store(CheckpointStore(tmp_path / "meta.json"))
    store.stage(CheckpointEntry(scope="a", file="a.ndjson", offset=10))

    summary = run.run(
        ["a", "b"],
        lambda key: ScopeOutcome(scope=key, state=ScopeState.COMPLETED, items=5),
        key=lambda k: k,
    )

    assert summary.exit_code == 0
    assert summary.total_items == 10
    assert (tmp_path / "meta.json").exists()
    assert store.saves == 1


def test_fatal_error_flushes_and_propagates(tmp_path: Path) -> None:
    run = CrawlRun(CrawlSettings())
    flushed: list[bool] = []
    run.register_flush(lambda: flushed.append(True))

    def worker(_key: str) -> ScopeOutcome:
        raise OutputUnavailableError("read-only filesystem")

    with pytest.raises(OutputUnavailableError):
        run.run(["a"], worker, key=lambda k: k)
    assert run.stop_event.is_set()
    assert flushed == [True]


def test_first_signal_requests_graceful_stop(tmp_path: Path) -> None:
    run = CrawlRun(CrawlSettings())
    store = run.register_store(CheckpointStore(tmp_path / "meta.json"))
    store.stage(CheckpointEntry(scope="a", file="a.ndjson", offset=20))

    run.handle_signal(signal.SIGINT)

    assert run.interrupted
    assert run.stop_event.is_set()
    assert (tmp_path / "meta.json").exists()


def test_second_signal_exits_immediately(monkeypatch: pytest.MonkeyPatch) -> None:
    codes: list[int] = []
    monkeypatch.setattr("qdr_harvester.crawler.runner.os._exit", codes.append)
    run = CrawlRun(CrawlSettings())

    run.handle_signal(signal.SIGTERM)
    run.handle_signal(signal.SIGTERM)

    assert codes == [130]


def test_interrupted_run_reports_130() -> None:
    run = CrawlRun(CrawlSettings())

    def worker(key: str) -> ScopeOutcome:
        run.request_stop()
        return ScopeOutcome(scope=key, state=ScopeState.PAUSED, error="interrupted")

    summary = run.run(["a"], worker, key=lambda k: k)
    assert summary.interrupted
    assert summary.exit_code == 130
