from __future__ import annotations

import logging
import os
import signal
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, TypeVar

from qdr_harvester.crawler.checkpoint import CheckpointStore
from qdr_harvester.crawler.pool import ScopePool
from qdr_harvester.crawler.rate_limiter import TokenBucket
from qdr_harvester.crawler.retry import RetryExecutor
from qdr_harvester.errors import CheckpointStoreError, FatalProcessError
from qdr_harvester.models import RunSummary, ScopeOutcome
from qdr_harvester.settings import CrawlSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Heartbeat:
    """Periodic liveness log; warns when no progress is seen for a while."""

    def __init__(
        self,
        interval: float = 60.0,
        stall_after: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = interval
        self.stall_after = stall_after
        self._clock = clock
        self._lock = threading.Lock()
        self._last = clock()
        self.updates = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def beat(self, _scope: str | None = None) -> None:
        with self._lock:
            self._last = self._clock()
            self.updates += 1

    def idle_seconds(self) -> float:
        with self._lock:
            return self._clock() - self._last

    def check(self) -> bool:
        """Log one heartbeat line; return True when the run looks stalled."""

        idle = self.idle_seconds()
        if idle > self.stall_after:
            logger.warning(
                "No progress for %.0fs (%d updates so far); the run may be stalled",
                idle,
                self.updates,
            )
            return True
        logger.info("Heartbeat: last progress %.0fs ago (%d updates)", idle, self.updates)
        return False

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.check()

    def start(self) -> Heartbeat:
        self._thread = threading.Thread(target=self._run, name="heartbeat", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=1.0)

    def __enter__(self) -> Heartbeat:
        return self.start()

    def __exit__(self, *_exc: object) -> None:
        self.stop()


class CrawlRun:
    """Shared state of one crawl invocation.

    Owns the stop event, the process-wide rate limiter and retry executor,
    the heartbeat and every checkpoint store that must be flushed on exit.
    """

    def __init__(
        self,
        settings: CrawlSettings,
        *,
        stop_event: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self.stop_event = stop_event or threading.Event()
        self.limiter = TokenBucket(settings.max_rps, settings.rate_interval)
        self.executor = RetryExecutor(
            max_retries=settings.max_retries,
            initial_backoff=settings.initial_backoff,
            jitter=settings.jitter,
            limiter=self.limiter,
            stop_event=self.stop_event,
            sleep=sleep,
        )
        self.heartbeat = Heartbeat(settings.heartbeat_interval, settings.stall_after)
        self.interrupted = False
        self._stores: list[CheckpointStore] = []
        self._signals = 0
        self._flushers: list[Callable[[], None]] = []

    def register_store(self, store: CheckpointStore) -> CheckpointStore:
        self._stores.append(store)
        return store

    def register_flush(self, flush: Callable[[], None]) -> None:
        """Extra flush hook (e.g. detail counters) run alongside the stores."""

        self._flushers.append(flush)

    def request_stop(self) -> None:
        self.interrupted = True
        self.stop_event.set()
        self.limiter.close()

    def flush_all(self) -> None:
        for flush in self._flushers:
            try:
                flush()
            except CheckpointStoreError as exc:
                logger.error("Flush failed: %s", exc)
        for store in self._stores:
            try:
                store.flush()
            except CheckpointStoreError as exc:
                logger.error("Checkpoint flush failed: %s", exc)

    def handle_signal(self, signum: int, _frame: Any = None) -> None:
        self._signals += 1
        name = signal.Signals(signum).name
        if self._signals > 1:
            logger.error("Received %s again; exiting immediately", name)
            os._exit(130)
        logger.warning("Received %s; flushing checkpoints and stopping", name)
        self.request_stop()
        self.flush_all()

    @contextmanager
    def signal_handlers(self) -> Iterator[None]:
        """Route SIGINT/SIGTERM to ``handle_signal`` (main thread only)."""

        if threading.current_thread() is not threading.main_thread():
            yield
            return
        previous = {
            sig: signal.signal(sig, self.handle_signal)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def run(
        self,
        units: Iterable[T],
        worker: Callable[[T], ScopeOutcome],
        key: Callable[[T], str],
        *,
        concurrency: int | None = None,
        on_error: Callable[[str, BaseException], None] | None = None,
    ) -> RunSummary:
        pool: ScopePool[T] = ScopePool(
            concurrency or self.settings.scope_concurrency,
            stop_event=self.stop_event,
            on_error=on_error,
        )
        try:
            with self.heartbeat:
                outcomes = pool.run(units, worker, key)
        except FatalProcessError:
            self.stop_event.set()
            self.flush_all()
            raise
        finally:
            self.limiter.close()

        self.flush_all()
        summary = RunSummary(outcomes=outcomes, interrupted=self.interrupted)
        logger.info(
            "Run finished: %d completed, %d paused, %d items",
            len(summary.completed),
            len(summary.paused),
            summary.total_items,
        )
        return summary


__all__ = ["CrawlRun", "Heartbeat"]
