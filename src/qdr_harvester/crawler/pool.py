from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Any, Callable, Generic, Iterable, TypeVar

from qdr_harvester.errors import FatalProcessError
from qdr_harvester.models import ScopeOutcome, ScopeState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BoundedExecutor:
    """Thread pool whose ``submit`` blocks once ``max_pending`` tasks are queued.

    Used for detail fetches, where a scope may hold millions of URIs but only
    a bounded number may be in flight or queued at once.
    """

    def __init__(
        self,
        max_workers: int,
        max_pending: int | None = None,
        *,
        name: str = "request",
    ) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._slots = threading.BoundedSemaphore(max_pending or max_workers)

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future[Any]:
        self._slots.acquire()
        try:
            future = self._pool.submit(fn, *args, **kwargs)
        except BaseException:
            self._slots.release()
            raise
        future.add_done_callback(lambda _f: self._slots.release())
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> BoundedExecutor:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.shutdown(wait=True)


class ScopePool(Generic[T]):
    """Run scope workers in parallel, at most ``concurrency`` at a time.

    A worker that raises is attributed to its scope and reported as paused;
    only ``FatalProcessError`` stops the whole run.
    """

    def __init__(
        self,
        concurrency: int,
        *,
        stop_event: threading.Event | None = None,
        on_error: Callable[[str, BaseException], None] | None = None,
    ) -> None:
        self.concurrency = concurrency
        self.stop_event = stop_event or threading.Event()
        self.on_error = on_error

    def _guarded(self, worker: Callable[[T], ScopeOutcome], unit: T, key: str) -> ScopeOutcome:
        if self.stop_event.is_set():
            return ScopeOutcome(scope=key, state=ScopeState.PAUSED, error="not started")
        try:
            return worker(unit)
        except FatalProcessError:
            raise
        except Exception as exc:
            logger.exception("[%s] worker failed", key)
            error = f"{type(exc).__name__}: {exc}"
            if self.on_error is not None:
                self.on_error(key, exc)
            return ScopeOutcome(scope=key, state=ScopeState.PAUSED, error=error)

    def run(
        self,
        units: Iterable[T],
        worker: Callable[[T], ScopeOutcome],
        key: Callable[[T], str],
    ) -> list[ScopeOutcome]:
        ordered: list[str] = []
        outcomes: dict[str, ScopeOutcome] = {}
        fatal: FatalProcessError | None = None

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="scope"
        ) as pool:
            futures: dict[Future[ScopeOutcome], str] = {}
            for unit in units:
                name = key(unit)
                ordered.append(name)
                futures[pool.submit(self._guarded, worker, unit, name)] = name

            for future in as_completed(futures):
                name = futures[future]
                try:
                    outcomes[name] = future.result()
                except FatalProcessError as exc:
                    logger.error("[%s] fatal error, stopping run: %s", name, exc)
                    self.stop_event.set()
                    if fatal is None:
                        fatal = exc
                    outcomes[name] = ScopeOutcome(
                        scope=name, state=ScopeState.FATAL_ERROR, error=str(exc)
                    )

        if fatal is not None:
            raise fatal
        return [outcomes[name] for name in ordered]


__all__ = ["BoundedExecutor", "ScopePool"]
