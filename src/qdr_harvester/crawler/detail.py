from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping

import httpx

from qdr_harvester.crawler.checkpoint import CheckpointStore, PeriodicFlusher
from qdr_harvester.crawler.pool import BoundedExecutor
from qdr_harvester.crawler.retry import ErrorKind, FetchResult, RetryExecutor
from qdr_harvester.crawler.sink import FilePerRecordSink
from qdr_harvester.errors import FatalProcessError
from qdr_harvester.log_utils import append_jsonl, log_event
from qdr_harvester.models import (
    DetailCheckpoint,
    DetailScope,
    ScopeOutcome,
    ScopeState,
    id_from_uri,
    utc_now,
)
from qdr_harvester.storage import iter_ndjson, read_json

logger = logging.getLogger(__name__)

RING_SIZE = 100

# (position, uri or None) pairs after a resume position
UriSource = Callable[[Path, int], Iterator[tuple[int, str | None]]]
UrlBuilder = Callable[[str], tuple[str, Mapping[str, Any]]]


def _uri_of(obj: Any) -> str | None:
    if isinstance(obj, str):
        return obj.strip() or None
    if isinstance(obj, Mapping):
        uri = obj.get("uri")
        return str(uri) if uri else None
    return None


def ndjson_uris(path: Path, start: int = 0) -> Iterator[tuple[int, str | None]]:
    """``uri`` of each NDJSON line, keyed by 1-based line number."""

    for line_no, obj in iter_ndjson(path, start_line=start):
        yield line_no, _uri_of(obj)


def index_uris(path: Path, start: int = 0) -> Iterator[tuple[int, str | None]]:
    """Entries of a JSON list of URIs, keyed by 1-based position."""

    data = read_json(path)
    if not isinstance(data, list):
        raise ValueError(f"{path} is not a JSON list of URIs")
    for position, item in enumerate(data, start=1):
        if position <= start:
            continue
        yield position, _uri_of(item)


class Watermark:
    """Highest position such that it and everything before it has finished.

    Positions must be started in increasing order.
    """

    def __init__(self, start: int = 0) -> None:
        self._highest = start
        self._inflight: set[int] = set()
        self._lock = threading.Lock()

    def start(self, position: int) -> None:
        with self._lock:
            self._inflight.add(position)
            self._highest = max(self._highest, position)

    def finish(self, position: int) -> None:
        with self._lock:
            self._inflight.discard(position)

    @property
    def value(self) -> int:
        with self._lock:
            if self._inflight:
                return min(self._inflight) - 1
            return self._highest

    @property
    def inflight(self) -> int:
        with self._lock:
            return len(self._inflight)


class DetailFetcher:
    """Resolve every URI of one source file into a per-record JSON file.

    Requests run in parallel through a ``BoundedExecutor``. The resume
    cursor (``lastLine``) only moves past lines whose processing finished,
    so requests abandoned on shutdown are retried on the next run.
    """

    def __init__(
        self,
        scope: DetailScope,
        *,
        client: httpx.Client,
        executor: RetryExecutor,
        store: CheckpointStore,
        source: UriSource,
        build_url: UrlBuilder,
        error_sink: FilePerRecordSink | None = None,
        request_concurrency: int = 100,
        milestone_every: int = 100,
        flush_interval: float = 3.0,
        failures_path: Path | None = None,
        events_path: Path | None = None,
        stop_event: threading.Event | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self.scope = scope
        self.client = client
        self.executor = executor
        self.store = store
        self.source = source
        self.build_url = build_url
        self.data_sink = FilePerRecordSink(scope.out_dir)
        self.error_sink = error_sink
        self.request_concurrency = request_concurrency
        self.milestone_every = milestone_every
        self.flush_interval = flush_interval
        self.failures_path = failures_path
        self.events_path = events_path
        self.stop_event = stop_event or threading.Event()
        self.on_progress = on_progress

        self._lock = threading.Lock()
        self._dirty = False
        self._abort = threading.Event()
        self._fatal: BaseException | None = None
        self.recent_ok: deque[dict[str, Any]] = deque(maxlen=RING_SIZE)
        self.recent_fail: deque[dict[str, Any]] = deque(maxlen=RING_SIZE)
        self.checkpoint = DetailCheckpoint(scope=scope.key, source=str(scope.source))
        self.watermark = Watermark()

    # -- bookkeeping -----------------------------------------------------

    def _outcome(self, state: ScopeState, error: str | None = None) -> ScopeOutcome:
        return ScopeOutcome(
            scope=self.scope.key,
            state=state,
            items=self.checkpoint.succeeded,
            error=error,
        )

    def flush(self, *, force: bool = False) -> None:
        with self._lock:
            if not (self._dirty or force):
                return
            self.checkpoint.last_line = max(self.checkpoint.last_line, self.watermark.value)
            self.checkpoint.touch()
            self.store.commit(self.checkpoint)
            self._dirty = False

    def _milestone(self) -> None:
        cp = self.checkpoint
        logger.info(
            "[%s] milestone: line=%d attempted=%d ok=%d failed=%d skipped=%d",
            self.scope.key,
            self.watermark.value,
            cp.attempted,
            cp.succeeded,
            cp.failed,
            cp.skipped_existing,
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[%s] last successes: %s", self.scope.key, list(self.recent_ok))
            logger.debug("[%s] last failures: %s", self.scope.key, list(self.recent_fail))

    def _record_failure(
        self,
        position: int,
        ident: str,
        uri: str | None,
        error: str,
        result: FetchResult | None = None,
    ) -> None:
        with self._lock:
            self.checkpoint.failed += 1
            self._dirty = True
            self.recent_fail.append({"line": position, "id": ident, "error": error})
            milestone = self.checkpoint.failed % self.milestone_every == 0
        record: dict[str, Any] = {
            "at": utc_now(),
            "scope": self.scope.key,
            "line": position,
            "id": ident,
            "uri": uri,
            "error": error,
        }
        if result is not None:
            record["status"] = result.status_code
            record["attempts"] = result.attempts
            record["body"] = result.body_excerpt
        if self.failures_path is not None:
            append_jsonl(self.failures_path, [record])
        if self.error_sink is not None and result is not None and result.status_code:
            self.error_sink.overwrite(
                ident,
                {
                    "uri": uri,
                    "url": result.url,
                    "status": result.status_code,
                    "error": error,
                    "body": result.body_excerpt,
                    "at": record["at"],
                },
            )
        logger.debug("[%s] line %d (%s) failed: %s", self.scope.key, position, ident, error)
        if milestone:
            self._milestone()
            self.flush(force=True)

    def _record_success(self, position: int, ident: str, written: bool) -> None:
        with self._lock:
            if written:
                self.checkpoint.succeeded += 1
            else:
                self.checkpoint.skipped_existing += 1
            self._dirty = True
            self.recent_ok.append({"line": position, "id": ident})
            milestone = written and self.checkpoint.succeeded % self.milestone_every == 0
        if self.on_progress is not None:
            self.on_progress(self.scope.key)
        if milestone:
            self._milestone()
            self.flush(force=True)

    # -- work ------------------------------------------------------------

    def _fetch_one(self, position: int, uri: str, ident: str) -> None:
        url, params = self.build_url(uri)
        result = self.executor.execute(
            lambda: self.client.get(url, params=dict(params)),
            url=uri,
        )
        if result.error_kind is ErrorKind.CANCELLED:
            # Left in flight on purpose: the watermark stays below it.
            return
        with self._lock:
            self.checkpoint.attempted += 1
        if result.ok:
            written = self.data_sink.write(ident, result.payload)
            self._record_success(position, ident, written)
        else:
            self._record_failure(position, ident, uri, result.describe(), result)
        # Not reached when a write fails, so the watermark stays below it.
        self.watermark.finish(position)

    def _on_done(self, future: Future[Any]) -> None:
        exc = future.exception()
        if exc is None:
            return
        with self._lock:
            if self._fatal is None:
                self._fatal = exc
        self._abort.set()

    def _skip(self, position: int) -> None:
        self.watermark.start(position)
        self.watermark.finish(position)

    def run(self) -> ScopeOutcome:
        saved = self.store.get(self.scope.key)
        if saved is not None:
            self.checkpoint = saved
        if self.checkpoint.completed:
            logger.debug("[%s] already completed; skipping", self.scope.key)
            return self._outcome(ScopeState.COMPLETED)
        if not self.scope.source.exists():
            error = f"source file {self.scope.source} not found"
            logger.warning("[%s] %s", self.scope.key, error)
            log_event(self.events_path, "paused", self.scope.key, error=error)
            return self._outcome(ScopeState.PAUSED, error)

        self.watermark = Watermark(self.checkpoint.last_line)
        logger.info(
            "[%s] resolving %s from line %d",
            self.scope.key,
            self.scope.source.name,
            self.checkpoint.last_line + 1,
        )

        flusher = PeriodicFlusher(self.flush_interval, self.flush, name=f"flush-{self.scope.key}")
        with flusher:
            with BoundedExecutor(
                self.request_concurrency,
                self.request_concurrency * 2,
                name=f"detail-{self.scope.key}",
            ) as pool:
                for position, uri in self.source(self.scope.source, self.checkpoint.last_line):
                    if self.stop_event.is_set() or self._abort.is_set():
                        break
                    if flusher.error is not None:
                        self._fatal = flusher.error
                        break
                    if uri is None:
                        self._record_failure(position, "-", None, "no uri")
                        self._skip(position)
                        continue
                    ident = id_from_uri(uri)
                    if ident is None:
                        self._record_failure(position, "-", uri, "cannot derive id from uri")
                        self._skip(position)
                        continue
                    if self.data_sink.exists(ident):
                        self._record_success(position, ident, written=False)
                        self._skip(position)
                        continue
                    self.watermark.start(position)
                    future = pool.submit(self._fetch_one, position, uri, ident)
                    future.add_done_callback(self._on_done)

        if self._fatal is not None:
            self.flush(force=True)
            if isinstance(self._fatal, FatalProcessError):
                raise self._fatal
            raise RuntimeError(f"detail worker failed: {self._fatal}") from self._fatal

        if self.stop_event.is_set():
            self.flush(force=True)
            logger.info("[%s] stopping at line %d", self.scope.key, self.checkpoint.last_line)
            return self._outcome(ScopeState.PAUSED, "interrupted")

        self.checkpoint.mark_complete()
        self.flush(force=True)
        self._milestone()
        logger.info(
            "[%s] done: %d written, %d failed, %d already present",
            self.scope.key,
            self.checkpoint.succeeded,
            self.checkpoint.failed,
            self.checkpoint.skipped_existing,
        )
        return self._outcome(ScopeState.COMPLETED)


__all__ = [
    "DetailFetcher",
    "RING_SIZE",
    "UriSource",
    "UrlBuilder",
    "Watermark",
    "index_uris",
    "ndjson_uris",
]
