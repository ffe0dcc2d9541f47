from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

import httpx

from qdr_harvester.crawler.checkpoint import CheckpointStore, reconcile
from qdr_harvester.crawler.dedup import DedupIndex
from qdr_harvester.crawler.responses import decode_search_page
from qdr_harvester.crawler.retry import ErrorKind, FetchResult, RetryExecutor
from qdr_harvester.crawler.sink import NdjsonSink
from qdr_harvester.log_utils import log_event
from qdr_harvester.models import (
    CheckpointEntry,
    Scope,
    ScopeOutcome,
    ScopeState,
    record_identifier,
)

logger = logging.getLogger(__name__)

# (url, query params) for one page of one scope
PageRequest = tuple[str, Mapping[str, Any]]
RequestBuilder = Callable[[Scope, int, int], PageRequest]


@dataclass(frozen=True)
class ScopePaths:
    output: Path
    index: Path

    @classmethod
    def for_scope(cls, files_dir: Path, scope: str) -> ScopePaths:
        return cls(
            output=files_dir / f"{scope}.ndjson",
            index=files_dir / f"{scope}.index.json",
        )


class PaginationDriver:
    """Drive one search scope page by page until it completes or pauses.

    Page N+1 is only requested once page N is appended, its dedup index is
    saved and its checkpoint is committed.
    """

    def __init__(
        self,
        scope: Scope,
        *,
        client: httpx.Client,
        executor: RetryExecutor,
        store: CheckpointStore,
        sink: NdjsonSink,
        build_request: RequestBuilder,
        paths: ScopePaths,
        page_size: int = 10,
        max_pages: int = 10_000,
        max_malformed: int = 2,
        identify: Callable[[Any], str | None] = record_identifier,
        events_path: Path | None = None,
        stop_event: threading.Event | None = None,
        on_progress: Callable[[str], None] | None = None,
        on_complete: Callable[[Scope, CheckpointEntry], None] | None = None,
    ) -> None:
        self.scope = scope
        self.client = client
        self.executor = executor
        self.store = store
        self.sink = sink
        self.build_request = build_request
        self.paths = paths
        self.page_size = page_size
        self.max_pages = max_pages
        self.max_malformed = max_malformed
        self.identify = identify
        self.events_path = events_path
        self.stop_event = stop_event
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.state = ScopeState.INIT

    # -- helpers ---------------------------------------------------------

    def _outcome(self, entry: CheckpointEntry, error: str | None = None) -> ScopeOutcome:
        return ScopeOutcome(
            scope=self.scope.key,
            state=self.state,
            items=entry.total_items,
            pages=entry.total_pages,
            error=error,
        )

    def _load_entry(self) -> CheckpointEntry:
        entry = self.store.get(self.scope.key)
        if entry is None:
            entry = CheckpointEntry(scope=self.scope.key, file=self.paths.output.name)
        return entry

    def _complete(self, entry: CheckpointEntry, *, forced: bool = False) -> ScopeOutcome:
        if entry.mark_complete(forced=forced):
            self.store.commit(entry)
            if self.on_complete is not None:
                self.on_complete(self.scope, entry)
        self.state = ScopeState.COMPLETED
        logger.info(
            "[%s] completed: %d items over %d pages (offset=%d)%s",
            self.scope.key,
            entry.total_items,
            entry.total_pages,
            entry.offset,
            " [forced]" if forced else "",
        )
        return self._outcome(entry)

    def _pause(
        self,
        entry: CheckpointEntry,
        error: str,
        result: FetchResult | None = None,
    ) -> ScopeOutcome:
        entry.mark_paused(error)
        self.store.commit(entry)
        self.state = ScopeState.PAUSED
        logger.warning("[%s] paused at offset=%d: %s", self.scope.key, entry.offset, error)
        extra: dict[str, Any] = {}
        if result is not None:
            extra = {
                "url": result.url,
                "status": result.status_code,
                "attempts": result.attempts,
                "body": result.body_excerpt,
            }
        log_event(
            self.events_path,
            "paused",
            self.scope.key,
            offset=entry.offset,
            error=error,
            **extra,
        )
        return self._outcome(entry, error)

    def _interrupted(self, entry: CheckpointEntry) -> ScopeOutcome:
        self.state = ScopeState.PAUSED
        logger.info("[%s] stopping at offset=%d", self.scope.key, entry.offset)
        return self._outcome(entry, "interrupted")

    def _fetch(self, offset: int) -> FetchResult:
        url, params = self.build_request(self.scope, offset, self.page_size)
        display = str(httpx.URL(url, params=dict(params)))
        return self.executor.execute(
            lambda: self.client.get(url, params=dict(params)),
            url=display,
        )

    # -- state machine ---------------------------------------------------

    def run(self) -> ScopeOutcome:
        self.state = ScopeState.INIT
        entry = self._load_entry()
        if entry.completed:
            self.state = ScopeState.COMPLETED
            logger.debug("[%s] already completed; skipping", self.scope.key)
            return self._outcome(entry)

        self.sink.prepare(self.paths.output)
        if reconcile(entry, self.paths.output, self.page_size, self.events_path):
            self.store.commit(entry, allow_rewind=True)
        dedup = DedupIndex.warm(
            self.scope.key, self.paths.index, self.paths.output, self.identify
        )
        logger.info(
            "[%s] starting at offset=%d (%d known ids)",
            self.scope.key,
            entry.offset,
            len(dedup),
        )

        malformed = 0
        while True:
            if self.stop_event is not None and self.stop_event.is_set():
                return self._interrupted(entry)

            if entry.total_pages >= self.max_pages:
                logger.warning(
                    "[%s] page ceiling %d reached; forcing completion",
                    self.scope.key,
                    self.max_pages,
                )
                log_event(
                    self.events_path,
                    "forced_completion",
                    self.scope.key,
                    offset=entry.offset,
                    pages=entry.total_pages,
                )
                return self._complete(entry, forced=True)

            self.state = ScopeState.FETCHING
            result = self._fetch(entry.offset)

            if not result.ok:
                if result.error_kind is ErrorKind.CANCELLED:
                    return self._interrupted(entry)
                if result.error_kind is ErrorKind.MALFORMED:
                    malformed += 1
                    if malformed <= self.max_malformed:
                        logger.warning(
                            "[%s] malformed response at offset=%d (%d/%d); re-issuing",
                            self.scope.key,
                            entry.offset,
                            malformed,
                            self.max_malformed,
                        )
                        continue
                    self.state = ScopeState.FATAL_ERROR
                    return self._pause(entry, f"repeated malformed responses: {result.error}", result)
                if result.error_kind is ErrorKind.RETRIES_EXHAUSTED:
                    self.state = ScopeState.RETRIES_EXHAUSTED
                else:
                    self.state = ScopeState.FATAL_ERROR
                return self._pause(entry, result.describe(), result)

            page = decode_search_page(result.payload)
            if not page.recognized:
                malformed += 1
                if malformed <= self.max_malformed:
                    logger.warning(
                        "[%s] unrecognized response shape at offset=%d (%d/%d); re-issuing",
                        self.scope.key,
                        entry.offset,
                        malformed,
                        self.max_malformed,
                    )
                    continue
                self.state = ScopeState.FATAL_ERROR
                return self._pause(entry, "unrecognized response shape", result)
            malformed = 0

            if page.is_empty:
                self.state = ScopeState.EMPTY_PAGE
                return self._complete(entry)

            fresh = dedup.filter_new(page.items)
            written = self.sink.append(self.paths.output, fresh)
            dedup.mark_records(fresh)
            entry.advance(page_size=self.page_size, accepted=written)
            if not dedup.save():
                # The output is the source of truth; the next start rebuilds.
                logger.warning("[%s] could not save dedup index", self.scope.key)
            self.store.commit(entry)
            self.state = ScopeState.PAGE_ACCEPTED
            logger.debug(
                "[%s] page %d: %d raw, %d new (offset=%d)",
                self.scope.key,
                entry.total_pages,
                len(page.items),
                written,
                entry.offset,
            )
            if self.on_progress is not None:
                self.on_progress(self.scope.key)

            if page.pagination is not None and page.pagination.is_last:
                logger.info(
                    "[%s] last page per paginationInfos (%d/%d)",
                    self.scope.key,
                    page.pagination.current_page,
                    page.pagination.total_pages,
                )
                return self._complete(entry)


__all__ = ["PageRequest", "PaginationDriver", "RequestBuilder", "ScopePaths"]
