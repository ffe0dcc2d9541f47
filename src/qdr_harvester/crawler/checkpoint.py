from __future__ import annotations

import copy
import logging
import shutil
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from qdr_harvester.errors import CheckpointStoreError
from qdr_harvester.log_utils import log_event
from qdr_harvester.models import CheckpointEntry
from qdr_harvester.storage import count_records, read_json, safe_filename, write_json_atomic

logger = logging.getLogger(__name__)

EntryFactory = Callable[[str, Mapping[str, Any]], Any]


class CheckpointStore:
    """Durable resume state keyed by scope.

    In document mode ``path`` is one JSON file holding every scope. In
    per-scope mode ``path`` is a directory of ``<scope>_meta.json`` files.
    Callers hand in their working entry via ``commit``; the store keeps its
    own copy, so a flush never serializes a half-updated entry. All file
    writes go through one lock.
    """

    def __init__(
        self,
        path: Path,
        *,
        per_scope: bool = False,
        factory: EntryFactory = CheckpointEntry.from_dict,
        max_consecutive_failures: int = 3,
        rename_attempts: int = 5,
        rename_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = path
        self.per_scope = per_scope
        self.factory = factory
        self.max_consecutive_failures = max_consecutive_failures
        self.rename_attempts = rename_attempts
        self.rename_delay = rename_delay
        self._sleep = sleep
        self._entries: dict[str, Any] = {}
        self._lock = threading.RLock()
        self._failures = 0
        self.saves = 0

    # -- loading ---------------------------------------------------------

    def file_for(self, scope: str) -> Path:
        if not self.per_scope:
            return self.path
        return self.path / f"{safe_filename(scope)}_meta.json"

    def _backup_corrupted(self, path: Path) -> None:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup = path.with_name(f"{path.name}.corrupted.{stamp}")
        try:
            shutil.copy2(path, backup)
            logger.error("Checkpoint %s is corrupt; copied to %s", path, backup.name)
        except OSError as exc:
            logger.error("Checkpoint %s is corrupt and could not be backed up: %s", path, exc)

    def _build(self, scope: str, raw: Mapping[str, Any], source: Path) -> Any | None:
        try:
            return self.factory(scope, raw)
        except (TypeError, ValueError) as exc:
            logger.error("[%s] unreadable checkpoint fields in %s: %s", scope, source, exc)
            self._backup_corrupted(source)
            return None

    def _load_document(self) -> dict[str, Any]:
        data = read_json(self.path)
        if data is None:
            if self.path.exists():
                self._backup_corrupted(self.path)
            return {}
        if not isinstance(data, dict):
            self._backup_corrupted(self.path)
            return {}
        entries: dict[str, Any] = {}
        for scope, raw in data.items():
            if not isinstance(raw, Mapping):
                continue
            entry = self._build(str(scope), raw, self.path)
            if entry is not None:
                entries[str(scope)] = entry
        return entries

    def _load_directory(self) -> dict[str, Any]:
        entries: dict[str, Any] = {}
        if not self.path.is_dir():
            return entries
        for file in sorted(self.path.glob("*_meta.json")):
            data = read_json(file)
            if not isinstance(data, Mapping):
                if file.exists():
                    self._backup_corrupted(file)
                continue
            scope = str(data.get("scope") or file.name[: -len("_meta.json")])
            entry = self._build(scope, data, file)
            if entry is not None:
                entries[scope] = entry
        return entries

    def load(self) -> dict[str, Any]:
        with self._lock:
            if self.per_scope:
                self._entries = self._load_directory()
            else:
                self._entries = self._load_document()
            return {scope: copy.copy(entry) for scope, entry in self._entries.items()}

    # -- access ----------------------------------------------------------

    def get(self, scope: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(scope)
            return copy.copy(entry) if entry is not None else None

    def scopes(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {scope: self._entries[scope].to_dict() for scope in sorted(self._entries)}

    # -- writes ----------------------------------------------------------

    def _check_monotonic(self, entry: Any) -> None:
        previous = self._entries.get(entry.scope)
        if previous is None:
            return
        for attr in ("offset", "last_line"):
            if hasattr(entry, attr) and getattr(entry, attr) < getattr(previous, attr):
                raise ValueError(
                    f"[{entry.scope}] refusing to move {attr} back "
                    f"({getattr(previous, attr)} -> {getattr(entry, attr)})"
                )
        if previous.completed and not entry.completed:
            raise ValueError(f"[{entry.scope}] refusing to reopen a completed scope")

    def stage(self, entry: Any, *, allow_rewind: bool = False) -> None:
        """Record ``entry`` in memory without writing it."""

        with self._lock:
            if not allow_rewind:
                self._check_monotonic(entry)
            self._entries[entry.scope] = copy.copy(entry)

    def commit(self, entry: Any, *, allow_rewind: bool = False) -> None:
        with self._lock:
            self.stage(entry, allow_rewind=allow_rewind)
            self._write_locked(entry.scope)

    def flush(self) -> None:
        with self._lock:
            if self.per_scope:
                for scope in list(self._entries):
                    self._write_locked(scope)
            else:
                self._write_locked(None)

    def reset(self, scope: str) -> bool:
        with self._lock:
            if scope not in self._entries:
                return False
            del self._entries[scope]
            if self.per_scope:
                self.file_for(scope).unlink(missing_ok=True)
            else:
                self._write_locked(None)
            return True

    def _write_locked(self, scope: str | None) -> None:
        if self.per_scope and scope is not None:
            target = self.file_for(scope)
            document: Any = self._entries[scope].to_dict()
        else:
            target = self.path
            document = {key: self._entries[key].to_dict() for key in sorted(self._entries)}

        ok = write_json_atomic(
            target,
            document,
            attempts=self.rename_attempts,
            delay=self.rename_delay,
            sleep=self._sleep,
        )
        if ok:
            self._failures = 0
            self.saves += 1
            return
        self._failures += 1
        logger.error(
            "Checkpoint save to %s failed (%d consecutive)", target, self._failures
        )
        if self._failures >= self.max_consecutive_failures:
            raise CheckpointStoreError(
                f"checkpoint store {target} unwritable after {self._failures} attempts"
            )


def reconcile(
    entry: CheckpointEntry,
    output_path: Path,
    page_size: int,
    events_path: Path | None = None,
) -> bool:
    """Check ``entry`` against its NDJSON output; adjust it conservatively.

    Returns True when the entry was changed. Every mismatch is reported as a
    warning and an ``events.jsonl`` record rather than silently corrected.
    """

    lines = count_records(output_path)
    if not output_path.exists():
        if entry.offset == 0 and entry.total_items == 0:
            return False
        if entry.completed:
            logger.warning(
                "[%s] completed scope has no output file %s", entry.scope, output_path
            )
            log_event(events_path, "output_missing", entry.scope, offset=entry.offset)
            return False
        logger.warning(
            "[%s] %s missing but checkpoint offset=%d; restarting scope from 0",
            entry.scope,
            output_path.name,
            entry.offset,
        )
        log_event(
            events_path,
            "reconciled",
            entry.scope,
            reason="output_missing",
            old_offset=entry.offset,
            new_offset=0,
        )
        entry.offset = 0
        entry.total_items = 0
        entry.total_pages = 0
        entry.touch()
        return True

    if lines == entry.total_items:
        return False

    if lines > entry.total_items:
        # Crash between append and checkpoint: the page is re-fetched and
        # dedup absorbs it, so only the counter needs fixing.
        logger.warning(
            "[%s] output has %d records but checkpoint says %d; keeping offset=%d",
            entry.scope,
            lines,
            entry.total_items,
            entry.offset,
        )
        log_event(
            events_path,
            "reconciled",
            entry.scope,
            reason="output_ahead",
            records=lines,
            recorded=entry.total_items,
            offset=entry.offset,
        )
        entry.total_items = lines
        entry.touch()
        return True

    if entry.completed:
        logger.warning(
            "[%s] completed scope lost records: output has %d, checkpoint %d",
            entry.scope,
            lines,
            entry.total_items,
        )
        log_event(
            events_path,
            "output_truncated",
            entry.scope,
            records=lines,
            recorded=entry.total_items,
        )
        return False

    inferred = min(entry.offset, (lines // page_size) * page_size)
    logger.warning(
        "[%s] output has %d records but checkpoint says %d; offset %d -> %d",
        entry.scope,
        lines,
        entry.total_items,
        entry.offset,
        inferred,
    )
    log_event(
        events_path,
        "reconciled",
        entry.scope,
        reason="output_behind",
        records=lines,
        recorded=entry.total_items,
        old_offset=entry.offset,
        new_offset=inferred,
    )
    entry.offset = inferred
    entry.total_items = lines
    entry.total_pages = inferred // page_size
    entry.touch()
    return True


class PeriodicFlusher:
    """Call ``flush`` every ``interval`` seconds until stopped."""

    def __init__(self, interval: float, flush: Callable[[], None], name: str = "flusher") -> None:
        self.interval = interval
        self._flush = flush
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.error: BaseException | None = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._flush()
            except CheckpointStoreError as exc:
                self.error = exc
                logger.error("Periodic flush stopped: %s", exc)
                return

    def start(self) -> PeriodicFlusher:
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=self.interval + 1)

    def __enter__(self) -> PeriodicFlusher:
        return self.start()

    def __exit__(self, *_exc: object) -> None:
        self.stop()


__all__ = ["CheckpointStore", "PeriodicFlusher", "reconcile"]
