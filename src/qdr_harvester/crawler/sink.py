from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Iterable

from qdr_harvester.errors import OutputUnavailableError
from qdr_harvester.models import ensure_parent
from qdr_harvester.storage import safe_filename, write_json_atomic

logger = logging.getLogger(__name__)

_TAIL_BLOCK = 64 * 1024


def repair_tail(path: Path) -> int:
    """Truncate a partial last line left by an interrupted append.

    Returns the number of bytes removed.
    """

    if not path.exists():
        return 0
    with path.open("r+b") as handle:
        handle.seek(0, os.SEEK_END)
        size = handle.tell()
        if size == 0:
            return 0
        handle.seek(size - 1)
        if handle.read(1) == b"\n":
            return 0

        keep = 0
        pos = size
        while pos > 0:
            start = max(0, pos - _TAIL_BLOCK)
            handle.seek(start)
            block = handle.read(pos - start)
            idx = block.rfind(b"\n")
            if idx != -1:
                keep = start + idx + 1
                break
            pos = start
        handle.truncate(keep)
        handle.flush()
        os.fsync(handle.fileno())

    removed = size - keep
    logger.warning("Truncated %d bytes of partial record at end of %s", removed, path)
    return removed


class NdjsonSink:
    """Append-only NDJSON writer; one file per scope.

    The sink does not deduplicate; callers filter through the scope's
    ``DedupIndex`` first.
    """

    def __init__(self) -> None:
        self._checked: set[Path] = set()
        self._lock = threading.Lock()

    def prepare(self, path: Path) -> None:
        with self._lock:
            if path in self._checked:
                return
            self._checked.add(path)
        repair_tail(path)

    def append(self, path: Path, records: Iterable[Any]) -> int:
        lines = [json.dumps(record, ensure_ascii=False) + "\n" for record in records]
        if not lines:
            return 0
        try:
            ensure_parent(path)
            self.prepare(path)
            with path.open("a", encoding="utf-8") as handle:
                handle.writelines(lines)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise OutputUnavailableError(f"cannot append to {path}: {exc}") from exc
        return len(lines)


class FilePerRecordSink:
    """One JSON file per record under ``root``; existing files are skips."""

    def __init__(self, root: Path, suffix: str = ".json") -> None:
        self.root = root
        self.suffix = suffix

    def path_for(self, name: str) -> Path:
        return self.root / f"{safe_filename(name)}{self.suffix}"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def write(self, name: str, payload: Any) -> bool:
        path = self.path_for(name)
        if path.exists():
            return False
        try:
            ok = write_json_atomic(path, payload)
        except OSError as exc:
            raise OutputUnavailableError(f"cannot write {path}: {exc}") from exc
        if not ok:
            raise OutputUnavailableError(f"cannot write {path}")
        return True

    def overwrite(self, name: str, payload: Any) -> None:
        path = self.path_for(name)
        try:
            ok = write_json_atomic(path, payload)
        except OSError as exc:
            raise OutputUnavailableError(f"cannot write {path}: {exc}") from exc
        if not ok:
            raise OutputUnavailableError(f"cannot write {path}")


__all__ = ["FilePerRecordSink", "NdjsonSink", "repair_tail"]
