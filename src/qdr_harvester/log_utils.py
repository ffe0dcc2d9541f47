from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Mapping

from qdr_harvester.models import ensure_parent, utc_now

_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(threadName)s %(name)s: %(message)s"
_append_lock = threading.Lock()


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT, force=True)
    # httpx logs every request at INFO; keep it for --verbose only.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def write_jsonl(path: Path, records: Iterable[Mapping[str, object]]) -> None:
    ensure_parent(path)
    with path.open("w", encoding="utf-8") as handle:
        for record in records:
            handle.write(json.dumps(record, ensure_ascii=False))
            handle.write("\n")


def append_jsonl(path: Path, records: Iterable[Mapping[str, object]]) -> None:
    ensure_parent(path)
    lines = [json.dumps(record, ensure_ascii=False) + "\n" for record in records]
    if not lines:
        return
    with _append_lock:
        with path.open("a", encoding="utf-8") as handle:
            handle.writelines(lines)


def log_event(path: Path | None, kind: str, scope: str, **fields: Any) -> None:
    """Append one structured event (pause, reconcile, forced completion)."""

    if path is None:
        return
    event: dict[str, Any] = {"at": utc_now(), "kind": kind, "scope": scope}
    event.update(fields)
    append_jsonl(path, [event])


__all__ = ["append_jsonl", "configure_logging", "log_event", "write_jsonl"]
