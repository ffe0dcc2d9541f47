from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TextIO

from qdr_harvester.models import ensure_parent

logger = logging.getLogger(__name__)

_replace: Callable[[Path, Path], None] = os.replace


def safe_filename(name: str) -> str:
    cleaned = re.sub(r"[^\w.-]", "_", name).strip("._")
    return cleaned or "item"


def _temp_path_for(path: Path) -> Path:
    # Unique per writer so concurrent saves never share a temp file.
    token = f"{os.getpid()}.{threading.get_ident()}.{uuid.uuid4().hex[:8]}"
    return path.with_name(f"{path.name}.tmp.{token}")


def write_text_atomic(
    path: Path,
    text: str,
    *,
    attempts: int = 5,
    delay: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Write ``text`` to a temp file beside ``path`` and rename it over.

    The rename is retried ``attempts`` times with a growing delay. On final
    failure the previous ``path`` is left untouched and False is returned.
    """

    ensure_parent(path)
    tmp = _temp_path_for(path)
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
    except OSError as exc:
        logger.error("Could not write temp file for %s: %s", path, exc)
        tmp.unlink(missing_ok=True)
        return False

    if _replace_with_retry(tmp, path, attempts=attempts, delay=delay, sleep=sleep):
        return True
    logger.error("Giving up on %s; previous file left in place", path)
    tmp.unlink(missing_ok=True)
    return False


def _replace_with_retry(
    tmp: Path,
    path: Path,
    *,
    attempts: int,
    delay: float,
    sleep: Callable[[float], None],
) -> bool:
    for attempt in range(1, attempts + 1):
        try:
            _replace(tmp, path)
            return True
        except OSError as exc:
            logger.warning(
                "Rename %s -> %s failed (attempt %d/%d): %s",
                tmp.name,
                path.name,
                attempt,
                attempts,
                exc,
            )
            if attempt < attempts:
                sleep(delay * attempt)
    return False


@contextmanager
def open_atomic(
    path: Path,
    *,
    attempts: int = 5,
    delay: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[TextIO]:
    """Stream text into ``path`` through a temp file and an atomic rename.

    Raises ``OSError`` when the rename keeps failing; ``path`` is then left
    as it was.
    """

    ensure_parent(path)
    tmp = _temp_path_for(path)
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    if not _replace_with_retry(tmp, path, attempts=attempts, delay=delay, sleep=sleep):
        tmp.unlink(missing_ok=True)
        raise OSError(f"could not replace {path}")


def write_json_atomic(path: Path, data: Any, **kwargs: Any) -> bool:
    text = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    return write_text_atomic(path, text, **kwargs)


def read_json(path: Path) -> Any | None:
    """Return parsed JSON, or None when the file is missing or corrupt."""

    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return None


def iter_ndjson(path: Path, start_line: int = 0) -> Iterator[tuple[int, Any]]:
    """Yield ``(line_no, obj)`` for non-blank lines after ``start_line``.

    Line numbers are 1-based. Unparseable lines yield ``obj=None``.
    """

    with path.open("r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            if line_no <= start_line:
                continue
            text = line.strip()
            if not text:
                continue
            try:
                obj = json.loads(text)
            except json.JSONDecodeError:
                obj = None
            yield line_no, obj


def count_records(path: Path) -> int:
    """Count complete, non-blank NDJSON lines (a torn tail is not counted)."""

    if not path.exists():
        return 0
    count = 0
    with path.open("rb") as handle:
        for raw in handle:
            if raw.endswith(b"\n") and raw.strip():
                count += 1
    return count


__all__ = [
    "count_records",
    "iter_ndjson",
    "open_atomic",
    "read_json",
    "safe_filename",
    "write_json_atomic",
    "write_text_atomic",
]
