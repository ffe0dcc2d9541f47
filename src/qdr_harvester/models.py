from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping
from urllib.parse import urlparse

# Preference order for natural identifiers inside a fetched payload.
IDENTIFIER_KEYS: tuple[str, ...] = (
    "id",
    "uuid",
    "identifier",
    "escoIdentifier",
    "uri",
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def record_identifier(record: Any) -> str | None:
    if not isinstance(record, Mapping):
        return None
    for key in IDENTIFIER_KEYS:
        value = record.get(key)
        if value is None or value == "":
            continue
        return str(value)
    return None


def id_from_uri(uri: Any) -> str | None:
    """Return the last path segment of a record URI (the detail filename)."""

    text = str(uri or "").strip()
    if not text:
        return None
    parsed = urlparse(text)
    if parsed.scheme and parsed.netloc:
        parts = [p for p in parsed.path.split("/") if p]
        return parts[-1] if parts else None
    match = re.search(r"([^/]+)/*$", text)
    return match.group(1) if match else None


class ScopeState(str, Enum):
    INIT = "init"
    FETCHING = "fetching"
    PAGE_ACCEPTED = "page_accepted"
    EMPTY_PAGE = "empty_page"
    COMPLETED = "completed"
    FATAL_ERROR = "fatal_error"
    RETRIES_EXHAUSTED = "retries_exhausted"
    PAUSED = "paused"


@dataclass(frozen=True)
class Scope:
    """One independent search target, e.g. (DEU, EQF 4)."""

    key: str
    record_type: str
    country: str | None = None
    level: int | None = None


@dataclass(frozen=True)
class DetailScope:
    """One batch of record URIs resolved into per-record files."""

    key: str
    source: Path
    out_dir: Path


@dataclass
class CheckpointEntry:
    scope: str
    file: str
    offset: int = 0
    completed: bool = False
    total_pages: int = 0
    total_items: int = 0
    last_updated: str | None = None
    status: str = "pending"
    last_error: str | None = None
    forced: bool = False

    def touch(self) -> None:
        self.last_updated = utc_now()

    def advance(self, *, page_size: int, accepted: int) -> None:
        self.offset += page_size
        self.total_pages += 1
        self.total_items += accepted
        self.status = "running"
        self.last_error = None
        self.touch()

    def mark_complete(self, *, forced: bool = False) -> bool:
        """Flip ``completed`` once; later calls are no-ops returning False."""

        if self.completed:
            return False
        self.completed = True
        self.status = "completed"
        self.forced = forced
        self.touch()
        return True

    def mark_paused(self, error: str) -> None:
        self.status = "paused"
        self.last_error = error
        self.touch()

    def to_dict(self) -> dict[str, Any]:
        return {
            "offset": self.offset,
            "completed": self.completed,
            "totalPages": self.total_pages,
            "totalItems": self.total_items,
            "lastUpdated": self.last_updated,
            "file": self.file,
            "status": self.status,
            "lastError": self.last_error,
            "forced": self.forced,
        }

    @classmethod
    def from_dict(cls, scope: str, data: Mapping[str, Any]) -> CheckpointEntry:
        return cls(
            scope=scope,
            file=str(data.get("file") or ""),
            offset=int(data.get("offset") or 0),
            completed=bool(data.get("completed", False)),
            total_pages=int(data.get("totalPages") or 0),
            total_items=int(data.get("totalItems") or 0),
            last_updated=data.get("lastUpdated"),
            status=str(data.get("status") or "pending"),
            last_error=data.get("lastError"),
            forced=bool(data.get("forced", False)),
        )


@dataclass
class DetailCheckpoint:
    scope: str
    source: str = ""
    last_line: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_existing: int = 0
    completed: bool = False
    last_updated: str | None = None

    def touch(self) -> None:
        self.last_updated = utc_now()

    def mark_complete(self) -> bool:
        if self.completed:
            return False
        self.completed = True
        self.touch()
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "source": self.source,
            "lastLine": self.last_line,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skippedExisting": self.skipped_existing,
            "completed": self.completed,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, scope: str, data: Mapping[str, Any]) -> DetailCheckpoint:
        return cls(
            scope=scope,
            source=str(data.get("source") or ""),
            last_line=int(data.get("lastLine") or 0),
            attempted=int(data.get("attempted") or 0),
            succeeded=int(data.get("succeeded") or 0),
            failed=int(data.get("failed") or 0),
            skipped_existing=int(data.get("skippedExisting") or 0),
            completed=bool(data.get("completed", False)),
            last_updated=data.get("lastUpdated"),
        )


@dataclass
class ScopeOutcome:
    scope: str
    state: ScopeState
    items: int = 0
    pages: int = 0
    error: str | None = None

    @property
    def completed(self) -> bool:
        return self.state == ScopeState.COMPLETED


@dataclass
class RunSummary:
    outcomes: list[ScopeOutcome] = field(default_factory=list)
    interrupted: bool = False

    @property
    def completed(self) -> list[ScopeOutcome]:
        return [o for o in self.outcomes if o.completed]

    @property
    def paused(self) -> list[ScopeOutcome]:
        return [o for o in self.outcomes if not o.completed]

    @property
    def total_items(self) -> int:
        return sum(o.items for o in self.outcomes)

    @property
    def exit_code(self) -> int:
        if self.interrupted:
            return 130
        if self.paused:
            return 3
        return 0

    def extend(self, outcomes: Iterable[ScopeOutcome]) -> None:
        self.outcomes.extend(outcomes)


__all__ = [
    "IDENTIFIER_KEYS",
    "CheckpointEntry",
    "DetailCheckpoint",
    "DetailScope",
    "RunSummary",
    "Scope",
    "ScopeOutcome",
    "ScopeState",
    "ensure_parent",
    "id_from_uri",
    "record_identifier",
    "utc_now",
]
