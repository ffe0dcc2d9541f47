from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterable

from qdr_harvester.models import record_identifier
from qdr_harvester.storage import count_records, iter_ndjson, read_json, write_json_atomic

logger = logging.getLogger(__name__)


class DedupIndex:
    """Identifiers already written for one scope.

    Owned by the single worker driving the scope; not thread-safe.
    """

    def __init__(
        self,
        scope: str,
        path: Path | None = None,
        ids: Iterable[str] = (),
        identify: Callable[[Any], str | None] = record_identifier,
        unidentified: int = 0,
    ) -> None:
        self.scope = scope
        self.path = path
        self.identify = identify
        # dict keeps insertion order for a stable on-disk snapshot
        self._ids: dict[str, None] = dict.fromkeys(ids)
        # records written without an identifier; they never enter the snapshot
        self.unidentified = unidentified

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, ident: object) -> bool:
        return ident in self._ids

    def seen(self, ident: str) -> bool:
        return ident in self._ids

    def mark(self, ident: str) -> None:
        self._ids[ident] = None

    def ids(self) -> list[str]:
        return list(self._ids)

    def filter_new(self, records: Iterable[Any]) -> list[Any]:
        """Return records not yet written; does not mark them.

        Records without an identifier always pass. Duplicates inside the
        same batch keep only their first occurrence.
        """

        batch: set[str] = set()
        fresh: list[Any] = []
        for record in records:
            ident = self.identify(record)
            if ident is None:
                fresh.append(record)
                continue
            if ident in self._ids or ident in batch:
                continue
            batch.add(ident)
            fresh.append(record)
        return fresh

    def mark_records(self, records: Iterable[Any]) -> None:
        for record in records:
            ident = self.identify(record)
            if ident is None:
                self.unidentified += 1
            else:
                self.mark(ident)

    @staticmethod
    def count_path(index_path: Path) -> Path:
        return index_path.with_suffix(".unidentified")

    def save(self) -> bool:
        if self.path is None:
            return True
        if not write_json_atomic(self.path, self.ids()):
            return False
        count_path = self.count_path(self.path)
        if not self.unidentified:
            count_path.unlink(missing_ok=True)
            return True
        return write_json_atomic(count_path, self.unidentified)

    @classmethod
    def from_output(
        cls,
        scope: str,
        output_path: Path,
        path: Path | None = None,
        identify: Callable[[Any], str | None] = record_identifier,
    ) -> DedupIndex:
        index = cls(scope, path, identify=identify)
        if output_path.exists():
            for _line_no, obj in iter_ndjson(output_path):
                ident = identify(obj)
                if ident is None:
                    index.unidentified += 1
                else:
                    index.mark(ident)
        return index

    @classmethod
    def warm(
        cls,
        scope: str,
        index_path: Path,
        output_path: Path,
        identify: Callable[[Any], str | None] = record_identifier,
    ) -> DedupIndex:
        """Load the persisted snapshot, rebuilding it from the output if stale.

        The output file is the source of truth: a snapshot that is missing,
        corrupt, or disagrees with the output's record count is replaced.
        Records without an identifier are counted in a sidecar file so they
        do not make a good snapshot look stale.
        """

        snapshot = read_json(index_path)
        unidentified = read_json(cls.count_path(index_path))
        if not isinstance(unidentified, int) or unidentified < 0:
            unidentified = 0
        output_count = count_records(output_path)
        if isinstance(snapshot, list) and len(snapshot) + unidentified == output_count:
            return cls(
                scope,
                index_path,
                (str(item) for item in snapshot),
                identify,
                unidentified=unidentified,
            )

        if output_count:
            logger.info(
                "[%s] rebuilding dedup index from %s (%d records)",
                scope,
                output_path.name,
                output_count,
            )
        return cls.from_output(scope, output_path, index_path, identify)


__all__ = ["DedupIndex"]
