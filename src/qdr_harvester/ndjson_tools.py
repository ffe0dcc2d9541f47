"""Offline helpers over harvested NDJSON files (merge, JSON snapshots)."""

from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from pathlib import Path
from typing import Iterable

from qdr_harvester.storage import iter_ndjson, open_atomic

logger = logging.getLogger(__name__)

COUNTRY_FILE_RE = re.compile(r"^([A-Za-z]{3})_eqf(\d+)\.ndjson$")


def country_level_files(files_dir: Path) -> dict[str, list[Path]]:
    """Group ``<ISO3>_eqf<n>.ndjson`` files by country, ordered by level."""

    grouped: dict[str, list[tuple[int, str, Path]]] = defaultdict(list)
    if not files_dir.is_dir():
        return {}
    for path in files_dir.iterdir():
        match = COUNTRY_FILE_RE.match(path.name)
        if not match:
            continue
        grouped[match.group(1).upper()].append((int(match.group(2)), path.name, path))
    return {
        country: [path for _level, _name, path in sorted(items)]
        for country, items in sorted(grouped.items())
    }


def merge_country_files(
    files_dir: Path,
    out_dir: Path,
    countries: Iterable[str] | None = None,
) -> dict[str, int]:
    """Concatenate each country's level files into ``<out_dir>/<ISO3>.ndjson``.

    Blank lines are dropped; every other line is copied as-is. Returns the
    number of records written per country.
    """

    wanted = {c.upper() for c in countries} if countries else None
    totals: dict[str, int] = {}
    for country, sources in country_level_files(files_dir).items():
        if wanted is not None and country not in wanted:
            continue
        target = out_dir / f"{country}.ndjson"
        written = 0
        with open_atomic(target) as out:
            for source in sources:
                logger.info("merging %s -> %s", source.name, target.name)
                with source.open("r", encoding="utf-8") as handle:
                    for line in handle:
                        text = line.strip()
                        if not text:
                            continue
                        out.write(text + "\n")
                        written += 1
        totals[country] = written
        logger.info("%s: %d records from %d level files", country, written, len(sources))
    return totals


def write_snapshot(ndjson_path: Path, out_path: Path, scope: str, offset: int = 0) -> int:
    """Regenerate a pretty JSON snapshot of one scope from its NDJSON file.

    Records are streamed, so large scopes are never held in memory.
    Unparseable lines are skipped with a warning.
    """

    saved = 0
    skipped = 0
    with open_atomic(out_path) as out:
        # metadata goes last: totalSaved is only known after streaming
        out.write('{\n  "records": [')
        if ndjson_path.exists():
            for _line_no, obj in iter_ndjson(ndjson_path):
                if obj is None:
                    skipped += 1
                    continue
                out.write(",\n    " if saved else "\n    ")
                out.write(json.dumps(obj, ensure_ascii=False))
                saved += 1
        out.write("\n  ],\n" if saved else "],\n")
        metadata = {"scope": scope, "offset": offset, "totalSaved": saved}
        out.write('  "metadata": ' + json.dumps(metadata, ensure_ascii=False) + "\n}\n")
    if skipped:
        logger.warning("%s: skipped %d unparseable lines", ndjson_path.name, skipped)
    return saved


__all__ = [
    "COUNTRY_FILE_RE",
    "country_level_files",
    "merge_country_files",
    "write_snapshot",
]
