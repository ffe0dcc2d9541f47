from __future__ import annotations

import json
from pathlib import Path

from qdr_harvester.crawler.dedup import DedupIndex


def _write_ndjson(path: Path, records: list[dict]) -> None:
    path.write_text("".join(json.dumps(r) + "\n" for r in records), encoding="utf-8")


def test_filter_new_drops_seen_and_batch_duplicates_without_marking() -> None:
    index = DedupIndex("DEU_eqf4", ids=["a"])
    records = [{"id": "a"}, {"id": "b"}, {"id": "b"}, {"title": "no id"}, {"uuid": "c"}]

    fresh = index.filter_new(records)

    assert fresh == [{"id": "b"}, {"title": "no id"}, {"uuid": "c"}]
    assert not index.seen("b")

    index.mark_records(fresh)
    assert index.seen("b") and index.seen("c")
    assert len(index) == 3


def test_identifier_preference_order() -> None:
    index = DedupIndex("s")
    index.mark_records([{"uri": "http://x/1", "identifier": "I-1"}])
    assert "I-1" in index
    assert "http://x/1" not in index


def test_custom_identify_function() -> None:
    index = DedupIndex("s", identify=lambda r: r.get("uri"))
    index.mark_records([{"id": "1", "uri": "u1"}])
    assert index.ids() == ["u1"]


def test_warm_uses_matching_snapshot(tmp_path: Path) -> None:
    output = tmp_path / "s.ndjson"
    snapshot = tmp_path / "s.index.json"
    _write_ndjson(output, [{"id": "a"}, {"id": "b"}])
    snapshot.write_text(json.dumps(["a", "b"]), encoding="utf-8")

    index = DedupIndex.warm("s", snapshot, output)

    assert index.ids() == ["a", "b"]


def test_warm_rebuilds_from_output_when_snapshot_is_stale(tmp_path: Path) -> None:
    output = tmp_path / "s.ndjson"
    snapshot = tmp_path / "s.index.json"
    _write_ndjson(output, [{"id": "a"}, {"id": "b"}, {"id": "c"}])
    snapshot.write_text(json.dumps(["a"]), encoding="utf-8")

    index = DedupIndex.warm("s", snapshot, output)

    assert sorted(index.ids()) == ["a", "b", "c"]


def test_warm_rebuilds_when_snapshot_is_corrupt(tmp_path: Path) -> None:
    output = tmp_path / "s.ndjson"
    snapshot = tmp_path / "s.index.json"
    _write_ndjson(output, [{"id": "a"}])
    snapshot.write_text("[\"a\", ", encoding="utf-8")

    index = DedupIndex.warm("s", snapshot, output)
    assert index.seen("a")

    assert index.save()
    assert json.loads(snapshot.read_text(encoding="utf-8")) == ["a"]


def test_warm_without_any_files_is_empty(tmp_path: Path) -> None:
    index = DedupIndex.warm("s", tmp_path / "missing.index.json", tmp_path / "missing.ndjson")
    assert len(index) == 0


def test_unidentified_records_do_not_make_the_snapshot_stale(tmp_path: Path) -> None:
    output = tmp_path / "s.ndjson"
    snapshot = tmp_path / "s.index.json"
    records = [{"id": "a"}, {"title": "no identifier"}, {"id": "b"}]
    _write_ndjson(output, records)
    index = DedupIndex("s", snapshot)
    index.mark_records(records)
    assert index.save()
    assert json.loads(snapshot.read_text(encoding="utf-8")) == ["a", "b"]

    snapshot.write_text(json.dumps(["a", "b", "only-in-snapshot"]), encoding="utf-8")
    _write_ndjson(output, records + [{"id": "c"}])

    warmed = DedupIndex.warm("s", snapshot, output)

    # snapshot (3) + unidentified (1) == 4 output records, so it is trusted as-is
    assert warmed.ids() == ["a", "b", "only-in-snapshot"]
    assert warmed.unidentified == 1


def test_rebuild_counts_unidentified_records(tmp_path: Path) -> None:
    output = tmp_path / "s.ndjson"
    snapshot = tmp_path / "s.index.json"
    _write_ndjson(output, [{"id": "a"}, {"title": "x"}, {"title": "y"}])

    index = DedupIndex.warm("s", snapshot, output)

    assert index.ids() == ["a"]
    assert index.unidentified == 2
    assert index.save()
    assert json.loads(DedupIndex.count_path(snapshot).read_text(encoding="utf-8")) == 2
