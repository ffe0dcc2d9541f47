from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

import qdr_harvester.storage as storage_mod
from qdr_harvester.crawler.checkpoint import CheckpointStore, reconcile
from qdr_harvester.errors import CheckpointStoreError
from qdr_harvester.models import CheckpointEntry, DetailCheckpoint


def _entry(scope: str = "DEU_eqf4", **kwargs: Any) -> CheckpointEntry:
    return CheckpointEntry(scope=scope, file=f"{scope}.ndjson", **kwargs)


def _lines(path: Path, count: int) -> None:
    path.write_text("".join(json.dumps({"id": str(i)}) + "\n" for i in range(count)), encoding="utf-8")


def test_commit_and_load_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "europass_meta.json"
    store = CheckpointStore(path)
    entry = _entry()
    entry.advance(page_size=10, accepted=10)
    store.commit(entry)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["DEU_eqf4"]["offset"] == 10
    assert data["DEU_eqf4"]["totalItems"] == 10
    assert data["DEU_eqf4"]["totalPages"] == 1
    assert data["DEU_eqf4"]["completed"] is False

    loaded = CheckpointStore(path).load()
    assert loaded["DEU_eqf4"].offset == 10
    assert loaded["DEU_eqf4"].file == "DEU_eqf4.ndjson"


def test_commit_stores_a_copy(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / "meta.json")
    entry = _entry()
    store.commit(entry)
    entry.offset = 50

    assert store.get("DEU_eqf4").offset == 0


def test_offset_never_moves_back_without_rewind(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / "meta.json")
    store.commit(_entry(offset=30))

    with pytest.raises(ValueError):
        store.commit(_entry(offset=20))
    store.commit(_entry(offset=20), allow_rewind=True)
    assert store.get("DEU_eqf4").offset == 20


def test_completed_scope_cannot_be_reopened(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / "meta.json")
    entry = _entry(offset=30)
    assert entry.mark_complete()
    assert not entry.mark_complete()
    store.commit(entry)

    with pytest.raises(ValueError):
        store.commit(_entry(offset=30))


def test_failed_rename_keeps_previous_file(tmp_path: Path, monkeypatch: Any) -> None:
    path = tmp_path / "meta.json"
    store = CheckpointStore(path, sleep=lambda _d: None)
    store.commit(_entry(offset=10))
    before = path.read_text(encoding="utf-8")

    def broken_replace(_src: Path, _dst: Path) -> None:
        raise PermissionError("locked")

    monkeypatch.setattr(storage_mod, "_replace", broken_replace)
    store.commit(_entry(offset=20))

    assert path.read_text(encoding="utf-8") == before
    assert json.loads(before)["DEU_eqf4"]["offset"] == 10
    assert not list(tmp_path.glob("*.tmp.*"))


def test_repeated_save_failures_are_fatal(tmp_path: Path, monkeypatch: Any) -> None:
    store = CheckpointStore(tmp_path / "meta.json", sleep=lambda _d: None)

    def broken_replace(_src: Path, _dst: Path) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(storage_mod, "_replace", broken_replace)

    store.commit(_entry(offset=10))
    store.commit(_entry(offset=20))
    with pytest.raises(CheckpointStoreError):
        store.commit(_entry(offset=30))


def test_transient_rename_failure_is_retried(tmp_path: Path, monkeypatch: Any) -> None:
    path = tmp_path / "meta.json"
    calls: list[int] = []
    real_replace = storage_mod._replace

    def flaky(src: Path, dst: Path) -> None:
        calls.append(1)
        if len(calls) < 3:
            raise PermissionError("busy")
        real_replace(src, dst)

    monkeypatch.setattr(storage_mod, "_replace", flaky)
    delays: list[float] = []
    store = CheckpointStore(path, sleep=delays.append)
    store.commit(_entry(offset=10))

    assert json.loads(path.read_text(encoding="utf-8"))["DEU_eqf4"]["offset"] == 10
    assert delays == [pytest.approx(0.1), pytest.approx(0.2)]


def test_corrupt_document_is_backed_up(tmp_path: Path) -> None:
    path = tmp_path / "meta.json"
    path.write_text("{not json", encoding="utf-8")

    assert CheckpointStore(path).load() == {}
    assert list(tmp_path.glob("meta.json.corrupted.*"))


def test_non_utf8_document_is_backed_up(tmp_path: Path) -> None:
    path = tmp_path / "meta.json"
    path.write_bytes(b"\xff\xfe\x00garbage")

    assert CheckpointStore(path).load() == {}
    assert list(tmp_path.glob("meta.json.corrupted.*"))


def test_bad_numeric_field_drops_only_that_scope(tmp_path: Path) -> None:
    path = tmp_path / "meta.json"
    path.write_text(
        json.dumps({"DEU_eqf4": {"offset": "ten"}, "DEU_eqf5": {"offset": 20}}),
        encoding="utf-8",
    )

    loaded = CheckpointStore(path).load()

    assert list(loaded) == ["DEU_eqf5"]
    assert loaded["DEU_eqf5"].offset == 20
    assert list(tmp_path.glob("meta.json.corrupted.*"))


def test_bad_per_scope_file_is_backed_up(tmp_path: Path) -> None:
    meta = tmp_path / "meta"
    meta.mkdir()
    (meta / "DEU_meta.json").write_text(json.dumps({"lastLine": [1]}), encoding="utf-8")

    store = CheckpointStore(meta, per_scope=True, factory=DetailCheckpoint.from_dict)

    assert store.load() == {}
    assert list(meta.glob("DEU_meta.json.corrupted.*"))


def test_reset_removes_scope(tmp_path: Path) -> None:
    path = tmp_path / "meta.json"
    store = CheckpointStore(path)
    store.commit(_entry("A", offset=10))
    store.commit(_entry("B", offset=10))

    assert store.reset("A")
    assert not store.reset("A")
    assert list(json.loads(path.read_text(encoding="utf-8"))) == ["B"]


def test_per_scope_files_for_detail_checkpoints(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / "meta", per_scope=True, factory=DetailCheckpoint.from_dict)
    store.commit(DetailCheckpoint(scope="DEU", last_line=40, succeeded=39, failed=1))

    data = json.loads((tmp_path / "meta" / "DEU_meta.json").read_text(encoding="utf-8"))
    assert data["lastLine"] == 40
    assert data["succeeded"] == 39

    reloaded = CheckpointStore(tmp_path / "meta", per_scope=True, factory=DetailCheckpoint.from_dict)
    assert reloaded.load()["DEU"].last_line == 40

    with pytest.raises(ValueError):
        reloaded.commit(DetailCheckpoint(scope="DEU", last_line=10))


def test_reconcile_output_behind_lowers_offset_and_reports(tmp_path: Path) -> None:
    output = tmp_path / "DEU_eqf4.ndjson"
    events = tmp_path / "logs" / "events.jsonl"
    _lines(output, 15)
    entry = _entry(offset=30, total_items=30, total_pages=3)

    assert reconcile(entry, output, 10, events)

    assert entry.offset == 10
    assert entry.total_items == 15
    assert entry.total_pages == 1
    event = json.loads(events.read_text(encoding="utf-8").splitlines()[0])
    assert event["kind"] == "reconciled"
    assert event["old_offset"] == 30 and event["new_offset"] == 10


def test_reconcile_never_raises_the_offset(tmp_path: Path) -> None:
    output = tmp_path / "s.ndjson"
    _lines(output, 25)
    entry = _entry(offset=10, total_items=30)

    assert reconcile(entry, output, 10)
    assert entry.offset == 10


def test_reconcile_output_ahead_fixes_counter_only(tmp_path: Path) -> None:
    output = tmp_path / "s.ndjson"
    _lines(output, 25)
    entry = _entry(offset=20, total_items=20, total_pages=2)

    assert reconcile(entry, output, 10)
    assert entry.offset == 20
    assert entry.total_items == 25


def test_reconcile_missing_output_restarts_scope(tmp_path: Path) -> None:
    entry = _entry(offset=40, total_items=40, total_pages=4)
    assert reconcile(entry, tmp_path / "gone.ndjson", 10)
    assert (entry.offset, entry.total_items, entry.total_pages) == (0, 0, 0)


def test_reconcile_consistent_entry_is_untouched(tmp_path: Path) -> None:
    output = tmp_path / "s.ndjson"
    _lines(output, 20)
    entry = _entry(offset=20, total_items=20)
    assert not reconcile(entry, output, 10)
