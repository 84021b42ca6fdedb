from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import allure
import pytest

from backlog_harness.harness.models import IntegrityError, LedgerEntry, LedgerError
from backlog_harness.harness.repository import (
    LEDGER_SECTION_HEADER,
    ManifestStore,
    ProgressLedger,
    format_entry,
    mark_completed,
    summarize_manifest,
)
from conftest import write_manifest_file

pytestmark = [
    allure.epic("Durable State"),
    allure.feature("Progress Ledger"),
]


def _entry(task_id: str, checkpoint: str = "ckpt-x-000000000000") -> LedgerEntry:
    return LedgerEntry(
        task_id=task_id,
        completed_at=datetime(2026, 3, 1, 12, 30, tzinfo=UTC),
        artifact_path=f"content/{task_id}.md",
        checkpoint_id=checkpoint,
    )


def test_ensure_exists_creates_titled_ledger(tmp_path: Path) -> None:
    ledger = ProgressLedger(tmp_path / "progress.md")

    ledger.ensure_exists()

    text = (tmp_path / "progress.md").read_text("utf-8")
    assert text.startswith("# Progress Ledger")
    assert LEDGER_SECTION_HEADER in text
    assert ledger.load() == []


def test_append_and_load_round_trip_keeps_human_notes(tmp_path: Path) -> None:
    path = tmp_path / "progress.md"
    path.write_text("# Notes\n\n- [ ] t1: write intro\nSome free text", "utf-8")
    ledger = ProgressLedger(path)

    ledger.append(_entry("t1"))
    ledger.append(_entry("t2"))

    text = path.read_text("utf-8")
    assert text.startswith("# Notes\n\n- [ ] t1: write intro\nSome free text\n")
    assert text.count(LEDGER_SECTION_HEADER) == 1
    assert [entry.task_id for entry in ledger.load()] == ["t1", "t2"]
    assert ledger.load()[0].artifact_path == "content/t1.md"


def test_format_entry_normalizes_timestamp_to_utc() -> None:
    entry = LedgerEntry(
        task_id="t1",
        completed_at=datetime(2026, 3, 1, 14, 30, tzinfo=timezone(timedelta(hours=2))),
        artifact_path="content/t1.md",
        checkpoint_id="ckpt-t1-abc",
    )

    assert format_entry(entry) == (
        "- [x] t1 | completed_at=2026-03-01T12:30:00+00:00"
        " | artifact=content/t1.md | checkpoint=ckpt-t1-abc"
    )


def test_read_text_strips_nul_bytes(tmp_path: Path) -> None:
    path = tmp_path / "progress.md"
    line = format_entry(_entry("t1"))
    path.write_bytes(("\x00".join(f"{LEDGER_SECTION_HEADER}\n{line}\n")).encode("utf-8"))

    entries = ProgressLedger(path).load()

    assert [entry.task_id for entry in entries] == ["t1"]


def test_malformed_entry_is_ledger_error(tmp_path: Path) -> None:
    path = tmp_path / "progress.md"
    path.write_text("- [x] t1 | completed_at=yesterday | artifact=a\n", "utf-8")

    with pytest.raises(LedgerError, match="Malformed ledger entry"):
        ProgressLedger(path).load()


def test_undecodable_ledger_is_ledger_error(tmp_path: Path) -> None:
    path = tmp_path / "progress.md"
    path.write_bytes(b"\xff\xfb\xfa not utf-8")

    with pytest.raises(LedgerError, match="not valid UTF-8"):
        ProgressLedger(path).load()


def test_truncate_undoes_append(tmp_path: Path) -> None:
    ledger = ProgressLedger(tmp_path / "progress.md")
    ledger.ensure_exists()
    before = ledger.size()

    ledger.append(_entry("t1"))
    ledger.truncate(before)

    assert ledger.load() == []
    assert ledger.size() == before


def test_tail_returns_last_non_blank_lines(tmp_path: Path) -> None:
    ledger = ProgressLedger(tmp_path / "progress.md")
    ledger.ensure_exists()
    for task_id in ("t1", "t2", "t3"):
        ledger.append(_entry(task_id))

    tail = ledger.tail(2)

    assert len(tail) == 2
    assert tail[0].startswith("- [x] t2")
    assert tail[1].startswith("- [x] t3")
    assert ledger.tail(0) == []


def test_mark_completed_flips_flag_once(tmp_path: Path) -> None:
    path = tmp_path / "requirements.json"
    write_manifest_file(path, ["t1", "t2"])
    store = ManifestStore(path)
    document = store.load()

    mark_completed(document, "t1")
    store.save(document)

    reloaded = store.load()
    assert reloaded.completed_ids() == {"t1"}
    with pytest.raises(IntegrityError, match="already marked completed"):
        mark_completed(reloaded, "t1")
    with pytest.raises(IntegrityError, match="not present"):
        mark_completed(reloaded, "t9")


def test_summarize_manifest_orders_remaining_naturally(tmp_path: Path) -> None:
    path = tmp_path / "requirements.json"
    write_manifest_file(path, ["t10", "t2", "t1"], completed=["t1"])

    summary = summarize_manifest(ManifestStore(path).load())

    assert summary.total == 3
    assert summary.completed == 1
    assert summary.remaining_ids == ["t2", "t10"]
