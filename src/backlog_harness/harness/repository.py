"""Durable stores for the task manifest and the progress ledger.

Both files are shared state between the harness and its operator.  Only the
checkpoint committer writes them, and only through the explicit operations
below; everything else reads snapshots.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import UTC, datetime
from pathlib import Path

from backlog_harness.harness.contracts import read_manifest, write_bytes_atomic, write_manifest
from backlog_harness.harness.models import (
    IntegrityError,
    LedgerEntry,
    LedgerError,
    ManifestDocument,
    ManifestSummary,
    TaskRecord,
)
from backlog_harness.harness.selector import identifier_sort_key

logger = logging.getLogger(__name__)

LEDGER_SECTION_HEADER = "## Detailed Completion Log"

_ENTRY_PREFIX = re.compile(r"^- \[x\] \S+ \| completed_at=")
_ENTRY_PATTERN = re.compile(
    r"^- \[x\] (?P<task_id>\S+)"
    r" \| completed_at=(?P<completed_at>\S+)"
    r" \| artifact=(?P<artifact>.+?)"
    r" \| checkpoint=(?P<checkpoint>\S+)\s*$",
)
_BOMS: tuple[bytes, ...] = (b"\xef\xbb\xbf", b"\xff\xfe", b"\xfe\xff")


class ManifestStore:
    """Load/save access to the manifest file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> ManifestDocument:
        return read_manifest(self.path)

    def save(self, document: ManifestDocument) -> None:
        write_manifest(self.path, document)

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def restore_bytes(self, data: bytes) -> None:
        write_bytes_atomic(self.path, data)


def mark_completed(document: ManifestDocument, task_id: str) -> TaskRecord:
    """Flip one task's completion flag from false to true."""

    task = document.get(task_id)
    if task is None:
        raise IntegrityError(f"Task {task_id!r} is not present in the manifest")
    if task.completed:
        raise IntegrityError(f"Task {task_id!r} is already marked completed")
    task.completed = True
    return task


def summarize_manifest(document: ManifestDocument) -> ManifestSummary:
    remaining = sorted(
        (task.task_id for task in document.tasks if not task.completed),
        key=identifier_sort_key,
    )
    return ManifestSummary(
        total=len(document.tasks),
        completed=len(document.tasks) - len(remaining),
        remaining_ids=remaining,
    )


class ProgressLedger:
    """Append-only markdown ledger of completed tasks."""

    def __init__(self, path: Path, *, title: str = "Progress Ledger") -> None:
        self.path = path
        self.title = title

    def ensure_exists(self) -> None:
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            handle.write(f"# {self.title}\n\n{LEDGER_SECTION_HEADER}\n\n")
            handle.flush()
            os.fsync(handle.fileno())
        logger.info("Created progress ledger: path=%s", self.path)

    def read_text(self) -> str:
        """Read ledger text, tolerating stray NUL bytes left by a worker edit."""

        if not self.path.exists():
            return ""
        try:
            data = self.path.read_bytes()
        except OSError as error:
            raise LedgerError(f"Progress ledger {self.path} is unreadable: {error}") from error
        if b"\x00" in data:
            logger.warning("Stripping NUL bytes from progress ledger: path=%s", self.path)
            data = data.replace(b"\x00", b"")
        for bom in _BOMS:
            if data.startswith(bom):
                data = data[len(bom) :]
                break
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as error:
            raise LedgerError(f"Progress ledger {self.path} is not valid UTF-8: {error}") from error

    def load(self) -> list[LedgerEntry]:
        entries: list[LedgerEntry] = []
        for line_no, line in enumerate(self.read_text().splitlines(), start=1):
            stripped = line.strip()
            if not _ENTRY_PREFIX.match(stripped):
                continue
            entries.append(_parse_entry(stripped, where=f"{self.path}:{line_no}"))
        return entries

    def append(self, entry: LedgerEntry) -> None:
        text = self.read_text()
        chunks: list[str] = []
        if text and not text.endswith("\n"):
            chunks.append("\n")
        if LEDGER_SECTION_HEADER not in text:
            chunks.append(f"\n{LEDGER_SECTION_HEADER}\n\n")
        chunks.append(format_entry(entry) + "\n")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write("".join(chunks))
            handle.flush()
            os.fsync(handle.fileno())

    def size(self) -> int:
        return self.path.stat().st_size if self.path.exists() else 0

    def truncate(self, size: int) -> None:
        """Drop bytes appended after ``size``; used only to undo a failed checkpoint."""

        if not self.path.exists():
            return
        with self.path.open("r+b") as handle:
            handle.truncate(size)
            handle.flush()
            os.fsync(handle.fileno())

    def tail(self, lines: int = 5) -> list[str]:
        if lines <= 0:
            return []
        content = [line for line in self.read_text().splitlines() if line.strip()]
        return content[-lines:]


def format_entry(entry: LedgerEntry) -> str:
    completed_at = entry.completed_at.astimezone(UTC).isoformat(timespec="seconds")
    return (
        f"- [x] {entry.task_id} | completed_at={completed_at}"
        f" | artifact={entry.artifact_path} | checkpoint={entry.checkpoint_id}"
    )


def _parse_entry(line: str, *, where: str) -> LedgerEntry:
    match = _ENTRY_PATTERN.match(line)
    if match is None:
        raise LedgerError(f"Malformed ledger entry at {where}: {line!r}")
    try:
        completed_at = datetime.fromisoformat(match.group("completed_at"))
    except ValueError as error:
        raise LedgerError(f"Invalid completed_at at {where}: {error}") from error
    return LedgerEntry(
        task_id=match.group("task_id"),
        completed_at=completed_at,
        artifact_path=match.group("artifact").strip(),
        checkpoint_id=match.group("checkpoint"),
    )
