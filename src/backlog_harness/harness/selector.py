"""Deterministic next-task selection with manifest/ledger reconciliation."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Collection
from dataclasses import dataclass
from typing import TYPE_CHECKING

from backlog_harness.harness.models import (
    IntegrityError,
    LedgerEntry,
    ManifestDocument,
    TaskRecord,
)

if TYPE_CHECKING:
    from backlog_harness.harness.repository import ManifestStore, ProgressLedger

_DIGITS = re.compile(r"(\d+)")


def identifier_sort_key(task_id: str) -> tuple[tuple[tuple[int, int, str], ...], str]:
    """Order ids naturally so that ``t2`` sorts before ``t10``."""

    parts = tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in _DIGITS.split(task_id)
        if part
    )
    return parts, task_id


@dataclass(slots=True)
class Selection:
    """Snapshot of durable state plus the chosen task, if any."""

    task: TaskRecord | None
    document: ManifestDocument
    entries: list[LedgerEntry]

    @property
    def exhausted(self) -> bool:
        return self.task is None


def check_consistency(document: ManifestDocument, entries: list[LedgerEntry]) -> None:
    """Raise when the manifest flags and ledger entries disagree.

    The harness never picks a side: any divergence stops the run so an
    operator can decide which record is right.
    """

    counts = Counter(entry.task_id for entry in entries)
    duplicated = sorted((task_id for task_id, n in counts.items() if n > 1), key=identifier_sort_key)
    known = {task.task_id for task in document.tasks}
    unknown = sorted((task_id for task_id in counts if task_id not in known), key=identifier_sort_key)
    flagged = document.completed_ids()
    ledgered = set(counts) & known
    flag_only = sorted(flagged - ledgered, key=identifier_sort_key)
    ledger_only = sorted(ledgered - flagged, key=identifier_sort_key)

    problems: list[str] = []
    if duplicated:
        problems.append(f"duplicate ledger entries: {', '.join(duplicated)}")
    if unknown:
        problems.append(f"ledger entries for unknown tasks: {', '.join(unknown)}")
    if flag_only:
        problems.append(f"completed in manifest without ledger entry: {', '.join(flag_only)}")
    if ledger_only:
        problems.append(f"ledger entry without completed flag: {', '.join(ledger_only)}")
    if problems:
        raise IntegrityError("Manifest and progress ledger disagree; " + "; ".join(problems))


def pick_next(
    document: ManifestDocument,
    *,
    in_flight: Collection[str] = (),
) -> TaskRecord | None:
    pending = [
        task for task in document.tasks if not task.completed and task.task_id not in in_flight
    ]
    if not pending:
        return None
    return min(pending, key=lambda task: identifier_sort_key(task.task_id))


class TaskSelector:
    """Reads both stores and returns the lowest-id incomplete task."""

    def __init__(self, *, manifest_store: ManifestStore, ledger: ProgressLedger) -> None:
        self.manifest_store = manifest_store
        self.ledger = ledger

    def select(self, *, in_flight: Collection[str] = ()) -> Selection:
        document = self.manifest_store.load()
        entries = self.ledger.load()
        check_consistency(document, entries)
        return Selection(
            task=pick_next(document, in_flight=in_flight),
            document=document,
            entries=entries,
        )
