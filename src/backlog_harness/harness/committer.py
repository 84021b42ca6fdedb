"""All-or-nothing persistence of one completed task.

Sequence per task: journal pre-images, write the artifact, flip the manifest
flag, append the ledger entry, create the VCS checkpoint, drop the journal.
The VCS checkpoint is the commit point.  Any ``Exception`` before it restores
the pre-images; a hard crash leaves the journal behind for ``recover()``.
"""

from __future__ import annotations

import base64
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from backlog_harness.harness.contracts import load_json, write_bytes_atomic, write_json
from backlog_harness.harness.models import (
    CheckpointError,
    IntegrityError,
    LedgerEntry,
    StartupError,
)
from backlog_harness.harness.repository import ManifestStore, ProgressLedger, mark_completed
from backlog_harness.harness.vcs import Checkpointer

logger = logging.getLogger(__name__)

JOURNAL_VERSION = 1


class RecoveryOutcome(str, Enum):
    """How a leftover checkpoint journal was resolved."""

    ROLLED_FORWARD = "rolled_forward"
    ROLLED_BACK = "rolled_back"


@dataclass(slots=True)
class CheckpointResult:
    task_id: str
    checkpoint_id: str
    artifact_path: Path
    revision: str
    completed_at: datetime


@dataclass(slots=True)
class CheckpointJournal:
    """Pre-images needed to undo a partially applied checkpoint."""

    checkpoint_id: str
    task_id: str
    artifact_path: str
    manifest_bytes: bytes
    ledger_size: int
    artifact_bytes: bytes | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "version": JOURNAL_VERSION,
            "checkpoint_id": self.checkpoint_id,
            "task_id": self.task_id,
            "artifact_path": self.artifact_path,
            "manifest_b64": _encode(self.manifest_bytes),
            "ledger_size": self.ledger_size,
            "artifact_b64": None if self.artifact_bytes is None else _encode(self.artifact_bytes),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CheckpointJournal:
        if payload.get("version") != JOURNAL_VERSION:
            raise ValueError(f"unsupported journal version {payload.get('version')!r}")
        artifact_b64 = payload["artifact_b64"]
        return cls(
            checkpoint_id=str(payload["checkpoint_id"]),
            task_id=str(payload["task_id"]),
            artifact_path=str(payload["artifact_path"]),
            manifest_bytes=base64.b64decode(payload["manifest_b64"]),
            ledger_size=int(payload["ledger_size"]),
            artifact_bytes=None if artifact_b64 is None else base64.b64decode(artifact_b64),
        )


def new_checkpoint_id(task_id: str) -> str:
    return f"ckpt-{task_id}-{uuid.uuid4().hex[:12]}"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class CheckpointCommitter:
    """Single writer of artifacts, manifest flags and ledger entries."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        manifest_store: ManifestStore,
        ledger: ProgressLedger,
        checkpointer: Checkpointer,
        artifact_dir: Path,
        journal_path: Path,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[str], str] = new_checkpoint_id,
    ) -> None:
        self.manifest_store = manifest_store
        self.ledger = ledger
        self.checkpointer = checkpointer
        self.artifact_dir = artifact_dir
        self.journal_path = journal_path
        self.clock = clock
        self.id_factory = id_factory

    def artifact_path(self, task_id: str) -> Path:
        return self.artifact_dir / f"{task_id}.md"

    def commit(self, *, task_id: str, content: str) -> CheckpointResult:
        """Persist one task atomically.

        Raises ``IntegrityError`` without touching anything when the task is
        unknown or already completed, and ``CheckpointError`` after a rollback.
        """

        if self.journal_path.exists():
            raise CheckpointError(
                f"Unresolved checkpoint journal at {self.journal_path}; run recovery first",
            )
        document = self.manifest_store.load()
        mark_completed(document, task_id)
        if any(entry.task_id == task_id for entry in self.ledger.load()):
            raise IntegrityError(f"Task {task_id!r} already has a progress ledger entry")

        artifact_path = self.artifact_path(task_id)
        journal = CheckpointJournal(
            checkpoint_id=self.id_factory(task_id),
            task_id=task_id,
            artifact_path=str(artifact_path),
            manifest_bytes=self.manifest_store.read_bytes(),
            ledger_size=self.ledger.size(),
            artifact_bytes=artifact_path.read_bytes() if artifact_path.exists() else None,
        )
        write_json(self.journal_path, journal.to_payload())

        completed_at = self.clock()
        try:
            write_bytes_atomic(artifact_path, content.encode("utf-8"))
            self.manifest_store.save(document)
            self.ledger.append(
                LedgerEntry(
                    task_id=task_id,
                    completed_at=completed_at,
                    artifact_path=str(artifact_path),
                    checkpoint_id=journal.checkpoint_id,
                ),
            )
            revision = self.checkpointer.commit(
                paths=self._checkpoint_paths(artifact_path),
                message=f"Complete task {task_id}",
                checkpoint_id=journal.checkpoint_id,
            )
        except Exception as error:
            if self.checkpointer.has_checkpoint(journal.checkpoint_id):
                logger.warning(
                    "Checkpoint recorded despite error, keeping it: task_id=%s checkpoint=%s error=%s",
                    task_id,
                    journal.checkpoint_id,
                    error,
                )
                revision = ""
            else:
                self._roll_back(journal)
                raise CheckpointError(
                    f"Checkpoint for task {task_id!r} failed and was rolled back: {error}",
                ) from error

        self.journal_path.unlink(missing_ok=True)
        logger.info(
            "Task committed: task_id=%s checkpoint=%s artifact=%s",
            task_id,
            journal.checkpoint_id,
            artifact_path,
        )
        return CheckpointResult(
            task_id=task_id,
            checkpoint_id=journal.checkpoint_id,
            artifact_path=artifact_path,
            revision=revision,
            completed_at=completed_at,
        )

    def pending_task_ids(self) -> set[str]:
        journal = self._load_journal()
        return set() if journal is None else {journal.task_id}

    def recover(self) -> RecoveryOutcome | None:
        """Resolve a journal left by a crash in the middle of ``commit``."""

        journal = self._load_journal()
        if journal is None:
            return None
        if self.checkpointer.has_checkpoint(journal.checkpoint_id):
            self.journal_path.unlink(missing_ok=True)
            logger.warning(
                "Recovered interrupted checkpoint by rolling forward: task_id=%s checkpoint=%s",
                journal.task_id,
                journal.checkpoint_id,
            )
            return RecoveryOutcome.ROLLED_FORWARD
        self._roll_back(journal)
        logger.warning(
            "Recovered interrupted checkpoint by rolling back: task_id=%s checkpoint=%s",
            journal.task_id,
            journal.checkpoint_id,
        )
        return RecoveryOutcome.ROLLED_BACK

    def _checkpoint_paths(self, artifact_path: Path) -> list[Path]:
        return [artifact_path, self.manifest_store.path, self.ledger.path]

    def _load_journal(self) -> CheckpointJournal | None:
        if not self.journal_path.exists():
            return None
        try:
            return CheckpointJournal.from_payload(load_json(self.journal_path))
        except (OSError, ValueError, KeyError, TypeError) as error:
            raise StartupError(
                f"Checkpoint journal {self.journal_path} is unreadable: {error}",
            ) from error

    def _roll_back(self, journal: CheckpointJournal) -> None:
        artifact_path = Path(journal.artifact_path)
        self.manifest_store.restore_bytes(journal.manifest_bytes)
        self.ledger.truncate(journal.ledger_size)
        if journal.artifact_bytes is None:
            artifact_path.unlink(missing_ok=True)
        else:
            write_bytes_atomic(artifact_path, journal.artifact_bytes)
        self.checkpointer.discard(paths=self._checkpoint_paths(artifact_path))
        self.journal_path.unlink(missing_ok=True)
        logger.info(
            "Checkpoint rolled back: task_id=%s checkpoint=%s",
            journal.task_id,
            journal.checkpoint_id,
        )


def _encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
