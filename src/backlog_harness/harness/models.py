"""Domain models for the backlog iteration harness."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SentinelOutcome(str, Enum):
    """Tagged result of scanning worker output for stop tokens."""

    TASK_COMPLETE = "task_complete"
    ALL_COMPLETE = "all_complete"
    INCOMPLETE = "incomplete"


class IterationOutcome(str, Enum):
    """Durable outcome recorded for each loop iteration."""

    COMMITTED = "committed"
    REJECTED = "rejected"
    ERRORED = "errored"
    EXHAUSTED = "exhausted"


class LoopState(str, Enum):
    """Non-terminal states of the iteration controller."""

    SELECTING = "selecting"
    INVOKING = "invoking"
    PARSING = "parsing"
    COMMITTING = "committing"


class RunStatus(str, Enum):
    """Terminal states of one harness run."""

    EXHAUSTED = "exhausted"
    ITERATION_CAP_REACHED = "iteration_cap_reached"
    STALLED = "stalled"
    INTERRUPTED = "interrupted"

    @property
    def exit_code(self) -> int:
        return _RUN_STATUS_EXIT_CODES[self]


_RUN_STATUS_EXIT_CODES = {
    RunStatus.EXHAUSTED: 0,
    RunStatus.ITERATION_CAP_REACHED: 3,
    RunStatus.STALLED: 4,
    RunStatus.INTERRUPTED: 130,
}

STARTUP_ERROR_EXIT_CODE = 5
INTEGRITY_ERROR_EXIT_CODE = 6


@dataclass(slots=True)
class TaskRecord:
    """One backlog entry from the manifest."""

    task_id: str
    category: str = ""
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    completed: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Serialize back to the manifest entry shape, keeping unknown keys."""

        payload: dict[str, Any] = {"id": self.task_id, "category": self.category}
        if self.description:
            payload["description"] = self.description
        if self.metadata:
            payload["metadata"] = self.metadata
        payload.update(self.extra)
        payload["completed"] = self.completed
        return payload


@dataclass(slots=True)
class ManifestDocument:
    """Parsed manifest file with enough layout to rewrite it faithfully."""

    tasks: list[TaskRecord]
    collection_key: str = "tasks"
    extra: dict[str, Any] = field(default_factory=dict)
    key_order: list[str] = field(default_factory=list)

    def get(self, task_id: str) -> TaskRecord | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def completed_ids(self) -> set[str]:
        return {task.task_id for task in self.tasks if task.completed}


@dataclass(slots=True)
class LedgerEntry:
    """One completed task recorded in the progress ledger."""

    task_id: str
    completed_at: datetime
    artifact_path: str
    checkpoint_id: str


@dataclass(slots=True)
class IterationRecord:
    """Append-only audit entry for one loop iteration."""

    iteration: int
    task_id: str | None
    started_at: datetime
    finished_at: datetime
    sentinel: SentinelOutcome
    outcome: IterationOutcome
    detail: str = ""
    raw_output: str = ""
    output_path: str | None = None
    checkpoint_id: str | None = None


@dataclass(slots=True)
class ManifestSummary:
    """Compact backlog view shared with the worker and the operator."""

    total: int
    completed: int
    remaining_ids: list[str]

    @property
    def remaining(self) -> int:
        return len(self.remaining_ids)


@dataclass(slots=True)
class RunReport:
    """Final summary of one harness run."""

    status: RunStatus
    iterations: int
    committed: list[str]
    summary: ManifestSummary
    reason: str


class HarnessError(RuntimeError):
    """Base class for harness failures."""


class StartupError(HarnessError):
    """Configuration or durable state that prevents the harness from starting."""


class ManifestError(StartupError):
    """Manifest file is missing or malformed."""


class LedgerError(StartupError):
    """Progress ledger is unreadable or malformed."""


class ConfigError(StartupError):
    """Settings or templates the harness cannot run with."""


class CredentialError(StartupError):
    """Worker credential is not available in the environment."""


class IntegrityError(HarnessError):
    """Manifest and progress ledger disagree on completion state."""


class CheckpointError(HarnessError):
    """Checkpoint sequence failed and was rolled back."""


class WorkerError(HarnessError):
    """External worker invocation failed."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class WorkerUnavailable(WorkerError):
    """Worker could not be started or refused the request."""


class WorkerTimeout(WorkerError):
    """Worker did not finish within the configured timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class WorkerInterrupted(WorkerError):
    """Worker was stopped because the operator requested shutdown."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)
