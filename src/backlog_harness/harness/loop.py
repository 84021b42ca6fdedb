"""Top-level iteration loop.

One iteration is ``Selecting -> Invoking -> Parsing -> Committing`` and ends
with exactly one synchronous append to the iteration log.  The loop itself
owns only three counters (iterations used, consecutive non-committed
iterations, committed ids); everything else is re-read from durable state at
the start of every iteration, which is what makes a restarted run pick up
where a crashed one stopped.

Operator interrupts (SIGINT/SIGTERM) only set a flag.  The flag is checked at
iteration boundaries and polled by the worker backend, never inside a commit.
"""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from backlog_harness.harness.adapter import AgentInvocationAdapter
from backlog_harness.harness.backend.base import WorkerRequest, WorkerResponse
from backlog_harness.harness.committer import CheckpointCommitter
from backlog_harness.harness.iteration_log import IterationLog
from backlog_harness.harness.models import (
    CheckpointError,
    IntegrityError,
    IterationOutcome,
    IterationRecord,
    LoopState,
    RunReport,
    RunStatus,
    SentinelOutcome,
    TaskRecord,
    WorkerError,
    WorkerInterrupted,
    WorkerTimeout,
    WorkerUnavailable,
)
from backlog_harness.harness.repository import summarize_manifest
from backlog_harness.harness.sanitization import sanitize_preview
from backlog_harness.harness.selector import Selection, TaskSelector
from backlog_harness.harness.sentinel import SentinelParser

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class _IterationResult:
    record: IterationRecord
    committed_task_id: str | None = None
    all_complete: bool = False
    interrupted: bool = False


class IterationController:
    """Bounded, stall-aware driver for the select/invoke/parse/commit cycle."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        selector: TaskSelector,
        adapter: AgentInvocationAdapter,
        parser: SentinelParser,
        committer: CheckpointCommitter,
        iteration_log: IterationLog,
        max_iterations: int,
        stall_threshold: int,
        iteration_delay_seconds: float = 0.0,
        secrets: Sequence[str] = (),
        preview_chars: int = 2_000,
        handle_signals: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if stall_threshold < 1:
            raise ValueError("stall_threshold must be >= 1")
        self.selector = selector
        self.adapter = adapter
        self.parser = parser
        self.committer = committer
        self.iteration_log = iteration_log
        self.max_iterations = max_iterations
        self.stall_threshold = stall_threshold
        self.iteration_delay_seconds = iteration_delay_seconds
        self.secrets = tuple(secret for secret in secrets if secret)
        self.preview_chars = preview_chars
        self.handle_signals = handle_signals
        self.clock = clock
        self.state = LoopState.SELECTING
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def request_stop(self, *, signal_name: str = "request") -> None:
        if not self._stop_requested:
            logger.warning(
                "Stop requested, finishing current iteration: signal=%s state=%s",
                signal_name,
                self.state.value,
            )
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def stop_requested(self) -> bool:
        return self._stop_requested

    def run(self) -> RunReport:
        recovery = self.committer.recover()
        if recovery is not None:
            logger.warning("Checkpoint journal resolved at startup: outcome=%s", recovery.value)
        if not self.handle_signals:
            return self._run_loop()
        with self._signal_handlers():
            return self._run_loop()

    def _run_loop(self) -> RunReport:
        committed: list[str] = []
        iterations = 0
        stall_count = 0
        while True:
            self.state = LoopState.SELECTING
            selection = self.selector.select(in_flight=self.committer.pending_task_ids())
            if selection.exhausted:
                self._append(self._exhausted_record())
                return self._report(
                    RunStatus.EXHAUSTED,
                    iterations=iterations,
                    committed=committed,
                    reason="no incomplete tasks remain",
                )
            if iterations >= self.max_iterations:
                return self._report(
                    RunStatus.ITERATION_CAP_REACHED,
                    iterations=iterations,
                    committed=committed,
                    reason=f"iteration cap of {self.max_iterations} reached",
                )
            if self._stop_requested:
                return self._interrupted_report(iterations=iterations, committed=committed)

            iterations += 1
            number = self.iteration_log.last_iteration() + 1
            try:
                result = self._run_iteration(number=number, selection=selection)
            except IntegrityError as error:
                task_id = selection.task.task_id if selection.task else None
                self._append(
                    self._record(
                        number=number,
                        task_id=task_id,
                        started_at=self.clock(),
                        sentinel=SentinelOutcome.TASK_COMPLETE,
                        outcome=IterationOutcome.ERRORED,
                        detail=f"integrity_error: {error}",
                    ),
                )
                raise
            self._append(result.record)

            if result.committed_task_id is not None:
                committed.append(result.committed_task_id)
                stall_count = 0
            elif result.record.outcome is not IterationOutcome.EXHAUSTED:
                stall_count += 1

            if result.interrupted:
                return self._interrupted_report(iterations=iterations, committed=committed)
            if stall_count >= self.stall_threshold:
                return self._report(
                    RunStatus.STALLED,
                    iterations=iterations,
                    committed=committed,
                    reason=f"{stall_count} consecutive iterations without a committed task",
                )
            if result.all_complete:
                return self._report(
                    RunStatus.EXHAUSTED,
                    iterations=iterations,
                    committed=committed,
                    reason="worker reported that all work is complete",
                )
            self._sleep_with_stop(self.iteration_delay_seconds)

    def _run_iteration(self, *, number: int, selection: Selection) -> _IterationResult:
        task = selection.task
        if task is None:
            raise ValueError("Iteration requires a selected task")
        started_at = self.clock()
        logger.info("Iteration started: iteration=%d task_id=%s", number, task.task_id)

        self.state = LoopState.INVOKING
        try:
            request, response = self.adapter.invoke(
                iteration=number,
                selection=selection,
                shutdown_requested=self.stop_requested,
            )
        except WorkerError as error:
            return self._worker_failure(number=number, task=task, started_at=started_at, error=error)
        except OSError as error:
            logger.warning("Worker staging failed: task_id=%s error=%s", task.task_id, error)
            return _IterationResult(
                record=self._record(
                    number=number,
                    task_id=task.task_id,
                    started_at=started_at,
                    sentinel=SentinelOutcome.INCOMPLETE,
                    outcome=IterationOutcome.ERRORED,
                    detail=f"staging_error: {error}",
                ),
            )

        self.state = LoopState.PARSING
        verdict = self.parser.parse(response.output, task_id=task.task_id)
        preview = sanitize_preview(
            response.output,
            max_chars=self.preview_chars,
            secrets=self.secrets,
        )
        output_path = str(response.stdout_path) if response.stdout_path else None

        def record(
            outcome: IterationOutcome,
            detail: str,
            checkpoint_id: str | None = None,
        ) -> IterationRecord:
            return self._record(
                number=number,
                task_id=task.task_id,
                started_at=started_at,
                sentinel=verdict.outcome,
                outcome=outcome,
                detail=detail,
                raw_output=preview,
                output_path=output_path,
                checkpoint_id=checkpoint_id,
            )

        if verdict.outcome is SentinelOutcome.ALL_COMPLETE:
            logger.info("Worker claimed the backlog is complete: task_id=%s", task.task_id)
            return _IterationResult(
                record=record(IterationOutcome.EXHAUSTED, verdict.reason),
                all_complete=True,
            )
        if verdict.outcome is SentinelOutcome.INCOMPLETE:
            detail = verdict.reason
            if verdict.claimed_task_id:
                detail = f"{detail}: claimed={verdict.claimed_task_id}"
            if response.exit_code != 0:
                detail = f"{detail} exit_code={response.exit_code}"
            logger.warning("Iteration rejected: task_id=%s detail=%s", task.task_id, detail)
            return _IterationResult(record=record(IterationOutcome.REJECTED, detail))

        try:
            content = self._artifact_content(request=request, response=response)
        except (OSError, UnicodeDecodeError) as error:
            logger.warning("Staged artifact unreadable: task_id=%s error=%s", task.task_id, error)
            return _IterationResult(
                record=record(IterationOutcome.ERRORED, f"staging_unreadable: {error}"),
            )
        if not content.strip():
            logger.warning("Iteration rejected: task_id=%s detail=empty_artifact", task.task_id)
            return _IterationResult(record=record(IterationOutcome.REJECTED, "empty_artifact"))

        self.state = LoopState.COMMITTING
        try:
            checkpoint = self.committer.commit(task_id=task.task_id, content=content)
        except CheckpointError as error:
            logger.error("Checkpoint failed: task_id=%s error=%s", task.task_id, error)
            return _IterationResult(
                record=record(IterationOutcome.ERRORED, f"checkpoint_failed: {error}"),
            )
        return _IterationResult(
            record=record(
                IterationOutcome.COMMITTED,
                verdict.reason,
                checkpoint_id=checkpoint.checkpoint_id,
            ),
            committed_task_id=task.task_id,
            all_complete=verdict.all_complete,
        )

    def _worker_failure(
        self,
        *,
        number: int,
        task: TaskRecord,
        started_at: datetime,
        error: WorkerError,
    ) -> _IterationResult:
        if isinstance(error, WorkerInterrupted):
            code = "interrupted"
        elif isinstance(error, WorkerTimeout):
            code = "worker_timeout"
        elif isinstance(error, WorkerUnavailable):
            code = "worker_unavailable"
        else:
            code = "worker_error"
        logger.warning(
            "Worker failed: iteration=%d task_id=%s code=%s transient=%s error=%s",
            number,
            task.task_id,
            code,
            error.transient,
            sanitize_preview(str(error), secrets=self.secrets),
        )
        return _IterationResult(
            record=self._record(
                number=number,
                task_id=task.task_id,
                started_at=started_at,
                sentinel=SentinelOutcome.INCOMPLETE,
                outcome=IterationOutcome.ERRORED,
                detail=code,
            ),
            interrupted=isinstance(error, WorkerInterrupted),
        )

    def _artifact_content(self, *, request: WorkerRequest, response: WorkerResponse) -> str:
        staged = request.artifact_path
        if staged.exists():
            text = staged.read_text("utf-8")
            if text.strip():
                return text
        return self.parser.strip_tokens(response.output)

    def _record(  # noqa: PLR0913
        self,
        *,
        number: int,
        task_id: str | None,
        started_at: datetime,
        sentinel: SentinelOutcome,
        outcome: IterationOutcome,
        detail: str = "",
        raw_output: str = "",
        output_path: str | None = None,
        checkpoint_id: str | None = None,
    ) -> IterationRecord:
        return IterationRecord(
            iteration=number,
            task_id=task_id,
            started_at=started_at,
            finished_at=self.clock(),
            sentinel=sentinel,
            outcome=outcome,
            detail=sanitize_preview(detail, secrets=self.secrets),
            raw_output=raw_output,
            output_path=output_path,
            checkpoint_id=checkpoint_id,
        )

    def _exhausted_record(self) -> IterationRecord:
        now = self.clock()
        return self._record(
            number=self.iteration_log.last_iteration() + 1,
            task_id=None,
            started_at=now,
            sentinel=SentinelOutcome.INCOMPLETE,
            outcome=IterationOutcome.EXHAUSTED,
            detail="no_remaining_tasks",
        )

    def _append(self, record: IterationRecord) -> None:
        self.iteration_log.append(record)
        logger.info(
            "Iteration recorded: iteration=%d task_id=%s outcome=%s sentinel=%s",
            record.iteration,
            record.task_id or "none",
            record.outcome.value,
            record.sentinel.value,
        )

    def _interrupted_report(self, *, iterations: int, committed: list[str]) -> RunReport:
        return self._report(
            RunStatus.INTERRUPTED,
            iterations=iterations,
            committed=committed,
            reason=f"interrupted by {self._stop_signal_name or 'operator'}",
        )

    def _report(
        self,
        status: RunStatus,
        *,
        iterations: int,
        committed: list[str],
        reason: str,
    ) -> RunReport:
        summary = summarize_manifest(self.selector.manifest_store.load())
        log = logger.info if status is RunStatus.EXHAUSTED else logger.warning
        log(
            "Run finished: status=%s iterations=%d committed=%d completed=%d remaining=%d reason=%s",
            status.value,
            iterations,
            len(committed),
            summary.completed,
            summary.remaining,
            reason,
        )
        return RunReport(
            status=status,
            iterations=iterations,
            committed=committed,
            summary=summary,
            reason=reason,
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
