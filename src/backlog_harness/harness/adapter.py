"""Packages a selected task plus durable context into one worker request."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from backlog_harness.harness.backend.base import GenerativeWorker, WorkerRequest, WorkerResponse
from backlog_harness.harness.iteration_log import IterationLog
from backlog_harness.harness.prompts import (
    DEFAULT_PROMPT_TEMPLATE,
    InvocationContext,
    render_prompt,
)
from backlog_harness.harness.repository import ProgressLedger, summarize_manifest
from backlog_harness.harness.selector import Selection
from backlog_harness.harness.sentinel import SentinelParser

logger = logging.getLogger(__name__)


class AgentInvocationAdapter:
    """Builds the prompt for a stateless worker and returns its raw response.

    The adapter only reads durable state.  Scratch captures (prompt, stdout,
    staged artifact) live under ``scratch_dir`` and are not harness state.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        worker: GenerativeWorker,
        ledger: ProgressLedger,
        iteration_log: IterationLog,
        parser: SentinelParser,
        scratch_dir: Path,
        timeout_seconds: int,
        prompt_template: str = DEFAULT_PROMPT_TEMPLATE,
        context_log_entries: int = 5,
        context_ledger_lines: int = 5,
        graceful_shutdown_seconds: int = 30,
    ) -> None:
        self.worker = worker
        self.ledger = ledger
        self.iteration_log = iteration_log
        self.parser = parser
        self.scratch_dir = scratch_dir
        self.timeout_seconds = timeout_seconds
        self.prompt_template = prompt_template
        self.context_log_entries = context_log_entries
        self.context_ledger_lines = context_ledger_lines
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def staging_path(self, iteration: int) -> Path:
        return self.scratch_dir / f"artifact-iteration-{iteration}.md"

    def build_context(self, selection: Selection) -> InvocationContext:
        if selection.task is None:
            raise ValueError("Cannot build invocation context without a selected task")
        return InvocationContext(
            task=selection.task,
            summary=summarize_manifest(selection.document),
            ledger_tail=self.ledger.tail(self.context_ledger_lines),
            log_tail=self.iteration_log.tail(self.context_log_entries),
        )

    def build_request(
        self,
        *,
        iteration: int,
        selection: Selection,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> WorkerRequest:
        context = self.build_context(selection)
        artifact_path = self.staging_path(iteration)
        prompt = render_prompt(
            template=self.prompt_template,
            context=context,
            artifact_path=artifact_path,
            task_sentinel=self.parser.task_token(context.task.task_id),
            all_sentinel=self.parser.all_sentinel,
        )
        return WorkerRequest(
            iteration=iteration,
            task_id=context.task.task_id,
            prompt=prompt,
            artifact_path=artifact_path,
            scratch_dir=self.scratch_dir,
            timeout_seconds=self.timeout_seconds,
            shutdown_requested=shutdown_requested,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )

    def invoke(
        self,
        *,
        iteration: int,
        selection: Selection,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> tuple[WorkerRequest, WorkerResponse]:
        request = self.build_request(
            iteration=iteration,
            selection=selection,
            shutdown_requested=shutdown_requested,
        )
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        request.artifact_path.unlink(missing_ok=True)
        logger.debug(
            "Prompt rendered: iteration=%d task_id=%s chars=%d",
            iteration,
            request.task_id,
            len(request.prompt),
        )
        return request, self.worker.invoke(request)
