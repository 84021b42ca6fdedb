"""Controllers for harness CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TypeVar

from backlog_harness.config import Settings
from backlog_harness.harness.adapter import AgentInvocationAdapter
from backlog_harness.harness.backend import CliWorker
from backlog_harness.harness.committer import CheckpointCommitter
from backlog_harness.harness.iteration_log import IterationLog
from backlog_harness.harness.loop import IterationController
from backlog_harness.harness.models import ConfigError, IntegrityError, RunReport, StartupError
from backlog_harness.harness.prompts import load_prompt_template, render_iteration_line
from backlog_harness.harness.repository import ManifestStore, ProgressLedger, summarize_manifest
from backlog_harness.harness.selector import TaskSelector
from backlog_harness.harness.sentinel import SentinelParser
from backlog_harness.harness.vcs import Checkpointer, DryRunCheckpointer, GitCheckpointer

logger = logging.getLogger(__name__)

_REMAINING_PREVIEW = 20

T = TypeVar("T")


@dataclass(slots=True)
class RunCommand:
    """CLI input for one harness run; ``None`` keeps the environment value."""

    manifest: Path | None = None
    progress: Path | None = None
    log_file: Path | None = None
    artifact_dir: Path | None = None
    scratch_dir: Path | None = None
    max_iterations: int | None = None
    stall_threshold: int | None = None
    timeout_seconds: int | None = None
    sentinel: str | None = None
    task_sentinel: str | None = None
    command_template: str | None = None
    prompt_template: Path | None = None
    iteration_delay: float | None = None
    use_git: bool | None = None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for backlog status."""

    manifest: Path | None = None
    progress: Path | None = None
    log_file: Path | None = None


@dataclass(slots=True)
class VerifyCommand:
    """CLI input for journal recovery plus consistency check."""

    manifest: Path | None = None
    progress: Path | None = None
    artifact_dir: Path | None = None
    use_git: bool | None = None


@dataclass(slots=True)
class HarnessRunResult:
    """Run report to render in CLI."""

    lines: list[str]
    exit_code: int


class HarnessCliController:
    """Wires settings into stores, worker and loop for each CLI command."""

    def run(self, command: RunCommand) -> HarnessRunResult:
        settings = _settings_for_run(command)
        _validate(settings)
        credential = settings.read_credential()
        logger.info(
            "Harness starting: manifest=%s progress=%s log=%s max_iterations=%d "
            "stall_threshold=%d git=%s",
            settings.paths.manifest,
            settings.paths.progress,
            settings.paths.iteration_log,
            settings.loop.max_iterations,
            settings.loop.stall_threshold,
            settings.loop.use_git,
        )
        controller = build_controller(settings, credential=credential)
        with _counts_on_integrity_error(settings.paths.manifest):
            report = controller.run()
        return HarnessRunResult(lines=render_report(report), exit_code=report.status.exit_code)

    def status(self, command: StatusCommand) -> list[str]:
        settings = _load_settings()
        settings.paths = replace(
            settings.paths,
            manifest=command.manifest or settings.paths.manifest,
            progress=command.progress or settings.paths.progress,
            iteration_log=command.log_file or settings.paths.iteration_log,
        )
        manifest_store = ManifestStore(settings.paths.manifest)
        ledger = ProgressLedger(settings.paths.progress)
        with _counts_on_integrity_error(settings.paths.manifest):
            selection = TaskSelector(manifest_store=manifest_store, ledger=ledger).select()
        summary = summarize_manifest(selection.document)

        lines = [
            f"Manifest: {settings.paths.manifest}",
            f"Tasks: total={summary.total} completed={summary.completed} "
            f"remaining={summary.remaining}",
            f"Next task: {selection.task.task_id if selection.task else 'none'}",
        ]
        if summary.remaining_ids:
            lines.append(f"Remaining: {_preview_ids(summary.remaining_ids)}")
        last = IterationLog(settings.paths.iteration_log).tail(1)
        lines.append(f"Last iteration: {render_iteration_line(last[0]) if last else 'none'}")
        if settings.paths.journal_path.exists():
            lines.append(
                f"Pending checkpoint journal: {settings.paths.journal_path} "
                "(run `backlog-harness verify` to resolve it)",
            )
        return lines

    def verify(self, command: VerifyCommand) -> list[str]:
        settings = _load_settings()
        settings.paths = replace(
            settings.paths,
            manifest=command.manifest or settings.paths.manifest,
            progress=command.progress or settings.paths.progress,
            artifact_dir=command.artifact_dir or settings.paths.artifact_dir,
        )
        if command.use_git is not None:
            settings.loop = replace(settings.loop, use_git=command.use_git)

        manifest_store = ManifestStore(settings.paths.manifest)
        ledger = ProgressLedger(settings.paths.progress)
        committer = CheckpointCommitter(
            manifest_store=manifest_store,
            ledger=ledger,
            checkpointer=_checkpointer(settings),
            artifact_dir=settings.paths.artifact_dir,
            journal_path=settings.paths.journal_path,
        )
        recovery = committer.recover()
        with _counts_on_integrity_error(settings.paths.manifest):
            selection = TaskSelector(manifest_store=manifest_store, ledger=ledger).select()
        summary = summarize_manifest(selection.document)

        lines = [
            f"Checkpoint journal: {recovery.value if recovery else 'none'}",
            f"Manifest and progress ledger agree: completed={summary.completed} "
            f"remaining={summary.remaining}",
        ]
        missing = [entry for entry in selection.entries if not Path(entry.artifact_path).exists()]
        lines.extend(
            f"Warning: artifact missing for {entry.task_id}: {entry.artifact_path}"
            for entry in missing
        )
        return lines


def build_controller(settings: Settings, *, credential: str) -> IterationController:
    """Construct the loop and validate durable state before the first iteration."""

    paths = settings.paths
    manifest_store = ManifestStore(paths.manifest)
    manifest_store.load()
    ledger = ProgressLedger(paths.progress)
    ledger.ensure_exists()
    ledger.load()
    iteration_log = IterationLog(paths.iteration_log)
    iteration_log.records()

    try:
        prompt_template = load_prompt_template(paths.prompt_template)
    except (OSError, UnicodeDecodeError) as error:
        raise StartupError(f"Prompt template {paths.prompt_template} is unreadable: {error}") from error
    except ValueError as error:
        raise ConfigError(f"Prompt template {paths.prompt_template}: {error}") from error

    parser = SentinelParser(
        all_sentinel=settings.sentinels.all_sentinel,
        task_sentinel=settings.sentinels.task_sentinel,
    )
    worker = CliWorker(
        command_template=settings.worker.command_template,
        transient_exit_codes=settings.worker.transient_exit_codes,
    )
    adapter = AgentInvocationAdapter(
        worker=worker,
        ledger=ledger,
        iteration_log=iteration_log,
        parser=parser,
        scratch_dir=paths.scratch_dir,
        timeout_seconds=settings.worker.timeout_seconds,
        prompt_template=prompt_template,
        context_log_entries=settings.loop.context_log_entries,
        context_ledger_lines=settings.loop.context_ledger_lines,
        graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
    )
    committer = CheckpointCommitter(
        manifest_store=manifest_store,
        ledger=ledger,
        checkpointer=_checkpointer(settings),
        artifact_dir=paths.artifact_dir,
        journal_path=paths.journal_path,
    )
    return IterationController(
        selector=TaskSelector(manifest_store=manifest_store, ledger=ledger),
        adapter=adapter,
        parser=parser,
        committer=committer,
        iteration_log=iteration_log,
        max_iterations=settings.loop.max_iterations,
        stall_threshold=settings.loop.stall_threshold,
        iteration_delay_seconds=settings.loop.iteration_delay_seconds,
        secrets=(credential,),
        preview_chars=settings.worker.preview_chars,
    )


def render_report(report: RunReport) -> list[str]:
    lines = [
        f"Run finished: status={report.status.value} iterations={report.iterations} "
        f"committed_this_run={len(report.committed)}",
        f"Tasks: completed={report.summary.completed} remaining={report.summary.remaining} "
        f"total={report.summary.total}",
    ]
    if report.committed:
        lines.append(f"Committed: {', '.join(report.committed)}")
    if report.summary.remaining_ids:
        lines.append(f"Remaining: {_preview_ids(report.summary.remaining_ids)}")
    lines.append(f"Reason: {report.reason}")
    return lines


def _settings_for_run(command: RunCommand) -> Settings:
    settings = _load_settings()
    paths = settings.paths
    settings.paths = replace(
        paths,
        manifest=command.manifest or paths.manifest,
        progress=command.progress or paths.progress,
        iteration_log=command.log_file or paths.iteration_log,
        artifact_dir=command.artifact_dir or paths.artifact_dir,
        scratch_dir=command.scratch_dir or paths.scratch_dir,
        prompt_template=command.prompt_template or paths.prompt_template,
    )
    loop = settings.loop
    settings.loop = replace(
        loop,
        max_iterations=_pick(command.max_iterations, loop.max_iterations),
        stall_threshold=_pick(command.stall_threshold, loop.stall_threshold),
        iteration_delay_seconds=_pick(command.iteration_delay, loop.iteration_delay_seconds),
        use_git=_pick(command.use_git, loop.use_git),
    )
    settings.worker = replace(
        settings.worker,
        timeout_seconds=_pick(command.timeout_seconds, settings.worker.timeout_seconds),
        command_template=_pick(command.command_template, settings.worker.command_template),
    )
    settings.sentinels = replace(
        settings.sentinels,
        all_sentinel=_pick(command.sentinel, settings.sentinels.all_sentinel),
        task_sentinel=_pick(command.task_sentinel, settings.sentinels.task_sentinel),
    )
    return settings


def _pick(override: T | None, default: T) -> T:
    return default if override is None else override


def _checkpointer(settings: Settings) -> Checkpointer:
    if not settings.loop.use_git:
        return DryRunCheckpointer(record_path=settings.paths.dry_run_record_path)
    checkpointer = GitCheckpointer(repo_root=settings.paths.repo_root)
    checkpointer.ensure_repository()
    return checkpointer


def _preview_ids(task_ids: list[str]) -> str:
    preview = ", ".join(task_ids[:_REMAINING_PREVIEW])
    if len(task_ids) > _REMAINING_PREVIEW:
        preview += f", ... (+{len(task_ids) - _REMAINING_PREVIEW} more)"
    return preview


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as error:
        raise ConfigError(str(error)) from error


def _validate(settings: Settings) -> None:
    try:
        settings.validate()
    except ValueError as error:
        raise ConfigError(str(error)) from error


@contextmanager
def _counts_on_integrity_error(manifest_path: Path) -> Iterator[None]:
    """Append manifest counts to an integrity halt so the operator sees what is left."""

    try:
        yield
    except IntegrityError as error:
        summary = summarize_manifest(ManifestStore(manifest_path).load())
        raise IntegrityError(
            f"{error}. Tasks: completed={summary.completed} remaining={summary.remaining} "
            f"total={summary.total}",
        ) from error
