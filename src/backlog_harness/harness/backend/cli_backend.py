"""Subprocess-based worker for CLI generative agents."""

from __future__ import annotations

import logging
import os
import shlex
import string
import subprocess
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from backlog_harness.harness.backend.base import WorkerRequest, WorkerResponse
from backlog_harness.harness.failure_classifier import classify_worker_failure
from backlog_harness.harness.models import WorkerInterrupted, WorkerTimeout, WorkerUnavailable

logger = logging.getLogger(__name__)

SUPPORTED_PLACEHOLDERS: tuple[str, ...] = ("prompt", "prompt_file", "task_id", "artifact_path")
DEFAULT_COMMAND_TEMPLATE = "gemini --yolo"


@dataclass(slots=True)
class _ProcessResult:
    exit_code: int
    timed_out: bool = False
    interrupted: bool = False


@dataclass(slots=True)
class IterationCapture:
    """Per-iteration scratch files shared with the worker."""

    prompt_path: Path
    stdout_path: Path
    stderr_path: Path

    @classmethod
    def for_iteration(cls, scratch_dir: Path, iteration: int) -> IterationCapture:
        return cls(
            prompt_path=scratch_dir / f"prompt-iteration-{iteration}.txt",
            stdout_path=scratch_dir / f"output-iteration-{iteration}.log",
            stderr_path=scratch_dir / f"stderr-iteration-{iteration}.log",
        )


class CliWorker:
    """Run a command template once per iteration and capture its output.

    The prompt is available three ways so any agent CLI fits: inline via
    ``{prompt}``, as a path via ``{prompt_file}``, and on stdin.
    """

    def __init__(
        self,
        *,
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        env: Mapping[str, str] | None = None,
        transient_exit_codes: tuple[int, ...] = (137, 143),
    ) -> None:
        self.command_template = command_template
        self.env = dict(env or {})
        self.transient_exit_codes = transient_exit_codes

    def invoke(self, request: WorkerRequest) -> WorkerResponse:
        capture = IterationCapture.for_iteration(request.scratch_dir, request.iteration)
        request.scratch_dir.mkdir(parents=True, exist_ok=True)
        capture.prompt_path.write_text(request.prompt, "utf-8")

        run_args, command_head = build_run_args(
            command_template=self.command_template,
            values={
                "prompt": request.prompt,
                "prompt_file": str(capture.prompt_path),
                "task_id": request.task_id,
                "artifact_path": str(request.artifact_path),
            },
        )

        env = os.environ.copy()
        env.update(self.env)
        env["BACKLOG_HARNESS_TASK_ID"] = request.task_id
        env["BACKLOG_HARNESS_ITERATION"] = str(request.iteration)
        env["BACKLOG_HARNESS_ARTIFACT_PATH"] = str(request.artifact_path)
        env["BACKLOG_HARNESS_PROMPT_FILE"] = str(capture.prompt_path)

        logger.info(
            "Invoking worker: iteration=%d task_id=%s command=%s timeout=%ds",
            request.iteration,
            request.task_id,
            command_head,
            request.timeout_seconds,
        )
        started = time.monotonic()
        try:
            with (
                capture.prompt_path.open("r", encoding="utf-8") as stdin_handle,
                capture.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                capture.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                result = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdin_handle=stdin_handle,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                )
        except FileNotFoundError as error:
            raise WorkerUnavailable(
                f"Worker command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerUnavailable(f"Worker failed to start: {error}", transient=True) from error

        elapsed = time.monotonic() - started
        if result.timed_out:
            raise WorkerTimeout(
                f"Worker exceeded {request.timeout_seconds}s for task_id={request.task_id}",
            )
        if result.interrupted:
            raise WorkerInterrupted(
                f"Worker stopped on shutdown request after {elapsed:.1f}s "
                f"for task_id={request.task_id}",
            )

        stdout = _read_text(capture.stdout_path)
        stderr = _read_text(capture.stderr_path)
        if result.exit_code != 0:
            classification = classify_worker_failure(
                exit_code=result.exit_code,
                stderr=stderr,
                transient_exit_codes=self.transient_exit_codes,
            )
            logger.warning(
                "Worker exited non-zero: task_id=%s exit_code=%d class=%s pattern=%s",
                request.task_id,
                result.exit_code,
                classification.failure_class.value,
                classification.matched_pattern,
            )
            if classification.worker_unavailable:
                raise WorkerUnavailable(
                    f"Worker unavailable ({classification.failure_class.value}), "
                    f"exit code {result.exit_code}",
                    transient=classification.transient,
                )

        logger.info(
            "Worker finished: task_id=%s exit_code=%d elapsed=%.1fs output_chars=%d",
            request.task_id,
            result.exit_code,
            elapsed,
            len(stdout),
        )
        return WorkerResponse(
            output=stdout,
            exit_code=result.exit_code,
            stderr=stderr,
            stdout_path=capture.stdout_path,
            stderr_path=capture.stderr_path,
        )


def build_run_args(
    *,
    command_template: str,
    values: Mapping[str, str],
    os_name: str | None = None,
) -> tuple[str | list[str], str]:
    """Render a command template into argv (POSIX) or a command line (Windows)."""

    stripped = command_template.strip()
    if not stripped:
        raise WorkerUnavailable("Worker command template is empty.", transient=False)

    current_os_name = os_name or os.name
    try:
        if current_os_name == "nt":
            rendered = _render_windows_command_template(template=stripped, values=values).strip()
            if not rendered:
                raise WorkerUnavailable(
                    "Worker command template rendered empty command.",
                    transient=False,
                )
            return rendered, rendered.split(maxsplit=1)[0]

        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except (KeyError, IndexError, ValueError) as error:
        raise WorkerUnavailable(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise WorkerUnavailable("Worker command template rendered empty command.", transient=False)
    return argv, argv[0]


def _render_windows_command_template(*, template: str, values: Mapping[str, str]) -> str:
    formatter = string.Formatter()
    rendered_parts: list[str] = []
    in_double_quotes = False

    for literal_text, field_name, format_spec, conversion in formatter.parse(template):
        rendered_parts.append(literal_text)
        in_double_quotes = _advance_windows_quote_state(literal_text, in_double_quotes)
        if field_name is None:
            continue

        try:
            value = values[field_name]
        except KeyError as error:
            raise KeyError(field_name) from error

        if conversion not in (None, "", "s"):
            raise KeyError(f"{field_name}!{conversion}")
        value_text = format(value, format_spec) if format_spec else value
        if in_double_quotes:
            rendered_parts.append(value_text.replace('"', '\\"'))
            continue

        rendered_parts.append(subprocess.list2cmdline([value_text]))

    return "".join(rendered_parts)


def _advance_windows_quote_state(literal_text: str, in_double_quotes: bool) -> bool:
    for index, char in enumerate(literal_text):
        if char != '"':
            continue
        backslashes = 0
        scan_index = index - 1
        while scan_index >= 0 and literal_text[scan_index] == "\\":
            backslashes += 1
            scan_index -= 1
        if backslashes % 2 == 1:
            continue
        in_double_quotes = not in_double_quotes
    return in_double_quotes


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: str | list[str],
    env: dict[str, str],
    timeout_seconds: int,
    stdin_handle: IO[str],
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: int | None,
) -> _ProcessResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdin=stdin_handle,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return _ProcessResult(exit_code=returncode)

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return _ProcessResult(exit_code=124, timed_out=True)

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return _ProcessResult(exit_code=124, interrupted=True)

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_text(path: Path) -> str:
    return path.read_text("utf-8", errors="replace") if path.exists() else ""
