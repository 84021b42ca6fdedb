"""CLI entrypoint for backlog-harness."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from backlog_harness import __version__
from backlog_harness.harness.controllers import (
    HarnessCliController,
    RunCommand,
    StatusCommand,
    VerifyCommand,
)
from backlog_harness.harness.models import (
    INTEGRITY_ERROR_EXIT_CODE,
    STARTUP_ERROR_EXIT_CODE,
    ConfigError,
    IntegrityError,
    StartupError,
)

click.rich_click.USE_MARKDOWN = True
HARNESS_CONTROLLER = HarnessCliController()
T = TypeVar("T")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class HarnessExit(click.ClickException):
    """Fatal harness error reported with a status-specific exit code."""

    def __init__(self, message: str, *, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@click.group()
@click.version_option(version=__version__, prog_name="backlog-harness")
def backlog_harness() -> None:
    """Iteration harness that works through a task backlog with a stateless agent CLI."""


@backlog_harness.command("run")
@click.option(
    "--manifest",
    type=click.Path(path_type=Path),
    default=None,
    help="Task manifest JSON file. Defaults to BACKLOG_HARNESS_MANIFEST or requirements.json.",
)
@click.option(
    "--progress",
    type=click.Path(path_type=Path),
    default=None,
    help="Progress ledger markdown file. Defaults to progress.md.",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Iteration log (JSON Lines). Defaults to iterations.jsonl.",
)
@click.option(
    "--artifact-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory for committed task artifacts. Defaults to content/.",
)
@click.option(
    "--scratch-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory for per-iteration prompt and output captures. Defaults to iteration-logs/.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Hard bound on worker iterations in this run.",
)
@click.option(
    "--stall-threshold",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive iterations without a committed task.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-invocation worker timeout.",
)
@click.option("--sentinel", default=None, help="Exact token that means all work is complete.")
@click.option(
    "--task-sentinel",
    default=None,
    help="Token template with one {task_id} placeholder that means the selected task is done.",
)
@click.option(
    "--command",
    "command_template",
    default=None,
    help=(
        "Worker command template. Supports {prompt}, {prompt_file}, {task_id} and "
        "{artifact_path}; the prompt is also piped to stdin."
    ),
)
@click.option(
    "--prompt-template",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Override the built-in prompt with a str.format template file.",
)
@click.option(
    "--iteration-delay",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds to wait between iterations.",
)
@click.option(
    "--git/--no-git",
    "use_git",
    default=None,
    help="Create a git commit per completed task (default) or only record checkpoint ids.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def run(  # noqa: PLR0913
    manifest: Path | None,
    progress: Path | None,
    log_file: Path | None,
    artifact_dir: Path | None,
    scratch_dir: Path | None,
    max_iterations: int | None,
    stall_threshold: int | None,
    timeout_seconds: int | None,
    sentinel: str | None,
    task_sentinel: str | None,
    command_template: str | None,
    prompt_template: Path | None,
    iteration_delay: float | None,
    use_git: bool | None,
    log_level: str,
) -> None:
    """Run iterations until the backlog is exhausted, the cap is hit or progress stalls."""

    _configure_logging(log_level)
    result = _guarded(
        lambda: HARNESS_CONTROLLER.run(
            RunCommand(
                manifest=manifest,
                progress=progress,
                log_file=log_file,
                artifact_dir=artifact_dir,
                scratch_dir=scratch_dir,
                max_iterations=max_iterations,
                stall_threshold=stall_threshold,
                timeout_seconds=timeout_seconds,
                sentinel=sentinel,
                task_sentinel=task_sentinel,
                command_template=command_template,
                prompt_template=prompt_template,
                iteration_delay=iteration_delay,
                use_git=use_git,
            ),
        ),
    )
    _emit_lines(result.lines)
    if result.exit_code != 0:
        click.get_current_context().exit(result.exit_code)


@backlog_harness.command("status")
@click.option("--manifest", type=click.Path(path_type=Path), default=None, help="Manifest file.")
@click.option("--progress", type=click.Path(path_type=Path), default=None, help="Ledger file.")
@click.option("--log-file", type=click.Path(path_type=Path), default=None, help="Iteration log.")
def status(manifest: Path | None, progress: Path | None, log_file: Path | None) -> None:
    """Show completed/remaining counts and the last iteration."""

    _configure_logging("WARNING")
    _emit_lines(
        _guarded(
            lambda: HARNESS_CONTROLLER.status(
                StatusCommand(manifest=manifest, progress=progress, log_file=log_file),
            ),
        ),
    )


@backlog_harness.command("verify")
@click.option("--manifest", type=click.Path(path_type=Path), default=None, help="Manifest file.")
@click.option("--progress", type=click.Path(path_type=Path), default=None, help="Ledger file.")
@click.option(
    "--artifact-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Artifact directory.",
)
@click.option("--git/--no-git", "use_git", default=None, help="Resolve journals against git.")
def verify(
    manifest: Path | None,
    progress: Path | None,
    artifact_dir: Path | None,
    use_git: bool | None,
) -> None:
    """Resolve an interrupted checkpoint and check manifest/ledger agreement."""

    _configure_logging("WARNING")
    _emit_lines(
        _guarded(
            lambda: HARNESS_CONTROLLER.verify(
                VerifyCommand(
                    manifest=manifest,
                    progress=progress,
                    artifact_dir=artifact_dir,
                    use_git=use_git,
                ),
            ),
        ),
    )


def _guarded(call: Callable[[], T]) -> T:
    try:
        return call()
    except IntegrityError as error:
        raise HarnessExit(f"Integrity error: {error}", exit_code=INTEGRITY_ERROR_EXIT_CODE) from error
    except ConfigError as error:
        raise HarnessExit(
            f"Configuration error: {error}",
            exit_code=STARTUP_ERROR_EXIT_CODE,
        ) from error
    except StartupError as error:
        raise HarnessExit(f"Startup error: {error}", exit_code=STARTUP_ERROR_EXIT_CODE) from error


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    backlog_harness()
