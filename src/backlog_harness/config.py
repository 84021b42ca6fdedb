"""Runtime configuration for the iteration harness."""

from __future__ import annotations

import os
import string
from dataclasses import dataclass, field
from pathlib import Path

from backlog_harness.harness.backend.cli_backend import (
    DEFAULT_COMMAND_TEMPLATE,
    SUPPORTED_PLACEHOLDERS,
)
from backlog_harness.harness.models import CredentialError
from backlog_harness.harness.sentinel import (
    DEFAULT_ALL_SENTINEL,
    DEFAULT_TASK_SENTINEL,
    SentinelParser,
)

DEFAULT_CREDENTIAL_ENV = "GEMINI_API_KEY"


@dataclass(slots=True)
class PathSettings:
    """Locations of durable state, artifacts and scratch captures."""

    manifest: Path = Path("requirements.json")
    progress: Path = Path("progress.md")
    iteration_log: Path = Path("iterations.jsonl")
    artifact_dir: Path = Path("content")
    scratch_dir: Path = Path("iteration-logs")
    state_dir: Path = Path(".harness")
    prompt_template: Path | None = None
    repo_root: Path = Path(".")

    @property
    def journal_path(self) -> Path:
        return self.state_dir / "checkpoint.json"

    @property
    def dry_run_record_path(self) -> Path:
        return self.state_dir / "checkpoints.txt"


@dataclass(slots=True)
class LoopSettings:
    """Iteration bounds and pacing."""

    max_iterations: int = 50
    stall_threshold: int = 3
    iteration_delay_seconds: float = 0.0
    use_git: bool = True
    context_log_entries: int = 5
    context_ledger_lines: int = 5


@dataclass(slots=True)
class WorkerSettings:
    """External generative worker settings."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    timeout_seconds: int = 900
    graceful_shutdown_seconds: int = 30
    credential_env: str = DEFAULT_CREDENTIAL_ENV
    transient_exit_codes: tuple[int, ...] = (137, 143)
    preview_chars: int = 2_000


@dataclass(slots=True)
class SentinelSettings:
    """Exact stop tokens the worker prints."""

    all_sentinel: str = DEFAULT_ALL_SENTINEL
    task_sentinel: str = DEFAULT_TASK_SENTINEL


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    paths: PathSettings = field(default_factory=PathSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    sentinels: SentinelSettings = field(default_factory=SentinelSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        prompt_template = os.getenv("BACKLOG_HARNESS_PROMPT_TEMPLATE", "").strip()
        return cls(
            paths=PathSettings(
                manifest=Path(os.getenv("BACKLOG_HARNESS_MANIFEST", "requirements.json")),
                progress=Path(os.getenv("BACKLOG_HARNESS_PROGRESS", "progress.md")),
                iteration_log=Path(os.getenv("BACKLOG_HARNESS_LOG_FILE", "iterations.jsonl")),
                artifact_dir=Path(os.getenv("BACKLOG_HARNESS_ARTIFACT_DIR", "content")),
                scratch_dir=Path(os.getenv("BACKLOG_HARNESS_SCRATCH_DIR", "iteration-logs")),
                state_dir=Path(os.getenv("BACKLOG_HARNESS_STATE_DIR", ".harness")),
                prompt_template=Path(prompt_template) if prompt_template else None,
                repo_root=Path(os.getenv("BACKLOG_HARNESS_REPO_ROOT", ".")),
            ),
            loop=LoopSettings(
                max_iterations=_env_int("BACKLOG_HARNESS_MAX_ITERATIONS", 50),
                stall_threshold=_env_int("BACKLOG_HARNESS_STALL_THRESHOLD", 3),
                iteration_delay_seconds=_env_float("BACKLOG_HARNESS_ITERATION_DELAY_SECONDS", 0.0),
                use_git=_env_bool("BACKLOG_HARNESS_GIT", True),
                context_log_entries=_env_int("BACKLOG_HARNESS_CONTEXT_LOG_ENTRIES", 5),
                context_ledger_lines=_env_int("BACKLOG_HARNESS_CONTEXT_LEDGER_LINES", 5),
            ),
            worker=WorkerSettings(
                command_template=os.getenv("BACKLOG_HARNESS_COMMAND", DEFAULT_COMMAND_TEMPLATE),
                timeout_seconds=_env_int("BACKLOG_HARNESS_TIMEOUT_SECONDS", 900),
                graceful_shutdown_seconds=_env_int(
                    "BACKLOG_HARNESS_GRACEFUL_SHUTDOWN_SECONDS",
                    30,
                ),
                credential_env=os.getenv(
                    "BACKLOG_HARNESS_CREDENTIAL_ENV",
                    DEFAULT_CREDENTIAL_ENV,
                ).strip(),
                transient_exit_codes=_env_int_tuple(
                    "BACKLOG_HARNESS_TRANSIENT_EXIT_CODES",
                    (137, 143),
                ),
                preview_chars=_env_int("BACKLOG_HARNESS_PREVIEW_CHARS", 2_000),
            ),
            sentinels=SentinelSettings(
                all_sentinel=os.getenv("BACKLOG_HARNESS_SENTINEL", DEFAULT_ALL_SENTINEL),
                task_sentinel=os.getenv("BACKLOG_HARNESS_TASK_SENTINEL", DEFAULT_TASK_SENTINEL),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the harness cannot run with."""

        if self.loop.max_iterations < 1:
            raise ValueError("BACKLOG_HARNESS_MAX_ITERATIONS must be >= 1.")
        if self.loop.stall_threshold < 1:
            raise ValueError("BACKLOG_HARNESS_STALL_THRESHOLD must be >= 1.")
        if self.loop.iteration_delay_seconds < 0:
            raise ValueError("BACKLOG_HARNESS_ITERATION_DELAY_SECONDS must be >= 0.")
        if self.loop.context_log_entries < 0:
            raise ValueError("BACKLOG_HARNESS_CONTEXT_LOG_ENTRIES must be >= 0.")
        if self.loop.context_ledger_lines < 0:
            raise ValueError("BACKLOG_HARNESS_CONTEXT_LEDGER_LINES must be >= 0.")
        if self.worker.timeout_seconds <= 0:
            raise ValueError("BACKLOG_HARNESS_TIMEOUT_SECONDS must be > 0.")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ValueError("BACKLOG_HARNESS_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.worker.preview_chars <= 0:
            raise ValueError("BACKLOG_HARNESS_PREVIEW_CHARS must be > 0.")
        if not self.worker.credential_env:
            raise ValueError("BACKLOG_HARNESS_CREDENTIAL_ENV must name an environment variable.")
        _validate_command_template(self.worker.command_template)
        try:
            SentinelParser(
                all_sentinel=self.sentinels.all_sentinel,
                task_sentinel=self.sentinels.task_sentinel,
            )
        except ValueError as error:
            raise ValueError(f"Invalid sentinel configuration: {error}") from error

    def read_credential(self) -> str:
        """Read the worker credential once; absence is a startup error."""

        value = os.getenv(self.worker.credential_env, "").strip()
        if not value:
            raise CredentialError(
                f"Worker credential is missing: set {self.worker.credential_env} "
                "(or point BACKLOG_HARNESS_CREDENTIAL_ENV at the variable your worker uses).",
            )
        return value


def _validate_command_template(template: str) -> None:
    if not template.strip():
        raise ValueError("BACKLOG_HARNESS_COMMAND must not be empty.")
    try:
        fields = [name for _, name, _, _ in string.Formatter().parse(template) if name is not None]
    except ValueError as error:
        raise ValueError(f"Invalid BACKLOG_HARNESS_COMMAND template: {error}") from error
    unknown = sorted({name for name in fields if name not in SUPPORTED_PLACEHOLDERS})
    if unknown:
        raise ValueError(
            "Unsupported placeholders in BACKLOG_HARNESS_COMMAND: "
            f"{', '.join(unknown)}. Supported: {', '.join(SUPPORTED_PLACEHOLDERS)}.",
        )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return tuple(int(part.strip()) for part in value.split(",") if part.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer list for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
