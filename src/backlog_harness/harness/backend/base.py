"""Capability interface for external generative workers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class WorkerRequest:
    """Inputs required to run one worker invocation."""

    iteration: int
    task_id: str
    prompt: str
    artifact_path: Path
    scratch_dir: Path
    timeout_seconds: int
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class WorkerResponse:
    """Raw worker output plus capture metadata."""

    output: str
    exit_code: int = 0
    stderr: str = ""
    stdout_path: Path | None = None
    stderr_path: Path | None = None


class GenerativeWorker(Protocol):
    """Protocol implemented by worker backends and test fakes.

    Implementations raise ``WorkerUnavailable``, ``WorkerTimeout`` or
    ``WorkerInterrupted`` instead of returning partial responses.
    """

    def invoke(self, request: WorkerRequest) -> WorkerResponse:
        """Run the worker once and return its raw output."""
