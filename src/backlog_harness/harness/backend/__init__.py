"""Worker backend implementations."""

from backlog_harness.harness.backend.base import GenerativeWorker, WorkerRequest, WorkerResponse
from backlog_harness.harness.backend.cli_backend import CliWorker, build_run_args

__all__ = [
    "CliWorker",
    "GenerativeWorker",
    "WorkerRequest",
    "WorkerResponse",
    "build_run_args",
]
