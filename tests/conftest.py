"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from backlog_harness.harness.adapter import AgentInvocationAdapter
from backlog_harness.harness.backend.base import WorkerRequest, WorkerResponse
from backlog_harness.harness.committer import CheckpointCommitter
from backlog_harness.harness.iteration_log import IterationLog
from backlog_harness.harness.loop import IterationController
from backlog_harness.harness.repository import ManifestStore, ProgressLedger
from backlog_harness.harness.selector import TaskSelector
from backlog_harness.harness.sentinel import SentinelParser

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m backlog_harness.harness.backend.echo_agent --prompt-file {{prompt_file}}"
)

ScriptStep = str | BaseException | Callable[[WorkerRequest], WorkerResponse]


class ScriptedWorker:
    """Fake worker replaying scripted outputs; the last step repeats forever."""

    def __init__(self, steps: Sequence[ScriptStep]) -> None:
        if not steps:
            raise ValueError("ScriptedWorker needs at least one step")
        self.steps = list(steps)
        self.requests: list[WorkerRequest] = []

    def invoke(self, request: WorkerRequest) -> WorkerResponse:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.steps) - 1)
        step = self.steps[index]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(request)
        return WorkerResponse(output=step)


def completes(*, body: str | None = None, all_complete: bool = False):
    """Step that stages an artifact and prints the selected task's token."""

    def _step(request: WorkerRequest) -> WorkerResponse:
        request.artifact_path.parent.mkdir(parents=True, exist_ok=True)
        request.artifact_path.write_text(body or f"# {request.task_id}\n\nbody\n", "utf-8")
        output = f"done with {request.task_id}\n<promise>DONE:{request.task_id}</promise>\n"
        if all_complete:
            output += "<promise>COMPLETE</promise>\n"
        return WorkerResponse(output=output)

    return _step


@dataclass
class MemoryCheckpointer:
    """In-memory checkpointer with an optional scripted failure."""

    fail_with: BaseException | None = None
    commits: list[tuple[str, list[Path]]] = field(default_factory=list)
    discarded: int = 0

    def commit(self, *, paths: Sequence[Path], message: str, checkpoint_id: str) -> str:
        del message
        if self.fail_with is not None:
            raise self.fail_with
        self.commits.append((checkpoint_id, list(paths)))
        return f"rev-{len(self.commits)}"

    def has_checkpoint(self, checkpoint_id: str) -> bool:
        return any(existing == checkpoint_id for existing, _ in self.commits)

    def discard(self, *, paths: Sequence[Path]) -> None:
        del paths
        self.discarded += 1


@dataclass
class Harness:
    root: Path
    manifest_store: ManifestStore
    ledger: ProgressLedger
    iteration_log: IterationLog
    committer: CheckpointCommitter
    checkpointer: MemoryCheckpointer
    worker: ScriptedWorker
    controller: IterationController

    @property
    def artifact_dir(self) -> Path:
        return self.root / "content"


def write_manifest_file(
    path: Path,
    task_ids: Sequence[str],
    *,
    completed: Sequence[str] = (),
    collection_key: str = "tasks",
) -> None:
    payload = {
        collection_key: [
            {
                "id": task_id,
                "category": "docs",
                "description": f"Write {task_id}",
                "completed": task_id in completed,
            }
            for task_id in task_ids
        ],
    }
    path.write_text(json.dumps(payload, indent=2) + "\n", "utf-8")


@pytest.fixture()
def manifest_path(tmp_path: Path) -> Path:
    path = tmp_path / "requirements.json"
    write_manifest_file(path, ["t1", "t2", "t3"])
    return path


@pytest.fixture()
def build_harness(tmp_path: Path):
    """Factory wiring real stores with a scripted worker and memory checkpointer."""

    def _build(
        steps: Sequence[ScriptStep],
        *,
        task_ids: Sequence[str] = ("t1", "t2", "t3"),
        max_iterations: int = 10,
        stall_threshold: int = 3,
        checkpointer: MemoryCheckpointer | None = None,
        write_manifest: bool = True,
    ) -> Harness:
        manifest = tmp_path / "requirements.json"
        if write_manifest:
            write_manifest_file(manifest, task_ids)
        manifest_store = ManifestStore(manifest)
        ledger = ProgressLedger(tmp_path / "progress.md")
        ledger.ensure_exists()
        iteration_log = IterationLog(tmp_path / "iterations.jsonl")
        parser = SentinelParser()
        worker = ScriptedWorker(steps)
        checkpointer = checkpointer or MemoryCheckpointer()
        committer = CheckpointCommitter(
            manifest_store=manifest_store,
            ledger=ledger,
            checkpointer=checkpointer,
            artifact_dir=tmp_path / "content",
            journal_path=tmp_path / ".harness" / "checkpoint.json",
        )
        adapter = AgentInvocationAdapter(
            worker=worker,
            ledger=ledger,
            iteration_log=iteration_log,
            parser=parser,
            scratch_dir=tmp_path / "iteration-logs",
            timeout_seconds=5,
        )
        controller = IterationController(
            selector=TaskSelector(manifest_store=manifest_store, ledger=ledger),
            adapter=adapter,
            parser=parser,
            committer=committer,
            iteration_log=iteration_log,
            max_iterations=max_iterations,
            stall_threshold=stall_threshold,
            handle_signals=False,
        )
        return Harness(
            root=tmp_path,
            manifest_store=manifest_store,
            ledger=ledger,
            iteration_log=iteration_log,
            committer=committer,
            checkpointer=checkpointer,
            worker=worker,
            controller=controller,
        )

    return _build
