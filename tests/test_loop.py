from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from backlog_harness.harness.backend.base import WorkerRequest, WorkerResponse
from backlog_harness.harness.models import (
    IntegrityError,
    IterationOutcome,
    LedgerEntry,
    RunStatus,
    SentinelOutcome,
    WorkerInterrupted,
    WorkerTimeout,
    WorkerUnavailable,
)
from conftest import MemoryCheckpointer, completes

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Iteration Controller"),
]


def _outcomes(harness) -> list[tuple[str | None, str]]:
    return [(r.task_id, r.outcome.value) for r in harness.iteration_log.records()]


def test_all_complete_claim_before_last_task_exits_exhausted(build_harness) -> None:
    harness = build_harness([completes(), completes(), "nothing left <promise>COMPLETE</promise>"])

    report = harness.controller.run()

    assert report.status == RunStatus.EXHAUSTED
    assert report.committed == ["t1", "t2"]
    assert report.summary.remaining_ids == ["t3"]
    assert harness.manifest_store.load().get("t3").completed is False
    assert [entry.task_id for entry in harness.ledger.load()] == ["t1", "t2"]
    records = harness.iteration_log.records()
    assert [r.outcome for r in records] == [
        IterationOutcome.COMMITTED,
        IterationOutcome.COMMITTED,
        IterationOutcome.EXHAUSTED,
    ]
    assert records[2].sentinel == SentinelOutcome.ALL_COMPLETE


def test_worker_that_always_times_out_hits_iteration_cap(build_harness) -> None:
    harness = build_harness(
        [WorkerTimeout("Worker exceeded 5s")],
        task_ids=("t1",),
        max_iterations=3,
        stall_threshold=10,
    )

    report = harness.controller.run()

    assert report.status == RunStatus.ITERATION_CAP_REACHED
    assert report.status.exit_code == 3
    assert report.iterations == 3
    assert harness.ledger.load() == []
    assert harness.manifest_store.load().get("t1").completed is False
    assert [r.detail for r in harness.iteration_log.records()] == ["worker_timeout"] * 3


@pytest.mark.parametrize("threshold", [1, 2, 5])
def test_incomplete_worker_stalls_after_exact_threshold(build_harness, threshold: int) -> None:
    harness = build_harness(["still thinking"], max_iterations=20, stall_threshold=threshold)

    report = harness.controller.run()

    assert report.status == RunStatus.STALLED
    assert report.status.exit_code == 4
    assert report.iterations == threshold
    assert len(harness.worker.requests) == threshold
    assert {r.outcome for r in harness.iteration_log.records()} == {IterationOutcome.REJECTED}


def test_commit_resets_stall_counter(build_harness) -> None:
    harness = build_harness(
        ["no", "no", completes(), "no", "no", "no"],
        max_iterations=20,
        stall_threshold=3,
    )

    report = harness.controller.run()

    assert report.status == RunStatus.STALLED
    assert report.iterations == 6
    assert report.committed == ["t1"]


def test_repeated_runs_never_duplicate_ledger_entries(build_harness) -> None:
    first = build_harness([completes()])
    assert first.controller.run().status == RunStatus.EXHAUSTED

    second = build_harness([completes()], write_manifest=False)
    report = second.controller.run()

    assert report.status == RunStatus.EXHAUSTED
    assert report.iterations == 0
    assert second.worker.requests == []
    ids = [entry.task_id for entry in second.ledger.load()]
    assert ids == ["t1", "t2", "t3"]
    assert _outcomes(second)[-1] == (None, "exhausted")


def test_worker_repeating_a_finished_task_token_is_rejected(build_harness) -> None:
    def _always_t1(request: WorkerRequest) -> WorkerResponse:
        request.artifact_path.parent.mkdir(parents=True, exist_ok=True)
        request.artifact_path.write_text("content", "utf-8")
        return WorkerResponse(output="<promise>DONE:t1</promise>")

    harness = build_harness([_always_t1], stall_threshold=2)

    report = harness.controller.run()

    assert report.status == RunStatus.STALLED
    assert [entry.task_id for entry in harness.ledger.load()] == ["t1"]
    records = harness.iteration_log.records()
    assert records[1].task_id == "t2"
    assert records[1].detail == "task_mismatch: claimed=t1"


def test_iteration_numbers_continue_across_runs(build_harness) -> None:
    first = build_harness(["no"], max_iterations=2)
    first.controller.run()

    second = build_harness(["no"], max_iterations=1, write_manifest=False)
    second.controller.run()

    assert [r.iteration for r in second.iteration_log.records()] == [1, 2, 3]


def test_stdout_is_artifact_when_nothing_staged(build_harness) -> None:
    harness = build_harness(["# Title\n\nBody text\n<promise>DONE:t1</promise>\n"], max_iterations=1)

    harness.controller.run()

    artifact = harness.artifact_dir / "t1.md"
    assert artifact.read_text("utf-8") == "# Title\n\nBody text"


def test_token_without_content_is_rejected_as_empty_artifact(build_harness) -> None:
    harness = build_harness(["<promise>DONE:t1</promise>"], max_iterations=1)

    harness.controller.run()

    record = harness.iteration_log.records()[0]
    assert record.sentinel == SentinelOutcome.TASK_COMPLETE
    assert record.outcome == IterationOutcome.REJECTED
    assert record.detail == "empty_artifact"
    assert harness.ledger.load() == []


def test_checkpoint_failure_is_errored_and_loop_continues(build_harness) -> None:
    harness = build_harness(
        [completes()],
        stall_threshold=2,
        checkpointer=MemoryCheckpointer(fail_with=RuntimeError("git index locked")),
    )

    report = harness.controller.run()

    assert report.status == RunStatus.STALLED
    records = harness.iteration_log.records()
    assert [r.outcome for r in records] == [IterationOutcome.ERRORED] * 2
    assert records[0].detail.startswith("checkpoint_failed")
    assert [r.task_id for r in records] == ["t1", "t1"]
    assert harness.ledger.load() == []
    assert not (harness.artifact_dir / "t1.md").exists()


def test_task_and_all_complete_tokens_commit_then_exit(build_harness) -> None:
    harness = build_harness([completes(all_complete=True)])

    report = harness.controller.run()

    assert report.status == RunStatus.EXHAUSTED
    assert report.committed == ["t1"]
    assert report.reason == "worker reported that all work is complete"


def test_unavailable_worker_is_errored(build_harness) -> None:
    harness = build_harness(
        [WorkerUnavailable("Worker command not found: gemini", transient=False)],
        stall_threshold=1,
    )

    report = harness.controller.run()

    assert report.status == RunStatus.STALLED
    assert harness.iteration_log.records()[0].detail == "worker_unavailable"


def test_stop_request_is_honored_at_iteration_boundary(build_harness) -> None:
    holder = {}

    def _complete_then_stop(request: WorkerRequest) -> WorkerResponse:
        holder["controller"].request_stop(signal_name="SIGINT")
        return completes()(request)

    harness = build_harness([_complete_then_stop])
    holder["controller"] = harness.controller

    report = harness.controller.run()

    assert report.status == RunStatus.INTERRUPTED
    assert report.status.exit_code == 130
    assert report.committed == ["t1"]
    assert report.reason == "interrupted by SIGINT"
    assert len(harness.worker.requests) == 1


def test_worker_interrupted_during_invocation_ends_run(build_harness) -> None:
    harness = build_harness([WorkerInterrupted("stopped")])

    report = harness.controller.run()

    assert report.status == RunStatus.INTERRUPTED
    assert harness.iteration_log.records()[0].detail == "interrupted"


def test_integrity_error_between_iterations_halts(build_harness) -> None:
    def _tamper(request: WorkerRequest) -> WorkerResponse:
        harness.ledger.append(
            LedgerEntry(
                task_id="t3",
                completed_at=datetime(2026, 1, 1, tzinfo=UTC),
                artifact_path="content/t3.md",
                checkpoint_id="ckpt-t3-ffffffffffff",
            ),
        )
        return completes()(request)

    harness = build_harness([_tamper])

    with pytest.raises(IntegrityError, match="ledger entry without completed flag: t3"):
        harness.controller.run()

    assert [entry.task_id for entry in harness.ledger.load()] == ["t3", "t1"]


def test_prompt_carries_durable_context(build_harness) -> None:
    harness = build_harness([completes()], max_iterations=2)

    harness.controller.run()

    second_prompt = harness.worker.requests[1].prompt
    assert "selected task t2" in second_prompt
    assert "- [x] t1 | completed_at=" in second_prompt
    assert "#1 task=t1 outcome=committed" in second_prompt
    assert "<promise>DONE:t2</promise>" in second_prompt
    assert "remaining=2" in second_prompt


def test_raw_output_preview_redacts_credential(build_harness) -> None:
    harness = build_harness(["leaked sekret-credential-value here"], stall_threshold=1)
    harness.controller.secrets = ("sekret-credential-value",)

    harness.controller.run()

    record = harness.iteration_log.records()[0]
    assert "sekret-credential-value" not in record.raw_output
    assert "[redacted-credential]" in record.raw_output
