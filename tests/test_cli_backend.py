from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest

from backlog_harness.harness.backend.base import WorkerRequest
from backlog_harness.harness.backend.cli_backend import CliWorker, build_run_args
from backlog_harness.harness.models import WorkerTimeout, WorkerUnavailable
from conftest import ECHO_AGENT_COMMAND_TEMPLATE

pytestmark = [
    allure.epic("Agent Invocation"),
    allure.feature("Agent Command Rendering"),
]


def _request(tmp_path: Path, *, timeout_seconds: int = 30) -> WorkerRequest:
    return WorkerRequest(
        iteration=7,
        task_id="t1",
        prompt="Write task t1",
        artifact_path=tmp_path / "scratch" / "artifact-iteration-7.md",
        scratch_dir=tmp_path / "scratch",
        timeout_seconds=timeout_seconds,
    )


def test_build_run_args_posix_quotes_placeholder_values() -> None:
    run_args, command_head = build_run_args(
        command_template="agent --task {task_id} --out {artifact_path} -p {prompt}",
        values={"task_id": "t1", "artifact_path": "my dir/a.md", "prompt": "hello 'world'"},
        os_name="posix",
    )

    assert command_head == "agent"
    assert run_args == ["agent", "--task", "t1", "--out", "my dir/a.md", "-p", "hello 'world'"]


def test_build_run_args_windows_escapes_inside_quoted_payload() -> None:
    run_args, command_head = build_run_args(
        command_template='agent "task={task_id}\\n{prompt}" --file {prompt_file}',
        values={"task_id": "t1", "prompt": 'say "hi"', "prompt_file": "p file.txt"},
        os_name="nt",
    )

    assert command_head == "agent"
    assert run_args == 'agent "task=t1\\nsay \\"hi\\"" --file "p file.txt"'


@pytest.mark.parametrize("template", ["", "agent {model}", "agent {0}", "agent {"])
def test_build_run_args_rejects_bad_templates(template: str) -> None:
    with pytest.raises(WorkerUnavailable):
        build_run_args(command_template=template, values={"prompt": "x"}, os_name="posix")


def test_cli_worker_runs_echo_agent_and_captures_output(tmp_path: Path) -> None:
    worker = CliWorker(command_template=ECHO_AGENT_COMMAND_TEMPLATE)

    response = worker.invoke(_request(tmp_path))

    assert response.exit_code == 0
    assert "echo_agent processed t1" in response.output
    assert "<promise>DONE:t1</promise>" in response.output
    assert response.stdout_path == tmp_path / "scratch" / "output-iteration-7.log"
    assert (tmp_path / "scratch" / "prompt-iteration-7.txt").read_text("utf-8") == "Write task t1"
    staged = (tmp_path / "scratch" / "artifact-iteration-7.md").read_text("utf-8")
    assert staged.startswith("# t1")


def test_cli_worker_pipes_prompt_on_stdin(tmp_path: Path) -> None:
    worker = CliWorker(
        command_template=f"{sys.executable} -c \"import sys; print(sys.stdin.read().upper())\"",
    )

    response = worker.invoke(_request(tmp_path))

    assert response.output.strip() == "WRITE TASK T1"


def test_cli_worker_times_out(tmp_path: Path) -> None:
    worker = CliWorker(command_template=f"{ECHO_AGENT_COMMAND_TEMPLATE} --sleep-seconds 30")

    with pytest.raises(WorkerTimeout) as error:
        worker.invoke(_request(tmp_path, timeout_seconds=1))

    assert error.value.transient is True


def test_cli_worker_missing_binary_is_unavailable(tmp_path: Path) -> None:
    worker = CliWorker(command_template="definitely-not-an-installed-agent-cli --yolo")

    with pytest.raises(WorkerUnavailable, match="not found") as error:
        worker.invoke(_request(tmp_path))

    assert error.value.transient is False


def test_cli_worker_auth_failure_is_unavailable(tmp_path: Path) -> None:
    script = "import sys; sys.stderr.write('Error: API key not valid'); sys.exit(1)"
    worker = CliWorker(command_template=f'{sys.executable} -c "{script}"')

    with pytest.raises(WorkerUnavailable, match="access_or_auth"):
        worker.invoke(_request(tmp_path))


def test_cli_worker_unclassified_exit_still_returns_output(tmp_path: Path) -> None:
    script = "print('<promise>DONE:t1</promise>'); raise SystemExit(2)"
    worker = CliWorker(command_template=f'{sys.executable} -c "{script}"')

    response = worker.invoke(_request(tmp_path))

    assert response.exit_code == 2
    assert "<promise>DONE:t1</promise>" in response.output
