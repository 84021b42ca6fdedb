"""Local demo worker for CLI backend integration tests and smoke runs."""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

from backlog_harness.harness.sentinel import DEFAULT_ALL_SENTINEL, DEFAULT_TASK_SENTINEL


def main(argv: list[str] | None = None) -> int:
    """Write a deterministic artifact and print the task sentinel."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", default=os.getenv("BACKLOG_HARNESS_PROMPT_FILE"))
    parser.add_argument("--task-id", default=os.getenv("BACKLOG_HARNESS_TASK_ID"))
    parser.add_argument("--artifact-path", default=os.getenv("BACKLOG_HARNESS_ARTIFACT_PATH"))
    parser.add_argument("--task-sentinel", default=DEFAULT_TASK_SENTINEL)
    parser.add_argument("--all-sentinel", default=DEFAULT_ALL_SENTINEL)
    parser.add_argument(
        "--mode",
        choices=("complete", "all-complete", "silent"),
        default="complete",
        help="complete: task token; all-complete: global token; silent: no token.",
    )
    parser.add_argument("--sleep-seconds", type=float, default=0.0)
    args, _ = parser.parse_known_args(argv)

    if args.sleep_seconds > 0:
        time.sleep(args.sleep_seconds)

    if not args.task_id:
        print("echo_agent: task id is required", file=sys.stderr)
        return 2

    prompt = Path(args.prompt_file).read_text("utf-8") if args.prompt_file else ""
    if args.mode == "complete" and args.artifact_path:
        artifact = Path(args.artifact_path)
        artifact.parent.mkdir(parents=True, exist_ok=True)
        artifact.write_text(
            f"# {args.task_id}\n\nGenerated by echo_agent from a {len(prompt)} character prompt.\n",
            "utf-8",
        )

    print(f"echo_agent processed {args.task_id}")
    if args.mode == "complete":
        print(args.task_sentinel.replace("{task_id}", args.task_id))
    elif args.mode == "all-complete":
        print(args.all_sentinel)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
