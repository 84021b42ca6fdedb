"""Prompt rendering for one worker invocation."""

from __future__ import annotations

import json
import string
from dataclasses import dataclass, field
from pathlib import Path

from backlog_harness.harness.models import IterationRecord, ManifestSummary, TaskRecord

_NEXT_IDS_PREVIEW = 5
PROMPT_FIELDS = (
    "task_id",
    "task_json",
    "artifact_path",
    "task_sentinel",
    "all_sentinel",
    "manifest_summary",
    "ledger_tail",
    "log_tail",
)

DEFAULT_PROMPT_TEMPLATE = """\
You are working through a backlog of independent content tasks, one task per run.
You have no memory of previous runs; the state below is everything that is known.

### TARGET TASK ###
The harness has selected task {task_id}. Its manifest entry:
{task_json}

### BACKLOG STATE ###
{manifest_summary}

Recent progress ledger lines:
{ledger_tail}

Recent iterations:
{log_tail}

### YOUR TASK ###
1. Produce the complete content for task {task_id} ONLY. Do not work on other tasks.
2. Write the content as markdown to: {artifact_path}
3. Do NOT edit the manifest, the progress ledger or the iteration log, and do NOT make
   git commits. The harness records progress after checking your output.
4. When the content for {task_id} is fully written, print this exact line:
{task_sentinel}
5. Only if you are certain no task in the backlog remains, print instead:
{all_sentinel}

If you cannot finish, print neither line.
"""


@dataclass(slots=True)
class InvocationContext:
    """Bounded view of durable state handed to a stateless worker."""

    task: TaskRecord
    summary: ManifestSummary
    ledger_tail: list[str] = field(default_factory=list)
    log_tail: list[IterationRecord] = field(default_factory=list)


def render_prompt(
    *,
    template: str,
    context: InvocationContext,
    artifact_path: Path,
    task_sentinel: str,
    all_sentinel: str,
) -> str:
    return template.format(
        task_id=context.task.task_id,
        task_json=json.dumps(context.task.to_payload(), ensure_ascii=False, indent=2),
        artifact_path=str(artifact_path),
        task_sentinel=task_sentinel,
        all_sentinel=all_sentinel,
        manifest_summary=render_manifest_summary(context.summary),
        ledger_tail="\n".join(context.ledger_tail) or "(none)",
        log_tail=_bullet_lines([render_iteration_line(record) for record in context.log_tail]),
    )


def render_manifest_summary(summary: ManifestSummary) -> str:
    upcoming = ", ".join(summary.remaining_ids[:_NEXT_IDS_PREVIEW]) or "none"
    if summary.remaining > _NEXT_IDS_PREVIEW:
        upcoming += ", ..."
    return (
        f"Tasks: total={summary.total} completed={summary.completed} "
        f"remaining={summary.remaining}\n"
        f"Next incomplete: {upcoming}"
    )


def render_iteration_line(record: IterationRecord) -> str:
    task = record.task_id or "none"
    line = (
        f"#{record.iteration} task={task} outcome={record.outcome.value} "
        f"sentinel={record.sentinel.value}"
    )
    if record.detail:
        line += f" detail={record.detail}"
    return line


def _bullet_lines(lines: list[str]) -> str:
    if not lines:
        return "- (none)"
    return "\n".join(f"- {line}" for line in lines)


def load_prompt_template(path: Path | None) -> str:
    if path is None:
        return DEFAULT_PROMPT_TEMPLATE
    template = path.read_text("utf-8")
    validate_prompt_template(template)
    return template


def validate_prompt_template(template: str) -> None:
    """Reject templates that would fail to render for a real task."""

    try:
        names = [name for _, name, _, _ in string.Formatter().parse(template) if name is not None]
    except ValueError as error:
        raise ValueError(f"malformed template ({error}); escape literal braces as {{{{ }}}}") from error
    unknown = sorted({name for name in names if name not in PROMPT_FIELDS})
    if unknown:
        raise ValueError(
            f"unknown fields {', '.join(repr(name) for name in unknown)}; "
            f"supported: {', '.join(PROMPT_FIELDS)}",
        )
    sample = InvocationContext(
        task=TaskRecord(task_id="sample-1"),
        summary=ManifestSummary(total=1, completed=0, remaining_ids=["sample-1"]),
    )
    try:
        render_prompt(
            template=template,
            context=sample,
            artifact_path=Path("artifact.md"),
            task_sentinel="<done>",
            all_sentinel="<all>",
        )
    except (KeyError, IndexError, AttributeError, ValueError) as error:
        raise ValueError(f"template does not render: {error}") from error
