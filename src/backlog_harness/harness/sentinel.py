"""Exact stop-token matching on raw worker output."""

from __future__ import annotations

import re
from dataclasses import dataclass

from backlog_harness.harness.models import SentinelOutcome

DEFAULT_ALL_SENTINEL = "<promise>COMPLETE</promise>"
DEFAULT_TASK_SENTINEL = "<promise>DONE:{task_id}</promise>"
TASK_ID_PLACEHOLDER = "{task_id}"
_ID_CHARS = r"[A-Za-z0-9._-]"


@dataclass(slots=True, frozen=True)
class SentinelVerdict:
    """Tagged parser result.

    ``all_complete`` is set on a ``TASK_COMPLETE`` verdict when the global
    token was printed alongside the task token.
    """

    outcome: SentinelOutcome
    reason: str
    claimed_task_id: str | None = None
    all_complete: bool = False


class SentinelParser:
    """Case-sensitive substring matcher for the task and global sentinels."""

    def __init__(
        self,
        *,
        all_sentinel: str = DEFAULT_ALL_SENTINEL,
        task_sentinel: str = DEFAULT_TASK_SENTINEL,
    ) -> None:
        if not all_sentinel.strip():
            raise ValueError("Completion sentinel must be a non-empty string.")
        if task_sentinel.count(TASK_ID_PLACEHOLDER) != 1:
            raise ValueError("Task sentinel must contain exactly one {task_id} placeholder.")
        prefix, suffix = task_sentinel.split(TASK_ID_PLACEHOLDER)
        if not prefix and not suffix:
            raise ValueError("Task sentinel needs literal text around {task_id}.")
        if all_sentinel in prefix or all_sentinel in suffix:
            raise ValueError("Task sentinel must not embed the completion sentinel.")
        self.all_sentinel = all_sentinel
        self.task_sentinel = task_sentinel
        # An empty side would let "DONE:t10" contain the token for "t1".
        head = re.escape(prefix) if prefix else rf"(?<!{_ID_CHARS})"
        tail = re.escape(suffix) if suffix else rf"(?!{_ID_CHARS})"
        self._claim_pattern = re.compile(rf"{head}({_ID_CHARS}+){tail}")

    def task_token(self, task_id: str) -> str:
        return self.task_sentinel.replace(TASK_ID_PLACEHOLDER, task_id)

    def parse(self, output: str, *, task_id: str) -> SentinelVerdict:
        all_found = self.all_sentinel in output
        claims = self._claim_pattern.findall(output)
        if task_id in claims:
            return SentinelVerdict(
                outcome=SentinelOutcome.TASK_COMPLETE,
                reason="task_sentinel",
                claimed_task_id=task_id,
                all_complete=all_found,
            )
        if all_found:
            return SentinelVerdict(outcome=SentinelOutcome.ALL_COMPLETE, reason="all_sentinel")

        if claims:
            return SentinelVerdict(
                outcome=SentinelOutcome.INCOMPLETE,
                reason="task_mismatch",
                claimed_task_id=claims[0],
            )
        return SentinelVerdict(outcome=SentinelOutcome.INCOMPLETE, reason="no_sentinel")

    def strip_tokens(self, output: str) -> str:
        """Remove all sentinel tokens so stdout can double as artifact text."""

        text = output.replace(self.all_sentinel, "")
        return self._claim_pattern.sub("", text).strip()
