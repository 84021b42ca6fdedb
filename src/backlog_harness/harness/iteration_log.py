"""Append-only JSON Lines audit trail of loop iterations."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

from backlog_harness.harness.models import (
    IterationOutcome,
    IterationRecord,
    SentinelOutcome,
    StartupError,
)

logger = logging.getLogger(__name__)


class IterationLog:
    """One JSON object per iteration, written synchronously in iteration order."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._last_iteration: int | None = None

    def records(self) -> list[IterationRecord]:
        if not self.path.exists():
            return []
        try:
            text = self.path.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            raise StartupError(f"Iteration log {self.path} is unreadable: {error}") from error

        lines = text.splitlines()
        records: list[IterationRecord] = []
        for index, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                records.append(record_from_payload(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
                is_torn_tail = index == len(lines) - 1 and not text.endswith("\n")
                if is_torn_tail:
                    logger.warning("Ignoring torn trailing iteration record: path=%s", self.path)
                    continue
                raise StartupError(
                    f"Malformed iteration record at {self.path}:{index + 1}: {error}",
                ) from error
        return records

    def last_iteration(self) -> int:
        if self._last_iteration is None:
            records = self.records()
            self._last_iteration = records[-1].iteration if records else 0
        return self._last_iteration

    def tail(self, count: int) -> list[IterationRecord]:
        if count <= 0:
            return []
        return self.records()[-count:]

    def append(self, record: IterationRecord) -> None:
        last = self.last_iteration()
        if record.iteration <= last:
            raise ValueError(
                f"Iteration numbers must increase: got {record.iteration} after {last}",
            )
        line = json.dumps(record_to_payload(record), ensure_ascii=False, sort_keys=True)
        prefix = self._prepare_tail()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"{prefix}{line}\n")
            handle.flush()
            os.fsync(handle.fileno())
        self._last_iteration = record.iteration

    def _prepare_tail(self) -> str:
        """Drop a torn trailing fragment, or return the newline a complete one lacks."""

        if not self.path.exists() or self.path.stat().st_size == 0:
            return ""
        data = self.path.read_bytes()
        if data.endswith(b"\n"):
            return ""
        cut = data.rfind(b"\n") + 1
        try:
            record_from_payload(json.loads(data[cut:]))
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError):
            with self.path.open("r+b") as handle:
                handle.truncate(cut)
            logger.warning("Dropped torn trailing iteration record: path=%s", self.path)
            return ""
        return "\n"


def record_to_payload(record: IterationRecord) -> dict[str, Any]:
    return {
        "iteration": record.iteration,
        "task_id": record.task_id,
        "started_at": record.started_at.isoformat(),
        "finished_at": record.finished_at.isoformat(),
        "sentinel": record.sentinel.value,
        "outcome": record.outcome.value,
        "detail": record.detail,
        "raw_output": record.raw_output,
        "output_path": record.output_path,
        "checkpoint_id": record.checkpoint_id,
    }


def record_from_payload(payload: dict[str, Any]) -> IterationRecord:
    iteration = payload["iteration"]
    if not isinstance(iteration, int) or iteration < 1:
        raise ValueError("iteration must be a positive integer")
    task_id = payload.get("task_id")
    if task_id is not None and not isinstance(task_id, str):
        raise TypeError("task_id must be a string or null")
    return IterationRecord(
        iteration=iteration,
        task_id=task_id,
        started_at=datetime.fromisoformat(payload["started_at"]),
        finished_at=datetime.fromisoformat(payload["finished_at"]),
        sentinel=SentinelOutcome(payload["sentinel"]),
        outcome=IterationOutcome(payload["outcome"]),
        detail=str(payload.get("detail") or ""),
        raw_output=str(payload.get("raw_output") or ""),
        output_path=payload.get("output_path"),
        checkpoint_id=payload.get("checkpoint_id"),
    )
