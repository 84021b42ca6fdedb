"""File-based contracts for the manifest and other JSON documents."""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from backlog_harness.harness.models import ManifestDocument, ManifestError, TaskRecord

MANIFEST_COLLECTION_KEYS: tuple[str, ...] = ("tasks", "features")

_TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")
_KNOWN_TASK_KEYS = frozenset({"id", "category", "description", "metadata", "completed"})


def write_text_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` so readers never observe a partial file."""

    write_bytes_atomic(path, text.encode("utf-8"))


def write_bytes_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def dump_json(payload: dict[str, Any]) -> str:
    """Render JSON using deterministic formatting."""

    return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically."""

    write_text_atomic(path, dump_json(payload))


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def read_manifest(path: Path) -> ManifestDocument:
    """Load and validate the task manifest."""

    if not path.exists():
        raise ManifestError(f"Manifest file not found: {path}")
    try:
        raw = load_json(path)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, TypeError) as error:
        raise ManifestError(f"Manifest at {path} is not a readable JSON object: {error}") from error
    return parse_manifest(raw, source=str(path))


def parse_manifest(raw: dict[str, Any], *, source: str = "manifest") -> ManifestDocument:
    collection_key = next((key for key in MANIFEST_COLLECTION_KEYS if key in raw), None)
    if collection_key is None:
        raise ManifestError(
            f"{source}: expected a top-level {' or '.join(repr(k) for k in MANIFEST_COLLECTION_KEYS)} array",
        )
    raw_tasks = raw[collection_key]
    if not isinstance(raw_tasks, list):
        raise ManifestError(f"{source}: {collection_key} must be an array")

    tasks: list[TaskRecord] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_tasks):
        task = _parse_task(item, where=f"{source}: {collection_key}[{index}]")
        if task.task_id in seen:
            raise ManifestError(f"{source}: duplicate task id {task.task_id!r}")
        seen.add(task.task_id)
        tasks.append(task)

    extra = {key: value for key, value in raw.items() if key != collection_key}
    return ManifestDocument(
        tasks=tasks,
        collection_key=collection_key,
        extra=extra,
        key_order=list(raw),
    )


def _parse_task(item: object, *, where: str) -> TaskRecord:
    if not isinstance(item, dict):
        raise ManifestError(f"{where} must be an object")
    task_id = item.get("id")
    category = item.get("category", "")
    description = item.get("description", "")
    metadata = item.get("metadata", {})
    completed = item.get("completed", False)
    if not isinstance(task_id, str) or not task_id.strip():
        raise ManifestError(f"{where}.id must be a non-empty string")
    if not _TASK_ID_PATTERN.match(task_id):
        raise ManifestError(
            f"{where}.id {task_id!r} may only contain letters, digits, '.', '_' and '-'",
        )
    if not isinstance(category, str):
        raise ManifestError(f"{where}.category must be a string")
    if not isinstance(description, str):
        raise ManifestError(f"{where}.description must be a string")
    if not isinstance(metadata, dict):
        raise ManifestError(f"{where}.metadata must be an object")
    if not isinstance(completed, bool):
        raise ManifestError(f"{where}.completed must be a boolean")
    return TaskRecord(
        task_id=task_id,
        category=category,
        description=description,
        metadata=metadata,
        completed=completed,
        extra={key: value for key, value in item.items() if key not in _KNOWN_TASK_KEYS},
    )


def render_manifest(document: ManifestDocument) -> str:
    tasks = [task.to_payload() for task in document.tasks]
    payload: dict[str, Any] = {}
    for key in document.key_order or [document.collection_key]:
        payload[key] = tasks if key == document.collection_key else document.extra.get(key)
    for key, value in document.extra.items():
        payload.setdefault(key, value)
    payload.setdefault(document.collection_key, tasks)
    return dump_json(payload)


def write_manifest(path: Path, document: ManifestDocument) -> None:
    """Persist the manifest atomically."""

    write_text_atomic(path, render_manifest(document))
