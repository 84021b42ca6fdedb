"""Version-control checkpoints for committed tasks.

Two implementations share one surface:

- ``GitCheckpointer`` shells out to ``git``.  Each checkpoint is a single
  commit restricted to the paths the harness changed, with a
  ``Checkpoint: <id>`` trailer so the commit can be found again from the
  ledger entry (``git log --grep``).
- ``DryRunCheckpointer`` records checkpoint ids in a plain text file (or in
  memory) for runs outside a git work tree (``--no-git``).

A checkpoint that exists is the commit point of the whole sequence: crash
recovery rolls forward when ``has_checkpoint`` is true and back otherwise.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from backlog_harness.harness.models import CheckpointError, StartupError

logger = logging.getLogger(__name__)

CHECKPOINT_TRAILER = "Checkpoint"


class Checkpointer(Protocol):
    """Protocol implemented by checkpoint backends and test fakes."""

    def commit(self, *, paths: Sequence[Path], message: str, checkpoint_id: str) -> str:
        """Record one checkpoint covering ``paths`` and return its revision."""

    def has_checkpoint(self, checkpoint_id: str) -> bool:
        """Whether a checkpoint with this id was recorded."""

    def discard(self, *, paths: Sequence[Path]) -> None:
        """Drop any staged, uncommitted state for ``paths``."""


def checkpoint_message(*, subject: str, checkpoint_id: str) -> str:
    return f"{subject}\n\n{CHECKPOINT_TRAILER}: {checkpoint_id}\n"


class GitCheckpointer:
    def __init__(
        self,
        *,
        repo_root: Path,
        author_name: str | None = None,
        author_email: str | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.author_name = author_name
        self.author_email = author_email

    def ensure_repository(self) -> None:
        result = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=self.repo_root,
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0 or result.stdout.strip() != "true":
            raise StartupError(
                f"{self.repo_root} is not inside a git work tree; run `git init` or pass --no-git.",
            )

    def commit(self, *, paths: Sequence[Path], message: str, checkpoint_id: str) -> str:
        relative = self._relative(paths)
        self._git(["add", "--", *relative])
        self._git(
            [
                *self._identity_flags(),
                "commit",
                "--quiet",
                "--no-verify",
                "-m",
                checkpoint_message(subject=message, checkpoint_id=checkpoint_id),
                "--",
                *relative,
            ],
        )
        revision = self._git(["rev-parse", "HEAD"]).strip()
        logger.info("Git checkpoint created: checkpoint=%s revision=%s", checkpoint_id, revision)
        return revision

    def has_checkpoint(self, checkpoint_id: str) -> bool:
        result = subprocess.run(
            [
                "git",
                "log",
                "--format=%H",
                "--fixed-strings",
                f"--grep={CHECKPOINT_TRAILER}: {checkpoint_id}",
            ],
            cwd=self.repo_root,
            capture_output=True,
            text=True,
            check=False,
        )
        return result.returncode == 0 and bool(result.stdout.strip())

    def discard(self, *, paths: Sequence[Path]) -> None:
        relative = self._relative(paths, strict=False)
        if not relative:
            return
        subprocess.run(
            ["git", "reset", "--quiet", "--", *relative],
            cwd=self.repo_root,
            capture_output=True,
            text=True,
            check=False,
        )

    def _relative(self, paths: Sequence[Path], *, strict: bool = True) -> list[str]:
        root = self.repo_root.resolve()
        relative: list[str] = []
        for path in paths:
            resolved = path.resolve()
            try:
                relative.append(resolved.relative_to(root).as_posix())
            except ValueError as error:
                if not strict:
                    continue
                raise CheckpointError(f"{path} is outside the repository {root}") from error
        return relative

    def _identity_flags(self) -> list[str]:
        flags: list[str] = []
        if self.author_name:
            flags.extend(["-c", f"user.name={self.author_name}"])
        if self.author_email:
            flags.extend(["-c", f"user.email={self.author_email}"])
        return flags

    def _git(self, args: list[str]) -> str:
        try:
            completed = subprocess.run(
                ["git", *args],
                cwd=self.repo_root,
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as error:
            detail = (error.stderr or error.stdout or "").strip()
            raise CheckpointError(f"git {args[0]} failed: {detail}") from error
        except OSError as error:
            raise CheckpointError(f"git is not available: {error}") from error
        return completed.stdout


class DryRunCheckpointer:
    def __init__(self, *, record_path: Path | None = None) -> None:
        self.record_path = record_path
        self._checkpoints: list[str] = []

    def commit(self, *, paths: Sequence[Path], message: str, checkpoint_id: str) -> str:
        del paths, message
        self._checkpoints.append(checkpoint_id)
        if self.record_path is not None:
            self.record_path.parent.mkdir(parents=True, exist_ok=True)
            with self.record_path.open("a", encoding="utf-8") as handle:
                handle.write(f"{checkpoint_id}\n")
                handle.flush()
                os.fsync(handle.fileno())
        return f"dryrun-{len(self._checkpoints)}"

    def has_checkpoint(self, checkpoint_id: str) -> bool:
        if checkpoint_id in self._checkpoints:
            return True
        if self.record_path is None or not self.record_path.exists():
            return False
        return checkpoint_id in self.record_path.read_text("utf-8").split()

    def discard(self, *, paths: Sequence[Path]) -> None:
        del paths
