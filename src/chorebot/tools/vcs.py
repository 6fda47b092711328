"""Git working-tree handle used by local remediation stages.

The target repository is the one mutable resource shared by every local
remediation unit. :meth:`GitRepository.workspace` hands a stage a scoped
branch checkout and always restores the original branch on exit, rolling the
tree back to its starting point when the unit failed.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterator, List, Optional

from .invocation import ToolOutcome, ToolRunner

LOGGER = logging.getLogger(__name__)

GIT_TIMEOUT = 300.0


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(slots=True, frozen=True)
class GitCheckpoint:
    """Where a workspace started: the commit it branched from and the untracked files already present."""

    branch: str
    head: Optional[str]
    untracked: FrozenSet[str]


class GitRepository:
    """Run ``git`` in one repository through a :class:`ToolRunner`.

    ``lock`` serialises every :meth:`workspace`; two units never share the
    working tree. Restoring the tree on the way out of a workspace goes
    through a private runner, so it still happens after the shared runner
    was cancelled.
    """

    def __init__(self, root: Path | str, *, runner: ToolRunner | None = None) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"{self.root} is not a git checkout")
        self.runner = runner or ToolRunner(default_timeout=GIT_TIMEOUT)
        self._restore_runner = ToolRunner(default_timeout=GIT_TIMEOUT)
        self.lock = threading.Lock()

    def git(self, *args: str, check: bool = True, runner: ToolRunner | None = None) -> ToolOutcome:
        """Run ``git <args>`` in the repository root; failures raise unless ``check`` is off."""
        outcome = (runner or self.runner).run("git", *args, cwd=self.root, timeout=GIT_TIMEOUT)
        if check and not outcome.ok:
            reason = outcome.stderr.strip() or outcome.stdout.strip() or outcome.short_reason()
            raise GitError(f"git {args[0] if args else ''}: {reason}")
        return outcome

    def _output(self, *args: str, runner: ToolRunner | None = None) -> Optional[str]:
        outcome = self.git(*args, check=False, runner=runner)
        if not outcome.ok:
            return None
        return outcome.stdout.strip() or None

    # -------------------------------------------------------------- branches
    def current_branch(self, *, runner: ToolRunner | None = None) -> str | None:
        """Return the checked-out branch, or ``None`` on a detached ``HEAD``."""
        return self._output("symbolic-ref", "--quiet", "--short", "HEAD", runner=runner)

    def head(self, *, runner: ToolRunner | None = None) -> str | None:
        return self._output("rev-parse", "--verify", "--quiet", "HEAD", runner=runner)

    def has_remote(self, remote: str = "origin") -> bool:
        remotes = self._output("remote") or ""
        return remote in remotes.split()

    def default_branch(self, remote: str = "origin") -> str:
        """Base branch for new pull requests: the remote's ``main`` or ``master``, else the local branch."""
        remote_branches = (self._output("branch", "--remotes", "--format=%(refname:short)") or "").split()
        for candidate in ("main", "master"):
            if f"{remote}/{candidate}" in remote_branches:
                return candidate
        return self.current_branch() or "main"

    def start_point(self, remote: str, base: str) -> str:
        """Refresh ``remote`` and return the ref new work on ``base`` should branch from.

        The remote-tracking ``<remote>/<base>`` wins when it exists, so work
        starts from the published tip rather than a possibly stale local branch.
        """
        if not self.has_remote(remote):
            return base
        self.fetch(remote)
        tracking = f"{remote}/{base}"
        if self.git("rev-parse", "--verify", "--quiet", f"refs/remotes/{tracking}", check=False).ok:
            return tracking
        return base

    def checkout(self, name: str, *, runner: ToolRunner | None = None) -> None:
        self.git("checkout", "--quiet", name, runner=runner)

    def create_branch(self, name: str, *, start_point: str | None = None) -> None:
        """Check out ``name``, resetting it to ``start_point`` when it already exists."""
        self.git("checkout", "--quiet", "-B", name, *([start_point] if start_point else []))

    # ---------------------------------------------------------------- status
    def untracked_files(self, *, runner: ToolRunner | None = None) -> List[str]:
        listing = self._output("ls-files", "--others", "--exclude-standard", runner=runner) or ""
        return [line for line in listing.splitlines() if line]

    def is_clean(self, *, runner: ToolRunner | None = None) -> bool:
        """``True`` when nothing is modified or untracked; raises :class:`GitError` if status cannot be read."""
        outcome = self.git("status", "--porcelain", "--untracked-files=all", runner=runner)
        return not outcome.stdout.strip()

    def ensure_clean(self) -> None:
        if not self.is_clean():
            raise GitError(f"{self.root} has uncommitted changes; refusing to switch branches")

    def rollback(self, checkpoint: GitCheckpoint) -> None:
        """Discard tracked edits and remove files that appeared after ``checkpoint``."""
        runner = self._restore_runner
        if checkpoint.head:
            self.git("reset", "--quiet", "--hard", checkpoint.head, runner=runner)
        new_files = [path for path in self.untracked_files(runner=runner) if path not in checkpoint.untracked]
        if new_files:
            self.git("clean", "--quiet", "--force", "-d", "--", *new_files, runner=runner)

    # ------------------------------------------------------------ workspaces
    @contextmanager
    def workspace(self, branch: str, *, start_point: str | None = None) -> Iterator[GitCheckpoint]:
        """Check out ``branch`` for the duration of the block.

        The tree must be clean on entry. Whatever happens inside, including
        cancellation of the shared runner, the tree is left clean and the
        branch checked out beforehand is restored.
        """
        with self.lock:
            self.ensure_clean()
            original = self.current_branch() or self.head()
            self.create_branch(branch, start_point=start_point)
            checkpoint = GitCheckpoint(branch=branch, head=self.head(), untracked=frozenset(self.untracked_files()))
            try:
                yield checkpoint
            except BaseException:
                LOGGER.info("Discarding changes on %s", branch)
                self.rollback(checkpoint)
                raise
            finally:
                if not self.is_clean(runner=self._restore_runner):
                    self.rollback(checkpoint)
                if original:
                    self.checkout(original, runner=self._restore_runner)

    # --------------------------------------------------------------- publish
    def commit_all(self, message: str) -> str | None:
        """Commit every change in the tree; ``None`` when there was nothing to commit."""
        if self.is_clean():
            return None
        self.git("add", "--all")
        self.git("commit", "--quiet", "--message", message)
        return self.head()

    def push(self, remote: str, branch: str, *, force: bool = False) -> None:
        """Publish ``branch`` to ``remote`` and track it."""
        lease = ["--force-with-lease"] if force else []
        self.git("push", "--quiet", "--set-upstream", *lease, remote, branch)

    def fetch(self, remote: str = "origin") -> None:
        self.git("fetch", "--quiet", remote)


__all__ = ["GIT_TIMEOUT", "GitCheckpoint", "GitError", "GitRepository"]
