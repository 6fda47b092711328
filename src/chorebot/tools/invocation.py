"""Uniform process runner for analysis and remediation tools.

Every external executable chore-bot touches (``gh``, ``git``, the analysis
subagents, local verification commands) goes through :class:`ToolRunner`.
The runner enforces a hard deadline per call, terminates the process when the
deadline passes, and reports the result as a :class:`ToolOutcome` that belongs
only to the caller that issued the invocation.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600.0
_KILL_GRACE_SECONDS = 5.0


class FailureKind(str, Enum):
    """Reasons an invocation did not succeed."""

    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class ToolInvocation:
    """A single external tool call."""

    tool_name: str
    args: tuple[str, ...] = ()
    working_dir: Path | None = None
    timeout: float = DEFAULT_TIMEOUT
    env: Mapping[str, str] | None = None

    @property
    def command(self) -> List[str]:
        return [self.tool_name, *self.args]

    def describe(self) -> str:
        rendered = " ".join(self.command)
        if len(rendered) > 120:
            rendered = f"{rendered[:117]}..."
        return rendered


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """Captured result of a :class:`ToolInvocation`."""

    invocation: ToolInvocation
    exit_status: int | None
    stdout: str
    stderr: str
    duration: float
    failure: FailureKind | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def output(self) -> str:
        """Combined stdout/stderr for diagnostics."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def short_reason(self) -> str:
        """Return a one-line description of why the invocation failed."""
        if self.failure is None:
            return "ok"
        if self.failure is FailureKind.TIMEOUT:
            return f"timed out after {self.invocation.timeout:g}s"
        if self.failure is FailureKind.NOT_FOUND:
            return f"executable not found: {self.invocation.tool_name}"
        if self.failure is FailureKind.CANCELLED:
            return "cancelled"
        text = self.stderr.strip() or self.stdout.strip()
        first_line = text.splitlines()[0] if text else ""
        suffix = f": {first_line}" if first_line else ""
        return f"exit status {self.exit_status}{suffix}"

    def raise_for_failure(self) -> "ToolOutcome":
        """Raise :class:`ToolInvocationError` when the invocation failed."""
        if self.failure is not None:
            raise ToolInvocationError(self.failure, self)
        return self


class ToolInvocationError(RuntimeError):
    """Raised by callers that treat a failed :class:`ToolOutcome` as an error."""

    def __init__(self, kind: FailureKind, outcome: ToolOutcome) -> None:
        super().__init__(f"{outcome.invocation.tool_name} failed: {outcome.short_reason()}")
        self.kind = kind
        self.outcome = outcome


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    """Merge provided environment overrides with the current process state."""
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


class ToolRunner:
    """Run external tools with a deadline and support for cancellation."""

    def __init__(self, *, default_timeout: float = DEFAULT_TIMEOUT) -> None:
        self.default_timeout = default_timeout
        self._lock = threading.Lock()
        self._active: set[subprocess.Popen[str]] = set()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(
        self,
        tool_name: str,
        *args: str,
        cwd: Path | str | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ToolOutcome:
        """Convenience wrapper building the :class:`ToolInvocation` in place."""
        invocation = ToolInvocation(
            tool_name=tool_name,
            args=tuple(args),
            working_dir=Path(cwd) if cwd is not None else None,
            timeout=timeout if timeout is not None else self.default_timeout,
            env=env,
        )
        return self.invoke(invocation)

    def invoke(self, invocation: ToolInvocation) -> ToolOutcome:
        """Execute ``invocation`` and block until it exits or its deadline passes."""
        started = time.monotonic()
        if self._cancelled.is_set():
            return ToolOutcome(invocation, None, "", "", 0.0, FailureKind.CANCELLED)

        executable = invocation.tool_name
        if os.sep not in executable and shutil.which(executable) is None:
            LOGGER.warning("Executable not available: %s", executable)
            return ToolOutcome(
                invocation,
                None,
                "",
                f"Executable not available: {executable}",
                0.0,
                FailureKind.NOT_FOUND,
            )

        LOGGER.debug("Invoking %s (timeout %.0fs)", invocation.describe(), invocation.timeout)
        try:
            process = subprocess.Popen(  # noqa: S603 - commands are assembled from known tool names
                invocation.command,
                cwd=invocation.working_dir,
                env=_merge_env(invocation.env),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            return ToolOutcome(
                invocation,
                None,
                "",
                str(error),
                time.monotonic() - started,
                FailureKind.NOT_FOUND,
            )

        with self._lock:
            self._active.add(process)
            cancelled_at_spawn = self._cancelled.is_set()
        if cancelled_at_spawn:
            # cancel() may have swept _active before this process joined it.
            stdout, stderr = self._terminate(process)
            with self._lock:
                self._active.discard(process)
            return ToolOutcome(
                invocation,
                process.returncode,
                stdout,
                stderr,
                time.monotonic() - started,
                FailureKind.CANCELLED,
            )
        try:
            try:
                stdout, stderr = process.communicate(timeout=invocation.timeout)
            except subprocess.TimeoutExpired:
                LOGGER.warning(
                    "%s exceeded its %.0fs deadline; terminating",
                    invocation.tool_name,
                    invocation.timeout,
                )
                stdout, stderr = self._terminate(process)
                return ToolOutcome(
                    invocation,
                    process.returncode,
                    stdout,
                    stderr,
                    time.monotonic() - started,
                    FailureKind.TIMEOUT,
                )
        finally:
            with self._lock:
                self._active.discard(process)

        duration = time.monotonic() - started
        if self._cancelled.is_set() and process.returncode != 0:
            return ToolOutcome(invocation, process.returncode, stdout, stderr, duration, FailureKind.CANCELLED)
        failure = None if process.returncode == 0 else FailureKind.NON_ZERO_EXIT
        return ToolOutcome(invocation, process.returncode, stdout, stderr, duration, failure)

    def cancel(self) -> None:
        """Refuse new invocations and terminate every process still running."""
        self._cancelled.set()
        with self._lock:
            active = list(self._active)
        for process in active:
            if process.poll() is not None:
                continue
            LOGGER.info("Terminating in-flight process %s", process.pid)
            process.terminate()
            # The owning thread is blocked in communicate(); escalate if SIGTERM is ignored.
            timer = threading.Timer(_KILL_GRACE_SECONDS, self._kill_if_alive, args=(process,))
            timer.daemon = True
            timer.start()

    @staticmethod
    def _kill_if_alive(process: subprocess.Popen[str]) -> None:
        if process.poll() is None:
            process.kill()

    @staticmethod
    def _terminate(process: subprocess.Popen[str]) -> tuple[str, str]:
        """Stop ``process`` from the thread that owns its pipes."""
        if process.poll() is None:
            process.terminate()
            try:
                return process.communicate(timeout=_KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                process.kill()
        return process.communicate()


__all__ = [
    "DEFAULT_TIMEOUT",
    "FailureKind",
    "ToolInvocation",
    "ToolInvocationError",
    "ToolOutcome",
    "ToolRunner",
]
