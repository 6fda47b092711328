"""Local verification gates for changes produced by remediation tools.

A locally generated change is only committed, pushed, and proposed as a pull
request after every configured check passes. Checks are plain commands run in
the repository root through the shared :class:`ToolRunner`.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Literal

from .invocation import FailureKind, ToolInvocation, ToolRunner

CheckStatus = Literal["passed", "failed", "skipped"]


class VerificationFailure(RuntimeError):
    """Raised when a generated change fails local verification."""

    def __init__(self, report: "VerificationReport") -> None:
        super().__init__(report.format_summary())
        self.report = report


@dataclass(slots=True)
class VerificationCheck:
    """Description of one verification command."""

    name: str
    command: Sequence[str]
    optional: bool = False

    def run(self, runner: ToolRunner, cwd: Path, *, timeout: float) -> "VerificationResult":
        invocation = ToolInvocation(
            tool_name=self.command[0],
            args=tuple(self.command[1:]),
            working_dir=cwd,
            timeout=timeout,
        )
        outcome = runner.invoke(invocation)
        if outcome.failure is FailureKind.NOT_FOUND:
            status: CheckStatus = "skipped" if self.optional else "failed"
        else:
            status = "passed" if outcome.ok else "failed"
        return VerificationResult(
            name=self.name,
            command=list(self.command),
            status=status,
            exit_code=outcome.exit_status,
            reason=outcome.short_reason(),
        )


@dataclass(slots=True)
class VerificationResult:
    """Result produced by :class:`VerificationCheck`."""

    name: str
    command: List[str]
    status: CheckStatus
    exit_code: int | None
    reason: str = ""

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def short_message(self) -> str:
        if self.status == "passed":
            return f"{self.name}: passed"
        return f"{self.name}: {self.status} ({self.reason})"


@dataclass(slots=True)
class VerificationReport:
    """Aggregated result of every verification check for one unit."""

    results: List[VerificationResult]

    @property
    def has_failures(self) -> bool:
        return any(result.failed for result in self.results)

    def format_summary(self) -> str:
        if not self.results:
            return "No verification checks configured."
        return "; ".join(result.short_message() for result in self.results)

    def raise_for_failures(self) -> None:
        if self.has_failures:
            raise VerificationFailure(self)


def normalise_checks(raw: Iterable[Any]) -> List[VerificationCheck]:
    """Expand configuration entries (strings, mappings, or models) into checks."""
    checks: List[VerificationCheck] = []
    for entry in raw or []:
        if isinstance(entry, VerificationCheck):
            checks.append(entry)
            continue

        if isinstance(entry, str):
            parts = entry.split()
            if parts:
                checks.append(VerificationCheck(name=parts[0], command=parts))
            continue

        if not isinstance(entry, Mapping):
            entry = entry.model_dump() if hasattr(entry, "model_dump") else {}

        command = entry.get("command") or entry.get("cmd")
        parts = command.split() if isinstance(command, str) else list(command or [])
        if not parts:
            continue
        name = str(entry.get("name")) if entry.get("name") else parts[0]
        checks.append(VerificationCheck(name=name, command=parts, optional=bool(entry.get("optional", False))))
    return checks


def run_verification(
    checks: Sequence[VerificationCheck],
    *,
    runner: ToolRunner,
    repo_root: Path,
    timeout: float,
) -> VerificationReport:
    """Run every check in order and collect the results."""
    return VerificationReport(results=[check.run(runner, repo_root, timeout=timeout) for check in checks])


__all__ = [
    "VerificationCheck",
    "VerificationFailure",
    "VerificationReport",
    "VerificationResult",
    "normalise_checks",
    "run_verification",
]
