"""Registry of the analysis and remediation subagents and their flag vocabulary.

Each subagent is an independent executable that accepts a fixed set of flags
and reports through its exit status and stdout. This module turns a
:class:`SubagentRequest` into a :class:`ToolInvocation` and refuses flags a
given subagent does not understand.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from ..schema import OutputFormat
from .invocation import ToolInvocation, ToolOutcome, ToolRunner

LOGGER = logging.getLogger(__name__)

REPO_PATH = "repo_path"
CREATE_ISSUES = "create_issues"
CREATE_PR = "create_pr"
DRY_RUN = "dry_run"
ISSUE = "issue"
THRESHOLD = "threshold"
OUTPUT = "output"


class SubagentFlagError(ValueError):
    """Raised when a request uses a flag the target subagent does not accept."""


@dataclass(slots=True, frozen=True)
class SubagentSpec:
    """Static description of one subagent executable."""

    name: str
    description: str
    flags: FrozenSet[str]


def _spec(name: str, description: str, *flags: str) -> SubagentSpec:
    return SubagentSpec(name=name, description=description, flags=frozenset({REPO_PATH, *flags}))


SUBAGENTS: Dict[str, SubagentSpec] = {
    spec.name: spec
    for spec in (
        _spec("coverage", "Measure coverage and file issues for untested code", THRESHOLD, CREATE_ISSUES, OUTPUT, DRY_RUN),
        _spec("todo-scanner", "Find TODO/FIXME comments and file issues", CREATE_ISSUES, OUTPUT, DRY_RUN),
        _spec("note-scanner", "Find NOTE/HACK/XXX markers", CREATE_ISSUES, OUTPUT, DRY_RUN),
        _spec("refactor-analyzer", "Report complexity hot spots", THRESHOLD, CREATE_ISSUES, OUTPUT, DRY_RUN),
        _spec("architecture-reviewer", "Report architectural smells", CREATE_ISSUES, OUTPUT, DRY_RUN),
        _spec("todo-resolver", "Resolve one TODO issue test-first", ISSUE, CREATE_PR, DRY_RUN),
        _spec("feature-implementer", "Implement one feature issue test-first", ISSUE, CREATE_PR, DRY_RUN),
    )
}


@dataclass(slots=True)
class SubagentRequest:
    """Arguments for one subagent run, expressed in the shared flag vocabulary."""

    repo_path: Path
    create_issues: bool = False
    create_pr: bool = False
    dry_run: bool = False
    issue: Optional[int] = None
    threshold: Optional[float] = None
    output: Optional[OutputFormat] = None
    extra_args: Tuple[str, ...] = ()

    def used_flags(self) -> FrozenSet[str]:
        used = {REPO_PATH}
        if self.create_issues:
            used.add(CREATE_ISSUES)
        if self.create_pr:
            used.add(CREATE_PR)
        if self.dry_run:
            used.add(DRY_RUN)
        if self.issue is not None:
            used.add(ISSUE)
        if self.threshold is not None:
            used.add(THRESHOLD)
        if self.output is not None:
            used.add(OUTPUT)
        return frozenset(used)

    def to_args(self) -> List[str]:
        args = ["--repo-path", str(self.repo_path)]
        if self.create_issues:
            args.append("--create-issues")
        if self.create_pr:
            args.append("--create-pr")
        if self.dry_run:
            args.append("--dry-run")
        if self.issue is not None:
            args.extend(["--issue", str(self.issue)])
        if self.threshold is not None:
            args.extend(["--threshold", f"{self.threshold:g}"])
        if self.output is not None:
            args.extend(["--output", OutputFormat(self.output).value])
        args.extend(self.extra_args)
        return args


class SubagentLauncher:
    """Resolve subagent executables and run them through a :class:`ToolRunner`."""

    def __init__(
        self,
        runner: ToolRunner,
        *,
        bin_dir: Path | str | None = None,
        executables: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.runner = runner
        self.bin_dir = Path(bin_dir) if bin_dir else None
        self.executables = dict(executables or {})
        self.timeout = timeout

    def resolve(self, name: str) -> str:
        """Return the executable path for ``name`` (explicit override, bin dir, then PATH)."""
        override = self.executables.get(name)
        if override:
            return override
        if self.bin_dir is not None:
            candidate = self.bin_dir / name
            if candidate.exists():
                return str(candidate.resolve())
        found = shutil.which(name)
        return found or name

    def build(self, name: str, request: SubagentRequest) -> ToolInvocation:
        spec = SUBAGENTS.get(name)
        if spec is None:
            known = ", ".join(sorted(SUBAGENTS))
            raise SubagentFlagError(f"Unknown subagent '{name}'. Expected one of: {known}")
        unsupported = request.used_flags() - spec.flags
        if unsupported:
            flags = ", ".join(f"--{flag.replace('_', '-')}" for flag in sorted(unsupported))
            raise SubagentFlagError(f"{name} does not accept {flags}")
        return ToolInvocation(
            tool_name=self.resolve(name),
            args=tuple(request.to_args()),
            working_dir=request.repo_path,
            timeout=self.timeout if self.timeout is not None else self.runner.default_timeout,
        )

    def run(self, name: str, request: SubagentRequest) -> ToolOutcome:
        invocation = self.build(name, request)
        LOGGER.info("Running subagent %s", invocation.describe())
        return self.runner.invoke(invocation)


__all__ = [
    "SUBAGENTS",
    "SubagentFlagError",
    "SubagentLauncher",
    "SubagentRequest",
    "SubagentSpec",
]
