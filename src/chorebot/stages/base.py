"""Shared types for workflow stages: parameters, run state, context, and unit processing."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from ..ci import CIClient
from ..config import ChoreBotConfig
from ..issues import IssueStore, IssueStoreError
from ..prompts import PromptLibrary, PromptTemplateError
from ..schema import Batch, OutputFormat, StageCounts, StagePolicyKind, UnitResult, WorkItem
from ..tools.gates import VerificationCheck, VerificationFailure, normalise_checks
from ..tools.invocation import ToolInvocationError, ToolRunner
from ..tools.subagents import SubagentLauncher
from ..tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

U = TypeVar("U")

# Exceptions that turn one unit into a failed UnitResult instead of failing the stage.
UNIT_ERRORS: Tuple[type[BaseException], ...] = (
    IssueStoreError,
    ToolInvocationError,
    GitError,
    VerificationFailure,
    PromptTemplateError,
    OSError,
    ValueError,
)


class StageError(RuntimeError):
    """Raised by a stage handler to report a failure in its own terms."""


class LeaseConflict(StageError):
    """Raised when a unit's module key is already held by another in-flight unit."""


@dataclass(slots=True, frozen=True)
class StagePolicy:
    """Failure policy of a stage inside one workflow."""

    kind: StagePolicyKind = StagePolicyKind.FATAL
    retries: int = 0

    @classmethod
    def fatal(cls) -> "StagePolicy":
        return cls(StagePolicyKind.FATAL)

    @classmethod
    def skip(cls) -> "StagePolicy":
        return cls(StagePolicyKind.SKIP)

    @classmethod
    def retry(cls, retries: int) -> "StagePolicy":
        if retries < 1:
            raise ValueError("retry policy needs at least one retry")
        return cls(StagePolicyKind.RETRY, retries)

    @property
    def max_attempts(self) -> int:
        return 1 + self.retries if self.kind is StagePolicyKind.RETRY else 1

    def describe(self) -> str:
        if self.kind is StagePolicyKind.RETRY:
            return f"retry({self.retries})"
        return self.kind.value


class WorkflowParams(BaseModel):
    """Caller-supplied parameters for one workflow run."""

    model_config = ConfigDict(extra="forbid")

    repo_path: Path
    max_units: Optional[int] = Field(default=None, ge=0)
    max_batch_size: int = Field(default=5, ge=1)
    batch_size: Optional[int] = Field(default=None, ge=1)
    threshold: float = Field(default=90.0, ge=0, le=100)
    issue: Optional[int] = Field(default=None, ge=1)
    task: Optional[str] = None
    issues_file: Optional[Path] = None
    close: bool = False
    dry_run: bool = False
    output: OutputFormat = OutputFormat.CONSOLE

    def report_parameters(self) -> Dict[str, object]:
        return self.model_dump(mode="json", exclude_none=True)


@dataclass(slots=True)
class RunState:
    """Mutable data handed from one stage to the next within a single run."""

    items: List[WorkItem] = field(default_factory=list)
    batches: List[Batch] = field(default_factory=list)
    created_issues: List[int] = field(default_factory=list)


@dataclass(slots=True)
class StageOutcome:
    """What a stage handler reports back to the engine."""

    success: bool = True
    detail: str = ""
    counts: StageCounts = field(default_factory=StageCounts)
    units: Tuple[UnitResult, ...] = ()


class StageServices:
    """Collaborators shared by every stage of a run."""

    def __init__(
        self,
        config: ChoreBotConfig,
        *,
        runner: ToolRunner,
        issues: IssueStore,
        ci: CIClient,
        launcher: SubagentLauncher,
        prompts: PromptLibrary | None = None,
        repository: GitRepository | None = None,
        checks: Sequence[VerificationCheck] | None = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.issues = issues
        self.ci = ci
        self.launcher = launcher
        self.prompts = prompts or PromptLibrary(config.prompts.directory)
        self._repository = repository
        self.checks = list(checks) if checks is not None else normalise_checks(config.verification.checks)

    def repository(self, repo_path: Path) -> GitRepository:
        """Open the target repository on first use; remote-only workflows never need it."""
        if self._repository is None:
            self._repository = GitRepository(repo_path, runner=self.runner)
        return self._repository


class ModuleLeases:
    """Track which module keys are currently being worked on."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held: set[str] = set()

    def claim(self, key: str) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._held.discard(key)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        if not self.claim(key):
            raise LeaseConflict(f"Module {key!r} already has a unit in flight")
        try:
            yield
        finally:
            self.release(key)

    @property
    def held(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._held)


@dataclass(slots=True)
class StageContext:
    """Everything a stage handler can see."""

    params: WorkflowParams
    services: StageServices
    state: RunState = field(default_factory=RunState)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    leases: ModuleLeases = field(default_factory=ModuleLeases)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def concurrency(self) -> int:
        return self.services.config.engine.concurrency

    @property
    def timeout(self) -> float:
        return self.services.config.engine.timeout


StageHandler = Callable[[StageContext], StageOutcome]


@dataclass(slots=True, frozen=True)
class Stage:
    """A named, reusable step that any workflow can reference."""

    name: str
    handler: StageHandler
    policy: StagePolicy = field(default_factory=StagePolicy.fatal)
    description: str = ""


UnitWork = Callable[[U], Tuple[str, Optional[str]]]


@dataclass(slots=True)
class UnitPlan(Generic[U]):
    """How :func:`process_units` names, keys, and performs each unit."""

    name: Callable[[U], str]
    key: Callable[[U], str]
    work: UnitWork


def _run_unit(ctx: StageContext, plan: UnitPlan[U], unit: U) -> UnitResult:
    name = plan.name(unit)
    started = time.monotonic()
    try:
        with ctx.leases.hold(plan.key(unit)):
            detail, reference = plan.work(unit)
    except (StageError, *UNIT_ERRORS) as error:
        LOGGER.warning("Unit %s failed: %s", name, error)
        return UnitResult(unit=name, success=False, detail=str(error), duration=time.monotonic() - started)
    return UnitResult(
        unit=name,
        success=True,
        detail=detail,
        reference=reference,
        duration=time.monotonic() - started,
    )


def _run_lane(ctx: StageContext, plan: UnitPlan[U], lane: Sequence[U]) -> List[UnitResult]:
    results: List[UnitResult] = []
    for unit in lane:
        if ctx.cancelled:
            break
        results.append(_run_unit(ctx, plan, unit))
    return results


def process_units(
    ctx: StageContext,
    units: Sequence[U],
    plan: UnitPlan[U],
    *,
    parallel: bool = False,
) -> StageOutcome:
    """Run at most ``max_units`` units, isolating failures to the unit that raised.

    Units that share a module key are chained in one lane so two of them are
    never in flight together; distinct lanes run on a thread pool when
    ``parallel`` is set.
    """
    limit = ctx.params.max_units
    selected = list(units) if limit is None else list(units)[:limit]
    lanes: Dict[str, List[U]] = {}
    for unit in selected:
        lanes.setdefault(plan.key(unit), []).append(unit)

    results: List[UnitResult] = []
    if parallel and len(lanes) > 1 and ctx.concurrency > 1:
        workers = min(ctx.concurrency, len(lanes))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chorebot-unit") as pool:
            futures = [pool.submit(_run_lane, ctx, plan, lane) for lane in lanes.values()]
            for future in as_completed(futures):
                results.extend(future.result())
    else:
        for lane in lanes.values():
            results.extend(_run_lane(ctx, plan, lane))

    succeeded = sum(1 for result in results if result.success)
    counts = StageCounts(
        eligible=len(units),
        attempted=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
    )
    if len(units) > len(selected):
        LOGGER.info("Bounded to %d of %d eligible unit(s)", len(selected), len(units))
    detail = f"{succeeded}/{len(results)} unit(s) succeeded"
    if len(units) > len(selected):
        detail += f" ({len(units)} eligible, bounded to {len(selected)})"
    return StageOutcome(
        success=not results or succeeded > 0,
        detail=detail,
        counts=counts,
        units=tuple(results),
    )


__all__ = [
    "LeaseConflict",
    "ModuleLeases",
    "RunState",
    "Stage",
    "StageContext",
    "StageError",
    "StageHandler",
    "StageOutcome",
    "StagePolicy",
    "StageServices",
    "UNIT_ERRORS",
    "UnitPlan",
    "UnitWork",
    "WorkflowParams",
    "process_units",
]
