"""Typed records exchanged between the issue store, batcher, engine, and reporter."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

MISC_MODULE = "misc"


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _frozen(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return tuple(_frozen(item) for item in value)
    return value


class RecordModel(BaseModel):
    """Immutable Pydantic record with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class WorkKind(str, Enum):
    """Closed set of remediation categories a work item can be routed to."""

    TESTING = "testing"
    FEATURE = "feature"
    BUGFIX = "bugfix"
    CHORE = "chore"
    REFACTOR = "refactor"
    IMPLEMENTATION = "implementation"
    GENERAL = "general"


class WorkItem(RecordModel):
    """One open issue that is a candidate for automated remediation."""

    id: int
    title: str
    body: str = ""
    labels: FrozenSet[str] = Field(default_factory=frozenset)
    module_key: str = MISC_MODULE
    has_linked_pr: bool = False
    url: str = ""
    kind: WorkKind = WorkKind.GENERAL

    @property
    def reference(self) -> str:
        return f"#{self.id}"


class PullRequestRef(RecordModel):
    """Minimal pointer to a pull request on the tracker."""

    number: int
    url: str = ""
    title: str = ""
    author: str = ""
    head_ref: str = ""


@dataclass(slots=True, frozen=True)
class Batch:
    """Size-bounded group of work items that share a module key."""

    module_key: str
    items: Tuple[WorkItem, ...]
    index: int = 0
    split: bool = False

    def __post_init__(self) -> None:
        if not self.items:
            raise ValueError("A batch must contain at least one work item.")
        mismatched = [item.id for item in self.items if item.module_key != self.module_key]
        if mismatched:
            raise ValueError(
                f"Batch {self.module_key!r} contains items from other modules: {mismatched}"
            )

    @property
    def name(self) -> str:
        if self.split:
            return f"{self.module_key}-{self.index + 1}"
        return self.module_key

    @property
    def ids(self) -> List[int]:
        return [item.id for item in self.items]

    def __len__(self) -> int:
        return len(self.items)


class StagePolicyKind(str, Enum):
    """How the engine reacts when a stage fails."""

    FATAL = "fatal"
    SKIP = "skip"
    RETRY = "retry"


class OutputFormat(str, Enum):
    """Rendering formats shared by the subagents and the run reporter."""

    CONSOLE = "console"
    JSON = "json"
    MARKDOWN = "markdown"


class RunStatus(str, Enum):
    """Terminal states of one workflow run."""

    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class UnitResult(RecordModel):
    """Outcome of one unit of work (a batch or an item) inside a stage."""

    unit: str
    success: bool
    detail: str = ""
    reference: Optional[str] = None
    duration: float = 0.0


class StageCounts(RecordModel):
    """Aggregate counters a stage exposes to later stages and the report."""

    eligible: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0


class StageResult(RecordModel):
    """Outcome of one stage of a workflow."""

    stage_name: str
    success: bool
    duration: float
    detail: str = ""
    policy: StagePolicyKind = StagePolicyKind.FATAL
    attempts: int = 1
    counts: StageCounts = Field(default_factory=StageCounts)
    units: Tuple[UnitResult, ...] = ()


class RunReport(RecordModel):
    """Immutable summary of one workflow execution."""

    workflow: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    stages: Tuple[StageResult, ...] = ()
    parameters: Tuple[Tuple[str, Any], ...] = ()

    @field_validator("parameters", mode="before")
    @classmethod
    def _freeze_parameters(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            pairs = ((str(key), _frozen(item)) for key, item in value.items())
            return tuple(sorted(pairs, key=lambda pair: pair[0]))
        return value

    @property
    def parameter_map(self) -> Dict[str, Any]:
        """A fresh dict of the run parameters; editing it leaves the report untouched."""
        return dict(self.parameters)

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def failed_stages(self) -> List[StageResult]:
        return [stage for stage in self.stages if not stage.success]

    def stage(self, name: str) -> Optional[StageResult]:
        for entry in self.stages:
            if entry.stage_name == name:
                return entry
        return None


__all__ = [
    "Batch",
    "MISC_MODULE",
    "OutputFormat",
    "PullRequestRef",
    "RecordModel",
    "RunReport",
    "RunStatus",
    "StageCounts",
    "StagePolicyKind",
    "StageResult",
    "UnitResult",
    "WorkItem",
    "WorkKind",
    "utc_now",
]
