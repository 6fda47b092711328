"""Named workflows: ordered stage lists drawn from the stage registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .config import ChoreBotConfig, ConfigError, WorkflowStepSettings
from .schema import StagePolicyKind
from .stages import Stage, StagePolicy, get_stage
from .stages.base import WorkflowParams

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class WorkflowStep:
    """A stage reference with an optional policy override."""

    stage: str
    policy: Optional[StagePolicy] = None

    def resolve(self) -> Tuple[Stage, StagePolicy]:
        stage = get_stage(self.stage)
        return stage, self.policy or stage.policy


@dataclass(slots=True, frozen=True)
class Workflow:
    """An ordered list of stages plus the parameters the workflow cannot run without."""

    name: str
    steps: Tuple[WorkflowStep, ...]
    description: str = ""
    requires: Tuple[str, ...] = field(default=())

    @property
    def stage_names(self) -> List[str]:
        return [step.stage for step in self.steps]

    def resolve(self) -> List[Tuple[Stage, StagePolicy]]:
        """Look up every stage; unknown names raise :class:`ConfigError`."""
        return [step.resolve() for step in self.steps]

    def check_params(self, params: WorkflowParams) -> None:
        missing = [name for name in self.requires if getattr(params, name, None) in (None, "")]
        if missing:
            options = ", ".join(f"--{name.replace('_', '-')}" for name in missing)
            raise ConfigError(f"Workflow '{self.name}' requires {options}")


def _steps(*entries: Union[str, WorkflowStep]) -> Tuple[WorkflowStep, ...]:
    return tuple(entry if isinstance(entry, WorkflowStep) else WorkflowStep(entry) for entry in entries)


def _fatal(stage: str) -> WorkflowStep:
    return WorkflowStep(stage, StagePolicy.fatal())


BUILTIN_WORKFLOWS: Dict[str, Workflow] = {
    workflow.name: workflow
    for workflow in (
        Workflow(
            "test",
            _steps("fetch-testing-issues", "batch-by-module", "dispatch-test-batches"),
            "Dispatch agents to add tests, one per module batch",
        ),
        Workflow(
            "feature",
            _steps("fetch-enhancement-issues", "dispatch-features"),
            "Dispatch agents to implement enhancement issues (or one --issue)",
        ),
        Workflow("bug", _steps("fetch-bug-issues", "dispatch-bugs"), "Dispatch agents to fix bug issues"),
        Workflow("chore", _steps("fetch-chore-issues", "dispatch-chores"), "Dispatch agents for chores and tech debt"),
        Workflow("custom", _steps("dispatch-task"), "Dispatch one agent with a free-form task", ("task",)),
        Workflow("approve", _steps(_fatal("approve-pending-runs")), "Re-run CI runs waiting for approval"),
        Workflow(
            "coverage-workflow",
            _steps("run-coverage-analysis", "fetch-testing-issues", "batch-by-module", "dispatch-test-batches"),
            "Coverage analysis followed by test dispatch",
        ),
        Workflow(
            "test-workflow",
            _steps("scan-todos", "fetch-todo-issues", "resolve-todos"),
            "Scan TODOs and resolve them locally with verification",
        ),
        Workflow(
            "quality-workflow",
            _steps(
                "run-coverage-analysis",
                "scan-todos",
                "refactor-analysis",
                "architecture-review",
                "fetch-testing-issues",
                "batch-by-module",
                "dispatch-test-batches",
            ),
            "Every analysis, then test dispatch",
        ),
        Workflow(
            "feature-workflow",
            _steps("fetch-issue", "implement-features-locally"),
            "Implement one feature issue locally with verification",
            ("issue",),
        ),
        Workflow("scan", _steps(_fatal("scan-todos")), "Scan for TODO/FIXME comments and file issues"),
        Workflow(
            "create-issues",
            _steps("create-issues-from-file"),
            "File issues from a JSON batch",
            ("issues_file",),
        ),
        Workflow("nudge", _steps(_fatal("nudge-failing-prs")), "Comment on PRs with failing checks"),
        Workflow("conflicts", _steps(_fatal("handle-conflicting-prs")), "Handle PRs with merge conflicts"),
    )
}


def _step_from_config(entry: Union[str, WorkflowStepSettings]) -> WorkflowStep:
    if isinstance(entry, str):
        return WorkflowStep(entry)
    kind = StagePolicyKind(entry.policy)
    if kind is StagePolicyKind.RETRY:
        policy = StagePolicy.retry(entry.retries)
    else:
        policy = StagePolicy(kind)
    return WorkflowStep(entry.stage, policy)


def configured_workflows(config: ChoreBotConfig) -> Dict[str, Workflow]:
    return {
        name: Workflow(name, tuple(_step_from_config(entry) for entry in entries), "Defined in configuration")
        for name, entries in config.workflows.items()
    }


def available_workflows(config: ChoreBotConfig | None = None) -> Dict[str, Workflow]:
    """Built-in workflows overlaid with the ones defined in configuration."""
    workflows = dict(BUILTIN_WORKFLOWS)
    if config is not None:
        for name, workflow in configured_workflows(config).items():
            if name in workflows:
                LOGGER.warning("Configured workflow '%s' replaces the built-in one", name)
            workflows[name] = workflow
    return workflows


def resolve_workflow(name: str, config: ChoreBotConfig | None = None) -> Workflow:
    """Return workflow ``name`` after checking every stage it references exists."""
    workflows = available_workflows(config)
    workflow = workflows.get(name)
    if workflow is None:
        raise ConfigError(f"Unknown workflow '{name}'. Expected one of: {', '.join(sorted(workflows))}")
    if not workflow.steps:
        raise ConfigError(f"Workflow '{name}' has no stages")
    workflow.resolve()
    return workflow


def describe_workflows(workflows: Iterable[Workflow]) -> List[str]:
    return [f"{workflow.name}: {' -> '.join(workflow.stage_names)}" for workflow in workflows]


__all__ = [
    "BUILTIN_WORKFLOWS",
    "Workflow",
    "WorkflowStep",
    "available_workflows",
    "configured_workflows",
    "describe_workflows",
    "resolve_workflow",
]
