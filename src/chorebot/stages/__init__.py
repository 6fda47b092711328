"""Registry of every named stage a workflow can reference."""

from __future__ import annotations

from typing import Dict, Iterable, List

from ..config import ConfigError
from ..schema import WorkKind
from .analysis import run_subagent
from .base import (
    RunState,
    Stage,
    StageContext,
    StageError,
    StageHandler,
    StageOutcome,
    StagePolicy,
    StageServices,
    WorkflowParams,
    process_units,
)
from .dispatch import dispatch_batches, dispatch_items, dispatch_task
from .fetch import batch_by_module, fetch_by_label, fetch_single_issue
from .local import resolve_locally
from .maintenance import (
    approve_pending_runs,
    create_issues_from_file,
    handle_conflicting_pull_requests,
    nudge_failing_pull_requests,
)


def _stage(name: str, handler: StageHandler, policy: StagePolicy, description: str) -> Stage:
    return Stage(name=name, handler=handler, policy=policy, description=description)


FATAL = StagePolicy.fatal()
SKIP = StagePolicy.skip()

STAGES: Dict[str, Stage] = {
    stage.name: stage
    for stage in (
        _stage("fetch-testing-issues", fetch_by_label("testing"), FATAL, "Load open testing issues"),
        _stage("fetch-enhancement-issues", fetch_by_label("enhancement"), FATAL, "Load open enhancement issues"),
        _stage("fetch-bug-issues", fetch_by_label("bug"), FATAL, "Load open bug issues"),
        _stage("fetch-chore-issues", fetch_by_label("chore"), FATAL, "Load open chore issues"),
        _stage("fetch-todo-issues", fetch_by_label("todo"), FATAL, "Load open TODO issues"),
        _stage("fetch-issue", fetch_single_issue, FATAL, "Load the issue given by --issue"),
        _stage("batch-by-module", batch_by_module, FATAL, "Group issues into module batches"),
        _stage("dispatch-test-batches", dispatch_batches("test"), SKIP, "One agent task per test batch"),
        _stage("dispatch-batches", dispatch_batches(), SKIP, "One agent task per batch, routed by kind"),
        _stage("dispatch-features", dispatch_items("feature"), SKIP, "One agent task per feature issue"),
        _stage("dispatch-bugs", dispatch_items("bug"), SKIP, "One agent task per bug issue"),
        _stage("dispatch-chores", dispatch_items("chore"), SKIP, "One agent task per chore issue"),
        _stage("dispatch-issues", dispatch_items(), SKIP, "One agent task per issue, routed by kind"),
        _stage("dispatch-task", dispatch_task, FATAL, "Dispatch the --task description"),
        _stage("approve-pending-runs", approve_pending_runs, SKIP, "Re-run CI runs awaiting approval"),
        _stage(
            "run-coverage-analysis",
            run_subagent("coverage", use_threshold=True),
            SKIP,
            "Coverage analysis; files issues below --threshold",
        ),
        _stage("scan-todos", run_subagent("todo-scanner"), SKIP, "File issues for TODO/FIXME comments"),
        _stage("scan-notes", run_subagent("note-scanner"), SKIP, "Report NOTE/HACK/XXX markers"),
        _stage("refactor-analysis", run_subagent("refactor-analyzer"), SKIP, "File issues for complexity hot spots"),
        _stage("architecture-review", run_subagent("architecture-reviewer"), SKIP, "File issues for architecture smells"),
        _stage("resolve-todos", resolve_locally(), SKIP, "Resolve issues locally with verification"),
        _stage(
            "implement-features-locally",
            resolve_locally(WorkKind.FEATURE),
            SKIP,
            "Implement features locally with verification",
        ),
        _stage("nudge-failing-prs", nudge_failing_pull_requests, SKIP, "Comment on PRs with failing checks"),
        _stage("handle-conflicting-prs", handle_conflicting_pull_requests, SKIP, "Comment on or close conflicting PRs"),
        _stage("create-issues-from-file", create_issues_from_file, FATAL, "File issues from a JSON batch"),
    )
}


def get_stage(name: str) -> Stage:
    try:
        return STAGES[name]
    except KeyError as error:
        raise ConfigError(f"Unknown stage '{name}'. Expected one of: {', '.join(sorted(STAGES))}") from error


def unknown_stages(names: Iterable[str]) -> List[str]:
    return [name for name in names if name not in STAGES]


__all__ = [
    "RunState",
    "STAGES",
    "Stage",
    "StageContext",
    "StageError",
    "StageOutcome",
    "StagePolicy",
    "StageServices",
    "WorkflowParams",
    "get_stage",
    "process_units",
    "unknown_stages",
]
