"""Housekeeping stages: approve CI runs, nudge failing PRs, handle conflicts, file issues."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..issues import DuplicateOrInvalid
from ..schema import PullRequestRef, StageCounts
from ..sweeper import ApprovalSweeper
from .base import StageContext, StageError, StageOutcome, UnitPlan, UnitWork, process_units

LOGGER = logging.getLogger(__name__)

NUDGE_COMMENT = """@copilot This PR has failing CI checks.

Please take a look at the build failures and push a fix. Common issues:
- Compilation errors
- Test failures
- Linting/formatting issues

Run the repository's verification checks locally before pushing."""

CONFLICT_COMMENT = """@copilot This PR has merge conflicts.

Please rebase on the default branch and resolve the conflicts, then push again."""

CONFLICT_CLOSE_COMMENT = "Closing: this PR has merge conflicts and will be regenerated."

PRIORITY_LABELS = {
    "low": "priority-low",
    "medium": "priority-medium",
    "high": "priority-high",
    "critical": "priority-critical",
}


def approve_pending_runs(ctx: StageContext) -> StageOutcome:
    sweeper = ApprovalSweeper(ctx.services.ci, dry_run=ctx.params.dry_run)
    approved = sweeper.sweep_pending_approvals()
    result = sweeper.last_result
    return StageOutcome(
        success=not result.failed or approved > 0,
        detail=f"approved {approved}/{result.attempted} pending run(s)",
        counts=StageCounts(
            eligible=result.attempted,
            attempted=result.attempted,
            succeeded=approved,
            failed=len(result.failed),
        ),
    )


def _pull_request_plan(action: UnitWork) -> UnitPlan[PullRequestRef]:
    return UnitPlan(
        name=lambda pull: f"PR #{pull.number}",
        key=lambda pull: f"pr-{pull.number}",
        work=action,
    )


def nudge_failing_pull_requests(ctx: StageContext) -> StageOutcome:
    """Ask the author of every open PR with failing checks to push a fix."""
    failing = ctx.services.issues.list_failing_pull_requests()

    def nudge(pull: PullRequestRef) -> Tuple[str, Optional[str]]:
        if ctx.params.dry_run:
            return "dry run: would comment", pull.url or None
        ctx.services.issues.comment_pull_request(pull.number, NUDGE_COMMENT)
        return f"commented ({pull.title})", pull.url or None

    if not failing:
        return StageOutcome(detail="no pull requests with failing checks")
    return process_units(ctx, failing, _pull_request_plan(nudge))


def handle_conflicting_pull_requests(ctx: StageContext) -> StageOutcome:
    """Comment on (or with ``--close``, close) open PRs that no longer merge cleanly."""
    conflicting = ctx.services.issues.list_conflicting_pull_requests()
    closing = ctx.params.close

    def handle(pull: PullRequestRef) -> Tuple[str, Optional[str]]:
        verb = "close" if closing else "comment"
        if ctx.params.dry_run:
            return f"dry run: would {verb}", pull.url or None
        if closing:
            ctx.services.issues.close_pull_request(pull.number, CONFLICT_CLOSE_COMMENT)
            return "closed", pull.url or None
        ctx.services.issues.comment_pull_request(pull.number, CONFLICT_COMMENT)
        return "asked for rebase", pull.url or None

    if not conflicting:
        return StageOutcome(detail="no pull requests with merge conflicts")
    return process_units(ctx, conflicting, _pull_request_plan(handle))


class IssueRequest(BaseModel):
    """One entry of a batch issue file."""

    model_config = ConfigDict(extra="ignore")

    title: str
    body: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    priority: Optional[str] = None

    def all_labels(self) -> List[str]:
        labels = list(self.labels)
        extra = PRIORITY_LABELS.get((self.priority or "").lower())
        if extra and extra not in labels:
            labels.append(extra)
        return labels


def load_issue_requests(path: Path) -> List[IssueRequest]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise StageError(f"Cannot read issue batch {path}: {error}") from error
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise StageError(f"Issue batch {path} must be a JSON list of issues")
    requests: List[IssueRequest] = []
    for index, entry in enumerate(data):
        try:
            requests.append(IssueRequest.model_validate(entry))
        except ValidationError as error:
            raise StageError(f"Invalid issue at index {index}: {error}") from error
    return requests


def create_issues_from_file(ctx: StageContext) -> StageOutcome:
    """File every issue in the ``issues_file`` batch; nothing is created unless all entries are valid."""
    if ctx.params.issues_file is None:
        raise StageError(
            "No issue batch file supplied: pass --batch on the command line or set the issues_file parameter."
        )
    requests = load_issue_requests(ctx.params.issues_file)
    store = ctx.services.issues

    known_titles = list(store.open_issue_titles())
    problems: List[str] = []
    for index, request in enumerate(requests):
        try:
            store.validate_new_issue(request.title, request.body, known_titles)
        except DuplicateOrInvalid as error:
            problems.append(f"[{index}] {error}")
        known_titles.append(request.title)
    if problems:
        return StageOutcome(
            success=False,
            detail="; ".join(problems),
            counts=StageCounts(eligible=len(requests)),
        )

    def create(request: IssueRequest) -> Tuple[str, Optional[str]]:
        if ctx.params.dry_run:
            return f"dry run: would create {request.title!r}", None
        number = store.create(request.title, request.body, request.all_labels())
        ctx.state.created_issues.append(number)
        return f"created #{number}", f"#{number}"

    plan: UnitPlan[IssueRequest] = UnitPlan(
        name=lambda request: request.title,
        key=lambda request: request.title,
        work=create,
    )
    outcome = process_units(ctx, requests, plan)
    LOGGER.info("Created %d issue(s) from %s", len(ctx.state.created_issues), ctx.params.issues_file)
    return outcome


__all__ = [
    "CONFLICT_COMMENT",
    "IssueRequest",
    "NUDGE_COMMENT",
    "approve_pending_runs",
    "create_issues_from_file",
    "handle_conflicting_pull_requests",
    "load_issue_requests",
    "nudge_failing_pull_requests",
]
