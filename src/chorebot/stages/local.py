"""Local remediation: resolve an issue in the working tree, verify, then open a PR.

Every unit runs inside :meth:`GitRepository.workspace`, so units are serialised
on the repository lock and the original branch is always restored. A unit
whose change fails verification is rolled back and never pushed.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..classify import REMEDIATION_ROUTES, RemediationRoute, route_for
from ..issues import IssueStoreError
from ..schema import WorkItem, WorkKind
from ..tools.gates import run_verification
from ..tools.subagents import SubagentRequest
from ..utils.slug import branch_name
from .base import StageContext, StageError, StageHandler, StageOutcome, UnitPlan, process_units

LOGGER = logging.getLogger(__name__)

REMOTE = "origin"


def commit_message(route: RemediationRoute, item: WorkItem) -> str:
    return f"{route.commit_prefix}: {item.title} (closes #{item.id})"


def pull_request_body(item: WorkItem, verification: str) -> str:
    return "\n".join(
        [
            f"Closes #{item.id}",
            "",
            f"Automated change for: {item.title}",
            "",
            "Local verification:",
            verification,
        ]
    )


def remediate_item(ctx: StageContext, item: WorkItem, route: RemediationRoute) -> Tuple[str, Optional[str]]:
    """Run the resolver for ``item`` and, if verification passes, propose the change."""
    branch = branch_name(route.resolver, f"{item.id}-{item.title}")
    if ctx.params.dry_run:
        LOGGER.info("[dry-run] would run %s for #%d on %s", route.resolver, item.id, branch)
        return f"dry run: {route.resolver} on {branch}", None

    services = ctx.services
    repo = services.repository(ctx.params.repo_path)
    base = services.config.issues.base_branch or repo.default_branch(REMOTE)
    request = SubagentRequest(
        repo_path=repo.root,
        issue=item.id,
        extra_args=route.resolver_args,
    )

    with repo.workspace(branch, start_point=repo.start_point(REMOTE, base)):
        services.launcher.run(route.resolver, request).raise_for_failure()
        if repo.is_clean():
            raise StageError(f"{route.resolver} made no changes for #{item.id}")

        report = run_verification(services.checks, runner=services.runner, repo_root=repo.root, timeout=ctx.timeout)
        report.raise_for_failures()

        message = commit_message(route, item)
        repo.commit_all(message)
        repo.push(REMOTE, branch)

    pull = services.issues.create_pull_request(
        branch,
        message,
        pull_request_body(item, report.format_summary()),
        base=base,
    )
    reference = pull.url or f"#{pull.number}"
    try:
        services.issues.comment(item.id, f"Opened {reference} with a locally verified change.")
    except IssueStoreError as error:
        LOGGER.warning("Could not link #%d to PR #%d: %s", item.id, pull.number, error)
    return f"opened PR #{pull.number}", reference


def resolve_locally(resolver_kind: Optional[WorkKind] = None) -> StageHandler:
    """Build a handler that remediates each eligible item in the local checkout.

    ``resolver_kind`` pins every item to one route; otherwise each item's own
    kind selects it.
    """

    def handler(ctx: StageContext) -> StageOutcome:
        items = [item for item in ctx.state.items if not item.has_linked_pr]

        def work(item: WorkItem) -> Tuple[str, Optional[str]]:
            route = REMEDIATION_ROUTES[resolver_kind] if resolver_kind is not None else route_for(item)
            return remediate_item(ctx, item, route)

        plan: UnitPlan[WorkItem] = UnitPlan(
            name=lambda item: item.reference,
            key=lambda item: item.module_key,
            work=work,
        )
        return process_units(ctx, items, plan)

    return handler


__all__ = ["commit_message", "pull_request_body", "remediate_item", "resolve_locally"]
