"""CI runs client: find workflow runs waiting for approval and re-run them."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from .issues import GhClient
from .schema import RecordModel

LOGGER = logging.getLogger(__name__)

RUN_FIELDS = "databaseId,name,workflowName,status,conclusion,headBranch,event"
PENDING_CONCLUSIONS = frozenset({"action_required"})
PENDING_STATUSES = frozenset({"waiting", "action_required"})


class WorkflowRun(RecordModel):
    """One CI workflow run as reported by ``gh run list``."""

    id: int
    name: str = ""
    status: str = ""
    conclusion: str = ""
    head_branch: str = ""
    event: str = ""

    @property
    def awaiting_approval(self) -> bool:
        return self.conclusion.lower() in PENDING_CONCLUSIONS or self.status.lower() in PENDING_STATUSES


def _run_from_payload(payload: Dict[str, Any]) -> WorkflowRun:
    return WorkflowRun(
        id=int(payload["databaseId"]),
        name=str(payload.get("workflowName") or payload.get("name") or ""),
        status=str(payload.get("status") or ""),
        conclusion=str(payload.get("conclusion") or ""),
        head_branch=str(payload.get("headBranch") or ""),
        event=str(payload.get("event") or ""),
    )


class CIClient(GhClient):
    """Operations on the repository's CI workflow runs."""

    def list_runs(self) -> List[WorkflowRun]:
        data = self.gh_json("run", "list", "--limit", str(self.settings.list_limit), "--json", RUN_FIELDS)
        return [_run_from_payload(payload) for payload in data or []]

    def list_pending_runs(self) -> List[WorkflowRun]:
        """Runs whose conclusion is ``action_required`` or that are waiting on approval."""
        return [run for run in self.list_runs() if run.awaiting_approval]

    def approve_run(self, run_id: int) -> None:
        """Re-run ``run_id`` through the REST endpoint, which also works for bot-authored runs."""
        self.gh("api", "--method", "POST", f"repos/{{owner}}/{{repo}}/actions/runs/{run_id}/rerun")
        LOGGER.info("Re-ran workflow run %d", run_id)


__all__ = ["CIClient", "PENDING_CONCLUSIONS", "PENDING_STATUSES", "WorkflowRun"]
