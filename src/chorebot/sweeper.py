"""Approve CI runs that are blocked waiting for a maintainer."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from .ci import CIClient
from .issues import IssueStoreError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepResult:
    """Per-run outcome of the last sweep."""

    approved: List[int] = field(default_factory=list)
    failed: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.approved) + len(self.failed)


class ApprovalSweeper:
    """Re-run every workflow run that is waiting for approval."""

    def __init__(self, ci: CIClient, *, dry_run: bool = False) -> None:
        self.ci = ci
        self.dry_run = dry_run
        self.last_result = SweepResult()

    def sweep_pending_approvals(self) -> int:
        """Approve pending runs and return how many were approved.

        A failure approving one run is logged and recorded; the sweep moves on
        to the next run. Listing failures propagate to the caller.
        """
        result = SweepResult()
        self.last_result = result
        pending = self.ci.list_pending_runs()
        if not pending:
            LOGGER.info("No workflow runs are waiting for approval")
            return 0

        for run in pending:
            if self.dry_run:
                LOGGER.info("[dry-run] would approve run %d (%s)", run.id, run.name)
                result.approved.append(run.id)
                continue
            try:
                self.ci.approve_run(run.id)
            except IssueStoreError as error:
                LOGGER.warning("Failed to approve run %d: %s", run.id, error)
                result.failed.append((run.id, str(error)))
                continue
            result.approved.append(run.id)
        return len(result.approved)


__all__ = ["ApprovalSweeper", "SweepResult"]
