"""Stages that load work items from the tracker and batch them."""

from __future__ import annotations

import logging

from .. import batcher
from ..schema import StageCounts
from .base import StageContext, StageHandler, StageOutcome

LOGGER = logging.getLogger(__name__)


def fetch_by_label(label: str) -> StageHandler:
    """Build a handler that loads open ``label`` issues without linked pull requests.

    When the run targets a single issue (``--issue``) only that issue is loaded.
    """

    def handler(ctx: StageContext) -> StageOutcome:
        if ctx.params.issue is not None:
            return fetch_single_issue(ctx)
        items = ctx.services.issues.list(label)
        ctx.state.items = items
        LOGGER.info("Loaded %d open %r issue(s) without linked pull requests", len(items), label)
        return StageOutcome(
            detail=f"{len(items)} open {label} issue(s) eligible",
            counts=StageCounts(eligible=len(items)),
        )

    handler.__name__ = f"fetch_{label}_issues"
    return handler


def fetch_single_issue(ctx: StageContext) -> StageOutcome:
    issue_id = ctx.params.issue
    if issue_id is None:
        return StageOutcome(success=False, detail="No issue number supplied (use --issue).")
    item = ctx.services.issues.fetch(issue_id)
    if item.has_linked_pr:
        ctx.state.items = []
        return StageOutcome(detail=f"#{issue_id} already has an open pull request; nothing to do")
    ctx.state.items = [item]
    return StageOutcome(detail=f"#{issue_id}: {item.title}", counts=StageCounts(eligible=1))


def batch_by_module(ctx: StageContext) -> StageOutcome:
    """Partition the loaded items into module batches (or fixed-size chunks)."""
    items = [item for item in ctx.state.items if not item.has_linked_pr]
    if ctx.params.batch_size:
        batches = batcher.chunk(items, ctx.params.batch_size)
    else:
        batches = batcher.group(items, ctx.params.max_batch_size)
    ctx.state.batches = batches
    summary = ", ".join(f"{batch.name}({len(batch)})" for batch in batches) or "no batches"
    LOGGER.info("Grouped %d issue(s) into %d batch(es): %s", len(items), len(batches), summary)
    return StageOutcome(
        detail=f"{len(batches)} batch(es): {summary}",
        counts=StageCounts(eligible=len(batches)),
    )


__all__ = ["batch_by_module", "fetch_by_label", "fetch_single_issue"]
