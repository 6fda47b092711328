"""Remote dispatch: hand batches and issues to autonomous coding agents."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..classify import route_for
from ..prompts import batch_variables, item_variables
from ..schema import Batch, WorkItem
from .base import StageContext, StageError, StageHandler, StageOutcome, UnitPlan, process_units

LOGGER = logging.getLogger(__name__)


def _dispatch(ctx: StageContext, prompt: str, label: str) -> Tuple[str, Optional[str]]:
    if ctx.params.dry_run:
        LOGGER.info("[dry-run] would dispatch %s (%d chars)", label, len(prompt))
        return "dry run: not dispatched", None
    response = ctx.services.issues.dispatch_agent_task(prompt)
    reference = response.splitlines()[-1].strip() if response else None
    LOGGER.info("Dispatched %s", label)
    return "dispatched", reference


def dispatch_batches(template: Optional[str] = None) -> StageHandler:
    """Build a handler that dispatches one agent task per batch.

    ``template`` forces a prompt template; otherwise the route of the batch's
    first item decides.
    """

    def work(ctx: StageContext, batch: Batch) -> Tuple[str, Optional[str]]:
        name = template or route_for(batch.items[0]).template
        prompt = ctx.services.prompts.render(name, batch_variables(batch))
        return _dispatch(ctx, prompt, f"batch {batch.name} ({', '.join(f'#{i}' for i in batch.ids)})")

    def handler(ctx: StageContext) -> StageOutcome:
        plan: UnitPlan[Batch] = UnitPlan(
            name=lambda batch: batch.name,
            key=lambda batch: batch.module_key,
            work=lambda batch: work(ctx, batch),
        )
        return process_units(ctx, ctx.state.batches, plan, parallel=True)

    return handler


def dispatch_items(template: Optional[str] = None) -> StageHandler:
    """Build a handler that dispatches one agent task per eligible issue."""

    def work(ctx: StageContext, item: WorkItem) -> Tuple[str, Optional[str]]:
        name = template or route_for(item).template
        prompt = ctx.services.prompts.render(name, item_variables(item))
        return _dispatch(ctx, prompt, f"#{item.id} {item.title}")

    def handler(ctx: StageContext) -> StageOutcome:
        items = [item for item in ctx.state.items if not item.has_linked_pr]
        plan: UnitPlan[WorkItem] = UnitPlan(
            name=lambda item: item.reference,
            key=lambda item: item.module_key,
            work=lambda item: work(ctx, item),
        )
        return process_units(ctx, items, plan, parallel=True)

    return handler


def dispatch_task(ctx: StageContext) -> StageOutcome:
    """Dispatch the free-form ``--task`` description as a single agent task."""
    task = (ctx.params.task or "").strip()
    if not task:
        raise StageError("No task description supplied (use --task).")
    plan: UnitPlan[str] = UnitPlan(
        name=lambda _: "custom-task",
        key=lambda _: "custom-task",
        work=lambda text: _dispatch(ctx, text, "custom task"),
    )
    return process_units(ctx, [task], plan)


__all__ = ["dispatch_batches", "dispatch_items", "dispatch_task"]
