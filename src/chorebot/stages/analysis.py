"""Stages that run an analysis subagent which files its findings as issues."""

from __future__ import annotations

import logging

from ..schema import StageCounts, UnitResult
from ..tools.subagents import SubagentRequest
from .base import StageContext, StageHandler, StageOutcome

LOGGER = logging.getLogger(__name__)


def _last_line(text: str) -> str:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines[-1] if lines else ""


def run_subagent(name: str, *, use_threshold: bool = False) -> StageHandler:
    """Build a handler that runs subagent ``name`` with ``--create-issues``."""

    def handler(ctx: StageContext) -> StageOutcome:
        request = SubagentRequest(
            repo_path=ctx.params.repo_path,
            create_issues=True,
            dry_run=ctx.params.dry_run,
            threshold=ctx.params.threshold if use_threshold else None,
        )
        outcome = ctx.services.launcher.run(name, request)
        summary = _last_line(outcome.stdout) if outcome.ok else outcome.short_reason()
        unit = UnitResult(unit=name, success=outcome.ok, detail=summary, duration=outcome.duration)
        if not outcome.ok:
            LOGGER.warning("Subagent %s failed: %s", name, summary)
        return StageOutcome(
            success=outcome.ok,
            detail=summary,
            counts=StageCounts(
                eligible=1,
                attempted=1,
                succeeded=1 if outcome.ok else 0,
                failed=0 if outcome.ok else 1,
            ),
            units=(unit,),
        )

    handler.__name__ = f"run_{name.replace('-', '_')}"
    return handler


__all__ = ["run_subagent"]
