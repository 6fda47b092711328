"""Workflow engine: run a named workflow's stages in order under their failure policies."""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from .ci import CIClient
from .config import ChoreBotConfig, ConfigError
from .issues import IssueStore
from .reporter import RunReporter
from .schema import RunReport, RunStatus, StageCounts, StagePolicyKind, StageResult
from .stages import Stage, StageContext, StageError, StageOutcome, StagePolicy, StageServices, WorkflowParams
from .stages.base import UNIT_ERRORS
from .tools.invocation import ToolRunner
from .tools.subagents import SubagentLauncher
from .workflows import resolve_workflow

LOGGER = logging.getLogger(__name__)


class EngineState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


_TERMINAL = {
    RunStatus.COMPLETED: EngineState.COMPLETED,
    RunStatus.ABORTED: EngineState.ABORTED,
    RunStatus.CANCELLED: EngineState.CANCELLED,
}


def _resolve_bin_dir(bin_dir: str | None, repo_path: Path) -> Path | None:
    if not bin_dir:
        return None
    path = Path(bin_dir).expanduser()
    if path.is_absolute() or path.exists():
        return path
    return repo_path / path


class WorkflowEngine:
    """Sequence the stages of a workflow and produce a :class:`RunReport`.

    The engine owns the run-level state machine (``not_started -> running ->
    completed | aborted | cancelled``). Stage handlers own unit-level work and
    report partial success through :class:`StageOutcome`.
    """

    def __init__(self, services: StageServices, *, config: ChoreBotConfig | None = None) -> None:
        self.services = services
        self.config = config or services.config
        self.state = EngineState.NOT_STARTED
        self._cancel_event = threading.Event()
        self._context: Optional[StageContext] = None

    @classmethod
    def from_config(cls, config: ChoreBotConfig, repo_path: Path) -> "WorkflowEngine":
        """Wire the real ``gh``/git/subagent collaborators for ``repo_path``."""
        runner = ToolRunner(default_timeout=config.engine.timeout)
        services = StageServices(
            config,
            runner=runner,
            issues=IssueStore(repo_path, runner=runner, settings=config.issues),
            ci=CIClient(repo_path, runner=runner, settings=config.issues),
            launcher=SubagentLauncher(
                runner,
                bin_dir=_resolve_bin_dir(config.agents.bin_dir, repo_path),
                executables=config.agents.executables,
                timeout=config.engine.timeout,
            ),
        )
        return cls(services, config=config)

    # ------------------------------------------------------------------ public
    def run(self, workflow_name: str, params: WorkflowParams | Mapping[str, Any]) -> RunReport:
        """Run ``workflow_name``; configuration problems raise before any stage starts."""
        if isinstance(params, Mapping):
            try:
                params = WorkflowParams.model_validate(dict(params))
            except ValueError as error:
                raise ConfigError(f"Invalid workflow parameters: {error}") from error

        workflow = resolve_workflow(workflow_name, self.config)
        workflow.check_params(params)
        plan = workflow.resolve()

        context = StageContext(params=params, services=self.services, cancel_event=self._cancel_event)
        self._context = context
        reporter = RunReporter(workflow.name, params.report_parameters())
        reporter.start()
        self.state = EngineState.RUNNING
        LOGGER.info("Starting workflow %s (%s)", workflow.name, " -> ".join(workflow.stage_names))

        status = RunStatus.COMPLETED
        for stage, policy in plan:
            if context.cancelled:
                status = RunStatus.CANCELLED
                break
            result = self._run_stage(stage, policy, context)
            reporter.record(result)
            if context.cancelled:
                status = RunStatus.CANCELLED
                break
            if result.success:
                continue
            if policy.kind is StagePolicyKind.SKIP:
                LOGGER.warning("Stage %s failed; continuing: %s", stage.name, result.detail)
                continue
            LOGGER.error("Stage %s failed under %s policy; aborting: %s", stage.name, policy.describe(), result.detail)
            status = RunStatus.ABORTED
            break

        report = reporter.finish(status)
        self.state = _TERMINAL[status]
        LOGGER.info("Workflow %s finished: %s", workflow.name, status.value)
        return report

    def cancel(self) -> None:
        """Stop scheduling work and terminate in-flight tool invocations."""
        if self._cancel_event.is_set():
            return
        LOGGER.warning("Cancellation requested")
        self._cancel_event.set()
        self.services.runner.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ----------------------------------------------------------------- helpers
    def _run_stage(self, stage: Stage, policy: StagePolicy, context: StageContext) -> StageResult:
        started = time.monotonic()
        attempts = 0
        outcome = StageOutcome(success=False, detail="not run")
        for attempt in range(1, policy.max_attempts + 1):
            attempts = attempt
            LOGGER.info("Stage %s (attempt %d/%d)", stage.name, attempt, policy.max_attempts)
            outcome = self._invoke(stage, context)
            if outcome.success or context.cancelled:
                break
            if attempt < policy.max_attempts:
                LOGGER.warning("Stage %s failed (%s); retrying", stage.name, outcome.detail)

        return StageResult(
            stage_name=stage.name,
            success=outcome.success,
            duration=time.monotonic() - started,
            detail=outcome.detail,
            policy=policy.kind,
            attempts=attempts,
            counts=outcome.counts,
            units=outcome.units,
        )

    @staticmethod
    def _invoke(stage: Stage, context: StageContext) -> StageOutcome:
        try:
            return stage.handler(context)
        except (StageError, *UNIT_ERRORS) as error:
            LOGGER.warning("Stage %s raised %s: %s", stage.name, type(error).__name__, error)
            return StageOutcome(success=False, detail=str(error) or type(error).__name__, counts=StageCounts())


__all__ = ["EngineState", "WorkflowEngine"]
