"""Assemble stage results into an immutable run report and render it."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .schema import OutputFormat, RunReport, RunStatus, StageResult, utc_now

LOGGER = logging.getLogger(__name__)

_STATUS_MARK = {True: "ok", False: "FAILED"}


class RunReporter:
    """Collect :class:`StageResult` records for one run, in execution order."""

    def __init__(
        self,
        workflow: str,
        parameters: Mapping[str, Any] | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.workflow = workflow
        self.parameters = dict(parameters or {})
        self._clock = clock
        self._lock = threading.Lock()
        self._stages: List[StageResult] = []
        self._started_at: Optional[datetime] = None
        self._report: Optional[RunReport] = None

    def start(self) -> None:
        self._started_at = self._clock()

    def record(self, result: StageResult) -> None:
        with self._lock:
            if self._report is not None:
                raise RuntimeError("Run report is already finalised.")
            self._stages.append(result)

    @property
    def stages(self) -> tuple[StageResult, ...]:
        with self._lock:
            return tuple(self._stages)

    def finish(self, status: RunStatus) -> RunReport:
        """Freeze the collected results into a :class:`RunReport`."""
        with self._lock:
            if self._report is None:
                finished = self._clock()
                self._report = RunReport(
                    workflow=self.workflow,
                    status=status,
                    started_at=self._started_at or finished,
                    finished_at=finished,
                    stages=tuple(self._stages),
                    parameters=self.parameters,
                )
            return self._report


def render_console(report: RunReport) -> str:
    lines = [f"Workflow {report.workflow}: {report.status.value} in {report.duration:.1f}s"]
    for stage in report.stages:
        counts = stage.counts
        suffix = ""
        if counts.attempted or counts.eligible:
            suffix = f" [{counts.succeeded}/{counts.attempted} ok, {counts.eligible} eligible]"
        attempts = f" after {stage.attempts} attempts" if stage.attempts > 1 else ""
        lines.append(
            f"  {_STATUS_MARK[stage.success]:>6}  {stage.stage_name} ({stage.duration:.1f}s){attempts}{suffix}"
        )
        if stage.detail:
            lines.append(f"          {stage.detail}")
        for unit in stage.units:
            mark = "+" if unit.success else "x"
            reference = f" {unit.reference}" if unit.reference else ""
            lines.append(f"          {mark} {unit.unit}: {unit.detail}{reference}")
    return "\n".join(lines)


def report_payload(report: RunReport) -> Dict[str, Any]:
    payload = report.model_dump(mode="json")
    payload["parameters"] = report.parameter_map
    payload["duration"] = report.duration
    return payload


def render_json(report: RunReport) -> str:
    return json.dumps(report_payload(report), indent=2)


def render_markdown(report: RunReport) -> str:
    lines = [
        f"# Workflow `{report.workflow}`",
        "",
        f"- Status: **{report.status.value}**",
        f"- Started: {report.started_at.isoformat()}",
        f"- Duration: {report.duration:.1f}s",
        "",
        "| Stage | Result | Policy | Attempted | Succeeded | Failed | Detail |",
        "| --- | --- | --- | --- | --- | --- | --- |",
    ]
    for stage in report.stages:
        detail = stage.detail.replace("|", "\\|").replace("\n", " ")
        lines.append(
            f"| {stage.stage_name} | {_STATUS_MARK[stage.success]} | {stage.policy.value} "
            f"| {stage.counts.attempted} | {stage.counts.succeeded} | {stage.counts.failed} | {detail} |"
        )
    failures = [(stage, unit) for stage in report.stages for unit in stage.units if not unit.success]
    if failures:
        lines.extend(["", "## Failed units", ""])
        for stage, unit in failures:
            lines.append(f"- `{stage.stage_name}` / {unit.unit}: {unit.detail}")
    return "\n".join(lines) + "\n"


RENDERERS: Dict[OutputFormat, Callable[[RunReport], str]] = {
    OutputFormat.CONSOLE: render_console,
    OutputFormat.JSON: render_json,
    OutputFormat.MARKDOWN: render_markdown,
}


def render(report: RunReport, output: OutputFormat | str = OutputFormat.CONSOLE) -> str:
    return RENDERERS[OutputFormat(output)](report)


def format_for_path(path: Path) -> OutputFormat:
    suffix = path.suffix.lower()
    if suffix == ".json":
        return OutputFormat.JSON
    if suffix in {".md", ".markdown"}:
        return OutputFormat.MARKDOWN
    return OutputFormat.CONSOLE


def write_report(report: RunReport, path: Path, output: OutputFormat | None = None) -> Path:
    """Persist ``report``; the format follows the file suffix unless given."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render(report, output or format_for_path(path)), encoding="utf-8")
    LOGGER.info("Wrote run report to %s", path)
    return path


__all__ = [
    "RENDERERS",
    "RunReporter",
    "format_for_path",
    "render",
    "render_console",
    "render_json",
    "render_markdown",
    "report_payload",
    "write_report",
]
