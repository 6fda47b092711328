"""Command line interface for chore-bot workflows."""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import typer
from pydantic import ValidationError

from .config import (
    DEFAULT_CONFIG_NAME,
    ChoreBotConfig,
    ConfigError,
    default_config_data,
    load_config,
    require_credential,
    resolve_repo_path,
    write_config,
)
from .orchestrator import WorkflowEngine
from .reporter import render, write_report
from .schema import OutputFormat, RunReport
from .stages import WorkflowParams
from .workflows import available_workflows, describe_workflows

APP_HELP = "Coordinate code-quality agents and an issue-driven remediation loop."
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

LOGGER = logging.getLogger(__name__)

app = typer.Typer(help=APP_HELP, no_args_is_help=True)

# Swapped out in tests to inject fake collaborators.
build_engine: Callable[[ChoreBotConfig, Path], WorkflowEngine] = WorkflowEngine.from_config


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _repo_option() -> Any:
    return typer.Option(..., "--repo-path", "-r", help="Path to the target repository.")


def _config_option() -> Any:
    return typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the chore-bot configuration file.")


def _output_option() -> Any:
    return typer.Option(OutputFormat.CONSOLE, "--output", "-o", help="Report format.", case_sensitive=False)


def _report_path_option() -> Any:
    return typer.Option(None, "--report-path", help="Also write the run report to this file.")


def _dry_run_option() -> Any:
    return typer.Option(False, "--dry-run", help="Report what would happen without changing anything.")


@contextmanager
def _cancel_on_signals(engine: WorkflowEngine) -> Iterator[None]:
    """Route SIGINT/SIGTERM to :meth:`WorkflowEngine.cancel` for the duration of a run."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, _frame: Any) -> None:
        LOGGER.warning("Received signal %d; cancelling run", signum)
        engine.cancel()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _emit(report: RunReport, output: OutputFormat, report_path: Optional[Path]) -> None:
    typer.echo(render(report, output))
    if report_path is not None:
        write_report(report, report_path)
        typer.echo(f"Report written to {report_path}", err=True)


def _run_workflow(
    workflow: str,
    *,
    repo_path: Path,
    config: str,
    output: OutputFormat,
    report_path: Optional[Path],
    dry_run: bool,
    bounded: bool = False,
    **overrides: Any,
) -> None:
    """Validate the environment, run ``workflow`` and exit with its status code.

    ``bounded`` workflows fall back to ``engine.max_units`` when no bound was
    given on the command line; the others process every eligible unit.
    """
    try:
        require_credential()
        repo_root = resolve_repo_path(repo_path)
        settings = load_config(config)
        params = _build_params(settings, repo_root, output=output, dry_run=dry_run, bounded=bounded, **overrides)
        engine = build_engine(settings, repo_root)
        with _cancel_on_signals(engine):
            report = engine.run(workflow, params)
    except ConfigError as error:
        typer.echo(f"Configuration error: {error}", err=True)
        raise typer.Exit(code=2) from error

    _emit(report, output, report_path)
    if not report.ok:
        raise typer.Exit(code=1)


def _build_params(
    settings: ChoreBotConfig,
    repo_root: Path,
    *,
    output: OutputFormat,
    dry_run: bool,
    bounded: bool,
    max_units: Optional[int] = None,
    threshold: Optional[float] = None,
    **overrides: Any,
) -> WorkflowParams:
    if bounded and max_units is None:
        max_units = settings.engine.max_units
    try:
        return WorkflowParams(
            repo_path=repo_root,
            max_units=max_units,
            max_batch_size=settings.engine.max_batch_size,
            threshold=settings.engine.threshold if threshold is None else threshold,
            dry_run=dry_run,
            output=output,
            **{key: value for key, value in overrides.items() if value is not None},
        )
    except ValidationError as error:
        raise ConfigError(f"Invalid arguments: {error}") from error


@app.command()
def test(
    repo_path: Path = _repo_option(),
    max_prs: Optional[int] = typer.Option(None, "--max-prs", "-m", min=0, help="Maximum batches to dispatch."),
    batch_size: Optional[int] = typer.Option(
        None, "--batch-size", min=1, help="Batch by fixed size instead of by module."
    ),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Dispatch agents to add tests, one per module batch."""
    _run_workflow(
        "test",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        max_units=max_prs,
        bounded=True,
        batch_size=batch_size,
    )


@app.command()
def feature(
    repo_path: Path = _repo_option(),
    max_prs: Optional[int] = typer.Option(None, "--max-prs", "-m", min=0, help="Maximum agents to dispatch."),
    issue: Optional[int] = typer.Option(None, "--issue", "-i", min=1, help="Dispatch only this issue."),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Dispatch agents to implement enhancement issues."""
    _run_workflow(
        "feature",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        max_units=max_prs,
        bounded=True,
        issue=issue,
    )


@app.command()
def bug(
    repo_path: Path = _repo_option(),
    max_bugs: Optional[int] = typer.Option(None, "--max-bugs", "-m", min=0, help="Maximum bugs to dispatch."),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Dispatch agents to fix bug issues."""
    _run_workflow(
        "bug",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        max_units=max_bugs,
        bounded=True,
    )


@app.command()
def chore(
    repo_path: Path = _repo_option(),
    max_chores: Optional[int] = typer.Option(None, "--max-chores", "-m", min=0, help="Maximum chores to dispatch."),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Dispatch agents for chores and tech debt."""
    _run_workflow(
        "chore",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        max_units=max_chores,
        bounded=True,
    )


@app.command()
def custom(
    repo_path: Path = _repo_option(),
    task: Optional[str] = typer.Option(None, "--task", "-t", help="Task description for a single agent."),
    workflow: Optional[str] = typer.Option(None, "--workflow", "-w", help="Run a workflow defined in the config."),
    max_units: Optional[int] = typer.Option(None, "--max-units", min=0, help="Maximum units per stage."),
    issue: Optional[int] = typer.Option(None, "--issue", "-i", min=1, help="Restrict fetch stages to this issue."),
    threshold: Optional[float] = typer.Option(None, "--threshold", min=0, max=100, help="Coverage threshold."),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Dispatch a free-form --task, or run a configured --workflow."""
    if bool(task) == bool(workflow):
        typer.echo("Configuration error: pass exactly one of --task or --workflow.", err=True)
        raise typer.Exit(code=2)
    _run_workflow(
        workflow or "custom",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        max_units=1 if task else max_units,
        bounded=True,
        task=task,
        issue=issue,
        threshold=threshold,
    )


@app.command()
def approve(
    repo_path: Path = _repo_option(),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Re-run CI workflow runs that are waiting for approval."""
    _run_workflow("approve", repo_path=repo_path, config=config, output=output, report_path=report_path, dry_run=dry_run)


@app.command("coverage-workflow")
def coverage_workflow(
    repo_path: Path = _repo_option(),
    threshold: Optional[float] = typer.Option(None, "--threshold", min=0, max=100, help="Coverage threshold (0-100)."),
    max_prs: Optional[int] = typer.Option(None, "--max-prs", "-m", min=0, help="Maximum batches to dispatch."),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Run coverage analysis, then dispatch test batches for the issues it files."""
    _run_workflow(
        "coverage-workflow",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        max_units=max_prs,
        bounded=True,
        threshold=threshold,
    )


@app.command("test-workflow")
def test_workflow(
    repo_path: Path = _repo_option(),
    max_todos: Optional[int] = typer.Option(None, "--max-todos", "-m", min=0, help="Maximum TODOs to resolve."),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Scan TODOs and resolve them locally, opening a PR only when verification passes."""
    _run_workflow(
        "test-workflow",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        max_units=max_todos,
        bounded=True,
    )


@app.command("quality-workflow")
def quality_workflow(
    repo_path: Path = _repo_option(),
    threshold: Optional[float] = typer.Option(None, "--threshold", min=0, max=100, help="Coverage threshold (0-100)."),
    max_prs: Optional[int] = typer.Option(None, "--max-prs", "-m", min=0, help="Maximum batches to dispatch."),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Run every analysis, then dispatch test batches."""
    _run_workflow(
        "quality-workflow",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        max_units=max_prs,
        bounded=True,
        threshold=threshold,
    )


@app.command("feature-workflow")
def feature_workflow(
    repo_path: Path = _repo_option(),
    issue: Optional[int] = typer.Option(None, "--issue", "-i", min=1, help="Feature issue to implement."),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Implement one feature issue locally with verification."""
    _run_workflow(
        "feature-workflow",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        max_units=1,
        issue=issue,
    )


@app.command()
def scan(
    repo_path: Path = _repo_option(),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Scan for TODO/FIXME comments and file issues for them."""
    _run_workflow("scan", repo_path=repo_path, config=config, output=output, report_path=report_path, dry_run=dry_run)


@app.command("create-issues")
def create_issues(
    repo_path: Path = _repo_option(),
    batch: Path = typer.Option(..., "--batch", "-b", help="JSON file listing the issues to create."),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """File issues from a JSON batch; nothing is created unless every entry is valid."""
    _run_workflow(
        "create-issues",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        issues_file=batch,
    )


@app.command()
def nudge(
    repo_path: Path = _repo_option(),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Comment on open PRs whose checks are failing."""
    _run_workflow("nudge", repo_path=repo_path, config=config, output=output, report_path=report_path, dry_run=dry_run)


@app.command()
def conflicts(
    repo_path: Path = _repo_option(),
    close: bool = typer.Option(False, "--close", help="Close conflicting PRs instead of commenting."),
    config: str = _config_option(),
    output: OutputFormat = _output_option(),
    report_path: Optional[Path] = _report_path_option(),
    dry_run: bool = _dry_run_option(),
) -> None:
    """Ask authors of conflicting PRs to rebase, or close those PRs."""
    _run_workflow(
        "conflicts",
        repo_path=repo_path,
        config=config,
        output=output,
        report_path=report_path,
        dry_run=dry_run,
        close=close,
    )


@app.command()
def workflows(config: str = _config_option()) -> None:
    """List every available workflow and its stages."""
    try:
        settings = load_config(config)
    except ConfigError as error:
        typer.echo(f"Configuration error: {error}", err=True)
        raise typer.Exit(code=2) from error
    for line in describe_workflows(available_workflows(settings).values()):
        typer.echo(line)


@app.command("init-config")
def init_config(
    path: Path = typer.Argument(Path(DEFAULT_CONFIG_NAME), help="Where to write the configuration."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write the default configuration template."""
    if path.exists() and not force:
        typer.echo(f"{path} already exists; use --force to overwrite.", err=True)
        raise typer.Exit(code=1)
    write_config(path, default_config_data())
    typer.echo(f"Wrote default configuration to {path}.")


if __name__ == "__main__":
    app()
