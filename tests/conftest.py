from __future__ import annotations

import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from chorebot.ci import CIClient, WorkflowRun  # noqa: E402
from chorebot.config import ChoreBotConfig  # noqa: E402
from chorebot.issues import IssueErrorKind, IssueStore, IssueStoreError  # noqa: E402
from chorebot.orchestrator import WorkflowEngine  # noqa: E402
from chorebot.schema import MISC_MODULE, PullRequestRef, WorkItem, WorkKind  # noqa: E402
from chorebot.stages import StageServices  # noqa: E402
from chorebot.tools.gates import VerificationCheck  # noqa: E402
from chorebot.tools.invocation import FailureKind, ToolInvocation, ToolOutcome, ToolRunner  # noqa: E402
from chorebot.tools.subagents import SubagentLauncher  # noqa: E402

Handler = Callable[[ToolInvocation], ToolOutcome]


def make_outcome(
    invocation: ToolInvocation,
    stdout: str = "",
    *,
    failure: FailureKind | None = None,
    stderr: str = "",
    exit_status: int | None = None,
) -> ToolOutcome:
    """Build a :class:`ToolOutcome` without running anything."""

    if exit_status is None:
        exit_status = 0 if failure is None else 1
    return ToolOutcome(invocation, exit_status, stdout, stderr, 0.01, failure)


class FakeRunner:
    """Stand-in for :class:`ToolRunner` that records invocations instead of spawning them."""

    def __init__(
        self,
        outcomes: Iterable[Callable[[ToolInvocation], ToolOutcome]] = (),
        *,
        handler: Handler | None = None,
    ) -> None:
        self.default_timeout = 30.0
        self.calls: List[ToolInvocation] = []
        self.cancel_calls = 0
        self._outcomes = list(outcomes)
        self._handler = handler
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_calls > 0

    def run(
        self,
        tool_name: str,
        *args: str,
        cwd: Path | str | None = None,
        timeout: float | None = None,
        env: Dict[str, str] | None = None,
    ) -> ToolOutcome:
        invocation = ToolInvocation(
            tool_name=tool_name,
            args=tuple(args),
            working_dir=Path(cwd) if cwd is not None else None,
            timeout=timeout or self.default_timeout,
            env=env,
        )
        return self.invoke(invocation)

    def invoke(self, invocation: ToolInvocation) -> ToolOutcome:
        with self._lock:
            self.calls.append(invocation)
            scripted = self._outcomes.pop(0) if self._outcomes else None
        if scripted is not None:
            return scripted(invocation)
        if self._handler is not None:
            return self._handler(invocation)
        return make_outcome(invocation)

    def cancel(self) -> None:
        self.cancel_calls += 1

    def calls_for(self, tool_name: str) -> List[ToolInvocation]:
        return [call for call in self.calls if call.tool_name == tool_name]


class ScriptedRunner(ToolRunner):
    """Real runner whose named tools are replaced by Python callables."""

    def __init__(self, scripts: Dict[str, Handler], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.scripts = scripts
        self.scripted_calls: List[ToolInvocation] = []

    def invoke(self, invocation: ToolInvocation) -> ToolOutcome:
        script = self.scripts.get(invocation.tool_name)
        if script is None:
            return super().invoke(invocation)
        self.scripted_calls.append(invocation)
        return script(invocation)


def make_item(
    issue_id: int,
    title: str | None = None,
    *,
    module: str = MISC_MODULE,
    labels: Sequence[str] = ("testing",),
    linked: bool = False,
    kind: WorkKind = WorkKind.TESTING,
    body: str = "Details",
) -> WorkItem:
    return WorkItem(
        id=issue_id,
        title=title or f"Issue {issue_id}",
        body=body,
        labels=frozenset(labels),
        module_key=module,
        has_linked_pr=linked,
        kind=kind,
    )


@dataclass
class CreatedPullRequest:
    branch: str
    title: str
    body: str
    base: Optional[str]


class FakeIssueStore(IssueStore):
    """Issue store backed by in-memory data; validation stays the real implementation."""

    def __init__(
        self,
        items: Iterable[WorkItem] = (),
        *,
        runner: FakeRunner | None = None,
        fail_dispatch: Callable[[str], bool] | None = None,
    ) -> None:
        super().__init__(Path("."), runner=runner or FakeRunner(), sleep=lambda _: None)
        self.items: List[WorkItem] = list(items)
        self.titles: List[str] = []
        self.failing: List[PullRequestRef] = []
        self.conflicting: List[PullRequestRef] = []
        self.list_error: IssueStoreError | None = None
        self.list_hook: Callable[[], None] | None = None
        self.fail_dispatch = fail_dispatch
        self.dispatched: List[str] = []
        self.created: List[tuple[str, Optional[str], List[str]]] = []
        self.comments: List[tuple[int, str]] = []
        self.issue_comments: List[tuple[int, str]] = []
        self.closed: List[int] = []
        self.pull_requests: List[CreatedPullRequest] = []
        self.list_calls: List[Optional[str]] = []
        self._lock = threading.Lock()

    def list(self, label: str | None = None, state: str = "open", *, include_linked: bool = False) -> List[WorkItem]:
        self.list_calls.append(label)
        if self.list_hook is not None:
            self.list_hook()
        if self.list_error is not None:
            raise self.list_error
        return [item for item in self.items if include_linked or not item.has_linked_pr]

    def fetch(self, issue_id: int) -> WorkItem:
        for item in self.items:
            if item.id == issue_id:
                return item
        raise IssueStoreError(IssueErrorKind.NOT_FOUND, f"Issue #{issue_id} not found")

    def open_issue_titles(self) -> List[str]:
        return list(self.titles)

    def create(self, title: str, body: str | None, labels: Sequence[str] = ()) -> int:
        self.validate_new_issue(title, body, self.titles)
        self.created.append((title, body, list(labels)))
        self.titles.append(title)
        return 100 + len(self.created)

    def dispatch_agent_task(self, task: str) -> str:
        if self.fail_dispatch is not None and self.fail_dispatch(task):
            raise IssueStoreError(IssueErrorKind.INVALID, "agent task rejected")
        with self._lock:
            self.dispatched.append(task)
        return f"https://github.com/acme/widgets/pull/{len(self.dispatched)}"

    def list_failing_pull_requests(self) -> List[PullRequestRef]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.failing)

    def list_conflicting_pull_requests(self) -> List[PullRequestRef]:
        return list(self.conflicting)

    def comment(self, issue_id: int, body: str) -> None:
        self.issue_comments.append((issue_id, body))

    def comment_pull_request(self, number: int, body: str) -> None:
        self.comments.append((number, body))

    def close_pull_request(self, number: int, comment: str | None = None) -> None:
        self.closed.append(number)

    def create_pull_request(
        self,
        branch: str,
        title: str,
        body: str,
        *,
        base: str | None = None,
    ) -> PullRequestRef:
        self.pull_requests.append(CreatedPullRequest(branch, title, body, base))
        number = 500 + len(self.pull_requests)
        return PullRequestRef(number=number, url=f"https://github.com/acme/widgets/pull/{number}", head_ref=branch)


class FakeCI(CIClient):
    """CI client with a fixed list of runs; approvals are recorded or rejected."""

    def __init__(self, runs: Iterable[WorkflowRun] = (), *, reject: Iterable[int] = ()) -> None:
        super().__init__(Path("."), runner=FakeRunner(), sleep=lambda _: None)
        self.runs = list(runs)
        self.reject = set(reject)
        self.approved: List[int] = []

    def list_runs(self) -> List[WorkflowRun]:
        return list(self.runs)

    def approve_run(self, run_id: int) -> None:
        if run_id in self.reject:
            raise IssueStoreError(IssueErrorKind.INVALID, f"run {run_id} cannot be re-run")
        self.approved.append(run_id)


@dataclass
class Harness:
    """Engine wired to fakes, plus handles on each fake for assertions."""

    engine: WorkflowEngine
    runner: FakeRunner
    issues: FakeIssueStore
    ci: FakeCI
    config: ChoreBotConfig
    repo_path: Path
    extra: Dict[str, Any] = field(default_factory=dict)

    def run(self, workflow: str, **params: Any):
        return self.engine.run(workflow, {"repo_path": self.repo_path, **params})


def build_harness(
    repo_path: Path,
    *,
    items: Iterable[WorkItem] = (),
    runs: Iterable[WorkflowRun] = (),
    config: ChoreBotConfig | None = None,
    runner: FakeRunner | None = None,
    checks: Sequence[VerificationCheck] = (),
    fail_dispatch: Callable[[str], bool] | None = None,
) -> Harness:
    config = config or ChoreBotConfig()
    runner = runner or FakeRunner()
    issues = FakeIssueStore(items, fail_dispatch=fail_dispatch)
    ci = FakeCI(runs)
    launcher = SubagentLauncher(
        runner,  # type: ignore[arg-type]
        executables={name: f"/opt/agents/{name}" for name in ("coverage", "todo-scanner", "refactor-analyzer")},
    )
    services = StageServices(
        config,
        runner=runner,  # type: ignore[arg-type]
        issues=issues,
        ci=ci,
        launcher=launcher,
        checks=checks,
    )
    engine = WorkflowEngine(services)
    return Harness(engine=engine, runner=runner, issues=issues, ci=ci, config=config, repo_path=repo_path)


@pytest.fixture()
def harness(tmp_path: Path) -> Callable[..., Harness]:
    """Factory fixture returning an engine wired to in-memory fakes."""

    def _factory(**kwargs: Any) -> Harness:
        return build_harness(tmp_path, **kwargs)

    return _factory


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout.strip()


@dataclass(slots=True)
class TinyRepo:
    """A throwaway git repository with a bare ``origin`` remote."""

    root: Path
    origin: Path

    def git(self, *args: str) -> str:
        return _git(self.root, *args)


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """Create a tiny git repository with one commit pushed to a local bare remote."""

    origin = tmp_path / "origin.git"
    _git(tmp_path, "init", "--bare", str(origin))

    repo_root = tmp_path / "tiny-repo"
    repo_root.mkdir()
    _git(repo_root, "init")
    _git(repo_root, "config", "user.email", "bot@example.com")
    _git(repo_root, "config", "user.name", "Chore Bot")
    _git(repo_root, "config", "commit.gpgsign", "false")

    (repo_root / "README.md").write_text("# tiny\n", encoding="utf-8")
    src_dir = repo_root / "src" / "tiny_app"
    src_dir.mkdir(parents=True)
    (src_dir / "calculator.py").write_text(
        "def add(left: int, right: int) -> int:\n    return left + right\n",
        encoding="utf-8",
    )
    _git(repo_root, "add", ".")
    _git(repo_root, "commit", "-m", "Initial tiny repo state")
    _git(repo_root, "remote", "add", "origin", str(origin))
    branch = _git(repo_root, "rev-parse", "--abbrev-ref", "HEAD")
    _git(repo_root, "push", "-u", "origin", branch)

    return TinyRepo(root=repo_root, origin=origin)
