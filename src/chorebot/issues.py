"""Issue tracker client built on the ``gh`` command line tool.

All tracker traffic goes through :class:`GhClient`, which runs ``gh`` via the
shared :class:`ToolRunner`, classifies failures into :class:`IssueErrorKind`
values and retries transient ones with exponential backoff. Nothing is cached
between calls: each listing reflects the tracker at the moment it was made.
"""

from __future__ import annotations

import json
import logging
import re
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .batcher import derive_module_key
from .classify import classify
from .config import IssueSettings
from .schema import PullRequestRef, WorkItem
from .tools.invocation import FailureKind, ToolOutcome, ToolRunner

LOGGER = logging.getLogger(__name__)

GH_TIMEOUT = 120.0
ISSUE_FIELDS = "number,title,body,labels,url"
PR_FIELDS = "number,title,url,body,headRefName,author"

_CLOSING_RE = re.compile(r"\b(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s*:?\s+#(\d+)", re.IGNORECASE)
_ISSUE_URL_RE = re.compile(r"/(?:issues|pull)/(\d+)\s*$")

_RATE_LIMIT_MARKERS = ("rate limit", "api rate", "abuse detection", "http 429")
_NOT_FOUND_MARKERS = ("could not resolve", "not found", "http 404", "no pull requests found")
_NETWORK_MARKERS = (
    "could not connect",
    "connection refused",
    "connection reset",
    "timed out",
    "timeout",
    "eof",
    "tls",
    "no such host",
    "http 500",
    "http 502",
    "http 503",
    "http 504",
)
_FAILING_CONCLUSIONS = frozenset({"FAILURE", "TIMED_OUT", "CANCELLED", "ACTION_REQUIRED", "ERROR"})


class IssueErrorKind(str, Enum):
    NETWORK_FAILURE = "network_failure"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    INVALID = "invalid"


RETRYABLE_KINDS = frozenset({IssueErrorKind.NETWORK_FAILURE, IssueErrorKind.RATE_LIMITED})


class IssueStoreError(RuntimeError):
    """Raised when the tracker rejects a request or cannot be reached."""

    def __init__(self, kind: IssueErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class DuplicateOrInvalid(IssueStoreError):
    """Raised when a new issue is malformed or duplicates an open one."""

    def __init__(self, message: str) -> None:
        super().__init__(IssueErrorKind.INVALID, message)


def classify_failure(outcome: ToolOutcome) -> IssueErrorKind:
    """Map a failed ``gh`` outcome onto an :class:`IssueErrorKind`."""
    if outcome.failure is FailureKind.TIMEOUT:
        return IssueErrorKind.NETWORK_FAILURE
    if outcome.failure is FailureKind.NOT_FOUND:
        return IssueErrorKind.INVALID
    text = outcome.output.lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return IssueErrorKind.RATE_LIMITED
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return IssueErrorKind.NOT_FOUND
    if any(marker in text for marker in _NETWORK_MARKERS):
        return IssueErrorKind.NETWORK_FAILURE
    return IssueErrorKind.INVALID


def closing_references(text: str) -> List[int]:
    """Return issue numbers referenced by ``closes #N`` style keywords."""
    return [int(match.group(1)) for match in _CLOSING_RE.finditer(text or "")]


def _number_from_url(url: str) -> int:
    match = _ISSUE_URL_RE.search(url.strip())
    if not match:
        raise IssueStoreError(IssueErrorKind.INVALID, f"Unexpected gh output: {url.strip()!r}")
    return int(match.group(1))


def _author_login(payload: Dict[str, Any]) -> str:
    author = payload.get("author") or {}
    if isinstance(author, dict):
        return str(author.get("login") or "")
    return str(author)


def pull_request_from_payload(payload: Dict[str, Any]) -> PullRequestRef:
    return PullRequestRef(
        number=int(payload.get("number") or 0),
        url=str(payload.get("url") or ""),
        title=str(payload.get("title") or ""),
        author=_author_login(payload),
        head_ref=str(payload.get("headRefName") or ""),
    )


class GhClient:
    """Run ``gh`` subcommands with bounded retries for transient failures."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        runner: ToolRunner,
        settings: IssueSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.runner = runner
        self.settings = settings or IssueSettings()
        self._sleep = sleep

    def gh(self, *args: str) -> str:
        """Run ``gh`` and return stdout, retrying network and rate-limit failures."""
        attempts = max(1, self.settings.max_attempts)
        delay = self.settings.retry_delay
        last_error = IssueStoreError(IssueErrorKind.INVALID, "gh was not invoked")

        for attempt in range(1, attempts + 1):
            outcome = self.runner.run("gh", *args, cwd=self.repo_path, timeout=GH_TIMEOUT)
            if outcome.ok:
                return outcome.stdout
            if outcome.failure is FailureKind.CANCELLED:
                raise IssueStoreError(IssueErrorKind.NETWORK_FAILURE, "gh call cancelled")

            kind = classify_failure(outcome)
            last_error = IssueStoreError(kind, f"gh {args[0] if args else ''} failed: {outcome.short_reason()}")
            if kind not in RETRYABLE_KINDS or attempt >= attempts:
                break
            LOGGER.warning(
                "gh %s failed with %s (attempt %d/%d); retrying in %.1fs",
                " ".join(args[:2]),
                kind.value,
                attempt,
                attempts,
                delay,
            )
            self._sleep(delay)
            delay *= self.settings.backoff_factor

        raise last_error

    def gh_json(self, *args: str) -> Any:
        raw = self.gh(*args)
        if not raw.strip():
            return []
        try:
            return json.loads(raw)
        except json.JSONDecodeError as error:
            raise IssueStoreError(IssueErrorKind.INVALID, f"gh returned invalid JSON: {error}") from error


class IssueStore(GhClient):
    """Issue and pull request operations against the repository's tracker."""

    # ----------------------------------------------------------------- reads
    def _to_work_item(self, payload: Dict[str, Any], *, has_linked_pr: bool = False) -> WorkItem:
        labels = frozenset(
            str(label.get("name") if isinstance(label, dict) else label)
            for label in payload.get("labels") or []
        )
        title = str(payload.get("title") or "")
        body = str(payload.get("body") or "")
        return WorkItem(
            id=int(payload["number"]),
            title=title,
            body=body,
            labels=labels,
            module_key=derive_module_key(title, body, labels),
            has_linked_pr=has_linked_pr,
            url=str(payload.get("url") or ""),
            kind=classify(title, labels),
        )

    def open_pull_requests(self, fields: str = PR_FIELDS) -> List[Dict[str, Any]]:
        data = self.gh_json(
            "pr", "list", "--state", "open", "--limit", str(self.settings.list_limit), "--json", fields
        )
        return list(data or [])

    def linked_pull_requests(self) -> Dict[int, PullRequestRef]:
        """Map issue numbers to the open pull request that closes them."""
        index: Dict[int, PullRequestRef] = {}
        for payload in self.open_pull_requests():
            ref = pull_request_from_payload(payload)
            for number in closing_references(str(payload.get("body") or "")):
                index.setdefault(number, ref)
        return index

    def list(
        self,
        label: str | None = None,
        state: str = "open",
        *,
        include_linked: bool = False,
    ) -> List[WorkItem]:
        """List issues; items with a linked open pull request are dropped unless requested."""
        args = ["issue", "list", "--state", state, "--limit", str(self.settings.list_limit), "--json", ISSUE_FIELDS]
        if label:
            args.extend(["--label", label])
        payloads = self.gh_json(*args) or []
        linked = self.linked_pull_requests()

        items: List[WorkItem] = []
        skipped = 0
        for payload in payloads:
            has_pr = int(payload["number"]) in linked
            if has_pr and not include_linked:
                skipped += 1
                continue
            items.append(self._to_work_item(payload, has_linked_pr=has_pr))
        if skipped:
            LOGGER.info("Skipped %d issue(s) labelled %r with open pull requests", skipped, label)
        return items

    def fetch(self, issue_id: int) -> WorkItem:
        payload = self.gh_json("issue", "view", str(issue_id), "--json", ISSUE_FIELDS)
        if not isinstance(payload, dict) or "number" not in payload:
            raise IssueStoreError(IssueErrorKind.NOT_FOUND, f"Issue #{issue_id} not found")
        linked = self.linked_pull_request(issue_id)
        return self._to_work_item(payload, has_linked_pr=linked is not None)

    def linked_pull_request(self, issue_id: int) -> Optional[PullRequestRef]:
        return self.linked_pull_requests().get(issue_id)

    def open_issue_titles(self) -> List[str]:
        data = self.gh_json(
            "issue", "list", "--state", "open", "--limit", str(self.settings.list_limit), "--json", "number,title"
        )
        return [str(entry.get("title") or "") for entry in data or []]

    # ---------------------------------------------------------------- writes
    def validate_new_issue(self, title: str, body: str | None, open_titles: Iterable[str] = ()) -> None:
        """Raise :class:`DuplicateOrInvalid` if ``title``/``body`` cannot be filed as-is."""
        if not title or not title.strip():
            raise DuplicateOrInvalid("Issue title is empty.")
        limit = self.settings.title_max_length
        if len(title) > limit:
            raise DuplicateOrInvalid(f"Issue title is {len(title)} characters; the limit is {limit}.")
        if body is None or not body.strip():
            raise DuplicateOrInvalid(f"Issue {title!r} has no body.")
        wanted = title.strip().casefold()
        if any(existing.strip().casefold() == wanted for existing in open_titles):
            raise DuplicateOrInvalid(f"An open issue titled {title!r} already exists.")

    def create(self, title: str, body: str | None, labels: Sequence[str] = ()) -> int:
        """File a new issue and return its number."""
        self.validate_new_issue(title, body, self.open_issue_titles())
        args = ["issue", "create", "--title", title, "--body", body or ""]
        for label in labels:
            args.extend(["--label", label])
        number = _number_from_url(self.gh(*args))
        LOGGER.info("Created issue #%d: %s", number, title)
        return number

    def comment(self, issue_id: int, body: str) -> None:
        self.gh("issue", "comment", str(issue_id), "--body", body)

    def close(self, issue_id: int, comment: str | None = None) -> None:
        args = ["issue", "close", str(issue_id)]
        if comment:
            args.extend(["--comment", comment])
        self.gh(*args)

    # --------------------------------------------------------- pull requests
    def create_pull_request(
        self,
        branch: str,
        title: str,
        body: str,
        *,
        base: str | None = None,
    ) -> PullRequestRef:
        args = ["pr", "create", "--head", branch, "--title", title, "--body", body]
        base = base or self.settings.base_branch
        if base:
            args.extend(["--base", base])
        url = self.gh(*args).strip().splitlines()[-1]
        number = _number_from_url(url)
        LOGGER.info("Opened pull request #%d from %s", number, branch)
        return PullRequestRef(number=number, url=url, title=title, head_ref=branch)

    def list_failing_pull_requests(self) -> List[PullRequestRef]:
        """Open pull requests with at least one failed status check."""
        failing: List[PullRequestRef] = []
        for payload in self.open_pull_requests("number,title,url,author,headRefName,statusCheckRollup"):
            checks = payload.get("statusCheckRollup") or []
            if any(
                str(check.get("conclusion") or check.get("state") or "").upper() in _FAILING_CONCLUSIONS
                for check in checks
            ):
                failing.append(pull_request_from_payload(payload))
        return failing

    def list_conflicting_pull_requests(self) -> List[PullRequestRef]:
        """Open pull requests whose mergeable state is ``CONFLICTING``."""
        return [
            pull_request_from_payload(payload)
            for payload in self.open_pull_requests("number,title,url,author,headRefName,mergeable")
            if str(payload.get("mergeable") or "").upper() == "CONFLICTING"
        ]

    def comment_pull_request(self, number: int, body: str) -> None:
        self.gh("pr", "comment", str(number), "--body", body)

    def close_pull_request(self, number: int, comment: str | None = None) -> None:
        args = ["pr", "close", str(number)]
        if comment:
            args.extend(["--comment", comment])
        self.gh(*args)

    def dispatch_agent_task(self, task: str) -> str:
        """Hand ``task`` to a remote coding agent; returns the tracker's response text."""
        return self.gh("agent-task", "create", task).strip()


__all__ = [
    "DuplicateOrInvalid",
    "GhClient",
    "IssueErrorKind",
    "IssueStore",
    "IssueStoreError",
    "RETRYABLE_KINDS",
    "classify_failure",
    "closing_references",
    "pull_request_from_payload",
]
