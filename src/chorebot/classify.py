"""Tag work items with a :class:`WorkKind` and map each kind to its remediation route.

The kind is derived once, when an issue is fetched, from its labels and then
from keywords in its title. Everything downstream dispatches on the enum via
:data:`REMEDIATION_ROUTES`; adding a kind means one enum member plus one entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Tuple

from .schema import WorkItem, WorkKind

LABEL_KINDS: Mapping[str, WorkKind] = {
    "testing": WorkKind.TESTING,
    "test": WorkKind.TESTING,
    "tests": WorkKind.TESTING,
    "coverage": WorkKind.TESTING,
    "enhancement": WorkKind.FEATURE,
    "feature": WorkKind.FEATURE,
    "bug": WorkKind.BUGFIX,
    "chore": WorkKind.CHORE,
    "tech-debt": WorkKind.CHORE,
    "refactor": WorkKind.REFACTOR,
    "refactoring": WorkKind.REFACTOR,
    "todo": WorkKind.IMPLEMENTATION,
}

# Ordered: the first keyword found in the title decides the kind.
TITLE_KEYWORDS: Tuple[Tuple[str, WorkKind], ...] = (
    ("test", WorkKind.TESTING),
    ("implement", WorkKind.IMPLEMENTATION),
    ("refactor", WorkKind.REFACTOR),
    ("fix", WorkKind.BUGFIX),
    ("bug", WorkKind.BUGFIX),
    ("feature", WorkKind.FEATURE),
    ("add", WorkKind.FEATURE),
    ("cleanup", WorkKind.CHORE),
    ("clean up", WorkKind.CHORE),
)


@dataclass(slots=True, frozen=True)
class RemediationRoute:
    """How work of one kind is handed to a remediation agent."""

    template: str
    commit_prefix: str
    resolver: str
    resolver_args: Tuple[str, ...] = ()


REMEDIATION_ROUTES: Dict[WorkKind, RemediationRoute] = {
    WorkKind.TESTING: RemediationRoute("test", "test", "todo-resolver"),
    WorkKind.FEATURE: RemediationRoute("feature", "feat", "feature-implementer"),
    WorkKind.BUGFIX: RemediationRoute("bug", "fix", "todo-resolver"),
    WorkKind.CHORE: RemediationRoute("chore", "chore", "todo-resolver", ("--skip-tests",)),
    WorkKind.REFACTOR: RemediationRoute("chore", "refactor", "todo-resolver"),
    WorkKind.IMPLEMENTATION: RemediationRoute("feature", "feat", "todo-resolver"),
    WorkKind.GENERAL: RemediationRoute("chore", "chore", "todo-resolver"),
}


def classify(title: str, labels: Iterable[str] = ()) -> WorkKind:
    """Return the :class:`WorkKind` for an issue title and label set."""
    for label in sorted(label.lower() for label in labels):
        kind = LABEL_KINDS.get(label)
        if kind is not None:
            return kind

    lowered = title.lower()
    for keyword, kind in TITLE_KEYWORDS:
        if keyword in lowered:
            return kind
    return WorkKind.GENERAL


def route_for(item: WorkItem) -> RemediationRoute:
    """Return the registered route for ``item.kind``."""
    return REMEDIATION_ROUTES[item.kind]


__all__ = [
    "LABEL_KINDS",
    "REMEDIATION_ROUTES",
    "RemediationRoute",
    "TITLE_KEYWORDS",
    "classify",
    "route_for",
]
