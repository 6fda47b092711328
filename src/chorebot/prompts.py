"""Prompt templates handed to remediation agents.

Templates are markdown documents with ``{{name}}`` placeholders. Rendering is
plain substitution: no conditionals, no loops, unknown placeholders are left
untouched.
"""

from __future__ import annotations

import re
from importlib import resources
from pathlib import Path
from typing import Iterable, Mapping

from .schema import Batch, WorkItem

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
BUILTIN_TEMPLATES: tuple[str, ...] = ("test", "feature", "bug", "chore")


class PromptTemplateError(LookupError):
    """Raised when a template cannot be located."""


def render_template(template: str, variables: Mapping[str, object]) -> str:
    """Replace ``{{key}}`` placeholders with the matching variable."""

    def _substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return str(variables[key])

    return _PLACEHOLDER_RE.sub(_substitute, template)


def placeholders(template: str) -> set[str]:
    """Return the placeholder names referenced by ``template``."""
    return {match.group(1) for match in _PLACEHOLDER_RE.finditer(template)}


class PromptLibrary:
    """Load templates from an override directory, falling back to the packaged set."""

    def __init__(self, directory: Path | str | None = None) -> None:
        self.directory = Path(directory) if directory else None

    def load(self, name: str) -> str:
        if self.directory is not None:
            candidate = self.directory / f"{name}.md"
            if candidate.is_file():
                return candidate.read_text(encoding="utf-8")
        resource = resources.files("chorebot").joinpath("prompts", f"{name}.md")
        if not resource.is_file():
            raise PromptTemplateError(f"Unknown prompt template: {name}")
        return resource.read_text(encoding="utf-8")

    def render(self, name: str, variables: Mapping[str, object]) -> str:
        return render_template(self.load(name), variables)


def issue_list(items: Iterable[WorkItem]) -> str:
    """Render ``- #id: title`` lines for a batch prompt."""
    return "".join(f"- #{item.id}: {item.title}\n" for item in items)


def closes_clause(items: Iterable[WorkItem]) -> str:
    return ", ".join(f"closes #{item.id}" for item in items)


def batch_variables(batch: Batch) -> dict[str, object]:
    """Variables for templates that describe a whole module batch."""
    return {
        "module": batch.name,
        "module_snake": batch.name.replace("-", "_"),
        "issue_list": issue_list(batch.items),
        "closes_str": closes_clause(batch.items),
        "count": len(batch.items),
    }


def item_variables(item: WorkItem) -> dict[str, object]:
    """Variables for templates that describe a single issue."""
    return {
        "issue": item.id,
        "title": item.title,
        "body": item.body,
        "module": item.module_key,
        "closes_str": f"closes #{item.id}",
        "count": 1,
    }


__all__ = [
    "BUILTIN_TEMPLATES",
    "PromptLibrary",
    "PromptTemplateError",
    "batch_variables",
    "closes_clause",
    "issue_list",
    "item_variables",
    "placeholders",
    "render_template",
]
