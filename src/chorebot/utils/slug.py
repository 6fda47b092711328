"""Deterministic, length-limited slugs for branch names and report files."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_UNSAFE_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")
_GIT_FORBIDDEN = re.compile(r"\.{2,}|\.lock$|^\.|\.$")

BRANCH_SLUG_LENGTH = 48


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalise ``value`` into a lowercase slug safe for paths and refs."""
    source = (value or "").strip().lower() or fallback.lower()
    slug = _normalise(source)
    if not slug:
        slug = _normalise(fallback.lower()) or "item"
    if len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length)
    return slug


def abbreviate_slug(segment: str, *, max_length: int = 80) -> str:
    """Trim ``segment`` to ``max_length`` keeping it unique with a short digest."""
    slug = segment.strip("-") or "item"
    if len(slug) <= max_length:
        return slug

    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = slug[:prefix_length].rstrip("-.") or slug[:prefix_length]
    return f"{prefix}-{digest}"


def branch_name(tool: str, label: str | None) -> str:
    """Return the ``<tool>/<slug>`` branch used for one remediation unit.

    The same ``tool`` and ``label`` always produce the same branch, so a rerun
    targets the branch the previous run created instead of a new one.
    """
    prefix = slugify(tool, fallback="chore-bot", max_length=32)
    suffix = slugify(label, fallback="unit", max_length=BRANCH_SLUG_LENGTH)
    suffix = _GIT_FORBIDDEN.sub("-", suffix).strip("-") or "unit"
    return f"{prefix}/{suffix}"


def _normalise(value: str) -> str:
    slug = _UNSAFE_PATTERN.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")


__all__ = ["BRANCH_SLUG_LENGTH", "abbreviate_slug", "branch_name", "slugify"]
