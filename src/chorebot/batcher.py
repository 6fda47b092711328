"""Group work items into module-homogeneous, size-bounded batches.

Batching keeps one remediation pull request focused on one module so that
concurrently edited batches are unlikely to touch the same files.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from typing import Dict, List, Optional

from .schema import MISC_MODULE, Batch, WorkItem

MODULE_LABEL_PREFIX = "module:"

_PATH_SEPARATOR_RE = re.compile(r"(?:\w+::)+\w+")
_FILE_PATH_RE = re.compile(r"(?<![\w/.-])((?:[\w.-]+/)+[\w.-]+\.[A-Za-z0-9]+)")
_SOURCE_ROOTS = frozenset({"src", "lib", "crates", "packages", "app", "tests", "."})


class BatchingError(ValueError):
    """Raised for invalid batching parameters."""


def _normalise_key(value: str) -> str:
    return value.strip().lower().replace("_", "-")


def module_from_symbol_path(text: str) -> Optional[str]:
    """Return ``parent-leaf`` for the first ``a::b::c`` style path in ``text``."""
    match = _PATH_SEPARATOR_RE.search(text)
    if not match:
        return None
    segments = match.group(0).split("::")
    if len(segments) >= 2:
        return _normalise_key(f"{segments[-2]}-{segments[-1]}")
    return _normalise_key(segments[-1])


def module_from_file_path(text: str) -> Optional[str]:
    """Return the first directory segment below any source root for a path in ``text``."""
    match = _FILE_PATH_RE.search(text)
    if not match:
        return None
    parts = [part for part in match.group(1).split("/") if part]
    directories = parts[:-1]
    for part in directories:
        if part.lower() not in _SOURCE_ROOTS:
            return _normalise_key(part)
    stem = parts[-1].rsplit(".", 1)[0]
    return _normalise_key(stem) or None


def derive_module_key(
    title: str,
    body: str = "",
    labels: Iterable[str] = (),
) -> str:
    """Derive the grouping key for an issue; falls back to :data:`MISC_MODULE`."""
    for label in sorted(labels):
        if label.lower().startswith(MODULE_LABEL_PREFIX):
            declared = _normalise_key(label[len(MODULE_LABEL_PREFIX):])
            if declared:
                return declared

    for candidate in (
        module_from_symbol_path(title),
        module_from_file_path(title),
        module_from_file_path(body),
    ):
        if candidate:
            return candidate
    return MISC_MODULE


def group(items: Sequence[WorkItem], max_batch_size: int) -> List[Batch]:
    """Partition ``items`` into batches of at most ``max_batch_size`` per module.

    Modules appear in order of first occurrence with the catch-all module last;
    items keep their relative order inside each module.
    """
    if max_batch_size < 1:
        raise BatchingError(f"max_batch_size must be at least 1 (got {max_batch_size}).")

    grouped: Dict[str, List[WorkItem]] = {}
    seen: set[int] = set()
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        grouped.setdefault(item.module_key, []).append(item)

    order = [key for key in grouped if key != MISC_MODULE]
    if MISC_MODULE in grouped:
        order.append(MISC_MODULE)

    batches: List[Batch] = []
    for key in order:
        members = grouped[key]
        split = len(members) > max_batch_size
        for index, start in enumerate(range(0, len(members), max_batch_size)):
            chunk = tuple(members[start : start + max_batch_size])
            batches.append(Batch(module_key=key, items=chunk, index=index, split=split))
    return batches


def chunk(items: Sequence[WorkItem], size: int) -> List[Batch]:
    """Fixed-size batching that ignores module keys.

    Each chunk is re-keyed as ``batch-<n>`` so the module-homogeneity invariant
    of :class:`Batch` still holds.
    """
    if size < 1:
        raise BatchingError(f"batch size must be at least 1 (got {size}).")
    batches: List[Batch] = []
    for index, start in enumerate(range(0, len(items), size)):
        key = f"batch-{index + 1}"
        members = tuple(item.model_copy(update={"module_key": key}) for item in items[start : start + size])
        batches.append(Batch(module_key=key, items=members))
    return batches


__all__ = [
    "BatchingError",
    "MODULE_LABEL_PREFIX",
    "chunk",
    "derive_module_key",
    "group",
    "module_from_file_path",
    "module_from_symbol_path",
]
