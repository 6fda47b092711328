"""Small shared helpers."""

from .slug import abbreviate_slug, branch_name, slugify

__all__ = ["abbreviate_slug", "branch_name", "slugify"]
