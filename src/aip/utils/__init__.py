"""Utility helpers shared across the implementation pipeline."""

from .slug import abbreviate_slug, slugify

__all__ = ["abbreviate_slug", "slugify"]
