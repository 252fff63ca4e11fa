"""Helpers for turning project names into safe workspace directory names."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_DIRECTORY_PATTERN: Pattern[str] = re.compile(r"[^A-Za-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(
    value: str | None,
    *,
    fallback: str = "project",
    max_length: int = 80,
) -> str:
    """Normalize ``value`` into a filesystem-friendly directory name.

    Case is preserved so that ``MyProject`` and ``myproject`` keep distinct
    workspaces, mirroring how repositories are named on the hosting side.
    """
    source = (value or "").strip()
    slug = _normalize(source)
    if not slug or set(slug) <= {"."}:
        slug = _normalize(fallback) or "project"

    if len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length)
    return slug


def abbreviate_slug(segment: str, *, max_length: int = 80) -> str:
    """Trim ``segment`` to ``max_length`` while preserving uniqueness via hashing."""
    slug = segment.strip("-")
    if len(slug) <= max_length:
        return slug

    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = slug[:prefix_length].rstrip("-") or slug[:prefix_length]
    return f"{prefix}-{digest}"


def _normalize(value: str) -> str:
    slug = _DIRECTORY_PATTERN.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")
