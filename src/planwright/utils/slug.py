"""Slug helpers for plan filenames and workspace branch names."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_UNSAFE: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_RUNS = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "plan", max_length: int = 50) -> str:
    """Normalize ``value`` into a lowercase, filesystem-friendly slug."""
    slug = _normalize(value or "")
    if not slug:
        slug = _normalize(fallback) or "plan"
    if len(slug) > max_length:
        slug = _shorten(slug, max_length)
    return slug


def plan_filename(plan_id: int, title: str | None, *, extension: str = ".plan.md") -> str:
    """Return the ``<id>-<slug><extension>`` filename used for plan documents."""
    return f"{plan_id}-{slugify(title)}{extension}"


def branch_name(prefix: str, plan_id: int | None, title: str | None) -> str:
    """Build a branch name such as ``prefix/12-add-login``."""
    label = slugify(title, max_length=40)
    stem = f"{plan_id}-{label}" if plan_id is not None else label
    prefix = prefix.strip("/")
    return f"{prefix}/{stem}" if prefix else stem


def replace_leading_id(filename: str, old_id: int, new_id: int) -> str:
    """Swap the ``<old_id>-`` prefix of ``filename`` for ``<new_id>-``.

    Filenames that do not start with the old id are returned unchanged.
    """
    prefix = f"{old_id}-"
    if not filename.startswith(prefix):
        return filename
    return f"{new_id}-{filename[len(prefix):]}"


def _shorten(slug: str, max_length: int) -> str:
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    keep = max(max_length - len(digest) - 1, 1)
    head = slug[:keep].rstrip("-") or slug[:keep]
    return f"{head}-{digest}"


def _normalize(value: str) -> str:
    slug = _UNSAFE.sub("-", value.strip().lower())
    slug = _HYPHEN_RUNS.sub("-", slug)
    return slug.strip("-.")
