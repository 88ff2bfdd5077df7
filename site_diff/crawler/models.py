# site_diff/crawler/models.py
"""
Data models for sitemap resolution and screenshot capture.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class SitemapNodeState(str, Enum):
    """Lifecycle of one sitemap document during resolution."""

    UNVISITED = "unvisited"
    FETCHING = "fetching"
    PARSED_AS_URLSET = "parsed_as_urlset"
    PARSED_AS_INDEX = "parsed_as_index"
    FETCH_FAILED = "fetch_failed"
    PARSE_FAILED = "parse_failed"
    SKIPPED_DEPTH = "skipped_depth"


@dataclass(frozen=True, slots=True)
class PageTarget:
    """Absolute page URL scheduled for capture and comparison."""

    url: str
    sitemap: str | None = None


@dataclass(frozen=True, slots=True)
class ScreenshotArtifact:
    """Raw PNG bytes of one capture plus where and when it was taken."""

    url: str
    content: bytes
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    from_cache: bool = False


@dataclass(frozen=True, slots=True)
class SitemapFailure:
    """A sitemap branch that contributed no URLs."""

    url: str
    error: BaseException
