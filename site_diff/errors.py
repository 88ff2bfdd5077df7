# site_diff/errors.py
"""
Error taxonomy and exception types shared by every SiteDiff component.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Fixed failure taxonomy used by the run reporter."""

    NETWORK_TIMEOUT = "NetworkTimeout"
    SCREENSHOT_FAILURE = "ScreenshotFailure"
    FILE_IO_ERROR = "FileIoError"
    COMPARISON_ERROR = "ComparisonError"
    PARSE_FAILURE = "ParseFailure"
    UNKNOWN = "Unknown"


class SiteDiffError(Exception):
    """Base class for all SiteDiff errors."""

    kind: Optional[ErrorKind] = None


class SitemapFetchError(SiteDiffError):
    """Sitemap could not be downloaded (non-2xx status or empty body)."""


class SitemapParseError(SiteDiffError):
    """Sitemap body is neither a URL set nor a sitemap index."""

    kind = ErrorKind.PARSE_FAILURE


class ScreenshotError(SiteDiffError):
    """Screenshot capture service returned a non-success response."""

    kind = ErrorKind.SCREENSHOT_FAILURE

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ComparisonError(SiteDiffError):
    """Two screenshots cannot be compared (undecodable or mismatched sizes)."""

    kind = ErrorKind.COMPARISON_ERROR


class RunAbortedError(SiteDiffError):
    """A failure that invalidates the whole run."""


__all__ = [
    "ErrorKind",
    "SiteDiffError",
    "SitemapFetchError",
    "SitemapParseError",
    "ScreenshotError",
    "ComparisonError",
    "RunAbortedError",
]
