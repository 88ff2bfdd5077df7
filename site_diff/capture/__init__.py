"""site_diff.capture: screenshot capture service client."""

from site_diff.capture.screenshot import CaptureOptions, ScreenshotClient

__all__ = ["CaptureOptions", "ScreenshotClient"]
