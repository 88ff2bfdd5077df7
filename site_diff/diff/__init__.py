"""site_diff.diff: pixel comparison and diff artifacts."""

from site_diff.diff.engine import PIXEL_THRESHOLD, DiffEngine, DiffResult, load_image

__all__ = ["DiffEngine", "DiffResult", "PIXEL_THRESHOLD", "load_image"]
