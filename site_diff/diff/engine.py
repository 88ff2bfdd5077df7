# site_diff/diff/engine.py
"""
Pixel comparison of two screenshots and rendering of the old | new | diff triptych.

Colour distance follows the YIQ metric used by pixelmatch: RGBA pixels are
blended onto white, converted to YIQ, and a pixel counts as different when its
weighted squared distance exceeds ``35215 * threshold**2``.
"""
from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from site_diff.errors import ComparisonError

__all__ = ("DiffEngine", "DiffResult", "PIXEL_THRESHOLD", "load_image")

PIXEL_THRESHOLD = 0.1
_MAX_YIQ_DELTA = 35215.0
_DIFF_COLOUR = (255, 0, 0, 255)
_FADE_ALPHA = 0.1

ImageInput = Union[bytes, bytearray, Image.Image]


def load_image(data: ImageInput) -> Image.Image:
    """Decode PNG (or any Pillow-readable) bytes into an RGBA image."""
    if isinstance(data, Image.Image):
        return data.convert("RGBA")
    try:
        with Image.open(BytesIO(bytes(data))) as img:
            return img.convert("RGBA")
    except Image.DecompressionBombError as exc:
        raise ComparisonError(f"Image too large for comparison: {exc}") from exc
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ComparisonError(f"Cannot decode image for comparison: {exc}") from exc


def _blend_on_white(arr: np.ndarray) -> np.ndarray:
    rgb = arr[..., :3].astype(np.float32)
    alpha = arr[..., 3:4].astype(np.float32) / 255.0
    return 255.0 + (rgb - 255.0) * alpha


def _yiq(rgb: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    y = r * 0.29889531 + g * 0.58662247 + b * 0.11448223
    i = r * 0.59597799 - g * 0.27417610 - b * 0.32180189
    q = r * 0.21147017 - g * 0.52261711 + b * 0.31114694
    return y, i, q


@dataclass(frozen=True)
class DiffResult:
    """Both images at their common size plus the mask of differing pixels."""

    before: Image.Image
    after: Image.Image
    mask: np.ndarray

    @property
    def diff_pixels(self) -> int:
        return int(self.mask.sum())


class DiffEngine:
    """Counts differing pixels and renders diff artifacts."""

    def __init__(self, threshold: float = PIXEL_THRESHOLD) -> None:
        if not 0 <= threshold <= 1:
            raise ValueError("threshold must be within [0, 1]")
        self.threshold = threshold
        self.max_delta = _MAX_YIQ_DELTA * threshold * threshold

    def normalize(
        self, image_a: ImageInput, image_b: ImageInput, allow_resize: bool = True
    ) -> Tuple[Image.Image, Image.Image]:
        """Return both images at a common size.

        Mismatched sizes are resized up to the larger width and height when
        *allow_resize* is set; otherwise :class:`ComparisonError` is raised.
        """
        a, b = load_image(image_a), load_image(image_b)
        if a.size == b.size:
            return a, b
        if not allow_resize:
            raise ComparisonError(
                f"Cannot compare images of different sizes {a.size} and {b.size} with resizing disabled"
            )
        size = (max(a.width, b.width), max(a.height, b.height))
        if a.size != size:
            a = a.resize(size, Image.Resampling.LANCZOS)
        if b.size != size:
            b = b.resize(size, Image.Resampling.LANCZOS)
        return a, b

    def diff_mask(self, image_a: Image.Image, image_b: Image.Image) -> np.ndarray:
        """Boolean ``(h, w)`` mask of pixels whose colour distance exceeds the threshold."""
        if image_a.size != image_b.size:
            raise ComparisonError(f"Image sizes differ: {image_a.size} vs {image_b.size}")
        arr_a = np.asarray(image_a, dtype=np.uint8)
        arr_b = np.asarray(image_b, dtype=np.uint8)
        exact = np.all(arr_a == arr_b, axis=2)
        y1, i1, q1 = _yiq(_blend_on_white(arr_a))
        y2, i2, q2 = _yiq(_blend_on_white(arr_b))
        dy, di, dq = y1 - y2, i1 - i2, q1 - q2
        delta = 0.5053 * dy * dy + 0.299 * di * di + 0.1957 * dq * dq
        return (delta > self.max_delta) & ~exact

    def measure(self, image_a: ImageInput, image_b: ImageInput, allow_resize: bool = True) -> DiffResult:
        """Decode, normalize and diff once; the result is reused for rendering."""
        a, b = self.normalize(image_a, image_b, allow_resize)
        return DiffResult(a, b, self.diff_mask(a, b))

    def compare(self, image_a: ImageInput, image_b: ImageInput, allow_resize: bool = True) -> int:
        """Number of differing pixels between two screenshots."""
        return self.measure(image_a, image_b, allow_resize).diff_pixels

    def compose(self, result: DiffResult) -> Image.Image:
        """Horizontal triptych built from an already computed :class:`DiffResult`."""
        a, b, mask = result.before, result.after, result.mask

        grey = _yiq(_blend_on_white(np.asarray(a, dtype=np.uint8)))[0]
        faded = np.clip(255.0 + (grey - 255.0) * _FADE_ALPHA, 0, 255).astype(np.uint8)
        diff = np.empty((a.height, a.width, 4), dtype=np.uint8)
        diff[..., 0] = faded
        diff[..., 1] = faded
        diff[..., 2] = faded
        diff[..., 3] = 255
        diff[mask] = _DIFF_COLOUR

        composite = Image.new("RGBA", (a.width * 3, a.height), (255, 255, 255, 255))
        composite.paste(a, (0, 0))
        composite.paste(b, (a.width, 0))
        composite.paste(Image.fromarray(diff), (a.width * 2, 0))
        return composite

    def render_diff(self, image_a: ImageInput, image_b: ImageInput) -> Image.Image:
        """Horizontal triptych: original, new and difference visualisation."""
        return self.compose(self.measure(image_a, image_b, allow_resize=True))

    def save_diff(self, image_a: ImageInput, image_b: ImageInput, path: Union[str, Path]) -> Path:
        """Render the triptych and write it as PNG to *path*."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        self.render_diff(image_a, image_b).save(target, format="PNG")
        return target
