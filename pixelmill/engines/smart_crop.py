"""
Smart-Crop Detector

Finds uniform borders (scanner margins, letterboxing, flat backgrounds) and
returns the region to keep. Each side is advanced independently, line by
line, while the line stays flat and close to the color of the outermost
line. Advancement per side is capped, and the final region must keep a
minimum share of the original area.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from pixelmill.core.config import settings
from pixelmill.core.logging import get_logger
from pixelmill.engines.codec import RasterImage
from pixelmill.engines.converter import flatten_alpha

logger = get_logger(__name__)


@dataclass(frozen=True)
class CropRegion:
    """
    Region to keep, in source pixel coordinates.

    ``top``/``left`` are inclusive, ``bottom``/``right`` exclusive, so the
    kept size is (right - left) x (bottom - top).
    """
    top: int
    left: int
    bottom: int
    right: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    @property
    def area(self) -> int:
        return self.width * self.height

    def is_within(self, width: int, height: int) -> bool:
        return (
            0 <= self.top < self.bottom <= height
            and 0 <= self.left < self.right <= width
        )

    def as_box(self) -> Tuple[int, int, int, int]:
        """Pillow-style (left, top, right, bottom)."""
        return (self.left, self.top, self.right, self.bottom)

    def to_dict(self):
        return {"top": self.top, "left": self.left, "bottom": self.bottom, "right": self.right}


def _luma(raster: RasterImage) -> np.ndarray:
    if raster.has_alpha:
        raster = flatten_alpha(raster)
    if raster.color_space == "L":
        gray = raster.pixels[:, :, 0]
    else:
        gray = cv2.cvtColor(np.ascontiguousarray(raster.pixels), cv2.COLOR_RGB2GRAY)
    return gray.astype(np.float64)


def _line_scores(luma: np.ndarray, axis: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-line uniformity score and mean.

    axis=1 scores rows, axis=0 scores columns. The score is the luma variance
    along the line plus its mean absolute neighbour difference, so it only
    looks inside the line and never at the adjacent one.
    """
    variance = luma.var(axis=axis)
    if luma.shape[axis] > 1:
        edge_energy = np.abs(np.diff(luma, axis=axis)).mean(axis=axis)
    else:
        edge_energy = np.zeros_like(variance)
    return variance + edge_energy, luma.mean(axis=axis)


def _advance(scores: np.ndarray, means: np.ndarray, threshold: float, tolerance: float, limit: int) -> int:
    reference = means[0]
    depth = 0
    while depth < limit and scores[depth] <= threshold and abs(means[depth] - reference) <= tolerance:
        depth += 1
    return depth


def detect_crop(
    raster: RasterImage,
    max_fraction: Optional[float] = None,
    min_area_fraction: Optional[float] = None,
    uniformity_floor: Optional[float] = None,
    uniformity_ratio: Optional[float] = None,
    color_tolerance: Optional[float] = None
) -> CropRegion:
    """
    Detect the content region of an image.

    Deterministic: only pixel values feed the decision.
    """
    max_fraction = settings.CROP_MAX_FRACTION if max_fraction is None else max_fraction
    min_area_fraction = settings.CROP_MIN_AREA_FRACTION if min_area_fraction is None else min_area_fraction
    floor = settings.CROP_UNIFORMITY_FLOOR if uniformity_floor is None else uniformity_floor
    ratio = settings.CROP_UNIFORMITY_RATIO if uniformity_ratio is None else uniformity_ratio
    tolerance = settings.CROP_COLOR_TOLERANCE if color_tolerance is None else color_tolerance

    height, width = raster.height, raster.width
    full = CropRegion(top=0, left=0, bottom=height, right=width)

    luma = _luma(raster)
    global_variance = float(luma.var())
    if global_variance < floor:
        # Flat image: no content to anchor a crop on
        logger.debug("smart_crop_flat_image", global_variance=global_variance)
        return full

    threshold = max(floor, ratio * global_variance)
    row_scores, row_means = _line_scores(luma, axis=1)
    col_scores, col_means = _line_scores(luma, axis=0)
    row_limit = int(height * max_fraction)
    col_limit = int(width * max_fraction)

    top = _advance(row_scores, row_means, threshold, tolerance, row_limit)
    bottom = _advance(row_scores[::-1], row_means[::-1], threshold, tolerance, row_limit)
    left = _advance(col_scores, col_means, threshold, tolerance, col_limit)
    right = _advance(col_scores[::-1], col_means[::-1], threshold, tolerance, col_limit)

    min_area = min_area_fraction * height * width
    fallback = False
    # Give pixels back one per cropped side per round until enough area remains
    while (height - top - bottom) * (width - left - right) < min_area:
        fallback = True
        top, bottom, left, right = (max(0, v - 1) for v in (top, bottom, left, right))

    region = CropRegion(top=top, left=left, bottom=height - bottom, right=width - right)

    logger.debug(
        "smart_crop_detected",
        region=region.to_dict(),
        threshold=round(threshold, 3),
        area_fallback=fallback
    )
    return region


def apply_crop(raster: RasterImage, region: CropRegion) -> RasterImage:
    """Return a new raster holding only ``region``."""
    if not region.is_within(raster.width, raster.height):
        raise ValueError(f"Crop region {region.to_dict()} lies outside {raster.width}x{raster.height}")
    pixels = raster.pixels[region.top:region.bottom, region.left:region.right]
    return RasterImage(pixels, raster.color_space)
