"""
Palette Extractor

Weighted k-means over the image's distinct colors. Centroids are seeded
from the pixel data itself (most frequent color first, then the color with
the largest count-weighted distance to the chosen seeds), so identical
input always yields an identical palette.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from pixelmill.core.config import settings
from pixelmill.core.exceptions import InvalidInput
from pixelmill.core.logging import get_logger
from pixelmill.engines.codec import RasterImage

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaletteEntry:
    """A dominant color and the fraction of the image's pixels it covers."""
    color: Tuple[int, int, int]
    weight: float

    @property
    def hex(self) -> str:
        return "#{:02x}{:02x}{:02x}".format(*self.color)

    def to_dict(self):
        return {"color": list(self.color), "hex": self.hex, "weight": self.weight}


def _opaque_rgb(raster: RasterImage) -> np.ndarray:
    """Flatten to (N, 3) RGB, dropping fully transparent pixels."""
    px = raster.pixels
    if raster.has_alpha:
        mask = px[:, :, -1] > 0
        color = px[:, :, :-1][mask]
    else:
        color = px.reshape(-1, raster.channels)
    if color.shape[1] == 1:
        color = np.repeat(color, 3, axis=1)
    return color


def _nearest(colors: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    dist = ((colors[:, np.newaxis, :] - centroids[np.newaxis, :, :]) ** 2).sum(axis=2)
    return dist.argmin(axis=1)


def _seed_centroids(colors: np.ndarray, counts: np.ndarray, k: int) -> np.ndarray:
    seeds = [int(np.argmax(counts))]
    min_dist = ((colors - colors[seeds[0]]) ** 2).sum(axis=1)
    while len(seeds) < k:
        nxt = int(np.argmax(min_dist * counts))
        if min_dist[nxt] == 0:
            break
        seeds.append(nxt)
        min_dist = np.minimum(min_dist, ((colors - colors[nxt]) ** 2).sum(axis=1))
    return colors[seeds].copy()


def extract_palette(
    raster: RasterImage,
    k: int,
    max_iterations: Optional[int] = None,
    convergence: Optional[float] = None,
    sample_pixels: Optional[int] = None
) -> List[PaletteEntry]:
    """
    Extract up to ``k`` dominant colors, heaviest first.

    Weights are fractions of all pixels. Fully transparent pixels belong to
    no entry, so weights can sum to less than 1.
    """
    if k < 1:
        raise InvalidInput(f"Palette size k must be at least 1, got {k}")
    max_iterations = max_iterations or settings.PALETTE_MAX_ITERATIONS
    convergence = settings.PALETTE_CONVERGENCE if convergence is None else convergence
    sample_pixels = sample_pixels or settings.PALETTE_SAMPLE_PIXELS

    total = raster.width * raster.height
    opaque = _opaque_rgb(raster)
    if len(opaque) == 0:
        return []

    # Deterministic stride sampling keeps large images tractable
    stride = max(1, math.ceil(len(opaque) / sample_pixels))
    sample = opaque[::stride]
    coverage = len(opaque) / total

    unique, counts = np.unique(sample, axis=0, return_counts=True)
    colors = unique.astype(np.float64)
    counts = counts.astype(np.float64)

    if len(unique) <= k:
        centroids = colors
        labels = np.arange(len(unique))
        iterations = 0
    else:
        centroids = _seed_centroids(colors, counts, k)
        labels = _nearest(colors, centroids)
        iterations = 0
        for iterations in range(1, max_iterations + 1):
            updated = centroids.copy()
            for idx in range(len(centroids)):
                members = labels == idx
                weight = counts[members].sum()
                if weight > 0:
                    updated[idx] = (colors[members] * counts[members, np.newaxis]).sum(axis=0) / weight
            movement = float(np.sqrt(((updated - centroids) ** 2).sum(axis=1)).max())
            centroids = updated
            labels = _nearest(colors, centroids)
            if movement < convergence:
                break

    population = np.bincount(labels, weights=counts, minlength=len(centroids))
    sample_total = counts.sum()

    entries = []
    for idx, pop in enumerate(population):
        if pop <= 0:
            continue
        color = tuple(int(c) for c in np.clip(np.rint(centroids[idx]), 0, 255))
        entries.append(PaletteEntry(color=color, weight=float(pop / sample_total * coverage)))

    entries.sort(key=lambda e: (-e.weight, e.color))

    logger.debug(
        "palette_extracted",
        k=k,
        colors=len(entries),
        distinct_colors=len(unique),
        iterations=iterations,
        coverage=round(coverage, 4)
    )
    return entries
