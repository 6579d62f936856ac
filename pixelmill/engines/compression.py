"""
Compression Tuner

Two paths:
- quality: encode once at the requested quality
- max_bytes: binary search the integer quality in [1, 100] for the highest
  quality whose output fits under the ceiling

PNG has no quality knob, so quality maps to palette quantization
(100 = lossless truecolor, lower = fewer colors).
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union

from pixelmill.core.config import settings
from pixelmill.core.exceptions import InvalidInput, ProcessingWarning, SizeConstraintUnmet
from pixelmill.core.logging import get_logger
from pixelmill.core.metrics import compression_encodes
from pixelmill.engines.codec import EncodedImage, ImageFormat, RasterImage, decode, encode
from pixelmill.engines.converter import prepare_for_format

logger = get_logger(__name__)

MIN_QUALITY = 1
MAX_QUALITY = 100


@dataclass(frozen=True)
class CompressionResult:
    encoded: EncodedImage
    raster: RasterImage
    quality: int
    encodes: int
    warnings: List[ProcessingWarning] = field(default_factory=list)

    @property
    def constraint_met(self) -> bool:
        return not any(isinstance(w, SizeConstraintUnmet) for w in self.warnings)


def png_colors_for_quality(quality: int) -> Optional[int]:
    """Palette size used to emulate a quality level for PNG (None = truecolor)."""
    if quality >= MAX_QUALITY:
        return None
    return min(256, max(2, round(2.56 * quality)))


def _encode_at(raster: RasterImage, fmt: ImageFormat, quality: int, checksum: Optional[str]) -> EncodedImage:
    if fmt is ImageFormat.PNG:
        return encode(raster, fmt, png_colors=png_colors_for_quality(quality), source_checksum=checksum)
    return encode(raster, fmt, quality=quality, source_checksum=checksum)


def compress(
    source: Union[EncodedImage, RasterImage],
    target_format: Optional[ImageFormat] = None,
    quality: Optional[int] = None,
    max_bytes: Optional[int] = None,
    max_steps: Optional[int] = None
) -> CompressionResult:
    """
    Encode ``source`` under a quality level or a byte ceiling.

    Exactly one of ``quality`` / ``max_bytes`` must be given. An unmet
    ceiling is not an error: the minimum-quality result comes back with a
    SizeConstraintUnmet warning attached.
    """
    if (quality is None) == (max_bytes is None):
        raise InvalidInput("Exactly one of quality or max_bytes is required")
    if quality is not None and not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise InvalidInput(f"quality must be in [{MIN_QUALITY}, {MAX_QUALITY}], got {quality}")
    if max_bytes is not None and max_bytes <= 0:
        raise InvalidInput(f"max_bytes must be positive, got {max_bytes}")
    max_steps = max_steps or settings.COMPRESSION_MAX_STEPS

    if isinstance(source, EncodedImage):
        checksum = source.checksum
        fmt = target_format or (ImageFormat.PNG if source.format.is_vector else source.format)
        raster = decode(source)
    else:
        checksum = None
        fmt = target_format or ImageFormat.PNG
        raster = source

    raster, _ = prepare_for_format(raster, fmt)

    if quality is not None:
        encoded = _encode_at(raster, fmt, quality, checksum)
        compression_encodes.labels(format=fmt.value).observe(1)
        return CompressionResult(encoded=encoded, raster=raster, quality=quality, encodes=1)

    best_quality = MIN_QUALITY
    best = _encode_at(raster, fmt, MIN_QUALITY, checksum)
    encodes = 1

    if best.size > max_bytes:
        warning = SizeConstraintUnmet(max_bytes=max_bytes, achieved_bytes=best.size, quality=MIN_QUALITY)
        logger.warning(
            "compression_size_constraint_unmet",
            format=fmt.value,
            max_bytes=max_bytes,
            achieved_bytes=best.size,
            source_checksum=checksum
        )
        compression_encodes.labels(format=fmt.value).observe(encodes)
        return CompressionResult(
            encoded=best, raster=raster, quality=MIN_QUALITY, encodes=encodes, warnings=[warning]
        )

    low, high = MIN_QUALITY + 1, MAX_QUALITY
    while low <= high and encodes < max_steps:
        mid = (low + high) // 2
        candidate = _encode_at(raster, fmt, mid, checksum)
        encodes += 1
        if candidate.size <= max_bytes:
            best, best_quality = candidate, mid
            low = mid + 1
        else:
            high = mid - 1

    compression_encodes.labels(format=fmt.value).observe(encodes)
    logger.debug(
        "compression_search_completed",
        format=fmt.value,
        quality=best_quality,
        size=best.size,
        max_bytes=max_bytes,
        encodes=encodes
    )
    return CompressionResult(encoded=best, raster=raster, quality=best_quality, encodes=encodes)
