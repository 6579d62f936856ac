"""
Format Converter

Decodes (if needed) and re-encodes into a target format, resolving alpha
and color space first:

| source alpha | target alpha | action                              |
|--------------|--------------|-------------------------------------|
| yes          | yes          | preserve                            |
| yes          | no           | flatten onto background (white)     |
| no           | any          | nothing to do                       |

SVG sources are rasterized; raster -> SVG is rejected.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np

from pixelmill.core.exceptions import InvalidInput, UnsupportedConversion
from pixelmill.core.logging import get_logger
from pixelmill.engines.codec import EncodedImage, ImageFormat, RasterImage, decode, encode

logger = get_logger(__name__)

DEFAULT_BACKGROUND = (255, 255, 255)


class AlphaAction:
    PRESERVED = "preserved"
    FLATTENED = "flattened"
    NONE = "none"


@dataclass(frozen=True)
class ConversionResult:
    encoded: EncodedImage
    raster: RasterImage
    source_dimensions: Tuple[int, int]
    alpha_action: str


def parse_hex_color(value: str) -> Tuple[int, int, int]:
    """'#fff', 'ffffff' or '#FFFFFF' -> (255, 255, 255)."""
    text = value.strip().lstrip("#")
    if len(text) == 3:
        text = "".join(c * 2 for c in text)
    if len(text) != 6:
        raise InvalidInput(f"Invalid hex color: {value!r}")
    try:
        return tuple(int(text[i:i + 2], 16) for i in (0, 2, 4))
    except ValueError:
        raise InvalidInput(f"Invalid hex color: {value!r}")


def flatten_alpha(raster: RasterImage, background: Tuple[int, int, int] = DEFAULT_BACKGROUND) -> RasterImage:
    """Composite an LA/RGBA raster onto an opaque background."""
    if not raster.has_alpha:
        return raster

    px = raster.pixels.astype(np.float32)
    alpha = px[:, :, -1:] / 255.0
    color = px[:, :, :-1]
    if raster.color_space == "LA":
        r, g, b = background
        bg = np.array([0.299 * r + 0.587 * g + 0.114 * b], dtype=np.float32)
        space = "L"
    else:
        bg = np.array(background, dtype=np.float32)
        space = "RGB"

    out = color * alpha + bg * (1.0 - alpha)
    return RasterImage(np.clip(np.rint(out), 0, 255).astype(np.uint8), space)


def to_color_space(raster: RasterImage, target_space: str) -> RasterImage:
    """Widen grayscale to RGB(A); only the widening directions are needed here."""
    if raster.color_space == target_space:
        return raster
    px = raster.pixels
    if raster.color_space == "L" and target_space == "RGB":
        return RasterImage(np.repeat(px, 3, axis=2), "RGB")
    if raster.color_space == "LA" and target_space == "RGBA":
        gray = np.repeat(px[:, :, :1], 3, axis=2)
        return RasterImage(np.concatenate([gray, px[:, :, 1:]], axis=2), "RGBA")
    raise ValueError(f"Cannot convert {raster.color_space} to {target_space}")


def prepare_for_format(
    raster: RasterImage,
    fmt: ImageFormat,
    background: Tuple[int, int, int] = DEFAULT_BACKGROUND
) -> Tuple[RasterImage, str]:
    """
    Apply the alpha policy and the target's color-space requirements.

    Returns:
        Tuple of (raster ready for encode, alpha action taken)
    """
    if raster.has_alpha and not fmt.supports_alpha:
        prepared, action = flatten_alpha(raster, background), AlphaAction.FLATTENED
    elif raster.has_alpha:
        prepared, action = raster, AlphaAction.PRESERVED
    else:
        prepared, action = raster, AlphaAction.NONE

    # WebP and AVIF encoders only take RGB/RGBA
    if fmt in (ImageFormat.WEBP, ImageFormat.AVIF):
        if prepared.color_space == "L":
            prepared = to_color_space(prepared, "RGB")
        elif prepared.color_space == "LA":
            prepared = to_color_space(prepared, "RGBA")

    return prepared, action


def convert(
    source: Union[EncodedImage, RasterImage],
    target_format: ImageFormat,
    quality: Optional[int] = None,
    lossless: bool = False,
    background: Tuple[int, int, int] = DEFAULT_BACKGROUND,
    raster_width: Optional[int] = None,
    raster_height: Optional[int] = None
) -> ConversionResult:
    """
    Convert an image to ``target_format``.

    Raises:
        UnsupportedConversion: target is SVG
        EncodingFailure: source cannot be decoded or target cannot be written
    """
    source_label = source.format.value if isinstance(source, EncodedImage) else "RASTER"
    if target_format.is_vector:
        raise UnsupportedConversion(source_label, target_format.value)

    if isinstance(source, EncodedImage):
        raster = decode(source, svg_width=raster_width, svg_height=raster_height)
        checksum = source.checksum
    else:
        raster = source
        checksum = None

    prepared, action = prepare_for_format(raster, target_format, background)
    encoded = encode(
        prepared,
        target_format,
        quality=quality,
        lossless=lossless,
        source_checksum=checksum
    )

    logger.info(
        "conversion_completed",
        source_format=source_label,
        target_format=target_format.value,
        alpha_action=action,
        output_size=encoded.size
    )

    return ConversionResult(
        encoded=encoded,
        raster=prepared,
        source_dimensions=raster.dimensions,
        alpha_action=action
    )
