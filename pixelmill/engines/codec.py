"""
Codec Adapter

Pure functions between encoded bytes and in-memory rasters. Every other
engine works on RasterImage; only this module touches Pillow's file codecs.
"""

import io
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np
from PIL import Image, ImageOps, features

from pixelmill.core.config import settings
from pixelmill.core.exceptions import EncodingFailure, InvalidInput, UnsupportedConversion
from pixelmill.core.logging import get_logger
from pixelmill.core.storage import compute_checksum

logger = get_logger(__name__)

Image.MAX_IMAGE_PIXELS = settings.MAX_IMAGE_PIXELS

_DECODE_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)


class ImageFormat(str, Enum):
    """Encoded formats the engine understands."""
    JPEG = "JPEG"
    PNG = "PNG"
    WEBP = "WEBP"
    AVIF = "AVIF"
    SVG = "SVG"

    @property
    def supports_alpha(self) -> bool:
        return self is not ImageFormat.JPEG

    @property
    def is_vector(self) -> bool:
        return self is ImageFormat.SVG

    @property
    def has_quality(self) -> bool:
        return self in (ImageFormat.JPEG, ImageFormat.WEBP, ImageFormat.AVIF)

    @property
    def mime_type(self) -> str:
        return _MIME_TYPES[self]

    @classmethod
    def parse(cls, value) -> "ImageFormat":
        """Accept enum members, names and common aliases (jpg, image/png, ...)."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise InvalidInput(f"Image format must be a string, got {type(value).__name__}")
        key = value.strip().upper()
        if key.startswith("IMAGE/"):
            key = key[len("IMAGE/"):]
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise InvalidInput(f"Unknown image format: {value!r}")


_ALIASES = {"JPG": "JPEG", "SVG+XML": "SVG"}

_MIME_TYPES = {
    ImageFormat.JPEG: "image/jpeg",
    ImageFormat.PNG: "image/png",
    ImageFormat.WEBP: "image/webp",
    ImageFormat.AVIF: "image/avif",
    ImageFormat.SVG: "image/svg+xml",
}

_CHANNELS = {"L": 1, "LA": 2, "RGB": 3, "RGBA": 4}


@dataclass(frozen=True)
class RasterImage:
    """
    Decoded pixel buffer.

    ``pixels`` is a read-only (height, width, channels) uint8 array; stages
    produce new rasters instead of mutating this one.
    """
    pixels: np.ndarray
    color_space: str

    def __post_init__(self):
        if self.color_space not in _CHANNELS:
            raise ValueError(f"Unsupported color space: {self.color_space}")
        arr = np.asarray(self.pixels, dtype=np.uint8)
        if arr.ndim == 2:
            arr = arr[:, :, np.newaxis]
        if arr.ndim != 3 or arr.shape[2] != _CHANNELS[self.color_space]:
            raise ValueError(
                f"Pixel array shape {arr.shape} does not match color space {self.color_space}"
            )
        if arr.shape[0] == 0 or arr.shape[1] == 0:
            raise ValueError("Raster must have positive dimensions")
        if arr.flags.writeable:
            arr = arr.copy()
            arr.flags.writeable = False
        object.__setattr__(self, "pixels", arr)

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def channels(self) -> int:
        return self.pixels.shape[2]

    @property
    def has_alpha(self) -> bool:
        return self.color_space in ("LA", "RGBA")

    @property
    def dimensions(self):
        return (self.width, self.height)

    def to_pil(self) -> Image.Image:
        if self.color_space == "L":
            return Image.fromarray(np.ascontiguousarray(self.pixels[:, :, 0]))
        return Image.fromarray(np.ascontiguousarray(self.pixels))

    @classmethod
    def from_pil(cls, img: Image.Image) -> "RasterImage":
        """Normalize any Pillow mode to L, LA, RGB or RGBA."""
        mode = img.mode
        if mode in _CHANNELS:
            return cls(np.asarray(img), mode)
        if mode.startswith("I;16"):
            arr = np.asarray(img, dtype=np.float64) / 257.0
            return cls(np.clip(np.rint(arr), 0, 255).astype(np.uint8), "L")
        if mode in ("I", "F"):
            arr = np.asarray(img, dtype=np.float64)
            return cls(np.clip(np.rint(arr), 0, 255).astype(np.uint8), "L")
        if mode == "1":
            return cls(np.asarray(img.convert("L")), "L")
        if mode == "P":
            target = "RGBA" if "transparency" in img.info else "RGB"
            return cls(np.asarray(img.convert(target)), target)
        if mode in ("PA", "RGBa", "La"):
            return cls(np.asarray(img.convert("RGBA")), "RGBA")
        # CMYK, YCbCr, LAB, HSV, RGBX ...
        return cls(np.asarray(img.convert("RGB")), "RGB")


@dataclass(frozen=True)
class EncodedImage:
    """Immutable encoded bytes plus their format and content hash."""
    data: bytes
    format: ImageFormat
    checksum: str = field(default="")

    def __post_init__(self):
        if not self.checksum:
            object.__setattr__(self, "checksum", compute_checksum(self.data))

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncodedImage":
        return cls(data=bytes(data), format=detect_format(data))


def detect_format(data: bytes) -> ImageFormat:
    """Identify the encoded format from magic bytes."""
    if data[:3] == b"\xff\xd8\xff":
        return ImageFormat.JPEG
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return ImageFormat.PNG
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ImageFormat.WEBP
    if data[4:8] == b"ftyp" and data[8:12] in (b"avif", b"avis"):
        return ImageFormat.AVIF

    head = data[:4096].lstrip(b"\xef\xbb\xbf \t\r\n").lower()
    if head.startswith((b"<?xml", b"<svg", b"<!doctype svg", b"<!--")) and b"<svg" in head:
        return ImageFormat.SVG

    raise EncodingFailure(
        "Unrecognized image data",
        source_checksum=compute_checksum(data)
    )


def rasterize_svg(
    data: bytes,
    width: Optional[int] = None,
    height: Optional[int] = None,
    source_checksum: Optional[str] = None
) -> RasterImage:
    """Render SVG markup to RGBA at the requested size (intrinsic size if None)."""
    # Lazy import: cairosvg needs the system cairo library
    import cairosvg

    try:
        png_bytes = cairosvg.svg2png(
            bytestring=data,
            output_width=width,
            output_height=height
        )
    except Exception as e:
        logger.error("svg_rasterize_failed", source_checksum=source_checksum, error=str(e))
        raise EncodingFailure(f"SVG rasterization failed: {e}", source_checksum=source_checksum)

    with Image.open(io.BytesIO(png_bytes)) as img:
        img.load()
        return RasterImage.from_pil(img.convert("RGBA"))


def decode(
    encoded: EncodedImage,
    svg_width: Optional[int] = None,
    svg_height: Optional[int] = None
) -> RasterImage:
    """Decode bytes into a raster, applying EXIF orientation."""
    if encoded.format is ImageFormat.SVG:
        return rasterize_svg(encoded.data, svg_width, svg_height, encoded.checksum)

    try:
        with Image.open(io.BytesIO(encoded.data)) as img:
            img.load()
            img = ImageOps.exif_transpose(img)
            return RasterImage.from_pil(img)
    except _DECODE_ERRORS as e:
        logger.error(
            "decode_failed",
            source_checksum=encoded.checksum,
            format=encoded.format.value,
            error=str(e)
        )
        raise EncodingFailure(
            f"Could not decode {encoded.format.value} image: {e}",
            source_checksum=encoded.checksum
        )


def encode(
    raster: RasterImage,
    fmt: ImageFormat,
    quality: Optional[int] = None,
    lossless: bool = False,
    png_colors: Optional[int] = None,
    source_checksum: Optional[str] = None
) -> EncodedImage:
    """
    Encode a raster.

    Args:
        raster: Pixels to encode; alpha must already be resolved for JPEG
        fmt: Target format (never SVG)
        quality: 1-100 for JPEG/WebP/AVIF, ignored for PNG
        lossless: WebP lossless mode (WebP only)
        png_colors: Quantize PNG output to this many palette colors
        source_checksum: Included in failure logs
    """
    if fmt.is_vector:
        raise UnsupportedConversion("RASTER", fmt.value)
    if lossless and fmt is not ImageFormat.WEBP:
        raise InvalidInput(f"Lossless encoding is not available for {fmt.value}")
    if raster.has_alpha and not fmt.supports_alpha:
        raise EncodingFailure(
            f"{fmt.value} cannot store an alpha channel",
            source_checksum=source_checksum
        )
    if fmt is ImageFormat.AVIF and not features.check("avif"):
        raise EncodingFailure("AVIF support is not available in this build", source_checksum=source_checksum)

    img = raster.to_pil()
    options = {}
    if fmt is ImageFormat.JPEG:
        options = {"quality": quality or settings.DEFAULT_LOSSY_QUALITY, "optimize": True}
    elif fmt is ImageFormat.PNG:
        options = {"optimize": True}
        if png_colors:
            if raster.has_alpha:
                img = img.convert("RGBA").quantize(colors=png_colors, method=Image.Quantize.FASTOCTREE)
            else:
                img = img.convert("RGB").quantize(colors=png_colors, method=Image.Quantize.MEDIANCUT)
    elif fmt is ImageFormat.WEBP:
        options = {"quality": quality or settings.DEFAULT_LOSSY_QUALITY, "lossless": lossless, "method": 4}
        if lossless:
            options["exact"] = True
    elif fmt is ImageFormat.AVIF:
        options = {"quality": quality or settings.DEFAULT_LOSSY_QUALITY}

    buffer = io.BytesIO()
    try:
        img.save(buffer, format=fmt.value, **options)
    except (OSError, ValueError, KeyError) as e:
        logger.error(
            "encode_failed",
            source_checksum=source_checksum,
            format=fmt.value,
            error=str(e)
        )
        raise EncodingFailure(f"Could not encode {fmt.value}: {e}", source_checksum=source_checksum)

    return EncodedImage(data=buffer.getvalue(), format=fmt)
