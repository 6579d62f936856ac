import numpy as np
import pytest
from PIL import Image

from pixelmill.core.exceptions import InvalidInput, UnsupportedConversion
from pixelmill.engines.codec import EncodedImage, ImageFormat, RasterImage, decode
from pixelmill.engines.converter import (
    AlphaAction,
    convert,
    flatten_alpha,
    parse_hex_color,
    prepare_for_format,
)

try:
    import cairosvg  # noqa: F401
    HAS_CAIRO = True
except (ImportError, OSError):
    HAS_CAIRO = False


def test_lossless_png_webp_round_trip_is_pixel_exact(noise_raster, encode_pil):
    raster = noise_raster(24, 16)
    png = EncodedImage.from_bytes(encode_pil(raster.to_pil(), "PNG"))

    webp = convert(png, ImageFormat.WEBP, lossless=True)
    assert webp.encoded.format is ImageFormat.WEBP

    back = convert(webp.encoded, ImageFormat.PNG)
    assert np.array_equal(decode(back.encoded).pixels[:, :, :3], raster.pixels)


def test_lossless_avif_refused(png_bytes):
    with pytest.raises(InvalidInput):
        convert(EncodedImage.from_bytes(png_bytes), ImageFormat.AVIF, lossless=True)


def test_alpha_flattened_onto_white_for_jpeg(encode_pil):
    img = Image.new("RGBA", (16, 16), (255, 0, 0, 0))
    source = EncodedImage.from_bytes(encode_pil(img, "PNG"))

    result = convert(source, ImageFormat.JPEG, quality=95)

    assert result.alpha_action == AlphaAction.FLATTENED
    pixels = decode(result.encoded).pixels
    assert pixels.shape[2] == 3
    assert np.all(np.abs(pixels.astype(int) - 255) <= 3)


def test_alpha_preserved_for_webp(encode_pil):
    img = Image.new("RGBA", (8, 8), (0, 0, 255, 100))
    result = convert(EncodedImage.from_bytes(encode_pil(img, "PNG")), ImageFormat.WEBP, lossless=True)
    assert result.alpha_action == AlphaAction.PRESERVED
    assert decode(result.encoded).has_alpha


def test_flatten_uses_background():
    px = np.zeros((2, 2, 4), dtype=np.uint8)  # transparent black
    flat = flatten_alpha(RasterImage(px, "RGBA"), background=(0, 128, 255))
    assert flat.color_space == "RGB"
    assert tuple(flat.pixels[0, 0]) == (0, 128, 255)


def test_flatten_grayscale_alpha_stays_grayscale():
    px = np.zeros((2, 2, 2), dtype=np.uint8)
    px[:, :, 1] = 255
    flat = flatten_alpha(RasterImage(px, "LA"))
    assert flat.color_space == "L"
    assert flat.pixels[0, 0, 0] == 0


def test_prepare_widens_grayscale_for_webp():
    raster = RasterImage(np.full((3, 3), 40, dtype=np.uint8), "L")
    prepared, action = prepare_for_format(raster, ImageFormat.WEBP)
    assert prepared.color_space == "RGB"
    assert action == AlphaAction.NONE


def test_raster_to_svg_unsupported(png_bytes):
    with pytest.raises(UnsupportedConversion) as exc_info:
        convert(EncodedImage.from_bytes(png_bytes), ImageFormat.SVG)
    assert exc_info.value.details["target_format"] == "SVG"


def test_parse_hex_color():
    assert parse_hex_color("#fff") == (255, 255, 255)
    assert parse_hex_color("00FF80") == (0, 255, 128)
    with pytest.raises(InvalidInput):
        parse_hex_color("#12345")


@pytest.mark.skipif(not HAS_CAIRO, reason="cairo not available")
def test_svg_rasterized_at_requested_size():
    svg = b'<svg xmlns="http://www.w3.org/2000/svg" width="8" height="8"><rect width="8" height="8" fill="#00ff00"/></svg>'
    result = convert(EncodedImage.from_bytes(svg), ImageFormat.PNG, raster_width=32, raster_height=32)

    assert result.encoded.format is ImageFormat.PNG
    raster = decode(result.encoded)
    assert raster.dimensions == (32, 32)
    assert tuple(raster.pixels[16, 16, :3]) == (0, 255, 0)
