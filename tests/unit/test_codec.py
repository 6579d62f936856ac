import unittest

import numpy as np
import pytest
from PIL import Image

from pixelmill.core.exceptions import EncodingFailure, InvalidInput, UnsupportedConversion
from pixelmill.engines.codec import (
    EncodedImage,
    ImageFormat,
    RasterImage,
    decode,
    detect_format,
    encode,
)

SVG_DOC = b'<svg xmlns="http://www.w3.org/2000/svg" width="8" height="8"><rect width="8" height="8" fill="red"/></svg>'


class TestImageFormat(unittest.TestCase):

    def test_aliases_canonicalize(self):
        self.assertIs(ImageFormat.parse("jpg"), ImageFormat.JPEG)
        self.assertIs(ImageFormat.parse("JPEG"), ImageFormat.JPEG)
        self.assertIs(ImageFormat.parse(" webp "), ImageFormat.WEBP)
        self.assertIs(ImageFormat.parse("image/png"), ImageFormat.PNG)
        self.assertIs(ImageFormat.parse("image/svg+xml"), ImageFormat.SVG)

    def test_unknown_format_rejected(self):
        with self.assertRaises(InvalidInput):
            ImageFormat.parse("bmp")
        with self.assertRaises(InvalidInput):
            ImageFormat.parse(42)

    def test_capabilities(self):
        self.assertFalse(ImageFormat.JPEG.supports_alpha)
        self.assertTrue(ImageFormat.PNG.supports_alpha)
        self.assertFalse(ImageFormat.PNG.has_quality)
        self.assertTrue(ImageFormat.SVG.is_vector)
        self.assertEqual(ImageFormat.WEBP.mime_type, "image/webp")


class TestRasterImage(unittest.TestCase):

    def test_pixels_are_read_only(self):
        raster = RasterImage(np.zeros((2, 3, 3), dtype=np.uint8), "RGB")
        self.assertEqual(raster.dimensions, (3, 2))
        with self.assertRaises(ValueError):
            raster.pixels[0, 0, 0] = 1

    def test_grayscale_2d_array_accepted(self):
        raster = RasterImage(np.zeros((4, 5), dtype=np.uint8), "L")
        self.assertEqual(raster.channels, 1)

    def test_shape_mismatch_rejected(self):
        with self.assertRaises(ValueError):
            RasterImage(np.zeros((2, 2, 3), dtype=np.uint8), "RGBA")


def test_detect_format_by_magic_bytes(encode_pil):
    img = Image.new("RGB", (4, 4), (10, 20, 30))
    assert detect_format(encode_pil(img, "PNG")) is ImageFormat.PNG
    assert detect_format(encode_pil(img, "JPEG")) is ImageFormat.JPEG
    assert detect_format(encode_pil(img, "WEBP")) is ImageFormat.WEBP
    assert detect_format(SVG_DOC) is ImageFormat.SVG
    assert detect_format(b'<?xml version="1.0"?>\n' + SVG_DOC) is ImageFormat.SVG


def test_detect_format_rejects_unknown_bytes():
    with pytest.raises(EncodingFailure) as exc_info:
        detect_format(b"definitely not an image")
    assert exc_info.value.details["source_checksum"]


def test_decode_corrupt_data_is_encoding_failure():
    truncated = b"\x89PNG\r\n\x1a\n" + b"\x00" * 20
    with pytest.raises(EncodingFailure):
        decode(EncodedImage.from_bytes(truncated))


def test_palette_png_normalized_to_rgb(encode_pil):
    img = Image.new("RGB", (8, 8), (200, 10, 10)).convert("P")
    raster = decode(EncodedImage.from_bytes(encode_pil(img, "PNG")))
    assert raster.color_space == "RGB"
    assert tuple(raster.pixels[0, 0]) == (200, 10, 10)


def test_rgba_png_keeps_alpha(encode_pil):
    img = Image.new("RGBA", (8, 8), (0, 0, 255, 128))
    raster = decode(EncodedImage.from_bytes(encode_pil(img, "PNG")))
    assert raster.color_space == "RGBA"
    assert raster.pixels[0, 0, 3] == 128


def test_exif_orientation_applied(encode_pil):
    img = Image.new("RGB", (4, 2), (0, 128, 0))
    exif = Image.Exif()
    exif[0x0112] = 6  # rotate 90 CW on display
    raster = decode(EncodedImage.from_bytes(encode_pil(img, "JPEG", exif=exif)))
    assert raster.dimensions == (2, 4)


def test_encode_jpeg_rejects_alpha():
    raster = RasterImage(np.zeros((2, 2, 4), dtype=np.uint8), "RGBA")
    with pytest.raises(EncodingFailure):
        encode(raster, ImageFormat.JPEG)


def test_encode_svg_unsupported():
    raster = RasterImage(np.zeros((2, 2, 3), dtype=np.uint8), "RGB")
    with pytest.raises(UnsupportedConversion):
        encode(raster, ImageFormat.SVG)


@pytest.mark.parametrize("fmt", [ImageFormat.AVIF, ImageFormat.JPEG, ImageFormat.PNG])
def test_lossless_only_offered_for_webp(noise_raster, fmt):
    with pytest.raises(InvalidInput):
        encode(noise_raster(8, 8), fmt, lossless=True)


def test_encode_png_is_lossless(noise_raster):
    raster = noise_raster(16, 16)
    encoded = encode(raster, ImageFormat.PNG)
    assert encoded.format is ImageFormat.PNG
    assert np.array_equal(decode(encoded).pixels, raster.pixels)


def test_encoded_image_checksum_is_content_hash(png_bytes):
    a = EncodedImage.from_bytes(png_bytes)
    b = EncodedImage.from_bytes(bytes(png_bytes))
    assert a.checksum == b.checksum
    assert len(a.checksum) == 64
    assert a.size == len(png_bytes)
