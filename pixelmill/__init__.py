"""PixelMill image processing service."""

__version__ = "1.0.0"
