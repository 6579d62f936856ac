import io
import os

# Settings are read at import time
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("LOG_FORMAT_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WORKER_COUNT", "2")
os.environ.setdefault("QUEUE_POLL_INTERVAL_SECONDS", "0.05")
os.environ.setdefault("RETRY_BACKOFF_BASE_SECONDS", "0.01")
os.environ.setdefault("RETRY_BACKOFF_MAX_SECONDS", "0.05")

import numpy as np
import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image
from typing import AsyncGenerator

from pixelmill.engines.codec import RasterImage


def _encode_pil(img: Image.Image, fmt: str = "PNG", **options) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format=fmt, **options)
    return buffer.getvalue()


@pytest.fixture
def encode_pil():
    return _encode_pil


@pytest.fixture
def noise_raster():
    """Deterministic RGB noise: hard to compress, good for size tests."""
    def build(width=64, height=64, seed=7):
        rng = np.random.default_rng(seed)
        return RasterImage(rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8), "RGB")
    return build


@pytest.fixture
def png_bytes(noise_raster):
    return _encode_pil(noise_raster(32, 24).to_pil(), "PNG")


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from pixelmill.main import app

    # app.router.lifespan_context(app) starts and stops the worker pool
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
