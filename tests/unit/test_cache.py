import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor

import pytest

from pixelmill.core.exceptions import UpscaleServiceUnavailable
from pixelmill.engines.codec import ImageFormat
from pixelmill.pipeline.cache import ResultCache, canonicalize_params, compute_fingerprint
from pixelmill.pipeline.schemas import (
    CompressParams,
    ConvertParams,
    CropParams,
    OperationKind,
    PaletteParams,
)

SOURCE = "c" * 64


class Blob:
    def __init__(self, size):
        self.size_bytes = size


class TestFingerprint(unittest.TestCase):

    def test_equivalent_params_share_fingerprint(self):
        a = ConvertParams(target_format="jpg")
        b = ConvertParams(target_format=ImageFormat.JPEG, background="#FFF", lossless=False)
        self.assertEqual(canonicalize_params(a), canonicalize_params(b))
        self.assertEqual(
            compute_fingerprint(SOURCE, OperationKind.CONVERT, a),
            compute_fingerprint(SOURCE, OperationKind.CONVERT, b)
        )

    def test_default_quality_matches_explicit_default(self):
        implicit = ConvertParams(target_format="jpeg")
        explicit = ConvertParams(target_format="jpeg", quality=90)
        self.assertEqual(
            compute_fingerprint(SOURCE, OperationKind.CONVERT, implicit),
            compute_fingerprint(SOURCE, OperationKind.CONVERT, explicit)
        )
        self.assertNotEqual(
            compute_fingerprint(SOURCE, OperationKind.CONVERT, implicit),
            compute_fingerprint(SOURCE, OperationKind.CONVERT, ConvertParams(target_format="jpeg", quality=80))
        )

    def test_default_format_resolved_against_source(self):
        implicit = CompressParams(quality=70)
        explicit = CompressParams(quality=70, target_format="png")
        self.assertEqual(
            compute_fingerprint(SOURCE, OperationKind.COMPRESS, implicit, ImageFormat.PNG),
            compute_fingerprint(SOURCE, OperationKind.COMPRESS, explicit, ImageFormat.PNG)
        )
        self.assertEqual(
            canonicalize_params(CropParams(), ImageFormat.SVG),
            canonicalize_params(CropParams(output_format="png"))
        )

    def test_raster_size_ignored_for_raster_sources(self):
        sized = ConvertParams(target_format="png", raster_width=100)
        self.assertEqual(
            canonicalize_params(sized, ImageFormat.JPEG),
            canonicalize_params(ConvertParams(target_format="png"), ImageFormat.JPEG)
        )
        self.assertNotEqual(
            canonicalize_params(sized, ImageFormat.SVG),
            canonicalize_params(ConvertParams(target_format="png"), ImageFormat.SVG)
        )

    def test_different_inputs_differ(self):
        params = PaletteParams(k=4)
        base = compute_fingerprint(SOURCE, OperationKind.PALETTE, params)
        self.assertNotEqual(base, compute_fingerprint("d" * 64, OperationKind.PALETTE, params))
        self.assertNotEqual(base, compute_fingerprint(SOURCE, OperationKind.PALETTE, PaletteParams(k=5)))

    def test_fingerprint_is_stable(self):
        params = PaletteParams(k=4)
        self.assertEqual(
            compute_fingerprint(SOURCE, OperationKind.PALETTE, params),
            compute_fingerprint(SOURCE, OperationKind.PALETTE, PaletteParams(k=4))
        )


def test_concurrent_callers_compute_once():
    cache = ResultCache(max_bytes=10_000)
    calls = []
    gate = threading.Event()

    def compute():
        calls.append(1)
        gate.wait(2)
        return Blob(100)

    with ThreadPoolExecutor(max_workers=50) as pool:
        futures = [pool.submit(cache.get_or_compute, "fp", compute) for _ in range(50)]
        time.sleep(0.2)
        gate.set()
        results = [f.result(timeout=5) for f in futures]

    assert len(calls) == 1
    assert all(r is results[0] for r in results)
    assert cache.peek("fp").ref_count == 50
    assert cache.stats()["in_flight"] == 0


def test_waiters_share_the_failure_and_nothing_is_cached():
    cache = ResultCache(max_bytes=10_000)
    calls = []
    gate = threading.Event()

    def failing():
        calls.append(1)
        gate.wait(2)
        raise UpscaleServiceUnavailable("down")

    with ThreadPoolExecutor(max_workers=5) as pool:
        futures = [pool.submit(cache.get_or_compute, "fp", failing) for _ in range(5)]
        time.sleep(0.2)
        gate.set()
        errors = [f.exception(timeout=5) for f in futures]

    assert len(calls) == 1
    assert all(isinstance(e, UpscaleServiceUnavailable) for e in errors)
    assert "fp" not in cache

    # Next request recomputes
    value = cache.get_or_compute("fp", lambda: Blob(10))
    assert value.size_bytes == 10
    assert "fp" in cache


def test_hit_skips_compute():
    cache = ResultCache(max_bytes=1000)
    first = cache.get_or_compute("fp", lambda: Blob(10))

    def explode():
        raise AssertionError("should not recompute")

    assert cache.get_or_compute("fp", explode) is first


def test_lru_eviction_by_bytes():
    cache = ResultCache(max_bytes=300)
    cache.get_or_compute("a", lambda: Blob(100))
    cache.get_or_compute("b", lambda: Blob(100))
    cache.get_or_compute("c", lambda: Blob(100))
    cache.get_or_compute("a", lambda: Blob(100))  # touch a; b is now least recent

    cache.get_or_compute("d", lambda: Blob(100))

    assert "b" not in cache
    assert "a" in cache and "c" in cache and "d" in cache
    assert cache.total_bytes == 300


def test_oversized_value_not_cached():
    cache = ResultCache(max_bytes=50)
    value = cache.get_or_compute("big", lambda: Blob(51))
    assert value.size_bytes == 51
    assert "big" not in cache
    assert cache.total_bytes == 0


def test_uncacheable_values_are_shared_but_not_stored():
    cache = ResultCache(max_bytes=1000, is_cacheable=lambda v: v.size_bytes != 13)
    cache.get_or_compute("x", lambda: Blob(13))
    assert "x" not in cache


def test_declined_value_is_not_stored():
    cache = ResultCache(max_bytes=1000)
    value = cache.get_or_compute("x", lambda: Blob(10), keep=lambda: False)
    assert value.size_bytes == 10
    assert "x" not in cache
    cache.get_or_compute("y", lambda: Blob(10), keep=lambda: True)
    assert "y" in cache


def test_declined_value_still_stored_for_waiters():
    cache = ResultCache(max_bytes=1000)
    started = threading.Event()
    gate = threading.Event()

    def compute():
        started.set()
        gate.wait(2)
        return Blob(10)

    with ThreadPoolExecutor(max_workers=2) as pool:
        leader = pool.submit(cache.get_or_compute, "x", compute, lambda: False)
        started.wait(2)
        waiter = pool.submit(cache.get_or_compute, "x", compute)
        time.sleep(0.2)
        gate.set()
        assert leader.result(timeout=5) is waiter.result(timeout=5)

    assert "x" in cache
    assert cache.peek("x").ref_count == 2


def test_invalidate_and_clear():
    cache = ResultCache(max_bytes=1000)
    cache.get_or_compute("a", lambda: Blob(10))
    cache.get_or_compute("b", lambda: Blob(10))
    assert cache.invalidate("a")
    assert not cache.invalidate("a")
    assert len(cache) == 1
    cache.clear()
    assert len(cache) == 0
    assert cache.total_bytes == 0


@pytest.mark.parametrize("size", [0, 1])
def test_zero_and_small_values(size):
    cache = ResultCache(max_bytes=1)
    cache.get_or_compute("k", lambda: Blob(size))
    assert "k" in cache
