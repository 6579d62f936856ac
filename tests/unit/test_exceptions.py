import unittest

from pixelmill.core.exceptions import (
    AlreadyTerminal,
    CircuitBreaker,
    EncodingFailure,
    InvalidInput,
    Overloaded,
    PixelMillError,
    SizeConstraintUnmet,
    UnsupportedConversion,
    UpscaleServiceUnavailable,
)
from pixelmill.core.logging import LogContext, job_id_var, stage_var


class TestErrorTaxonomy(unittest.TestCase):

    def test_codes_and_http_status(self):
        cases = [
            (InvalidInput("bad"), "INVALID_INPUT", 400),
            (UnsupportedConversion("PNG", "SVG"), "UNSUPPORTED_CONVERSION", 422),
            (EncodingFailure("broken", source_checksum="ab"), "ENCODING_FAILURE", 422),
            (UpscaleServiceUnavailable("down"), "UPSCALE_SERVICE_UNAVAILABLE", 503),
            (Overloaded(5), "OVERLOADED", 429),
            (AlreadyTerminal("j1", "succeeded"), "ALREADY_TERMINAL", 409),
        ]
        for exc, error_code, status in cases:
            self.assertIsInstance(exc, PixelMillError)
            self.assertEqual(exc.error_code, error_code)
            self.assertEqual(exc.code, status)

    def test_only_upscale_unavailable_is_transient(self):
        self.assertTrue(UpscaleServiceUnavailable("down").transient)
        self.assertFalse(InvalidInput("bad").transient)
        self.assertFalse(EncodingFailure("x").transient)

    def test_to_dict(self):
        payload = EncodingFailure("broken", source_checksum="ab", stage="convert").to_dict()
        self.assertEqual(payload["error_code"], "ENCODING_FAILURE")
        self.assertEqual(payload["details"]["source_checksum"], "ab")
        self.assertEqual(payload["stage"], "convert")
        self.assertTrue(payload["timestamp"].endswith("Z"))

    def test_job_id_taken_from_log_context(self):
        with LogContext(job_id="job-42", stage="crop"):
            self.assertEqual(InvalidInput("bad").job_id, "job-42")
        self.assertIsNone(job_id_var.get())
        self.assertIsNone(stage_var.get())

    def test_size_constraint_warning(self):
        warning = SizeConstraintUnmet(max_bytes=100, achieved_bytes=250, quality=1)
        payload = warning.to_dict()
        self.assertEqual(payload["code"], "SIZE_CONSTRAINT_UNMET")
        self.assertEqual(payload["details"]["achieved_bytes"], 250)


class TestCircuitBreaker(unittest.TestCase):

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("t", failure_threshold=2, recovery_timeout=3600)
        breaker.record_failure()
        self.assertTrue(breaker.can_execute())
        breaker.record_failure()
        self.assertEqual(breaker.state, "OPEN")
        self.assertFalse(breaker.can_execute())

    def test_half_open_after_recovery_timeout(self):
        breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout=0, half_open_max_calls=1)
        breaker.record_failure()
        self.assertEqual(breaker.state, "HALF_OPEN")
        self.assertTrue(breaker.can_execute())
        breaker.record_success()
        self.assertEqual(breaker.state, "CLOSED")

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("t", failure_threshold=2)
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        self.assertEqual(breaker.state, "CLOSED")

    def test_reset(self):
        breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout=3600)
        breaker.record_failure()
        breaker.reset()
        self.assertEqual(breaker.state, "CLOSED")
