"""
Upscaler Adapter

Calls the external super-resolution inference service with a bounded
timeout. When the service times out, errors, or is short-circuited by the
circuit breaker, the adapter falls back to bicubic interpolation and tags
the result as degraded. This is the only place where the engine swaps in a
different algorithm instead of surfacing the failure.
"""

import base64
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import httpx
from PIL import Image

from pixelmill.core.config import settings
from pixelmill.core.exceptions import (
    CircuitBreaker,
    EncodingFailure,
    InvalidInput,
    UpscaleServiceUnavailable,
)
from pixelmill.core.logging import get_logger
from pixelmill.core.metrics import record_upscaler_call
from pixelmill.engines.codec import EncodedImage, ImageFormat, RasterImage, decode, encode

logger = get_logger(__name__)


@dataclass(frozen=True)
class UpscaleResult:
    encoded: EncodedImage
    raster: RasterImage
    scale_factor: int
    source_dimensions: Tuple[int, int]
    degraded: bool
    fallback_reason: Optional[str] = None


class HttpInferenceClient:
    """
    Client for the inference service.

    Request:  POST {url} {"image": <base64>, "scale_factor": <int>}
    Response: 200 {"image": <base64>}
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.url = url
        self._client = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    def upscale(self, image_bytes: bytes, scale_factor: int) -> bytes:
        payload = {
            "image": base64.b64encode(image_bytes).decode("utf-8"),
            "scale_factor": scale_factor,
        }
        try:
            response = self._client.post(self.url, json=payload)
        except httpx.TimeoutException:
            raise UpscaleServiceUnavailable("Upscaler inference service timed out")
        except httpx.TransportError as e:
            raise UpscaleServiceUnavailable(f"Upscaler inference service unreachable: {e}")

        if response.status_code != 200:
            raise UpscaleServiceUnavailable(
                f"Upscaler inference service returned HTTP {response.status_code}",
                http_status=response.status_code
            )

        try:
            return base64.b64decode(response.json()["image"])
        except (ValueError, KeyError, TypeError) as e:
            raise UpscaleServiceUnavailable(f"Malformed upscaler response: {e}", http_status=200)

    def close(self):
        self._client.close()


def bicubic_upscale(raster: RasterImage, scale_factor: int) -> RasterImage:
    """Classical interpolation used when the model is unavailable."""
    img = raster.to_pil()
    size = (raster.width * scale_factor, raster.height * scale_factor)
    return RasterImage.from_pil(img.resize(size, Image.Resampling.BICUBIC))


class UpscalerAdapter:
    """Remote super-resolution with a degraded local fallback."""

    def __init__(
        self,
        client: Optional[HttpInferenceClient] = None,
        supported_scales: Optional[Iterable[int]] = None,
        fallback_enabled: Optional[bool] = None,
        circuit: Optional[CircuitBreaker] = None
    ):
        self.client = client
        self.supported_scales = frozenset(supported_scales or settings.UPSCALER_SUPPORTED_SCALES)
        self.fallback_enabled = (
            settings.UPSCALER_FALLBACK_ENABLED if fallback_enabled is None else fallback_enabled
        )
        self.circuit = circuit or CircuitBreaker("upscaler", failure_threshold=5, recovery_timeout=60)

    @classmethod
    def from_settings(cls) -> "UpscalerAdapter":
        client = None
        if settings.UPSCALER_URL:
            client = HttpInferenceClient(
                settings.UPSCALER_URL,
                api_key=settings.UPSCALER_API_KEY,
                timeout=settings.UPSCALER_TIMEOUT_SECONDS
            )
        return cls(client=client)

    def upscale(self, source: EncodedImage, scale_factor: int) -> UpscaleResult:
        """
        Upscale ``source`` by ``scale_factor``.

        Raises:
            InvalidInput: unsupported scale factor
            UpscaleServiceUnavailable: remote failed and fallback is disabled
        """
        if scale_factor not in self.supported_scales:
            raise InvalidInput(
                f"scale_factor must be one of {sorted(self.supported_scales)}, got {scale_factor}"
            )

        raster = decode(source)
        output_format = ImageFormat.PNG if source.format.is_vector else source.format
        request_bytes = source.data
        if source.format.is_vector:
            request_bytes = encode(raster, ImageFormat.PNG, source_checksum=source.checksum).data

        reason = self._remote_unavailable_reason()
        if reason is None:
            try:
                result = self._call_remote(request_bytes, scale_factor, raster, source.checksum)
                self.circuit.record_success()
                record_upscaler_call("remote")
                return result
            except UpscaleServiceUnavailable as e:
                self.circuit.record_failure(e)
                reason = e.message

        if not self.fallback_enabled:
            record_upscaler_call("unavailable")
            raise UpscaleServiceUnavailable(reason)

        logger.warning(
            "upscaler_fallback",
            reason=reason,
            scale_factor=scale_factor,
            source_checksum=source.checksum
        )
        record_upscaler_call("fallback")
        upscaled = bicubic_upscale(raster, scale_factor)
        encoded = encode(upscaled, output_format, source_checksum=source.checksum)
        return UpscaleResult(
            encoded=encoded,
            raster=upscaled,
            scale_factor=scale_factor,
            source_dimensions=raster.dimensions,
            degraded=True,
            fallback_reason=reason
        )

    def _remote_unavailable_reason(self) -> Optional[str]:
        if self.client is None:
            return "no inference service configured"
        if not self.circuit.can_execute():
            return "upscaler circuit breaker open"
        return None

    def _call_remote(
        self,
        request_bytes: bytes,
        scale_factor: int,
        raster: RasterImage,
        source_checksum: str
    ) -> UpscaleResult:
        data = self.client.upscale(request_bytes, scale_factor)
        try:
            encoded = EncodedImage.from_bytes(data)
            upscaled = decode(encoded)
        except EncodingFailure as e:
            raise UpscaleServiceUnavailable(f"Upscaler returned undecodable image: {e.message}")

        logger.info(
            "upscaler_remote_completed",
            scale_factor=scale_factor,
            source_checksum=source_checksum,
            output_dimensions=upscaled.dimensions
        )
        return UpscaleResult(
            encoded=encoded,
            raster=upscaled,
            scale_factor=scale_factor,
            source_dimensions=raster.dimensions,
            degraded=False
        )

    def close(self):
        if self.client is not None:
            self.client.close()
