"""
Operation Registry

Maps an operation kind plus validated parameters to the engine that runs
it. The handler table is checked against OperationKind when the registry
is built, so a new kind without a handler fails at startup rather than at
dispatch time.
"""

from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import ValidationError

from pixelmill.core.exceptions import InvalidInput, UnsupportedConversion
from pixelmill.core.logging import get_logger
from pixelmill.engines import compression, converter, palette, smart_crop
from pixelmill.engines.codec import EncodedImage, ImageFormat, decode, encode
from pixelmill.engines.upscaler import UpscalerAdapter
from pixelmill.pipeline.schemas import (
    PARAMS_MODELS,
    CompressParams,
    ConvertParams,
    CropParams,
    JobWarning,
    OperationKind,
    OperationParams,
    PaletteParams,
    ResultMetadata,
    UpscaleParams,
)

logger = get_logger(__name__)


class OperationOutput:
    """What a handler produces: optional image plus its metadata fields."""

    def __init__(self, encoded: Optional[EncodedImage], metadata: Dict[str, Any]):
        self.encoded = encoded
        self.metadata = metadata


def parse_operation(value) -> OperationKind:
    if isinstance(value, OperationKind):
        return value
    try:
        return OperationKind(str(value).strip().lower())
    except ValueError:
        raise InvalidInput(
            f"Unknown operation: {value!r}",
            details={"supported": [k.value for k in OperationKind]}
        )


def validate_params(kind: OperationKind, params: Optional[Mapping[str, Any]]) -> OperationParams:
    """
    Validate raw parameters for ``kind``.

    Raises:
        InvalidInput: with one entry per offending field in details["errors"]
    """
    if params is not None and not isinstance(params, Mapping):
        raise InvalidInput("params must be an object")
    model = PARAMS_MODELS[kind]
    try:
        return model.model_validate(dict(params or {}))
    except ValidationError as e:
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]) or "params", "msg": err["msg"]}
            for err in e.errors(include_url=False)
        ]
        raise InvalidInput(
            f"Invalid parameters for {kind.value}",
            details={"operation": kind.value, "errors": errors}
        )


class OperationRegistry:
    """Dispatches validated operations to the processing engines."""

    def __init__(self, upscaler: UpscalerAdapter):
        self.upscaler = upscaler
        self._handlers: Dict[OperationKind, Callable[[EncodedImage, Any], OperationOutput]] = {
            OperationKind.CONVERT: self._convert,
            OperationKind.CROP: self._crop,
            OperationKind.COMPRESS: self._compress,
            OperationKind.PALETTE: self._palette,
            OperationKind.UPSCALE: self._upscale,
        }
        missing = set(OperationKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler registered for: {sorted(k.value for k in missing)}")

    def validate(self, kind, params: Optional[Mapping[str, Any]] = None) -> OperationParams:
        return validate_params(parse_operation(kind), params)

    def check_supported(self, params: OperationParams, source_format: ImageFormat):
        """
        Reject format pairs no engine can produce.

        Raises:
            UnsupportedConversion: the operation would have to write SVG
        """
        target = params.produced_format(source_format)
        if target is not None and target.is_vector:
            raise UnsupportedConversion(source_format.value, target.value)

    def execute(self, kind: OperationKind, params: OperationParams, source: EncodedImage) -> OperationOutput:
        expected = PARAMS_MODELS[kind]
        if not isinstance(params, expected):
            raise InvalidInput(f"{kind.value} expects {expected.__name__}, got {type(params).__name__}")
        self.check_supported(params, source.format)
        return self._handlers[kind](source, params)

    def build_metadata(
        self,
        kind: OperationKind,
        source: EncodedImage,
        output: OperationOutput,
        result_checksum: Optional[str]
    ) -> ResultMetadata:
        fields = dict(output.metadata)
        if output.encoded is not None:
            fields.setdefault("result_format", output.encoded.format.value)
            fields.setdefault("result_size_bytes", output.encoded.size)
        return ResultMetadata(
            operation=kind,
            source_checksum=source.checksum,
            result_checksum=result_checksum,
            **fields
        )

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _convert(self, source: EncodedImage, params: ConvertParams) -> OperationOutput:
        result = converter.convert(
            source,
            params.target_format,
            quality=params.quality,
            lossless=params.lossless,
            background=converter.parse_hex_color(params.background),
            raster_width=params.raster_width,
            raster_height=params.raster_height
        )
        return OperationOutput(result.encoded, {
            "source_dimensions": list(result.source_dimensions),
            "result_dimensions": list(result.raster.dimensions),
            "alpha_action": result.alpha_action,
        })

    def _crop(self, source: EncodedImage, params: CropParams) -> OperationOutput:
        raster = decode(source)
        region = smart_crop.detect_crop(raster)
        cropped = smart_crop.apply_crop(raster, region)

        fmt = params.produced_format(source.format)
        prepared, action = converter.prepare_for_format(cropped, fmt)
        encoded = encode(prepared, fmt, source_checksum=source.checksum)
        return OperationOutput(encoded, {
            "source_dimensions": list(raster.dimensions),
            "result_dimensions": list(prepared.dimensions),
            "crop_region": region.to_dict(),
            "alpha_action": action,
        })

    def _compress(self, source: EncodedImage, params: CompressParams) -> OperationOutput:
        raster = decode(source)
        result = compression.compress(
            raster,
            target_format=params.produced_format(source.format),
            quality=params.quality,
            max_bytes=params.max_bytes
        )
        return OperationOutput(result.encoded, {
            "source_dimensions": list(raster.dimensions),
            "result_dimensions": list(result.raster.dimensions),
            "quality": result.quality,
            "warnings": [JobWarning(**w.to_dict()) for w in result.warnings],
        })

    def _palette(self, source: EncodedImage, params: PaletteParams) -> OperationOutput:
        raster = decode(source)
        entries = palette.extract_palette(raster, params.k)
        return OperationOutput(None, {
            "source_dimensions": list(raster.dimensions),
            "palette": [entry.to_dict() for entry in entries],
        })

    def _upscale(self, source: EncodedImage, params: UpscaleParams) -> OperationOutput:
        result = self.upscaler.upscale(source, params.scale_factor)
        return OperationOutput(result.encoded, {
            "source_dimensions": list(result.source_dimensions),
            "result_dimensions": list(result.raster.dimensions),
            "degraded": result.degraded,
        })
