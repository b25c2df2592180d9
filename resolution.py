"""
Screen-metric normalization for connected devices.

Android exposes a pixel size, a continuous density and a rotation; iOS exposes
only a ProductType, which is looked up in a static table or, when unknown,
estimated from the pixel size of a sampled screenshot.
"""

import io
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, IntEnum
from fractions import Fraction

from PIL import Image as PILImage
from PIL import UnidentifiedImageError

from devicespecs import DeviceSpec, lookup_spec
from errors import MissingRequiredSignal, ParseFailure

logger = logging.getLogger(__name__)

ANDROID = "android"
IOS = "ios"

# Android's mdpi density; a density of 160 is scale 1.
BASELINE_DENSITY = 160

# Sampled iOS screenshots wider than this are assumed to be @3x.
SCALE_ESTIMATE_WIDTH_CUTOFF = 1000


class Rotation(IntEnum):
    NONE = 0
    QUARTER = 1
    HALF = 2
    THREE_QUARTER = 3

    @property
    def is_landscape(self) -> bool:
        return self in (Rotation.QUARTER, Rotation.THREE_QUARTER)


class ResolutionSource(str, Enum):
    MEASURED = "measured"
    LOOKUP = "lookup"
    SAMPLED_ESTIMATE = "sampled_estimate"


@dataclass(frozen=True)
class Size:
    width: int
    height: int

    def to_dict(self) -> dict:
        return {"width": self.width, "height": self.height}


@dataclass(frozen=True)
class DisplaySignals:
    """Raw values queried from an Android device, before normalization."""

    width: int
    height: int
    density: int | None
    rotation: int | None = None


@dataclass(frozen=True)
class ResolutionRecord:
    physical: Size
    logical: Size
    density: float
    scale: Fraction
    rotation: Rotation = Rotation.NONE
    source: ResolutionSource = ResolutionSource.MEASURED

    @property
    def is_landscape(self) -> bool:
        return self.rotation.is_landscape

    @property
    def estimated(self) -> bool:
        return self.source is ResolutionSource.SAMPLED_ESTIMATE

    def to_dict(self) -> dict:
        scale = int(self.scale) if self.scale.denominator == 1 else float(self.scale)
        density = int(self.density) if float(self.density).is_integer() else self.density
        return {
            "physical": self.physical.to_dict(),
            "logical": self.logical.to_dict(),
            "density": density,
            "scale": scale,
            "rotation": int(self.rotation),
            "isLandscape": self.is_landscape,
            "estimated": self.estimated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResolutionRecord":
        """Rebuild a record from its JSON form, rejecting anything build_record would not produce."""
        try:
            width = int(data["physical"]["width"])
            height = int(data["physical"]["height"])
            logical = Size(int(data["logical"]["width"]), int(data["logical"]["height"]))
            scale = Fraction(str(data["scale"]))
            density = data.get("density", float(scale * BASELINE_DENSITY))
            rotation = Rotation(int(data.get("rotation", 0)))
        except (KeyError, TypeError, ValueError, ZeroDivisionError) as exc:
            raise ParseFailure(f"Malformed resolution data: {exc}") from exc
        source = ResolutionSource.SAMPLED_ESTIMATE if data.get("estimated") else ResolutionSource.MEASURED

        record = build_record(width, height, scale, density, rotation, source)
        if record.logical != logical:
            raise ParseFailure(
                f"Logical size {logical.width}x{logical.height} does not match "
                f"{width}x{height} at scale {scale}"
            )
        return record


def round_half_up(value: Fraction) -> int:
    """Round to the nearest integer, halves away from zero (dimensions are positive)."""
    return math.floor(value + Fraction(1, 2))


def logical_size(physical: Size, scale: Fraction) -> Size:
    return Size(round_half_up(physical.width / scale), round_half_up(physical.height / scale))


def build_record(
    width: int,
    height: int,
    scale: Fraction,
    density: float,
    rotation: Rotation = Rotation.NONE,
    source: ResolutionSource = ResolutionSource.MEASURED,
) -> ResolutionRecord:
    if width <= 0 or height <= 0:
        raise ParseFailure(f"Invalid screen size {width}x{height}")
    if scale <= 0:
        raise ParseFailure(f"Invalid scale factor {scale}")
    if rotation.is_landscape and width <= height:
        raise ParseFailure(f"Landscape rotation with portrait size {width}x{height}")
    physical = Size(width, height)
    return ResolutionRecord(
        physical=physical,
        logical=logical_size(physical, scale),
        density=density,
        scale=scale,
        rotation=rotation,
        source=source,
    )


def image_size(image_bytes: bytes) -> tuple[int, int]:
    try:
        with PILImage.open(io.BytesIO(image_bytes)) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as exc:
        raise ParseFailure(f"Could not read screenshot dimensions: {exc}") from exc


def estimate_scale(sample_width: int, cutoff: int = SCALE_ESTIMATE_WIDTH_CUTOFF) -> int:
    return 3 if sample_width > cutoff else 2


class ResolutionResolver:
    """
    Turns raw device signals into a ResolutionRecord.

    The resolver holds no state besides its lookup table; every call is a pure
    function of the device, its signals and (for unknown iOS models) one sample.
    """

    def __init__(
        self,
        lookup: Callable[[str | None], DeviceSpec | None] = lookup_spec,
        width_cutoff: int = SCALE_ESTIMATE_WIDTH_CUTOFF,
    ) -> None:
        self.lookup = lookup
        self.width_cutoff = width_cutoff

    def resolve(
        self,
        device,
        signals: DisplaySignals | None = None,
        sample_provider: Callable[[], bytes] | None = None,
    ) -> ResolutionRecord:
        if device.platform == ANDROID:
            if signals is None:
                raise MissingRequiredSignal("Android display signals were not provided")
            return self.resolve_android(signals)
        if device.platform == IOS:
            return self.resolve_ios(device.model_code, sample_provider)
        raise ValueError(f"Unsupported platform: {device.platform}")

    def resolve_android(self, signals: DisplaySignals) -> ResolutionRecord:
        if signals.density is None:
            raise MissingRequiredSignal("Screen density is not available for this device")
        if signals.density <= 0:
            raise ParseFailure(f"Invalid screen density {signals.density}")

        rotation = Rotation.NONE
        if signals.rotation is not None:
            try:
                rotation = Rotation(signals.rotation)
            except ValueError:
                logger.warning("Ignoring unknown rotation value %r", signals.rotation)

        width, height = signals.width, signals.height
        # wm size reports the natural orientation; report the current one.
        if rotation.is_landscape:
            width, height = height, width

        return build_record(
            width,
            height,
            scale=Fraction(signals.density, BASELINE_DENSITY),
            density=signals.density,
            rotation=rotation,
        )

    def resolve_ios(
        self,
        model_code: str | None,
        sample_provider: Callable[[], bytes] | None = None,
    ) -> ResolutionRecord:
        spec = self.lookup(model_code)
        if spec:
            return build_record(
                spec.width,
                spec.height,
                scale=Fraction(spec.scale),
                density=spec.scale * BASELINE_DENSITY,
                source=ResolutionSource.LOOKUP,
            )

        if sample_provider is None:
            raise MissingRequiredSignal(
                f"Unknown model {model_code!r} and no screenshot sample available to estimate its resolution"
            )

        width, height = image_size(sample_provider())
        scale = estimate_scale(width, self.width_cutoff)
        logger.warning(
            "Unknown model %r, estimated @%dx from a %dx%d sample", model_code, scale, width, height
        )
        return build_record(
            width,
            height,
            scale=Fraction(scale),
            density=scale * BASELINE_DENSITY,
            source=ResolutionSource.SAMPLED_ESTIMATE,
        )
