"""
Frame materialization for the design canvas.

The canvas host owns the real node APIs; this module decides what the frame
looks like (name, size, position and the stretched image fill) so the host
only has to replay the description.
"""

import base64
import hashlib
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime

from errors import DeviceBridgeError, ParseFailure
from resolution import ResolutionRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImagePaint:
    image_hash: str
    scale_mode: str = "FILL"
    type: str = "IMAGE"


@dataclass(frozen=True)
class RectangleNode:
    name: str
    width: int
    height: int
    fills: list[ImagePaint]
    constraints: dict[str, str] = field(default_factory=lambda: {"horizontal": "STRETCH", "vertical": "STRETCH"})


@dataclass(frozen=True)
class FrameNode:
    name: str
    x: float
    y: float
    width: int
    height: int
    children: list[RectangleNode]
    constrain_proportions: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CanvasResult:
    frame: FrameNode | None
    notification: str
    error: bool = False


def frame_size(record: ResolutionRecord, use_logical_size: bool = True) -> tuple[int, int]:
    size = record.logical if use_logical_size else record.physical
    return size.width, size.height


def frame_name(now: datetime) -> str:
    hour = now.hour % 12 or 12
    meridiem = "PM" if now.hour >= 12 else "AM"
    return f"Screenshot - {now:%b} {now.day}, {now.year} {hour}:{now:%M} {meridiem}"


def image_hash(image_bytes: bytes) -> str:
    return hashlib.sha1(image_bytes).hexdigest()


def materialize_frame(
    image_bytes: bytes,
    record: ResolutionRecord,
    use_logical_size: bool = True,
    viewport_center: tuple[float, float] = (0.0, 0.0),
    now: datetime | None = None,
) -> FrameNode:
    """Build a frame sized from the record; the image always stretches to fill it."""
    if not image_bytes:
        raise ParseFailure("Missing screenshot data")

    width, height = frame_size(record, use_logical_size)
    image_rect = RectangleNode(
        name="Screenshot Image",
        width=width,
        height=height,
        fills=[ImagePaint(image_hash=image_hash(image_bytes))],
    )
    center_x, center_y = viewport_center
    return FrameNode(
        name=frame_name(now or datetime.now()),
        x=center_x - width / 2,
        y=center_y - height / 2,
        width=width,
        height=height,
        children=[image_rect],
    )


def decode_image_bytes(value) -> bytes:
    """Accept base64 text, raw bytes or a list of byte values from the plugin UI."""
    if isinstance(value, str):
        return base64.b64decode(value, validate=True)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError) as exc:
            raise ParseFailure(f"Invalid image byte values: {exc}") from exc
    raise ParseFailure(f"Unsupported image data of type {type(value).__name__}")


def handle_create_screenshot(message: dict, viewport_center: tuple[float, float] = (0.0, 0.0)) -> CanvasResult:
    """Handle a `create-screenshot` message coming from the plugin UI."""
    image_bytes = message.get("imageBytes")
    record_data = message.get("resolutionRecord")
    if not image_bytes or not record_data:
        return CanvasResult(frame=None, notification="Error: Missing screenshot data", error=True)

    try:
        image = decode_image_bytes(image_bytes)
        record = record_data if isinstance(record_data, ResolutionRecord) else ResolutionRecord.from_dict(record_data)
        frame = materialize_frame(
            image,
            record,
            use_logical_size=message.get("useLogicalSize") is not False,
            viewport_center=viewport_center,
        )
    except (DeviceBridgeError, TypeError, ValueError) as exc:
        logger.warning("Failed to create screenshot frame: %s", exc)
        return CanvasResult(frame=None, notification=f"Failed to create screenshot: {exc}", error=True)

    return CanvasResult(frame=frame, notification="Screenshot added to canvas!")
