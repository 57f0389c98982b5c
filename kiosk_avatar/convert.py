"""Normalize raw camera buffers into dense RGB for the landmark engine."""

from __future__ import annotations

import cv2
import numpy as np

from kiosk_avatar.camera import CameraFrame
from kiosk_avatar.errors import FrameGeometryError, UnsupportedPixelFormatError

# format -> (bytes per pixel, cvtColor code to RGB or None)
_PACKED = {
    "RGB24": (3, None),
    "BGR24": (3, cv2.COLOR_BGR2RGB),
    "RGBA32": (4, cv2.COLOR_RGBA2RGB),
    "BGRA32": (4, cv2.COLOR_BGRA2RGB),
    "GRAY8": (1, cv2.COLOR_GRAY2RGB),
}

SUPPORTED_FORMATS = frozenset(list(_PACKED) + ["YUYV", "NV12", "MJPEG"])


def _flat_bytes(buffer) -> np.ndarray:
    if isinstance(buffer, np.ndarray):
        if buffer.dtype != np.uint8:
            raise FrameGeometryError(f"pixel buffer dtype {buffer.dtype} is not uint8")
        return buffer.reshape(-1)
    try:
        return np.frombuffer(buffer, dtype=np.uint8)
    except TypeError as exc:
        raise FrameGeometryError(f"pixel buffer of type {type(buffer).__name__} is not byte-like") from exc


def _expect(buf: np.ndarray, size: int, fmt: str, width: int, height: int) -> None:
    if buf.size != size:
        raise FrameGeometryError(
            f"{fmt} {width}x{height} needs {size} bytes, buffer has {buf.size}"
        )


def convert_frame(frame: CameraFrame) -> np.ndarray:
    """Return a contiguous uint8 (height, width, 3) RGB array.

    Raises ``UnsupportedPixelFormatError`` for unknown formats and
    ``FrameGeometryError`` when the buffer does not match the declared size.
    """
    fmt = str(frame.pixel_format).upper()
    if fmt not in SUPPORTED_FORMATS:
        raise UnsupportedPixelFormatError(frame.pixel_format)
    width, height = int(frame.width), int(frame.height)
    if width <= 0 or height <= 0:
        raise FrameGeometryError(f"invalid frame size {width}x{height}")

    buf = _flat_bytes(frame.pixel_buffer)

    if fmt == "MJPEG":
        decoded = cv2.imdecode(buf, cv2.IMREAD_COLOR)
        if decoded is None:
            raise FrameGeometryError("MJPEG payload could not be decoded")
        if decoded.shape[:2] != (height, width):
            raise FrameGeometryError(
                f"MJPEG decoded to {decoded.shape[1]}x{decoded.shape[0]}, expected {width}x{height}"
            )
        rgb = cv2.cvtColor(decoded, cv2.COLOR_BGR2RGB)
    elif fmt == "YUYV":
        if width % 2:
            raise FrameGeometryError("YUYV width must be even")
        _expect(buf, width * height * 2, fmt, width, height)
        rgb = cv2.cvtColor(buf.reshape(height, width, 2), cv2.COLOR_YUV2RGB_YUY2)
    elif fmt == "NV12":
        if width % 2 or height % 2:
            raise FrameGeometryError("NV12 dimensions must be even")
        _expect(buf, width * height * 3 // 2, fmt, width, height)
        rgb = cv2.cvtColor(buf.reshape(height * 3 // 2, width), cv2.COLOR_YUV2RGB_NV12)
    else:
        channels, code = _PACKED[fmt]
        _expect(buf, width * height * channels, fmt, width, height)
        shaped = buf.reshape(height, width, channels) if channels > 1 else buf.reshape(height, width)
        rgb = shaped.copy() if code is None else cv2.cvtColor(shaped, code)

    return np.ascontiguousarray(rgb)
