import cv2
import numpy as np
import pytest

from kiosk_avatar.camera import CameraFrame
from kiosk_avatar.convert import SUPPORTED_FORMATS, convert_frame
from kiosk_avatar.errors import FrameConversionError, FrameGeometryError, UnsupportedPixelFormatError


def _frame(fmt, buf, width=2, height=2):
    return CameraFrame(width=width, height=height, pixel_format=fmt, pixel_buffer=buf, capture_timestamp=0.0)


def test_bgr_is_swapped_to_rgb():
    bgr = np.zeros((2, 2, 3), dtype=np.uint8)
    bgr[..., 0] = 255  # blue
    out = convert_frame(_frame("BGR24", bgr))
    assert out.shape == (2, 2, 3)
    assert out.dtype == np.uint8
    assert out.flags["C_CONTIGUOUS"]
    assert (out[..., 2] == 255).all()
    assert (out[..., 0] == 0).all()


def test_rgb_bytes_pass_through():
    raw = bytes(range(12))
    out = convert_frame(_frame("RGB24", raw))
    assert out.reshape(-1).tolist() == list(range(12))


def test_rgba_drops_alpha():
    rgba = np.array([[[1, 2, 3, 255]] * 2] * 2, dtype=np.uint8)
    out = convert_frame(_frame("RGBA32", rgba.tobytes()))
    assert out[0, 0].tolist() == [1, 2, 3]


def test_gray_expands_to_three_channels():
    out = convert_frame(_frame("GRAY8", bytes([7, 7, 7, 7])))
    assert out.shape == (2, 2, 3)
    assert (out == 7).all()


def test_yuyv_and_nv12_sizes():
    yuyv = np.full(4 * 2 * 2, 128, dtype=np.uint8)
    assert convert_frame(_frame("YUYV", yuyv, width=4, height=2)).shape == (2, 4, 3)
    nv12 = np.full(4 * 2 * 3 // 2, 128, dtype=np.uint8)
    assert convert_frame(_frame("NV12", nv12, width=4, height=2)).shape == (2, 4, 3)


def test_mjpeg_is_decoded():
    img = np.zeros((8, 8, 3), dtype=np.uint8)
    ok, jpeg = cv2.imencode(".jpg", img)
    assert ok
    out = convert_frame(_frame("MJPEG", jpeg.tobytes(), width=8, height=8))
    assert out.shape == (8, 8, 3)


def test_format_name_is_case_insensitive():
    assert convert_frame(_frame("rgb24", bytes(12))).shape == (2, 2, 3)


@pytest.mark.parametrize("fmt", ["HEVC", "P010", "", "RGB565"])
def test_unsupported_format_is_explicit(fmt):
    with pytest.raises(UnsupportedPixelFormatError) as info:
        convert_frame(_frame(fmt, bytes(12)))
    assert info.value.pixel_format == fmt
    assert isinstance(info.value, FrameConversionError)
    assert fmt not in SUPPORTED_FORMATS


def test_short_buffer_is_a_geometry_error():
    with pytest.raises(FrameGeometryError):
        convert_frame(_frame("RGB24", bytes(11)))


def test_odd_width_yuyv_rejected():
    with pytest.raises(FrameGeometryError):
        convert_frame(_frame("YUYV", bytes(3 * 2 * 2), width=3, height=2))


def test_zero_sized_frame_rejected():
    with pytest.raises(FrameGeometryError):
        convert_frame(_frame("RGB24", b"", width=0, height=2))


def test_corrupt_mjpeg_rejected():
    with pytest.raises(FrameGeometryError):
        convert_frame(_frame("MJPEG", b"not a jpeg", width=8, height=8))
