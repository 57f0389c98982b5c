"""Camera acquisition: the native camera service and the adapter around it."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Union

import cv2
import numpy as np

from kiosk_avatar.bridge import HostBridge
from kiosk_avatar.config import CaptureConfig
from kiosk_avatar.errors import (
    BridgeClosedError,
    BridgeTimeoutError,
    CameraBusyError,
    CameraUnavailableError,
    CaptureError,
)

logger = logging.getLogger(__name__)

CAMERA_TAG = "camera"


@dataclass(frozen=True)
class FormatSpec:
    width: int
    height: int
    fps: int
    pixel_format: str

    @classmethod
    def from_config(cls, config: CaptureConfig) -> "FormatSpec":
        return cls(config.width, config.height, config.fps, config.pixel_format)


@dataclass(frozen=True)
class CameraFrame:
    """One raw frame as delivered by the camera service."""

    width: int
    height: int
    pixel_format: str
    pixel_buffer: Union[bytes, np.ndarray]
    capture_timestamp: float


class CameraService(Protocol):
    def acquire(self, selector: Any) -> Any: ...

    def capture_frame(self, handle: Any, spec: FormatSpec) -> CameraFrame: ...

    def release(self, handle: Any) -> None: ...


class OpenCVCameraService:
    """Camera service backed by ``cv2.VideoCapture``; frames come out as BGR24."""

    def __init__(self, spec: Optional[FormatSpec] = None) -> None:
        self.spec = spec

    def acquire(self, selector: Any) -> cv2.VideoCapture:
        cap = cv2.VideoCapture(selector)
        if self.spec is not None:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.spec.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.spec.height)
            cap.set(cv2.CAP_PROP_FPS, self.spec.fps)
        # Keep only the newest frame so reads are never stale.
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailableError(f"camera {selector!r} could not be opened")
        logger.info(
            "Camera %r opened at %dx%d",
            selector,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        return cap

    def capture_frame(self, handle: cv2.VideoCapture, spec: FormatSpec) -> CameraFrame:
        ok, frame = handle.read()
        now = time.monotonic()
        if not ok or frame is None:
            if not handle.isOpened():
                raise CameraUnavailableError("camera handle closed underneath the reader")
            raise CameraBusyError("camera returned no frame")
        height, width = frame.shape[:2]
        return CameraFrame(
            width=width,
            height=height,
            pixel_format="BGR24",
            pixel_buffer=frame,
            capture_timestamp=now,
        )

    def release(self, handle: cv2.VideoCapture) -> None:
        handle.release()


class CameraAdapter:
    """Holds the open camera handle on behalf of the lifecycle manager.

    Every call crosses the host bridge. Service errors come back as
    ``CaptureError`` subclasses; anything untyped is wrapped as a transient
    ``CaptureError`` so the scheduler can count it.
    """

    def __init__(
        self,
        service: CameraService,
        bridge: HostBridge,
        selector: Any,
        spec: FormatSpec,
        timeout: float = 0.25,
    ) -> None:
        self._service = service
        self._bridge = bridge
        self.selector = selector
        self.spec = spec
        self.timeout = timeout
        self._handle = None

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    @property
    def busy(self) -> bool:
        return self._bridge.busy

    async def open(self, timeout: Optional[float] = None) -> None:
        if self._handle is not None:
            return
        # A handle that arrives after we gave up is released, not leaked.
        self._handle = await self._bridge.call(
            self._service.acquire,
            self.selector,
            timeout=timeout,
            tag=CAMERA_TAG,
            discard=self._release_handle,
        )

    async def capture(self) -> CameraFrame:
        handle = self._handle
        if handle is None:
            raise CameraUnavailableError("camera is not open")
        try:
            return await self._bridge.call(
                self._service.capture_frame, handle, self.spec, timeout=self.timeout, tag=CAMERA_TAG
            )
        except CaptureError:
            raise
        except BridgeTimeoutError as exc:
            raise CameraBusyError(str(exc)) from exc
        except BridgeClosedError as exc:
            raise CameraUnavailableError(str(exc)) from exc
        except Exception as exc:
            raise CaptureError(f"camera service failed: {exc!r}") from exc

    async def close(self, grace: Optional[float] = None) -> bool:
        """Release the handle once no read is running on it.

        Waits up to ``grace`` for an abandoned read; if it is still stuck the
        release is queued behind it on the bridge worker. Returns True if the
        handle was released before returning.
        """
        handle, self._handle = self._handle, None
        if handle is None:
            return True
        released = await self._bridge.run_when_idle(
            lambda: self._release_handle(handle), grace, tag=CAMERA_TAG
        )
        if not released:
            logger.warning("Camera %r read still running; release queued behind it", self.selector)
        return released

    def _release_handle(self, handle: Any) -> None:
        try:
            self._service.release(handle)
            logger.info("Camera %r released", self.selector)
        except Exception:
            logger.warning("Releasing camera %r failed", self.selector, exc_info=True)


def probe_cameras(max_index: int = 5) -> List[dict]:
    """Probe a range of camera indices and report which open and produce frames."""
    max_index = max(0, int(max_index))
    found = []
    for idx in range(max_index + 1):
        cap = cv2.VideoCapture(idx)
        opened = cap.isOpened()
        shape = None
        if opened:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, 320)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, 240)
            for _ in range(3):
                ok, frame = cap.read()
                if ok and frame is not None:
                    shape = frame.shape
                    break
        cap.release()
        found.append({"index": idx, "opened": opened, "readable": shape is not None, "shape": shape})
        logger.debug("camera %d opened=%s shape=%s", idx, opened, shape)
    return found
