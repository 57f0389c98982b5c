import os
import threading
import time
from collections import deque

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")

import numpy as np
import pytest

from kiosk_avatar.camera import CameraFrame
from kiosk_avatar.landmarks import FULL_MESH_POINTS, LandmarkSet
from kiosk_avatar.scene import build_avatar_scene

# Eye contours in FaceMesh order (corner, upper, upper, corner, lower, lower).
# Both eyes are 0.10 wide and 0.04 tall; centroids at (0.45, 0.5) and (0.6, 0.5).
LEFT_CONTOUR = {
    33: (0.40, 0.50),
    160: (0.43, 0.48),
    158: (0.47, 0.48),
    133: (0.50, 0.50),
    153: (0.47, 0.52),
    144: (0.43, 0.52),
}
RIGHT_CONTOUR = {
    263: (0.65, 0.50),
    387: (0.62, 0.48),
    385: (0.58, 0.48),
    362: (0.55, 0.50),
    380: (0.58, 0.52),
    373: (0.62, 0.52),
}
LEFT_CENTER = (0.45, 0.50)
RIGHT_CENTER = (0.60, 0.50)
EYE_HALF_WIDTH = 0.05
EYE_HALF_HEIGHT = 0.02


def make_landmarks(dx=0.1, dy=0.0, score=0.9, timestamp=0.0, n_points=FULL_MESH_POINTS, closed=False):
    """Synthetic face whose irises sit (dx, dy) away from each eye centre, in eye units."""
    points = np.full((FULL_MESH_POINTS, 3), 0.5, dtype=np.float64)
    points[:, 2] = 0.0
    for contour in (LEFT_CONTOUR, RIGHT_CONTOUR):
        for idx, (x, y) in contour.items():
            points[idx] = (x, 0.50 if closed and idx not in (33, 133, 263, 362) else y, 0.0)
    for first, (cx, cy) in ((468, LEFT_CENTER), (473, RIGHT_CENTER)):
        ix = cx + dx * EYE_HALF_WIDTH
        iy = cy + dy * EYE_HALF_HEIGHT
        r = 0.01
        for k, (ox, oy) in enumerate(((0, 0), (r, 0), (0, -r), (-r, 0), (0, r))):
            points[first + k] = (ix + ox, iy + oy, 0.0)
    return LandmarkSet(points=points[:n_points].copy(), score=score, timestamp=timestamp)


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeCameraService:
    """Camera service double. ``gate`` blocks reads and ``acquire_gate`` blocks opening until set."""

    def __init__(
        self, log=None, pixel_format="RGB24", width=4, height=4, gate=None, acquire_error=None, acquire_gate=None
    ):
        self.log = log if log is not None else []
        self.pixel_format = pixel_format
        self.width = width
        self.height = height
        self.gate = gate
        self.acquire_error = acquire_error
        self.acquire_gate = acquire_gate
        self.failures = deque()
        self.captures = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.released = 0
        self.on_release = None
        self._lock = threading.Lock()

    def fail_next(self, exc, times=1):
        for _ in range(times):
            self.failures.append(exc)

    def acquire(self, selector):
        self.log.append("camera.acquire")
        if self.acquire_gate is not None:
            self.acquire_gate.wait(timeout=5.0)
        if self.acquire_error is not None:
            raise self.acquire_error
        return {"selector": selector}

    def capture_frame(self, handle, spec):
        with self._lock:
            self.captures += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5.0)
            if self.failures:
                raise self.failures.popleft()
            channels = {"GRAY8": 1, "RGBA32": 4, "BGRA32": 4}.get(self.pixel_format, 3)
            return CameraFrame(
                width=self.width,
                height=self.height,
                pixel_format=self.pixel_format,
                pixel_buffer=bytes(self.width * self.height * channels),
                capture_timestamp=time.monotonic(),
            )
        finally:
            with self._lock:
                self.in_flight -= 1

    def release(self, handle):
        if self.on_release is not None:
            self.on_release()
        self.released += 1
        self.log.append("camera.release")


class FakeEngine:
    def __init__(self, result=None, log=None, gate=None, error=None):
        self.result = result if result is not None else make_landmarks()
        self.log = log if log is not None else []
        self.gate = gate
        self.error = error
        self.calls = 0
        self.closed = False

    def infer(self, rgb):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.error is not None:
            raise self.error
        return self.result() if callable(self.result) else self.result

    def close(self):
        self.closed = True
        self.log.append("engine.close")


class FakeSceneHost:
    def __init__(self, log=None, fail_create=False):
        self.scene = build_avatar_scene()
        self.log = log if log is not None else []
        self.fail_create = fail_create
        self.created = False
        self.disposed = False
        self.presents = 0
        self.presents_after_dispose = 0
        self.last_rings = None

    def create_resources(self):
        if self.fail_create:
            raise RuntimeError("no GPU")
        self.created = True
        self.log.append("gpu.create")

    def present(self, rings=None):
        if self.disposed:
            self.presents_after_dispose += 1
            return
        self.presents += 1
        self.last_rings = rings

    def dispose(self):
        self.disposed = True
        self.scene.freeze()
        self.log.append("gpu.dispose")


class FakeAudioNode:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error
        self.closed = False

    def get_time_domain_data(self):
        if self.error is not None:
            raise self.error
        return self.data

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    # Never leave a worker thread blocked at interpreter exit.
    event.set()
