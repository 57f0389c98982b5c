"""Per-eye gaze offsets from landmarks, and the slot that hands them to rendering."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from kiosk_avatar.config import GazeConfig
from kiosk_avatar.landmarks import LEFT_EYE, LEFT_IRIS, RIGHT_EYE, RIGHT_IRIS, LandmarkSet

logger = logging.getLogger(__name__)

Offset = Tuple[float, float, float]


@dataclass(frozen=True)
class EyeGaze:
    offset_x: float = 0.0
    offset_y: float = 0.0
    offset_z: float = 0.0
    confidence: float = 0.0

    @property
    def offset(self) -> Offset:
        return (self.offset_x, self.offset_y, self.offset_z)


@dataclass(frozen=True)
class GazeVector:
    left: EyeGaze = field(default_factory=EyeGaze)
    right: EyeGaze = field(default_factory=EyeGaze)
    timestamp: float = 0.0

    @property
    def confidence(self) -> float:
        return min(self.left.confidence, self.right.confidence)


NEUTRAL_GAZE = GazeVector()


@dataclass(frozen=True)
class NeutralReference:
    """Raw per-eye offsets that count as "looking straight ahead"."""

    left: Offset = (0.0, 0.0, 0.0)
    right: Offset = (0.0, 0.0, 0.0)


ZERO_REFERENCE = NeutralReference()


def _eye_aspect_ratio(contour: np.ndarray) -> float:
    p1, p2, p3, p4, p5, p6 = contour
    v1 = np.linalg.norm(p2[:2] - p6[:2])
    v2 = np.linalg.norm(p3[:2] - p5[:2])
    h = np.linalg.norm(p1[:2] - p4[:2]) + 1e-6
    return float((v1 + v2) / (2.0 * h))


def _in_frame_ratio(pts: np.ndarray) -> float:
    inside = (pts[:, 0] >= 0.0) & (pts[:, 0] <= 1.0) & (pts[:, 1] >= 0.0) & (pts[:, 1] <= 1.0)
    return float(np.count_nonzero(inside)) / float(len(pts))


def _eye(
    points: np.ndarray,
    contour_idx: Sequence[int],
    iris_idx: Sequence[int],
    score: float,
    config: GazeConfig,
) -> Tuple[Offset, float]:
    contour = points[list(contour_idx)]
    iris = points[list(iris_idx)]
    eye_center = contour.mean(axis=0)
    iris_center = iris.mean(axis=0)

    # contour[0] and contour[3] are the eye corners
    eye_w = max(1e-4, abs(float(contour[3, 0] - contour[0, 0])))
    eye_h = max(1e-4, float(contour[:, 1].max() - contour[:, 1].min()))
    dx = (iris_center[0] - eye_center[0]) / (eye_w * 0.5)
    dy = (iris_center[1] - eye_center[1]) / (eye_h * 0.5)
    dz = (iris_center[2] - eye_center[2]) / eye_w

    span = max(1e-6, config.open_ear - config.closed_ear)
    openness = min(1.0, max(0.0, (_eye_aspect_ratio(contour) - config.closed_ear) / span))
    visible = _in_frame_ratio(np.vstack([contour, iris]))
    confidence = min(1.0, max(0.0, score)) * visible * openness
    return (float(dx), float(dy), float(dz)), float(confidence)


def compute_gaze(
    landmarks: LandmarkSet,
    reference: NeutralReference = ZERO_REFERENCE,
    config: Optional[GazeConfig] = None,
) -> GazeVector:
    """Derive both eyes' offsets relative to ``reference``.

    Pure: the same landmark set, reference and config always give the same
    vector. Partial sets must be filtered out by the caller.
    """
    config = config or GazeConfig()
    points = np.asarray(landmarks.points, dtype=np.float64)
    left_raw, left_conf = _eye(points, LEFT_EYE, LEFT_IRIS, landmarks.score, config)
    right_raw, right_conf = _eye(points, RIGHT_EYE, RIGHT_IRIS, landmarks.score, config)

    def rel(raw: Offset, ref: Offset, conf: float) -> EyeGaze:
        return EyeGaze(raw[0] - ref[0], raw[1] - ref[1], raw[2] - ref[2], conf)

    return GazeVector(
        left=rel(left_raw, reference.left, left_conf),
        right=rel(right_raw, reference.right, right_conf),
        timestamp=landmarks.timestamp,
    )


class GazeCalibrator:
    """Holds the neutral reference: fixed at zero, or taken from the first accepted set."""

    def __init__(self, mode: str = "fixed", config: Optional[GazeConfig] = None) -> None:
        if mode not in ("fixed", "first_frame"):
            raise ValueError(f"unknown neutral mode {mode!r}")
        self.mode = mode
        self.config = config or GazeConfig()
        self.reference = ZERO_REFERENCE
        self._calibrated = mode == "fixed"

    @property
    def needs_calibration(self) -> bool:
        return not self._calibrated

    def calibrate(self, landmarks: LandmarkSet) -> NeutralReference:
        raw = compute_gaze(landmarks, ZERO_REFERENCE, self.config)
        self.reference = NeutralReference(left=raw.left.offset, right=raw.right.offset)
        self._calibrated = True
        logger.info("Gaze neutral calibrated: left=%s right=%s", self.reference.left, self.reference.right)
        return self.reference

    def reset(self) -> None:
        self.reference = ZERO_REFERENCE
        self._calibrated = self.mode == "fixed"


class GazeSlot:
    """Latest accepted gaze, written by the capture side and read by rendering.

    One writer, any number of readers, no queue. A reader asking after the
    hold timeout gets ``NEUTRAL_GAZE`` so the eyes recentre on lost tracking.
    """

    def __init__(self, hold_timeout: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.hold_timeout = hold_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._value: Optional[GazeVector] = None
        self._committed_at: Optional[float] = None
        self._closed = False
        self.version = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, gaze: GazeVector, now: Optional[float] = None) -> bool:
        if now is None:
            now = self._clock()
        with self._lock:
            if self._closed:
                return False
            self._value = gaze
            self._committed_at = now
            self.version += 1
        return True

    def peek(self) -> Tuple[Optional[GazeVector], Optional[float]]:
        with self._lock:
            return self._value, self._committed_at

    def staleness(self, now: Optional[float] = None) -> Optional[float]:
        _, committed_at = self.peek()
        if committed_at is None:
            return None
        if now is None:
            now = self._clock()
        return max(0.0, now - committed_at)

    def read(self, now: Optional[float] = None) -> GazeVector:
        if now is None:
            now = self._clock()
        value, committed_at = self.peek()
        if value is None or committed_at is None:
            return NEUTRAL_GAZE
        if now - committed_at > self.hold_timeout:
            return NEUTRAL_GAZE
        return value

    def close(self) -> None:
        with self._lock:
            self._closed = True
