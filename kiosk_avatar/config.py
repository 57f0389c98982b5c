"""Runtime configuration for the kiosk avatar.

Every knob has a dataclass default. ``KioskConfig.from_env`` layers the
environment on top, and the CLI layers its flags on top of that.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not a number); using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not an integer); using %s", name, raw, default)
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class CaptureConfig:
    """Camera request and capture cadence."""

    camera_index: int = 0
    width: int = 640
    height: int = 480
    fps: int = 30
    pixel_format: str = "BGR24"
    period: float = 0.05  # 20 Hz
    failure_threshold: int = 10
    max_interval: float = 2.0
    capture_timeout: float = 0.25
    inference_timeout: Optional[float] = None  # None = one capture period
    release_grace: float = 0.5

    @property
    def effective_inference_timeout(self) -> float:
        if self.inference_timeout is None:
            return self.period
        return self.inference_timeout


@dataclass
class InferenceOptions:
    """Options understood by the FaceMesh landmark engine."""

    model_complexity: int = 1
    smooth_landmarks: bool = True
    min_detection_confidence: float = 0.5
    min_tracking_confidence: float = 0.5
    refine_landmarks: bool = True  # Enables iris landmarks
    max_num_faces: int = 1


@dataclass
class GazeConfig:
    confidence_threshold: float = 0.5
    hold_timeout: float = 1.5
    neutral_mode: str = "fixed"  # "fixed" or "first_frame"
    open_ear: float = 0.25
    closed_ear: float = 0.15


@dataclass
class RenderConfig:
    width: int = 1024
    height: int = 600
    fullscreen: bool = True
    fps: float = 60.0
    smoothing_alpha: float = 0.35
    max_offset: float = 1.0
    ball_travel: float = 0.12
    iris_travel: float = 0.2
    max_yaw_deg: float = 25.0
    max_pitch_deg: float = 15.0
    depth_offset: float = 4.0
    background: Tuple[int, int, int] = (10, 10, 20)
    eye_color: Tuple[int, int, int] = (220, 220, 240)
    iris_color: Tuple[int, int, int] = (30, 40, 70)

    @property
    def period(self) -> float:
        return 1.0 / max(1.0, self.fps)


@dataclass
class AudioConfig:
    enabled: bool = True
    device: Optional[str] = None
    samplerate: int = 16000
    window: int = 1024
    ring_count: int = 24
    base_radius: float = 1.6
    radius_gain: float = 0.9
    idle_color: Tuple[int, int, int] = (40, 50, 80)
    hot_color: Tuple[int, int, int] = (140, 200, 255)


@dataclass
class KioskConfig:
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    inference: InferenceOptions = field(default_factory=InferenceOptions)
    gaze: GazeConfig = field(default_factory=GazeConfig)
    render: RenderConfig = field(default_factory=RenderConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    vision_enabled: bool = True

    @classmethod
    def from_env(cls) -> "KioskConfig":
        cfg = cls()
        cfg.vision_enabled = not _env_flag("DISABLE_VISION")
        cfg.capture.camera_index = _env_int("VISION_CAMERA_INDEX", cfg.capture.camera_index)
        cfg.capture.period = max(0.005, _env_float("CAPTURE_PERIOD", cfg.capture.period))
        cfg.gaze.hold_timeout = max(0.0, _env_float("GAZE_HOLD_TIMEOUT", cfg.gaze.hold_timeout))
        cfg.gaze.neutral_mode = os.getenv("GAZE_NEUTRAL_MODE", cfg.gaze.neutral_mode)
        cfg.render.width = _env_int("KIOSK_WIDTH", cfg.render.width)
        cfg.render.height = _env_int("KIOSK_HEIGHT", cfg.render.height)
        cfg.audio.enabled = not _env_flag("DISABLE_AUDIO")
        cfg.audio.device = os.getenv("AUDIO_INPUT_DEVICE") or None
        return cfg
