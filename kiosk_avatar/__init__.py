"""Gaze-tracking kiosk avatar."""

from kiosk_avatar.config import KioskConfig
from kiosk_avatar.gaze import NEUTRAL_GAZE, EyeGaze, GazeVector, compute_gaze
from kiosk_avatar.lifecycle import LifecycleState, ResourceLifecycleManager
from kiosk_avatar.scheduler import CaptureScheduler, PipelineHealth, PipelineState

__version__ = "0.1.0"

__all__ = [
    "CaptureScheduler",
    "EyeGaze",
    "GazeVector",
    "KioskConfig",
    "LifecycleState",
    "NEUTRAL_GAZE",
    "PipelineHealth",
    "PipelineState",
    "ResourceLifecycleManager",
    "compute_gaze",
]
