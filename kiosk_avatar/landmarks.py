"""FaceMesh landmark inference and the adapter that bounds it."""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Union

import numpy as np

from kiosk_avatar.bridge import HostBridge
from kiosk_avatar.config import InferenceOptions
from kiosk_avatar.errors import BridgeClosedError, BridgeTimeoutError, InferenceError

logger = logging.getLogger(__name__)

INFERENCE_TAG = "inference"

# FaceMesh topology (refine_landmarks=True adds the ten iris points).
LEFT_EYE = (33, 160, 158, 133, 153, 144)
RIGHT_EYE = (263, 387, 385, 362, 380, 373)
LEFT_IRIS = (468, 469, 470, 471, 472)
RIGHT_IRIS = (473, 474, 475, 476, 477)
BASE_MESH_POINTS = 468
FULL_MESH_POINTS = 478


@dataclass(frozen=True)
class LandmarkSet:
    """Normalized (x, y, z) points for one face, in FaceMesh index order."""

    points: np.ndarray
    score: float = 1.0
    timestamp: float = 0.0

    def __len__(self) -> int:
        return int(self.points.shape[0])

    @property
    def partial(self) -> bool:
        return len(self) < FULL_MESH_POINTS


@dataclass(frozen=True)
class NoFaceDetected:
    timestamp: float = 0.0


InferenceResult = Union[LandmarkSet, NoFaceDetected]


class LandmarkEngine(Protocol):
    def infer(self, rgb: np.ndarray) -> InferenceResult: ...

    def close(self) -> None: ...


class FaceMeshEngine:
    """MediaPipe FaceMesh, tracking a single face across calls."""

    def __init__(self, mesh, options: InferenceOptions) -> None:
        self._mesh = mesh
        self.options = options

    @classmethod
    def open(cls, options: InferenceOptions) -> "FaceMeshEngine":
        import mediapipe as mp

        face_mesh = mp.solutions.face_mesh
        mesh_kwargs = {
            "static_image_mode": False,
            "max_num_faces": options.max_num_faces,
            "refine_landmarks": options.refine_landmarks,
            "min_detection_confidence": options.min_detection_confidence,
            "min_tracking_confidence": options.min_tracking_confidence,
            "model_complexity": options.model_complexity,
            "smooth_landmarks": options.smooth_landmarks,
        }
        supported = set(inspect.signature(face_mesh.FaceMesh).parameters.keys())
        dropped = sorted(k for k in mesh_kwargs if k not in supported)
        if dropped:
            logger.debug("FaceMesh ignores options: %s", ", ".join(dropped))
        mesh_kwargs = {k: v for k, v in mesh_kwargs.items() if k in supported}
        mesh = face_mesh.FaceMesh(**mesh_kwargs)
        logger.info("FaceMesh session ready (refine_landmarks=%s)", options.refine_landmarks)
        return cls(mesh, options)

    def infer(self, rgb: np.ndarray) -> InferenceResult:
        now = time.monotonic()
        output = self._mesh.process(rgb)
        if not output.multi_face_landmarks:
            return NoFaceDetected(timestamp=now)
        landmarks = output.multi_face_landmarks[0].landmark
        points = np.array([[lm.x, lm.y, lm.z] for lm in landmarks], dtype=np.float32)
        # FaceMesh only reports a face once it clears the detection/tracking floors.
        return LandmarkSet(points=points, score=1.0, timestamp=now)

    def close(self) -> None:
        self._mesh.close()


class LandmarkAdapter:
    """Runs the engine over the host bridge with a per-call deadline."""

    def __init__(self, engine: LandmarkEngine, bridge: HostBridge, timeout: float) -> None:
        self._engine = engine
        self._bridge = bridge
        self.timeout = timeout

    @property
    def busy(self) -> bool:
        return self._bridge.busy

    async def infer(self, rgb: np.ndarray) -> InferenceResult:
        try:
            result = await self._bridge.call(
                self._engine.infer, rgb, timeout=self.timeout, tag=INFERENCE_TAG
            )
        except BridgeTimeoutError as exc:
            raise InferenceError(f"inference timed out: {exc}") from exc
        except BridgeClosedError as exc:
            raise InferenceError("inference session closed") from exc
        except InferenceError:
            raise
        except Exception as exc:
            raise InferenceError(f"landmark engine failed: {exc!r}") from exc
        if not isinstance(result, (LandmarkSet, NoFaceDetected)):
            raise InferenceError(f"landmark engine returned {type(result).__name__}")
        return result


EngineFactory = Callable[[InferenceOptions], LandmarkEngine]


def open_face_mesh(options: Optional[InferenceOptions] = None) -> FaceMeshEngine:
    return FaceMeshEngine.open(options or InferenceOptions())


def close_session(engine: LandmarkEngine) -> None:
    """Close an inference session; a failure is logged, not raised."""
    try:
        engine.close()
        logger.info("Inference session closed")
    except Exception:
        logger.warning("Closing the inference session failed", exc_info=True)
