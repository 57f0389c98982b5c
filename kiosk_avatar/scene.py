"""Avatar scene graph and the synchronizer that drives the eye nodes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Protocol, Tuple

from kiosk_avatar.config import RenderConfig
from kiosk_avatar.gaze import GazeVector

logger = logging.getLogger(__name__)

EYE_NODES = ("ballL", "ballR", "irisL", "irisR")


class SceneDisposedError(RuntimeError):
    pass


@dataclass
class Transform:
    """Local offset from the node's anchor, plus yaw/pitch in degrees."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    yaw: float = 0.0
    pitch: float = 0.0

    def as_tuple(self) -> Tuple[float, float, float, float, float]:
        return (self.x, self.y, self.z, self.yaw, self.pitch)


@dataclass
class MeshNode:
    name: str
    anchor: Tuple[float, float, float]
    radius: float
    transform: Transform = field(default_factory=Transform)


class SceneState:
    """Named mesh nodes. Only transforms are writable; structure is fixed at build time."""

    def __init__(self, nodes: Iterable[MeshNode]) -> None:
        self._nodes: Dict[str, MeshNode] = {n.name: n for n in nodes}
        self._frozen = False
        self.writes = 0

    @property
    def frozen(self) -> bool:
        return self._frozen

    def names(self) -> Tuple[str, ...]:
        return tuple(self._nodes)

    def node(self, name: str) -> MeshNode:
        return self._nodes[name]

    def set_transform(self, name: str, x: float, y: float, z: float, yaw: float, pitch: float) -> None:
        if self._frozen:
            raise SceneDisposedError(f"write to {name!r} after the scene was disposed")
        t = self._nodes[name].transform
        t.x, t.y, t.z, t.yaw, t.pitch = x, y, z, yaw, pitch
        self.writes += 1

    def freeze(self) -> None:
        self._frozen = True


def build_avatar_scene(eye_spacing: float = 0.55, eye_height: float = -0.2) -> SceneState:
    return SceneState(
        [
            MeshNode("ballL", (-eye_spacing, eye_height, 0.0), radius=0.32),
            MeshNode("ballR", (eye_spacing, eye_height, 0.0), radius=0.32),
            MeshNode("irisL", (-eye_spacing, eye_height, -0.05), radius=0.13),
            MeshNode("irisR", (eye_spacing, eye_height, -0.05), radius=0.13),
        ]
    )


class SceneHost(Protocol):
    scene: SceneState

    def create_resources(self) -> None: ...

    def present(self, rings=None) -> None: ...

    def dispose(self) -> None: ...


def _clamp(value: float, limit: float) -> float:
    return max(-limit, min(limit, value))


class SceneSynchronizer:
    """Eases the four eye nodes toward the current gaze with a fixed-alpha EMA."""

    def __init__(self, scene: SceneState, config: Optional[RenderConfig] = None) -> None:
        self.scene = scene
        self.config = config or RenderConfig()
        self._smoothed: Dict[str, Tuple[float, ...]] = {
            name: scene.node(name).transform.as_tuple() for name in EYE_NODES
        }

    def targets(self, gaze: GazeVector) -> Dict[str, Tuple[float, float, float, float, float]]:
        cfg = self.config
        out = {}
        for side, eye in (("L", gaze.left), ("R", gaze.right)):
            cx = _clamp(eye.offset_x, cfg.max_offset)
            cy = _clamp(eye.offset_y, cfg.max_offset)
            cz = _clamp(eye.offset_z, cfg.max_offset)
            yaw = cx / max(1e-6, cfg.max_offset) * cfg.max_yaw_deg
            pitch = cy / max(1e-6, cfg.max_offset) * cfg.max_pitch_deg
            for prefix, travel in (("ball", cfg.ball_travel), ("iris", cfg.iris_travel)):
                out[prefix + side] = (cx * travel, cy * travel, cz * travel, yaw, pitch)
        return out

    def step(self, gaze: GazeVector) -> None:
        alpha = self.config.smoothing_alpha
        for name, target in self.targets(gaze).items():
            prev = self._smoothed[name]
            eased = tuple(p + alpha * (t - p) for p, t in zip(prev, target))
            self._smoothed[name] = eased
            self.scene.set_transform(name, *eased)

    def reset(self) -> None:
        for name in EYE_NODES:
            self._smoothed[name] = (0.0, 0.0, 0.0, 0.0, 0.0)
