"""Pygame scene host: draws the avatar's eyes and the audio rings."""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional, Tuple

import pygame

from kiosk_avatar.audio import RingFrame
from kiosk_avatar.config import RenderConfig
from kiosk_avatar.scene import EYE_NODES, SceneState, build_avatar_scene

logger = logging.getLogger(__name__)

# Eye whites are tall ellipses, as on the original face.
EYE_ASPECT = (0.9, 1.45)
RING_DEPTH_STEP = 0.08


class PygameSceneHost:
    """Owns the display surface and the pre-rendered eye sprites.

    The sprites stand in for GPU buffers: they exist between
    ``create_resources`` and ``dispose``. ``present`` after ``dispose`` draws
    nothing and never touches the scene.
    """

    def __init__(
        self,
        config: Optional[RenderConfig] = None,
        scene: Optional[SceneState] = None,
        surface: Optional[pygame.Surface] = None,
    ) -> None:
        self.config = config or RenderConfig()
        self.scene = scene or build_avatar_scene()
        self._surface = surface
        self._owns_display = surface is None
        self._sprites: Dict[str, pygame.Surface] = {}
        self._disposed = False
        self.frames = 0

    @property
    def ready(self) -> bool:
        return bool(self._sprites) and not self._disposed

    @property
    def focal(self) -> float:
        return self._surface.get_height() * 1.6

    def create_resources(self) -> None:
        if self._disposed:
            raise RuntimeError("scene host was disposed")
        if self._surface is None:
            flags = pygame.FULLSCREEN if self.config.fullscreen else 0
            self._surface = pygame.display.set_mode((self.config.width, self.config.height), flags)
            pygame.display.set_caption("kiosk avatar")
            pygame.mouse.set_visible(not self.config.fullscreen)
        for name in EYE_NODES:
            node = self.scene.node(name)
            px = max(2, int(round(self.focal * node.radius / self.config.depth_offset)))
            if name.startswith("ball"):
                w, h = int(px * 2 * EYE_ASPECT[0]), int(px * 2 * EYE_ASPECT[1])
                sprite = pygame.Surface((w, h), pygame.SRCALPHA)
                pygame.draw.ellipse(sprite, self.config.eye_color, sprite.get_rect())
            else:
                sprite = pygame.Surface((px * 2, px * 2), pygame.SRCALPHA)
                pygame.draw.circle(sprite, self.config.iris_color, (px, px), px)
            self._sprites[name] = sprite
        logger.info("Scene resources created (%dx%d)", self._surface.get_width(), self._surface.get_height())

    def project(self, point: Tuple[float, float, float]) -> Tuple[float, float, float]:
        """Pinhole projection of a scene point; returns (x, y, scale) in pixels."""
        x, y, z = point
        depth = max(1e-3, z + self.config.depth_offset)
        scale = self.config.depth_offset / depth
        f = self.focal
        cx = self._surface.get_width() / 2.0
        cy = self._surface.get_height() / 2.0
        return cx + f * x / depth, cy + f * y / depth, scale

    def _blit_node(self, name: str) -> None:
        node = self.scene.node(name)
        t = node.transform
        ax, ay, az = node.anchor
        sx, sy, scale = self.project((ax + t.x, ay + t.y, az + t.z))
        sprite = self._sprites[name]
        w, h = sprite.get_size()
        if name.startswith("iris"):
            # Foreshorten the iris as the eye turns.
            w *= abs(math.cos(math.radians(t.yaw)))
            h *= abs(math.cos(math.radians(t.pitch)))
        size = (max(1, int(w * scale)), max(1, int(h * scale)))
        if size != sprite.get_size():
            sprite = pygame.transform.smoothscale(sprite, size)
        self._surface.blit(sprite, sprite.get_rect(center=(int(sx), int(sy))))

    def _draw_rings(self, rings: RingFrame) -> None:
        f = self.focal
        center = (self._surface.get_width() // 2, self._surface.get_height() // 2)
        for i, (radius, color) in enumerate(zip(rings.radii, rings.colors)):
            depth = self.config.depth_offset + 1.0 + i * RING_DEPTH_STEP
            px = int(f * radius / depth)
            if px > 1:
                pygame.draw.circle(self._surface, color, center, px, 1)

    def present(self, rings: Optional[RingFrame] = None) -> None:
        if not self.ready:
            return
        self._surface.fill(self.config.background)
        if rings is not None:
            self._draw_rings(rings)
        for name in ("ballL", "ballR", "irisL", "irisR"):
            self._blit_node(name)
        if self._owns_display:
            pygame.display.flip()
        self.frames += 1

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.scene.freeze()
        self._sprites.clear()
        logger.info("Scene resources disposed after %d frames", self.frames)
