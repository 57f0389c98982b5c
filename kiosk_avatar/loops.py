"""Render and audio loops, each an independently clocked asyncio task."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from kiosk_avatar.audio import AudioVisualizer, RingFrame
from kiosk_avatar.gaze import GazeSlot
from kiosk_avatar.scene import SceneHost, SceneSynchronizer

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Calls ``step`` every ``period`` seconds until stopped.

    A failing step is logged and the loop carries on with the next one.
    """

    def __init__(self, name: str, period: float) -> None:
        self.name = name
        self.period = period
        self.ticks = 0
        self.errors = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def step(self) -> None:
        raise NotImplementedError

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while True:
            try:
                self.step()
            except Exception:
                self.errors += 1
                if self.errors == 1 or self.errors % 100 == 0:
                    logger.exception("%s loop step failed (%d errors)", self.name, self.errors)
            self.ticks += 1
            next_at += self.period
            delay = next_at - loop.time()
            if delay < 0:
                # Fell behind; don't try to catch up with a burst of steps.
                next_at = loop.time()
                delay = 0.0
            await asyncio.sleep(delay)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._run())
        logger.debug("%s loop started at %.1f Hz", self.name, 1.0 / self.period)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.debug("%s loop stopped after %d ticks", self.name, self.ticks)


class RenderLoop(PeriodicTask):
    """Reads the latest gaze, eases the eye nodes toward it, then presents."""

    def __init__(
        self,
        host: SceneHost,
        synchronizer: SceneSynchronizer,
        slot: GazeSlot,
        rings: Optional[Callable[[], RingFrame]] = None,
        period: float = 1.0 / 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__("render", period)
        self.host = host
        self.synchronizer = synchronizer
        self.slot = slot
        self.rings = rings
        self._clock = clock

    def step(self) -> None:
        gaze = self.slot.read(self._clock())
        self.synchronizer.step(gaze)
        self.host.present(self.rings() if self.rings is not None else None)


class AudioLoop(PeriodicTask):
    def __init__(self, visualizer: AudioVisualizer, period: float = 1.0 / 60.0) -> None:
        super().__init__("audio", period)
        self.visualizer = visualizer

    def step(self) -> None:
        self.visualizer.sample()
