"""Resource lifecycle manager: the single owner of camera, model and scene resources.

Acquisition runs camera -> inference session -> scene resources, rolling back
in reverse on failure. Release stops the capture timer first, settles or
cancels the in-flight cycle, then releases the camera, disposes the scene
and finally closes the inference session. A camera or session whose native
call is still stuck is released on the bridge worker right behind that call.
Release never raises.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Callable, Optional

from kiosk_avatar.audio import AudioAnalysisNode, AudioVisualizer
from kiosk_avatar.bridge import HostBridge
from kiosk_avatar.camera import CameraAdapter, CameraService, FormatSpec
from kiosk_avatar.config import AudioConfig, KioskConfig
from kiosk_avatar.errors import ResourceAcquisitionError
from kiosk_avatar.gaze import GazeCalibrator, GazeSlot
from kiosk_avatar.landmarks import (
    INFERENCE_TAG,
    EngineFactory,
    LandmarkAdapter,
    LandmarkEngine,
    close_session,
)
from kiosk_avatar.loops import AudioLoop, RenderLoop
from kiosk_avatar.scene import SceneHost, SceneSynchronizer
from kiosk_avatar.scheduler import CaptureScheduler

logger = logging.getLogger(__name__)

AudioFactory = Callable[[AudioConfig], AudioAnalysisNode]


class LifecycleState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    RELEASING = "releasing"
    RELEASED = "released"
    FAULTED = "faulted"


class ResourceLifecycleManager:
    def __init__(
        self,
        config: KioskConfig,
        camera_service: CameraService,
        engine_factory: EngineFactory,
        scene_host: SceneHost,
        audio_factory: Optional[AudioFactory] = None,
        bridge: Optional[HostBridge] = None,
        clock: Callable[[], float] = time.monotonic,
        acquire_timeout: Optional[float] = None,
    ) -> None:
        self.config = config
        self._camera_service = camera_service
        self._engine_factory = engine_factory
        self._audio_factory = audio_factory
        self.host = scene_host
        self.bridge = bridge or HostBridge()
        self.acquire_timeout = acquire_timeout
        self._clock = clock

        self.state = LifecycleState.UNINITIALIZED
        self.fault: Optional[BaseException] = None
        self.static = False
        self.slot = GazeSlot(config.gaze.hold_timeout, clock)
        self.synchronizer = SceneSynchronizer(scene_host.scene, config.render)
        self.visualizer = AudioVisualizer(None, config.audio)
        self.render_loop = RenderLoop(
            scene_host,
            self.synchronizer,
            self.slot,
            rings=lambda: self.visualizer.latest,
            period=config.render.period,
            clock=clock,
        )
        self.audio_loop = AudioLoop(self.visualizer, config.render.period)

        self.camera: Optional[CameraAdapter] = None
        self.engine: Optional[LandmarkEngine] = None
        self.scheduler: Optional[CaptureScheduler] = None
        self._gpu_ready = False
        self._fault_task: Optional[asyncio.Task] = None
        self._release_task: Optional[asyncio.Task] = None

    def _transition(self, state: LifecycleState) -> None:
        if state is self.state:
            return
        logger.info("Lifecycle %s -> %s", self.state.value, state.value)
        self.state = state

    # -- acquisition ---------------------------------------------------

    async def activate(self) -> None:
        """Acquire everything and start the three loops.

        Raises ``ResourceAcquisitionError`` after rolling back whatever was
        already acquired; the manager is then Faulted. Cancellation rolls
        back the same way and propagates unchanged.
        """
        if self.state is not LifecycleState.UNINITIALIZED:
            raise RuntimeError(f"cannot activate from {self.state.value}")
        self._transition(LifecycleState.INITIALIZING)
        await self._acquire(with_gpu=True)
        self._open_audio()
        self.render_loop.start()
        self.audio_loop.start()
        self._start_capture()
        self._transition(LifecycleState.ACTIVE)

    async def recover(self) -> None:
        """Re-acquire camera and session after a capture fault and resume tracking.

        Only valid while Faulted with the scene still up; the static avatar
        keeps drawing throughout. A failed attempt rolls back and leaves the
        manager Faulted, so it can be retried.
        """
        if self.state is not LifecycleState.FAULTED or not self._gpu_ready:
            raise RuntimeError(f"cannot recover from {self.state.value}")
        if self._fault_task is not None:
            await asyncio.gather(self._fault_task, return_exceptions=True)
            self._fault_task = None
        self._transition(LifecycleState.INITIALIZING)
        await self._acquire(with_gpu=False)
        self.fault = None
        self.static = False
        self._start_capture()
        self._transition(LifecycleState.ACTIVE)
        logger.info("Gaze tracking recovered")

    async def _acquire(self, with_gpu: bool) -> None:
        cfg = self.config
        stage = "camera"
        try:
            camera = CameraAdapter(
                self._camera_service,
                self.bridge,
                cfg.capture.camera_index,
                FormatSpec.from_config(cfg.capture),
                timeout=cfg.capture.capture_timeout,
            )
            await camera.open(timeout=self.acquire_timeout)
            self.camera = camera

            stage = "inference session"
            self.engine = await self.bridge.call(
                self._engine_factory,
                cfg.inference,
                timeout=self.acquire_timeout,
                tag=INFERENCE_TAG,
                discard=close_session,
            )

            if with_gpu:
                stage = "scene resources"
                self._create_gpu()
        except BaseException as exc:
            await self._rollback(with_gpu)
            self.fault = exc
            self._transition(LifecycleState.FAULTED)
            if not isinstance(exc, Exception):
                logger.warning("Acquiring %s interrupted; rolled back", stage)
                raise
            logger.error("Acquiring %s failed: %s", stage, exc)
            raise ResourceAcquisitionError(stage, exc) from exc

    def _start_capture(self) -> None:
        cfg = self.config
        self.scheduler = CaptureScheduler(
            self.camera,
            LandmarkAdapter(self.engine, self.bridge, cfg.capture.effective_inference_timeout),
            self.slot,
            cfg.capture,
            cfg.gaze,
            GazeCalibrator(cfg.gaze.neutral_mode, cfg.gaze),
            on_fatal=self._on_fatal,
            clock=self._clock,
        )
        self.scheduler.start()

    async def run_static(self) -> None:
        """Draw the neutral avatar without any capture pipeline."""
        if self.state in (LifecycleState.RELEASING, LifecycleState.RELEASED):
            raise RuntimeError("manager already released")
        if not self._gpu_ready:
            self._create_gpu()
        if self.visualizer.node is None:
            self._open_audio()
        self.static = True
        self.render_loop.start()
        self.audio_loop.start()
        logger.info("Running static avatar (no gaze tracking)")

    def _create_gpu(self) -> None:
        self.host.create_resources()
        self._gpu_ready = True

    def _open_audio(self) -> None:
        if self._audio_factory is None or not self.config.audio.enabled:
            return
        try:
            self.visualizer.attach(self._audio_factory(self.config.audio))
        except Exception as exc:
            logger.warning("Audio input unavailable, rings stay idle: %s", exc)

    async def _rollback(self, with_gpu: bool) -> None:
        if with_gpu and self._gpu_ready:
            self._dispose_gpu()
        await self._close_engine()
        await self._close_camera()

    # -- faults --------------------------------------------------------

    def _on_fatal(self, exc: BaseException) -> None:
        if self.state is not LifecycleState.ACTIVE:
            return
        self.fault = exc
        self._transition(LifecycleState.FAULTED)
        logger.warning("Gaze tracking lost; continuing with the static avatar")
        self._fault_task = asyncio.ensure_future(self._release_capture())

    async def _release_capture(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop(self.config.capture.release_grace)
        await self._close_camera()
        await self._close_engine()

    # -- release -------------------------------------------------------

    async def release(self) -> None:
        """Tear everything down in order. Safe to call more than once."""
        if self._release_task is None:
            self._release_task = asyncio.ensure_future(self._release())
        await asyncio.shield(self._release_task)

    async def _release(self) -> None:
        self._transition(LifecycleState.RELEASING)
        grace = self.config.capture.release_grace
        if self._fault_task is not None:
            await asyncio.gather(self._fault_task, return_exceptions=True)

        if self.scheduler is not None:
            try:
                await self.scheduler.stop(grace)
            except Exception:
                logger.warning("Stopping the capture scheduler failed", exc_info=True)
        self.slot.close()
        await self._close_camera()

        await self.render_loop.stop()
        await self.audio_loop.stop()
        if self._gpu_ready:
            self._dispose_gpu()

        await self._close_engine()

        node = self.visualizer.detach()
        if node is not None:
            try:
                node.close()
            except Exception:
                logger.warning("Closing audio input failed", exc_info=True)
        self.bridge.close()
        self._transition(LifecycleState.RELEASED)

    async def _close_camera(self) -> None:
        camera, self.camera = self.camera, None
        if camera is not None:
            await camera.close(self.config.capture.release_grace)

    def _dispose_gpu(self) -> None:
        self._gpu_ready = False
        try:
            self.host.dispose()
        except Exception:
            logger.warning("Disposing scene resources failed", exc_info=True)

    async def _close_engine(self) -> None:
        engine, self.engine = self.engine, None
        if engine is None:
            return
        closed = await self.bridge.run_when_idle(
            lambda: close_session(engine), self.config.capture.release_grace, tag=INFERENCE_TAG
        )
        if not closed:
            logger.warning("Inference call still running; closing the session once it returns")

    # -- reporting -----------------------------------------------------

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "static": self.static,
            "fault": None if self.fault is None else str(self.fault),
            "pipeline": None if self.scheduler is None else self.scheduler.health.as_dict(),
            "gaze_version": self.slot.version,
            "gaze_staleness": self.slot.staleness(self._clock()),
            "render_ticks": self.render_loop.ticks,
            "audio_idle": self.visualizer.latest.idle,
            "bridge": {
                "calls": self.bridge.calls,
                "timeouts": self.bridge.timeouts,
                "busy": self.bridge.busy,
            },
        }

    async def __aenter__(self) -> "ResourceLifecycleManager":
        await self.activate()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
