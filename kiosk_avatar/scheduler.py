"""Capture scheduler: camera -> conversion -> landmarks -> gaze, on a fixed period.

At most one cycle is in flight. A tick that finds the previous cycle (or a
call it abandoned on the host bridge) still running is skipped and counted.
Consecutive failures widen the tick interval exponentially up to a cap.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from kiosk_avatar.camera import CameraAdapter
from kiosk_avatar.config import CaptureConfig, GazeConfig
from kiosk_avatar.convert import convert_frame
from kiosk_avatar.errors import (
    CameraUnavailableError,
    CaptureError,
    FrameConversionError,
    InferenceError,
)
from kiosk_avatar.gaze import GazeCalibrator, GazeSlot, GazeVector, compute_gaze
from kiosk_avatar.landmarks import LandmarkAdapter, NoFaceDetected

logger = logging.getLogger(__name__)


class PipelineState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPED = "stopped"


class CycleOutcome(enum.Enum):
    ACCEPTED = "accepted"
    NO_FACE = "no_face"
    REJECTED = "rejected"
    CAPTURE_FAILED = "capture_failed"
    INFERENCE_FAILED = "inference_failed"
    FATAL = "fatal"
    DISCARDED = "discarded"


@dataclass
class PipelineHealth:
    consecutive_capture_failures: int = 0
    consecutive_inference_failures: int = 0
    state: PipelineState = PipelineState.IDLE
    cycles: int = 0
    skipped_ticks: int = 0
    accepted: int = 0
    rejected: int = 0
    no_face: int = 0
    capture_failures: int = 0
    inference_failures: int = 0
    discarded: int = 0
    held_eyes: int = 0
    last_error: Optional[str] = None

    @property
    def consecutive_failures(self) -> int:
        return max(self.consecutive_capture_failures, self.consecutive_inference_failures)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class CaptureScheduler:
    def __init__(
        self,
        camera: CameraAdapter,
        inference: LandmarkAdapter,
        slot: GazeSlot,
        capture_config: Optional[CaptureConfig] = None,
        gaze_config: Optional[GazeConfig] = None,
        calibrator: Optional[GazeCalibrator] = None,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        convert: Callable = convert_frame,
    ) -> None:
        self._camera = camera
        self._inference = inference
        self._slot = slot
        self.capture_config = capture_config or CaptureConfig()
        self.gaze_config = gaze_config or GazeConfig()
        self.calibrator = calibrator or GazeCalibrator(self.gaze_config.neutral_mode, self.gaze_config)
        self._on_fatal = on_fatal
        self._clock = clock
        self._convert = convert
        self.health = PipelineHealth()
        self.last_outcome: Optional[CycleOutcome] = None
        self._generation = 0
        self._cycle: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None

    @property
    def state(self) -> PipelineState:
        return self.health.state

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    def in_flight(self) -> bool:
        return self.cycle_in_progress or self._camera.busy or self._inference.busy

    def current_interval(self) -> float:
        cfg = self.capture_config
        failures = self.health.consecutive_failures
        if failures < cfg.failure_threshold:
            return cfg.period
        exponent = failures - cfg.failure_threshold + 1
        return min(cfg.period * (2 ** exponent), cfg.max_interval)

    # -- ticking -------------------------------------------------------

    def tick(self) -> Optional[asyncio.Task]:
        """Start one cycle unless one is outstanding; never queues."""
        if self.health.state is PipelineState.STOPPED:
            return None
        if self.in_flight():
            self.health.skipped_ticks += 1
            logger.debug("Capture tick skipped (%d so far)", self.health.skipped_ticks)
            return None
        self._cycle = asyncio.ensure_future(self.run_cycle())
        self._cycle.add_done_callback(self._cycle_done)
        return self._cycle

    def _cycle_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Capture cycle crashed", exc_info=exc)

    async def run_cycle(self) -> CycleOutcome:
        outcome = await self._cycle_body(self._generation)
        self.last_outcome = outcome
        if outcome is CycleOutcome.DISCARDED:
            self.health.discarded += 1
            logger.debug("Late capture result discarded")
        return outcome

    async def _cycle_body(self, generation: int) -> CycleOutcome:
        health = self.health
        health.cycles += 1

        def stale() -> bool:
            return generation != self._generation

        try:
            frame = await self._camera.capture()
        except CameraUnavailableError as exc:
            if stale():
                return CycleOutcome.DISCARDED
            self._fatal(exc)
            return CycleOutcome.FATAL
        except CaptureError as exc:
            if stale():
                return CycleOutcome.DISCARDED
            return self._capture_failed(exc)
        if stale():
            return CycleOutcome.DISCARDED

        try:
            rgb = self._convert(frame)
        except FrameConversionError as exc:
            return self._capture_failed(exc)
        health.consecutive_capture_failures = 0

        try:
            result = await self._inference.infer(rgb)
        except InferenceError as exc:
            if stale():
                return CycleOutcome.DISCARDED
            return self._inference_failed(exc)
        if stale():
            return CycleOutcome.DISCARDED

        if isinstance(result, NoFaceDetected):
            # A valid negative: the slot's hold timeout handles recentring.
            health.no_face += 1
            health.consecutive_inference_failures = 0
            self._refresh_state()
            return CycleOutcome.NO_FACE
        if result.partial:
            health.rejected += 1
            self._inference_failed(f"partial landmark set ({len(result)} points)")
            return CycleOutcome.REJECTED

        gaze = compute_gaze(result, self.calibrator.reference, self.gaze_config)
        threshold = self.gaze_config.confidence_threshold
        left_ok = gaze.left.confidence >= threshold
        right_ok = gaze.right.confidence >= threshold
        both_ok = left_ok and right_ok
        # Calibration needs both eyes; otherwise a single good eye is enough.
        if not (left_ok or right_ok) or (not both_ok and self.calibrator.needs_calibration):
            health.rejected += 1
            self._inference_failed(f"gaze confidence {gaze.confidence:.2f} below threshold")
            return CycleOutcome.REJECTED
        if self.calibrator.needs_calibration:
            self.calibrator.calibrate(result)
            gaze = compute_gaze(result, self.calibrator.reference, self.gaze_config)
        elif not both_ok:
            # One eye is unreliable (blink, occlusion): it keeps its last accepted offset.
            held = self._slot.read(self._clock())
            gaze = GazeVector(
                left=gaze.left if left_ok else held.left,
                right=gaze.right if right_ok else held.right,
                timestamp=gaze.timestamp,
            )
            health.held_eyes += 1

        health.consecutive_inference_failures = 0
        self._refresh_state()
        if self._slot.publish(gaze, self._clock()):
            health.accepted += 1
        return CycleOutcome.ACCEPTED

    # -- bookkeeping ---------------------------------------------------

    def _capture_failed(self, exc) -> CycleOutcome:
        self.health.consecutive_capture_failures += 1
        self.health.capture_failures += 1
        self.health.last_error = str(exc)
        logger.debug("Capture failed (%d in a row): %s", self.health.consecutive_capture_failures, exc)
        self._refresh_state()
        return CycleOutcome.CAPTURE_FAILED

    def _inference_failed(self, exc) -> CycleOutcome:
        self.health.consecutive_inference_failures += 1
        self.health.inference_failures += 1
        self.health.last_error = str(exc)
        logger.debug("Inference failed (%d in a row): %s", self.health.consecutive_inference_failures, exc)
        self._refresh_state()
        return CycleOutcome.INFERENCE_FAILED

    def _refresh_state(self) -> None:
        health = self.health
        if health.state is PipelineState.STOPPED:
            return
        if health.consecutive_failures >= self.capture_config.failure_threshold:
            if health.state is not PipelineState.DEGRADED:
                logger.warning(
                    "Capture pipeline degraded after %d consecutive failures; retrying every %.2fs",
                    health.consecutive_failures,
                    self.current_interval(),
                )
                health.state = PipelineState.DEGRADED
        elif health.state is PipelineState.DEGRADED:
            logger.info("Capture pipeline recovered")
            health.state = PipelineState.RUNNING

    def _fatal(self, exc: BaseException) -> None:
        logger.error("Camera permanently unavailable: %s", exc)
        self.health.state = PipelineState.STOPPED
        self.health.last_error = str(exc)
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        if self._on_fatal is not None:
            self._on_fatal(exc)

    # -- control -------------------------------------------------------

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while self.health.state is not PipelineState.STOPPED:
            self.tick()
            next_at += self.current_interval()
            delay = next_at - loop.time()
            if delay < 0:
                next_at = loop.time()
                delay = 0.0
            await asyncio.sleep(delay)

    def start(self) -> bool:
        if self.running:
            return True
        if self.health.state is PipelineState.STOPPED:
            logger.warning("Capture scheduler is stopped; call restart() to resume")
            return False
        if self.health.state is PipelineState.IDLE:
            self.health.state = PipelineState.RUNNING
        self._timer = asyncio.ensure_future(self._run())
        logger.info("Capture scheduler started (period %.3fs)", self.capture_config.period)
        return True

    async def stop(self, grace: Optional[float] = None) -> bool:
        """Stop ticking, then wait up to ``grace`` for the in-flight cycle.

        Returns False when the cycle had to be cancelled. Anything that cycle
        produces afterwards is discarded.
        """
        self.health.state = PipelineState.STOPPED
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
        self._generation += 1

        cycle = self._cycle
        if cycle is None or cycle.done() or cycle is asyncio.current_task():
            return True
        done, _ = await asyncio.wait({cycle}, timeout=grace)
        if done:
            return True
        logger.info("Cancelling in-flight capture cycle")
        cycle.cancel()
        await asyncio.gather(cycle, return_exceptions=True)
        return False

    def restart(self) -> bool:
        """Resume ticking on the same camera and session after ``stop``.

        After a camera loss the adapter is already closed; recovering from
        that is ``ResourceLifecycleManager.recover``, which builds a new
        scheduler around freshly acquired resources.
        """
        if self.running:
            return True
        self.health.state = PipelineState.IDLE
        self.health.consecutive_capture_failures = 0
        self.health.consecutive_inference_failures = 0
        self.calibrator.reset()
        return self.start()
