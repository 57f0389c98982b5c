import asyncio

import pytest

from conftest import FakeCameraService, FakeEngine, FakeSceneHost, make_landmarks
from kiosk_avatar.bridge import HostBridge
from kiosk_avatar.camera import CameraAdapter, FormatSpec
from kiosk_avatar.config import CaptureConfig, GazeConfig, RenderConfig
from kiosk_avatar.gaze import GazeSlot
from kiosk_avatar.landmarks import LandmarkAdapter
from kiosk_avatar.loops import RenderLoop
from kiosk_avatar.scene import SceneSynchronizer
from kiosk_avatar.scheduler import CaptureScheduler, CycleOutcome


def test_five_frames_drive_left_eye_then_recentre(clock):
    render = RenderConfig(smoothing_alpha=0.35, ball_travel=0.12)
    gaze_config = GazeConfig(hold_timeout=1.5)
    capture = CaptureConfig(period=0.05, capture_timeout=1.0, inference_timeout=1.0)
    host = FakeSceneHost()
    slot = GazeSlot(gaze_config.hold_timeout, clock)
    loop = RenderLoop(host, SceneSynchronizer(host.scene, render), slot, period=render.period, clock=clock)
    ball = host.scene.node("ballL").transform
    target = 0.1 * render.ball_travel

    async def feed_frames():
        bridge = HostBridge("e2e")
        camera = CameraAdapter(FakeCameraService(), bridge, 0, FormatSpec.from_config(capture))
        engine = FakeEngine(result=lambda: make_landmarks(dx=0.1, score=0.9, timestamp=clock()))
        scheduler = CaptureScheduler(
            camera,
            LandmarkAdapter(engine, bridge, capture.effective_inference_timeout),
            slot,
            capture,
            gaze_config,
            clock=clock,
        )
        await camera.open()
        try:
            for _ in range(5):
                assert await scheduler.run_cycle() is CycleOutcome.ACCEPTED
                gaze = slot.read()
                assert gaze.left.offset_x == pytest.approx(0.1)
                assert gaze.left.confidence == pytest.approx(0.9)
                # Three render ticks per capture period (60 Hz vs 20 Hz).
                for _ in range(3):
                    loop.step()
                    clock.advance(render.period)
        finally:
            await camera.close()
            bridge.close()

    asyncio.run(feed_frames())
    # 15 ticks of alpha 0.35 leaves less than 0.2% of the distance.
    assert ball.x == pytest.approx(target, rel=5e-3)
    assert host.presents == 15

    # Frames stop. The last gaze is held until the hold timeout, then neutral.
    held_until = clock() + 1.0
    while clock() < held_until:
        loop.step()
        clock.advance(render.period)
    assert ball.x == pytest.approx(target, rel=5e-3)

    clock.advance(gaze_config.hold_timeout)
    for _ in range(60):
        loop.step()
        clock.advance(render.period)
    assert ball.x == pytest.approx(0.0, abs=1e-6)
