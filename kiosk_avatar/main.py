"""Kiosk avatar runtime entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import time
from typing import Optional, Sequence

import pygame

from kiosk_avatar.audio import open_sounddevice_analyser
from kiosk_avatar.bridge import HostBridge
from kiosk_avatar.camera import CameraAdapter, FormatSpec, OpenCVCameraService, probe_cameras
from kiosk_avatar.config import KioskConfig
from kiosk_avatar.errors import KioskAvatarError, ResourceAcquisitionError
from kiosk_avatar.gaze import GazeSlot
from kiosk_avatar.landmarks import INFERENCE_TAG, LandmarkAdapter, close_session, open_face_mesh
from kiosk_avatar.lifecycle import LifecycleState, ResourceLifecycleManager
from kiosk_avatar.pygame_host import PygameSceneHost
from kiosk_avatar.scheduler import CaptureScheduler

logger = logging.getLogger(__name__)

EVENT_POLL_INTERVAL = 1.0 / 30.0
STATUS_LOG_INTERVAL = 30.0


async def _pump_events(manager: ResourceLifecycleManager) -> None:
    """Handle window events until the user quits; R retries vision after a fault."""
    last_status = time.monotonic()
    while True:
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                return
            if event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                return
            if event.type == pygame.KEYDOWN and event.key == pygame.K_r:
                if manager.state is not LifecycleState.FAULTED:
                    continue
                try:
                    await manager.recover()
                except ResourceAcquisitionError as exc:
                    logger.warning("Vision still unavailable: %s", exc)
        now = time.monotonic()
        if now - last_status >= STATUS_LOG_INTERVAL:
            last_status = now
            logger.info("Status: %s", manager.snapshot())
        await asyncio.sleep(EVENT_POLL_INTERVAL)


async def run_kiosk(config: KioskConfig) -> None:
    pygame.init()
    host = PygameSceneHost(config.render)
    manager = ResourceLifecycleManager(
        config,
        OpenCVCameraService(FormatSpec.from_config(config.capture)),
        open_face_mesh,
        host,
        audio_factory=open_sounddevice_analyser,
    )
    try:
        if config.vision_enabled:
            try:
                await manager.activate()
            except ResourceAcquisitionError as exc:
                logger.warning("Vision unavailable (%s); showing the static avatar.", exc)
                await manager.run_static()
        else:
            await manager.run_static()
        await _pump_events(manager)
    finally:
        await manager.release()
        pygame.quit()


async def run_vision_check(config: KioskConfig, duration: float = 8.0) -> dict:
    """
    Runs the capture pipeline alone for a short sampling window and prints stats.
    Useful for confirming the camera and FaceMesh work without opening a window.
    """
    duration = max(1.0, float(duration))
    bridge = HostBridge("vision-check")
    service = OpenCVCameraService(FormatSpec.from_config(config.capture))
    camera = CameraAdapter(
        service,
        bridge,
        config.capture.camera_index,
        FormatSpec.from_config(config.capture),
        timeout=config.capture.capture_timeout,
    )
    engine = None
    scheduler = None
    try:
        await camera.open()
        engine = await bridge.call(open_face_mesh, config.inference, tag=INFERENCE_TAG)
        slot = GazeSlot(config.gaze.hold_timeout)
        scheduler = CaptureScheduler(
            camera,
            LandmarkAdapter(engine, bridge, config.capture.effective_inference_timeout),
            slot,
            config.capture,
            config.gaze,
        )
        print(f"Running vision check for {duration:.1f}s on camera index {config.capture.camera_index}...")
        scheduler.start()
        await asyncio.sleep(duration)
        await scheduler.stop(config.capture.release_grace)
    finally:
        grace = config.capture.release_grace
        await camera.close(grace)
        if engine is not None:
            await bridge.run_when_idle(lambda: close_session(engine), grace, tag=INFERENCE_TAG)
        bridge.close()

    stats = scheduler.health.as_dict()
    print(
        f"Cycles: {stats['cycles']}, accepted: {stats['accepted']}, no face: {stats['no_face']}, "
        f"rejected: {stats['rejected']}, skipped ticks: {stats['skipped_ticks']}"
    )
    print(
        f"Capture failures: {stats['capture_failures']}, inference failures: {stats['inference_failures']}, "
        f"final state: {stats['state']}"
    )
    gaze, _ = slot.peek()
    if gaze is not None:
        print(
            f"Last gaze: left=({gaze.left.offset_x:+.2f}, {gaze.left.offset_y:+.2f}) "
            f"right=({gaze.right.offset_x:+.2f}, {gaze.right.offset_y:+.2f}) "
            f"confidence={gaze.confidence:.2f}"
        )
    else:
        print("No face detected during the check.")
    return stats


def list_cameras(max_index: int = 5) -> None:
    print(f"Probing cameras 0..{max_index} ...")
    for row in probe_cameras(max_index):
        shape_text = f"{row['shape']}" if row["shape"] is not None else "n/a"
        print(f"[{row['index']}] opened={row['opened']} read={row['readable']} shape={shape_text}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Kiosk avatar runtime")
    parser.add_argument(
        "--vision-check",
        action="store_true",
        help="Run the capture pipeline headless for a short window, print health and exit.",
    )
    parser.add_argument(
        "--vision-list",
        "--list-cameras",
        action="store_true",
        help="Probe camera indices and exit.",
    )
    parser.add_argument(
        "--vision-duration",
        type=float,
        default=8.0,
        help="Seconds to sample during the vision diagnostic.",
    )
    parser.add_argument(
        "--vision-index",
        "--camera-index",
        type=int,
        default=None,
        help="Camera index override.",
    )
    parser.add_argument(
        "--vision-max-index",
        type=int,
        default=5,
        help="Max index to probe when listing cameras.",
    )
    parser.add_argument("--no-vision", action="store_true", help="Skip gaze tracking entirely.")
    parser.add_argument("--no-audio", action="store_true", help="Keep the audio rings idle.")
    parser.add_argument("--windowed", action="store_true", help="Open a window instead of fullscreen.")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default from LOG_LEVEL, else INFO).",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> KioskConfig:
    config = KioskConfig.from_env()
    if args.vision_index is not None:
        config.capture.camera_index = args.vision_index
    if args.no_vision:
        config.vision_enabled = False
    if args.no_audio:
        config.audio.enabled = False
    if args.windowed:
        config.render.fullscreen = False
    return config


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = config_from_args(args)

    if args.vision_list:
        list_cameras(max_index=args.vision_max_index)
        return 0
    try:
        if args.vision_check:
            asyncio.run(run_vision_check(config, duration=args.vision_duration))
        else:
            asyncio.run(run_kiosk(config))
    except KioskAvatarError as exc:
        print(f"Vision unavailable: {exc}")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
