"""Audio-reactive ring visualisation fed from a pull-based analysis node."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import numpy as np
from scipy import signal as scipy_signal

from kiosk_avatar.config import AudioConfig

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]


class AudioAnalysisNode(Protocol):
    def get_time_domain_data(self) -> np.ndarray: ...

    def close(self) -> None: ...


def resolve_input_device(preference: Optional[str]) -> Optional[int]:
    """Map an index or a name fragment to an input device index, or None for the default."""
    if not preference:
        return None
    import sounddevice as sd

    try:
        devices = sd.query_devices()
    except Exception as exc:
        logger.warning("Could not query audio devices: %s", exc)
        return None
    if preference.isdigit():
        idx = int(preference)
        if 0 <= idx < len(devices) and devices[idx]["max_input_channels"] > 0:
            return idx
    lower_pref = preference.lower()
    for idx, device in enumerate(devices):
        if device["max_input_channels"] <= 0:
            continue
        if lower_pref in device["name"].lower():
            return idx
    logger.warning("Audio input preference %r not found; using default.", preference)
    return None


class SoundDeviceAnalyser:
    """Microphone analysis node: the stream callback keeps the newest window."""

    def __init__(self, samplerate: int = 16000, window: int = 1024, device: Optional[int] = None) -> None:
        self.samplerate = samplerate
        self.window = window
        self.device = device
        self._buffer = np.zeros(window, dtype=np.float32)
        self._lock = threading.Lock()
        self._stream = None
        self._status_logged = False

    def _callback(self, indata, frames, time_info, status):
        if status and not self._status_logged:
            logger.warning("Audio status: %s", status)
            self._status_logged = True
        mono = indata[:, 0] if indata.ndim > 1 else indata
        n = min(len(mono), self.window)
        with self._lock:
            self._buffer = np.roll(self._buffer, -n)
            self._buffer[-n:] = mono[-n:]

    def open(self) -> "SoundDeviceAnalyser":
        if self._stream is not None:
            return self
        import sounddevice as sd

        self._stream = sd.InputStream(
            samplerate=self.samplerate,
            channels=1,
            dtype="float32",
            blocksize=self.window // 2,
            device=self.device,
            callback=self._callback,
        )
        self._stream.start()
        logger.info("Audio input stream started (device=%s, %d Hz)", self.device, self.samplerate)
        return self

    def get_time_domain_data(self) -> np.ndarray:
        stream = self._stream
        if stream is None or not stream.active:
            raise RuntimeError("audio input stream is not running")
        with self._lock:
            return self._buffer.copy()

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


def open_sounddevice_analyser(config: AudioConfig) -> SoundDeviceAnalyser:
    device = resolve_input_device(config.device)
    return SoundDeviceAnalyser(config.samplerate, config.window, device).open()


@dataclass(frozen=True)
class RingFrame:
    radii: Tuple[float, ...]
    colors: Tuple[Color, ...]
    level: float = 0.0
    idle: bool = True


def _mix(a: Color, b: Color, t: float) -> Color:
    return tuple(int(round(x + (y - x) * t)) for x, y in zip(a, b))


def idle_ring_frame(config: AudioConfig) -> RingFrame:
    n = config.ring_count
    return RingFrame(
        radii=tuple(config.base_radius for _ in range(n)),
        colors=tuple(config.idle_color for _ in range(n)),
        level=0.0,
        idle=True,
    )


class AudioVisualizer:
    """Turns the latest audio window into ring radii and colours.

    ``sample`` never raises: when the node is missing or fails, the idle
    frame is returned and the outage is logged once until data flows again.
    """

    decay = 0.8

    def __init__(self, node: Optional[AudioAnalysisNode] = None, config: Optional[AudioConfig] = None) -> None:
        self.config = config or AudioConfig()
        self.node = node
        self._envelope = np.zeros(self.config.ring_count, dtype=np.float64)
        self._outage = False
        self.failures = 0
        self.latest = idle_ring_frame(self.config)

    def attach(self, node: Optional[AudioAnalysisNode]) -> None:
        self.node = node
        self._outage = False

    def detach(self) -> Optional[AudioAnalysisNode]:
        node, self.node = self.node, None
        return node

    def _idle(self) -> RingFrame:
        self._envelope[:] = 0.0
        self.latest = idle_ring_frame(self.config)
        return self.latest

    def sample(self) -> RingFrame:
        node = self.node
        if node is None:
            return self._idle()
        try:
            data = np.asarray(node.get_time_domain_data(), dtype=np.float64).reshape(-1)
            if data.size == 0 or not np.all(np.isfinite(data)):
                raise ValueError("empty or non-finite audio window")
        except Exception as exc:
            self.failures += 1
            if not self._outage:
                logger.warning("Audio analysis unavailable, showing idle rings: %s", exc)
                self._outage = True
            return self._idle()
        if self._outage:
            logger.info("Audio analysis recovered")
            self._outage = False

        cfg = self.config
        bands = np.abs(data)
        if bands.size != cfg.ring_count:
            bands = scipy_signal.resample(bands, cfg.ring_count)
        bands = np.clip(bands, 0.0, 1.0)
        self._envelope = np.maximum(bands, self._envelope * self.decay)
        level = float(np.max(np.abs(data)))
        self.latest = RingFrame(
            radii=tuple(float(cfg.base_radius + cfg.radius_gain * e) for e in self._envelope),
            colors=tuple(_mix(cfg.idle_color, cfg.hot_color, float(e)) for e in self._envelope),
            level=level,
            idle=False,
        )
        return self.latest
