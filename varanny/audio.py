"""
Audio Level Monitor and Device Resolver.

The monitor reads the modem's capture device in ~100 ms blocks and reports the
loudness of every block in dBFS. Reads are blocking ``InputStream.read()`` calls in
a worker thread (no PortAudio callback); levels are handed to the session through
its bounded telemetry queue.

    PortAudio ──read()──▶ _capture() ──dBFS──▶ [telemetry queue] ──▶ session writer

Device names in VARA's ini rarely match the names PortAudio reports exactly, so
devices are matched by edit-distance similarity of their alphanumeric characters.
"""

import asyncio
import concurrent.futures
import logging
import math
import re
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from rapidfuzz.distance import Levenshtein

from .errors import DeviceNotFound

logger = logging.getLogger("varanny.audio")

SAMPLE_RATE = 44100
CHANNELS = 1
BLOCK_MS = 100
FULL_SCALE = float(1 << 15)
FLOOR_DBFS = -96.0
QUEUE_POLL = 0.1

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]+")


def _sounddevice():
    # PortAudio is loaded on first use so hosts without audio can still launch modems
    import sounddevice
    return sounddevice


# ── Loudness ──────────────────────────────────────────────────────────

def compute_rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    values = samples.astype(np.float64)
    return float(np.sqrt(np.mean(values * values)))


def compute_dbfs(samples: np.ndarray) -> float:
    """Loudness of a block of int16 samples in dB relative to full scale.

    Silence (and an empty block) is clipped to -96 dBFS.
    """
    rms = compute_rms(samples)
    if rms == 0:
        return FLOOR_DBFS
    return 20 * math.log10(rms / FULL_SCALE)


# ── Device matching ──────────────────────────────────────────────────

def sanitize(name: str) -> str:
    return _NON_ALNUM.sub("", name).lower()


def similarity(a: str, b: str) -> float:
    """Similarity in [0, 1] of two names after sanitizing them."""
    a, b = sanitize(a), sanitize(b)
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    score = 1 - Levenshtein.distance(a, b) / longest
    return max(0.0, min(score, 1.0))


@dataclass(frozen=True)
class AudioDevice:
    index: int
    name: str


def list_capture_devices() -> List[AudioDevice]:
    devices = []
    for i, d in enumerate(_sounddevice().query_devices()):
        if int(d.get("max_input_channels", 0) or 0) < 1:
            continue
        devices.append(AudioDevice(index=i, name=d.get("name", f"dev{i}")))
    return devices


def find_audio_device(name: str, threshold: float, devices: Optional[Sequence[AudioDevice]] = None) -> AudioDevice:
    """Returns the first capture device whose similarity to ``name`` reaches ``threshold``.

    Raises:
        DeviceNotFound: no device is similar enough.
    """
    if devices is None:
        try:
            sd = _sounddevice()
        except OSError as e:
            logger.error(f"PortAudio is not available: {e}")
            raise DeviceNotFound(name) from e
        try:
            devices = list_capture_devices()
        except sd.PortAudioError as e:
            logger.error(f"Cannot enumerate capture devices: {e}")
            raise DeviceNotFound(name) from e
    logger.info(f"Found capture audio devices: {len(devices)}")
    for device in devices:
        score = similarity(device.name, name)
        if score >= threshold:
            logger.info(f"Device name (found match): {device.name} (similarity: {score:.2f} threshold: {threshold})")
            return device
        logger.info(f"Device name    (no match): {device.name} (similarity: {score:.2f} threshold: {threshold})")
    raise DeviceNotFound(name)


# ── Monitor ──────────────────────────────────────────────────────────

class AudioLevelMonitor:
    """Streams dBFS levels of one capture device into ``levels`` until stopped.

    When ``levels`` is full the capture thread waits, so no level is dropped. The
    stream is closed before run() returns.
    """

    def __init__(self, device: AudioDevice, levels: asyncio.Queue,
                 sample_rate: int = SAMPLE_RATE, block_ms: int = BLOCK_MS):
        self.device = device
        self.levels = levels
        self.sample_rate = sample_rate
        self.block_frames = sample_rate * block_ms // 1000
        self._stop = threading.Event()
        self.closed = threading.Event()

    def stop(self):
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self):
        loop = asyncio.get_running_loop()
        logger.info(f"Monitoring audio device '{self.device.name}'")
        try:
            await asyncio.to_thread(self._capture, loop)
        finally:
            logger.info(f"Stopped monitoring '{self.device.name}'")

    def _capture(self, loop: asyncio.AbstractEventLoop):
        try:
            with _sounddevice().InputStream(
                device=self.device.index,
                channels=CHANNELS,
                samplerate=self.sample_rate,
                dtype="int16",
                blocksize=self.block_frames,
            ) as stream:
                while not self._stop.is_set():
                    data, overflowed = stream.read(self.block_frames)
                    if overflowed:
                        logger.debug("Input overflow")
                    self._put(compute_dbfs(np.asarray(data).reshape(-1)), loop)
        finally:
            self.closed.set()

    def _put(self, level: float, loop: asyncio.AbstractEventLoop):
        future = asyncio.run_coroutine_threadsafe(self.levels.put(level), loop)
        while True:
            try:
                future.result(timeout=QUEUE_POLL)
                return
            except concurrent.futures.TimeoutError:
                if self._stop.is_set():
                    future.cancel()
                    return
