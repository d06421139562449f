"""
Audio helpers for Glimpse

Microphone uplink is 16 kHz / 16-bit / mono PCM; model speech comes back at
24 kHz. PlaybackScheduler keeps back-to-back chunks contiguous by tracking a
running end time.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, Sequence, Tuple

import numpy as np
try:
    import sounddevice as sd
except Exception:  # Optional dependency for server-side audio playback
    sd = None

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000


def resample_to_16k(samples: Sequence[float], input_rate: int) -> bytes:
    """
    Nearest-sample decimation of float samples to 16 kHz int16 PCM.

    Args:
        samples: Float samples in [-1, 1] (out of range values are clipped)
        input_rate: Sample rate of samples

    Returns:
        Little-endian int16 PCM bytes
    """
    data = np.asarray(samples, dtype=np.float32)
    if data.size == 0 or input_rate <= 0:
        return b""

    ratio = input_rate / TARGET_SAMPLE_RATE
    output_length = int(np.floor(data.size / ratio))
    if output_length <= 0:
        return b""

    indices = np.floor(np.arange(output_length) * ratio).astype(np.int64)
    indices = np.minimum(indices, data.size - 1)
    picked = np.clip(data[indices], -1.0, 1.0)
    return np.floor(picked * 32767).astype("<i2").tobytes()


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Little-endian int16 PCM -> float32 in [-1, 1)."""
    if len(data) % 2:
        data = data[:-1]
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0


def pcm_duration(data: bytes, sample_rate: int = OUTPUT_SAMPLE_RATE) -> float:
    """Seconds of 16-bit mono audio."""
    return (len(data) // 2) / float(sample_rate)


class PlaybackScheduler:
    """
    Running "scheduled end" clock for PCM chunks.

    Each chunk starts at max(now, end of previous chunk), so chunks never
    overlap and play back-to-back when they arrive faster than real time.
    """

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE, clock: Callable[[], float] = time.monotonic):
        self.sample_rate = sample_rate
        self._clock = clock
        self._scheduled_end = 0.0

    def schedule(self, pcm: bytes) -> Tuple[float, float]:
        """Returns (start, end) on the scheduler clock."""
        start = max(self._clock(), self._scheduled_end)
        end = start + pcm_duration(pcm, self.sample_rate)
        self._scheduled_end = end
        return start, end

    def start_delay(self, pcm: bytes) -> float:
        """Schedule a chunk and return how long from now until it starts."""
        start, _ = self.schedule(pcm)
        return max(0.0, start - self._clock())

    @property
    def is_playing(self) -> bool:
        return self._clock() < self._scheduled_end

    def reset(self):
        self._scheduled_end = 0.0


class PCMAudioPlayer:
    """Plays scheduled PCM chunks on the server's sound card (if sounddevice is available)."""

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE, scheduler: Optional[PlaybackScheduler] = None):
        self.sample_rate = sample_rate
        self.scheduler = scheduler or PlaybackScheduler(sample_rate)
        self._handles = []

    @property
    def available(self) -> bool:
        return sd is not None

    def play(self, pcm: bytes) -> Optional[float]:
        """
        Queue a chunk for contiguous playback.

        Returns:
            Start delay in seconds, or None when no output device is available
        """
        if sd is None:
            return None
        samples = pcm16_to_float32(pcm)
        if samples.size == 0:
            return None

        delay = self.scheduler.start_delay(pcm)
        loop = asyncio.get_running_loop()
        self._handles = [h for h in self._handles if not h.cancelled()]
        self._handles.append(loop.call_later(delay, self._output, samples))
        return delay

    def _output(self, samples: np.ndarray):
        try:
            sd.play(samples, self.sample_rate, blocking=False)
        except Exception as e:
            logger.warning(f"⚠️ Local playback failed: {e}")

    def stop(self):
        for handle in self._handles:
            handle.cancel()
        self._handles = []
        self.scheduler.reset()
        if sd is not None:
            try:
                sd.stop()
            except Exception as e:
                logger.debug(f"sounddevice stop failed: {e}")
