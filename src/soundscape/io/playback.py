"""
Playback sinks.

Both sinks accept decoded chunks up to a small bounded backlog and report
how much room is left, which is what paces decoding to real time:
- DevicePlayback: sound card output through a sounddevice callback stream.
- ClockedPlayback: headless sink consuming samples at wall-clock rate.
"""

import collections
import logging
import math
import threading
import time
from typing import Callable

import numpy as np

from soundscape.errors import PipelineError
from soundscape.io.decoder import AudioFrame

logger = logging.getLogger(__name__)


def fit_channels(samples: np.ndarray, channels: int) -> np.ndarray:
    """Duplicate or average channels so samples match the output layout."""
    have = samples.shape[1]
    if have == channels:
        return samples
    if have == 1:
        return np.repeat(samples, channels, axis=1)
    mono = samples.mean(axis=1, keepdims=True)
    return np.repeat(mono, channels, axis=1)


class DevicePlayback:
    """
    Plays chunks on the default (or given) output device.

    The device callback copies from a lock-guarded queue of pending chunks
    and fills with silence on underrun; it never blocks on the producer.
    """

    def __init__(
        self,
        sample_rate: int,
        channels: int,
        max_chunks: int = 4,
        device: int | str | None = None,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.max_chunks = max_chunks
        self.device = device

        self._pending: collections.deque[np.ndarray] = collections.deque()
        self._offset = 0
        self._lock = threading.Lock()
        self._stream = None
        self._starved = False
        self._input_ended = False

        self.played_frames = 0
        self.underruns = 0

    @property
    def played_seconds(self) -> float:
        return self.played_frames / self.sample_rate

    @property
    def drained(self) -> bool:
        with self._lock:
            return not self._pending

    def room(self) -> int:
        """Number of chunks that can be written without exceeding the backlog."""
        with self._lock:
            return max(0, self.max_chunks - len(self._pending))

    def write(self, frame: AudioFrame):
        samples = fit_channels(frame.samples, self.channels)
        with self._lock:
            self._pending.append(samples)
            self._starved = False

    def end_input(self):
        """Mark the input finished; draining the backlog is no longer an underrun."""
        self._input_ended = True

    def start(self):
        # PortAudio is loaded on first use so headless runs never need it
        try:
            import sounddevice as sd
        except OSError as e:
            raise PipelineError(f"PortAudio library not available: {e}") from e

        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
            self._stream.start()
        except sd.PortAudioError as e:
            raise PipelineError(f"audio output unavailable: {e}") from e
        logger.info("Audio output started: %d Hz, %d channel(s)", self.sample_rate, self.channels)

    def stop(self):
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        with self._lock:
            self._pending.clear()
            self._offset = 0

    def _callback(self, outdata, frames, time_info, status):
        if status:
            logger.debug("Audio callback status: %s", status)

        written = 0
        with self._lock:
            while written < frames and self._pending:
                head = self._pending[0]
                take = min(frames - written, head.shape[0] - self._offset)
                outdata[written:written + take] = head[self._offset:self._offset + take]
                written += take
                self._offset += take
                if self._offset >= head.shape[0]:
                    self._pending.popleft()
                    self._offset = 0

            self.played_frames += written
            if written < frames:
                # One underrun per starvation episode, once playback has begun
                if not self._starved and self.played_frames > 0 and not self._input_ended:
                    self.underruns += 1
                self._starved = True

        if written < frames:
            outdata[written:] = 0


class ClockedPlayback:
    """
    Headless sink that consumes audio at the stream's real-time rate.

    Used when no output device is wanted (--headless, tests). The clock is
    injectable so consumption can be driven deterministically.
    """

    def __init__(
        self,
        sample_rate: int,
        channels: int,
        max_chunks: int = 4,
        chunk_size: int = 1024,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.max_chunks = max_chunks
        self.chunk_size = chunk_size
        self._clock = clock

        self._queued = 0.0
        self._last: float | None = None
        self._starved = False
        self._input_ended = False

        self.played_frames = 0.0
        self.underruns = 0

    @property
    def played_seconds(self) -> float:
        return self.played_frames / self.sample_rate

    @property
    def drained(self) -> bool:
        self._advance()
        return self._queued <= 0

    def room(self) -> int:
        self._advance()
        backlog = math.ceil(self._queued / self.chunk_size)
        return max(0, self.max_chunks - backlog)

    def write(self, frame: AudioFrame):
        self._advance()
        self._queued += frame.frames
        self._starved = False

    def end_input(self):
        self._input_ended = True

    def start(self):
        self._last = self._clock()

    def stop(self):
        self._last = None
        self._queued = 0.0

    def _advance(self):
        if self._last is None:
            return
        now = self._clock()
        capacity = max(0.0, (now - self._last) * self.sample_rate)
        self._last = now

        consumed = min(self._queued, capacity)
        self._queued -= consumed
        self.played_frames += consumed

        if capacity > consumed and not self._starved and self.played_frames > 0 and not self._input_ended:
            self._starved = True
            self.underruns += 1
