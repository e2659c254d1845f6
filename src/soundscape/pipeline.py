"""
Real-time audio-to-automaton pipeline.

Coordinates three independently clocked activities:

    decode thread ──(bounded queue)──► tick thread ──(snapshot swap)──► renderer
                                          │
                                          ├─► playback sink (device callback)
                                          └─► analyzer → modulator → engine

The tick thread pumps decoded chunks into the playback sink only while the
sink has room, so decoding and analysis stay within a few chunks of what is
being heard. Analysis runs per window as samples arrive; the simulation
steps on its own fixed-rate clock using whatever band energies are most
recent. Each update publishes at most one immutable GridSnapshot.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Iterator, Union

import numpy as np

from soundscape.config import COLOR_SCHEMES, Config
from soundscape.core.analyzer import SILENCE, BandEnergies, SpectralAnalyzer
from soundscape.core.automaton import AutomatonEngine, GridSnapshot
from soundscape.core.modulator import NEUTRAL_RULES, EffectiveRules, RuleModulator
from soundscape.errors import PipelineError
from soundscape.io.decoder import AudioStream, synthetic_chunks
from soundscape.io.feed import END_OF_STREAM, AudioFeed
from soundscape.io.playback import ClockedPlayback, DevicePlayback

logger = logging.getLogger(__name__)

COMMANDS = ("reset", "clear", "stop", "color_scheme", "toggle_fullscreen")


@dataclass(frozen=True)
class ViewSettings:
    """Renderer-facing settings changed by UI commands."""

    color_scheme: str = "pulse"
    fullscreen: bool = False


@dataclass(frozen=True)
class PipelineStatus:
    """Current simulation parameters for display."""

    generation: int
    ticks: int
    sequence: int
    rules: EffectiveRules
    energies: BandEnergies
    playback_seconds: float
    underruns: int
    stalls: int
    dropped_ticks: int
    audio_ended: bool
    finished: bool
    failed: bool


class SnapshotBoard:
    """
    Latest-value hand-off from the tick thread to the renderer.

    publish() swaps a single reference to an immutable snapshot, so readers
    never block and never observe a partially written grid. A reader that
    finds the same sequence number as last time simply redraws it.
    """

    def __init__(self):
        self._latest: GridSnapshot | None = None

    def publish(self, snapshot: GridSnapshot):
        self._latest = snapshot

    def latest(self) -> GridSnapshot | None:
        return self._latest


class TickScheduler:
    """
    Fixed-rate tick accumulator with bounded catch-up.

    Elapsed wall-clock time accumulates; each whole interval is one due
    tick and the fractional remainder carries over. At most max_catch_up
    ticks are released per update; whole ticks beyond that are dropped so
    a stall never causes a burst.
    """

    def __init__(self, rate: float, max_catch_up: int = 3):
        self.interval = 1.0 / rate
        self.max_catch_up = max_catch_up
        self._accumulator = 0.0
        self._last: float | None = None
        self.dropped = 0

    def due(self, now: float) -> int:
        """Number of ticks to run for the time elapsed up to now."""
        if self._last is None:
            self._last = now
            return 0

        self._accumulator += max(0.0, now - self._last)
        self._last = now

        ticks = int(self._accumulator // self.interval)
        self._accumulator -= ticks * self.interval

        if ticks > self.max_catch_up:
            self.dropped += ticks - self.max_catch_up
            logger.debug("Dropping %d late ticks", ticks - self.max_catch_up)
            ticks = self.max_catch_up
        return ticks

    def time_to_next(self) -> float:
        return max(0.0, self.interval - self._accumulator)


class WindowAccumulator:
    """Slices a mono sample stream into analysis windows spaced hop_size apart."""

    def __init__(self, window_size: int, hop_size: int):
        self.window_size = window_size
        self.hop_size = hop_size
        self._buffer = np.zeros(0, dtype=np.float32)

    def push(self, samples: np.ndarray):
        self._buffer = np.concatenate([self._buffer, np.asarray(samples, dtype=np.float32)])

    def windows(self) -> Iterator[np.ndarray]:
        while self._buffer.size >= self.window_size:
            yield self._buffer[: self.window_size]
            self._buffer = self._buffer[self.hop_size:]

    def clear(self):
        self._buffer = np.zeros(0, dtype=np.float32)


class PipelineCoordinator:
    """
    Owns the audio feed, playback sink, analyzer, modulator and engine,
    and paces them.

    update() performs one cooperative iteration and can be driven directly
    with an explicit clock value; start() runs it on a dedicated thread.
    """

    def __init__(
        self,
        config: Config,
        feed: AudioFeed | None = None,
        playback: DevicePlayback | ClockedPlayback | None = None,
        engine: AutomatonEngine | None = None,
        analyzer: SpectralAnalyzer | None = None,
        modulator: RuleModulator | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        """
        Initialize the coordinator.

        Args:
            config: Complete configuration.
            feed: Decoded audio source; None runs the automaton on neutral rules.
            playback: Sink for decoded audio; None consumes without playing.
            engine: Automaton (default: built from config.simulation).
            analyzer: Analyzer (default: built from config.audio).
            modulator: Modulator (default: built from config).
            clock: Monotonic clock in seconds.
        """
        self.config = config
        self.feed = feed
        self.playback = playback
        self.engine = engine or AutomatonEngine.from_config(config.simulation)
        self.analyzer = analyzer or SpectralAnalyzer.from_config(config.audio)
        self.modulator = modulator or RuleModulator(
            config.audio.sensitivity,
            config.simulation.variant_thresholds,
        )
        self.scheduler = TickScheduler(config.simulation.tick_rate, config.simulation.max_catch_up)
        self.board = SnapshotBoard()
        self._clock = clock

        self._windows = WindowAccumulator(config.audio.fft_size, config.audio.hop_size)
        self._sample_rate = config.audio.sample_rate
        self._energies = SILENCE
        self._rules = NEUTRAL_RULES
        self._sequence = 0

        self._input_ended = False
        self._idle = False
        self._frozen = False
        self._stalled = False
        self.stalls = 0
        self.ticks = 0
        self.windows_analyzed = 0

        self._view = ViewSettings(
            color_scheme=config.visualization.color_scheme,
            fullscreen=config.window.fullscreen,
        )

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._finished = threading.Event()
        self._closed = threading.Event()
        self._error: BaseException | None = None

        self._publish()

    @classmethod
    def from_file(
        cls,
        audio_path: Union[str, Path],
        config: Config,
        headless: bool = False,
        clock: Callable[[], float] = time.perf_counter,
    ) -> "PipelineCoordinator":
        """
        Build a pipeline playing an audio file.

        The file is probed and test-decoded here, so a bad file raises
        AudioLoadError before anything starts.
        """
        stream = AudioStream.open(audio_path)
        logger.info(
            "Loaded %s: %.1fs, %d Hz, %d channel(s)",
            stream.path.name, stream.duration, stream.sample_rate, stream.channels,
        )
        feed = AudioFeed(stream.chunks(config.audio.chunk_size), max_chunks=config.audio.queue_chunks)
        playback = cls._make_playback(config, stream.sample_rate, headless, clock)
        return cls(config, feed=feed, playback=playback, clock=clock)

    @classmethod
    def synthetic(
        cls,
        config: Config,
        duration: float | None = None,
        headless: bool = False,
        clock: Callable[[], float] = time.perf_counter,
    ) -> "PipelineCoordinator":
        """Build a pipeline driven by the generated test signal."""
        audio = config.audio
        chunks = synthetic_chunks(
            sample_rate=audio.sample_rate,
            channels=audio.channels,
            chunk_size=audio.chunk_size,
            duration=duration,
            seed=config.simulation.seed or 0,
        )
        feed = AudioFeed(chunks, max_chunks=audio.queue_chunks)
        playback = cls._make_playback(config, audio.sample_rate, headless, clock)
        return cls(config, feed=feed, playback=playback, clock=clock)

    @staticmethod
    def _make_playback(config: Config, sample_rate: int, headless: bool, clock):
        audio = config.audio
        if headless:
            return ClockedPlayback(
                sample_rate,
                audio.channels,
                max_chunks=audio.playback_chunks,
                chunk_size=audio.chunk_size,
                clock=clock,
            )
        return DevicePlayback(sample_rate, audio.channels, max_chunks=audio.playback_chunks)

    # Cooperative iteration

    def _pump_audio(self):
        if self.feed is None or self._input_ended:
            return

        room = self.playback.room() if self.playback is not None else self.config.audio.queue_chunks
        while room > 0:
            try:
                item = self.feed.poll()
            except Exception as e:
                raise PipelineError(f"audio decode failed: {e}") from e

            if item is None:
                if not self._stalled:
                    self._stalled = True
                    self.stalls += 1
                    logger.debug("Audio feed stalled")
                return
            if item is END_OF_STREAM:
                self._input_ended = True
                if self.playback is not None:
                    self.playback.end_input()
                logger.info("Audio stream ended")
                return

            self._stalled = False
            if self.playback is not None:
                self.playback.write(item)
            self._sample_rate = item.sample_rate
            self._windows.push(item.mono())
            room -= 1

    def _analyze(self):
        for window in self._windows.windows():
            self._energies = self.analyzer.analyze(window, self._sample_rate)
            self.windows_analyzed += 1

    def _check_end(self):
        if not self._input_ended or self._finished.is_set():
            return
        if self.playback is not None and not self.playback.drained:
            return

        self._finished.set()
        if self.config.simulation.on_end == "freeze":
            self._frozen = True
            logger.info("Playback finished; freezing at generation %d", self.engine.generation)
        else:
            self._idle = True
            self._energies = SILENCE
            logger.info("Playback finished; idling on neutral rules")

    def _current_rules(self) -> EffectiveRules:
        if self.feed is None or self._idle:
            return NEUTRAL_RULES
        return self.modulator.modulate(self._energies)

    def _publish(self):
        self._sequence += 1
        snapshot = self.engine.snapshot(
            sequence=self._sequence,
            energies=self._energies,
            rules=self._rules,
        )
        self.board.publish(snapshot)

    def update(self, now: float | None = None) -> int:
        """
        Run one iteration: pump audio, analyze, run due ticks, publish.

        Args:
            now: Clock value in seconds (default: the coordinator's clock).

        Returns:
            Number of simulation ticks executed.
        """
        if now is None:
            now = self._clock()

        self._pump_audio()
        self._analyze()
        self._check_end()

        ticks = self.scheduler.due(now)
        if self._frozen:
            # Evolution has stopped, but reset/clear still land on a tick boundary
            if ticks and self.engine.has_pending:
                self.engine.step(NEUTRAL_RULES)
                self._publish()
            return 0

        for _ in range(ticks):
            self._rules = self._current_rules()
            self.engine.step(self._rules)
        if ticks:
            self.ticks += ticks
            self._publish()
        return ticks

    # Threaded operation

    def start(self):
        """Start playback, decoding and the tick thread."""
        if self._thread is not None:
            return
        if self.playback is not None:
            self.playback.start()
        if self.feed is not None:
            self.feed.start()
        self._thread = threading.Thread(target=self._run, name="soundscape-tick", daemon=True)
        self._thread.start()

    def _run(self):
        pump_interval = self.config.audio.chunk_size / self._sample_rate
        try:
            while not self._stop_event.is_set():
                self.update()
                self._stop_event.wait(min(self.scheduler.time_to_next(), pump_interval))
        except Exception as e:
            logger.exception("Simulation loop failed")
            self._error = e
            self._finished.set()

    def stop(self, timeout: float = 2.0):
        """
        Ordered shutdown: audio production, playback, ticking, then readers.

        The renderer should release its window only after this returns.
        """
        if self.feed is not None:
            self.feed.stop(timeout)
        if self.playback is not None:
            self.playback.stop()

        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Tick thread did not exit within %.1fs", timeout)

        self._finished.set()
        self._closed.set()

    @property
    def closed(self) -> bool:
        """True once stop() has run; readers should stop polling."""
        return self._closed.is_set()

    @property
    def failed(self) -> bool:
        return self._error is not None

    def raise_if_failed(self):
        if self._error is not None:
            raise PipelineError(f"pipeline failed: {self._error}") from self._error

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until playback finishes, the pipeline stops or fails.

        Returns:
            True if finished within the timeout.
        """
        done = self._finished.wait(timeout)
        self.raise_if_failed()
        return done

    # Consumer-facing API

    def latest(self) -> GridSnapshot | None:
        """Most recently published snapshot. Never blocks."""
        return self.board.latest()

    def view(self) -> ViewSettings:
        return self._view

    def handle(self, command: str, value=None):
        """
        Apply a UI command.

        Args:
            command: One of COMMANDS.
            value: Density for "reset", scheme name for "color_scheme"
                (None cycles to the next scheme).
        """
        if command == "reset":
            self.engine.request_reset(value)
        elif command == "clear":
            self.engine.request_clear()
        elif command == "stop":
            self.stop()
        elif command == "color_scheme":
            if value is None:
                index = COLOR_SCHEMES.index(self._view.color_scheme)
                value = COLOR_SCHEMES[(index + 1) % len(COLOR_SCHEMES)]
            if value not in COLOR_SCHEMES:
                raise ValueError(f"unknown color scheme: {value!r}")
            self._view = replace(self._view, color_scheme=value)
        elif command == "toggle_fullscreen":
            self._view = replace(self._view, fullscreen=not self._view.fullscreen)
        else:
            raise ValueError(f"unknown command: {command!r}")

    def status(self) -> PipelineStatus:
        playback = self.playback
        return PipelineStatus(
            generation=self.engine.generation,
            ticks=self.ticks,
            sequence=self._sequence,
            rules=self._rules,
            energies=self._energies,
            playback_seconds=playback.played_seconds if playback is not None else 0.0,
            underruns=playback.underruns if playback is not None else 0,
            stalls=self.stalls,
            dropped_ticks=self.scheduler.dropped,
            audio_ended=self._input_ended,
            finished=self._finished.is_set(),
            failed=self.failed,
        )
