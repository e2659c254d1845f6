"""Tests for the PipelineCoordinator and its scheduling helpers."""

import dataclasses
import time

import numpy as np
import pytest

from conftest import make_frames
from soundscape.core.analyzer import SILENCE
from soundscape.core.modulator import NEUTRAL_RULES
from soundscape.errors import PipelineError
from soundscape.io.feed import END_OF_STREAM
from soundscape.io.playback import ClockedPlayback
from soundscape.pipeline import (
    PipelineCoordinator,
    SnapshotBoard,
    TickScheduler,
    ViewSettings,
    WindowAccumulator,
)


class ManualClock:
    """Clock advanced by hand."""

    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


class ScriptedFeed:
    """
    Feed returning a fixed script of poll results.

    None entries are stalls; exception instances are raised from poll().
    """

    def __init__(self, items):
        self.items = list(items)
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self, timeout=None):
        self.stopped = True

    def poll(self):
        if not self.items:
            return None
        item = self.items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def with_simulation(config, **changes):
    return dataclasses.replace(config, simulation=dataclasses.replace(config.simulation, **changes))


class TestTickScheduler:
    """Tests for fixed-rate tick accounting."""

    def test_first_call_starts_the_clock(self):
        scheduler = TickScheduler(rate=8.0)
        assert scheduler.due(100.0) == 0

    def test_whole_intervals_release_ticks(self):
        scheduler = TickScheduler(rate=8.0)
        scheduler.due(0.0)

        assert scheduler.due(0.125) == 1
        assert scheduler.due(0.375) == 2

    def test_fractional_time_carries_over(self):
        scheduler = TickScheduler(rate=8.0)
        scheduler.due(0.0)

        assert scheduler.due(0.0625) == 0
        assert scheduler.due(0.125) == 1
        assert scheduler.time_to_next() == pytest.approx(0.125)

    def test_catch_up_is_bounded(self):
        scheduler = TickScheduler(rate=8.0, max_catch_up=3)
        scheduler.due(0.0)

        assert scheduler.due(10.0) == 3
        assert scheduler.dropped == 77
        # Dropped ticks are gone, not deferred
        assert scheduler.due(10.0) == 0

    def test_clock_going_backwards_is_ignored(self):
        scheduler = TickScheduler(rate=8.0)
        scheduler.due(5.0)
        assert scheduler.due(4.0) == 0


class TestWindowAccumulator:
    """Tests for analysis window slicing."""

    def test_back_to_back_windows(self):
        acc = WindowAccumulator(window_size=4, hop_size=4)
        acc.push(np.arange(10, dtype=np.float32))

        windows = [w.tolist() for w in acc.windows()]
        assert windows == [[0, 1, 2, 3], [4, 5, 6, 7]]

        acc.push(np.arange(10, 12, dtype=np.float32))
        assert [w.tolist() for w in acc.windows()] == [[8, 9, 10, 11]]

    def test_overlapping_windows(self):
        acc = WindowAccumulator(window_size=4, hop_size=2)
        acc.push(np.arange(8, dtype=np.float32))

        windows = [w.tolist() for w in acc.windows()]
        assert windows == [[0, 1, 2, 3], [2, 3, 4, 5], [4, 5, 6, 7]]

    def test_partial_window_waits(self):
        acc = WindowAccumulator(window_size=4, hop_size=4)
        acc.push(np.zeros(3, dtype=np.float32))
        assert list(acc.windows()) == []


def test_snapshot_board_keeps_latest():
    board = SnapshotBoard()
    assert board.latest() is None

    first, second = object(), object()
    board.publish(first)
    board.publish(second)
    assert board.latest() is second


class TestCoordinatorTicks:
    """Scheduling and publication driven through update()."""

    def test_initial_snapshot_published(self, small_config):
        coordinator = PipelineCoordinator(small_config)
        snapshot = coordinator.latest()

        assert snapshot is not None
        assert snapshot.generation == 0
        assert snapshot.sequence == 1

    def test_ticks_follow_the_clock(self, small_config):
        coordinator = PipelineCoordinator(small_config)

        assert coordinator.update(0.0) == 0
        assert coordinator.update(0.125) == 1
        assert coordinator.update(0.5) == 3
        assert coordinator.engine.generation == 4
        assert coordinator.latest().generation == 4

    def test_one_publish_per_update(self, small_config):
        coordinator = PipelineCoordinator(small_config)
        coordinator.update(0.0)

        coordinator.update(0.375)  # three ticks
        assert coordinator.latest().sequence == 2

        coordinator.update(0.4)  # no tick, no publish
        assert coordinator.latest().sequence == 2

    def test_bounded_catch_up_after_stall(self, small_config):
        coordinator = PipelineCoordinator(small_config)
        coordinator.update(0.0)

        assert coordinator.update(60.0) == 3
        status = coordinator.status()
        assert status.dropped_ticks == 8 * 60 - 3
        assert status.ticks == 3

    def test_no_feed_runs_neutral_rules(self, small_config):
        coordinator = PipelineCoordinator(small_config)
        coordinator.update(0.0)
        coordinator.update(0.125)

        snapshot = coordinator.latest()
        assert snapshot.rules == NEUTRAL_RULES
        assert snapshot.energies == SILENCE

    def test_uses_latest_energies(self, small_config):
        feed = ScriptedFeed(make_frames(60.0, 4))
        coordinator = PipelineCoordinator(small_config, feed=feed)

        coordinator.update(0.0)
        coordinator.update(0.125)

        assert coordinator.windows_analyzed == 4
        snapshot = coordinator.latest()
        assert snapshot.energies.bass == pytest.approx(1.0, abs=0.02)
        assert snapshot.energies.bass > snapshot.energies.mid
        assert snapshot.rules == coordinator.modulator.modulate(snapshot.energies)

    def test_stall_is_counted_not_fatal(self, small_config):
        feed = ScriptedFeed([None] + make_frames(800.0, 1))
        coordinator = PipelineCoordinator(small_config, feed=feed)

        coordinator.update(0.0)
        assert coordinator.status().stalls == 1

        coordinator.update(0.125)
        assert coordinator.windows_analyzed == 1
        assert coordinator.latest().energies.mid == pytest.approx(1.0)

    def test_catch_up_bounded_when_decoding_resumes(self, small_config):
        feed = ScriptedFeed([None] * 3 + make_frames(800.0, 2))
        coordinator = PipelineCoordinator(small_config, feed=feed)

        assert coordinator.update(0.0) == 0
        assert coordinator.update(0.125) == 1
        assert coordinator.update(0.25) == 1
        assert coordinator.windows_analyzed == 0

        # Decoding comes back after a long gap
        ran = coordinator.update(10.25)
        assert ran <= small_config.simulation.max_catch_up
        assert ran == 3

        status = coordinator.status()
        assert status.stalls == 1
        assert status.dropped_ticks == 8 * 10 - 3
        assert status.ticks == 5
        assert coordinator.windows_analyzed == 2
        assert coordinator.latest().energies.mid == pytest.approx(1.0, abs=0.05)

    def test_decode_error_raises_pipeline_error(self, small_config):
        feed = ScriptedFeed([RuntimeError("corrupt frame")])
        coordinator = PipelineCoordinator(small_config, feed=feed)

        with pytest.raises(PipelineError, match="corrupt frame"):
            coordinator.update(0.0)


class TestEndOfStream:
    """Behaviour once the audio has been fully played."""

    def test_freeze_stops_ticking(self, small_config):
        feed = ScriptedFeed(make_frames(60.0, 2) + [END_OF_STREAM])
        coordinator = PipelineCoordinator(small_config, feed=feed)

        coordinator.update(0.0)
        assert coordinator.wait(0) is True
        generation = coordinator.engine.generation

        assert coordinator.update(1.0) == 0
        assert coordinator.engine.generation == generation
        assert coordinator.status().finished

    def test_freeze_still_applies_commands(self, small_config):
        feed = ScriptedFeed([END_OF_STREAM])
        coordinator = PipelineCoordinator(small_config, feed=feed)
        coordinator.update(0.0)

        coordinator.handle("clear")
        coordinator.update(0.125)
        assert coordinator.latest().population == 0

    def test_idle_keeps_ticking_on_neutral_rules(self, small_config):
        config = with_simulation(small_config, on_end="idle")
        feed = ScriptedFeed(make_frames(8000.0, 2) + [END_OF_STREAM])
        coordinator = PipelineCoordinator(config, feed=feed)

        coordinator.update(0.0)
        assert coordinator.update(0.25) == 2

        snapshot = coordinator.latest()
        assert snapshot.rules == NEUTRAL_RULES
        assert snapshot.energies == SILENCE
        assert coordinator.status().finished

    def test_waits_for_playback_to_drain(self, small_config, sample_rate):
        clock = ManualClock()
        playback = ClockedPlayback(sample_rate, 1, max_chunks=4, chunk_size=1024, clock=clock)
        playback.start()
        feed = ScriptedFeed(make_frames(60.0, 2) + [END_OF_STREAM])
        coordinator = PipelineCoordinator(small_config, feed=feed, playback=playback, clock=clock)

        coordinator.update()
        assert coordinator.status().audio_ended
        assert not coordinator.status().finished

        clock.t = 1.0
        coordinator.update()
        assert coordinator.status().finished


class TestBackpressure:
    """The playback backlog paces decoding."""

    def test_pump_stops_when_sink_is_full(self, small_config, sample_rate):
        clock = ManualClock()
        playback = ClockedPlayback(sample_rate, 1, max_chunks=2, chunk_size=1024, clock=clock)
        playback.start()
        feed = ScriptedFeed(make_frames(800.0, 5) + [END_OF_STREAM])
        coordinator = PipelineCoordinator(small_config, feed=feed, playback=playback, clock=clock)

        coordinator.update()
        assert len(feed.items) == 4

        coordinator.update()
        assert len(feed.items) == 4

        # ~1.1 chunks of playback frees one slot
        clock.t = 0.05
        coordinator.update()
        assert len(feed.items) == 3

    def test_analysis_stays_near_playback(self, small_config, sample_rate):
        clock = ManualClock()
        playback = ClockedPlayback(sample_rate, 1, max_chunks=2, chunk_size=1024, clock=clock)
        playback.start()
        feed = ScriptedFeed(make_frames(800.0, 50))
        coordinator = PipelineCoordinator(small_config, feed=feed, playback=playback, clock=clock)

        for step in range(20):
            clock.t = step * 0.02
            coordinator.update()

        played_chunks = playback.played_frames / 1024
        assert coordinator.windows_analyzed <= played_chunks + 2 + 1


class TestCommands:
    """UI command handling."""

    def test_reset_and_clear_land_on_tick(self, small_config):
        coordinator = PipelineCoordinator(small_config)
        coordinator.update(0.0)

        coordinator.handle("clear")
        assert coordinator.latest().population > 0

        coordinator.update(0.125)
        assert coordinator.latest().population == 0
        assert coordinator.latest().generation == 0

        coordinator.handle("reset", 1.0)
        coordinator.update(0.25)
        assert coordinator.latest().population == 16 * 12

    def test_color_scheme(self, small_config):
        coordinator = PipelineCoordinator(small_config)
        assert coordinator.view() == ViewSettings(color_scheme="pulse", fullscreen=False)

        coordinator.handle("color_scheme", "heat")
        assert coordinator.view().color_scheme == "heat"

        coordinator.handle("color_scheme")
        assert coordinator.view().color_scheme == "rainbow"

        with pytest.raises(ValueError):
            coordinator.handle("color_scheme", "sepia")

    def test_toggle_fullscreen(self, small_config):
        coordinator = PipelineCoordinator(small_config)
        coordinator.handle("toggle_fullscreen")
        assert coordinator.view().fullscreen is True
        coordinator.handle("toggle_fullscreen")
        assert coordinator.view().fullscreen is False

    def test_unknown_command(self, small_config):
        coordinator = PipelineCoordinator(small_config)
        with pytest.raises(ValueError):
            coordinator.handle("rewind")

    def test_stop_command_closes(self, small_config):
        feed = ScriptedFeed([])
        coordinator = PipelineCoordinator(small_config, feed=feed)

        coordinator.handle("stop")
        assert coordinator.closed
        assert feed.stopped


class TestThreaded:
    """End-to-end runs on real threads."""

    def test_synthetic_run_to_completion(self, small_config):
        config = with_simulation(small_config, tick_rate=60.0)
        coordinator = PipelineCoordinator.synthetic(config, duration=0.3, headless=True)

        coordinator.start()
        try:
            assert coordinator.wait(timeout=10.0)
        finally:
            coordinator.stop()

        status = coordinator.status()
        assert coordinator.closed
        assert status.audio_ended
        assert status.generation > 0
        assert coordinator.windows_analyzed > 0

    def test_file_run(self, small_config, temp_audio_file):
        coordinator = PipelineCoordinator.from_file(temp_audio_file, small_config, headless=True)
        assert coordinator.playback.channels == 1

        coordinator.start()
        try:
            assert coordinator.wait(timeout=10.0)
        finally:
            coordinator.stop()

        assert coordinator.status().playback_seconds == pytest.approx(1.0, abs=0.05)

    def test_failure_surfaces_from_wait(self, small_config):
        feed = ScriptedFeed([RuntimeError("device gone")])
        coordinator = PipelineCoordinator(small_config, feed=feed)

        coordinator.start()
        try:
            with pytest.raises(PipelineError):
                coordinator.wait(timeout=5.0)
        finally:
            coordinator.stop()
        assert coordinator.status().failed

    def test_stop_is_prompt(self, small_config):
        coordinator = PipelineCoordinator.synthetic(small_config, duration=None, headless=True)
        coordinator.start()
        time.sleep(0.1)

        started = time.perf_counter()
        coordinator.stop()
        assert time.perf_counter() - started < 2.0
        assert coordinator.closed
