"""
CLI entry point for Soundscape Evolution.

Usage:
    soundscape [audio_file] [options]

Without an audio file (or with --demo) a generated test signal drives
the simulation.
"""

import argparse
import logging
import sys
import threading
import time
from pathlib import Path

from soundscape.config import COLOR_SCHEMES, EDGE_POLICIES, END_POLICIES, Config
from soundscape.errors import AudioLoadError, ConfigError, PipelineError
from soundscape.pipeline import PipelineCoordinator, PipelineStatus


def _format_status(status: PipelineStatus) -> str:
    e = status.energies
    r = status.rules
    return (
        f"gen {status.generation:6d}  t={status.playback_seconds:6.1f}s  "
        f"bass {e.bass:.2f} mid {e.mid:.2f} treble {e.treble:.2f}  "
        f"{r.survival_variant:<7} bias {r.birth_bias:.2f} mut {r.mutation_rate:.3f}"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="soundscape",
        description="Audio-reactive Game of Life visualizer",
    )

    parser.add_argument(
        "audio",
        type=Path,
        nargs="?",
        default=None,
        help="Input audio file (wav, aiff, flac, mp3, ogg)",
    )
    parser.add_argument("--config", type=Path, default=None, help="TOML configuration file")

    # Simulation
    parser.add_argument("--width", type=int, default=None, help="Grid width in cells")
    parser.add_argument("--height", type=int, default=None, help="Grid height in cells")
    parser.add_argument("--tick-rate", type=float, default=None, help="Simulation ticks per second")
    parser.add_argument(
        "--edge", type=str, default=None, choices=EDGE_POLICIES,
        help="Edge policy for neighbour counting",
    )
    parser.add_argument("--density", type=float, default=None, help="Initial live-cell fraction [0.0-1.0]")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible runs")
    parser.add_argument(
        "--on-end", type=str, default=None, choices=END_POLICIES,
        help="What the grid does after the audio ends (default: freeze)",
    )

    # Visual
    parser.add_argument("--scheme", type=str, default=None, choices=COLOR_SCHEMES, help="Colour scheme")

    # Run mode
    parser.add_argument("--headless", action="store_true", help="No window or audio device; print status")
    parser.add_argument("--duration", type=float, default=None, help="Stop after N seconds")
    parser.add_argument("--demo", action="store_true", help="Use the generated test signal")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    return parser


def _apply_args(config: Config, args: argparse.Namespace) -> Config:
    simulation = {
        key: value
        for key, value in (
            ("width", args.width),
            ("height", args.height),
            ("tick_rate", args.tick_rate),
            ("edge_policy", args.edge),
            ("initial_density", args.density),
            ("seed", args.seed),
            ("on_end", args.on_end),
        )
        if value is not None
    }
    visualization = {"color_scheme": args.scheme} if args.scheme else {}
    return config.with_overrides(simulation=simulation, visualization=visualization)


def _run_headless(coordinator: PipelineCoordinator, duration: float | None):
    started = time.perf_counter()
    coordinator.start()
    try:
        while True:
            remaining = None if duration is None else duration - (time.perf_counter() - started)
            if remaining is not None and remaining <= 0:
                break
            timeout = 1.0 if remaining is None else min(1.0, remaining)
            if coordinator.wait(timeout):
                break
            print(_format_status(coordinator.status()), flush=True)
    except KeyboardInterrupt:
        print("\nInterrupted")
    finally:
        coordinator.stop()

    status = coordinator.status()
    print(_format_status(status))
    print(
        f"Done: {status.ticks} ticks, {status.dropped_ticks} dropped, "
        f"{status.stalls} stalls, {status.underruns} underruns"
    )


def _run_window(coordinator: PipelineCoordinator, config: Config, duration: float | None):
    from soundscape.render.display import Display
    from soundscape.render.palette import CellPainter

    display = Display(coordinator, config.window, CellPainter.from_config(config.visualization))
    coordinator.start()
    if duration is not None:
        timer = threading.Timer(duration, coordinator.stop)
        timer.daemon = True
        timer.start()
    display.run()


def main():
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = Config.from_toml(args.config) if args.config else Config()
        config = _apply_args(config, args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.audio is not None and not args.demo:
            print(f"Loading audio: {args.audio}")
            coordinator = PipelineCoordinator.from_file(args.audio, config, headless=args.headless)
        else:
            print("No audio file given, using generated test signal")
            coordinator = PipelineCoordinator.synthetic(config, duration=args.duration, headless=args.headless)
    except AudioLoadError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    sim = config.simulation
    print(f"Grid: {sim.width}x{sim.height} @ {sim.tick_rate:g} ticks/s, edges: {sim.edge_policy}")

    try:
        if args.headless:
            _run_headless(coordinator, args.duration)
        else:
            _run_window(coordinator, config, args.duration)
        coordinator.raise_if_failed()
    except PipelineError as e:
        coordinator.stop()
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
