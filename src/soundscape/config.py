"""
Configuration for the soundscape pipeline.

One immutable tree of dataclasses is built at startup and passed into each
component's constructor. Every section validates itself on construction so
bad values are rejected before any audio or simulation thread starts.
"""

import math
import tomllib
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Union

from soundscape.errors import ConfigError

EDGE_POLICIES = ("wrap", "dead", "alive")
COLOR_SCHEMES = ("classic", "heat", "rainbow", "pulse")
END_POLICIES = ("freeze", "idle")


def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def _check_range(name: str, band: tuple[float, float]):
    if len(band) != 2:
        raise ConfigError(f"{name} must be a (low, high) pair, got {band!r}")
    low, high = band
    if not (0.0 <= low < high):
        raise ConfigError(f"{name} must satisfy 0 <= low < high, got {band!r}")


@dataclass(frozen=True)
class WindowConfig:
    """Window settings consumed by the display."""

    title: str = "Soundscape Evolution"
    width: int = 800
    height: int = 600
    fullscreen: bool = False
    fps: int = 60

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ConfigError(f"window size must be positive, got {self.width}x{self.height}")
        if self.fps <= 0:
            raise ConfigError(f"window fps must be positive, got {self.fps}")


@dataclass(frozen=True)
class SensitivityConfig:
    """Per-band gain applied by the rule modulator."""

    bass: float = 0.25
    mid: float = 1.0
    treble: float = 0.05

    def __post_init__(self):
        for name in ("bass", "mid", "treble"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ConfigError(f"sensitivity.{name} must be a finite value >= 0, got {value!r}")


@dataclass(frozen=True)
class AudioConfig:
    """Decoding, analysis and playback settings."""

    sample_rate: int = 44100
    channels: int = 2
    fft_size: int = 2048
    hop_size: int = 1024
    chunk_size: int = 1024
    bass_range: tuple[float, float] = (20.0, 250.0)
    mid_range: tuple[float, float] = (250.0, 2000.0)
    treble_range: tuple[float, float] = (2000.0, 20000.0)
    peak_decay: float = 0.98
    sensitivity: SensitivityConfig = field(default_factory=SensitivityConfig)

    # Bounded hand-off depths, in chunks
    queue_chunks: int = 8
    playback_chunks: int = 4

    def __post_init__(self):
        if self.sample_rate <= 0:
            raise ConfigError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.channels <= 0:
            raise ConfigError(f"channels must be positive, got {self.channels}")
        if not is_power_of_two(self.fft_size):
            raise ConfigError(f"fft_size must be a power of two, got {self.fft_size}")
        if not (0 < self.hop_size <= self.fft_size):
            raise ConfigError(
                f"hop_size must be in (0, fft_size], got {self.hop_size} for fft_size {self.fft_size}"
            )
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        _check_range("bass_range", self.bass_range)
        _check_range("mid_range", self.mid_range)
        _check_range("treble_range", self.treble_range)
        if not (0.0 < self.peak_decay <= 1.0):
            raise ConfigError(f"peak_decay must be in (0, 1], got {self.peak_decay}")
        if self.queue_chunks <= 0 or self.playback_chunks <= 0:
            raise ConfigError("queue_chunks and playback_chunks must be positive")


@dataclass(frozen=True)
class SimulationConfig:
    """Automaton and tick clock settings."""

    width: int = 200
    height: int = 150
    tick_rate: float = 30.0  # ticks per second
    initial_density: float = 0.3
    edge_policy: str = "wrap"
    max_catch_up: int = 3
    max_age: int = 255
    seed: int | None = None
    on_end: str = "freeze"
    variant_thresholds: tuple[float, float] = (0.4, 0.7)

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ConfigError(f"grid size must be positive, got {self.width}x{self.height}")
        if not (math.isfinite(self.tick_rate) and self.tick_rate > 0):
            raise ConfigError(f"tick_rate must be positive, got {self.tick_rate}")
        if not (0.0 <= self.initial_density <= 1.0):
            raise ConfigError(f"initial_density must be in [0, 1], got {self.initial_density}")
        if self.edge_policy not in EDGE_POLICIES:
            raise ConfigError(f"edge_policy must be one of {EDGE_POLICIES}, got {self.edge_policy!r}")
        if self.max_catch_up < 1:
            raise ConfigError(f"max_catch_up must be >= 1, got {self.max_catch_up}")
        if not (1 <= self.max_age <= 65535):
            raise ConfigError(f"max_age must be in [1, 65535], got {self.max_age}")
        if self.on_end not in END_POLICIES:
            raise ConfigError(f"on_end must be one of {END_POLICIES}, got {self.on_end!r}")
        low, high = self.variant_thresholds
        if not (0.0 <= low <= high):
            raise ConfigError(f"variant_thresholds must be ascending, got {self.variant_thresholds!r}")

    @property
    def tick_interval(self) -> float:
        return 1.0 / self.tick_rate


@dataclass(frozen=True)
class VisualizationConfig:
    """Cell drawing settings."""

    cell_size: int = 4
    color_scheme: str = "pulse"
    fade_rate: float = 0.1

    def __post_init__(self):
        if self.cell_size <= 0:
            raise ConfigError(f"cell_size must be positive, got {self.cell_size}")
        if self.color_scheme not in COLOR_SCHEMES:
            raise ConfigError(f"color_scheme must be one of {COLOR_SCHEMES}, got {self.color_scheme!r}")
        if not (0.0 <= self.fade_rate <= 1.0):
            raise ConfigError(f"fade_rate must be in [0, 1], got {self.fade_rate}")


@dataclass(frozen=True)
class Config:
    """Complete application configuration."""

    window: WindowConfig = field(default_factory=WindowConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    visualization: VisualizationConfig = field(default_factory=VisualizationConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Build a config from nested mappings, e.g. a parsed TOML document.

        Missing keys keep their defaults; unknown keys are rejected.
        """
        return _build(cls, data, "config")

    @classmethod
    def from_toml(cls, path: Union[str, Path]) -> "Config":
        """
        Load configuration from a TOML file.

        Args:
            path: Path to the TOML document.

        Returns:
            Validated Config.
        """
        path = Path(path)
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"config file not found: {path}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"invalid TOML in {path}: {e}") from e
        return cls.from_dict(data)

    def with_overrides(self, **sections: dict[str, Any]) -> "Config":
        """Return a copy with fields of the named sections replaced."""
        updated = {}
        for name, values in sections.items():
            if not values:
                continue
            current = getattr(self, name)
            try:
                updated[name] = replace(current, **values)
            except TypeError as e:
                raise ConfigError(f"bad override for [{name}]: {e}") from e
        return replace(self, **updated)


def _build(cls, data: dict[str, Any], where: str):
    if not isinstance(data, dict):
        raise ConfigError(f"[{where}] must be a table, got {type(data).__name__}")
    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ConfigError(f"unknown keys in [{where}]: {', '.join(sorted(unknown))}")

    kwargs = {}
    for name, value in data.items():
        factory = known[name].default_factory
        nested = factory if isinstance(factory, type) else None
        if nested is not None and is_dataclass(nested):
            kwargs[name] = _build(nested, value, name)
        elif isinstance(value, list):
            kwargs[name] = tuple(value)
        else:
            kwargs[name] = value
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigError(f"bad value in [{where}]: {e}") from e
