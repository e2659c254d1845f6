"""
Spectral band extraction for live audio.

Turns one fixed-size window of decoded samples into bass/mid/treble
energy levels that the rule modulator can map onto automaton parameters.
"""

from dataclasses import dataclass

import librosa
import numpy as np
from scipy import signal as scipy_signal

from soundscape.config import AudioConfig, is_power_of_two
from soundscape.errors import ConfigError


@dataclass(frozen=True)
class BandEnergies:
    """Normalized energy of the three analysis bands [0.0, 1.0]."""

    bass: float = 0.0    # 20-250Hz
    mid: float = 0.0     # 250-2000Hz
    treble: float = 0.0  # 2000-20000Hz

    # Most prominent frequency in the window, 0 when silent
    peak_frequency: float = 0.0

    @property
    def overall(self) -> float:
        return (self.bass + self.mid + self.treble) / 3.0


SILENCE = BandEnergies()


class SpectralAnalyzer:
    """
    Computes band energies from a single analysis window.

    A Hann window and real FFT give the magnitude spectrum; bins are grouped
    into three contiguous bands and each band's RMS magnitude is divided by
    a slowly decaying running peak, so quiet and loud passages both land in
    a usable [0, 1] range.
    """

    def __init__(
        self,
        window_size: int = 2048,
        bass_range: tuple[float, float] = (20.0, 250.0),
        mid_range: tuple[float, float] = (250.0, 2000.0),
        treble_range: tuple[float, float] = (2000.0, 20000.0),
        peak_decay: float = 0.98,
        noise_floor: float = 1e-9,
    ):
        """
        Initialize the analyzer.

        Args:
            window_size: FFT size in samples. Must be a power of two.
            bass_range: (low, high) Hz for the bass band.
            mid_range: (low, high) Hz for the mid band.
            treble_range: (low, high) Hz for the treble band.
            peak_decay: Per-window decay of the running reference level.
            noise_floor: Reference level at or below which output is silence.
        """
        if not is_power_of_two(window_size):
            raise ConfigError(f"analysis window must be a power of two, got {window_size}")
        if not (0.0 < peak_decay <= 1.0):
            raise ConfigError(f"peak_decay must be in (0, 1], got {peak_decay}")

        self.window_size = window_size
        self.bands = (bass_range, mid_range, treble_range)
        self.peak_decay = peak_decay
        self.noise_floor = noise_floor

        # Periodic Hann, matching the FFT length
        self._window = scipy_signal.get_window("hann", window_size).astype(np.float64)
        self._reference = 0.0
        self._bins_cache: dict[int, tuple[tuple[int, int], ...]] = {}
        self._freqs_cache: dict[int, np.ndarray] = {}

    @classmethod
    def from_config(cls, audio: AudioConfig) -> "SpectralAnalyzer":
        return cls(
            window_size=audio.fft_size,
            bass_range=audio.bass_range,
            mid_range=audio.mid_range,
            treble_range=audio.treble_range,
            peak_decay=audio.peak_decay,
        )

    @property
    def reference_level(self) -> float:
        """Current running peak used for normalization."""
        return self._reference

    def reset(self):
        """Forget the running peak."""
        self._reference = 0.0

    def band_bins(self, sample_rate: int) -> tuple[tuple[int, int], ...]:
        """
        Map the band ranges to FFT bin index spans for a sample rate.

        Uses bin = frequency * window_size / sample_rate, skipping the DC
        bin and clamping to the positive half of the spectrum.

        Returns:
            ((start, end), ...) half-open spans, one per band.
        """
        cached = self._bins_cache.get(sample_rate)
        if cached is not None:
            return cached

        n_bins = self.window_size // 2 + 1
        spans = []
        for low, high in self.bands:
            start = int(low * self.window_size / sample_rate)
            end = int(high * self.window_size / sample_rate)
            start = min(max(start, 1), n_bins)
            end = min(max(end, 1), n_bins)
            spans.append((start, end))

        result = tuple(spans)
        self._bins_cache[sample_rate] = result
        return result

    def _prepare(self, window: np.ndarray) -> np.ndarray:
        samples = np.asarray(window, dtype=np.float64)
        if samples.ndim == 2:
            # (frames, channels) -> mono
            samples = samples.mean(axis=1)
        samples = samples.ravel()

        n = self.window_size
        if samples.size >= n:
            return samples[:n]
        padded = np.zeros(n, dtype=np.float64)
        padded[: samples.size] = samples
        return padded

    @staticmethod
    def _band_level(magnitude: np.ndarray, start: int, end: int) -> float:
        """RMS magnitude over a bin span; 0 for an empty span."""
        if end <= start:
            return 0.0
        band = magnitude[start:end]
        return float(np.sqrt(np.mean(band * band)))

    def analyze(self, window: np.ndarray, sample_rate: int) -> BandEnergies:
        """
        Extract normalized band energies from one window of samples.

        Short windows are zero-padded; only the first window_size samples
        of a longer one are used.

        Args:
            window: 1-D samples, or (frames, channels) to be mono-folded.
            sample_rate: Sample rate of the window.

        Returns:
            BandEnergies for this window.
        """
        samples = self._prepare(window)
        magnitude = np.abs(np.fft.rfft(samples * self._window))

        raw = [self._band_level(magnitude, start, end) for start, end in self.band_bins(sample_rate)]

        if not all(np.isfinite(raw)):
            raw = [0.0, 0.0, 0.0]

        self._reference = max(self._reference * self.peak_decay, max(raw))
        if self._reference <= self.noise_floor:
            return SILENCE

        bass, mid, treble = np.clip(np.asarray(raw) / self._reference, 0.0, 1.0)

        peak_bin = int(np.argmax(magnitude[1:])) + 1
        freqs = self._freqs_cache.get(sample_rate)
        if freqs is None:
            freqs = librosa.fft_frequencies(sr=sample_rate, n_fft=self.window_size)
            self._freqs_cache[sample_rate] = freqs

        return BandEnergies(
            bass=float(bass),
            mid=float(mid),
            treble=float(treble),
            peak_frequency=float(freqs[peak_bin]),
        )
