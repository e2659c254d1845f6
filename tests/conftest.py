"""Pytest configuration and shared fixtures."""

import numpy as np
import pytest

from soundscape.config import AudioConfig, Config, SimulationConfig
from soundscape.io.decoder import AudioFrame

# Default sample rate for test audio
TEST_SR = 22050


def make_sine(
    frequency: float,
    n_samples: int,
    sample_rate: int = TEST_SR,
    amplitude: float = 0.5,
) -> np.ndarray:
    """Mono float32 sine starting at phase 0."""
    t = np.arange(n_samples) / sample_rate
    return (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)


def make_frames(frequency: float, count: int, chunk_size: int = 1024, sample_rate: int = TEST_SR):
    """Consecutive mono AudioFrames of a continuous sine."""
    y = make_sine(frequency, count * chunk_size, sample_rate)
    return [
        AudioFrame(y[i * chunk_size:(i + 1) * chunk_size], sample_rate, 1)
        for i in range(count)
    ]


@pytest.fixture
def sample_rate() -> int:
    """Default sample rate for tests."""
    return TEST_SR


@pytest.fixture
def small_config() -> Config:
    """Small grid, mono audio at the test rate, one window per chunk."""
    return Config(
        audio=AudioConfig(
            sample_rate=TEST_SR,
            channels=1,
            fft_size=1024,
            hop_size=1024,
            chunk_size=1024,
            playback_chunks=2,
        ),
        simulation=SimulationConfig(
            width=16,
            height=12,
            tick_rate=8.0,  # exact binary interval
            initial_density=0.3,
            seed=1,
        ),
    )


@pytest.fixture
def mixed_signal(sample_rate: int) -> tuple[np.ndarray, int]:
    """
    Generate a signal with content in all three bands.

    Returns:
        Tuple of (audio_signal, sample_rate).
    """
    duration = 1.0
    n = int(sample_rate * duration)
    y = (
        make_sine(60.0, n, sample_rate, 0.3)
        + make_sine(800.0, n, sample_rate, 0.2)
        + make_sine(6000.0, n, sample_rate, 0.1)
    )
    return y, sample_rate


@pytest.fixture
def temp_audio_file(tmp_path, mixed_signal):
    """Create a temporary stereo WAV file for testing file I/O."""
    import soundfile as sf

    y, sr = mixed_signal
    audio_path = tmp_path / "test_audio.wav"
    sf.write(audio_path, np.stack([y, y], axis=1), sr)
    return audio_path
