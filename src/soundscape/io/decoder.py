"""
Audio file probing and chunked decoding.

Files are opened and test-decoded up front so unsupported or corrupt audio
fails before the pipeline starts; decoding then proceeds in fixed-size
chunks so playback can begin immediately on long tracks.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Union

import librosa
import numpy as np
import soundfile as sf

from soundscape.errors import AudioLoadError

# Uncompressed containers plus MP3/Ogg via libsndfile
SUPPORTED_FORMATS = ("WAV", "WAVEX", "AIFF", "FLAC", "MP3", "OGG")


@dataclass(frozen=True, eq=False)
class AudioFrame:
    """One decoded chunk of interleaved PCM samples."""

    samples: np.ndarray  # (frames, channels) float32, C order
    sample_rate: int
    channels: int

    def __post_init__(self):
        samples = np.array(self.samples, dtype=np.float32, order="C")
        if samples.ndim == 1:
            samples = samples.reshape(-1, 1)
        if samples.ndim != 2 or samples.shape[1] != self.channels:
            raise ValueError(
                f"samples shaped {samples.shape} do not match {self.channels} channel(s)"
            )
        samples.flags.writeable = False
        object.__setattr__(self, "samples", samples)

    @property
    def frames(self) -> int:
        return self.samples.shape[0]

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate

    def mono(self) -> np.ndarray:
        """Channel-averaged 1-D samples."""
        if self.channels == 1:
            return self.samples[:, 0]
        return librosa.to_mono(np.ascontiguousarray(self.samples.T))


class AudioStream:
    """
    A validated audio file that can be decoded chunk by chunk.

    Use AudioStream.open() rather than the constructor.
    """

    def __init__(self, path: Path, info):
        self.path = path
        self.info = info

    @property
    def sample_rate(self) -> int:
        return int(self.info.samplerate)

    @property
    def channels(self) -> int:
        return int(self.info.channels)

    @property
    def frames(self) -> int:
        return int(self.info.frames)

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate

    @classmethod
    def open(cls, audio_path: Union[str, Path]) -> "AudioStream":
        """
        Probe and test-decode an audio file.

        Args:
            audio_path: Path to audio file (wav, aiff, flac, mp3, ogg).

        Returns:
            AudioStream ready for chunks().

        Raises:
            AudioLoadError: The file is missing, unsupported or corrupt.
        """
        path = Path(audio_path)
        if not path.is_file():
            raise AudioLoadError(f"audio file not found: {path}")

        try:
            info = sf.info(str(path))
        except RuntimeError as e:
            raise AudioLoadError(f"unsupported or corrupt audio file {path}: {e}") from e

        if info.format not in SUPPORTED_FORMATS:
            raise AudioLoadError(
                f"unsupported audio format {info.format!r} in {path} "
                f"(supported: {', '.join(SUPPORTED_FORMATS)})"
            )
        if info.frames <= 0 or info.samplerate <= 0:
            raise AudioLoadError(f"audio file contains no samples: {path}")

        # Decode a first block so corrupt payloads fail here, not mid-playback
        try:
            with sf.SoundFile(str(path)) as f:
                head = f.read(min(4096, info.frames), dtype="float32", always_2d=True)
        except RuntimeError as e:
            raise AudioLoadError(f"failed to decode {path}: {e}") from e
        if not np.isfinite(head).all():
            raise AudioLoadError(f"audio file contains non-finite samples: {path}")

        return cls(path, info)

    def chunks(self, chunk_size: int = 1024) -> Iterator[AudioFrame]:
        """
        Decode the file in fixed-size chunks.

        The final chunk may be shorter than chunk_size. Non-finite samples
        later in the file are replaced with silence.

        Args:
            chunk_size: Frames per chunk.

        Yields:
            AudioFrame per chunk.
        """
        for block in sf.blocks(
            str(self.path),
            blocksize=chunk_size,
            dtype="float32",
            always_2d=True,
        ):
            if not np.isfinite(block).all():
                block = np.nan_to_num(block, nan=0.0, posinf=0.0, neginf=0.0)
            yield AudioFrame(block, self.sample_rate, self.channels)


def synthetic_chunks(
    sample_rate: int = 44100,
    channels: int = 2,
    chunk_size: int = 1024,
    duration: float | None = 30.0,
    seed: int = 0,
) -> Iterator[AudioFrame]:
    """
    Generate a test signal exercising all three bands.

    A 60Hz bass tone pulses at 2Hz, a mid tone sweeps 300-1800Hz,
    and treble noise swells every few seconds.

    Args:
        sample_rate: Output sample rate.
        channels: Output channel count (mono content duplicated).
        chunk_size: Frames per chunk.
        duration: Length in seconds; None runs forever.
        seed: Noise seed.

    Yields:
        AudioFrame per chunk.
    """
    rng = np.random.default_rng(seed)
    total = None if duration is None else int(duration * sample_rate)
    start = 0
    mid_phase = 0.0

    while total is None or start < total:
        n = chunk_size if total is None else min(chunk_size, total - start)
        t = (start + np.arange(n)) / sample_rate

        bass_env = 0.5 + 0.5 * np.sin(2 * np.pi * 2.0 * t)
        bass = 0.5 * bass_env * np.sin(2 * np.pi * 60.0 * t)

        sweep_hz = 1050.0 + 750.0 * np.sin(2 * np.pi * 0.1 * t)
        phase = mid_phase + np.cumsum(2 * np.pi * sweep_hz / sample_rate)
        mid_phase = float(phase[-1]) if n else mid_phase
        mid = 0.25 * (0.5 + 0.5 * np.sin(2 * np.pi * 0.3 * t)) * np.sin(phase)

        treble_env = np.clip(np.sin(2 * np.pi * 0.2 * t), 0.0, 1.0) ** 2
        treble = 0.1 * treble_env * rng.standard_normal(n)

        mono = np.clip(bass + mid + treble, -1.0, 1.0).astype(np.float32)
        yield AudioFrame(np.repeat(mono[:, None], channels, axis=1), sample_rate, channels)
        start += n
