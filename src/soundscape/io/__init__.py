"""Audio decoding, buffering and playback."""

from soundscape.io.decoder import AudioFrame, AudioStream
from soundscape.io.feed import AudioFeed
from soundscape.io.playback import ClockedPlayback, DevicePlayback

__all__ = ["AudioFrame", "AudioStream", "AudioFeed", "ClockedPlayback", "DevicePlayback"]
