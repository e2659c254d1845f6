"""
Decode thread and bounded chunk hand-off.

A background thread pulls decoded chunks from any iterable and places
them on a bounded queue. When the consumer falls behind the thread blocks
instead of dropping audio; the wait is sliced so stop() is always honoured.
"""

import logging
import queue
import threading
from typing import Iterable

from soundscape.io.decoder import AudioFrame

logger = logging.getLogger(__name__)

_PUT_TIMEOUT = 0.05


class _EndOfStream:
    def __repr__(self):
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()


class AudioFeed:
    """
    Producer side of the audio pipeline.

    poll() never blocks: it returns the next AudioFrame, None when nothing
    is ready yet (a stall), or END_OF_STREAM once the source is exhausted.
    An exception raised by the source is re-raised from poll().
    """

    def __init__(self, chunks: Iterable[AudioFrame], max_chunks: int = 8):
        """
        Initialize the feed.

        Args:
            chunks: Source of decoded chunks, consumed on the decode thread.
            max_chunks: Queue depth before the producer blocks.
        """
        self._chunks = chunks
        self._queue: queue.Queue = queue.Queue(maxsize=max_chunks)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._ended = False
        self.produced = 0

    @property
    def ended(self) -> bool:
        """True once END_OF_STREAM has been handed to the consumer."""
        return self._ended

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="soundscape-decode", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 2.0):
        """Stop producing and wait for the decode thread to exit."""
        self._stop.set()
        # Unblock a producer waiting on a full queue
        self._drain()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Decode thread did not exit within %.1fs", timeout)

    def _drain(self):
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def _put(self, item) -> bool:
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=_PUT_TIMEOUT)
                return True
            except queue.Full:
                continue
        return False

    def _run(self):
        try:
            for frame in self._chunks:
                if not self._put(frame):
                    return
                self.produced += 1
            self._put(END_OF_STREAM)
            logger.debug("Decode finished after %d chunks", self.produced)
        except Exception as e:
            logger.error("Audio decode failed: %s", e)
            self._put(e)

    def poll(self) -> AudioFrame | _EndOfStream | None:
        """
        Take the next decoded chunk without blocking.

        Returns:
            AudioFrame, None if nothing is ready, or END_OF_STREAM.
        """
        if self._ended:
            return END_OF_STREAM
        try:
            item = self._queue.get_nowait()
        except queue.Empty:
            return None
        if item is END_OF_STREAM:
            self._ended = True
        elif isinstance(item, BaseException):
            raise item
        return item
