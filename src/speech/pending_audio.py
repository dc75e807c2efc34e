"""Holding queue for call audio that arrives before the transcription link is open."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable

from agents.errors import PendingBufferClosedError

LOGGER = logging.getLogger(__name__)


class PendingAudioBuffer:
    """Single-use FIFO of audio frames.

    Frames are released exactly once through ``drain_into``; afterwards the
    buffer is bypassed for the rest of the call. When more than ``max_frames``
    are held the oldest frame is dropped.
    """

    def __init__(self, max_frames: int | None = None) -> None:
        if max_frames is not None and max_frames < 1:
            raise ValueError("max_frames must be positive.")
        self._frames: deque[bytes] = deque()
        self._max_frames = max_frames
        self._drained = False
        self.dropped_frames = 0

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def drained(self) -> bool:
        return self._drained

    @property
    def pending_bytes(self) -> int:
        return sum(len(frame) for frame in self._frames)

    def enqueue(self, frame: bytes) -> None:
        if self._drained:
            raise PendingBufferClosedError()
        if self._max_frames is not None and len(self._frames) >= self._max_frames:
            self._frames.popleft()
            self.dropped_frames += 1
            if self.dropped_frames == 1:
                LOGGER.warning(
                    "Pending audio buffer reached %d frames; dropping oldest audio",
                    self._max_frames,
                )
        self._frames.append(frame)

    def drain_into(self, sink: Callable[[bytes], object]) -> int:
        """Forward every held frame to ``sink`` in arrival order and close the buffer."""

        if self._drained:
            raise PendingBufferClosedError()
        self._drained = True

        count = 0
        while self._frames:
            sink(self._frames.popleft())
            count += 1
        return count

    def discard(self) -> int:
        """Close the buffer without forwarding; returns how many frames were dropped."""

        self._drained = True
        count = len(self._frames)
        self._frames.clear()
        return count
