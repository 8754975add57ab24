"""
Voice platform collaborator interface.

The bridge only needs four things from a voice-chat platform: a per-participant
inbound PCM stream with an explicit end, one long-lived outbound sink, and
join/leave primitives. ``BufferedSink`` is the shared sink implementation: the
platform's player thread pulls fixed-size frames from it while the bridge
pushes from the event loop.
"""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

DataCallback = Callable[[bytes], None]
EndCallback = Callable[[], None]


class SinkClosed(RuntimeError):
    """Raised when audio is pushed into a sink that has been closed."""


class InboundAudioStream(ABC):
    """Decoded 48 kHz stereo PCM16 from one participant.

    Callbacks are always invoked on the event loop thread. ``on_end`` fires at
    most once, after which ``on_data`` never fires again.
    """

    participant_id: str

    @abstractmethod
    def start(self, on_data: DataCallback, on_end: EndCallback) -> None:
        ...

    @abstractmethod
    def unsubscribe(self) -> None:
        """Detach callbacks. Idempotent."""


class OutboundAudioSink(ABC):
    """One continuous 48 kHz stereo PCM16 stream played into the channel."""

    @abstractmethod
    def push(self, pcm: bytes) -> None:
        ...

    @abstractmethod
    def buffered_bytes(self) -> int:
        ...

    @abstractmethod
    async def wait_below(self, threshold_bytes: int) -> None:
        """Return once the queued audio is at or below ``threshold_bytes``."""

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the sink. Idempotent."""


class VoiceConnection(ABC):
    channel_id: str
    _on_disconnect: Optional[Callable[[], Awaitable[None]]] = None

    @abstractmethod
    def open_inbound(self, participant_id: str) -> InboundAudioStream:
        ...

    @abstractmethod
    def open_sink(self) -> OutboundAudioSink:
        ...

    @abstractmethod
    def has_participant(self, participant_id: str) -> bool:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Leave the channel. Idempotent."""

    def set_disconnect_callback(self, callback: Optional[Callable[[], Awaitable[None]]]) -> None:
        """Register a coroutine run when the platform drops the connection on its own."""
        self._on_disconnect = callback


class VoicePlatform(ABC):
    @abstractmethod
    async def join(self, channel_id: str) -> VoiceConnection:
        """Join a voice channel. Raises ``PermissionDenied`` when rights are missing."""


class BufferedSink(OutboundAudioSink):
    """Thread-safe PCM queue drained in fixed frames by a player thread.

    ``read_frame`` never blocks and pads with silence when the queue runs dry,
    so the platform player keeps one stream open for the whole session.
    """

    def __init__(self, frame_bytes: int, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.frame_bytes = frame_bytes
        self._loop = loop or asyncio.get_running_loop()
        self._lock = threading.Lock()
        self._buffer = bytearray()
        self._closed = False
        self._waiters: List[Tuple[int, asyncio.Future]] = []
        self._silence = b"\x00" * frame_bytes

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, pcm: bytes) -> None:
        with self._lock:
            if self._closed:
                raise SinkClosed("sink is closed")
            self._buffer.extend(pcm)

    def buffered_bytes(self) -> int:
        with self._lock:
            return len(self._buffer)

    def read_frame(self) -> bytes:
        """Pull one frame; called from the platform's player thread."""
        with self._lock:
            if self._closed:
                return b""
            if not self._buffer:
                return self._silence
            frame = bytes(self._buffer[:self.frame_bytes])
            del self._buffer[:self.frame_bytes]
            has_waiters = bool(self._waiters)
        if len(frame) < self.frame_bytes:
            frame += self._silence[:self.frame_bytes - len(frame)]
        if has_waiters:
            self._notify()
        return frame

    async def wait_below(self, threshold_bytes: int) -> None:
        if self._closed or self.buffered_bytes() <= threshold_bytes:
            return
        future = self._loop.create_future()
        self._waiters.append((threshold_bytes, future))
        try:
            await future
        finally:
            self._waiters = [w for w in self._waiters if w[1] is not future]

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()
        self._notify()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._buffer.clear()
        self._notify()

    def _notify(self) -> None:
        try:
            self._loop.call_soon_threadsafe(self._release_waiters)
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    def _release_waiters(self) -> None:
        level = self.buffered_bytes()
        for threshold, future in list(self._waiters):
            if future.done():
                continue
            if self._closed or level <= threshold:
                future.set_result(None)
