"""
Shared fakes for the voice platform and the agent websocket.
"""

import asyncio
import json
import struct

import pytest

from agent_bridge.errors import PermissionDenied
from agent_bridge.platform.base import BufferedSink, InboundAudioStream, VoiceConnection, VoicePlatform
from agent_bridge.providers import elevenlabs_link

# 20 ms of 48 kHz stereo PCM16
DISCORD_FRAME_BYTES = 3840


def discord_frame(amplitude: int) -> bytes:
    """Constant-level 48 kHz stereo frame; RMS equals ``amplitude`` after downmix."""
    samples = DISCORD_FRAME_BYTES // 2
    return struct.pack(f"<{samples}h", *([amplitude] * samples))


class FakeInboundStream(InboundAudioStream):
    def __init__(self, participant_id):
        self.participant_id = participant_id
        self.on_data = None
        self.on_end = None
        self.unsubscribe_calls = 0

    def start(self, on_data, on_end):
        self.on_data = on_data
        self.on_end = on_end

    def unsubscribe(self):
        self.unsubscribe_calls += 1
        self.on_data = None
        self.on_end = None

    def emit(self, pcm):
        if self.on_data is not None:
            self.on_data(pcm)

    def finish(self):
        if self.on_end is not None:
            callback = self.on_end
            self.unsubscribe()
            callback()


class FakeConnection(VoiceConnection):
    def __init__(self, channel_id, participants=("user-1",)):
        self.channel_id = channel_id
        self.participants = set(participants)
        self.streams = []
        self.sinks = []
        self.disconnect_calls = 0

    def open_inbound(self, participant_id):
        stream = FakeInboundStream(participant_id)
        self.streams.append(stream)
        return stream

    def open_sink(self):
        sink = BufferedSink(DISCORD_FRAME_BYTES)
        self.sinks.append(sink)
        return sink

    def has_participant(self, participant_id):
        return participant_id in self.participants

    async def disconnect(self):
        self.disconnect_calls += 1

    async def drop(self):
        """Simulate the platform removing the bot from the channel."""
        if self._on_disconnect is not None:
            await self._on_disconnect()
        for stream in self.streams:
            stream.finish()

    def stream_for(self, participant_id):
        return [s for s in self.streams if s.participant_id == participant_id][-1]


class FakePlatform(VoicePlatform):
    def __init__(self, *, deny=False):
        self.deny = deny
        self.connections = {}

    async def join(self, channel_id):
        if self.deny:
            raise PermissionDenied("missing Connect/Speak")
        connection = FakeConnection(channel_id)
        self.connections[channel_id] = connection
        return connection


class FakeWebSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self, url):
        self.url = url
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, message):
        if self.closed:
            raise RuntimeError("send on closed socket")
        self.sent.append(json.loads(message))

    async def close(self):
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def push(self, message):
        self._incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def server_close(self):
        """Remote side drops the connection."""
        self.closed = True
        self._incoming.put_nowait(None)

    def sent_types(self):
        return [m.get("type", "user_audio_chunk" if "user_audio_chunk" in m else None) for m in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


class FakeConnector:
    """Replaces ``websockets.connect``; records every socket it opens."""

    def __init__(self):
        self.sockets = []
        self.block = None
        self.refuse = False
        self.attempts = 0

    async def __call__(self, url, **kwargs):
        self.attempts += 1
        if self.refuse:
            raise OSError("connection refused")
        if self.block is not None:
            await self.block.wait()
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws

    @property
    def last(self):
        return self.sockets[-1]


@pytest.fixture
def connector(monkeypatch):
    fake = FakeConnector()
    monkeypatch.setattr(elevenlabs_link.websockets, "connect", fake)
    return fake


async def wait_for_condition(predicate, timeout=1.0, interval=0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
