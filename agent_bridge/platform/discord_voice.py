"""
Discord implementation of the voice platform interface.

Receive side uses discord-ext-voice-recv: one ``AudioSink`` per voice client
gets decoded 48 kHz stereo PCM for every speaker on the library's reader thread
and routes the targeted participant onto the event loop. Send side is one
``discord.AudioSource`` that drains a ``BufferedSink`` for the whole session.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import discord
import structlog
from discord.ext import voice_recv

from agent_bridge.audio.resampler import DISCORD_CHANNELS, DISCORD_SAMPLE_RATE, bytes_per_ms
from agent_bridge.errors import LinkError, PermissionDenied
from agent_bridge.platform.base import (
    BufferedSink,
    DataCallback,
    EndCallback,
    InboundAudioStream,
    OutboundAudioSink,
    VoiceConnection,
    VoicePlatform,
)

logger = structlog.get_logger(__name__)

# discord.py plays 20 ms frames of 48 kHz stereo PCM16
DISCORD_FRAME_BYTES = bytes_per_ms(DISCORD_SAMPLE_RATE, DISCORD_CHANNELS) * 20


class DiscordInboundStream(InboundAudioStream):
    def __init__(self, router: "_RoutingSink", participant_id: str, loop: asyncio.AbstractEventLoop) -> None:
        self.participant_id = participant_id
        self._router = router
        self._loop = loop
        self._on_data: Optional[DataCallback] = None
        self._on_end: Optional[EndCallback] = None
        self._ended = False

    def start(self, on_data: DataCallback, on_end: EndCallback) -> None:
        self._on_data = on_data
        self._on_end = on_end
        self._router.subscribe(self)

    def unsubscribe(self) -> None:
        self._router.unsubscribe(self)
        self._on_data = None
        self._on_end = None

    # Called on the event loop via call_soon_threadsafe
    def deliver(self, pcm: bytes) -> None:
        if self._ended or self._on_data is None:
            return
        self._on_data(pcm)

    def end(self) -> None:
        if self._ended:
            return
        self._ended = True
        callback = self._on_end
        self.unsubscribe()
        if callback is not None:
            callback()


class _RoutingSink(voice_recv.AudioSink):
    """Routes decoded PCM from the reader thread to subscribed streams."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._loop = loop
        self._streams: Dict[str, DiscordInboundStream] = {}

    def subscribe(self, stream: DiscordInboundStream) -> None:
        self._streams[stream.participant_id] = stream

    def unsubscribe(self, stream: DiscordInboundStream) -> None:
        if self._streams.get(stream.participant_id) is stream:
            del self._streams[stream.participant_id]

    def wants_opus(self) -> bool:
        return False

    def write(self, user: Optional[discord.abc.User], data: voice_recv.VoiceData) -> None:
        if user is None or not data.pcm:
            return
        stream = self._streams.get(str(user.id))
        if stream is None:
            return
        try:
            self._loop.call_soon_threadsafe(stream.deliver, data.pcm)
        except RuntimeError:
            # Loop closed during shutdown
            pass

    @voice_recv.AudioSink.listener()
    def on_voice_member_disconnect(self, member: discord.Member, ssrc: Optional[int]) -> None:
        stream = self._streams.get(str(member.id))
        if stream is not None:
            self._loop.call_soon_threadsafe(stream.end)

    def end_all(self) -> None:
        for stream in list(self._streams.values()):
            stream.end()

    def cleanup(self) -> None:
        self._streams.clear()


class DiscordPlaybackSource(discord.AudioSource):
    """Endless PCM source; silence while the agent is quiet."""

    def __init__(self, sink: BufferedSink) -> None:
        self._sink = sink

    def read(self) -> bytes:
        return self._sink.read_frame()

    def is_opus(self) -> bool:
        return False


class DiscordVoiceConnection(VoiceConnection):
    def __init__(self, voice_client: voice_recv.VoiceRecvClient, channel: discord.VoiceChannel) -> None:
        self.channel_id = str(channel.id)
        self.channel = channel
        self.voice_client = voice_client
        self._loop = asyncio.get_running_loop()
        self._router = _RoutingSink(self._loop)
        self._sink: Optional[BufferedSink] = None
        self._disconnected = False
        voice_client.listen(self._router)

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def open_inbound(self, participant_id: str) -> InboundAudioStream:
        return DiscordInboundStream(self._router, participant_id, self._loop)

    def open_sink(self) -> OutboundAudioSink:
        if self._sink is not None and not self._sink.closed:
            return self._sink
        sink = BufferedSink(DISCORD_FRAME_BYTES, loop=self._loop)
        if self.voice_client.is_playing():
            self.voice_client.stop()
        self.voice_client.play(DiscordPlaybackSource(sink), after=self._after_playback)
        self._sink = sink
        logger.debug("Discord playback source started", channel=self.channel_id)
        return sink

    def has_participant(self, participant_id: str) -> bool:
        return any(str(member.id) == participant_id for member in self.channel.members)

    async def disconnect(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        self._router.end_all()
        if self._sink is not None:
            self._sink.close()
        try:
            if self.voice_client.is_listening():
                self.voice_client.stop_listening()
            await self.voice_client.disconnect(force=True)
        except Exception as e:
            logger.warning("Discord voice disconnect error", channel=self.channel_id, error=str(e))

    async def handle_platform_disconnect(self) -> None:
        """The bot was removed from the channel by someone else or by Discord."""
        if self._disconnected:
            return
        callback = self._on_disconnect
        if callback is not None:
            # The session tears capture down first so no capture_ended is reported
            await callback()
        self._router.end_all()

    def _after_playback(self, error: Optional[Exception]) -> None:
        if error is not None:
            logger.error("Discord playback stopped with error", channel=self.channel_id, error=str(error))


class DiscordVoicePlatform(VoicePlatform):
    """Joins Discord voice channels with a receive-capable voice client."""

    def __init__(self, client: discord.Client, *, connect_timeout: float = 15.0) -> None:
        self.client = client
        self.connect_timeout = connect_timeout
        self._connections: Dict[str, DiscordVoiceConnection] = {}

    async def join(self, channel_id: str) -> VoiceConnection:
        channel = self.client.get_channel(int(channel_id))
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise LinkError(f"channel {channel_id} is not a voice channel", user_message="Join a voice channel first.")

        check_voice_permissions(channel)

        existing = channel.guild.voice_client
        if existing is not None:
            logger.info("Replacing existing guild voice client", guild=channel.guild.id)
            await existing.disconnect(force=True)

        try:
            voice_client = await channel.connect(
                cls=voice_recv.VoiceRecvClient,
                timeout=self.connect_timeout,
                self_deaf=False,
            )
        except asyncio.TimeoutError as e:
            raise LinkError(f"voice connect timed out: {channel_id}") from e
        except discord.ClientException as e:
            raise LinkError(f"voice connect failed: {e}") from e

        # Intentional leaves may not produce a voice state update for the bot
        self._connections = {key: conn for key, conn in self._connections.items() if not conn.disconnected}
        connection = DiscordVoiceConnection(voice_client, channel)
        self._connections[connection.channel_id] = connection
        logger.info("Joined Discord voice channel", channel=connection.channel_id, guild=channel.guild.id)
        return connection

    async def handle_voice_state_update(self, member: discord.Member, before: Any, after: Any) -> None:
        """Route Discord voice state changes that concern the bot itself."""
        if self.client.user is None or member.id != self.client.user.id:
            return
        if before.channel is None or (after.channel is not None and after.channel.id == before.channel.id):
            return
        connection = self._connections.pop(str(before.channel.id), None)
        if connection is None:
            return
        logger.warning(
            "Bot left voice channel without a leave command",
            channel=connection.channel_id,
            moved_to=getattr(after.channel, "id", None),
        )
        await connection.handle_platform_disconnect()


def check_voice_permissions(channel: Any) -> None:
    """Raise ``PermissionDenied`` unless the bot may connect and speak in ``channel``."""
    me = channel.guild.me
    perms = channel.permissions_for(me)
    if not perms.connect or not perms.speak:
        raise PermissionDenied(
            f"missing Connect/Speak in channel {channel.id}",
            user_message="I need Connect and Speak permissions in that voice channel.",
        )
