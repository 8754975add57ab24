"""
Per-channel bridge session.

Wires CaptureSession → RemoteLinkSupervisor → UtteranceAssembler →
PlaybackSession for one voice channel and owns their shared lifecycle. All
teardown paths (leave, fatal setup error, platform disconnect) go through
``_cleanup``.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Callable, List, Optional, Tuple

import structlog

from agent_bridge.config.models import BridgeConfig
from agent_bridge.core.capture_session import CaptureSession
from agent_bridge.core.models import ActionResult, BridgeEvent, LinkState
from agent_bridge.core.playback_session import PlaybackSession
from agent_bridge.core.utterance_assembler import UtteranceAssembler
from agent_bridge.errors import BridgeError, LinkNotReady, SessionClosed
from agent_bridge.logging_config import bind_session_context
from agent_bridge.platform.base import VoiceConnection, VoicePlatform
from agent_bridge.providers.elevenlabs_link import RemoteLinkSupervisor

logger = structlog.get_logger(__name__)

_CHUNK = "chunk"
_END = "end"

# Events worth telling the person who started the session about
USER_FACING_EVENTS = frozenset({"reconnect_exhausted", "link_failed", "voice_disconnected", "capture_ended"})


class BridgeSession:
    """One voice channel occupied by the bridge.

    Args:
        channel_id: Voice channel identity.
        platform: Voice platform used to join the channel.
        config: Full bridge configuration.
        group_id: Optional grouping key (the Discord guild).
        notifier: Receives user-facing follow-up notifications.
    """

    def __init__(
        self,
        channel_id: str,
        platform: VoicePlatform,
        config: BridgeConfig,
        *,
        group_id: Optional[str] = None,
        notifier: Optional[Callable[[BridgeEvent], None]] = None,
    ) -> None:
        self.channel_id = channel_id
        self.group_id = group_id
        self.config = config
        self._platform = platform
        self._notifier = notifier
        self.intentional_leave = False

        self.connection: Optional[VoiceConnection] = None
        self.capture: Optional[CaptureSession] = None
        self.playback: Optional[PlaybackSession] = None
        self.link: Optional[RemoteLinkSupervisor] = None
        self.assembler: Optional[UtteranceAssembler] = None

        self._outbound: "asyncio.Queue[Tuple[str, Optional[bytes]]]" = asyncio.Queue()
        self._playback_queue: "asyncio.Queue[bytes]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._joined = False
        self._closed = False
        self._on_closed: List[Callable[["BridgeSession"], None]] = []

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------
    @property
    def link_state(self) -> LinkState:
        return self.link.state if self.link else LinkState.DISCONNECTED

    @property
    def target_id(self) -> Optional[str]:
        return self.capture.target_id if self.capture else None

    @property
    def closed(self) -> bool:
        return self._closed

    def add_close_listener(self, callback: Callable[["BridgeSession"], None]) -> None:
        self._on_closed.append(callback)

    async def join(self, initial_target: str) -> ActionResult:
        """Join the channel, start playback, connect the agent and capture ``initial_target``."""
        if self._closed:
            raise SessionClosed("session already closed")
        if self._joined:
            raise BridgeError("already joined", user_message="I'm already in this voice channel.")
        self._joined = True
        bind_session_context(self.channel_id, self.group_id)
        logger.info("Joining voice channel", channel=self.channel_id, target=initial_target)

        try:
            self.connection = await self._platform.join(self.channel_id)
            self.connection.set_disconnect_callback(self._on_voice_disconnected)
            self._build_components(self.connection)
            self.playback.ensure_started()
            self.link.connect()
            self.capture.start(initial_target)
        except Exception:
            logger.warning("Join failed; releasing session resources", channel=self.channel_id)
            await self._cleanup()
            raise

        self._tasks.append(asyncio.create_task(self._outbound_worker()))
        self._tasks.append(asyncio.create_task(self._playback_worker()))
        return ActionResult(True, "Joined your voice channel. Listening to you.")

    async def leave(self) -> ActionResult:
        """Stop everything and leave the channel. Idempotent."""
        if self._closed:
            return ActionResult(True, "Already left.")
        self.intentional_leave = True
        logger.info("Leaving voice channel", channel=self.channel_id)
        await self._cleanup()
        return ActionResult(True, "Left the voice channel and closed the session.")

    def retarget(self, new_target: str) -> ActionResult:
        """Switch the microphone target; the previous target is torn down first."""
        self._require_open()
        if not self.connection.has_participant(new_target):
            raise BridgeError("target not in channel", user_message="That user is not in my voice channel.")
        self.capture.start(new_target)
        return ActionResult(True, f"Now listening to <@{new_target}>.")

    async def send_text(self, text: str) -> ActionResult:
        self._require_open()
        if not await self.link.send_user_message(text):
            raise LinkNotReady()
        return ActionResult(True, "Sent to the agent.")

    async def send_context(self, text: str) -> ActionResult:
        self._require_open()
        if not await self.link.send_contextual_update(text):
            raise LinkNotReady()
        return ActionResult(True, "Context updated.")

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    def _build_components(self, connection: VoiceConnection) -> None:
        self.playback = PlaybackSession(
            connection,
            self.config.playback,
            agent_sample_rate=self.config.agent.output_sample_rate_hz,
        )
        self.assembler = UtteranceAssembler(
            self._on_utterance_ready,
            idle_gap_ms=self.config.link.assembler_idle_gap_ms,
        )
        self.link = RemoteLinkSupervisor(
            self.config.agent,
            self.config.link,
            channel_id=self.channel_id,
            on_audio=self._on_agent_audio,
            on_audio_end=self._on_agent_audio_end,
            on_interruption=self._on_agent_interruption,
            on_link_reset=self._on_link_reset,
            on_event=self._on_component_event,
        )
        self.capture = CaptureSession(
            connection,
            self.config.capture,
            on_chunk=self._on_capture_chunk,
            on_end_of_utterance=self._on_capture_end,
            on_event=self._on_component_event,
        )

    def _on_capture_chunk(self, chunk: bytes) -> None:
        if not self._closed:
            self._outbound.put_nowait((_CHUNK, chunk))

    def _on_capture_end(self) -> None:
        if not self._closed:
            self._outbound.put_nowait((_END, None))

    def _on_agent_audio(self, fragment: bytes, sequence: Optional[int]) -> None:
        if self.assembler is not None:
            self.assembler.submit(fragment, sequence)

    def _on_agent_audio_end(self) -> None:
        if self.assembler is not None:
            self.assembler.end()

    def _on_agent_interruption(self) -> None:
        if self.assembler is not None:
            self.assembler.reset()
        while not self._playback_queue.empty():
            self._playback_queue.get_nowait()
        if self.playback is not None:
            self.playback.clear()

    def _on_link_reset(self) -> None:
        if self.assembler is not None:
            self.assembler.reset(next_sequence=1)

    def _on_utterance_ready(self, pcm: bytes) -> None:
        if not self._closed:
            self._playback_queue.put_nowait(pcm)

    def _on_component_event(self, event: BridgeEvent) -> None:
        logger.debug("Session event", channel=self.channel_id, event_type=event.type, **event.data)
        if self._closed:
            return
        if event.type == "capture_stage_error":
            target = event.data.get("target")
            if target and not self.intentional_leave:
                asyncio.get_running_loop().call_soon(self._rebuild_capture, target)
            return
        if event.type in USER_FACING_EVENTS and self._notifier is not None:
            try:
                self._notifier(event)
            except Exception as e:
                logger.warning("Notifier failed", channel=self.channel_id, event_type=event.type, error=str(e))

    def _rebuild_capture(self, target: str) -> None:
        # Only rebuild if nothing retargeted or stopped capture meanwhile
        if self._closed or self.capture is None or self.capture.active:
            return
        logger.info("Rebuilding capture pipeline after stage fault", channel=self.channel_id, target=target)
        try:
            self.capture.start(target)
        except Exception as e:
            logger.error("Capture rebuild failed", channel=self.channel_id, target=target, error=str(e))

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    async def _outbound_worker(self) -> None:
        """Sends capture output to the agent strictly in capture order."""
        while True:
            kind, payload = await self._outbound.get()
            link = self.link
            if link is None:
                continue
            if kind == _CHUNK:
                if link.idle_closed and not self.intentional_leave:
                    # Idle-closed link: speech wakes it up, this chunk is dropped
                    logger.info("Speech detected on idle link; reconnecting", channel=self.channel_id)
                    link.connect()
                await link.send_audio_chunk(payload)
            else:
                await link.send_end_of_utterance()

    async def _playback_worker(self) -> None:
        """Writes utterances one at a time so N finishes before N+1 starts."""
        while True:
            pcm = await self._playback_queue.get()
            if self.playback is None or self.playback.closed:
                continue
            try:
                await self.playback.write(pcm)
            except Exception as e:
                logger.error("Playback write failed", channel=self.channel_id, error=str(e), exc_info=True)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    async def _on_voice_disconnected(self) -> None:
        if self._closed or self.intentional_leave:
            return
        logger.warning("Voice connection dropped by platform", channel=self.channel_id)
        event = BridgeEvent(type="voice_disconnected", channel_id=self.channel_id)
        await self._cleanup()
        if self._notifier is not None:
            self._notifier(event)

    async def _cleanup(self) -> None:
        """Single idempotent teardown for every exit path."""
        if self._closed:
            return
        self._closed = True

        if self.capture is not None:
            self.capture.stop()
        if self.assembler is not None:
            self.assembler.close()
        if self.link is not None:
            await self.link.close()

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

        if self.playback is not None:
            self.playback.close()
        if self.connection is not None:
            self.connection.set_disconnect_callback(None)
            try:
                await self.connection.disconnect()
            except Exception as e:
                logger.warning("Voice disconnect failed", channel=self.channel_id, error=str(e))

        logger.info("Bridge session closed", channel=self.channel_id, intentional=self.intentional_leave)
        for callback in self._on_closed:
            callback(self)

    def _require_open(self) -> None:
        if self._closed or not self._joined or self.connection is None:
            raise SessionClosed()
