"""
ElevenLabs Conversational AI link supervisor

Owns the single websocket between one voice channel and the agent and runs
the connect / idle-close / reconnect state machine:

    DISCONNECTED --connect()--> CONNECTING --open--> READY
    READY --idle deadline--> DISCONNECTED            (intentional, no retry)
    READY|CONNECTING --error/close--> DISCONNECTED   (retry after a fixed delay)
    any --close()--> CLOSING_INTENTIONAL             (terminal, no retry)

WebSocket Protocol:
- Endpoint: wss://api.elevenlabs.io/v1/convai/conversation
- Auth: signed URL (xi-api-key) or public agent id
- Audio: PCM16 base64 encoded, 16kHz mono, both directions
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import json
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import aiohttp
import structlog
import websockets
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from agent_bridge import metrics
from agent_bridge.config.models import AgentConfig, LinkConfig
from agent_bridge.core.models import BridgeEvent, LinkState, LinkStats
from agent_bridge.errors import ConfigurationError, LinkError

logger = structlog.get_logger(__name__)

# Keepalive / telemetry traffic that does not count as conversation activity
_KEEPALIVE_TYPES = frozenset({
    "ping",
    "internal_vad_score",
    "internal_turn_probability",
    "internal_tentative_agent_response",
    "vad_score",
})


class RemoteLinkSupervisor:
    """Single agent websocket per BridgeSession.

    Callbacks run on the event loop, one message at a time:
        on_audio(fragment, sequence): agent audio, sequence is None for deltas
        on_audio_end(): explicit end-of-audio marker
        on_interruption(): agent stopped speaking because the user barged in
        on_link_reset(): a new connection started; sequencing restarts
        on_event(BridgeEvent): state changes and transcripts
    """

    def __init__(
        self,
        agent_config: AgentConfig,
        link_config: LinkConfig,
        *,
        channel_id: str,
        on_audio: Callable[[bytes, Optional[int]], None],
        on_audio_end: Callable[[], None],
        on_interruption: Optional[Callable[[], None]] = None,
        on_link_reset: Optional[Callable[[], None]] = None,
        on_event: Optional[Callable[[BridgeEvent], None]] = None,
    ) -> None:
        self.agent_config = agent_config
        self.link_config = link_config
        self.channel_id = channel_id
        self._on_audio = on_audio
        self._on_audio_end = on_audio_end
        self._on_interruption = on_interruption
        self._on_link_reset = on_link_reset
        self._on_event = on_event

        self.state = LinkState.DISCONNECTED
        self.desired_connected = False
        # Only an idle close may be undone by detected speech
        self.idle_closed = False
        self.reconnect_attempts = 0
        self.stats = LinkStats()

        self._ws: Optional[Any] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._idle_timer: Optional[asyncio.TimerHandle] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None

    @property
    def is_ready(self) -> bool:
        return self.state is LinkState.READY and self._ws is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def connect(self) -> Optional[asyncio.Task]:
        """Start connecting. No-op while CONNECTING/READY or after close()."""
        if self.state in (LinkState.CONNECTING, LinkState.READY):
            return self._connect_task
        if self.state is LinkState.CLOSING_INTENTIONAL:
            logger.debug("connect() ignored; link closed intentionally", channel=self.channel_id)
            return None
        self.desired_connected = True
        self.idle_closed = False
        self._cancel_reconnect_timer()
        self._set_state(LinkState.CONNECTING)
        self._connect_task = asyncio.create_task(self._run_connect())
        return self._connect_task

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait for the pending connect attempt; True when the link is READY."""
        task = self._connect_task
        if task is not None and not task.done():
            with contextlib.suppress(asyncio.TimeoutError, asyncio.CancelledError):
                await asyncio.wait_for(asyncio.shield(task), timeout)
        return self.is_ready

    async def close(self) -> None:
        """Intentional shutdown. Suppresses every pending and future reconnect. Idempotent."""
        self.desired_connected = False
        self.idle_closed = False
        if self.state is LinkState.CLOSING_INTENTIONAL and self._ws is None:
            return
        self._set_state(LinkState.CLOSING_INTENTIONAL)
        self._cancel_reconnect_timer()
        self._cancel_idle_timer()

        connect_task, self._connect_task = self._connect_task, None
        if connect_task is not None and not connect_task.done():
            connect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await connect_task

        ws, self._ws = self._ws, None
        receive_task, self._receive_task = self._receive_task, None
        if receive_task is not None and not receive_task.done() and receive_task is not asyncio.current_task():
            receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await asyncio.wait_for(receive_task, timeout=2.0)
        if ws is not None:
            await self._close_socket(ws)
            self._log_session_end("closed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    async def send_audio_chunk(self, pcm16: bytes) -> bool:
        """Forward one microphone chunk. Dropped (not queued) when not READY."""
        if not self.is_ready:
            self.stats.chunks_dropped += 1
            metrics.CHUNKS_DROPPED.inc()
            return False
        audio_b64 = base64.b64encode(pcm16).decode("utf-8")
        if not await self._send_json({"user_audio_chunk": audio_b64}):
            return False
        if self.stats.chunks_sent == 0:
            logger.info("First audio chunk sent", channel=self.channel_id, bytes=len(pcm16))
        self.stats.chunks_sent += 1
        self.stats.audio_bytes_sent += len(pcm16)
        metrics.CHUNKS_SENT.inc()
        return True

    async def send_end_of_utterance(self) -> bool:
        if not self.is_ready:
            return False
        if not await self._send_json({"type": self.link_config.end_of_utterance_type}):
            return False
        self.stats.utterances_sent += 1
        metrics.UTTERANCES_SENT.inc()
        return True

    async def send_user_message(self, text: str) -> bool:
        """Ask the agent to respond to ``text`` as if the user had said it."""
        if not self.is_ready:
            return False
        return await self._send_json({"type": "user_message", "text": text})

    async def send_contextual_update(self, text: str) -> bool:
        """Non-interrupting background context for the agent."""
        if not self.is_ready:
            return False
        return await self._send_json({"type": "contextual_update", "text": text})

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------
    async def _run_connect(self) -> None:
        logger.info("Connecting to ElevenLabs Conversational AI", channel=self.channel_id, attempt=self.reconnect_attempts)
        try:
            url = await self._resolve_url()
            ws = await asyncio.wait_for(
                websockets.connect(
                    url,
                    max_size=16 * 1024 * 1024,
                    ping_interval=20,
                    ping_timeout=20,
                    close_timeout=5,
                ),
                timeout=self.link_config.connect_timeout_sec,
            )
        except asyncio.CancelledError:
            raise
        except ConfigurationError as e:
            logger.error("Agent link configuration error", channel=self.channel_id, error=str(e))
            self.desired_connected = False
            if self.state is LinkState.CONNECTING:
                self._set_state(LinkState.DISCONNECTED)
            self._notify("link_failed", error=e.user_message, fatal=True)
            return
        except asyncio.TimeoutError:
            logger.warning("Agent link connection timeout", channel=self.channel_id)
            self._connect_failed("timeout")
            return
        except Exception as e:
            logger.warning("Agent link connection failed", channel=self.channel_id, error=str(e))
            self._connect_failed(str(e))
            return

        if not self.desired_connected or self.state is not LinkState.CONNECTING:
            # close() or an idle close won the race while the socket was opening
            await self._close_socket(ws)
            return

        self._ws = ws
        self.stats = LinkStats()
        if self._on_link_reset is not None:
            self._on_link_reset()

        if not await self._send_json(self._handshake(), activity=False):
            self._link_lost(ws, "handshake_failed")
            return

        self.reconnect_attempts = 0
        self._set_state(LinkState.READY)
        self._arm_idle_timer()
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        self._notify("link_ready")

    async def _resolve_url(self) -> str:
        agent_id = self.agent_config.agent_id
        if not agent_id:
            raise ConfigurationError("ELEVENLABS_AGENT_ID not configured")
        if not self.agent_config.use_signed_url:
            return f"{self.agent_config.ws_url}?agent_id={quote(agent_id)}"
        if not self.agent_config.api_key:
            raise ConfigurationError("ELEVENLABS_API_KEY not configured")

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.link_config.signed_url_attempts)),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError, LinkError)),
            reraise=True,
        ):
            with attempt:
                return await self._get_signed_url(agent_id)
        raise LinkError("signed URL unavailable")

    async def _get_signed_url(self, agent_id: str) -> str:
        """Request a signed websocket URL for an authenticated agent."""
        url = f"{self.agent_config.signed_url_endpoint}?agent_id={quote(agent_id)}"
        headers = {"xi-api-key": self.agent_config.api_key}
        async with aiohttp.ClientSession() as session:
            async with session.get(url, headers=headers, timeout=aiohttp.ClientTimeout(total=10)) as response:
                if response.status in (401, 403):
                    raise ConfigurationError(
                        f"get-signed-url rejected credentials: {response.status}",
                        user_message="The agent rejected the configured API key.",
                    )
                if response.status != 200:
                    error_text = await response.text()
                    logger.warning("Failed to get signed URL", status=response.status, detail=error_text[:200])
                    raise LinkError(f"get-signed-url failed: {response.status}")
                data = await response.json()
        signed_url = data.get("signed_url")
        if not signed_url:
            raise LinkError("No signed_url in response")
        logger.debug("Got signed URL for authenticated agent", channel=self.channel_id)
        return signed_url

    def _handshake(self) -> Dict[str, Any]:
        # Audio formats are fixed by the agent configuration; the server announces
        # them in conversation_initiation_metadata, checked in _handle_conversation_init
        message: Dict[str, Any] = {"type": "conversation_initiation_client_data"}
        if self.agent_config.dynamic_variables:
            message["dynamic_variables"] = dict(self.agent_config.dynamic_variables)
        return message

    def _connect_failed(self, reason: str) -> None:
        if self.state is not LinkState.CONNECTING:
            return
        self._set_state(LinkState.DISCONNECTED)
        self._schedule_reconnect(reason)

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------
    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for message in ws:
                if ws is not self._ws:
                    break
                await self._handle_message(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Agent WebSocket closed", channel=self.channel_id, code=getattr(e, "code", None))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Agent receive loop error", channel=self.channel_id, error=str(e), exc_info=True)
        if ws is self._ws:
            self._link_lost(ws, "socket_closed")

    async def _handle_message(self, raw_message: Any) -> None:
        try:
            data = json.loads(raw_message)
        except (TypeError, ValueError):
            logger.warning("Dropping malformed agent message", channel=self.channel_id)
            return
        if not isinstance(data, dict):
            logger.warning("Dropping non-object agent message", channel=self.channel_id)
            return

        msg_type = data.get("type", "")
        if msg_type not in _KEEPALIVE_TYPES:
            self._arm_idle_timer()

        if msg_type == "ping":
            await self._handle_ping(data)
        elif msg_type == "audio":
            self._handle_audio(data)
        elif msg_type == "audio.delta":
            self._handle_audio_delta(data)
        elif msg_type == "audio.end":
            self._on_audio_end()
        elif msg_type == "interruption":
            logger.debug("Agent interrupted", channel=self.channel_id)
            if self._on_interruption is not None:
                self._on_interruption()
        elif msg_type == "conversation_initiation_metadata":
            self._handle_conversation_init(data)
        elif msg_type == "agent_response":
            text = (data.get("agent_response_event") or {}).get("agent_response", "")
            if text:
                self._notify("agent_transcript", text=text)
        elif msg_type == "user_transcript":
            text = (data.get("user_transcription_event") or {}).get("user_transcript", "")
            if text:
                self._notify("user_transcript", text=text)
        elif msg_type == "error":
            error = data.get("error") or {}
            logger.error(
                "Agent reported error",
                channel=self.channel_id,
                code=error.get("code", "unknown") if isinstance(error, dict) else "unknown",
                detail=error.get("message", str(error)) if isinstance(error, dict) else str(error),
            )
        elif msg_type in _KEEPALIVE_TYPES:
            pass
        else:
            logger.debug("Unhandled agent message type", channel=self.channel_id, msg_type=msg_type)

    async def _handle_ping(self, data: Dict[str, Any]) -> None:
        event_id = (data.get("ping_event") or {}).get("event_id")
        if event_id is None:
            return
        await self._send_json({"type": "pong", "event_id": event_id}, activity=False)

    def _handle_audio(self, data: Dict[str, Any]) -> None:
        audio_event = data.get("audio_event") or {}
        audio_b64 = audio_event.get("audio_base_64") or data.get("audio") or ""
        fragment = self._decode_audio(audio_b64)
        if fragment is None:
            return
        sequence = audio_event.get("event_id")
        try:
            sequence = int(sequence) if sequence is not None else None
        except (TypeError, ValueError):
            sequence = None
        self._on_audio(fragment, sequence)

    def _handle_audio_delta(self, data: Dict[str, Any]) -> None:
        audio_b64 = data.get("delta") or data.get("audio") or (data.get("audio_event") or {}).get("audio_base_64") or ""
        fragment = self._decode_audio(audio_b64)
        if fragment is None:
            return
        self._on_audio(fragment, None)

    def _decode_audio(self, audio_b64: str) -> Optional[bytes]:
        if not audio_b64:
            logger.debug("Empty agent audio event", channel=self.channel_id)
            return None
        try:
            fragment = base64.b64decode(audio_b64, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Dropping agent audio with invalid base64", channel=self.channel_id)
            return None
        if self.stats.audio_bytes_received == 0:
            logger.info("First agent audio received", channel=self.channel_id)
        self.stats.audio_bytes_received += len(fragment)
        return fragment

    def _handle_conversation_init(self, data: Dict[str, Any]) -> None:
        metadata = data.get("conversation_initiation_metadata_event") or {}
        self.stats.conversation_id = metadata.get("conversation_id")
        expected = self.agent_config.expected_audio_format
        formats = {
            "agent_output_audio_format": metadata.get("agent_output_audio_format"),
            "user_input_audio_format": metadata.get("user_input_audio_format"),
        }
        logger.info("Conversation initialized", channel=self.channel_id, conversation_id=self.stats.conversation_id, **formats)
        for key, value in formats.items():
            if value and value != expected:
                logger.warning("Agent audio format mismatch", channel=self.channel_id, field=key, actual=value, expected=expected)

    # ------------------------------------------------------------------
    # Loss, idle and reconnect
    # ------------------------------------------------------------------
    def _link_lost(self, ws: Any, reason: str) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._receive_task = None
        self._cancel_idle_timer()
        asyncio.ensure_future(self._close_socket(ws))
        self._log_session_end(reason)
        if self.state is LinkState.CLOSING_INTENTIONAL:
            return
        self._set_state(LinkState.DISCONNECTED)
        self._notify("link_lost", reason=reason)
        self._schedule_reconnect(reason)

    def _schedule_reconnect(self, reason: str) -> None:
        if not self.desired_connected:
            return
        limit = self.link_config.max_reconnect_attempts
        if limit and self.reconnect_attempts >= limit:
            logger.error("Agent link reconnect attempts exhausted", channel=self.channel_id, attempts=self.reconnect_attempts)
            self.desired_connected = False
            self.idle_closed = False
            self._notify("reconnect_exhausted", attempts=self.reconnect_attempts, reason=reason)
            return
        self.reconnect_attempts += 1
        metrics.RECONNECTS.inc()
        delay = self.link_config.reconnect_delay_sec
        logger.info("Scheduling agent link reconnect", channel=self.channel_id, delay_sec=delay, attempt=self.reconnect_attempts, reason=reason)
        self._cancel_reconnect_timer()
        self._reconnect_timer = asyncio.get_running_loop().call_later(delay, self._on_reconnect_timer)

    def _on_reconnect_timer(self) -> None:
        self._reconnect_timer = None
        # leave() may have happened while the timer was pending
        if not self.desired_connected or self.state is not LinkState.DISCONNECTED:
            return
        self._set_state(LinkState.CONNECTING)
        self._connect_task = asyncio.create_task(self._run_connect())

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self.link_config.idle_close_sec <= 0 or self.state is not LinkState.READY:
            return
        self._idle_timer = asyncio.get_running_loop().call_later(self.link_config.idle_close_sec, self._on_idle_deadline)

    def _on_idle_deadline(self) -> None:
        self._idle_timer = None
        if self.state is not LinkState.READY:
            return
        logger.info("Closing idle agent link", channel=self.channel_id, idle_sec=self.link_config.idle_close_sec)
        metrics.IDLE_CLOSES.inc()
        self.desired_connected = False
        self.idle_closed = True
        ws, self._ws = self._ws, None
        receive_task, self._receive_task = self._receive_task, None
        if receive_task is not None and not receive_task.done():
            receive_task.cancel()
        self._set_state(LinkState.DISCONNECTED)
        if ws is not None:
            asyncio.ensure_future(self._close_socket(ws))
            self._log_session_end("idle")
        self._notify("link_idle_closed")

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _send_json(self, payload: Dict[str, Any], *, activity: bool = True) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(payload))
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Send on closed agent link dropped", channel=self.channel_id)
            return False
        except Exception as e:
            logger.warning("Failed to send to agent", channel=self.channel_id, error=str(e))
            return False
        if activity:
            self._arm_idle_timer()
        return True

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug("Agent WebSocket close error", channel=self.channel_id, error=str(e))

    def _set_state(self, state: LinkState) -> None:
        if state is self.state:
            return
        logger.debug("Agent link state", channel=self.channel_id, previous=self.state.value, state=state.value)
        self.state = state
        metrics.LINK_READY.labels(channel=self.channel_id).set(1 if state is LinkState.READY else 0)

    def _log_session_end(self, reason: str) -> None:
        logger.info(
            "Agent link session ended",
            channel=self.channel_id,
            reason=reason,
            conversation_id=self.stats.conversation_id,
            audio_sent_bytes=self.stats.audio_bytes_sent,
            audio_received_bytes=self.stats.audio_bytes_received,
            chunks_dropped=self.stats.chunks_dropped,
        )

    def _notify(self, event_type: str, **data: Any) -> None:
        if self._on_event is None:
            return
        self._on_event(BridgeEvent(type=event_type, channel_id=self.channel_id, data=data))
