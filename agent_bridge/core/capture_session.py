"""
Microphone capture for one targeted participant.

Pipeline: platform inbound stream (Opus already decoded to 48 kHz stereo)
→ resample to 16 kHz mono → VoiceActivityGate → chunk / end-of-utterance
callbacks. Exactly one pipeline is live at a time; ``start`` on a new target
tears the previous one down first.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from agent_bridge import metrics
from agent_bridge.audio.resampler import PcmResampler, discord_to_agent
from agent_bridge.config.models import CaptureConfig
from agent_bridge.core.models import BridgeEvent, GateResult
from agent_bridge.core.vad_gate import VoiceActivityGate
from agent_bridge.errors import PipelineStageError
from agent_bridge.platform.base import InboundAudioStream, VoiceConnection

logger = structlog.get_logger(__name__)


@dataclass
class _CapturePipeline:
    """Stage handles for one target. Never reused once closed."""
    target_id: str
    stream: InboundAudioStream
    resampler: PcmResampler
    gate: VoiceActivityGate
    closed: bool = False
    watchdog: Optional[asyncio.TimerHandle] = None


class CaptureSession:
    """Owns the capture pipeline of one BridgeSession.

    Args:
        connection: Voice connection used to open per-participant streams.
        config: Gate/chunking parameters.
        on_chunk: Called with each gated chunk, in capture order.
        on_end_of_utterance: Called once per talking run, after its last chunk.
        on_event: Receives recoverable errors and end-of-stream notifications.
        clock: Seconds clock used for gate timestamps.
    """

    def __init__(
        self,
        connection: VoiceConnection,
        config: CaptureConfig,
        *,
        on_chunk: Callable[[bytes], None],
        on_end_of_utterance: Callable[[], None],
        on_event: Optional[Callable[[BridgeEvent], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connection = connection
        self._config = config
        self._on_chunk = on_chunk
        self._on_end_of_utterance = on_end_of_utterance
        self._on_event = on_event
        self._clock = clock
        self._pipeline: Optional[_CapturePipeline] = None

    @property
    def target_id(self) -> Optional[str]:
        return self._pipeline.target_id if self._pipeline else None

    @property
    def active(self) -> bool:
        return self._pipeline is not None and not self._pipeline.closed

    def start(self, target_id: str) -> None:
        """Capture ``target_id``, tearing down any previous target first."""
        previous = self._pipeline
        if previous is not None:
            logger.info("Retargeting capture", previous_target=previous.target_id, target=target_id)
            self._teardown(previous, reason="retarget")

        gate = VoiceActivityGate(
            sample_rate=self._config.sample_rate,
            chunk_ms=self._config.chunk_ms,
            threshold_rms=self._config.vad_threshold_rms,
            hangover_ms=self._config.hangover_ms,
        )
        stream = self._connection.open_inbound(target_id)
        pipeline = _CapturePipeline(
            target_id=target_id,
            stream=stream,
            resampler=discord_to_agent(agent_rate=self._config.sample_rate),
            gate=gate,
        )
        self._pipeline = pipeline
        stream.start(
            lambda pcm: self._on_data(pipeline, pcm),
            lambda: self._on_stream_end(pipeline),
        )
        logger.info(
            "Capture started",
            target=target_id,
            chunk_ms=self._config.chunk_ms,
            threshold_rms=self._config.vad_threshold_rms,
            hangover_ms=self._config.hangover_ms,
        )

    def stop(self) -> None:
        """Tear down the current pipeline. Safe to call repeatedly."""
        pipeline = self._pipeline
        if pipeline is None:
            return
        self._teardown(pipeline, reason="stop")

    # ------------------------------------------------------------------
    # Stage callbacks
    # ------------------------------------------------------------------
    def _on_data(self, pipeline: _CapturePipeline, pcm: bytes) -> None:
        if pipeline.closed:
            return
        try:
            mono = pipeline.resampler.process(pcm)
        except PipelineStageError as e:
            self._on_stage_fault(pipeline, e)
            return
        if not mono:
            return
        self._emit(pipeline.gate.feed(mono, self._clock() * 1000.0))
        self._arm_watchdog(pipeline)

    def _on_stream_end(self, pipeline: _CapturePipeline) -> None:
        if pipeline.closed:
            return
        logger.info("Inbound stream ended", target=pipeline.target_id)
        self._teardown(pipeline, reason="end_of_stream")
        self._notify("capture_ended", target=pipeline.target_id)

    def _on_stage_fault(self, pipeline: _CapturePipeline, error: PipelineStageError) -> None:
        logger.warning(
            "Capture stage fault; tearing down pipeline",
            target=pipeline.target_id,
            stage=error.stage,
            error=str(error),
        )
        metrics.STAGE_FAULTS.labels(pipeline="capture").inc()
        self._teardown(pipeline, reason="stage_fault")
        self._notify("capture_stage_error", target=pipeline.target_id, stage=error.stage, error=str(error))

    def _on_watchdog(self, pipeline: _CapturePipeline) -> None:
        pipeline.watchdog = None
        if pipeline.closed or pipeline is not self._pipeline:
            return
        # No frames for a whole hangover window: the speaker went quiet
        self._emit(pipeline.gate.flush())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _emit(self, result: GateResult) -> None:
        for chunk in result.chunks:
            self._on_chunk(chunk)
        if result.end_of_utterance:
            self._on_end_of_utterance()

    def _arm_watchdog(self, pipeline: _CapturePipeline) -> None:
        if pipeline.watchdog is not None:
            pipeline.watchdog.cancel()
            pipeline.watchdog = None
        if pipeline.gate.is_talking:
            loop = asyncio.get_running_loop()
            pipeline.watchdog = loop.call_later(
                self._config.hangover_ms / 1000.0, self._on_watchdog, pipeline
            )

    def _teardown(self, pipeline: _CapturePipeline, *, reason: str) -> None:
        """Single teardown path: close, detach, cancel timers, flush, release."""
        if pipeline.closed:
            if pipeline is self._pipeline:
                self._pipeline = None
            return
        pipeline.closed = True
        try:
            pipeline.stream.unsubscribe()
        except Exception as e:
            logger.debug("Inbound unsubscribe failed", target=pipeline.target_id, error=str(e))
        if pipeline.watchdog is not None:
            pipeline.watchdog.cancel()
            pipeline.watchdog = None
        # Deliver the partial utterance before the handles go away
        self._emit(pipeline.gate.flush())
        pipeline.resampler.reset()
        if pipeline is self._pipeline:
            self._pipeline = None
        logger.debug("Capture pipeline torn down", target=pipeline.target_id, reason=reason)

    def _notify(self, event_type: str, **data) -> None:
        if self._on_event is None:
            return
        self._on_event(BridgeEvent(type=event_type, channel_id=self._connection.channel_id, data=data))
