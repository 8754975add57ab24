"""
Long-lived playback pipeline for agent speech.

Agent PCM (16 kHz mono) → resample to 48 kHz stereo → platform sink, whose
player encodes Opus for the channel. The pipeline and the sink subscription
are built once per BridgeSession and every utterance is written into them;
rebuilding per utterance causes an audible gap at each restart.
"""

from __future__ import annotations

from typing import Optional

import structlog

from agent_bridge import metrics
from agent_bridge.audio.resampler import PcmResampler, agent_to_discord, bytes_per_ms
from agent_bridge.config.models import PlaybackConfig
from agent_bridge.errors import PipelineStageError, SessionClosed
from agent_bridge.platform.base import OutboundAudioSink, SinkClosed, VoiceConnection

logger = structlog.get_logger(__name__)

# Audio pushed into the sink per step while writing one utterance
WRITE_SLICE_FRAMES = 10


class PlaybackSession:
    def __init__(
        self,
        connection: VoiceConnection,
        config: PlaybackConfig,
        *,
        agent_sample_rate: int = 16000,
    ) -> None:
        self._connection = connection
        self._config = config
        self._agent_sample_rate = agent_sample_rate
        self._resampler: Optional[PcmResampler] = None
        self._sink: Optional[OutboundAudioSink] = None
        self._closed = False
        # Bumped by clear(); an in-flight write stops when it changes
        self._generation = 0
        self.build_count = 0

        ms = bytes_per_ms(config.sample_rate, config.channels)
        self.frame_bytes = ms * config.frame_ms
        self.max_buffer_bytes = ms * config.max_buffer_ms
        self.low_watermark_bytes = ms * config.low_watermark_ms

    @property
    def started(self) -> bool:
        return self._sink is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def ensure_started(self) -> None:
        """Build the resampler and sink subscription once. Idempotent."""
        if self._closed:
            raise SessionClosed("playback session is closed")
        if self._sink is not None:
            return
        self._resampler = agent_to_discord(agent_rate=self._agent_sample_rate)
        self._sink = self._connection.open_sink()
        self.build_count += 1
        logger.info(
            "Playback pipeline started",
            channel=self._connection.channel_id,
            frame_bytes=self.frame_bytes,
            max_buffer_ms=self._config.max_buffer_ms,
        )

    async def write(self, pcm: bytes) -> int:
        """Write one utterance, waiting on the sink when it is saturated.

        Returns the number of 48 kHz bytes queued.
        """
        if self._closed or not pcm:
            return 0
        self.ensure_started()
        try:
            out = self._resampler.process(pcm)
        except PipelineStageError as e:
            # Only the resample stage restarts; the sink subscription survives
            logger.warning("Playback resample fault; dropping utterance", error=str(e))
            metrics.STAGE_FAULTS.labels(pipeline="playback").inc()
            self._resampler.reset()
            return 0

        generation = self._generation
        slice_bytes = self.frame_bytes * WRITE_SLICE_FRAMES
        written = 0
        for offset in range(0, len(out), slice_bytes):
            piece = out[offset:offset + slice_bytes]
            sink = self._sink
            if sink is None:
                break
            if sink.buffered_bytes() + len(piece) > self.max_buffer_bytes:
                await sink.wait_below(self.low_watermark_bytes)
                if self._closed:
                    break
            if self._generation != generation:
                logger.debug("Write interrupted by clear", written=written, dropped=len(out) - offset)
                return written
            try:
                sink.push(piece)
            except SinkClosed:
                logger.debug("Sink closed during write", written=written)
                break
            written += len(piece)
        metrics.UTTERANCES_PLAYED.inc()
        return written

    def clear(self) -> None:
        """Drop queued audio and abort the utterance being written (agent interrupted)."""
        self._generation += 1
        if self._sink is not None:
            self._sink.clear()
        if self._resampler is not None:
            self._resampler.reset()

    def close(self) -> None:
        """Release the sink subscription. Idempotent."""
        if self._closed:
            return
        self._closed = True
        sink, self._sink = self._sink, None
        if sink is not None:
            try:
                sink.close()
            except Exception as e:
                logger.debug("Sink close failed", error=str(e))
        self._resampler = None
        logger.info("Playback pipeline released", channel=self._connection.channel_id)
