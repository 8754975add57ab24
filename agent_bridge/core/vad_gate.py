"""
Energy-based voice activity gate for outbound microphone audio.

The gate sits between the capture resampler and the agent link. It only lets
audio through while the speaker is talking, slices it into fixed-duration
chunks, and raises exactly one end-of-utterance signal per talking run.
"""

from __future__ import annotations

from typing import Optional

import structlog

from agent_bridge.audio.resampler import bytes_per_ms, frame_rms
from agent_bridge.core.models import GateResult, GateState

logger = structlog.get_logger(__name__)


class VoiceActivityGate:
    """Two-state (SILENT/TALKING) gate with hangover and fixed-size chunking.

    Frames below threshold while SILENT are dropped. Frames below threshold
    while TALKING are held as a tentative tail: if speech resumes within the
    hangover window the tail is committed ahead of the new frame, otherwise it
    is discarded when the run ends.

    Usage:
        gate = VoiceActivityGate(chunk_ms=20, threshold_rms=500, hangover_ms=300)
        result = gate.feed(frame, timestamp_ms)
        for chunk in result.chunks:
            await link.send_audio_chunk(chunk)
        if result.end_of_utterance:
            await link.send_end_of_utterance()
    """

    def __init__(
        self,
        *,
        sample_rate: int = 16000,
        chunk_ms: int = 20,
        threshold_rms: int = 500,
        hangover_ms: int = 300,
    ) -> None:
        if chunk_ms <= 0:
            raise ValueError("chunk_ms must be positive")
        self.sample_rate = sample_rate
        self.chunk_ms = chunk_ms
        self.threshold_rms = threshold_rms
        self.hangover_ms = hangover_ms
        self.chunk_bytes = bytes_per_ms(sample_rate) * chunk_ms

        self.state = GateState.SILENT
        self._buffer = bytearray()
        self._tail = bytearray()
        self._last_voice_ms: Optional[float] = None
        self.utterances = 0

    @property
    def is_talking(self) -> bool:
        return self.state is GateState.TALKING

    def feed(self, frame: bytes, timestamp_ms: float) -> GateResult:
        result = GateResult()
        if not frame:
            return result

        if frame_rms(frame) >= self.threshold_rms:
            if self.state is GateState.SILENT:
                self.state = GateState.TALKING
                logger.debug("Speech started", timestamp_ms=timestamp_ms, utterance=self.utterances + 1)
            elif self._tail:
                # Brief dip inside the hangover window: keep those samples
                self._buffer.extend(self._tail)
                self._tail.clear()
            self._buffer.extend(frame)
            self._last_voice_ms = timestamp_ms
            self._drain_chunks(result)
            return result

        if self.state is GateState.SILENT:
            return result

        if self._hangover_elapsed(timestamp_ms):
            self._finish(result)
        else:
            self._tail.extend(frame)
        return result

    def poll(self, timestamp_ms: float) -> GateResult:
        """Close the talking run if the hangover elapsed without any new frame."""
        result = GateResult()
        if self.state is GateState.TALKING and self._hangover_elapsed(timestamp_ms):
            self._finish(result)
        return result

    def flush(self) -> GateResult:
        """Force the end of the current talking run (upstream end-of-stream)."""
        result = GateResult()
        if self.state is GateState.TALKING:
            self._finish(result)
        return result

    def reset(self) -> None:
        self.state = GateState.SILENT
        self._buffer.clear()
        self._tail.clear()
        self._last_voice_ms = None

    def _hangover_elapsed(self, timestamp_ms: float) -> bool:
        if self._last_voice_ms is None:
            return True
        return timestamp_ms - self._last_voice_ms >= self.hangover_ms

    def _drain_chunks(self, result: GateResult) -> None:
        while len(self._buffer) >= self.chunk_bytes:
            result.chunks.append(bytes(self._buffer[:self.chunk_bytes]))
            del self._buffer[:self.chunk_bytes]

    def _finish(self, result: GateResult) -> None:
        if self._buffer:
            result.chunks.append(bytes(self._buffer))
        result.end_of_utterance = True
        self.utterances += 1
        logger.debug(
            "Speech ended",
            utterance=self.utterances,
            discarded_tail_bytes=len(self._tail),
        )
        self.reset()
