"""
Reassembly of agent audio fragments into ordered utterances.

Two link styles are supported:

- sequenced: every fragment carries a sequence number (ElevenLabs ``audio``
  events with ``event_id``). Fragments may arrive out of order; contiguous runs
  are released starting at the next expected number.
- delta: fragments arrive without numbers (``audio.delta``) and are appended
  in arrival order until an end marker.

Either way an inactivity gap longer than ``idle_gap_ms`` closes the utterance.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

MODE_SEQUENCED = "sequenced"
MODE_DELTA = "delta"


class UtteranceAssembler:
    """Holds at most one in-progress utterance and releases it exactly once.

    The next-expected sequence number persists across utterances for the life
    of one link connection; call ``reset(next_sequence=...)`` when the link
    reconnects.
    """

    def __init__(
        self,
        on_utterance_ready: Callable[[bytes], None],
        *,
        idle_gap_ms: int = 600,
        first_sequence: int = 1,
    ) -> None:
        self._on_ready = on_utterance_ready
        self.idle_gap_ms = idle_gap_ms
        self._next_sequence = first_sequence
        self._pending: Dict[int, bytes] = {}
        self._buffer: Optional[bytearray] = None
        self._mode: Optional[str] = None
        self._idle_timer: Optional[asyncio.TimerHandle] = None
        self._closed = False
        self.utterances_released = 0

    @property
    def next_sequence(self) -> int:
        return self._next_sequence

    @property
    def in_progress(self) -> bool:
        return self._buffer is not None

    def submit(self, fragment: bytes, sequence: Optional[int] = None, is_end: bool = False) -> None:
        if self._closed:
            return

        mode = MODE_SEQUENCED if sequence is not None else MODE_DELTA
        if self._mode is not None and mode != self._mode:
            logger.debug("Link style changed mid-utterance; closing current utterance", previous=self._mode, mode=mode)
            self._flush("mode_switch")
        self._mode = mode
        if self._buffer is None:
            self._buffer = bytearray()

        if fragment:
            if mode == MODE_SEQUENCED:
                self._accept_sequenced(fragment, sequence)
            else:
                self._buffer.extend(fragment)

        if is_end:
            self._flush("end_marker")
        else:
            self._arm_idle_timer()

    def end(self) -> None:
        """Explicit end-of-audio marker from the link."""
        if self._closed:
            return
        self._flush("end_marker")

    def reset(self, *, next_sequence: Optional[int] = None) -> None:
        """Discard the in-progress utterance (interruption or reconnect)."""
        self._cancel_idle_timer()
        dropped = len(self._buffer or b"") + sum(len(f) for f in self._pending.values())
        if dropped:
            logger.debug("Discarding in-progress utterance", dropped_bytes=dropped)
        self._buffer = None
        self._pending.clear()
        self._mode = None
        if next_sequence is not None:
            self._next_sequence = next_sequence

    def close(self) -> None:
        """Stop accepting fragments and cancel the idle timer. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.reset()

    # ------------------------------------------------------------------
    def _accept_sequenced(self, fragment: bytes, sequence: int) -> None:
        if sequence < self._next_sequence:
            logger.debug("Dropping fragment for already released position", sequence=sequence, next_expected=self._next_sequence)
            return
        if sequence in self._pending:
            logger.debug("Dropping duplicate fragment", sequence=sequence)
            return
        self._pending[sequence] = fragment
        while self._next_sequence in self._pending:
            self._buffer.extend(self._pending.pop(self._next_sequence))
            self._next_sequence += 1

    def _flush(self, reason: str) -> None:
        self._cancel_idle_timer()
        if self._buffer is None:
            return
        if self._pending:
            # Missing fragments are treated as lost; keep temporal order for the rest
            held = sorted(self._pending)
            logger.info(
                "Releasing fragments past a sequence gap",
                next_expected=self._next_sequence,
                held=held,
                reason=reason,
            )
            for sequence in held:
                self._buffer.extend(self._pending.pop(sequence))
            self._next_sequence = held[-1] + 1
        data = bytes(self._buffer)
        self._buffer = None
        self._mode = None
        if not data:
            return
        self.utterances_released += 1
        logger.debug("Utterance ready", bytes=len(data), reason=reason, utterance=self.utterances_released)
        self._on_ready(data)

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        loop = asyncio.get_running_loop()
        self._idle_timer = loop.call_later(self.idle_gap_ms / 1000.0, self._on_idle)

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _on_idle(self) -> None:
        self._idle_timer = None
        if self._closed:
            return
        self._flush("idle_gap")
