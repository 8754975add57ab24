"""
PCM16 sample-rate and channel conversion.

The voice channel speaks 48 kHz stereo, the agent speaks 16 kHz mono. Both
directions go through a stateful ``PcmResampler`` so consecutive writes join
without clicks.
"""

from __future__ import annotations

import audioop
from typing import Optional

from agent_bridge.errors import PipelineStageError

SAMPLE_WIDTH = 2  # PCM16

DISCORD_SAMPLE_RATE = 48000
DISCORD_CHANNELS = 2
AGENT_SAMPLE_RATE = 16000
AGENT_CHANNELS = 1


def bytes_per_ms(sample_rate: int, channels: int = 1) -> int:
    return sample_rate * channels * SAMPLE_WIDTH // 1000


class PcmResampler:
    """Stateful PCM16 resampler with mono/stereo conversion.

    Input that does not end on a whole frame boundary is carried over to the
    next ``process`` call.
    """

    def __init__(self, in_rate: int, in_channels: int, out_rate: int, out_channels: int, *, name: str = "resample"):
        if in_channels not in (1, 2) or out_channels not in (1, 2):
            raise ValueError("only mono and stereo PCM16 are supported")
        self.in_rate = in_rate
        self.in_channels = in_channels
        self.out_rate = out_rate
        self.out_channels = out_channels
        self.name = name
        self._state: Optional[tuple] = None
        self._carry = b""
        self._frame_bytes = SAMPLE_WIDTH * in_channels

    def process(self, pcm: bytes) -> bytes:
        data = self._carry + pcm
        usable = len(data) - (len(data) % self._frame_bytes)
        self._carry = data[usable:]
        data = data[:usable]
        if not data:
            return b""
        try:
            if self.in_channels == 2 and self.out_channels == 1:
                data = audioop.tomono(data, SAMPLE_WIDTH, 0.5, 0.5)
            if self.in_rate != self.out_rate:
                channels = 1 if self.out_channels == 1 else self.in_channels
                data, self._state = audioop.ratecv(
                    data, SAMPLE_WIDTH, channels, self.in_rate, self.out_rate, self._state
                )
            if self.in_channels == 1 and self.out_channels == 2:
                data = audioop.tostereo(data, SAMPLE_WIDTH, 1, 1)
        except audioop.error as e:
            raise PipelineStageError(self.name, str(e)) from e
        return data

    def reset(self) -> None:
        self._state = None
        self._carry = b""


def discord_to_agent(name: str = "capture-resample", agent_rate: int = AGENT_SAMPLE_RATE) -> PcmResampler:
    """48 kHz stereo → agent mono PCM16 (16 kHz unless configured otherwise)."""
    return PcmResampler(DISCORD_SAMPLE_RATE, DISCORD_CHANNELS, agent_rate, AGENT_CHANNELS, name=name)


def agent_to_discord(name: str = "playback-resample", agent_rate: int = AGENT_SAMPLE_RATE) -> PcmResampler:
    """Agent mono PCM16 → 48 kHz stereo."""
    return PcmResampler(agent_rate, AGENT_CHANNELS, DISCORD_SAMPLE_RATE, DISCORD_CHANNELS, name=name)


def frame_rms(frame: bytes) -> int:
    """Root-mean-square energy of signed 16-bit samples."""
    usable = len(frame) - (len(frame) % SAMPLE_WIDTH)
    if usable <= 0:
        return 0
    return audioop.rms(frame[:usable], SAMPLE_WIDTH)
