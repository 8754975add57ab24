from agent_bridge.audio.resampler import (
    PcmResampler,
    agent_to_discord,
    bytes_per_ms,
    discord_to_agent,
    frame_rms,
)

__all__ = ["PcmResampler", "agent_to_discord", "bytes_per_ms", "discord_to_agent", "frame_rms"]
