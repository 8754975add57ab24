"""
Configuration models for the agent bridge.

Pydantic v2 models for every tunable parameter. Credentials are never read
from YAML; see ``security.py``.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class DiscordConfig(BaseModel):
    token: Optional[str] = None
    app_id: Optional[str] = None
    guild_id: Optional[str] = None
    command_prefix: str = Field(default="dao")
    voice_connect_timeout_sec: float = Field(default=15.0)


class AgentConfig(BaseModel):
    """ElevenLabs Conversational AI agent connection."""
    api_key: Optional[str] = None
    agent_id: Optional[str] = None
    use_signed_url: bool = Field(default=True)
    ws_url: str = Field(default="wss://api.elevenlabs.io/v1/convai/conversation")
    signed_url_endpoint: str = Field(default="https://api.elevenlabs.io/v1/convai/conversation/get-signed-url")
    # Provider native formats (PCM16 little endian, mono)
    input_sample_rate_hz: int = Field(default=16000)
    output_sample_rate_hz: int = Field(default=16000)
    expected_audio_format: str = Field(default="pcm_16000")
    dynamic_variables: Dict[str, Any] = Field(default_factory=dict)


class CaptureConfig(BaseModel):
    """Microphone capture and voice-activity gating."""
    sample_rate: int = Field(default=16000)
    chunk_ms: int = Field(default=20)
    vad_threshold_rms: int = Field(default=500)
    hangover_ms: int = Field(default=300)


class PlaybackConfig(BaseModel):
    sample_rate: int = Field(default=48000)
    channels: int = Field(default=2)
    frame_ms: int = Field(default=20)
    # Sink saturates above this much queued audio; writers wait below low water
    max_buffer_ms: int = Field(default=2000)
    low_watermark_ms: int = Field(default=500)


class LinkConfig(BaseModel):
    """Agent link supervision."""
    connect_timeout_sec: float = Field(default=10.0)
    idle_close_sec: float = Field(default=120.0)
    reconnect_delay_sec: float = Field(default=2.0)
    # 0 = unlimited
    max_reconnect_attempts: int = Field(default=0)
    assembler_idle_gap_ms: int = Field(default=600)
    end_of_utterance_type: str = Field(default="user_activity")
    signed_url_attempts: int = Field(default=3)


class HealthConfig(BaseModel):
    enabled: bool = Field(default=True)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")  # debug|info|warning|error|critical
    format: str = Field(default="json")  # json|console
    file_path: Optional[str] = None


class BridgeConfig(BaseModel):
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    playback: PlaybackConfig = Field(default_factory=PlaybackConfig)
    link: LinkConfig = Field(default_factory=LinkConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
