"""Discord voice channel ↔ ElevenLabs Conversational AI bridge."""

__version__ = "0.1.0"
