"""
Core data models for the bridge.

Typed states and small value objects shared by the capture, playback and link
components.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class GateState(str, Enum):
    SILENT = "silent"
    TALKING = "talking"


class LinkState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSING_INTENTIONAL = "closing_intentional"


@dataclass
class GateResult:
    """Output of one ``VoiceActivityGate.feed`` call."""
    chunks: List[bytes] = field(default_factory=list)
    end_of_utterance: bool = False

    def __bool__(self) -> bool:
        return bool(self.chunks) or self.end_of_utterance


@dataclass
class ActionResult:
    """Outcome of a user-initiated action, reported back to the caller."""
    ok: bool
    message: str


@dataclass
class BridgeEvent:
    """Notification raised by a session component (recoverable errors, link changes)."""
    type: str
    channel_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass
class LinkStats:
    """Per-connection counters, logged when a link session ends."""
    conversation_id: Optional[str] = None
    audio_bytes_sent: int = 0
    audio_bytes_received: int = 0
    chunks_sent: int = 0
    chunks_dropped: int = 0
    utterances_sent: int = 0
