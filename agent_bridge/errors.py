"""
Error taxonomy for the bridge.

Every user-initiated action either succeeds or raises a ``BridgeError`` whose
message is safe to show to the person who issued the command.
"""


class BridgeError(Exception):
    """Base class for errors surfaced to the command caller."""

    user_message = "Something went wrong. Check logs."

    def __init__(self, message: str = "", *, user_message: str = ""):
        super().__init__(message or user_message or self.user_message)
        if user_message:
            self.user_message = user_message
        elif message:
            self.user_message = message


class ConfigurationError(BridgeError):
    """Missing credentials or identifiers. Fatal to session start, never retried."""


class PermissionDenied(BridgeError):
    """Insufficient rights on the target channel. Fatal to join, never retried."""


class LinkError(BridgeError):
    """Transient failure of the agent link or the voice connection."""


class LinkNotReady(LinkError):
    user_message = "Agent not connected. Use /dao-join first."


class ReconnectExhausted(LinkError):
    user_message = "Lost the connection to the agent and could not reconnect."


class PipelineStageError(BridgeError):
    """A decode/resample/encode stage failed. Recovered by rebuilding that pipeline."""

    def __init__(self, stage: str, message: str = ""):
        super().__init__(f"{stage} stage failed: {message}" if message else f"{stage} stage failed")
        self.stage = stage


class SessionClosed(BridgeError):
    user_message = "I need to be in a voice channel. Use /dao-join first."
