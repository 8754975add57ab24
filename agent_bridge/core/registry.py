"""
Registry of live bridge sessions, keyed by voice channel.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional

import structlog

from agent_bridge import metrics
from agent_bridge.config.models import BridgeConfig
from agent_bridge.core.bridge_session import BridgeSession
from agent_bridge.core.models import BridgeEvent
from agent_bridge.errors import BridgeError
from agent_bridge.platform.base import VoicePlatform

logger = structlog.get_logger(__name__)


class BridgeRegistry:
    """At most one BridgeSession per channel.

    A session is inserted when its join starts and removed by the session's
    own teardown, so fatal join errors and platform disconnects clean up too.
    """

    def __init__(self, platform: VoicePlatform, config: BridgeConfig) -> None:
        self._platform = platform
        self._config = config
        self._sessions: Dict[str, BridgeSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._sessions

    def get(self, channel_id: str) -> Optional[BridgeSession]:
        return self._sessions.get(channel_id)

    def find_by_group(self, group_id: str) -> Optional[BridgeSession]:
        for session in self._sessions.values():
            if session.group_id == group_id:
                return session
        return None

    def sessions(self) -> List[BridgeSession]:
        return list(self._sessions.values())

    async def join(
        self,
        channel_id: str,
        initial_target: str,
        *,
        group_id: Optional[str] = None,
        notifier: Optional[Callable[[BridgeEvent], None]] = None,
    ) -> BridgeSession:
        if channel_id in self._sessions:
            raise BridgeError(
                f"session already active for channel {channel_id}",
                user_message="I'm already in that voice channel. Use /dao-target to change who I listen to.",
            )
        session = BridgeSession(
            channel_id,
            self._platform,
            self._config,
            group_id=group_id,
            notifier=notifier,
        )
        session.add_close_listener(self._remove)
        self._sessions[channel_id] = session
        metrics.ACTIVE_SESSIONS.set(len(self._sessions))
        await session.join(initial_target)
        return session

    async def leave(self, channel_id: str) -> bool:
        session = self._sessions.get(channel_id)
        if session is None:
            return False
        await session.leave()
        return True

    async def shutdown(self) -> None:
        """Leave every channel; used on process exit."""
        for session in self.sessions():
            try:
                await session.leave()
            except Exception as e:
                logger.error("Error leaving channel during shutdown", channel=session.channel_id, error=str(e))

    def _remove(self, session: BridgeSession) -> None:
        if self._sessions.get(session.channel_id) is session:
            del self._sessions[session.channel_id]
        metrics.ACTIVE_SESSIONS.set(len(self._sessions))
        logger.debug("Session removed from registry", channel=session.channel_id, active=len(self._sessions))
