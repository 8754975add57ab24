"""
Discord bot hosting the bridge.

Slash commands (prefix configurable, default ``dao``):
    /dao-join     join the caller's voice channel and listen to them
    /dao-leave    leave the voice channel and end the session
    /dao-target   switch the microphone target to another member
    /dao-context  send background context to the agent
    /dao-say      make the agent respond to a text message
"""

import asyncio
from typing import Awaitable, Callable, Optional

import discord
import structlog
from discord import app_commands
from discord.ext import commands

from agent_bridge.config.models import BridgeConfig
from agent_bridge.core.bridge_session import BridgeSession
from agent_bridge.core.models import ActionResult, BridgeEvent
from agent_bridge.core.registry import BridgeRegistry
from agent_bridge.errors import (
    BridgeError,
    LinkError,
    LinkNotReady,
    ReconnectExhausted,
    SessionClosed,
)
from agent_bridge.platform.discord_voice import DiscordVoicePlatform

logger = structlog.get_logger(__name__)

GENERIC_ERROR_REPLY = "Error. Check logs."


def describe_event(event: BridgeEvent) -> Optional[str]:
    """Text posted to the command channel for a user-facing session event."""
    if event.type == "reconnect_exhausted":
        return ReconnectExhausted.user_message
    if event.type == "link_failed":
        return event.data.get("error") or "Could not connect to the agent."
    if event.type == "voice_disconnected":
        return "I was disconnected from the voice channel. Session closed."
    if event.type == "capture_ended":
        target = event.data.get("target")
        return f"Stopped listening to <@{target}>. Use /dao-target to pick someone in the channel."
    return None


class BridgeBot(commands.Bot):
    def __init__(self, config: BridgeConfig, *, sync_commands: bool = False):
        intents = discord.Intents.default()
        intents.guilds = True
        intents.voice_states = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents, help_command=None)

        self.config = config
        self.sync_commands = sync_commands
        self.platform = DiscordVoicePlatform(self, connect_timeout=config.discord.voice_connect_timeout_sec)
        self.registry = BridgeRegistry(self.platform, config)
        self._notify_tasks = set()
        self._register_commands()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def setup_hook(self) -> None:
        if self.sync_commands:
            await self.sync_app_commands()

    async def sync_app_commands(self) -> int:
        """Register slash commands; guild-scoped when a guild id is configured."""
        guild_id = self.config.discord.guild_id
        if guild_id:
            guild = discord.Object(id=int(guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
        else:
            synced = await self.tree.sync()
        logger.info("Slash commands synced", count=len(synced), guild=guild_id)
        return len(synced)

    async def on_ready(self) -> None:
        logger.info(
            "Discord bot ready",
            user=str(self.user),
            user_id=getattr(self.user, "id", None),
            guilds=len(self.guilds),
        )

    async def on_voice_state_update(self, member, before, after) -> None:
        await self.platform.handle_voice_state_update(member, before, after)

    async def close(self) -> None:
        logger.info("Shutting down bridge sessions", active=len(self.registry))
        await self.registry.shutdown()
        await super().close()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def _register_commands(self) -> None:
        prefix = self.config.discord.command_prefix

        @self.tree.command(name=f"{prefix}-join", description="Join your current voice channel and start talking to the agent.")
        async def join_command(interaction: discord.Interaction):
            await self._run(interaction, lambda: self.handle_join(interaction), defer=True)

        @self.tree.command(name=f"{prefix}-leave", description="Leave the voice channel and end the session.")
        async def leave_command(interaction: discord.Interaction):
            await self._run(interaction, lambda: self.handle_leave(interaction))

        @self.tree.command(name=f"{prefix}-target", description="Switch the microphone target to a user in the voice channel.")
        @app_commands.describe(user="User to target")
        async def target_command(interaction: discord.Interaction, user: discord.Member):
            await self._run(interaction, lambda: self.handle_target(interaction, user))

        @self.tree.command(name=f"{prefix}-context", description="Send a live context nudge to the agent.")
        @app_commands.describe(text="Context text")
        async def context_command(interaction: discord.Interaction, text: str):
            await self._run(interaction, lambda: self.handle_context(interaction, text))

        @self.tree.command(name=f"{prefix}-say", description="Ask the agent to respond to a text message.")
        @app_commands.describe(text="Message for the agent")
        async def say_command(interaction: discord.Interaction, text: str):
            await self._run(interaction, lambda: self.handle_say(interaction, text))

    async def handle_join(self, interaction: discord.Interaction) -> ActionResult:
        member = interaction.user
        voice = getattr(member, "voice", None)
        if interaction.guild is None or voice is None or voice.channel is None:
            raise BridgeError("caller not in a voice channel", user_message="Join a voice channel first.")
        channel = voice.channel
        group_id = str(interaction.guild.id)

        existing = self.registry.find_by_group(group_id)
        if existing is not None:
            if existing.channel_id == str(channel.id):
                return existing.retarget(str(member.id))
            # One voice connection per guild
            await existing.leave()

        await self.registry.join(
            str(channel.id),
            str(member.id),
            group_id=group_id,
            notifier=self._notifier_for(interaction.channel),
        )
        return ActionResult(True, "Joined your voice channel. Listening to you. Say something :)")

    async def handle_leave(self, interaction: discord.Interaction) -> ActionResult:
        session = self._session_for(interaction)
        if session is not None:
            return await session.leave()
        voice_client = interaction.guild.voice_client if interaction.guild else None
        if voice_client is not None:
            await voice_client.disconnect(force=True)
        return ActionResult(True, "Left the voice channel and closed the session.")

    async def handle_target(self, interaction: discord.Interaction, user: discord.Member) -> ActionResult:
        session = self._session_for(interaction)
        if session is None:
            raise SessionClosed()
        return session.retarget(str(user.id))

    async def handle_context(self, interaction: discord.Interaction, text: str) -> ActionResult:
        session = self._session_for(interaction)
        if session is None:
            raise LinkNotReady()
        return await session.send_context(text)

    async def handle_say(self, interaction: discord.Interaction, text: str) -> ActionResult:
        session = self._session_for(interaction)
        if session is None:
            raise LinkNotReady()
        return await session.send_text(text)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _session_for(self, interaction: discord.Interaction) -> Optional[BridgeSession]:
        if interaction.guild is None:
            return None
        return self.registry.find_by_group(str(interaction.guild.id))

    async def _run(
        self,
        interaction: discord.Interaction,
        action: Callable[[], Awaitable[ActionResult]],
        *,
        defer: bool = False,
    ) -> None:
        command = interaction.command.name if interaction.command else "unknown"
        try:
            if defer:
                await interaction.response.defer(ephemeral=True, thinking=True)
            result = await action()
            message = result.message
        except (LinkError, SessionClosed) as e:
            logger.info("Command rejected", command=command, reason=str(e))
            message = e.user_message
        except BridgeError as e:
            logger.warning("Command failed", command=command, error=str(e))
            message = e.user_message
        except Exception as e:
            logger.error("Command error", command=command, error=str(e), exc_info=True)
            message = GENERIC_ERROR_REPLY
        await self._reply(interaction, message)

    async def _reply(self, interaction: discord.Interaction, message: str) -> None:
        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except discord.HTTPException as e:
            logger.warning("Failed to reply to interaction", error=str(e))

    def _notifier_for(self, channel) -> Optional[Callable[[BridgeEvent], None]]:
        if channel is None or not hasattr(channel, "send"):
            return None

        def notify(event: BridgeEvent) -> None:
            text = describe_event(event)
            if not text:
                return
            task = asyncio.ensure_future(self._post(channel, text))
            self._notify_tasks.add(task)
            task.add_done_callback(self._notify_tasks.discard)

        return notify

    async def _post(self, channel, text: str) -> None:
        try:
            await channel.send(text)
        except discord.HTTPException as e:
            logger.warning("Failed to post session notification", error=str(e))
