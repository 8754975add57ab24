"""Entry point: ``agent-bridge`` / ``python -m agent_bridge``."""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

import structlog

from agent_bridge.bot import BridgeBot
from agent_bridge.config import load_config, require_valid_config
from agent_bridge.errors import ConfigurationError
from agent_bridge.health import HealthServer
from agent_bridge.logging_config import configure_logging

logger = structlog.get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="agent-bridge",
        description="Bridge a Discord voice channel to an ElevenLabs Conversational AI agent.",
    )
    parser.add_argument("--config", default=None, help="YAML config file (default: $BRIDGE_CONFIG or config/bridge.yaml)")
    parser.add_argument("--env-file", default=".env", help="dotenv file loaded before the environment is read")
    parser.add_argument(
        "--sync-commands",
        action="store_true",
        help="Register the slash commands (guild-scoped when DISCORD_GUILD_ID is set) on startup",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> None:
    config = load_config(args.config, env_file=args.env_file)
    configure_logging(
        log_level=config.logging.level,
        log_format=config.logging.format,
        log_file_path=config.logging.file_path,
    )
    require_valid_config(config)
    logger.info(
        "Configuration validation passed",
        agent_id=config.agent.agent_id,
        signed_url=config.agent.use_signed_url,
        chunk_ms=config.capture.chunk_ms,
    )

    bot = BridgeBot(config, sync_commands=args.sync_commands)
    health = HealthServer(config.health, bot.registry)
    await health.start()

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            # Windows event loops
            pass

    bot_task = loop.create_task(bot.start(config.discord.token))
    shutdown_task = loop.create_task(shutdown_event.wait())
    try:
        done, _ = await asyncio.wait({bot_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        if bot_task in done and bot_task.exception() is not None:
            raise bot_task.exception()
    finally:
        shutdown_task.cancel()
        if not bot.is_closed():
            await bot.close()
        if not bot_task.done():
            bot_task.cancel()
            try:
                await bot_task
            except asyncio.CancelledError:
                pass
        await health.stop()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        asyncio.run(run(args))
    except ConfigurationError as e:
        logger.error("Configuration validation FAILED", error=str(e))
        return 2
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        logger.info("Agent bridge has shut down.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
