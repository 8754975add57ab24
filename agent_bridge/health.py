"""
Health and metrics HTTP endpoint (aiohttp).

GET /health   plain "ok" while the process is up
GET /sessions JSON summary of occupied channels
GET /metrics  Prometheus exposition
"""

from typing import Optional

import structlog
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from agent_bridge.config.models import HealthConfig
from agent_bridge.core.registry import BridgeRegistry

logger = structlog.get_logger(__name__)


class HealthServer:
    def __init__(self, config: HealthConfig, registry: Optional[BridgeRegistry] = None):
        self.config = config
        self.registry = registry
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/health', self._health_handler)
        app.router.add_get('/sessions', self._sessions_handler)
        app.router.add_get('/metrics', self._metrics_handler)
        return app

    async def start(self) -> None:
        """Start the server; a bind failure is logged and the bot keeps running."""
        if not self.config.enabled:
            logger.info("Health endpoint disabled")
            return
        try:
            runner = web.AppRunner(self.build_app())
            await runner.setup()
            site = web.TCPSite(runner, self.config.host, self.config.port)
            await site.start()
            self._runner = runner
            logger.info("Health endpoint started", host=self.config.host, port=self.config.port)
        except Exception as exc:
            logger.error("Failed to start health endpoint", error=str(exc), exc_info=True)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

    async def _health_handler(self, request):
        """Liveness check: returns 200 if process is up."""
        return web.Response(text="ok", status=200)

    async def _sessions_handler(self, request):
        sessions = self.registry.sessions() if self.registry else []
        payload = {
            "active_sessions": len(sessions),
            "sessions": [
                {
                    "channel_id": s.channel_id,
                    "group_id": s.group_id,
                    "target_id": s.target_id,
                    "link_state": s.link_state.value,
                }
                for s in sessions
            ],
        }
        return web.json_response(payload)

    async def _metrics_handler(self, request):
        """Expose Prometheus metrics."""
        try:
            data = generate_latest()
            # aiohttp forbids 'charset=' inside content_type arg; pass full header via headers.
            return web.Response(body=data, headers={"Content-Type": CONTENT_TYPE_LATEST})
        except Exception as exc:
            return web.Response(text=str(exc), status=500)
