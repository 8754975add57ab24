import json

import pytest

from agent_bridge.config.models import BridgeConfig, HealthConfig
from agent_bridge.core.registry import BridgeRegistry
from agent_bridge.health import HealthServer

from conftest import FakePlatform


@pytest.mark.asyncio
async def test_health_returns_ok():
    server = HealthServer(HealthConfig())
    response = await server._health_handler(None)

    assert response.status == 200
    assert response.text == "ok"


@pytest.mark.asyncio
async def test_metrics_exposes_bridge_counters():
    server = HealthServer(HealthConfig())
    response = await server._metrics_handler(None)

    assert response.status == 200
    assert b"agent_bridge_audio_chunks_sent_total" in response.body


@pytest.mark.asyncio
async def test_sessions_summary_empty_registry():
    registry = BridgeRegistry(FakePlatform(), BridgeConfig())
    server = HealthServer(HealthConfig(), registry)
    response = await server._sessions_handler(None)

    assert json.loads(response.text) == {"active_sessions": 0, "sessions": []}


@pytest.mark.asyncio
async def test_disabled_server_does_not_bind():
    server = HealthServer(HealthConfig(enabled=False))
    await server.start()

    assert server._runner is None
    await server.stop()
