import asyncio

import pytest

from agent_bridge.config.models import PlaybackConfig
from agent_bridge.core.playback_session import PlaybackSession
from agent_bridge.errors import PipelineStageError, SessionClosed

from conftest import FakeConnection


def agent_pcm(ms: int, amplitude: int = 1000) -> bytes:
    """16 kHz mono PCM16 at a constant level."""
    samples = 16 * ms
    return amplitude.to_bytes(2, "little", signed=True) * samples


@pytest.fixture
def connection():
    return FakeConnection("chan-1")


@pytest.fixture
def playback(connection):
    return PlaybackSession(connection, PlaybackConfig(max_buffer_ms=1000, low_watermark_ms=400))


@pytest.mark.asyncio
async def test_pipeline_built_once_across_utterances(playback, connection):
    playback.ensure_started()
    playback.ensure_started()
    await playback.write(agent_pcm(100))
    await playback.write(agent_pcm(100))

    assert playback.build_count == 1
    assert len(connection.sinks) == 1


@pytest.mark.asyncio
async def test_write_resamples_to_discord_format(playback, connection):
    written = await playback.write(agent_pcm(100))

    # 100 ms at 48 kHz stereo PCM16 is 19200 bytes; the resampler may hold a sample back
    assert abs(written - 19200) <= 16
    assert connection.sinks[0].buffered_bytes() == written


@pytest.mark.asyncio
async def test_write_waits_while_sink_is_saturated(playback, connection):
    task = asyncio.create_task(playback.write(agent_pcm(2000)))
    await asyncio.sleep(0.01)

    sink = connection.sinks[0]
    assert not task.done()
    assert sink.buffered_bytes() <= playback.max_buffer_bytes

    # Drain like the platform player thread would, one frame at a time
    while not task.done():
        sink.read_frame()
        await asyncio.sleep(0)

    written = await task
    assert written > playback.max_buffer_bytes


@pytest.mark.asyncio
async def test_resample_fault_drops_utterance_but_keeps_sink(playback, connection, monkeypatch):
    playback.ensure_started()

    def broken(pcm):
        raise PipelineStageError("playback-resample", "boom")

    monkeypatch.setattr(playback._resampler, "process", broken)
    assert await playback.write(agent_pcm(100)) == 0

    monkeypatch.undo()
    assert await playback.write(agent_pcm(100)) > 0
    assert len(connection.sinks) == 1


@pytest.mark.asyncio
async def test_clear_drops_queued_audio(playback, connection):
    await playback.write(agent_pcm(200))
    playback.clear()

    assert connection.sinks[0].buffered_bytes() == 0


@pytest.mark.asyncio
async def test_close_is_idempotent_and_stops_writes(playback, connection):
    await playback.write(agent_pcm(20))
    playback.close()
    playback.close()

    assert connection.sinks[0].closed
    assert await playback.write(agent_pcm(20)) == 0
    with pytest.raises(SessionClosed):
        playback.ensure_started()


@pytest.mark.asyncio
async def test_clear_aborts_utterance_longer_than_buffer(playback, connection):
    task = asyncio.create_task(playback.write(agent_pcm(2000)))
    await asyncio.sleep(0.01)
    sink = connection.sinks[0]
    assert not task.done()

    playback.clear()
    written = await asyncio.wait_for(task, timeout=1.0)

    assert sink.buffered_bytes() == 0
    assert written <= playback.max_buffer_bytes


@pytest.mark.asyncio
async def test_write_after_clear_plays_normally(playback, connection):
    playback.clear()

    assert await playback.write(agent_pcm(100)) > 0
    assert connection.sinks[0].buffered_bytes() > 0
