import asyncio

import pytest

from agent_bridge.config.models import CaptureConfig
from agent_bridge.core.capture_session import CaptureSession
from agent_bridge.errors import PipelineStageError

from conftest import FakeConnection, discord_frame, wait_for_condition

LOUD = discord_frame(3000)
SILENT = discord_frame(0)


class Recorder:
    def __init__(self):
        self.chunks = []
        self.ends = 0
        self.events = []
        self.order = []

    def on_chunk(self, chunk):
        self.chunks.append(chunk)
        self.order.append("chunk")

    def on_end(self):
        self.ends += 1
        self.order.append("end")

    def on_event(self, event):
        self.events.append(event)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance_ms(self, ms):
        self.now += ms / 1000.0


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def connection():
    return FakeConnection("chan-1", participants=("alice", "bob"))


@pytest.fixture
def capture(connection, recorder, clock):
    return CaptureSession(
        connection,
        CaptureConfig(chunk_ms=20, vad_threshold_rms=500, hangover_ms=60),
        on_chunk=recorder.on_chunk,
        on_end_of_utterance=recorder.on_end,
        on_event=recorder.on_event,
        clock=clock,
    )


def feed(stream, clock, frames):
    for frame in frames:
        stream.emit(frame)
        clock.advance_ms(20)


@pytest.mark.asyncio
async def test_speech_is_chunked_and_closed_by_trailing_silence(capture, connection, recorder, clock):
    capture.start("alice")
    stream = connection.stream_for("alice")

    feed(stream, clock, [LOUD] * 5 + [SILENT] * 10)

    assert len(recorder.chunks) >= 4
    assert recorder.ends == 1
    assert recorder.order[-1] == "end"


@pytest.mark.asyncio
async def test_quiet_input_sends_nothing(capture, connection, recorder, clock):
    capture.start("alice")
    feed(connection.stream_for("alice"), clock, [discord_frame(50)] * 15)

    assert recorder.chunks == []
    assert recorder.ends == 0


@pytest.mark.asyncio
async def test_watchdog_ends_utterance_when_frames_stop(capture, connection, recorder, clock):
    capture.start("alice")
    feed(connection.stream_for("alice"), clock, [LOUD] * 3)
    assert recorder.ends == 0

    await wait_for_condition(lambda: recorder.ends == 1, timeout=0.5)


@pytest.mark.asyncio
async def test_retarget_tears_down_previous_pipeline(capture, connection, recorder, clock):
    capture.start("alice")
    alice = connection.stream_for("alice")
    feed(alice, clock, [LOUD] * 2)

    capture.start("bob")

    assert alice.unsubscribe_calls == 1
    assert capture.target_id == "bob"
    # Partial utterance from the old target was delivered before release
    assert recorder.ends == 1

    chunks_before = len(recorder.chunks)
    alice.emit(LOUD)
    assert len(recorder.chunks) == chunks_before

    feed(connection.stream_for("bob"), clock, [LOUD] * 2)
    assert len(recorder.chunks) > chunks_before


@pytest.mark.asyncio
async def test_stop_is_idempotent(capture, connection, recorder, clock):
    capture.start("alice")
    stream = connection.stream_for("alice")
    feed(stream, clock, [LOUD] * 2)

    capture.stop()
    capture.stop()

    assert stream.unsubscribe_calls == 1
    assert recorder.ends == 1
    assert not capture.active


@pytest.mark.asyncio
async def test_no_push_after_close(capture, connection, recorder, clock):
    capture.start("alice")
    stream = connection.stream_for("alice")
    on_data = stream.on_data
    capture.stop()

    # A frame already in flight when teardown ran
    on_data(LOUD)

    assert recorder.chunks == []


@pytest.mark.asyncio
async def test_end_of_stream_notifies_and_flushes(capture, connection, recorder, clock):
    capture.start("alice")
    stream = connection.stream_for("alice")
    feed(stream, clock, [LOUD] * 2)

    stream.finish()

    assert recorder.ends == 1
    assert [e.type for e in recorder.events] == ["capture_ended"]
    assert recorder.events[0].data["target"] == "alice"
    assert not capture.active


@pytest.mark.asyncio
async def test_stage_fault_tears_down_and_reports(capture, connection, recorder, clock, monkeypatch):
    capture.start("alice")
    stream = connection.stream_for("alice")
    pipeline = capture._pipeline

    def broken(pcm):
        raise PipelineStageError("capture-resample", "bad frame")

    monkeypatch.setattr(pipeline.resampler, "process", broken)
    stream.emit(LOUD)

    assert not capture.active
    assert stream.unsubscribe_calls == 1
    assert recorder.events[-1].type == "capture_stage_error"
    assert recorder.events[-1].data["stage"] == "capture-resample"

    # The session can rebuild the pipeline for the same target
    capture.start("alice")
    assert capture.active
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_chunks_sized_for_configured_sample_rate(connection, recorder, clock):
    capture = CaptureSession(
        connection,
        CaptureConfig(sample_rate=24000, chunk_ms=20, vad_threshold_rms=500, hangover_ms=60),
        on_chunk=recorder.on_chunk,
        on_end_of_utterance=recorder.on_end,
        clock=clock,
    )
    capture.start("alice")

    feed(connection.stream_for("alice"), clock, [LOUD] * 10)

    # 200 ms of speech at 24 kHz fills nine 960-byte chunks before the tail
    assert len(recorder.chunks) >= 9
    assert all(len(chunk) == 960 for chunk in recorder.chunks)
    capture.stop()
