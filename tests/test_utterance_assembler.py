import asyncio

import pytest

from agent_bridge.core.utterance_assembler import UtteranceAssembler


@pytest.fixture
def released():
    return []


@pytest.fixture
def assembler(released):
    return UtteranceAssembler(released.append, idle_gap_ms=50)


@pytest.mark.asyncio
async def test_out_of_order_fragments_released_in_sequence(assembler, released):
    assembler.submit(b"B", 2)
    assembler.submit(b"A", 1)
    assembler.submit(b"C", 3)
    assembler.end()

    assert released == [b"ABC"]
    assert assembler.next_sequence == 4


@pytest.mark.asyncio
async def test_idle_gap_releases_utterance_once(assembler, released):
    assembler.submit(b"A", 1)
    assembler.submit(b"B", 2)

    await asyncio.sleep(0.12)

    assert released == [b"AB"]
    assert not assembler.in_progress
    # A late end marker does not release the same utterance again
    assembler.end()
    assert released == [b"AB"]


@pytest.mark.asyncio
async def test_sequence_continues_across_utterances(assembler, released):
    assembler.submit(b"A", 1)
    assembler.end()
    assembler.submit(b"B", 2)
    assembler.end()

    assert released == [b"A", b"B"]
    assert assembler.utterances_released == 2


@pytest.mark.asyncio
async def test_gap_released_in_order_on_end(assembler, released):
    """A fragment that never arrives is treated as lost; the rest keep their order."""
    assembler.submit(b"A", 1)
    assembler.submit(b"D", 4)
    assembler.submit(b"C", 3)
    assembler.end()

    assert released == [b"ACD"]
    assert assembler.next_sequence == 5


@pytest.mark.asyncio
async def test_stale_and_duplicate_fragments_dropped(assembler, released):
    assembler.submit(b"A", 1)
    assembler.submit(b"A", 1)
    assembler.submit(b"C", 3)
    assembler.submit(b"C", 3)
    assembler.submit(b"B", 2)
    assembler.end()

    assert released == [b"ABC"]


@pytest.mark.asyncio
async def test_delta_fragments_appended_until_end_marker(assembler, released):
    assembler.submit(b"he")
    assembler.submit(b"ll")
    assembler.submit(b"o", is_end=True)

    assert released == [b"hello"]


@pytest.mark.asyncio
async def test_link_style_switch_closes_current_utterance(assembler, released):
    assembler.submit(b"A", 1)
    assembler.submit(b"x")
    assembler.end()

    assert released == [b"A", b"x"]


@pytest.mark.asyncio
async def test_reset_discards_in_progress_utterance(assembler, released):
    assembler.submit(b"A", 1)
    assembler.submit(b"C", 3)
    assembler.reset(next_sequence=1)

    await asyncio.sleep(0.12)

    assert released == []
    assert assembler.next_sequence == 1


@pytest.mark.asyncio
async def test_closed_assembler_ignores_fragments(assembler, released):
    assembler.submit(b"A", 1)
    assembler.close()
    assembler.close()
    assembler.submit(b"B", 2)
    assembler.end()

    await asyncio.sleep(0.12)

    assert released == []
