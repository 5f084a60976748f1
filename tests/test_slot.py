"""Tests for services.frame_streamer.slot: single-slot backpressure mailbox."""

import asyncio

import pytest

from common.schemas import BoundingBox, FramePayload, VisualMetadata, WindowInfo
from services.frame_streamer.errors import SlotClosed
from services.frame_streamer.slot import FrameSlot


def _payload(rel: float, tag: str = "Change") -> FramePayload:
    return FramePayload(
        session_id="s1",
        relative_time=rel,
        timestamp="00:00:00.0",
        system_time="2026-01-01T00:00:00+00:00",
        window=WindowInfo(title="w", bbox=BoundingBox(left=0, top=0, width=10, height=10)),
        visual=VisualMetadata(has_change=True, event_tag=tag),
        width=10,
        height=10,
        image=b"jpeg",
    )


def test_empty_slot_has_nothing():
    slot = FrameSlot()
    assert slot.latest() is None
    assert slot.version == 0


def test_second_write_replaces_first():
    slot = FrameSlot()
    slot.publish(_payload(1.0))
    slot.publish(_payload(2.0))
    assert slot.latest().relative_time == 2.0
    assert slot.version == 2


def test_reads_are_idempotent():
    slot = FrameSlot()
    slot.publish(_payload(1.0))
    assert slot.latest() is slot.latest()


def test_publish_after_close_raises():
    slot = FrameSlot()
    slot.close()
    with pytest.raises(SlotClosed):
        slot.publish(_payload(1.0))


def test_close_is_idempotent_and_keeps_last_value():
    slot = FrameSlot()
    slot.publish(_payload(3.0))
    slot.close()
    slot.close()
    assert slot.closed
    assert slot.latest().relative_time == 3.0


@pytest.mark.asyncio
async def test_next_returns_immediately_when_newer_exists():
    slot = FrameSlot()
    slot.publish(_payload(1.0))
    version, payload = await slot.next(0)
    assert version == 1
    assert payload.relative_time == 1.0


@pytest.mark.asyncio
async def test_next_wakes_on_publish():
    slot = FrameSlot()
    reader = asyncio.create_task(slot.next(0))
    await asyncio.sleep(0)
    assert not reader.done()
    slot.publish(_payload(5.0))
    version, payload = await asyncio.wait_for(reader, timeout=1.0)
    assert (version, payload.relative_time) == (1, 5.0)


@pytest.mark.asyncio
async def test_close_unblocks_waiting_reader():
    slot = FrameSlot()
    reader = asyncio.create_task(slot.next(0))
    await asyncio.sleep(0)
    slot.close()
    assert await asyncio.wait_for(reader, timeout=1.0) is None


@pytest.mark.asyncio
async def test_slow_reader_only_sees_latest():
    slot = FrameSlot()
    for i in range(5):
        slot.publish(_payload(float(i)))
    slot.close()
    seen = [p.relative_time async for p in slot]
    assert seen == [4.0]


@pytest.mark.asyncio
async def test_iteration_follows_writer_until_close():
    slot = FrameSlot()
    seen = []

    async def consume():
        async for p in slot:
            seen.append(p.relative_time)

    task = asyncio.create_task(consume())
    for i in range(3):
        slot.publish(_payload(float(i)))
        await asyncio.sleep(0.01)
    slot.close()
    await asyncio.wait_for(task, timeout=1.0)
    assert seen == [0.0, 1.0, 2.0]
