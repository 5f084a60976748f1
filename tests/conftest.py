"""
Shared fixtures for the frame_streamer test suite.

Provides a simulated clock (waits advance time instantly), scripted target
locators / frame sources, and a recording sink so the scheduler and registry
can be exercised without a display, a Redis server or real-time sleeps.
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_FILE", "0")

from common.schemas import BoundingBox, FramePayload, TargetInfo
from services.frame_streamer.frames import Frame
from services.frame_streamer.session import Clock


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------

def solid(color=(10, 20, 30), width=160, height=160) -> Frame:
    px = np.empty((height, width, 3), dtype=np.uint8)
    px[:, :] = color
    return Frame(px)


def with_changed_cells(base: Frame, n: int, grid: int = 16, color=(250, 250, 250)) -> Frame:
    """Copy of `base` with the first n grid cells (row-major) repainted."""
    px = base.pixels.copy()
    h, w = px.shape[:2]
    ch, cw = h // grid, w // grid
    for i in range(n):
        r, c = divmod(i, grid)
        px[r * ch:(r + 1) * ch, c * cw:(c + 1) * cw] = color
    return Frame(px)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock(Clock):
    """Simulated time: wait() jumps the clock forward instead of sleeping."""

    def __init__(self, start: float = 1000.0):
        self.start = start
        self.t = start
        self.waits: List[float] = []

    def now(self) -> float:
        return self.t

    def wall(self) -> datetime:
        return datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self.t - self.start)

    def advance(self, seconds: float):
        self.t += seconds

    async def wait(self, timeout: float, cancelled: asyncio.Event) -> bool:
        self.waits.append(timeout)
        self.t += timeout
        await asyncio.sleep(0)
        return cancelled.is_set()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

TARGET_BBOX = BoundingBox(left=0, top=0, width=160, height=160)


class ScriptedLocator:
    """Resolves the target `valid_for` times, then reports it lost."""

    def __init__(self, valid_for: Optional[int] = None, title: str = "Test Window"):
        self.valid_for = valid_for
        self.title = title
        self.calls = 0

    def resolve(self, target_ref: str) -> Optional[TargetInfo]:
        self.calls += 1
        if self.valid_for is not None and self.calls > self.valid_for:
            return None
        return TargetInfo(ref=target_ref, title=self.title, bbox=TARGET_BBOX)


class ScriptedSource:
    """
    Returns frames from `frame_fn(tick)`; records the clock time of every
    capture call, and can simulate processing cost on the fake clock.
    """

    def __init__(self, clock: Optional[FakeClock] = None,
                 frame_fn: Callable[[int], Optional[Frame]] = None,
                 cost_fn: Callable[[int], float] = None):
        self.clock = clock
        self.frame_fn = frame_fn or (lambda i: solid())
        self.cost_fn = cost_fn or (lambda i: 0.0)
        self.calls = 0
        self.times: List[float] = []
        self.max_widths: List[int] = []

    def capture(self, target: TargetInfo, max_width: int) -> Optional[Frame]:
        i = self.calls
        self.calls += 1
        self.max_widths.append(max_width)
        if self.clock is not None:
            self.times.append(self.clock.now())
            self.clock.advance(self.cost_fn(i))
        frame = self.frame_fn(i)
        if isinstance(frame, Exception):
            raise frame
        return frame


class RecordingSink:
    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.payloads: List[FramePayload] = []
        self.fail = fail
        self.delay = delay

    async def deliver(self, payload: FramePayload) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.payloads.append(payload)
        if self.fail:
            raise RuntimeError("sink exploded")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()
