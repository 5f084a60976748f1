# services/frame_streamer/session.py
from __future__ import annotations
import asyncio, time, uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from common.schemas import StreamRequest, TargetInfo
from services.frame_streamer.slot import FrameSlot

class SessionState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"

class Clock:
    """Monotonic time for scheduling, UTC wall time for payloads."""

    def now(self) -> float:
        return time.monotonic()

    def wall(self) -> datetime:
        return datetime.now(timezone.utc)

    async def wait(self, timeout: float, cancelled: asyncio.Event) -> bool:
        """Sleep up to `timeout` seconds. Returns True if cancelled meanwhile."""
        if cancelled.is_set():
            return True
        try:
            await asyncio.wait_for(cancelled.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return cancelled.is_set()

@dataclass
class Session:
    request: StreamRequest
    start_time: datetime                   # wall clock, fixed at creation
    start_mono: float                      # monotonic twin of start_time
    keyframe_interval_ticks: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    slot: FrameSlot = field(default_factory=FrameSlot)
    state: SessionState = SessionState.STARTING
    next_deadline: float = 0.0             # monotonic seconds
    ticks: int = 0
    emitted: int = 0
    target: Optional[TargetInfo] = None
    end_reason: Optional[str] = None
    _cancelled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @classmethod
    def create(cls, request: StreamRequest, clock: Clock) -> "Session":
        start_mono = clock.now()
        return cls(
            request=request,
            start_time=clock.wall(),
            start_mono=start_mono,
            keyframe_interval_ticks=request.detection.keyframe_ticks(request.frame_interval_s),
            next_deadline=start_mono,
        )

    @property
    def target_ref(self) -> str:
        return self.request.target

    @property
    def frame_interval_s(self) -> float:
        return self.request.frame_interval_s

    @property
    def cancelled(self) -> asyncio.Event:
        return self._cancelled

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        # one-way: there is no way to clear it
        self._cancelled.set()

    def advance_deadline(self) -> float:
        self.next_deadline += self.frame_interval_s
        return self.next_deadline

    def deadline_for(self, tick: int) -> float:
        return self.start_mono + tick * self.frame_interval_s

    def relative_time(self, now_mono: float) -> float:
        return now_mono - self.start_mono
