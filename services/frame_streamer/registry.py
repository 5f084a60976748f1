# services/frame_streamer/registry.py
from __future__ import annotations
import asyncio, threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from pydantic import ValidationError

from common.logging import get_logger
from common.schemas import DetectionConfig, FramePayload, StreamRequest
from services.frame_streamer.collaborators import DeliverySink, Encoder, FrameSource, TargetLocator
from services.frame_streamer.errors import InvalidConfiguration, SessionNotFound
from services.frame_streamer.frames import JpegEncoder
from services.frame_streamer.scheduler import CaptureScheduler
from services.frame_streamer.session import Clock, Session, SessionState

log = get_logger("frame_streamer")

@dataclass(frozen=True)
class SessionInfo:
    id: str
    target: str
    fps: float
    quality: int
    max_width: int
    state: SessionState
    start_time: datetime
    ticks: int
    emitted: int

@dataclass
class _Entry:
    session: Session
    scheduler: CaptureScheduler
    task: Optional[asyncio.Task] = None

def build_request(
    target_ref: str,
    fps: float = 10,
    quality: int = 65,
    max_width: int = 640,
    detection: Union[DetectionConfig, Mapping[str, Any], None] = None,
    overlay: bool = False,
) -> StreamRequest:
    """Validate start parameters; any violation surfaces as InvalidConfiguration."""
    try:
        if isinstance(detection, Mapping):
            detection = DetectionConfig(**detection)
        return StreamRequest(
            target=target_ref,
            fps=fps,
            quality=quality,
            max_width=max_width,
            overlay=overlay,
            detection=detection or DetectionConfig(),
        )
    except ValidationError as e:
        raise InvalidConfiguration(str(e)) from e

class SessionRegistry:
    """
    Owns the live capture sessions.

    The table lock only guards insert/remove/lookup; capture, encoding and
    delivery all run outside it. stop() returns True for every id this registry
    ever issued (live or already ended), so repeated stops look the same; ids it
    never issued raise SessionNotFound. get_latest() of an ended session is None.
    """

    def __init__(
        self,
        source: FrameSource,
        locator: TargetLocator,
        encoder: Optional[Encoder] = None,
        *,
        clock: Optional[Clock] = None,
        drift_slack_s: float = 0.5,
        deliver_timeout_s: float = 5.0,
    ):
        self._source = source
        self._locator = locator
        self._encoder = encoder or JpegEncoder()
        self._clock = clock or Clock()
        self._drift_slack_s = drift_slack_s
        self._deliver_timeout_s = deliver_timeout_s
        self._lock = threading.Lock()
        self._live: Dict[str, _Entry] = {}
        # ended sessions; the task is kept until its final delivery has drained
        self._retired: Dict[str, Optional[asyncio.Task]] = {}

    # ---------------- start ----------------

    async def start(
        self,
        target_ref: str,
        fps: float = 10,
        quality: int = 65,
        max_width: int = 640,
        detection: Union[DetectionConfig, Mapping[str, Any], None] = None,
        *,
        overlay: bool = False,
        sink: Optional[DeliverySink] = None,
    ) -> str:
        request = build_request(target_ref, fps, quality, max_width, detection, overlay)
        return await self.start_request(request, sink=sink)

    async def start_request(self, request: StreamRequest, sink: Optional[DeliverySink] = None) -> str:
        session = Session.create(request, self._clock)
        scheduler = CaptureScheduler(
            session,
            self._source,
            self._locator,
            self._encoder,
            sink,
            clock=self._clock,
            drift_slack_s=self._drift_slack_s,
            deliver_timeout_s=self._deliver_timeout_s,
            on_finish=self._retire,
        )
        entry = _Entry(session, scheduler)
        with self._lock:
            self._live[session.id] = entry
        entry.task = asyncio.create_task(self._run(entry), name=f"capture:{session.id}")

        log.info(
            f"[session:start] session={session.id} target={request.target} fps={request.fps} "
            f"quality={request.quality} max_width={request.max_width} "
            f"detection={'on' if request.detection.enabled else 'off'} "
            f"keyframe_ticks={session.keyframe_interval_ticks}"
        )
        return session.id

    def _retire(self, session: Session):
        with self._lock:
            entry = self._live.pop(session.id, None)
            if entry is not None:
                self._retired[session.id] = entry.task

    async def _run(self, entry: _Entry):
        sid = entry.session.id
        try:
            await entry.scheduler.run()
        finally:
            self._retire(entry.session)
            with self._lock:
                self._retired[sid] = None

    # ---------------- stop ----------------

    async def stop(self, session_id: str) -> bool:
        with self._lock:
            entry = self._live.get(session_id)
            if entry is None:
                if session_id not in self._retired:
                    raise SessionNotFound(session_id)
                # loop already ended; drop whatever is still being delivered
                task = self._retired[session_id]
                if task is not None:
                    task.cancel()
            else:
                if entry.session.state is not SessionState.STOPPED:
                    entry.session.state = SessionState.STOPPING
                entry.session.cancel()
                task = entry.task

        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)
        if entry is not None:
            log.info(f"[session:stop] session={session_id}")
        return True

    async def stop_all(self) -> int:
        with self._lock:
            ids = list(self._live)
            draining = [sid for sid, task in self._retired.items() if task is not None]
        await asyncio.gather(*(self.stop(sid) for sid in ids + draining), return_exceptions=True)
        if ids:
            log.info(f"[session:stop] stopped {len(ids)} sessions")
        return len(ids)

    async def join(self, session_id: str, timeout: Optional[float] = None):
        """Wait for a live session's loop to end on its own (e.g. target lost)."""
        with self._lock:
            entry = self._live.get(session_id)
            if entry is not None:
                task = entry.task
            elif session_id in self._retired:
                task = self._retired[session_id]
            else:
                raise SessionNotFound(session_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    # ---------------- lookup ----------------

    def get_latest(self, session_id: str) -> Optional[FramePayload]:
        with self._lock:
            entry = self._live.get(session_id)
            if entry is None:
                if session_id in self._retired:
                    return None
                raise SessionNotFound(session_id)
            slot = entry.session.slot
        return slot.latest()

    def list_active(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._live)

    def get_session(self, session_id: str) -> Optional[SessionInfo]:
        with self._lock:
            entry = self._live.get(session_id)
            if entry is None:
                if session_id in self._retired:
                    return None
                raise SessionNotFound(session_id)
            s = entry.session
            return SessionInfo(
                id=s.id,
                target=s.target_ref,
                fps=s.request.fps,
                quality=s.request.quality,
                max_width=s.request.max_width,
                state=s.state,
                start_time=s.start_time,
                ticks=s.ticks,
                emitted=s.emitted,
            )

    def slot(self, session_id: str):
        """The live session's FrameSlot, for readers that want to await new payloads."""
        with self._lock:
            entry = self._live.get(session_id)
            if entry is None:
                raise SessionNotFound(session_id)
            return entry.session.slot
