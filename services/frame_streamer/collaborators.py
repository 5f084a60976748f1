# services/frame_streamer/collaborators.py
from __future__ import annotations
import asyncio, inspect
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from common.bus import EventBus
from common.logging import get_logger
from common.schemas import FramePayload, TargetInfo
from services.frame_streamer.frames import Frame

log = get_logger("frame_streamer")

# ---------------- contracts ----------------

@runtime_checkable
class FrameSource(Protocol):
    def capture(self, target: TargetInfo, max_width: int) -> Union[Optional[Frame], Awaitable[Optional[Frame]]]: ...

@runtime_checkable
class TargetLocator(Protocol):
    def resolve(self, target_ref: str) -> Union[Optional[TargetInfo], Awaitable[Optional[TargetInfo]]]: ...

@runtime_checkable
class Encoder(Protocol):
    mime_type: str

    def encode(self, frame: Frame, quality: int) -> bytes: ...

@runtime_checkable
class DeliverySink(Protocol):
    async def deliver(self, payload: FramePayload) -> None: ...

async def call_maybe_async(fn: Callable[..., Any], *args) -> Any:
    """Await coroutine collaborators; push blocking ones onto a worker thread."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        return await result
    return result

# ---------------- sinks ----------------

class CallbackSink:
    """
    Wraps a plain or async callable taking a FramePayload.

    Plain callables run on the sink's own single worker thread, never on the
    event loop, so a blocking callback costs delivery time only. A call that
    is still queued when the scheduler's delivery timeout fires is dropped.
    """

    def __init__(self, fn: Callable[[FramePayload], Any]):
        self._fn = fn
        self._executor: Optional[ThreadPoolExecutor] = None

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="callback-sink")
        return self._executor

    async def deliver(self, payload: FramePayload) -> None:
        if inspect.iscoroutinefunction(self._fn):
            await self._fn(payload)
            return
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(self._ensure_executor(), self._fn, payload)
        if inspect.isawaitable(result):
            await result

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

class RedisStreamSink:
    """Publishes each payload as a JSON event on a Redis stream."""

    def __init__(self, bus: EventBus, stream: str):
        self._bus = bus
        self._stream = stream

    async def deliver(self, payload: FramePayload) -> None:
        msg_id = await self._bus.xadd_json(self._stream, payload.to_event())
        log.debug(f"[deliver] session={payload.session_id} stream={self._stream} id={msg_id} tag={payload.visual.event_tag}")
