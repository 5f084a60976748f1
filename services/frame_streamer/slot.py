# services/frame_streamer/slot.py
from __future__ import annotations
import asyncio, threading
from typing import AsyncIterator, Optional, Set, Tuple

from common.schemas import FramePayload
from services.frame_streamer.errors import SlotClosed

def _wake(fut: asyncio.Future):
    if not fut.done():
        fut.set_result(None)

class FrameSlot:
    """
    Single-item, overwrite-on-write mailbox for one session.

    publish() replaces any unread payload; latest() is idempotent until the next
    publish. Readers that await next() are woken on every publish and on close(),
    so a closed slot never leaves a reader hanging.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._payload: Optional[FramePayload] = None
        self._version = 0
        self._closed = False
        self._waiters: Set[asyncio.Future] = set()

    @property
    def version(self) -> int:
        return self._version

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, payload: FramePayload) -> int:
        with self._lock:
            if self._closed:
                raise SlotClosed("publish on closed slot")
            self._payload = payload
            self._version += 1
            version = self._version
            waiters, self._waiters = self._waiters, set()
        self._notify(waiters)
        return version

    def latest(self) -> Optional[FramePayload]:
        with self._lock:
            return self._payload

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            waiters, self._waiters = self._waiters, set()
        self._notify(waiters)

    async def next(self, after: int = 0) -> Optional[Tuple[int, FramePayload]]:
        """
        Wait for a payload newer than version `after`. Returns (version, payload),
        or None once the slot is closed with nothing newer to hand out.
        """
        loop = asyncio.get_running_loop()
        while True:
            with self._lock:
                if self._version > after and self._payload is not None:
                    return self._version, self._payload
                if self._closed:
                    return None
                fut = loop.create_future()
                self._waiters.add(fut)
            try:
                await fut
            finally:
                with self._lock:
                    self._waiters.discard(fut)

    async def __aiter__(self) -> AsyncIterator[FramePayload]:
        seen = 0
        while True:
            item = await self.next(seen)
            if item is None:
                return
            seen, payload = item
            yield payload

    @staticmethod
    def _notify(waiters: Set[asyncio.Future]):
        for fut in waiters:
            loop = fut.get_loop()
            if loop.is_closed():
                continue
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                _wake(fut)
            else:
                loop.call_soon_threadsafe(_wake, fut)
