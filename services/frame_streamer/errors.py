# services/frame_streamer/errors.py
from __future__ import annotations


class StreamerError(Exception):
    """Base class for frame_streamer errors."""


class InvalidConfiguration(StreamerError, ValueError):
    pass


class SessionNotFound(StreamerError, KeyError):
    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"session not found: {self.session_id}"


class TargetLost(StreamerError):
    """The target can no longer be resolved; ends the session."""


class TransientCaptureFailure(StreamerError):
    """Acquisition failed for one tick; the tick is skipped."""


class EncodeFailure(StreamerError):
    pass


class SlotClosed(StreamerError):
    pass
