from __future__ import annotations
import base64, math
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

EventTag = Literal["Frame", "Change", "No Change"]

# ---------------- target / payload ----------------

class BoundingBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    left: int
    top: int
    width: int
    height: int

    def as_monitor(self) -> dict:
        return {"left": self.left, "top": self.top, "width": self.width, "height": self.height}

class TargetInfo(BaseModel):
    """Snapshot of a resolved target at capture time."""
    model_config = ConfigDict(frozen=True)

    ref: str
    title: str
    bbox: BoundingBox
    is_valid: bool = True

class WindowInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    bbox: BoundingBox
    is_active: bool = True

class VisualMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_change: bool
    event_tag: EventTag

def format_elapsed(seconds: float) -> str:
    # hh:mm:ss.f, tenths truncated
    tenths = int(max(seconds, 0.0) * 10)
    hours, rem = divmod(tenths, 36000)
    minutes, rem = divmod(rem, 600)
    secs, frac = divmod(rem, 10)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{frac}"

class FramePayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: str = "frame.streamed"
    session_id: str
    relative_time: float          # seconds since session start
    timestamp: str                # relative_time as hh:mm:ss.f
    system_time: str              # ISO8601 UTC
    window: WindowInfo
    visual: VisualMetadata
    width: int
    height: int
    mime_type: str = "image/jpeg"
    image: bytes = Field(repr=False)

    def to_event(self) -> dict:
        """JSON-safe dict for the bus; image bytes are base64 encoded."""
        data = self.model_dump(exclude={"image"})
        data["image_b64"] = base64.b64encode(self.image).decode("ascii")
        return data

# ---------------- configuration ----------------

class DetectionConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    change_threshold: float = Field(0.08, gt=0.0, le=1.0)
    grid_size: int = Field(16, ge=1)
    tolerance: int = Field(16, ge=0, le=255)
    keyframe_interval_s: float = Field(1.0, gt=0.0)
    keyframe_interval_ticks: Optional[int] = Field(None, ge=1)

    def keyframe_ticks(self, frame_interval_s: float) -> int:
        if self.keyframe_interval_ticks is not None:
            return self.keyframe_interval_ticks
        # half-up, so 0.25s at 10 fps is 3 ticks
        return max(1, math.floor(self.keyframe_interval_s / frame_interval_s + 0.5))

class StreamRequest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    target: str = Field(min_length=1)
    fps: float = Field(10, gt=0, le=120)
    quality: int = Field(65, ge=1, le=100)
    max_width: int = Field(640, ge=16)
    overlay: bool = False
    detection: DetectionConfig = Field(default_factory=DetectionConfig)

    @property
    def frame_interval_s(self) -> float:
        return 1.0 / self.fps

    @model_validator(mode="after")
    def _target_not_blank(self) -> "StreamRequest":
        if not self.target.strip():
            raise ValueError("target must not be blank")
        return self
