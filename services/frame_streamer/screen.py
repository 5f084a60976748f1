# services/frame_streamer/screen.py
from __future__ import annotations
from typing import Optional

import mss
from PIL import Image

from common.logging import get_logger
from common.schemas import BoundingBox, TargetInfo
from services.frame_streamer.frames import Frame, fit_width

log = get_logger("frame_streamer")

MIN_SIDE = 16

def _parse_region(arg: str) -> Optional[BoundingBox]:
    try:
        left, top, width, height = (int(p) for p in arg.split(","))
    except ValueError:
        return None
    if width < MIN_SIDE or height < MIN_SIDE:
        return None
    return BoundingBox(left=left, top=top, width=width, height=height)

class ScreenTargetLocator:
    """
    Resolves target refs of the form:
      monitor:<n>                      mss monitor index (0 = all monitors)
      region:<left>,<top>,<w>,<h>      fixed screen rectangle
    Anything else, or a monitor that no longer exists, resolves to None.
    """

    def resolve(self, target_ref: str) -> Optional[TargetInfo]:
        kind, _, arg = target_ref.partition(":")
        if kind == "monitor":
            try:
                idx = int(arg or "1")
            except ValueError:
                return None
            with mss.mss() as sct:
                monitors = list(sct.monitors)
            if idx < 0 or idx >= len(monitors):
                return None
            m = monitors[idx]
            bbox = BoundingBox(left=m["left"], top=m["top"], width=m["width"], height=m["height"])
            return TargetInfo(ref=target_ref, title=f"Monitor {idx}", bbox=bbox)
        if kind == "region":
            bbox = _parse_region(arg)
            if bbox is None:
                return None
            return TargetInfo(ref=target_ref, title=f"Region {arg}", bbox=bbox)
        log.debug(f"Unsupported target ref: {target_ref}")
        return None

class ScreenFrameSource:
    """Grabs the target's bounding box and fits it to max_width."""

    def capture(self, target: TargetInfo, max_width: int) -> Optional[Frame]:
        if target.bbox.width < MIN_SIDE or target.bbox.height < MIN_SIDE:
            return None
        with mss.mss() as sct:
            shot = sct.grab(target.bbox.as_monitor())
        img = Image.frombytes("RGB", shot.size, shot.rgb)
        return Frame.from_image(fit_width(img, max_width))
