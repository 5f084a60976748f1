# services/frame_streamer/frames.py
from __future__ import annotations
import io
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from common.schemas import format_elapsed
from services.frame_streamer.errors import EncodeFailure

# ---------------- frame ----------------

@dataclass
class Frame:
    """Decoded RGB image owned by a single scheduler tick."""
    pixels: np.ndarray  # HxWx3 uint8

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 2 else 0

    @property
    def is_valid(self) -> bool:
        return self.pixels.ndim == 3 and self.width > 0 and self.height > 0

    @classmethod
    def from_image(cls, img: Image.Image) -> "Frame":
        return cls(np.asarray(img.convert("RGB"), dtype=np.uint8))

    def to_image(self) -> Image.Image:
        return Image.fromarray(np.ascontiguousarray(self.pixels))

# ---------------- resize ----------------

def fit_width(img: Image.Image, max_width: int) -> Image.Image:
    """Downscale to max_width keeping aspect ratio (bilinear)."""
    if img.width <= max_width:
        return img
    new_h = max(1, int(img.height * (max_width / img.width)))
    return img.resize((max_width, new_h), Image.BILINEAR)

# ---------------- overlay ----------------

_PAD = 4
_FONT_PX = 14

def _font():
    try:
        return ImageFont.load_default(size=_FONT_PX)
    except TypeError:  # Pillow < 10.1 has no size argument
        return ImageFont.load_default()

def annotate(frame: Frame, elapsed_s: float, event_tag: str | None) -> Frame:
    """Burn the elapsed time and event tag into the top-left corner."""
    img = frame.to_image().copy()
    draw = ImageDraw.Draw(img, "RGBA")
    font = _font()

    stamp = format_elapsed(elapsed_s)
    x0, y0, x1, y1 = draw.textbbox((_PAD, _PAD), stamp, font=font)
    draw.rectangle((x0 - _PAD, y0 - _PAD, x1 + _PAD, y1 + _PAD), fill=(0, 0, 0, 180))
    draw.text((_PAD, _PAD), stamp, font=font, fill=(255, 255, 255))

    if event_tag:
        y = _FONT_PX + _PAD * 3
        tag = f"[{event_tag}]"
        x0, y0, x1, y1 = draw.textbbox((_PAD, y), tag, font=font)
        draw.rectangle((x0 - _PAD, y0 - _PAD, x1 + _PAD, y1 + _PAD), fill=(200, 50, 0, 200))
        draw.text((_PAD, y), tag, font=font, fill=(255, 255, 0))

    return Frame.from_image(img)

# ---------------- encode ----------------

class JpegEncoder:
    mime_type = "image/jpeg"

    def encode(self, frame: Frame, quality: int) -> bytes:
        buf = io.BytesIO()
        try:
            frame.to_image().save(buf, format="JPEG", quality=int(quality))
        except (OSError, ValueError) as e:
            raise EncodeFailure(f"jpeg encode failed: {e}") from e
        return buf.getvalue()
