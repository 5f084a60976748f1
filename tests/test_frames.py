"""Tests for frames, schemas and screen helpers."""

import base64
import io
import json
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from common.schemas import (
    BoundingBox, FramePayload, TargetInfo, VisualMetadata, WindowInfo, format_elapsed,
)
from services.frame_streamer import screen
from services.frame_streamer.frames import Frame, JpegEncoder, annotate, fit_width

from conftest import solid


# ---------------------------------------------------------------------------
# Frame / resize / encode
# ---------------------------------------------------------------------------

class TestFrame:

    def test_dimensions(self):
        f = solid(width=320, height=200)
        assert (f.width, f.height) == (320, 200)
        assert f.is_valid

    def test_zero_size_is_invalid(self):
        assert not Frame(np.zeros((0, 10, 3), dtype=np.uint8)).is_valid
        assert not Frame(np.zeros((10, 10), dtype=np.uint8)).is_valid

    def test_fit_width_downscales_keeping_aspect(self):
        img = Image.new("RGB", (1920, 1080))
        out = fit_width(img, 640)
        assert out.size == (640, 360)

    def test_fit_width_leaves_narrow_images(self):
        img = Image.new("RGB", (300, 200))
        assert fit_width(img, 640) is img

    def test_jpeg_encoder_is_deterministic(self):
        enc = JpegEncoder()
        f = solid(width=64, height=48)
        a, b = enc.encode(f, 65), enc.encode(f, 65)
        assert a == b
        assert Image.open(io.BytesIO(a)).size == (64, 48)

    def test_lower_quality_is_smaller(self):
        rng = np.random.default_rng(7)
        f = Frame(rng.integers(0, 256, size=(120, 160, 3), dtype=np.uint8))
        enc = JpegEncoder()
        assert len(enc.encode(f, 20)) < len(enc.encode(f, 95))

    def test_annotate_draws_on_a_copy(self):
        f = solid((0, 0, 0), width=200, height=100)
        out = annotate(f, 3725.4, "Change")
        assert out.pixels.shape == f.pixels.shape
        assert out.pixels.any()
        assert not f.pixels.any()


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("seconds,expected", [
    (0.0, "00:00:00.0"),
    (0.29, "00:00:00.2"),
    (61.5, "00:01:01.5"),
    (3725.4, "01:02:05.4"),
    (-1.0, "00:00:00.0"),
])
def test_format_elapsed(seconds, expected):
    assert format_elapsed(seconds) == expected


def test_payload_event_is_json_safe():
    p = FramePayload(
        session_id="s1",
        relative_time=1.25,
        timestamp=format_elapsed(1.25),
        system_time="2026-01-01T00:00:01.250000+00:00",
        window=WindowInfo(title="w", bbox=BoundingBox(left=1, top=2, width=3, height=4)),
        visual=VisualMetadata(has_change=True, event_tag="Change"),
        width=3,
        height=4,
        image=b"\xff\xd8abc",
    )
    event = json.loads(json.dumps(p.to_event()))
    assert event["event"] == "frame.streamed"
    assert event["visual"] == {"has_change": True, "event_tag": "Change"}
    assert event["window"]["bbox"]["width"] == 3
    assert base64.b64decode(event["image_b64"]) == b"\xff\xd8abc"
    assert "image" not in event


def test_payload_is_immutable():
    p = FramePayload(
        session_id="s1", relative_time=0.0, timestamp="00:00:00.0", system_time="x",
        window=WindowInfo(title="w", bbox=BoundingBox(left=0, top=0, width=1, height=1)),
        visual=VisualMetadata(has_change=True, event_tag="Frame"),
        width=1, height=1, image=b"",
    )
    with pytest.raises(Exception):
        p.relative_time = 5.0


# ---------------------------------------------------------------------------
# Screen collaborators
# ---------------------------------------------------------------------------

def _patch_mss(monkeypatch, sct):
    handle = MagicMock()
    handle.__enter__.return_value = sct
    monkeypatch.setattr(screen.mss, "mss", lambda: handle)
    return handle


class TestScreenLocator:

    def test_region_ref(self):
        t = screen.ScreenTargetLocator().resolve("region:10,20,300,200")
        assert t.bbox == BoundingBox(left=10, top=20, width=300, height=200)
        assert t.title == "Region 10,20,300,200"

    @pytest.mark.parametrize("ref", ["region:1,2,3", "region:a,b,c,d", "region:0,0,4,4", "window:foo", ""])
    def test_unresolvable_refs(self, ref):
        assert screen.ScreenTargetLocator().resolve(ref) is None

    def test_monitor_ref(self, monkeypatch):
        fake = MagicMock()
        fake.monitors = [
            {"left": 0, "top": 0, "width": 3840, "height": 1080},
            {"left": 0, "top": 0, "width": 1920, "height": 1080},
        ]
        handle = _patch_mss(monkeypatch, fake)
        loc = screen.ScreenTargetLocator()
        assert loc.resolve("monitor:1").bbox.width == 1920
        assert loc.resolve("monitor:5") is None
        assert handle.__exit__.call_count == 2

    def test_source_grabs_and_fits(self, monkeypatch):
        shot = MagicMock()
        shot.size = (1280, 720)
        shot.rgb = bytes(1280 * 720 * 3)
        fake = MagicMock()
        fake.grab.return_value = shot
        handle = _patch_mss(monkeypatch, fake)

        target = TargetInfo(ref="monitor:1", title="m", bbox=BoundingBox(left=0, top=0, width=1280, height=720))
        frame = screen.ScreenFrameSource().capture(target, 640)
        assert (frame.width, frame.height) == (640, 360)
        fake.grab.assert_called_once_with({"left": 0, "top": 0, "width": 1280, "height": 720})
        handle.__exit__.assert_called_once()
