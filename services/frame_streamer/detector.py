# services/frame_streamer/detector.py
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Optional

import numpy as np

from common.schemas import DetectionConfig
from services.frame_streamer.frames import Frame

FRAME = "Frame"
CHANGE = "Change"
NO_CHANGE = "No Change"

@dataclass(frozen=True)
class DetectorState:
    """
    Per-session detector memory. previous_samples holds the grid samples of the
    last *emitted* frame; a skipped frame never moves the baseline.
    """
    previous_samples: Optional[np.ndarray] = None
    ticks_since_keyframe: int = 0

@dataclass(frozen=True)
class ChangeAnalysis:
    should_send: bool
    event_tag: str
    state: DetectorState
    changed_ratio: Optional[float] = None

# ---------------- sampling ----------------

def _cell_centers(length: int, grid: int) -> np.ndarray:
    # cell boundaries spread the remainder pixels; one center per cell
    bounds = (np.arange(grid + 1) * length) // grid
    centers = (bounds[:-1] + bounds[1:]) // 2
    return np.clip(centers, 0, length - 1)

def sample_grid(frame: Frame, grid_size: int) -> np.ndarray:
    """One RGB sample per cell (cell center), shape (grid_size * grid_size, channels)."""
    ys = _cell_centers(frame.height, grid_size)
    xs = _cell_centers(frame.width, grid_size)
    samples = frame.pixels[np.ix_(ys, xs)]
    return samples.reshape(grid_size * grid_size, -1).astype(np.int16)

def changed_cells(prev: np.ndarray, cur: np.ndarray, tolerance: int) -> int:
    diff = np.abs(cur - prev)
    return int(np.count_nonzero(np.any(diff > tolerance, axis=1)))

# ---------------- detector ----------------

class ChangeDetector:
    """
    Grid-sampling change gate. analyze() is pure: it never mutates the state it
    is given and returns the state to carry into the next tick.
    """

    def __init__(self, cfg: DetectionConfig, keyframe_interval_ticks: int):
        if keyframe_interval_ticks < 1:
            raise ValueError("keyframe_interval_ticks must be >= 1")
        self.grid_size = cfg.grid_size
        self.change_threshold = cfg.change_threshold
        self.tolerance = cfg.tolerance
        self.keyframe_interval_ticks = keyframe_interval_ticks

    def analyze(self, frame: Frame, state: DetectorState) -> ChangeAnalysis:
        samples = sample_grid(frame, self.grid_size)

        if state.previous_samples is None or state.previous_samples.shape != samples.shape:
            return ChangeAnalysis(True, FRAME, DetectorState(samples, 0))

        total = samples.shape[0]
        ratio = changed_cells(state.previous_samples, samples, self.tolerance) / float(total)

        if ratio >= self.change_threshold:
            return ChangeAnalysis(True, CHANGE, DetectorState(samples, 0), ratio)

        ticks = state.ticks_since_keyframe + 1
        if ticks >= self.keyframe_interval_ticks:
            return ChangeAnalysis(True, FRAME, DetectorState(samples, 0), ratio)

        return ChangeAnalysis(False, NO_CHANGE, replace(state, ticks_since_keyframe=ticks), ratio)

class PassthroughDetector:
    """Used when change detection is disabled: every frame is sent as a keyframe."""

    def analyze(self, frame: Frame, state: DetectorState) -> ChangeAnalysis:
        return ChangeAnalysis(True, FRAME, state)
