"""
Value types shared by the pipeline stages.

Boxes use OpenCV's ``(x, y, width, height)`` convention in frame pixel
coordinates.  Timestamps on :class:`Frame` and :class:`Result` are in the
session's native units; multiply by ``SessionConfig.time_base`` to get
seconds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class Box:
    """Axis-aligned rectangle in frame coordinates."""

    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_rect(cls, rect) -> "Box":
        """Build a box from any ``(x, y, w, h)`` sequence (e.g. a numpy row)."""
        x, y, w, h = (int(v) for v in rect)
        return cls(x, y, w, h)

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    @property
    def tl(self) -> Tuple[int, int]:
        return self.x, self.y

    @property
    def br(self) -> Tuple[int, int]:
        return self.x + self.width, self.y + self.height

    def offset(self, dx: int, dy: int) -> "Box":
        return Box(self.x + dx, self.y + dy, self.width, self.height)

    def intersect(self, other: "Box") -> Optional["Box"]:
        """Overlap of two boxes, or *None* when they do not overlap."""
        x0, y0 = max(self.x, other.x), max(self.y, other.y)
        x1 = min(self.x + self.width, other.x + other.width)
        y1 = min(self.y + self.height, other.y + other.height)
        if x1 <= x0 or y1 <= y0:
            return None
        return Box(x0, y0, x1 - x0, y1 - y0)

    def clip(self, width: int, height: int) -> Optional["Box"]:
        """Intersect with the frame ``[0, width) × [0, height)``."""
        return self.intersect(Box(0, 0, width, height))

    def as_vector(self) -> np.ndarray:
        """``(cx, cy, w, h)`` used for nearest-box matching."""
        cx, cy = self.center
        return np.array([cx, cy, self.width, self.height], dtype=np.float64)


@dataclass
class Frame:
    """A captured frame with its grayscale derivative and capture time."""

    image: np.ndarray
    gray: np.ndarray
    timestamp: int


@dataclass
class TrackingState:
    """
    What the tracker currently believes about the face.

    ``box`` and the eye boxes are only meaningful while ``valid`` is true;
    the tracker clears them to *None* on every transition to invalid.
    """

    valid: bool = False
    box: Optional[Box] = None
    left_eye: Optional[Box] = None
    right_eye: Optional[Box] = None
    last_scan_time: Optional[float] = None


@dataclass(frozen=True)
class Result:
    """Heart-rate statistics emitted once per sampling tick."""

    timestamp: int
    mean_bpm: float
    min_bpm: float
    max_bpm: float
