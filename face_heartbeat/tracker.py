"""
Face tracker.

Face detection is expensive and noisy, so it is not run on every frame.
The tracker keeps the last accepted face box and only rescans when the
state is invalid or ``rescan_interval`` seconds have passed since the last
scan.  Among several candidates it prefers the one closest to the previous
box (suppresses jitter between two detections of the same face); without a
previous box it takes the largest one.

Eyes are searched in the upper half of the face at the same cadence as the
face rescans.  Not finding them leaves the face valid; the mask simply
loses its eye cut-outs.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np

from face_heartbeat.detector import Detector
from face_heartbeat.types import Box, TrackingState

logger = logging.getLogger(__name__)


def select_nearest(candidates: Sequence[Box], previous: Box) -> Box:
    """Candidate whose centre and size are closest to *previous*."""
    ref = previous.as_vector()
    distances = [float(np.linalg.norm(c.as_vector() - ref)) for c in candidates]
    return candidates[int(np.argmin(distances))]


def select_largest(candidates: Sequence[Box]) -> Box:
    """Candidate with the largest area; the first one wins ties."""
    return max(candidates, key=lambda b: b.area)


class FaceTracker:
    """
    Maintains the believed face box and decides when to rescan.

    Parameters
    ----------
    face_detector:
        Detector run on the full grayscale frame.
    eye_detector:
        Optional detector run on the upper half of the face box.
    rescan_interval:
        Seconds between forced face detections while the state is valid.
    """

    def __init__(
        self,
        face_detector: Detector,
        eye_detector: Optional[Detector] = None,
        rescan_interval: float = 1.0,
    ) -> None:
        self.face_detector = face_detector
        self.eye_detector = eye_detector
        self.rescan_interval = rescan_interval
        self.state = TrackingState()

    @property
    def valid(self) -> bool:
        return self.state.valid

    def rescan_due(self, now: float) -> bool:
        if not self.state.valid or self.state.last_scan_time is None:
            return True
        return now - self.state.last_scan_time >= self.rescan_interval

    def update(self, gray: np.ndarray, now: float) -> bool:
        """
        Advance the tracker to the frame at time *now* (seconds).

        Returns *True* when the face box (or an eye box) changed, i.e. when
        the mask has to be rebuilt.
        """
        if not self.rescan_due(now):
            return False

        previous = self.state
        self.state = self._scan(gray, now, previous)
        changed = (
            self.state.valid != previous.valid
            or self.state.box != previous.box
            or self.state.left_eye != previous.left_eye
            or self.state.right_eye != previous.right_eye
        )
        if self.state.valid != previous.valid:
            logger.info(
                "Face tracking %s at t=%.3fs",
                "acquired" if self.state.valid else "lost",
                now,
            )
        return changed

    def reset(self) -> None:
        self.state = TrackingState()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _scan(self, gray: np.ndarray, now: float, previous: TrackingState) -> TrackingState:
        candidates = self.face_detector.detect(gray)
        height, width = gray.shape[:2]
        candidates = [c for c in (b.clip(width, height) for b in candidates) if c is not None]

        if not candidates:
            return TrackingState(valid=False, last_scan_time=now)

        if previous.valid and previous.box is not None:
            box = select_nearest(candidates, previous.box)
        else:
            box = select_largest(candidates)

        left_eye, right_eye = self._detect_eyes(gray, box)
        return TrackingState(
            valid=True,
            box=box,
            left_eye=left_eye,
            right_eye=right_eye,
            last_scan_time=now,
        )

    def _detect_eyes(self, gray: np.ndarray, face: Box):
        if self.eye_detector is None:
            return None, None

        region = Box(face.x, face.y, face.width, face.height // 2)
        patch = gray[region.y:region.y + region.height, region.x:region.x + region.width]
        if patch.size == 0:
            return None, None

        eyes: List[Box] = []
        for eye in self.eye_detector.detect(patch):
            clipped = eye.offset(region.x, region.y).intersect(region)
            if clipped is not None:
                eyes.append(clipped)

        centre_x = face.center[0]
        left = [e for e in eyes if e.center[0] < centre_x]
        right = [e for e in eyes if e.center[0] >= centre_x]
        left_eye = select_largest(left) if left else None
        right_eye = select_largest(right) if right else None
        if left_eye is None and right_eye is None:
            logger.debug("No eyes found inside face box %s", face)
        return left_eye, right_eye
