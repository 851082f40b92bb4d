"""
Region-of-interest mask.

The sampling region is an ellipse inscribed in a shrunken face box, which
keeps hair and background out of the colour average, with the eye boxes
(slightly enlarged) cut out because blinks and specular highlights add
energy that is not related to the pulse.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from face_heartbeat.types import Box, TrackingState

logger = logging.getLogger(__name__)

_WHITE = 255
_BLACK = 0


def build_mask(
    shape: Tuple[int, int],
    box: Optional[Box],
    left_eye: Optional[Box] = None,
    right_eye: Optional[Box] = None,
    width_ratio: float = 0.8,
    height_ratio: float = 0.9,
    eye_margin: float = 0.2,
) -> np.ndarray:
    """
    Return a ``uint8`` mask of *shape* ``(height, width)``; 255 marks pixels
    that are sampled.  An absent *box* gives an all-zero mask.
    """
    mask = np.zeros(shape[:2], dtype=np.uint8)
    if box is None or box.width <= 0 or box.height <= 0:
        return mask

    cx, cy = box.center
    axes = (
        max(1, int(round(box.width * width_ratio / 2.0))),
        max(1, int(round(box.height * height_ratio / 2.0))),
    )
    cv2.ellipse(mask, (int(round(cx)), int(round(cy))), axes, 0, 0, 360, _WHITE, cv2.FILLED)

    for eye in (left_eye, right_eye):
        if eye is None:
            continue
        dx = int(round(eye.width * eye_margin / 2.0))
        dy = int(round(eye.height * eye_margin / 2.0))
        cv2.rectangle(
            mask,
            (eye.x - dx, eye.y - dy),
            (eye.x + eye.width + dx, eye.y + eye.height + dy),
            _BLACK,
            cv2.FILLED,
        )
    return mask


class MaskBuilder:
    """
    Caches the mask between frames and rebuilds it only when the tracking
    state it was built from changes.
    """

    def __init__(self, width: int, height: int) -> None:
        self.shape = (height, width)
        self._mask = np.zeros(self.shape, dtype=np.uint8)
        self._inputs: Optional[tuple] = None
        self.update_flag = True
        self.rebuild_count = 0

    @property
    def mask(self) -> np.ndarray:
        return self._mask

    @property
    def empty(self) -> bool:
        return not self._mask.any()

    def invalidate(self) -> None:
        self.update_flag = True

    def update(self, state: TrackingState) -> bool:
        """
        Bring the mask in line with *state*.  Returns *True* if it was rebuilt.
        """
        inputs = (state.box, state.left_eye, state.right_eye) if state.valid else None
        if inputs != self._inputs:
            self.update_flag = True
        if not self.update_flag:
            return False

        if inputs is None:
            self._mask = np.zeros(self.shape, dtype=np.uint8)
        else:
            self._mask = build_mask(self.shape, *inputs)
            if not self._mask.any():
                logger.warning("Face box %s produced an empty mask.", state.box)
        self._inputs = inputs
        self.update_flag = False
        self.rebuild_count += 1
        return True
