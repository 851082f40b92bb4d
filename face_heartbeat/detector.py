"""
Object detectors used by the face tracker.

The tracker only relies on the :class:`Detector` protocol:
``detect(image) -> list[Box]``.  :class:`CascadeDetector` satisfies it with
an OpenCV Haar/LBP cascade, which is what the command-line tool uses for
both the face and the eyes.  Any other backend (a DNN, a fake in the test
suite) can be dropped in as long as it returns boxes in the coordinates of
the image it was given.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Protocol, Tuple, runtime_checkable

import cv2
import numpy as np

from face_heartbeat.config import ConfigurationError
from face_heartbeat.types import Box

logger = logging.getLogger(__name__)

FACE_CASCADE = "haarcascade_frontalface_alt.xml"
EYE_CASCADE = "haarcascade_eye.xml"


@runtime_checkable
class Detector(Protocol):
    def detect(self, image: np.ndarray) -> List[Box]:
        ...


def default_cascade_path(name: str) -> str:
    """Return the path of a cascade model shipped with opencv-python."""
    return str(Path(cv2.data.haarcascades) / name)


class CascadeDetector:
    """
    Cascade-classifier detector.

    Parameters
    ----------
    path:
        Cascade XML model file.
    scale_factor:
        Image pyramid step passed to ``detectMultiScale`` (default 1.1).
    min_neighbors:
        Neighbouring detections required to keep a candidate (default 2).
    min_size:
        Smallest object size in pixels, ``(w, h)``.
    """

    def __init__(
        self,
        path: str,
        scale_factor: float = 1.1,
        min_neighbors: int = 2,
        min_size: Tuple[int, int] = (0, 0),
    ) -> None:
        self.path = str(path)
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size

        if not Path(self.path).is_file():
            raise ConfigurationError(f"Cascade model not found: {self.path}")
        classifier = cv2.CascadeClassifier()
        try:
            loaded = classifier.load(self.path)
        except cv2.error as exc:
            raise ConfigurationError(f"Malformed cascade model {self.path}: {exc}") from exc
        if not loaded or classifier.empty():
            raise ConfigurationError(f"Cannot load cascade model: {self.path}")
        self._classifier: Optional[cv2.CascadeClassifier] = classifier
        logger.debug("Loaded cascade %s", self.path)

    def detect(self, image: np.ndarray) -> List[Box]:
        """
        Return all candidate boxes found in *image* (grayscale or BGR).
        """
        if self._classifier is None:
            raise RuntimeError("Detector is closed.")
        if image.size == 0:
            return []
        if image.ndim == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        rects = self._classifier.detectMultiScale(
            image,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            flags=cv2.CASCADE_SCALE_IMAGE,
            minSize=self.min_size,
        )
        return [Box.from_rect(r) for r in rects]

    def close(self) -> None:
        """Release the classifier.  Safe to call more than once."""
        if self._classifier is not None:
            self._classifier = None
            logger.debug("Released cascade %s", self.path)

    @property
    def closed(self) -> bool:
        return self._classifier is None
