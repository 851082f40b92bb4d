"""
Frame source.

Wraps OpenCV ``VideoCapture`` (a webcam index or a video file) and yields
:class:`~face_heartbeat.types.Frame` values: BGR image, grayscale image and
a capture timestamp in microseconds since the source was opened.  Live
cameras are timestamped with the monotonic clock; video files use their
own presentation time so that offline runs see the recorded frame rate.
"""

from __future__ import annotations

import logging
import time
from typing import Generator, Tuple, Union

import cv2

from face_heartbeat.types import Frame

logger = logging.getLogger(__name__)


class Camera:
    """
    Parameters
    ----------
    source:
        OpenCV camera index, or the path of a video file.
    resolution:
        Requested (width, height) for live cameras.
    fps:
        Requested frame rate for live cameras.
    flip_horizontal:
        Mirror the image left-to-right (useful for selfie-style use).
    """

    def __init__(
        self,
        source: Union[int, str] = 0,
        resolution: Tuple[int, int] = (640, 480),
        fps: int = 30,
        flip_horizontal: bool = False,
    ) -> None:
        self.source = source
        self.resolution = resolution
        self.fps = fps
        self.flip_horizontal = flip_horizontal

        self._cap: "cv2.VideoCapture | None" = None
        self._start_ns = 0
        self._last_timestamp = -1

    @property
    def is_file(self) -> bool:
        return isinstance(self.source, str)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open the capture device or file."""
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            raise RuntimeError(f"Cannot open video source {self.source!r}")
        if not self.is_file:
            w, h = self.resolution
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
            cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._cap = cap
        self._start_ns = time.monotonic_ns()
        self._last_timestamp = -1
        logger.info(
            "Video source opened – source=%r size=%dx%d",
            self.source,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

    def close(self) -> None:
        """Release the capture device."""
        if self._cap is None:
            return
        self._cap.release()
        self._cap = None
        logger.info("Video source closed.")

    def __enter__(self) -> "Camera":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    @property
    def frame_size(self) -> Tuple[int, int]:
        """Actual (width, height) delivered by the open source."""
        if self._cap is None:
            return self.resolution
        return (
            int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> Frame | None:
        """Capture a single frame, or *None* on failure / end of file."""
        if self._cap is None:
            raise RuntimeError("Camera is not open.  Call open() first.")

        ok, image = self._cap.read()
        if not ok:
            return None
        if self.flip_horizontal:
            image = cv2.flip(image, 1)

        if self.is_file:
            timestamp = int(self._cap.get(cv2.CAP_PROP_POS_MSEC) * 1000)
        else:
            timestamp = (time.monotonic_ns() - self._start_ns) // 1000
        # Some backends repeat a timestamp; keep the sequence strictly increasing.
        timestamp = max(timestamp, self._last_timestamp + 1)
        self._last_timestamp = timestamp

        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        gray = cv2.equalizeHist(gray)
        return Frame(image=image, gray=gray, timestamp=timestamp)

    def frames(self) -> Generator[Frame, None, None]:
        """
        Yield frames until the source ends, is closed, or keeps failing.

        Usage::

            with Camera() as cam:
                for frame in cam.frames():
                    session.process(frame)
        """
        null_streak = 0
        while self._cap is not None:
            frame = self.read_frame()
            if frame is None:
                if self.is_file:
                    logger.info("End of video file.")
                    break
                null_streak += 1
                if null_streak >= 10:
                    logger.error("Camera returned 10 consecutive empty frames – aborting.")
                    break
                continue
            null_streak = 0
            yield frame
