"""
Rolling buffer of raw colour samples.

Each sample is the per-channel mean of the masked face pixels together with
its capture time in seconds.  A parallel flag marks samples that follow a
discontinuity: a mask rebuild (the region moved, so the mean jumps) or a gap
much longer than the usual frame interval (dropped frames).  The
conditioning stage removes the step at those points instead of mistaking it
for a pulse.

A gap longer than ``max_gap_seconds`` (a lost face, a stalled camera) is not
bridged: the buffer restarts from the sample after it, so the span always
measures real history.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class SignalAccumulator:
    """
    Time-bounded raw signal buffer.

    Parameters
    ----------
    window_seconds:
        Samples older than this (relative to the newest one) are evicted.
    jump_tolerance:
        A gap longer than ``jump_tolerance`` times the median inter-sample
        interval flags a discontinuity.
    max_gap_seconds:
        Longest gap that is bridged; after a longer one the buffer restarts.
    """

    def __init__(
        self,
        window_seconds: float = 10.0,
        jump_tolerance: float = 2.5,
        max_gap_seconds: float = 1.0,
    ) -> None:
        self.window_seconds = window_seconds
        self.jump_tolerance = jump_tolerance
        self.max_gap_seconds = max_gap_seconds
        self.restarts = 0
        self._times: Deque[float] = deque()
        self._values: Deque[np.ndarray] = deque()
        self._jumps: Deque[bool] = deque()

    def __len__(self) -> int:
        return len(self._times)

    @property
    def span(self) -> float:
        """Seconds covered by the buffer."""
        if len(self._times) < 2:
            return 0.0
        return self._times[-1] - self._times[0]

    def expected_interval(self) -> float:
        """Median spacing between buffered samples (0 with fewer than 2)."""
        if len(self._times) < 2:
            return 0.0
        return float(np.median(np.diff(np.fromiter(self._times, dtype=np.float64))))

    def push(self, time: float, means: Sequence[float], discontinuous: bool = False) -> bool:
        """
        Append one sample.  Returns the jump flag recorded for it.

        After a gap longer than ``max_gap_seconds`` the older samples are
        dropped and the new one starts a fresh buffer (``restarts`` counts
        these).
        """
        if self._times and time <= self._times[-1]:
            raise ValueError(
                f"Sample time {time:.6f}s is not after the previous one ({self._times[-1]:.6f}s)"
            )
        if self._times and time - self._times[-1] > self.max_gap_seconds:
            logger.info(
                "Signal gap of %.2fs, restarting the buffer", time - self._times[-1]
            )
            self.reset()
            self.restarts += 1

        jump = False
        if self._times:
            jump = discontinuous
            expected = self.expected_interval()
            gap = time - self._times[-1]
            if expected > 0 and gap > self.jump_tolerance * expected:
                logger.debug("Signal gap of %.3fs (expected %.3fs)", gap, expected)
                jump = True

        self._times.append(float(time))
        self._values.append(np.asarray(means, dtype=np.float64)[:3].copy())
        self._jumps.append(jump)
        self._evict()
        return jump

    def times(self) -> np.ndarray:
        return np.fromiter(self._times, dtype=np.float64, count=len(self._times))

    def values(self) -> np.ndarray:
        """``(N, 3)`` array of channel means."""
        if not self._values:
            return np.empty((0, 3), dtype=np.float64)
        return np.vstack(self._values)

    def jumps(self) -> np.ndarray:
        return np.fromiter(self._jumps, dtype=bool, count=len(self._jumps))

    def reset(self) -> None:
        self._times.clear()
        self._values.clear()
        self._jumps.clear()

    def _evict(self) -> None:
        newest = self._times[-1]
        while self._times and newest - self._times[0] > self.window_seconds:
            self._times.popleft()
            self._values.popleft()
            self._jumps.popleft()
        # The oldest sample has no predecessor left.
        if self._jumps:
            self._jumps[0] = False
