"""
Spectral heart-rate estimator.

The power spectrum of the conditioned window is computed with a Hann
window and zero padding, the strongest bin inside the pulse band is taken
as the pulse frequency, and a parabolic fit through its neighbours refines
it below the bin spacing.  Per-tick estimates go into a short history whose
mean / min / max are what the session reports.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class SpectralEstimator:
    """
    Parameters
    ----------
    bpm_low, bpm_high:
        Search band in BPM.
    history_size:
        Number of per-tick estimates aggregated into the reported statistics.
    resolution_bpm:
        Bin spacing targeted by zero padding.
    """

    def __init__(
        self,
        bpm_low: float = 42.0,
        bpm_high: float = 240.0,
        history_size: int = 5,
        resolution_bpm: float = 0.25,
    ) -> None:
        self.bpm_low = bpm_low
        self.bpm_high = bpm_high
        self.resolution_bpm = resolution_bpm
        self._history: Deque[float] = deque(maxlen=history_size)
        self._last_bpm: float = 0.0

    # ------------------------------------------------------------------
    # Spectrum
    # ------------------------------------------------------------------

    def spectrum(self, signal: np.ndarray, rate: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Return ``(bpm_axis, power)`` restricted to the pulse band.
        """
        n = len(signal)
        if n < 2:
            return np.array([]), np.array([])

        nfft = max(n, int(np.ceil(rate * 60.0 / self.resolution_bpm)))
        windowed = (signal - np.mean(signal)) * np.hanning(n)
        power = np.abs(np.fft.rfft(windowed, n=nfft)) ** 2
        bpm_axis = np.fft.rfftfreq(nfft, d=1.0 / rate) * 60.0

        band_mask = (bpm_axis >= self.bpm_low) & (bpm_axis <= self.bpm_high)
        return bpm_axis[band_mask], power[band_mask]

    def estimate(self, signal: np.ndarray, rate: float) -> Optional[float]:
        """
        Dominant pulse rate of *signal* in BPM, or *None* if the band holds
        no energy.
        """
        return self.peak(*self.spectrum(signal, rate))

    def peak(self, bpm_axis: np.ndarray, power: np.ndarray) -> Optional[float]:
        """Refined peak of an in-band spectrum as returned by :meth:`spectrum`."""
        if len(power) == 0 or not np.any(power > 0):
            return None

        peak_idx = int(np.argmax(power))
        bpm = float(bpm_axis[peak_idx])

        # Parabolic interpolation for sub-bin frequency resolution
        if 0 < peak_idx < len(power) - 1:
            alpha = power[peak_idx - 1]
            beta = power[peak_idx]
            gamma = power[peak_idx + 1]
            denom = alpha - 2 * beta + gamma
            if denom != 0:
                p = 0.5 * (alpha - gamma) / denom
                step = bpm_axis[1] - bpm_axis[0]
                bpm = float(bpm_axis[peak_idx] + p * step)

        bpm = float(np.clip(bpm, self.bpm_low, self.bpm_high))
        self._last_bpm = bpm
        return bpm

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def push(self, bpm: float) -> None:
        self._history.append(float(bpm))

    def statistics(self) -> Optional[Tuple[float, float, float]]:
        """``(mean, min, max)`` over the history, *None* when it is empty."""
        if not self._history:
            return None
        values = np.fromiter(self._history, dtype=np.float64)
        return float(values.mean()), float(values.min()), float(values.max())

    @property
    def history(self) -> Tuple[float, ...]:
        return tuple(self._history)

    @property
    def last_bpm(self) -> float:
        return self._last_bpm

    def reset(self) -> None:
        self._history.clear()
        self._last_bpm = 0.0
