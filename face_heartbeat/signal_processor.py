"""
rPPG signal conditioning.

Algorithm
---------
1. Remove the steps recorded as jumps by the accumulator (mask rebuilds,
   dropped frames) by shifting every later sample by the step height.
2. Resample the irregularly timed samples of one colour channel (green is
   most sensitive to haemoglobin absorption changes) onto a uniform grid
   with linear interpolation; gaps are bridged, not treated as signal.
3. Detrend with the smoothness-priors method, then demean and scale to unit
   variance.
4. Apply a zero-phase Butterworth bandpass (default 0.7 – 4.0 Hz =
   42 – 240 BPM).

References
----------
- Tarvainen M.P. et al., "An advanced detrending method with application
  to HRV analysis." IEEE Trans. Biomed. Eng., 2002.
- Verkruysse W. et al., "Remote plethysmographic imaging using ambient light."
  Opt Express, 2008.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import numpy as np
from scipy import sparse
from scipy.signal import butter, sosfiltfilt
from scipy.sparse.linalg import spsolve

logger = logging.getLogger(__name__)


@dataclass
class ConditionedSignal:
    """Band-limited signal on a uniform grid."""

    times: np.ndarray
    values: np.ndarray
    rate: float

    def __len__(self) -> int:
        return len(self.values)

    @property
    def duration(self) -> float:
        return len(self.values) / self.rate


# ---------------------------------------------------------------------------
# Stateless building blocks
# ---------------------------------------------------------------------------

def remove_jumps(signal: np.ndarray, jumps: np.ndarray) -> np.ndarray:
    """Cancel the step at every flagged index by offsetting the tail."""
    out = np.array(signal, dtype=np.float64)
    for i in np.flatnonzero(jumps):
        if i > 0:
            out[i:] -= out[i] - out[i - 1]
    return out


def resample_uniform(times: np.ndarray, signal: np.ndarray, rate: float):
    """
    Linearly interpolate ``signal(times)`` onto ``times[0] + k / rate``.

    Returns ``(grid, values)``.
    """
    n = int(np.floor((times[-1] - times[0]) * rate)) + 1
    grid = times[0] + np.arange(n) / rate
    return grid, np.interp(grid, times, signal)


def smoothness_lambda(rate: float, cutoff_hz: float) -> float:
    """Regularisation giving a trend filter with its -3 dB point near *cutoff_hz*."""
    return (rate / (2.0 * np.pi * cutoff_hz)) ** 2


def detrend_smoothness_priors(signal: np.ndarray, lam: float) -> np.ndarray:
    """
    Subtract the smoothness-priors trend ``(I + lam² D₂ᵀD₂)⁻¹ z`` from *z*.
    """
    n = len(signal)
    if n < 3:
        return signal - np.mean(signal)
    identity = sparse.eye(n, format="csc")
    d2 = sparse.diags([1.0, -2.0, 1.0], [0, 1, 2], shape=(n - 2, n), format="csc")
    trend = spsolve((identity + lam ** 2 * (d2.T @ d2)).tocsc(), signal)
    return signal - trend


@lru_cache(maxsize=16)
def build_bandpass(order: int, low_hz: float, high_hz: float, rate: float) -> np.ndarray:
    """Construct a Butterworth bandpass filter (SOS form)."""
    nyq = rate / 2.0
    low = low_hz / nyq
    high = high_hz / nyq
    # Clamp to valid range
    low = max(1e-4, min(low, 0.999))
    high = max(low + 1e-4, min(high, 0.999))
    return butter(order, [low, high], btype="bandpass", output="sos")


# ---------------------------------------------------------------------------
# Conditioning stage
# ---------------------------------------------------------------------------

class SignalConditioner:
    """
    Turns the raw buffer into a clean, uniformly sampled pulse signal.

    Parameters
    ----------
    min_window_seconds:
        History required before anything is produced.
    bpm_low, bpm_high:
        Pulse band of the bandpass filter.
    filter_order:
        Order of the Butterworth prototype (default 4).
    detrend_cutoff_hz:
        Approximate corner of the smoothness-priors high-pass.
    resample_rate:
        Grid rate in Hz.  *None* follows the median frame rate of the buffer.
    channel:
        Colour channel analysed (default 1 = green).
    """

    def __init__(
        self,
        min_window_seconds: float = 2.0,
        bpm_low: float = 42.0,
        bpm_high: float = 240.0,
        filter_order: int = 4,
        detrend_cutoff_hz: float = 0.4,
        resample_rate: Optional[float] = None,
        channel: int = 1,
    ) -> None:
        self.min_window_seconds = min_window_seconds
        self.bpm_low = bpm_low
        self.bpm_high = bpm_high
        self.filter_order = filter_order
        self.detrend_cutoff_hz = detrend_cutoff_hz
        self.resample_rate = resample_rate
        self.channel = channel

    def grid_rate(self, times: np.ndarray) -> float:
        if self.resample_rate is not None:
            return float(self.resample_rate)
        return float(1.0 / np.median(np.diff(times)))

    def condition(
        self,
        times: np.ndarray,
        values: np.ndarray,
        jumps: Optional[np.ndarray] = None,
    ) -> Optional[ConditionedSignal]:
        """
        Condition the raw samples.

        Parameters
        ----------
        times:
            Sample times in seconds, strictly increasing.
        values:
            ``(N, 3)`` channel means, or a 1-D array of a single channel.
        jumps:
            Optional discontinuity flags parallel to *times*.

        Returns *None* while the samples span less than ``min_window_seconds``.
        """
        times = np.asarray(times, dtype=np.float64)
        if len(times) < 3 or times[-1] - times[0] < self.min_window_seconds:
            return None

        values = np.asarray(values, dtype=np.float64)
        raw = values[:, self.channel] if values.ndim == 2 else values
        if jumps is not None:
            raw = remove_jumps(raw, jumps)

        rate = self.grid_rate(times)
        grid, resampled = resample_uniform(times, raw, rate)
        if len(grid) < 3:
            return None

        detrended = detrend_smoothness_priors(
            resampled, smoothness_lambda(rate, self.detrend_cutoff_hz)
        )
        detrended -= np.mean(detrended)
        std = float(np.std(detrended))
        if std > 0:
            detrended /= std

        sos = build_bandpass(
            self.filter_order, self.bpm_low / 60.0, self.bpm_high / 60.0, round(rate, 3)
        )
        padlen = min(3 * (2 * len(sos) + 1), len(detrended) - 1)
        filtered = sosfiltfilt(sos, detrended, padlen=padlen)
        return ConditionedSignal(times=grid, values=filtered, rate=rate)
