"""
Session configuration.

A :class:`SessionConfig` is fixed for the lifetime of a
:class:`~face_heartbeat.session.HeartRateSession`.  Values are checked on
construction so that a session never starts in an undefined state.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional


class ConfigurationError(ValueError):
    """Raised when a session cannot be initialised from its configuration."""


@dataclass
class SessionConfig:
    """
    Parameters of one heart-rate session.

    Parameters
    ----------
    width, height:
        Frame size in pixels.
    time_base:
        Seconds per unit of the incoming frame timestamps (``1e-6`` for µs).
    sampling_frequency:
        Rate (Hz) at which heart-rate results are produced.
    rescan_interval:
        Seconds between forced re-runs of face detection.
    face_classifier_path, eye_classifier_path:
        Cascade model files.  *None* selects the models bundled with OpenCV.
    log, log_path:
        Enable the text result log and choose its base path.
    draw:
        Draw the face box, mask and BPM onto each processed frame.
    window_seconds:
        Length of the rolling raw-signal window.
    min_window_seconds:
        History required before the first estimate.
    max_gap_seconds:
        Longest detection or capture gap bridged by interpolation; after a
        longer one the signal history starts over.
    bpm_low, bpm_high:
        Physiological pulse band used by both the filter and the peak search.
    """

    width: int = 640
    height: int = 480
    time_base: float = 1e-6
    sampling_frequency: float = 1.0
    rescan_interval: float = 1.0
    face_classifier_path: Optional[str] = None
    eye_classifier_path: Optional[str] = None
    log: bool = False
    log_path: Optional[str] = None
    draw: bool = False

    # Signal tuning
    window_seconds: float = 10.0
    min_window_seconds: float = 2.0
    bpm_low: float = 42.0
    bpm_high: float = 240.0
    filter_order: int = 4
    detrend_cutoff_hz: float = 0.4
    resample_rate: Optional[float] = None
    channel: int = 1                      # green in BGR and RGB alike
    jump_tolerance: float = 2.5
    max_gap_seconds: float = 1.0
    history_size: int = 5
    resolution_bpm: float = 0.25

    # Tracking tuning
    min_face_fraction: float = 0.4

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(
                f"Frame size must be positive, got {self.width}x{self.height}"
            )
        if self.time_base <= 0:
            raise ConfigurationError(f"time_base must be positive, got {self.time_base}")
        if self.sampling_frequency <= 0:
            raise ConfigurationError(
                f"sampling_frequency must be positive, got {self.sampling_frequency}"
            )
        if self.rescan_interval < 0:
            raise ConfigurationError(
                f"rescan_interval must not be negative, got {self.rescan_interval}"
            )
        if not 0 < self.bpm_low < self.bpm_high:
            raise ConfigurationError(
                f"Invalid pulse band [{self.bpm_low}, {self.bpm_high}] BPM"
            )
        if self.min_window_seconds <= 0 or self.window_seconds < self.min_window_seconds:
            raise ConfigurationError(
                "window_seconds must be >= min_window_seconds > 0, got "
                f"{self.window_seconds} / {self.min_window_seconds}"
            )
        if self.filter_order < 1:
            raise ConfigurationError(f"filter_order must be >= 1, got {self.filter_order}")
        if self.resample_rate is not None and self.resample_rate <= 0:
            raise ConfigurationError(
                f"resample_rate must be positive, got {self.resample_rate}"
            )
        if self.channel not in (0, 1, 2):
            raise ConfigurationError(f"channel must be 0, 1 or 2, got {self.channel}")
        if self.jump_tolerance <= 1.0:
            raise ConfigurationError(
                f"jump_tolerance must be > 1, got {self.jump_tolerance}"
            )
        if self.max_gap_seconds <= 0:
            raise ConfigurationError(
                f"max_gap_seconds must be positive, got {self.max_gap_seconds}"
            )
        if self.history_size < 1:
            raise ConfigurationError(f"history_size must be >= 1, got {self.history_size}")
        if self.log and not self.log_path:
            raise ConfigurationError("log is enabled but no log_path was given")
        for name in ("face_classifier_path", "eye_classifier_path"):
            path = getattr(self, name)
            if path is not None and not Path(path).is_file():
                raise ConfigurationError(f"{name} does not exist: {path}")

    @property
    def sampling_interval(self) -> float:
        """Seconds between sampling ticks."""
        return 1.0 / self.sampling_frequency

    @property
    def min_face_size(self) -> tuple[int, int]:
        side = int(min(self.width, self.height) * self.min_face_fraction)
        return side, side
