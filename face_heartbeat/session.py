"""
Heart-rate session controller.

One :class:`HeartRateSession` owns the whole per-stream state: tracker,
mask, raw buffer, conditioner, estimator and the sampling clock.  Each call
to :meth:`HeartRateSession.process_frame` runs the pipeline to completion::

    tracker update → mask rebuild (if dirty) → raw sample
        → [sampling tick] conditioning → spectrum → Result → listener

Frames must be fed in timestamp order from a single thread.  Results are
handed to the listener synchronously, on the frame-processing path.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Callable, Optional, Protocol, Tuple, Union

import cv2
import numpy as np

from face_heartbeat.config import SessionConfig
from face_heartbeat.detector import (
    EYE_CASCADE,
    FACE_CASCADE,
    CascadeDetector,
    Detector,
    default_cascade_path,
)
from face_heartbeat.estimator import SpectralEstimator
from face_heartbeat.mask import MaskBuilder
from face_heartbeat.result_log import ResultLog
from face_heartbeat.signal_buffer import SignalAccumulator
from face_heartbeat.signal_processor import ConditionedSignal, SignalConditioner
from face_heartbeat.tracker import FaceTracker
from face_heartbeat.types import Frame, Result, TrackingState
from face_heartbeat.visualizer import Visualizer

logger = logging.getLogger(__name__)

_NO_SPECTRUM = (np.array([]), np.array([]))


class ResultListener(Protocol):
    def on_result(self, result: Result) -> None:
        ...


Listener = Union[ResultListener, Callable[[Result], None]]


class HeartRateSession:
    """
    Parameters
    ----------
    config:
        Session configuration, fixed for the session lifetime.
    listener:
        Receives every emitted :class:`Result`; either an object with an
        ``on_result`` method or a plain callable.  *None* discards results
        (they are still returned by :meth:`process_frame`).
    face_detector, eye_detector:
        Detection backends.  When *face_detector* is omitted both detectors
        are loaded as cascades from the configured (or OpenCV's bundled)
        model files; when it is given, *eye_detector* is used as passed and
        *None* disables eye exclusion.
    """

    def __init__(
        self,
        config: SessionConfig,
        listener: Optional[Listener] = None,
        face_detector: Optional[Detector] = None,
        eye_detector: Optional[Detector] = None,
    ) -> None:
        self.config = config

        if face_detector is None:
            face_detector = CascadeDetector(
                config.face_classifier_path or default_cascade_path(FACE_CASCADE),
                min_size=config.min_face_size,
            )
            eye_detector = CascadeDetector(
                config.eye_classifier_path or default_cascade_path(EYE_CASCADE),
            )
        self._detectors = [d for d in (face_detector, eye_detector) if d is not None]

        if listener is None:
            self._emit: Optional[Callable[[Result], None]] = None
        else:
            self._emit = getattr(listener, "on_result", listener)
            if not callable(self._emit):
                raise TypeError("listener must be callable or provide on_result()")

        self.tracker = FaceTracker(face_detector, eye_detector, config.rescan_interval)
        self.mask_builder = MaskBuilder(config.width, config.height)
        self.accumulator = SignalAccumulator(
            config.window_seconds, config.jump_tolerance, config.max_gap_seconds
        )
        self.conditioner = SignalConditioner(
            min_window_seconds=config.min_window_seconds,
            bpm_low=config.bpm_low,
            bpm_high=config.bpm_high,
            filter_order=config.filter_order,
            detrend_cutoff_hz=config.detrend_cutoff_hz,
            resample_rate=config.resample_rate,
            channel=config.channel,
        )
        self.estimator = SpectralEstimator(
            bpm_low=config.bpm_low,
            bpm_high=config.bpm_high,
            history_size=config.history_size,
            resolution_bpm=config.resolution_bpm,
        )

        self._log: Optional[ResultLog] = ResultLog(config.log_path) if config.log else None
        self._visualizer = None
        if config.draw:
            self._visualizer = Visualizer(resolution=(config.width, config.height))

        self._lock = threading.Lock()
        self._closed = False
        self._last_timestamp: Optional[int] = None
        self._next_tick: Optional[float] = None
        self._last_result: Optional[Result] = None
        self._conditioned: Optional[ConditionedSignal] = None
        self._spectrum: Tuple[np.ndarray, np.ndarray] = _NO_SPECTRUM

        logger.info(
            "Session started – %dx%d sampling=%.2fHz rescan=%.2fs",
            config.width, config.height, config.sampling_frequency, config.rescan_interval,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release detectors and log files.  Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for detector in self._detectors:
                close = getattr(detector, "close", None)
                if close is not None:
                    close()
            if self._log is not None:
                self._log.close()
            logger.info("Session closed.")

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "HeartRateSession":
        return self

    def __exit__(self, *_) -> None:
        self.close()

    def reset(self) -> None:
        """Forget the face and all signal history."""
        with self._lock:
            self.tracker.reset()
            self.mask_builder.invalidate()
            self.accumulator.reset()
            self.estimator.reset()
            self._next_tick = None
            self._last_result = None
            self._conditioned = None
            self._spectrum = _NO_SPECTRUM

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    def process(self, frame: Frame) -> Optional[Result]:
        return self.process_frame(frame.image, frame.gray, frame.timestamp)

    def process_frame(
        self,
        frame_bgr: np.ndarray,
        frame_gray: np.ndarray,
        timestamp: int,
    ) -> Optional[Result]:
        """
        Run the pipeline on one frame.

        Returns the :class:`Result` emitted on this frame, or *None* when no
        sampling tick was due or no estimate could be made.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Session is closed.")
            expected = (self.config.height, self.config.width)
            if frame_bgr.shape[:2] != expected or frame_gray.shape[:2] != expected:
                raise ValueError(
                    f"Frame size {frame_bgr.shape[1]}x{frame_bgr.shape[0]} does not match "
                    f"the configured {self.config.width}x{self.config.height}"
                )
            if self._last_timestamp is not None and timestamp <= self._last_timestamp:
                raise ValueError(
                    f"Frame timestamp {timestamp} is not after the previous one "
                    f"({self._last_timestamp})"
                )
            self._last_timestamp = timestamp
            now = timestamp * self.config.time_base

            box_changed = self.tracker.update(frame_gray, now)
            rebuilt = self.mask_builder.update(self.tracker.state)
            if not self.tracker.valid:
                self._spectrum = _NO_SPECTRUM

            means: Optional[Tuple[float, float, float]] = None
            jump = False
            if self.tracker.valid and not self.mask_builder.empty:
                means = tuple(cv2.mean(frame_bgr, mask=self.mask_builder.mask)[:3])
                restarts = self.accumulator.restarts
                jump = self.accumulator.push(now, means, discontinuous=rebuilt)
                if self.accumulator.restarts != restarts:
                    # Estimates from before the gap describe another window.
                    self.estimator.reset()
                    self._spectrum = _NO_SPECTRUM

            result = None
            if self._tick_due(now):
                result = self._estimate(timestamp)

            if self._log is not None:
                self._log.write_frame(timestamp, self.tracker.valid, box_changed, jump, means)
                if result is not None:
                    self._log.write_result(result)
            if self._visualizer is not None:
                self._visualizer.draw(
                    frame_bgr,
                    self.tracker.state,
                    self.mask_builder.mask,
                    self._last_result,
                    self._spectrum,
                    peak_bpm=self.estimator.last_bpm or None,
                )

        if result is not None and self._emit is not None:
            self._emit(result)
        return result

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackingState:
        return self.tracker.state

    @property
    def mask(self) -> np.ndarray:
        return self.mask_builder.mask

    @property
    def last_result(self) -> Optional[Result]:
        return self._last_result

    @property
    def conditioned(self) -> Optional[ConditionedSignal]:
        return self._conditioned

    @property
    def last_spectrum(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        ``(bpm_axis, power)`` of the latest analysed window; empty while the
        face is lost.
        """
        return self._spectrum

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _tick_due(self, now: float) -> bool:
        """Sampling clock anchored at the first frame; missed ticks are skipped."""
        interval = self.config.sampling_interval
        if self._next_tick is None:
            self._next_tick = now + interval
            return True
        if now < self._next_tick:
            return False
        missed = math.floor((now - self._next_tick) / interval)
        self._next_tick += (missed + 1) * interval
        return True

    def _estimate(self, timestamp: int) -> Optional[Result]:
        if not self.tracker.valid:
            return None

        self._conditioned = self.conditioner.condition(
            self.accumulator.times(), self.accumulator.values(), self.accumulator.jumps()
        )
        if self._conditioned is None:
            logger.debug(
                "Waiting for signal history (%.1fs of %.1fs)",
                self.accumulator.span, self.config.min_window_seconds,
            )
            return None

        self._spectrum = self.estimator.spectrum(
            self._conditioned.values, self._conditioned.rate
        )
        bpm = self.estimator.peak(*self._spectrum)
        if bpm is None:
            return None
        self.estimator.push(bpm)
        mean_bpm, min_bpm, max_bpm = self.estimator.statistics()
        self._last_result = Result(timestamp, mean_bpm, min_bpm, max_bpm)
        logger.debug("t=%d bpm=%.1f mean=%.1f", timestamp, bpm, mean_bpm)
        return self._last_result
