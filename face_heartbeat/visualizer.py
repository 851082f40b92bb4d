"""
Real-time overlay visualiser.

Draws the following elements onto each video frame:
  • The tracked face box and the eye boxes.
  • The outline of the sampling mask.
  • Mean / min / max BPM readout.
  • An optional spectrum panel of the current analysis window.
  • Optional frame-rate counter.

Drawing happens after the frame has been sampled, so it never influences
the signal.
"""

from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np

from face_heartbeat.types import Result, TrackingState


# ---------------------------------------------------------------------------
# Colour palette (BGR)
# ---------------------------------------------------------------------------
_GREEN  = (0, 220,  80)
_RED    = (0,  50, 220)
_YELLOW = (0, 210, 210)
_WHITE  = (255, 255, 255)
_BLACK  = (0, 0, 0)
_CYAN   = (220, 200,  0)
_PURPLE = (150, 100, 180)
_DARK   = (30, 30, 30)


class Visualizer:
    """
    Draws the heart-rate UI onto OpenCV frames in-place.

    Parameters
    ----------
    resolution:
        (width, height) of the video frame.
    show_fps:
        Whether to overlay computed FPS in the top-right corner.
    show_spectrum:
        Whether to draw the spectrum panel when one is supplied.
    """

    def __init__(
        self,
        resolution: Tuple[int, int] = (640, 480),
        show_fps: bool = True,
        show_spectrum: bool = True,
    ) -> None:
        self.w, self.h = resolution
        self.show_fps = show_fps
        self.show_spectrum = show_spectrum

        self._fps_tick = cv2.getTickCount()
        self._fps_display: float = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def draw(
        self,
        frame: np.ndarray,
        state: TrackingState,
        mask: Optional[np.ndarray] = None,
        result: Optional[Result] = None,
        spectrum: Optional[Tuple[np.ndarray, np.ndarray]] = None,
        peak_bpm: Optional[float] = None,
    ) -> np.ndarray:
        """
        Annotate *frame* in-place and return it.

        Parameters
        ----------
        frame:
            BGR frame from the camera.
        state:
            Current tracking state.
        mask:
            Sampling mask; its outline is drawn when not empty.
        result:
            Latest emitted result, if any.
        spectrum:
            Optional ``(bpm_axis, power)`` of the current window.
        peak_bpm:
            Spectral peak of the latest window, highlighted in the panel;
            defaults to the reported mean.
        """
        self._update_fps()

        if state.valid and state.box is not None:
            box = state.box
            cv2.rectangle(frame, box.tl, box.br, _GREEN, 2)
            for eye in (state.left_eye, state.right_eye):
                if eye is not None:
                    cv2.rectangle(frame, eye.tl, eye.br, _YELLOW, 1)

        if mask is not None and mask.any():
            contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
            cv2.drawContours(frame, contours, -1, _CYAN, 1, cv2.LINE_AA)

        self._draw_bpm(frame, result, state.valid)

        if self.show_spectrum and spectrum is not None and len(spectrum[0]) > 0:
            peak = peak_bpm
            if peak is None:
                peak = result.mean_bpm if result is not None else 0.0
            self._draw_spectrum(frame, spectrum[0], spectrum[1], peak)

        if self.show_fps:
            cv2.putText(
                frame,
                f"FPS {self._fps_display:.1f}",
                (self.w - 100, 20),
                cv2.FONT_HERSHEY_SIMPLEX, 0.45, _WHITE, 1, cv2.LINE_AA,
            )
        return frame

    # ------------------------------------------------------------------
    # Private drawing helpers
    # ------------------------------------------------------------------

    def _draw_bpm(self, frame: np.ndarray, result: Optional[Result], face_valid: bool) -> None:
        if result is not None and face_valid:
            text = f"{result.mean_bpm:.0f} BPM"
            cv2.putText(
                frame, text,
                (16, 52), cv2.FONT_HERSHEY_SIMPLEX, 1.6, _BLACK, 5, cv2.LINE_AA,
            )
            cv2.putText(
                frame, text,
                (16, 52), cv2.FONT_HERSHEY_SIMPLEX, 1.6, _GREEN, 3, cv2.LINE_AA,
            )
            cv2.putText(
                frame, f"min {result.min_bpm:.0f}  max {result.max_bpm:.0f}",
                (16, 78), cv2.FONT_HERSHEY_SIMPLEX, 0.5, _WHITE, 1, cv2.LINE_AA,
            )
        else:
            status = "Warming up..." if face_valid else "No face detected"
            cv2.putText(
                frame, status,
                (16, 52), cv2.FONT_HERSHEY_SIMPLEX, 0.7, _YELLOW if face_valid else _RED, 2,
                cv2.LINE_AA,
            )

    def _draw_spectrum(
        self,
        frame: np.ndarray,
        bpm_axis: np.ndarray,
        power: np.ndarray,
        peak_bpm: float,
    ) -> None:
        """Draw the power spectrum as a bar graph in the bottom-right corner."""
        panel_w, panel_h = 160, 100
        panel_x = self.w - panel_w - 10
        panel_y = self.h - panel_h - 10

        cv2.rectangle(frame, (panel_x, panel_y), (panel_x + panel_w, panel_y + panel_h), _DARK, -1)

        norm_power = power / power.max() if power.max() > 0 else power
        num_bars = min(len(bpm_axis), 70)
        step = max(1, len(bpm_axis) // num_bars)
        bar_width = max(1, (panel_w - 20) // num_bars)
        y_bottom = panel_y + panel_h - 10

        for i in range(num_bars):
            idx = i * step
            if idx >= len(bpm_axis):
                break
            bar_h = int(norm_power[idx] * (panel_h - 30))
            x = panel_x + 10 + i * bar_width
            color = _YELLOW if abs(bpm_axis[idx] - peak_bpm) < 2.0 else _PURPLE
            cv2.rectangle(frame, (x, y_bottom - bar_h), (x + bar_width - 1, y_bottom), color, -1)

        cv2.putText(
            frame, "Spectrum",
            (panel_x + 10, panel_y + 14), cv2.FONT_HERSHEY_SIMPLEX, 0.35, _WHITE, 1, cv2.LINE_AA,
        )

    def _update_fps(self) -> None:
        """Compute rolling FPS."""
        now = cv2.getTickCount()
        elapsed = (now - self._fps_tick) / cv2.getTickFrequency()
        if elapsed > 0:
            self._fps_display = 1.0 / elapsed
        self._fps_tick = now
