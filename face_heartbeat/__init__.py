"""
Face Heartbeat: rPPG heart-rate estimation from a live video of a face.
The face is tracked with cascade detectors, the mean skin colour inside an
elliptical mask is accumulated over time, and the pulse frequency is read
from the spectrum of the detrended, bandpassed green-channel signal.
"""

from face_heartbeat.config import ConfigurationError, SessionConfig
from face_heartbeat.session import HeartRateSession
from face_heartbeat.types import Box, Frame, Result, TrackingState

__version__ = "0.1.0"
__author__ = "face_heartbeat"

__all__ = [
    "Box",
    "ConfigurationError",
    "Frame",
    "HeartRateSession",
    "Result",
    "SessionConfig",
    "TrackingState",
]
