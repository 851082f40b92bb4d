"""
End-to-end tests for HeartRateSession with synthetic faces.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest

from face_heartbeat.config import ConfigurationError, SessionConfig
from face_heartbeat.session import HeartRateSession
from face_heartbeat.types import Box, Frame, Result

from fakes import FakeDetector, face_frame, pulse

FACE = Box(40, 20, 60, 80)
FRAME_US = 33_333                 # 30 Hz


def _config(**overrides) -> SessionConfig:
    params = dict(
        width=160,
        height=120,
        time_base=1e-6,
        sampling_frequency=1.0,
        rescan_interval=1.0,
    )
    params.update(overrides)
    return SessionConfig(**params)


def _run(session: HeartRateSession, detector: FakeDetector, seconds: float, bpm: float = 70.0,
         face_visible=lambda t: True, face_detected=None):
    """Feed 30 Hz frames; *face_detected* defaults to *face_visible*."""
    face_detected = face_detected or face_visible
    signal = pulse(bpm)
    results = []
    for k in range(int(seconds * 30)):
        t = k * FRAME_US * 1e-6
        visible = face_visible(t)
        detector.boxes = [FACE] if face_detected(t) else []
        frame = face_frame(signal(t)) if visible else np.full((120, 160, 3), 40, np.uint8)
        result = session.process_frame(frame, frame[:, :, 1].copy(), k * FRAME_US)
        if result is not None:
            results.append(result)
    return results


class Recorder:
    def __init__(self) -> None:
        self.results = []

    def on_result(self, result: Result) -> None:
        self.results.append(result)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestHeartRateSession:

    def test_seventy_bpm_end_to_end(self):
        detector = FakeDetector()
        listener = Recorder()
        session = HeartRateSession(_config(), listener, face_detector=detector)
        results = _run(session, detector, seconds=10.0, bpm=70.0)

        assert listener.results == results
        # Ticks at 0, ~1, ..., ~9 s; the first two fall inside the warm-up.
        assert len(results) >= 8
        for result in results[-3:]:
            assert 68.0 <= result.mean_bpm <= 72.0
            assert result.min_bpm <= result.mean_bpm <= result.max_bpm

    def test_results_one_per_tick_after_warm_up(self):
        detector = FakeDetector()
        session = HeartRateSession(_config(min_window_seconds=3.0), None, face_detector=detector)
        results = _run(session, detector, seconds=10.0)
        # Ticks at 0, ~1, ..., ~9 s; the first three lack history.
        assert len(results) == 7
        times = [r.timestamp * 1e-6 for r in results]
        assert np.allclose(np.diff(times), 1.0, atol=0.05)

    def test_no_face_no_results(self):
        detector = FakeDetector()
        session = HeartRateSession(_config(), Recorder(), face_detector=detector)
        results = _run(session, detector, seconds=8.0, face_visible=lambda t: False)
        assert results == []
        assert session.state.valid is False
        assert not session.mask.any()
        assert len(session.accumulator) == 0

    def test_face_lost_stops_results_and_clears_mask(self):
        detector = FakeDetector()
        session = HeartRateSession(_config(), None, face_detector=detector)
        results = _run(session, detector, seconds=12.0, face_visible=lambda t: t < 7.0)
        assert results
        assert all(r.timestamp * 1e-6 < 8.1 for r in results)
        assert session.state.valid is False
        assert not session.mask.any()

    def test_short_detection_dropout_is_bridged(self):
        detector = FakeDetector()
        session = HeartRateSession(_config(), None, face_detector=detector)
        results = _run(
            session, detector, seconds=10.0,
            face_detected=lambda t: not (6.0 <= t < 6.5),
        )
        assert session.state.valid is True
        assert session.accumulator.restarts == 0
        assert session.accumulator.jumps().any()
        # No tick is lost to the gap: warm-up ends at ~2 s, results follow each second.
        assert len(results) == 8
        for r in results[-2:]:
            assert r.mean_bpm == pytest.approx(70.0, abs=4.0)

    def test_long_dropout_waits_for_fresh_history(self):
        detector = FakeDetector()
        session = HeartRateSession(_config(history_size=1), None, face_detector=detector)
        results = _run(
            session, detector, seconds=15.0,
            face_visible=lambda t: not (3.0 <= t < 9.6),
        )
        times = [r.timestamp * 1e-6 for r in results]
        assert session.accumulator.restarts == 1
        assert session.accumulator.times()[0] >= 9.6

        # Face back at ~9.63 s: nothing until 2 s of new samples exist.
        assert not [t for t in times if 3.5 < t < 11.6]
        after = [r for r, t in zip(results, times) if t > 11.6]
        assert after
        assert after[0].timestamp * 1e-6 == pytest.approx(12.03, abs=0.05)
        for r in after:
            assert r.mean_bpm == pytest.approx(70.0, abs=5.0)

    def test_history_restarts_after_long_dropout(self):
        detector = FakeDetector()
        session = HeartRateSession(_config(), None, face_detector=detector)
        results = _run(
            session, detector, seconds=13.0,
            face_visible=lambda t: not (5.0 <= t < 9.6),
        )
        first_after = next(r for r in results if r.timestamp * 1e-6 > 9.6)
        # Only the estimate of the fresh window contributes.
        assert first_after.min_bpm == first_after.max_bpm == first_after.mean_bpm

    def test_first_tick_is_immediate_and_mask_built_once(self):
        detector = FakeDetector()
        session = HeartRateSession(_config(), None, face_detector=detector)
        _run(session, detector, seconds=3.0)
        assert session.mask_builder.rebuild_count == 1
        # One detection per rescan interval
        assert detector.calls == 3

    def test_callable_listener(self):
        received = []
        detector = FakeDetector()
        session = HeartRateSession(_config(), received.append, face_detector=detector)
        results = _run(session, detector, seconds=7.0)
        assert received == results
        assert received

    def test_listener_must_be_callable(self):
        with pytest.raises(TypeError):
            HeartRateSession(_config(), object(), face_detector=FakeDetector())

    def test_views_after_estimate(self):
        detector = FakeDetector()
        session = HeartRateSession(_config(), None, face_detector=detector)
        results = _run(session, detector, seconds=7.0)
        assert session.last_result == results[-1]
        assert session.conditioned is not None
        bpm_axis, power = session.last_spectrum
        assert bpm_axis[int(np.argmax(power))] == pytest.approx(70.0, abs=2.0)

    def test_process_frame_object(self):
        detector = FakeDetector([FACE])
        session = HeartRateSession(_config(), None, face_detector=detector)
        image = face_frame(130)
        session.process(Frame(image=image, gray=image[:, :, 1].copy(), timestamp=0))
        assert session.state.valid

    def test_out_of_order_timestamp_rejected(self):
        detector = FakeDetector([FACE])
        session = HeartRateSession(_config(), None, face_detector=detector)
        image = face_frame(130)
        session.process_frame(image, image[:, :, 1], 1000)
        with pytest.raises(ValueError):
            session.process_frame(image, image[:, :, 1], 1000)

    def test_frame_size_mismatch_rejected(self):
        session = HeartRateSession(_config(), None, face_detector=FakeDetector([FACE]))
        image = np.zeros((240, 320, 3), dtype=np.uint8)
        with pytest.raises(ValueError):
            session.process_frame(image, image[:, :, 1].copy(), 0)

    def test_spectrum_cached_and_cleared_on_loss(self):
        detector = FakeDetector()
        session = HeartRateSession(_config(), None, face_detector=detector)
        _run(session, detector, seconds=7.0)
        spectrum = session.last_spectrum
        assert len(spectrum[0]) > 0
        assert session.last_spectrum is spectrum

        detector.boxes = []
        image = face_frame(130)
        session.process_frame(image, image[:, :, 1].copy(), 8_000_000)
        assert session.state.valid is False
        assert len(session.last_spectrum[0]) == 0

    def test_reset(self):
        detector = FakeDetector()
        session = HeartRateSession(_config(), None, face_detector=detector)
        _run(session, detector, seconds=7.0)
        session.reset()
        assert session.state.valid is False
        assert len(session.accumulator) == 0
        assert session.last_result is None
        assert session.estimator.history == ()


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

class TestTeardown:

    def test_close_releases_detectors(self):
        face, eyes = FakeDetector(), FakeDetector()
        listener = Recorder()
        session = HeartRateSession(_config(), listener, face_detector=face, eye_detector=eyes)
        results = _run(session, face, seconds=7.0)
        emitted = list(listener.results)

        session.close()
        assert face.closed and eyes.closed
        assert listener.results == emitted == results

        session.close()                                  # idempotent
        with pytest.raises(RuntimeError):
            session.process_frame(face_frame(130), np.zeros((120, 160), np.uint8), 10**9)

    def test_context_manager(self):
        detector = FakeDetector()
        with HeartRateSession(_config(), None, face_detector=detector) as session:
            _run(session, detector, seconds=1.0)
        assert session.closed
        assert detector.closed

    def test_default_cascades_load_and_release(self):
        session = HeartRateSession(_config())
        image = face_frame(130)
        assert session.process_frame(image, image[:, :, 1].copy(), 0) is None
        assert session.state.valid is False
        session.close()


# ---------------------------------------------------------------------------
# Logging and drawing side channels
# ---------------------------------------------------------------------------

class TestSideChannels:

    def test_result_log_written(self, tmp_path):
        base = tmp_path / "logs" / "session"
        detector = FakeDetector()
        session = HeartRateSession(
            _config(log=True, log_path=str(base)), None, face_detector=detector
        )
        results = _run(session, detector, seconds=7.0)
        session.close()

        lines = (tmp_path / "logs" / "session_bpm.csv").read_text().splitlines()
        assert lines[0] == "time;mean;min;max"
        assert len(lines) == len(results) + 1
        assert lines[-1].startswith(f"{results[-1].timestamp};")

        frames = (tmp_path / "logs" / "session_frames.csv").read_text().splitlines()
        assert len(frames) == 7 * 30 + 1

    def test_unwritable_log_does_not_stop_processing(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        detector = FakeDetector()
        session = HeartRateSession(
            _config(log=True, log_path=str(blocker / "sub" / "session")),
            None,
            face_detector=detector,
        )
        results = _run(session, detector, seconds=7.0)
        assert results

    def test_draw_annotates_frame(self):
        detector = FakeDetector([FACE])
        session = HeartRateSession(_config(draw=True), None, face_detector=detector)
        image = face_frame(130)
        before = image.copy()
        session.process_frame(image, image[:, :, 1].copy(), 0)
        assert not np.array_equal(image, before)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestConfiguration:

    @pytest.mark.parametrize(
        "overrides",
        [
            {"sampling_frequency": 0.0},
            {"sampling_frequency": -1.0},
            {"time_base": 0.0},
            {"width": 0},
            {"rescan_interval": -0.5},
            {"bpm_low": 200.0, "bpm_high": 100.0},
            {"window_seconds": 3.0, "min_window_seconds": 5.0},
            {"log": True},
            {"channel": 3},
            {"history_size": 0},
            {"max_gap_seconds": 0.0},
            {"face_classifier_path": "/nonexistent/face.xml"},
        ],
    )
    def test_invalid_configuration_rejected(self, overrides):
        with pytest.raises(ConfigurationError):
            _config(**overrides)

    def test_defaults(self):
        cfg = SessionConfig()
        assert cfg.sampling_interval == 1.0
        assert cfg.min_face_size == (192, 192)
        assert cfg.min_window_seconds == 2.0
        assert cfg.max_gap_seconds == 1.0

    def test_bad_detector_model_fails_session_start(self, tmp_path):
        bad = tmp_path / "face.xml"
        bad.write_text("not a cascade")
        with pytest.raises(ConfigurationError):
            HeartRateSession(_config(face_classifier_path=str(bad)))
