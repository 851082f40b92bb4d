"""
Unit tests for SignalAccumulator and SignalConditioner.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest

from face_heartbeat.estimator import SpectralEstimator
from face_heartbeat.signal_buffer import SignalAccumulator
from face_heartbeat.signal_processor import (
    SignalConditioner,
    build_bandpass,
    detrend_smoothness_priors,
    remove_jumps,
    resample_uniform,
    smoothness_lambda,
)


def _irregular_times(duration: float, fps: float = 30.0, jitter: float = 0.3, seed: int = 0):
    rng = np.random.default_rng(seed)
    steps = (1.0 / fps) * (1.0 + rng.uniform(-jitter, jitter, int(duration * fps * 1.5)))
    times = np.cumsum(steps)
    return times[times <= duration]


# ---------------------------------------------------------------------------
# SignalAccumulator
# ---------------------------------------------------------------------------

class TestSignalAccumulator:

    def test_empty(self):
        acc = SignalAccumulator()
        assert len(acc) == 0
        assert acc.span == 0.0
        assert acc.values().shape == (0, 3)

    def test_push_and_views(self):
        acc = SignalAccumulator()
        for k in range(10):
            acc.push(k / 30.0, (1.0, 2.0 + k, 3.0))
        assert len(acc) == 10
        assert acc.values().shape == (10, 3)
        assert acc.values()[4, 1] == 6.0
        assert acc.span == pytest.approx(9 / 30.0)
        assert acc.expected_interval() == pytest.approx(1 / 30.0)
        assert not acc.jumps().any()

    def test_eviction_bounds_window(self):
        acc = SignalAccumulator(window_seconds=2.05)
        for k in range(300):
            acc.push(k / 30.0, (0.0, float(k), 0.0))
        assert acc.span <= 2.05
        assert acc.times()[-1] == pytest.approx(299 / 30.0)
        assert len(acc) == 62

    def test_gap_is_flagged(self):
        acc = SignalAccumulator(jump_tolerance=2.5)
        for k in range(30):
            acc.push(k / 30.0, (0.0, 1.0, 0.0))
        assert acc.push(1.5, (0.0, 1.0, 0.0)) is True
        assert acc.push(1.5 + 1 / 30.0, (0.0, 1.0, 0.0)) is False
        assert acc.jumps().sum() == 1
        assert acc.restarts == 0

    def test_long_gap_restarts_buffer(self):
        acc = SignalAccumulator(max_gap_seconds=1.0)
        for k in range(90):
            acc.push(k / 30.0, (0.0, 1.0, 0.0))
        assert acc.push(6.0, (0.0, 2.0, 0.0)) is False
        assert acc.restarts == 1
        assert len(acc) == 1
        assert acc.span == 0.0
        acc.push(6.0 + 1 / 30.0, (0.0, 2.0, 0.0))
        assert acc.span == pytest.approx(1 / 30.0)
        assert not acc.jumps().any()

    def test_discontinuity_hint_is_flagged(self):
        acc = SignalAccumulator()
        acc.push(0.0, (0, 0, 0))
        assert acc.push(0.033, (0, 0, 0), discontinuous=True) is True

    def test_first_sample_is_never_a_jump(self):
        acc = SignalAccumulator()
        assert acc.push(5.0, (0, 0, 0), discontinuous=True) is False

    def test_oldest_sample_loses_jump_flag_after_eviction(self):
        acc = SignalAccumulator(window_seconds=1.0)
        acc.push(0.0, (0, 0, 0))
        acc.push(0.5, (0, 0, 0), discontinuous=True)
        acc.push(1.2, (0, 0, 0))
        assert len(acc) == 2
        assert not acc.jumps()[0]

    def test_out_of_order_rejected(self):
        acc = SignalAccumulator()
        acc.push(1.0, (0, 0, 0))
        with pytest.raises(ValueError):
            acc.push(1.0, (0, 0, 0))

    def test_reset(self):
        acc = SignalAccumulator()
        acc.push(0.0, (0, 0, 0))
        acc.reset()
        assert len(acc) == 0


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

class TestBuildingBlocks:

    def test_remove_jumps_cancels_step(self):
        signal = np.array([1.0, 1.0, 1.0, 11.0, 11.0, 11.0])
        jumps = np.array([False, False, False, True, False, False])
        assert np.allclose(remove_jumps(signal, jumps), 1.0)

    def test_remove_jumps_does_not_modify_input(self):
        signal = np.array([0.0, 5.0])
        remove_jumps(signal, np.array([False, True]))
        assert signal[1] == 5.0

    def test_resample_uniform_grid(self):
        times = np.array([0.0, 0.1, 0.35, 0.4, 1.0])
        grid, values = resample_uniform(times, 2.0 * times, rate=10.0)
        assert len(grid) == 11
        assert np.allclose(np.diff(grid), 0.1)
        assert np.allclose(values, 2.0 * grid)

    def test_detrend_removes_linear_trend_exactly(self):
        ramp = 3.0 + 0.5 * np.arange(200)
        assert np.allclose(detrend_smoothness_priors(ramp, 100.0), 0.0, atol=1e-6)

    def test_detrend_keeps_pulse_band(self):
        rate = 30.0
        t = np.arange(300) / rate
        pulse = np.sin(2 * np.pi * 1.25 * t)
        out = detrend_smoothness_priors(pulse + 0.2 * t ** 2, smoothness_lambda(rate, 0.4))
        core = slice(30, -30)
        assert np.corrcoef(out[core], pulse[core])[0, 1] > 0.95

    def test_bandpass_clamped_below_nyquist(self):
        sos = build_bandpass(4, 0.7, 4.0, 6.0)
        assert sos.shape == (4, 6)


# ---------------------------------------------------------------------------
# SignalConditioner
# ---------------------------------------------------------------------------

class TestSignalConditioner:

    def test_insufficient_history(self):
        cond = SignalConditioner(min_window_seconds=5.0)
        times = np.arange(90) / 30.0
        assert cond.condition(times, np.ones((90, 3))) is None
        assert cond.condition(np.array([0.0, 10.0]), np.ones((2, 3))) is None

    def test_output_is_uniform_and_zero_centred(self):
        cond = SignalConditioner(min_window_seconds=5.0)
        times = _irregular_times(8.0)
        values = np.zeros((len(times), 3))
        values[:, 1] = 100 + np.sin(2 * np.pi * 1.2 * times) + 4 * times
        out = cond.condition(times, values)
        assert out is not None
        assert np.allclose(np.diff(out.times), 1.0 / out.rate)
        assert out.rate == pytest.approx(30.0, rel=0.05)
        assert abs(float(np.mean(out.values))) < 0.1
        assert out.duration == pytest.approx(8.0, abs=0.2)

    def test_fixed_resample_rate(self):
        cond = SignalConditioner(min_window_seconds=2.0, resample_rate=20.0)
        times = _irregular_times(4.0)
        out = cond.condition(times, np.sin(2 * np.pi * times))
        assert out.rate == 20.0

    def test_irregular_sinusoid_frequency_preserved(self):
        target_bpm = 75.0
        times = _irregular_times(10.0, seed=3)
        green = (
            120
            + 1.5 * np.sin(2 * np.pi * target_bpm / 60.0 * times)
            + 3.0 * times                                   # illumination drift
            + 2.0 * np.sin(2 * np.pi * 0.1 * times)         # slow motion
        )
        values = np.column_stack([np.zeros_like(green), green, np.zeros_like(green)])
        out = SignalConditioner(min_window_seconds=5.0).condition(times, values)
        bpm = SpectralEstimator().estimate(out.values, out.rate)
        assert bpm == pytest.approx(target_bpm, abs=2.0)

    def test_step_at_jump_is_not_read_as_pulse(self):
        times = np.arange(300) / 30.0
        green = np.where(times < 5.0, 100.0, 130.0) + 0.5 * np.sin(2 * np.pi * 1.5 * times)
        jumps = np.zeros(300, dtype=bool)
        jumps[150] = True
        values = np.column_stack([green, green, green])
        cond = SignalConditioner(min_window_seconds=5.0)
        with_flags = cond.condition(times, values, jumps)
        bpm = SpectralEstimator().estimate(with_flags.values, with_flags.rate)
        assert bpm == pytest.approx(90.0, abs=2.0)
