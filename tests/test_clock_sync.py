import math

import numpy as np
import pytest

from eqkd_lab.clock_sync import (
    ClockSynchronizer,
    SyncParams,
    SyncState,
    fit_pulse_train,
    pulse_train_model,
)
from eqkd_lab.coincidence import KEY_PAIRS, CorrelationHistogram, correlate, histogram_bins
from eqkd_lab.events import EventBus, SyncClocksComplete, SyncCorrelationComplete
from eqkd_lab.peaks import find_peaks, middle_peak
from eqkd_lab.timetags import TimestampStream, empty_stream

PACKET = 30000


def test_pulse_train_model_area():
    x = histogram_bins(100000, 100).astype(float)
    y = pulse_train_model(x, mean=0.0, height=500.0, sigma=200.0, period=12500.0, n_pulses=3, bin_width=100.0)
    # seven pulses of area 500 each, all well inside the window
    assert y.sum() == pytest.approx(7 * 500.0, rel=1e-6)
    assert x[np.argmax(y)] in (-37500.0, -25000.0, -12500.0, 0.0, 12500.0, 25000.0, 37500.0)


def test_fit_pulse_train_recovers_width():
    centers = histogram_bins(100000, 1000)
    truth = pulse_train_model(centers.astype(float), 240.0, 800.0, 400.0, 12500.0, 9, 1000.0)
    empty = np.array([], dtype=np.int64)
    hist = CorrelationHistogram(
        bin_centers=centers,
        counts=np.round(truth).astype(np.int64),
        index_a=empty,
        index_b=empty.copy(),
        window=100000,
        bin_width=1000,
        offset=0,
    )
    peaks = find_peaks(hist, binning=2000)
    fit = fit_pulse_train(hist, middle_peak(peaks), peaks, period=12500.0, n_expected=16)
    assert fit is not None
    mean, height, sigma, sigma_err = fit
    assert mean == pytest.approx(240.0, abs=30.0)
    assert height == pytest.approx(800.0, rel=0.05)
    assert sigma == pytest.approx(400.0, rel=0.1)
    assert math.isfinite(sigma_err)


def test_trial_coefficients():
    sync = ClockSynchronizer(SyncParams(drift_num_var=2, drift_rel_var=0.01), SyncState(linear_drift_coefficient=1e-3))
    coeffs = sync.trial_coefficients()
    assert len(coeffs) == 5
    assert coeffs[2] == pytest.approx(1e-3)
    assert coeffs[0] == pytest.approx(1e-3 * 0.98)
    assert coeffs[-1] == pytest.approx(1e-3 * 1.02)


def test_sync_params_validation():
    with pytest.raises(ValueError):
        SyncParams(time_bin=0)
    with pytest.raises(ValueError):
        SyncParams(drift_num_var=-1)


def test_sync_clocks_recovers_drift(sim_link, drift):
    events = EventBus()
    seen = []
    events.subscribe(seen.append, SyncClocksComplete)
    state = SyncState(linear_drift_coefficient=drift * 1.002)
    sync = ClockSynchronizer(SyncParams(), state, events)

    alice = sim_link.alice.capture(PACKET)
    bob = sim_link.bob.capture(PACKET)
    result = sync.sync_clocks(alice, bob)

    assert result.peaks_found
    assert result.is_synchronized
    assert state.is_synchronized
    assert result.linear_drift_coefficient == pytest.approx(drift, rel=2e-4)
    assert state.linear_drift_coefficient == result.linear_drift_coefficient
    assert result.sigma < 1000.0
    assert state.global_clock_offset == bob.first_time - alice.first_time
    assert len(result.trials) == 11
    assert result.fit_curve is not None
    assert result.fit_curve.shape == result.histogram.counts.shape
    assert result.packet_span_s > 0
    assert len(seen) == 1 and seen[0].result is result


def test_sync_correlation_aligns_key_pairs(sim_link, drift):
    events = EventBus()
    seen = []
    events.subscribe(seen.append, SyncCorrelationComplete)
    state = SyncState(linear_drift_coefficient=drift * 1.002)
    sync = ClockSynchronizer(SyncParams(), state, events)

    alice = sim_link.alice.capture(PACKET)
    bob = sim_link.bob.capture(PACKET)
    clock = sync.sync_clocks(alice, bob)
    corr = sync.sync_correlation(alice, clock.compensated_bob)

    assert corr.corr_peak_found
    assert corr.fiber_offset == state.fiber_offset
    assert state.correlation_offset == state.global_clock_offset + state.fiber_offset
    assert len(seen) == 1

    hist = correlate(alice, clock.compensated_bob, KEY_PAIRS, window=1000, bin_width=100, offset=state.correlation_offset)
    # about half of the ~29000 pairs share a basis
    assert hist.total > 8000

    # a second pass over the same packet finds the peak at zero delay
    again = sync.sync_correlation(alice, clock.compensated_bob)
    assert again.corr_peak_found
    assert again.is_corr_synchronized
    assert abs(again.corr_peak_pos) < 1000


def test_sync_clocks_without_comb_keeps_coefficient(np_rng):
    times_a = np.sort(np_rng.integers(0, 10**9, 5000))
    times_b = np.sort(np_rng.integers(0, 10**9, 5000))
    alice = TimestampStream(times=times_a, channels=np_rng.integers(0, 4, 5000))
    bob = TimestampStream(times=times_b, channels=np_rng.integers(5, 9, 5000))
    state = SyncState(linear_drift_coefficient=1e-4, is_synchronized=True)
    result = ClockSynchronizer(SyncParams(), state).sync_clocks(alice, bob)
    assert not result.peaks_found
    assert not result.is_synchronized
    assert not state.is_synchronized
    assert state.linear_drift_coefficient == 1e-4
    assert result.message


def test_sync_clocks_empty_packet():
    state = SyncState(linear_drift_coefficient=0.01, is_synchronized=True)
    alice = TimestampStream(times=[1, 2, 3], channels=[0, 1, 2])
    result = ClockSynchronizer(SyncParams(), state).sync_clocks(alice, empty_stream())
    assert not result.is_synchronized
    assert not state.is_synchronized
    assert result.trials == []
    assert "empty" in result.message
