"""Property-based tests using hypothesis.

Random timestamp streams exercise the coincidence search, drift
compensation, peak areas and sifting over inputs no hand-written case
covers.
"""
import math

import numpy as np
from hypothesis import HealthCheck, given, settings, strategies as st

from eqkd_lab.coincidence import KEY_PAIRS, correlate, overlap_ratio
from eqkd_lab.peaks import Peak, relative_middle_peak_area
from eqkd_lab.sifting import KeySifter
from eqkd_lab.timetags import TimestampStream, compensate_linear_drift


# ============================================================================
# STRATEGY DEFINITIONS
# ============================================================================

@st.composite
def stream_strategy(draw, channels=(0, 1, 2, 3), max_size=60):
    """Sorted stream of up to ``max_size`` events within 1 us."""
    times = draw(st.lists(st.integers(min_value=0, max_value=1_000_000), max_size=max_size))
    chans = draw(st.lists(st.sampled_from(channels), min_size=len(times), max_size=len(times)))
    return TimestampStream(times=sorted(times), channels=chans)


alice_streams = stream_strategy()
bob_streams = stream_strategy(channels=(5, 6, 7, 8))


# ============================================================================
# COINCIDENCES
# ============================================================================

@given(alice=alice_streams, bob=bob_streams,
       window=st.integers(min_value=1, max_value=50_000),
       bin_width=st.integers(min_value=1, max_value=5_000),
       offset=st.integers(min_value=-20_000, max_value=20_000))
@settings(max_examples=60, suppress_health_check=[HealthCheck.too_slow])
def test_correlate_counts_every_pair_once(alice, bob, window, bin_width, offset):
    hist = correlate(alice, bob, KEY_PAIRS, window=window, bin_width=bin_width, offset=offset)
    assert hist.total == hist.n_pairs
    assert hist.counts.size == hist.bin_centers.size
    pairs = hist.index_pairs()
    assert len({tuple(p) for p in pairs}) == hist.n_pairs
    if hist.n_pairs:
        delta = bob.times[hist.index_b] - alice.times[hist.index_a] - offset
        assert np.all(np.abs(delta) <= window)
        allowed = set(KEY_PAIRS)
        for ia, ib in pairs:
            assert (int(alice.channels[ia]), int(bob.channels[ib])) in allowed


@given(alice=alice_streams, bob=bob_streams)
@settings(max_examples=40)
def test_overlap_ratio_bounded(alice, bob):
    ratio = overlap_ratio(alice, bob)
    assert 0.0 <= ratio <= 1.0


# ============================================================================
# DRIFT COMPENSATION
# ============================================================================

@given(stream=alice_streams, coefficient=st.floats(min_value=-0.5, max_value=0.5))
@settings(max_examples=50)
def test_drift_compensation_keeps_order_and_channels(stream, coefficient):
    out = compensate_linear_drift(stream, coefficient)
    assert len(out) == len(stream)
    assert np.all(np.diff(out.times) >= 0)
    assert np.array_equal(out.channels, stream.channels)
    if len(stream):
        assert out.first_time == stream.first_time


# ============================================================================
# PEAKS
# ============================================================================

@given(areas=st.lists(st.floats(min_value=0.0, max_value=1e6), min_size=2, max_size=20))
@settings(max_examples=60)
def test_relative_area_non_negative(areas):
    peaks = [Peak(mean_time=float(i * 12500 - 50000), area=a, width=100.0) for i, a in enumerate(areas)]
    value, error = relative_middle_peak_area(peaks)
    assert value >= 0.0
    assert error >= 0.0
    if math.isfinite(value) and value > 0:
        assert error > 0.0


# ============================================================================
# SIFTING
# ============================================================================

@given(alice=alice_streams, bob=bob_streams)
@settings(max_examples=50, suppress_health_check=[HealthCheck.too_slow])
def test_sifting_accounts_for_every_pair(alice, bob):
    hist = correlate(alice, bob, KEY_PAIRS, window=20_000, bin_width=1_000)
    sifter = KeySifter()
    result = sifter.sift(alice, bob, hist)
    assert result.n_bits + result.discarded_basis_mismatch == hist.n_pairs
    assert 0 <= result.n_errors <= result.n_bits
    assert sifter.total_bits == result.n_bits
    assert len(sifter.alice_key) == len(sifter.bob_key) == result.n_bits
    assert set(np.unique(result.alice_bits).tolist()) <= {0, 1}
