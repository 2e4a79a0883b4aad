import numpy as np
import pytest

from eqkd_lab.coincidence import (
    CLOCK_PAIRS,
    KEY_PAIRS,
    correlate,
    histogram_bins,
    overlap_ratio,
)
from eqkd_lab.timetags import TimestampStream, empty_stream


def test_histogram_bins_symmetric():
    centers = histogram_bins(1000, 100)
    assert centers[0] == -1000
    assert centers[-1] == 1000
    assert centers.size == 21
    assert 0 in centers


def test_histogram_bins_round_half_window():
    # K = floor(window / bin + 0.5)
    assert histogram_bins(149, 100).tolist() == [-100, 0, 100]
    assert histogram_bins(150, 100).tolist() == [-200, -100, 0, 100, 200]


def test_single_coincidence(small_pair):
    alice, bob = small_pair
    hist = correlate(alice, bob, [(1, 5)], window=100, bin_width=10)
    assert hist.total == 1
    assert hist.n_pairs == 1
    assert hist.counts[np.flatnonzero(hist.bin_centers == 30)[0]] == 1
    assert hist.index_pairs().tolist() == [[1, 0]]


def test_channel_pairs_filter(small_pair):
    alice, bob = small_pair
    hist = correlate(alice, bob, [(0, 5)], window=100, bin_width=10)
    assert hist.total == 0
    assert hist.index_a.size == 0


def test_offset_shifts_delays(small_pair):
    alice, bob = small_pair
    hist = correlate(alice, bob, [(1, 5)], window=100, bin_width=10, offset=30)
    assert hist.counts[np.flatnonzero(hist.bin_centers == 0)[0]] == 1
    assert hist.offset == 30


def test_window_edges_inclusive():
    alice = TimestampStream(times=[1000], channels=[0])
    bob = TimestampStream(times=[900, 1100, 1101], channels=[5, 5, 5])
    hist = correlate(alice, bob, [(0, 5)], window=100, bin_width=50)
    assert hist.total == 2
    assert sorted(hist.index_b.tolist()) == [0, 1]


def test_all_pairs_inside_window_counted():
    alice = TimestampStream(times=[0, 10, 20], channels=[0, 0, 0])
    bob = TimestampStream(times=[5, 15, 25], channels=[5, 5, 5])
    hist = correlate(alice, bob, [(0, 5)], window=100, bin_width=5)
    assert hist.total == 9
    deltas = hist.bin_centers[np.repeat(np.arange(hist.counts.size), hist.counts)]
    assert sorted(deltas.tolist()) == [-15, -5, -5, 5, 5, 5, 15, 15, 25]


def test_index_pairs_match_counts():
    rng = np.random.default_rng(0)
    a = TimestampStream(times=np.sort(rng.integers(0, 10**7, 2000)), channels=rng.integers(0, 4, 2000))
    b = TimestampStream(times=np.sort(rng.integers(0, 10**7, 2000)), channels=rng.integers(5, 9, 2000))
    hist = correlate(a, b, CLOCK_PAIRS, window=20000, bin_width=1000)
    assert hist.n_pairs == hist.total
    delta = b.times[hist.index_b] - a.times[hist.index_a]
    assert np.all(np.abs(delta) <= 20000)


def test_matches_brute_force():
    rng = np.random.default_rng(5)
    a = TimestampStream(times=np.sort(rng.integers(0, 200000, 300)), channels=rng.integers(0, 4, 300))
    b = TimestampStream(times=np.sort(rng.integers(0, 200000, 300)), channels=rng.integers(5, 9, 300))
    window, width, offset = 3000, 250, 700
    hist = correlate(a, b, KEY_PAIRS, window=window, bin_width=width, offset=offset)

    pairs = set(KEY_PAIRS)
    expected = 0
    for ta, ca in zip(a.times.tolist(), a.channels.tolist()):
        for tb, cb in zip(b.times.tolist(), b.channels.tolist()):
            if (ca, cb) in pairs and abs(tb - ta - offset) <= window:
                expected += 1
    assert hist.total == expected


def test_empty_inputs_give_zero_histogram():
    a = TimestampStream(times=[1, 2], channels=[0, 0])
    hist = correlate(a, empty_stream(), [(0, 5)], window=100, bin_width=10)
    assert hist.total == 0
    assert hist.counts.size == hist.bin_centers.size


def test_rejects_bad_parameters(small_pair):
    alice, bob = small_pair
    with pytest.raises(ValueError):
        correlate(alice, bob, [(0, 5)], window=0, bin_width=10)
    with pytest.raises(ValueError):
        correlate(alice, bob, [], window=100, bin_width=10)
    with pytest.raises(TypeError):
        correlate([0, 1], bob, [(0, 5)], window=100, bin_width=10)


def test_overlap_ratio():
    a = TimestampStream(times=[0, 1000], channels=[0, 0])
    b = TimestampStream(times=[500, 1500], channels=[5, 5])
    assert overlap_ratio(a, b) == pytest.approx(500 / 1500)
    c = TimestampStream(times=[2000, 3000], channels=[5, 5])
    assert overlap_ratio(a, c) == 0.0
    assert overlap_ratio(a, empty_stream()) == 0.0
