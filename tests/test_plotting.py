import math

import numpy as np

from eqkd_lab.coincidence import correlate
from eqkd_lab.peaks import find_peaks
from eqkd_lab.plotting import (
    plot_correlation_histogram,
    plot_drift_trials,
    plot_key_qber,
    plot_optimizer_trace,
)
from eqkd_lab.timetags import generate_comb_pair


def test_correlation_histogram_figure(tmp_path):
    alice, bob = generate_comb_pair(3000, 12500, 200.0, 0.5, seed=4, channel_b=5)
    hist = correlate(alice, bob, [(0, 5)], window=50000, bin_width=250)
    peaks = find_peaks(hist, binning=6250)
    fit = np.full(hist.counts.size, hist.counts.mean())
    out = tmp_path / "hist.png"
    assert plot_correlation_histogram(hist, str(out), fit_curve=fit, peaks=peaks) == str(out)
    assert out.stat().st_size > 0


def test_drift_trials_skips_missing_sigmas(tmp_path):
    out = tmp_path / "trials.png"
    plot_drift_trials([0.1, 0.2, 0.3], [None, 250.0, math.inf], str(out))
    assert out.exists()
    # all trials discarded still gives a figure
    empty = tmp_path / "none.png"
    plot_drift_trials([0.1], [None], str(empty))
    assert empty.exists()


def test_optimizer_trace_with_cancelled_evaluation(tmp_path):
    out = tmp_path / "trace.png"
    plot_optimizer_trace([0.5, 0.3, math.inf, 0.2], [0.02, 0.02, 0.0, 0.01], str(out))
    assert out.exists()


def test_key_qber_figure(tmp_path):
    out = tmp_path / "keys.png"
    plot_key_qber([0.03, 0.028], [1200.0, 1150.0], str(out))
    assert out.exists()
