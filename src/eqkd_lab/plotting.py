from __future__ import annotations
from typing import Sequence, Optional
import math
import numpy as np
import matplotlib.pyplot as plt

from .coincidence import CorrelationHistogram
from .peaks import Peak


def plot_correlation_histogram(
    histogram: CorrelationHistogram,
    out_path: str,
    fit_curve: Optional[np.ndarray] = None,
    peaks: Optional[Sequence[Peak]] = None,
    title: str = "Correlation histogram",
) -> str:
    """
    Plot coincidence counts vs delay, with an optional model curve and the
    detected peak centroids.

    Parameters
    ----------
    histogram : CorrelationHistogram
        Histogram to plot; delays are shown in ns.
    out_path : str
        PNG output path.
    fit_curve : np.ndarray, optional
        Model evaluated at the bin centers.
    peaks : sequence of Peak, optional
        Marked by vertical lines.

    Returns
    -------
    str
        The output path.
    """
    x_ns = np.asarray(histogram.bin_centers, dtype=float) * 1e-3
    plt.figure(figsize=(8, 4))
    plt.step(x_ns, histogram.counts, where="mid", label="Coincidences", color="tab:blue")
    if fit_curve is not None:
        plt.plot(x_ns, fit_curve, label="Pulse train fit", color="tab:orange")
    for peak in peaks or ():
        plt.axvline(peak.mean_time * 1e-3, color="gray", linewidth=0.6, linestyle="--")
    plt.xlabel("Delay (ns)")
    plt.ylabel("Counts per bin")
    plt.title(title)
    plt.legend()
    plt.savefig(out_path, dpi=200, bbox_inches="tight")
    plt.close()
    return out_path


def plot_drift_trials(
    coefficients: Sequence[float],
    sigmas: Sequence[Optional[float]],
    out_path: str,
) -> str:
    """Fitted peak width for each trial drift coefficient (discarded trials omitted)."""
    pairs = [(c, s) for c, s in zip(coefficients, sigmas) if s is not None and math.isfinite(s)]
    plt.figure()
    if pairs:
        c_vals, s_vals = zip(*pairs)
        plt.plot(c_vals, s_vals, marker="o", color="tab:green")
    plt.xlabel("Drift coefficient")
    plt.ylabel("Fitted sigma (ps)")
    plt.title("Clock drift trials")
    plt.savefig(out_path, dpi=200, bbox_inches="tight")
    plt.close()
    return out_path


def plot_optimizer_trace(
    costs: Sequence[float],
    errors: Sequence[float],
    out_path: str,
    title: str = "State correction",
) -> str:
    """Loss per evaluation with Poisson error bars and the running minimum."""
    costs_arr = np.asarray(costs, dtype=float)
    errors_arr = np.asarray(errors, dtype=float)
    finite = np.isfinite(costs_arr)
    idx = np.arange(1, costs_arr.size + 1)

    fig, ax = plt.subplots(figsize=(7, 4))
    ax.errorbar(idx[finite], costs_arr[finite], yerr=errors_arr[finite], fmt="o", markersize=3,
                color="tab:blue", alpha=0.7, label="Evaluation")
    if finite.any():
        running = np.minimum.accumulate(np.where(finite, costs_arr, np.inf))
        ok = np.isfinite(running)
        ax.plot(idx[ok], running[ok], color="tab:red", label="Best so far")
    ax.set_xlabel("Evaluation")
    ax.set_ylabel("Relative middle-peak area")
    ax.set_title(title)
    ax.legend()
    plt.tight_layout()
    plt.savefig(out_path, dpi=200, bbox_inches="tight")
    plt.close(fig)
    return out_path


def plot_key_qber(
    qber: Sequence[float],
    rate: Sequence[float],
    out_path: str,
) -> str:
    """Running QBER and raw key rate per key generation cycle."""
    cycles = np.arange(1, len(qber) + 1)
    fig, axes = plt.subplots(2, 1, figsize=(6, 6), sharex=True)
    axes[0].plot(cycles, qber, marker="o", color="tab:red")
    axes[0].set_ylabel("QBER")
    axes[0].set_title("Key generation")
    axes[1].plot(cycles, rate, marker="o", color="tab:blue")
    axes[1].set_xlabel("Cycle")
    axes[1].set_ylabel("Raw key rate (1/s)")
    plt.tight_layout()
    plt.savefig(out_path, dpi=200, bbox_inches="tight")
    plt.close(fig)
    return out_path
