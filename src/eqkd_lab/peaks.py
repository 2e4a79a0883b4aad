"""
Peak detection on coincidence histograms.

Counts are Poisson distributed, so the error of a count n is sqrt(n); this
sets both the detection threshold above the noise floor and the error of the
relative middle-peak area.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
import math

import numpy as np

from .coincidence import CorrelationHistogram
from .helpers import validate_positive


@dataclass(frozen=True)
class Peak:
    mean_time: float
    area: float
    width: float


def _coarsen(counts: np.ndarray, centers: np.ndarray, factor: int) -> Tuple[np.ndarray, np.ndarray]:
    n_super = counts.size // factor
    if n_super == 0:
        return counts.astype(float), centers.astype(float)
    used = n_super * factor
    coarse = counts[:used].reshape(n_super, factor).sum(axis=1).astype(float)
    coarse_centers = centers[:used].reshape(n_super, factor).mean(axis=1)
    return coarse, coarse_centers


def _local_maxima(values: np.ndarray, threshold: float) -> np.ndarray:
    n = values.size
    if n == 0:
        return np.array([], dtype=int)
    left = np.empty(n, dtype=float)
    right = np.empty(n, dtype=float)
    left[0] = -np.inf
    left[1:] = values[:-1]
    right[-1] = -np.inf
    right[:-1] = values[1:]
    is_max = (values > left) & (values >= right) & (values > threshold)
    return np.flatnonzero(is_max)


def find_peaks(
    histogram: CorrelationHistogram,
    binning: float,
    prominence: float = 3.0,
) -> List[Peak]:
    """
    Find peaks in a correlation histogram.

    The histogram is coarsened into super-bins of width ``binning``. Super-bins
    that are local maxima and exceed ``floor + prominence * sqrt(floor)``
    (floor = lower quartile of the super-bin counts) are refined on the fine
    histogram: the centroid and width come from the counts within ±binning of
    the super-bin, the area is the sum of counts within ±binning/2 of the
    centroid.

    Returns
    -------
    list of Peak
        Ordered by mean time; empty for an all-zero histogram.
    """
    binning = validate_positive("binning", binning)
    counts = np.asarray(histogram.counts)
    centers = np.asarray(histogram.bin_centers, dtype=float)
    if counts.size == 0 or counts.sum() == 0:
        return []

    factor = max(1, int(round(binning / histogram.bin_width)))
    coarse, coarse_centers = _coarsen(counts, centers, factor)
    floor = float(np.percentile(coarse, 25))
    threshold = floor + prominence * math.sqrt(max(floor, 1.0))

    peaks: List[Peak] = []
    for idx in _local_maxima(coarse, threshold):
        center = coarse_centers[idx]
        region = np.abs(centers - center) <= binning
        weights = counts[region].astype(float)
        if weights.sum() <= 0:
            continue
        mean = float(np.average(centers[region], weights=weights))
        width = float(np.sqrt(np.average((centers[region] - mean) ** 2, weights=weights)))
        area = float(counts[np.abs(centers - mean) <= binning / 2.0].sum())
        peaks.append(Peak(mean_time=mean, area=area, width=width))

    peaks.sort(key=lambda p: p.mean_time)
    return peaks


def integrate_peak(histogram: CorrelationHistogram, center: float, binning: float) -> Peak:
    """Integrate the histogram within ±binning/2 of ``center``."""
    centers = np.asarray(histogram.bin_centers, dtype=float)
    counts = np.asarray(histogram.counts, dtype=float)
    region = np.abs(centers - center) <= binning / 2.0
    area = float(counts[region].sum())
    if area > 0:
        mean = float(np.average(centers[region], weights=counts[region]))
        width = float(np.sqrt(np.average((centers[region] - mean) ** 2, weights=counts[region])))
    else:
        mean, width = float(center), 0.0
    return Peak(mean_time=mean, area=area, width=width)


def with_middle_peak(
    peaks: Sequence[Peak],
    histogram: CorrelationHistogram,
    binning: float,
) -> List[Peak]:
    """
    Ensure a peak at zero delay.

    A suppressed middle peak (anti-correlated outcomes on a well aligned
    link) falls below the detection threshold; its area is then integrated
    directly around zero.
    """
    if any(abs(p.mean_time) <= binning / 2.0 for p in peaks):
        return list(peaks)
    out = list(peaks) + [integrate_peak(histogram, 0.0, binning)]
    out.sort(key=lambda p: p.mean_time)
    return out


def middle_peak(peaks: Sequence[Peak]) -> Optional[Peak]:
    """Peak closest to zero delay."""
    if not peaks:
        return None
    return min(peaks, key=lambda p: abs(p.mean_time))


def relative_middle_peak_area(peaks: Sequence[Peak]) -> Tuple[float, float]:
    """
    Area of the middle peak relative to the mean area of the other peaks.

    Returns (value, error). The error propagates sqrt(n) Poisson errors of
    the middle area and of the summed side areas; an empty middle peak gets
    the error of a single count. Fewer than two peaks, or empty side peaks,
    give (inf, 0.0).
    """
    mid = middle_peak(peaks)
    if mid is None or len(peaks) < 2:
        return math.inf, 0.0
    others = [p.area for p in peaks if p is not mid]
    side_sum = float(sum(others))
    if side_sum <= 0.0:
        return math.inf, 0.0
    side_mean = side_sum / len(others)
    value = mid.area / side_mean
    if mid.area <= 0.0:
        return 0.0, float(1.0 / side_mean)
    error = value * math.sqrt(1.0 / mid.area + 1.0 / side_sum)
    return float(value), float(error)


def expected_peak_count(window: float, period: float) -> int:
    """Number of pulse-train peaks inside ±window."""
    return int(2 * window / period)


def peak_count_plausible(n_found: int, n_expected: int) -> bool:
    """
    A pulse train over ±window shows n_expected peaks, or one more when a
    peak sits on the window edge.
    """
    return n_expected <= n_found <= n_expected + 1
