"""
Coincidence correlation between two timestamp streams.

The engine histograms Δt = t_b - t_a - offset for every event pair on a
configured channel pair whose delay falls inside ±window, and keeps the
originating index pairs so that later stages (sifting) can recover the
detector channel of each correlated photon.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

from .helpers import validate_channel_pairs, validate_positive
from .timetags import TimestampStream

ChannelPair = Tuple[int, int]

# Alice detectors 0..3 = H, V, D, A. Bob detectors 5..8 = H, V, D, A.
ALICE_CHANNELS = (0, 1, 2, 3)
BOB_CHANNELS = (5, 6, 7, 8)

CLOCK_PAIRS: Tuple[ChannelPair, ...] = tuple((a, b) for a in ALICE_CHANNELS for b in BOB_CHANNELS)

KEY_PAIRS: Tuple[ChannelPair, ...] = (
    # rectilinear
    (0, 5), (0, 6), (1, 5), (1, 6),
    # diagonal
    (2, 7), (2, 8), (3, 7), (3, 8),
)

MIXED_BASIS_PAIRS: Tuple[ChannelPair, ...] = (
    (0, 7), (0, 8), (1, 7), (1, 8),
    (2, 5), (2, 6), (3, 5), (3, 6),
)

# hv, vh, da, ad
ANTICORRELATED_PAIRS: Tuple[ChannelPair, ...] = ((0, 6), (1, 5), (2, 8), (3, 7))


@dataclass(frozen=True, eq=False)
class CorrelationHistogram:
    bin_centers: np.ndarray
    counts: np.ndarray
    index_a: np.ndarray
    index_b: np.ndarray
    window: int
    bin_width: int
    offset: int

    @property
    def total(self) -> int:
        return int(self.counts.sum())

    @property
    def n_pairs(self) -> int:
        return int(self.index_a.size)

    def index_pairs(self) -> np.ndarray:
        """(n, 2) array of (index_in_a, index_in_b)."""
        return np.column_stack([self.index_a, self.index_b])


def _pair_table(pairs: Sequence[ChannelPair]) -> np.ndarray:
    table = np.zeros((256, 256), dtype=bool)
    for chan_a, chan_b in pairs:
        table[chan_a, chan_b] = True
    return table


def histogram_bins(window: int, bin_width: int) -> np.ndarray:
    """Bin centers k*bin_width for k = -K..K, K = floor(window/bin_width + 0.5)."""
    k_max = int(np.floor(window / bin_width + 0.5))
    return np.arange(-k_max, k_max + 1, dtype=np.int64) * int(bin_width)


def correlate(
    stream_a: TimestampStream,
    stream_b: TimestampStream,
    channel_pairs: Sequence[ChannelPair],
    window: int,
    bin_width: int,
    offset: int = 0,
) -> CorrelationHistogram:
    """
    Build the coincidence histogram of ``stream_b`` relative to ``stream_a``.

    For each A event on a paired channel, B events with
    t_a + offset - window <= t_b <= t_a + offset + window are candidates.
    Because both streams are sorted, the lower and upper window bounds are
    monotone in t_a; ``searchsorted`` finds them for all A events at once,
    which is the vectorized form of a forward-only two-pointer scan.

    Parameters
    ----------
    stream_a, stream_b : TimestampStream
        Time-ordered streams (ordering is enforced by TimestampStream).
    channel_pairs : sequence of (channel_a, channel_b)
        Cross-stream channel combinations that count as coincidences.
    window : int
        Half-width of the coincidence window in ps.
    bin_width : int
        Histogram bin width in ps.
    offset : int
        Coarse clock offset added to Alice times before matching.

    Returns
    -------
    CorrelationHistogram
        Counts per bin plus the index pair of every counted coincidence.
    """
    if not isinstance(stream_a, TimestampStream) or not isinstance(stream_b, TimestampStream):
        raise TypeError("correlate expects TimestampStream inputs")
    window = int(validate_positive("window", window))
    bin_width = int(validate_positive("bin_width", bin_width))
    offset = int(offset)
    pairs = validate_channel_pairs("channel_pairs", channel_pairs)

    centers = histogram_bins(window, bin_width)
    k_max = (centers.size - 1) // 2
    empty = np.array([], dtype=np.int64)

    table = _pair_table(pairs)
    used_a = np.flatnonzero(table.any(axis=1)).astype(np.uint8)
    used_b = np.flatnonzero(table.any(axis=0)).astype(np.uint8)

    sel_a = np.flatnonzero(np.isin(stream_a.channels, used_a))
    sel_b = np.flatnonzero(np.isin(stream_b.channels, used_b))
    if sel_a.size == 0 or sel_b.size == 0:
        return CorrelationHistogram(
            bin_centers=centers,
            counts=np.zeros(centers.size, dtype=np.int64),
            index_a=empty,
            index_b=empty.copy(),
            window=window,
            bin_width=bin_width,
            offset=offset,
        )

    times_a = stream_a.times[sel_a] + offset
    times_b = stream_b.times[sel_b]
    lo = np.searchsorted(times_b, times_a - window, side="left")
    hi = np.searchsorted(times_b, times_a + window, side="right")
    n_cand = hi - lo
    total = int(n_cand.sum())

    if total == 0:
        cand_a = empty
        cand_b = empty.copy()
    else:
        cand_a = np.repeat(np.arange(sel_a.size, dtype=np.int64), n_cand)
        starts = np.repeat(lo - (np.cumsum(n_cand) - n_cand), n_cand)
        cand_b = starts + np.arange(total, dtype=np.int64)

    chan_a = stream_a.channels[sel_a[cand_a]]
    chan_b = stream_b.channels[sel_b[cand_b]]
    keep = table[chan_a, chan_b]
    cand_a = cand_a[keep]
    cand_b = cand_b[keep]

    delta = times_b[cand_b] - times_a[cand_a]
    bin_idx = np.floor(delta / bin_width + 0.5).astype(np.int64) + k_max
    counts = np.bincount(bin_idx, minlength=centers.size).astype(np.int64)

    return CorrelationHistogram(
        bin_centers=centers,
        counts=counts,
        index_a=sel_a[cand_a].astype(np.int64),
        index_b=sel_b[cand_b].astype(np.int64),
        window=window,
        bin_width=bin_width,
        offset=offset,
    )


def overlap_ratio(stream_a: TimestampStream, stream_b: TimestampStream) -> float:
    """
    Fraction of the combined time span covered by both streams.
    """
    if stream_a.is_empty or stream_b.is_empty:
        return 0.0
    start = max(stream_a.first_time, stream_b.first_time)
    stop = min(stream_a.last_time, stream_b.last_time)
    union = max(stream_a.last_time, stream_b.last_time) - min(stream_a.first_time, stream_b.first_time)
    if union <= 0:
        return 1.0 if stop >= start else 0.0
    return max(0.0, (stop - start) / union)
