"""
Timestamp streams: immutable, time-ordered detection events.

Times are signed 64-bit picoseconds since the stream epoch, channels are
small detector numbers. Everything above this module consumes
``TimestampStream`` objects and never mutates them.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

import numpy as np


class UnsortedStreamError(ValueError):
    """Raised when event times are not non-decreasing."""


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class TimestampStream:
    times: np.ndarray
    channels: np.ndarray

    def __post_init__(self):
        times = np.array(self.times, dtype=np.int64).reshape(-1)
        channels = np.array(self.channels, dtype=np.uint8).reshape(-1)
        if times.size != channels.size:
            raise ValueError(
                f"times and channels must have the same length, got {times.size} and {channels.size}"
            )
        if times.size > 1 and np.any(np.diff(times) < 0):
            first_bad = int(np.argmax(np.diff(times) < 0))
            raise UnsortedStreamError(
                f"event times must be non-decreasing (index {first_bad + 1} goes back in time)"
            )
        object.__setattr__(self, "times", _readonly(times))
        object.__setattr__(self, "channels", _readonly(channels))

    def __len__(self) -> int:
        return int(self.times.size)

    @property
    def is_empty(self) -> bool:
        return self.times.size == 0

    @property
    def first_time(self) -> int:
        if self.is_empty:
            raise ValueError("empty stream has no first timestamp")
        return int(self.times[0])

    @property
    def last_time(self) -> int:
        if self.is_empty:
            raise ValueError("empty stream has no last timestamp")
        return int(self.times[-1])

    @property
    def span_ps(self) -> int:
        """Time covered by the stream, 0 for fewer than two events."""
        if self.times.size < 2:
            return 0
        return int(self.times[-1] - self.times[0])

    def select_channels(self, channels) -> "TimestampStream":
        mask = np.isin(self.channels, np.asarray(list(channels), dtype=np.uint8))
        return TimestampStream(times=self.times[mask], channels=self.channels[mask])

    def take(self, indices: np.ndarray) -> "TimestampStream":
        """Sub-stream at ``indices`` (must be increasing)."""
        idx = np.asarray(indices, dtype=np.int64)
        return TimestampStream(times=self.times[idx], channels=self.channels[idx])


def empty_stream() -> TimestampStream:
    return TimestampStream(times=np.array([], dtype=np.int64), channels=np.array([], dtype=np.uint8))


def from_unsorted(times, channels) -> TimestampStream:
    """Build a stream from unordered events (stable sort by time)."""
    times = np.asarray(times, dtype=np.int64)
    channels = np.asarray(channels, dtype=np.uint8)
    order = np.argsort(times, kind="stable")
    return TimestampStream(times=times[order], channels=channels[order])


def merge_streams(a: TimestampStream, b: TimestampStream) -> TimestampStream:
    """
    Merge two streams into one sorted stream.
    """
    return from_unsorted(
        np.concatenate([a.times, b.times]),
        np.concatenate([a.channels, b.channels]),
    )


def apply_channel_delays(stream: TimestampStream, delays_ps: Optional[Mapping[int, int]]) -> TimestampStream:
    """
    Add a coarse per-channel delay calibration and restore time order.
    """
    if not delays_ps or stream.is_empty:
        return stream
    lut = np.zeros(256, dtype=np.int64)
    for chan, delay in delays_ps.items():
        lut[int(chan)] = int(delay)
    return from_unsorted(stream.times + lut[stream.channels], stream.channels)


def compensate_linear_drift(
    stream: TimestampStream,
    coefficient: float,
    start_time: Optional[int] = None,
) -> TimestampStream:
    """
    Apply t' = t + (t - t_start) * coefficient.

    ``t_start`` defaults to the first event. Coefficients above -1 keep the
    stream ordered.
    """
    if stream.is_empty or coefficient == 0.0:
        return stream
    if coefficient <= -1.0:
        raise ValueError(f"drift coefficient must be > -1, got {coefficient}")
    t0 = stream.first_time if start_time is None else int(start_time)
    rel = (stream.times - t0).astype(np.float64)
    shifted = stream.times + np.round(rel * coefficient).astype(np.int64)
    return TimestampStream(times=shifted, channels=stream.channels)


def stream_union_span(a: TimestampStream, b: TimestampStream) -> int:
    """Span from the earliest to the latest event of both streams, in ps."""
    if a.is_empty and b.is_empty:
        return 0
    if a.is_empty:
        return b.span_ps
    if b.is_empty:
        return a.span_ps
    return max(a.last_time, b.last_time) - min(a.first_time, b.first_time)


def pulse_train_times(
    n_pulses: int,
    period_ps: int,
    start_ps: int = 0,
) -> np.ndarray:
    """Nominal emission times of a pulsed source."""
    return start_ps + np.arange(int(n_pulses), dtype=np.int64) * int(period_ps)


def generate_comb_pair(
    n_events: int,
    period_ps: int,
    jitter_ps: float,
    detection_prob: float,
    seed: int,
    channel_a: int = 0,
    channel_b: int = 1,
    bob_delay_ps: int = 0,
) -> Tuple[TimestampStream, TimestampStream]:
    """
    Generate two streams that see the same pulse comb independently.

    Every pulse is detected on each side with ``detection_prob``; detection
    times carry Gaussian jitter. Cross-correlating the two streams gives a
    periodic peak train with period ``period_ps``.
    """
    rng = np.random.default_rng(seed)
    n_pulses = max(1, int(np.ceil(n_events / max(detection_prob, 1e-9))))
    pulses = pulse_train_times(n_pulses, period_ps)

    def _side(delay: int, channel: int) -> TimestampStream:
        hit = rng.random(n_pulses) < detection_prob
        t = pulses[hit] + delay
        if jitter_ps > 0:
            t = t + np.round(rng.normal(0.0, jitter_ps, size=t.size)).astype(np.int64)
        t = np.sort(t)[:n_events]
        return TimestampStream(times=t, channels=np.full(t.size, channel, dtype=np.uint8))

    return _side(0, channel_a), _side(bob_delay_ps, channel_b)
