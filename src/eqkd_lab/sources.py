"""
Timestamp sources: a simulated entangled-pair link, recorded files and a
network relay for the remote station.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple
import csv
import json
import logging
import socket
import threading

import numpy as np

from .helpers import validate_float, validate_int
from .polarization import WaveplateMisalignment
from .timetags import TimestampStream, apply_channel_delays, empty_stream, from_unsorted

logger = logging.getLogger(__name__)


class TimestampSource(Protocol):
    def capture(self, packet_size: int) -> TimestampStream:
        ...


@dataclass(frozen=True)
class Acquisition:
    """
    Alice stream and (compensated) Bob stream of one measurement. ``offset``
    is the correlation offset that aligns them.
    """
    alice: TimestampStream
    bob: TimestampStream
    is_synchronized: bool = True
    offset: int = 0


class StreamPair:
    """Captures the Alice and Bob sources concurrently."""

    def __init__(self, alice: TimestampSource, bob: TimestampSource):
        self.alice = alice
        self.bob = bob

    def capture(self, packet_size: int) -> Tuple[TimestampStream, TimestampStream]:
        with ThreadPoolExecutor(max_workers=2) as pool:
            fut_a = pool.submit(self.alice.capture, packet_size)
            fut_b = pool.submit(self.bob.capture, packet_size)
            return fut_a.result(), fut_b.result()


# --- Simulated link ---

@dataclass(frozen=True)
class LinkParams:
    """
    Pulsed entangled-pair source seen by two detector stations.

    Probabilities are per excitation pulse. ``drift_coefficient`` is the
    coefficient that, applied by ``compensate_linear_drift``, maps Bob's raw
    clock back onto Alice's time base.
    """
    period_ps: int = 12500
    pair_prob: float = 0.4
    single_prob: float = 0.01
    dark_prob: float = 0.001
    jitter_ps: float = 100.0
    bob_delay_ps: int = 37000
    drift_coefficient: float = 0.0
    bob_clock_offset_ps: int = 5_000_000
    base_error: float = 0.0
    seed: int = 0

    def __post_init__(self):
        validate_int("period_ps", self.period_ps, min_value=1)
        validate_float("pair_prob", self.pair_prob, min_value=0.0, max_value=1.0)
        validate_float("single_prob", self.single_prob, min_value=0.0, max_value=1.0)
        validate_float("dark_prob", self.dark_prob, min_value=0.0)
        validate_float("jitter_ps", self.jitter_ps, min_value=0.0)
        validate_float("base_error", self.base_error, min_value=0.0, max_value=0.5)
        validate_float("drift_coefficient", self.drift_coefficient)
        if self.drift_coefficient <= -1.0:
            raise ValueError("drift_coefficient must be > -1")
        if self.pair_prob + self.single_prob + self.dark_prob <= 0:
            raise ValueError("link produces no events")


class SimulatedTagger:
    """One station of a SimulatedLink."""

    def __init__(self, link: "SimulatedLink", side: str, channel_delays: Optional[Mapping[int, int]] = None):
        self.link = link
        self.side = side
        self.channel_delays = dict(channel_delays or {})

    def capture(self, packet_size: int) -> TimestampStream:
        stream = self.link.take(self.side, packet_size)
        return apply_channel_delays(stream, self.channel_delays)


class SimulatedLink:
    """
    Synthetic polarization-entangled link.

    Each capture cycle simulates enough pulses for about ``packet_size``
    Alice events. Pair photons land on Alice channels 0..3 and Bob channels
    5..8 (H, V, D, A); in equal bases Bob's outcome is flipped with the error
    probability of the polarization model. Both stations of a cycle are
    generated together, so ``alice.capture`` and ``bob.capture`` may be
    called from different threads in either order. Cycle ``k`` depends only
    on the seed, ``k`` and the error probability at generation time.
    """

    def __init__(
        self,
        params: Optional[LinkParams] = None,
        polarization: Optional[WaveplateMisalignment] = None,
        alice_delays: Optional[Mapping[int, int]] = None,
        bob_delays: Optional[Mapping[int, int]] = None,
    ):
        self.params = params or LinkParams()
        self.polarization = polarization
        self.alice = SimulatedTagger(self, "alice", alice_delays)
        self.bob = SimulatedTagger(self, "bob", bob_delays)
        self.last_error_probability: Optional[float] = None
        self._lock = threading.Lock()
        self._cursor = {"alice": 0, "bob": 0}
        self._pending: Dict[int, Dict[str, TimestampStream]] = {}
        self._generated = 0
        self._next_pulse = 0

    def error_probability(self) -> float:
        if self.polarization is None:
            return self.params.base_error
        return self.polarization.error_probability()

    def take(self, side: str, packet_size: int) -> TimestampStream:
        validate_int("packet_size", packet_size, min_value=1)
        with self._lock:
            cycle = self._cursor[side]
            self._cursor[side] += 1
            while self._generated <= cycle:
                self._pending[self._generated] = self._generate(self._generated, packet_size)
                self._generated += 1
            streams = self._pending[cycle]
            stream = streams.pop(side)
            if not streams:
                del self._pending[cycle]
            return stream

    def _generate(self, cycle: int, packet_size: int) -> Dict[str, TimestampStream]:
        p = self.params
        rng = np.random.default_rng([p.seed, cycle])
        rate = p.pair_prob + p.single_prob + p.dark_prob
        n = max(1, int(np.ceil(packet_size / rate)))
        pulses = (self._next_pulse + np.arange(n, dtype=np.int64)) * p.period_ps
        self._next_pulse += n
        error = self.error_probability()
        self.last_error_probability = error

        pair = rng.random(n) < p.pair_prob
        t_pair = pulses[pair]
        k = t_pair.size
        basis_a = rng.integers(0, 2, size=k)
        basis_b = rng.integers(0, 2, size=k)
        bit_a = rng.integers(0, 2, size=k)
        flip = (rng.random(k) < error).astype(np.int64)
        bit_b = np.where(basis_a == basis_b, bit_a ^ flip, rng.integers(0, 2, size=k))

        def _singles(offset: int, base_channel: int) -> Tuple[np.ndarray, np.ndarray]:
            hit = rng.random(n) < p.single_prob
            t = pulses[hit] + offset
            return t, base_channel + rng.integers(0, 4, size=t.size)

        def _darks(base_channel: int) -> Tuple[np.ndarray, np.ndarray]:
            n_dark = int(rng.poisson(p.dark_prob * n))
            t = rng.integers(int(pulses[0]), int(pulses[-1]) + p.period_ps, size=n_dark)
            return t.astype(np.int64), base_channel + rng.integers(0, 4, size=n_dark)

        def _jitter(t: np.ndarray) -> np.ndarray:
            if p.jitter_ps <= 0:
                return t
            return t + np.round(rng.normal(0.0, p.jitter_ps, size=t.size)).astype(np.int64)

        ts_a, ch_sa = _singles(0, 0)
        td_a, ch_da = _darks(0)
        alice_t = np.concatenate([_jitter(np.concatenate([t_pair, ts_a])), td_a])
        alice_c = np.concatenate([basis_a * 2 + bit_a, ch_sa, ch_da])

        ts_b, ch_sb = _singles(p.bob_delay_ps, 5)
        td_b, ch_db = _darks(5)
        bob_frame = np.concatenate([_jitter(np.concatenate([t_pair + p.bob_delay_ps, ts_b])), td_b])
        bob_c = np.concatenate([5 + basis_b * 2 + bit_b, ch_sb, ch_db])
        bob_raw = p.bob_clock_offset_ps + np.round(bob_frame / (1.0 + p.drift_coefficient)).astype(np.int64)

        logger.debug(
            "SimulatedLink cycle %d: %d pulses, %d pairs, error probability %.4f",
            cycle, n, k, error,
        )
        return {
            "alice": from_unsorted(alice_t, alice_c),
            "bob": from_unsorted(bob_raw, bob_c),
        }


# --- Recorded and relayed streams ---

def _stream_from_rows(rows: Iterable[Mapping[str, Any]]) -> TimestampStream:
    times: List[int] = []
    channels: List[int] = []
    for row in rows:
        time_val = row.get("time_ps")
        if time_val is None:
            time_val = row.get("time")
        if time_val is None:
            raise ValueError(f"row without time_ps: {dict(row)!r}")
        times.append(int(float(time_val)))
        channels.append(int(row.get("channel", 0)))
    if not times:
        return empty_stream()
    return from_unsorted(np.array(times, dtype=np.int64), np.array(channels, dtype=np.int64))


def read_timestamp_file(path: str) -> TimestampStream:
    """
    Read events from a CSV (columns time_ps, channel) or JSON file.
    """
    tag_path = Path(path)
    if not tag_path.exists():
        raise FileNotFoundError(f"Timestamp file not found: {path}")

    if tag_path.suffix.lower() == ".csv":
        with open(tag_path, "r", newline="") as f:
            rows = list(csv.DictReader(f))
    else:
        with open(tag_path, "r") as f:
            data = json.load(f)
        if isinstance(data, dict):
            rows = data.get("tags") or data.get("timestamps")
        else:
            rows = data
        if not isinstance(rows, list):
            raise ValueError("Timestamp JSON must be a list or contain 'tags'.")
    return _stream_from_rows(rows)


def write_timestamp_file(stream: TimestampStream, path: str) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["time_ps", "channel"])
        for t, c in zip(stream.times.tolist(), stream.channels.tolist()):
            writer.writerow([t, c])
    return out


class FileTimestampSource:
    """
    Replays a recorded stream in consecutive packets of ``packet_size``
    events. An exhausted file yields empty streams.
    """

    def __init__(self, path: str, channel_delays: Optional[Mapping[int, int]] = None):
        self.path = path
        self.channel_delays = dict(channel_delays or {})
        self._stream = read_timestamp_file(path)
        self._cursor = 0

    @property
    def remaining(self) -> int:
        return len(self._stream) - self._cursor

    def capture(self, packet_size: int) -> TimestampStream:
        validate_int("packet_size", packet_size, min_value=1)
        stop = min(len(self._stream), self._cursor + packet_size)
        packet = self._stream.take(np.arange(self._cursor, stop))
        self._cursor = stop
        return apply_channel_delays(packet, self.channel_delays)


def encode_lines(stream: TimestampStream) -> bytes:
    """Newline-delimited ``time_ps,channel`` records."""
    return "".join(f"{t},{c}\n" for t, c in zip(stream.times.tolist(), stream.channels.tolist())).encode("ascii")


def parse_lines(lines: Iterable[str]) -> TimestampStream:
    times: List[int] = []
    channels: List[int] = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        parts = line.split(",")
        if len(parts) != 2:
            raise ValueError(f"malformed timestamp record: {line!r}")
        times.append(int(parts[0]))
        channels.append(int(parts[1]))
    if not times:
        return empty_stream()
    return TimestampStream(times=np.array(times, dtype=np.int64), channels=np.array(channels, dtype=np.int64))


def socket_read_lines(host: str, port: int, limit: int = 1000, timeout_s: float = 1.0) -> List[str]:
    """Read up to ``limit`` newline-delimited records; a timeout ends the packet."""
    lines: List[str] = []
    with socket.create_connection((host, port), timeout=timeout_s) as sock:
        sock.settimeout(timeout_s)
        buf = b""
        while len(lines) < limit:
            try:
                chunk = sock.recv(65536)
            except socket.timeout:
                logger.warning("relay %s:%d timed out after %d records", host, port, len(lines))
                break
            if not chunk:
                break
            buf += chunk
            while b"\n" in buf and len(lines) < limit:
                line, buf = buf.split(b"\n", 1)
                lines.append(line.decode("utf-8", errors="ignore"))
    return lines


class NetworkRelaySource:
    """Remote station timestamps relayed over TCP."""

    def __init__(
        self,
        host: str,
        port: int,
        timeout_s: float = 1.0,
        channel_delays: Optional[Mapping[int, int]] = None,
    ):
        self.host = host
        self.port = int(port)
        self.timeout_s = float(timeout_s)
        self.channel_delays = dict(channel_delays or {})

    def capture(self, packet_size: int) -> TimestampStream:
        validate_int("packet_size", packet_size, min_value=1)
        lines = socket_read_lines(self.host, self.port, limit=packet_size, timeout_s=self.timeout_s)
        return apply_channel_delays(parse_lines(lines), self.channel_delays)
