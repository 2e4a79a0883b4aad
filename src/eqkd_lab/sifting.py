"""
Key sifting and quantum bit error rate.

Each correlated detection pair retained by the correlation engine becomes
one raw key bit per side: the detector channel identifies the basis and
the bit value. Bits are appended to running key sequences owned by a
KeySifter; the mismatch counter gives the running QBER.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple
import logging
import math
import threading

import numpy as np

from .coincidence import CorrelationHistogram
from .timetags import TimestampStream, stream_union_span

logger = logging.getLogger(__name__)

BasisChannels = Tuple[int, int]


class BasisConfigurationError(ValueError):
    """Malformed basis map, or a detection on an unmapped channel."""


def _lookup_tables(name: str, bases: Sequence[BasisChannels]) -> Tuple[np.ndarray, np.ndarray]:
    bit = np.full(256, -1, dtype=np.int8)
    basis = np.full(256, -1, dtype=np.int8)
    for b_idx, pair in enumerate(bases):
        if len(pair) != 2:
            raise BasisConfigurationError(f"{name}: basis {b_idx} needs (zero_channel, one_channel)")
        zero, one = int(pair[0]), int(pair[1])
        for chan in (zero, one):
            if not 0 <= chan <= 255:
                raise BasisConfigurationError(f"{name}: channel {chan} out of range")
            if basis[chan] >= 0:
                raise BasisConfigurationError(f"{name}: channel {chan} assigned twice")
        if zero == one:
            raise BasisConfigurationError(f"{name}: basis {b_idx} uses channel {zero} for both bits")
        bit[zero], bit[one] = 0, 1
        basis[zero] = basis[one] = b_idx
    return bit, basis


@dataclass(frozen=True)
class BasisMap:
    """
    Detector channels per basis, as (zero_channel, one_channel), for both
    stations. Basis k of Alice is measured against basis k of Bob.
    """
    alice: Tuple[BasisChannels, ...] = ((0, 1), (2, 3))
    bob: Tuple[BasisChannels, ...] = ((5, 6), (7, 8))
    _alice_tables: Tuple[np.ndarray, np.ndarray] = field(init=False, repr=False, compare=False)
    _bob_tables: Tuple[np.ndarray, np.ndarray] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        alice = tuple(tuple(int(c) for c in pair) for pair in self.alice)
        bob = tuple(tuple(int(c) for c in pair) for pair in self.bob)
        if not alice or len(alice) != len(bob):
            raise BasisConfigurationError("alice and bob need the same, non-zero number of bases")
        object.__setattr__(self, "alice", alice)
        object.__setattr__(self, "bob", bob)
        object.__setattr__(self, "_alice_tables", _lookup_tables("alice", alice))
        object.__setattr__(self, "_bob_tables", _lookup_tables("bob", bob))

    @staticmethod
    def _decode(side: str, tables: Tuple[np.ndarray, np.ndarray], channels: np.ndarray):
        bit_lut, basis_lut = tables
        bits = bit_lut[channels]
        if np.any(bits < 0):
            bad = sorted(set(int(c) for c in channels[bits < 0]))
            raise BasisConfigurationError(f"{side}: channels {bad} are not in the basis map")
        return bits.astype(np.uint8), basis_lut[channels]

    def decode_alice(self, channels: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """(bits, bases) of Alice detections."""
        return self._decode("alice", self._alice_tables, np.asarray(channels, dtype=np.uint8))

    def decode_bob(self, channels: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return self._decode("bob", self._bob_tables, np.asarray(channels, dtype=np.uint8))


@dataclass
class SiftResult:
    skipped: bool
    n_bits: int = 0
    n_errors: int = 0
    discarded_basis_mismatch: int = 0
    cycle_qber: float = math.nan
    qber: float = math.nan
    raw_rate: float = 0.0
    span_s: float = 0.0
    total_bits: int = 0
    alice_bits: np.ndarray = field(default_factory=lambda: np.array([], dtype=np.uint8))
    bob_bits: np.ndarray = field(default_factory=lambda: np.array([], dtype=np.uint8))
    bob_indices: np.ndarray = field(default_factory=lambda: np.array([], dtype=np.int64))


class KeySifter:
    """
    Running sifted key of one link.

    The key sequences only grow; ``reset`` starts a new key.
    """

    def __init__(self, basis_map: BasisMap = BasisMap()):
        self.basis_map = basis_map
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._alice: List[np.ndarray] = []
            self._bob: List[np.ndarray] = []
            self._total = 0
            self._mismatches = 0

    @property
    def alice_key(self) -> np.ndarray:
        with self._lock:
            return np.concatenate(self._alice) if self._alice else np.array([], dtype=np.uint8)

    @property
    def bob_key(self) -> np.ndarray:
        with self._lock:
            return np.concatenate(self._bob) if self._bob else np.array([], dtype=np.uint8)

    @property
    def total_bits(self) -> int:
        with self._lock:
            return self._total

    @property
    def mismatches(self) -> int:
        with self._lock:
            return self._mismatches

    @property
    def qber(self) -> float:
        with self._lock:
            total, mismatches = self._total, self._mismatches
        if total == 0:
            return math.nan
        return mismatches / total

    def sift(
        self,
        alice: TimestampStream,
        bob: TimestampStream,
        histogram: CorrelationHistogram,
        is_synchronized: bool = True,
    ) -> SiftResult:
        """
        Turn the index pairs of ``histogram`` into key bits.

        ``histogram`` must come from correlating exactly these two streams.
        Pairs measured in different bases are discarded.
        """
        if not is_synchronized:
            logger.info("Sifting skipped: clocks not synchronized")
            with self._lock:
                total, mismatches = self._total, self._mismatches
            return SiftResult(skipped=True, qber=(mismatches / total) if total else math.nan, total_bits=total)

        idx_a = np.asarray(histogram.index_a, dtype=np.int64)
        idx_b = np.asarray(histogram.index_b, dtype=np.int64)
        if idx_a.size and (idx_a.max() >= len(alice) or idx_b.max() >= len(bob)):
            raise ValueError("histogram index pairs do not belong to the given streams")

        bits_a, basis_a = self.basis_map.decode_alice(alice.channels[idx_a])
        bits_b, basis_b = self.basis_map.decode_bob(bob.channels[idx_b])
        same = basis_a == basis_b
        bits_a = bits_a[same]
        bits_b = bits_b[same]
        bob_indices = idx_b[same]
        n_bits = int(bits_a.size)
        n_errors = int(np.count_nonzero(bits_a != bits_b))

        with self._lock:
            if n_bits:
                self._alice.append(bits_a)
                self._bob.append(bits_b)
            self._total += n_bits
            self._mismatches += n_errors
            total = self._total
            qber = self._mismatches / total if total else math.nan

        span_s = stream_union_span(alice, bob) * 1e-12
        raw_rate = n_bits / span_s if span_s > 0 else 0.0
        return SiftResult(
            skipped=False,
            n_bits=n_bits,
            n_errors=n_errors,
            discarded_basis_mismatch=int(same.size - n_bits),
            cycle_qber=(n_errors / n_bits) if n_bits else math.nan,
            qber=qber,
            raw_rate=raw_rate,
            span_s=span_s,
            total_bits=total,
            alice_bits=bits_a,
            bob_bits=bits_b,
            bob_indices=bob_indices,
        )
