"""
Stats and key sinks.

Two stats formats are written: the network format logged by the key
generation loop (tab separated, rate, global clock offset and packet
overlap) and the local format (comma separated, rate and QBER) that
``load_key_stats`` reads back.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence
import csv
import math
import threading
from pathlib import Path

NETWORK_HEADER = "Time \t Rate \t GlobalTimeOffset \t PacketOverlap"
LOCAL_HEADER = "datetime,rate,QBER"


@dataclass(frozen=True)
class KeyStatsRecord:
    timestamp: str
    rate: float
    qber: float


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class StatsLog:
    """
    Append-only stats file. ``fmt`` is "network" or "local".
    """

    def __init__(self, path: str, fmt: str = "network"):
        if fmt not in ("network", "local"):
            raise ValueError(f"Unknown stats format: {fmt}")
        self.path = Path(path)
        self.fmt = fmt
        self._lock = threading.Lock()

    def _append(self, line: str) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            is_new = not self.path.exists() or self.path.stat().st_size == 0
            with open(self.path, "a") as f:
                if is_new:
                    f.write((NETWORK_HEADER if self.fmt == "network" else LOCAL_HEADER) + "\n")
                f.write(line + "\n")

    def write_network(self, rate: float, global_offset_ps: int, overlap: float, timestamp: Optional[str] = None) -> str:
        if self.fmt != "network":
            raise ValueError("write_network on a local-format stats log")
        line = f"{timestamp or _now()}\t{rate:.2f}\t{int(global_offset_ps)}\t{overlap:.2f}"
        self._append(line)
        return line

    def write_local(self, rate: float, qber: float, timestamp: Optional[str] = None) -> str:
        if self.fmt != "local":
            raise ValueError("write_local on a network-format stats log")
        line = f"{timestamp or _now()},{rate:.2f},{qber:.4f}"
        self._append(line)
        return line


class KeyFile:
    """Appends key bits, one per line."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, bits: Iterable[int]) -> int:
        lines = [f"{int(b)}\n" for b in bits]
        if not lines:
            return 0
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.writelines(lines)
        return len(lines)

    def read(self) -> List[int]:
        if not self.path.exists():
            return []
        with open(self.path, "r") as f:
            return [int(line) for line in f if line.strip()]


class EvaluationLog:
    """
    Optimizer evaluations, one file per phase inside ``directory``
    (``Iteration_001.txt``, ``NelderMead_Minimization.txt``, ...). Each line
    holds the stage positions, the cost and its error, tab separated.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def write(self, name: str, positions: Sequence[float], cost: float, error: float) -> Path:
        path = self.directory / name
        fields = [f"{float(p):.4f}" for p in positions] + [f"{cost:.6f}", f"{error:.6f}"]
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write("\t".join(fields) + "\n")
        return path


def load_key_stats(path: str) -> List[KeyStatsRecord]:
    """
    Load a local-format stats file.
    """
    stats_path = Path(path)
    if not stats_path.exists():
        raise FileNotFoundError(f"Key stats file not found: {path}")
    records: List[KeyStatsRecord] = []
    with open(stats_path, "r", newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            qber_raw = (row.get("QBER") or "").strip()
            records.append(
                KeyStatsRecord(
                    timestamp=row["datetime"],
                    rate=float(row["rate"]),
                    qber=float(qber_raw) if qber_raw else math.nan,
                )
            )
    return records
