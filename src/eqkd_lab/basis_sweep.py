"""
Basis sweep for quantum state tomography.

For every measurement setting the four waveplates (HWP and QWP at Alice,
HWP and QWP at Bob) are rotated, one packet is acquired and the relative
middle-peak area of one channel pair is recorded. The 36 settings of the
standard basis are all combinations of the six projections H, V, D, A, R, L
on both sides.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple
import logging
import threading
import time

from .coincidence import CorrelationHistogram, correlate
from .events import BasisCompleted, BasisSweepComplete, EventBus
from .helpers import relative_percent, validate_int
from .peaks import Peak, find_peaks, relative_middle_peak_area, with_middle_peak
from .sources import Acquisition
from .stages import RotationStage, move_stages

logger = logging.getLogger(__name__)

# (HWP, QWP) angles in degrees projecting onto each polarization.
PROJECTIONS = {
    "H": (45.0, 0.0),
    "V": (0.0, 0.0),
    "D": (22.5, 45.0),
    "A": (-22.5, 45.0),
    "R": (22.5, 0.0),
    "L": (22.5, 90.0),
}
PROJECTION_ORDER = ("H", "V", "D", "A", "R", "L")

STD_BASIS_36: Tuple[Tuple[float, float, float, float], ...] = tuple(
    PROJECTIONS[a] + PROJECTIONS[b] for a in PROJECTION_ORDER for b in PROJECTION_ORDER
)
STD_BASIS_LABELS: Tuple[str, ...] = tuple(a + b for a in PROJECTION_ORDER for b in PROJECTION_ORDER)


@dataclass(frozen=True)
class SweepParams:
    """``offset_b`` is added to channel B times before correlating."""
    channel_a: int = 0
    channel_b: int = 1
    offset_b: int = -76032
    time_window: int = 100000
    bin_width: int = 256
    peak_binning: int = 6250

    def __post_init__(self):
        validate_int("channel_a", self.channel_a, min_value=0, max_value=255)
        validate_int("channel_b", self.channel_b, min_value=0, max_value=255)
        validate_int("time_window", self.time_window, min_value=1)
        validate_int("bin_width", self.bin_width, min_value=1)
        validate_int("peak_binning", self.peak_binning, min_value=1)


@dataclass
class BasisMeasurement:
    index: int
    angles: Tuple[float, ...]
    value: float
    error: float
    histogram: CorrelationHistogram
    peaks: List[Peak]
    elapsed_s: float


@dataclass
class BasisSweepResult:
    measurements: List[BasisMeasurement] = field(default_factory=list)
    n_settings: int = 0
    cancelled: bool = False
    output_path: Optional[Path] = None
    elapsed_s: float = 0.0

    @property
    def values(self) -> List[Tuple[float, float]]:
        return [(m.value, m.error) for m in self.measurements]


class BasisSweep:
    def __init__(
        self,
        stages: Sequence[RotationStage],
        acquire: Callable[[], Acquisition],
        params: Optional[SweepParams] = None,
        events: Optional[EventBus] = None,
    ):
        if len(stages) != 4:
            raise ValueError(f"basis sweep needs 4 rotation stages (HWP_A, QWP_A, HWP_B, QWP_B), got {len(stages)}")
        self.stages = list(stages)
        self.acquire = acquire
        self.params = params or SweepParams()
        self.events = events or EventBus()
        self._cancel = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    def measure_setting(self, index: int, angles: Sequence[float]) -> BasisMeasurement:
        p = self.params
        started = time.perf_counter()
        logger.info(
            "Collecting coincidences in configuration Nr.%d: %s",
            index, ",".join(f"{a:g}" for a in angles),
        )
        move_stages(self.stages, angles)
        acq = self.acquire()
        hist = correlate(
            acq.alice,
            acq.bob,
            [(p.channel_a, p.channel_b)],
            window=p.time_window,
            bin_width=p.bin_width,
            offset=acq.offset - p.offset_b,
        )
        peaks = find_peaks(hist, binning=p.peak_binning)
        if peaks:
            peaks = with_middle_peak(peaks, hist, p.peak_binning)
        value, error = relative_middle_peak_area(peaks)
        elapsed = time.perf_counter() - started
        logger.info(
            "Basis %d completed in %.2f s | Rel. peak area %.4f (%.4f, %.1f%%)",
            index, elapsed, value, error, relative_percent(value, error),
        )
        return BasisMeasurement(
            index=index,
            angles=tuple(float(a) for a in angles),
            value=value,
            error=error,
            histogram=hist,
            peaks=peaks,
            elapsed_s=elapsed,
        )

    def run(
        self,
        basis_settings: Optional[Sequence[Sequence[float]]] = None,
        output_path: Optional[str] = None,
    ) -> BasisSweepResult:
        """
        Measure every basis setting in order.

        ``output_path`` receives one ``value\\terror`` line per measured
        setting once the sweep ends.
        """
        settings = [tuple(float(a) for a in s) for s in (basis_settings or STD_BASIS_36)]
        bad = [s for s in settings if len(s) != 4]
        if bad:
            raise ValueError(f"basis settings need 4 angles, got {bad[0]!r}")

        started = time.perf_counter()
        self._cancel.clear()
        result = BasisSweepResult(n_settings=len(settings))
        logger.info("Start measuring histograms with %d basis settings", len(settings))
        for index, angles in enumerate(settings, start=1):
            if self._cancel.is_set():
                result.cancelled = True
                logger.info("Basis sweep cancelled after %d settings", len(result.measurements))
                break
            meas = self.measure_setting(index, angles)
            result.measurements.append(meas)
            self.events.emit(BasisCompleted(index=index, angles=meas.angles, value=meas.value, error=meas.error))

        if output_path is not None:
            out = Path(output_path)
            out.parent.mkdir(parents=True, exist_ok=True)
            with open(out, "w") as f:
                for value, error in result.values:
                    f.write(f"{value}\t{error}\n")
            result.output_path = out

        result.elapsed_s = time.perf_counter() - started
        logger.info("Basis sweep complete in %.2f s", result.elapsed_s)
        self.events.emit(BasisSweepComplete(result=result))
        return result
