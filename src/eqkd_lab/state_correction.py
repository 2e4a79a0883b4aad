"""
Polarization state correction.

Three waveplates on rotation stages are driven to the position minimizing
the relative middle-peak area of the anti-correlated coincidences (HV, VH,
DA, AD). Two strategies are available: a bisecting grid search and a
Nelder-Mead simplex. Both read the loss from live measurements, so every
evaluation moves hardware and integrates a new packet.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple
import logging
import math
import threading
import time

import numpy as np
from scipy.optimize import minimize

from .coincidence import ANTICORRELATED_PAIRS, ChannelPair, CorrelationHistogram, correlate
from .events import EventBus, LossEvaluated, OptimizationComplete
from .helpers import format_positions, relative_percent, validate_channel_pairs, validate_float, validate_int
from .peaks import Peak, find_peaks, relative_middle_peak_area, with_middle_peak
from .sources import Acquisition
from .stages import RotationStage, move_stages, stages_ready
from .telemetry import EvaluationLog

logger = logging.getLogger(__name__)

CANCELLED = math.inf

# Waveplate positions of a freshly mounted setup (QWP, HWP, QWP).
DEFAULT_POSITIONS = (40.2473958333333, 56.4453125, 104.153645833333)

# Single-tagger setups number the four Alice detectors 1..4 and Bob's 5..8.
SINGLE_TAGGER_ANTICORRELATED_PAIRS: Tuple[ChannelPair, ...] = ((1, 6), (2, 5), (3, 8), (4, 7))


class OptimizationMode(Enum):
    GRID = "grid"
    SIMPLEX = "simplex"
    COMBINED = "combined"


@dataclass(frozen=True)
class LossParams:
    time_window: int = 100000
    bin_width: int = 256
    peak_binning: int = 6250
    prominence: float = 3.0
    channel_pairs: Tuple[ChannelPair, ...] = ANTICORRELATED_PAIRS
    offset: int = 0

    def __post_init__(self):
        validate_int("time_window", self.time_window, min_value=1)
        validate_int("bin_width", self.bin_width, min_value=1)
        validate_int("peak_binning", self.peak_binning, min_value=1)
        object.__setattr__(self, "channel_pairs", validate_channel_pairs("channel_pairs", self.channel_pairs))


@dataclass(frozen=True)
class StateCorrectionParams:
    mode: OptimizationMode = OptimizationMode.GRID
    accuracy_grid: float = 0.3
    grid_points: int = 3
    accuracy_simplex: float = 0.3
    fatol: float = 0.01
    max_iterations: int = 500
    do_init_optimization: bool = False
    init_num_points: int = 6
    init_range: float = 10.0
    finetune_range: float = 10.0
    initial_positions: Tuple[float, float, float] = DEFAULT_POSITIONS
    initial_perturbation: Tuple[float, float, float] = (45.0, 45.0, 45.0)

    def __post_init__(self):
        if not isinstance(self.mode, OptimizationMode):
            object.__setattr__(self, "mode", OptimizationMode(self.mode))
        validate_float("accuracy_grid", self.accuracy_grid, min_value=0.0)
        if self.accuracy_grid <= 0:
            raise ValueError("accuracy_grid must be positive")
        validate_int("grid_points", self.grid_points, min_value=2)
        validate_float("accuracy_simplex", self.accuracy_simplex, min_value=0.0)
        validate_float("fatol", self.fatol, min_value=0.0)
        validate_int("max_iterations", self.max_iterations, min_value=1)
        validate_int("init_num_points", self.init_num_points, min_value=2)
        validate_float("init_range", self.init_range, min_value=0.0)
        validate_float("finetune_range", self.finetune_range, min_value=0.0)
        if len(self.initial_positions) != 3 or len(self.initial_perturbation) != 3:
            raise ValueError("initial_positions and initial_perturbation need three entries")
        object.__setattr__(self, "initial_positions", tuple(float(v) for v in self.initial_positions))
        object.__setattr__(self, "initial_perturbation", tuple(float(v) for v in self.initial_perturbation))


@dataclass
class LossMeasurement:
    value: float
    error: float
    histogram: Optional[CorrelationHistogram] = None
    peaks: List[Peak] = field(default_factory=list)
    valid: bool = True


@dataclass
class OptimizerState:
    """
    ``best_*`` is the accepted optimum: the last bisection result or the
    simplex minimum. It survives between runs and seeds the next one.
    ``observed_*`` is the lowest raw cost measured in the current run, the
    fallback when the simplex is cancelled or runs out of iterations.
    """
    current_positions: List[float]
    best_positions: List[float]
    best_cost: float = math.inf
    best_error: float = 0.0
    search_range: float = 0.0
    perturbation: List[float] = field(default_factory=lambda: [45.0, 45.0, 45.0])
    observed_positions: Optional[List[float]] = None
    observed_cost: float = math.inf
    observed_error: float = 0.0

    def record(self, positions: Sequence[float], cost: float, error: float) -> None:
        self.current_positions = [float(p) for p in positions]
        if cost < self.observed_cost:
            self.observed_cost = float(cost)
            self.observed_error = float(error)
            self.observed_positions = [float(p) for p in positions]

    def accept(self, positions: Sequence[float], cost: float, error: float) -> None:
        self.best_positions = [float(p) for p in positions]
        self.best_cost = float(cost)
        self.best_error = float(error)

    def accept_observed(self) -> None:
        if self.observed_positions is not None:
            self.accept(self.observed_positions, self.observed_cost, self.observed_error)

    def reset_run(self) -> None:
        self.best_cost = math.inf
        self.best_error = 0.0
        self.observed_positions = None
        self.observed_cost = math.inf
        self.observed_error = 0.0


@dataclass
class Evaluation:
    positions: Tuple[float, float, float]
    cost: float
    error: float
    phase: str


@dataclass
class OptimizationResult:
    started: bool
    mode: OptimizationMode
    final_positions: Tuple[float, ...]
    best_cost: float
    best_error: float
    converged: bool = False
    cancelled: bool = False
    exit_reason: str = ""
    iterations: int = 0
    evaluations: List[Evaluation] = field(default_factory=list)
    elapsed_s: float = 0.0


class LossFunction:
    """
    Standard loss measurement: relative middle-peak area of the
    anti-correlated coincidences in one freshly acquired packet.
    """

    def __init__(self, acquire: Callable[[], Acquisition], params: Optional[LossParams] = None):
        self.acquire = acquire
        self.params = params or LossParams()

    def evaluate(self, acquisition: Acquisition) -> LossMeasurement:
        p = self.params
        if not acquisition.is_synchronized:
            logger.warning("Loss: acquisition not synchronized, measurement discarded")
            return LossMeasurement(value=math.inf, error=0.0, valid=False)
        hist = correlate(
            acquisition.alice,
            acquisition.bob,
            p.channel_pairs,
            window=p.time_window,
            bin_width=p.bin_width,
            offset=acquisition.offset + p.offset,
        )
        peaks = find_peaks(hist, binning=p.peak_binning, prominence=p.prominence)
        if peaks:
            peaks = with_middle_peak(peaks, hist, p.peak_binning)
        value, error = relative_middle_peak_area(peaks)
        return LossMeasurement(value=value, error=error, histogram=hist, peaks=peaks, valid=math.isfinite(value))

    def __call__(self) -> LossMeasurement:
        return self.evaluate(self.acquire())


class StateCorrection:
    """
    Drives three rotation stages to the loss minimum.

    ``measure`` is called once per evaluated position, after all stages
    finished moving. ``cancel()`` stops a running optimization at the next
    move; the stages are then sent to the last accepted position. With
    ``log_dir`` set, every evaluation is also appended to a per-phase file.
    """

    def __init__(
        self,
        stages: Sequence[RotationStage],
        measure: Callable[[], LossMeasurement],
        params: Optional[StateCorrectionParams] = None,
        events: Optional[EventBus] = None,
        log_dir: Optional[str] = None,
    ):
        if len(stages) != 3:
            raise ValueError(f"state correction needs exactly 3 rotation stages, got {len(stages)}")
        self.stages = list(stages)
        self.measure = measure
        self.params = params or StateCorrectionParams()
        self.events = events or EventBus()
        self.state = OptimizerState(
            current_positions=list(self.params.initial_positions),
            best_positions=list(self.params.initial_positions),
            perturbation=list(self.params.initial_perturbation),
        )
        self._cancel = threading.Event()
        self._evaluations: List[Evaluation] = []
        self.log = EvaluationLog(log_dir) if log_dir else None
        self._log_name: Optional[str] = None

    # --- control ---

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # --- primitives ---

    def _move(self, positions: Sequence[float]) -> None:
        move_stages(self.stages, positions)
        self.state.current_positions = [float(p) for p in positions]

    def _evaluate(self, positions: Sequence[float], phase: str) -> Tuple[float, float]:
        self._move(positions)
        loss = self.measure()
        cost = float(loss.value)
        error = float(loss.error)
        pos = tuple(float(p) for p in positions)
        self._evaluations.append(Evaluation(positions=pos, cost=cost, error=error, phase=phase))
        self.state.record(pos, cost, error)
        if self.log is not None and self._log_name:
            self.log.write(self._log_name, pos, cost, error)
        logger.info(
            "Position Nr.%d %s: %.4f (%.4f, %.1f%%)",
            len(self._evaluations), format_positions(pos), cost, error, relative_percent(cost, error),
        )
        self.events.emit(LossEvaluated(positions=pos, cost=cost, error=error, measurement=loss))
        return cost, error

    def _move_to_best(self) -> None:
        logger.info("Moving stages to optimum position %s", format_positions(self.state.best_positions))
        self._move(self.state.best_positions)

    # --- grid search ---

    def _grid_pass(
        self, center: Sequence[float], n: int, search_range: float, log_name: Optional[str] = None
    ) -> Optional[Tuple[List[float], float, float]]:
        axes = [np.linspace(c - search_range / 2.0, c + search_range / 2.0, n) for c in center]
        best: Optional[Tuple[float, float]] = None
        best_idx = (0, 0, 0)
        self._log_name = log_name
        try:
            for i0 in range(n):
                for i1 in range(n):
                    for i2 in range(n):
                        if self.cancelled:
                            return None
                        pos = (axes[0][i0], axes[1][i1], axes[2][i2])
                        cost, err = self._evaluate(pos, "grid")
                        if best is None or cost + err / 4.0 < best[0] - best[1] / 4.0:
                            best = (cost, err)
                            best_idx = (i0, i1, i2)
        finally:
            self._log_name = None
        if best is None:
            return None
        logger.info("Minimum: %.4f (%.4f, %.1f%%)", best[0], best[1], relative_percent(best[0], best[1]))
        return [float(axes[k][best_idx[k]]) for k in range(3)], best[0], best[1]

    def grid_pass(self, center: Sequence[float], n: int, search_range: float) -> Optional[List[float]]:
        """
        Evaluate an n^3 grid over center ± range/2.

        Returns the grid minimum, or None when cancelled. A point replaces
        the current minimum only if its cost plus a quarter of its error is
        below the minimum's cost minus a quarter of the minimum's error.
        """
        found = self._grid_pass(center, n, search_range)
        return None if found is None else found[0]

    def _grid(self, search_range: float) -> Tuple[bool, str, int]:
        p = self.params
        center = list(self.state.best_positions)
        current = float(search_range)
        iteration = 0
        logger.info("Starting grid optimization with target accuracy = %s deg", p.accuracy_grid)
        while current >= p.accuracy_grid:
            iteration += 1
            self.state.search_range = current
            started = time.perf_counter()
            logger.info("Iteration %d | n=%d | range=%s", iteration, p.grid_points, current)
            found = self._grid_pass(center, p.grid_points, current, f"Iteration_{iteration:03d}.txt")
            if found is None:
                break
            center, cost, err = found
            self.state.accept(center, cost, err)
            current /= 2.0
            logger.info(
                "Iteration %d done in %.2f s | Positions: %s",
                iteration, time.perf_counter() - started, format_positions(center),
            )
        self._move_to_best()
        if self.cancelled:
            return False, "cancelled", iteration
        return True, "range below accuracy", iteration

    # --- simplex ---

    def _simplex(self) -> Tuple[bool, str, int]:
        p = self.params
        x0 = np.asarray(self.state.best_positions, dtype=float)
        pert = np.asarray(self.state.perturbation, dtype=float)
        initial_simplex = np.vstack([x0] + [x0 + pert[i] * np.eye(3)[i] for i in range(3)])
        logger.info(
            "Starting Nelder Mead minimization with MaxIterations = %d, convergence criterion = %s",
            p.max_iterations, p.accuracy_simplex,
        )

        def objective(x: np.ndarray) -> float:
            if self.cancelled:
                return CANCELLED
            cost, _ = self._evaluate(x, "simplex")
            return cost

        def callback(intermediate_result):
            if self.cancelled:
                raise StopIteration

        started = time.perf_counter()
        self._log_name = "NelderMead_Minimization.txt"
        try:
            res = minimize(
                objective,
                x0,
                method="Nelder-Mead",
                callback=callback,
                options={
                    "initial_simplex": initial_simplex,
                    "xatol": p.accuracy_simplex,
                    "fatol": p.fatol,
                    "maxiter": p.max_iterations,
                    "maxfev": 10 * p.max_iterations,
                },
            )
        finally:
            self._log_name = None
        elapsed = time.perf_counter() - started
        iterations = int(getattr(res, "nit", 0))

        if self.cancelled:
            logger.info("Downhill simplex cancelled")
            self.state.accept_observed()
            self._move_to_best()
            return False, "cancelled", iterations
        if res.success:
            self.state.accept(res.x, float(res.fun), self.state.observed_error)
            self.state.perturbation = [10.0 * p.accuracy_simplex] * 3
            logger.info(
                "Minimization converged with %d iterations in %.2f s at optimum position %s",
                iterations, elapsed, format_positions(self.state.best_positions),
            )
            self._move_to_best()
            return True, "converged", iterations
        logger.warning("Maximum iterations (%d) exceeded: %s", p.max_iterations, res.message)
        self.state.accept_observed()
        self._move_to_best()
        return False, "max iterations", iterations

    # --- run ---

    def run(self) -> OptimizationResult:
        """
        Run one optimization in the configured mode.

        A cancel issued before the run starts stops it before the first
        move; the flag is cleared once the run has finished.
        """
        p = self.params
        started = time.perf_counter()
        self._evaluations = []

        if not stages_ready(self.stages):
            logger.error("State correction not started: rotation stages not ready")
            return OptimizationResult(
                started=False,
                mode=p.mode,
                final_positions=tuple(self.state.current_positions),
                best_cost=self.state.best_cost,
                best_error=self.state.best_error,
                exit_reason="stages not ready",
            )

        self.state.reset_run()
        converged = False
        reason = ""
        iterations = 0
        grid_range = p.init_range

        if p.do_init_optimization and p.mode is not OptimizationMode.GRID:
            logger.info("Initial optimization | n=%d | range=%s", p.init_num_points, p.init_range)
            found = self._grid_pass(
                self.state.best_positions, p.init_num_points, p.init_range, "Initial_Optimization.txt"
            )
            if found is not None:
                self.state.accept(*found)
                self.state.perturbation = [p.init_range / (p.init_num_points - 1)] * 3
        elif p.do_init_optimization:
            grid_range = p.init_range / (p.init_num_points - 1)

        if self.cancelled:
            self._move_to_best()
            reason = "cancelled"
        elif p.mode is OptimizationMode.GRID:
            converged, reason, iterations = self._grid(grid_range)
        elif p.mode is OptimizationMode.SIMPLEX:
            converged, reason, iterations = self._simplex()
        else:
            converged, reason, iterations = self._simplex()
            if not self.cancelled:
                fine_ok, fine_reason, fine_iter = self._grid(p.finetune_range)
                iterations += fine_iter
                converged = converged and fine_ok
                reason = f"{reason}; finetune {fine_reason}"

        result = OptimizationResult(
            started=True,
            mode=p.mode,
            final_positions=tuple(self.state.current_positions),
            best_cost=self.state.best_cost,
            best_error=self.state.best_error,
            converged=converged,
            cancelled=self.cancelled,
            exit_reason="cancelled" if self.cancelled else reason,
            iterations=iterations,
            evaluations=list(self._evaluations),
            elapsed_s=time.perf_counter() - started,
        )
        logger.info(
            "State correction %s after %d evaluations | best %.4f at %s",
            result.exit_reason, len(result.evaluations), result.best_cost, format_positions(result.final_positions),
        )
        self.events.emit(OptimizationComplete(result=result))
        self._cancel.clear()
        return result
