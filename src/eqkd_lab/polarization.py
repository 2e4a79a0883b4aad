"""
Polarization misalignment model for the simulated link.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from .stages import RotationStage


def misalignment_error(positions: Sequence[float], optimum: Sequence[float]) -> float:
    """
    Mean of sin^2 of the waveplate angle errors (degrees).
    """
    pos = np.asarray(positions, dtype=float)
    opt = np.asarray(optimum, dtype=float)
    if pos.shape != opt.shape:
        raise ValueError(f"positions {pos.shape} and optimum {opt.shape} differ in shape")
    if pos.size == 0:
        return 0.0
    return float(np.mean(np.sin(np.deg2rad(pos - opt)) ** 2))


def combine_error(base_error: float, drift_error: float) -> float:
    """
    Fold a misalignment error into an intrinsic error probability, capped at 1/2.
    """
    adjusted = base_error + (1.0 - base_error) * drift_error
    return min(0.5, max(0.0, adjusted))


@dataclass
class WaveplateMisalignment:
    """
    Error probability of a polarization path whose waveplates sit on stages.

    ``optimum`` holds the stage readings that compensate the fiber
    birefringence. ``drift_sigma_deg`` lets the optimum random-walk by that
    amount each time ``step`` is called.
    """
    stages: Sequence[RotationStage]
    optimum: Tuple[float, ...]
    base_error: float = 0.0
    drift_sigma_deg: float = 0.0
    seed: Optional[int] = None

    def __post_init__(self):
        self.optimum = tuple(float(v) for v in self.optimum)
        if len(self.optimum) != len(self.stages):
            raise ValueError("optimum must have one angle per stage")
        self._rng = np.random.default_rng(self.seed)

    def error_probability(self) -> float:
        positions = [stage.position for stage in self.stages]
        return combine_error(self.base_error, misalignment_error(positions, self.optimum))

    def step(self) -> Tuple[float, ...]:
        if self.drift_sigma_deg > 0:
            delta = self._rng.normal(0.0, self.drift_sigma_deg, size=len(self.optimum))
            self.optimum = tuple(float(o + d) for o, d in zip(self.optimum, delta))
        return self.optimum
