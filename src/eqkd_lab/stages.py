"""
Motorized rotation stages carrying the waveplates.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Protocol, Sequence
import threading
import time


class RotationStage(Protocol):
    @property
    def position(self) -> float:
        ...

    @property
    def ready(self) -> bool:
        ...

    def move_absolute(self, position: float) -> None:
        ...


class SimulatedRotationStage:
    """
    In-memory stage. ``offset`` is added to every commanded position, which
    models a mounting error of the waveplate.
    """

    def __init__(
        self,
        name: str = "stage",
        position: float = 0.0,
        offset: float = 0.0,
        move_time_s: float = 0.0,
        ready: bool = True,
    ):
        self.name = name
        self.offset = float(offset)
        self.move_time_s = float(move_time_s)
        self.moves: List[float] = []
        self._position = float(position) + self.offset
        self._ready = ready
        self._lock = threading.Lock()

    @property
    def position(self) -> float:
        with self._lock:
            return self._position

    @property
    def ready(self) -> bool:
        return self._ready

    @ready.setter
    def ready(self, value: bool) -> None:
        self._ready = bool(value)

    def move_absolute(self, position: float) -> None:
        if not self._ready:
            raise RuntimeError(f"{self.name}: stage not ready")
        if self.move_time_s > 0:
            time.sleep(self.move_time_s)
        with self._lock:
            self._position = float(position) + self.offset
            self.moves.append(float(position))

    def __repr__(self) -> str:
        return f"SimulatedRotationStage({self.name!r}, position={self.position:.3f})"


def stages_ready(stages: Sequence[Optional[RotationStage]]) -> bool:
    return all(stage is not None and stage.ready for stage in stages)


def move_stages(
    stages: Sequence[RotationStage],
    positions: Sequence[float],
    executor: Optional[ThreadPoolExecutor] = None,
) -> None:
    """
    Move all stages concurrently and return once every move has finished.

    The first failing move re-raises after all moves were joined.
    """
    if len(stages) != len(positions):
        raise ValueError(f"got {len(positions)} positions for {len(stages)} stages")
    if executor is None:
        with ThreadPoolExecutor(max_workers=max(1, len(stages))) as pool:
            futures = [pool.submit(stage.move_absolute, float(pos)) for stage, pos in zip(stages, positions)]
    else:
        futures = [executor.submit(stage.move_absolute, float(pos)) for stage, pos in zip(stages, positions)]
    errors = [fut.exception() for fut in futures]
    for err in errors:
        if err is not None:
            raise err
