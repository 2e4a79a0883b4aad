"""
Observer interface for worker loop notifications.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple
import logging
import threading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LossEvaluated:
    positions: Tuple[float, ...]
    cost: float
    error: float
    measurement: Any = None


@dataclass(frozen=True)
class OptimizationComplete:
    result: Any


@dataclass(frozen=True)
class SyncClocksComplete:
    result: Any


@dataclass(frozen=True)
class SyncCorrelationComplete:
    result: Any


@dataclass(frozen=True)
class KeysGenerated:
    result: Any
    sifted_bob_indices: Tuple[int, ...] = ()


@dataclass(frozen=True)
class BasisCompleted:
    index: int
    angles: Tuple[float, ...]
    value: float
    error: float


@dataclass(frozen=True)
class BasisSweepComplete:
    result: Any


class EventBus:
    """
    Synchronous fan-out of events to subscribers.

    Callbacks run on the emitting worker thread. A callback that raises is
    logged and skipped.
    """

    def __init__(self):
        self._subscribers: List[Callable[[Any], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[Any], None], kind: Optional[type] = None) -> Callable[[], None]:
        if kind is not None:
            inner = callback

            def callback(event, _inner=inner, _kind=kind):
                if isinstance(event, _kind):
                    _inner(event)

        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: Any) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("event subscriber failed on %s", type(event).__name__)
