"""
Link controller: wires sources, stages, synchronizer, optimizer and sifter
into the long-running synchronization, state-correction and key-generation
activities.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging
import threading

from .clock_sync import ClockSynchronizer, ClockSyncResult, CorrSyncResult, SyncParams, SyncState
from .coincidence import KEY_PAIRS, CorrelationHistogram, correlate, overlap_ratio
from .events import EventBus, KeysGenerated
from .settings import LinkSettings, load_settings, save_settings
from .sifting import BasisMap, KeySifter, SiftResult
from .sources import Acquisition, StreamPair, TimestampSource
from .stages import RotationStage
from .state_correction import (
    LossFunction,
    LossParams,
    OptimizationResult,
    StateCorrection,
    StateCorrectionParams,
)
from .telemetry import KeyFile, StatsLog

logger = logging.getLogger(__name__)

ACTIVITIES = ("synchronization", "state_correction", "key_generation")


@dataclass
class SyncCycle:
    clock: ClockSyncResult
    correlation: Optional[CorrSyncResult]
    acquisition: Acquisition


@dataclass
class KeyCycle:
    sync: SyncCycle
    histogram: Optional[CorrelationHistogram]
    sift: SiftResult
    overlap: float = 0.0


class LinkController:
    """
    Owns the link state and runs one worker thread per activity.

    Each activity can also be driven one cycle at a time through
    ``synchronization_cycle``, ``run_state_correction`` and
    ``key_generation_cycle``.
    """

    def __init__(
        self,
        alice: TimestampSource,
        bob: TimestampSource,
        stages: Optional[Sequence[RotationStage]] = None,
        settings_path: Optional[str] = None,
        output_dir: str = "keys",
        sync_params: Optional[SyncParams] = None,
        correction_params: Optional[StateCorrectionParams] = None,
        loss_params: Optional[LossParams] = None,
        basis_map: Optional[BasisMap] = None,
        remote_key: Optional[Callable[[List[int]], None]] = None,
        stats_format: str = "network",
        track_fiber_offset: bool = True,
        correction_log_dir: Optional[str] = None,
        events: Optional[EventBus] = None,
    ):
        self.streams = StreamPair(alice, bob)
        self.stages = list(stages) if stages is not None else []
        self.settings_path = settings_path
        self.events = events or EventBus()
        self.remote_key = remote_key
        self.track_fiber_offset = track_fiber_offset

        if settings_path is not None:
            self.settings, reason = load_settings(settings_path)
            if reason is not None:
                logger.warning("Could not read configuration, using default settings: %s", reason)
        else:
            self.settings = LinkSettings()

        base = sync_params or SyncParams()
        self.sync_params = replace(
            base,
            drift_num_var=self.settings.linear_drift_coeff_num_var,
            drift_rel_var=self.settings.linear_drift_coeff_rel_var,
            clock_sync_time_window=self.settings.time_window,
            time_bin=self.settings.time_bin,
        )
        self.sync_state = SyncState(linear_drift_coefficient=self.settings.linear_drift_coefficient)
        self.synchronizer = ClockSynchronizer(self.sync_params, self.sync_state, self.events)
        self.correction_params = correction_params or StateCorrectionParams()
        self.correction_log_dir = correction_log_dir
        self.loss = LossFunction(self.acquire, loss_params)
        self.sifter = KeySifter(basis_map or BasisMap())

        self.output_dir = Path(output_dir)
        self.stats = StatsLog(str(self.output_dir / ("Stats.txt" if stats_format == "network" else "KeyStats.txt")), stats_format)
        self.alice_key_file = KeyFile(str(self.output_dir / "AliceKey.txt"))
        self.bob_key_file = KeyFile(str(self.output_dir / "BobKey.txt"))

        self._optimizer: Optional[StateCorrection] = None
        self._threads: Dict[str, threading.Thread] = {}
        self._stops: Dict[str, threading.Event] = {name: threading.Event() for name in ACTIVITIES}
        self._active: Dict[str, bool] = {name: False for name in ACTIVITIES}
        self._guard = threading.Lock()
        self._sync_lock = threading.Lock()

    # --- settings ---

    def current_settings(self) -> LinkSettings:
        return replace(
            self.settings,
            linear_drift_coefficient=self.sync_state.linear_drift_coefficient,
            time_window=self.sync_params.clock_sync_time_window,
            time_bin=self.sync_params.time_bin,
        )

    def save_settings(self, path: Optional[str] = None) -> Path:
        target = path or self.settings_path
        if target is None:
            raise ValueError("no settings path configured")
        self.settings = self.current_settings()
        out = save_settings(self.settings, target)
        logger.info("Settings saved in '%s'", out)
        return out

    # --- single cycles ---

    def synchronization_cycle(self) -> SyncCycle:
        with self._sync_lock:
            return self._synchronization_cycle()

    def _synchronization_cycle(self) -> SyncCycle:
        alice, bob = self.streams.capture(self.settings.packet_size)
        clock = self.synchronizer.sync_clocks(alice, bob)
        bob_comp = clock.compensated_bob if clock.compensated_bob is not None else bob
        corr = None
        synced = clock.is_synchronized
        if synced and self.track_fiber_offset:
            corr = self.synchronizer.sync_correlation(alice, bob_comp)
            synced = corr.corr_peak_found
        acquisition = Acquisition(
            alice=alice,
            bob=bob_comp,
            is_synchronized=synced,
            offset=self.sync_state.correlation_offset,
        )
        return SyncCycle(clock=clock, correlation=corr, acquisition=acquisition)

    def acquire(self) -> Acquisition:
        """Synchronized stream pair for one loss measurement."""
        return self.synchronization_cycle().acquisition

    def key_generation_cycle(self) -> KeyCycle:
        sync = self.synchronization_cycle()
        acq = sync.acquisition
        if not acq.is_synchronized:
            logger.info("Not in sync, no keys generated")
            return KeyCycle(sync=sync, histogram=None, sift=self.sifter.sift(acq.alice, acq.bob, None, is_synchronized=False))

        hist = correlate(
            acq.alice,
            acq.bob,
            KEY_PAIRS,
            window=self.settings.key_time_window,
            bin_width=self.settings.key_time_bin,
            offset=acq.offset,
        )
        result = self.sifter.sift(acq.alice, acq.bob, hist)
        self.alice_key_file.append(result.alice_bits.tolist())
        self.bob_key_file.append(result.bob_bits.tolist())
        overlap = overlap_ratio(acq.alice, acq.bob)
        if self.stats.fmt == "network":
            self.stats.write_network(result.raw_rate, self.sync_state.global_clock_offset, overlap)
        else:
            self.stats.write_local(result.raw_rate, result.qber)

        bob_indices = [int(i) for i in result.bob_indices]
        if self.remote_key is not None:
            self.remote_key(bob_indices)
        logger.info(
            "%d keys generated with a raw rate of %.3f keys/s | QBER: %.3f",
            result.n_bits, result.raw_rate, result.qber,
        )
        self.events.emit(KeysGenerated(result=result, sifted_bob_indices=tuple(bob_indices)))
        return KeyCycle(sync=sync, histogram=hist, sift=result, overlap=overlap)

    @property
    def state_correction(self) -> StateCorrection:
        """The link's optimizer; its best position and perturbation carry over between runs."""
        if self._optimizer is None:
            if len(self.stages) != 3:
                raise ValueError(f"state correction needs exactly 3 rotation stages, got {len(self.stages)}")
            self._optimizer = StateCorrection(
                self.stages, self.loss, self.correction_params, self.events, log_dir=self.correction_log_dir
            )
        return self._optimizer

    def run_state_correction(self, stop: Optional[threading.Event] = None) -> OptimizationResult:
        """
        Run one optimization. ``stop`` is the worker stop flag when called
        from the state correction thread; a stop issued before the run
        started cancels it right away.
        """
        optimizer = self.state_correction
        logger.info("Starting state correction with packet size %d", self.settings.packet_size)
        if stop is not None and stop.is_set():
            optimizer.cancel()
        return optimizer.run()

    # --- worker threads ---

    def is_active(self, activity: str) -> bool:
        return self._active[activity]

    def _start(self, activity: str, target: Callable[[threading.Event], None]) -> bool:
        with self._guard:
            if self._active[activity]:
                logger.warning("%s already active", activity)
                return False
            # one activity at a time owns the sync state
            running = [name for name, active in self._active.items() if active]
            if running:
                logger.warning("%s not started: %s is active", activity, running[0])
                return False
            self._active[activity] = True
            stop = self._stops[activity]
            stop.clear()

        def runner():
            logger.info("%s started", activity)
            try:
                target(stop)
            finally:
                with self._guard:
                    self._active[activity] = False
                logger.info("%s stopped", activity)

        thread = threading.Thread(target=runner, name=f"eqkd-{activity}", daemon=True)
        self._threads[activity] = thread
        thread.start()
        return True

    def _loop(self, activity: str, cycle: Callable[[], object], stop: threading.Event, max_cycles: Optional[int]) -> None:
        done = 0
        while not stop.is_set() and (max_cycles is None or done < max_cycles):
            try:
                cycle()
            except Exception:
                logger.exception("%s cycle failed", activity)
            done += 1

    def start_synchronization(self, max_cycles: Optional[int] = None) -> bool:
        return self._start(
            "synchronization",
            lambda stop: self._loop("synchronization", self.synchronization_cycle, stop, max_cycles),
        )

    def start_key_generation(self, max_cycles: Optional[int] = None) -> bool:
        return self._start(
            "key_generation",
            lambda stop: self._loop("key_generation", self.key_generation_cycle, stop, max_cycles),
        )

    def start_state_correction(self) -> bool:
        def target(stop: threading.Event) -> None:
            try:
                self.run_state_correction(stop)
            except Exception:
                logger.exception("state correction failed")

        return self._start("state_correction", target)

    def stop(self, activity: str, timeout: Optional[float] = None) -> None:
        self._stops[activity].set()
        if activity == "state_correction" and self._active[activity] and self._optimizer is not None:
            self._optimizer.cancel()
        thread = self._threads.get(activity)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def stop_all(self, timeout: Optional[float] = None) -> None:
        for activity in ACTIVITIES:
            self.stop(activity, timeout)

    def wait(self, activity: str, timeout: Optional[float] = None) -> None:
        thread = self._threads.get(activity)
        if thread is not None:
            thread.join(timeout)
