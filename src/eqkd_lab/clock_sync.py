"""
Clock synchronization between two free-running time taggers.

The drift coefficient is refined by correlating Alice against several
drift-compensated copies of Bob and fitting a periodic pulse-train model to
each histogram; the tightest fitted peak width wins. A slower fiber offset
correction locates the correlated (entangled-pair) peak among the
accidental peaks.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import logging
import math
import time
import warnings

import numpy as np
from scipy.optimize import OptimizeWarning, curve_fit
from scipy.special import ndtr

from .coincidence import CLOCK_PAIRS, MIXED_BASIS_PAIRS, ChannelPair, CorrelationHistogram, correlate
from .events import EventBus, SyncClocksComplete, SyncCorrelationComplete
from .helpers import validate_channel_pairs, validate_float, validate_int
from .peaks import Peak, expected_peak_count, find_peaks, middle_peak, peak_count_plausible
from .timetags import TimestampStream, compensate_linear_drift

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncParams:
    time_bin: int = 1000
    clock_sync_time_window: int = 100000
    drift_rel_var: float = 0.001
    drift_num_var: int = 5
    std_tolerance: float = 4000.0
    excitation_period: int = 12500
    peak_binning: int = 2000
    peak_prominence: float = 3.0
    clock_channel_pairs: Tuple[ChannelPair, ...] = CLOCK_PAIRS
    corr_sync_time_window: int = 1000000
    corr_peak_offset_tolerance: int = 2000
    corr_channel_pairs: Tuple[ChannelPair, ...] = MIXED_BASIS_PAIRS
    min_sigma: float = 1.0
    max_fit_evaluations: int = 2000

    def __post_init__(self):
        validate_int("time_bin", self.time_bin, min_value=1)
        validate_int("clock_sync_time_window", self.clock_sync_time_window, min_value=1)
        validate_float("drift_rel_var", self.drift_rel_var, min_value=0.0)
        validate_int("drift_num_var", self.drift_num_var, min_value=0)
        validate_float("std_tolerance", self.std_tolerance, min_value=0.0)
        validate_int("excitation_period", self.excitation_period, min_value=1)
        validate_int("peak_binning", self.peak_binning, min_value=1)
        validate_int("corr_sync_time_window", self.corr_sync_time_window, min_value=1)
        validate_float("min_sigma", self.min_sigma, min_value=0.0)
        if self.clock_sync_time_window < self.excitation_period:
            raise ValueError("clock_sync_time_window must span at least one excitation period")
        object.__setattr__(
            self, "clock_channel_pairs", validate_channel_pairs("clock_channel_pairs", self.clock_channel_pairs)
        )
        object.__setattr__(
            self, "corr_channel_pairs", validate_channel_pairs("corr_channel_pairs", self.corr_channel_pairs)
        )


@dataclass
class SyncState:
    """
    Link-wide synchronization context, mutated only by ClockSynchronizer.

    Offsets are picoseconds to add to Alice times to land on Bob's time base.
    """
    linear_drift_coefficient: float = 0.0
    global_clock_offset: int = 0
    fiber_offset: int = 0
    is_synchronized: bool = False
    is_corr_synchronized: bool = False
    last_sigma: Optional[float] = None

    @property
    def correlation_offset(self) -> int:
        return int(self.global_clock_offset + self.fiber_offset)


@dataclass
class DriftTrial:
    index: int
    coefficient: float
    histogram: CorrelationHistogram
    peaks: List[Peak]
    middle: Optional[Peak]
    peak_count_ok: bool
    fit_ok: bool = False
    fitted_mean: Optional[float] = None
    sigma: Optional[float] = None
    sigma_err: Optional[float] = None
    fit_curve: Optional[np.ndarray] = None


@dataclass
class ClockSyncResult:
    peaks_found: bool
    is_synchronized: bool
    linear_drift_coefficient: float
    global_clock_offset: int
    histogram: Optional[CorrelationHistogram] = None
    fit_curve: Optional[np.ndarray] = None
    peaks: List[Peak] = field(default_factory=list)
    middle_peak: Optional[Peak] = None
    sigma: Optional[float] = None
    sigma_err: Optional[float] = None
    fitted_mean: Optional[float] = None
    compensated_bob: Optional[TimestampStream] = None
    trials: List[DriftTrial] = field(default_factory=list)
    packet_span_s: float = 0.0
    elapsed_s: float = 0.0
    message: str = ""


@dataclass
class CorrSyncResult:
    histogram: CorrelationHistogram
    peaks: List[Peak]
    corr_peak_found: bool
    is_corr_synchronized: bool
    corr_peak_pos: Optional[float]
    fiber_offset: int


def pulse_train_model(
    x: np.ndarray,
    mean: float,
    height: float,
    sigma: float,
    period: float,
    n_pulses: int,
    bin_width: float,
) -> np.ndarray:
    """
    Sum of bin-integrated Gaussians centred at mean + j*period.

    ``height`` is the area (counts) of one pulse; ``n_pulses`` pulses are
    placed on each side of ``mean``.
    """
    x = np.asarray(x, dtype=float)
    offsets = mean + np.arange(-n_pulses, n_pulses + 1, dtype=float) * period
    upper = (x[:, None] + bin_width / 2.0 - offsets[None, :]) / sigma
    lower = (x[:, None] - bin_width / 2.0 - offsets[None, :]) / sigma
    return height * (ndtr(upper) - ndtr(lower)).sum(axis=1)


def fit_pulse_train(
    histogram: CorrelationHistogram,
    middle: Peak,
    peaks: Sequence[Peak],
    period: float,
    n_expected: int,
    min_sigma: float = 1.0,
    max_evaluations: int = 2000,
) -> Optional[Tuple[float, float, float, float]]:
    """
    Least-squares fit of the pulse-train model to a histogram.

    The centre is bounded to within half a period of the middle peak and the
    width to [min_sigma, 0.75*period].

    Returns
    -------
    (mean, height, sigma, sigma_err) or None when the fit does not converge.
    """
    x = histogram.bin_centers.astype(float)
    y = histogram.counts.astype(float)
    bin_width = float(histogram.bin_width)
    n_side = n_expected + 1
    sigma_hi = 0.75 * period
    sigma_lo = min(max(min_sigma, 1e-3), sigma_hi / 2.0)

    mean_area = float(np.mean([p.area for p in peaks])) if peaks else float(y.sum())
    widths = [p.width for p in peaks if p.width > 0]
    sigma0 = float(np.clip(np.median(widths) if widths else bin_width, sigma_lo * 1.01, sigma_hi * 0.99))
    p0 = [float(middle.mean_time), max(mean_area, 1.0), sigma0]
    lower = [middle.mean_time - period / 2.0, 0.0, sigma_lo]
    upper = [middle.mean_time + period / 2.0, max(10.0 * y.sum(), 10.0), sigma_hi]

    def model(xv, mean, height, sigma):
        return pulse_train_model(xv, mean, height, sigma, period, n_side, bin_width)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", OptimizeWarning)
        try:
            popt, pcov = curve_fit(model, x, y, p0=p0, bounds=(lower, upper), max_nfev=max_evaluations)
        except (RuntimeError, ValueError) as exc:
            logger.debug("pulse train fit failed: %s", exc)
            return None

    if not np.all(np.isfinite(popt)):
        return None
    mean, height, sigma = (float(v) for v in popt)
    var = float(pcov[2, 2]) if np.ndim(pcov) == 2 else math.nan
    sigma_err = math.sqrt(var) if math.isfinite(var) and var >= 0 else math.inf
    return mean, height, sigma, sigma_err


class ClockSynchronizer:
    """
    Refines the linear drift coefficient and offsets of a SyncState.
    """

    def __init__(
        self,
        params: Optional[SyncParams] = None,
        state: Optional[SyncState] = None,
        events: Optional[EventBus] = None,
    ):
        self.params = params or SyncParams()
        self.state = state or SyncState()
        self.events = events or EventBus()

    def trial_coefficients(self) -> List[float]:
        k = self.params.drift_num_var
        c = self.state.linear_drift_coefficient
        return [c * (1.0 + s * self.params.drift_rel_var) for s in range(-k, k + 1)]

    def _run_trial(
        self,
        index: int,
        coefficient: float,
        alice: TimestampStream,
        bob: TimestampStream,
        n_expected: int,
    ) -> Tuple[DriftTrial, TimestampStream]:
        p = self.params
        bob_comp = compensate_linear_drift(bob, coefficient, start_time=bob.first_time)
        hist = correlate(
            alice,
            bob_comp,
            p.clock_channel_pairs,
            window=p.clock_sync_time_window,
            bin_width=p.time_bin,
            offset=self.state.correlation_offset,
        )
        peaks = find_peaks(hist, binning=p.peak_binning, prominence=p.peak_prominence)
        mid = middle_peak(peaks)
        trial = DriftTrial(
            index=index,
            coefficient=coefficient,
            histogram=hist,
            peaks=peaks,
            middle=mid,
            peak_count_ok=peak_count_plausible(len(peaks), n_expected),
        )
        if not trial.peak_count_ok or mid is None:
            logger.debug(
                "Drift trial %d (c=%.9g): %d peaks, expected %d, discarded",
                index, coefficient, len(peaks), n_expected,
            )
            return trial, bob_comp

        fit = fit_pulse_train(
            hist,
            mid,
            peaks,
            period=float(p.excitation_period),
            n_expected=n_expected,
            min_sigma=p.min_sigma,
            max_evaluations=p.max_fit_evaluations,
        )
        if fit is not None:
            mean, height, sigma, sigma_err = fit
            trial.fit_ok = True
            trial.fitted_mean = mean
            trial.sigma = sigma
            trial.sigma_err = sigma_err
            trial.fit_curve = pulse_train_model(
                hist.bin_centers, mean, height, sigma,
                float(p.excitation_period), n_expected + 1, float(hist.bin_width),
            )
        return trial, bob_comp

    def sync_clocks(self, alice: TimestampStream, bob: TimestampStream) -> ClockSyncResult:
        """
        Run one drift refinement cycle on a freshly captured stream pair.
        """
        started = time.perf_counter()
        p = self.params
        logger.info("Sync: Start synchronizing clocks")

        if alice.is_empty or bob.is_empty:
            self.state.is_synchronized = False
            result = ClockSyncResult(
                peaks_found=False,
                is_synchronized=False,
                linear_drift_coefficient=self.state.linear_drift_coefficient,
                global_clock_offset=self.state.global_clock_offset,
                message="empty timestamp packet",
            )
            logger.warning("Sync: empty timestamp packet, clocks not synchronized")
            self.events.emit(SyncClocksComplete(result=result))
            return result

        packet_span_s = min(alice.span_ps, bob.span_ps) * 1e-12
        self.state.global_clock_offset = bob.first_time - alice.first_time
        n_expected = expected_peak_count(p.clock_sync_time_window, p.excitation_period)

        trials: List[DriftTrial] = []
        compensated: List[TimestampStream] = []
        for idx, coefficient in enumerate(self.trial_coefficients()):
            trial, bob_comp = self._run_trial(idx, coefficient, alice, bob, n_expected)
            trials.append(trial)
            compensated.append(bob_comp)

        fitted = [t for t in trials if t.fit_ok]
        elapsed = time.perf_counter() - started

        if not fitted:
            central = trials[len(trials) // 2]
            self.state.is_synchronized = False
            result = ClockSyncResult(
                peaks_found=False,
                is_synchronized=False,
                linear_drift_coefficient=self.state.linear_drift_coefficient,
                global_clock_offset=self.state.global_clock_offset,
                histogram=central.histogram,
                peaks=central.peaks,
                middle_peak=central.middle,
                compensated_bob=compensated[central.index],
                trials=trials,
                packet_span_s=packet_span_s,
                elapsed_s=elapsed,
                message="no drift trial produced a converged pulse-train fit",
            )
            logger.warning(
                "Sync: no converged fit among %d drift trials | TimeSpan: %.3f s | DriftCoeff unchanged %.9g",
                len(trials), packet_span_s, self.state.linear_drift_coefficient,
            )
            self.events.emit(SyncClocksComplete(result=result))
            return result

        best = min(fitted, key=lambda t: t.sigma)
        synced = best.sigma <= p.std_tolerance
        self.state.linear_drift_coefficient = best.coefficient
        self.state.is_synchronized = synced
        self.state.last_sigma = best.sigma

        result = ClockSyncResult(
            peaks_found=True,
            is_synchronized=synced,
            linear_drift_coefficient=best.coefficient,
            global_clock_offset=self.state.global_clock_offset,
            histogram=best.histogram,
            fit_curve=best.fit_curve,
            peaks=best.peaks,
            middle_peak=best.middle,
            sigma=best.sigma,
            sigma_err=best.sigma_err,
            fitted_mean=best.fitted_mean,
            compensated_bob=compensated[best.index],
            trials=trials,
            packet_span_s=packet_span_s,
            elapsed_s=elapsed,
            message="clocks synchronized" if synced else "fitted width above tolerance",
        )
        logger.info(
            "Sync: Sync cycle complete in %.3f s | TimeSpan: %.3f s | Fitted sigma: %.2f(%.2f) | "
            "Pos: %.2f | Fitted pos: %.2f | new DriftCoeff %.9g | synchronized: %s",
            elapsed, packet_span_s, best.sigma, best.sigma_err, best.middle.mean_time,
            best.fitted_mean, best.coefficient, synced,
        )
        self.events.emit(SyncClocksComplete(result=result))
        return result

    def sync_correlation(self, alice: TimestampStream, bob_compensated: TimestampStream) -> CorrSyncResult:
        """
        Locate the correlated peak in mixed-basis coincidences and fold its
        position into the fiber offset.
        """
        p = self.params
        hist = correlate(
            alice,
            bob_compensated,
            p.corr_channel_pairs,
            window=p.corr_sync_time_window,
            bin_width=p.time_bin,
            offset=self.state.correlation_offset,
        )
        peaks = find_peaks(hist, binning=p.peak_binning, prominence=p.peak_prominence)

        found = False
        corr_sync = False
        corr_pos: Optional[float] = None
        if peaks:
            areas = np.array([pk.area for pk in peaks], dtype=float)
            av_area = float(areas.mean())
            av_area_err = math.sqrt(av_area)
            corr_peak = peaks[int(np.argmax(np.abs(areas - av_area)))]
            corr_pos = corr_peak.mean_time
            if abs(corr_peak.area - av_area) > 2.0 * av_area_err:
                found = True
                corr_sync = abs(corr_peak.mean_time) < p.corr_peak_offset_tolerance
                self.state.fiber_offset += int(round(corr_peak.mean_time))

        self.state.is_corr_synchronized = corr_sync
        result = CorrSyncResult(
            histogram=hist,
            peaks=peaks,
            corr_peak_found=found,
            is_corr_synchronized=corr_sync,
            corr_peak_pos=corr_pos,
            fiber_offset=self.state.fiber_offset,
        )
        if found:
            logger.info(
                "Sync: correlated peak at %.1f ps | fiber offset %d ps | correlation synchronized: %s",
                corr_pos, self.state.fiber_offset, corr_sync,
            )
        else:
            logger.warning("Sync: no significant correlated peak among %d peaks", len(peaks))
        self.events.emit(SyncCorrelationComplete(result=result))
        return result
