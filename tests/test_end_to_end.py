"""Full pipeline on a 100,000 event packet: 5% drift, 12.5 ns comb."""
import pytest

from eqkd_lab.clock_sync import ClockSynchronizer, SyncParams, SyncState
from eqkd_lab.coincidence import KEY_PAIRS, correlate
from eqkd_lab.sifting import KeySifter
from eqkd_lab.sources import LinkParams, SimulatedLink

PACKET = 100_000


@pytest.mark.parametrize("error", [0.0, 0.05])
def test_synchronize_then_sift(error, drift):
    params = LinkParams(period_ps=12500, drift_coefficient=drift, base_error=error, seed=21)
    link = SimulatedLink(params)
    state = SyncState(linear_drift_coefficient=drift * 1.002)
    sync = ClockSynchronizer(SyncParams(), state)

    alice = link.alice.capture(PACKET)
    bob = link.bob.capture(PACKET)
    clock = sync.sync_clocks(alice, bob)
    assert clock.is_synchronized
    assert state.linear_drift_coefficient == pytest.approx(drift, rel=1e-4)

    corr = sync.sync_correlation(alice, clock.compensated_bob)
    assert corr.corr_peak_found

    hist = correlate(alice, clock.compensated_bob, KEY_PAIRS, window=1000, bin_width=100,
                     offset=state.correlation_offset)
    result = KeySifter().sift(alice, clock.compensated_bob, hist)
    assert result.n_bits > 30000
    # accidentals add a fraction of a percent on top of the source error
    assert result.cycle_qber == pytest.approx(error, abs=0.01)
    assert result.raw_rate > 0
