"""Pytest configuration and shared fixtures for eqkd-lab tests."""
import pytest
import numpy as np

from eqkd_lab.timetags import TimestampStream
from eqkd_lab.clock_sync import SyncParams
from eqkd_lab.sources import LinkParams, SimulatedLink
from eqkd_lab.settings import LinkSettings, save_settings
from eqkd_lab.stages import SimulatedRotationStage
from eqkd_lab.state_correction import LossMeasurement


# ============================================================================
# NUMPY FIXTURES
# ============================================================================

@pytest.fixture
def rng_seed():
    """Fixed random seed for reproducible tests."""
    return 42


@pytest.fixture
def np_rng(rng_seed):
    """NumPy random generator with fixed seed."""
    return np.random.default_rng(rng_seed)


# ============================================================================
# STREAM FIXTURES
# ============================================================================

@pytest.fixture
def small_pair():
    """Two short streams with a single coincidence at +30 ps."""
    alice = TimestampStream(times=[0, 1000, 5000], channels=[0, 1, 0])
    bob = TimestampStream(times=[1030, 9000], channels=[5, 6])
    return alice, bob


# ============================================================================
# SIMULATED LINK FIXTURES
# ============================================================================

DRIFT = 0.05


@pytest.fixture
def drift():
    return DRIFT


@pytest.fixture
def link_params():
    """Pulsed link with a strongly drifting Bob clock."""
    return LinkParams(drift_coefficient=DRIFT, base_error=0.01, seed=7)


@pytest.fixture
def sim_link(link_params):
    return SimulatedLink(link_params)


@pytest.fixture
def sync_params():
    return SyncParams()


@pytest.fixture
def settings_file(tmp_path):
    """Settings with the drift coefficient slightly off the true value."""
    path = tmp_path / "settings.json"
    save_settings(
        LinkSettings(packet_size=30000, linear_drift_coefficient=DRIFT * 1.002),
        str(path),
    )
    return str(path)


# ============================================================================
# STAGE FIXTURES
# ============================================================================

@pytest.fixture
def three_stages():
    return [SimulatedRotationStage(name=f"stage{i}") for i in range(3)]


@pytest.fixture
def quadratic_loss(three_stages):
    """
    Deterministic bowl around (3, -2, 1) read from the stage positions.
    Returns (measure, optimum).
    """
    optimum = np.array([3.0, -2.0, 1.0])

    def measure():
        pos = np.array([s.position for s in three_stages])
        value = 0.05 + float(np.sum((pos - optimum) ** 2)) * 1e-3
        return LossMeasurement(value=value, error=0.0)

    return measure, optimum
