import pytest

from crestflow.crestflow_core import CellSimulation


SMALL_CONFIG = {
    'domain_length': 1.0,
    'domain_height': 1.2,
    'final_length': 150.0,
    'final_time': 1.0,
    'dt': 0.01,
    'save_data': False,
    'verbose': False,
}


@pytest.fixture
def small_config():
    """A 100 x 120 grid growing to 150 microns over 100 steps."""
    return dict(SMALL_CONFIG)


@pytest.fixture
def make_sim(small_config):
    def _make(seed=0, rngs=None, **overrides):
        return CellSimulation({**small_config, **overrides}, config_name='test', seed=seed, rngs=rngs)
    return _make
