import pytest

from combo_2stage.src.config import SimConfig
from combo_2stage.src.data import prepare_data
from combo_2stage.src.simulate import simulate_dataset


@pytest.fixture(scope="session")
def example_dataset():
    # Worked example: n=1000, seed=123, beta=(1, -2).
    return simulate_dataset(SimConfig())


@pytest.fixture(scope="session")
def example_data(example_dataset):
    d = example_dataset
    return prepare_data(d.ystar1, d.ystar2, d.x, d.z1, d.z2)


@pytest.fixture(scope="session")
def small_dataset():
    return simulate_dataset(SimConfig(seed=7, sample_size=300))


@pytest.fixture
def observed(example_dataset):
    d = example_dataset
    return d.ystar1, d.ystar2, d.x, d.z1, d.z2


@pytest.fixture(scope="session")
def example_em(example_dataset):
    from combo_2stage.src.em import fit_em

    d = example_dataset
    p = d.params
    return fit_em(d.ystar1, d.ystar2, d.x, d.z1, d.z2, p.beta, p.gamma1, p.gamma2)
