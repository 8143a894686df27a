import numpy as np
import pandas as pd
import pytest

from combo_2stage.src.data import load_observations_csv, prepare_data
from combo_2stage.src.errors import ShapeMismatch


def test_prepare_data_builds_designs(small_dataset):
    d = small_dataset
    data = prepare_data(pd.Series(d.ystar1), d.ystar2, d.x[:, 0], d.z1, None)

    assert data.n == 300
    assert (data.px, data.pz1, data.pz2) == (1, 1, 0)
    assert np.all(data.X[:, 0] == 1.0)
    assert data.Z2.shape == (300, 1)
    assert not data.ystar1.flags.writeable


def test_prepare_data_rejects_bad_input(small_dataset):
    d = small_dataset
    with pytest.raises(ShapeMismatch):
        prepare_data(d.ystar1, d.ystar2[:-1])
    with pytest.raises(ShapeMismatch):
        prepare_data(d.ystar1, d.ystar2, d.x[:-1])
    with pytest.raises(ValueError):
        prepare_data(np.where(d.ystar1 == 2, 3, 1), d.ystar2)
    x = d.x.copy()
    x[0, 0] = np.nan
    with pytest.raises(ValueError):
        prepare_data(d.ystar1, d.ystar2, x)


def test_load_observations_csv(tmp_path):
    df = pd.DataFrame(
        {
            "ystar1": [1, 2, 1, 2],
            "ystar2": [1, 1, 2, np.nan],
            "x_age": [0.1, 0.2, 0.3, 0.4],
            "x_dose": [1.0, 0.0, 1.0, 0.0],
            "z1": [0.5, 0.6, 0.7, 0.8],
            "note": ["a", "b", "c", "d"],
        }
    )
    path = tmp_path / "obs.csv"
    df.to_csv(path, index=False)

    obs = load_observations_csv(str(path))
    assert obs["ystar1"].tolist() == [1.0, 2.0, 1.0]
    assert obs["x"].shape == (3, 2)
    assert obs["z1"].shape == (3, 1)
    assert obs["z2"] is None


def test_load_observations_csv_requires_outcomes(tmp_path):
    path = tmp_path / "bad.csv"
    pd.DataFrame({"ystar1": [1, 2], "x": [0.0, 1.0]}).to_csv(path, index=False)
    with pytest.raises(ValueError):
        load_observations_csv(str(path))
