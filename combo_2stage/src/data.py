from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import ShapeMismatch
from .modeling import add_const, as_covariates


@dataclass(frozen=True)
class TwoStageData:
    """Observed outcomes and intercept-augmented design matrices for one fit.

    Estimators treat an instance as read-only for the duration of a fit.
    """

    ystar1: np.ndarray
    ystar2: np.ndarray
    X: np.ndarray
    Z1: np.ndarray
    Z2: np.ndarray

    @property
    def n(self) -> int:
        return int(self.ystar1.shape[0])

    @property
    def px(self) -> int:
        return int(self.X.shape[1] - 1)

    @property
    def pz1(self) -> int:
        return int(self.Z1.shape[1] - 1)

    @property
    def pz2(self) -> int:
        return int(self.Z2.shape[1] - 1)

    def stage_index(self) -> Dict[str, np.ndarray]:
        """0-based level indices (k_i, l_i) used for fancy indexing."""
        return {"k": self.ystar1 - 1, "l": self.ystar2 - 1}


def coerce_outcome(y, *, name: str = "y") -> np.ndarray:
    """Validate a binary outcome coded in {1, 2} and return it as int array."""

    arr = y.to_numpy() if isinstance(y, (pd.Series, pd.DataFrame)) else np.asarray(y)
    arr = np.asarray(arr).reshape(-1) if arr.ndim > 1 and 1 in arr.shape else arr
    if arr.ndim != 1:
        raise ShapeMismatch(f"{name} must be a vector, got shape {arr.shape}")
    if arr.size == 0:
        raise ValueError(f"{name} is empty")
    vals = np.asarray(arr, dtype=float)
    if not np.isfinite(vals).all() or not np.isin(vals, [1.0, 2.0]).all():
        raise ValueError(f"{name} must be coded with levels 1 and 2 only")
    return vals.astype(int)


def prepare_data(ystar1, ystar2, x=None, z1=None, z2=None) -> TwoStageData:
    """Validate observed outcomes and covariates and build design matrices."""

    k = coerce_outcome(ystar1, name="ystar1")
    l_ = coerce_outcome(ystar2, name="ystar2")
    n = int(k.shape[0])
    if l_.shape[0] != n:
        raise ShapeMismatch(f"ystar2 has {l_.shape[0]} rows, ystar1 has {n}")

    X = add_const(as_covariates(x, n, name="x"))
    Z1 = add_const(as_covariates(z1, n, name="z1"))
    Z2 = add_const(as_covariates(z2, n, name="z2"))

    for arr in (k, l_, X, Z1, Z2):
        arr.setflags(write=False)
    return TwoStageData(ystar1=k, ystar2=l_, X=X, Z1=Z1, Z2=Z2)


def _prefixed(cols: Sequence[str], prefix: str) -> list:
    return [c for c in cols if str(c).startswith(prefix)]


def load_observations_csv(
    path: str,
    *,
    ystar1_col: str = "ystar1",
    ystar2_col: str = "ystar2",
    x_prefix: str = "x",
    z1_prefix: str = "z1",
    z2_prefix: str = "z2",
) -> Dict[str, Optional[np.ndarray]]:
    """Load observed outcomes and covariates from a CSV.

    Covariate columns are picked up by prefix (e.g. x, x_age, z1_site,
    z2_lab). Rows with any missing value in the used columns are dropped,
    since missingness beyond misclassification is not modelled.
    """

    raw = pd.read_csv(path)
    missing = [c for c in (ystar1_col, ystar2_col) if c not in raw.columns]
    if missing:
        raise ValueError(f"{path}: missing outcome columns {missing}")

    other = [c for c in raw.columns if c not in (ystar1_col, ystar2_col)]
    z1_cols = _prefixed(other, z1_prefix)
    z2_cols = _prefixed(other, z2_prefix)
    x_cols = [c for c in _prefixed(other, x_prefix) if c not in z1_cols and c not in z2_cols]

    used = [ystar1_col, ystar2_col] + x_cols + z1_cols + z2_cols
    df = raw[used].apply(pd.to_numeric, errors="coerce").dropna().reset_index(drop=True)

    return {
        "ystar1": df[ystar1_col].to_numpy(dtype=float),
        "ystar2": df[ystar2_col].to_numpy(dtype=float),
        "x": df[x_cols].to_numpy(dtype=float) if x_cols else None,
        "z1": df[z1_cols].to_numpy(dtype=float) if z1_cols else None,
        "z2": df[z2_cols].to_numpy(dtype=float) if z2_cols else None,
    }
