"""Synthetic two-stage misclassified outcome data.

Draw order per observation:

    x  ~ Normal(x_mu, x_sigma)
    z1 ~ Gamma(z1_shape, scale=1)
    z2 ~ Gamma(z2_shape, scale=1)
    Y   | x          ~ Bernoulli(P(Y=1 | x))
    Y*1 | Y, z1      ~ Bernoulli(P(Y*1=1 | Y, z1))
    Y*2 | Y*1, Y, z2 ~ Bernoulli(P(Y*2=1 | Y*1, Y, z2))

with "success" coded as level 1 and "failure" as level 2.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd

from .config import SimConfig
from .modeling import ModelParameters, add_const
from .probability import outcome_probabilities, stage1_probabilities, stage2_probabilities


@dataclass(frozen=True)
class GeneratedDataset:
    """One simulated dataset. `y` is latent in real data; kept for validation."""

    y: np.ndarray
    ystar1: np.ndarray
    ystar2: np.ndarray
    x: np.ndarray
    z1: np.ndarray
    z2: np.ndarray
    params: ModelParameters

    def __post_init__(self):
        for arr in (self.y, self.ystar1, self.ystar2, self.x, self.z1, self.z2):
            arr.setflags(write=False)

    @property
    def n(self) -> int:
        return int(self.y.shape[0])

    def to_frame(self) -> pd.DataFrame:
        cols = {"y": self.y, "ystar1": self.ystar1, "ystar2": self.ystar2}
        for name, mat in (("x", self.x), ("z1", self.z1), ("z2", self.z2)):
            if mat.shape[1] == 1:
                cols[name] = mat[:, 0]
            else:
                for c in range(mat.shape[1]):
                    cols[f"{name}_{c + 1}"] = mat[:, c]
        return pd.DataFrame(cols)


def as_generator(rng: Union[np.random.Generator, int, None]) -> np.random.Generator:
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


def _broadcast(value, p: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float).reshape(-1)
    if arr.size == 1:
        return np.full(p, float(arr[0]))
    if arr.size != p:
        raise ValueError(f"{name} must be a scalar or have {p} entries, got {arr.size}")
    return arr


def draw_level(rng: np.random.Generator, p_level1: np.ndarray) -> np.ndarray:
    """Bernoulli draw coded 1 (success) / 2 (failure)."""
    return np.where(rng.binomial(1, p_level1) == 1, 1, 2).astype(int)


def generate_data(
    sample_size: int,
    x_mu,
    x_sigma,
    z1_shape,
    z2_shape,
    beta,
    gamma1,
    gamma2,
    *,
    rng: Optional[Union[np.random.Generator, int]] = None,
) -> GeneratedDataset:
    """Generate a dataset from the two-stage misclassification model.

    Covariate widths come from the parameter shapes (rows minus intercept),
    so an intercept-only tensor yields an empty covariate matrix. `rng` is
    either a Generator owned by the caller or an integer seed.
    """

    if isinstance(sample_size, bool) or int(sample_size) != sample_size or int(sample_size) < 1:
        raise ValueError("sample_size must be a positive integer")
    n = int(sample_size)
    params = ModelParameters.coerce(beta, gamma1, gamma2)
    gen = as_generator(rng)

    px = params.beta.shape[0] - 1
    pz1 = params.gamma1.shape[0] - 1
    pz2 = params.gamma2.shape[0] - 1

    mu = _broadcast(x_mu, px, "x_mu")
    sigma = _broadcast(x_sigma, px, "x_sigma")
    if np.any(sigma <= 0):
        raise ValueError("x_sigma must be positive")
    shape1 = _broadcast(z1_shape, pz1, "z1_shape")
    shape2 = _broadcast(z2_shape, pz2, "z2_shape")
    if np.any(shape1 <= 0) or np.any(shape2 <= 0):
        raise ValueError("gamma shape parameters must be positive")

    x = gen.normal(loc=mu, scale=sigma, size=(n, px))
    z1 = gen.gamma(shape=shape1, scale=1.0, size=(n, pz1))
    z2 = gen.gamma(shape=shape2, scale=1.0, size=(n, pz2))

    X, Z1, Z2 = add_const(x), add_const(z1), add_const(z2)
    rows = np.arange(n)

    pi = outcome_probabilities(params.beta, X)
    y = draw_level(gen, pi[:, 0])

    P1 = stage1_probabilities(params.gamma1, Z1)
    ystar1 = draw_level(gen, P1[rows, y - 1, 0])

    P2 = stage2_probabilities(params.gamma2, Z2)
    ystar2 = draw_level(gen, P2[rows, y - 1, ystar1 - 1, 0])

    return GeneratedDataset(y=y, ystar1=ystar1, ystar2=ystar2, x=x, z1=z1, z2=z2, params=params)


def simulate_dataset(cfg: SimConfig) -> GeneratedDataset:
    """Generate the dataset described by a SimConfig (seeded)."""
    return generate_data(
        cfg.sample_size,
        cfg.x_mu,
        cfg.x_sigma,
        cfg.z1_shape,
        cfg.z2_shape,
        cfg.beta,
        cfg.gamma1,
        cfg.gamma2,
        rng=np.random.default_rng(cfg.seed),
    )
