from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

import numpy as np


def example_beta() -> np.ndarray:
    return np.array([1.0, -2.0])


def example_gamma1() -> np.ndarray:
    # Columns: true level 1, true level 2.
    return np.array([[0.5, -0.5], [1.0, -1.0]])


def example_gamma2() -> np.ndarray:
    # gamma2[:, k, j]: first-stage level k, true level j.
    g = np.empty((2, 2, 2), dtype=float)
    g[:, 0, 0] = [1.5, 1.0]
    g[:, 1, 0] = [0.5, 0.5]
    g[:, 0, 1] = [-0.5, 0.0]
    g[:, 1, 1] = [-1.0, -1.0]
    return g


@dataclass(frozen=True)
class EMConfig:
    """Options for the EM estimator.

    tolerance:
        Stop when the absolute change in observed-data log-likelihood between
        iterations drops below this value.
    max_iterations:
        Hard cap; reaching it is reported (non-fatal) in the result.
    inner_max_iterations / inner_tolerance:
        IRLS settings for each weighted logit in the M-step.
    """

    tolerance: float = 1e-7
    max_iterations: int = 1500
    inner_max_iterations: int = 100
    inner_tolerance: float = 1e-10
    compute_se: bool = True
    naive: bool = True

    def __post_init__(self):
        if not (self.tolerance > 0):
            raise ValueError("tolerance must be positive")
        if int(self.max_iterations) < 1:
            raise ValueError("max_iterations must be >= 1")
        if int(self.inner_max_iterations) < 1:
            raise ValueError("inner_max_iterations must be >= 1")
        if not (self.inner_tolerance > 0):
            raise ValueError("inner_tolerance must be positive")


@dataclass(frozen=True)
class MCMCConfig:
    """Options for the multi-chain Metropolis sampler.

    n_samples counts every sweep of a chain, burn-in included; the first
    `burn_in` sweeps are discarded and every `thin`-th remaining sweep is kept.
    """

    n_chains: int = 4
    n_samples: int = 2000
    burn_in: int = 1000
    thin: int = 1
    proposal_sd: Union[float, Sequence[float]] = 0.1
    adapt: bool = True
    target_accept: float = 0.44
    seed: Optional[int] = None
    n_jobs: int = 1
    naive: bool = True

    def __post_init__(self):
        if int(self.n_chains) < 1:
            raise ValueError("n_chains must be >= 1")
        if int(self.n_samples) < 1:
            raise ValueError("n_samples must be >= 1")
        if int(self.burn_in) < 0:
            raise ValueError("burn_in must be >= 0")
        if int(self.thin) < 1:
            raise ValueError("thin must be >= 1")
        if not (0.0 < float(self.target_accept) < 1.0):
            raise ValueError("target_accept must be in (0, 1)")
        if int(self.n_jobs) < 1:
            raise ValueError("n_jobs must be >= 1")
        sd = np.asarray(self.proposal_sd, dtype=float)
        if not np.isfinite(sd).all() or np.any(sd <= 0):
            raise ValueError("proposal_sd must be positive and finite")

    @property
    def n_retained(self) -> int:
        kept = int(self.n_samples) - int(self.burn_in)
        return max(0, (kept + int(self.thin) - 1) // int(self.thin))


@dataclass(frozen=True)
class SimConfig:
    """Inputs for one synthetic two-stage dataset (defaults: worked example)."""

    seed: int = 123
    sample_size: int = 1000
    x_mu: Union[float, Sequence[float]] = 0.0
    x_sigma: Union[float, Sequence[float]] = 1.0
    z1_shape: Union[float, Sequence[float]] = 1.0
    z2_shape: Union[float, Sequence[float]] = 1.0
    beta: np.ndarray = field(default_factory=example_beta)
    gamma1: np.ndarray = field(default_factory=example_gamma1)
    gamma2: np.ndarray = field(default_factory=example_gamma2)

    def __post_init__(self):
        if int(self.sample_size) < 1:
            raise ValueError("sample_size must be a positive integer")


def should_stop(cancel) -> bool:
    """Evaluate a cooperative cancellation handle.

    Accepts None, a zero-argument callable returning bool, or an object with
    an `is_set()` method such as threading.Event.
    """
    if cancel is None:
        return False
    if hasattr(cancel, "is_set"):
        return bool(cancel.is_set())
    return bool(cancel())
