"""Uniform priors with explicit free / fixed-at-zero cells.

Priors are laid out over every outcome level, reference level included, so
that the position of each cell mirrors the model:

    beta    (2, px + 1)          [outcome level, coefficient]
    gamma1  (2, 2, pz1 + 1)      [Y*1 level k, true level j, coefficient]
    gamma2  (2, 2, 2, pz2 + 1)   [Y*2 level l, Y*1 level k, true level j, coefficient]

Level index 1 (the reference level) has its linear predictor fixed at zero,
so every cell there must be FixedAtZero. A non-reference cell may also be
FixedAtZero, which removes that coefficient from the model (held at 0).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np

from .errors import InvalidPrior, ShapeMismatch
from .modeling import ModelParameters


@dataclass(frozen=True)
class Free:
    """Uniform(lower, upper) prior on one coefficient."""

    lower: float
    upper: float

    def __post_init__(self):
        lo, hi = float(self.lower), float(self.upper)
        if not (math.isfinite(lo) and math.isfinite(hi)):
            raise InvalidPrior(f"free prior bounds must be finite, got ({lo}, {hi})")
        if not lo < hi:
            raise InvalidPrior(f"free prior bounds must satisfy lower < upper, got ({lo}, {hi})")
        object.__setattr__(self, "lower", lo)
        object.__setattr__(self, "upper", hi)


@dataclass(frozen=True)
class FixedAtZero:
    """A cell that is never sampled and stays at 0."""


Cell = Union[Free, FixedAtZero]


@dataclass(frozen=True)
class PriorSpec:
    """Object array of Free / FixedAtZero cells for one parameter tensor."""

    cells: np.ndarray

    def __post_init__(self):
        arr = np.asarray(self.cells, dtype=object)
        for cell in arr.flat:
            if not isinstance(cell, (Free, FixedAtZero)):
                raise InvalidPrior(f"prior cells must be Free or FixedAtZero, got {cell!r}")
        arr = arr.copy()
        arr.setflags(write=False)
        object.__setattr__(self, "cells", arr)

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.cells.shape)

    @classmethod
    def from_bounds(cls, lower, upper) -> "PriorSpec":
        """Build cells from numeric bound arrays where NaN marks an unused cell.

        Raises InvalidPrior when the arrays differ in shape or NaN placement,
        or a free cell has non-finite or unordered bounds.
        """
        lo = np.asarray(lower, dtype=float)
        hi = np.asarray(upper, dtype=float)
        if lo.shape != hi.shape:
            raise InvalidPrior(f"lower and upper bounds differ in shape: {lo.shape} vs {hi.shape}")
        unused_lo, unused_hi = np.isnan(lo), np.isnan(hi)
        if not np.array_equal(unused_lo, unused_hi):
            bad = np.argwhere(unused_lo != unused_hi)
            raise InvalidPrior(
                f"unused (NaN) cells differ between lower and upper bounds at {bad[:5].tolist()}"
            )
        cells = np.empty(lo.shape, dtype=object)
        for idx in np.ndindex(lo.shape):
            cells[idx] = FixedAtZero() if unused_lo[idx] else Free(lo[idx], hi[idx])
        return cls(cells)

    @classmethod
    def uniform(cls, shape: Tuple[int, ...], lower: float = -10.0, upper: float = 10.0) -> "PriorSpec":
        """Free(lower, upper) on level 0 of the first axis, FixedAtZero on the reference level."""
        cells = np.empty(shape, dtype=object)
        for idx in np.ndindex(shape):
            cells[idx] = Free(lower, upper) if idx[0] == 0 else FixedAtZero()
        return cls(cells)

    def bounds(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """(free_mask, lower, upper) arrays; fixed cells get bounds (0, 0)."""
        free = np.zeros(self.shape, dtype=bool)
        lo = np.zeros(self.shape, dtype=float)
        hi = np.zeros(self.shape, dtype=float)
        for idx in np.ndindex(self.shape):
            cell = self.cells[idx]
            if isinstance(cell, Free):
                free[idx] = True
                lo[idx], hi[idx] = cell.lower, cell.upper
        return free, lo, hi

    def check_reference(self, name: str) -> None:
        if self.cells.ndim < 2 or self.shape[0] != 2:
            raise ShapeMismatch(f"{name} prior must have 2 levels on its first axis, got shape {self.shape}")
        free, _, _ = self.bounds()
        if free[1].any():
            raise InvalidPrior(f"{name} prior marks a reference-level cell as free; it must be unused")


@dataclass(frozen=True)
class CompiledPrior:
    """Prior in flattened-parameter order (see ModelParameters.to_vector)."""

    free: np.ndarray
    lower: np.ndarray
    upper: np.ndarray

    @property
    def free_index(self) -> np.ndarray:
        return np.flatnonzero(self.free)

    def in_support(self, vec: np.ndarray) -> bool:
        vec = np.asarray(vec, dtype=float)
        f = self.free
        if np.any(vec[~f] != 0.0):
            return False
        return bool(np.all((vec[f] >= self.lower[f]) & (vec[f] <= self.upper[f])))

    def log_prior(self, vec: np.ndarray) -> float:
        if not self.in_support(vec):
            return -np.inf
        f = self.free
        return float(-np.sum(np.log(self.upper[f] - self.lower[f])))

    def clamp_fixed(self, vec: np.ndarray) -> np.ndarray:
        out = np.array(vec, dtype=float, copy=True)
        out[~self.free] = 0.0
        return out


def _to_param_layout_beta(arr: np.ndarray) -> np.ndarray:
    return arr[0]


def _to_param_layout_gamma1(arr: np.ndarray) -> np.ndarray:
    # [k=0, j, c] -> [c, j]
    return arr[0].T


def _to_param_layout_gamma2(arr: np.ndarray) -> np.ndarray:
    # [l=0, k, j, c] -> [c, k, j]
    return np.transpose(arr[0], (2, 0, 1))


@dataclass(frozen=True)
class TwoStagePrior:
    beta: PriorSpec
    gamma1: PriorSpec
    gamma2: PriorSpec

    @classmethod
    def from_bounds(cls, beta_lower, beta_upper, gamma1_lower, gamma1_upper, gamma2_lower, gamma2_upper) -> "TwoStagePrior":
        return cls(
            beta=PriorSpec.from_bounds(beta_lower, beta_upper),
            gamma1=PriorSpec.from_bounds(gamma1_lower, gamma1_upper),
            gamma2=PriorSpec.from_bounds(gamma2_lower, gamma2_upper),
        )

    def validate(self, px: int, pz1: int, pz2: int) -> None:
        expected = {
            "beta": (2, px + 1),
            "gamma1": (2, 2, pz1 + 1),
            "gamma2": (2, 2, 2, pz2 + 1),
        }
        for name, shape in expected.items():
            spec: PriorSpec = getattr(self, name)
            if spec.shape != shape:
                raise ShapeMismatch(f"{name} prior has shape {spec.shape}, expected {shape}")
            spec.check_reference(name)

    def compile(self, template: ModelParameters) -> CompiledPrior:
        """Map prior cells onto the flattened parameter vector of `template`."""
        self.validate(template.beta.shape[0] - 1, template.gamma1.shape[0] - 1, template.gamma2.shape[0] - 1)
        parts = []
        for spec, to_layout in (
            (self.beta, _to_param_layout_beta),
            (self.gamma1, _to_param_layout_gamma1),
            (self.gamma2, _to_param_layout_gamma2),
        ):
            parts.append(tuple(to_layout(a) for a in spec.bounds()))

        def flat(i: int) -> np.ndarray:
            b, g1, g2 = (p[i] for p in parts)
            return np.concatenate([b.ravel(), g1.ravel(order="F"), g2.ravel(order="F")])

        return CompiledPrior(free=flat(0).astype(bool), lower=flat(1), upper=flat(2))

    def naive(self) -> "NaivePrior":
        """Naive-model prior: beta prior plus the gamma2 prior at true level 1."""
        gamma_cells = self.gamma2.cells[:, :, 0, :]
        return NaivePrior(beta=self.beta, gamma=PriorSpec(gamma_cells))


@dataclass(frozen=True)
class NaivePrior:
    """Prior for the naive model: beta (2, px+1) and gamma (2[l], 2[k], pz2+1)."""

    beta: PriorSpec
    gamma: PriorSpec

    def compile(self, n_beta: int, n_gamma: int) -> CompiledPrior:
        if self.beta.shape != (2, n_beta):
            raise ShapeMismatch(f"naive beta prior has shape {self.beta.shape}, expected {(2, n_beta)}")
        if self.gamma.shape != (2, 2, n_gamma):
            raise ShapeMismatch(f"naive gamma prior has shape {self.gamma.shape}, expected {(2, 2, n_gamma)}")
        self.beta.check_reference("naive beta")
        self.gamma.check_reference("naive gamma")
        b = self.beta.bounds()
        g = self.gamma.bounds()

        def flat(i: int) -> np.ndarray:
            # gamma [l=0, k, c] -> [c, k], column-major
            return np.concatenate([b[i][0].ravel(), g[i][0].T.ravel(order="F")])

        return CompiledPrior(free=flat(0).astype(bool), lower=flat(1), upper=flat(2))


def uniform_prior(px: int, pz1: int, pz2: int, lower: float = -10.0, upper: float = 10.0) -> TwoStagePrior:
    """Uniform(lower, upper) on every free coefficient of the two-stage model."""
    return TwoStagePrior(
        beta=PriorSpec.uniform((2, px + 1), lower, upper),
        gamma1=PriorSpec.uniform((2, 2, pz1 + 1), lower, upper),
        gamma2=PriorSpec.uniform((2, 2, 2, pz2 + 1), lower, upper),
    )