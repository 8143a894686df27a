from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm

from .errors import ShapeMismatch


def as_covariates(z, n: Optional[int] = None, *, name: str = "z") -> np.ndarray:
    """Coerce a covariate input into a float (n, p) matrix without intercept.

    `None` means no covariates (intercept-only mechanism); in that case `n`
    must be supplied. 1D inputs are treated as a single covariate column.
    """

    if z is None:
        if n is None:
            raise ValueError(f"{name}: cannot infer row count from None")
        return np.empty((int(n), 0), dtype=float)

    arr = z.to_numpy(dtype=float) if isinstance(z, (pd.DataFrame, pd.Series)) else np.asarray(z, dtype=float)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    if arr.ndim != 2:
        raise ShapeMismatch(f"{name}: expected a 1D or 2D covariate array, got ndim={arr.ndim}")
    if n is not None and arr.shape[0] != int(n):
        raise ShapeMismatch(f"{name}: expected {int(n)} rows, got {arr.shape[0]}")
    if not np.isfinite(arr).all():
        raise ValueError(f"{name}: covariates must be finite")
    return arr


def add_const(Z: np.ndarray) -> np.ndarray:
    """Prepend an intercept column (always added, even if a constant exists)."""
    Z = np.asarray(Z, dtype=float)
    if Z.shape[1] == 0:
        return np.ones((Z.shape[0], 1), dtype=float)
    return np.asarray(sm.add_constant(Z, has_constant="add"), dtype=float)


def parameter_names(n_beta: int, n_gamma1: int, n_gamma2: int) -> List[str]:
    """Names in flattened-vector order: beta, gamma1 (c fastest), gamma2 (c, k, j)."""

    names = [f"beta[{c + 1}]" for c in range(n_beta)]
    for j in range(2):
        for c in range(n_gamma1):
            names.append(f"gamma1[{c + 1},{j + 1}]")
    for j in range(2):
        for k in range(2):
            for c in range(n_gamma2):
                names.append(f"gamma2[{c + 1},{k + 1},{j + 1}]")
    return names


def _readonly(x) -> np.ndarray:
    arr = np.array(x, dtype=float, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class ModelParameters:
    """Free-contrast parameter tensors for the two-stage model.

    beta:
        (px + 1,) coefficients for P(Y=1 | x).
    gamma1:
        (pz1 + 1, 2); column j gives P(Y*1=1 | Y=j, z1).
    gamma2:
        (pz2 + 1, 2, 2); gamma2[:, k, j] gives P(Y*2=1 | Y*1=k, Y=j, z2).

    Arrays are copied and made read-only on construction.
    """

    beta: np.ndarray
    gamma1: np.ndarray
    gamma2: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "beta", _readonly(self.beta))
        object.__setattr__(self, "gamma1", _readonly(self.gamma1))
        object.__setattr__(self, "gamma2", _readonly(self.gamma2))

    @classmethod
    def coerce(cls, beta, gamma1, gamma2) -> "ModelParameters":
        b = np.asarray(beta, dtype=float)
        if b.ndim == 2 and b.shape[1] == 1:
            b = b[:, 0]
        if b.ndim != 1 or b.size == 0:
            raise ShapeMismatch(f"beta must be a vector (or single column), got shape {np.shape(beta)}")

        g1 = np.asarray(gamma1, dtype=float)
        if g1.ndim != 2 or g1.shape[1] != 2:
            raise ShapeMismatch(f"gamma1 must have shape (pz1 + 1, 2), got {g1.shape}")

        g2 = np.asarray(gamma2, dtype=float)
        if g2.ndim != 3 or g2.shape[1:] != (2, 2):
            raise ShapeMismatch(f"gamma2 must have shape (pz2 + 1, 2, 2), got {g2.shape}")

        for name, arr in (("beta", b), ("gamma1", g1), ("gamma2", g2)):
            if not np.isfinite(arr).all():
                raise ValueError(f"{name} must be finite")
        return cls(beta=b, gamma1=g1, gamma2=g2)

    @property
    def sizes(self) -> Tuple[int, int, int]:
        return int(self.beta.size), int(self.gamma1.size), int(self.gamma2.size)

    @property
    def n_params(self) -> int:
        return int(sum(self.sizes))

    def check_dims(self, px: int, pz1: int, pz2: int) -> None:
        """Raise ShapeMismatch unless tensors match covariate widths (+ intercept)."""
        problems = []
        if self.beta.shape[0] != px + 1:
            problems.append(f"beta has {self.beta.shape[0]} coefficients, x needs {px + 1}")
        if self.gamma1.shape[0] != pz1 + 1:
            problems.append(f"gamma1 has {self.gamma1.shape[0]} rows, z1 needs {pz1 + 1}")
        if self.gamma2.shape[0] != pz2 + 1:
            problems.append(f"gamma2 has {self.gamma2.shape[0]} rows, z2 needs {pz2 + 1}")
        if problems:
            raise ShapeMismatch("; ".join(problems))

    def to_vector(self) -> np.ndarray:
        return np.concatenate(
            [self.beta, self.gamma1.ravel(order="F"), self.gamma2.ravel(order="F")]
        )

    def from_vector(self, vec: np.ndarray) -> "ModelParameters":
        """Rebuild parameters with this instance's shapes from a flat vector."""
        vec = np.asarray(vec, dtype=float).reshape(-1)
        nb, ng1, ng2 = self.sizes
        if vec.size != nb + ng1 + ng2:
            raise ShapeMismatch(f"parameter vector has length {vec.size}, expected {nb + ng1 + ng2}")
        beta = vec[:nb]
        gamma1 = vec[nb:nb + ng1].reshape(self.gamma1.shape, order="F")
        gamma2 = vec[nb + ng1:].reshape(self.gamma2.shape, order="F")
        return ModelParameters(beta=beta, gamma1=gamma1, gamma2=gamma2)

    def block_ids(self) -> np.ndarray:
        """0/1/2 per vector entry for beta/gamma1/gamma2."""
        nb, ng1, ng2 = self.sizes
        return np.repeat(np.array([0, 1, 2]), [nb, ng1, ng2])

    def names(self) -> List[str]:
        return parameter_names(self.beta.shape[0], self.gamma1.shape[0], self.gamma2.shape[0])

    def to_series(self) -> pd.Series:
        return pd.Series(self.to_vector(), index=self.names(), dtype=float)

    def allclose(self, other: "ModelParameters", *, atol: float = 0.0) -> bool:
        return bool(np.allclose(self.to_vector(), other.to_vector(), rtol=0.0, atol=atol))
