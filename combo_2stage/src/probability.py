"""Logit-link probabilities for the true-outcome and observation mechanisms.

Every mechanism is a binary logit with level 1 free and level 2 as the
reference (linear predictor fixed at 0):

    P(level 1) = expit(eta),   P(level 2) = expit(-eta)

Array layouts used throughout the package:

    outcome_probabilities  (n, j)         P(Y=j | x)
    stage1_probabilities   (n, j, k)      P(Y*1=k | Y=j, z1)
    stage2_probabilities   (n, j, k, l)   P(Y*2=l | Y*1=k, Y=j, z2)
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd
from scipy.special import expit

from .errors import ShapeMismatch
from .modeling import ModelParameters, add_const, as_covariates


def level_probabilities(eta: np.ndarray) -> np.ndarray:
    """Stack [P(level 1), P(level 2)] along a new last axis."""
    eta = np.asarray(eta, dtype=float)
    return np.stack([expit(eta), expit(-eta)], axis=-1)


def log_level_probabilities(eta: np.ndarray) -> np.ndarray:
    """Log of `level_probabilities`, finite for any finite eta."""
    eta = np.asarray(eta, dtype=float)
    return np.stack([-np.logaddexp(0.0, -eta), -np.logaddexp(0.0, eta)], axis=-1)


def outcome_linear_predictor(beta: np.ndarray, X: np.ndarray) -> np.ndarray:
    return np.asarray(X, dtype=float) @ np.asarray(beta, dtype=float)


def stage1_linear_predictor(gamma1: np.ndarray, Z1: np.ndarray) -> np.ndarray:
    """(n, j) linear predictors for Y*1 = 1."""
    return np.asarray(Z1, dtype=float) @ np.asarray(gamma1, dtype=float)


def stage2_linear_predictor(gamma2: np.ndarray, Z2: np.ndarray) -> np.ndarray:
    """(n, j, k) linear predictors for Y*2 = 1."""
    return np.einsum("ic,ckj->ijk", np.asarray(Z2, dtype=float), np.asarray(gamma2, dtype=float))


def outcome_probabilities(beta: np.ndarray, X: np.ndarray) -> np.ndarray:
    return level_probabilities(outcome_linear_predictor(beta, X))


def stage1_probabilities(gamma1: np.ndarray, Z1: np.ndarray) -> np.ndarray:
    return level_probabilities(stage1_linear_predictor(gamma1, Z1))


def stage2_probabilities(gamma2: np.ndarray, Z2: np.ndarray) -> np.ndarray:
    return level_probabilities(stage2_linear_predictor(gamma2, Z2))


def _design_for(gamma: np.ndarray, z, n: Optional[int], name: str) -> np.ndarray:
    Z = add_const(as_covariates(z, n, name=name))
    if Z.shape[1] != gamma.shape[0]:
        raise ShapeMismatch(
            f"{name} has {Z.shape[1] - 1} covariate columns but the coefficient tensor "
            f"expects {gamma.shape[0] - 1}"
        )
    return Z


def misclassification_prob(gamma1, z1=None, *, n: Optional[int] = None) -> pd.DataFrame:
    """First-stage misclassification probabilities for every subject.

    Returns one row per (Subject, Y, Ystar1) with P(Y*1 = Ystar1 | Y, z1).
    Levels and subjects are 1-indexed.
    """

    gamma1 = np.asarray(gamma1, dtype=float)
    if gamma1.ndim != 2 or gamma1.shape[1] != 2:
        raise ShapeMismatch(f"gamma1 must have shape (pz1 + 1, 2), got {gamma1.shape}")
    Z1 = _design_for(gamma1, z1, n, "z1")
    P = stage1_probabilities(gamma1, Z1)

    subj, j, k = np.indices(P.shape)
    return pd.DataFrame(
        {
            "Subject": subj.ravel() + 1,
            "Y": j.ravel() + 1,
            "Ystar1": k.ravel() + 1,
            "Probability": P.ravel(),
        }
    )


def misclassification_prob2(gamma2, z2=None, *, n: Optional[int] = None) -> pd.DataFrame:
    """Second-stage misclassification probabilities for every subject.

    One row per (Subject, Y, Ystar1, Ystar2) with
    P(Y*2 = Ystar2 | Y*1 = Ystar1, Y, z2).
    """

    gamma2 = np.asarray(gamma2, dtype=float)
    if gamma2.ndim != 3 or gamma2.shape[1:] != (2, 2):
        raise ShapeMismatch(f"gamma2 must have shape (pz2 + 1, 2, 2), got {gamma2.shape}")
    Z2 = _design_for(gamma2, z2, n, "z2")
    P = stage2_probabilities(gamma2, Z2)

    subj, j, k, l_ = np.indices(P.shape)
    return pd.DataFrame(
        {
            "Subject": subj.ravel() + 1,
            "Y": j.ravel() + 1,
            "Ystar1": k.ravel() + 1,
            "Ystar2": l_.ravel() + 1,
            "Probability": P.ravel(),
        }
    )


def misclassification_table(gamma, z=None, *, n: Optional[int] = None) -> pd.DataFrame:
    """Dispatch to the stage-1 (2D gamma) or stage-2 (3D gamma) table."""
    g = np.asarray(gamma, dtype=float)
    if g.ndim == 2:
        return misclassification_prob(g, z, n=n)
    if g.ndim == 3:
        return misclassification_prob2(g, z, n=n)
    raise ShapeMismatch(f"gamma must be 2D (stage 1) or 3D (stage 2), got ndim={g.ndim}")


def stage1_youden(gamma1: np.ndarray, Z1: np.ndarray) -> float:
    """Mean sensitivity + mean specificity - 1 for the first stage."""
    P = stage1_probabilities(gamma1, Z1)
    return float(P[:, 0, 0].mean() + P[:, 1, 1].mean() - 1.0)


def classification_rates(params: ModelParameters, z1=None, z2=None, *, n: Optional[int] = None) -> pd.DataFrame:
    """Average sensitivity/specificity per stage over the supplied covariates.

    Stage 2 rates are reported separately for each first-stage level, since
    the second measurement is conditioned on the first.
    """

    Z1 = _design_for(params.gamma1, z1, n, "z1")
    Z2 = _design_for(params.gamma2, z2, n, "z2")
    P1 = stage1_probabilities(params.gamma1, Z1)
    P2 = stage2_probabilities(params.gamma2, Z2)

    rows = [
        {
            "stage": 1,
            "ystar1": np.nan,
            "sensitivity": float(P1[:, 0, 0].mean()),
            "specificity": float(P1[:, 1, 1].mean()),
        }
    ]
    for k in range(2):
        rows.append(
            {
                "stage": 2,
                "ystar1": k + 1,
                "sensitivity": float(P2[:, 0, k, 0].mean()),
                "specificity": float(P2[:, 1, k, 1].mean()),
            }
        )
    return pd.DataFrame(rows)
