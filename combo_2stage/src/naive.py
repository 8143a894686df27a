"""Naive (misclassification-ignorant) reference model.

Y*1 is treated as the true outcome, so the model has no latent variable:

    P(Y*1=1 | x)        = expit(x . beta)
    P(Y*2=1 | Y*1=k, z2) = expit(z2 . gamma[:, k])

It is what an analysis that trusts the first measurement would report.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

import numpy as np
import pandas as pd
from scipy.linalg import block_diag

from .data import TwoStageData
from .stats import fit_weighted_logit, tidy_coef_table


def naive_parameter_names(n_beta: int, n_gamma: int) -> List[str]:
    names = [f"naive_beta[{c + 1}]" for c in range(n_beta)]
    for k in range(2):
        for c in range(n_gamma):
            names.append(f"naive_gamma[{c + 1},{k + 1}]")
    return names


@dataclass(frozen=True)
class NaiveFit:
    beta: np.ndarray
    gamma: np.ndarray
    coefficients: pd.DataFrame

    def to_vector(self) -> np.ndarray:
        return np.concatenate([self.beta, self.gamma.ravel(order="F")])


def fit_naive_mle(data: TwoStageData, *, maxiter: int = 100, tol: float = 1e-10) -> NaiveFit:
    """Maximum-likelihood naive fit: independent logits for Y*1 and Y*2 | Y*1.

    Raises SingularDesign when a stratum is empty or separated.
    """

    is1 = (data.ystar1 == 1).astype(float)
    is2 = (data.ystar2 == 1).astype(float)

    fit_b = fit_weighted_logit(is1, data.X, maxiter=maxiter, tol=tol, label="naive_beta")
    gamma = np.empty((data.Z2.shape[1], 2), dtype=float)
    covs = [fit_b.cov]
    for k in range(2):
        rows = data.ystar1 == k + 1
        fit_g = fit_weighted_logit(
            is2[rows], data.Z2[rows], maxiter=maxiter, tol=tol, label=f"naive_gamma[k={k + 1}]"
        )
        gamma[:, k] = fit_g.params
        covs.append(fit_g.cov)

    names = naive_parameter_names(fit_b.params.shape[0], gamma.shape[0])
    coef = np.concatenate([fit_b.params, gamma.ravel(order="F")])
    table = tidy_coef_table(names, coef, block_diag(*covs))
    return NaiveFit(beta=fit_b.params, gamma=gamma, coefficients=table)
