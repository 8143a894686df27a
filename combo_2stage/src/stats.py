from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.stats import norm
from statsmodels.tools.sm_exceptions import PerfectSeparationError, PerfectSeparationWarning

from .errors import SingularDesign

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WeightedLogitFit:
    """Result of one weighted logit solve (params in exog column order)."""

    params: np.ndarray
    llf: float
    converged: bool
    n_iter: int
    nobs: int
    cov: np.ndarray


def fit_weighted_logit(
    endog,
    exog,
    weights=None,
    *,
    start_params: Optional[np.ndarray] = None,
    maxiter: int = 100,
    tol: float = 1e-10,
    label: str = "logit",
) -> WeightedLogitFit:
    """Fit a weighted binomial-logit GLM by IRLS.

    Parameters
    ----------
    endog:
        Response in [0, 1]. Fractional values are allowed (expected counts),
        which is how the EM update for the true-outcome mechanism is posed.
    weights:
        Non-negative case weights (EM responsibilities). Rows with zero
        weight carry no information and are dropped before fitting.
    label:
        Mechanism name reported in SingularDesign errors and debug logs.

    Notes
    -----
    This is the single solver shared by every mechanism update (beta, each
    gamma1 stratum, each gamma2 stratum) and the naive baseline.

    Raises
    ------
    SingularDesign
        If no row has positive weight, the weighted design is rank deficient,
        statsmodels detects perfect separation, or the solution is not finite.
    """

    y = np.asarray(endog, dtype=float).reshape(-1)
    X = np.asarray(exog, dtype=float)
    if X.ndim != 2 or X.shape[0] != y.shape[0]:
        raise ValueError(f"{label}: exog must be 2D with {y.shape[0]} rows, got shape {X.shape}")
    w = np.ones_like(y) if weights is None else np.asarray(weights, dtype=float).reshape(-1)
    if w.shape[0] != y.shape[0]:
        raise ValueError(f"{label}: weights must have the same length as endog")
    if np.any(w < 0) or not np.isfinite(w).all():
        raise ValueError(f"{label}: weights must be finite and non-negative")
    if np.any((y < 0.0) | (y > 1.0)):
        raise ValueError(f"{label}: endog must lie in [0, 1]")

    keep = w > 0.0
    if not np.any(keep):
        raise SingularDesign("no observations with positive weight", mechanism=label)
    y, X, w = y[keep], X[keep], w[keep]

    if np.linalg.matrix_rank(X * np.sqrt(w)[:, None]) < X.shape[1]:
        raise SingularDesign(
            f"weighted design matrix is rank deficient ({X.shape[0]} rows, {X.shape[1]} columns)",
            mechanism=label,
        )

    model = sm.GLM(y, X, family=sm.families.Binomial(), freq_weights=w)
    with warnings.catch_warnings():
        warnings.simplefilter("error", PerfectSeparationWarning)
        try:
            res = model.fit(start_params=start_params, maxiter=int(maxiter), tol=float(tol))
        except (PerfectSeparationWarning, PerfectSeparationError) as e:
            raise SingularDesign("perfect separation detected", mechanism=label) from e
        except np.linalg.LinAlgError as e:
            raise SingularDesign(f"linear solve failed: {e}", mechanism=label) from e

    params = np.asarray(res.params, dtype=float)
    if not np.isfinite(params).all():
        raise SingularDesign("non-finite coefficients", mechanism=label)

    converged = bool(getattr(res, "converged", True))
    n_iter = int(res.fit_history.get("iteration", 0)) if hasattr(res, "fit_history") else 0
    if not converged:
        log.debug("%s: IRLS stopped after %d iterations without converging", label, n_iter)

    return WeightedLogitFit(
        params=params,
        llf=float(res.llf),
        converged=converged,
        n_iter=n_iter,
        nobs=int(y.shape[0]),
        cov=np.asarray(res.cov_params(), dtype=float),
    )


def tidy_coef_table(terms: Sequence[str], params, cov: Optional[np.ndarray] = None) -> pd.DataFrame:
    """Create a tidy coefficient table from estimates and a covariance matrix.

    Without a covariance matrix the se/z/p_value columns are NaN.
    """
    params = np.asarray(params, dtype=float).reshape(-1)
    if cov is None:
        se = np.full(params.shape, np.nan)
    else:
        se = np.sqrt(np.clip(np.diag(np.asarray(cov, dtype=float)), 0.0, np.inf))
    with np.errstate(divide="ignore", invalid="ignore"):
        zvals = params / np.where(se == 0, np.nan, se)
    pvals = 2.0 * norm.sf(np.abs(zvals))
    return pd.DataFrame({"term": list(terms), "coef": params, "se": se, "z": zvals, "p_value": pvals})