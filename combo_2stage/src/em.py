"""EM estimation of the two-stage misclassification model.

E-step: responsibilities w_ij = P(Y=j | Y*1=k_i, Y*2=l_i, x_i, z1_i, z2_i).

M-step (each a weighted logit solved by IRLS, warm-started at the current
values):

    beta           fractional-response logit of w_i1 on x
    gamma1[:, j]   logit of 1{Y*1=1} on z1, weights w_ij
    gamma2[:, k, j] logit of 1{Y*2=1} on z2 among Y*1=k, weights w_ij

The label-switching corrector runs after every M-step, before the next
E-step. Iteration stops when the observed-data log-likelihood changes by
less than `tolerance`.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from statsmodels.tools.numdiff import approx_hess

from .config import EMConfig, should_stop
from .data import TwoStageData, prepare_data
from .errors import NonConvergenceWarning, SingularDesign
from .label_switching import LabelSwitchCorrector
from .likelihood import loglik_from_vector, observed_loglik, responsibilities
from .modeling import ModelParameters
from .naive import fit_naive_mle
from .stats import fit_weighted_logit, tidy_coef_table

log = logging.getLogger(__name__)

STATUS_CONVERGED = "converged"
STATUS_MAX_ITERATIONS = "max_iterations"
STATUS_CANCELLED = "cancelled"


@dataclass(frozen=True)
class EstimateResult:
    """EM point estimates plus convergence metadata.

    `converged` is False for both the iteration cap and cancellation; the
    estimate is then the last (best so far) iterate and `status` says why.
    """

    params: ModelParameters
    coefficients: pd.DataFrame
    converged: bool
    status: str
    n_iterations: int
    loglik: float
    loglik_path: np.ndarray
    cov: Optional[np.ndarray] = None
    naive: Optional[pd.DataFrame] = None

    @property
    def beta(self) -> np.ndarray:
        return self.params.beta

    @property
    def gamma1(self) -> np.ndarray:
        return self.params.gamma1

    @property
    def gamma2(self) -> np.ndarray:
        return self.params.gamma2


def m_step(
    data: TwoStageData,
    resp: np.ndarray,
    current: ModelParameters,
    *,
    maxiter: int = 100,
    tol: float = 1e-10,
) -> ModelParameters:
    """Maximize the expected complete-data log-likelihood given responsibilities."""

    beta = fit_weighted_logit(
        resp[:, 0], data.X, start_params=current.beta, maxiter=maxiter, tol=tol, label="beta"
    ).params

    is1 = (data.ystar1 == 1).astype(float)
    gamma1 = np.empty(current.gamma1.shape, dtype=float)
    for j in range(2):
        gamma1[:, j] = fit_weighted_logit(
            is1,
            data.Z1,
            resp[:, j],
            start_params=current.gamma1[:, j],
            maxiter=maxiter,
            tol=tol,
            label=f"gamma1[j={j + 1}]",
        ).params

    is2 = (data.ystar2 == 1).astype(float)
    gamma2 = np.empty(current.gamma2.shape, dtype=float)
    for k in range(2):
        rows = data.ystar1 == k + 1
        for j in range(2):
            gamma2[:, k, j] = fit_weighted_logit(
                is2[rows],
                data.Z2[rows],
                resp[rows, j],
                start_params=current.gamma2[:, k, j],
                maxiter=maxiter,
                tol=tol,
                label=f"gamma2[k={k + 1},j={j + 1}]",
            ).params

    return ModelParameters(beta=beta, gamma1=gamma1, gamma2=gamma2)


def observed_information_cov(params: ModelParameters, data: TwoStageData) -> Optional[np.ndarray]:
    """Inverse observed information from a numerical Hessian of the log-likelihood.

    Returns None (with a RuntimeWarning) when the Hessian cannot be inverted
    or yields a covariance with negative variances.
    """

    vec = params.to_vector()
    H = approx_hess(vec, loglik_from_vector, args=(params, data))
    try:
        cov = np.linalg.inv(-H)
    except np.linalg.LinAlgError:
        warnings.warn(
            "observed information matrix is singular; standard errors are undefined for this fit.",
            RuntimeWarning,
        )
        return None
    cov = 0.5 * (cov + cov.T)
    if not np.isfinite(cov).all() or np.any(np.diag(cov) < 0):
        warnings.warn(
            "observed information matrix is not positive definite at the estimate; "
            "standard errors are undefined for this fit.",
            RuntimeWarning,
        )
        return None
    return cov


def run_em(
    data: TwoStageData,
    start: ModelParameters,
    config: Optional[EMConfig] = None,
    cancel=None,
) -> EstimateResult:
    """Run EM from validated starting values on prepared data."""

    cfg = config or EMConfig()
    start.check_dims(data.px, data.pz1, data.pz2)
    corrector = LabelSwitchCorrector(data.Z1)

    params = corrector(start, start)
    ll = observed_loglik(params, data)
    path = [ll]
    status = STATUS_MAX_ITERATIONS
    iteration = 0

    while iteration < int(cfg.max_iterations):
        if should_stop(cancel):
            status = STATUS_CANCELLED
            log.info("EM cancelled after %d iterations (loglik=%.6f)", iteration, ll)
            break
        iteration += 1

        resp = responsibilities(params, data)
        try:
            updated = m_step(
                data,
                resp,
                params,
                maxiter=cfg.inner_max_iterations,
                tol=cfg.inner_tolerance,
            )
        except SingularDesign as e:
            raise SingularDesign(
                "M-step regression could not be solved", mechanism=e.mechanism, iteration=iteration
            ) from e

        updated = corrector(updated, params)
        ll_new = observed_loglik(updated, data)
        path.append(ll_new)
        log.debug("EM iteration %d: loglik=%.8f (change %.3e)", iteration, ll_new, ll_new - ll)

        params = updated
        done = abs(ll_new - ll) < float(cfg.tolerance)
        ll = ll_new
        if done:
            status = STATUS_CONVERGED
            break

    if status == STATUS_MAX_ITERATIONS:
        warnings.warn(
            f"EM did not converge within {int(cfg.max_iterations)} iterations; "
            "returning the last iterate.",
            NonConvergenceWarning,
        )

    cov = observed_information_cov(params, data) if cfg.compute_se else None
    coefficients = tidy_coef_table(params.names(), params.to_vector(), cov)

    naive_table = None
    if cfg.naive:
        try:
            naive_table = fit_naive_mle(
                data, maxiter=cfg.inner_max_iterations, tol=cfg.inner_tolerance
            ).coefficients
        except SingularDesign as e:
            warnings.warn(f"naive reference fit failed: {e}", RuntimeWarning)

    log.info("EM finished: status=%s iterations=%d loglik=%.6f", status, iteration, ll)
    return EstimateResult(
        params=params,
        coefficients=coefficients,
        converged=status == STATUS_CONVERGED,
        status=status,
        n_iterations=int(iteration),
        loglik=float(ll),
        loglik_path=np.asarray(path, dtype=float),
        cov=cov,
        naive=naive_table,
    )


def fit_em(
    ystar1,
    ystar2,
    x,
    z1,
    z2,
    beta_start,
    gamma1_start,
    gamma2_start,
    *,
    config: Optional[EMConfig] = None,
    cancel=None,
) -> EstimateResult:
    """Fit the two-stage misclassification model by EM.

    Parameters
    ----------
    ystar1, ystar2:
        Observed first- and second-stage outcomes coded 1/2.
    x, z1, z2:
        Covariates (no intercept column) for the true-outcome, first-stage and
        second-stage mechanisms; None for intercept-only.
    beta_start, gamma1_start, gamma2_start:
        Starting values with shapes (px+1,), (pz1+1, 2), (pz2+1, 2, 2).
    cancel:
        Optional callable or threading.Event checked at iteration boundaries.

    Raises
    ------
    ShapeMismatch
        Before any iteration, if starting values and covariates disagree.
    SingularDesign
        If an M-step regression cannot be solved (carries the iteration).
    """

    data = prepare_data(ystar1, ystar2, x, z1, z2)
    start = ModelParameters.coerce(beta_start, gamma1_start, gamma2_start)
    return run_em(data, start, config=config, cancel=cancel)


def fit_em_multistart(
    ystar1,
    ystar2,
    x,
    z1,
    z2,
    starts: Sequence[Tuple[np.ndarray, np.ndarray, np.ndarray]],
    *,
    config: Optional[EMConfig] = None,
    cancel=None,
) -> Tuple[EstimateResult, List[EstimateResult]]:
    """Run independent EM fits from several starts; return (best, all successful).

    Starts whose M-step hits SingularDesign are reported with a warning and
    skipped; if every start fails the last error is raised.
    """

    if len(starts) == 0:
        raise ValueError("starts must contain at least one (beta, gamma1, gamma2) triple")

    data = prepare_data(ystar1, ystar2, x, z1, z2)
    coerced = [ModelParameters.coerce(*s) for s in starts]
    for p in coerced:
        p.check_dims(data.px, data.pz1, data.pz2)

    results: List[EstimateResult] = []
    last_error: Optional[SingularDesign] = None
    for i, start in enumerate(coerced):
        try:
            results.append(run_em(data, start, config=config, cancel=cancel))
        except SingularDesign as e:
            warnings.warn(f"EM start {i} failed: {e}", RuntimeWarning)
            last_error = e
    if not results:
        raise last_error

    best = max(results, key=lambda r: r.loglik)
    return best, results
