"""Observed-data likelihood of the two-stage model.

For observation i with observed levels (k_i, l_i) and candidate true level j,
the joint probability factorizes as

    P(Y=j | x_i) * P(Y*1=k_i | Y=j, z1_i) * P(Y*2=l_i | Y*1=k_i, Y=j, z2_i)

Each factor is kept as an (n, 2) log array over j so that callers which
change only one mechanism (the Metropolis sampler) recompute only that
factor.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy.special import logsumexp

from .data import TwoStageData
from .modeling import ModelParameters


def _log_prob_observed(eta: np.ndarray, level: np.ndarray) -> np.ndarray:
    """log P(observed level) for 0-based levels; eta broadcast over trailing axes."""
    sign = np.where(level == 0, 1.0, -1.0)
    sign = sign.reshape(sign.shape + (1,) * (eta.ndim - 1))
    return -np.logaddexp(0.0, -sign * eta)


def log_outcome_component(beta: np.ndarray, data: TwoStageData) -> np.ndarray:
    """(n, j): log P(Y=j | x)."""
    eta = data.X @ beta
    return np.stack([-np.logaddexp(0.0, -eta), -np.logaddexp(0.0, eta)], axis=1)


def log_stage1_component(gamma1: np.ndarray, data: TwoStageData) -> np.ndarray:
    """(n, j): log P(Y*1=k_i | Y=j, z1)."""
    eta = data.Z1 @ gamma1
    return _log_prob_observed(eta, data.ystar1 - 1)


def log_stage2_component(gamma2: np.ndarray, data: TwoStageData) -> np.ndarray:
    """(n, j): log P(Y*2=l_i | Y*1=k_i, Y=j, z2)."""
    k = data.ystar1 - 1
    eta = np.einsum("ic,cij->ij", data.Z2, gamma2[:, k, :])
    return _log_prob_observed(eta, data.ystar2 - 1)


def log_components(params: ModelParameters, data: TwoStageData) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    return (
        log_outcome_component(params.beta, data),
        log_stage1_component(params.gamma1, data),
        log_stage2_component(params.gamma2, data),
    )


def log_joint(params: ModelParameters, data: TwoStageData) -> np.ndarray:
    """(n, j) log joint probability of the observed pair and true level j."""
    a, b, c = log_components(params, data)
    return a + b + c


def observed_loglik(params: ModelParameters, data: TwoStageData) -> float:
    """Observed-data log-likelihood, marginalizing the latent true outcome."""
    return float(np.sum(logsumexp(log_joint(params, data), axis=1)))


def responsibilities(params: ModelParameters, data: TwoStageData) -> np.ndarray:
    """(n, 2) posterior P(Y=j | observed data); rows sum to 1."""
    lj = log_joint(params, data)
    return np.exp(lj - logsumexp(lj, axis=1, keepdims=True))


def loglik_from_vector(vec: np.ndarray, template: ModelParameters, data: TwoStageData) -> float:
    return observed_loglik(template.from_vector(vec), data)


def naive_log_components(beta: np.ndarray, gamma: np.ndarray, data: TwoStageData) -> Tuple[np.ndarray, np.ndarray]:
    """Per-observation log-likelihood terms of the naive model.

    The naive model treats Y*1 as the error-free outcome (logit on x) and
    Y*2 as its single-stage proxy: gamma[:, k] gives P(Y*2=1 | Y*1=k, z2).
    """
    k = data.ystar1 - 1
    eta_y = data.X @ beta
    ll_y = _log_prob_observed(eta_y, k)
    eta_s = np.einsum("ic,ci->i", data.Z2, gamma[:, k])
    ll_s = _log_prob_observed(eta_s, data.ystar2 - 1)
    return ll_y, ll_s


def naive_loglik(beta: np.ndarray, gamma: np.ndarray, data: TwoStageData) -> float:
    ll_y, ll_s = naive_log_components(beta, gamma, data)
    return float(np.sum(ll_y) + np.sum(ll_s))
