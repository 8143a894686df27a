"""Label-switching correction for the latent true outcome.

Relabelling Y (1 <-> 2) everywhere leaves the observed-data likelihood
unchanged: beta changes sign, and the true-level index j of gamma1 and gamma2
is reversed. The observed levels k and l are data and keep their meaning.

Canonical orientation: the first measurement stage classifies better than
chance on the fitted covariates, i.e. its Youden index

    J = mean_i P(Y*1=1 | Y=1, z1_i) + mean_i P(Y*1=2 | Y=2, z1_i) - 1

is positive. Swapping negates J, so the rule picks exactly one labelling
unless |J| <= tol; in that case the labelling closer (Euclidean distance on
the flattened parameters) to the reference estimate is kept.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .modeling import ModelParameters
from .probability import stage1_youden


def swap_labels(params: ModelParameters) -> ModelParameters:
    """Return the equivalent parameters with true levels 1 and 2 exchanged."""
    return ModelParameters(
        beta=-params.beta,
        gamma1=params.gamma1[:, ::-1],
        gamma2=params.gamma2[:, :, ::-1],
    )


@dataclass(frozen=True)
class LabelSwitchCorrector:
    """Callable corrector bound to the first-stage design matrix of a fit."""

    Z1: np.ndarray
    tol: float = 1e-10

    def youden(self, params: ModelParameters) -> float:
        return stage1_youden(params.gamma1, self.Z1)

    def needs_swap(self, params: ModelParameters, reference: ModelParameters) -> bool:
        j = self.youden(params)
        if j > self.tol:
            return False
        if j < -self.tol:
            return True
        current = params.to_vector()
        swapped = swap_labels(params).to_vector()
        ref = reference.to_vector()
        return bool(np.linalg.norm(swapped - ref) < np.linalg.norm(current - ref))

    def __call__(self, params: ModelParameters, reference: ModelParameters) -> ModelParameters:
        if self.needs_swap(params, reference):
            return swap_labels(params)
        return params
