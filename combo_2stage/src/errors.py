from __future__ import annotations

from typing import Optional


class ComboError(Exception):
    """Base class for estimation errors raised by this package."""


class ShapeMismatch(ComboError, ValueError):
    """Parameter tensors and covariate matrices disagree on dimensions."""


class SingularDesign(ComboError, RuntimeError):
    """A weighted regression step could not be solved.

    `mechanism` names the regression (e.g. "beta", "gamma1[j=1]") and
    `iteration` the EM iteration at which it failed, when known.
    """

    def __init__(self, message: str, *, mechanism: Optional[str] = None, iteration: Optional[int] = None):
        self.mechanism = mechanism
        self.iteration = iteration
        parts = [message]
        if mechanism:
            parts.append(f"mechanism={mechanism}")
        if iteration is not None:
            parts.append(f"iteration={iteration}")
        super().__init__("; ".join(parts))


class InvalidPrior(ComboError, ValueError):
    """Prior bounds are unordered, non-finite, or inconsistently marked."""


class EmptyPosterior(ComboError, ValueError):
    """Burn-in (or cancellation) left no retained posterior draws."""


class NonConvergenceWarning(RuntimeWarning):
    """An iterative fit stopped before meeting its convergence criterion."""
