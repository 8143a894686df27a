from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import arviz as az
import numpy as np
import pandas as pd

from .errors import EmptyPosterior

SUMMARY_COLUMNS = ["parameter", "mean", "sd", "q2.5", "q97.5", "rhat", "ess"]

# arviz needs at least this many draws per chain for split statistics.
MIN_DIAGNOSTIC_DRAWS = 4


@dataclass(frozen=True)
class PosteriorSummary:
    """Pooled posterior draws and per-parameter summaries.

    draws:
        Wide table, one row per retained draw: `chain`, `iteration` (sweep
        index within the chain, burn-in included) and one column per
        parameter.
    summary:
        One row per parameter: mean, sd, 2.5%/97.5% quantiles pooled over
        chains, rank-normalised split R-hat and bulk ESS (arviz).

    A run cancelled before any draw was retained yields zero draws and a
    summary of NaNs.
    """

    draws: pd.DataFrame
    summary: pd.DataFrame
    names: List[str]

    @property
    def n_draws(self) -> int:
        return int(self.draws.shape[0])

    @property
    def n_chains(self) -> int:
        return int(self.draws["chain"].nunique())

    def means(self) -> pd.Series:
        return self.summary.set_index("parameter")["mean"]

    def chain_summary(self) -> pd.DataFrame:
        """Per-chain mean and sd for every parameter (long format)."""
        long = self.draws.melt(id_vars=["chain", "iteration"], var_name="parameter", value_name="value")
        out = long.groupby(["chain", "parameter"], sort=False)["value"].agg(["mean", "std"]).reset_index()
        return out.rename(columns={"std": "sd"})


def convergence_diagnostics(per_chain: Sequence[np.ndarray]) -> Tuple[float, float]:
    """(R-hat, ESS) for one parameter from its per-chain draw vectors.

    Chains are truncated to the shortest one and stacked as (chain, draw).
    Returns NaNs when there are too few draws or the parameter never moves.
    """

    n = min(len(c) for c in per_chain)
    if n < MIN_DIAGNOSTIC_DRAWS:
        return float("nan"), float("nan")
    arr = np.stack([np.asarray(c[:n], dtype=float) for c in per_chain])
    if np.ptp(arr) == 0.0:
        return float("nan"), float("nan")
    return float(az.rhat(arr)), float(az.ess(arr))


def empty_summary(names: Sequence[str]) -> PosteriorSummary:
    names = list(names)
    draws = pd.DataFrame(columns=["chain", "iteration"] + names)
    summary = pd.DataFrame({"parameter": names})
    for col in SUMMARY_COLUMNS[1:]:
        summary[col] = np.nan
    return PosteriorSummary(draws=draws, summary=summary, names=names)


def summarize_draws(
    chains: Sequence[np.ndarray],
    iterations: Sequence[np.ndarray],
    names: Sequence[str],
    *,
    allow_empty: bool = False,
) -> PosteriorSummary:
    """Reduce per-chain draw arrays into a PosteriorSummary.

    Parameters
    ----------
    chains:
        One (n_draws_c, n_params) array per chain.
    iterations:
        Matching sweep indices per chain.
    allow_empty:
        Return `empty_summary(names)` instead of raising when no draw was
        retained (used for cancelled runs).

    Raises
    ------
    EmptyPosterior
        If no chain retained a draw and `allow_empty` is False.
    """

    names = list(names)
    if len(chains) != len(iterations):
        raise ValueError("chains and iterations must have the same length")
    total = int(sum(np.asarray(c).shape[0] for c in chains))
    if total == 0:
        if allow_empty:
            return empty_summary(names)
        raise EmptyPosterior("no retained posterior draws")

    frames = []
    for cid, (arr, its) in enumerate(zip(chains, iterations)):
        arr = np.asarray(arr, dtype=float).reshape(-1, len(names))
        df = pd.DataFrame(arr, columns=names)
        df.insert(0, "iteration", np.asarray(its, dtype=int))
        df.insert(0, "chain", cid)
        frames.append(df)
    draws = pd.concat(frames, ignore_index=True)

    pooled = draws[names].to_numpy(dtype=float)
    nonempty = [np.asarray(c, dtype=float).reshape(-1, len(names)) for c in chains if np.asarray(c).shape[0] > 0]
    rows = []
    for i, name in enumerate(names):
        col = pooled[:, i]
        rhat, ess = convergence_diagnostics([c[:, i] for c in nonempty])
        rows.append(
            {
                "parameter": name,
                "mean": float(col.mean()),
                "sd": float(col.std(ddof=1)) if col.size > 1 else float("nan"),
                "q2.5": float(np.quantile(col, 0.025)),
                "q97.5": float(np.quantile(col, 0.975)),
                "rhat": rhat,
                "ess": ess,
            }
        )
    summary = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)
    return PosteriorSummary(draws=draws, summary=summary, names=names)
