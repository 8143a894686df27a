"""Multi-chain Metropolis sampler for the two-stage model and its naive baseline.

Each sweep visits every free coordinate in turn and proposes a Gaussian
random-walk step. Proposals with zero prior density are rejected without
evaluating the likelihood; otherwise the Metropolis ratio combines the
log-likelihood and log-prior differences.
Only the mechanism touched by a coordinate (outcome, stage 1 or stage 2) is
recomputed.

During burn-in the per-coordinate step sizes are tuned every
ADAPT_WINDOW sweeps toward `target_accept`; they are frozen afterwards.

Chains are independent: each gets its own Generator spawned from one
SeedSequence, its own state and its own draw buffer. The only reduction is
the final summary over all chains. With n_jobs > 1 the chains run in worker
processes, or on threads when a cancel handle must reach them.
"""

from __future__ import annotations

import logging
import warnings
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np
from scipy.special import logsumexp

from .config import MCMCConfig, should_stop
from .data import TwoStageData, prepare_data
from .errors import EmptyPosterior, InvalidPrior, ShapeMismatch, SingularDesign
from .label_switching import LabelSwitchCorrector, swap_labels
from .likelihood import (
    log_outcome_component,
    log_stage1_component,
    log_stage2_component,
    naive_log_components,
)
from .modeling import ModelParameters
from .naive import fit_naive_mle, naive_parameter_names
from .posterior import PosteriorSummary, summarize_draws
from .priors import CompiledPrior, NaivePrior, TwoStagePrior, uniform_prior

log = logging.getLogger(__name__)

ADAPT_WINDOW = 50


class TwoStageTarget:
    """Log-likelihood of the latent-class model, split by mechanism."""

    def __init__(self, data: TwoStageData, template: ModelParameters):
        self.data = data
        self.template = template
        self.block_ids = template.block_ids()
        nb, ng1, _ = template.sizes
        self._cuts = (nb, nb + ng1)

    def _unpack(self, vec: np.ndarray, block: int) -> np.ndarray:
        a, b = self._cuts
        if block == 0:
            return vec[:a]
        if block == 1:
            return vec[a:b].reshape(self.template.gamma1.shape, order="F")
        return vec[b:].reshape(self.template.gamma2.shape, order="F")

    def component(self, vec: np.ndarray, block: int) -> np.ndarray:
        arr = self._unpack(vec, block)
        if block == 0:
            return log_outcome_component(arr, self.data)
        if block == 1:
            return log_stage1_component(arr, self.data)
        return log_stage2_component(arr, self.data)

    def components(self, vec: np.ndarray) -> List[np.ndarray]:
        return [self.component(vec, b) for b in range(3)]

    @staticmethod
    def loglik(comps: List[np.ndarray]) -> float:
        return float(np.sum(logsumexp(comps[0] + comps[1] + comps[2], axis=1)))


class NaiveTarget:
    """Log-likelihood of the naive model (no latent class)."""

    def __init__(self, data: TwoStageData):
        self.data = data
        nb, ng = data.X.shape[1], data.Z2.shape[1]
        self.n_beta, self.n_gamma = nb, ng
        self.block_ids = np.repeat(np.array([0, 1]), [nb, 2 * ng])

    def _split(self, vec: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return vec[: self.n_beta], vec[self.n_beta:].reshape((self.n_gamma, 2), order="F")

    def component(self, vec: np.ndarray, block: int) -> np.ndarray:
        beta, gamma = self._split(vec)
        return naive_log_components(beta, gamma, self.data)[block]

    def components(self, vec: np.ndarray) -> List[np.ndarray]:
        beta, gamma = self._split(vec)
        return list(naive_log_components(beta, gamma, self.data))

    @staticmethod
    def loglik(comps: List[np.ndarray]) -> float:
        return float(np.sum(comps[0]) + np.sum(comps[1]))


Corrector = Callable[[np.ndarray, np.ndarray], Tuple[np.ndarray, bool]]


@dataclass(frozen=True)
class LabelCorrection:
    """Apply the stage-1 relabelling rule to a flat two-stage parameter vector."""

    template: ModelParameters
    corrector: LabelSwitchCorrector

    def __call__(self, vec: np.ndarray, ref: np.ndarray) -> Tuple[np.ndarray, bool]:
        p = self.template.from_vector(vec)
        if self.corrector.needs_swap(p, self.template.from_vector(ref)):
            return swap_labels(p).to_vector(), True
        return vec, False


@dataclass(frozen=True)
class ChainResult:
    chain_id: int
    draws: np.ndarray
    iterations: np.ndarray
    acceptance_rate: float
    proposal_sd: np.ndarray
    stopped_early: bool
    unresolved_swaps: int


def run_chain(
    chain_id: int,
    target,
    prior: CompiledPrior,
    start: np.ndarray,
    proposal_sd: np.ndarray,
    config: MCMCConfig,
    rng: np.random.Generator,
    corrector: Optional[Corrector] = None,
    cancel=None,
) -> ChainResult:
    """Run one chain for `config.n_samples` sweeps and keep the post burn-in draws."""

    burn_in, thin = int(config.burn_in), int(config.thin)
    free_idx = prior.free_index
    sd = np.array(proposal_sd, dtype=float, copy=True)

    state = np.array(start, dtype=float, copy=True)
    comps = target.components(state)
    ll = target.loglik(comps)
    lp = prior.log_prior(state)
    reference = state.copy()

    window_acc = np.zeros(state.shape[0])
    window_att = np.zeros(state.shape[0])
    kept_acc = 0
    kept_att = 0
    n_batches = 0
    unresolved = 0
    stopped = False

    draws: List[np.ndarray] = []
    iterations: List[int] = []

    for it in range(int(config.n_samples)):
        if should_stop(cancel):
            stopped = True
            break

        for d in free_idx:
            window_att[d] += 1
            if it >= burn_in:
                kept_att += 1
            old = state[d]
            state[d] = old + rng.normal(0.0, sd[d])
            lp_prop = prior.log_prior(state)
            if not np.isfinite(lp_prop):
                state[d] = old
                continue
            block = int(target.block_ids[d])
            trial = list(comps)
            trial[block] = target.component(state, block)
            ll_prop = target.loglik(trial)
            if rng.random() < np.exp(min(0.0, ll_prop + lp_prop - ll - lp)):
                comps, ll, lp = trial, ll_prop, lp_prop
                window_acc[d] += 1
                if it >= burn_in:
                    kept_acc += 1
            else:
                state[d] = old

        if corrector is not None:
            corrected, swapped = corrector(state, reference)
            if swapped:
                if prior.in_support(corrected):
                    state = corrected
                    comps = target.components(state)
                    ll = target.loglik(comps)
                    lp = prior.log_prior(state)
                else:
                    unresolved += 1

        if config.adapt and it < burn_in and (it + 1) % ADAPT_WINDOW == 0:
            n_batches += 1
            delta = min(0.1, 1.0 / np.sqrt(n_batches))
            rate = np.divide(window_acc, window_att, out=np.zeros_like(window_acc), where=window_att > 0)
            step = np.where(rate > float(config.target_accept), delta, -delta)
            sd[free_idx] *= np.exp(step[free_idx])
            window_acc[:] = 0.0
            window_att[:] = 0.0

        reference = state.copy()
        if it >= burn_in and (it - burn_in) % thin == 0:
            draws.append(state.copy())
            iterations.append(it)

    rate = kept_acc / kept_att if kept_att else float("nan")
    log.debug("chain %d: %d draws, acceptance %.3f", chain_id, len(draws), rate)
    return ChainResult(
        chain_id=chain_id,
        draws=np.asarray(draws, dtype=float).reshape(-1, state.shape[0]),
        iterations=np.asarray(iterations, dtype=int),
        acceptance_rate=float(rate),
        proposal_sd=sd,
        stopped_early=stopped,
        unresolved_swaps=unresolved,
    )


def run_chains(
    target,
    prior: CompiledPrior,
    start: np.ndarray,
    proposal_sd: np.ndarray,
    config: MCMCConfig,
    seed_seq: np.random.SeedSequence,
    corrector: Optional[Corrector] = None,
    cancel=None,
) -> List[ChainResult]:
    """Run `config.n_chains` independent chains, sequentially or in a worker pool.

    Worker processes are used when `config.n_jobs > 1`. A cancel handle only
    exists in the calling process, so cancellable runs use a thread pool instead.
    """

    n_chains = int(config.n_chains)
    rngs = [np.random.default_rng(s) for s in seed_seq.spawn(n_chains)]
    jobs = [
        (c, target, prior, start, proposal_sd, config, rngs[c], corrector, cancel)
        for c in range(n_chains)
    ]

    n_workers = min(int(config.n_jobs), n_chains)
    if n_workers <= 1:
        results = [run_chain(*job) for job in jobs]
    else:
        pool = ThreadPoolExecutor if cancel is not None else ProcessPoolExecutor
        results = []
        with pool(max_workers=n_workers) as executor:
            futures = [executor.submit(run_chain, *job) for job in jobs]
            for future in as_completed(futures):
                results.append(future.result())
        results.sort(key=lambda r: r.chain_id)

    log.info("MCMC chains completed: %d chains", len(results))
    return results


def _summarize(results: List[ChainResult], names: List[str]) -> PosteriorSummary:
    return summarize_draws(
        [r.draws for r in results],
        [r.iterations for r in results],
        names,
        allow_empty=any(r.stopped_early for r in results),
    )


@dataclass(frozen=True)
class MCMCResult:
    """Posterior draws/summaries for the two-stage model and the naive baseline."""

    posterior: PosteriorSummary
    naive_posterior: Optional[PosteriorSummary]
    acceptance_rate: np.ndarray
    naive_acceptance_rate: Optional[np.ndarray]
    stopped_early: bool
    template: ModelParameters

    @property
    def n_draws(self) -> int:
        return self.posterior.n_draws

    def posterior_means(self) -> ModelParameters:
        means = self.posterior.means().reindex(self.template.names())
        return self.template.from_vector(means.to_numpy(dtype=float))


def _proposal_vector(proposal_sd, n: int) -> np.ndarray:
    sd = np.asarray(proposal_sd, dtype=float).reshape(-1)
    if sd.size == 1:
        return np.full(n, float(sd[0]))
    if sd.size != n:
        raise ShapeMismatch(f"proposal_sd has {sd.size} entries, expected 1 or {n}")
    return sd.copy()


def _naive_start(data: TwoStageData, prior: CompiledPrior) -> np.ndarray:
    try:
        vec = fit_naive_mle(data).to_vector()
    except SingularDesign as e:
        log.debug("naive MLE unavailable for chain start (%s); starting at zero", e)
        vec = np.zeros(prior.free.shape[0])
    return prior.clamp_fixed(np.clip(vec, prior.lower, prior.upper))


def fit_mcmc(
    ystar1,
    ystar2,
    x,
    z1,
    z2,
    beta_start,
    gamma1_start,
    gamma2_start,
    prior: Optional[TwoStagePrior] = None,
    *,
    config: Optional[MCMCConfig] = None,
    naive_prior: Optional[NaivePrior] = None,
    cancel=None,
) -> MCMCResult:
    """Sample the posterior of the two-stage model (and the naive model).

    Parameters
    ----------
    prior:
        Uniform prior with Free / FixedAtZero cells; defaults to
        Uniform(-10, 10) on every free coefficient.
    naive_prior:
        Prior for the naive model; defaults to `prior.naive()`.
    cancel:
        Optional callable or threading.Event polled once per sweep in every
        chain. Draws collected so far are summarized and the result is
        flagged `stopped_early`; a cancel before the first retained draw
        gives an empty summary.
    Raises
    ------
    ShapeMismatch, InvalidPrior, EmptyPosterior
        Validated before any chain starts.
    """

    cfg = config or MCMCConfig()
    data = prepare_data(ystar1, ystar2, x, z1, z2)
    start = ModelParameters.coerce(beta_start, gamma1_start, gamma2_start)
    start.check_dims(data.px, data.pz1, data.pz2)

    if prior is None:
        prior = uniform_prior(data.px, data.pz1, data.pz2)
    compiled = prior.compile(start)

    if int(cfg.burn_in) >= int(cfg.n_samples):
        raise EmptyPosterior(
            f"burn_in ({int(cfg.burn_in)}) must be smaller than n_samples ({int(cfg.n_samples)})"
        )

    start_vec = compiled.clamp_fixed(start.to_vector())
    if not compiled.in_support(start_vec):
        raise InvalidPrior("starting values lie outside the prior bounds")
    sd = _proposal_vector(cfg.proposal_sd, start.n_params)

    correct = LabelCorrection(start, LabelSwitchCorrector(data.Z1))

    corrected_start, swapped = correct(start_vec, start_vec)
    if swapped and compiled.in_support(corrected_start):
        start_vec = corrected_start

    main_ss, naive_ss = np.random.SeedSequence(cfg.seed).spawn(2)

    results = run_chains(
        TwoStageTarget(data, start), compiled, start_vec, sd, cfg, main_ss, correct, cancel
    )
    unresolved = sum(r.unresolved_swaps for r in results)
    if unresolved:
        warnings.warn(
            f"{unresolved} sweeps kept their labelling because the swapped state lies outside "
            "the prior bounds; consider symmetric bounds across true levels.",
            RuntimeWarning,
        )
    posterior = _summarize(results, start.names())
    stopped = any(r.stopped_early for r in results)

    naive_posterior = None
    naive_rates = None
    if cfg.naive:
        nprior = (naive_prior or prior.naive()).compile(data.X.shape[1], data.Z2.shape[1])
        naive_target = NaiveTarget(data)
        nstart = _naive_start(data, nprior)
        nsd = np.full(nstart.shape[0], float(np.median(sd)))
        naive_results = run_chains(naive_target, nprior, nstart, nsd, cfg, naive_ss, None, cancel)
        naive_posterior = _summarize(
            naive_results, naive_parameter_names(naive_target.n_beta, naive_target.n_gamma)
        )
        naive_rates = np.array([r.acceptance_rate for r in naive_results])
        stopped = stopped or any(r.stopped_early for r in naive_results)

    return MCMCResult(
        posterior=posterior,
        naive_posterior=naive_posterior,
        acceptance_rate=np.array([r.acceptance_rate for r in results]),
        naive_acceptance_rate=naive_rates,
        stopped_early=stopped,
        template=start,
    )
