import threading

import numpy as np
import pytest

from combo_2stage.src.config import MCMCConfig
from combo_2stage.src.errors import EmptyPosterior, InvalidPrior, ShapeMismatch
from combo_2stage.src.mcmc import fit_mcmc
from combo_2stage.src.naive import naive_parameter_names
from combo_2stage.src.priors import TwoStagePrior, uniform_prior

SHORT = MCMCConfig(n_chains=2, n_samples=300, burn_in=100, proposal_sd=0.3, seed=1)


def _run(d, prior=None, config=SHORT, start=None, **kw):
    p = start if start is not None else d.params
    return fit_mcmc(d.ystar1, d.ystar2, d.x, d.z1, d.z2, p.beta, p.gamma1, p.gamma2, prior, config=config, **kw)


class StopAfter:
    def __init__(self, n):
        self.n = n
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.calls > self.n


def test_result_layout(small_dataset):
    res = _run(small_dataset)
    names = small_dataset.params.names()

    assert res.n_draws == 2 * 200
    assert res.posterior.n_chains == 2
    assert list(res.posterior.summary["parameter"]) == names
    assert res.acceptance_rate.shape == (2,)
    assert np.all((res.acceptance_rate > 0) & (res.acceptance_rate < 1))
    assert not res.stopped_early
    assert res.posterior.draws["iteration"].min() == 100
    assert res.posterior_means().beta.shape == (2,)


def test_naive_posterior_is_reported(small_dataset):
    res = _run(small_dataset)
    assert res.naive_posterior is not None
    assert list(res.naive_posterior.summary["parameter"]) == naive_parameter_names(2, 2)
    assert res.naive_posterior.n_draws == 2 * 200

    off = _run(small_dataset, config=MCMCConfig(n_chains=1, n_samples=50, burn_in=10, seed=1, naive=False))
    assert off.naive_posterior is None
    assert off.naive_acceptance_rate is None


def test_draws_never_leave_prior_bounds(small_dataset):
    prior = uniform_prior(1, 1, 1, -3.0, 3.0)
    cfg = MCMCConfig(n_chains=2, n_samples=200, burn_in=50, proposal_sd=2.0, adapt=False, seed=3)
    res = _run(small_dataset, prior=prior, config=cfg)

    draws = res.posterior.draws[small_dataset.params.names()].to_numpy()
    assert np.all(draws >= -3.0) and np.all(draws <= 3.0)


def test_fixed_cell_stays_at_zero(small_dataset):
    nan = np.nan
    g2_lo = np.full((2, 2, 2, 2), nan)
    g2_hi = np.full((2, 2, 2, 2), nan)
    g2_lo[0], g2_hi[0] = -8.0, 8.0
    g2_lo[0, 0, 1, 1] = g2_hi[0, 0, 1, 1] = nan
    beta_lo, beta_hi = np.full((2, 2), nan), np.full((2, 2), nan)
    beta_lo[0], beta_hi[0] = -8.0, 8.0
    g1_lo, g1_hi = np.full((2, 2, 2), nan), np.full((2, 2, 2), nan)
    g1_lo[0], g1_hi[0] = -8.0, 8.0
    prior = TwoStagePrior.from_bounds(beta_lo, beta_hi, g1_lo, g1_hi, g2_lo, g2_hi)

    res = _run(small_dataset, prior=prior, config=MCMCConfig(n_chains=1, n_samples=150, burn_in=50, seed=4))
    assert np.all(res.posterior.draws["gamma2[2,1,2]"] == 0.0)


def test_same_seed_same_draws_sequential_or_parallel(small_dataset):
    cfg = MCMCConfig(n_chains=2, n_samples=120, burn_in=20, seed=5, naive=False)
    a = _run(small_dataset, config=cfg)
    b = _run(small_dataset, config=cfg)
    c = _run(small_dataset, config=MCMCConfig(n_chains=2, n_samples=120, burn_in=20, seed=5, naive=False, n_jobs=2))

    assert a.posterior.draws.equals(b.posterior.draws)
    assert np.allclose(a.posterior.draws.to_numpy(), c.posterior.draws.to_numpy())


def test_thinning():
    cfg = MCMCConfig(n_chains=1, n_samples=120, burn_in=20, thin=10)
    assert cfg.n_retained == 10


def test_thinned_iterations(small_dataset):
    cfg = MCMCConfig(n_chains=1, n_samples=120, burn_in=20, thin=10, seed=2, naive=False)
    res = _run(small_dataset, config=cfg)
    assert list(res.posterior.draws["iteration"]) == list(range(20, 120, 10))


def test_burn_in_consumes_all_samples(small_dataset):
    with pytest.raises(EmptyPosterior):
        _run(small_dataset, config=MCMCConfig(n_samples=50, burn_in=50))


def test_start_outside_prior(small_dataset):
    with pytest.raises(InvalidPrior):
        _run(small_dataset, prior=uniform_prior(1, 1, 1, -1.0, 1.0))


def test_prior_shape_mismatch(small_dataset):
    with pytest.raises(ShapeMismatch):
        _run(small_dataset, prior=uniform_prior(2, 1, 1))


def test_cancel_returns_partial_draws(small_dataset):
    cfg = MCMCConfig(n_chains=2, n_samples=200, burn_in=50, seed=6, naive=False)
    res = _run(small_dataset, config=cfg, cancel=StopAfter(150))

    assert res.stopped_early
    assert res.n_draws == 100
    assert res.posterior.n_chains == 1


def test_cancel_before_any_draw(small_dataset):
    ev = threading.Event()
    ev.set()
    res = _run(small_dataset, config=MCMCConfig(n_chains=2, n_samples=50, burn_in=10, seed=6), cancel=ev)

    assert res.stopped_early
    assert res.n_draws == 0
    assert res.posterior.summary["mean"].isna().all()
    assert res.posterior.summary["rhat"].isna().all()
    assert res.naive_posterior.n_draws == 0


def test_cancel_during_burn_in(small_dataset):
    cfg = MCMCConfig(n_chains=2, n_samples=200, burn_in=100, seed=6)
    res = _run(small_dataset, config=cfg, cancel=StopAfter(20))

    assert res.stopped_early
    assert res.n_draws == 0
    assert list(res.posterior.summary["parameter"]) == small_dataset.params.names()


def test_cancel_reaches_parallel_chains(small_dataset):
    cfg = MCMCConfig(n_chains=2, n_samples=200, burn_in=50, seed=6, naive=False, n_jobs=2)
    res = _run(small_dataset, config=cfg, cancel=StopAfter(60))

    assert res.stopped_early
    assert res.n_draws < 2 * 150
