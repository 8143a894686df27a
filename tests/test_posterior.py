import numpy as np
import pytest

from combo_2stage.src.errors import EmptyPosterior
from combo_2stage.src.posterior import convergence_diagnostics, summarize_draws


def _chains(rng, n_chains=3, n=400, shift=0.0):
    return [rng.normal(loc=shift * c, size=(n, 2)) for c in range(n_chains)]


def test_summary_columns_and_pooled_moments():
    rng = np.random.default_rng(0)
    chains = _chains(rng)
    its = [np.arange(100, 500)] * 3
    post = summarize_draws(chains, its, ["a", "b"])

    assert list(post.summary.columns) == ["parameter", "mean", "sd", "q2.5", "q97.5", "rhat", "ess"]
    assert post.n_draws == 1200
    assert post.n_chains == 3
    pooled = np.vstack(chains)
    assert np.allclose(post.means().to_numpy(), pooled.mean(axis=0))
    row = post.summary.iloc[0]
    assert row["q2.5"] < row["mean"] < row["q97.5"]
    assert list(post.draws.columns) == ["chain", "iteration", "a", "b"]
    assert np.all(post.summary["rhat"] < 1.05)


def test_chain_summary_long_format():
    rng = np.random.default_rng(1)
    post = summarize_draws(_chains(rng, n_chains=2, n=50), [np.arange(50)] * 2, ["a", "b"])
    cs = post.chain_summary()
    assert list(cs.columns) == ["chain", "parameter", "mean", "sd"]
    assert len(cs) == 4


def test_empty_posterior():
    chains = [np.empty((0, 2)), np.empty((0, 2))]
    its = [np.array([], dtype=int)] * 2
    with pytest.raises(EmptyPosterior):
        summarize_draws(chains, its, ["a", "b"])

    post = summarize_draws(chains, its, ["a", "b"], allow_empty=True)
    assert post.n_draws == 0
    assert list(post.summary["parameter"]) == ["a", "b"]
    assert post.means().isna().all()


def test_rhat_detects_disagreeing_chains():
    rng = np.random.default_rng(2)
    good = [c[:, 0] for c in _chains(rng)]
    bad = [c[:, 0] for c in _chains(rng, shift=3.0)]

    assert convergence_diagnostics(good)[0] < 1.05
    assert convergence_diagnostics(bad)[0] > 1.5


def test_diagnostics_undefined_for_short_or_constant_chains():
    rhat, ess = convergence_diagnostics([np.array([0.1, 0.2]), np.array([0.3, 0.4, 0.5])])
    assert np.isnan(rhat) and np.isnan(ess)

    rhat, ess = convergence_diagnostics([np.zeros(50), np.zeros(50)])
    assert np.isnan(rhat) and np.isnan(ess)


def test_unequal_chains_are_truncated():
    rng = np.random.default_rng(4)
    rhat, ess = convergence_diagnostics([rng.normal(size=300), rng.normal(size=120)])
    assert np.isfinite(rhat)
    assert ess <= 240 * 1.5


def test_ess_for_independent_and_sticky_draws():
    rng = np.random.default_rng(3)
    iid = [rng.normal(size=1000) for _ in range(2)]
    assert convergence_diagnostics(iid)[1] > 1000

    sticky = []
    for _ in range(2):
        x = np.empty(1000)
        x[0] = 0.0
        for t in range(1, 1000):
            x[t] = 0.95 * x[t - 1] + rng.normal()
        sticky.append(x)
    assert convergence_diagnostics(sticky)[1] < 300
