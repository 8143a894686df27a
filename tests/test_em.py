import numpy as np
import pytest

from combo_2stage.src.config import EMConfig, SimConfig
from combo_2stage.src.em import (
    STATUS_CANCELLED,
    STATUS_CONVERGED,
    STATUS_MAX_ITERATIONS,
    fit_em,
    fit_em_multistart,
)
from combo_2stage.src.errors import NonConvergenceWarning, ShapeMismatch, SingularDesign
from combo_2stage.src.label_switching import swap_labels
from combo_2stage.src.main import default_start
from combo_2stage.src.simulate import simulate_dataset
from combo_2stage.src.stats import fit_weighted_logit

FAST = EMConfig(tolerance=1e-6, max_iterations=400, compute_se=False, naive=False)


def _fit(d, start, config=FAST, **kw):
    return fit_em(d.ystar1, d.ystar2, d.x, d.z1, d.z2, start.beta, start.gamma1, start.gamma2, config=config, **kw)


def test_recovers_parameters_at_large_n():
    d = simulate_dataset(SimConfig(seed=2024, sample_size=10_000))
    res = _fit(d, d.params)

    assert np.all(np.abs(res.beta - d.params.beta) < 0.25)
    assert np.all(np.abs(res.gamma1 - d.params.gamma1) < 0.4)
    assert np.all(np.abs(res.gamma2 - d.params.gamma2) < 0.4)


def test_loglik_is_monotone(small_dataset):
    res = _fit(small_dataset, default_start(1, 1, 1))

    path = res.loglik_path
    assert path.shape[0] == res.n_iterations + 1
    assert np.all(np.diff(path) >= -1e-6)
    assert np.isclose(res.loglik, path[-1])


def test_converged_result_metadata(example_em):
    assert example_em.converged
    assert example_em.status == STATUS_CONVERGED
    assert 0 < example_em.n_iterations <= 1500
    assert list(example_em.coefficients["term"])[:2] == ["beta[1]", "beta[2]"]
    assert example_em.coefficients.shape[0] == 14
    assert example_em.naive is not None


def test_standard_errors_for_outcome_model(example_em):
    se = example_em.coefficients.set_index("term").loc[["beta[1]", "beta[2]"], "se"].to_numpy()
    assert np.isfinite(se).all()
    assert np.all(se > 0)


def test_swapped_start_gives_canonical_labels(small_dataset):
    d = small_dataset
    res = _fit(d, swap_labels(d.params))
    direct = _fit(d, d.params)

    assert np.allclose(res.beta, direct.beta, atol=1e-2)
    assert np.allclose(res.gamma1, direct.gamma1, atol=1e-2)


def test_iteration_cap_is_reported(small_dataset):
    cfg = EMConfig(tolerance=1e-12, max_iterations=2, compute_se=False, naive=False)
    with pytest.warns(NonConvergenceWarning):
        res = _fit(small_dataset, default_start(1, 1, 1), config=cfg)

    assert not res.converged
    assert res.status == STATUS_MAX_ITERATIONS
    assert res.n_iterations == 2
    assert np.isfinite(res.beta).all()


def test_cancel_before_first_iteration(small_dataset):
    start = default_start(1, 1, 1)
    res = _fit(small_dataset, start, cancel=lambda: True)

    assert res.status == STATUS_CANCELLED
    assert not res.converged
    assert res.n_iterations == 0
    assert res.params.allclose(start)


def test_start_shape_mismatch(small_dataset):
    d = small_dataset
    p = d.params
    with pytest.raises(ShapeMismatch):
        fit_em(d.ystar1, d.ystar2, d.x, d.z1, d.z2, np.zeros(3), p.gamma1, p.gamma2, config=FAST)
    with pytest.raises(ShapeMismatch):
        fit_em(d.ystar1, d.ystar2, d.x, d.z1, None, p.beta, p.gamma1, p.gamma2, config=FAST)


def test_invalid_outcome_coding(small_dataset):
    d = small_dataset
    p = d.params
    with pytest.raises(ValueError):
        fit_em(d.ystar1 - 1, d.ystar2, d.x, d.z1, d.z2, p.beta, p.gamma1, p.gamma2, config=FAST)


def test_empty_first_stage_level_is_singular(small_dataset):
    d = small_dataset
    p = d.params
    ystar1 = np.ones_like(d.ystar1)
    with pytest.raises(SingularDesign) as exc:
        fit_em(ystar1, d.ystar2, d.x, d.z1, d.z2, p.beta, p.gamma1, p.gamma2, config=FAST)
    assert exc.value.iteration == 1
    assert exc.value.mechanism is not None


def test_rank_deficient_design_is_singular():
    rng = np.random.default_rng(0)
    x = rng.normal(size=50)
    X = np.column_stack([np.ones(50), x, 2.0 * x])
    y = (rng.random(50) < 0.5).astype(float)
    with pytest.raises(SingularDesign):
        fit_weighted_logit(y, X, label="dup")
    with pytest.raises(SingularDesign):
        fit_weighted_logit(y, X[:, :2], np.zeros(50), label="empty")


def test_multistart_picks_highest_loglik(small_dataset):
    d = small_dataset
    starts = [
        (d.params.beta, d.params.gamma1, d.params.gamma2),
        tuple(getattr(default_start(1, 1, 1), a) for a in ("beta", "gamma1", "gamma2")),
    ]
    best, results = fit_em_multistart(d.ystar1, d.ystar2, d.x, d.z1, d.z2, starts, config=FAST)

    assert len(results) == 2
    assert best.loglik == max(r.loglik for r in results)
