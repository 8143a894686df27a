import numpy as np

from combo_2stage.src.config import MCMCConfig
from combo_2stage.src.mcmc import fit_mcmc
from combo_2stage.src.probability import misclassification_prob


def test_worked_example_em(example_em):
    assert np.all(np.abs(example_em.beta - np.array([1.0, -2.0])) <= 0.3)


def test_worked_example_mcmc_agrees_with_em(example_dataset, example_em):
    d = example_dataset
    cfg = MCMCConfig(n_chains=2, n_samples=1500, burn_in=500, seed=123, naive=False)
    res = fit_mcmc(
        d.ystar1, d.ystar2, d.x, d.z1, d.z2,
        example_em.beta, example_em.gamma1, example_em.gamma2,
        config=cfg,
    )

    post_beta = res.posterior_means().beta
    assert np.all(np.abs(post_beta - example_em.beta) <= 0.3)
    rhat = res.posterior.summary.set_index("parameter").loc[["beta[1]", "beta[2]"], "rhat"]
    assert np.all(rhat < 1.2)


def test_worked_example_stage1_table(example_dataset, example_em):
    tab = misclassification_prob(example_em.gamma1, example_dataset.z1)
    y1 = tab[tab["Y"] == 1]
    hit = y1[y1["Ystar1"] == 1].sort_values("Subject")["Probability"].to_numpy()
    miss = y1[y1["Ystar1"] == 2].sort_values("Subject")["Probability"].to_numpy()

    assert hit.shape == (1000,)
    assert np.allclose(hit, 1.0 - miss)
