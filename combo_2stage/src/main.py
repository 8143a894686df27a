from __future__ import annotations

import argparse
import logging
import os
from typing import Any, Dict, Optional

import numpy as np

from .config import EMConfig, MCMCConfig, SimConfig
from .data import load_observations_csv
from .em import fit_em
from .io_utils import (
    collect_environment_info,
    ensure_dir,
    pip_freeze,
    resolve_input_csv,
    save_df,
    save_json,
    save_text,
)
from .mcmc import fit_mcmc
from .modeling import ModelParameters, as_covariates
from .priors import uniform_prior
from .probability import classification_rates, misclassification_prob, misclassification_prob2
from .simulate import simulate_dataset

log = logging.getLogger(__name__)


def _add_estimation_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--output", type=str, default="./output", help="Output directory")
    p.add_argument("--seed", type=int, default=123, help="Random seed (simulation + MCMC chains)")

    p.add_argument("--tolerance", type=float, default=1e-7, help="EM log-likelihood tolerance")
    p.add_argument("--max_iterations", type=int, default=1500, help="EM iteration cap")

    p.add_argument("--no_mcmc", action="store_true", help="Skip the Bayesian fit (EM only).")
    p.add_argument("--n_chains", type=int, default=4, help="Number of MCMC chains")
    p.add_argument("--n_samples", type=int, default=2000, help="Sweeps per chain, burn-in included")
    p.add_argument("--burn_in", type=int, default=1000, help="Sweeps discarded per chain")
    p.add_argument("--thin", type=int, default=1, help="Keep every k-th post burn-in sweep")
    p.add_argument("--proposal_sd", type=float, default=0.1, help="Initial random-walk step size")
    p.add_argument("--n_jobs", type=int, default=1, help="Chains run concurrently (threads)")
    p.add_argument(
        "--prior_bound",
        type=float,
        default=10.0,
        help="Uniform(-b, b) prior on every free coefficient.",
    )
    p.add_argument("--no_naive", action="store_true", help="Skip the naive comparison fits.")


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="combo_2stage",
        description=(
            "Two-stage binary outcome misclassification model: EM and MCMC estimation "
            "with a label-switching correction, plus a synthetic data generator."
        ),
    )
    p.add_argument(
        "--log_level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    sub = p.add_subparsers(dest="command", required=True)

    sim = sub.add_parser("simulate", help="Generate the worked example and fit it.")
    sim.add_argument("--n", type=int, default=1000, help="Sample size")
    _add_estimation_args(sim)

    fit = sub.add_parser("fit", help="Fit observed data from a CSV.")
    fit.add_argument(
        "--input",
        type=str,
        required=True,
        help="CSV with ystar1, ystar2 and covariate columns prefixed x, z1, z2.",
    )
    _add_estimation_args(fit)

    return p


def default_start(px: int, pz1: int, pz2: int) -> ModelParameters:
    """Zero coefficients with stage-1 intercepts at +1 / -1.

    This start has a positive first-stage Youden index, so it already
    carries the canonical labeling.
    """
    gamma1 = np.zeros((pz1 + 1, 2))
    gamma1[0, 0], gamma1[0, 1] = 1.0, -1.0
    return ModelParameters(beta=np.zeros(px + 1), gamma1=gamma1, gamma2=np.zeros((pz2 + 1, 2, 2)))


def run_analysis(
    observed: Dict[str, Optional[np.ndarray]],
    start: ModelParameters,
    output_dir: str,
    *,
    em_config: EMConfig,
    mcmc_config: Optional[MCMCConfig],
    prior_bound: float,
) -> Dict[str, Any]:
    """Fit EM (and optionally MCMC) and write every table into `output_dir`."""

    ensure_dir(output_dir)
    tables = os.path.join(output_dir, "tables")
    outputs: Dict[str, str] = {}
    args = (observed["ystar1"], observed["ystar2"], observed["x"], observed["z1"], observed["z2"])
    n = int(np.asarray(observed["ystar1"]).shape[0])

    em = fit_em(*args, start.beta, start.gamma1, start.gamma2, config=em_config)
    outputs["em_coefficients"] = save_df(em.coefficients, os.path.join(tables, "em_coefficients.csv"))
    if em.naive is not None:
        outputs["naive_mle"] = save_df(em.naive, os.path.join(tables, "naive_mle.csv"))

    z1, z2 = observed["z1"], observed["z2"]
    outputs["misclassification_stage1"] = save_df(
        misclassification_prob(em.gamma1, z1, n=n), os.path.join(tables, "misclassification_stage1.csv")
    )
    outputs["misclassification_stage2"] = save_df(
        misclassification_prob2(em.gamma2, z2, n=n), os.path.join(tables, "misclassification_stage2.csv")
    )
    outputs["classification_rates"] = save_df(
        classification_rates(em.params, z1, z2, n=n), os.path.join(tables, "classification_rates.csv")
    )

    record: Dict[str, Any] = {
        "n": n,
        "em": {
            "status": em.status,
            "converged": em.converged,
            "n_iterations": em.n_iterations,
            "loglik": em.loglik,
        },
    }

    if mcmc_config is not None:
        px = as_covariates(observed["x"], n, name="x").shape[1]
        pz1 = as_covariates(z1, n, name="z1").shape[1]
        pz2 = as_covariates(z2, n, name="z2").shape[1]
        prior = uniform_prior(px, pz1, pz2, -prior_bound, prior_bound)
        chain_start = em.params if prior.compile(em.params).in_support(em.params.to_vector()) else start

        mc = fit_mcmc(
            *args,
            chain_start.beta,
            chain_start.gamma1,
            chain_start.gamma2,
            prior,
            config=mcmc_config,
        )
        outputs["mcmc_summary"] = save_df(mc.posterior.summary, os.path.join(tables, "mcmc_summary.csv"))
        outputs["mcmc_chain_summary"] = save_df(
            mc.posterior.chain_summary(), os.path.join(tables, "mcmc_chain_summary.csv")
        )
        outputs["mcmc_draws"] = save_df(mc.posterior.draws, os.path.join(tables, "mcmc_draws.csv"))
        if mc.naive_posterior is not None:
            outputs["naive_summary"] = save_df(
                mc.naive_posterior.summary, os.path.join(tables, "naive_summary.csv")
            )
        record["mcmc"] = {
            "n_draws": mc.n_draws,
            "acceptance_rate": mc.acceptance_rate,
            "stopped_early": mc.stopped_early,
            "max_rhat": float(mc.posterior.summary["rhat"].max()),
        }

    record["outputs"] = outputs
    return record


def _write_reproducibility(output_dir: str, manifest: Dict[str, Any]) -> None:
    save_json(manifest, os.path.join(output_dir, "manifest.json"))
    save_json(collect_environment_info(), os.path.join(output_dir, "environment.json"))
    save_text(pip_freeze(), os.path.join(output_dir, "pip_freeze.txt"))


def main(argv=None) -> int:
    p = build_argparser()
    args = p.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    em_config = EMConfig(tolerance=args.tolerance, max_iterations=args.max_iterations, naive=not args.no_naive)
    mcmc_config = None
    if not args.no_mcmc:
        mcmc_config = MCMCConfig(
            n_chains=args.n_chains,
            n_samples=args.n_samples,
            burn_in=args.burn_in,
            thin=args.thin,
            proposal_sd=args.proposal_sd,
            seed=args.seed,
            n_jobs=args.n_jobs,
            naive=not args.no_naive,
        )

    if args.command == "simulate":
        sim = simulate_dataset(SimConfig(seed=args.seed, sample_size=args.n))
        save_df(sim.to_frame(), os.path.join(args.output, "data.csv"))
        log.info("Simulated %d subjects (seed=%d)", sim.n, args.seed)
        observed = {"ystar1": sim.ystar1, "ystar2": sim.ystar2, "x": sim.x, "z1": sim.z1, "z2": sim.z2}
        start = sim.params
        source: Dict[str, Any] = {
            "simulated": True,
            "seed": args.seed,
            "true_parameters": sim.params.to_series().to_dict(),
        }
    else:
        input_csv = resolve_input_csv(args.input)
        observed = load_observations_csv(input_csv)
        n = observed["ystar1"].shape[0]
        start = default_start(
            as_covariates(observed["x"], n, name="x").shape[1],
            as_covariates(observed["z1"], n, name="z1").shape[1],
            as_covariates(observed["z2"], n, name="z2").shape[1],
        )
        source = {"simulated": False, "input": os.path.abspath(input_csv)}

    record = run_analysis(
        observed,
        start,
        args.output,
        em_config=em_config,
        mcmc_config=mcmc_config,
        prior_bound=args.prior_bound,
    )
    manifest = {"command": args.command, **source, **record}
    _write_reproducibility(args.output, manifest)
    log.info("Wrote %d tables to %s", len(record["outputs"]), args.output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
