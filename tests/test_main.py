import json

from combo_2stage.src.main import build_argparser, main


def test_argparser_defaults():
    args = build_argparser().parse_args(["simulate"])
    assert args.command == "simulate"
    assert args.n == 1000
    assert args.seed == 123
    assert args.log_level == "INFO"


def test_simulate_then_fit(tmp_path):
    sim_dir = tmp_path / "sim"
    rc = main(
        [
            "--log_level", "WARNING",
            "simulate",
            "--output", str(sim_dir),
            "--n", "300",
            "--tolerance", "1e-5",
            "--max_iterations", "200",
            "--n_chains", "2",
            "--n_samples", "150",
            "--burn_in", "50",
        ]
    )
    assert rc == 0
    for name in ("data.csv", "manifest.json", "environment.json", "pip_freeze.txt"):
        assert (sim_dir / name).exists()
    for name in (
        "em_coefficients.csv",
        "misclassification_stage1.csv",
        "misclassification_stage2.csv",
        "classification_rates.csv",
        "mcmc_summary.csv",
        "mcmc_draws.csv",
        "naive_summary.csv",
    ):
        assert (sim_dir / "tables" / name).exists()

    manifest = json.loads((sim_dir / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["simulated"] is True
    assert manifest["n"] == 300
    assert manifest["mcmc"]["n_draws"] == 200

    fit_dir = tmp_path / "fit"
    rc = main(
        [
            "fit",
            "--input", str(sim_dir / "data.csv"),
            "--output", str(fit_dir),
            "--tolerance", "1e-5",
            "--max_iterations", "200",
            "--no_mcmc",
        ]
    )
    assert rc == 0
    manifest = json.loads((fit_dir / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["simulated"] is False
    assert "mcmc" not in manifest
    assert manifest["em"]["status"] in ("converged", "max_iterations")
