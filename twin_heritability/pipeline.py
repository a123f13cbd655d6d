"""
Twin study heritability analysis: saturated models with covariate adjustment.

For every configured phenotype the pipeline

1. selects the twin 1 / twin 2 columns, drops incomplete pairs and grand-scales
   the phenotype and continuous covariates,
2. splits pairs into MZ and DZ cohorts (skipping the phenotype when a cohort is
   smaller than ``min_sample_size``),
3. fits the saturated model and the nested chain (equal means within zygosity,
   equal variances within zygosity, equal means and variances across zygosity,
   equal covariances across zygosity), each started from its parent's
   estimates,
4. compares every nested model with the saturated model, and the
   equal-across-zygosity model with one covariate-dropped model per covariate,
5. writes a text log and the comparison tables.

Phenotypes are independent: data problems, failed fits and write errors are
reported as warnings and the run moves on. Only configuration problems
(missing data file or structural columns, invalid options) abort the run.

Usage
-----
1) Run the analysis from a JSON configuration:
   python3 -m twin_heritability.pipeline run --config analysis.json

2) Override options on the command line:
   python3 -m twin_heritability.pipeline run --data data/twin_data.csv \
     --phenotypes Total_Cerebel_Vol Left_VIIB --output-dir output --max-attempts 10

3) Write a synthetic dataset to try the pipeline:
   python3 -m twin_heritability.pipeline simulate --out data/sim.csv \
     --n-mz 150 --n-dz 150 --r-mz 0.8 --r-dz 0.4
"""

from __future__ import annotations

import argparse
import os
import sys
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import pandas as pd

from .compare import compare_models
from .config import AnalysisConfig, load_config
from .data import check_required_columns, load_twin_data, prepare_cohorts
from .errors import ConfigurationError, DataQualityError, OptimizationFailure, ReportingError
from .fitting import FitResult, TwinData, run_model_safe
from .models import (
    ModelSpec,
    build_saturated,
    derive_covariate_dropped,
    derive_equal_across_groups,
    derive_equal_covariances,
    derive_equal_means,
    derive_equal_variances,
)
from .report import PhenotypeLog, format_session_info, save_results
from .simulate import simulate_twin_data


@dataclass
class PhenotypeResult:
    phenotype: str
    sizes: Dict[str, int]
    fits: Dict[str, Optional[FitResult]] = field(default_factory=dict)
    model_tests: Optional[pd.DataFrame] = None
    covariate_tests: Optional[pd.DataFrame] = None
    correlation_test: Optional[pd.DataFrame] = None
    correlations: Dict[str, float] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)


@dataclass
class RunContext:
    """State of one analysis run: configuration, input data and accumulated results."""

    config: AnalysisConfig
    data: pd.DataFrame
    results: Dict[str, PhenotypeResult] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def open(cls, config: AnalysisConfig, data: Optional[pd.DataFrame] = None) -> "RunContext":
        config.validate()
        if data is None:
            if not os.path.exists(config.data_path):
                raise ConfigurationError(f"Data file not found: {config.data_path}")
            print("Loading data...")
            data = load_twin_data(config.data_path)
        check_required_columns(data, config)
        try:
            os.makedirs(config.log_dir, exist_ok=True)
            os.makedirs(config.results_dir, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create output directory {config.output_dir}: {e}") from e
        return cls(config=config, data=data)

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def warn(self, phenotype: str, reason: str) -> None:
        message = f"{phenotype}: {reason}"
        self.warnings.append(message)
        warnings.warn(message, stacklevel=3)

    def skip(self, phenotype: str, reason: str) -> None:
        self.skipped[phenotype] = reason
        self.warn(phenotype, f"skipped ({reason})")

    def close(self) -> None:
        print("\n============================================================")
        print("Analysis Pipeline Complete")
        print("============================================================")
        print(f"  Analysed: {len(self.results)} phenotype(s)")
        if self.skipped:
            print(f"  Skipped: {', '.join(self.skipped)}")
        print(f"  Logs: {self.config.log_dir}")
        print(f"  Results: {self.config.results_dir}")


def _seeded(spec: ModelSpec, fit: Optional[FitResult]) -> ModelSpec:
    """Carry a fitted parent's estimates into the spec as starting values."""
    return spec.with_values(fit.estimates) if fit is not None else spec


def _save(ctx: RunContext, result: PhenotypeResult, key: str, table: pd.DataFrame, filename: str) -> None:
    try:
        result.outputs[key] = save_results(table, filename, ctx.config.results_dir)
    except ReportingError as e:
        ctx.warn(result.phenotype, str(e))


def analyze_phenotype(ctx: RunContext, phenotype: str) -> PhenotypeResult:
    """Run the full model sequence for one phenotype.

    Raises DataQualityError when the phenotype cannot be analysed (nothing is
    written in that case) and OptimizationFailure when the saturated model fails.
    """
    cfg = ctx.config
    print(f"\n--- Analyzing: {phenotype} ---")
    prepared = prepare_cohorts(ctx.data, phenotype, cfg)
    data = TwinData.from_frames(prepared.cohorts, prepared.pheno_cols, cfg.covariates)
    result = PhenotypeResult(phenotype=phenotype, sizes=prepared.sizes)

    def fit(spec: ModelSpec, intervals: bool = False) -> Optional[FitResult]:
        out = run_model_safe(
            spec, data, intervals=intervals, use_tryhard=cfg.use_tryhard, max_attempts=cfg.max_attempts,
            seed=cfg.seed, ci_level=cfg.ci_level, phenotype=phenotype,
        )
        result.fits[spec.name] = out
        return out

    log_path = os.path.join(cfg.log_dir, f"{phenotype}_saturated.txt")
    with PhenotypeLog(log_path) as log:
        result.outputs["log"] = log_path
        log.header(phenotype, prepared)
        if cfg.print_descriptives:
            log.descriptives(
                prepared, [*prepared.pheno_cols, *(c for cov in cfg.covariates for c in cov.columns)],
                cfg.twin_id_col, cfg.member_suffixes,
            )

        log.section("Fitting Saturated Model")
        fit_sat = fit(build_saturated(cfg))
        if fit_sat is None:
            log.write("Saturated model failed; no further models fitted.")
            raise OptimizationFailure("saturated model failed", model="Saturated_Model")
        log.fit_summary(fit_sat)
        log.estimates(fit_sat)
        sat_r = fit_sat.implied_correlations()
        log.write("\nImplied twin correlations: " + ", ".join(f"r{g}={r:.4f}" for g, r in sat_r.items()))

        log.section("Fitting Nested Models")
        emo_spec = derive_equal_means(_seeded(fit_sat.spec, fit_sat))
        fit_emo = fit(emo_spec)
        emvo_spec = derive_equal_variances(_seeded(emo_spec, fit_emo))
        fit_emvo = fit(emvo_spec)
        emvz_spec = derive_equal_across_groups(_seeded(emvo_spec, fit_emvo))
        fit_emvz = fit(emvz_spec, intervals=cfg.compute_ci)
        ecz_spec = derive_equal_covariances(_seeded(emvz_spec, fit_emvz))
        fit_ecz = fit(ecz_spec)
        for nested in (fit_emo, fit_emvo, fit_emvz, fit_ecz):
            if nested is not None:
                log.fit_summary(nested)
                log.estimates(nested)

        if fit_emvz is not None:
            result.correlations = dict(fit_emvz.algebras)
            log.write("\nEstimated twin correlations: "
                      + ", ".join(f"{k}={v:.4f}" for k, v in fit_emvz.algebras.items()))
            if fit_emvz.intervals is not None:
                log.intervals(fit_emvz, names=list(fit_emvz.algebras))

        result.model_tests = compare_models(fit_sat, [fit_emo, fit_emvo, fit_emvz, fit_ecz])
        log.comparison("Model Comparison: Nested Models", result.model_tests)
        _save(ctx, result, "model_tests", result.model_tests, f"{phenotype}_model_tests.csv")

        if fit_emvz is None:
            ctx.warn(phenotype, "equal-across-zygosity model failed; covariate and correlation tests skipped")
        else:
            result.correlation_test = compare_models(fit_emvz, [fit_ecz])
            log.comparison("Twin Correlation Test (MZ vs DZ)", result.correlation_test)
            _save(ctx, result, "correlation_test", result.correlation_test, f"{phenotype}_correlation_test.csv")

            log.section("Testing Covariate Effects")
            base = _seeded(emvz_spec, fit_emvz)
            dropped = [fit(derive_covariate_dropped(base, cov)) for cov in cfg.covariates]
            result.covariate_tests = compare_models(fit_emvz, dropped)
            log.comparison("Covariate Tests", result.covariate_tests)
            _save(ctx, result, "covariate_tests", result.covariate_tests, f"{phenotype}_covariate_tests.csv")

    print(f"  Analysis complete for {phenotype}")
    print(f"  Results saved to {log_path}")
    return result


def process_phenotype(ctx: RunContext, phenotype: str) -> Optional[PhenotypeResult]:
    """Analyse one phenotype and record its result on ``ctx``, or record why it was skipped."""
    try:
        result = analyze_phenotype(ctx, phenotype)
    except DataQualityError as e:
        ctx.skip(phenotype, str(e))
        return None
    except OptimizationFailure as e:
        ctx.skip(phenotype, f"optimization failed: {e}")
        return None
    except ReportingError as e:
        ctx.skip(phenotype, f"reporting failed: {e}")
        return None
    ctx.results[phenotype] = result
    return result


def run_analysis(config: AnalysisConfig, data: Optional[pd.DataFrame] = None) -> RunContext:
    """Analyse every configured phenotype; only ConfigurationError propagates."""
    print("\n============================================================")
    print("Twin Study Heritability Analysis")
    print("============================================================\n")
    print(format_session_info())
    with RunContext.open(config, data) as ctx:
        print(f"\nStarting analysis for {len(config.phenotypes)} phenotypes...")
        for phenotype in config.phenotypes:
            process_phenotype(ctx, phenotype)
    return ctx


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Saturated twin model analysis (MZ/DZ) with nested model tests")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Fit the model sequence for each phenotype")
    run.add_argument("--config", help="JSON configuration file")
    run.add_argument("--data", help="Twin data CSV (overrides data_path)")
    run.add_argument("--phenotypes", nargs="+", help="Phenotype stems (twin suffixes are appended)")
    run.add_argument("--output-dir", help="Directory for logs/ and results/")
    run.add_argument("--min-sample-size", type=int, help="Minimum pairs per zygosity group")
    run.add_argument("--max-attempts", type=int, help="Optimization attempts per model")
    run.add_argument("--seed", type=int, help="Seed for retry perturbations")
    run.add_argument("--no-scale", action="store_true", help="Do not grand-scale variables")
    run.add_argument("--no-ci", action="store_true", help="Skip confidence intervals")
    run.add_argument("--no-tryhard", action="store_true", help="Single optimization attempt per model")
    run.add_argument("--drop-unexpected-zygosity", action="store_true",
                     help="Drop pairs with unexpected zygosity codes instead of skipping the phenotype")

    sim = sub.add_parser("simulate", help="Write a synthetic twin dataset")
    sim.add_argument("--out", required=True, help="Output CSV path")
    sim.add_argument("--n-mz", type=int, default=150)
    sim.add_argument("--n-dz", type=int, default=150)
    sim.add_argument("--r-mz", type=float, default=0.8, help="Within-pair correlation for MZ")
    sim.add_argument("--r-dz", type=float, default=0.4, help="Within-pair correlation for DZ")
    sim.add_argument("--beta-age", type=float, default=0.0, help="Phenotype change per SD of age")
    sim.add_argument("--phenotypes", nargs="+", default=["pheno"])
    sim.add_argument("--seed", type=int, default=12345)
    return parser


def _config_from_args(args: argparse.Namespace) -> AnalysisConfig:
    if args.config:
        config = load_config(args.config)
    elif args.data and args.phenotypes:
        config = AnalysisConfig(data_path=args.data, phenotypes=list(args.phenotypes))
    else:
        raise ConfigurationError("Provide --config, or both --data and --phenotypes")
    return config.with_overrides(
        data_path=args.data,
        phenotypes=list(args.phenotypes) if args.phenotypes else None,
        output_dir=args.output_dir,
        min_sample_size=args.min_sample_size,
        max_attempts=args.max_attempts,
        seed=args.seed,
        grand_scale=False if args.no_scale else None,
        compute_ci=False if args.no_ci else None,
        use_tryhard=False if args.no_tryhard else None,
        unexpected_zygosity="drop" if args.drop_unexpected_zygosity else None,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.command == "simulate":
        df = simulate_twin_data(
            args.n_mz, args.n_dz, args.r_mz, args.r_dz,
            beta={"age": args.beta_age}, phenotypes=args.phenotypes, seed=args.seed,
        )
        os.makedirs(os.path.dirname(args.out) or ".", exist_ok=True)
        df.to_csv(args.out, index=False)
        print(f"Wrote {len(df)} pairs to {args.out}")
        return 0

    try:
        config = _config_from_args(args)
        run_analysis(config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
