"""
Likelihood, optimizer wrapper and nested model comparisons.

The end-to-end scenarios fit real models to simulated twin samples, so the
expected estimates are checked with tolerances wide enough for sampling noise.
"""

import math
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest
import scipy.optimize
import scipy.stats as sps

import twin_heritability.compare as thc
import twin_heritability.fitting as thf
import twin_heritability.models as thm
from twin_heritability.config import AnalysisConfig
from twin_heritability.data import prepare_cohorts
from twin_heritability.errors import OptimizationFailure
from twin_heritability.simulate import simulate_twin_data


def _config(**kwargs) -> AnalysisConfig:
    base = dict(data_path="unused.csv", phenotypes=["pheno"], min_sample_size=20)
    base.update(kwargs)
    return AnalysisConfig(**base)


def _twin_data(df: pd.DataFrame, cfg: AnalysisConfig) -> thf.TwinData:
    prepared = prepare_cohorts(df, "pheno", cfg)
    return thf.TwinData.from_frames(prepared.cohorts, prepared.pheno_cols, cfg.covariates)


def _fit_chain(data: thf.TwinData, cfg: AnalysisConfig):
    """Fit saturated -> ... -> equal-across-groups, each started from its parent."""
    fits = {}
    spec = thm.build_saturated(cfg)
    fits["sat"] = thf.fit_model(spec, data, seed=1)
    spec = thm.derive_equal_means(fits["sat"].spec.with_values(fits["sat"].estimates))
    fits["emo"] = thf.fit_model(spec, data, seed=1)
    spec = thm.derive_equal_variances(spec.with_values(fits["emo"].estimates))
    fits["emvo"] = thf.fit_model(spec, data, seed=1)
    spec = thm.derive_equal_across_groups(spec.with_values(fits["emvo"].estimates))
    fits["emvz"] = thf.fit_model(spec, data, seed=1, intervals=True)
    return fits


def _fake_fit(name: str, minus2ll: float, n_params: int, n_observed: int = 120, n_rows: int = 60) -> thf.FitResult:
    return thf.FitResult(
        model=name,
        spec=thm.build_saturated(_config()),
        minus2ll=minus2ll,
        n_params=n_params,
        n_observed=n_observed,
        n_rows=n_rows,
        status_code=0,
        status_message="ok",
        estimates={},
    )


class TestLikelihood:
    def test_matches_multivariate_normal(self):
        cfg = _config()
        df = simulate_twin_data(25, 25, 0.7, 0.3, beta={"age": 0.4}, seed=3)
        data = _twin_data(df, cfg)
        spec = thm.build_saturated(cfg).with_values({
            "beta_age": 0.3, "beta_sex": -0.1, "beta_etiv": 0.2,
            "mMZ1": 0.1, "mMZ2": -0.1, "vMZ1": 1.2, "cMZ21": 0.6, "vMZ2": 0.9,
            "mDZ1": 0.0, "mDZ2": 0.2, "vDZ1": 1.0, "cDZ21": 0.3, "vDZ2": 1.1,
        })
        expected = 0.0
        betas = np.array([0.3, -0.1, 0.2])
        for group, (m, cov) in {
            "MZ": ([0.1, -0.1], [[1.2, 0.6], [0.6, 0.9]]),
            "DZ": ([0.0, 0.2], [[1.0, 0.3], [0.3, 1.1]]),
        }.items():
            arrays = data.groups[group]
            for y, x in zip(arrays.y, arrays.x):
                mean = np.array(m) + betas @ x
                expected += -2.0 * sps.multivariate_normal.logpdf(y, mean=mean, cov=cov)
        assert thf.minus2_log_likelihood(spec, data) == pytest.approx(expected, rel=1e-10)

    def test_non_positive_definite_is_infinite(self):
        cfg = _config()
        data = _twin_data(simulate_twin_data(25, 25, 0.7, 0.3, seed=3), cfg)
        spec = thm.build_saturated(cfg).with_values({"cMZ21": 1.5})
        assert math.isinf(thf.minus2_log_likelihood(spec, data))

    def test_data_counts(self):
        cfg = _config()
        data = _twin_data(simulate_twin_data(25, 21, 0.7, 0.3, seed=3), cfg)
        assert data.n_rows == 46
        assert data.n_observed == 92
        assert data.groups["MZ"].x.shape == (25, 3, 2)


class TestFitModel:
    def test_fit_statistics(self):
        cfg = _config()
        data = _twin_data(simulate_twin_data(30, 30, 0.8, 0.4, seed=5), cfg)
        fit = thf.fit_model(thm.build_saturated(cfg), data, seed=1)
        assert fit.converged
        assert fit.n_params == 13
        assert fit.df == 120 - 13
        assert fit.aic == pytest.approx(fit.minus2ll + 26)
        assert fit.bic == pytest.approx(fit.minus2ll + 13 * math.log(60))
        assert set(fit.estimates) == set(fit.spec.free_labels)
        # the fit is at least as good as the starting point
        assert fit.minus2ll <= thf.minus2_log_likelihood(fit.spec, data) + 1e-6
        assert all(np.isfinite(list(fit.standard_errors.values())))

    def test_constrained_fit_never_better_than_parent(self):
        cfg = _config()
        data = _twin_data(simulate_twin_data(30, 30, 0.8, 0.4, seed=6), cfg)
        fits = _fit_chain(data, cfg)
        assert fits["emo"].minus2ll >= fits["sat"].minus2ll - 1e-4
        assert fits["emvo"].minus2ll >= fits["emo"].minus2ll - 1e-4
        assert fits["emvz"].minus2ll >= fits["emvo"].minus2ll - 1e-4

    def test_intervals_for_correlations(self):
        cfg = _config()
        data = _twin_data(simulate_twin_data(40, 40, 0.8, 0.4, seed=8), cfg)
        emvz = _fit_chain(data, cfg)["emvz"]
        ci = emvz.intervals
        assert ci is not None
        for name in ("rMZ", "rDZ", "vZ"):
            row = ci.loc[name]
            assert row["lbound"] < row["estimate"] < row["ubound"]
        assert ci.loc["rMZ", "estimate"] == pytest.approx(emvz.algebras["rMZ"])

    def test_infeasible_start_raises(self):
        cfg = _config(lb_covariance=None)
        data = _twin_data(simulate_twin_data(25, 25, 0.7, 0.3, seed=3), cfg)
        spec = thm.build_saturated(cfg).with_values({"cMZ21": 5.0})
        with pytest.raises(OptimizationFailure) as info:
            thf.fit_model(spec, data, max_attempts=3, seed=0)
        assert info.value.model == thm.SATURATED

    def test_later_attempt_recovers(self, monkeypatch):
        cfg = _config()
        data = _twin_data(simulate_twin_data(30, 30, 0.8, 0.4, seed=5), cfg)
        spec = thm.build_saturated(cfg)
        reference = thf.fit_model(spec, data, seed=1)

        starts = []

        def fail_first(fun, x0, **kwargs):
            starts.append(np.array(x0, dtype=float))
            if len(starts) == 1:
                raise ValueError("line search failed")
            return scipy.optimize.minimize(fun, x0, **kwargs)

        monkeypatch.setattr(thf, "optimize", SimpleNamespace(minimize=fail_first))
        fit = thf.fit_model(spec, data, max_attempts=4, seed=1)
        assert fit.attempts >= 2
        # the retry starts from a perturbed point, not the original one
        assert not np.allclose(starts[0], starts[1])
        assert fit.minus2ll == pytest.approx(reference.minus2ll, abs=1e-2)

    def test_single_attempt_without_tryhard(self, monkeypatch):
        cfg = _config()
        data = _twin_data(simulate_twin_data(30, 30, 0.8, 0.4, seed=5), cfg)

        def always_fail(fun, x0, **kwargs):
            raise ValueError("line search failed")

        monkeypatch.setattr(thf, "optimize", SimpleNamespace(minimize=always_fail))
        with pytest.raises(OptimizationFailure, match="after 1 attempt"):
            thf.fit_model(thm.build_saturated(cfg), data, tryhard=False, max_attempts=5)

    def test_run_model_safe_returns_none_with_warning(self):
        cfg = _config(lb_covariance=None)
        data = _twin_data(simulate_twin_data(25, 25, 0.7, 0.3, seed=3), cfg)
        spec = thm.build_saturated(cfg).with_values({"cMZ21": 5.0})
        with pytest.warns(UserWarning, match="Left_VIIB: Model fitting failed"):
            out = thf.run_model_safe(spec, data, max_attempts=2, seed=0, phenotype="Left_VIIB")
        assert out is None


class TestCompareModels:
    def test_star_topology_and_order(self):
        ref = _fake_fit("sat", 300.0, 13)
        a = _fake_fit("a", 302.0, 11)
        b = _fake_fit("b", 310.0, 9)
        table = thc.compare_models(ref, [a, b])
        assert list(table["comparison"]) == [None, "a", "b"]
        assert set(table["base"]) == {"sat"}
        assert table.loc[1, "diffLL"] == pytest.approx(2.0)
        assert table.loc[2, "diffLL"] == pytest.approx(10.0)
        assert table.loc[2, "diffdf"] == 4
        assert table.loc[2, "p"] == pytest.approx(sps.chi2.sf(10.0, 4))
        assert table.loc[1, "delta_AIC"] == pytest.approx(2.0 - 4.0)
        assert table.loc[1, "delta_BIC"] == pytest.approx(2.0 - 2 * math.log(60))
        assert math.isnan(table.loc[0, "p"])

    def test_absent_candidates_are_omitted(self):
        ref = _fake_fit("sat", 300.0, 13)
        table = thc.compare_models(ref, [None, _fake_fit("b", 310.0, 9), None])
        assert list(table["comparison"]) == [None, "b"]

    def test_equal_df_has_no_p_value(self):
        result = thc.likelihood_ratio_test(_fake_fit("x", 300.0, 7), _fake_fit("y", 305.0, 7))
        assert result.diff_df == 0
        assert math.isnan(result.p)

    def test_more_parameters_is_not_nested(self):
        with pytest.raises(ValueError, match="cannot be nested"):
            thc.likelihood_ratio_test(_fake_fit("x", 300.0, 7), _fake_fit("y", 290.0, 9))

    def test_missing_reference(self):
        table = thc.compare_models(None, [_fake_fit("b", 310.0, 9)])
        assert table.empty
        assert list(table.columns) == thc.COLUMNS


class TestScenarios:
    def test_mz_dz_correlation_difference(self):
        """30 MZ pairs with r close to 1 and 30 DZ pairs with r = 0.5."""
        cfg = _config()
        df = simulate_twin_data(30, 30, 0.97, 0.5, seed=2024, exact=True)
        data = _twin_data(df, cfg)
        fits = _fit_chain(data, cfg)

        r = fits["sat"].implied_correlations()
        assert r["MZ"] == pytest.approx(1.0, abs=0.1)
        assert r["DZ"] == pytest.approx(0.5, abs=0.15)
        assert fits["emvz"].algebras["rMZ"] > fits["emvz"].algebras["rDZ"] + 0.25

        emvz = fits["emvz"]
        ecz_spec = thm.derive_equal_covariances(emvz.spec.with_values(emvz.estimates))
        ecz = thf.fit_model(ecz_spec, data, seed=1)
        table = thc.compare_models(emvz, [ecz])
        assert table.loc[1, "diffdf"] == 1
        assert table.loc[1, "p"] < 0.05

    def test_dropping_a_real_covariate_worsens_fit(self):
        cfg = _config()
        df = simulate_twin_data(30, 30, 0.6, 0.3, beta={"age": 0.8}, seed=99)
        data = _twin_data(df, cfg)
        emvz = _fit_chain(data, cfg)["emvz"]
        base = emvz.spec.with_values(emvz.estimates)
        dropped = [thf.fit_model(thm.derive_covariate_dropped(base, cov), data, seed=1) for cov in cfg.covariates]
        table = thc.compare_models(emvz, dropped)
        assert list(table["comparison"])[1:] == ["No_Age", "No_Sex", "No_eTIV"]
        assert table.loc[1, "p"] < 0.05
        assert (table["diffdf"].iloc[1:] == 1).all()
