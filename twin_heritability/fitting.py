"""
Maximum-likelihood fitting of twin covariance models.

Each pair contributes a bivariate normal full-information likelihood with
expected means ``m_j + sum_k beta_k * x_kj`` (x_kj = covariate k of twin j, a
definition variable) and covariance ``[[v1, c], [c, v2]]``. Only the objective
lives here; minimisation is SciPy's L-BFGS-B inside the parameter bounds, and
the numerical Hessian for standard errors and Wald intervals comes from
statsmodels' numdiff helpers.

``fit_model(..., tryhard=True)`` retries from perturbed starting points until
an attempt converges or the attempt budget is spent, keeping the best fit.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import scipy.stats as sps
from scipy import optimize
from statsmodels.tools.numdiff import approx_fprime, approx_hess3

from .config import Covariate
from .errors import OptimizationFailure
from .models import ModelSpec, implied_correlation


LOG_2PI = math.log(2.0 * math.pi)
_PENALTY = 1e10
# Multiplicative and additive jitter for retry starts
_TRYHARD_SCALE = 0.25
_TRYHARD_SHIFT = 0.1


@dataclass(frozen=True)
class GroupArrays:
    y: np.ndarray  # (n, 2) phenotype per twin
    x: np.ndarray  # (n, k, 2) covariates per twin


@dataclass(frozen=True)
class TwinData:
    groups: Mapping[str, GroupArrays]

    @classmethod
    def from_frames(cls, frames: Mapping[str, pd.DataFrame], pheno_cols: Sequence[str],
                    covariates: Sequence[Covariate]) -> "TwinData":
        groups = {}
        for label, df in frames.items():
            y = df[list(pheno_cols)].to_numpy(dtype=float)
            if covariates:
                x = np.stack([df[list(cov.columns)].to_numpy(dtype=float) for cov in covariates], axis=1)
            else:
                x = np.zeros((len(df), 0, 2), dtype=float)
            groups[label] = GroupArrays(y=y, x=x)
        return cls(groups=groups)

    @property
    def n_rows(self) -> int:
        return int(sum(g.y.shape[0] for g in self.groups.values()))

    @property
    def n_observed(self) -> int:
        return int(sum(np.isfinite(g.y).sum() for g in self.groups.values()))


def _group_minus2ll(arrays: GroupArrays, betas: np.ndarray, m1: float, m2: float,
                    v1: float, v2: float, c: float) -> float:
    det = v1 * v2 - c * c
    if v1 <= 0 or v2 <= 0 or det <= 0:
        return math.inf
    mu = np.array([m1, m2]) + np.einsum("nkt,k->nt", arrays.x, betas)
    r = arrays.y - mu
    quad = (r[:, 0] ** 2 * v2 - 2.0 * c * r[:, 0] * r[:, 1] + r[:, 1] ** 2 * v1) / det
    n = arrays.y.shape[0]
    return float(n * (2.0 * LOG_2PI + math.log(det)) + quad.sum())


def minus2_log_likelihood(spec: ModelSpec, data: TwinData, free_values: Optional[Sequence[float]] = None) -> float:
    """-2 log-likelihood of ``data`` under ``spec`` at the given free parameter values."""
    sv = spec.slot_values(spec.values_dict(free_values))
    betas = np.array([sv[f"beta.{cov.name}"] for cov in spec.covariates], dtype=float)
    total = 0.0
    for group in spec.groups:
        total += _group_minus2ll(
            data.groups[group], betas,
            sv[f"{group}.mean1"], sv[f"{group}.mean2"],
            sv[f"{group}.var1"], sv[f"{group}.var2"], sv[f"{group}.cov21"],
        )
    return total


@dataclass(frozen=True)
class FitResult:
    model: str
    spec: ModelSpec
    minus2ll: float
    n_params: int
    n_observed: int
    n_rows: int
    status_code: int
    status_message: str
    estimates: Dict[str, float]
    standard_errors: Dict[str, float] = field(default_factory=dict)
    algebras: Dict[str, float] = field(default_factory=dict)
    intervals: Optional[pd.DataFrame] = None
    attempts: int = 1

    @property
    def df(self) -> int:
        return self.n_observed - self.n_params

    @property
    def aic(self) -> float:
        return self.minus2ll + 2.0 * self.n_params

    @property
    def bic(self) -> float:
        return self.minus2ll + self.n_params * math.log(max(1, self.n_rows))

    @property
    def converged(self) -> bool:
        return self.status_code == 0

    def all_values(self) -> Dict[str, float]:
        """Free estimates plus fixed parameter values."""
        return self.spec.values_dict([self.estimates[l] for l in self.spec.free_labels])

    def implied_correlations(self) -> Dict[str, float]:
        sv = self.spec.slot_values(self.all_values())
        return {g: implied_correlation(sv, g) for g in self.spec.groups}

    def parameter_table(self) -> pd.DataFrame:
        labels = self.spec.free_labels
        return pd.DataFrame({
            "parameter": labels,
            "estimate": [self.estimates[l] for l in labels],
            "se": [self.standard_errors.get(l, float("nan")) for l in labels],
        })


def _clip(x: np.ndarray, bounds) -> np.ndarray:
    lo = np.array([-np.inf if b[0] is None else b[0] for b in bounds], dtype=float)
    hi = np.array([np.inf if b[1] is None else b[1] for b in bounds], dtype=float)
    return np.clip(x, lo, hi)


def _wald_intervals(spec: ModelSpec, objective, xhat: np.ndarray, level: float):
    """Standard errors and Wald / delta-method intervals from the Hessian of -2LL."""
    labels = spec.free_labels
    nan_se = {l: float("nan") for l in labels}
    try:
        hess = approx_hess3(xhat, objective)
        if not np.all(np.isfinite(hess)):
            return nan_se, None
        # -2LL Hessian is twice the observed information
        cov = 2.0 * np.linalg.inv(hess)
    except np.linalg.LinAlgError:
        return nan_se, None
    var = np.diag(cov)
    se = {l: float(math.sqrt(v)) if v > 0 else float("nan") for l, v in zip(labels, var)}

    z = float(sps.norm.ppf(0.5 + level / 2.0))
    rows = []
    for label, est in zip(labels, xhat):
        s = se[label]
        rows.append({"name": label, "lbound": est - z * s, "estimate": float(est), "ubound": est + z * s, "se": s})
    for algebra in spec.algebras:
        def algebra_at(x, _a=algebra):
            return _a.evaluate(spec.slot_values(spec.values_dict(x)))

        est = algebra_at(xhat)
        grad = np.atleast_1d(approx_fprime(xhat, algebra_at, centered=True)).ravel()
        a_var = float(grad @ cov @ grad)
        s = math.sqrt(a_var) if a_var > 0 else float("nan")
        rows.append({"name": algebra.name, "lbound": est - z * s, "estimate": est, "ubound": est + z * s, "se": s})
    return se, pd.DataFrame(rows).set_index("name")


def fit_model(spec: ModelSpec, data: TwinData, intervals: bool = False, tryhard: bool = True,
              max_attempts: int = 5, seed: Optional[int] = None, ci_level: float = 0.95) -> FitResult:
    """Fit ``spec`` to ``data``; raises OptimizationFailure when no attempt yields a finite fit."""
    bounds = spec.bounds()

    def objective(x):
        val = minus2_log_likelihood(spec, data, x)
        return val if np.isfinite(val) else _PENALTY

    rng = np.random.default_rng(seed)
    x0 = _clip(np.asarray(spec.start_values(), dtype=float), bounds)
    n_attempts = max(1, int(max_attempts)) if tryhard else 1

    best = None
    last_error: Optional[Exception] = None
    used = 0
    for attempt in range(n_attempts):
        used = attempt + 1
        if attempt == 0:
            start = x0
        else:
            base = best.x if best is not None else x0
            jitter = rng.uniform(1.0 - _TRYHARD_SCALE, 1.0 + _TRYHARD_SCALE, size=base.size)
            start = _clip(base * jitter + rng.uniform(-_TRYHARD_SHIFT, _TRYHARD_SHIFT, size=base.size), bounds)
        if objective(start) >= _PENALTY:
            last_error = OptimizationFailure("objective is not finite at the starting values", model=spec.name)
            continue
        try:
            res = optimize.minimize(objective, start, method="L-BFGS-B", bounds=bounds, options={"maxiter": 5000})
        except (ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
            last_error = e
            continue
        if not np.isfinite(res.fun) or res.fun >= _PENALTY:
            continue
        if best is None or res.fun < best.fun - 1e-9 or (res.success and not best.success and res.fun <= best.fun + 1e-6):
            best = res
        if best.success:
            break

    if best is None:
        reason = f": {last_error}" if last_error is not None else ""
        raise OptimizationFailure(f"Model {spec.name} failed to fit after {used} attempt(s){reason}", model=spec.name)

    xhat = np.asarray(best.x, dtype=float)
    se, ci = _wald_intervals(spec, objective, xhat, ci_level)
    values = spec.values_dict(xhat)
    return FitResult(
        model=spec.name,
        spec=spec,
        minus2ll=float(best.fun),
        n_params=spec.n_free,
        n_observed=data.n_observed,
        n_rows=data.n_rows,
        status_code=0 if best.success else 1,
        status_message=str(best.message),
        estimates={l: float(v) for l, v in zip(spec.free_labels, xhat)},
        standard_errors=se,
        algebras=spec.evaluate_algebras(values),
        intervals=ci if intervals else None,
        attempts=used,
    )


def run_model_safe(spec: ModelSpec, data: TwinData, intervals: bool = False, use_tryhard: bool = True,
                   max_attempts: int = 5, seed: Optional[int] = None, ci_level: float = 0.95,
                   phenotype: Optional[str] = None) -> Optional[FitResult]:
    """``fit_model`` that warns instead of raising; returns None for a failed fit."""
    where = f"{phenotype}: " if phenotype else ""
    try:
        fit = fit_model(spec, data, intervals=intervals, tryhard=use_tryhard,
                        max_attempts=max_attempts, seed=seed, ci_level=ci_level)
    except OptimizationFailure as e:
        warnings.warn(f"{where}Model fitting failed: {e}", stacklevel=2)
        return None
    if not fit.converged:
        warnings.warn(
            f"{where}Model {spec.name} did not converge properly. Status: {fit.status_code} - {fit.status_message}",
            stacklevel=2,
        )
    return fit
