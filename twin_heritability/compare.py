"""
Likelihood-ratio comparison of nested model fits.

Every candidate is compared with the same reference (star, not chained), in the
order supplied. The table has a first row for the
reference and one row per candidate, with the change in -2LL, in degrees of
freedom and in AIC/BIC, and the chi-square p-value.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import pandas as pd
import scipy.stats as sps

from .fitting import FitResult


COLUMNS = [
    "base", "comparison", "ep", "minus2LL", "df", "AIC", "BIC",
    "diffLL", "diffdf", "delta_AIC", "delta_BIC", "p",
]


@dataclass(frozen=True)
class ComparisonResult:
    base: str
    comparison: str
    ep: int
    minus2ll: float
    df: int
    aic: float
    bic: float
    diff_ll: float
    diff_df: int
    delta_aic: float
    delta_bic: float
    p: float

    def as_row(self) -> dict:
        return dict(zip(COLUMNS, [
            self.base, self.comparison, self.ep, self.minus2ll, self.df, self.aic, self.bic,
            self.diff_ll, self.diff_df, self.delta_aic, self.delta_bic, self.p,
        ]))


def likelihood_ratio_test(parent: FitResult, child: FitResult) -> ComparisonResult:
    """Compare ``child`` (nested, fewer free parameters) against ``parent``."""
    diff_df = parent.n_params - child.n_params
    if diff_df < 0:
        raise ValueError(
            f"{child.model} has more free parameters ({child.n_params}) than {parent.model} "
            f"({parent.n_params}) and cannot be nested in it"
        )
    diff_ll = child.minus2ll - parent.minus2ll
    # No valid chi-square test without a change in degrees of freedom
    p = float(sps.chi2.sf(max(diff_ll, 0.0), diff_df)) if diff_df > 0 else math.nan
    return ComparisonResult(
        base=parent.model,
        comparison=child.model,
        ep=child.n_params,
        minus2ll=child.minus2ll,
        df=child.df,
        aic=child.aic,
        bic=child.bic,
        diff_ll=diff_ll,
        diff_df=diff_df,
        delta_aic=child.aic - parent.aic,
        delta_bic=child.bic - parent.bic,
        p=p,
    )


def compare_models(reference: Optional[FitResult], candidates: Sequence[Optional[FitResult]]) -> pd.DataFrame:
    """Nested-model comparison table; absent candidate fits are left out."""
    if reference is None:
        return pd.DataFrame(columns=COLUMNS)
    rows: List[dict] = [{
        "base": reference.model,
        "comparison": None,
        "ep": reference.n_params,
        "minus2LL": reference.minus2ll,
        "df": reference.df,
        "AIC": reference.aic,
        "BIC": reference.bic,
        "diffLL": math.nan,
        "diffdf": math.nan,
        "delta_AIC": math.nan,
        "delta_BIC": math.nan,
        "p": math.nan,
    }]
    for candidate in candidates:
        if candidate is None:
            continue
        rows.append(likelihood_ratio_test(reference, candidate).as_row())
    return pd.DataFrame(rows, columns=COLUMNS)
