"""
Per-phenotype text logs and CSV result tables.
"""

from __future__ import annotations

import os
import platform
import sys
from datetime import datetime
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import scipy
import statsmodels

from .data import PreparedData, to_long
from .errors import ReportingError
from .fitting import FitResult


def format_session_info() -> str:
    lines = [
        f"Python {sys.version.split()[0]} on {platform.platform()}",
        f"numpy {np.__version__}",
        f"pandas {pd.__version__}",
        f"scipy {scipy.__version__}",
        f"statsmodels {statsmodels.__version__}",
    ]
    return "\n".join(lines)


def save_results(table: pd.DataFrame, filename: str, output_dir: str) -> str:
    """Write ``table`` as CSV (no index) and return its path."""
    filepath = os.path.join(output_dir, filename)
    try:
        os.makedirs(output_dir, exist_ok=True)
        table.to_csv(filepath, index=False)
    except OSError as e:
        raise ReportingError(f"Could not write {filepath}: {e}") from e
    print(f"Results saved: {filepath}")
    return filepath


class PhenotypeLog:
    """Text log for one phenotype; use as a context manager."""

    def __init__(self, path: str):
        self.path = path
        self._fh = None

    def __enter__(self) -> "PhenotypeLog":
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            self._fh = open(self.path, "w", encoding="utf-8")
        except OSError as e:
            raise ReportingError(f"Could not open log {self.path}: {e}") from e
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def write(self, text: str = "") -> None:
        if self._fh is None:
            raise ReportingError(f"Log {self.path} is not open")
        try:
            self._fh.write(text + "\n")
        except OSError as e:
            raise ReportingError(f"Could not write to log {self.path}: {e}") from e

    def section(self, title: str) -> None:
        self.write(f"\n--- {title} ---")

    def header(self, phenotype: str, prepared: PreparedData) -> None:
        self.write(f"\n=== Analysis: {phenotype} ===")
        self.write(f"Date: {datetime.now():%Y-%m-%d %H:%M:%S}")
        for group, n in prepared.sizes.items():
            self.write(f"{group} sample: {n} pairs")
        if prepared.n_removed_phenotype:
            self.write(f"Removed {prepared.n_removed_phenotype} pairs with missing {phenotype}")
        if prepared.n_removed_covariates:
            self.write(f"Removed {prepared.n_removed_covariates} pairs with missing covariates")
        if prepared.scaled:
            self.write(f"Grand-scaled: {', '.join(prepared.scaled)}")

    def descriptives(self, prepared: PreparedData, columns: Sequence[str], id_col: str,
                     suffixes: Sequence[str] = ("1", "2")) -> None:
        """Per-group means and covariances of ``columns``, then the phenotype pooled over both twins."""
        self.section("Descriptive Statistics")
        if prepared.quality is not None and len(prepared.quality):
            self.write("\nMissing data (before cleaning):")
            self.write(prepared.quality.to_string(index=False))
        for group, frame in prepared.cohorts.items():
            sub = frame[list(columns)]
            self.write(f"\n{group} Means:")
            self.write(sub.mean().to_string())
            self.write(f"\n{group} Covariance Matrix:")
            self.write(sub.cov().to_string())
            long = to_long(frame, id_col, [prepared.phenotype], suffixes)
            self.write(f"\n{group} Pooled over twins:")
            self.write(long[prepared.phenotype].describe().to_string(float_format=lambda v: f"{v:.4f}"))

    def fit_summary(self, fit: FitResult) -> None:
        self.write(f"\n=== Goodness-of-Fit Statistics: {fit.model} ===")
        self.write(f"  -2 Log-Likelihood: {fit.minus2ll:.2f}")
        self.write(f"  Estimated parameters: {fit.n_params}")
        self.write(f"  Degrees of Freedom: {fit.df}")
        self.write(f"  AIC: {fit.aic:.2f}")
        self.write(f"  BIC: {fit.bic:.2f}")
        self.write(f"  Status: {fit.status_code} ({fit.status_message}), attempts: {fit.attempts}")

    def estimates(self, fit: FitResult) -> None:
        self.write(f"\n=== Parameter Estimates: {fit.model} ===")
        table = fit.parameter_table()
        if len(table):
            self.write(table.to_string(index=False, float_format=lambda v: f"{v:.4f}"))
        else:
            self.write("  No parameter estimates available.")

    def intervals(self, fit: FitResult, names: Optional[list] = None) -> None:
        if fit.intervals is None:
            return
        table = fit.intervals if names is None else fit.intervals.loc[[n for n in names if n in fit.intervals.index]]
        self.write("\nConfidence intervals:")
        self.write(table.to_string(float_format=lambda v: f"{v:.4f}"))

    def comparison(self, title: str, table: pd.DataFrame) -> None:
        self.section(title)
        if table.empty:
            self.write("  No comparison available.")
        else:
            self.write(table.to_string(index=False, float_format=lambda v: f"{v:.3f}"))
