"""
Loading, cleaning and partitioning of wide-format twin pair records.

Input layout: one row per twin pair with a pair id, a zygosity code and, for
every measured variable, one column per twin (``<stem>1`` and ``<stem>2``).

Cleaning follows the pairwise-complete rule: a pair is analysed only if both
twins have a value, otherwise the whole pair is removed. Grand scaling pools
both twins into one distribution before computing mean and SD, so twin 1 and
twin 2 stay on the same scale.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import AnalysisConfig
from .errors import ConfigurationError, DataQualityError


@dataclass
class PreparedData:
    """Cleaned, scaled and partitioned data for one phenotype."""

    phenotype: str
    pheno_cols: Tuple[str, str]
    cohorts: Dict[str, pd.DataFrame]
    n_removed_phenotype: int = 0
    n_removed_covariates: int = 0
    scaled: List[str] = field(default_factory=list)
    quality: Optional[pd.DataFrame] = None

    def __getitem__(self, group: str) -> pd.DataFrame:
        return self.cohorts[group]

    @property
    def sizes(self) -> Dict[str, int]:
        return {g: len(df) for g, df in self.cohorts.items()}


def load_twin_data(path: str) -> pd.DataFrame:
    try:
        data = pd.read_csv(path)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Data file not found: {path}") from e
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ConfigurationError(f"Could not parse data file {path}: {e}") from e
    print(f"  Data loaded: {data.shape[0]} rows, {data.shape[1]} columns")
    return data


def phenotype_columns(phenotype: str, suffixes: Sequence[str] = ("1", "2")) -> Tuple[str, str]:
    return (f"{phenotype}{suffixes[0]}", f"{phenotype}{suffixes[1]}")


def covariate_columns(config: AnalysisConfig) -> List[str]:
    cols: List[str] = []
    for cov in config.covariates:
        cols.extend(cov.columns)
    return cols


def check_required_columns(data: pd.DataFrame, config: AnalysisConfig) -> None:
    """Structural columns shared by every phenotype; absence aborts the run."""
    required = [config.twin_id_col, config.zygosity_col] + covariate_columns(config)
    missing = [c for c in required if c not in data.columns]
    if missing:
        raise ConfigurationError(f"Required column(s) not found in data: {', '.join(missing)}")


def check_data_quality(data: pd.DataFrame, columns: Sequence[str], threshold: float = 20.0) -> pd.DataFrame:
    """Percent missing per column; warns for absent columns and those above ``threshold``."""
    rows = []
    n = max(1, len(data))
    for col in columns:
        if col not in data.columns:
            warnings.warn(f"Variable '{col}' not found in data.", stacklevel=2)
            continue
        n_missing = int(data[col].isna().sum())
        pct = 100.0 * n_missing / n
        flagged = pct > threshold
        if flagged:
            warnings.warn(
                f"Variable '{col}': {pct:.1f}% missing data (> {threshold:.1f}% threshold)",
                stacklevel=2,
            )
        rows.append({"variable": col, "n_missing": n_missing, "pct_missing": pct, "flagged": flagged})
    return pd.DataFrame(rows, columns=["variable", "n_missing", "pct_missing", "flagged"])


def drop_incomplete_pairs(data: pd.DataFrame, columns: Sequence[str], id_col: str) -> Tuple[pd.DataFrame, int]:
    """Remove every pair with a missing value in any of ``columns``.

    Rows are removed by pair id, so a pair recorded on several rows goes as a
    whole. Returns the cleaned frame and the number of rows removed.
    """
    incomplete = data[list(columns)].isna().any(axis=1)
    if not incomplete.any():
        return data, 0
    bad_ids = set(data.loc[incomplete, id_col])
    keep = ~data[id_col].isin(bad_ids)
    return data.loc[keep].copy(), int((~keep).sum())


def scale_grand(data: pd.DataFrame, col1: str, col2: str) -> pd.DataFrame:
    """Standardize two twin columns by the mean and SD of both pooled together."""
    pooled = pd.concat([data[col1], data[col2]], ignore_index=True).astype(float)
    grand_mean = pooled.mean()
    grand_sd = pooled.std(ddof=1)
    if not np.isfinite(grand_sd) or grand_sd <= 0:
        raise DataQualityError(f"Cannot scale {col1}/{col2}: pooled SD is {grand_sd}")
    data = data.copy()
    data[col1] = (data[col1].astype(float) - grand_mean) / grand_sd
    data[col2] = (data[col2].astype(float) - grand_mean) / grand_sd
    return data


def to_long(data: pd.DataFrame, id_col: str, stems: Sequence[str],
            suffixes: Sequence[str] = ("1", "2"), keep: Sequence[str] = ()) -> pd.DataFrame:
    """Reshape wide pair records into one row per twin with a ``member`` column."""
    parts = []
    for member, suffix in enumerate(suffixes, start=1):
        cols = {f"{stem}{suffix}": stem for stem in stems}
        part = data[[id_col, *keep, *cols]].rename(columns=cols)
        part.insert(1, "member", member)
        parts.append(part)
    return pd.concat(parts, ignore_index=True).sort_values([id_col, "member"], kind="stable").reset_index(drop=True)


def split_by_zygosity(data: pd.DataFrame, zygosity_col: str, codes: Mapping[str, object],
                      on_unexpected: str = "error", phenotype: Optional[str] = None) -> Dict[str, pd.DataFrame]:
    """Partition pairs into the configured groups, in configuration order."""
    expected = data[zygosity_col].isin(list(codes.values()))
    n_unexpected = int((~expected).sum())
    if n_unexpected:
        values = sorted({str(v) for v in data.loc[~expected, zygosity_col]})
        message = (
            f"{n_unexpected} pair(s) with missing or unexpected {zygosity_col} value(s) "
            f"{', '.join(values)} (expected {', '.join(str(v) for v in codes.values())})"
        )
        if on_unexpected == "error":
            raise DataQualityError(message, phenotype=phenotype)
        warnings.warn(f"{phenotype or 'data'}: dropping {message}", stacklevel=2)
    return {
        label: data.loc[data[zygosity_col] == code].reset_index(drop=True)
        for label, code in codes.items()
    }


def prepare_cohorts(data: pd.DataFrame, phenotype: str, config: AnalysisConfig) -> PreparedData:
    """Select, clean, scale and partition the pairs for one phenotype."""
    pheno_cols = phenotype_columns(phenotype, config.member_suffixes)
    absent = [c for c in pheno_cols if c not in data.columns]
    if absent:
        raise DataQualityError(f"Phenotype column(s) not found: {', '.join(absent)}", phenotype=phenotype)

    cov_cols = covariate_columns(config)
    quality = check_data_quality(data, [*pheno_cols, *cov_cols], config.missing_data_threshold)

    selected = data[[config.twin_id_col, config.zygosity_col, *pheno_cols, *cov_cols]]
    clean, n_removed = drop_incomplete_pairs(selected, pheno_cols, config.twin_id_col)
    if n_removed:
        print(f"  Removed {n_removed} pairs with missing {phenotype}")
    # Covariates enter the means as fixed data, so they must be complete as well.
    clean, n_removed_cov = drop_incomplete_pairs(clean, cov_cols, config.twin_id_col)
    if n_removed_cov:
        print(f"  Removed {n_removed_cov} pairs with missing covariates")

    scaled: List[str] = []
    if config.grand_scale and len(clean) > 1:
        clean = scale_grand(clean, *pheno_cols)
        scaled.append(phenotype)
        for cov in config.covariates:
            if cov.scale:
                clean = scale_grand(clean, *cov.columns)
                scaled.append(cov.name)
        print("  Variables scaled by grand mean/SD")

    cohorts = split_by_zygosity(
        clean, config.zygosity_col, config.zygosity_codes,
        on_unexpected=config.unexpected_zygosity, phenotype=phenotype,
    )
    for label, frame in cohorts.items():
        print(f"  {label} pairs: {len(frame)}")

    small = {g: len(df) for g, df in cohorts.items() if len(df) < config.min_sample_size}
    if small:
        detail = ", ".join(f"{g}={n}" for g, n in small.items())
        raise DataQualityError(
            f"Insufficient sample size ({detail}; minimum {config.min_sample_size} pairs per group)",
            phenotype=phenotype,
        )

    return PreparedData(
        phenotype=phenotype,
        pheno_cols=pheno_cols,
        cohorts=cohorts,
        n_removed_phenotype=n_removed,
        n_removed_covariates=n_removed_cov,
        scaled=scaled,
        quality=quality,
    )
