"""
Synthetic twin pair data in the analysis input layout.

Phenotype model for pair i, twin j:
  y_ij = loc + scale * (a_ij + sum_k beta_k * z_kij)
where (a_i1, a_i2) is bivariate normal with unit variances and correlation
r_MZ or r_DZ, and z_kij is covariate k standardized over all twins.

Twins share age; MZ co-twins share sex; eTIV depends on sex and is correlated
within pairs.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .config import AnalysisConfig, default_covariates


def _latent_pairs(n: int, r: float, rng: np.random.Generator, exact: bool = False) -> np.ndarray:
    """n x 2 draws with unit variances and correlation r.

    With ``exact`` the draws are whitened first, so the sample covariance
    (divisor n) equals the target exactly.
    """
    if not (-1.0 < r < 1.0):
        raise ValueError(f"twin correlation must be in (-1, 1), got {r}")
    z = rng.standard_normal((n, 2))
    if exact and n > 2:
        z = z - z.mean(axis=0)
        s = np.cov(z, rowvar=False, bias=True)
        z = z @ np.linalg.inv(np.linalg.cholesky(s)).T
    chol = np.linalg.cholesky(np.array([[1.0, r], [r, 1.0]]))
    return z @ chol.T


def _zscore(a: np.ndarray, b: np.ndarray):
    pooled = np.concatenate([a, b])
    sd = pooled.std(ddof=1)
    if sd <= 0:
        return a - pooled.mean(), b - pooled.mean()
    return (a - pooled.mean()) / sd, (b - pooled.mean()) / sd


def simulate_twin_data(
    n_mz: int,
    n_dz: int,
    r_mz: float,
    r_dz: float,
    beta: Optional[Mapping[str, float]] = None,
    phenotypes: Sequence[str] = ("pheno",),
    seed: Optional[int] = None,
    exact: bool = False,
    loc: float = 0.0,
    scale: float = 1.0,
    config: Optional[AnalysisConfig] = None,
) -> pd.DataFrame:
    """Wide pair records: id, zygosity code, age/sex/eTIV per twin and each phenotype per twin."""
    if n_mz < 0 or n_dz < 0:
        raise ValueError("pair counts must be non-negative")
    rng = np.random.default_rng(seed)
    beta = dict(beta or {})

    id_col = config.twin_id_col if config else "tvparnr"
    zyg_col = config.zygosity_col if config else "zyg1"
    codes = config.zygosity_codes if config else {"MZ": 1, "DZ": 2}
    suffixes = config.member_suffixes if config else ("1", "2")
    covariates = {c.name: c for c in (config.covariates if config else default_covariates())}

    n = n_mz + n_dz
    is_mz = np.r_[np.ones(n_mz, dtype=bool), np.zeros(n_dz, dtype=bool)]

    age = np.round(rng.uniform(20.0, 80.0, size=n), 1)
    sex1 = rng.integers(0, 2, size=n)
    sex2 = np.where(is_mz, sex1, rng.integers(0, 2, size=n))
    shared_tiv = rng.normal(0.0, 90.0, size=n)
    etiv1 = 1450.0 + 120.0 * sex1 + shared_tiv + rng.normal(0.0, 45.0, size=n)
    etiv2 = 1450.0 + 120.0 * sex2 + shared_tiv + rng.normal(0.0, 45.0, size=n)

    raw = {"age": (age, age.copy()), "sex": (sex1, sex2), "etiv": (etiv1, etiv2)}
    unknown = set(beta) - set(raw)
    if unknown:
        raise ValueError(f"No simulated covariate for: {', '.join(sorted(unknown))}")

    columns: Dict[str, np.ndarray] = {
        id_col: np.arange(1, n + 1),
        zyg_col: np.where(is_mz, codes["MZ"], codes["DZ"]),
    }
    for name, (a, b) in raw.items():
        cols = covariates[name].columns if name in covariates else (f"{name}{suffixes[0]}", f"{name}{suffixes[1]}")
        columns[cols[0]] = a
        columns[cols[1]] = b

    effects = np.zeros((n, 2))
    for name, b in beta.items():
        z1, z2 = _zscore(raw[name][0].astype(float), raw[name][1].astype(float))
        effects += b * np.column_stack([z1, z2])

    for pheno in phenotypes:
        latent = np.vstack([
            _latent_pairs(n_mz, r_mz, rng, exact),
            _latent_pairs(n_dz, r_dz, rng, exact),
        ])
        values = loc + scale * (latent + effects)
        columns[f"{pheno}{suffixes[0]}"] = values[:, 0]
        columns[f"{pheno}{suffixes[1]}"] = values[:, 1]

    return pd.DataFrame(columns)
