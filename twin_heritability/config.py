"""
Run configuration for the saturated twin model analysis.

Defaults mirror a typical cerebellar volumetry twin sample: pair id ``tvparnr``,
zygosity ``zyg1`` (1 = MZ, 2 = DZ), covariates age, sex and estimated total
intracranial volume (eTIV), each stored once per twin with suffix 1/2.

A configuration can be built in code, read from a JSON file with
``load_config`` or assembled from CLI flags (see ``pipeline.main``).
"""

from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConfigurationError


@dataclass(frozen=True)
class Covariate:
    """A covariate measured on both twins and entered as a regression on the means."""

    name: str
    columns: Tuple[str, str]
    start: float = 0.0   # starting value for the regression coefficient
    scale: bool = True   # grand-scale before fitting (off for binary codes such as sex)
    label: Optional[str] = None  # display name used for the dropped model, e.g. No_eTIV

    @property
    def display(self) -> str:
        return self.label or self.name

    @property
    def beta_label(self) -> str:
        return f"beta_{self.name}"


def default_covariates() -> List[Covariate]:
    return [
        Covariate("age", ("age1", "age2"), start=-0.1, scale=True, label="Age"),
        Covariate("sex", ("sex1", "sex2"), start=0.0, scale=False, label="Sex"),
        Covariate("etiv", ("eTIV1", "eTIV2"), start=0.2, scale=True, label="eTIV"),
    ]


@dataclass
class AnalysisConfig:
    data_path: str
    phenotypes: List[str] = field(default_factory=list)
    twin_id_col: str = "tvparnr"
    zygosity_col: str = "zyg1"
    zygosity_codes: Dict[str, Any] = field(default_factory=lambda: {"MZ": 1, "DZ": 2})
    unexpected_zygosity: str = "error"  # or "drop"
    member_suffixes: Tuple[str, str] = ("1", "2")
    covariates: List[Covariate] = field(default_factory=default_covariates)

    output_dir: str = "output"

    # Data quality
    min_sample_size: int = 20           # pairs per zygosity group
    missing_data_threshold: float = 20.0  # percent
    print_descriptives: bool = True
    grand_scale: bool = True

    # Optimization
    use_tryhard: bool = True
    max_attempts: int = 5
    compute_ci: bool = True
    ci_level: float = 0.95
    seed: Optional[int] = 12345

    # Starting values and bounds
    sv_means: float = 0.0
    sv_variance: float = 1.0
    lb_variance: float = 1e-4
    lb_covariance: Optional[float] = -0.99

    @property
    def log_dir(self) -> str:
        return os.path.join(self.output_dir, "logs")

    @property
    def results_dir(self) -> str:
        return os.path.join(self.output_dir, "results")

    @property
    def groups(self) -> Tuple[str, ...]:
        return tuple(self.zygosity_codes)

    def with_overrides(self, **kwargs: Any) -> "AnalysisConfig":
        """Return a copy with the given fields replaced; ``None`` values are ignored."""
        updates = {k: v for k, v in kwargs.items() if v is not None}
        unknown = set(updates) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigurationError(f"Unknown configuration option(s): {', '.join(sorted(unknown))}")
        return replace(self, **updates)

    def validate(self) -> None:
        if not self.data_path:
            raise ConfigurationError("data_path must be set")
        if not self.phenotypes:
            raise ConfigurationError("At least one phenotype must be configured")
        if len(self.zygosity_codes) != 2 or len(set(self.zygosity_codes.values())) != 2:
            raise ConfigurationError(
                f"zygosity_codes must map exactly two group labels to two distinct codes, got {self.zygosity_codes}"
            )
        if self.unexpected_zygosity not in ("error", "drop"):
            raise ConfigurationError("unexpected_zygosity must be 'error' or 'drop'")
        if len(self.member_suffixes) != 2 or self.member_suffixes[0] == self.member_suffixes[1]:
            raise ConfigurationError("member_suffixes must hold two distinct suffixes")
        names = [c.name for c in self.covariates]
        if len(names) != len(set(names)):
            raise ConfigurationError(f"Duplicate covariate names: {names}")
        for cov in self.covariates:
            if len(cov.columns) != 2:
                raise ConfigurationError(f"Covariate '{cov.name}' needs one column per twin")
        if self.min_sample_size < 1:
            raise ConfigurationError("min_sample_size must be >= 1")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        if not (0.0 < self.ci_level < 1.0):
            raise ConfigurationError(f"ci_level must be in (0, 1), got {self.ci_level}")
        if not (0.0 <= self.missing_data_threshold <= 100.0):
            raise ConfigurationError("missing_data_threshold is a percentage in [0, 100]")
        if self.lb_variance < 0:
            raise ConfigurationError("lb_variance must be non-negative")
        if not self.grand_scale and self.lb_covariance is not None:
            # The covariance bound is on a correlation scale; only meaningful for unit variances.
            warnings.warn(
                f"lb_covariance={self.lb_covariance} bounds a covariance on a correlation scale, "
                "which assumes unit variances; with grand_scale off consider lb_covariance=None.",
                stacklevel=2,
            )


def _covariate_from_dict(raw: Dict[str, Any]) -> Covariate:
    try:
        return Covariate(
            name=raw["name"],
            columns=tuple(raw["columns"]),
            start=float(raw.get("start", 0.0)),
            scale=bool(raw.get("scale", True)),
            label=raw.get("label"),
        )
    except (KeyError, TypeError) as e:
        raise ConfigurationError(f"Invalid covariate entry {raw!r}: {e}") from e


def config_from_dict(raw: Dict[str, Any]) -> AnalysisConfig:
    known = {f.name for f in fields(AnalysisConfig)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(f"Unknown configuration key(s): {', '.join(sorted(unknown))}")
    if "data_path" not in raw:
        raise ConfigurationError("Configuration is missing 'data_path'")
    kwargs = dict(raw)
    if "covariates" in kwargs:
        kwargs["covariates"] = [_covariate_from_dict(c) for c in kwargs["covariates"]]
    if "member_suffixes" in kwargs:
        kwargs["member_suffixes"] = tuple(kwargs["member_suffixes"])
    return AnalysisConfig(**kwargs)


def load_config(path: str) -> AnalysisConfig:
    """Read an ``AnalysisConfig`` from a JSON file."""
    if not os.path.exists(path):
        raise ConfigurationError(f"Configuration file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Configuration file {path} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration file {path} must hold a JSON object")
    return config_from_dict(raw)
