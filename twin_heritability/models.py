"""
Saturated twin model and its nested variants.

A model is a set of labelled parameters plus a map from structural slots
(``"MZ.mean1"``, ``"DZ.cov21"``, ``"beta.age"``) to labels. Slots that point to
the same label share one estimate, which is how equality constraints are
expressed: equating parameters unions their labels into one, fixing a
parameter turns it into a constant. Specs are immutable; every constraint
produces a new spec that remembers its parent's name.

Model hierarchy for one phenotype::

    Saturated_Model
      Equal_Means_Within_Zyg           mMZ1 = mMZ2, mDZ1 = mDZ2
        Equal_Var_Within_Zyg           vMZ1 = vMZ2, vDZ1 = vDZ2
          Equal_Means_Var_Across_Zyg   mMZ = mDZ, vMZ = vDZ  (+ rMZ, rDZ)
            Equal_Cov_Across_Zyg       cMZ21 = cDZ21
            No_<covariate>             beta fixed at 0, one per covariate

The covariance lower bound defaults to a correlation-scale value (-0.99). That
is only a sensible bound when variances are close to 1, i.e. when the data are
grand-scaled.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import AnalysisConfig, Covariate


SATURATED = "Saturated_Model"
EQUAL_MEANS = "Equal_Means_Within_Zyg"
EQUAL_VARIANCES = "Equal_Var_Within_Zyg"
EQUAL_ACROSS = "Equal_Means_Var_Across_Zyg"
EQUAL_COVARIANCES = "Equal_Cov_Across_Zyg"

MEMBER_SLOTS = ("mean1", "mean2", "var1", "cov21", "var2")


@dataclass(frozen=True)
class Parameter:
    label: str
    value: float
    free: bool = True
    lbound: Optional[float] = None
    ubound: Optional[float] = None

    def bounds(self) -> Tuple[Optional[float], Optional[float]]:
        return (self.lbound, self.ubound)


@dataclass(frozen=True)
class RatioAlgebra:
    """Derived, non-free quantity ``numerator / denominator`` over slot values."""

    name: str
    numerator: str
    denominator: str

    def evaluate(self, slot_values: Mapping[str, float]) -> float:
        den = slot_values[self.denominator]
        if den == 0:
            return float("nan")
        return float(slot_values[self.numerator] / den)


@dataclass(frozen=True)
class ModelSpec:
    name: str
    parameters: Mapping[str, Parameter]
    slots: Mapping[str, str]
    groups: Tuple[str, ...]
    covariates: Tuple[Covariate, ...] = ()
    algebras: Tuple[RatioAlgebra, ...] = ()
    parent: Optional[str] = None

    @property
    def free_labels(self) -> List[str]:
        """Free parameter labels in first-use slot order (stable across derivations)."""
        seen: List[str] = []
        for label in self.slots.values():
            if label not in seen and self.parameters[label].free:
                seen.append(label)
        return seen

    @property
    def n_free(self) -> int:
        return len(self.free_labels)

    def start_values(self) -> List[float]:
        return [self.parameters[label].value for label in self.free_labels]

    def bounds(self) -> List[Tuple[Optional[float], Optional[float]]]:
        return [self.parameters[label].bounds() for label in self.free_labels]

    def values_dict(self, free_values: Optional[Sequence[float]] = None) -> Dict[str, float]:
        """Label -> value, with free labels taken from ``free_values`` when given."""
        values = {label: p.value for label, p in self.parameters.items()}
        if free_values is not None:
            values.update(zip(self.free_labels, (float(v) for v in free_values)))
        return values

    def slot_values(self, values: Optional[Mapping[str, float]] = None) -> Dict[str, float]:
        values = self.values_dict() if values is None else values
        return {slot: values[label] for slot, label in self.slots.items()}

    # ---- derivation ----

    def _derive(self, name: Optional[str], **changes) -> "ModelSpec":
        return replace(self, name=name or self.name, parent=self.name, **changes)

    def with_values(self, estimates: Mapping[str, float]) -> "ModelSpec":
        """Same structure, start values taken from ``estimates`` where labels match."""
        params = {
            label: replace(p, value=float(estimates[label])) if label in estimates else p
            for label, p in self.parameters.items()
        }
        return replace(self, parameters=params)

    def equate(self, labels: Sequence[str], new_label: str, value: Optional[float] = None,
               name: Optional[str] = None) -> "ModelSpec":
        """Union ``labels`` into one free parameter called ``new_label``."""
        missing = [l for l in labels if l not in self.parameters]
        if missing:
            raise KeyError(f"Unknown parameter label(s) in {self.name}: {missing}")
        merged = [self.parameters[l] for l in labels]
        lbs = [p.lbound for p in merged if p.lbound is not None]
        ubs = [p.ubound for p in merged if p.ubound is not None]
        start = merged[0].value if value is None else float(value)
        params = {l: p for l, p in self.parameters.items() if l not in labels}
        params[new_label] = Parameter(
            new_label, start, free=True,
            lbound=max(lbs) if lbs else None,
            ubound=min(ubs) if ubs else None,
        )
        slots = {slot: (new_label if label in labels else label) for slot, label in self.slots.items()}
        return self._derive(name, parameters=params, slots=slots)

    def fix(self, label: str, value: float = 0.0, name: Optional[str] = None) -> "ModelSpec":
        if label not in self.parameters:
            raise KeyError(f"Unknown parameter label in {self.name}: {label}")
        params = dict(self.parameters)
        params[label] = replace(params[label], value=float(value), free=False)
        return self._derive(name, parameters=params)

    def add_algebras(self, *algebras: RatioAlgebra) -> "ModelSpec":
        return replace(self, algebras=self.algebras + tuple(algebras))

    def evaluate_algebras(self, values: Optional[Mapping[str, float]] = None) -> Dict[str, float]:
        slot_values = self.slot_values(values)
        return {a.name: a.evaluate(slot_values) for a in self.algebras}


def _group_parameters(group: str, config: AnalysisConfig) -> Tuple[Dict[str, Parameter], Dict[str, str]]:
    labels = {
        "mean1": f"m{group}1",
        "mean2": f"m{group}2",
        "var1": f"v{group}1",
        "cov21": f"c{group}21",
        "var2": f"v{group}2",
    }
    params = {
        labels["mean1"]: Parameter(labels["mean1"], config.sv_means),
        labels["mean2"]: Parameter(labels["mean2"], config.sv_means),
        labels["var1"]: Parameter(labels["var1"], config.sv_variance, lbound=config.lb_variance),
        labels["cov21"]: Parameter(labels["cov21"], config.sv_variance * 0.5, lbound=config.lb_covariance),
        labels["var2"]: Parameter(labels["var2"], config.sv_variance, lbound=config.lb_variance),
    }
    slots = {f"{group}.{slot}": labels[slot] for slot in MEMBER_SLOTS}
    return params, slots


def build_saturated(config: AnalysisConfig, groups: Optional[Iterable[str]] = None) -> ModelSpec:
    """Free means and 2x2 covariance per group; covariate betas shared by all groups."""
    groups = tuple(groups) if groups is not None else config.groups
    params: Dict[str, Parameter] = {}
    slots: Dict[str, str] = {}
    for cov in config.covariates:
        params[cov.beta_label] = Parameter(cov.beta_label, cov.start)
        slots[f"beta.{cov.name}"] = cov.beta_label
    for group in groups:
        p, s = _group_parameters(group, config)
        params.update(p)
        slots.update(s)
    return ModelSpec(
        name=SATURATED,
        parameters=params,
        slots=slots,
        groups=groups,
        covariates=tuple(config.covariates),
    )


def _merged_start(spec: ModelSpec, labels: Sequence[str], how) -> float:
    return float(how([spec.parameters[l].value for l in labels]))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def derive_equal_means(spec: ModelSpec, start: Optional[float] = None) -> ModelSpec:
    """One mean per group; starts at the average of the merged means unless ``start`` is given."""
    out = spec
    for group in spec.groups:
        labels = [out.slots[f"{group}.mean1"], out.slots[f"{group}.mean2"]]
        value = _merged_start(out, labels, _mean) if start is None else start
        out = out.equate(labels, f"m{group}", value=value, name=EQUAL_MEANS)
    return replace(out, parent=spec.name)


def derive_equal_variances(spec: ModelSpec, start: Optional[float] = None) -> ModelSpec:
    """One variance per group.

    The default start is the larger of the merged variances. Since
    ``|cov| < sqrt(v1 * v2) <= max(v1, v2)`` holds at a positive-definite
    parent, the start stays positive-definite.
    """
    out = spec
    for group in spec.groups:
        labels = [out.slots[f"{group}.var1"], out.slots[f"{group}.var2"]]
        value = _merged_start(out, labels, max) if start is None else start
        out = out.equate(labels, f"v{group}", value=value, name=EQUAL_VARIANCES)
    return replace(out, parent=spec.name)


def correlation_algebras(groups: Sequence[str]) -> Tuple[RatioAlgebra, ...]:
    return tuple(RatioAlgebra(f"r{g}", f"{g}.cov21", f"{g}.var1") for g in groups)


def derive_equal_across_groups(spec: ModelSpec, mean_start: Optional[float] = None,
                               var_start: Optional[float] = None) -> ModelSpec:
    """Single mean and variance shared by all groups, plus implied twin correlations."""
    means = sorted({spec.slots[f"{g}.{s}"] for g in spec.groups for s in ("mean1", "mean2")})
    variances = sorted({spec.slots[f"{g}.{s}"] for g in spec.groups for s in ("var1", "var2")})
    if mean_start is None:
        mean_start = _merged_start(spec, means, _mean)
    if var_start is None:
        var_start = _merged_start(spec, variances, max)
    out = spec.equate(means, "mZ", value=mean_start, name=EQUAL_ACROSS)
    out = out.equate(variances, "vZ", value=var_start, name=EQUAL_ACROSS)
    out = out.add_algebras(*correlation_algebras(spec.groups))
    return replace(out, parent=spec.name)


def derive_equal_covariances(spec: ModelSpec) -> ModelSpec:
    covs = [spec.slots[f"{g}.cov21"] for g in spec.groups]
    start = sum(spec.parameters[c].value for c in covs) / len(covs)
    return spec.equate(covs, "cZ21", value=start, name=EQUAL_COVARIANCES)


def derive_covariate_dropped(spec: ModelSpec, covariate: Covariate) -> ModelSpec:
    return spec.fix(covariate.beta_label, 0.0, name=f"No_{covariate.display}")


def implied_correlation(slot_values: Mapping[str, float], group: str) -> float:
    """Twin correlation cov / sqrt(var1 * var2) for one group."""
    v1 = slot_values[f"{group}.var1"]
    v2 = slot_values[f"{group}.var2"]
    if v1 <= 0 or v2 <= 0:
        return float("nan")
    return float(slot_values[f"{group}.cov21"] / math.sqrt(v1 * v2))
