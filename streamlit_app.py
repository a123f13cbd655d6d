"""
Streamlit app: saturated twin models and nested model tests.

Upload a twin pair CSV (one row per pair, twin columns suffixed 1/2) or
generate a synthetic sample, pick phenotypes, and run the model sequence.
The app is a thin UI over ``twin_heritability.pipeline``.
"""

from __future__ import annotations

import tempfile
import time
import warnings
from typing import List

import pandas as pd
import streamlit as st

from twin_heritability.config import AnalysisConfig
from twin_heritability.errors import ConfigurationError
from twin_heritability.pipeline import RunContext, process_phenotype
from twin_heritability.simulate import simulate_twin_data


st.set_page_config(page_title="Twin Saturated Models", layout="wide")
st.title("Twin Saturated Models — MZ/DZ Nested Tests")
st.caption("Means, variances and twin covariances by zygosity with age, sex and eTIV regressions")
st.warning(
    "This application is intended for exploratory use. Check logs and convergence status "
    "before reporting any estimate."
)

HELP = {
    "source": (
        "Upload your own CSV or simulate a sample. The CSV needs a pair id, a zygosity code and, for each "
        "variable, one column per twin (e.g. age1/age2, Left_VIIB1/Left_VIIB2)."
    ),
    "grand_scale": (
        "Standardize each variable by the mean and SD of both twins pooled. Keeps twin 1 and twin 2 on the "
        "same scale; the covariance lower bound (-0.99) assumes variances near 1, so leave this on unless "
        "your data are already standardized."
    ),
    "min_sample_size": "Minimum complete pairs per zygosity group; smaller phenotypes are skipped.",
    "max_attempts": (
        "Optimization attempts per model. Later attempts start from perturbed values of the best fit so far "
        "and stop at the first converged attempt."
    ),
    "compute_ci": "Wald intervals (delta method for rMZ/rDZ) on the equal-across-zygosity model.",
}


def _download_csv(label: str, table: pd.DataFrame, key: str) -> None:
    st.download_button(
        label=label,
        data=table.to_csv(index=False),
        file_name=f"{key}.csv",
        mime="text/csv",
        key=key,
    )


def _candidate_phenotypes(data: pd.DataFrame, config: AnalysisConfig) -> List[str]:
    s1, s2 = config.member_suffixes
    structural = {config.twin_id_col, config.zygosity_col}
    for cov in config.covariates:
        structural.update(cov.columns)
    stems = []
    for col in data.columns:
        if col in structural or not col.endswith(s1):
            continue
        stem = col[: -len(s1)]
        if f"{stem}{s2}" in data.columns:
            stems.append(stem)
    return stems


st.sidebar.header("Data")
source = st.sidebar.radio("Source", ["Simulate", "Upload CSV"], help=HELP["source"])
if source == "Upload CSV":
    upload = st.sidebar.file_uploader("Twin pair CSV", type=["csv"])
    if upload is None:
        st.info("Upload a CSV to begin.")
        st.stop()
    data = pd.read_csv(upload)
else:
    c1, c2 = st.sidebar.columns(2)
    with c1:
        n_mz = st.number_input("MZ pairs", 10, 5000, 150, 10)
        r_mz = st.number_input("r (MZ)", -0.95, 0.99, 0.80, 0.05, format="%.2f")
    with c2:
        n_dz = st.number_input("DZ pairs", 10, 5000, 150, 10)
        r_dz = st.number_input("r (DZ)", -0.95, 0.99, 0.40, 0.05, format="%.2f")
    beta_age = st.sidebar.number_input("Age effect (per SD)", -2.0, 2.0, 0.3, 0.05, format="%.2f")
    sim_seed = st.sidebar.number_input("Simulation seed", 0, 10**9, 12345, 1)
    data = simulate_twin_data(
        int(n_mz), int(n_dz), float(r_mz), float(r_dz),
        beta={"age": float(beta_age)}, phenotypes=["pheno"], seed=int(sim_seed),
    )

st.sidebar.header("Options")
grand_scale = st.sidebar.checkbox("Grand-scale variables", value=True, help=HELP["grand_scale"])
min_sample_size = st.sidebar.number_input("Minimum pairs per group", 2, 10000, 20, 1, help=HELP["min_sample_size"])
max_attempts = st.sidebar.number_input("Optimization attempts", 1, 50, 5, 1, help=HELP["max_attempts"])
compute_ci = st.sidebar.checkbox("Confidence intervals", value=True, help=HELP["compute_ci"])
seed = st.sidebar.number_input("Optimizer seed", 0, 10**9, 12345, 1)

base = AnalysisConfig(data_path="<in-memory>")
choices = _candidate_phenotypes(data, base)
if not choices:
    st.error("No phenotype column pairs found (expected <name>1 and <name>2 columns).")
    st.stop()
phenotypes = st.multiselect("Phenotypes", choices, default=choices[:1])

with st.expander("Data preview"):
    st.dataframe(data.head(50), use_container_width=True)

if st.button("Run models", type="primary") and phenotypes:
    config = base.with_overrides(
        phenotypes=list(phenotypes),
        output_dir=tempfile.mkdtemp(prefix="twin_heritability_"),
        grand_scale=bool(grand_scale),
        min_sample_size=int(min_sample_size),
        max_attempts=int(max_attempts),
        compute_ci=bool(compute_ci),
        seed=int(seed),
    )
    try:
        ctx = RunContext.open(config, data=data)
    except ConfigurationError as e:
        st.error(f"Configuration error: {e}")
        st.stop()

    for phenotype in phenotypes:
        st.header(phenotype)
        start = time.time()
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            with st.spinner("Fitting models…"):
                result = process_phenotype(ctx, phenotype)
        if result is None:
            st.error(f"Skipped: {ctx.skipped[phenotype]}")
            continue
        for w in caught:
            st.warning(str(w.message))

        m1, m2, m3 = st.columns(3)
        with m1:
            st.metric("Pairs", " / ".join(f"{g} {n}" for g, n in result.sizes.items()))
        with m2:
            st.metric("rMZ", f"{result.correlations.get('rMZ', float('nan')):.3f}")
        with m3:
            st.metric("rDZ", f"{result.correlations.get('rDZ', float('nan')):.3f}")

        st.subheader("Nested models vs saturated")
        st.dataframe(result.model_tests, use_container_width=True)
        _download_csv("Download model tests", result.model_tests, f"{phenotype}_model_tests")
        if result.correlation_test is not None:
            st.subheader("Equal twin covariances across zygosity")
            st.dataframe(result.correlation_test, use_container_width=True)
        if result.covariate_tests is not None:
            st.subheader("Covariate tests")
            st.dataframe(result.covariate_tests, use_container_width=True)
            _download_csv("Download covariate tests", result.covariate_tests, f"{phenotype}_covariate_tests")
        with st.expander("Log"):
            with open(result.outputs["log"], "r", encoding="utf-8") as fh:
                st.text(fh.read())
        st.caption(f"Runtime: {time.time() - start:.2f}s")

    ctx.close()
    if ctx.skipped:
        st.subheader("Skipped phenotypes")
        st.dataframe(
            pd.DataFrame({"phenotype": list(ctx.skipped), "reason": list(ctx.skipped.values())}),
            use_container_width=True,
        )
