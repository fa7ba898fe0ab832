import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scanpy as sc

import scanpy_technoise as st
from conftest import simulate_log_expression


def _make_adata(seed=0, inflated=None, n_cells=21):
    X, controls = simulate_log_expression(
        n_cells=n_cells, inflated=inflated, inflation=10.0, seed=seed
    )
    var = pd.DataFrame(
        {"spike": controls},
        index=[f"ERCC-{i:05d}" if c else f"Gene{i}" for i, c in enumerate(controls)],
    )
    obs = pd.DataFrame(
        {
            "batch": pd.Categorical(np.where(np.arange(n_cells) % 2 == 0, "a", "b")),
            "depth": np.linspace(-1.0, 1.0, n_cells),
        },
        index=[f"cell{i}" for i in range(n_cells)],
    )
    return ad.AnnData(X=X.T.copy(), obs=obs, var=var)


def test_writes_results_to_var_and_uns():
    adata = _make_adata(inflated=np.arange(100, 105))
    st.pp.highly_variable_genes(adata, controls="spike")

    for k in ["means", "variances", "variances_tech", "variances_bio", "p_value", "fdr"]:
        assert k in adata.var.columns
    assert adata.var["highly_variable"].dtype == bool
    hvgs = set(adata.var_names[adata.var["highly_variable"].to_numpy()])
    assert set(adata.var_names[100:105]) <= hvgs
    assert np.allclose(
        adata.var["variances_bio"], adata.var["variances"] - adata.var["variances_tech"]
    )
    assert adata.uns["hvg"]["flavor"] == "technoise"
    assert adata.uns["hvg"]["df"] == adata.n_obs - 1


def test_stored_trend_can_be_re_evaluated():
    adata = _make_adata(seed=1)
    st.pp.highly_variable_genes(adata)
    trend = st.get.trend_function(adata)
    tech = trend(adata.var["means"].to_numpy()) * adata.uns["hvg"]["tech_scale"]
    assert np.allclose(tech, adata.var["variances_tech"])


def test_inplace_false_returns_table_and_subset():
    adata = _make_adata(seed=2, inflated=np.arange(60, 65))
    df = st.pp.highly_variable_genes(adata, inplace=False)
    assert isinstance(df, pd.DataFrame)
    assert list(df.index) == list(adata.var_names)
    assert "highly_variable" not in adata.var.columns

    sub = st.pp.highly_variable_genes(adata, inplace=False, subset=True)
    assert sub["highly_variable"].all()
    assert len(sub) == df["highly_variable"].sum()


def test_subset_inplace_keeps_only_hvgs():
    adata = _make_adata(seed=3, inflated=np.arange(60, 65))
    st.pp.highly_variable_genes(adata, subset=True)
    assert adata.n_vars >= 5
    assert adata.var["highly_variable"].all()


def test_n_top_genes_limits_selection():
    adata = _make_adata(seed=4, inflated=np.arange(60, 70))
    st.pp.highly_variable_genes(adata, n_top_genes=3, fdr_threshold=None)
    assert adata.var["highly_variable"].sum() == 3


def test_block_key_builds_design():
    adata = _make_adata(seed=5)
    design = st.get.model_design(adata, block_key="batch", covariates="depth")
    assert design.shape == (adata.n_obs, 3)
    assert np.all(design[:, 0] == 1.0)
    assert np.array_equal(design[:, 1], (adata.obs["batch"] == "b").to_numpy(dtype=float))

    st.pp.highly_variable_genes(adata, block_key="batch")
    assert adata.uns["hvg"]["df"] == adata.n_obs - 2


def test_controls_by_name_and_layer():
    adata = _make_adata(seed=6)
    adata.layers["logcounts"] = adata.X.copy()
    adata.X = np.zeros_like(adata.X)
    spikes = list(adata.var_names[adata.var["spike"].to_numpy()])
    df = st.pp.highly_variable_genes(
        adata, controls=spikes, layer="logcounts", inplace=False
    )
    assert df["is_control"].sum() == len(spikes)
    assert np.all(df["total_variance"] > 0)


def test_argument_errors():
    adata = _make_adata(seed=7)
    with pytest.raises(ValueError, match="AnnData"):
        st.pp.highly_variable_genes(adata.X)
    with pytest.raises(KeyError, match="missing"):
        st.pp.highly_variable_genes(adata, controls="missing")
    with pytest.raises(KeyError, match="NotAGene"):
        st.pp.highly_variable_genes(adata, controls=["NotAGene"])
    with pytest.raises(ValueError, match="design"):
        st.pp.highly_variable_genes(
            adata, design=np.ones((adata.n_obs, 1)), block_key="batch"
        )
    with pytest.raises(KeyError, match="batch2"):
        st.get.model_design(adata, block_key="batch2")


def test_top_hvgs_orders_by_biological_component():
    df = pd.DataFrame(
        {
            "biological_variance": [0.5, -0.1, 2.0, 1.0, 0.3],
            "fdr": [0.01, 0.5, 0.2, 0.001, 0.04],
        },
        index=list("abcde"),
    )
    assert list(st.get.top_hvgs(df)) == ["d", "a", "e"]
    assert list(st.get.top_hvgs(df, fdr_threshold=None)) == ["c", "d", "a", "e"]
    assert list(st.get.top_hvgs(df, n_top=1)) == ["d"]


def test_set_env_configures_scanpy():
    verbosity, n_jobs = sc.settings.verbosity, sc.settings.n_jobs
    try:
        st.set_env(n_jobs=2, verbosity=1, print_info=False)
        assert sc.settings.n_jobs == 2
        assert int(sc.settings.verbosity) == 1
    finally:
        sc.settings.verbosity = verbosity
        sc.settings.n_jobs = n_jobs
