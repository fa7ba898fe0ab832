"""
Gene variance modeling with spike-in controls and scanpy integration.

This module decomposes the variance of each gene into technical and
biological components, using a mean-variance trend fitted to control
genes (usually spike-in transcripts) that carry no biological variance.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg
from scanpy.get import _get_obs_rep

from .. import config
from .._validate import validate_controls, validate_layer_and_raw
from ..get import control_mask, model_design, top_hvgs
from ._decompose import decompose_variance
from ._fdist import DispersionEstimate, estimate_dispersion
from ._lm_fit import LinearModelFit, fit_linear_model
from ._loess_fit import RobustSmoother, TechnicalTrendFitter, TrendFunction

VAR_COLS = {
    "mean_abundance": "means",
    "total_variance": "variances",
    "technical_variance": "variances_tech",
    "biological_variance": "variances_bio",
    "p_value": "p_value",
    "fdr": "fdr",
}


@dataclass(frozen=True, eq=False)
class TechnicalNoiseModel:
    fit: LinearModelFit
    trend: TrendFunction
    dispersion: DispersionEstimate
    table: pd.DataFrame
    controls: np.ndarray


def model_gene_var_spikes(
    X,
    controls: Union[Iterable[bool], Iterable[str]],
    design: Optional[np.ndarray] = None,
    gene_names: Optional[Iterable[str]] = None,
    span: float = config.DEFAULT_SPAN,
    min_controls: int = config.DEFAULT_MIN_CONTROLS,
    min_mean: float = 0.0,
    use_density_weights: bool = True,
    alpha: float = config.DEFAULT_ALPHA,
    smoother: Optional[RobustSmoother] = None,
    n_jobs: Optional[int] = None,
    chunk_size: int = config.LM_CHUNK_SIZE,
    **kwargs,
) -> TechnicalNoiseModel:
    """
    Model the technical noise of every gene from control genes.

    Args:
        X: Genes x cells matrix of log-normalized expression
        controls: Boolean mask or names of the control genes
        design: Cells x predictors design matrix, intercept only by default
        gene_names: Gene identifiers, used to index the result table
        span: Span of the robust smoother
        min_controls: Minimum number of usable control genes
        min_mean: Control genes at or below this abundance are not used for the trend
        use_density_weights: Weight control genes by inverse abundance density
        alpha: Level of the test for dispersion beyond sampling noise
        smoother: Robust smoother for the trend residuals, LOESS by default
        n_jobs: Number of parallel jobs for the linear model fit
        chunk_size: Number of genes per linear model job
        **kwargs: Passed to `scipy.optimize.curve_fit`

    Returns:
        TechnicalNoiseModel with the fit, the trend, the dispersion and the
        per-gene decomposition in input gene order.
    """
    _index = None if gene_names is None else pd.Index(gene_names)
    mask = validate_controls(controls, gene_names=_index, n_genes=X.shape[0])
    if mask.shape[0] != X.shape[0]:
        raise ValueError(
            f"Control mask has {mask.shape[0]} entries for {X.shape[0]} genes."
        )

    start = logg.info(f"modelling technical noise using {int(mask.sum())} control genes")
    fit = fit_linear_model(X, design=design, n_jobs=n_jobs, chunk_size=chunk_size)
    if mask.sum() >= fit.n_genes - fit.rank:
        raise ValueError(
            f"{int(mask.sum())} control genes leave no genes to test against "
            f"{fit.n_genes} genes and design rank {fit.rank}."
        )

    ctrl = fit.subset(mask)
    tfit = TechnicalTrendFitter(
        span=span,
        min_controls=min_controls,
        min_mean=min_mean,
        use_density_weights=use_density_weights,
        smoother=smoother,
        **kwargs,
    )
    trend = tfit.fit(ctrl.means, ctrl.variances)
    used = tfit.usable_points(ctrl.means, ctrl.variances)
    dispersion = estimate_dispersion(
        trend, ctrl.means[used], ctrl.variances[used], df=fit.df_residual, alpha=alpha
    )
    table = decompose_variance(fit, trend, dispersion, index=_index, controls=mask)

    logg.info("    finished", time=start)
    return TechnicalNoiseModel(
        fit=fit, trend=trend, dispersion=dispersion, table=table, controls=mask
    )


def highly_variable_genes(
    adata: sc.AnnData,
    controls: Union[str, Iterable[str], Iterable[bool]] = "spike",
    layer: Optional[str] = None,
    use_raw: Optional[bool] = None,
    design: Optional[np.ndarray] = None,
    block_key: Optional[str] = None,
    covariates: Optional[Union[str, Iterable[str]]] = None,
    n_top_genes: Optional[int] = None,
    fdr_threshold: Optional[float] = config.DEFAULT_FDR_THRESHOLD,
    min_bio: float = 0.0,
    subset: bool = False,
    inplace: bool = True,
    **kwargs,
) -> Optional[pd.DataFrame]:
    """
    Find highly variable genes against a technical trend fitted to controls.

    Args:
        adata: Annotated data matrix with log-normalized expression.
        controls: Boolean `.var` column, boolean mask or names of control genes.
        layer: Layer holding the log-normalized expression.
        use_raw: Use `.raw`. Defaults to `True` if `.raw` is present and no layer is given.
        design: Cells x predictors design matrix.
        block_key: Key in `.obs` with blocking levels, used to build the design.
        covariates: Numeric keys in `.obs` added to the design.
        n_top_genes: Keep at most this many highly variable genes.
        fdr_threshold: Maximum FDR of a highly variable gene, `None` to skip.
        min_bio: Minimum biological component of a highly variable gene.
        subset: Subset `adata` to highly variable genes.
        inplace: Write results to `adata` instead of returning them.
        **kwargs: Passed to `model_gene_var_spikes`.

    Returns:
        DataFrame of the variance decomposition if `inplace=False`.
    """
    if not isinstance(adata, sc.AnnData):
        msg = (
            "`pp.highly_variable_genes` expects an `AnnData` argument, "
            "pass `inplace=False` if you want to return a `pd.DataFrame`."
        )
        raise ValueError(msg)
    if design is not None and (block_key is not None or covariates is not None):
        raise ValueError("Cannot specify 'design' together with 'block_key' or 'covariates'.")

    _layer, _use_raw = validate_layer_and_raw(adata, layer, use_raw)
    var_names = adata.raw.var_names if _use_raw else adata.var_names
    mask = control_mask(adata, controls, use_raw=_use_raw)
    _design = (
        model_design(adata, block_key=block_key, covariates=covariates)
        if design is None and (block_key is not None or covariates is not None)
        else design
    )

    start = logg.info("extracting highly variable genes using control genes")
    X = _get_obs_rep(adata, layer=_layer, use_raw=_use_raw)
    res = model_gene_var_spikes(
        X.T, mask, design=_design, gene_names=var_names, **kwargs
    )
    df = res.table.copy()
    sel_genes = top_hvgs(df, n_top=n_top_genes, fdr_threshold=fdr_threshold, min_bio=min_bio)
    df["highly_variable"] = df.index.isin(sel_genes)
    logg.info(f"    finished ({len(sel_genes)} highly variable genes)", time=start)

    if not inplace:
        if subset:
            df = df.loc[df["highly_variable"]]
        return df

    adata.uns["hvg"] = {
        "flavor": "technoise",
        "trend": res.trend.to_dict(),
        "d0": res.dispersion.d0,
        "phi": res.dispersion.phi,
        "tech_scale": res.dispersion.tech_scale,
        "df": res.dispersion.df,
    }
    logg.hint(
        "added\n"
        "    'highly_variable', boolean vector (adata.var)\n"
        "    'means', float vector (adata.var)\n"
        "    'variances', float vector (adata.var)\n"
        "    'variances_tech', float vector (adata.var)\n"
        "    'variances_bio', float vector (adata.var)\n"
        "    'p_value', float vector (adata.var)\n"
        "    'fdr', float vector (adata.var)\n"
        "    'hvg', technical trend and dispersion (adata.uns)"
    )
    for k, v in VAR_COLS.items():
        adata.var[v] = df[k].reindex(adata.var_names)
    adata.var["highly_variable"] = (
        df["highly_variable"].reindex(adata.var_names, fill_value=False)
    )
    if subset:
        adata._inplace_subset_var(adata.var["highly_variable"].to_numpy())
