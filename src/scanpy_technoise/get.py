from collections.abc import Iterable
from typing import Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg

from . import config
from ._validate import isiterable, validate_controls


def obs_categories(
    adata: sc.AnnData,
    key: str,
) -> Iterable[str]:
    if isinstance(adata.obs[key].dtype, pd.CategoricalDtype):
        return list(adata.obs[key].cat.categories)
    return list(adata.obs[key].unique())


def control_mask(
    adata: sc.AnnData,
    controls: Union[str, Iterable[str], Iterable[bool]] = "spike",
    use_raw: bool = False,
) -> np.ndarray:
    """
    Boolean mask of control genes.

    `controls` is either a boolean column of `.var`, a boolean mask
    over genes or a list of gene names.
    """
    var = adata.raw.var if use_raw else adata.var
    var_names = adata.raw.var_names if use_raw else adata.var_names
    if isinstance(controls, str):
        if controls not in var.columns:
            raise KeyError(f"Could not find key {controls} in .var.columns.")
        return validate_controls(var[controls].to_numpy(dtype=bool), var_names)
    return validate_controls(controls, var_names)


def model_design(
    adata: sc.AnnData,
    block_key: Optional[str] = None,
    covariates: Optional[Union[str, Iterable[str]]] = None,
) -> np.ndarray:
    """
    Design matrix with an intercept, one-hot blocking levels and covariates.

    The first level of `block_key` is absorbed in the intercept.
    """
    parts = [pd.DataFrame({"intercept": 1.0}, index=adata.obs_names)]
    if block_key is not None:
        if block_key not in adata.obs.columns:
            raise KeyError(f"Could not find key {block_key} in .obs.columns.")
        block = pd.Categorical(
            adata.obs[block_key], categories=obs_categories(adata, block_key)
        )
        dummies = pd.get_dummies(block, prefix=block_key, drop_first=True, dtype=float)
        dummies.index = adata.obs_names
        parts.append(dummies)
    if covariates is not None:
        _covariates = list(covariates) if isiterable(covariates) else [covariates]
        for k in _covariates:
            if k not in adata.obs.columns:
                raise KeyError(f"Could not find key {k} in .obs.columns.")
            if not pd.api.types.is_numeric_dtype(adata.obs[k]):
                raise TypeError(f"Key {k} in .obs.columns is not numeric dtype.")
        parts.append(adata.obs[_covariates].astype(float))
    design = pd.concat(parts, axis=1)
    logg.debug(f"design matrix columns: {list(design.columns)}")
    return design.to_numpy(dtype=np.float64)


def trend_function(adata: sc.AnnData, uns_key: str = "hvg"):
    """Rebuild the technical trend stored by `pp.highly_variable_genes`."""
    from .preprocessing import TrendFunction

    if uns_key not in adata.uns.keys() or "trend" not in adata.uns[uns_key]:
        raise KeyError(f"No technical trend stored in .uns['{uns_key}'].")
    return TrendFunction.from_dict(adata.uns[uns_key]["trend"])


def top_hvgs(
    df: pd.DataFrame,
    n_top: Optional[int] = None,
    fdr_threshold: Optional[float] = config.DEFAULT_FDR_THRESHOLD,
    min_bio: float = 0.0,
    bio_key: str = "biological_variance",
    fdr_key: str = "fdr",
) -> pd.Index:
    """Genes with the largest biological components, most variable first."""
    keep = df[bio_key] > min_bio
    if fdr_threshold is not None:
        keep &= df[fdr_key] <= fdr_threshold
    ret = df.loc[keep, bio_key].sort_values(ascending=False, kind="stable")
    if n_top is not None:
        ret = ret.head(n_top)
    return ret.index


__all__ = [
    "obs_categories",
    "control_mask",
    "model_design",
    "trend_function",
    "top_hvgs",
]
