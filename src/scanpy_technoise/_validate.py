from collections.abc import Iterable
from typing import Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from pandas.api.types import is_bool_dtype
from scanpy import logging as logg
from scipy import sparse


def isiterable(x) -> bool:
    return not isinstance(x, str) and isinstance(x, Iterable)


def validate_layer_and_raw(
    adata: sc.AnnData,
    layer: Optional[str] = None,
    use_raw: Optional[bool] = None,
) -> tuple[Optional[str], bool]:
    _use_raw = (
        use_raw
        if isinstance(use_raw, bool)
        else (True if (layer is None and adata.raw is not None) else False)
    )
    if _use_raw and layer is not None:
        raise ValueError("Cannot specify use_raw=True and a layer at the same time.")
    if layer is not None and layer not in adata.layers.keys():
        raise KeyError(f"Could not find layer {layer} in .layers.")
    if _use_raw:
        logg.info("Using .raw.")
    return layer, _use_raw


def validate_expression(X) -> None:
    if X.ndim != 2:
        raise ValueError(f"Expression matrix must be 2-dimensional, got {X.ndim}.")
    data = X.data if sparse.issparse(X) else np.asarray(X)
    if not np.all(np.isfinite(data)):
        raise ValueError(
            "Expression matrix contains non-finite values; "
            "filter or impute them before variance modelling."
        )
    return


def validate_design(design: Optional[np.ndarray], n_cells: int) -> np.ndarray:
    if design is None:
        return np.ones((n_cells, 1), dtype=np.float64)
    _design = np.array(design, dtype=np.float64)
    if _design.ndim == 1:
        _design = _design[:, None]
    if _design.ndim != 2:
        raise ValueError("'design' must be a 2-dimensional cells x predictors matrix.")
    if _design.shape[1] == 0:
        raise ValueError("'design' has no columns.")
    if _design.shape[0] != n_cells:
        raise ValueError(
            f"Number of rows in 'design' ({_design.shape[0]}) must match "
            f"the number of cells ({n_cells})."
        )
    if not np.all(np.isfinite(_design)):
        raise ValueError("'design' contains non-finite values.")
    return _design


def validate_controls(
    controls: Union[Iterable[bool], Iterable[str]],
    gene_names: Optional[pd.Index] = None,
    n_genes: Optional[int] = None,
) -> np.ndarray:
    """Resolve a boolean mask or a list of gene names into a boolean mask."""
    _n = len(gene_names) if gene_names is not None else n_genes
    _controls = controls if isinstance(controls, pd.Series) else np.asarray(controls)
    if len(_controls) == _n and is_bool_dtype(np.asarray(_controls).dtype):
        mask = np.asarray(_controls, dtype=bool)
    else:
        if gene_names is None:
            raise TypeError(
                "Control genes given by name require gene identifiers; "
                "pass a boolean mask instead."
            )
        names = pd.Index(list(_controls))
        missing = names.difference(gene_names)
        if len(missing) > 0:
            raise KeyError(f"Could not find control genes {list(missing)} in .var_names.")
        mask = gene_names.isin(names)
    if not mask.any():
        raise ValueError("No control genes were flagged.")
    return mask


__all__ = [
    "isiterable",
    "validate_layer_and_raw",
    "validate_expression",
    "validate_design",
    "validate_controls",
]
