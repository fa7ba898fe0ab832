from collections.abc import Iterable
from typing import Optional

import numpy as np
import pandas as pd
from scanpy import logging as logg
from scipy import stats

from ._fdist import DispersionEstimate
from ._lm_fit import LinearModelFit
from ._loess_fit import TrendFunction

DECOMPOSITION_COLS = [
    "mean_abundance",
    "total_variance",
    "technical_variance",
    "biological_variance",
    "f_statistic",
    "p_value",
    "fdr",
]


def variance_pvalues(f_stat: np.ndarray, dispersion: DispersionEstimate) -> np.ndarray:
    """Upper tail probability of `f_stat / phi` under ``F(df, d0)``."""
    _f = np.asarray(f_stat, dtype=np.float64) / dispersion.phi
    if dispersion.is_infinite:
        return stats.chi2.sf(dispersion.df * _f, dispersion.df)
    return stats.f.sf(_f, dispersion.df, dispersion.d0)


def decompose_variance(
    fit: LinearModelFit,
    trend: TrendFunction,
    dispersion: DispersionEstimate,
    index: Optional[Iterable[str]] = None,
    controls: Optional[np.ndarray] = None,
) -> pd.DataFrame:
    """
    Split the variance of every gene into technical and biological parts.

    Rows follow the gene order of `fit`. The biological component is
    signed; FDR is Benjamini-Hochberg over all genes.

    Args:
        fit: Per-gene linear model fit
        trend: Technical trend fitted to control genes
        dispersion: Dispersion of control genes around the trend
        index: Gene identifiers
        controls: Boolean mask of control genes

    Returns:
        DataFrame with one row per gene
    """
    if dispersion.df != fit.df_residual:
        raise ValueError(
            f"Dispersion was fitted with {dispersion.df} degrees of freedom, "
            f"the linear model has {fit.df_residual}."
        )
    start = logg.info(f"decomposing variance of {fit.n_genes} genes")

    base = np.atleast_1d(trend(fit.means))
    tech = base * dispersion.tech_scale
    f_stat = fit.variances / base
    p_value = variance_pvalues(f_stat, dispersion)
    fdr = (
        stats.false_discovery_control(p_value, method="bh")
        if p_value.shape[0] > 0
        else p_value.copy()
    )

    df = pd.DataFrame(
        dict(
            mean_abundance=np.asarray(fit.means),
            total_variance=np.asarray(fit.variances),
            technical_variance=tech,
            biological_variance=fit.variances - tech,
            f_statistic=f_stat,
            p_value=p_value,
            fdr=fdr,
        ),
        index=index,
    )
    if controls is not None:
        df["is_control"] = np.asarray(controls, dtype=bool)

    logg.info("    finished", time=start)
    return df
