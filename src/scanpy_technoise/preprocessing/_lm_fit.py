"""
Per-gene linear model fitting.

Every gene is regressed on the same design matrix, so a single pivoted QR
decomposition of the design is computed once and reused for all genes.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import scanpy as sc
from joblib import Parallel, delayed
from scanpy import logging as logg
from scipy import linalg, sparse
from tqdm import tqdm

from .. import config
from .._errors import DegenerateDesignError
from .._utilities import tqdm_joblib
from .._validate import validate_design, validate_expression


@dataclass(frozen=True)
class DesignQR:
    q: np.ndarray
    r: np.ndarray
    pivot: np.ndarray
    rank: int


@dataclass(frozen=True)
class LinearModelFit:
    """Per-gene summaries of a linear model fit on log-expression values.

    Attributes:
        means: Unweighted mean log-expression (abundance) of each gene.
        variances: Residual variance ``RSS / df_residual`` of each gene.
        coefficients: Genes x predictors, in the column order of `design`.
        df_residual: Residual degrees of freedom shared by all genes.
        rank: Numerical rank of the design matrix.
        design: Cells x predictors design matrix used for the fit.
    """

    means: np.ndarray
    variances: np.ndarray
    coefficients: np.ndarray
    df_residual: int
    rank: int
    design: np.ndarray

    def __post_init__(self):
        for name in ["means", "variances", "coefficients", "design"]:
            arr = np.array(getattr(self, name))
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    @property
    def n_genes(self) -> int:
        return self.means.shape[0]

    @property
    def n_cells(self) -> int:
        return self.design.shape[0]

    def fitted_values(self) -> np.ndarray:
        """Genes x cells matrix of fitted values."""
        return self.coefficients @ self.design.T

    def subset(self, mask: np.ndarray) -> "LinearModelFit":
        _mask = np.asarray(mask)
        return LinearModelFit(
            means=self.means[_mask].copy(),
            variances=self.variances[_mask].copy(),
            coefficients=self.coefficients[_mask].copy(),
            df_residual=self.df_residual,
            rank=self.rank,
            design=self.design.copy(),
        )


def decompose_design(design: np.ndarray) -> DesignQR:
    n, p = design.shape
    if n - p <= 0:
        raise DegenerateDesignError(
            f"no residual degrees of freedom: {n} cells and {p} design columns"
        )

    q, r, pivot = linalg.qr(design, mode="economic", pivoting=True)
    diag = np.abs(np.diag(r))
    tol = config.RANK_TOL_FACTOR * max(n, p) * np.finfo(np.float64).eps * diag[0]
    rank = int(np.sum(diag > tol))
    if rank < p:
        raise DegenerateDesignError(
            f"design matrix is rank deficient (rank {rank} < {p} columns); "
            "coefficients are not identifiable"
        )
    return DesignQR(q=q, r=r, pivot=pivot, rank=rank)


def _fit_chunk(Y: np.ndarray, qr: DesignQR) -> tuple[np.ndarray, ...]:
    effects = Y @ qr.q
    coef_pivoted = linalg.solve_triangular(qr.r, effects.T).T
    coef = np.empty_like(coef_pivoted)
    coef[:, qr.pivot] = coef_pivoted

    resid = Y - effects @ qr.q.T
    rss = np.einsum("ij,ij->i", resid, resid)
    return Y.mean(axis=1), rss, coef


def _dense_rows(X, start: int, stop: int) -> np.ndarray:
    rows = X[start:stop]
    if sparse.issparse(rows):
        rows = rows.toarray()
    return np.asarray(rows, dtype=np.float64)


def fit_linear_model(
    X,
    design: Optional[np.ndarray] = None,
    n_jobs: Optional[int] = None,
    chunk_size: int = config.LM_CHUNK_SIZE,
) -> LinearModelFit:
    """
    Fit a linear model of log-expression against `design` for every gene.

    Args:
        X: Genes x cells matrix of log-normalized expression, dense or sparse.
        design: Cells x predictors design matrix. Defaults to an intercept.
        n_jobs: Number of parallel jobs. Defaults to `scanpy.settings.n_jobs`.
        chunk_size: Number of genes solved per job.

    Returns:
        LinearModelFit with per-gene abundances and residual variances.
    """
    validate_expression(X)
    n_genes, n_cells = X.shape
    _design = validate_design(design, n_cells)
    if chunk_size < 1:
        raise ValueError(f"'chunk_size' must be positive: {chunk_size}")

    start = logg.info(
        f"fitting linear models for {n_genes} genes on {_design.shape[1]} predictors"
    )
    qr = decompose_design(_design)
    df_residual = n_cells - qr.rank

    _X = sparse.csr_matrix(X) if sparse.issparse(X) else X
    bounds = [
        (i, min(i + chunk_size, n_genes)) for i in range(0, max(n_genes, 1), chunk_size)
    ]
    _n_jobs = sc.settings.n_jobs if n_jobs is None else n_jobs
    with tqdm_joblib(
        tqdm(total=len(bounds), mininterval=0.5, miniters=1, disable=len(bounds) < 2)
    ) as _:
        res = Parallel(n_jobs=_n_jobs)(
            delayed(_fit_chunk)(_dense_rows(_X, b0, b1), qr) for b0, b1 in bounds
        )

    means = np.concatenate([x[0] for x in res])
    rss = np.concatenate([x[1] for x in res])
    coef = np.concatenate([x[2] for x in res], axis=0)

    logg.info("    finished", time=start)
    logg.debug(f"residual degrees of freedom: {df_residual}")
    return LinearModelFit(
        means=means,
        variances=rss / df_residual,
        coefficients=coef,
        df_residual=df_residual,
        rank=qr.rank,
        design=_design,
    )
