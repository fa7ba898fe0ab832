"""
Robust fit of a scaled F-distribution to control-gene variance ratios.

If the technical trend is right, the ratio of each control gene's variance
to the trend follows ``phi * F(df, d0)``, where ``df`` are the residual
degrees of freedom and ``d0`` the prior degrees of freedom describing
variability of the true technical variance around the trend.
"""

from dataclasses import dataclass
from typing import Callable

import numpy as np
from scanpy import logging as logg
from scipy import optimize, stats

from .. import config
from .._errors import PriorFitError

_QUARTILES = np.array([0.25, 0.75])


@dataclass(frozen=True)
class DispersionEstimate:
    """Scaled F-distribution of control variance ratios around the trend.

    Attributes:
        d0: Prior degrees of freedom, ``inf`` without extra dispersion.
        phi: Scale of the F-distribution.
        df: Residual degrees of freedom of the variance estimates.
        tech_scale: Factor turning the trend into the expected technical variance.
        n_controls: Number of control ratios used in the fit.
    """

    d0: float
    phi: float
    df: int
    tech_scale: float
    n_controls: int

    @property
    def is_infinite(self) -> bool:
        return bool(np.isinf(self.d0))


def log_f_quartiles(df: float, d0: float) -> np.ndarray:
    if np.isinf(d0):
        return np.log(stats.chi2.ppf(_QUARTILES, df) / df)
    return np.log(stats.f.ppf(_QUARTILES, df, d0))


def f_median(df: float, d0: float) -> float:
    if np.isinf(d0):
        return float(stats.chi2.median(df) / df)
    return float(stats.f.median(df, d0))


def null_iqr_se(df: float, n: int) -> float:
    """Asymptotic standard error of the sample IQR of ``log(chi2_df / df)``."""
    p1, p3 = _QUARTILES
    w = stats.chi2.ppf(_QUARTILES, df) / df
    # density of log(W) at log(w) for W = chi2_df / df
    dens = df * stats.chi2.pdf(df * w, df) * w
    var = (
        p1 * (1 - p1) / dens[0] ** 2
        + p3 * (1 - p3) / dens[1] ** 2
        - 2 * p1 * (1 - p3) / (dens[0] * dens[1])
    ) / n
    return float(np.sqrt(var))


def _solve_d0(df: float, iqr: float, d0_max: float) -> float:
    def _gap(log_d0: float) -> float:
        lq = log_f_quartiles(df, np.exp(log_d0))
        return (lq[1] - lq[0]) - iqr

    lo, hi = np.log(config.D0_MIN), np.log(d0_max)
    if _gap(hi) >= 0:
        return np.inf
    if not _gap(lo) > 0:
        logg.warning(
            f"variance ratios are more dispersed than F({df}, {config.D0_MIN}), "
            f"using d0 = {config.D0_MIN}"
        )
        return config.D0_MIN
    try:
        log_d0 = optimize.brentq(_gap, lo, hi, xtol=1e-10, maxiter=200)
    except (RuntimeError, ValueError) as e:
        raise PriorFitError(f"root finding for d0 did not converge: {e}") from e
    return float(np.exp(log_d0))


def fit_scaled_f(
    ratios: np.ndarray,
    df: float,
    alpha: float = config.DEFAULT_ALPHA,
    d0_max: float = config.D0_MAX,
) -> DispersionEstimate:
    """
    Fit ``phi * F(df, d0)`` to variance ratios by matching quartiles.

    The inter-quartile range of the log-ratios fixes `d0`; the median
    then fixes `phi`. `d0` is infinite when the log-ratio IQR does not
    exceed the IQR expected from sampling noise alone by more than the
    one-sided normal quantile at level `alpha` times its standard error.

    Args:
        ratios: Control variances divided by the trend
        df: Residual degrees of freedom
        alpha: Level of the test for extra dispersion
        d0_max: Prior degrees of freedom above which `d0` is reported as infinite

    Returns:
        DispersionEstimate
    """
    if not df > 0:
        raise ValueError(f"'df' must be positive: {df}")
    if not 0.0 < alpha < 1.0:
        raise ValueError(f"'alpha' must be between 0 and 1: {alpha}")

    x = np.asarray(ratios, dtype=np.float64)
    x = x[np.isfinite(x) & (x > 0)]
    n = x.shape[0]
    if n < config.MIN_PRIOR_POINTS:
        raise PriorFitError(
            f"too few usable variance ratios: {n} < minimum {config.MIN_PRIOR_POINTS}"
        )

    z = np.log(x)
    q1, q3 = np.quantile(z, _QUARTILES)
    iqr = q3 - q1
    lq = log_f_quartiles(df, np.inf)
    iqr_null = lq[1] - lq[0]
    z_stat = (iqr - iqr_null) / null_iqr_se(df, n)
    logg.debug(
        f"log-ratio IQR {iqr:.4f} vs {iqr_null:.4f} without extra dispersion "
        f"(z = {z_stat:.2f})"
    )

    if z_stat <= stats.norm.isf(alpha):
        d0 = np.inf
    else:
        d0 = _solve_d0(df, iqr, d0_max)

    phi = float(np.median(x)) / f_median(df, d0)
    if not (np.isfinite(phi) and phi > 0):
        raise PriorFitError(f"scale estimate is not positive: phi = {phi}")

    if np.isinf(d0):
        tech_scale = phi
    elif d0 > 2:
        tech_scale = phi * d0 / (d0 - 2)
    else:
        logg.warning(
            f"d0 = {d0:.3g} leaves the F mean undefined, "
            "using the mean variance ratio as technical scale"
        )
        tech_scale = float(np.mean(x))

    return DispersionEstimate(
        d0=float(d0), phi=phi, df=df, tech_scale=float(tech_scale), n_controls=n
    )


def estimate_dispersion(
    trend: Callable[[np.ndarray], np.ndarray],
    means: np.ndarray,
    vars: np.ndarray,
    df: float,
    alpha: float = config.DEFAULT_ALPHA,
    d0_max: float = config.D0_MAX,
) -> DispersionEstimate:
    start = logg.info("estimating dispersion of control genes around the trend")
    ratios = np.asarray(vars, dtype=np.float64) / trend(np.asarray(means))
    res = fit_scaled_f(ratios, df, alpha=alpha, d0_max=d0_max)
    logg.info(f"    finished (d0 = {res.d0:.4g}, phi = {res.phi:.4g})", time=start)
    return res
