from dataclasses import dataclass, replace
from functools import cached_property
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Protocol, Union

import numba
import numpy as np
from scanpy import logging as logg

from .. import config
from .._errors import InsufficientControlGenesError, TrendFitError
from .._utilities import update_config


@numba.njit()
def _weighted_median(x: np.ndarray, w: np.ndarray) -> float:
    sorted_idx = np.argsort(x)
    x_sorted = x[sorted_idx]
    w_cum = np.cumsum(w[sorted_idx])
    w_total = w_cum[-1]

    med_idx = np.searchsorted(w_cum, (w_total / 2))
    if med_idx >= (len(x) - 1):
        return x_sorted[-1]
    elif w_cum[med_idx] == (w_total / 2):
        return np.mean(x_sorted[med_idx : med_idx + 2])
    else:
        return x_sorted[med_idx]


def weighted_median(
    x: np.ndarray, w: Optional[np.ndarray] = None, na_rm: bool = False
) -> float:
    _x = np.asarray(x, dtype=np.float64)
    _w = None if w is None else np.asarray(w, dtype=np.float64)
    if na_rm:
        mask = ~np.isnan(_x)
        _x = _x[mask]
        _w = None if _w is None else _w[mask]
    if _w is None:
        return float(np.median(_x))
    return float(_weighted_median(_x, _w))


def inverse_density_weights(
    x: np.ndarray,
    bw_method: Union[Literal["scott", "silverman"], float] = "silverman",
) -> np.ndarray:
    from scipy.stats import gaussian_kde

    _x = np.asarray(x, dtype=np.float64)
    if np.ptp(_x) == 0:
        return np.ones_like(_x)
    density = gaussian_kde(_x, bw_method=bw_method)(_x)
    w = 1.0 / np.clip(density, a_min=1e-10, a_max=None)
    return w / np.mean(w)


def _log_curve(x, a: float, b: float, m: float) -> np.ndarray:
    # log of a*x / (x^m + b), with x floored at a small positive abundance
    lx = np.log(np.maximum(np.asarray(x, dtype=np.float64), config.ABUNDANCE_FLOOR))
    return np.log(a) + lx - np.logaddexp(m * lx, np.log(b))


class ClampedInterpolator:
    """Monotone cubic interpolation that holds boundary values outside the knots."""

    def __init__(self, x: np.ndarray, y: np.ndarray):
        from scipy.interpolate import PchipInterpolator

        _x = np.asarray(x, dtype=np.float64)
        _y = np.asarray(y, dtype=np.float64)
        ux, inv = np.unique(_x, return_inverse=True)
        self.x = ux
        self.y = np.bincount(inv, weights=_y) / np.bincount(inv)
        self._interp = (
            None if len(ux) < 2 else PchipInterpolator(self.x, self.y, extrapolate=False)
        )

    def __call__(self, x) -> np.ndarray:
        _x = np.asarray(x, dtype=np.float64)
        if self._interp is None:
            return np.full(_x.shape, self.y[0])
        return self._interp(np.clip(_x, self.x[0], self.x[-1]))


class RobustSmoother(Protocol):
    def fit(
        self,
        x: np.ndarray,
        y: np.ndarray,
        span: float,
        weights: Optional[np.ndarray] = None,
    ) -> Callable[[np.ndarray], np.ndarray]: ...


class LoessSmoother:
    """Robust local regression through `skmisc.loess` with symmetric family."""

    def __init__(
        self,
        degree: int = config.LOESS_DEGREE,
        iterations: int = config.LOESS_ITERATIONS,
    ):
        self.degree = degree
        self.iterations = iterations

    def effective_span(self, span: float, n: int) -> float:
        _min_points = max(self.degree + 3, config.LOESS_MIN_POINTS)
        return min(1.0, max(span, _min_points / n))

    def _fit_loess(self, x, y, span, weights):
        from skmisc import loess

        model = loess.loess(
            x,
            y,
            weights=weights,
            span=span,
            degree=self.degree,
            family="symmetric",
            iterations=self.iterations,
        )
        model.fit()
        return np.asarray(model.outputs.fitted_values, dtype=np.float64)

    def fit(
        self,
        x: np.ndarray,
        y: np.ndarray,
        span: float,
        weights: Optional[np.ndarray] = None,
    ) -> ClampedInterpolator:
        _x = np.asarray(x, dtype=np.float64)
        _y = np.asarray(y, dtype=np.float64)
        _w = None if weights is None else np.asarray(weights, dtype=np.float64)
        _span = self.effective_span(span, len(_x))
        if _span > span:
            logg.warning(
                f"span {span} covers too few of {len(_x)} points, using {_span:.3f}"
            )

        # skmisc raises on near-singular local fits; widen until they are covered
        while True:
            try:
                fitted = self._fit_loess(_x, _y, _span, _w)
                break
            except ValueError as e:
                if _span >= 1.0:
                    raise TrendFitError(f"robust local regression failed: {e}") from e
                _next = min(1.0, _span * config.LOESS_SPAN_GROWTH)
                logg.warning(
                    f"local regression with span {_span:.3f} failed ({e}), "
                    f"retrying with {_next:.3f}"
                )
                _span = _next

        if not np.all(np.isfinite(fitted)):
            raise TrendFitError("robust local regression produced non-finite values")
        return ClampedInterpolator(_x, fitted)


@dataclass(frozen=True, eq=False)
class TrendFunction:
    """
    Mean-variance trend of the technical noise.

    The trend is ``scale * f1(x) * exp(f2(x))`` where ``f1(x) = a*x / (x^m + b)``
    is the parametric curve and ``f2`` the robust smoother fitted to the
    log-ratios of the control variances to ``f1``. ``f2`` is stored as its
    values at the control abundances and held constant beyond them.
    """

    a: float
    b: float
    m: float
    knots_x: np.ndarray
    knots_y: np.ndarray
    scale: float = 1.0
    std_dev: float = np.nan

    def __post_init__(self):
        for name in ["knots_x", "knots_y"]:
            arr = np.array(getattr(self, name), dtype=np.float64)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    @cached_property
    def _residual(self) -> ClampedInterpolator:
        return ClampedInterpolator(self.knots_x, self.knots_y)

    @property
    def range(self) -> tuple[float, float]:
        return float(self.knots_x[0]), float(self.knots_x[-1])

    def parametric(self, x) -> np.ndarray:
        return np.exp(_log_curve(x, self.a, self.b, self.m))

    def residual(self, x) -> np.ndarray:
        return self._residual(x)

    def __call__(self, x) -> Union[float, np.ndarray]:
        _x = np.asarray(x, dtype=np.float64)
        val = np.exp(_log_curve(_x, self.a, self.b, self.m) + self._residual(_x))
        val = np.maximum(val * self.scale, config.TREND_FLOOR)
        return float(val) if val.ndim == 0 else val

    def to_dict(self) -> Dict[str, Any]:
        return dict(
            a=self.a,
            b=self.b,
            m=self.m,
            knots_x=np.array(self.knots_x),
            knots_y=np.array(self.knots_y),
            scale=self.scale,
            std_dev=self.std_dev,
        )

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "TrendFunction":
        return cls(
            a=float(d["a"]),
            b=float(d["b"]),
            m=float(d["m"]),
            knots_x=np.array(d["knots_x"], dtype=np.float64),
            knots_y=np.array(d["knots_y"], dtype=np.float64),
            scale=float(d.get("scale", 1.0)),
            std_dev=float(d.get("std_dev", np.nan)),
        )


class TechnicalTrendFitter:
    """Fits the technical mean-variance trend to control genes."""

    def __init__(
        self,
        span: float = config.DEFAULT_SPAN,
        min_controls: int = config.DEFAULT_MIN_CONTROLS,
        min_mean: float = 0.0,
        use_density_weights: bool = True,
        smoother: Optional[RobustSmoother] = None,
        **nls_params,
    ):
        if not ((span > 0.0) and (span <= 1.0)):
            raise ValueError(f"'span' must be between 0 and 1: {span}")
        if min_controls < config.MIN_CONTROLS_FLOOR:
            raise ValueError(
                f"'min_controls' must be at least {config.MIN_CONTROLS_FLOOR}: "
                f"{min_controls}"
            )
        self.span = span
        self.min_controls = min_controls
        self.min_mean = min_mean
        self.use_density_weights = use_density_weights
        self.smoother = LoessSmoother() if smoother is None else smoother
        self.nls_params = dict(nls_params)
        for k, v in config.NLS_PARAMS.items():
            update_config(k, v, self.nls_params)

    @staticmethod
    def get_init_params(
        vars: np.ndarray,
        means: np.ndarray,
        left_n: int = 100,
        left_prop: float = 0.1,
        grid_length: int = 10,
        b_grid_range: float = 5,
        n_grid_max: float = 7,
    ) -> Dict[str, float]:
        """
        Get starting parameters for non-linear curve fitting.

        The initial gradient is a regression through the origin on the
        left-most points; `b` and the exponent are then chosen from a
        log2-spaced grid by least squares.

        Args:
            vars: Variances
            means: Means
            left_n: Number of points to use from left
            left_prop: Proportion of points to use from left
            grid_length: Number of grid points
            b_grid_range: Range for B parameter grid
            n_grid_max: Maximum value for n parameter grid

        Returns:
            Dict with starting parameters
        """

        n = len(vars)
        sorted_idx = np.argsort(means, kind="stable")

        _left_n = min(left_n, int(n * left_prop))
        keep_idx = sorted_idx[: max(1, _left_n)]
        _vars = vars[keep_idx]
        _means = means[keep_idx]
        slope = np.sum(_means * _vars) / np.sum(_means**2)

        b_grid, n_grid = np.meshgrid(
            np.exp2(np.linspace(-b_grid_range, b_grid_range, grid_length)),
            np.exp2(np.linspace(0, n_grid_max, grid_length)),
        )
        b_flat = b_grid.flatten()
        n_flat = n_grid.flatten()

        best_ss = np.inf
        best_idx = 0
        with np.errstate(over="ignore"):
            for i in range(b_flat.shape[0]):
                _b = b_flat[i]
                _n = n_flat[i]
                pred = (slope * _b * means) / (_b + np.power(means, _n))
                resd = vars - pred
                _ss = np.dot(resd, resd)
                if _ss < best_ss:
                    best_ss = _ss
                    best_idx = i
        return dict(
            n=max(1e-8, n_flat[best_idx] - 1),
            b=b_flat[best_idx],
            a=b_flat[best_idx] * slope,
        )

    @staticmethod
    def _nls_model(x: np.ndarray, a: float, b: float, n: float) -> np.ndarray:
        # y = (a*x)/(x^(1+n) + b)
        with np.errstate(over="ignore"):
            return (a * x) / (b + (x ** (1 + n)))

    def usable_points(self, means: np.ndarray, vars: np.ndarray) -> np.ndarray:
        """Mask of control genes that enter the trend fit."""
        return (
            np.isfinite(means)
            & np.isfinite(vars)
            & (vars > config.MIN_VARIANCE)
            & (means > self.min_mean)
        )

    def select_points(self, means: np.ndarray, vars: np.ndarray) -> np.ndarray:
        keep = self.usable_points(means, vars)
        n_drop = int(np.sum(~keep))
        if n_drop > 0:
            logg.debug(f"dropping {n_drop} control genes with unusable mean or variance")
        if np.sum(keep) < self.min_controls:
            raise InsufficientControlGenesError(
                f"too few control genes: {int(np.sum(keep))} < minimum {self.min_controls}"
            )
        return keep

    def fit_parametric(
        self, means: np.ndarray, vars: np.ndarray, w: Optional[np.ndarray] = None
    ) -> Dict[str, float]:
        from scipy import optimize

        init = TechnicalTrendFitter.get_init_params(vars, means, **config.INIT_PARAMS)
        lb = config.NLS_LOWER_BOUND
        p0 = [max(init["a"], 2 * lb), max(init["b"], 2 * lb), max(init["n"], 2 * lb)]
        logg.debug(f"initial curve parameters: a={p0[0]:.4g}, b={p0[1]:.4g}, n={p0[2]:.4g}")
        try:
            opt_params, _ = optimize.curve_fit(
                TechnicalTrendFitter._nls_model,
                means,
                vars,
                p0=p0,
                sigma=(None if w is None else (1 / np.sqrt(w))),
                bounds=([lb, lb, lb], [np.inf, np.inf, np.inf]),
                **self.nls_params,
            )
        except (RuntimeError, ValueError) as e:
            raise TrendFitError(
                f"non-linear least squares did not converge from a={p0[0]:.4g}, "
                f"b={p0[1]:.4g}, m={1 + p0[2]:.4g}: {e}"
            ) from e

        a, b, n = (float(x) for x in opt_params)
        fitted = np.exp(_log_curve(means, a, b, 1 + n))
        if not (np.all(np.isfinite(opt_params)) and np.all(fitted > 0)):
            raise TrendFitError(
                f"parametric curve is degenerate: a={a:.4g}, b={b:.4g}, m={1 + n:.4g}"
            )
        return dict(a=a, b=b, m=1 + n)

    def fit(self, means: np.ndarray, vars: np.ndarray) -> TrendFunction:
        """
        Fit the trend of `vars` against `means` for the control genes.

        Args:
            means: Abundances of the control genes
            vars: Variances of the control genes

        Returns:
            TrendFunction
        """
        import warnings

        from scipy.optimize import OptimizeWarning

        _means = np.asarray(means, dtype=np.float64)
        _vars = np.asarray(vars, dtype=np.float64)
        if _means.shape != _vars.shape:
            raise ValueError("'means' and 'vars' must have the same length.")

        start = logg.info("fitting technical trend to control genes")
        keep = self.select_points(_means, _vars)
        _means = _means[keep]
        _vars = _vars[keep]
        w = (
            inverse_density_weights(_means, bw_method=config.DENSITY_BANDWIDTH)
            if self.use_density_weights
            else None
        )

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", OptimizeWarning)
            params = self.fit_parametric(_means, _vars, w)

        to_fit = np.log(_vars) - _log_curve(_means, **params)
        residual_func = self.smoother.fit(_means, to_fit, span=self.span, weights=w)
        knots_x = np.unique(_means)
        knots_y = np.asarray(residual_func(knots_x), dtype=np.float64)
        if not np.all(np.isfinite(knots_y)):
            raise TrendFitError("smoother returned non-finite values at control abundances")
        unscaled = TrendFunction(knots_x=knots_x, knots_y=knots_y, **params)

        # Adjust for scale shift due to fitting to log-values
        leftovers = _vars / unscaled(_means)
        med = weighted_median(leftovers, w)
        std_dev = weighted_median(np.abs(leftovers / med - 1), w) * config.MAD_SCALE
        trend = replace(unscaled, scale=med, std_dev=std_dev)

        logg.debug(
            f"trend parameters: a={params['a']:.4g}, b={params['b']:.4g}, "
            f"m={params['m']:.4g}, scale={med:.4g}"
        )
        logg.info("    finished", time=start)
        return trend
