import numpy as np
import pytest


def true_trend(x, a=2.0, b=1.0, m=2.0):
    return a * x / (x**m + b)


def simulate_log_expression(
    n_genes=200,
    n_controls=50,
    n_cells=21,
    d0=None,
    inflated=None,
    inflation=10.0,
    seed=0,
    flat=None,
):
    """Normal log-expression around a known mean-variance trend.

    Controls are the first `n_controls` genes. With `d0`, true variances are
    scattered around the trend by a scaled inverse chi-squared with mean one.
    `inflated` lists genes whose variance is multiplied by `inflation`.
    """
    rng = np.random.default_rng(seed)
    means = rng.uniform(0.3, 6.0, n_genes)
    var = np.full(n_genes, flat) if flat is not None else true_trend(means)
    if d0 is not None:
        var = var * (d0 - 2) / rng.chisquare(d0, n_genes)
    if inflated is not None:
        var[inflated] *= inflation
    X = means[:, None] + rng.normal(size=(n_genes, n_cells)) * np.sqrt(var)[:, None]
    controls = np.zeros(n_genes, dtype=bool)
    controls[:n_controls] = True
    return X, controls


@pytest.fixture
def null_data():
    return simulate_log_expression(seed=1)


@pytest.fixture
def trend_points():
    """Abundances and variances lying close to the true trend."""
    rng = np.random.default_rng(7)
    means = np.sort(rng.uniform(0.3, 6.0, 60))
    vars = true_trend(means) * np.exp(rng.normal(scale=0.05, size=means.shape[0]))
    return means, vars
