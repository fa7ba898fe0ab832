import numpy as np
import pytest
import scipy.optimize

from scanpy_technoise import PriorFitError
from scanpy_technoise.pp import estimate_dispersion, fit_scaled_f


def test_pure_sampling_noise_gives_infinite_d0():
    rng = np.random.default_rng(0)
    df = 20
    ratios = 1.3 * rng.chisquare(df, 2000) / df
    res = fit_scaled_f(ratios, df)
    assert res.is_infinite or res.d0 > 50
    assert res.phi == pytest.approx(1.3, rel=0.05)
    assert res.tech_scale == pytest.approx(res.phi, rel=0.05)
    assert res.n_controls == 2000


def test_recovers_finite_prior_df():
    rng = np.random.default_rng(1)
    df, d0 = 20, 8.0
    ratios = 0.7 * rng.f(df, d0, 4000)
    res = fit_scaled_f(ratios, df)
    assert np.isfinite(res.d0)
    assert 5.0 < res.d0 < 13.0
    assert res.phi == pytest.approx(0.7, rel=0.1)
    assert res.tech_scale == pytest.approx(res.phi * res.d0 / (res.d0 - 2))


def test_outliers_do_not_dominate_fit():
    rng = np.random.default_rng(2)
    df, d0 = 10, 20.0
    ratios = 2.0 * rng.f(df, d0, 1000)
    ratios[:50] *= 100.0
    res = fit_scaled_f(ratios, df)
    assert np.isfinite(res.d0) and res.d0 > 0
    assert res.phi == pytest.approx(2.0, rel=0.2)


def test_small_d0_uses_mean_ratio_as_technical_scale():
    rng = np.random.default_rng(3)
    ratios = rng.f(20, 1.0, 3000)
    res = fit_scaled_f(ratios, 20)
    assert res.d0 <= 2
    assert res.tech_scale == pytest.approx(np.mean(ratios))


def test_nonpositive_and_nonfinite_ratios_are_dropped():
    rng = np.random.default_rng(4)
    ratios = rng.chisquare(10, 100) / 10
    ratios[:5] = [0.0, -1.0, np.nan, np.inf, 0.0]
    assert fit_scaled_f(ratios, 10).n_controls == 95


def test_too_few_ratios_raise():
    with pytest.raises(PriorFitError, match="too few usable variance ratios: 2 < minimum 3"):
        fit_scaled_f(np.array([1.0, 2.0, 0.0]), 10)


def test_root_finding_failure_raises(monkeypatch):
    def _raise(*_args, **_kwargs):
        raise RuntimeError("failed to converge")

    monkeypatch.setattr(scipy.optimize, "brentq", _raise)
    rng = np.random.default_rng(5)
    ratios = rng.f(20, 5.0, 500)
    with pytest.raises(PriorFitError, match="dispersion fit"):
        fit_scaled_f(ratios, 20)


def test_argument_validation():
    with pytest.raises(ValueError, match="df"):
        fit_scaled_f(np.ones(10), 0)
    with pytest.raises(ValueError, match="alpha"):
        fit_scaled_f(np.ones(10), 5, alpha=1.5)


def test_estimate_dispersion_uses_trend_ratios():
    rng = np.random.default_rng(6)
    df = 15
    means = rng.uniform(1.0, 5.0, 300)
    vars = (0.2 * means) * rng.chisquare(df, 300) / df
    res = estimate_dispersion(lambda x: 0.2 * np.asarray(x), means, vars, df, alpha=0.01)
    assert res.is_infinite or res.d0 > 50
    assert res.phi == pytest.approx(1.0, rel=0.1)
