"""
Tests for dispersion estimation: gene-wise MLE, trend and shrinkage.
"""

import warnings

import numpy as np
import pytest
from statsmodels.tools.sm_exceptions import DomainWarning

from rnaseq_de.dispersion import (
    DefaultDispersion,
    FailedDispersion,
    OutlierDispersion,
    ShrunkDispersion,
    cox_reid_objective,
    estimate_dispersions,
    estimate_gene_wise_dispersion,
    expected_means,
    fit_gene_dispersion,
    fit_dispersion_trend,
    shrink_dispersions,
)

from conftest import nb_draw


def two_group_design(n_per_group):
    group = np.repeat([0.0, 1.0], n_per_group)
    return np.column_stack([np.ones_like(group), group])


def trend(mu):
    return 0.5 / np.asarray(mu, dtype=float) + 0.05


class TestCoxReidObjective:
    """Analytic derivatives agree with finite differences."""

    def setup_method(self):
        self.y = np.array([10.0, 15.0, 30.0, 25.0])
        self.X = two_group_design(2)
        self.mu = expected_means(self.y[None, :], np.ones(4), np.array([0, 0, 1, 1]))[0]

    @pytest.mark.parametrize("alpha", [0.01, 0.1, 1.0])
    def test_first_derivative(self, alpha):
        theta, h = np.log(alpha), 1e-5
        _, d1, _ = cox_reid_objective(theta, self.y, self.mu, self.X)
        f_plus = cox_reid_objective(theta + h, self.y, self.mu, self.X)[0]
        f_minus = cox_reid_objective(theta - h, self.y, self.mu, self.X)[0]
        assert d1 == pytest.approx((f_plus - f_minus) / (2 * h), rel=1e-4, abs=1e-6)

    @pytest.mark.parametrize("alpha", [0.01, 0.1, 1.0])
    def test_second_derivative(self, alpha):
        theta, h = np.log(alpha), 1e-5
        _, _, d2 = cox_reid_objective(theta, self.y, self.mu, self.X)
        g_plus = cox_reid_objective(theta + h, self.y, self.mu, self.X)[1]
        g_minus = cox_reid_objective(theta - h, self.y, self.mu, self.X)[1]
        assert d2 == pytest.approx((g_plus - g_minus) / (2 * h), rel=1e-4, abs=1e-6)


class TestGeneWise:

    def test_recovers_true_dispersion(self):
        rng = np.random.default_rng(11)
        n, G, alpha = 10, 300, 0.1
        mu = np.r_[np.full(n, 100.0), np.full(n, 200.0)]
        counts = np.vstack([nb_draw(rng, mu, alpha) for _ in range(G)])

        _, disp_gw, failures = estimate_gene_wise_dispersion(
            counts, np.ones(2 * n), two_group_design(n)
        )
        assert not failures
        assert np.median(disp_gw) == pytest.approx(alpha, rel=0.15)

    def test_all_zero_gene_fails(self):
        counts = np.array([[0, 0, 0, 0], [10, 12, 30, 33], [5, 9, 4, 7]])
        _, disp_gw, failures = estimate_gene_wise_dispersion(
            counts, np.ones(4), two_group_design(2), genes=["z", "a", "b"]
        )
        assert np.isnan(disp_gw[0])
        assert np.all(np.isfinite(disp_gw[1:]))
        assert [f.gene for f in failures] == ["z"]
        assert failures[0].stage == "dispersion"
        assert "zero" in failures[0].reason

    def test_estimates_within_bounds(self, simulated):
        cm, _ = simulated
        _, disp_gw, _ = estimate_gene_wise_dispersion(
            cm.values, np.ones(cm.n_samples), two_group_design(3), min_disp=1e-8
        )
        assert np.all(disp_gw >= 1e-8)
        assert np.all(disp_gw <= 10.0)

    def test_lower_bound_is_inclusive(self):
        y = np.array([50.0, 50.0, 50.0, 50.0])
        mu = expected_means(y[None, :], np.ones(4), np.array([0, 0, 1, 1]))[0]
        alpha, _, reason = fit_gene_dispersion(y, mu, two_group_design(2), 0.01, min_disp=1e-8)
        assert reason is None
        assert alpha >= 1e-8
        assert alpha == pytest.approx(1e-8)

    def test_threads_give_same_estimates(self, simulated):
        cm, _ = simulated
        X = two_group_design(3)
        serial = estimate_gene_wise_dispersion(cm.values, np.ones(6), X, n_jobs=1)[1]
        threaded = estimate_gene_wise_dispersion(cm.values, np.ones(6), X, n_jobs=4)[1]
        np.testing.assert_array_equal(serial, threaded)


class TestTrend:

    def test_parametric_fit(self):
        base = np.geomspace(1, 1000, 40)
        wiggle = np.exp(0.01 * np.sin(np.arange(40)))
        disp = (2.0 / base + 0.05) * wiggle

        trend_fn, (a, b), parametric = fit_dispersion_trend(base, disp)
        assert parametric
        assert a == pytest.approx(2.0, rel=0.05)
        assert b == pytest.approx(0.05, rel=0.05)
        assert trend_fn(np.array([10.0]))[0] == pytest.approx(a / 10 + b)

    def test_identity_link_does_not_warn(self):
        base = np.geomspace(1, 1000, 40)
        disp = (2.0 / base + 0.05) * np.exp(0.01 * np.sin(np.arange(40)))
        with warnings.catch_warnings():
            warnings.simplefilter("error", DomainWarning)
            _, _, parametric = fit_dispersion_trend(base, disp)
        assert parametric

    def test_constant_fallback_with_few_genes(self):
        trend_fn, (a, b), parametric = fit_dispersion_trend(
            np.array([10.0, 100.0, 50.0]), np.array([0.2, 0.1, np.nan])
        )
        assert not parametric
        assert a == 0.0
        assert b == pytest.approx(0.15)
        np.testing.assert_allclose(trend_fn(np.array([1.0, 1e4])), 0.15)

    def test_tiny_estimates_excluded(self):
        base = np.geomspace(1, 1000, 40)
        disp = (2.0 / base + 0.05) * np.exp(0.01 * np.cos(np.arange(40)))
        disp[::5] = 1e-9
        _, (a, b), parametric = fit_dispersion_trend(base, disp)
        assert parametric
        assert a == pytest.approx(2.0, rel=0.05)


class TestShrinkage:

    def setup_method(self):
        rng = np.random.default_rng(3)
        self.base = np.linspace(10, 1000, 50)
        self.disp_gw = trend(self.base) * np.exp(rng.normal(0, 0.3, 50))

    def test_shrunk_between_raw_and_trend(self):
        final, disp_trend, prior_var = shrink_dispersions(
            self.base, self.disp_gw, trend, degrees_of_freedom=4, outlier_factor=100.0
        )
        assert prior_var >= 0.25
        for d, t in zip(final, disp_trend):
            assert isinstance(d, ShrunkDispersion)
            lo, hi = sorted([d.raw, t])
            assert lo < d.value < hi
            assert 0 < d.weight < 1

    def test_outlier_keeps_raw_value(self):
        disp_gw = self.disp_gw.copy()
        disp_gw[7] = trend(self.base[7]) * 10
        final, _, _ = shrink_dispersions(
            self.base, disp_gw, trend, degrees_of_freedom=4, outlier_factor=5.0
        )
        assert isinstance(final[7], OutlierDispersion)
        assert final[7].value == disp_gw[7]
        assert sum(isinstance(d, OutlierDispersion) for d in final) == 1

    def test_failed_genes_carry_reason(self):
        disp_gw = self.disp_gw.copy()
        disp_gw[3] = np.nan
        final, _, _ = shrink_dispersions(
            self.base, disp_gw, trend, degrees_of_freedom=4,
            reasons={3: "all counts are zero"},
        )
        assert isinstance(final[3], FailedDispersion)
        assert final[3].reason == "all counts are zero"
        assert np.isnan(final[3].value)

    def test_requires_degrees_of_freedom(self):
        with pytest.raises(ValueError):
            shrink_dispersions(self.base, self.disp_gw, trend, degrees_of_freedom=0)


class TestEstimateDispersions:

    def test_simulated(self, simulated):
        cm, _ = simulated
        disp = estimate_dispersions(cm.values, np.ones(6), two_group_design(3), genes=cm.genes)
        assert disp.genes == cm.genes
        assert np.all(np.isfinite(disp.values))
        assert set(disp.status) <= {"shrunk", "outlier"}
        assert 0.003 < np.median(disp.values) < 0.03
        assert not disp.failures

    def test_no_residual_degrees_of_freedom(self):
        counts = np.array([[10, 40], [0, 0], [7, 3]])
        X = np.array([[1.0, 0.0], [1.0, 1.0]])
        disp = estimate_dispersions(counts, np.ones(2), X, genes=["a", "z", "b"],
                                    default_dispersion=0.2)

        assert isinstance(disp.final[0], DefaultDispersion)
        assert isinstance(disp.final[2], DefaultDispersion)
        assert disp.final[0].value == 0.2
        assert isinstance(disp.final[1], FailedDispersion)
        assert [f.gene for f in disp.failures] == ["z"]
        assert disp.status == ["default", "failed", "default"]
