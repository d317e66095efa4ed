"""
Tests for the per-gene negative binomial GLM.
"""

import numpy as np
import pytest

from rnaseq_de.nbinom_glm import (
    LN2,
    MAX_ABS_COEF,
    fit_nb_glm,
    fit_nb_glms,
    initial_coefficients,
)

X_1V1 = np.array([[1.0, 0.0], [1.0, 1.0]])
X_2V2 = np.array([[1.0, 0.0], [1.0, 0.0], [1.0, 1.0], [1.0, 1.0]])


class TestFitNbGlm:

    def test_saturated_one_vs_one(self):
        fit = fit_nb_glm(np.array([10, 40]), np.ones(2), 0.1, X_1V1)
        assert fit.converged
        assert fit.status == "converged"
        assert fit.log2_fold_change == pytest.approx(2.0, abs=1e-5)
        assert np.isfinite(fit.lfc_se)

    def test_size_factor_offset(self):
        fit = fit_nb_glm(np.array([10, 10, 40, 40]), np.array([1.0, 1.0, 2.0, 2.0]), 0.1, X_2V2)
        assert fit.converged
        assert fit.log2_fold_change == pytest.approx(1.0, abs=1e-5)
        assert fit.coefficients[0] == pytest.approx(np.log(10.0), abs=1e-5)

    def test_standard_error_closed_form(self):
        # two groups: var(log fold change) = sum over groups of (1/mu + alpha) / n
        fit = fit_nb_glm(np.array([10, 10, 40, 40]), np.ones(4), 0.1, X_2V2)
        var = (1 / 10 + 0.1) / 2 + (1 / 40 + 0.1) / 2
        assert var == pytest.approx(1 / 10 + 1 / 16)
        assert fit.standard_errors[1] == pytest.approx(np.sqrt(var), rel=1e-4)
        assert fit.lfc_se == pytest.approx(np.sqrt(var) / np.log(2), rel=1e-4)

    def test_all_zero_gene_is_indeterminate(self):
        fit = fit_nb_glm(np.zeros(4), np.ones(4), 0.1, X_2V2, gene="z")
        assert not fit.converged
        assert fit.indeterminate
        assert fit.status == "indeterminate"
        assert np.isnan(fit.log2_fold_change)
        assert fit.gene == "z"

    def test_missing_dispersion_gives_approximate_fold_change(self):
        fit = fit_nb_glm(np.array([10, 10, 40, 40]), np.ones(4), np.nan, X_2V2)
        assert not fit.converged
        assert fit.approximate
        assert fit.status == "approximate"
        assert fit.log2_fold_change == pytest.approx(2.0)
        assert np.isnan(fit.lfc_se)

    @pytest.mark.parametrize("y, sign", [([0, 0, 50, 50], 1), ([500, 480, 0, 0], -1)])
    def test_zero_group_converges_to_large_fold_change(self, y, sign):
        fit = fit_nb_glm(np.array(y), np.ones(4), 0.1, X_2V2)
        assert fit.converged
        assert sign * fit.log2_fold_change > 10
        assert np.abs(fit.coefficients[1]) < MAX_ABS_COEF
        assert np.isfinite(fit.lfc_se) and fit.lfc_se > 0

    def test_zero_group_approximate_fold_change_is_capped(self):
        fit = fit_nb_glm(np.array([0, 0, 40, 40]), np.ones(4), np.nan, X_2V2)
        assert fit.status == "approximate"
        assert fit.log2_fold_change == pytest.approx(MAX_ABS_COEF / LN2)

    def test_coef_index_bounds(self):
        with pytest.raises(ValueError):
            fit_nb_glm(np.array([10, 40]), np.ones(2), 0.1, X_1V1, coef_index=2)

    def test_initial_coefficients_match_group_means(self):
        beta = initial_coefficients(np.array([10.0, 10.0, 40.0, 40.0]), np.ones(4), X_2V2)
        np.testing.assert_allclose(beta, [np.log(10.0), np.log(4.0)])


class TestFitNbGlms:

    def test_failures_recorded(self):
        counts = np.array([[10, 10, 40, 40], [0, 0, 0, 0], [5, 7, 6, 4]])
        fits, failures = fit_nb_glms(counts, np.ones(4), np.full(3, 0.1), X_2V2,
                                     genes=["a", "z", "b"])
        assert [f.gene for f in fits] == ["a", "z", "b"]
        assert [f.gene for f in failures] == ["z"]
        assert failures[0].stage == "glm"

    def test_threads_preserve_order_and_values(self, simulated):
        cm, _ = simulated
        X = np.column_stack([np.ones(6), np.repeat([0.0, 1.0], 3)])
        disp = np.full(cm.n_genes, 0.01)
        serial, _ = fit_nb_glms(cm.values, np.ones(6), disp, X, genes=cm.genes, n_jobs=1)
        threaded, _ = fit_nb_glms(cm.values, np.ones(6), disp, X, genes=cm.genes, n_jobs=4)
        assert [f.gene for f in threaded] == list(cm.genes)
        np.testing.assert_array_equal(
            [f.log2_fold_change for f in serial], [f.log2_fold_change for f in threaded]
        )

    def test_shape_checks(self):
        with pytest.raises(ValueError):
            fit_nb_glms(np.ones((2, 4)), np.ones(3), np.full(2, 0.1), X_2V2)
        with pytest.raises(ValueError):
            fit_nb_glms(np.ones((2, 4)), np.ones(4), np.full(3, 0.1), X_2V2)
