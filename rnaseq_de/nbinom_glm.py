"""
Negative binomial GLM fitting by iteratively reweighted least squares.

Each gene is fitted independently with a log link, its final dispersion
held fixed and ``log(size_factor)`` as an offset. Standard errors come from
the inverse Fisher information at convergence.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .exceptions import FitConvergenceFailure
from .utils import map_genes

logger = logging.getLogger(__name__)

LN2 = np.log(2.0)
MIN_MU = 1e-8
# |coefficient| beyond 30 log2 units is treated as divergence
MAX_ABS_COEF = 30.0 * LN2
# ridge on non-intercept coefficients keeps on/off genes finite
RIDGE_LAMBDA = 1e-6


@dataclass(frozen=True)
class FitResult:
    """Per-gene GLM fit.

    ``coefficients`` and ``standard_errors`` are on the natural-log scale;
    ``log2_fold_change`` and ``lfc_se`` refer to the tested coefficient on
    the log2 scale. When the fit did not converge, ``log2_fold_change`` is
    the ratio of raw group means (``approximate=True``) or NaN.
    """

    gene: str
    coefficients: np.ndarray
    standard_errors: np.ndarray
    coef_index: int
    log2_fold_change: float
    lfc_se: float
    converged: bool
    approximate: bool = False
    iterations: int = 0
    reason: Optional[str] = None

    @property
    def indeterminate(self):
        return not self.converged

    @property
    def status(self):
        if self.converged:
            return "converged"
        return "approximate" if self.approximate else "indeterminate"


def initial_coefficients(y, size_factors, X):
    """
    Method-of-moments start: least squares of log group means of normalized counts.
    """
    norm = y / size_factors
    _, labels = np.unique(X, axis=0, return_inverse=True)
    labels = np.asarray(labels).ravel()
    target = np.empty_like(norm)
    for g in np.unique(labels):
        mask = labels == g
        target[mask] = norm[mask].mean()
    # floor empty groups so the start stays finite
    floor = 0.1 / np.mean(size_factors)
    beta, *_ = np.linalg.lstsq(X, np.log(np.maximum(target, floor)), rcond=None)
    return beta


def irls_nb(y, size_factors, dispersion, X, beta0=None, max_iter=100, tol=1e-8):
    """
    IRLS for a log-link NB GLM with known dispersion and offset ``log(size_factors)``.

    A small ridge penalty ``RIDGE_LAMBDA`` on the non-intercept coefficients
    gives a finite optimum when one group has only zero counts.

    Returns
    -------
    beta : np.ndarray
        Coefficients (natural-log scale).
    se : np.ndarray
        Standard errors, ``sqrt(diag((X^T W X + ridge)^-1))``.
    iterations : int
    reason : str or None
        None on convergence, otherwise why the fit stopped.
    """
    y = np.asarray(y, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    X = np.asarray(X, dtype=float)
    alpha = float(dispersion)
    offset = np.log(sf)

    beta = initial_coefficients(y, sf, X) if beta0 is None else np.asarray(beta0, dtype=float)
    nan = np.full(X.shape[1], np.nan)
    ridge = np.diag(np.r_[0.0, np.full(X.shape[1] - 1, RIDGE_LAMBDA)])

    for it in range(1, max_iter + 1):
        eta = X @ beta + offset
        mu = np.maximum(np.exp(eta), MIN_MU)
        w = mu / (1.0 + alpha * mu)
        z = eta - offset + (y - mu) / mu

        XtW = X.T * w
        try:
            beta_new = np.linalg.solve(XtW @ X + ridge, XtW @ z)
        except np.linalg.LinAlgError:
            return beta, nan, it, "singular information matrix"

        if not np.all(np.isfinite(beta_new)):
            return beta, nan, it, "non-finite coefficients"
        if np.max(np.abs(beta_new)) > MAX_ABS_COEF:
            return beta_new, nan, it, "coefficient diverged"

        delta = np.max(np.abs(beta_new - beta))
        beta = beta_new
        if delta < tol:
            break
    else:
        return beta, nan, max_iter, f"no convergence in {max_iter} iterations"

    mu = np.maximum(np.exp(X @ beta + offset), MIN_MU)
    w = mu / (1.0 + alpha * mu)
    try:
        cov = np.linalg.inv((X.T * w) @ X + ridge)
    except np.linalg.LinAlgError:
        return beta, nan, it, "singular information matrix"
    se = np.sqrt(np.diag(cov))
    if not np.all(np.isfinite(se)):
        return beta, nan, it, "non-finite standard errors"
    return beta, se, it, None


def approximate_log2_fold_change(y, size_factors, X, coef_index):
    """
    log2 ratio of raw group means (tested vs reference).

    Capped at +/-30 when exactly one group mean is zero; NaN when both are.
    """
    norm = np.asarray(y, dtype=float) / np.asarray(size_factors, dtype=float)
    others = np.delete(X, [0, coef_index], axis=1)
    ref = (X[:, coef_index] == 0) & np.all(others == 0, axis=1)
    test = X[:, coef_index] == 1
    if not ref.any() or not test.any():
        return np.nan
    m_ref, m_test = norm[ref].mean(), norm[test].mean()
    if m_ref <= 0 and m_test <= 0:
        return np.nan
    cap = MAX_ABS_COEF / LN2
    if m_ref <= 0:
        return cap
    if m_test <= 0:
        return -cap
    return float(np.clip(np.log2(m_test / m_ref), -cap, cap))


def fit_nb_glm(y, size_factors, dispersion, design_matrix, coef_index=1, gene="gene",
               max_iter=100, tol=1e-8):
    """
    Fit one gene.

    Parameters
    ----------
    y : np.ndarray
        Raw counts for the gene (samples,).
    size_factors : np.ndarray
        Per-sample size factors.
    dispersion : float
        Final dispersion; NaN means no usable dispersion and the gene is
        not fitted.
    design_matrix : np.ndarray
        Design matrix (samples x parameters) with an intercept column first.
    coef_index : int
        Tested coefficient.

    Returns
    -------
    FitResult
    """
    y = np.asarray(y, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    X = np.asarray(design_matrix, dtype=float)
    P = X.shape[1]
    if coef_index < 1 or coef_index >= P:
        raise ValueError("coef_index out of bounds")

    def unfitted(reason, beta=None, iterations=0):
        lfc = np.nan if y.sum() == 0 else approximate_log2_fold_change(y, sf, X, coef_index)
        return FitResult(
            gene=gene,
            coefficients=np.full(P, np.nan) if beta is None else beta,
            standard_errors=np.full(P, np.nan),
            coef_index=coef_index,
            log2_fold_change=lfc,
            lfc_se=np.nan,
            converged=False,
            approximate=bool(np.isfinite(lfc)),
            iterations=iterations,
            reason=reason,
        )

    if y.sum() == 0:
        return unfitted("all counts are zero")
    if not np.isfinite(dispersion) or dispersion <= 0:
        return unfitted("no usable dispersion")

    beta, se, iterations, reason = irls_nb(
        y, sf, dispersion, X, max_iter=max_iter, tol=tol
    )
    if reason is not None:
        return unfitted(reason, beta=beta, iterations=iterations)

    return FitResult(
        gene=gene,
        coefficients=beta,
        standard_errors=se,
        coef_index=coef_index,
        log2_fold_change=float(beta[coef_index] / LN2),
        lfc_se=float(se[coef_index] / LN2),
        converged=True,
        iterations=iterations,
    )


def fit_nb_glms(counts, size_factors, dispersions, design_matrix, coef_index=1,
                genes=None, max_iter=100, tol=1e-8, n_jobs=1):
    """
    Fit every gene, optionally on a thread pool.

    Returns
    -------
    fits : list of FitResult
        In gene order.
    failures : list of FitConvergenceFailure
        Genes whose fit did not converge (or could not be attempted).
    """
    Y = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    disp = np.asarray(dispersions, dtype=float)
    X = np.asarray(design_matrix, dtype=float)
    G, S = Y.shape

    if X.shape[0] != S:
        raise ValueError("design_matrix must have same number of rows as samples")
    if sf.ndim != 1 or sf.shape[0] != S:
        raise ValueError("size_factors length must equal number of samples")
    if disp.shape[0] != G:
        raise ValueError("dispersions length must equal number of genes")
    if genes is None:
        genes = [f"gene_{i}" for i in range(G)]

    logger.info("Fitting NB GLM for %d genes...", G)

    def _fit(i):
        return fit_nb_glm(
            Y[i], sf, disp[i], X, coef_index=coef_index, gene=str(genes[i]),
            max_iter=max_iter, tol=tol,
        )

    fits = map_genes(_fit, range(G), n_jobs=n_jobs)
    failures = [
        FitConvergenceFailure(gene=f.gene, reason=f.reason, iterations=f.iterations)
        for f in fits if not f.converged
    ]
    if failures:
        logger.warning("GLM fit did not converge for %d genes", len(failures))
    return fits, failures
