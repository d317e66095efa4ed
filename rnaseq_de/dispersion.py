"""
Negative binomial dispersion estimation with empirical Bayes shrinkage.

Three steps:

1. Gene-wise maximum likelihood estimates of the dispersion, maximizing
   the Cox-Reid adjusted profile likelihood by Newton's method in
   log-dispersion space.
2. A parametric trend ``alpha(mu) = a / mu + b`` fitted with a gamma-family
   GLM (identity link) across genes.
3. Shrinkage of each gene-wise estimate toward the trend in log space. Genes
   far above the trend keep their gene-wise value.

References:
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
    - Cox DR, Reid N (1987). Parameter orthogonality and approximate
      conditional inference. JRSS B 49:1-39
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import ClassVar, List, Optional, Tuple

import numpy as np
import statsmodels.api as sm
from scipy.special import digamma, gammaln, polygamma
from scipy.stats import median_abs_deviation
from statsmodels.tools.sm_exceptions import DomainWarning

from .exceptions import ConvergenceFailure
from .utils import group_means, map_genes

logger = logging.getLogger(__name__)

MIN_MU = 1e-8
MIN_TREND_GENES = 3


# --- Per-gene dispersion variants ---


@dataclass(frozen=True)
class ShrunkDispersion:
    """Gene-wise estimate pulled toward the trend."""

    raw: float
    trend: float
    value: float
    weight: float
    status: ClassVar[str] = "shrunk"


@dataclass(frozen=True)
class OutlierDispersion:
    """Gene-wise estimate far above the trend, kept unshrunk."""

    raw: float
    trend: float
    value: float
    status: ClassVar[str] = "outlier"


@dataclass(frozen=True)
class DefaultDispersion:
    """Fixed dispersion used when no residual degrees of freedom exist."""

    value: float
    status: ClassVar[str] = "default"


@dataclass(frozen=True)
class FailedDispersion:
    """No usable dispersion for this gene."""

    reason: str
    value: float = float("nan")
    status: ClassVar[str] = "failed"


@dataclass
class DispersionEstimates:
    """Output of :func:`estimate_dispersions`."""

    genes: Tuple[str, ...]
    base_means: np.ndarray
    gene_wise: np.ndarray
    trend: np.ndarray
    final: List[object]
    trend_coefficients: Tuple[float, float]
    parametric_trend: bool
    prior_var: float
    failures: List[ConvergenceFailure] = field(default_factory=list)

    @property
    def values(self):
        """Final dispersion per gene (NaN where estimation failed)."""
        return np.array([d.value for d in self.final], dtype=float)

    @property
    def status(self):
        return [d.status for d in self.final]

    @property
    def is_outlier(self):
        return np.array([isinstance(d, OutlierDispersion) for d in self.final])


# --- 1. Gene-wise estimates (Cox-Reid adjusted profile likelihood) ---


def nbinom_loglike(counts, mu, alpha):
    """
    Log-likelihood of NBinom(mu, alpha), dropping the ``log(y!)`` term.
    """
    r = 1.0 / alpha
    return np.sum(
        gammaln(counts + r) - gammaln(r)
        - r * np.log1p(mu / r)
        + counts * (np.log(mu) - np.log(r + mu))
    )


def _loglike_derivatives(y, mu, alpha):
    """First and second derivatives of the NB log-likelihood w.r.t. log(alpha)."""
    r = 1.0 / alpha
    rm = r + mu
    d_r = np.sum(digamma(y + r) - digamma(r) - np.log1p(mu / r) - (y - mu) / rm)
    d2_r = np.sum(
        polygamma(1, y + r) - polygamma(1, r) + mu / (r * rm) + (y - mu) / rm ** 2
    )
    # chain rule for theta = log(alpha), r = exp(-theta)
    return -r * d_r, r * r * d2_r + r * d_r


def _cox_reid(mu, alpha, X):
    """
    Cox-Reid term -0.5 * log det(X^T W X) and its derivatives w.r.t. log(alpha).
    """
    denom = 1.0 + alpha * mu
    w = mu / denom
    w_a = -mu ** 2 / denom ** 2
    w_aa = 2.0 * mu ** 3 / denom ** 3

    XtWX = (X.T * w) @ X
    sign, logdet = np.linalg.slogdet(XtWX)
    if sign <= 0:
        return -np.inf, np.nan, np.nan

    A_inv = np.linalg.inv(XtWX)
    B1 = A_inv @ ((X.T * w_a) @ X)
    B2 = A_inv @ ((X.T * w_aa) @ X)
    f_a = np.trace(B1)
    f_aa = np.trace(B2) - np.trace(B1 @ B1)

    f_t = alpha * f_a
    f_tt = alpha * f_a + alpha ** 2 * f_aa
    return -0.5 * logdet, -0.5 * f_t, -0.5 * f_tt


def cox_reid_objective(theta, y, mu, X):
    """
    Adjusted profile log-likelihood at ``theta = log(alpha)``.

    Returns
    -------
    (float, float, float)
        Value, first and second derivative with respect to ``theta``.
    """
    alpha = np.exp(theta)
    ll = nbinom_loglike(y, mu, alpha)
    d1, d2 = _loglike_derivatives(y, mu, alpha)
    cr, cr1, cr2 = _cox_reid(mu, alpha, X)
    return ll + cr, d1 + cr1, d2 + cr2


def fit_gene_dispersion(y, mu, X, init, min_disp=1e-8, max_disp=10.0,
                        max_iter=100, tol=1e-6):
    """
    Maximize the Cox-Reid adjusted likelihood for one gene.

    Newton's method on ``log(alpha)`` with step halving; steps are capped at
    one log unit and the estimate is kept inside ``[min_disp, max_disp]``.

    Returns
    -------
    (float or None, int, str or None)
        Estimate (None on failure), iterations used, failure reason.
    """
    lo, hi = np.log(min_disp), np.log(max_disp)
    theta = float(np.clip(np.log(init), lo, hi))

    obj, g1, g2 = cox_reid_objective(theta, y, mu, X)
    if not (np.isfinite(obj) and np.isfinite(g1) and np.isfinite(g2)):
        return None, 0, "non-finite likelihood at starting value"

    for it in range(1, max_iter + 1):
        if g2 < 0:
            step = -g1 / g2
        else:
            step = np.sign(g1) * min(abs(g1), 1.0)
        step = float(np.clip(step, -1.0, 1.0))

        while True:
            theta_new = float(np.clip(theta + step, lo, hi))
            obj_new, g1_new, g2_new = cox_reid_objective(theta_new, y, mu, X)
            if np.isfinite(obj_new) and obj_new >= obj - 1e-12:
                break
            step /= 2.0
            if abs(step) < tol / 2.0:
                # no ascent direction at this resolution
                return float(np.clip(np.exp(theta), min_disp, max_disp)), it, None

        delta = theta_new - theta
        theta, obj, g1, g2 = theta_new, obj_new, g1_new, g2_new
        if not (np.isfinite(g1) and np.isfinite(g2)):
            return None, it, "non-finite likelihood derivatives"
        if abs(delta) < tol:
            return float(np.clip(np.exp(theta), min_disp, max_disp)), it, None

    return None, max_iter, f"no convergence in {max_iter} iterations"


def moments_dispersion(norm_counts, labels, min_disp=1e-8):
    """
    Pooled within-group method-of-moments dispersion, used as a starting value.
    """
    norm_counts = np.asarray(norm_counts, dtype=float)
    labels = np.asarray(labels)
    G = norm_counts.shape[0]

    alpha_sum = np.zeros(G)
    weight_sum = np.zeros(G)
    for g in np.unique(labels):
        mask_g = labels == g
        n_g = np.sum(mask_g)
        if n_g <= 1:
            continue
        sub = norm_counts[:, mask_g]
        mean_g = sub.mean(axis=1)
        var_g = sub.var(axis=1, ddof=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            a = (var_g - mean_g) / mean_g ** 2
        a = np.where(np.isfinite(a), np.maximum(a, min_disp), min_disp)
        alpha_sum += a * (n_g - 1)
        weight_sum += n_g - 1

    out = np.full(G, min_disp)
    valid = weight_sum > 0
    out[valid] = alpha_sum[valid] / weight_sum[valid]
    return out


def expected_means(counts, size_factors, labels):
    """Fitted means under the group model: group mean of normalized counts times size factor."""
    counts = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    labels = np.asarray(labels)
    levels = np.unique(labels)
    means = group_means(counts / sf, labels, levels)

    mu_hat = np.zeros_like(counts)
    for k, level in enumerate(levels):
        mask = labels == level
        mu_hat[:, mask] = means[:, k][:, None] * sf[mask]
    return np.maximum(mu_hat, MIN_MU)


def estimate_gene_wise_dispersion(counts, size_factors, design_matrix, genes=None,
                                  min_disp=1e-8, max_disp=None, max_iter=100,
                                  tol=1e-6, n_jobs=1):
    """
    Step 1: maximum likelihood dispersion for each gene.

    Parameters
    ----------
    counts : np.ndarray
        Raw counts (genes x samples).
    size_factors : np.ndarray
        Per-sample size factors.
    design_matrix : np.ndarray
        Design matrix (samples x parameters). Samples sharing a row
        form one group.
    genes : sequence of str, optional
        Gene identifiers used in failure records.
    min_disp, max_disp : float
        Bounds on the estimate. ``max_disp`` defaults to ``max(10, n_samples)``.
    max_iter : int
        Newton iteration cap.
    tol : float
        Convergence tolerance on the change of ``log(alpha)``.
    n_jobs : int
        Worker threads.

    Returns
    -------
    base_means : np.ndarray
        Mean normalized count per gene.
    disp_gw : np.ndarray
        Gene-wise estimate, NaN where estimation failed.
    failures : list of ConvergenceFailure
    """
    counts = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    X = np.asarray(design_matrix, dtype=float)
    G, S = counts.shape
    if genes is None:
        genes = [f"gene_{i}" for i in range(G)]
    if max_disp is None:
        max_disp = max(10.0, float(S))

    _, labels = np.unique(X, axis=0, return_inverse=True)
    labels = np.asarray(labels).ravel()

    norm_counts = counts / sf
    base_means = norm_counts.mean(axis=1)
    mu_hat = expected_means(counts, sf, labels)
    init = np.clip(moments_dispersion(norm_counts, labels, min_disp), 0.01, max_disp)

    logger.info("Estimating gene-wise dispersions for %d genes...", G)

    def _fit(i):
        if counts[i].sum() == 0:
            return None, 0, "all counts are zero"
        return fit_gene_dispersion(
            counts[i], mu_hat[i], X, init[i],
            min_disp=min_disp, max_disp=max_disp, max_iter=max_iter, tol=tol,
        )

    fits = map_genes(_fit, range(G), n_jobs=n_jobs)

    disp_gw = np.full(G, np.nan)
    failures = []
    for i, (alpha, iterations, reason) in enumerate(fits):
        if alpha is None or not np.isfinite(alpha):
            failures.append(ConvergenceFailure(
                gene=str(genes[i]), reason=reason or "non-finite estimate",
                iterations=iterations,
            ))
        else:
            disp_gw[i] = alpha

    if failures:
        logger.warning("Dispersion estimation failed for %d genes", len(failures))
    return base_means, disp_gw, failures


# --- 2. Trend fit ---


def fit_dispersion_trend(base_means, disp_gw, min_disp=1e-8, max_rounds=10):
    """
    Fit the parametric trend ``alpha = a / mu + b``.

    Gamma-family GLM with identity link on ``[1, 1/mu]``, refitted after
    dropping genes whose gene-wise / fitted ratio is outside (1e-4, 15)
    until the coefficients stabilize. Falls back to a constant trend
    (mean gene-wise dispersion) when too few genes are usable or the fit
    gives non-positive coefficients.

    Returns
    -------
    trend_fn : callable
        Maps mean normalized counts to trend dispersion.
    coefs : (float, float)
        ``(a, b)``; ``a == 0`` for the constant fallback.
    parametric : bool
        False when the constant fallback was used.
    """
    base_means = np.asarray(base_means, dtype=float)
    disp_gw = np.asarray(disp_gw, dtype=float)

    usable = np.isfinite(disp_gw) & (disp_gw >= 100 * min_disp) & (base_means > 0)

    def constant(reason):
        if usable.any():
            mean_disp = float(np.mean(disp_gw[usable]))
        elif np.isfinite(disp_gw).any():
            mean_disp = float(np.nanmean(disp_gw))
        else:
            mean_disp = float("nan")
        logger.warning("Using constant dispersion trend %.4g (%s)", mean_disp, reason)

        def const_fn(mu):
            return np.full_like(np.asarray(mu, dtype=float), max(mean_disp, min_disp))

        return const_fn, (0.0, mean_disp), False

    if usable.sum() < MIN_TREND_GENES:
        return constant(f"only {usable.sum()} usable genes")

    X_all = np.column_stack([np.ones_like(base_means), 1.0 / np.maximum(base_means, MIN_MU)])
    use = usable.copy()
    params = None

    logger.info("Fitting dispersion trend on %d genes...", use.sum())
    for _ in range(max_rounds):
        if use.sum() < MIN_TREND_GENES:
            return constant("too few genes after residual filtering")

        start = params
        if start is None:
            start = np.array([np.mean(disp_gw[use]), 1.0])

        try:
            with warnings.catch_warnings():
                # identity is not the canonical gamma link
                warnings.simplefilter("ignore", DomainWarning)
                model = sm.GLM(
                    disp_gw[use], X_all[use],
                    family=sm.families.Gamma(link=sm.families.links.Identity()),
                )
                new_params = model.fit(start_params=start).params
        except (ValueError, np.linalg.LinAlgError) as exc:
            return constant(f"gamma GLM failed: {exc}")

        if not np.all(np.isfinite(new_params)) or np.any(new_params <= 0):
            return constant("non-positive trend coefficients")

        fitted = X_all @ new_params
        ratio = disp_gw / fitted
        use = usable & (ratio > 1e-4) & (ratio < 15)

        converged = params is not None and np.sum(np.log(new_params / params) ** 2) < 1e-6
        params = new_params
        if converged:
            break

    b, a = params
    logger.info("Trend coefficients: a=%.4f, b=%.4f", a, b)

    def trend_fn(mu):
        mu = np.maximum(np.asarray(mu, dtype=float), MIN_MU)
        return np.maximum(a / mu + b, min_disp)

    return trend_fn, (float(a), float(b)), True


# --- 3. Shrinkage ---


def dispersion_prior_variance(disp_gw, disp_trend, degrees_of_freedom, min_disp=1e-8):
    """
    Variance of log dispersions around the trend.

    Returns
    -------
    var_log_disp : float
        Robust (MAD) variance of log residuals.
    prior_var : float
        ``max(var_log_disp - trigamma(df / 2), 0.25)``.
    """
    usable = np.isfinite(disp_gw) & (disp_gw >= 100 * min_disp)
    resid = np.log(disp_gw[usable]) - np.log(disp_trend[usable])
    resid = resid[np.isfinite(resid)]
    if resid.size >= 2:
        var_log_disp = float(median_abs_deviation(resid, scale="normal") ** 2)
    else:
        var_log_disp = 0.0
    var_obs = float(polygamma(1, degrees_of_freedom / 2.0))
    return var_log_disp, max(var_log_disp - var_obs, 0.25)


def shrink_dispersions(base_means, disp_gw, disp_trend_fn, degrees_of_freedom,
                       outlier_factor=None, min_disp=1e-8, reasons=None):
    """
    Shrink gene-wise dispersions toward the trend (empirical Bayes).

    In log space the final value is ``w * log(raw) + (1 - w) * log(trend)``
    with ``w = prior_var / (prior_var + trigamma(df / 2))``. A gene whose
    raw estimate exceeds ``trend * outlier_factor`` keeps the raw value.

    Parameters
    ----------
    base_means : np.ndarray
        Mean normalized counts.
    disp_gw : np.ndarray
        Gene-wise estimates (NaN for failed genes).
    disp_trend_fn : callable
        Trend function from :func:`fit_dispersion_trend`.
    degrees_of_freedom : int
        Residual degrees of freedom (samples - coefficients), > 0.
    outlier_factor : float, optional
        Multiplicative outlier threshold. Defaults to two robust standard
        deviations of the log residuals, ``exp(2 * sd)``.
    reasons : dict, optional
        Gene index -> failure reason, used for the failed variants.

    Returns
    -------
    final : list
        One dispersion variant per gene.
    disp_trend : np.ndarray
    prior_var : float
    """
    base_means = np.asarray(base_means, dtype=float)
    disp_gw = np.asarray(disp_gw, dtype=float)
    reasons = reasons or {}
    if degrees_of_freedom <= 0:
        raise ValueError("degrees_of_freedom must be positive for shrinkage")

    disp_trend = disp_trend_fn(base_means)
    var_log_disp, prior_var = dispersion_prior_variance(
        disp_gw, disp_trend, degrees_of_freedom, min_disp
    )
    var_obs = float(polygamma(1, degrees_of_freedom / 2.0))
    weight = prior_var / (prior_var + var_obs)

    if outlier_factor is None:
        outlier_factor = float(np.exp(2.0 * np.sqrt(max(var_log_disp, prior_var))))

    logger.info(
        "Shrinking dispersions: prior var %.4f, weight %.3f, outlier factor %.3f",
        prior_var, weight, outlier_factor,
    )

    final = []
    for i in range(len(disp_gw)):
        raw = disp_gw[i]
        if not np.isfinite(raw):
            final.append(FailedDispersion(reason=reasons.get(i, "no gene-wise estimate")))
            continue
        trend = float(disp_trend[i])
        if raw > trend * outlier_factor:
            final.append(OutlierDispersion(raw=float(raw), trend=trend, value=float(raw)))
        else:
            log_map = weight * np.log(raw) + (1.0 - weight) * np.log(trend)
            final.append(ShrunkDispersion(
                raw=float(raw), trend=trend, value=float(np.exp(log_map)), weight=weight,
            ))

    return final, disp_trend, prior_var


# --- MAIN ENTRY POINT ---


def estimate_dispersions(counts, size_factors, design_matrix, genes=None,
                         min_disp=1e-8, max_iter=100, tol=1e-6,
                         outlier_factor=None, default_dispersion=0.1, n_jobs=1):
    """
    Full dispersion pipeline: gene-wise MLE, trend, shrinkage.

    With no residual degrees of freedom (e.g. one sample per group) no
    gene-wise estimate is possible; every gene that is not all-zero gets
    ``DefaultDispersion(default_dispersion)``.

    Returns
    -------
    DispersionEstimates
    """
    counts = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    X = np.asarray(design_matrix, dtype=float)
    G, S = counts.shape
    if genes is None:
        genes = [f"gene_{i}" for i in range(G)]
    genes = tuple(str(g) for g in genes)

    df = S - X.shape[1]
    base_means = (counts / sf).mean(axis=1)

    if df <= 0:
        logger.warning(
            "No residual degrees of freedom (%d samples, %d coefficients); "
            "using fixed dispersion %.3g", S, X.shape[1], default_dispersion,
        )
        failures = []
        final = []
        for i in range(G):
            if counts[i].sum() == 0:
                failures.append(ConvergenceFailure(gene=genes[i], reason="all counts are zero"))
                final.append(FailedDispersion(reason="all counts are zero"))
            else:
                final.append(DefaultDispersion(value=float(default_dispersion)))
        return DispersionEstimates(
            genes=genes,
            base_means=base_means,
            gene_wise=np.full(G, np.nan),
            trend=np.full(G, float(default_dispersion)),
            final=final,
            trend_coefficients=(0.0, float(default_dispersion)),
            parametric_trend=False,
            prior_var=float("nan"),
            failures=failures,
        )

    # 1. Gene-wise estimates
    base_means, disp_gw, failures = estimate_gene_wise_dispersion(
        counts, sf, X, genes=genes, min_disp=min_disp,
        max_iter=max_iter, tol=tol, n_jobs=n_jobs,
    )

    # 2. Trend fit (barrier: needs every gene-wise estimate)
    trend_fn, coefs, parametric = fit_dispersion_trend(base_means, disp_gw, min_disp=min_disp)

    # 3. Shrinkage
    index = {g: i for i, g in enumerate(genes)}
    reasons = {index[f.gene]: f.reason for f in failures}
    final, disp_trend, prior_var = shrink_dispersions(
        base_means, disp_gw, trend_fn, df,
        outlier_factor=outlier_factor, min_disp=min_disp, reasons=reasons,
    )

    return DispersionEstimates(
        genes=genes,
        base_means=base_means,
        gene_wise=disp_gw,
        trend=disp_trend,
        final=final,
        trend_coefficients=coefs,
        parametric_trend=parametric,
        prior_var=prior_var,
        failures=failures,
    )
