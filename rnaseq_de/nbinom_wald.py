"""
Wald tests and multiple-testing correction.

Turns per-gene GLM fits into the ranked differential expression table.
Genes without a converged fit have no p-value; they still count toward
the number of tests and receive the maximum adjusted p-value (1.0), so
the correction denominator always equals the number of genes reported.
"""

import logging

import numpy as np
import pandas as pd
from scipy.stats import norm

from .config import CorrectionMethod

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "baseMean",
    "log2FoldChange",
    "lfcSE",
    "stat",
    "pvalue",
    "padj",
    "significant",
    "dispersion",
    "dispersion_status",
    "fit_status",
]


def benjamini_hochberg(pvals):
    """
    Benjamini-Hochberg FDR correction.

    Parameters
    ----------
    pvals : array-like

    Returns
    -------
    padj : np.ndarray
    """
    pvals = np.asarray(pvals, dtype=float)
    m = pvals.size
    if m == 0:
        return pvals.copy()
    order = np.argsort(pvals, kind="mergesort")
    ranked_p = pvals[order]

    # compute adjusted p-values
    adj = ranked_p * m / (np.arange(1, m + 1))
    # enforce monotone non-decreasing when going backwards
    adj_rev = np.minimum.accumulate(adj[::-1])[::-1]

    padj = np.empty_like(adj_rev)
    padj[order] = np.clip(adj_rev, 0, 1)
    return padj


def bonferroni(pvals):
    """Bonferroni correction: ``min(1, p * m)``."""
    pvals = np.asarray(pvals, dtype=float)
    return np.minimum(pvals * pvals.size, 1.0)


def adjust_pvalues(pvals, method=CorrectionMethod.BENJAMINI_HOCHBERG):
    """
    Adjust p-values across all genes.

    NaN p-values (untestable genes) enter the correction as 1.0 and come
    out as 1.0, keeping the number of tests equal to the number of genes.
    """
    method = CorrectionMethod.parse(method)
    pvals = np.asarray(pvals, dtype=float)
    clean = np.where(np.isfinite(pvals), pvals, 1.0)

    if method is CorrectionMethod.BONFERRONI:
        padj = bonferroni(clean)
    else:
        padj = benjamini_hochberg(clean)

    padj[~np.isfinite(pvals)] = 1.0
    return padj


def wald_pvalues(coef, se):
    """Wald statistic and two-sided normal p-value."""
    coef = np.asarray(coef, dtype=float)
    se = np.asarray(se, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        stat = np.where(se > 0, coef / se, np.nan)
    pvals = 2.0 * norm.sf(np.abs(stat))
    return stat, pvals


def sort_results(table):
    """
    Order by adjusted p-value, then raw p-value, then gene identifier.

    Missing values sort last. The gene id tie-break makes the ordering
    total, so repeated runs produce the same table.
    """
    frame = table.reset_index()
    gene_col = frame.columns[0]
    frame = frame.sort_values(
        by=["padj", "pvalue", gene_col],
        ascending=True,
        na_position="last",
        kind="mergesort",
    )
    return frame.set_index(gene_col)


def wald_test(fits, correction=CorrectionMethod.BENJAMINI_HOCHBERG, alpha=0.05,
              lfc_threshold=0.0, base_means=None, dispersions=None,
              dispersion_status=None):
    """
    Wald test per gene, correction across genes and the sorted result table.

    Parameters
    ----------
    fits : list of FitResult
        One per gene.
    correction : CorrectionMethod or str
        ``"benjamini_hochberg"`` or ``"bonferroni"``.
    alpha : float
        Adjusted p-value cutoff for the significance flag.
    lfc_threshold : float
        Minimum absolute log2 fold change for the significance flag.
    base_means, dispersions : array-like, optional
        Extra per-gene columns.
    dispersion_status : sequence of str, optional
        Dispersion variant per gene.

    Returns
    -------
    pd.DataFrame
        Indexed by gene, columns ``RESULT_COLUMNS``, sorted by
        :func:`sort_results`.
    """
    G = len(fits)
    genes = [f.gene for f in fits]
    converged = np.array([f.converged for f in fits], dtype=bool)

    coef = np.full(G, np.nan)
    se = np.full(G, np.nan)
    for i, f in enumerate(fits):
        if f.converged:
            coef[i] = f.coefficients[f.coef_index]
            se[i] = f.standard_errors[f.coef_index]

    stat, pvals = wald_pvalues(coef, se)
    pvals[~converged] = np.nan
    stat[~converged] = np.nan

    padj = adjust_pvalues(pvals, correction)
    lfc = np.array([f.log2_fold_change for f in fits], dtype=float)
    lfc_se = np.array([f.lfc_se for f in fits], dtype=float)

    significant = converged & (padj < alpha) & (np.abs(lfc) > lfc_threshold)

    logger.info(
        "Wald test: %d genes tested, %d without a converged fit, %d significant (%s)",
        G, int((~converged).sum()), int(significant.sum()),
        CorrectionMethod.parse(correction).value,
    )

    table = pd.DataFrame(
        {
            "baseMean": np.nan if base_means is None else np.asarray(base_means, dtype=float),
            "log2FoldChange": lfc,
            "lfcSE": lfc_se,
            "stat": stat,
            "pvalue": pvals,
            "padj": padj,
            "significant": significant,
            "dispersion": np.nan if dispersions is None else np.asarray(dispersions, dtype=float),
            "dispersion_status": (
                None if dispersion_status is None else list(dispersion_status)
            ),
            "fit_status": [f.status for f in fits],
        },
        index=pd.Index(genes, name="gene"),
    )
    return sort_results(table[RESULT_COLUMNS])
