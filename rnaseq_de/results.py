"""
Results container and export for differential expression analysis.

A :class:`DEResults` bundles the sorted gene table with the run-level
artifacts (size factors, dispersion trend) and the per-gene failures
collected along the way.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = ["log2FoldChange", "lfcSE", "stat", "pvalue", "padj", "significant"]


@dataclass(frozen=True, eq=False)
class DEResults:
    """Output of one pipeline run.

    Attributes
    ----------
    table : pd.DataFrame
        One row per gene, indexed by gene id, sorted by adjusted p-value,
        then raw p-value, then gene id.
    size_factors : pd.Series
        Size factor per sample.
    reference_group, test_group : str
        The contrast; fold changes are test over reference.
    correction : str
        Multiple-testing correction applied.
    trend_coefficients : (float, float)
        ``(a, b)`` of the dispersion trend ``a / mean + b``.
    failures : list
        ``ConvergenceFailure`` and ``FitConvergenceFailure`` records.
    """

    table: pd.DataFrame
    size_factors: pd.Series
    reference_group: str
    test_group: str
    correction: str
    alpha: float
    lfc_threshold: float
    trend_coefficients: Tuple[float, float] = (np.nan, np.nan)
    failures: List[object] = field(default_factory=list)

    @property
    def significant(self):
        """Rows flagged significant."""
        return self.table[self.table["significant"]]

    @property
    def flagged_genes(self):
        """Genes with any per-gene failure, in table order."""
        failed = {f.gene for f in self.failures}
        return [g for g in self.table.index if g in failed]

    def failures_frame(self):
        """Per-gene failures as a DataFrame (gene, stage, reason, iterations)."""
        return pd.DataFrame(
            [
                {"gene": f.gene, "stage": f.stage, "reason": f.reason,
                 "iterations": f.iterations}
                for f in self.failures
            ],
            columns=["gene", "stage", "reason", "iterations"],
        )

    def failure_summary(self):
        """Count of flagged genes per stage and the flagged identifiers."""
        frame = self.failures_frame()
        return {
            "n_flagged": len(set(frame["gene"])),
            "by_stage": frame.groupby("stage")["gene"].nunique().to_dict(),
            "genes": self.flagged_genes,
        }

    def top(self, n=10):
        return self.table.head(n)

    def __len__(self):
        return len(self.table)


def summary(results, alpha=None, lfc_cutoff=None, quiet=False):
    """
    Summarize a results table.

    Parameters
    ----------
    results : DEResults or pd.DataFrame
        Results of a run.
    alpha : float, optional
        Adjusted p-value threshold; defaults to the run's.
    lfc_cutoff : float, optional
        Absolute log2 fold change threshold; defaults to the run's.
    quiet : bool, default False
        Do not print.

    Returns
    -------
    dict
        Summary statistics.
    """
    if isinstance(results, DEResults):
        result_df = results.table
        alpha = results.alpha if alpha is None else alpha
        lfc_cutoff = results.lfc_threshold if lfc_cutoff is None else lfc_cutoff
        n_flagged = results.failure_summary()["n_flagged"]
    else:
        result_df = results
        alpha = 0.05 if alpha is None else alpha
        lfc_cutoff = 0.0 if lfc_cutoff is None else lfc_cutoff
        n_flagged = None

    padj = result_df["padj"].values
    lfc = result_df["log2FoldChange"].values
    tested = np.isfinite(result_df["pvalue"].values)

    significant = tested & (padj < alpha) & (np.abs(lfc) > lfc_cutoff)
    up = significant & (lfc > 0)
    down = significant & (lfc < 0)

    summary_dict = {
        "total_genes": len(result_df),
        "genes_tested": int(tested.sum()),
        "significant": int(significant.sum()),
        "upregulated": int(up.sum()),
        "downregulated": int(down.sum()),
        "flagged": n_flagged,
        "alpha": alpha,
        "lfc_cutoff": lfc_cutoff,
    }

    if not quiet:
        print(f"\nDifferential Expression Summary")
        print(f"=" * 40)
        print(f"Total genes:        {summary_dict['total_genes']}")
        print(f"Genes tested:       {summary_dict['genes_tested']}")
        if n_flagged is not None:
            print(f"Flagged genes:      {n_flagged}")
        print(f"Significant (padj < {alpha}, |LFC| > {lfc_cutoff}): "
              f"{summary_dict['significant']}")
        print(f"  - Upregulated:    {summary_dict['upregulated']}")
        print(f"  - Downregulated:  {summary_dict['downregulated']}")

    return summary_dict


def write_results(results, path, sep="\t", columns=None):
    """
    Export the result table as delimited text, sorted by adjusted p-value.

    Parameters
    ----------
    results : DEResults or pd.DataFrame
    path : str or path-like
    sep : str, default tab
    columns : list of str, optional
        Columns to write after the gene id. Defaults to fold change,
        standard error, statistic, p-values and significance flag.
    """
    table = results.table if isinstance(results, DEResults) else results
    columns = EXPORT_COLUMNS if columns is None else list(columns)
    out = table[columns].copy()
    out.index.name = "gene"
    out.to_csv(path, sep=sep, na_rep="NA")
    logger.info("Wrote %d genes to %s", len(out), path)
    return path
