import logging

import numpy as np
import pandas as pd

from .exceptions import NoEligibleGenesError

logger = logging.getLogger(__name__)


def log_geometric_means(counts, type="ratio"):
    """
    Per-gene log geometric mean used as the pseudo-reference sample.

    ``"ratio"`` gives -inf for any gene with a zero count; ``"poscounts"``
    averages the logs of positive counts over all samples and gives -inf
    only for all-zero genes.
    """
    counts = np.asarray(counts, dtype=float)

    if type == "ratio":
        with np.errstate(divide="ignore", invalid="ignore"):
            log_geomeans = np.mean(np.log(counts), axis=1)
        log_geomeans[np.any(counts <= 0, axis=1)] = -np.inf

    elif type == "poscounts":
        lc = np.log(counts, where=(counts > 0), out=np.zeros_like(counts))
        log_geomeans = np.mean(lc, axis=1)
        all_zero = np.sum(counts, axis=1) == 0
        log_geomeans[all_zero] = -np.inf

    else:
        raise ValueError(f"Unknown size factor type: {type!r}")

    return log_geomeans


def estimate_size_factors_for_matrix(counts, type="ratio", loc_func=np.median):
    """
    Median-of-ratios size factors for a raw count matrix.

    Parameters
    ----------
    counts : np.ndarray
        2D (genes x samples) raw counts.
    type : {"ratio", "poscounts"}
        Reference construction. ``"ratio"`` only uses genes with a
        positive count in every sample.
    loc_func : function
        Location function, default median.

    Returns
    -------
    np.ndarray of size factors (length = num samples), geometric mean 1.

    Raises
    ------
    NoEligibleGenesError
        If no gene qualifies for the reference.
    """
    counts = np.asarray(counts, dtype=float)
    if counts.ndim != 2:
        raise ValueError("counts must be a 2D genes x samples array")
    G, S = counts.shape

    log_geomeans = log_geometric_means(counts, type=type)
    eligible = np.isfinite(log_geomeans)

    if not eligible.any():
        if type == "ratio":
            msg = "every gene contains at least one zero; cannot compute size factors"
        else:
            msg = "every gene has only zero counts; cannot compute size factors"
        raise NoEligibleGenesError(msg)

    logger.info("Size factors from %d of %d reference genes (%s)", eligible.sum(), G, type)

    size_factors = np.zeros(S)
    for j in range(S):
        c = counts[:, j]
        mask = eligible & (c > 0)
        if not mask.any():
            raise NoEligibleGenesError(
                f"sample {j} has no positive count among reference genes"
            )
        # per-sample median of log ratios
        vals = np.log(c[mask]) - log_geomeans[mask]
        size_factors[j] = np.exp(loc_func(vals))

    # normalize to geometric mean 1
    size_factors = size_factors / np.exp(np.mean(np.log(size_factors)))
    return size_factors


def estimate_size_factors(counts, type="ratio", loc_func=np.median):
    """
    Estimate per-sample size factors.

    Accepts a ``CountMatrix`` (returns a Series indexed by sample id in
    sample order), a DataFrame (Series indexed by its columns) or a raw
    ndarray (returns an ndarray).
    """
    from .count_matrix import CountMatrix

    if isinstance(counts, CountMatrix):
        sf = estimate_size_factors_for_matrix(counts.values, type=type, loc_func=loc_func)
        return pd.Series(sf, index=pd.Index(counts.sample_order(), name="sample"),
                         name="size_factor")

    if isinstance(counts, pd.DataFrame):
        sf = estimate_size_factors_for_matrix(counts.values, type=type, loc_func=loc_func)
        return pd.Series(sf, index=counts.columns, name="size_factor")

    return estimate_size_factors_for_matrix(counts, type=type, loc_func=loc_func)
