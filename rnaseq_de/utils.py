"""
Utility functions shared by the pipeline stages.

Normalization by size factors, per-group means of normalized counts and
the worker-pool helper used by the per-gene stages.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd


def normalize_counts(counts, size_factors):
    """
    Normalize counts by size factors.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (genes x samples).
    size_factors : np.ndarray
        Size factors for each sample.

    Returns
    -------
    np.ndarray or pd.DataFrame
        Normalized counts with same shape as input.

    Examples
    --------
    >>> import numpy as np
    >>> counts = np.array([[100, 200], [50, 100], [25, 50]])
    >>> normalize_counts(counts, np.array([0.5, 1.0]))[0]
    array([200., 200.])
    """
    is_df = isinstance(counts, pd.DataFrame)
    if is_df:
        index = counts.index
        columns = counts.columns
        counts = counts.values

    counts = np.asarray(counts, dtype=float)
    size_factors = np.asarray(size_factors, dtype=float)

    if size_factors.ndim != 1 or size_factors.shape[0] != counts.shape[-1]:
        raise ValueError("size_factors length must equal number of samples")
    if np.any(~np.isfinite(size_factors)) or np.any(size_factors <= 0):
        raise ValueError("size_factors must be positive and finite")

    normalized = counts / size_factors

    if is_df:
        return pd.DataFrame(normalized, index=index, columns=columns)
    return normalized


def geometric_mean(x):
    """Geometric mean of positive values."""
    x = np.asarray(x, dtype=float)
    return float(np.exp(np.mean(np.log(x))))


def group_means(norm_counts, labels, levels):
    """
    Mean normalized count of each gene within each group.

    Parameters
    ----------
    norm_counts : np.ndarray
        Normalized counts (genes x samples).
    labels : array-like
        Group label per sample.
    levels : sequence
        Group labels, defines the column order of the result.

    Returns
    -------
    np.ndarray
        Means (genes x len(levels)).
    """
    norm_counts = np.atleast_2d(np.asarray(norm_counts, dtype=float))
    labels = np.asarray(labels)
    out = np.empty((norm_counts.shape[0], len(levels)))
    for k, level in enumerate(levels):
        mask = labels == level
        out[:, k] = norm_counts[:, mask].mean(axis=1)
    return out


def map_genes(func, items, n_jobs=1):
    """
    Apply ``func`` to every item, optionally on a thread pool.

    Results come back in input order regardless of completion order, so
    callers can address them by gene index.

    Parameters
    ----------
    func : callable
        Pure per-gene function.
    items : iterable
        Per-gene arguments (typically gene indices).
    n_jobs : int, default 1
        Worker threads. 1 runs serially in the calling thread.

    Returns
    -------
    list
    """
    items = list(items)
    if n_jobs <= 1 or len(items) < 2:
        return [func(item) for item in items]

    with ThreadPoolExecutor(max_workers=n_jobs) as pool:
        return list(pool.map(func, items))
