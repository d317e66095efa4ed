"""
CountMatrix container for raw RNA-seq counts.

Holds the raw integer counts (genes x samples) together with the group
label of each sample. The sample order fixed at construction is the index
used by every per-gene vector downstream (size factors, design matrix,
fitted means).

Instances are immutable: filtering returns a new CountMatrix.
"""

from collections.abc import Mapping
from numbers import Real

import numpy as np
import pandas as pd
from pandas.api.types import is_bool_dtype, is_numeric_dtype

from .exceptions import MalformedInputError


class CountMatrix:
    """
    Raw gene x sample count table with a sample -> group assignment.

    Parameters
    ----------
    counts : Mapping[str, Sequence[int]]
        Gene identifier -> raw counts, one per sample, in sample order.
    groups : Mapping[str, str]
        Sample identifier -> group label. Iteration order defines the
        sample order.

    Raises
    ------
    MalformedInputError
        If count vectors have inconsistent lengths, contain negative,
        non-integer or non-finite values, or if fewer than 2 distinct
        groups are present.

    Examples
    --------
    >>> cm = CountMatrix(
    ...     {"g1": [10, 12, 30, 28], "g2": [5, 4, 6, 5]},
    ...     {"s1": "ctrl", "s2": "ctrl", "s3": "treat", "s4": "treat"},
    ... )
    >>> cm.sample_order()
    ('s1', 's2', 's3', 's4')
    >>> cm.group_of("s3")
    'treat'
    """

    def __init__(self, counts, groups):
        if not isinstance(groups, Mapping):
            raise MalformedInputError("groups must be a mapping of sample id -> group label")
        if not isinstance(counts, Mapping):
            raise MalformedInputError("counts must be a mapping of gene id -> count vector")

        sample_ids = [str(s) for s in groups.keys()]
        n_samples = len(sample_ids)

        gene_ids = []
        rows = []
        for gene, vec in counts.items():
            vec = list(vec)
            if len(vec) != n_samples:
                raise MalformedInputError(
                    f"Gene {gene!r} has {len(vec)} counts, expected {n_samples} "
                    f"(one per sample)"
                )
            gene_ids.append(str(gene))
            rows.append(vec)

        bad = [gene for gene, vec in zip(gene_ids, rows) if not all(map(_is_number, vec))]
        if bad:
            raise MalformedInputError(f"Counts must be numeric; offending genes: {bad[:10]}")
        values = np.asarray(rows, dtype=float).reshape(len(rows), n_samples)

        frame = pd.DataFrame(
            _validate_counts(values),
            index=pd.Index(gene_ids, name="gene"),
            columns=pd.Index(sample_ids, name="sample"),
        )
        group_series = pd.Series(
            [str(g) for g in groups.values()],
            index=frame.columns,
            name="group",
        )
        self._init(frame, group_series)

    @classmethod
    def from_dataframe(cls, counts, coldata, group_column="condition"):
        """
        Build a CountMatrix from a pandas count table.

        Parameters
        ----------
        counts : pd.DataFrame
            Raw counts with genes as index and samples as columns.
        coldata : pd.DataFrame, pd.Series or Mapping
            Sample sheet (rows indexed by sample id) or a direct
            sample -> group mapping.
        group_column : str, default "condition"
            Column of ``coldata`` holding the group labels when a
            DataFrame is given.

        Returns
        -------
        CountMatrix
        """
        if not isinstance(counts, pd.DataFrame):
            raise MalformedInputError("counts must be a pandas DataFrame")

        if isinstance(coldata, pd.DataFrame):
            if group_column not in coldata.columns:
                raise MalformedInputError(
                    f"Sample sheet has no column {group_column!r}"
                )
            groups = coldata[group_column]
        else:
            groups = pd.Series(coldata)

        groups = groups.copy()
        groups.index = groups.index.astype(str)
        sample_ids = [str(c) for c in counts.columns]
        missing = [s for s in sample_ids if s not in groups.index]
        if missing:
            raise MalformedInputError(f"No group assigned to samples: {missing}")

        bad = [
            str(c) for c, dtype in counts.dtypes.items()
            if not is_numeric_dtype(dtype) or is_bool_dtype(dtype)
        ]
        if bad:
            raise MalformedInputError(f"Counts must be numeric; offending samples: {bad[:10]}")
        values = counts.to_numpy(dtype=float)

        frame = pd.DataFrame(
            _validate_counts(values),
            index=pd.Index([str(g) for g in counts.index], name="gene"),
            columns=pd.Index(sample_ids, name="sample"),
        )
        group_series = pd.Series(
            [str(groups[s]) for s in sample_ids], index=frame.columns, name="group"
        )
        obj = cls.__new__(cls)
        obj._init(frame, group_series)
        return obj

    def _init(self, frame, groups):
        if frame.shape[0] == 0:
            raise MalformedInputError("Count matrix contains no genes")
        if frame.index.has_duplicates:
            dups = frame.index[frame.index.duplicated()].unique().tolist()
            raise MalformedInputError(f"Duplicate gene identifiers: {dups[:10]}")
        if frame.columns.has_duplicates:
            raise MalformedInputError("Duplicate sample identifiers")
        if groups.nunique() < 2:
            raise MalformedInputError(
                f"At least 2 distinct groups are required, got {groups.nunique()}"
            )
        self._counts = frame
        self._groups = groups

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def genes(self):
        """Gene identifiers in row order."""
        return tuple(self._counts.index)

    @property
    def counts(self):
        """Copy of the raw counts as a DataFrame (genes x samples)."""
        return self._counts.copy()

    @property
    def values(self):
        """Raw counts as a float ndarray (genes x samples)."""
        return self._counts.to_numpy(dtype=float)

    @property
    def groups(self):
        """Group label per sample (Series indexed by sample id)."""
        return self._groups.copy()

    @property
    def group_levels(self):
        """Distinct group labels, sorted."""
        return tuple(sorted(self._groups.unique()))

    @property
    def n_genes(self):
        return self._counts.shape[0]

    @property
    def n_samples(self):
        return self._counts.shape[1]

    def sample_order(self):
        """Sample identifiers in the fixed order used by every vector."""
        return tuple(self._counts.columns)

    def group_of(self, sample_id):
        """Group label of ``sample_id``."""
        try:
            return self._groups[str(sample_id)]
        except KeyError:
            raise KeyError(f"Unknown sample: {sample_id!r}") from None

    def group_sizes(self):
        """Number of samples per group."""
        return self._groups.value_counts().sort_index()

    def normalized(self, size_factors):
        """
        Counts divided by per-sample size factors.

        Parameters
        ----------
        size_factors : array-like or pd.Series
            One positive factor per sample, in sample order.

        Returns
        -------
        pd.DataFrame
        """
        from .utils import normalize_counts

        sf = np.asarray(size_factors, dtype=float)
        return pd.DataFrame(
            normalize_counts(self.values, sf),
            index=self._counts.index,
            columns=self._counts.columns,
        )

    def filter_by_expression(self, min_count, min_samples):
        """
        Keep genes with at least ``min_samples`` samples at ``min_count`` or more.

        Parameters
        ----------
        min_count : int
            Minimum raw count.
        min_samples : int
            Minimum number of samples reaching ``min_count``.

        Returns
        -------
        CountMatrix
            New instance; this one is left untouched.

        Raises
        ------
        MalformedInputError
            If no gene passes the filter.
        """
        if min_count < 0 or min_samples < 0:
            raise ValueError("min_count and min_samples must be non-negative")

        keep = (self._counts >= min_count).sum(axis=1) >= min_samples
        if not keep.any():
            raise MalformedInputError(
                f"No gene has a count >= {min_count} in >= {min_samples} samples"
            )

        obj = self.__class__.__new__(self.__class__)
        obj._init(self._counts.loc[keep].copy(), self._groups.copy())
        return obj

    def equals(self, other):
        """True if counts, sample order and groups are identical."""
        if not isinstance(other, CountMatrix):
            return False
        return self._counts.equals(other._counts) and self._groups.equals(other._groups)

    def __eq__(self, other):
        return self.equals(other)

    __hash__ = None

    def __len__(self):
        return self.n_genes

    def __repr__(self):
        levels = ", ".join(
            f"{g}={n}" for g, n in self.group_sizes().items()
        )
        return f"CountMatrix with {self.n_genes} genes and {self.n_samples} samples ({levels})"


def _is_number(value):
    return isinstance(value, Real) and not isinstance(value, (bool, np.bool_))


def _validate_counts(values):
    """Check raw counts and return them as an int64 array."""
    if values.size and not np.all(np.isfinite(values)):
        raise MalformedInputError("Counts contain NaN or infinite values")
    if np.any(values < 0):
        raise MalformedInputError("Counts must be non-negative")
    if np.any(values != np.floor(values)):
        raise MalformedInputError("Counts must be integers")
    return values.astype(np.int64)
