"""
Design matrix construction for the single-factor group comparison.

The model is ``~ group`` with treatment coding: an intercept for the
reference group and one coefficient per non-reference group.

References:
    - Wilkinson GN, Rogers CE (1973). Symbolic description of factorial
      models for analysis of variance. Applied Statistics 22:392-399
"""

import numpy as np
import pandas as pd
from patsy import dmatrix

from .exceptions import InvalidConfigurationError


def resolve_contrast(levels, reference_group=None, test_group=None):
    """
    Decide the reference and tested group labels.

    Parameters
    ----------
    levels : sequence of str
        Distinct group labels, sorted.
    reference_group : str, optional
        Reference level. Defaults to the first level.
    test_group : str, optional
        Level compared against the reference. Defaults to the only
        non-reference level; must be given when there are more than two.

    Returns
    -------
    (str, str)
        Reference and tested level.
    """
    levels = [str(level) for level in levels]

    if reference_group is None:
        reference = levels[0]
    else:
        reference = str(reference_group)
        if reference not in levels:
            raise InvalidConfigurationError(
                f"Reference group {reference!r} not among groups {levels}"
            )

    others = [level for level in levels if level != reference]
    if test_group is None:
        if len(others) != 1:
            raise InvalidConfigurationError(
                f"test_group must be given when comparing against {len(others)} "
                f"non-reference groups {others}"
            )
        tested = others[0]
    else:
        tested = str(test_group)
        if tested not in others:
            raise InvalidConfigurationError(
                f"Test group {tested!r} not among non-reference groups {others}"
            )

    return reference, tested


def create_design_matrix(groups, reference_group):
    """
    Create a treatment-coded design matrix from sample group labels.

    Parameters
    ----------
    groups : pd.Series or array-like
        Group label per sample, in sample order.
    reference_group : str
        Level absorbed into the intercept.

    Returns
    -------
    np.ndarray
        Design matrix (samples x parameters).
    list
        Column names, e.g. ``['Intercept', 'group[T.treat]']``.

    Examples
    --------
    >>> X, names = create_design_matrix(['ctrl', 'ctrl', 'treat', 'treat'], 'ctrl')
    >>> names
    ['Intercept', 'group[T.treat]']
    """
    coldata = pd.DataFrame({"group": [str(g) for g in np.asarray(groups)]})
    reference_group = str(reference_group)
    if reference_group not in set(coldata["group"]):
        raise ValueError(f"Reference group {reference_group!r} not present")

    levels = [reference_group] + sorted(set(coldata["group"]) - {reference_group})
    coldata["group"] = pd.Categorical(coldata["group"], categories=levels)

    design = dmatrix("~ group", data=coldata, return_type="dataframe")
    X = design.values
    column_names = list(design.columns)

    if np.linalg.matrix_rank(X) < X.shape[1]:
        raise ValueError("Design matrix is not full rank")

    return X, column_names


def coefficient_index(column_names, level):
    """Position of the coefficient for ``level`` in the design columns."""
    name = f"group[T.{level}]"
    try:
        return column_names.index(name)
    except ValueError:
        raise ValueError(f"No design column for group {level!r}") from None
