"""
Shared fixtures: synthetic negative binomial count data.
"""

import numpy as np
import pytest

from rnaseq_de import CountMatrix


def nb_draw(rng, mu, alpha, size=None):
    """Negative binomial draws with mean ``mu`` and dispersion ``alpha``."""
    r = 1.0 / alpha
    p = r / (r + np.asarray(mu, dtype=float))
    return rng.negative_binomial(r, p, size=size)


def simulate_matrix(n_genes=100, n_per_group=3, n_de=10, fold=4.0, alpha=0.01, seed=7):
    """
    Two groups with ``n_per_group`` replicates each.

    The first ``n_de`` genes differ ``fold``-fold between groups, half of
    them up in group B and half up in group A, so expected library sizes
    are equal across samples.

    Returns
    -------
    (CountMatrix, list of str)
        The matrix and the ids of the differential genes.
    """
    rng = np.random.default_rng(seed)
    samples = [f"A{i + 1}" for i in range(n_per_group)] + [f"B{i + 1}" for i in range(n_per_group)]
    groups = {s: s[0] for s in samples}

    base = np.exp(rng.uniform(np.log(200), np.log(2000), size=n_genes))
    counts = {}
    de_genes = []
    for g in range(n_genes):
        mu_a = mu_b = base[g]
        if g < n_de:
            name = f"de_{g:02d}"
            de_genes.append(name)
            if g % 2 == 0:
                mu_b = base[g] * fold
            else:
                mu_a = base[g] * fold
        else:
            name = f"null_{g:03d}"
        mu = [mu_a] * n_per_group + [mu_b] * n_per_group
        counts[name] = nb_draw(rng, mu, alpha).tolist()

    return CountMatrix(counts, groups), de_genes


@pytest.fixture
def simulated():
    return simulate_matrix()


@pytest.fixture
def small_matrix():
    return CountMatrix(
        {
            "g1": [10, 12, 30, 28],
            "g2": [5, 4, 6, 5],
            "g3": [0, 1, 0, 3],
            "g4": [100, 90, 110, 95],
        },
        {"s1": "ctrl", "s2": "ctrl", "s3": "treat", "s4": "treat"},
    )
