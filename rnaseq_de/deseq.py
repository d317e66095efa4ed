import logging

import numpy as np

from .config import DEConfig
from .count_matrix import CountMatrix
from .design import coefficient_index, create_design_matrix, resolve_contrast
from .dispersion import estimate_dispersions
from .exceptions import DEAnalysisError, InvalidConfigurationError, MalformedInputError
from .nbinom_glm import fit_nb_glms
from .nbinom_wald import wald_test
from .results import DEResults
from .size_factors import estimate_size_factors

logger = logging.getLogger(__name__)


class DEPipeline:
    """
    Size factors -> dispersions -> NB GLM -> Wald test, for one contrast.

    Fatal errors (malformed input, no reference genes, bad configuration)
    propagate with the failing stage recorded on the exception. Per-gene
    convergence problems never abort the run; they come back as flagged
    rows and in ``DEResults.failures``.

    Examples
    --------
    >>> pipeline = DEPipeline(DEConfig(reference_group="untrt"))
    >>> res = pipeline.run(count_matrix)
    >>> res.table.head()
    """

    def __init__(self, config=None):
        if config is None:
            config = DEConfig()
        if not isinstance(config, DEConfig):
            raise InvalidConfigurationError("config must be a DEConfig instance")
        self.config = config

    def run(self, count_matrix):
        cfg = self.config
        if not isinstance(count_matrix, CountMatrix):
            raise MalformedInputError("run() expects a CountMatrix")

        # configuration is checked against the data before any computation
        reference, tested = resolve_contrast(
            count_matrix.group_levels, cfg.reference_group, cfg.test_group
        )

        if cfg.min_samples > count_matrix.n_samples:
            raise InvalidConfigurationError(
                f"min_samples={cfg.min_samples} exceeds the {count_matrix.n_samples} samples"
            )

        if cfg.min_count > 0 or cfg.min_samples > 1:
            n_before = count_matrix.n_genes
            count_matrix = count_matrix.filter_by_expression(cfg.min_count, cfg.min_samples)
            logger.info(
                "Expression filter kept %d of %d genes (count >= %d in >= %d samples)",
                count_matrix.n_genes, n_before, cfg.min_count, cfg.min_samples,
            )

        genes = count_matrix.genes
        counts = count_matrix.values
        groups = count_matrix.groups

        X, design_columns = create_design_matrix(groups.values, reference)
        coef_index = coefficient_index(design_columns, tested)

        # 1) size factors
        logger.info("Estimating size factors...")
        size_factors = _stage("size_factors", estimate_size_factors,
                              count_matrix, type=cfg.size_factor_type)
        sf = size_factors.to_numpy()

        # 2) dispersions
        logger.info("Estimating dispersions...")
        disp = _stage(
            "dispersion", estimate_dispersions,
            counts, sf, X, genes=genes,
            min_disp=cfg.min_disp,
            max_iter=cfg.dispersion_max_iter,
            tol=cfg.dispersion_tol,
            outlier_factor=cfg.outlier_factor,
            default_dispersion=cfg.default_dispersion,
            n_jobs=cfg.n_jobs,
        )

        # 3) NB GLM
        logger.info("Fitting negative binomial GLMs...")
        fits, fit_failures = _stage(
            "glm", fit_nb_glms,
            counts, sf, disp.values, X,
            coef_index=coef_index, genes=genes,
            max_iter=cfg.glm_max_iter, tol=cfg.glm_tol, n_jobs=cfg.n_jobs,
        )

        # 4) Wald test + correction
        logger.info("Running Wald test...")
        table = _stage(
            "wald", wald_test,
            fits,
            correction=cfg.correction,
            alpha=cfg.alpha,
            lfc_threshold=cfg.lfc_threshold,
            base_means=disp.base_means,
            dispersions=disp.values,
            dispersion_status=disp.status,
        )

        failures = list(disp.failures) + list(fit_failures)
        if failures:
            n_flagged = len({f.gene for f in failures})
            logger.warning("%d genes flagged by per-gene failures", n_flagged)

        logger.info("Done.")
        return DEResults(
            table=table,
            size_factors=size_factors,
            reference_group=reference,
            test_group=tested,
            correction=cfg.correction.value,
            alpha=cfg.alpha,
            lfc_threshold=cfg.lfc_threshold,
            trend_coefficients=disp.trend_coefficients,
            failures=failures,
        )


def _stage(name, func, *args, **kwargs):
    """Run one stage, tagging fatal errors with the stage name."""
    try:
        return func(*args, **kwargs)
    except DEAnalysisError as exc:
        if exc.stage is None:
            exc.stage = name
        raise
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise DEAnalysisError(str(exc), stage=name) from exc


def run_de(count_matrix, config=None, **options):
    """
    Run the pipeline on a CountMatrix.

    Parameters
    ----------
    count_matrix : CountMatrix
    config : DEConfig, optional
        Run configuration. Keyword ``options`` build one when omitted.

    Returns
    -------
    DEResults
    """
    if config is None:
        config = DEConfig(**options)
    elif options:
        raise InvalidConfigurationError("Pass either config or keyword options, not both")
    return DEPipeline(config).run(count_matrix)
