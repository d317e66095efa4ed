"""
Differential expression analysis for RNA-seq count data.

Normalizes raw per-sample counts with median-of-ratios size factors,
estimates negative binomial dispersions with empirical Bayes shrinkage,
fits a per-gene NB GLM by IRLS and calls differential expression with
Wald tests and multiple-testing correction.

Main Classes:
    CountMatrix : Raw gene x sample counts with sample groups
    DEConfig : Run configuration
    DEPipeline : Runs the stages in order
    DEResults : Sorted result table plus run artifacts

Main Functions:
    run_de : Run the full pipeline on a CountMatrix
    estimate_size_factors : Median-of-ratios normalization
    estimate_dispersions : Gene-wise, trend and shrunk dispersions
    fit_nb_glms : Per-gene NB GLM fits
    wald_test : Wald statistics, adjusted p-values and the sorted table

References:
    Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
    and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

# Data model and configuration
from .count_matrix import CountMatrix
from .config import DEConfig, CorrectionMethod

# Core pipeline
from .deseq import DEPipeline, run_de

# Size factors
from .size_factors import estimate_size_factors

# Dispersions
from .dispersion import (
    estimate_dispersions,
    estimate_gene_wise_dispersion,
    fit_dispersion_trend,
    shrink_dispersions,
    DispersionEstimates,
    ShrunkDispersion,
    OutlierDispersion,
    DefaultDispersion,
    FailedDispersion,
)

# GLM and statistical tests
from .nbinom_glm import fit_nb_glm, fit_nb_glms, FitResult
from .nbinom_wald import wald_test, benjamini_hochberg, bonferroni, adjust_pvalues

# Results
from .results import DEResults, summary, write_results

# Design
from .design import create_design_matrix

# Errors
from .exceptions import (
    DEAnalysisError,
    MalformedInputError,
    NoEligibleGenesError,
    InvalidConfigurationError,
    ConvergenceFailure,
    FitConvergenceFailure,
)

# Utilities
from .utils import normalize_counts

__version__ = "0.1.0"

__all__ = [
    # Core
    'CountMatrix',
    'DEConfig',
    'CorrectionMethod',
    'DEPipeline',
    'run_de',

    # Size factors
    'estimate_size_factors',

    # Dispersions
    'estimate_dispersions',
    'estimate_gene_wise_dispersion',
    'fit_dispersion_trend',
    'shrink_dispersions',
    'DispersionEstimates',
    'ShrunkDispersion',
    'OutlierDispersion',
    'DefaultDispersion',
    'FailedDispersion',

    # GLM and tests
    'fit_nb_glm',
    'fit_nb_glms',
    'FitResult',
    'wald_test',
    'benjamini_hochberg',
    'bonferroni',
    'adjust_pvalues',

    # Results
    'DEResults',
    'summary',
    'write_results',

    # Design
    'create_design_matrix',

    # Errors
    'DEAnalysisError',
    'MalformedInputError',
    'NoEligibleGenesError',
    'InvalidConfigurationError',
    'ConvergenceFailure',
    'FitConvergenceFailure',

    # Utilities
    'normalize_counts',
]
