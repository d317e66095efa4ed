"""
Error taxonomy for the differential expression pipeline.

Fatal problems are exceptions and abort a run. Per-gene numerical problems
(a dispersion or GLM fit that does not converge) are recorded as plain
records instead and travel with the results.
"""

from dataclasses import dataclass


class DEAnalysisError(Exception):
    """Base class for fatal pipeline errors.

    Parameters
    ----------
    message : str
        Human readable description.
    stage : str, optional
        Pipeline stage that raised the error ("input", "config",
        "size_factors", "dispersion", "glm", "wald").
    """

    default_stage = None

    def __init__(self, message, stage=None):
        super().__init__(message)
        self.stage = stage if stage is not None else self.default_stage

    def __str__(self):
        msg = super().__str__()
        if self.stage:
            return f"[{self.stage}] {msg}"
        return msg


class MalformedInputError(DEAnalysisError):
    """Structural problem with the count matrix or group assignment."""

    default_stage = "input"


class NoEligibleGenesError(DEAnalysisError):
    """No gene can serve as a reference for size factor estimation."""

    default_stage = "size_factors"


class InvalidConfigurationError(DEAnalysisError):
    """Unsupported option or out-of-range threshold."""

    default_stage = "config"


@dataclass(frozen=True)
class ConvergenceFailure:
    """Gene-wise dispersion estimate that could not be obtained."""

    gene: str
    reason: str
    iterations: int = 0
    stage: str = "dispersion"


@dataclass(frozen=True)
class FitConvergenceFailure:
    """NB GLM fit that did not converge for a gene."""

    gene: str
    reason: str
    iterations: int = 0
    stage: str = "glm"
