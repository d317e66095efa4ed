"""
Run configuration for the differential expression pipeline.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .exceptions import InvalidConfigurationError


class CorrectionMethod(Enum):
    """Multiple-testing correction methods."""

    BENJAMINI_HOCHBERG = "benjamini_hochberg"
    BONFERRONI = "bonferroni"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("-", "_")
        method = _CORRECTION_ALIASES.get(key)
        if method is None:
            raise InvalidConfigurationError(
                f"Unsupported correction method: {value!r} "
                f"(expected one of {sorted(_CORRECTION_ALIASES)})"
            )
        return method


_CORRECTION_ALIASES = {
    "benjamini_hochberg": CorrectionMethod.BENJAMINI_HOCHBERG,
    "bh": CorrectionMethod.BENJAMINI_HOCHBERG,
    "fdr_bh": CorrectionMethod.BENJAMINI_HOCHBERG,
    "fdr": CorrectionMethod.BENJAMINI_HOCHBERG,
    "bonferroni": CorrectionMethod.BONFERRONI,
    "bonf": CorrectionMethod.BONFERRONI,
}

SIZE_FACTOR_TYPES = ("ratio", "poscounts")


@dataclass
class DEConfig:
    """Configuration for a differential expression run.

    Benjamini-Hochberg is the default correction; Bonferroni is available
    for the stricter export. Thresholds are validated on construction so a
    bad configuration fails before any computation starts.
    """

    # Expression filter: keep genes with >= min_count in >= min_samples samples
    min_count: int = 0
    min_samples: int = 1

    # Contrast: test_group vs reference_group
    reference_group: Optional[str] = None
    test_group: Optional[str] = None

    correction: CorrectionMethod = CorrectionMethod.BENJAMINI_HOCHBERG

    # Significance thresholds
    alpha: float = 0.05
    lfc_threshold: float = 2.0  # log2 units

    size_factor_type: str = "ratio"

    # Gene-wise dispersion MLE (Newton on log-dispersion)
    dispersion_max_iter: int = 100
    dispersion_tol: float = 1e-6
    min_disp: float = 1e-8
    outlier_factor: Optional[float] = None
    default_dispersion: float = 0.1

    # IRLS for the NB GLM
    glm_max_iter: int = 100
    glm_tol: float = 1e-8

    n_jobs: int = 1

    def __post_init__(self):
        """Validate configuration."""
        self.correction = CorrectionMethod.parse(self.correction)

        if self.min_count < 0:
            raise InvalidConfigurationError(f"min_count must be >= 0, got {self.min_count}")
        if self.min_samples < 0:
            raise InvalidConfigurationError(f"min_samples must be >= 0, got {self.min_samples}")
        if not 0.0 < self.alpha <= 1.0:
            raise InvalidConfigurationError(f"alpha must be in (0, 1], got {self.alpha}")
        if self.lfc_threshold < 0:
            raise InvalidConfigurationError(
                f"lfc_threshold must be >= 0, got {self.lfc_threshold}"
            )
        if self.size_factor_type not in SIZE_FACTOR_TYPES:
            raise InvalidConfigurationError(
                f"size_factor_type must be one of {SIZE_FACTOR_TYPES}, "
                f"got {self.size_factor_type!r}"
            )
        for name in ("dispersion_max_iter", "glm_max_iter", "n_jobs"):
            if getattr(self, name) < 1:
                raise InvalidConfigurationError(f"{name} must be >= 1")
        for name in ("dispersion_tol", "glm_tol", "min_disp", "default_dispersion"):
            if not getattr(self, name) > 0:
                raise InvalidConfigurationError(f"{name} must be > 0")
        if self.outlier_factor is not None and not self.outlier_factor > 1.0:
            raise InvalidConfigurationError(
                f"outlier_factor must be > 1, got {self.outlier_factor}"
            )
        if (
            self.reference_group is not None
            and self.test_group is not None
            and str(self.reference_group) == str(self.test_group)
        ):
            raise InvalidConfigurationError("test_group must differ from reference_group")
