"""
Error taxonomy for MLSim.

All fatal errors derive from ``MLSimError`` and ``ValueError`` so callers
that only catch ``ValueError`` keep working.
"""

__all__ = [
    "MLSimError",
    "MalformedFormulaError",
    "MalformedTermError",
    "InvalidCorrelationSpecError",
    "InvalidGenerationSpecError",
    "InvalidSampleSizeError",
    "DatasetAlignmentError",
    "NonPositiveSemiDefiniteCovarianceWarning",
]


class MLSimError(ValueError):
    """Base class for all MLSim errors."""


class MalformedFormulaError(MLSimError):
    """Formula has no ``~``, unbalanced parentheses, or no random-effect terms."""


class MalformedTermError(MLSimError):
    """A random-effect term lacks a single ``|`` or has an empty side."""


class InvalidCorrelationSpecError(MLSimError):
    """Correlation count does not match the number of effect pairs, or a value is out of range."""


class InvalidGenerationSpecError(MLSimError):
    """A random-effect parameter bundle is incomplete or inconsistent with its term."""


class InvalidSampleSizeError(MLSimError):
    """Sample-size specification cannot be resolved into cluster sizes."""


class DatasetAlignmentError(MLSimError):
    """An existing dataset does not match the structure being added to it."""


class NonPositiveSemiDefiniteCovarianceWarning(UserWarning):
    """Negative eigenvalues were clipped to zero before inducing covariance."""
