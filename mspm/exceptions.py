"""
Error Types
===========
Structured errors raised by the multivariate control charts.

All errors subclass ValueError so callers that already guard numeric
routines with ``except ValueError`` keep working.
"""

from typing import Any, Optional, Tuple


class MSPMError(ValueError):
    """Base class for all chart errors."""


class InvalidConfiguration(MSPMError):
    """An option value or option combination is not recognised."""

    def __init__(self, message: str, parameter: Optional[str] = None, value: Any = None):
        super().__init__(message)
        self.parameter = parameter
        self.value = value


class SingularCovariance(MSPMError):
    """The estimated covariance matrix cannot be inverted."""

    def __init__(self, message: str, shape: Optional[Tuple[int, int]] = None):
        super().__init__(message)
        self.shape = shape


class DimensionMismatch(MSPMError):
    """Baseline and monitoring matrices are not compatible."""

    def __init__(
        self,
        message: str,
        train_shape: Optional[Tuple[int, ...]] = None,
        test_shape: Optional[Tuple[int, ...]] = None,
    ):
        super().__init__(message)
        self.train_shape = train_shape
        self.test_shape = test_shape
