"""
Observation Matrix Checks
=========================
Checks that MUST pass before any estimation or charting proceeds.

Key Principle: The charts will NOT run on malformed matrices silently.
Shape problems raise DimensionMismatch, bad values raise
InvalidConfiguration, both before any numeric work.

Checks:
1. Both inputs are 2-D with at least one row and one column
2. Baseline and monitoring have the same number of columns
3. DataFrame column labels agree in name and order
4. All values are finite
5. Baseline has more rows than columns (n_train > p), else SingularCovariance
"""

from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import DimensionMismatch, InvalidConfiguration, SingularCovariance

ArrayLike = Union[np.ndarray, pd.DataFrame]


def as_observation_matrix(
    data: ArrayLike,
    name: str = 'data',
    n_features: Optional[int] = None,
) -> np.ndarray:
    """
    Convert an observation table to a 2-D float array.

    A 1-D input is treated as a single-feature sample (one column), unless
    n_features > 1 is given, in which case it is a single observation (one row).

    Raises:
        DimensionMismatch: If the input is not 1-D/2-D or has no rows/columns
        InvalidConfiguration: If values are non-numeric or non-finite
    """
    if isinstance(data, pd.DataFrame):
        values = data.to_numpy()
    else:
        values = np.asarray(data)

    if values.ndim == 1:
        values = values.reshape(1, -1) if n_features and n_features > 1 else values.reshape(-1, 1)

    if values.ndim != 2:
        raise DimensionMismatch(
            f"{name} must be a 2-D matrix, got {values.ndim} dimensions",
            train_shape=values.shape if name == 'train_data' else None,
            test_shape=values.shape if name == 'test_data' else None,
        )

    if values.shape[0] == 0 or values.shape[1] == 0:
        raise DimensionMismatch(
            f"{name} is empty (shape {values.shape})",
            train_shape=values.shape if name == 'train_data' else None,
            test_shape=values.shape if name == 'test_data' else None,
        )

    try:
        values = values.astype(float)
    except (TypeError, ValueError) as e:
        raise InvalidConfiguration(f"{name} contains non-numeric values: {e}") from e

    if not np.all(np.isfinite(values)):
        n_bad = int(np.sum(~np.isfinite(values)))
        raise InvalidConfiguration(
            f"{name} contains {n_bad} non-finite values (NaN or inf)",
            parameter=name,
        )

    return values


def check_columns_match(train_data: ArrayLike, test_data: ArrayLike) -> None:
    """Require identical column labels, in order, when both inputs are DataFrames."""
    if not (isinstance(train_data, pd.DataFrame) and isinstance(test_data, pd.DataFrame)):
        return

    train_cols = list(train_data.columns)
    test_cols = list(test_data.columns)
    if train_cols != test_cols:
        raise DimensionMismatch(
            f"Column labels differ: train {train_cols} vs test {test_cols}",
            train_shape=train_data.shape,
            test_shape=test_data.shape,
        )


def validate_observation_matrices(
    train_data: ArrayLike,
    test_data: ArrayLike,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Validate a baseline / monitoring pair and return them as float arrays.

    Args:
        train_data: Baseline (Phase I) sample, n_train x p
        test_data: Monitoring (Phase II) sample, n_test x p. A 1-D input of
            length p (p > 1) is charted as a single observation.

    Returns:
        Tuple of (train, test) float arrays

    Raises:
        DimensionMismatch: On empty inputs or differing column counts or labels
        SingularCovariance: If n_train <= p
        InvalidConfiguration: On non-finite values
    """
    train = as_observation_matrix(train_data, 'train_data')
    test = as_observation_matrix(test_data, 'test_data', n_features=train.shape[1])

    if train.shape[1] != test.shape[1]:
        raise DimensionMismatch(
            f"Column count mismatch: train_data has {train.shape[1]} columns, "
            f"test_data has {test.shape[1]}",
            train_shape=train.shape,
            test_shape=test.shape,
        )

    check_columns_match(train_data, test_data)
    check_baseline_size(train)

    return train, test


def check_baseline_size(train: np.ndarray) -> None:
    """Require n_train > p so the covariance and F quantile are defined."""
    n, p = train.shape
    if n <= p:
        raise SingularCovariance(
            f"Baseline needs more rows than columns (n_train={n}, p={p}); "
            f"the covariance estimate would be singular",
            shape=(p, p),
        )


def monitoring_index(test_data: ArrayLike) -> Optional[pd.Index]:
    """Row index of a monitoring DataFrame, or None for plain arrays."""
    if isinstance(test_data, pd.DataFrame):
        return test_data.index
    return None
