"""
Parameter Estimation Module
===========================
In-control mean vector and covariance matrix from a baseline sample,
plus the covariance-weighted distances both charts are built on.

Methods:
- classical: column means and unbiased sample covariance (ddof=1)
- robust: reweighted Minimum Covariance Determinant (FastMCD,
  Rousseeuw & Van Driessen 1999) via scikit-learn's MinCovDet
  with the reweighted scatter rescaled for consistency at the normal

The MCD subset search is randomised; its seed is an explicit argument so
that repeated estimation on the same baseline gives the same result.
"""

from dataclasses import dataclass
from typing import Optional, Union
import logging
import warnings

import numpy as np
from scipy import stats
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from sklearn.covariance import MinCovDet

from .config_validation import EstimationMethod, parse_estimation_method
from .data_validation import as_observation_matrix, check_baseline_size
from .exceptions import SingularCovariance

logger = logging.getLogger(__name__)

# Covariances with a larger condition number are treated as singular
MAX_CONDITION_NUMBER = 1.0 / np.finfo(float).eps

# Share of in-control rows MinCovDet keeps when reweighting (chi2 0.975 cutoff)
REWEIGHT_QUANTILE = 0.975


@dataclass(frozen=True)
class EstimatePair:
    """
    Estimated in-control location and scatter.

    Attributes:
        mean: Mean vector, length p
        covariance: Covariance matrix, p x p
        method: Estimation method used
        n_samples: Number of baseline rows
        support: Boolean mask of the rows used in the final (reweighted)
            estimate. All True for the classical method.
    """
    mean: np.ndarray
    covariance: np.ndarray
    method: EstimationMethod
    n_samples: int
    support: Optional[np.ndarray] = None

    def __post_init__(self):
        for arr in (self.mean, self.covariance, self.support):
            if arr is not None:
                arr.setflags(write=False)

    @property
    def n_features(self) -> int:
        return self.mean.shape[0]

    @property
    def n_outliers(self) -> int:
        """Baseline rows excluded from the final estimate."""
        if self.support is None:
            return 0
        return int(self.n_samples - np.sum(self.support))

    def to_dict(self):
        return {
            'method': self.method.value,
            'n_samples': self.n_samples,
            'n_features': self.n_features,
            'n_outliers': self.n_outliers,
            'mean': self.mean.tolist(),
            'covariance': self.covariance.tolist(),
        }


def _classical_estimate(X: np.ndarray) -> EstimatePair:
    mean = X.mean(axis=0)
    cov = np.atleast_2d(np.cov(X, rowvar=False, ddof=1))
    return EstimatePair(
        mean=mean,
        covariance=cov,
        method=EstimationMethod.CLASSICAL,
        n_samples=X.shape[0],
        support=np.ones(X.shape[0], dtype=bool),
    )


def reweight_consistency_factor(p: int) -> float:
    """
    Consistency factor for a covariance estimated from the rows kept by
    the chi-square 0.975 reweighting step.

    Truncating a p-variate normal at d^2 < q shrinks its covariance by
    P(chi2_{p+2} < q) / P(chi2_p < q); the factor undoes that shrinkage.
    scikit-learn leaves the reweighted scatter uncorrected.
    """
    q = stats.chi2.ppf(REWEIGHT_QUANTILE, p)
    return float(REWEIGHT_QUANTILE / stats.chi2.cdf(q, p + 2))


def _robust_estimate(
    X: np.ndarray,
    random_state: Optional[int],
    support_fraction: Optional[float],
) -> EstimatePair:
    mcd = MinCovDet(support_fraction=support_fraction, random_state=random_state)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        try:
            mcd.fit(X)
        except ValueError as e:
            raise SingularCovariance(
                f"Robust (MCD) covariance estimate failed: {e}",
                shape=(X.shape[1], X.shape[1]),
            ) from e

    for w in caught:
        logger.warning(f"MCD estimate: {w.message}")

    p = X.shape[1]
    covariance = np.atleast_2d(np.asarray(mcd.covariance_, dtype=float)) * reweight_consistency_factor(p)

    return EstimatePair(
        mean=np.asarray(mcd.location_, dtype=float).copy(),
        covariance=covariance,
        method=EstimationMethod.ROBUST,
        n_samples=X.shape[0],
        support=np.asarray(mcd.support_, dtype=bool).copy(),
    )


def estimate_parameters(
    train_data,
    method: Union[str, EstimationMethod] = EstimationMethod.CLASSICAL,
    random_state: Optional[int] = 0,
    support_fraction: Optional[float] = None,
) -> EstimatePair:
    """
    Estimate the in-control mean vector and covariance matrix.

    Args:
        train_data: Baseline sample (n_train x p array or DataFrame)
        method: 'classical' or 'robust'
        random_state: Seed for the MCD subset search (robust only)
        support_fraction: Share of rows in the MCD subset. None uses
            scikit-learn's default of (n + p + 1) / 2 rows.

    Returns:
        EstimatePair with mean and covariance

    Raises:
        InvalidConfiguration: If the method is not recognised
        SingularCovariance: If n_train <= p or the MCD search degenerates
    """
    method = parse_estimation_method(method)
    X = as_observation_matrix(train_data, 'train_data')
    check_baseline_size(X)

    if method is EstimationMethod.ROBUST:
        estimate = _robust_estimate(X, random_state, support_fraction)
    else:
        estimate = _classical_estimate(X)

    logger.debug(
        f"Estimated {method.value} parameters from {estimate.n_samples} rows, "
        f"{estimate.n_features} features ({estimate.n_outliers} rows down-weighted)"
    )
    return estimate


# =============================================================================
# DISTANCES
# =============================================================================

def cholesky_factor(covariance: np.ndarray):
    """
    Cholesky factorisation of a covariance matrix.

    Raises:
        SingularCovariance: If the matrix is not numerically positive definite
    """
    covariance = np.atleast_2d(np.asarray(covariance, dtype=float))
    shape = covariance.shape

    if not np.all(np.isfinite(covariance)):
        raise SingularCovariance("Covariance matrix contains non-finite values", shape=shape)

    cond = np.linalg.cond(covariance)
    if not np.isfinite(cond) or cond > MAX_CONDITION_NUMBER:
        raise SingularCovariance(
            f"Covariance matrix {shape} is singular (condition number {cond:.3g})",
            shape=shape,
        )

    try:
        return cho_factor(covariance, lower=True, check_finite=False)
    except LinAlgError as e:
        raise SingularCovariance(
            f"Covariance matrix {shape} is not positive definite: {e}",
            shape=shape,
        ) from e


def squared_mahalanobis(
    X: np.ndarray,
    mean: np.ndarray,
    covariance: np.ndarray,
) -> np.ndarray:
    """
    Squared Mahalanobis distance of every row of X.

    d(x) = (x - mean)^T cov^-1 (x - mean), evaluated with a Cholesky
    solve rather than an explicit inverse.

    Returns:
        Array of length n_rows, non-negative
    """
    factor = cholesky_factor(covariance)
    centered = np.atleast_2d(X) - mean
    solved = cho_solve(factor, centered.T, check_finite=False)
    distances = np.einsum('ij,ji->i', centered, solved)
    # Round-off can push exact zeros slightly negative
    return np.maximum(distances, 0.0)
