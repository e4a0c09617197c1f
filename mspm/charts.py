"""
Multivariate Control Charts
===========================
Hotelling T² and MEWMA charts for Phase II monitoring of a multivariate
process against a baseline (Phase I) sample.

Key Features:
- Classical or robust (MCD) in-control parameter estimates
- T² limits from the F distribution or a KDE quantile of baseline T²
- MEWMA limits calibrated to a target in-control ARL
- Result objects with signal summaries and DataFrame export

Use Cases:
- Detect a sustained mean shift across several correlated sensors
- Compare Shewhart-type (T²) and memory-based (MEWMA) detection
"""

from dataclasses import dataclass
from itertools import accumulate
from typing import Any, Dict, List, Optional, Tuple, Union
import logging

import numpy as np
import pandas as pd

from .config_validation import (
    ChartType,
    MEWMAChartConfig,
    T2ChartConfig,
    ThresholdRule,
    validate_chart_config,
)
from .control_limits import (
    MEWMA_LIMIT_METHOD,
    f_control_limit,
    kde_quantile_limit,
    mewma_control_limit,
)
from .data_validation import monitoring_index, validate_observation_matrices
from .estimation import EstimatePair, estimate_parameters, squared_mahalanobis

logger = logging.getLogger(__name__)


# =============================================================================
# RESULTS
# =============================================================================

class _SignalSummary:
    """Signal bookkeeping shared by the chart results."""

    monitoring_statistics: np.ndarray
    exceedances: np.ndarray
    threshold: float
    index: Optional[pd.Index]

    @property
    def n_points(self) -> int:
        return len(self.monitoring_statistics)

    @property
    def n_signals(self) -> int:
        return int(np.sum(self.exceedances))

    @property
    def signal_rate(self) -> float:
        return self.n_signals / self.n_points if self.n_points > 0 else 0.0

    @property
    def first_signal(self) -> Optional[int]:
        """Position of the first exceedance, or None if the chart never signals."""
        hits = np.flatnonzero(self.exceedances)
        return int(hits[0]) if hits.size else None

    def signal_indices(self) -> List[int]:
        """Positions (0-based) of all exceedances."""
        return [int(i) for i in np.flatnonzero(self.exceedances)]

    def out_of_control_runs(self) -> List[Tuple[int, int]]:
        """Contiguous blocks of exceedances as inclusive (start, end) positions."""
        runs = []
        start = None
        for i, flag in enumerate(self.exceedances):
            if flag and start is None:
                start = i
            elif not flag and start is not None:
                runs.append((start, i - 1))
                start = None
        if start is not None:
            runs.append((start, len(self.exceedances) - 1))
        return runs

    def to_frame(self) -> pd.DataFrame:
        """Statistic, limit and flag per monitoring observation."""
        index = self.index if self.index is not None else pd.RangeIndex(self.n_points)
        return pd.DataFrame(
            {
                'statistic': self.monitoring_statistics,
                'threshold': self.threshold,
                'out_of_control': self.exceedances,
            },
            index=index,
        )


@dataclass
class T2Result(_SignalSummary):
    """Hotelling T² chart results."""
    train_statistics: np.ndarray
    monitoring_statistics: np.ndarray
    exceedances: np.ndarray
    threshold: float
    threshold_rule: ThresholdRule
    prob: float                    # In-control coverage used for the limit
    estimate: EstimatePair
    index: Optional[pd.Index] = None
    chart_type: ChartType = ChartType.T2

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chart_type': self.chart_type.value,
            'method': self.estimate.method.value,
            'threshold_rule': self.threshold_rule.value,
            'prob': self.prob,
            'threshold': self.threshold,
            'n_points': self.n_points,
            'n_signals': self.n_signals,
            'signal_rate': self.signal_rate,
            'first_signal': self.first_signal,
            'train_statistics': self.train_statistics.tolist(),
            'monitoring_statistics': self.monitoring_statistics.tolist(),
            'exceedances': self.exceedances.tolist(),
        }


@dataclass
class MEWMAResult(_SignalSummary):
    """MEWMA chart results."""
    monitoring_statistics: np.ndarray
    exceedances: np.ndarray
    threshold: float
    lam: float                     # Smoothing parameter (0 < lambda <= 1)
    ic_arl: float
    estimate: EstimatePair
    ewma_vectors: np.ndarray       # q_1..q_n, one row per observation
    index: Optional[pd.Index] = None
    limit_method: str = MEWMA_LIMIT_METHOD
    chart_type: ChartType = ChartType.MEWMA

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chart_type': self.chart_type.value,
            'method': self.estimate.method.value,
            'lambda': self.lam,
            'ic_arl': self.ic_arl,
            'limit_method': self.limit_method,
            'threshold': self.threshold,
            'n_points': self.n_points,
            'n_signals': self.n_signals,
            'signal_rate': self.signal_rate,
            'first_signal': self.first_signal,
            'monitoring_statistics': self.monitoring_statistics.tolist(),
            'exceedances': self.exceedances.tolist(),
        }


# =============================================================================
# HOTELLING T²
# =============================================================================

def fit_t2(
    train_data,
    test_data,
    method: str = 'classical',
    threshold_rule: str = 'parametric',
    far: Optional[float] = None,
    ic_arl: Optional[float] = None,
    random_state: Optional[int] = 0,
    support_fraction: Optional[float] = None,
) -> T2Result:
    """
    Create a Hotelling T² chart for the monitoring sample.

    T²(x) = (x - mean)^T cov^-1 (x - mean), with mean and cov estimated
    from the baseline sample. The limit targets prob = 1 - 1/ic_arl, or
    prob = 1 - far:
        parametric:    p (n^2-1) / (n (n-p)) * F^-1(prob; p, n-p)
        nonparametric: prob-quantile of a Gaussian KDE of baseline T²

    Args:
        train_data: Baseline sample, n_train x p (array or DataFrame)
        test_data: Monitoring sample, n_test x p, same column order
        method: 'classical' or 'robust'
        threshold_rule: 'parametric' or 'nonparametric'
        far: Target false alarm rate (give this or ic_arl)
        ic_arl: Target in-control ARL (give this or far)
        random_state: Seed for the robust estimator
        support_fraction: MCD subset share (robust only)

    Returns:
        T2Result with baseline and monitoring T², limit and exceedances

    Raises:
        InvalidConfiguration: Unknown method/rule, or not exactly one of far/ic_arl
        DimensionMismatch: Column counts differ or an input is empty
        SingularCovariance: The covariance estimate cannot be inverted

    Example:
        >>> result = fit_t2(train, test, method='classical', ic_arl=200)
        >>> print(f"Signals detected: {result.n_signals}")
    """
    config = validate_chart_config(
        {
            'method': method,
            'threshold_rule': threshold_rule,
            'far': far,
            'ic_arl': ic_arl,
            'random_state': random_state,
            'support_fraction': support_fraction,
        },
        ChartType.T2,
    )
    train, test = validate_observation_matrices(train_data, test_data)
    n_train, p = train.shape

    estimate = estimate_parameters(
        train, config.method, config.random_state, config.support_fraction
    )

    distances = squared_mahalanobis(np.vstack([train, test]), estimate.mean, estimate.covariance)
    train_stats = distances[:n_train]
    monitoring_stats = distances[n_train:]

    prob = config.prob
    if config.threshold_rule is ThresholdRule.PARAMETRIC:
        threshold = f_control_limit(p, n_train, prob)
    else:
        threshold = kde_quantile_limit(train_stats, prob)

    exceedances = monitoring_stats > threshold

    result = T2Result(
        train_statistics=train_stats,
        monitoring_statistics=monitoring_stats,
        exceedances=exceedances,
        threshold=threshold,
        threshold_rule=config.threshold_rule,
        prob=prob,
        estimate=estimate,
        index=monitoring_index(test_data),
    )
    logger.info(
        f"T2 chart ({config.method.value}, {config.threshold_rule.value}): "
        f"h={threshold:.4f}, {result.n_signals}/{result.n_points} signals"
    )
    return result


# =============================================================================
# MEWMA
# =============================================================================

def ewma_recursion(centered: np.ndarray, lam: float) -> np.ndarray:
    """
    Left fold q_t = lam * x_t + (1 - lam) * q_{t-1} with q_0 = 0.

    Args:
        centered: Centred observations, n x p, in time order
        lam: Smoothing constant

    Returns:
        Array of q_1..q_n, n x p
    """
    q0 = np.zeros(centered.shape[1])
    states = accumulate(centered, lambda q, x: lam * x + (1.0 - lam) * q, initial=q0)
    return np.array(list(states)[1:]).reshape(centered.shape)


def fit_mewma(
    train_data,
    test_data,
    method: str = 'classical',
    lam: Optional[float] = None,
    ic_arl: Optional[float] = None,
    random_state: Optional[int] = 0,
    support_fraction: Optional[float] = None,
) -> MEWMAResult:
    """
    Create a MEWMA chart for the monitoring sample.

    The monitoring rows are centred on the baseline mean and smoothed:
        q_t = lambda * x_t + (1 - lambda) * q_{t-1},  q_0 = 0
    The statistic uses the asymptotic covariance of q for every t:
        stat_t = q_t^T (lambda / (2 - lambda) * cov)^-1 q_t
    The limit is the MEWMA control limit for (lambda, ic_arl, p).

    Args:
        train_data: Baseline sample, n_train x p (array or DataFrame)
        test_data: Monitoring sample, n_test x p, same column order
        method: 'classical' or 'robust'
        lam: Smoothing constant in (0, 1]
        ic_arl: Target in-control ARL
        random_state: Seed for the robust estimator
        support_fraction: MCD subset share (robust only)

    Returns:
        MEWMAResult with statistics, limit and exceedances

    Raises:
        InvalidConfiguration: Unknown method, lambda outside (0, 1], missing ic_arl
        DimensionMismatch: Column counts differ or an input is empty
        SingularCovariance: The covariance estimate cannot be inverted

    Example:
        >>> result = fit_mewma(train, test, method='robust', lam=0.1, ic_arl=200)
        >>> print(f"First signal at: {result.first_signal}")
    """
    config = validate_chart_config(
        {
            'method': method,
            'lam': lam,
            'ic_arl': ic_arl,
            'random_state': random_state,
            'support_fraction': support_fraction,
        },
        ChartType.MEWMA,
    )
    train, test = validate_observation_matrices(train_data, test_data)
    p = train.shape[1]

    estimate = estimate_parameters(
        train, config.method, config.random_state, config.support_fraction
    )

    ewma_vectors = ewma_recursion(test - estimate.mean, config.lam)
    sigma_q = config.lam / (2.0 - config.lam) * estimate.covariance
    monitoring_stats = squared_mahalanobis(ewma_vectors, np.zeros(p), sigma_q)

    threshold = mewma_control_limit(config.lam, config.ic_arl, p)
    exceedances = monitoring_stats > threshold

    result = MEWMAResult(
        monitoring_statistics=monitoring_stats,
        exceedances=exceedances,
        threshold=threshold,
        lam=config.lam,
        ic_arl=config.ic_arl,
        estimate=estimate,
        ewma_vectors=ewma_vectors,
        index=monitoring_index(test_data),
    )
    logger.info(
        f"MEWMA chart ({config.method.value}, lambda={config.lam}): "
        f"h={threshold:.4f}, {result.n_signals}/{result.n_points} signals"
    )
    return result


# =============================================================================
# MAIN MSPM FUNCTIONS
# =============================================================================

def analyze_multivariate_spc(
    train_data,
    test_data,
    t2_config: Optional[Union[Dict[str, Any], T2ChartConfig]] = None,
    mewma_config: Optional[Union[Dict[str, Any], MEWMAChartConfig]] = None,
) -> Dict[str, Union[T2Result, MEWMAResult]]:
    """
    Run the T² and/or MEWMA chart on one baseline / monitoring pair.

    Args:
        train_data: Baseline sample
        test_data: Monitoring sample
        t2_config: T² settings (dict or T2ChartConfig); skipped if None
        mewma_config: MEWMA settings (dict or MEWMAChartConfig); skipped if None

    Returns:
        Dictionary with 't2' and/or 'mewma' results
    """
    results = {}

    if t2_config is not None:
        config = validate_chart_config(t2_config, ChartType.T2)
        results[ChartType.T2.value] = fit_t2(train_data, test_data, **config.model_dump())

    if mewma_config is not None:
        config = validate_chart_config(mewma_config, ChartType.MEWMA)
        results[ChartType.MEWMA.value] = fit_mewma(train_data, test_data, **config.model_dump())

    return results


def format_chart_summary(result: Union[T2Result, MEWMAResult]) -> str:
    """Format chart results as markdown summary."""
    if isinstance(result, MEWMAResult):
        title = "MEWMA"
        settings = [
            f"**Smoothing (λ):** {result.lam}",
            f"**Target IC ARL:** {result.ic_arl:g}",
            f"**Limit Method:** {result.limit_method}",
        ]
    else:
        title = "Hotelling T²"
        settings = [
            f"**Threshold Rule:** {result.threshold_rule.value}",
            f"**IC Coverage:** {result.prob:.4f}",
        ]

    lines = [
        f"## {title} Chart",
        "",
        f"**Estimation:** {result.estimate.method.value}"
        f" ({result.estimate.n_samples} baseline rows, {result.estimate.n_features} variables)",
        *settings,
        f"**Points Analyzed:** {result.n_points}",
        "",
        "### Control Limit",
        f"- UCL: {result.threshold:.4f}",
        "",
        "### Statistical Control",
        f"- Out of Control: {result.n_signals} points ({result.signal_rate*100:.1f}%)",
    ]

    if result.first_signal is not None:
        lines.append(f"- First signal at observation {result.first_signal + 1}")
        lines.append("- **Out-of-control runs:**")
        for start, end in result.out_of_control_runs():
            lines.append(f"  - {start + 1}-{end + 1}" if end > start else f"  - {start + 1}")

    return "\n".join(lines)
