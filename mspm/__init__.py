"""
MSPM - Multivariate Statistical Process Monitoring
==================================================
Hotelling T² and MEWMA control charts for Phase II monitoring of a
multivariate process against a baseline sample.

Components:
- estimation: Classical and robust (MCD) mean / covariance estimates
- control_limits: F-quantile, KDE-quantile and MEWMA control limits
- charts: Hotelling T² and MEWMA charts with result summaries
- config_validation: Pydantic chart configuration schemas
- data_validation: Observation matrix checks
- exceptions: InvalidConfiguration, SingularCovariance, DimensionMismatch

Usage:
    from mspm import fit_t2, fit_mewma
    t2 = fit_t2(train, test, method='classical', threshold_rule='parametric', ic_arl=200)
    mewma = fit_mewma(train, test, method='robust', lam=0.1, ic_arl=200)
"""

from .exceptions import (
    MSPMError,
    InvalidConfiguration,
    SingularCovariance,
    DimensionMismatch,
)

from .config_validation import (
    EstimationMethod,
    ThresholdRule,
    ChartType,
    T2ChartConfig,
    MEWMAChartConfig,
    validate_chart_config,
    load_chart_config,
)

from .data_validation import (
    as_observation_matrix,
    validate_observation_matrices,
)

from .estimation import (
    EstimatePair,
    estimate_parameters,
    squared_mahalanobis,
)

from .control_limits import (
    MEWMA_LIMIT_METHOD,
    f_control_limit,
    silverman_bandwidth,
    kde_quantile_limit,
    mewma_arl,
    mewma_control_limit,
)

from .charts import (
    T2Result,
    MEWMAResult,
    fit_t2,
    fit_mewma,
    ewma_recursion,
    analyze_multivariate_spc,
    format_chart_summary,
)

__version__ = "1.0.0"
