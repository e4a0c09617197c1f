"""
Multivariate Control Chart Tests
================================
Tests for the Hotelling T² and MEWMA charts: output alignment, the
EWMA recursion, the lambda = 1 limit, sustained shift detection and
error handling.

Run with: python -m pytest tests/test_charts.py -v
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from mspm.charts import (
    T2Result,
    MEWMAResult,
    fit_t2,
    fit_mewma,
    ewma_recursion,
    analyze_multivariate_spc,
    format_chart_summary,
)
from mspm.config_validation import ThresholdRule, MEWMAChartConfig
from mspm.estimation import estimate_parameters
from mspm.exceptions import InvalidConfiguration, DimensionMismatch, SingularCovariance


def create_shift_scenario(seed=42):
    """
    Baseline of 500 standard normal rows; monitoring of 50 in-control rows
    followed by 150 rows shifted by +2 in every coordinate.
    """
    rng = np.random.default_rng(seed)
    train = rng.standard_normal((500, 3))
    in_control = rng.standard_normal((50, 3))
    shifted = rng.standard_normal((150, 3)) + 2.0
    return train, np.vstack([in_control, shifted])


def create_identity_baseline():
    """Four rows with sample mean exactly 0 and sample covariance exactly I3."""
    U = 0.5 * np.array([
        [1.0, 1.0, 1.0],
        [1.0, -1.0, -1.0],
        [-1.0, 1.0, -1.0],
        [-1.0, -1.0, 1.0],
    ])
    return np.sqrt(3.0) * U


class TestT2Chart:

    @pytest.mark.parametrize("method", ["classical", "robust"])
    @pytest.mark.parametrize("rule", ["parametric", "nonparametric"])
    def test_output_alignment(self, method, rule):
        train, test = create_shift_scenario()
        result = fit_t2(train, test, method=method, threshold_rule=rule, ic_arl=200)

        assert isinstance(result, T2Result)
        assert len(result.monitoring_statistics) == len(result.exceedances) == len(test)
        assert len(result.train_statistics) == len(train)
        np.testing.assert_array_equal(
            result.exceedances, result.monitoring_statistics > result.threshold
        )
        assert np.all(result.monitoring_statistics >= 0)
        assert np.all(result.train_statistics >= 0)

    def test_parametric_threshold_value(self):
        from scipy import stats
        train, test = create_shift_scenario()
        result = fit_t2(train, test, ic_arl=200)

        p, n = 3, 500
        expected = p * (n ** 2 - 1) / (n * (n - p)) * stats.f.ppf(1 - 1 / 200, p, n - p)
        assert result.threshold == pytest.approx(expected)
        assert result.prob == pytest.approx(0.995)

    def test_far_matches_ic_arl(self):
        train, test = create_shift_scenario()
        by_arl = fit_t2(train, test, ic_arl=200)
        by_far = fit_t2(train, test, far=0.005)

        assert by_far.threshold == pytest.approx(by_arl.threshold)

    def test_nonparametric_close_to_parametric(self):
        train, test = create_shift_scenario()
        param = fit_t2(train, test, threshold_rule='parametric', ic_arl=200)
        nonparam = fit_t2(train, test, threshold_rule='nonparametric', ic_arl=200)

        assert nonparam.threshold_rule is ThresholdRule.NONPARAMETRIC
        assert 0.6 * param.threshold < nonparam.threshold < 1.5 * param.threshold

    def test_threshold_increases_with_arl(self):
        train, test = create_shift_scenario()
        limits = [fit_t2(train, test, ic_arl=arl).threshold for arl in (100, 200, 500)]
        assert all(a < b for a, b in zip(limits, limits[1:]))

    def test_sustained_shift(self):
        train, test = create_shift_scenario()
        result = fit_t2(train, test, ic_arl=200)

        # T² may miss individual points after the shift; it must still signal
        # far more often than in control
        in_control_rate = result.exceedances[:50].mean()
        shifted_rate = result.exceedances[50:].mean()
        assert in_control_rate < 0.1
        assert shifted_rate > max(0.2, 10 * in_control_rate)
        assert any(50 <= i <= 55 for i in result.signal_indices())

    def test_single_observation_vector(self):
        """A 1-D monitoring input of length p is one observation."""
        train, test = create_shift_scenario()
        single = fit_t2(train, test[60], ic_arl=200)
        batch = fit_t2(train, test[60:61], ic_arl=200)

        assert len(single.monitoring_statistics) == 1
        assert single.monitoring_statistics[0] == pytest.approx(batch.monitoring_statistics[0])

        mewma = fit_mewma(train, test[0], lam=0.1, ic_arl=200)
        assert mewma.ewma_vectors.shape == (1, 3)


class TestMEWMAChart:

    @pytest.mark.parametrize("method", ["classical", "robust"])
    def test_output_alignment(self, method):
        train, test = create_shift_scenario()
        result = fit_mewma(train, test, method=method, lam=0.1, ic_arl=200)

        assert isinstance(result, MEWMAResult)
        assert len(result.monitoring_statistics) == len(result.exceedances) == len(test)
        assert result.ewma_vectors.shape == test.shape
        np.testing.assert_array_equal(
            result.exceedances, result.monitoring_statistics > result.threshold
        )
        assert np.all(result.monitoring_statistics >= 0)

    def test_recursion_worked_example(self):
        """mean 0, cov I3, lambda 0.1, x_1 = (1, 1, 1) gives 0.57."""
        train = create_identity_baseline()
        est = estimate_parameters(train)
        np.testing.assert_allclose(est.mean, 0.0, atol=1e-12)
        np.testing.assert_allclose(est.covariance, np.eye(3), atol=1e-12)

        result = fit_mewma(train, np.array([[1.0, 1.0, 1.0]]), lam=0.1, ic_arl=200)

        np.testing.assert_allclose(result.ewma_vectors[0], [0.1, 0.1, 0.1])
        assert result.monitoring_statistics[0] == pytest.approx(0.57)

    def test_ewma_recursion(self):
        x = np.array([[1.0], [0.0], [2.0]])
        q = ewma_recursion(x, 0.5)

        np.testing.assert_allclose(q.ravel(), [0.5, 0.25, 1.125])

    def test_recursion_is_order_dependent(self):
        x = np.array([[1.0, 0.0], [0.0, 1.0], [3.0, -1.0]])
        forward = ewma_recursion(x, 0.3)
        reverse = ewma_recursion(x[::-1], 0.3)

        assert not np.allclose(forward[-1], reverse[-1])

    def test_lambda_one_matches_t2(self):
        train, test = create_shift_scenario()
        t2 = fit_t2(train, test, ic_arl=200)
        mewma = fit_mewma(train, test, lam=1.0, ic_arl=200)

        np.testing.assert_allclose(
            mewma.monitoring_statistics, t2.monitoring_statistics, rtol=1e-9, atol=1e-12
        )

    def test_threshold_increases_with_arl(self):
        train, test = create_shift_scenario()
        limits = [
            fit_mewma(train, test, lam=0.1, ic_arl=arl).threshold
            for arl in (100, 200, 500)
        ]
        assert all(a < b for a, b in zip(limits, limits[1:]))

    def test_sustained_shift(self):
        train, test = create_shift_scenario()
        result = fit_mewma(train, test, lam=0.1, ic_arl=200)

        post_shift = [i for i in result.signal_indices() if i >= 50]
        assert post_shift[0] <= 55
        assert result.exceedances[60:].all()

        runs = result.out_of_control_runs()
        assert runs[-1][1] == len(test) - 1


class TestChartErrors:

    @pytest.mark.parametrize("fit", [
        lambda tr, te: fit_t2(tr, te, method='bogus', ic_arl=200),
        lambda tr, te: fit_mewma(tr, te, method='bogus', lam=0.1, ic_arl=200),
    ])
    def test_invalid_method(self, fit):
        train, test = create_shift_scenario()
        with pytest.raises(InvalidConfiguration) as exc_info:
            fit(train, test)

        assert exc_info.value.parameter == 'method'
        assert exc_info.value.value == 'bogus'
        assert 'bogus' in str(exc_info.value)

    def test_invalid_threshold_rule(self):
        train, test = create_shift_scenario()
        with pytest.raises(InvalidConfiguration) as exc_info:
            fit_t2(train, test, threshold_rule='empirical', ic_arl=200)

        assert exc_info.value.parameter == 'threshold_rule'

    def test_both_far_and_arl(self):
        train, test = create_shift_scenario()
        with pytest.raises(InvalidConfiguration):
            fit_t2(train, test, far=0.005, ic_arl=200)

    def test_neither_far_nor_arl(self):
        train, test = create_shift_scenario()
        with pytest.raises(InvalidConfiguration):
            fit_t2(train, test)

    def test_mewma_requires_arl(self):
        train, test = create_shift_scenario()
        with pytest.raises(InvalidConfiguration):
            fit_mewma(train, test, lam=0.1)

    @pytest.mark.parametrize("lam", [0.0, 1.2])
    def test_mewma_lambda_range(self, lam):
        train, test = create_shift_scenario()
        with pytest.raises(InvalidConfiguration):
            fit_mewma(train, test, lam=lam, ic_arl=200)

    @pytest.mark.parametrize("fit", [
        lambda tr, te: fit_t2(tr, te, ic_arl=200),
        lambda tr, te: fit_mewma(tr, te, lam=0.1, ic_arl=200),
    ])
    def test_dimension_mismatch(self, fit):
        rng = np.random.default_rng(0)
        with pytest.raises(DimensionMismatch) as exc_info:
            fit(rng.standard_normal((100, 3)), rng.standard_normal((20, 2)))

        assert exc_info.value.train_shape == (100, 3)
        assert exc_info.value.test_shape == (20, 2)

    def test_empty_monitoring(self):
        rng = np.random.default_rng(0)
        with pytest.raises(DimensionMismatch):
            fit_t2(rng.standard_normal((100, 3)), np.empty((0, 3)), ic_arl=200)

    def test_non_finite_values(self):
        train, test = create_shift_scenario()
        test = test.copy()
        test[3, 1] = np.nan
        with pytest.raises(InvalidConfiguration):
            fit_t2(train, test, ic_arl=200)

    def test_singular_baseline(self):
        rng = np.random.default_rng(0)
        a = rng.standard_normal(100)
        train = np.column_stack([a, a, rng.standard_normal(100)])
        with pytest.raises(SingularCovariance):
            fit_t2(train, train[:10], ic_arl=200)

    def test_more_columns_than_rows(self):
        rng = np.random.default_rng(0)
        with pytest.raises(SingularCovariance):
            fit_mewma(rng.standard_normal((4, 5)), rng.standard_normal((10, 5)), lam=0.2, ic_arl=200)


class TestResults:

    def test_dataframe_index_preserved(self):
        train, test = create_shift_scenario()
        cols = ['pressure', 'flow', 'temperature']
        test_df = pd.DataFrame(test, columns=cols, index=pd.RangeIndex(1000, 1200))
        result = fit_mewma(pd.DataFrame(train, columns=cols), test_df, lam=0.2, ic_arl=200)

        frame = result.to_frame()
        assert list(frame.columns) == ['statistic', 'threshold', 'out_of_control']
        assert frame.index[0] == 1000
        assert frame['out_of_control'].sum() == result.n_signals

    def test_dataframe_column_mismatch(self):
        train, test = create_shift_scenario()
        with pytest.raises(DimensionMismatch):
            fit_t2(
                pd.DataFrame(train, columns=['a', 'b', 'c']),
                pd.DataFrame(test, columns=['a', 'c', 'b']),
                ic_arl=200,
            )

    def test_out_of_control_runs(self):
        train, _ = create_shift_scenario()
        result = T2Result(
            train_statistics=np.zeros(5),
            monitoring_statistics=np.array([1.0, 5.0, 6.0, 1.0, 7.0]),
            exceedances=np.array([False, True, True, False, True]),
            threshold=4.0,
            threshold_rule=ThresholdRule.PARAMETRIC,
            prob=0.99,
            estimate=estimate_parameters(train),
        )

        assert result.out_of_control_runs() == [(1, 2), (4, 4)]
        assert result.first_signal == 1
        assert result.n_signals == 3
        assert result.signal_rate == pytest.approx(0.6)

    def test_no_signals(self):
        train, _ = create_shift_scenario()
        result = fit_t2(train, train[:5] * 0.0 + train.mean(axis=0), ic_arl=200)

        assert result.first_signal is None
        assert result.out_of_control_runs() == []

    def test_to_dict(self):
        train, test = create_shift_scenario()
        d = fit_mewma(train, test, lam=0.1, ic_arl=200).to_dict()

        assert d['chart_type'] == 'mewma'
        assert d['lambda'] == 0.1
        assert len(d['monitoring_statistics']) == 200

    def test_format_summary(self):
        train, test = create_shift_scenario()
        t2_text = format_chart_summary(fit_t2(train, test, ic_arl=200))
        mewma_text = format_chart_summary(fit_mewma(train, test, lam=0.1, ic_arl=200))

        assert "Hotelling T² Chart" in t2_text
        assert "UCL" in t2_text
        assert "MEWMA Chart" in mewma_text
        assert "Out-of-control runs" in mewma_text

    def test_analyze_multivariate_spc(self):
        train, test = create_shift_scenario()
        results = analyze_multivariate_spc(
            train, test,
            t2_config={'method': 'classical', 'ic_arl': 200},
            mewma_config=MEWMAChartConfig(method='classical', lam=0.1, ic_arl=200),
        )

        assert set(results) == {'t2', 'mewma'}
        assert results['mewma'].lam == 0.1

    def test_analyze_skips_missing_config(self):
        train, test = create_shift_scenario()
        results = analyze_multivariate_spc(train, test, t2_config={'far': 0.01})

        assert set(results) == {'t2'}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
