"""
Tests for return and risk analytics over daily value series, and the
SPY-equivalent benchmark history built from deposits.
"""

import unittest
from datetime import date

from benchmark import (
    build_benchmark_history,
    calculate_alpha_beta,
    calculate_cagr,
    calculate_calmar_ratio,
    calculate_daily_returns,
    calculate_max_drawdown,
    calculate_sharpe_ratio,
    calculate_total_return_percent,
    calculate_volatility,
    summarize_benchmark_history,
)
from tests.conftest import create_price_history


class TestReturns(unittest.TestCase):
    """Simple, compound and daily returns"""

    def test_total_return(self):
        """Percent change from start to end value"""
        self.assertAlmostEqual(calculate_total_return_percent(8000, 9200), 15.0)

    def test_total_return_zero_start(self):
        """Zero start value gives zero"""
        self.assertEqual(calculate_total_return_percent(0, 9200), 0)

    def test_cagr_one_year(self):
        """One year at 10% is 10% CAGR"""
        self.assertAlmostEqual(calculate_cagr(1000, 1100, 365), 10.0)

    def test_cagr_two_years(self):
        """Two years compounding at 10%"""
        self.assertAlmostEqual(calculate_cagr(1000, 1210, 730), 10.0)

    def test_cagr_degenerate(self):
        """Missing values or zero days give zero"""
        self.assertEqual(calculate_cagr(0, 1100, 365), 0)
        self.assertEqual(calculate_cagr(1000, 0, 365), 0)
        self.assertEqual(calculate_cagr(1000, 1100, 0), 0)

    def test_daily_returns(self):
        """First day is 0, then day-over-day change"""
        returns = calculate_daily_returns([400, 404, 399.96])
        self.assertEqual(returns[0], 0)
        self.assertAlmostEqual(returns[1], 0.01)
        self.assertAlmostEqual(returns[2], -0.01)

    def test_daily_returns_short_series(self):
        """A single value has one zero return"""
        self.assertEqual(calculate_daily_returns([100]), [0])

    def test_daily_returns_skip_zero_previous(self):
        """A zero previous value gives a zero return"""
        self.assertEqual(calculate_daily_returns([0, 100]), [0, 0])


class TestRisk(unittest.TestCase):
    """Volatility, drawdown and risk-adjusted ratios"""

    def test_flat_series_has_no_volatility(self):
        """Flat returns have zero volatility"""
        self.assertEqual(calculate_volatility([0, 0, 0, 0]), 0)

    def test_volatility_annualized(self):
        """Daily standard deviation scaled by sqrt(252)"""
        # Alternating +1%/-1% has population std 0.01 around a zero mean
        returns = [0.01, -0.01, 0.01, -0.01]
        self.assertAlmostEqual(calculate_volatility(returns), 0.01 * (252 ** 0.5) * 100)

    def test_volatility_short_series(self):
        """Fewer than two returns have zero volatility"""
        self.assertEqual(calculate_volatility([0.05]), 0)

    def test_sharpe(self):
        """Return over volatility, zero when volatility is zero"""
        self.assertAlmostEqual(calculate_sharpe_ratio(12, 20), 0.5)
        self.assertEqual(calculate_sharpe_ratio(12, 0), 0)

    def test_max_drawdown(self):
        """Peak-to-trough drop with its indexes"""
        self.assertEqual(calculate_max_drawdown([100, 120, 90, 130]), (-25.0, 1, 2))

    def test_max_drawdown_rising_series(self):
        """A rising series has no drawdown"""
        self.assertEqual(calculate_max_drawdown([100, 110, 120])[0], 0)

    def test_max_drawdown_short_series(self):
        """A single value has no drawdown"""
        self.assertEqual(calculate_max_drawdown([100]), (0, 0, 0))

    def test_calmar(self):
        """Return over drawdown magnitude"""
        self.assertAlmostEqual(calculate_calmar_ratio(10, -25), 0.4)
        self.assertEqual(calculate_calmar_ratio(10, 0), 0)

    def test_beta_of_identical_series_is_one(self):
        """A series against itself has beta 1 and alpha 0"""
        returns = [0, 0.01, -0.02, 0.015, 0.005]
        alpha, beta = calculate_alpha_beta(returns, returns)
        self.assertAlmostEqual(beta, 1.0)
        self.assertAlmostEqual(alpha, 0.0)

    def test_beta_of_doubled_series(self):
        """Doubled returns have beta 2"""
        reference = [0, 0.01, -0.02, 0.015, 0.005]
        doubled = [r * 2 for r in reference]
        _, beta = calculate_alpha_beta(doubled, reference)
        self.assertAlmostEqual(beta, 2.0)

    def test_alpha_beta_unusable_series(self):
        """Mismatched or flat reference series fall back to beta 1"""
        self.assertEqual(calculate_alpha_beta([0, 0.01], [0]), (0, 1.0))
        self.assertEqual(calculate_alpha_beta([0, 0.01, 0.02], [0, 0.01, 0.01]), (0, 1.0))


class TestBenchmarkHistory(unittest.TestCase):
    """SPY-equivalent value from deposit history"""

    def setUp(self):
        self.deposits = [
            {'deposit_date': '2024-01-02', 'amount': 1000, 'spy_shares': 10.0},
            {'deposit_date': '2024-01-04', 'amount': 1100, 'spy_shares': 10.0},
        ]
        # Closes for Jan 1 through Jan 5
        self.spy = create_price_history([100, 100, 105, 110, 99], start_date='2024-01-01')

    def test_history_starts_at_first_deposit(self):
        """Values start on the first deposit date"""
        history = build_benchmark_history(self.deposits, self.spy, today=date(2024, 1, 5))
        self.assertEqual(history['dates'], ['2024-01-02', '2024-01-03', '2024-01-04', '2024-01-05'])
        self.assertEqual(history['values'], [1000, 1050, 2200, 1980])
        self.assertEqual(history['invested'], [1000, 1000, 2100, 2100])
        self.assertEqual(history['closes'], [100, 105, 110, 99])

    def test_history_stops_at_today(self):
        """No values past today"""
        history = build_benchmark_history(self.deposits, self.spy, today=date(2024, 1, 3))
        self.assertEqual(history['dates'], ['2024-01-02', '2024-01-03'])

    def test_history_without_deposits_or_prices(self):
        """Nothing to build from gives empty lists"""
        empty = {'dates': [], 'values': [], 'invested': [], 'closes': []}
        self.assertEqual(build_benchmark_history([], self.spy), empty)
        self.assertEqual(build_benchmark_history(self.deposits, None), empty)

    def test_summary(self):
        """Return and drawdown over the built history"""
        history = build_benchmark_history(self.deposits, self.spy, today=date(2024, 1, 5))
        summary = summarize_benchmark_history(history)

        # Final value 1980 against 2100 invested
        self.assertAlmostEqual(summary['total_return'], -5.71, places=2)
        # SPY closes fell from a peak of 110 to 99
        self.assertAlmostEqual(summary['max_drawdown'], -10.0, places=2)
        self.assertLess(summary['cagr'], 0)
        self.assertNotIn('alpha', summary)

    def test_summary_with_comparison(self):
        """Alpha and beta appear with a comparison series"""
        history = build_benchmark_history(self.deposits, self.spy, today=date(2024, 1, 5))
        summary = summarize_benchmark_history(history, comparison_closes=history['closes'])
        self.assertAlmostEqual(summary['beta'], 1.0)
        self.assertAlmostEqual(summary['alpha'], 0.0)

    def test_summary_of_short_history(self):
        """An empty history summarizes to zeros"""
        summary = summarize_benchmark_history({'dates': [], 'values': [], 'invested': [], 'closes': []}, [])
        self.assertEqual(summary['total_return'], 0)
        self.assertEqual(summary['beta'], 1.0)


if __name__ == '__main__':
    unittest.main()
