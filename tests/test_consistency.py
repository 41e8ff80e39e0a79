import unittest

from backtest.config import ConsistencyTolerances
from backtest.consistency import inconsistencies, is_result_consistent, select_result
from backtest.metrics import BacktestResult


def _result(**overrides):
    base = dict(
        total_trades=10, winning_trades=6, losing_trades=4, win_rate=60.0,
        net_profit=500.0, avg_trade=50.0, sharpe_ratio=1.2,
    )
    base.update(overrides)
    return BacktestResult(**base)


class TestConsistency(unittest.TestCase):
    def test_consistent_result(self):
        self.assertTrue(is_result_consistent(_result()))
        self.assertTrue(is_result_consistent(BacktestResult()))

    def test_trade_count_mismatch(self):
        self.assertFalse(is_result_consistent(_result(losing_trades=3)))

    def test_win_rate_tolerance(self):
        self.assertTrue(is_result_consistent(_result(win_rate=60.9)))
        self.assertFalse(is_result_consistent(_result(win_rate=62.0)))
        loose = ConsistencyTolerances(win_rate_tolerance=5.0)
        self.assertTrue(is_result_consistent(_result(win_rate=62.0), loose))

    def test_avg_trade_tolerance(self):
        self.assertTrue(is_result_consistent(_result(avg_trade=56.0)))
        self.assertFalse(is_result_consistent(_result(avg_trade=60.0)))
        tiny = _result(net_profit=0.05, avg_trade=0.014)
        self.assertTrue(is_result_consistent(tiny))

    def test_sharpe_bounds(self):
        self.assertFalse(is_result_consistent(_result(sharpe_ratio=9.0)))
        self.assertFalse(is_result_consistent(_result(sharpe_ratio=float("nan"))))
        self.assertEqual(len(inconsistencies(_result(sharpe_ratio=float("inf"), losing_trades=0))), 2)

    def test_select_result(self):
        primary = _result(net_profit=100.0, avg_trade=10.0)
        good = _result()
        bad = _result(win_rate=10.0)
        self.assertIs(select_result(primary, good), good)
        self.assertIs(select_result(primary, bad), primary)
        self.assertIs(select_result(primary, None), primary)


if __name__ == "__main__":
    unittest.main()
