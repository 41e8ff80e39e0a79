import unittest

import pytest

from backtest.config import (
    BacktestSettings,
    CapitalSettings,
    MonteCarloConfig,
    load_backtest_settings,
    monte_carlo_config_from,
    normalize_capital,
    normalize_settings,
    optimizer_config_from,
    read_yaml_config,
)


class TestNormalizeSettings(unittest.TestCase):
    def test_defaults(self):
        self.assertEqual(normalize_settings(None), BacktestSettings())
        self.assertEqual(normalize_settings({}), BacktestSettings())

    def test_camel_case_and_fallbacks(self):
        s = normalize_settings({
            "stopLossAtr": 2,
            "atr_period": "bad",
            "partialTakeProfitPercent": 150,
            "trade_direction": "sideways",
            "slippageBps": -5,
            "allowSameBarExit": "false",
        })
        self.assertEqual(s.stop_loss_atr, 2.0)
        self.assertEqual(s.atr_period, 14)
        self.assertEqual(s.partial_take_profit_percent, 100.0)
        self.assertEqual(s.trade_direction, "long")
        self.assertEqual(s.slippage_bps, 0.0)
        self.assertFalse(s.allow_same_bar_exit)
        self.assertTrue(s.requires_atr_for_entry)

    def test_legacy_entry_confirmation_alias(self):
        self.assertEqual(normalize_settings({"entryConfirmation": "rsi"}).trade_filter_mode, "rsi")
        s = normalize_settings({"tradeFilterMode": "volume", "entryConfirmation": "rsi"})
        self.assertEqual(s.trade_filter_mode, "volume")

    def test_settings_object_passes_through(self):
        s = BacktestSettings(trade_direction="both")
        self.assertIs(normalize_settings(s), s)


def test_capital_normalization() -> None:
    cap = normalize_capital({"initialCapital": "5000", "commission": 0.2, "mode": "fixed", "fixedTradeAmount": 1000})
    assert cap.initial_capital == 5000.0
    assert cap.commission_rate == pytest.approx(0.002)
    assert cap.sizing_mode == "fixed"
    assert cap.fixed_trade_amount == 1000.0
    assert normalize_capital(None) == CapitalSettings()


def test_capital_rejects_non_positive_initial() -> None:
    with pytest.raises(ValueError):
        normalize_capital({"initial_capital": 0})


def test_policy_configs_from_mappings() -> None:
    assert optimizer_config_from({"top_n": 5}).top_n == 5
    assert monte_carlo_config_from(None) == MonteCarloConfig()
    with pytest.raises(ValueError):
        optimizer_config_from({"topN": 5})


def test_env_settings(monkeypatch) -> None:
    monkeypatch.setenv("BACKTEST_TRADE_DIRECTION", "short")
    monkeypatch.setenv("BACKTEST_SLIPPAGE_BPS", "3")
    s = load_backtest_settings()
    assert s.trade_direction == "short"
    assert s.slippage_rate == pytest.approx(0.0003)


def test_read_yaml_config(tmp_path) -> None:
    empty = tmp_path / "empty.yml"
    empty.write_text("", encoding="utf-8")
    assert read_yaml_config(empty) == {}

    good = tmp_path / "good.yml"
    good.write_text("settings:\n  stopLossAtr: 1.5\n", encoding="utf-8")
    assert read_yaml_config(good)["settings"]["stopLossAtr"] == 1.5

    bad = tmp_path / "bad.yml"
    bad.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        read_yaml_config(bad)


if __name__ == "__main__":
    unittest.main()
