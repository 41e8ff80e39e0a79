import sys

import numpy as np
import pandas as pd
import pytest
import yaml

from backtest import cli


@pytest.fixture
def bars_csv(tmp_path):
    rng = np.random.default_rng(11)
    closes = 100 * np.exp(np.cumsum(rng.normal(0, 0.01, 300)))
    df = pd.DataFrame({
        "time": 1_700_000_000 + np.arange(300) * 3600,
        "open": closes,
        "high": closes * 1.004,
        "low": closes * 0.996,
        "close": closes,
        "volume": 1.0,
    })
    path = tmp_path / "bars.csv"
    df.to_csv(path, index=False)
    return path


@pytest.fixture(autouse=True)
def quiet_logs(monkeypatch):
    monkeypatch.setenv("LOG_ECHO", "0")
    monkeypatch.setenv("LOG_TO_DB", "0")


def _main(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["backtest-lab", *argv])
    cli.main()


def test_run(monkeypatch, capsys, bars_csv) -> None:
    _main(monkeypatch, "run", "--data", str(bars_csv), "--strategy", "sma_crossover")
    assert "=== Backtest Results ===" in capsys.readouterr().out


def test_walk_forward_with_config(monkeypatch, capsys, bars_csv, tmp_path) -> None:
    config = tmp_path / "wf.yml"
    config.write_text(yaml.safe_dump({
        "params": {"fast_period": 5, "slow_period": 20},
        "walk_forward": {
            "optimization_window": 120,
            "test_window": 60,
            "ranges": [{"name": "fast_period", "min": 4, "max": 8, "step": 2}],
            "optimizer": {"min_trades": 1},
        },
    }))
    _main(monkeypatch, "walk-forward", "--data", str(bars_csv), "--config", str(config), "--seed", "1")
    out = capsys.readouterr().out
    assert "=== Walk-Forward Analysis ===" in out


def test_monte_carlo(monkeypatch, capsys, bars_csv) -> None:
    _main(monkeypatch, "monte-carlo", "--data", str(bars_csv), "--simulations", "40", "--block-size", "0",
          "--seed", "3")
    out = capsys.readouterr().out
    assert "=== Backtest Results ===" in out
    assert "Monte Carlo Robustness" in out


def test_bad_ranges_rejected() -> None:
    with pytest.raises(ValueError):
        cli._parse_ranges([{"name": "fast_period", "min": 1}])
    with pytest.raises(ValueError):
        cli._parse_ranges({"fast_period": 1})
