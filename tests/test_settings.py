from __future__ import annotations

from types import SimpleNamespace

import pytest

from core.errors import ConfigError
from core.settings import LeverageConfig, MonitorConfig, PyramidConfig


def test_percent_lists_become_fractions():
    cfg = SimpleNamespace(
        PYRAMID_MARGIN_PERCENTAGES=[5, 10, 15, 20],
        PYRAMID_EXIT_PERCENTAGES=[50, 100],
        MAX_ACCOUNT_EXPOSURE=0.5,
    )

    pyramid = PyramidConfig.from_config(cfg)

    assert pyramid.level_margin_pcts == pytest.approx((0.05, 0.10, 0.15, 0.20))
    assert pyramid.exit_fractions == pytest.approx((0.5, 1.0))
    assert pyramid.max_exposure == 0.5
    assert pyramid.level_leverage == (5.0, 5.0, 5.0, 5.0)


def test_short_margin_table_reuses_last_level():
    pyramid = PyramidConfig.from_config(SimpleNamespace(PYRAMID_MARGIN_PERCENTAGES=[10, 20]))

    assert pyramid.margin_pct_for_level(0) == pytest.approx(0.10)
    assert pyramid.margin_pct_for_level(3) == pytest.approx(0.20)


def test_exit_fraction_is_clamped():
    pyramid = PyramidConfig(exit_fractions=(0.5, 1.5))

    assert pyramid.exit_fraction(0) == 0.5
    assert pyramid.exit_fraction(1) == 1.0
    assert pyramid.exit_fraction(9) == 1.0


def test_decimals_lookup_is_case_insensitive():
    pyramid = PyramidConfig()

    assert pyramid.decimals_for("sol") == 2
    assert pyramid.decimals_for("ETH") == 4


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_levels": 0},
        {"level_margin_pcts": (0.1, 1.5)},
        {"level_leverage": (0.5,)},
        {"max_exposure": 0.0},
        {"safety_buffer": 1.2},
        {"min_order_size": 0.0},
        {"entry_price_buffer": -0.01},
    ],
)
def test_invalid_pyramid_config_raises(overrides):
    with pytest.raises(ConfigError):
        PyramidConfig(**overrides).validate()


def test_percent_values_left_as_percent_are_rejected():
    # A 25 that was never divided by 100 would commit 25x the account
    with pytest.raises(ConfigError):
        PyramidConfig(level_margin_pcts=(10.0, 15.0)).validate()


def test_monitor_thresholds_must_ascend():
    with pytest.raises(ConfigError):
        MonitorConfig.from_config(SimpleNamespace(ALERT_WARNING=0.9, ALERT_CRITICAL=0.85))


def test_monitor_defaults_round_trip_to_dict():
    monitor = MonitorConfig.from_config(SimpleNamespace())

    data = monitor.to_dict()

    assert data["emergency_cooldown_seconds"] == 300.0
    assert data["alert_history_size"] == 100


def test_leverage_config_ceiling_override():
    cfg = SimpleNamespace(SAFE_LEVERAGE_CEILING=5, BASE_LEVERAGE=8)

    assert LeverageConfig.from_config(cfg).safe_ceiling == 5.0
    assert LeverageConfig.from_config(cfg, ceiling=3).safe_ceiling == 3.0
    assert LeverageConfig.from_config(cfg).base_leverage == 8.0
