from __future__ import annotations

import asyncio

import pytest

from core.execution_guard import ExecutionGuard
from core.leverage_manager import LeverageManager
from core.position_sizer import PositionSizer
from core.settings import LeverageConfig
from core.state import ExchangePosition
from tests.fakes import FakeClock, FakeExchange


class VolatileExchange(FakeExchange):
    def __init__(self, volatility, **kwargs):
        super().__init__(**kwargs)
        self.volatility = volatility

    async def get_volatility(self, symbol):
        if isinstance(self.volatility, Exception):
            raise self.volatility
        return self.volatility


def _manager(exchange, clock=None, config=None):
    guard = ExecutionGuard(exchange, dry_run=False, timeout=1.0)
    return LeverageManager(guard, PositionSizer(), config, clock=clock or FakeClock())


@pytest.mark.parametrize(
    "volatility,margin_ratio,expected",
    [
        (0.01, 0.10, 5),
        (0.06, 0.10, 3),
        (0.02, 0.72, 3),
        (0.02, 0.99, 1),
    ],
)
def test_target_leverage(volatility, margin_ratio, expected):
    assert _manager(FakeExchange()).target_leverage(volatility, margin_ratio) == expected


def test_target_never_exceeds_safe_ceiling():
    manager = _manager(FakeExchange(), config=LeverageConfig(base_leverage=20, safe_ceiling=4))

    assert manager.target_leverage(0.0, 0.0) == 4


def test_lowers_leverage_above_target_then_cools_down():
    clock = FakeClock()
    exchange = FakeExchange(account_value=1000.0, positions=[
        ExchangePosition("SOL", 72.0, 100.0, notional_value=7200.0, leverage=10),
    ])
    manager = _manager(exchange, clock=clock)

    async def _run():
        first = await manager.adjust_leverage(exchange, "SOL")
        clock.advance(30)
        cooling = await manager.adjust_leverage(exchange, "SOL")
        clock.advance(31)
        after = await manager.adjust_leverage(exchange, "SOL")
        return first, cooling, after

    first, cooling, after = asyncio.run(_run())

    assert first == 3
    assert cooling is None
    assert after == 3
    assert exchange.leverage_calls == [("SOL", "cross", 3), ("SOL", "cross", 3)]


def test_leaves_conservative_position_alone():
    exchange = FakeExchange(account_value=1000.0, positions=[
        ExchangePosition("SOL", 3.0, 100.0, leverage=3),
    ])

    result = asyncio.run(_manager(exchange).adjust_leverage(exchange, "SOL"))

    assert result is None
    assert exchange.leverage_calls == []


def test_no_position_means_no_change():
    exchange = FakeExchange(account_value=1000.0)

    assert asyncio.run(_manager(exchange).adjust_leverage(exchange, "SOL")) is None


def test_snapshot_failure_is_not_raised():
    exchange = FakeExchange()
    exchange.fail_reads = True

    assert asyncio.run(_manager(exchange).adjust_leverage(exchange, "SOL")) is None


def test_client_volatility_feeds_target():
    exchange = VolatileExchange(0.06, account_value=1000.0, positions=[
        ExchangePosition("ETH", 0.5, 2000.0, leverage=10),
    ])

    assert asyncio.run(_manager(exchange).adjust_leverage(exchange, "ETH")) == 3


def test_volatility_error_falls_back_to_default():
    exchange = VolatileExchange(RuntimeError("candles unavailable"), account_value=1000.0, positions=[
        ExchangePosition("ETH", 0.5, 2000.0, leverage=10),
    ])

    # Default volatility with a healthy account keeps the 5x base
    assert asyncio.run(_manager(exchange).adjust_leverage(exchange, "ETH")) == 5
