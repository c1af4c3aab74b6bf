from __future__ import annotations

import asyncio
import logging

import pytest

from core.errors import ExchangeError
from core.execution_guard import ExecutionGuard
from core.margin_monitor import MarginMonitor, classify_alerts, decide_action
from core.position_sizer import MarginHealth, PositionSizer
from core.settings import MonitorConfig
from core.state import ActionKind, AlertLevel, ExchangePosition, MarginAlert
from tests.fakes import FakeClock, FakeExchange, RecordingNotifier, metrics


def _emergency_book() -> list[ExchangePosition]:
    # 800 + 160 margin on a 1000 account -> 96%
    return [
        ExchangePosition("SOL", 10.0, 400.0, notional_value=4000.0, leverage=5),
        ExchangePosition("ETH", -0.5, 1600.0, notional_value=800.0, leverage=5),
    ]


def _critical_book() -> list[ExchangePosition]:
    # 600 + 260 -> 86%
    return [
        ExchangePosition("SOL", 10.0, 300.0, notional_value=3000.0, leverage=5),
        ExchangePosition("ETH", -1.0, 1300.0, notional_value=1300.0, leverage=5),
    ]


class _FakeLeverageManager:
    def __init__(self, result=3):
        self.result = result
        self.calls = []

    async def adjust_leverage(self, client, symbol):
        self.calls.append(symbol)
        return self.result


def _monitor(exchange: FakeExchange, *, config: MonitorConfig | None = None,
             leverage_manager=None, clock: FakeClock | None = None):
    notifier = RecordingNotifier()
    guard = ExecutionGuard(exchange, dry_run=False, timeout=1.0)
    monitor = MarginMonitor(guard, PositionSizer(), notifier, leverage_manager,
                            config or MonitorConfig(interval_seconds=0.01), clock=clock or FakeClock())
    return monitor, notifier


@pytest.mark.parametrize(
    "ratio,expected",
    [
        (0.49, None),
        (0.50, AlertLevel.INFO),
        (0.70, AlertLevel.WARNING),
        (0.85, AlertLevel.CRITICAL),
        (0.95, AlertLevel.EMERGENCY),
        (1.00, AlertLevel.EMERGENCY),
    ],
)
def test_classify_alerts_thresholds(ratio, expected):
    alerts = classify_alerts(ratio, 1000.0, 1000.0, MonitorConfig(), now=0.0)

    if expected is None:
        assert alerts == []
    else:
        assert [a.level for a in alerts] == [expected]


def test_classify_alerts_adds_low_free_margin_warning():
    alerts = classify_alerts(0.96, 40.0, 1000.0, MonitorConfig(), now=0.0)

    assert [a.level for a in alerts] == [AlertLevel.EMERGENCY, AlertLevel.WARNING]
    assert alerts[0].recommended_action == ActionKind.CLOSE_POSITION
    assert "Low available margin" in alerts[1].message


def _health(ratio: float, requires_action: bool = False) -> MarginHealth:
    return MarginHealth(is_healthy=False, margin_ratio=ratio, leverage_ratio=1.0,
                        requires_action=requires_action)


def _alert(level: AlertLevel) -> MarginAlert:
    return MarginAlert(level=level, message="", margin_ratio=0.0, available_margin=0.0, timestamp=0.0)


def test_decide_emergency_respects_cooldown():
    cfg = MonitorConfig()
    alerts = [_alert(AlertLevel.EMERGENCY)]

    fresh = decide_action(metrics(), _emergency_book(), alerts, _health(0.96), None, 1000.0, cfg)
    cooling = decide_action(metrics(), _emergency_book(), alerts, _health(0.96), 900.0, 1000.0, cfg)
    elapsed = decide_action(metrics(), _emergency_book(), alerts, _health(0.96), 700.0, 1000.0, cfg)

    assert fresh.kind == ActionKind.CLOSE_POSITION
    assert (fresh.symbol, fresh.size, fresh.is_buy) == ("SOL", 10.0, False)
    assert cooling.kind == ActionKind.NONE
    assert "cooldown" in cooling.reason
    assert elapsed.kind == ActionKind.CLOSE_POSITION


def test_decide_critical_halves_largest_position():
    action = decide_action(metrics(), _critical_book(), [_alert(AlertLevel.CRITICAL)],
                           _health(0.86), None, 0.0, MonitorConfig())

    assert action.kind == ActionKind.REDUCE_POSITION
    assert (action.symbol, action.size, action.is_buy) == ("SOL", 5.0, False)


def test_decide_critical_skips_dust_reduction():
    book = [ExchangePosition("SOL", 0.015, 100.0, leverage=5)]

    action = decide_action(metrics(), book, [_alert(AlertLevel.CRITICAL)],
                           _health(0.86), None, 0.0, MonitorConfig())

    assert action.kind == ActionKind.NONE


def test_decide_warning_targets_positions_above_ceiling():
    book = [
        ExchangePosition("SOL", 10.0, 100.0, leverage=10),
        ExchangePosition("ETH", 1.0, 1000.0, leverage=3),
    ]

    warned = decide_action(metrics(), book, [_alert(AlertLevel.WARNING)],
                           _health(0.72), None, 0.0, MonitorConfig())
    leverage_only = decide_action(metrics(), book, [], _health(0.2, requires_action=True),
                                  None, 0.0, MonitorConfig())
    calm = decide_action(metrics(), book, [_alert(AlertLevel.INFO)], _health(0.55), None, 0.0, MonitorConfig())

    assert warned.kind == ActionKind.ADJUST_LEVERAGE
    assert warned.symbols == ["SOL"]
    assert leverage_only.kind == ActionKind.ADJUST_LEVERAGE
    assert calm.kind == ActionKind.NONE


def test_emergency_close_then_cooldown_then_second_close():
    clock = FakeClock()
    exchange = FakeExchange(account_value=1000.0, positions=_emergency_book())
    monitor, notifier = _monitor(exchange, clock=clock)

    async def _run():
        first = await monitor.check_margin_health()
        clock.advance(60)
        second = await monitor.check_margin_health()
        orders_in_cooldown = len(exchange.orders)
        clock.advance(300)
        third = await monitor.check_margin_health()
        return first, second, orders_in_cooldown, third

    first, second, orders_in_cooldown, third = asyncio.run(_run())

    emergencies = [a for a in first.alerts if a.level == AlertLevel.EMERGENCY]
    assert len(emergencies) == 1
    assert emergencies[0].recommended_action == ActionKind.CLOSE_POSITION
    assert first.action.kind == ActionKind.CLOSE_POSITION
    assert first.margin_ratio == pytest.approx(0.96)
    assert exchange.orders[0] == {
        "symbol": "SOL", "is_buy": False, "size": 10.0, "order_type": "market",
        "limit_price": None, "reduce_only": True,
    }

    assert second.highest_level == AlertLevel.EMERGENCY
    assert second.action.kind == ActionKind.NONE
    assert orders_in_cooldown == 1

    assert third.action.kind == ActionKind.CLOSE_POSITION
    assert len(exchange.orders) == 2

    assert [a["type"] for a in notifier.alerts] == ["emergency_close", "emergency_close"]
    assert len(notifier.margin_updates) == 3
    assert len(monitor.get_alert_history()) == 3


def test_failed_emergency_close_is_reported_and_not_cooled_down():
    clock = FakeClock()
    exchange = FakeExchange(account_value=1000.0, positions=_emergency_book())
    exchange.fail_orders = True
    monitor, notifier = _monitor(exchange, clock=clock)

    async def _run():
        first = await monitor.check_margin_health()
        clock.advance(10)
        second = await monitor.check_margin_health()
        return first, second

    first, second = asyncio.run(_run())

    assert first.action_error is not None
    assert first.margin_ratio == pytest.approx(0.96)
    assert second.action.kind == ActionKind.CLOSE_POSITION
    assert len(exchange.orders) == 2
    assert notifier.alerts == []


def test_critical_tick_reduces_largest_position():
    exchange = FakeExchange(account_value=1000.0, positions=_critical_book())
    monitor, notifier = _monitor(exchange)

    status = asyncio.run(monitor.check_margin_health())

    assert status.action.kind == ActionKind.REDUCE_POSITION
    order = exchange.orders[0]
    assert (order["symbol"], order["size"], order["reduce_only"]) == ("SOL", 5.0, True)
    assert notifier.alerts[0]["type"] == "position_reduced"


def test_warning_tick_asks_leverage_manager():
    exchange = FakeExchange(account_value=1000.0, positions=[
        ExchangePosition("SOL", 72.0, 100.0, notional_value=7200.0, leverage=10),
    ])
    manager = _FakeLeverageManager(result=3)
    monitor, notifier = _monitor(exchange, leverage_manager=manager)

    status = asyncio.run(monitor.check_margin_health())

    assert status.highest_level == AlertLevel.WARNING
    assert manager.calls == ["SOL"]
    assert exchange.orders == []
    assert notifier.alerts[0]["type"] == "leverage_adjusted"
    assert notifier.alerts[0]["new_leverage"] == 3


def test_healthy_account_takes_no_action():
    exchange = FakeExchange(account_value=1000.0, positions=[
        ExchangePosition("SOL", 10.0, 100.0, notional_value=1000.0, leverage=5),
    ])
    monitor, notifier = _monitor(exchange)

    status = asyncio.run(monitor.check_margin_health())

    assert status.is_healthy
    assert status.alerts == []
    assert status.action.kind == ActionKind.NONE
    assert exchange.orders == []
    assert notifier.margin_updates == [status]
    assert monitor.last_status is status


def test_report_only_check_never_dispatches():
    exchange = FakeExchange(account_value=1000.0, positions=_emergency_book())
    monitor, _ = _monitor(exchange)

    status = asyncio.run(monitor.check_margin_health(dispatch=False))

    assert status.highest_level == AlertLevel.EMERGENCY
    assert exchange.orders == []


def test_direct_check_surfaces_exchange_errors():
    exchange = FakeExchange()
    exchange.fail_reads = True
    monitor, _ = _monitor(exchange)

    with pytest.raises(ExchangeError):
        asyncio.run(monitor.check_margin_health())


def test_alert_history_is_bounded():
    exchange = FakeExchange(account_value=1000.0, positions=_emergency_book())
    monitor, _ = _monitor(exchange)

    async def _run():
        for _ in range(120):
            await monitor.check_margin_health(dispatch=False)

    asyncio.run(_run())

    assert len(monitor.get_alert_history()) == 100
    monitor.clear_alert_history()
    assert monitor.get_alert_history() == []


def test_loop_survives_failing_ticks(caplog: pytest.LogCaptureFixture):
    exchange = FakeExchange(account_value=1000.0)
    exchange.fail_reads = True
    monitor, _ = _monitor(exchange)

    async def _run():
        await monitor.start()
        await asyncio.sleep(0.05)
        exchange.fail_reads = False
        await asyncio.sleep(0.05)
        still_running = monitor.is_active()
        await monitor.stop()
        return still_running

    with caplog.at_level(logging.ERROR):
        still_running = asyncio.run(_run())

    assert still_running
    assert monitor.last_status is not None
    assert any("Margin check failed" in rec.message for rec in caplog.records)


def test_start_and_stop_are_idempotent():
    monitor, _ = _monitor(FakeExchange())

    async def _run():
        await monitor.start()
        task = monitor._task
        await monitor.start()
        same_task = monitor._task is task
        active = monitor.is_active()
        await monitor.stop()
        await monitor.stop()
        return same_task, active

    same_task, active = asyncio.run(_run())

    assert same_task and active
    assert not monitor.is_active()


def test_stop_lets_running_tick_finish():
    exchange = FakeExchange(account_value=1000.0)
    exchange.read_delay = 0.1
    monitor, _ = _monitor(exchange)

    async def _run():
        await monitor.start()
        await asyncio.sleep(0.02)
        await monitor.stop()

    asyncio.run(_run())

    assert monitor.last_status is not None


def test_overlapping_tick_is_skipped(caplog: pytest.LogCaptureFixture):
    exchange = FakeExchange(account_value=1000.0)
    exchange.read_delay = 0.1
    monitor, notifier = _monitor(exchange)

    async def _run():
        running = asyncio.create_task(monitor.check_margin_health())
        await asyncio.sleep(0.01)
        await monitor._tick()
        await running

    with caplog.at_level(logging.WARNING):
        asyncio.run(_run())

    assert len(notifier.margin_updates) == 1
    assert any("tick skipped" in rec.message for rec in caplog.records)
