"""
MarginMonitor - Periodic Account Margin Safety

Polls the account on a fixed interval, classifies margin usage, broadcasts
the status and takes at most one corrective action per tick:

    emergency (>= 95%)  close the largest position (5 minute cooldown)
    critical  (>= 85%)  cut the largest position in half
    warning   (>= 70%)  lower leverage on positions above the ceiling

The decision is a pure function (decide_action) so it can be tested
without an exchange.
"""

import asyncio
import logging
import time
from collections import deque
from typing import List, Optional

from core.errors import ExchangeError
from core.position_sizer import (
    MarginHealth,
    PositionSizer,
    largest_position,
    round_position_size,
)
from core.settings import MonitorConfig
from core.state import (
    AccountMetrics,
    ActionKind,
    AlertLevel,
    ExchangePosition,
    MarginAction,
    MarginAlert,
    MarginStatus,
)

logger = logging.getLogger(__name__)

# The exchange client rounds further to the coin's own precision
REDUCE_SIZE_DECIMALS = 4


def classify_alerts(margin_ratio: float, available_margin: float, account_value: float,
                    config: MonitorConfig, now: float = None) -> List[MarginAlert]:
    """At most one threshold alert (highest first) plus an optional low-free-margin warning."""
    now = time.time() if now is None else now
    alerts = []
    pct = f"{margin_ratio * 100:.1f}%"

    def alert(level, message, action):
        alerts.append(MarginAlert(level=level, message=message, margin_ratio=margin_ratio,
                                  available_margin=available_margin,
                                  recommended_action=action, timestamp=now))

    if margin_ratio >= config.emergency_threshold:
        alert(AlertLevel.EMERGENCY, f"EMERGENCY: Margin ratio at {pct} - Immediate action required",
              ActionKind.CLOSE_POSITION)
    elif margin_ratio >= config.critical_threshold:
        alert(AlertLevel.CRITICAL, f"Critical margin level: {pct} - Reducing positions",
              ActionKind.REDUCE_POSITION)
    elif margin_ratio >= config.warning_threshold:
        alert(AlertLevel.WARNING, f"High margin usage: {pct} - Monitor closely",
              ActionKind.ADJUST_LEVERAGE)
    elif margin_ratio >= config.info_threshold:
        alert(AlertLevel.INFO, f"Margin usage: {pct} - Within normal range", ActionKind.NONE)

    if account_value > 0 and available_margin < account_value * config.low_free_margin_fraction:
        alert(AlertLevel.WARNING, f"Low available margin: ${available_margin:.2f}", ActionKind.NONE)

    return alerts


def decide_action(metrics: AccountMetrics, positions: List[ExchangePosition],
                  alerts: List[MarginAlert], health: MarginHealth,
                  last_emergency_at: Optional[float], now: float,
                  config: MonitorConfig) -> MarginAction:
    """
    Pick the single corrective action for this tick.

    Priority is emergency > critical > warning. The emergency close is
    skipped while inside the cooldown since the last successful one.
    """
    levels = {a.level for a in alerts}

    if AlertLevel.EMERGENCY in levels:
        if last_emergency_at is not None:
            elapsed = now - last_emergency_at
            if elapsed < config.emergency_cooldown_seconds:
                remaining = config.emergency_cooldown_seconds - elapsed
                return MarginAction(reason=f"Emergency action on cooldown ({remaining:.0f}s remaining)")
        pos, notional = largest_position(positions)
        if pos is None:
            return MarginAction(reason="No open position to close")
        return MarginAction(
            kind=ActionKind.CLOSE_POSITION,
            symbol=pos.symbol,
            size=pos.abs_size,
            is_buy=pos.size < 0,
            reason=f"Closing largest position {pos.symbol} (${notional:.2f})",
        )

    if AlertLevel.CRITICAL in levels:
        pos, notional = largest_position(positions)
        if pos is None:
            return MarginAction(reason="No open position to reduce")
        size = round_position_size(pos.abs_size * config.critical_reduce_fraction, REDUCE_SIZE_DECIMALS)
        if size < config.min_order_size:
            return MarginAction(reason=f"{pos.symbol} reduction {size} below minimum order size")
        return MarginAction(
            kind=ActionKind.REDUCE_POSITION,
            symbol=pos.symbol,
            size=size,
            is_buy=pos.size < 0,
            reason=f"Reducing {pos.symbol} by {config.critical_reduce_fraction:.0%} (${notional:.2f})",
        )

    if AlertLevel.WARNING in levels or health.requires_action:
        over = [p.symbol for p in positions if p.leverage > config.safe_leverage_ceiling]
        if over:
            return MarginAction(
                kind=ActionKind.ADJUST_LEVERAGE,
                symbols=over,
                reason=f"Leverage above {config.safe_leverage_ceiling:.0f}x on {', '.join(over)}",
            )

    return MarginAction()


class MarginMonitor:
    """
    Fixed-interval margin safety loop.

    Features:
    - Cancellable periodic task; start/stop are idempotent
    - Ticks never overlap: a tick that finds one running is skipped
    - Errors in a scheduled tick are logged, the loop carries on
    - stop() lets an in-flight tick finish instead of cancelling it

    Args:
        guard: ExecutionGuard
        sizer: PositionSizer
        notifier: Notifier (optional)
        leverage_manager: LeverageManager (optional)
        config: MonitorConfig
        clock: Time source (seconds)
    """

    def __init__(self, guard, sizer: PositionSizer, notifier=None, leverage_manager=None,
                 config: MonitorConfig = None, clock=time.time):
        self.guard = guard
        self.sizer = sizer
        self.notifier = notifier
        self.leverage_manager = leverage_manager
        self.config = config or MonitorConfig()
        self._clock = clock

        self._history = deque(maxlen=self.config.alert_history_size)
        self._last_emergency_at: Optional[float] = None
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.last_status: Optional[MarginStatus] = None

    # ========== LIFECYCLE ==========

    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if self.is_active():
            logger.debug("Margin monitor already running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"🛡️ Margin monitor started (every {self.config.interval_seconds:.0f}s)")

    async def stop(self):
        if self._task is None:
            return
        task, self._task = self._task, None
        self._stop_event.set()
        # The loop exits after the tick in progress, if any
        await task
        logger.info("🛑 Margin monitor stopped")

    async def _run(self):
        loop = asyncio.get_running_loop()
        interval = self.config.interval_seconds
        next_tick = loop.time()

        while not self._stop_event.is_set():
            await self._tick()

            next_tick += interval
            now = loop.time()
            if now >= next_tick:
                skipped = int((now - next_tick) // interval) + 1
                logger.debug(f"Margin tick overran, skipping {skipped} interval(s)")
                next_tick += skipped * interval
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                pass

    async def _tick(self):
        if self._tick_lock.locked():
            logger.warning("⏭️ Previous margin check still running - tick skipped")
            return
        try:
            await self.check_margin_health()
        except ExchangeError as e:
            logger.error(f"❌ Margin check failed: {e}")
        except Exception as e:
            logger.error(f"Margin check error: {e}", exc_info=True)

    # ========== HEALTH CHECK ==========

    async def check_margin_health(self, dispatch: bool = True) -> MarginStatus:
        """
        Snapshot the account, broadcast its status and act on it.

        Args:
            dispatch: When False, only report (no corrective action)

        Returns:
            MarginStatus; action_error is set if the chosen action failed

        Raises:
            ExchangeError if the account snapshot could not be taken
        """
        async with self._tick_lock:
            account_value, positions = await self.guard.fetch_account_snapshot()
            metrics = self.sizer.build_account_metrics(
                account_value, positions, self.config.max_allowed_leverage
            )
            health = self.sizer.check_margin_health(metrics)
            available = account_value - metrics.total_margin_used
            now = self._clock()

            alerts = classify_alerts(health.margin_ratio, available, account_value, self.config, now)
            if dispatch:
                action = decide_action(metrics, positions, alerts, health,
                                       self._last_emergency_at, now, self.config)
            else:
                action = MarginAction(reason="Dispatch disabled")

            status = MarginStatus(
                is_healthy=health.is_healthy,
                margin_ratio=health.margin_ratio,
                leverage_ratio=health.leverage_ratio,
                available_margin=available,
                total_margin_used=metrics.total_margin_used,
                account_value=account_value,
                alerts=alerts,
                requires_action=health.requires_action,
                action=action,
                last_check=now,
            )
            self._log_status(status, len(positions))

            if self.notifier is not None:
                self.notifier.broadcast_margin_update(status)

            if action.kind != ActionKind.NONE:
                try:
                    await self._execute(action, health.margin_ratio, now)
                except Exception as e:
                    logger.error(f"❌ Margin action {action.kind.value} failed: {e}")
                    status.action_error = str(e)
            elif action.reason and status.highest_level in (AlertLevel.EMERGENCY, AlertLevel.CRITICAL):
                logger.warning(f"⏸️ {action.reason}")

            for a in alerts:
                if a.level in (AlertLevel.CRITICAL, AlertLevel.EMERGENCY):
                    self._history.append(a)

            self.last_status = status
            return status

    def _log_status(self, status: MarginStatus, n_positions: int):
        msg = (f"Margin {status.margin_ratio:.1%} | used ${status.total_margin_used:.2f} "
               f"of ${status.account_value:.2f} | {n_positions} positions")
        level = status.highest_level
        if level == AlertLevel.EMERGENCY:
            logger.critical(f"🚨 {msg}")
        elif level == AlertLevel.CRITICAL:
            logger.error(f"🔴 {msg}")
        elif level == AlertLevel.WARNING:
            logger.warning(f"⚠️ {msg}")
        else:
            logger.debug(f"📊 {msg}")

    async def _execute(self, action: MarginAction, margin_ratio: float, now: float):
        if action.kind == ActionKind.CLOSE_POSITION:
            logger.critical(f"⛔ EMERGENCY MARGIN ACTION: {action.reason}")
            outcome = await self.guard.place_order(
                action.symbol, action.is_buy, action.size, "market",
                reduce_only=True, priority=True,
            )
            if not outcome.filled:
                raise ExchangeError("emergency_close", outcome.error or outcome.status)
            self._last_emergency_at = now
            self._alert("emergency_close", action.symbol,
                        "Margin ratio exceeded emergency threshold", margin_ratio,
                        size=action.size)

        elif action.kind == ActionKind.REDUCE_POSITION:
            logger.warning(f"🔻 CRITICAL MARGIN: {action.reason}")
            outcome = await self.guard.place_order(
                action.symbol, action.is_buy, action.size, "market",
                reduce_only=True, priority=True,
            )
            if not outcome.filled:
                raise ExchangeError("critical_reduce", outcome.error or outcome.status)
            self._alert("position_reduced", action.symbol,
                        "Margin ratio exceeded critical threshold", margin_ratio,
                        size=action.size)

        elif action.kind == ActionKind.ADJUST_LEVERAGE:
            if self.leverage_manager is None:
                logger.warning(f"⚠️ {action.reason} - no leverage manager configured")
                return
            for symbol in action.symbols:
                new_leverage = await self.leverage_manager.adjust_leverage(self.guard.client, symbol)
                if new_leverage is not None:
                    self._alert("leverage_adjusted", symbol, action.reason, margin_ratio,
                                new_leverage=new_leverage)

    def _alert(self, alert_type: str, symbol: str, reason: str, margin_ratio: float, **extra):
        if self.notifier is None:
            return
        payload = {"type": alert_type, "symbol": symbol, "reason": reason,
                   "margin_ratio": margin_ratio}
        payload.update(extra)
        self.notifier.broadcast_alert(payload)

    # ========== HISTORY ==========

    def get_alert_history(self) -> List[MarginAlert]:
        return list(self._history)

    def clear_alert_history(self):
        self._history.clear()
        logger.info("🧹 Alert history cleared")
