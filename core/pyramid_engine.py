"""
PyramidEngine - Per-Symbol Pyramid State Machine

Turns directional signals into sized entry/exit orders:

    flat -> building -> full      same-direction signals add a level
    any non-flat -> reducing      opposite signal sells a slice
    reducing -> flat              once the remainder is below the minimum size

State is only mutated after a confirmed fill. A failed or timed out order
leaves the symbol exactly as it was. Exits are sized from the live exchange
position, so a position closed by the margin monitor or by hand sends the
symbol back to flat on the next opposite signal.
"""

import asyncio
import copy
import dataclasses
import logging
import math
import time
from collections import OrderedDict
from typing import Dict, List, Optional

from core.errors import ExchangeError
from core.position_sizer import PositionSizer
from core.settings import PyramidConfig
from core.state import (
    AccountMetrics,
    ExchangePosition,
    PyramidState,
    PyramidStateStore,
    PyramidStatus,
    Side,
    SignalResult,
    TradingSignal,
)

logger = logging.getLogger(__name__)


class PyramidEngine:
    """
    One independent state machine per traded symbol.

    Features:
    - Per-symbol asyncio.Lock around decide -> submit -> commit
    - Duplicate signal ids rejected within a bounded window
    - Exchange leverage set once per symbol and cached
    - Startup reconciliation from exchange positions

    Args:
        guard: ExecutionGuard used for every exchange call
        sizer: PositionSizer
        config: PyramidConfig
        notifier: Optional Notifier for position updates
        store: Optional PyramidStateStore (a fresh one by default)
    """

    def __init__(self, guard, sizer: PositionSizer, config: PyramidConfig,
                 notifier=None, store: Optional[PyramidStateStore] = None,
                 clock=time.time):
        self.guard = guard
        self.sizer = sizer
        self.config = config
        self.notifier = notifier
        self.store = store if store is not None else PyramidStateStore()
        self._clock = clock

        self._locks: Dict[str, asyncio.Lock] = {}
        self._recent_signal_ids: "OrderedDict[str, float]" = OrderedDict()
        self._applied_leverage: Dict[str, int] = {}
        self._size_decimals: Dict[str, int] = {}

    def _lock_for(self, symbol: str) -> asyncio.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[symbol] = lock
        return lock

    # ========== SIGNALS ==========

    async def process_signal(self, signal: TradingSignal, metrics: AccountMetrics) -> SignalResult:
        """
        Act on one signal.

        Returns:
            SignalResult; on rejection success is False and error_kind says
            whether the signal ("validation") or the exchange ("external") failed
        """
        action = (signal.action or "").strip().lower()
        symbol = (signal.symbol or "").strip().upper()
        if not symbol:
            return self._reject("Missing symbol")
        if action not in ("buy", "sell"):
            return self._reject(f"Invalid action: {signal.action!r}")

        async with self._lock_for(symbol):
            if signal.signal_id is not None and signal.signal_id in self._recent_signal_ids:
                logger.info(f"🔁 Duplicate signal {signal.signal_id} for {symbol} ignored")
                return self._reject(f"Duplicate signal {signal.signal_id}",
                                    self.store.get(symbol))

            price = signal.price
            if price is None or price <= 0:
                try:
                    price = await self.guard.get_market_price(symbol)
                except ExchangeError as e:
                    logger.error(f"❌ No price for {symbol}: {e}")
                    return SignalResult(success=False, reason=str(e), error_kind="external",
                                        state=self._copy(self.store.get(symbol)))

            state = self.store.get_or_create(symbol)
            side = Side.LONG if action == "buy" else Side.SHORT
            logger.info(
                f"📶 Signal {action.upper()} {symbol} @ {price} "
                f"(state: {state.status.value}, level {state.current_level})"
            )

            if state.is_flat or state.side == side:
                if state.is_flat and side == Side.SHORT and not self.config.enable_shorts:
                    return self._reject("Shorts disabled", state)
                result = await self._add(state, signal, metrics, price, side)
            else:
                result = await self._reduce(state, symbol)

            if result.success and signal.signal_id is not None:
                self._remember_signal(signal.signal_id)
            return result

    def _remember_signal(self, signal_id: str):
        self._recent_signal_ids[signal_id] = self._clock()
        while len(self._recent_signal_ids) > self.config.signal_dedup_window:
            self._recent_signal_ids.popitem(last=False)

    async def _sizing_config(self, symbol: str) -> PyramidConfig:
        """Config with the exchange's size precision for symbol, when known."""
        if symbol not in self._size_decimals:
            decimals = await self.guard.get_size_decimals(symbol)
            if decimals is None:
                decimals = self.config.decimals_for(symbol)
            self._size_decimals[symbol] = decimals
        decimals = self._size_decimals[symbol]
        if decimals == self.config.decimals_for(symbol):
            return self.config
        return dataclasses.replace(
            self.config, size_decimals={**self.config.size_decimals, symbol: decimals}
        )

    async def _add(self, state: PyramidState, signal: TradingSignal,
                   metrics: AccountMetrics, price: float, side: Side) -> SignalResult:
        symbol = state.symbol
        max_levels = self.config.max_levels
        if state.status == PyramidStatus.FULL or state.current_level >= max_levels:
            logger.info(f"🏔️ {symbol} pyramid full ({state.current_level}/{max_levels})")
            return self._reject("Max pyramid level reached", state)

        level_idx = min(state.current_level, max_levels - 1)
        warnings: List[str] = []
        if signal.leverage is not None:
            check = self.sizer.validate_leverage(signal.leverage)
            if check.warning:
                warnings.append(check.warning)
            leverage = check.leverage
        else:
            leverage = self.config.leverage_for_level(level_idx)
        # Exchange leverage is an integer
        leverage = float(max(1, int(leverage)))

        cfg = await self._sizing_config(symbol)
        sizing = self.sizer.size_for_level(level_idx, metrics, price, cfg, symbol, leverage)
        if not sizing.is_valid:
            logger.info(f"🚫 {symbol} level {level_idx + 1} rejected: {sizing.reason}")
            return self._reject(sizing.reason, state, warnings)
        warnings.extend(sizing.warnings)
        for w in sizing.warnings:
            logger.warning(f"⚠️ {symbol}: {w}")

        lev = int(sizing.leverage)
        if self._applied_leverage.get(symbol) != lev:
            if not await self.guard.set_leverage(symbol, lev, "cross"):
                return self._external_failure(f"Failed to set {symbol} leverage to {lev}x",
                                              state, warnings)
            self._applied_leverage[symbol] = lev

        is_buy = side == Side.LONG
        logger.info(
            f"🔺 {symbol} level {level_idx + 1}/{max_levels}: {'BUY' if is_buy else 'SELL'} "
            f"{sizing.actual_position_size} @ {sizing.price:.6g} ({lev}x, "
            f"margin ${sizing.required_margin:.2f})"
        )
        outcome = await self.guard.place_order(
            symbol, is_buy, sizing.actual_position_size, "limit",
            limit_price=sizing.price, reduce_only=False,
        )
        if not outcome.filled:
            return self._external_failure(outcome.error or f"Order {outcome.status}", state, warnings)

        fill_price = outcome.avg_price if outcome.avg_price > 0 else price
        old_size = state.accumulated_size
        new_size = old_size + outcome.filled_size
        state.average_entry_price = (
            old_size * state.average_entry_price + outcome.filled_size * fill_price
        ) / new_size
        state.accumulated_size = round(new_size, 10)
        state.side = side
        state.current_level = min(state.current_level + 1, max_levels)
        state.status = PyramidStatus.FULL if state.current_level >= max_levels else PyramidStatus.BUILDING
        state.exit_count = 0
        state.last_action_at = self._clock()
        state.last_order_id = outcome.order_id

        logger.info(
            f"✅ {symbol} {state.side.value} level {state.current_level}/{max_levels}: "
            f"size {state.accumulated_size} avg ${state.average_entry_price:.4f}"
        )
        self._publish(state, "add", outcome.filled_size, fill_price)
        return SignalResult(success=True, reason=f"Added level {state.current_level}",
                            order_id=outcome.order_id, state=self._copy(state), warnings=warnings)

    async def _exchange_size(self, state: PyramidState) -> float:
        """
        Size actually held on the exchange for state's side.

        Dry run has no real fills, so local bookkeeping is used there.
        Returns 0.0 when the exchange has nothing (or the other side) open.
        """
        if self.guard.dry_run:
            return state.accumulated_size
        positions = await self.guard.get_positions()
        live = next((p for p in positions if p.symbol.upper() == state.symbol), None)
        if live is None or live.side != state.side:
            return 0.0
        return live.abs_size

    async def _reduce(self, state: PyramidState, symbol: str) -> SignalResult:
        try:
            on_exchange = await self._exchange_size(state)
        except ExchangeError as e:
            return self._external_failure(f"Position check failed: {e}", state)

        if on_exchange < self.config.min_order_size:
            # Closed elsewhere, e.g. by the margin monitor
            logger.warning(
                f"⚠️ {symbol} {state.side.value} {state.accumulated_size} has no exchange "
                f"position ({on_exchange}) - resetting to flat"
            )
            state.reset()
            state.last_action_at = self._clock()
            self._publish(state, "sync", 0.0, 0.0)
            return SignalResult(success=True, reason="No exchange position - state reset",
                                state=self._copy(state))

        local = state.accumulated_size
        held = min(on_exchange, local)
        if held < local:
            logger.info(f"📉 {symbol} exchange holds {held} of {local} - sizing exit from exchange")

        cfg = await self._sizing_config(symbol)
        plan = self.sizer.size_for_reduction(held, state.exit_count, cfg, symbol)
        if plan.size <= 0:
            return self._reject("Nothing to reduce", state)

        is_buy = state.side == Side.SHORT
        logger.info(
            f"🔻 {symbol} exit #{state.exit_count + 1}: {'BUY' if is_buy else 'SELL'} "
            f"{plan.size} of {held} ({plan.fraction:.0%})"
        )
        outcome = await self.guard.place_order(symbol, is_buy, plan.size, "market",
                                               reduce_only=True)
        if not outcome.filled:
            return self._external_failure(outcome.error or f"Order {outcome.status}", state)

        filled = min(outcome.filled_size, held)
        remaining = round(held - filled, 10)
        state.last_action_at = self._clock()
        state.last_order_id = outcome.order_id

        if remaining < self.config.min_order_size:
            state.reset()
            logger.info(f"🏁 {symbol} closed, back to flat")
            reason = "Position closed"
        else:
            state.current_level = max(1, math.ceil(state.current_level * remaining / local))
            state.accumulated_size = remaining
            state.exit_count += 1
            state.status = PyramidStatus.REDUCING
            logger.info(
                f"✅ {symbol} reduced to {remaining} (level {state.current_level}, "
                f"exit {state.exit_count})"
            )
            reason = f"Reduced to {remaining}"

        self._publish(state, "reduce", filled, outcome.avg_price)
        return SignalResult(success=True, reason=reason, order_id=outcome.order_id,
                            state=self._copy(state))

    # ========== RESULTS ==========

    @staticmethod
    def _copy(state: Optional[PyramidState]) -> Optional[PyramidState]:
        return copy.deepcopy(state) if state is not None else None

    def _reject(self, reason: str, state: Optional[PyramidState] = None,
                warnings: Optional[List[str]] = None) -> SignalResult:
        return SignalResult(success=False, reason=reason, error_kind="validation",
                            state=self._copy(state), warnings=list(warnings or []))

    def _external_failure(self, reason: str, state: PyramidState,
                          warnings: Optional[List[str]] = None) -> SignalResult:
        logger.error(f"❌ {state.symbol}: {reason} - state unchanged")
        return SignalResult(success=False, reason=reason, error_kind="external",
                            state=self._copy(state), warnings=list(warnings or []))

    def _publish(self, state: PyramidState, event: str, size: float, price: float):
        if self.notifier is None:
            return
        update = state.to_dict()
        update.update({"event": event, "fill_size": size, "fill_price": price})
        self.notifier.broadcast_position_update(update)

    # ========== OBSERVABILITY ==========

    def get_state(self, symbol: str) -> Optional[PyramidState]:
        return self._copy(self.store.get(symbol.upper()))

    def get_states(self) -> Dict[str, PyramidState]:
        return self.store.snapshot()

    def get_config(self) -> dict:
        return self.config.to_dict()

    async def reset_symbol(self, symbol: str) -> bool:
        """
        Forget pyramid bookkeeping for symbol. Does not touch the exchange.

        Waits for an in-flight signal on the symbol to commit first; that
        order is never cancelled.
        """
        symbol = symbol.upper()
        async with self._lock_for(symbol):
            state = self.store.get(symbol)
            if state is None:
                return False
            state.reset()
        logger.info(f"🔄 {symbol} pyramid state reset")
        return True

    async def reset_all(self):
        for symbol in self.store.symbols():
            async with self._lock_for(symbol):
                self.store.get(symbol).reset()
        self._recent_signal_ids.clear()
        logger.info("🔄 All pyramid states reset")

    def reconcile(self, positions: List[ExchangePosition]) -> int:
        """
        Rebuild states from live exchange positions. Run before signals flow.

        Every open position becomes a level-1 pyramid; local states with no
        exchange position are reset.

        Returns:
            Number of positions adopted
        """
        live = {p.symbol.upper(): p for p in positions if p.size != 0}

        for symbol in self.store.symbols():
            if symbol not in live and not self.store.get(symbol).is_flat:
                logger.warning(f"⚠️ {symbol} has no exchange position - resetting")
                self.store.get(symbol).reset()

        for symbol, pos in live.items():
            state = self.store.get_or_create(symbol)
            state.side = pos.side
            state.accumulated_size = pos.abs_size
            state.average_entry_price = pos.entry_price
            state.current_level = 1
            state.status = PyramidStatus.FULL if self.config.max_levels <= 1 else PyramidStatus.BUILDING
            state.exit_count = 0
            state.last_action_at = self._clock()
            self._applied_leverage[symbol] = int(pos.leverage)
            logger.info(
                f"📥 Adopted {symbol} {pos.side.value} {pos.abs_size} @ {pos.entry_price} "
                f"({pos.leverage:.0f}x)"
            )

        return len(live)
