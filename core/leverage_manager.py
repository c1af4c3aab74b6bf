"""
LeverageManager - Risk-Driven Leverage Reduction

Lowers exchange leverage on a symbol when volatility or account margin
usage calls for it. Never raises leverage.
"""

import asyncio
import logging
import time
from typing import Dict, Optional

from core.errors import ExchangeError
from core.position_sizer import PositionSizer
from core.settings import LeverageConfig

logger = logging.getLogger(__name__)


class LeverageManager:
    """
    Args:
        guard: ExecutionGuard used for snapshots and leverage updates
        sizer: PositionSizer for the dynamic leverage math
        config: LeverageConfig
        clock: Time source (seconds)
    """

    def __init__(self, guard, sizer: PositionSizer, config: LeverageConfig = None, clock=time.time):
        self.guard = guard
        self.sizer = sizer
        self.config = config or LeverageConfig()
        self._clock = clock
        self._last_adjusted: Dict[str, float] = {}

    async def _volatility(self, client, symbol: str) -> float:
        if not hasattr(client, "get_volatility"):
            return self.config.default_volatility
        try:
            vol = await asyncio.wait_for(client.get_volatility(symbol),
                                         timeout=getattr(self.guard, "timeout", 10.0))
        except Exception as e:
            logger.debug(f"Volatility unavailable for {symbol}: {e}")
            return self.config.default_volatility
        if vol is None or vol <= 0:
            return self.config.default_volatility
        return float(vol)

    def target_leverage(self, volatility: float, margin_ratio: float) -> int:
        health = 1.0 - margin_ratio
        target = self.sizer.calculate_dynamic_leverage(self.config.base_leverage, volatility, health)
        if margin_ratio > self.config.margin_threshold:
            # Shrink in proportion to how far past the threshold we are
            over = (margin_ratio - self.config.margin_threshold) / max(1e-9, 1.0 - self.config.margin_threshold)
            target *= max(0.5, 1.0 - over)
        target = min(target, self.config.safe_ceiling, self.config.max_leverage)
        return max(int(self.config.min_leverage), int(target))

    async def adjust_leverage(self, client, symbol: str) -> Optional[int]:
        """
        Lower the leverage on symbol if it is above the risk-adjusted target.

        Args:
            client: ExchangeClient, consulted for volatility when it supports it
            symbol: Coin name

        Returns:
            The new leverage, or None when nothing was changed
        """
        now = self._clock()
        last = self._last_adjusted.get(symbol)
        if last is not None and now - last < self.config.adjust_cooldown_seconds:
            logger.debug(f"Leverage adjust for {symbol} in cooldown")
            return None

        try:
            account_value, positions = await self.guard.fetch_account_snapshot()
        except ExchangeError as e:
            logger.error(f"❌ Leverage adjust for {symbol} skipped: {e}")
            return None

        position = next((p for p in positions if p.symbol == symbol), None)
        if position is None:
            return None

        metrics = self.sizer.build_account_metrics(account_value, positions)
        margin_ratio = metrics.total_margin_used / account_value if account_value > 0 else 0.0
        volatility = await self._volatility(client, symbol)
        target = self.target_leverage(volatility, margin_ratio)

        if position.leverage <= target:
            return None

        logger.warning(
            f"⚙️ Lowering {symbol} leverage {position.leverage:.0f}x -> {target}x "
            f"(margin {margin_ratio:.1%}, vol {volatility:.2%})"
        )
        if not await self.guard.set_leverage(symbol, target, "cross"):
            return None

        self._last_adjusted[symbol] = now
        return target
