"""
PanicSwitch - Emergency Position Closure

Dead man's switch that closes ALL exchange positions.
Called when:
- Manual trigger (main.py --close-all)
- Unrecoverable error at runtime
"""

import asyncio
import logging

from core.errors import ExchangeError

logger = logging.getLogger(__name__)


class PanicSwitch:
    """
    Close every open position through the ExecutionGuard.

    Args:
        guard: ExecutionGuard instance
        engine: Optional PyramidEngine; closed symbols have their state reset
        notifier: Optional Notifier
    """

    def __init__(self, guard, engine=None, notifier=None):
        self.guard = guard
        self.engine = engine
        self.notifier = notifier

    async def close_all(self, reason: str = "Manual") -> bool:
        """
        Close ALL positions. No questions asked.

        Returns:
            True only if every position closed successfully
        """
        logger.critical("🚨🚨🚨 PANIC SWITCH ACTIVATED 🚨🚨🚨")

        try:
            positions = await self.guard.get_positions()
        except ExchangeError as e:
            logger.critical(f"💀 Cannot read positions: {e}")
            return False

        if not positions:
            logger.info("No positions to close")
            return True

        for pos in positions:
            logger.warning(f"💣 Emergency closing {pos.symbol}: {pos.size} @ {pos.entry_price}")

        results = await asyncio.gather(
            *(self._close(pos.symbol) for pos in positions),
            return_exceptions=True
        )

        success = True
        closed = 0
        for pos, result in zip(positions, results):
            if isinstance(result, Exception) or not result:
                logger.error(f"❌ Failed to close {pos.symbol}: {result}")
                success = False
            else:
                closed += 1

        if self.notifier is not None:
            self.notifier.panic_triggered(closed, reason)
        return success

    async def close_single(self, symbol: str) -> bool:
        """Emergency close a single position."""
        logger.warning(f"💣 Emergency closing {symbol}")
        return await self._close(symbol)

    async def _close(self, symbol: str) -> bool:
        ok = await self.guard.close_position(symbol)
        if ok:
            logger.info(f"✅ Closed {symbol}")
            if self.engine is not None:
                await self.engine.reset_symbol(symbol)
        return ok
