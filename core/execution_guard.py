"""
ExecutionGuard - Bounded Exchange Calls with Safety Priority

Every call into the exchange goes through here:
- Each call carries a timeout (asyncio.wait_for); a timeout is a failure, never retried
- Reads raise ExchangeError, writes come back as OrderOutcome / bool
- MarginMonitor safety orders take priority over strategy orders
- Dry run simulates writes while still reading live account data
"""

import asyncio
import logging
from typing import Any, Awaitable, List, Optional, Tuple
from uuid import uuid4

from core.errors import ExchangeError, ExchangeTimeout
from core.state import ExchangePosition, OrderOutcome

logger = logging.getLogger(__name__)


class ExecutionGuard:
    """
    Timeout and priority wrapper around an ExchangeClient.

    Lock Priority:
    - Safety orders (priority=True) block strategy orders until they finish
    - Strategy orders wait while a safety order is in flight
    """

    def __init__(self, client, dry_run: bool = True, timeout: float = 10.0):
        """
        Args:
            client: ExchangeClient implementation (HyperliquidClient or a fake)
            dry_run: If True, simulates writes without hitting the API
            timeout: Seconds allowed for any single exchange call
        """
        self.client = client
        self.dry_run = dry_run
        self.timeout = timeout
        self._safety_priority = asyncio.Event()
        self._safety_priority.set()  # Default: strategy allowed
        self._safety_in_flight = 0

        if dry_run:
            logger.warning("🎭 EXECUTION GUARD IN DRY RUN MODE - NO REAL ORDERS")

    async def _bounded(self, operation: str, awaitable: Awaitable) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ {operation} timed out after {self.timeout:.1f}s")
            raise ExchangeTimeout(operation, self.timeout)
        except ExchangeError:
            raise
        except Exception as e:
            raise ExchangeError(operation, str(e)) from e

    def _enter_safety(self):
        self._safety_in_flight += 1
        self._safety_priority.clear()  # Block strategy

    def _leave_safety(self):
        self._safety_in_flight -= 1
        if self._safety_in_flight == 0:
            self._safety_priority.set()  # Release strategy once the last safety order is done

    # ========== READS ==========

    async def get_account_value(self) -> float:
        return float(await self._bounded("get_account_value", self.client.get_account_value()))

    async def get_positions(self) -> List[ExchangePosition]:
        positions = await self._bounded("get_positions", self.client.get_positions())
        return [p for p in positions if p.size != 0]

    async def get_market_price(self, symbol: str) -> float:
        price = float(await self._bounded(f"get_market_price({symbol})",
                                          self.client.get_market_price(symbol)))
        if price <= 0:
            raise ExchangeError(f"get_market_price({symbol})", f"no price for {symbol}")
        return price

    async def fetch_account_snapshot(self) -> Tuple[float, List[ExchangePosition]]:
        """Account value and open positions, fetched concurrently."""
        account_value, positions = await asyncio.gather(
            self.get_account_value(),
            self.get_positions(),
        )
        return account_value, positions

    async def get_size_decimals(self, symbol: str) -> Optional[int]:
        """Exchange size precision when the client knows it, else None."""
        if not hasattr(self.client, "get_size_decimals"):
            return None
        try:
            return int(await self._bounded(f"get_size_decimals({symbol})",
                                           self.client.get_size_decimals(symbol)))
        except ExchangeError as e:
            logger.debug(f"Size decimals unavailable for {symbol}: {e}")
            return None

    # ========== WRITES ==========

    async def place_order(self, symbol: str, is_buy: bool, size: float,
                          order_type: str = "limit", limit_price: Optional[float] = None,
                          reduce_only: bool = False, priority: bool = False) -> OrderOutcome:
        """
        Submit one order.

        Args:
            symbol: Coin name (e.g., "SOL")
            is_buy: True for buy, False for sell
            size: Order size in base asset
            order_type: "limit" (IOC at limit_price) or "market"
            limit_price: Required for limit orders
            reduce_only: Only shrink an existing position
            priority: Safety order; strategy orders wait for it

        Returns:
            OrderOutcome with status "filled", "failed" or "timeout"
        """
        side = "BUY" if is_buy else "SELL"
        desc = f"{side} {size} {symbol} {order_type}" + (f" @ {limit_price}" if limit_price else "")
        if reduce_only:
            desc += " (reduce-only)"

        if self.dry_run:
            logger.info(f"🎭 DRY RUN: Would place {desc}")
            return OrderOutcome(
                status="filled",
                filled_size=size,
                avg_price=limit_price or 0.0,
                order_id=f"dry_run-{uuid4().hex[:8]}",
            )

        if priority:
            self._enter_safety()
        else:
            await self._safety_priority.wait()

        try:
            logger.info(f"📤 Placing {desc}")
            result = await self._bounded(
                f"place_order({symbol})",
                self.client.place_order(symbol, is_buy, size, order_type,
                                        limit_price=limit_price, reduce_only=reduce_only),
            )
        except ExchangeTimeout as e:
            logger.error(f"❌ Order {desc} timed out - not retrying")
            return OrderOutcome(status="timeout", error=str(e))
        except ExchangeError as e:
            logger.error(f"❌ Order {desc} failed: {e}")
            return OrderOutcome(status="failed", error=str(e))
        finally:
            if priority:
                self._leave_safety()

        return self._to_outcome(result, desc)

    def _to_outcome(self, result: dict, desc: str) -> OrderOutcome:
        result = result or {}
        order_id = result.get("order_id", result.get("oid"))
        if result.get("status") == "filled":
            outcome = OrderOutcome(
                status="filled",
                filled_size=float(result.get("filled_size", 0) or 0),
                avg_price=float(result.get("avg_price", 0) or 0),
                order_id=None if order_id is None else str(order_id),
            )
            if outcome.filled_size <= 0:
                return OrderOutcome(status="failed", error="Filled with zero size")
            logger.info(f"✅ Filled {desc}: {outcome.filled_size} @ {outcome.avg_price}")
            return outcome

        error = str(result.get("error", "Order not filled"))
        logger.warning(f"⚠️ Order {desc} not filled: {error}")
        return OrderOutcome(status="failed", error=error)

    async def close_position(self, symbol: str) -> bool:
        """Close an entire position. Used by the panic switch and emergency actions."""
        if self.dry_run:
            logger.info(f"🎭 DRY RUN: Would close {symbol}")
            return True

        self._enter_safety()
        try:
            logger.warning(f"🔻 Closing entire {symbol} position")
            return bool(await self._bounded(f"close_position({symbol})",
                                            self.client.close_position(symbol)))
        except ExchangeError as e:
            logger.error(f"❌ Close {symbol} failed: {e}")
            return False
        finally:
            self._leave_safety()

    async def set_leverage(self, symbol: str, leverage: int, mode: str = "cross") -> bool:
        if self.dry_run:
            logger.info(f"🎭 DRY RUN: Would set {symbol} leverage to {leverage}x {mode}")
            return True
        try:
            ok = bool(await self._bounded(f"set_leverage({symbol})",
                                          self.client.set_leverage(symbol, mode, leverage)))
        except ExchangeError as e:
            logger.error(f"❌ Set leverage {symbol} failed: {e}")
            return False
        if ok:
            logger.info(f"⚙️ {symbol} leverage set to {leverage}x {mode}")
        return ok

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        if self.dry_run:
            logger.info(f"🎭 DRY RUN: Would cancel {symbol} order {order_id}")
            return True
        try:
            return bool(await self._bounded(f"cancel_order({symbol})",
                                            self.client.cancel_order(symbol, order_id)))
        except ExchangeError as e:
            logger.error(f"Cancel error: {e}")
            return False
