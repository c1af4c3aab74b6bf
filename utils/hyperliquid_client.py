"""
HyperliquidClient - SDK Wrapper for Hyperliquid Perps

Implements the exchange capability used by the trading core:
account value, positions, prices, orders, leverage.

Blocking SDK calls run in the default executor. Reads raise ExchangeError
on failure; writes return a status dict / bool.
"""

import asyncio
import logging
import statistics
import time
from typing import Any, Dict, List, Optional

import requests
from hyperliquid.info import Info
from hyperliquid.exchange import Exchange
from hyperliquid.utils import constants
from eth_account import Account

from core.errors import ExchangeError
from core.state import ExchangePosition

logger = logging.getLogger(__name__)

# Hyperliquid perps: prices have at most 5 significant figures and 6 - szDecimals decimals
PERP_MAX_DECIMALS = 6


class HyperliquidClient:
    """
    Async-compatible client for Hyperliquid perpetuals.

    Args:
        private_key: API wallet private key
        account_address: Main account address (defaults to the key's address)
        testnet: Use the testnet API URL
        market_slippage: Price tolerance for market (aggressive IOC) orders
    """

    def __init__(self, private_key: str, account_address: str = "",
                 testnet: bool = False, market_slippage: float = 0.05):
        self.account = Account.from_key(private_key)
        self.address = account_address or self.account.address
        self.market_slippage = market_slippage

        self.base_url = constants.TESTNET_API_URL if testnet else constants.MAINNET_API_URL
        self.info = Info(self.base_url, skip_ws=True)
        self.exchange = Exchange(
            self.account,
            self.base_url,
            account_address=self.address
        )

        # Cache for meta info
        self._sz_decimals: Dict[str, int] = {}

        logger.info(f"📡 Client initialized for {self.address[:10]}... ({'testnet' if testnet else 'mainnet'})")

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    # ========== READS ==========

    async def get_account_value(self) -> float:
        """Perp account value in USDC."""
        def _get():
            try:
                state = self.info.user_state(self.address)
                return float(state["marginSummary"]["accountValue"])
            except Exception as e:
                raise ExchangeError("get_account_value", str(e)) from e

        return await self._run(_get)

    async def get_positions(self) -> List[ExchangePosition]:
        """Get all open perp positions."""
        def _get():
            try:
                state = self.info.user_state(self.address)
            except Exception as e:
                raise ExchangeError("get_positions", str(e)) from e

            positions = []
            for p in state.get('assetPositions', []):
                pos = p.get('position', {})
                size = float(pos.get('szi', 0) or 0)
                if size == 0:
                    continue
                leverage = pos.get('leverage') or {}
                positions.append(ExchangePosition(
                    symbol=pos['coin'],
                    size=size,
                    entry_price=float(pos.get('entryPx') or 0),
                    notional_value=float(pos.get('positionValue') or 0),
                    unrealized_pnl=float(pos.get('unrealizedPnl') or 0),
                    leverage=float(leverage.get('value', 1) or 1),
                ))
            return positions

        return await self._run(_get)

    async def get_market_price(self, symbol: str) -> float:
        """Current mid price for a coin."""
        def _get():
            try:
                mids = self.info.all_mids()
            except Exception as e:
                raise ExchangeError(f"get_market_price({symbol})", str(e)) from e
            if symbol not in mids:
                raise ExchangeError(f"get_market_price({symbol})", f"unknown coin {symbol}")
            return float(mids[symbol])

        return await self._run(_get)

    async def get_size_decimals(self, symbol: str) -> int:
        def _get():
            return self._load_sz_decimals(symbol)

        return await self._run(_get)

    async def get_volatility(self, symbol: str, interval: str = "1h", lookback: int = 24) -> float:
        """Standard deviation of hourly returns over the lookback window."""
        def _get():
            end = int(time.time() * 1000)
            start = end - lookback * 3600 * 1000
            try:
                candles = requests.post(
                    f"{self.base_url}/info",
                    json={
                        'type': 'candleSnapshot',
                        'req': {'coin': symbol, 'interval': interval, 'startTime': start, 'endTime': end},
                    },
                    timeout=5
                ).json()
            except Exception as e:
                raise ExchangeError(f"get_volatility({symbol})", str(e)) from e
            closes = [float(c["c"]) for c in candles if float(c.get("c", 0)) > 0]
            returns = [b / a - 1 for a, b in zip(closes, closes[1:])]
            if len(returns) < 2:
                return 0.0
            return statistics.pstdev(returns)

        return await self._run(_get)

    # ========== WRITES ==========

    async def place_order(self, symbol: str, is_buy: bool, size: float, order_type: str = "limit",
                          limit_price: Optional[float] = None, reduce_only: bool = False) -> Dict[str, Any]:
        """
        Place a perp order. Both kinds are sent as IOC limits.

        Args:
            symbol: Coin name (e.g., "SOL")
            is_buy: True for buy, False for sell
            size: Order size in base asset
            order_type: "limit" or "market" (mid +/- market_slippage)
            limit_price: Limit price for "limit" orders
            reduce_only: Only shrink an existing position

        Returns:
            {"status": "filled"|"failed", "filled_size", "avg_price", "order_id", "error"}
        """
        def _place():
            try:
                decimals = self._load_sz_decimals(symbol)
                sz = self._round_size(size, decimals)
                if order_type == "market" or limit_price is None:
                    mid = float(self.info.all_mids()[symbol])
                    px = mid * (1 + self.market_slippage) if is_buy else mid * (1 - self.market_slippage)
                else:
                    px = limit_price
                px = self._round_price(px, decimals)

                logger.info(f"📤 Order: {symbol} is_buy={is_buy} sz={sz} px={px} reduce_only={reduce_only}")
                result = self.exchange.order(
                    symbol,
                    is_buy=is_buy,
                    sz=sz,
                    limit_px=px,
                    order_type={"limit": {"tif": "Ioc"}},  # IOC for immediate fill
                    reduce_only=reduce_only
                )
                logger.info(f"📥 Order response: {result}")
                return self._parse_order_result(result)
            except Exception as e:
                logger.error(f"Order placement error: {e}", exc_info=True)
                return {"status": "failed", "error": str(e)}

        return await self._run(_place)

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        def _cancel():
            try:
                result = self.exchange.cancel(symbol, int(order_id))
                return result.get("status") == "ok"
            except Exception as e:
                logger.error(f"Cancel error: {e}")
                return False

        return await self._run(_cancel)

    async def close_position(self, symbol: str) -> bool:
        """Close the whole position in symbol with a reduce-only market order."""
        positions = await self.get_positions()
        pos = next((p for p in positions if p.symbol == symbol), None)
        if pos is None:
            logger.info(f"No {symbol} position to close")
            return True

        result = await self.place_order(symbol, pos.size < 0, pos.abs_size, "market", reduce_only=True)
        return result.get("status") == "filled"

    async def set_leverage(self, symbol: str, mode: str, leverage: int) -> bool:
        def _set():
            try:
                result = self.exchange.update_leverage(int(leverage), symbol, is_cross=(mode == "cross"))
                if result.get("status") != "ok":
                    logger.warning(f"⚠️ update_leverage rejected for {symbol} -> {leverage}x: {result}")
                    return False
                return True
            except Exception as e:
                logger.error(f"Leverage update error: {e}")
                return False

        return await self._run(_set)

    # ========== HELPERS ==========

    def _load_sz_decimals(self, symbol: str) -> int:
        if symbol not in self._sz_decimals:
            try:
                meta = self.info.meta()
            except Exception as e:
                raise ExchangeError(f"meta({symbol})", str(e)) from e
            for asset in meta.get("universe", []):
                self._sz_decimals[asset.get("name")] = int(asset.get("szDecimals", 2))
            if symbol not in self._sz_decimals:
                raise ExchangeError(f"meta({symbol})", f"unknown coin {symbol}")
        return self._sz_decimals[symbol]

    @staticmethod
    def _round_size(size: float, decimals: int) -> float:
        # Truncate: rounding up could exceed the margin the size was computed for
        factor = 10 ** decimals
        return int(size * factor + 1e-9) / factor

    @staticmethod
    def _round_price(price: float, sz_decimals: int) -> float:
        return round(float(f"{price:.5g}"), PERP_MAX_DECIMALS - sz_decimals)

    def _parse_order_result(self, result: Dict) -> Dict[str, Any]:
        """Parse SDK order result into standardized format."""
        if result.get("status") != "ok":
            return {"status": "failed", "error": str(result)}

        response = result.get("response", {})
        data = response.get("data", {})
        statuses = data.get("statuses", [])

        for s in statuses:
            if "filled" in s:
                filled = s["filled"]
                return {
                    "status": "filled",
                    "filled_size": float(filled.get("totalSz", 0)),
                    "avg_price": float(filled.get("avgPx", 0)),
                    "order_id": filled.get("oid")
                }
            elif "error" in s:
                return {"status": "failed", "error": s["error"]}

        return {"status": "failed", "error": "Unknown response format"}
