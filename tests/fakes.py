from __future__ import annotations

import asyncio

from core.state import AccountMetrics, ExchangePosition


class FakeExchange:
    """
    In-memory ExchangeClient. Orders fill at the limit price unless told otherwise.

    With track_fills set, filled orders move the matching position so later
    reads see the book the orders produced.
    """

    def __init__(self, *, account_value: float = 1000.0,
                 positions: list[ExchangePosition] | None = None,
                 prices: dict[str, float] | None = None):
        self.account_value = account_value
        self.positions = list(positions or [])
        self.prices = dict(prices or {})
        self.orders: list[dict] = []
        self.leverage_calls: list[tuple[str, str, int]] = []
        self.closed: list[str] = []
        self.queued_results: list[dict] = []
        self.fail_orders = False
        self.fail_reads = False
        self.read_delay = 0.0
        self.order_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.track_fills = False

    async def get_account_value(self) -> float:
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self.fail_reads:
            raise ConnectionError("exchange unreachable")
        return self.account_value

    async def get_positions(self) -> list[ExchangePosition]:
        if self.fail_reads:
            raise ConnectionError("exchange unreachable")
        return list(self.positions)

    async def get_market_price(self, symbol: str) -> float:
        if symbol not in self.prices:
            raise KeyError(symbol)
        return self.prices[symbol]

    async def place_order(self, symbol, is_buy, size, order_type="limit",
                          limit_price=None, reduce_only=False) -> dict:
        self.orders.append({
            "symbol": symbol,
            "is_buy": is_buy,
            "size": size,
            "order_type": order_type,
            "limit_price": limit_price,
            "reduce_only": reduce_only,
        })
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.order_delay:
                await asyncio.sleep(self.order_delay)
        finally:
            self.in_flight -= 1

        if self.queued_results:
            return self.queued_results.pop(0)
        if self.fail_orders:
            return {"status": "failed", "error": "rejected by exchange"}
        price = limit_price or self.prices.get(symbol, 100.0)
        if self.track_fills:
            self._apply_fill(symbol, size if is_buy else -size, price)
        return {
            "status": "filled",
            "filled_size": size,
            "avg_price": price,
            "order_id": f"oid-{len(self.orders)}",
        }

    def _apply_fill(self, symbol, signed_size, price):
        current = next((p for p in self.positions if p.symbol == symbol), None)
        new_size = round((current.size if current else 0.0) + signed_size, 10)
        others = [p for p in self.positions if p.symbol != symbol]
        if new_size == 0:
            self.positions = others
            return
        self.positions = others + [ExchangePosition(
            symbol, new_size, current.entry_price if current else price,
            notional_value=abs(new_size) * price,
            leverage=current.leverage if current else self._last_leverage(symbol),
        )]

    def _last_leverage(self, symbol):
        levs = [lev for s, _, lev in self.leverage_calls if s == symbol]
        return float(levs[-1]) if levs else 1.0

    async def cancel_order(self, symbol, order_id) -> bool:
        return True

    async def close_position(self, symbol) -> bool:
        self.closed.append(symbol)
        self.positions = [p for p in self.positions if p.symbol != symbol]
        return True

    async def set_leverage(self, symbol, mode, leverage) -> bool:
        self.leverage_calls.append((symbol, mode, leverage))
        return True


class RecordingNotifier:
    def __init__(self):
        self.margin_updates = []
        self.alerts = []
        self.position_updates = []
        self.panics = []

    def broadcast_margin_update(self, status):
        self.margin_updates.append(status)

    def broadcast_alert(self, alert):
        self.alerts.append(alert)

    def broadcast_position_update(self, update):
        self.position_updates.append(update)

    def panic_triggered(self, positions, reason):
        self.panics.append((positions, reason))


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def metrics(account_value: float = 1000.0, used: float = 0.0, notional: float = 0.0) -> AccountMetrics:
    return AccountMetrics(
        account_value=account_value,
        total_margin_used=used,
        total_notional_position=notional,
        available_balance=account_value - used,
        current_leverage=notional / account_value if account_value else 0.0,
        max_allowed_leverage=10.0,
    )
