from __future__ import annotations

import asyncio

import pytest

from core.errors import ExchangeError
from utils.hyperliquid_client import HyperliquidClient


class FakeInfo:
    def __init__(self):
        self.mids = {"SOL": "140.5", "BTC": "65000.0"}
        self.state = {
            "marginSummary": {"accountValue": "1523.75"},
            "assetPositions": [
                {"position": {"coin": "SOL", "szi": "-2.5", "entryPx": "140.0",
                              "positionValue": "351.25", "unrealizedPnl": "-1.25",
                              "leverage": {"type": "cross", "value": 5}}},
                {"position": {"coin": "ETH", "szi": "0.0", "entryPx": "3000.0"}},
            ],
        }

    def user_state(self, address):
        return self.state

    def all_mids(self):
        return self.mids

    def meta(self):
        return {"universe": [{"name": "SOL", "szDecimals": 2}, {"name": "BTC", "szDecimals": 5}]}


class FakeSdkExchange:
    def __init__(self, response=None):
        self.calls = []
        self.response = response or {
            "status": "ok",
            "response": {"data": {"statuses": [{"filled": {"totalSz": "2.5", "avgPx": "140.6", "oid": 77}}]}},
        }

    def order(self, symbol, is_buy, sz, limit_px, order_type, reduce_only=False):
        self.calls.append(("order", symbol, is_buy, sz, limit_px, order_type, reduce_only))
        return self.response

    def update_leverage(self, leverage, symbol, is_cross=True):
        self.calls.append(("update_leverage", leverage, symbol, is_cross))
        return {"status": "ok"}


def _client(exchange: FakeSdkExchange | None = None) -> HyperliquidClient:
    client = HyperliquidClient.__new__(HyperliquidClient)
    client.address = "0xabc"
    client.base_url = "https://api.hyperliquid.invalid"
    client.market_slippage = 0.05
    client.info = FakeInfo()
    client.exchange = exchange or FakeSdkExchange()
    client._sz_decimals = {}
    return client


def test_reads_parse_sdk_payloads():
    client = _client()

    value = asyncio.run(client.get_account_value())
    positions = asyncio.run(client.get_positions())
    price = asyncio.run(client.get_market_price("SOL"))

    assert value == 1523.75
    assert len(positions) == 1
    sol = positions[0]
    assert (sol.symbol, sol.size, sol.leverage, sol.notional) == ("SOL", -2.5, 5.0, 351.25)
    assert price == 140.5


def test_unknown_coin_price_raises():
    with pytest.raises(ExchangeError, match="unknown coin"):
        asyncio.run(_client().get_market_price("DOGE"))


def test_limit_order_is_rounded_and_parsed():
    sdk = FakeSdkExchange()
    client = _client(sdk)

    result = asyncio.run(client.place_order("SOL", True, 2.5999, "limit", limit_price=140.64051))

    _, symbol, is_buy, sz, px, order_type, reduce_only = sdk.calls[0]
    assert (symbol, is_buy, sz, px, reduce_only) == ("SOL", True, 2.59, 140.64, False)
    assert order_type == {"limit": {"tif": "Ioc"}}
    assert result == {"status": "filled", "filled_size": 2.5, "avg_price": 140.6, "order_id": 77}


def test_market_order_crosses_mid_by_slippage():
    sdk = FakeSdkExchange()
    client = _client(sdk)

    asyncio.run(client.place_order("BTC", False, 0.001, "market", reduce_only=True))

    _, _, is_buy, sz, px, _, reduce_only = sdk.calls[0]
    assert not is_buy and reduce_only
    assert sz == 0.001
    assert px == 61750.0


def test_rejected_order_is_failed_result():
    sdk = FakeSdkExchange({"status": "ok", "response": {"data": {"statuses": [{"error": "Insufficient margin"}]}}})

    result = asyncio.run(_client(sdk).place_order("SOL", True, 1.0, "limit", limit_price=140.0))

    assert result == {"status": "failed", "error": "Insufficient margin"}


def test_close_position_sends_reduce_only_opposite_order():
    sdk = FakeSdkExchange()
    client = _client(sdk)

    assert asyncio.run(client.close_position("SOL"))
    _, symbol, is_buy, sz, _, _, reduce_only = sdk.calls[0]
    assert (symbol, is_buy, sz, reduce_only) == ("SOL", True, 2.5, True)


def test_set_leverage_uses_integer_cross_leverage():
    sdk = FakeSdkExchange()

    assert asyncio.run(_client(sdk).set_leverage("SOL", "cross", 3.0))
    assert sdk.calls == [("update_leverage", 3, "SOL", True)]


@pytest.mark.parametrize(
    "price,decimals,expected",
    [
        (140.64051, 2, 140.64),
        (65123.456, 5, 65123.0),
        (0.123456789, 0, 0.12346),
    ],
)
def test_price_rounding(price, decimals, expected):
    assert HyperliquidClient._round_price(price, decimals) == expected


class _FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def json(self):
        return self.payload


def test_volatility_from_candle_closes(monkeypatch: pytest.MonkeyPatch):
    requests_seen = []

    def _post(url, json, timeout):
        requests_seen.append((url, json["type"], json["req"]["coin"]))
        return _FakeResponse([{"c": "100"}, {"c": "110"}, {"c": "99"}])

    monkeypatch.setattr("utils.hyperliquid_client.requests.post", _post)

    vol = asyncio.run(_client().get_volatility("SOL"))

    assert requests_seen == [("https://api.hyperliquid.invalid/info", "candleSnapshot", "SOL")]
    assert vol == pytest.approx(0.1, abs=1e-9)


def test_volatility_needs_enough_candles(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr("utils.hyperliquid_client.requests.post",
                        lambda url, json, timeout: _FakeResponse([{"c": "100"}]))

    assert asyncio.run(_client().get_volatility("SOL")) == 0.0
