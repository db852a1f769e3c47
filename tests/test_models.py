"""
Unit tests for spreadarb.models
"""
import json
from datetime import datetime, timezone
from decimal import Decimal

from spreadarb.models import (
    ActivePosition,
    ArbitrageLog,
    ExchangeFee,
    OrderStatus,
    PaperOrder,
    Ticker,
    Trade,
    TradeCombination,
)


def make_position() -> ActivePosition:
    return ActivePosition(
        currency_pair="BTC/USD",
        exit_target=Decimal("-0.0019980019980020"),
        entry_balance=Decimal("2000.00"),
        entry_time=datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc),
        long_trade=Trade("alpha", "L-1", Decimal("8.19834000"), Decimal("100.00")),
        short_trade=Trade("beta", "S-1", Decimal("8.18196000"), Decimal("110.00")),
    )


class TestTradeCombination:

    def test_value_equality(self):
        a = TradeCombination("alpha", "beta", "BTC/USD")
        b = TradeCombination("alpha", "beta", "BTC/USD")

        assert a == b
        assert len({a, b}) == 1
        assert str(a) == "alpha:beta:BTC/USD"


class TestTicker:

    def test_from_ccxt(self):
        raw = {'symbol': 'BTC/USDT', 'bid': 100.5, 'ask': None, 'timestamp': 1700000000000}
        t = Ticker.from_ccxt("binance", raw)

        assert t.bid == Decimal("100.5")
        assert t.ask is None
        assert t.timestamp == 1700000000


class TestExchangeFee:

    def test_total_fee(self):
        assert ExchangeFee(Decimal("0.002")).total_fee == Decimal("0.002")
        assert ExchangeFee(Decimal("0.002"), Decimal("0.0005")).total_fee == Decimal("0.0025")


class TestActivePosition:

    def test_json_round_trip(self):
        position = make_position()
        assert ActivePosition.from_json(position.to_json()) == position

    def test_json_uses_camel_case_keys(self):
        data = json.loads(make_position().to_json())

        assert data['currencyPair'] == "BTC/USD"
        assert data['longTrade']['orderId'] == "L-1"
        assert data['shortTrade']['volume'] == "8.18196000"

    def test_empty_trades(self):
        """Order ids are cleared once a position has exited"""
        position = make_position()
        position.long_trade.order_id = None
        position.short_trade.order_id = None

        restored = ActivePosition.from_json(position.to_json())
        assert restored.long_trade.order_id is None
        assert restored.short_trade.volume == Decimal("8.18196000")

    def test_is_combination(self):
        position = make_position()
        assert position.is_combination(TradeCombination("alpha", "beta", "BTC/USD"))
        assert not position.is_combination(TradeCombination("beta", "alpha", "BTC/USD"))


class TestArbitrageLog:

    def test_header_and_row_line_up(self):
        log = ArbitrageLog(
            short_exchange="beta", short_spread=Decimal("110.00"), short_slip=Decimal("0"),
            short_amount=Decimal("900.00"), short_currency="USD",
            long_exchange="alpha", long_spread=Decimal("100.00"), long_slip=Decimal("0"),
            long_amount=Decimal("819.83"), long_currency="USD",
            profit=Decimal("12.34"), timestamp=datetime(2026, 3, 1, tzinfo=timezone.utc))

        header = ArbitrageLog.header()
        row = log.to_row()

        assert len(header) == len(row)
        assert header[0] == "shortExchange"
        assert row[header.index("profit")] == "12.34"
        assert row[-1] == "2026-03-01T00:00:00+00:00"


class TestPaperOrder:

    def test_to_ccxt(self):
        order = PaperOrder("abc", "buy", "BTC/USD", Decimal("1"), Decimal("100"), 1700000000.0)
        raw = order.to_ccxt()

        assert raw['status'] == "open"
        assert raw['remaining'] == Decimal("1")
        assert raw['fee'] is None
        assert OrderStatus(raw['status']).is_open
