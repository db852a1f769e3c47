"""
Unit tests for spreadarb.websocket_engine, feeding recorded payloads through each stream
"""
import asyncio
from decimal import Decimal

import pytest

from spreadarb.websocket_engine import BinanceStream, BybitStream, OkxStream, WebSocketEngine


def stream(stream_class, native):
    return stream_class({native: 'BTC/USD'}, asyncio.Queue())


@pytest.mark.asyncio
class TestMessages:

    async def test_binance_book_ticker(self):
        s = stream(BinanceStream, 'BTCUSDT')
        await s.handle_message({"u": 400900217, "s": "BTCUSDT", "b": "25.35190000", "B": "31.21000000",
                                "a": "25.36520000", "A": "40.66000000"})

        t = s.queue.get_nowait()
        assert (t.exchange, t.symbol) == ("binance", "BTC/USD")
        assert t.bid == Decimal("25.35190000")
        assert t.ask == Decimal("25.36520000")

    async def test_okx_tickers(self):
        s = stream(OkxStream, 'BTC-USDT')
        await s.handle_message({"event": "subscribe", "arg": {"channel": "tickers", "instId": "BTC-USDT"}})
        await s.handle_message({
            "arg": {"channel": "tickers", "instId": "BTC-USDT"},
            "data": [{"instType": "SPOT", "instId": "BTC-USDT", "last": "9999.99", "bidPx": "8888.88",
                      "bidSz": "5", "askPx": "9999.99", "askSz": "11", "ts": "1597026383085"}],
        })

        t = s.queue.get_nowait()
        assert t.bid == Decimal("8888.88")
        assert t.ask == Decimal("9999.99")
        assert s.queue.empty()

    async def test_bybit_top_of_book(self):
        s = stream(BybitStream, 'BTCUSDT')
        await s.handle_message({"success": True, "ret_msg": "subscribe", "op": "subscribe"})
        await s.handle_message({
            "topic": "orderbook.1.BTCUSDT", "type": "snapshot", "ts": 1672304484978,
            "data": {"s": "BTCUSDT", "b": [["16493.50", "0.006"]], "a": [["16611.00", "0.029"]],
                     "u": 18521288, "seq": 7961638724},
        })

        t = s.queue.get_nowait()
        assert (t.exchange, t.symbol) == ("bybit", "BTC/USD")
        assert t.bid == Decimal("16493.50")
        assert t.ask == Decimal("16611.00")

    async def test_bybit_one_sided_update_skipped(self):
        s = stream(BybitStream, 'BTCUSDT')
        await s.handle_message({"topic": "orderbook.1.BTCUSDT", "type": "delta",
                                "data": {"s": "BTCUSDT", "b": [], "a": [["16611.00", "0.029"]]}})

        assert s.queue.empty()

    async def test_unsubscribed_symbol_ignored(self):
        s = stream(BinanceStream, 'BTCUSDT')
        await s.handle_message({"s": "ETHUSDT", "b": "1", "a": "2"})

        assert s.queue.empty()


class TestSubscriptions:

    def test_native_symbols(self):
        engine = WebSocketEngine({'okx': {'BTC/USDT': 'BTC/USD'}, 'bybit': {'ETH/USDT': 'ETH/USD'}},
                                 asyncio.Queue(), None)

        okx, bybit = engine._build_streams()

        assert okx.symbols == {'BTC-USDT': 'BTC/USD'}
        assert bybit.subscription()['args'] == ['orderbook.1.ETHUSDT']

    def test_binance_url_lists_streams(self):
        s = stream(BinanceStream, 'BTCUSDT')
        assert s.url == "wss://stream.binance.com:9443/ws/btcusdt@bookTicker"

    def test_supports(self):
        assert WebSocketEngine.supports('bybit')
        assert not WebSocketEngine.supports('kraken')
