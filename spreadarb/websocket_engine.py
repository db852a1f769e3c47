# spreadarb/websocket_engine.py
import asyncio
import json
import time
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Type

import aiohttp

from .models import Ticker


class ExchangeStream:
    """
    One public ticker feed. `symbols` maps the exchange's native symbol (BTCUSDT, BTC-USDT)
    back to the configured pair (BTC/USD) so the rest of the bot never sees native names.
    """
    exchange = ""
    url = ""

    def __init__(self, symbols: Dict[str, str], queue: asyncio.Queue):
        self.symbols = symbols
        self.queue = queue
        self.ws = None

    @staticmethod
    def native_symbol(symbol: str) -> str:
        raise NotImplementedError

    def subscription(self) -> Optional[dict]:
        """Message sent right after connecting, None when the url already selects the streams."""
        return None

    async def handle_message(self, data: dict):
        raise NotImplementedError

    async def connect(self, session: aiohttp.ClientSession):
        async with session.ws_connect(self.url) as ws:
            self.ws = ws

            subscription = self.subscription()
            if subscription is not None:
                await ws.send_json(subscription)

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self.handle_message(json.loads(msg.data))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break

    async def _publish(self, native: str, bid: str, ask: str):
        pair = self.symbols.get(native)
        if pair is None:
            return
        await self.queue.put(Ticker(self.exchange, pair, Decimal(bid), Decimal(ask), time.time()))


class BinanceStream(ExchangeStream):
    exchange = "binance"

    @staticmethod
    def native_symbol(symbol: str) -> str:
        # Format: BTC/USDT -> BTCUSDT
        return symbol.replace('/', '')

    @property
    def url(self) -> str:
        streams = [f"{s.lower()}@bookTicker" for s in self.symbols]
        return f"wss://stream.binance.com:9443/ws/{'/'.join(streams)}"

    async def handle_message(self, data: dict):
        # Binance stream payload is just the ticker object
        if 's' in data:
            await self._publish(data['s'].upper(), data['b'], data['a'])


class OkxStream(ExchangeStream):
    exchange = "okx"
    url = "wss://ws.okx.com:8443/ws/v5/public"

    @staticmethod
    def native_symbol(symbol: str) -> str:
        # Format: BTC/USDT -> BTC-USDT
        return symbol.replace('/', '-')

    def subscription(self) -> Optional[dict]:
        return {"op": "subscribe", "args": [{"channel": "tickers", "instId": s} for s in self.symbols]}

    async def handle_message(self, data: dict):
        # subscribe acks and errors carry an 'event' instead of 'data'
        for t in data.get('data', []):
            await self._publish(t['instId'], t['bidPx'], t['askPx'])


class BybitStream(ExchangeStream):
    """
    Bybit's spot ticker channel has no bid/ask, so the top level of the order book is used instead.
    """
    exchange = "bybit"
    url = "wss://stream.bybit.com/v5/public/spot"

    @staticmethod
    def native_symbol(symbol: str) -> str:
        return symbol.replace('/', '')

    def subscription(self) -> Optional[dict]:
        return {"op": "subscribe", "args": [f"orderbook.1.{s}" for s in self.symbols], "req_id": "1001"}

    async def handle_message(self, data: dict):
        if not data.get('topic', '').startswith('orderbook.'):
            return

        book = data['data']
        # deltas only carry the side that changed
        if not book.get('b') or not book.get('a'):
            return
        await self._publish(book['s'], book['b'][0][0], book['a'][0][0])


STREAMS: Dict[str, Type[ExchangeStream]] = {
    'binance': BinanceStream,
    'okx': OkxStream,
    'bybit': BybitStream,
}


class WebSocketEngine:
    """
    Keeps one reconnecting stream per streaming exchange alive.
    Tickers are only ever put on the queue, the trading tick is the single consumer.
    """
    RECONNECT_DELAY = 2

    def __init__(self, subscriptions: Dict[str, Dict[str, str]], queue: asyncio.Queue, logger: logging.Logger):
        # { 'binance': { 'BTC/USDT': 'BTC/USD' } } converted pair -> configured pair
        self.subscriptions = subscriptions
        self.queue = queue
        self.logger = logger
        self.running = False
        self._session = None
        self.tasks: List[asyncio.Task] = []

    @staticmethod
    def supports(exchange: str) -> bool:
        return exchange in STREAMS

    def _build_streams(self) -> List[ExchangeStream]:
        streams = []
        for exchange, pairs in self.subscriptions.items():
            stream_class = STREAMS[exchange]
            symbols = {stream_class.native_symbol(converted): pair for converted, pair in pairs.items()}
            streams.append(stream_class(symbols, self.queue))
        return streams

    async def start(self):
        self.running = True
        self._session = aiohttp.ClientSession()

        streams = self._build_streams()
        self.logger.info(f"Connecting {len(streams)} ticker streams...")
        self.tasks = [asyncio.create_task(self._run_stream_forever(s)) for s in streams]

    async def _run_stream_forever(self, stream: ExchangeStream):
        while self.running:
            try:
                await stream.connect(self._session)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError) as e:
                self.logger.error(f"{stream.exchange} stream error: {e}")
            if self.running:
                await asyncio.sleep(self.RECONNECT_DELAY)

    async def shutdown(self):
        self.running = False
        for t in self.tasks:
            t.cancel()
        if self._session:
            await self._session.close()
