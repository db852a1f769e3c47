# spreadarb/ticker_engine.py
import asyncio
import logging
import random
import time
from typing import Dict, List, Optional

import ccxt.async_support as ccxt

from .error_collector import ErrorCollector
from .models import Ticker, TradeCombination
from .spread_engine import SpreadEngine
from .websocket_engine import WebSocketEngine


class TickerStrategy:
    """Fetches the tickers of one exchange and warns when that takes too long."""
    name = "base"

    def __init__(self, errors: ErrorCollector, slow_warning_ms: int, logger: logging.Logger):
        self.errors = errors
        self.slow_warning_ms = slow_warning_ms
        self.logger = logger

    async def get_tickers(self, gateway, pairs: List[str]) -> List[Ticker]:
        start = time.perf_counter()
        tickers = await self._fetch(gateway, pairs)
        elapsed_ms = (time.perf_counter() - start) * 1000

        if elapsed_ms > self.slow_warning_ms:
            self.logger.warning(f"Slow Tickers! Fetched {len(tickers)} tickers via {self.name} "
                                f"for {gateway.name} in {elapsed_ms:.0f} ms")
        return tickers

    async def _fetch(self, gateway, pairs: List[str]) -> List[Ticker]:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.name


class SingleCallTickerStrategy(TickerStrategy):
    """One batched API call for every pair."""
    name = "SingleCall"

    async def _fetch(self, gateway, pairs: List[str]) -> List[Ticker]:
        try:
            return await gateway.fetch_tickers(pairs)
        except ccxt.BaseError as e:
            self.errors.collect(gateway.name, e)
            self.logger.debug(f"{gateway.name} batched ticker fetch failed: {e}")
            return []


class ParallelTickerStrategy(TickerStrategy):
    """
    One call per pair, run concurrently inside each batch.
    `ticker.batch_size` and `ticker.batch_delay_ms` throttle exchanges that rate limit aggressively.
    """
    name = "Parallel"

    async def _fetch(self, gateway, pairs: List[str]) -> List[Ticker]:
        batch_size = gateway.ticker_cfg.get('batch_size') or len(pairs) or 1
        batch_delay_ms = gateway.ticker_cfg.get('batch_delay_ms')

        tickers = []
        for i in range(0, len(pairs), batch_size):
            if batch_delay_ms and i > 0:
                self.logger.debug(f"Waiting {batch_delay_ms} ms until next batch...")
                await asyncio.sleep(batch_delay_ms / 1000)

            batch = pairs[i:i + batch_size]
            results = await asyncio.gather(*(gateway.fetch_ticker(p) for p in batch), return_exceptions=True)

            for pair, result in zip(batch, results):
                if isinstance(result, Exception):
                    self.errors.collect(gateway.name, result)
                    self.logger.debug(f"{gateway.name} {pair} ticker fetch failed: {result}")
                else:
                    tickers.append(result)
        return tickers


class StreamingTickerStrategy(TickerStrategy):
    """Tickers arrive through the websocket queue, nothing to fetch."""
    name = "Streaming"

    async def _fetch(self, gateway, pairs: List[str]) -> List[Ticker]:
        return []


class TickerEngine:
    """
    Owns the ticker cache and the list of tradable combinations.
    Written to only from the trading tick: polled tickers in refresh_tickers(),
    streamed tickers when the tick drains the websocket queue.
    """
    def __init__(self, config: dict, errors: ErrorCollector, logger: logging.Logger):
        self.cfg = config
        self.errors = errors
        self.logger = logger
        self.slow_warning_ms = config['notifications']['logs']['slow_ticker_warning_ms']
        self.blacklist = set(config['trading'].get('trade_blacklist') or [])

        # { 'kraken:BTC/USD': Ticker }
        self.tickers: Dict[str, Ticker] = {}
        self.gateways: Dict[str, object] = {}
        self.strategies: Dict[str, TickerStrategy] = {}
        self.polling_combinations: List[TradeCombination] = []
        self.streaming_combinations: List[TradeCombination] = []

        self.stream_queue: asyncio.Queue = asyncio.Queue()
        self.websocket: Optional[WebSocketEngine] = None

    @staticmethod
    def _key(exchange: str, pair: str) -> str:
        return f"{exchange}:{pair}"

    @staticmethod
    def is_invalid_ticker(ticker: Optional[Ticker]) -> bool:
        return SpreadEngine.is_invalid_ticker(ticker)

    async def choose_strategy(self, gateway) -> TickerStrategy:
        """Streaming where we can, otherwise probe whether a batched call works."""
        if gateway.streaming:
            if WebSocketEngine.supports(gateway.name):
                return StreamingTickerStrategy(self.errors, self.slow_warning_ms, self.logger)
            self.logger.warning(f"{gateway.name} has no ticker stream, falling back to polling")

        if gateway.has_batch_tickers:
            try:
                await gateway.fetch_tickers(gateway.trading_pairs[:1])
                return SingleCallTickerStrategy(self.errors, self.slow_warning_ms, self.logger)
            except ccxt.NotSupported:
                pass
            except ccxt.BaseError as e:
                self.logger.debug(f"{gateway.name} batched ticker probe failed: {e}")

        self.logger.warning(f"{gateway.name} does not support fetching multiple tickers at a time and will fetch "
                            f"tickers individually instead. This may result in API rate limiting.")
        return ParallelTickerStrategy(self.errors, self.slow_warning_ms, self.logger)

    def is_invalid_combination(self, long_gateway, short_gateway, pair: str) -> bool:
        if long_gateway.name == short_gateway.name:
            return True
        if not short_gateway.margin:
            return True
        if pair in short_gateway.margin_exclude:
            return True
        return str(TradeCombination(long_gateway.name, short_gateway.name, pair)) in self.blacklist

    async def initialize(self, gateways: Dict[str, object]):
        """Chooses a strategy per exchange, builds the combinations and starts the streams."""
        self.gateways = gateways

        for gateway in gateways.values():
            self.strategies[gateway.name] = await self.choose_strategy(gateway)
            self.logger.info(f"{gateway.name} ticker strategy: {self.strategies[gateway.name]}")

        for long_gateway in gateways.values():
            for short_gateway in gateways.values():
                common = [p for p in long_gateway.trading_pairs if p in short_gateway.trading_pairs]
                for pair in common:
                    if self.is_invalid_combination(long_gateway, short_gateway, pair):
                        continue

                    combination = TradeCombination(long_gateway.name, short_gateway.name, pair)
                    if self._is_streaming(long_gateway.name) and self._is_streaming(short_gateway.name):
                        self.streaming_combinations.append(combination)
                    else:
                        self.polling_combinations.append(combination)

        self.logger.info(f"Trading the following exchanges and pairs: "
                         f"{[str(c) for c in self.polling_combinations + self.streaming_combinations]}")

        subscriptions = {
            name: {gateway.convert_pair(p): p for p in gateway.trading_pairs}
            for name, gateway in gateways.items() if self._is_streaming(name)
        }
        if subscriptions:
            self.websocket = WebSocketEngine(subscriptions, self.stream_queue, self.logger)
            await self.websocket.start()

    def _is_streaming(self, exchange: str) -> bool:
        return isinstance(self.strategies.get(exchange), StreamingTickerStrategy)

    async def refresh_tickers(self):
        """Re-fetches every ticker the polling combinations need."""
        pairs_by_exchange: Dict[str, List[str]] = {}
        for combination in self.polling_combinations:
            for exchange in (combination.long_exchange, combination.short_exchange):
                pairs = pairs_by_exchange.setdefault(exchange, [])
                if combination.pair not in pairs:
                    pairs.append(combination.pair)

        # stale polled prices must not survive a failed fetch
        for exchange, pairs in pairs_by_exchange.items():
            for pair in pairs:
                self.tickers.pop(self._key(exchange, pair), None)

        results = await asyncio.gather(*(
            self.strategies[exchange].get_tickers(self.gateways[exchange], pairs)
            for exchange, pairs in pairs_by_exchange.items()
        ))

        for tickers in results:
            for ticker in tickers:
                self.put_ticker(ticker)

    def drain_stream_queue(self) -> int:
        """Applies streamed tickers, skipping ones whose prices did not move. Returns how many were applied."""
        applied = 0
        while True:
            try:
                ticker = self.stream_queue.get_nowait()
            except asyncio.QueueEmpty:
                return applied

            current = self.tickers.get(self._key(ticker.exchange, ticker.symbol))
            if current is not None and current.bid == ticker.bid and current.ask == ticker.ask:
                continue

            self.put_ticker(ticker)
            applied += 1

    def put_ticker(self, ticker: Ticker):
        self.tickers[self._key(ticker.exchange, ticker.symbol)] = ticker

    def get_ticker(self, exchange: str, pair: str) -> Optional[Ticker]:
        return self.tickers.get(self._key(exchange, pair))

    def get_polling_combinations(self) -> List[TradeCombination]:
        combinations = list(self.polling_combinations)
        random.shuffle(combinations)
        return combinations

    def get_streaming_combinations(self) -> List[TradeCombination]:
        combinations = list(self.streaming_combinations)
        random.shuffle(combinations)
        return combinations

    async def shutdown(self):
        if self.websocket:
            await self.websocket.shutdown()
