# spreadarb/scheduler.py
import asyncio
import logging
import time
from typing import Dict, Iterable, Optional

from rich.console import Console
from rich.table import Table

from .conditions import ConditionService
from .error_collector import ErrorCollector
from .market_engine import MarketEngine
from .models import TradeCombination
from .paper_exchange import PaperExchange
from .spread_engine import SpreadEngine
from .ticker_engine import TickerEngine
from .trading_engine import TradingEngine

ERROR_SUMMARY_SECONDS = 60
SPREAD_SUMMARY_SECONDS = 6 * 60 * 60


class TradingScheduler:
    """
    Drives the bot: one tick every few seconds plus the periodic summaries.
    Ticks never overlap, a tick that finds the previous one still running is skipped.
    """
    def __init__(self, config: dict, gateways: Dict[str, object], market_engine: MarketEngine,
                 ticker_engine: TickerEngine, spread_engine: SpreadEngine, trading_engine: TradingEngine,
                 conditions: ConditionService, errors: ErrorCollector, logger: logging.Logger,
                 console: Optional[Console] = None):
        self.cfg = config
        self.gateways = gateways
        self.market_engine = market_engine
        self.ticker_engine = ticker_engine
        self.spread_engine = spread_engine
        self.trading_engine = trading_engine
        self.conditions = conditions
        self.errors = errors
        self.logger = logger
        self.console = console or Console()

        self.tick_interval = config['system']['tick_interval_seconds']
        self.initial_delay = config['system']['initial_delay_seconds']
        self.slow_tick_ms = config['notifications']['logs']['slow_ticker_warning_ms']
        self._lock = asyncio.Lock()

    async def start(self):
        """Exchange setup, safety checks, tickers and persisted state, in that order."""
        for gateway in self.gateways.values():
            await self.market_engine.log_setup(gateway)

        if not self.trading_engine.state_exists():
            for gateway in self.gateways.values():
                coins = await gateway.get_non_empty_trading_coins()
                if coins:
                    raise RuntimeError(f"{gateway.name} holds {sorted(coins)} but no position is recorded. "
                                       f"Sell those coins or restore the state file before starting.")

        await self.ticker_engine.initialize(self.gateways)

        trading = self.cfg['trading']
        if trading.get('fixed_exposure') is not None:
            self.logger.info(f"Using fixed exposure of ${trading['fixed_exposure']} as configured")
        if trading.get('trade_timeout_hours') is not None:
            self.logger.info(f"Using trade timeout of {trading['trade_timeout_hours']} hours")

        self.trading_engine.load_state()
        await self.trading_engine.start()

        for gateway in self.gateways.values():
            if isinstance(gateway, PaperExchange):
                gateway.start()

    async def tick(self):
        if self._lock.locked():
            self.logger.debug("Previous tick still running, skipping")
            return

        async with self._lock:
            await self._tick()

    async def _tick(self):
        start = time.perf_counter()

        if self.trading_engine.active_position is None and self.conditions.is_exit_when_idle_condition():
            self.logger.info("Exiting at user request")
            self.conditions.clear_exit_when_idle_condition()
            raise SystemExit(0)

        if self.conditions.is_status_condition():
            self.print_status()
            self.conditions.clear_status_condition()

        await self.ticker_engine.refresh_tickers()
        self.ticker_engine.drain_stream_queue()

        await self.start_trading_process(self.ticker_engine.get_polling_combinations()
                                         + self.ticker_engine.get_streaming_combinations())

        elapsed_ms = (time.perf_counter() - start) * 1000
        if elapsed_ms > self.slow_tick_ms:
            self.logger.warning(f"Polling loop took {elapsed_ms:.0f} ms")

    async def start_trading_process(self, combinations: Iterable[TradeCombination]):
        for combination in combinations:
            long_ticker = self.ticker_engine.get_ticker(combination.long_exchange, combination.pair)
            short_ticker = self.ticker_engine.get_ticker(combination.short_exchange, combination.pair)

            spread = self.spread_engine.compute_spread_for(combination, long_ticker, short_ticker)
            if spread is None:
                continue

            try:
                await self.trading_engine.trade(spread)
            except Exception:
                # one broken combination must not stop the others
                self.logger.exception(f"Unexpected error evaluating {combination}")

    def error_summary(self):
        if self.errors.is_empty():
            return
        for line in self.errors.report():
            self.logger.info(line)
        self.errors.clear()

    def spread_summary(self):
        position = self.trading_engine.active_position
        if position is not None:
            self.logger.info(f"Active position: {position}")
        self.spread_engine.summary()
        self.trading_engine.missed_trades_summary()

    def build_status_table(self) -> Table:
        table = Table(title="Arbitrage Status")
        table.add_column("Combination", style="cyan")
        table.add_column("Min In", justify="right")
        table.add_column("Max In", justify="right", style="green")
        table.add_column("Min Out", justify="right", style="green")
        table.add_column("Max Out", justify="right")
        table.add_column("State", style="magenta")

        position = self.trading_engine.active_position
        for combination in self.ticker_engine.polling_combinations + self.ticker_engine.streaming_combinations:
            if position is not None and position.is_combination(combination):
                state = f"ACTIVE (exit < {position.exit_target})"
            elif combination in self.trading_engine.missed_trades:
                state = "MISSED"
            else:
                state = "-"

            table.add_row(
                str(combination),
                str(self.spread_engine.get_min_spread_in(combination)),
                str(self.spread_engine.get_max_spread_in(combination)),
                str(self.spread_engine.get_min_spread_out(combination)),
                str(self.spread_engine.get_max_spread_out(combination)),
                state,
            )
        return table

    def print_status(self):
        self.console.print(self.build_status_table())

    async def run(self):
        await asyncio.sleep(self.initial_delay)

        last_error_summary = last_spread_summary = time.monotonic()
        while True:
            start_tick = time.monotonic()
            await self.tick()

            now = time.monotonic()
            if now - last_error_summary >= ERROR_SUMMARY_SECONDS:
                self.error_summary()
                last_error_summary = now
            if now - last_spread_summary >= SPREAD_SUMMARY_SECONDS:
                self.spread_summary()
                last_spread_summary = now

            elapsed = time.monotonic() - start_tick
            await asyncio.sleep(max(0, self.tick_interval - elapsed))

    async def shutdown(self):
        await self.ticker_engine.shutdown()
        await self.trading_engine.stop()
