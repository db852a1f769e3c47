# main.py
import asyncio
import sys

import questionary
import yaml

from spreadarb.caches import BalanceCache, FeeCache, OrderVolumeCache
from spreadarb.conditions import ConditionService
from spreadarb.config import load_config
from spreadarb.error_collector import ErrorCollector
from spreadarb.logger import APP_LOGGER, setup_console_logger
from spreadarb.market_engine import MarketEngine
from spreadarb.notifications import LoggingNotifier
from spreadarb.paper_exchange import PaperExchange
from spreadarb.scheduler import TradingScheduler
from spreadarb.spread_engine import SpreadEngine
from spreadarb.ticker_engine import TickerEngine
from spreadarb.trading_engine import TradingEngine

CONFIG_PATH = "config.yaml"


def startup_selection(raw_config):
    """Interactive CLI to narrow down the configured exchanges and pairs."""
    print("\n🚀 SPREAD ARBITRAGE \n")
    avail_exchanges = list(raw_config['exchanges'].keys())
    exchanges = questionary.checkbox("Select Exchanges to Activate:", choices=avail_exchanges).ask()
    if not exchanges or len(exchanges) < 2:
        print("Need at least 2 exchanges for arbitrage. Exiting.")
        sys.exit()

    avail_pairs = sorted({p for name in exchanges for p in raw_config['exchanges'][name].get('trading_pairs', [])})
    pairs = questionary.checkbox("Select Pairs to Trade:", choices=avail_pairs).ask()
    if not pairs:
        print("No pairs selected. Exiting.")
        sys.exit()

    return exchanges, pairs


def apply_selection(raw_config, exchanges, pairs):
    raw_config['exchanges'] = {k: v for k, v in raw_config['exchanges'].items() if k in exchanges}
    for ex_cfg in raw_config['exchanges'].values():
        ex_cfg['trading_pairs'] = [p for p in ex_cfg.get('trading_pairs', []) if p in pairs]
    return raw_config


# --- MAIN CONTROLLER ---

class ArbitrageBot:
    """Composition root: builds every engine in dependency order and runs the scheduler."""

    def __init__(self, config: dict):
        self.config = config
        self.logger = setup_console_logger(APP_LOGGER, config['system']['log_level'])

        self.fee_cache = FeeCache()
        self.errors = ErrorCollector()
        self.conditions = ConditionService(self.logger)
        self.market_engine = MarketEngine(self.config, self.fee_cache, self.logger)
        self.ticker_engine = TickerEngine(self.config, self.errors, self.logger)
        self.spread_engine = SpreadEngine(self.config['trading'], self.logger)
        self.gateways = {}
        self.scheduler = None

    def _build_gateways(self):
        if not self.config['trading']['paper']:
            return dict(self.market_engine.gateways)

        self.logger.info("Paper trading enabled, no real orders will be placed")
        return {
            name: PaperExchange(gateway, self.config['paper'], self.logger, self.ticker_engine.get_ticker)
            for name, gateway in self.market_engine.gateways.items()
        }

    async def run(self):
        try:
            print("Initializing Diagnostic Checks...")
            is_healthy = await self.market_engine.initialize()
            if not is_healthy:
                print("❌ Diagnostic Failed. Check API Keys.")
                return

            self.gateways = self._build_gateways()
            trading_engine = TradingEngine(
                self.config, self.gateways, self.spread_engine, self.conditions,
                LoggingNotifier(self.logger), self.logger,
                balance_cache=BalanceCache(), order_volume_cache=OrderVolumeCache())

            self.scheduler = TradingScheduler(
                self.config, self.gateways, self.market_engine, self.ticker_engine,
                self.spread_engine, trading_engine, self.conditions, self.errors, self.logger)

            await self.scheduler.start()
            if not self.config['trading']['enabled']:
                self.logger.info("Trading is disabled in config.yaml. Exiting.")
                return

            await self.scheduler.run()
        finally:
            print("Shutting down resources...")
            if self.scheduler:
                await self.scheduler.shutdown()
            for gateway in self.gateways.values():
                if isinstance(gateway, PaperExchange):
                    await gateway.stop()
            await self.market_engine.shutdown()


if __name__ == "__main__":
    with open(CONFIG_PATH, "r") as f:
        raw_conf = yaml.safe_load(f)
    try:
        if (raw_conf.get('system') or {}).get('interactive'):
            sel_exs, sel_pairs = startup_selection(raw_conf)
            apply_selection(raw_conf, sel_exs, sel_pairs)
        bot = ArbitrageBot(load_config(raw_config=raw_conf))
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(bot.run())
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
        sys.exit()
