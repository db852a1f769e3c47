"""
Shared fixtures: a scripted exchange that stands in for ExchangeGateway, and config builders.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional

import ccxt.async_support as ccxt
import pytest

from spreadarb.config import normalize_config
from spreadarb.models import ExchangeFee, FeeComputation, Ticker


class FakeGateway:
    """
    In-memory market data for one exchange.
    Tests set `tickers` and `books` directly, everything else follows the config.
    """
    def __init__(self, name: str, cfg: dict):
        self.name = name
        self.cfg = cfg
        self.tickers: Dict[str, Ticker] = {}
        self.books: Dict[str, dict] = {}
        self.fetch_tickers_error: Optional[Exception] = None
        self.has_batch_tickers = True
        self.closed = False

    @property
    def home_currency(self):
        return self.cfg['home_currency']

    @property
    def fee_computation(self):
        return FeeComputation(self.cfg['fee_computation'])

    @property
    def margin(self):
        return self.cfg['margin']

    @property
    def margin_exclude(self):
        return self.cfg['margin_exclude']

    @property
    def trading_pairs(self):
        return self.cfg['trading_pairs']

    @property
    def streaming(self):
        return self.cfg['streaming']

    @property
    def ticker_cfg(self):
        return self.cfg['ticker']

    def convert_pair(self, pair: str) -> str:
        return pair.replace('USD', self.home_currency) if self.home_currency != 'USD' else pair

    def volume_scale(self, pair: str) -> int:
        return 8

    def price_scale(self, pair: str) -> int:
        return 2

    def currency_scale(self, currency: str) -> int:
        return 2 if currency == self.home_currency else 8

    def amount_step_size(self, pair: str) -> Optional[Decimal]:
        return self.cfg['amount_step_size'].get(pair)

    def minimum_amount(self, pair: str) -> Decimal:
        return Decimal("0.001")

    async def fetch_ticker(self, pair: str) -> Ticker:
        if pair not in self.tickers:
            raise ccxt.BadSymbol(f"{self.name} has no {pair}")
        return self.tickers[pair]

    async def fetch_tickers(self, pairs: List[str]) -> List[Ticker]:
        if self.fetch_tickers_error is not None:
            raise self.fetch_tickers_error
        return [self.tickers[p] for p in pairs if p in self.tickers]

    async def fetch_order_book(self, pair: str) -> dict:
        return self.books[pair]

    async def get_exchange_fee(self, pair: str, quiet: bool = True) -> ExchangeFee:
        return ExchangeFee(self.cfg['trade_fee'], self.cfg['margin_fee'] if self.margin else None)

    async def close(self):
        self.closed = True


def make_config(tmp_path, **overrides) -> dict:
    raw = {
        'system': {'state_dir': str(tmp_path / 'state')},
        'trading': {
            'entry_spread_target': '0.01',
            'exit_spread_target': '0',
        },
        'paper': {'auto_fill': True, 'initial_balance': '1000'},
        'exchanges': {
            'alpha': {'trading_pairs': ['BTC/USD'], 'margin': False, 'trade_fee': '0.001'},
            'beta': {'trading_pairs': ['BTC/USD'], 'margin': True, 'trade_fee': '0.001'},
        },
    }
    for section, values in overrides.items():
        if isinstance(values, dict) and section != 'exchanges':
            raw.setdefault(section, {}).update(values)
        else:
            raw[section] = values
    return normalize_config(raw)


def ticker(exchange: str, bid, ask, pair: str = 'BTC/USD') -> Ticker:
    return Ticker(exchange, pair, Decimal(str(bid)), Decimal(str(ask)))


@pytest.fixture
def logger():
    return logging.getLogger("SpreadArb.tests")


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)
