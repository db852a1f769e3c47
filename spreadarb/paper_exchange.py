# spreadarb/paper_exchange.py
import asyncio
import logging
import time
import uuid
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set, Tuple

import ccxt.async_support as ccxt

from .decimals import BTC_SCALE, USD_SCALE, ZERO, floor_scale, set_scale
from .market_engine import ExchangeGateway
from .models import (ExchangeFee, FeeComputation, MarginNotSupportedError, OrderStatus,
                     PaperOrder, PaperTrade, Ticker)

TickerLookup = Callable[[str, str], Optional[Ticker]]


class PaperExchange:
    """
    Simulated account with the same surface as ExchangeGateway.
    Market data, fees and metadata come from the real exchange, balances and fills are kept in memory.
    """
    UPDATE_INTERVAL = 2

    def __init__(self, gateway: ExchangeGateway, paper_cfg: dict, logger: logging.Logger,
                 ticker_lookup: Optional[TickerLookup] = None):
        self.gateway = gateway
        self.logger = logger
        self.auto_fill = bool(paper_cfg.get('auto_fill', False))
        self.ticker_lookup = ticker_lookup

        self.ledger: Dict[str, Decimal] = {}
        self.orders: List[PaperOrder] = []
        self.trades: List[PaperTrade] = []
        self._update_task: Optional[asyncio.Task] = None

        self.put_coin(self.home_currency, paper_cfg['initial_balance'])
        self.logger.info(f"{self.name} paper account seeded with {paper_cfg['initial_balance']} {self.home_currency}")

    # --- delegated to the real exchange ---

    @property
    def name(self) -> str:
        return self.gateway.name

    @property
    def cfg(self) -> dict:
        return self.gateway.cfg

    @property
    def home_currency(self) -> str:
        return self.gateway.home_currency

    @property
    def fee_computation(self) -> FeeComputation:
        return self.gateway.fee_computation

    @property
    def margin(self) -> bool:
        return self.gateway.margin

    @property
    def margin_exclude(self) -> List[str]:
        return self.gateway.margin_exclude

    @property
    def trading_pairs(self) -> List[str]:
        return self.gateway.trading_pairs

    @property
    def streaming(self) -> bool:
        return self.gateway.streaming

    @property
    def ticker_cfg(self) -> dict:
        return self.gateway.ticker_cfg

    @property
    def has_batch_tickers(self) -> bool:
        return self.gateway.has_batch_tickers

    def convert_pair(self, pair: str) -> str:
        return self.gateway.convert_pair(pair)

    def volume_scale(self, pair: str) -> int:
        return self.gateway.volume_scale(pair)

    def price_scale(self, pair: str) -> int:
        return self.gateway.price_scale(pair)

    def currency_scale(self, currency: str) -> int:
        return self.gateway.currency_scale(currency)

    def amount_step_size(self, pair: str) -> Optional[Decimal]:
        return self.gateway.amount_step_size(pair)

    def minimum_amount(self, pair: str) -> Decimal:
        return self.gateway.minimum_amount(pair)

    async def fetch_ticker(self, pair: str) -> Ticker:
        return await self.gateway.fetch_ticker(pair)

    async def fetch_tickers(self, pairs: List[str]) -> List[Ticker]:
        return await self.gateway.fetch_tickers(pairs)

    async def fetch_order_book(self, pair: str) -> dict:
        return await self.gateway.fetch_order_book(pair)

    async def get_exchange_fee(self, pair: str, quiet: bool = True) -> ExchangeFee:
        return await self.gateway.get_exchange_fee(pair, quiet)

    async def close(self):
        await self.stop()
        await self.gateway.close()

    # --- simulated account ---

    def _currencies(self, pair: str) -> Tuple[str, str]:
        base, quote = self.convert_pair(pair).split('/')
        return base, quote

    def _is_margin_order(self, order: PaperOrder) -> bool:
        if order.leverage is None:
            return False
        if not self.margin:
            raise MarginNotSupportedError(self.name)
        return True

    def put_coin(self, currency: str, delta: Decimal):
        """Applies a balance change. Empty balances are dropped from the ledger."""
        balance = self.ledger.get(currency, ZERO) + delta

        if balance < ZERO and not self.margin:
            raise ccxt.InsufficientFunds(f"{self.name} paper account would have a negative {currency} balance: {balance}")

        if balance == ZERO:
            self.ledger.pop(currency, None)
        else:
            self.ledger[currency] = balance

    async def _fee_rate(self, order: PaperOrder) -> Decimal:
        fee = await self.gateway.get_exchange_fee(order.pair, quiet=False)
        if self._is_margin_order(order) and fee.margin_fee is not None:
            return fee.trade_fee + fee.margin_fee
        return fee.trade_fee

    async def _deltas(self, order: PaperOrder, price: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
        """Returns (quote delta, base delta, fee) for filling the order at price."""
        fee_rate = await self._fee_rate(order)
        cost = order.amount * price

        if self.fee_computation is FeeComputation.SERVER:
            quote_fee, base_fee = cost * fee_rate, ZERO
        else:
            quote_fee, base_fee = ZERO, set_scale(order.amount * fee_rate, BTC_SCALE)

        if order.side == 'buy':
            quote_delta, base_delta = -cost, order.amount
        else:
            quote_delta, base_delta = cost, -order.amount

        return (floor_scale(quote_delta - quote_fee, USD_SCALE),
                base_delta - base_fee,
                quote_fee if self.fee_computation is FeeComputation.SERVER else base_fee)

    async def _verify_order(self, order: PaperOrder):
        if self._is_margin_order(order):
            return

        quote_delta, base_delta, _ = await self._deltas(order, order.limit_price)
        base, quote = self._currencies(order.pair)

        if self.ledger.get(quote, ZERO) + quote_delta < ZERO:
            raise ccxt.InsufficientFunds(f"{self.name}: not enough {quote} to {order.side} {order.amount} {order.pair}")
        if self.ledger.get(base, ZERO) + base_delta < ZERO:
            raise ccxt.InsufficientFunds(f"{self.name}: not enough {base} to {order.side} {order.amount} {order.pair}")

    async def place_limit_order(self, side: str, pair: str, volume: Decimal, price: Decimal,
                                leverage: Optional[str] = None) -> str:
        order = PaperOrder(
            id=uuid.uuid4().hex,
            side=side,
            pair=pair,
            amount=volume,
            limit_price=price,
            timestamp=time.time(),
            leverage=leverage,
        )
        await self._verify_order(order)

        self.orders.append(order)
        self.logger.info(f"{self.name} paper {side} order {order.id}: {volume} {pair} @ {price}")
        return order.id

    async def fill_order(self, order: PaperOrder, price: Decimal):
        if not order.status.is_open:
            return

        # claimed before the fee lookup so a concurrent update can't fill it again
        previous_status, order.status = order.status, OrderStatus.FILLED
        try:
            quote_delta, base_delta, fee = await self._deltas(order, price)
        except ccxt.BaseError:
            order.status = previous_status
            raise
        base, quote = self._currencies(order.pair)

        self.put_coin(quote, quote_delta)
        self.put_coin(base, base_delta)

        order.average_price = price
        order.filled = order.amount
        order.fee = fee

        self.trades.append(PaperTrade(order.id, order.side, order.pair, order.amount, price, fee, time.time()))
        self.logger.info(f"{self.name} paper order {order.id} filled: {order.side} {order.amount} {order.pair} @ {price}")

    async def _current_ticker(self, pair: str) -> Optional[Ticker]:
        if self.ticker_lookup is not None:
            ticker = self.ticker_lookup(self.name, pair)
            if ticker is not None:
                return ticker

        try:
            return await self.gateway.fetch_ticker(pair)
        except ccxt.BaseError as e:
            self.logger.debug(f"{self.name} paper exchange could not fetch {pair} ticker: {e}")
            return None

    async def update_orders(self):
        """Fills every open order whose limit price the market has crossed."""
        for order in [o for o in self.orders if o.status.is_open]:
            if self.auto_fill:
                await self.fill_order(order, order.limit_price)
                continue

            ticker = await self._current_ticker(order.pair)
            if ticker is None:
                continue

            if order.side == 'buy' and ticker.ask is not None and ticker.ask <= order.limit_price:
                await self.fill_order(order, order.limit_price)
            elif order.side == 'sell' and ticker.bid is not None and ticker.bid >= order.limit_price:
                await self.fill_order(order, order.limit_price)

    async def _update_loop(self):
        while True:
            try:
                await self.update_orders()
            except ccxt.BaseError as e:
                self.logger.error(f"{self.name} paper exchange failed to update orders: {e}")
            await asyncio.sleep(self.UPDATE_INTERVAL)

    def start(self):
        if self._update_task is None:
            self._update_task = asyncio.create_task(self._update_loop())

    async def stop(self):
        if self._update_task is None:
            return
        self._update_task.cancel()
        try:
            await self._update_task
        except asyncio.CancelledError:
            pass
        self._update_task = None

    def _find_order(self, order_id: str) -> PaperOrder:
        for order in self.orders:
            if order.id == order_id:
                return order
        raise ccxt.OrderNotFound(f"{self.name} paper exchange has no order {order_id}")

    async def get_order(self, order_id: str, pair: Optional[str] = None) -> dict:
        await self.update_orders()
        return self._find_order(order_id).to_ccxt()

    async def get_open_orders(self, pair: Optional[str] = None) -> List[dict]:
        await self.update_orders()
        return [o.to_ccxt() for o in self.orders
                if o.status.is_open and (pair is None or o.pair == pair)]

    async def cancel_order(self, order_id: str, pair: Optional[str] = None) -> bool:
        order = self._find_order(order_id)
        if not order.status.is_open:
            return False

        order.status = OrderStatus.CANCELED
        self.logger.info(f"{self.name} paper order {order_id} canceled")
        return True

    async def get_balance(self, currency: str, scale: Optional[int] = None) -> Decimal:
        await self.update_orders()
        balance = self.ledger.get(currency, ZERO)
        return set_scale(balance, self.currency_scale(currency) if scale is None else scale)

    async def get_home_balance(self) -> Decimal:
        return await self.get_balance(self.home_currency)

    async def get_non_empty_trading_coins(self) -> Set[str]:
        return {pair.split('/')[0] for pair in self.trading_pairs
                if self.ledger.get(pair.split('/')[0], ZERO) > ZERO}
