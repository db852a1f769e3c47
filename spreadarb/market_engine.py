# spreadarb/market_engine.py
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

import ccxt.async_support as ccxt
from ccxt.base.decimal_to_precision import TICK_SIZE

from .caches import FeeCache
from .decimals import BTC_SCALE, USD_SCALE, ZERO, scale_of, set_scale, to_decimal
from .models import ExchangeFee, FeeComputation, Ticker

DEFAULT_FEE = Decimal("0.0030")
DEFAULT_MINIMUM_AMOUNT = Decimal("0.001")
FEE_PROBE_PAIR = "BTC/USD"


class ExchangeGateway:
    """
    Everything the trading core needs from one exchange, on top of a ccxt client.
    Pairs are written with USD everywhere in the config and translated to the
    exchange's home currency (USDT, EUR, ...) at this boundary.
    """
    def __init__(self, name: str, client: ccxt.Exchange, cfg: dict, fee_cache: FeeCache, logger: logging.Logger):
        self.name = name
        self.client = client
        self.cfg = cfg
        self.fee_cache = fee_cache
        self.logger = logger
        self._warned_fees: Set[str] = set()
        self._warned_minimums: Set[str] = set()

    # --- configuration helpers ---

    @property
    def home_currency(self) -> str:
        return self.cfg['home_currency']

    @property
    def fee_computation(self) -> FeeComputation:
        return FeeComputation(self.cfg['fee_computation'])

    @property
    def margin(self) -> bool:
        return bool(self.cfg['margin'])

    @property
    def margin_exclude(self) -> List[str]:
        return self.cfg['margin_exclude']

    @property
    def trading_pairs(self) -> List[str]:
        return self.cfg['trading_pairs']

    @property
    def streaming(self) -> bool:
        return bool(self.cfg['streaming'])

    @property
    def ticker_cfg(self) -> Dict[str, Any]:
        return self.cfg['ticker']

    @property
    def has_batch_tickers(self) -> bool:
        return bool(self.client.has.get('fetchTickers'))

    def convert_pair(self, pair: str) -> str:
        """BTC/USD -> BTC/USDT when the exchange's home currency is USDT."""
        base, quote = pair.split('/')
        if base == 'USD':
            base = self.home_currency
        elif quote == 'USD':
            quote = self.home_currency
        return f"{base}/{quote}"

    def _raw_pair(self, symbol: str) -> str:
        for pair in self.trading_pairs:
            if self.convert_pair(pair) == symbol:
                return pair
        return symbol

    # --- metadata ---

    def _market(self, pair: str) -> Optional[dict]:
        return (self.client.markets or {}).get(self.convert_pair(pair))

    def _precision_to_scale(self, precision: Any, default: int) -> int:
        if precision is None:
            return default
        if self.client.precisionMode == TICK_SIZE:
            return scale_of(to_decimal(precision).normalize())
        return int(precision)

    def volume_scale(self, pair: str) -> int:
        market = self._market(pair)
        if market is None:
            self.logger.debug(f"{self.name}: defaulting to volume scale {BTC_SCALE}, no metadata for {pair}")
            return BTC_SCALE
        return self._precision_to_scale(market.get('precision', {}).get('amount'), BTC_SCALE)

    def price_scale(self, pair: str) -> int:
        market = self._market(pair)
        if market is None:
            self.logger.debug(f"{self.name}: defaulting to price scale {USD_SCALE}, no metadata for {pair}")
            return USD_SCALE
        return self._precision_to_scale(market.get('precision', {}).get('price'), USD_SCALE)

    def currency_scale(self, currency: str) -> int:
        info = (self.client.currencies or {}).get(currency) or {}
        return self._precision_to_scale(info.get('precision'), BTC_SCALE)

    def amount_step_size(self, pair: str) -> Optional[Decimal]:
        return self.cfg['amount_step_size'].get(pair)

    def minimum_amount(self, pair: str) -> Decimal:
        market = self._market(pair) or {}
        minimum = ((market.get('limits') or {}).get('amount') or {}).get('min')
        if minimum is not None:
            return to_decimal(minimum)

        if pair not in self._warned_minimums:
            self._warned_minimums.add(pair)
            self.logger.warning(f"{self.name}: no minimum order amount for {pair}, using {DEFAULT_MINIMUM_AMOUNT}")
        return DEFAULT_MINIMUM_AMOUNT

    # --- market data ---

    async def fetch_ticker(self, pair: str) -> Ticker:
        raw = await self.client.fetch_ticker(self.convert_pair(pair))
        ticker = Ticker.from_ccxt(self.name, raw)
        ticker.symbol = pair
        return ticker

    async def fetch_tickers(self, pairs: List[str]) -> List[Ticker]:
        raw = await self.client.fetch_tickers([self.convert_pair(p) for p in pairs])
        tickers = []
        for symbol, data in raw.items():
            ticker = Ticker.from_ccxt(self.name, data)
            ticker.symbol = self._raw_pair(symbol)
            tickers.append(ticker)
        return tickers

    async def fetch_order_book(self, pair: str) -> dict:
        return await self.client.fetch_order_book(self.convert_pair(pair))

    # --- account ---

    async def get_balance(self, currency: str, scale: Optional[int] = None) -> Decimal:
        """Free balance of one currency, ZERO when the exchange doesn't report it."""
        balance = await self.client.fetch_balance()
        free = (balance.get('free') or {}).get(currency)
        if free is None:
            self.logger.error(f"{self.name}: Unable to fetch {currency} balance")
            return ZERO
        return set_scale(to_decimal(free), self.currency_scale(currency) if scale is None else scale)

    async def get_home_balance(self) -> Decimal:
        return await self.get_balance(self.home_currency)

    async def get_non_empty_trading_coins(self) -> Set[str]:
        """Base coins we are configured to trade that already have a balance on this exchange."""
        balance = await self.client.fetch_balance()
        held = {coin for coin, amount in (balance.get('free') or {}).items()
                if coin != self.home_currency and amount and to_decimal(amount) > ZERO}
        return {pair.split('/')[0] for pair in self.trading_pairs if pair.split('/')[0] in held}

    def _margin_fee(self) -> Optional[Decimal]:
        if not self.margin:
            return None
        if self.cfg['margin_fee_override'] is not None:
            return self.cfg['margin_fee_override']
        return self.cfg['margin_fee']

    async def get_exchange_fee(self, pair: str, quiet: bool = True) -> ExchangeFee:
        """
        Resolution order: cache, configured override, the exchange's dynamic fee,
        market metadata, configured fee, and finally a deliberately high default.
        """
        cached = self.fee_cache.get(self.name, pair)
        if cached is not None:
            return cached

        margin_fee = self._margin_fee()

        if self.cfg['trade_fee_override'] is not None:
            fee = ExchangeFee(self.cfg['trade_fee_override'], margin_fee)
            self.fee_cache.set(self.name, pair, fee)
            return fee

        if self.client.has.get('fetchTradingFee'):
            try:
                raw = await self.client.fetch_trading_fee(self.convert_pair(pair))
                if raw and raw.get('maker') is not None:
                    fee = ExchangeFee(to_decimal(raw['maker']), margin_fee)
                    self.fee_cache.set(self.name, pair, fee)
                    self.logger.debug(f"{self.name}: using dynamic maker fee {fee.trade_fee}")
                    return fee
            except ccxt.NotSupported:
                self.logger.debug(f"{self.name}: dynamic fees not supported, trying other methods")
            except (ccxt.NetworkError, ccxt.ExchangeError) as e:
                self.logger.debug(f"{self.name}: error fetching dynamic trading fees: {e}")

        market = self._market(pair)
        if market is None or market.get('maker') is None:
            configured = self.cfg['trade_fee']
            if configured is None:
                if not quiet and pair not in self._warned_fees:
                    self._warned_fees.add(pair)
                    self.logger.error(f"{self.name} has no fees configured. Setting default of {DEFAULT_FEE}. "
                                      f"Please configure the correct value!")
                return ExchangeFee(DEFAULT_FEE, margin_fee)

            if not quiet and pair not in self._warned_fees:
                self._warned_fees.add(pair)
                self.logger.warning(f"{self.name} fees unavailable via API. Will use configured value.")
            return ExchangeFee(configured, margin_fee)

        fee = ExchangeFee(to_decimal(market['maker']), margin_fee)
        self.fee_cache.set(self.name, pair, fee)
        return fee

    # --- orders ---

    async def place_limit_order(self, side: str, pair: str, volume: Decimal, price: Decimal,
                                leverage: Optional[str] = None) -> str:
        params = {'leverage': leverage} if leverage else {}
        order = await self.client.create_order(self.convert_pair(pair), 'limit', side,
                                               float(volume), float(price), params)
        return order['id']

    async def cancel_order(self, order_id: str, pair: Optional[str] = None) -> bool:
        await self.client.cancel_order(order_id, self.convert_pair(pair) if pair else None)
        return True

    async def get_order(self, order_id: str, pair: Optional[str] = None) -> Optional[dict]:
        if not self.client.has.get('fetchOrder'):
            raise ccxt.NotSupported(f"{self.name} does not support fetching orders by id")
        return await self.client.fetch_order(order_id, self.convert_pair(pair) if pair else None)

    async def get_open_orders(self, pair: Optional[str] = None) -> List[dict]:
        return await self.client.fetch_open_orders(self.convert_pair(pair) if pair else None)

    async def close(self):
        await self.client.close()


class MarketEngine:
    """
    Builds the ccxt clients and runs the connection diagnostics.
    Responsible for handing ExchangeGateways to the ticker and trading engines.
    """
    def __init__(self, config: dict, fee_cache: FeeCache, logger: logging.Logger):
        self.gateways: Dict[str, ExchangeGateway] = {}
        self.cfg = config
        self.fee_cache = fee_cache
        self.logger = logger

    def _build_client(self, name: str, ex_cfg: dict) -> ccxt.Exchange:
        ex_class = getattr(ccxt, name)
        client = ex_class({
            'apiKey': ex_cfg['api_key'],
            'secret': ex_cfg['secret'],
            'password': ex_cfg.get('password', ''),  # OKX/KuCoin require password
            'timeout': self.cfg['system']['network_timeout_ms'],
            'enableRateLimit': True,
            'options': ex_cfg.get('options') or {},
        })
        if self.cfg['system']['environment'] == 'testnet':
            client.set_sandbox_mode(True)
        return client

    async def initialize(self) -> bool:
        """
        Connects to exchanges and performs a connectivity test.
        Returns False if ANY exchange fails the diagnostic.
        """
        all_connected = True
        check_private = not self.cfg['trading']['paper']

        self.logger.info("Testing exchange connections...")

        for name, ex_cfg in self.cfg['exchanges'].items():
            client = None
            try:
                client = self._build_client(name, ex_cfg)

                # public API: connectivity and market metadata
                await client.load_markets()

                # private API: proves the keys work (not needed for paper trading)
                if check_private:
                    await client.fetch_balance()

                self.gateways[name] = ExchangeGateway(name, client, ex_cfg, self.fee_cache, self.logger)
                self.logger.info(f"{name.upper():<10} | Markets: {len(client.markets)} | Auth: {'OK' if check_private else 'skipped'}")

            except AttributeError:
                self.logger.critical(f"{name.upper():<10} | UNKNOWN EXCHANGE: ccxt has no exchange named '{name}'.")
                all_connected = False

            except ccxt.AuthenticationError:
                self.logger.critical(f"{name.upper():<10} | AUTH FAILED: Invalid API Key or Secret.")
                all_connected = False
                await client.close()

            except ccxt.PermissionDenied:
                self.logger.critical(f"{name.upper():<10} | PERMISSION DENIED: Key is missing trading or IP whitelist permissions.")
                all_connected = False
                await client.close()

            except ccxt.AccountSuspended:
                self.logger.critical(f"{name.upper():<10} | ACCOUNT SUSPENDED: Contact support immediately.")
                all_connected = False
                await client.close()

            except ccxt.RequestTimeout:
                self.logger.error(f"{name.upper():<10} | TIMEOUT: Exchange API is slow or down.")
                all_connected = False
                await client.close()

            except ccxt.ExchangeNotAvailable:
                self.logger.error(f"{name.upper():<10} | MAINTENANCE: Exchange is currently offline.")
                all_connected = False
                await client.close()

            except ccxt.BaseError as e:
                self.logger.critical(f"{name.upper():<10} | UNKNOWN ERROR: {e}")
                all_connected = False
                await client.close()

        return all_connected

    async def log_setup(self, gateway: ExchangeGateway):
        """Startup summary of fees and balance for one exchange."""
        fee = await gateway.get_exchange_fee(FEE_PROBE_PAIR, quiet=False)
        if fee.margin_fee is not None:
            self.logger.info(f"{gateway.name} {gateway.convert_pair(FEE_PROBE_PAIR)} trading fee: {fee.trade_fee} "
                             f"and margin fee: {fee.total_fee}")
        else:
            self.logger.info(f"{gateway.name} {gateway.convert_pair(FEE_PROBE_PAIR)} trading fee: {fee.trade_fee}")

        try:
            balance = await gateway.get_home_balance()
            self.logger.info(f"{gateway.name} balance: {balance} {gateway.home_currency}")
        except ccxt.BaseError as e:
            self.logger.error(f"{gateway.name}: Unable to fetch account balance: {e}")

    async def shutdown(self):
        """
        Gracefully closes all REST API sessions.
        """
        for gateway in self.gateways.values():
            await gateway.close()
