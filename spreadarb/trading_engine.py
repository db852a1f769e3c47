# spreadarb/trading_engine.py
import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional

import ccxt.async_support as ccxt

from .caches import BalanceCache, OrderVolumeCache
from .conditions import ConditionService
from .decimals import USD_SCALE, ZERO, set_scale, to_decimal
from .logger import AsyncAuditLogger
from .models import ActivePosition, ArbitrageLog, ExchangeFee, LiquidityError, Spread, Trade, TradeCombination
from .notifications import NotificationSink
from .spread_engine import SpreadEngine
from .trade_volume import EntryTradeVolume, ExitTradeVolume, TradeVolume

STATE_FILE = "arbitrader-state.json"
HISTORY_FILE = "arbitrader-arbitrage-history.csv"


@dataclass(slots=True)
class MissedTrade:
    first_seen: datetime
    best_spread: Decimal


class TradingEngine:
    """
    The position state machine. At most one position is open at a time.
    IDLE -> ACTIVE when a combination's entry spread beats its target and both legs are placed,
    ACTIVE -> IDLE when the exit spread reverts, the position times out or an operator forces it.
    """
    TRADE_PORTION = Decimal("0.9")
    ORDER_POLL_SECONDS = 3
    # Kraken won't treat an order as a margin trade without it
    SHORT_LEVERAGE = "2"

    def __init__(self, config: dict, gateways: Dict[str, object], spread_engine: SpreadEngine,
                 conditions: ConditionService, notifier: NotificationSink, logger: logging.Logger,
                 balance_cache: Optional[BalanceCache] = None,
                 order_volume_cache: Optional[OrderVolumeCache] = None):
        self.cfg = config['trading']
        self.gateways = gateways
        self.spread_engine = spread_engine
        self.conditions = conditions
        self.notifier = notifier
        self.logger = logger
        self.balance_cache = balance_cache or BalanceCache()
        self.order_volume_cache = order_volume_cache or OrderVolumeCache()

        state_dir = config['system']['state_dir']
        self.state_path = os.path.join(state_dir, STATE_FILE)
        self.audit = AsyncAuditLogger(os.path.join(state_dir, HISTORY_FILE), ArbitrageLog.header())

        self.max_neutrality_deviation = to_decimal(self.cfg.get('max_neutrality_deviation') or "1")
        self.order_fill_polls = int(self.cfg.get('order_fill_polls') or 100)

        self.active_position: Optional[ActivePosition] = None
        self.missed_trades: Dict[TradeCombination, MissedTrade] = {}
        self.bail_out = False
        self.timeout_exit_warning = False

    async def start(self):
        await self.audit.start()

    async def stop(self):
        await self.audit.stop()

    # --- durable state ---

    def state_exists(self) -> bool:
        return os.path.exists(self.state_path)

    def load_state(self):
        """Resumes a position left open by a previous run. A missing file just means we're idle."""
        if not self.state_exists():
            return

        try:
            with open(self.state_path, "r") as f:
                self.active_position = ActivePosition.from_json(f.read())
        except (OSError, ValueError, KeyError) as e:
            raise RuntimeError(f"Unable to read state file {self.state_path}: {e}") from e

        self.logger.info(f"Loaded active position: {self.active_position}")

    def write_state(self):
        if self.active_position is None:
            return

        os.makedirs(os.path.dirname(self.state_path) or ".", exist_ok=True)
        tmp_path = f"{self.state_path}.tmp"
        with open(tmp_path, "w") as f:
            f.write(self.active_position.to_json())
        os.replace(tmp_path, self.state_path)

    def delete_state(self):
        try:
            os.remove(self.state_path)
        except FileNotFoundError:
            pass

    # --- helpers ---

    def is_active_position_expired(self) -> bool:
        timeout = self.cfg.get('trade_timeout_hours')
        if timeout is None or self.active_position is None or self.active_position.entry_time is None:
            return False
        return self.active_position.entry_time + timedelta(hours=float(timeout)) < datetime.now(timezone.utc)

    async def _home_balance(self, gateway) -> Decimal:
        cached = self.balance_cache.get(gateway.name)
        if cached is not None:
            return cached

        try:
            balance = await gateway.get_home_balance()
        except ccxt.BaseError as e:
            # caching zero backs us off for a while if we're being rate limited
            self.logger.info(f"Error fetching {gateway.name} account balance: {e}")
            balance = ZERO

        self.balance_cache.set(gateway.name, balance)
        return balance

    async def get_maximum_exposure(self, *gateways) -> Decimal:
        """Fixed exposure if configured, otherwise a portion of the smallest balance."""
        fixed = self.cfg.get('fixed_exposure')
        if fixed is not None:
            return fixed

        balances = [await self._home_balance(gateway) for gateway in gateways]
        exposure = set_scale(min(balances, default=ZERO) * self.TRADE_PORTION, USD_SCALE)
        self.logger.debug(f"Maximum exposure for {[g.name for g in gateways]}: {exposure}")
        return exposure

    async def validate_max_exposure(self, max_exposure: Decimal, *gateways) -> bool:
        if max_exposure <= ZERO:
            self.logger.info(f"Maximum exposure is {max_exposure}, not trading")
            return False

        for gateway in gateways:
            balance = await self._home_balance(gateway)
            if balance < max_exposure:
                self.logger.error(f"{gateway.name} balance {balance} {gateway.home_currency} is lower than "
                                  f"the maximum exposure {max_exposure}")
                return False
        return True

    async def get_limit_price(self, gateway, pair: str, volume: Decimal, side: str) -> Decimal:
        """
        Walks the order book until the cumulative volume exceeds ours.
        A limit order at that level is very likely to fill at this or a better price.
        """
        book = await gateway.fetch_order_book(pair)
        levels = book['asks'] if side == 'buy' else book['bids']

        cumulative = ZERO
        for level in levels:
            cumulative += to_decimal(level[1])
            if cumulative > volume:
                return set_scale(to_decimal(level[0]), gateway.price_scale(pair))

        raise LiquidityError(f"Not enough liquidity on {gateway.name} to {side} {volume} {pair}")

    async def log_current_balances(self, long_gateway, short_gateway) -> Decimal:
        try:
            long_balance = await long_gateway.get_home_balance()
            short_balance = await short_gateway.get_home_balance()
        except ccxt.BaseError as e:
            self.logger.error(f"Error fetching account balances: {e}")
            return ZERO

        total = long_balance + short_balance
        self.logger.info(f"Updated account balances: {long_gateway.name} ${long_balance} + "
                         f"{short_gateway.name} ${short_balance} = ${total}")
        return total

    async def get_volume_for_order(self, gateway, pair: str, order_id: Optional[str], default_volume: Decimal) -> Decimal:
        """
        Volume actually traded by an entry order: cache, then the order itself,
        then the base currency balance, then what we recorded at entry.
        """
        if order_id is not None:
            cached = self.order_volume_cache.get(gateway.name, order_id)
            if cached is not None:
                return cached

            try:
                order = await gateway.get_order(order_id, pair)
                volume = to_decimal(order.get('filled') or order.get('amount'))
                if volume is not None and volume > ZERO:
                    self.logger.debug(f"{gateway.name}: order {order_id} volume is {volume}")
                    self.order_volume_cache.set(gateway.name, order_id, volume)
                    return volume
            except ccxt.BaseError as e:
                self.logger.warning(f"{gateway.name}: unable to fetch order {order_id}: {e}")

        base = pair.split('/')[0]
        try:
            balance = await gateway.get_balance(base, gateway.volume_scale(pair))
            if balance > ZERO:
                self.logger.info(f"{gateway.name}: using {base} balance {balance} as order volume")
                return balance
        except ccxt.BaseError as e:
            self.logger.warning(f"{gateway.name}: unable to fetch {base} balance: {e}")

        self.logger.warning(f"{gateway.name}: falling back to recorded volume {default_volume}")
        return default_volume

    def _track_missed_trade(self, combination: TradeCombination, spread: Spread, entry_target: Decimal):
        missed = self.missed_trades.get(combination)

        if spread.spread_in > entry_target:
            if missed is None:
                self.missed_trades[combination] = MissedTrade(datetime.now(timezone.utc), spread.spread_in)
                self.logger.info(f"Missed trade on {combination}: spread {spread.spread_in} > {entry_target}")
            elif spread.spread_in > missed.best_spread:
                missed.best_spread = spread.spread_in
        elif missed is not None:
            del self.missed_trades[combination]
            self.logger.info(f"Missed trade on {combination} ended after "
                             f"{datetime.now(timezone.utc) - missed.first_seen}, best spread {missed.best_spread}")

    def missed_trades_summary(self):
        if not self.missed_trades:
            return
        self.logger.info("Missed trades: [Combination] [First seen] [Best spread]")
        for combination, missed in self.missed_trades.items():
            self.logger.info(f"{combination} {missed.first_seen.isoformat()} {missed.best_spread}")

    # --- state machine ---

    async def trade(self, spread: Spread):
        """Evaluates one combination for this tick."""
        if self.bail_out:
            self.logger.critical("Exiting immediately to avoid erroneous trades.")
            raise SystemExit(1)

        combination = spread.combination
        long_gateway = self.gateways[spread.long_exchange]
        short_gateway = self.gateways[spread.short_exchange]

        if self.conditions.is_blackout_condition(long_gateway.name) or self.conditions.is_blackout_condition(short_gateway.name):
            self.logger.debug(f"Blackout in effect for {combination}, not trading")
            return

        long_fee = await long_gateway.get_exchange_fee(spread.pair)
        short_fee = await short_gateway.get_exchange_fee(spread.pair)
        entry_target = self.spread_engine.entry_spread_target(long_fee, short_fee)

        if self.active_position is None:
            if self.conditions.is_force_open_condition(spread.pair, long_gateway.name, short_gateway.name):
                self.logger.info(f"Force open condition detected for {combination}")
                await self.enter_position(spread, entry_target, long_fee, short_fee, forced=True)
            elif spread.spread_in > entry_target and not self.conditions.is_force_close_condition():
                await self.enter_position(spread, entry_target, long_fee, short_fee)
            return

        if not self.active_position.is_combination(combination):
            self._track_missed_trade(combination, spread, entry_target)
            return

        forced = self.conditions.is_force_close_condition()
        expired = self.is_active_position_expired()
        if forced or expired or spread.spread_out < self.active_position.exit_target:
            await self.exit_position(spread, entry_target, long_fee, short_fee, forced, expired)

    async def enter_position(self, spread: Spread, entry_target: Decimal,
                             long_fee: ExchangeFee, short_fee: ExchangeFee, forced: bool = False):
        pair = spread.pair
        long_gateway = self.gateways[spread.long_exchange]
        short_gateway = self.gateways[spread.short_exchange]

        exit_target = self.spread_engine.exit_spread_target(spread.spread_in, long_fee, short_fee)
        max_exposure = await self.get_maximum_exposure(long_gateway, short_gateway)
        if not await self.validate_max_exposure(max_exposure, long_gateway, short_gateway):
            return

        volume = EntryTradeVolume.create(
            long_gateway.fee_computation, short_gateway.fee_computation,
            max_exposure, max_exposure,
            spread.long_ticker.ask, spread.short_ticker.bid,
            long_fee.total_fee, short_fee.total_fee)

        try:
            long_limit = await self.get_limit_price(long_gateway, pair, volume.long_volume, 'buy')
            short_limit = await self.get_limit_price(short_gateway, pair, volume.short_volume, 'sell')
        except LiquidityError as e:
            self.logger.info(f"Will not trade {spread.combination}: {e}")
            return
        except ccxt.BaseError as e:
            self.logger.warning(f"Failed to fetch order books for {spread.combination} to compute entry prices: {e}")
            return

        spread_verification = SpreadEngine.compute_spread(long_limit, short_limit)
        if not forced and spread_verification < entry_target:
            self.logger.debug(f"Not enough liquidity to execute both trades profitably: "
                              f"{spread_verification} < {entry_target}")
            return

        if long_limit != spread.long_ticker.ask or short_limit != spread.short_ticker.bid:
            self.logger.debug(f"Re-sizing trade volume for slipped prices {long_limit}/{short_limit}")
            volume = EntryTradeVolume.create(
                long_gateway.fee_computation, short_gateway.fee_computation,
                max_exposure, max_exposure, long_limit, short_limit,
                long_fee.total_fee, short_fee.total_fee)

        try:
            volume.adjust_order_volume(long_gateway.name, short_gateway.name,
                                       long_gateway.amount_step_size(pair), short_gateway.amount_step_size(pair),
                                       long_gateway.volume_scale(pair), short_gateway.volume_scale(pair))
        except ValueError as e:
            self.logger.error(f"Cannot adjust order volumes, not entering {spread.combination}: {e}")
            return

        long_minimum = long_gateway.minimum_amount(pair)
        short_minimum = short_gateway.minimum_amount(pair)
        if volume.long_order_volume < long_minimum or volume.short_order_volume < short_minimum:
            self.logger.info(f"Trade volumes {volume.long_order_volume}/{volume.short_order_volume} are below the "
                             f"minimum amounts {long_minimum}/{short_minimum} for {spread.combination}")
            return

        if not forced and not volume.is_market_neutral(self.max_neutrality_deviation):
            self.logger.info(f"Trade is not market neutral (rating {set_scale(volume.market_neutrality_rating(), 3)}),"
                             f" not entering {spread.combination}")
            return

        self._log_entry(spread, exit_target, volume, long_limit, short_limit, forced)
        entry_balance = await self.log_current_balances(long_gateway, short_gateway)

        self.active_position = ActivePosition(
            currency_pair=pair,
            exit_target=exit_target,
            entry_balance=entry_balance,
            entry_time=datetime.now(timezone.utc),
            long_trade=Trade(long_gateway.name, None, volume.long_order_volume, long_limit),
            short_trade=Trade(short_gateway.name, None, volume.short_order_volume, short_limit),
        )

        placed = await self.execute_order_pair(long_gateway, short_gateway, pair, long_limit, short_limit,
                                               volume, is_entry=True)
        if not placed:
            if self.bail_out:
                # keep what we know about the half-open position for the operator
                self.write_state()
            else:
                self.active_position = None
            return

        self.notifier.notify_entry(spread, exit_target, volume, long_limit, short_limit, forced)
        self.write_state()
        self.conditions.clear_force_open_condition()

    async def exit_position(self, spread: Spread, entry_target: Decimal, long_fee: ExchangeFee,
                            short_fee: ExchangeFee, forced: bool = False, expired: bool = False):
        pair = spread.pair
        position = self.active_position
        long_gateway = self.gateways[spread.long_exchange]
        short_gateway = self.gateways[spread.short_exchange]

        long_entry_volume = await self.get_volume_for_order(
            long_gateway, pair, position.long_trade.order_id, position.long_trade.volume)
        short_entry_volume = await self.get_volume_for_order(
            short_gateway, pair, position.short_trade.order_id, position.short_trade.volume)

        volume = ExitTradeVolume.create(
            long_gateway.fee_computation, short_gateway.fee_computation,
            long_entry_volume, short_entry_volume,
            long_fee.total_fee, short_fee.total_fee)
        self.logger.debug(f"Exit volumes: {volume.long_volume}/{volume.short_volume}")

        if volume.long_volume <= ZERO or volume.short_volume <= ZERO:
            self.logger.error("Computed trade volume for exiting position was zero or less than zero!")
            return

        try:
            long_limit = await self.get_limit_price(long_gateway, pair, volume.long_volume, 'sell')
            short_limit = await self.get_limit_price(short_gateway, pair, volume.short_volume, 'buy')
        except LiquidityError as e:
            self.logger.info(f"Cannot exit {spread.combination} yet: {e}")
            return
        except ccxt.BaseError as e:
            self.logger.warning(f"Failed to fetch order books for {spread.combination} to compute exit prices: {e}")
            return

        spread_verification = SpreadEngine.compute_spread(long_limit, short_limit)
        if not expired and not forced and spread_verification > position.exit_target:
            self.logger.debug(f"Not enough liquidity to execute both trades profitably: "
                              f"{spread_verification} > {position.exit_target}")
            return

        # a timed out position whose spread would re-qualify for entry right away is left open
        if expired and not forced and spread.spread_in > entry_target:
            if not self.timeout_exit_warning:
                self.logger.warning("Timeout exit triggered")
                self.logger.warning("Cannot exit now because spread would cause immediate reentry")
                self.timeout_exit_warning = True
            return

        try:
            volume.adjust_order_volume(long_gateway.name, short_gateway.name,
                                       long_gateway.amount_step_size(pair), short_gateway.amount_step_size(pair),
                                       long_gateway.volume_scale(pair), short_gateway.volume_scale(pair))
        except ValueError as e:
            self.logger.error(f"Cannot adjust order volumes, not exiting {spread.combination}: {e}")
            return

        self._log_exit(spread, volume, long_limit, short_limit, forced, expired)

        placed = await self.execute_order_pair(long_gateway, short_gateway, pair, long_limit, short_limit,
                                               volume, is_entry=False)
        if not placed:
            if self.bail_out:
                self.write_state()
            return

        self.logger.info(f"Combined account balances on entry: ${position.entry_balance}")
        updated_balance = await self.log_current_balances(long_gateway, short_gateway)
        profit = updated_balance - position.entry_balance
        self.logger.info(f"Profit calculation: ${updated_balance} - ${position.entry_balance} = ${profit}")

        await self.audit.log_trade(ArbitrageLog(
            short_exchange=short_gateway.name,
            short_spread=short_limit,
            short_slip=spread.short_ticker.ask - short_limit,
            short_amount=volume.short_volume * spread.short_ticker.ask,
            short_currency=pair,
            long_exchange=long_gateway.name,
            long_spread=long_limit,
            long_slip=long_limit - spread.long_ticker.bid,
            long_amount=volume.long_volume * spread.long_ticker.bid,
            long_currency=pair,
            profit=profit,
            timestamp=datetime.now(timezone.utc),
        ).to_row())

        self.notifier.notify_exit(spread, volume, long_limit, short_limit,
                                  position.entry_balance, updated_balance, forced, expired)

        self.active_position = None
        self.timeout_exit_warning = False
        self.delete_state()

        if forced:
            self.conditions.clear_force_close_condition()

    async def execute_order_pair(self, long_gateway, short_gateway, pair: str,
                                 long_limit: Decimal, short_limit: Decimal,
                                 volume: TradeVolume, is_entry: bool) -> bool:
        """
        Places both legs at once and waits for them to fill.
        Returns False if nothing could be placed. If only one leg made it, or the orders never fill,
        the bot bails out.
        """
        long_side, short_side = ('buy', 'sell') if is_entry else ('sell', 'buy')

        results = await asyncio.gather(
            long_gateway.place_limit_order(long_side, pair, volume.long_order_volume, long_limit),
            short_gateway.place_limit_order(short_side, pair, volume.short_order_volume, short_limit,
                                            leverage=self.SHORT_LEVERAGE),
            return_exceptions=True,
        )
        long_result, short_result = results
        long_ok = not isinstance(long_result, BaseException)
        short_ok = not isinstance(short_result, BaseException)

        if not long_ok and not short_ok:
            self.logger.warning(f"Both legs rejected, no exposure. Long: {long_result} | Short: {short_result}")
            return False

        if not long_ok or not short_ok:
            # One leg is on the book and the other is not. We are unhedged, let a human sort it out.
            self.logger.critical(f"Exchange returned an error executing trade! Long: {long_result} | Short: {short_result}")
            self.bail_out = True
            if self.active_position is not None:
                self.active_position.long_trade.order_id = long_result if long_ok else None
                self.active_position.short_trade.order_id = short_result if short_ok else None
            return False

        if is_entry:
            self.active_position.long_trade.order_id = long_result
            self.active_position.short_trade.order_id = short_result
            self.order_volume_cache.set(long_gateway.name, long_result, volume.long_order_volume)
            self.order_volume_cache.set(short_gateway.name, short_result, volume.short_order_volume)
        else:
            self.active_position.long_trade.order_id = None
            self.active_position.short_trade.order_id = None
        self.write_state()

        self.logger.info(f"{long_gateway.name} limit order ID: {long_result}")
        self.logger.info(f"{short_gateway.name} limit order ID: {short_result}")

        if not await self._wait_for_orders(long_gateway, short_gateway, pair):
            self.logger.critical(f"Limit orders still open after {self.order_fill_polls} polls, "
                                 "the position needs manual attention.")
            self.bail_out = True
            return False

        self.balance_cache.invalidate(long_gateway.name, short_gateway.name)
        self.logger.info("✅ Trades executed successfully!")
        return True

    async def _wait_for_orders(self, long_gateway, short_gateway, pair: str) -> bool:
        """Polls both exchanges until neither has an open order. Gives up after order_fill_polls attempts."""
        self.logger.info("Waiting for limit orders to complete...")
        for _ in range(self.order_fill_polls):
            try:
                long_open = await long_gateway.get_open_orders(pair)
                short_open = await short_gateway.get_open_orders(pair)
            except ccxt.BaseError as e:
                self.logger.warning(f"Unable to fetch open orders: {e}")
            else:
                if not long_open and not short_open:
                    return True
                for gateway, orders in ((long_gateway, long_open), (short_gateway, short_open)):
                    for order in orders:
                        self.logger.warning(f"{gateway.name} open order {order['id']}: {order['side']} "
                                            f"{order['amount']} {order['symbol']} @ {order['price']}")

            await asyncio.sleep(self.ORDER_POLL_SECONDS)
        return False
    def _log_entry(self, spread: Spread, exit_target: Decimal, volume: EntryTradeVolume,
                   long_limit: Decimal, short_limit: Decimal, forced: bool):
        if forced:
            self.logger.warning("***** FORCED ENTRY *****")
        else:
            self.logger.info("***** ENTRY *****")

        self.logger.info(f"Entry spread: {spread.spread_in}")
        self.logger.info(f"Exit spread target: {exit_target}")
        self.logger.info(f"Market neutrality rating: {set_scale(volume.market_neutrality_rating(), 3)}")
        self.logger.info(f"Long entry: {spread.long_exchange} {spread.pair} {volume.long_order_volume} @ {long_limit}"
                         f" (slipped from {spread.long_ticker.ask}) = {volume.long_order_volume * long_limit}")
        self.logger.info(f"Short entry: {spread.short_exchange} {spread.pair} {volume.short_order_volume} @ {short_limit}"
                         f" (slipped from {spread.short_ticker.bid}) = {volume.short_order_volume * short_limit}")

    def _log_exit(self, spread: Spread, volume: ExitTradeVolume, long_limit: Decimal, short_limit: Decimal,
                  forced: bool, expired: bool):
        if expired:
            self.logger.warning("***** TIMEOUT EXIT *****")
        elif forced:
            self.logger.warning("***** FORCED EXIT *****")
        else:
            self.logger.info("***** EXIT *****")

        self.logger.info(f"Exit spread: {spread.spread_out}")
        self.logger.info(f"Exit spread target: {self.active_position.exit_target}")
        self.logger.info(f"Long close: {spread.long_exchange} {spread.pair} {volume.long_order_volume} @ {long_limit}"
                         f" (slipped from {spread.long_ticker.bid}) = {volume.long_order_volume * long_limit}")
        self.logger.info(f"Short close: {spread.short_exchange} {spread.pair} {volume.short_order_volume} @ {short_limit}"
                         f" (slipped from {spread.short_ticker.ask}) = {volume.short_order_volume * short_limit}")
