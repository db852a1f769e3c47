# spreadarb/spread_engine.py
import logging
from decimal import Decimal
from typing import Dict, Optional

from .decimals import BTC_SCALE, ONE, ZERO, divide, set_scale, to_decimal
from .models import ExchangeFee, Spread, Ticker, TradeCombination


class SpreadEngine:
    """
    Turns two tickers into entry/exit spreads and turns the configured profit targets
    plus fees into numeric spread thresholds.
    Also keeps the running min/max spreads per combination for the periodic summary.
    """
    def __init__(self, trading_cfg: dict, logger: logging.Logger):
        self.cfg = trading_cfg
        self.logger = logger
        self.spread_notifications = trading_cfg.get('spread_notifications', False)

        # { 'kraken:binance:BTC/USD': Decimal }
        self.min_spread_in: Dict[str, Decimal] = {}
        self.max_spread_in: Dict[str, Decimal] = {}
        self.min_spread_out: Dict[str, Decimal] = {}
        self.max_spread_out: Dict[str, Decimal] = {}

    @staticmethod
    def is_invalid_ticker(ticker: Optional[Ticker]) -> bool:
        return ticker is None or ticker.bid is None or ticker.ask is None

    @staticmethod
    def compute_spread(long_price: Decimal, short_price: Decimal) -> Decimal:
        """
        Normalised price gap (short - long) / long.
        Positive when the short exchange is more expensive than the long one.
        """
        scaled_long = set_scale(long_price, BTC_SCALE)
        scaled_short = set_scale(short_price, BTC_SCALE)
        return divide(scaled_short - scaled_long, scaled_long)

    def compute_spread_for(self, combination: TradeCombination,
                           long_ticker: Optional[Ticker], short_ticker: Optional[Ticker]) -> Optional[Spread]:
        if self.is_invalid_ticker(long_ticker) or self.is_invalid_ticker(short_ticker):
            return None

        # entry: buy at the long ask, sell at the short bid
        spread_in = self.compute_spread(long_ticker.ask, short_ticker.bid)
        # exit: sell at the long bid, buy back at the short ask
        spread_out = self.compute_spread(long_ticker.bid, short_ticker.ask)

        self._record(combination, spread_in, spread_out)

        return Spread(
            pair=combination.pair,
            long_exchange=combination.long_exchange,
            short_exchange=combination.short_exchange,
            long_ticker=long_ticker,
            short_ticker=short_ticker,
            spread_in=spread_in,
            spread_out=spread_out,
        )

    def entry_spread_target(self, long_fee: ExchangeFee, short_fee: ExchangeFee) -> Decimal:
        """
        Spread that must be exceeded to open a position:
        (1 + target) * (1 + longFee) / (1 - shortFee) - 1
        """
        target = to_decimal(self.cfg.get('entry_spread_target')) or ZERO
        return divide((ONE + target) * (ONE + long_fee.total_fee), ONE - short_fee.total_fee) - ONE

    def exit_spread_target(self, entry_spread: Decimal, long_fee: ExchangeFee, short_fee: ExchangeFee) -> Decimal:
        """
        Spread the position must fall below before closing.
        Either from an explicit exit spread target, or from the entry spread and a minimum profit.
        """
        lf = long_fee.total_fee
        sf = short_fee.total_fee

        explicit_target = to_decimal(self.cfg.get('exit_spread_target'))
        if explicit_target is not None:
            return divide((ONE + explicit_target) * (ONE - lf), ONE + sf) - ONE

        minimum_profit = to_decimal(self.cfg.get('minimum_profit')) or ZERO
        fee_factor = divide((ONE - lf) * (ONE - sf), (ONE + lf) * (ONE + sf))
        return divide((ONE + entry_spread) * fee_factor, ONE + minimum_profit) - ONE

    def _record(self, combination: TradeCombination, spread_in: Decimal, spread_out: Decimal):
        key = str(combination)

        if spread_in > self.max_spread_in.get(key, -ONE):
            self.max_spread_in[key] = spread_in
            if self.spread_notifications:
                self.logger.info(f"Record high spreadIn: {key} {spread_in}")
        if spread_in < self.min_spread_in.get(key, ONE):
            self.min_spread_in[key] = spread_in

        if spread_out < self.min_spread_out.get(key, ONE):
            self.min_spread_out[key] = spread_out
            if self.spread_notifications:
                self.logger.info(f"Record low spreadOut: {key} {spread_out}")
        if spread_out > self.max_spread_out.get(key, -ONE):
            self.max_spread_out[key] = spread_out

    def get_min_spread_in(self, combination: TradeCombination) -> Decimal:
        return self.min_spread_in.get(str(combination), ONE)

    def get_max_spread_in(self, combination: TradeCombination) -> Decimal:
        return self.max_spread_in.get(str(combination), -ONE)

    def get_min_spread_out(self, combination: TradeCombination) -> Decimal:
        return self.min_spread_out.get(str(combination), ONE)

    def get_max_spread_out(self, combination: TradeCombination) -> Decimal:
        return self.max_spread_out.get(str(combination), -ONE)

    def summary(self):
        """Logs the min/max spreads seen since startup."""
        self.logger.info("Minimum/Maximum spreads: [Long/Short/Pair] [Min In] [Max In] [Min Out] [Max Out]")
        for key in sorted(self.max_spread_in):
            self.logger.info(f"{key} {self.min_spread_in.get(key)} {self.max_spread_in.get(key)} "
                             f"{self.min_spread_out.get(key)} {self.max_spread_out.get(key)}")
