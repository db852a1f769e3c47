# spreadarb/trade_volume.py
"""
Fee-aware sizing of the two legs of a position.

The long leg is bought on one exchange and the short leg is sold (on margin) on another.
Fees shrink what the short sale brings in and grow what the long purchase costs, so the
neutral volume ratio is (1 + shortFee) / (1 - longFee) rather than 1:1.

Exchanges that take their fee in the base currency (FeeComputation.CLIENT) need their order
volumes inflated (buys) or deflated (sells) so that the volume actually held matches the
"underlying" volume the neutrality math works with.
"""
import logging
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_UP
from typing import Optional

from .decimals import INTERMEDIATE_SCALE, ONE, ZERO, BTC_SCALE, divide, scale_of, set_scale
from .models import FeeComputation

logger = logging.getLogger("SpreadArb.volume")

MAX_CLIENT_FEE = Decimal("0.01")


def get_short_to_long_volume_target_ratio(long_fee: Decimal, short_fee: Decimal) -> Decimal:
    return divide(ONE + short_fee, ONE - long_fee)


def get_long_volume_from_exposures(long_max_exposure: Decimal, short_max_exposure: Decimal,
                                   long_price: Decimal, short_price: Decimal,
                                   long_fee: Decimal, short_fee: Decimal) -> Decimal:
    """The long volume is capped by whichever exchange's exposure limit binds first."""
    # limit induced by the long exchange
    long_volume_1 = divide(long_max_exposure, long_price)
    # limit induced by the short exchange: short_volume * short_price == short_max_exposure
    long_volume_2 = divide(get_short_to_long_volume_target_ratio(long_fee, short_fee) * short_max_exposure, short_price)
    return min(long_volume_1, long_volume_2)


def get_short_volume_from_long(long_volume: Decimal, long_fee: Decimal, short_fee: Decimal) -> Decimal:
    return divide(long_volume, get_short_to_long_volume_target_ratio(long_fee, short_fee))


def get_long_volume_from_short(short_volume: Decimal, long_fee: Decimal, short_fee: Decimal) -> Decimal:
    return set_scale(short_volume * get_short_to_long_volume_target_ratio(long_fee, short_fee), INTERMEDIATE_SCALE)


def market_neutrality_rating(long_volume: Decimal, short_volume: Decimal,
                             long_fee: Decimal, short_fee: Decimal) -> Decimal:
    """
    1 means the fees are exactly compensated, 0 means not compensated at all,
    2 means compensated twice over.
    """
    actual_ratio = divide(long_volume, short_volume)
    target_ratio = get_short_to_long_volume_target_ratio(long_fee, short_fee)

    if target_ratio == ONE:
        # No fees to compensate: neutral only when both legs match
        return ONE if set_scale(actual_ratio, BTC_SCALE) == ONE else Decimal("Infinity")

    return divide(actual_ratio - ONE, target_ratio - ONE)


def round_by_step(value: Decimal, step: Optional[Decimal], rounding: str = ROUND_HALF_EVEN) -> Decimal:
    """
    Rounds to a multiple of the exchange's amount step size.
    Ties go to the even multiple: 65 by 10 -> 60, 75 by 10 -> 80.
    """
    if step is None:
        return value

    steps = (value / step).quantize(ONE, rounding=rounding)
    result = (steps * step).quantize(Decimal(1).scaleb(step.as_tuple().exponent), rounding=ROUND_HALF_EVEN)

    logger.debug(f"Round by step: {value} / {step} -> {result}")
    return result


def _verify_client_fee(fee_percentage: Decimal):
    # The base fee rounding error is at most scale/2 * fee, keep fee < 1% so it cannot leak into the volume
    if fee_percentage >= MAX_CLIENT_FEE:
        logger.error(f"FeeComputation.CLIENT fee percentage too high: {fee_percentage}")
        raise ValueError(f"FeeComputation.CLIENT fee percentage too high: {fee_percentage}")


def get_buy_base_fees(fee_computation: FeeComputation, volume: Decimal, base_fee: Optional[Decimal],
                      order_volume: bool) -> Decimal:
    """
    Base currency fees of a buy order.
    order_volume=True: `volume` is what we send to the exchange, fee = volume * fee.
    order_volume=False: `volume` is what we want to end up with, fee = volume * fee / (1 - fee).
    """
    scale = scale_of(volume)
    if fee_computation is not FeeComputation.CLIENT:
        return set_scale(ZERO, scale)

    _verify_client_fee(base_fee)
    if order_volume:
        return set_scale(volume * base_fee, scale)
    return set_scale(volume * base_fee / (ONE - base_fee), scale)


def get_sell_base_fees(fee_computation: FeeComputation, volume: Decimal, base_fee: Optional[Decimal],
                       order_volume: bool) -> Decimal:
    """
    Base currency fees of a sell order.
    order_volume=True: `volume` is what we send to the exchange, fee = volume * fee.
    order_volume=False: `volume` is what leaves the account, fee = volume * fee / (1 + fee).
    """
    scale = scale_of(volume)
    if fee_computation is not FeeComputation.CLIENT:
        return set_scale(ZERO, scale)

    _verify_client_fee(base_fee)
    if order_volume:
        return set_scale(volume * base_fee, scale)
    return set_scale(volume * base_fee / (ONE + base_fee), scale)


def get_fee_adjusted_for_buy(fee_computation: FeeComputation, base_fee: Decimal) -> Decimal:
    if fee_computation is FeeComputation.CLIENT:
        return divide(base_fee, ONE - base_fee)
    return base_fee


def get_fee_adjusted_for_sell(fee_computation: FeeComputation, base_fee: Decimal) -> Decimal:
    if fee_computation is FeeComputation.CLIENT:
        return divide(base_fee, ONE + base_fee)
    return base_fee


def _check_step_compatibility(long_fc: FeeComputation, short_fc: FeeComputation,
                              long_step: Optional[Decimal], short_step: Optional[Decimal]):
    if long_fc is FeeComputation.CLIENT and long_step is not None:
        raise ValueError("Long exchange FeeComputation.CLIENT and amount step size are not compatible.")
    if short_fc is FeeComputation.CLIENT and short_step is not None:
        raise ValueError("Short exchange FeeComputation.CLIENT and amount step size are not compatible.")


class TradeVolume:
    """
    Underlying volumes (what the position really holds) and order volumes (what is sent to the
    exchanges) of both legs. Only CLIENT legs have order volume != underlying volume.
    """
    def __init__(self, long_fee_computation: FeeComputation, short_fee_computation: FeeComputation,
                 long_volume: Decimal, short_volume: Decimal, long_fee: Decimal, short_fee: Decimal,
                 long_base_fee: Optional[Decimal] = None, short_base_fee: Optional[Decimal] = None):
        self.long_fee_computation = long_fee_computation
        self.short_fee_computation = short_fee_computation
        self.long_volume = long_volume
        self.short_volume = short_volume
        self.long_order_volume = long_volume
        self.short_order_volume = short_volume
        self.long_fee = long_fee
        self.short_fee = short_fee
        self.long_base_fee = long_base_fee
        self.short_base_fee = short_base_fee

    def market_neutrality_rating(self) -> Decimal:
        return market_neutrality_rating(self.long_volume, self.short_volume, self.long_fee, self.short_fee)

    def is_market_neutral(self, max_deviation: Decimal = ONE) -> bool:
        return abs(self.market_neutrality_rating() - ONE) <= max_deviation

    def _log_adjustment(self, label: str, long_name: str, short_name: str,
                        previous_long: Decimal, previous_short: Decimal):
        if previous_long != self.long_order_volume:
            logger.info(f"{long_name} {label} trade volumes adjusted: {previous_long} -> {self.long_volume}"
                        f" (order volume: {self.long_order_volume})")
        if previous_short != self.short_order_volume:
            logger.info(f"{short_name} {label} trade volumes adjusted: {previous_short} -> {self.short_volume}"
                        f" (order volume: {self.short_order_volume})")

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(long={self.long_volume} [{self.long_order_volume}],"
                f" short={self.short_volume} [{self.short_order_volume}])")


class EntryTradeVolume(TradeVolume):
    """Volumes for opening a position, neutral by construction."""

    @classmethod
    def create(cls, long_fee_computation: FeeComputation, short_fee_computation: FeeComputation,
               long_max_exposure: Decimal, short_max_exposure: Decimal,
               long_price: Decimal, short_price: Decimal,
               long_fee: Decimal, short_fee: Decimal) -> "EntryTradeVolume":
        long_base_fee = long_fee if long_fee_computation is FeeComputation.CLIENT else None
        short_base_fee = short_fee if short_fee_computation is FeeComputation.CLIENT else None
        adjusted_long_fee = get_fee_adjusted_for_buy(long_fee_computation, long_fee)
        adjusted_short_fee = get_fee_adjusted_for_sell(short_fee_computation, short_fee)

        long_volume = get_long_volume_from_exposures(long_max_exposure, short_max_exposure,
                                                     long_price, short_price,
                                                     adjusted_long_fee, adjusted_short_fee)
        short_volume = get_short_volume_from_long(long_volume, adjusted_long_fee, adjusted_short_fee)

        return cls(long_fee_computation, short_fee_computation, long_volume, short_volume,
                   adjusted_long_fee, adjusted_short_fee, long_base_fee, short_base_fee)

    def adjust_order_volume(self, long_exchange: str, short_exchange: str,
                            long_step: Optional[Decimal], short_step: Optional[Decimal],
                            long_scale: int, short_scale: int):
        """
        Fits the order volumes to each exchange's step size and scale, then re-derives the
        underlying volumes so the position stays as neutral as the constraints allow.
        """
        previous_long, previous_short = self.long_volume, self.short_volume

        # make sure the underlying volumes are neutral before rounding anything
        self.short_volume = get_short_volume_from_long(self.long_volume, self.long_fee, self.short_fee)

        # CLIENT exchanges buy slightly less and sell slightly more to pay their fee
        self.long_order_volume = self.long_volume + get_buy_base_fees(
            self.long_fee_computation, self.long_volume, self.long_base_fee, False)
        self.short_order_volume = self.short_volume - get_sell_base_fees(
            self.short_fee_computation, self.short_volume, self.short_base_fee, False)

        _check_step_compatibility(self.long_fee_computation, self.short_fee_computation, long_step, short_step)

        if self.long_fee_computation is FeeComputation.CLIENT:
            logger.info(f"{long_exchange} fees are computed in the client: {self.long_volume} + fees = {self.long_order_volume}")
        if self.short_fee_computation is FeeComputation.CLIENT:
            logger.info(f"{short_exchange} fees are computed in the client: {self.short_volume} - fees = {self.short_order_volume}")

        if long_step is not None and short_step is not None:
            # No volume satisfies both step sizes and the ratio, report how far off we are
            self.long_order_volume = set_scale(round_by_step(self.long_order_volume, long_step), long_scale)
            self.short_order_volume = set_scale(round_by_step(self.short_order_volume, short_step), short_scale)
            self.long_volume = self.long_order_volume
            self.short_volume = self.short_order_volume
            logger.info(f"Both exchanges have an amount step size requirement. "
                        f"Market neutrality rating is {set_scale(self.market_neutrality_rating(), 3)}.")
        elif long_step is not None:
            self._adjust_short_from_long(long_step, long_scale, short_scale)
        elif short_step is not None:
            self._adjust_long_from_short(short_step, long_scale, short_scale)
        elif long_scale <= short_scale:
            self._adjust_short_from_long(None, long_scale, short_scale)
        else:
            self._adjust_long_from_short(None, long_scale, short_scale)

        self._log_adjustment("entry", long_exchange, short_exchange, previous_long, previous_short)

    def _adjust_short_from_long(self, long_step: Optional[Decimal], long_scale: int, short_scale: int):
        if long_step is not None:
            self.long_order_volume = round_by_step(self.long_order_volume, long_step)
        self.long_order_volume = set_scale(self.long_order_volume, long_scale)

        long_base_fees = get_buy_base_fees(self.long_fee_computation, self.long_order_volume, self.long_base_fee, True)
        self.long_volume = set_scale(self.long_order_volume - long_base_fees, long_scale)

        self.short_volume = set_scale(get_short_volume_from_long(self.long_volume, self.long_fee, self.short_fee), short_scale)
        short_base_fees = get_sell_base_fees(self.short_fee_computation, self.short_volume, self.short_base_fee, False)
        self.short_order_volume = self.short_volume - short_base_fees

        logger.debug(f"Short volume derived from long: {self.long_order_volume} -> {self.long_volume} -> "
                     f"{self.short_volume} (order volume: {self.short_order_volume})")

    def _adjust_long_from_short(self, short_step: Optional[Decimal], long_scale: int, short_scale: int):
        if short_step is not None:
            self.short_order_volume = round_by_step(self.short_order_volume, short_step)
        self.short_order_volume = set_scale(self.short_order_volume, short_scale)

        short_base_fees = get_sell_base_fees(self.short_fee_computation, self.short_order_volume, self.short_base_fee, True)
        self.short_volume = set_scale(self.short_order_volume + short_base_fees, short_scale)

        self.long_volume = set_scale(get_long_volume_from_short(self.short_volume, self.long_fee, self.short_fee), long_scale)
        long_base_fees = get_buy_base_fees(self.long_fee_computation, self.long_volume, self.long_base_fee, False)
        self.long_order_volume = self.long_volume + long_base_fees

        logger.debug(f"Long volume derived from short: {self.short_order_volume} -> {self.short_volume} -> "
                     f"{self.long_volume} (order volume: {self.long_order_volume})")


class ExitTradeVolume(TradeVolume):
    """
    Volumes for closing a position, unwound from the entry order volumes.
    The long leg sells what the entry bought net of base fees, the short leg buys back
    what the entry sold including base fees.
    """

    @classmethod
    def create(cls, long_fee_computation: FeeComputation, short_fee_computation: FeeComputation,
               entry_long_order_volume: Decimal, entry_short_order_volume: Decimal,
               long_fee: Decimal, short_fee: Decimal) -> "ExitTradeVolume":
        long_base_fee = long_fee if long_fee_computation is FeeComputation.CLIENT else None
        short_base_fee = short_fee if short_fee_computation is FeeComputation.CLIENT else None

        long_volume = entry_long_order_volume - get_buy_base_fees(
            long_fee_computation, entry_long_order_volume, long_base_fee, True)
        short_volume = entry_short_order_volume + get_sell_base_fees(
            short_fee_computation, entry_short_order_volume, short_base_fee, True)

        return cls(long_fee_computation, short_fee_computation, long_volume, short_volume,
                   get_fee_adjusted_for_sell(long_fee_computation, long_fee),
                   get_fee_adjusted_for_buy(short_fee_computation, short_fee),
                   long_base_fee, short_base_fee)

    def adjust_order_volume(self, long_exchange: str, short_exchange: str,
                            long_step: Optional[Decimal], short_step: Optional[Decimal],
                            long_scale: int, short_scale: int):
        """
        Rounds the closing orders so the long leg never sells more than it holds and the
        short leg always covers what it owes.
        """
        previous_long, previous_short = self.long_volume, self.short_volume
        _check_step_compatibility(self.long_fee_computation, self.short_fee_computation, long_step, short_step)

        self.long_order_volume = self.long_volume - get_sell_base_fees(
            self.long_fee_computation, self.long_volume, self.long_base_fee, False)
        self.short_order_volume = self.short_volume + get_buy_base_fees(
            self.short_fee_computation, self.short_volume, self.short_base_fee, False)

        if self.long_fee_computation is FeeComputation.CLIENT:
            logger.info(f"{long_exchange} fees are computed in the client: {self.long_volume} - fees = {self.long_order_volume}")
        if self.short_fee_computation is FeeComputation.CLIENT:
            logger.info(f"{short_exchange} fees are computed in the client: {self.short_volume} + fees = {self.short_order_volume}")

        self.long_order_volume = set_scale(round_by_step(self.long_order_volume, long_step, ROUND_DOWN), long_scale, ROUND_DOWN)
        self.short_order_volume = set_scale(round_by_step(self.short_order_volume, short_step, ROUND_UP), short_scale, ROUND_UP)

        self.long_volume = self.long_order_volume + get_sell_base_fees(
            self.long_fee_computation, self.long_order_volume, self.long_base_fee, True)
        self.short_volume = self.short_order_volume - get_buy_base_fees(
            self.short_fee_computation, self.short_order_volume, self.short_base_fee, True)

        self._log_adjustment("exit", long_exchange, short_exchange, previous_long, previous_short)
