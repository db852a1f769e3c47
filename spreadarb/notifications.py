# spreadarb/notifications.py
import logging
from decimal import Decimal
from typing import Protocol

from .models import Spread
from .trade_volume import TradeVolume


class NotificationSink(Protocol):
    def send(self, subject: str, message: str): ...

    def notify_entry(self, spread: Spread, exit_target: Decimal, volume: TradeVolume,
                     long_limit_price: Decimal, short_limit_price: Decimal, forced: bool = False): ...

    def notify_exit(self, spread: Spread, volume: TradeVolume, long_limit_price: Decimal,
                    short_limit_price: Decimal, entry_balance: Decimal, updated_balance: Decimal,
                    forced: bool = False, expired: bool = False): ...


class LoggingNotifier:
    """
    Writes trade notifications to the application log.
    Mail/chat delivery can be added by implementing NotificationSink.
    """
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def send(self, subject: str, message: str):
        self.logger.info(f"[{subject}] {message}")

    def notify_entry(self, spread: Spread, exit_target: Decimal, volume: TradeVolume,
                     long_limit_price: Decimal, short_limit_price: Decimal, forced: bool = False):
        subject = "Arbitrader - Forced Entry Position" if forced else "Arbitrader - Entry Position"
        self.send(subject, (
            f"{spread.pair} long {spread.long_exchange} {volume.long_order_volume} @ {long_limit_price}, "
            f"short {spread.short_exchange} {volume.short_order_volume} @ {short_limit_price}. "
            f"Entry spread {spread.spread_in}, exit spread target {exit_target}"
        ))

    def notify_exit(self, spread: Spread, volume: TradeVolume, long_limit_price: Decimal,
                    short_limit_price: Decimal, entry_balance: Decimal, updated_balance: Decimal,
                    forced: bool = False, expired: bool = False):
        if expired:
            subject = "Arbitrader - Timeout Exit Position"
        elif forced:
            subject = "Arbitrader - Forced Exit Position"
        else:
            subject = "Arbitrader - Exit Position"

        self.send(subject, (
            f"{spread.pair} long {spread.long_exchange} {volume.long_order_volume} @ {long_limit_price}, "
            f"short {spread.short_exchange} {volume.short_order_volume} @ {short_limit_price}. "
            f"Exit spread {spread.spread_out}. "
            f"Combined balance {entry_balance} -> {updated_balance} (profit {updated_balance - entry_balance})"
        ))
