# spreadarb/models.py
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import ccxt.async_support as ccxt

from .decimals import to_decimal


class FeeComputation(Enum):
    """
    Who pays attention to trading fees.
    SERVER: the exchange takes its fee out of the quote currency, order volume == traded volume.
    CLIENT: the fee is paid in the base currency, so order volumes must be inflated/deflated.
    """
    SERVER = "SERVER"
    CLIENT = "CLIENT"


class OrderStatus(Enum):
    NEW = "open"
    FILLED = "closed"
    CANCELED = "canceled"

    @property
    def is_open(self) -> bool:
        return self is OrderStatus.NEW


class LiquidityError(Exception):
    """Raised when the order book cannot absorb the requested volume."""


class MarginNotSupportedError(ccxt.ExchangeError):
    def __init__(self, exchange: str):
        super().__init__(f"{exchange} does not support margin trading")
        self.exchange = exchange


@dataclass(frozen=True)
class TradeCombination:
    """
    Immutable key for one tradable opportunity.
    Equal by value so it can sit in sets and dict keys.
    """
    long_exchange: str
    short_exchange: str
    pair: str

    def __str__(self) -> str:
        return f"{self.long_exchange}:{self.short_exchange}:{self.pair}"


@dataclass(slots=True)
class Ticker:
    """
    Market snapshot for one pair on one exchange.
    bid/ask may be None when an exchange returns a partial ticker.
    """
    exchange: str
    symbol: str
    bid: Optional[Decimal]
    ask: Optional[Decimal]
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_ccxt(cls, exchange: str, raw: Dict[str, Any]) -> "Ticker":
        return cls(
            exchange=exchange,
            symbol=raw['symbol'],
            bid=to_decimal(raw.get('bid')),
            ask=to_decimal(raw.get('ask')),
            timestamp=(raw['timestamp'] / 1000) if raw.get('timestamp') else time.time(),
        )


@dataclass(slots=True)
class Spread:
    """Recomputed every tick for every combination, never persisted."""
    pair: str
    long_exchange: str
    short_exchange: str
    long_ticker: Ticker
    short_ticker: Ticker
    spread_in: Decimal
    spread_out: Decimal

    @property
    def combination(self) -> TradeCombination:
        return TradeCombination(self.long_exchange, self.short_exchange, self.pair)


@dataclass(frozen=True)
class ExchangeFee:
    trade_fee: Decimal
    margin_fee: Optional[Decimal] = None

    @property
    def total_fee(self) -> Decimal:
        if self.margin_fee is None:
            return self.trade_fee
        return self.trade_fee + self.margin_fee


@dataclass
class Trade:
    exchange: Optional[str] = None
    order_id: Optional[str] = None
    volume: Optional[Decimal] = None
    entry: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'exchange': self.exchange,
            'orderId': self.order_id,
            'volume': None if self.volume is None else str(self.volume),
            'entry': None if self.entry is None else str(self.entry),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        return cls(
            exchange=data.get('exchange'),
            order_id=data.get('orderId'),
            volume=to_decimal(data.get('volume')),
            entry=to_decimal(data.get('entry')),
        )


@dataclass
class ActivePosition:
    """
    The single durable unit of state.
    Serialised to the state file after every mutation so a restart resumes mid-position.
    """
    currency_pair: Optional[str] = None
    exit_target: Optional[Decimal] = None
    entry_balance: Optional[Decimal] = None
    entry_time: Optional[datetime] = None
    long_trade: Trade = field(default_factory=Trade)
    short_trade: Trade = field(default_factory=Trade)

    def is_combination(self, combination: TradeCombination) -> bool:
        return (self.currency_pair == combination.pair
                and self.long_trade.exchange == combination.long_exchange
                and self.short_trade.exchange == combination.short_exchange)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'currencyPair': self.currency_pair,
            'exitTarget': None if self.exit_target is None else str(self.exit_target),
            'entryBalance': None if self.entry_balance is None else str(self.entry_balance),
            'entryTime': None if self.entry_time is None else self.entry_time.isoformat(),
            'longTrade': self.long_trade.to_dict(),
            'shortTrade': self.short_trade.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivePosition":
        entry_time = data.get('entryTime')
        return cls(
            currency_pair=data.get('currencyPair'),
            exit_target=to_decimal(data.get('exitTarget')),
            entry_balance=to_decimal(data.get('entryBalance')),
            entry_time=datetime.fromisoformat(entry_time) if entry_time else None,
            long_trade=Trade.from_dict(data.get('longTrade') or {}),
            short_trade=Trade.from_dict(data.get('shortTrade') or {}),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, raw: str) -> "ActivePosition":
        return cls.from_dict(json.loads(raw))

    def __str__(self) -> str:
        return (f"{self.currency_pair} long {self.long_trade.exchange} {self.long_trade.volume} @ {self.long_trade.entry}"
                f" / short {self.short_trade.exchange} {self.short_trade.volume} @ {self.short_trade.entry}"
                f" exit target {self.exit_target}")


@dataclass(slots=True)
class ArbitrageLog:
    """
    One row of the trade history CSV.
    New columns must be appended to COLUMNS so older files stay readable.
    """
    short_exchange: str
    short_spread: Decimal
    short_slip: Decimal
    short_amount: Decimal
    short_currency: str
    long_exchange: str
    long_spread: Decimal
    long_slip: Decimal
    long_amount: Decimal
    long_currency: str
    profit: Decimal
    timestamp: datetime

    COLUMNS = (
        ('shortExchange', 'short_exchange'),
        ('shortSpread', 'short_spread'),
        ('shortSlip', 'short_slip'),
        ('shortAmount', 'short_amount'),
        ('shortCurrency', 'short_currency'),
        ('longExchange', 'long_exchange'),
        ('longSpread', 'long_spread'),
        ('longSlip', 'long_slip'),
        ('longAmount', 'long_amount'),
        ('longCurrency', 'long_currency'),
        ('profit', 'profit'),
        ('timestamp', 'timestamp'),
    )

    @classmethod
    def header(cls) -> List[str]:
        return [name for name, _ in cls.COLUMNS]

    def to_row(self) -> List[str]:
        row = []
        for _, attr in self.COLUMNS:
            value = getattr(self, attr)
            row.append(value.isoformat() if isinstance(value, datetime) else str(value))
        return row


@dataclass
class PaperOrder:
    id: str
    side: str  # 'buy' | 'sell'
    pair: str
    amount: Decimal
    limit_price: Decimal
    timestamp: float
    leverage: Optional[str] = None
    status: OrderStatus = OrderStatus.NEW
    average_price: Optional[Decimal] = None
    filled: Decimal = Decimal("0")
    fee: Optional[Decimal] = None

    def to_ccxt(self) -> Dict[str, Any]:
        """Shape the order like a ccxt unified order dict."""
        return {
            'id': self.id,
            'symbol': self.pair,
            'type': 'limit',
            'side': self.side,
            'price': self.limit_price,
            'average': self.average_price,
            'amount': self.amount,
            'filled': self.filled,
            'remaining': self.amount - self.filled,
            'status': self.status.value,
            'timestamp': int(self.timestamp * 1000),
            'fee': None if self.fee is None else {'cost': self.fee},
        }


@dataclass(slots=True)
class PaperTrade:
    order_id: str
    side: str
    pair: str
    amount: Decimal
    price: Decimal
    fee: Decimal
    timestamp: float
