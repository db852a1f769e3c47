# spreadarb/caches.py
"""
Short lived caches that keep the engine from hammering exchange APIs.
Everything here is touched from the event loop only, so no locking is required.
"""
import time
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, Optional, Tuple

from .models import ExchangeFee


class FeeCache:
    """Fees rarely change, cache them forever. Keyed by 'exchange:pair'."""

    def __init__(self):
        self._cache: Dict[str, ExchangeFee] = {}

    @staticmethod
    def _key(exchange: str, pair: str) -> str:
        return f"{exchange}:{pair}"

    def get(self, exchange: str, pair: str) -> Optional[ExchangeFee]:
        return self._cache.get(self._key(exchange, pair))

    def set(self, exchange: str, pair: str, fee: ExchangeFee):
        self._cache[self._key(exchange, pair)] = fee


class BalanceCache:
    """
    Home currency balance per exchange, valid for CACHE_TIMEOUT seconds.
    Expired entries stay in the map but are reported as absent.
    """
    CACHE_TIMEOUT = 60

    def __init__(self, timeout: float = CACHE_TIMEOUT):
        self.timeout = timeout
        self._cache: Dict[str, Tuple[float, Decimal]] = {}

    def get(self, exchange: str) -> Optional[Decimal]:
        entry = self._cache.get(exchange)
        if entry is None:
            return None

        timestamp, balance = entry
        if timestamp + self.timeout < time.time():
            return None
        return balance

    def set(self, exchange: str, balance: Decimal, timestamp: Optional[float] = None):
        self._cache[exchange] = (time.time() if timestamp is None else timestamp, balance)

    def invalidate(self, *exchanges: str):
        for exchange in exchanges:
            self._cache.pop(exchange, None)

    def __contains__(self, exchange: str) -> bool:
        return exchange in self._cache


class OrderVolumeCache:
    """
    Volume of orders we placed, keyed by 'exchange:orderId'.
    Order volumes never change so entries don't expire, but only the newest CACHE_SIZE are kept.
    """
    CACHE_SIZE = 4

    def __init__(self, size: int = CACHE_SIZE):
        self.size = size
        self._cache: "OrderedDict[str, Decimal]" = OrderedDict()

    @staticmethod
    def _key(exchange: str, order_id: str) -> str:
        return f"{exchange}:{order_id}"

    def get(self, exchange: str, order_id: str) -> Optional[Decimal]:
        return self._cache.get(self._key(exchange, order_id))

    def set(self, exchange: str, order_id: str, volume: Decimal):
        key = self._key(exchange, order_id)
        self._cache[key] = volume

        # FIFO: evict the oldest insertions first
        while len(self._cache) > self.size:
            self._cache.popitem(last=False)

    def __len__(self) -> int:
        return len(self._cache)
