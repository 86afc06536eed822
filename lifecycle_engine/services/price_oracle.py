"""
Price Oracle

Pull source for the current reference price of a symbol, queried once per
symbol per monitor cycle. Failures are reported as PriceUnavailableError and
the caller skips the symbol until the next cycle.
"""
import logging
import math
from abc import ABC, abstractmethod
from typing import Dict, Optional

import ccxt.async_support as ccxt

from lifecycle_engine.utils.exceptions import PriceUnavailableError
from lifecycle_engine.utils.symbol_utils import normalize_symbol

logger = logging.getLogger(__name__)


def _usable(value) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


class PriceOracle(ABC):
    """Pull-based price source"""

    @abstractmethod
    async def get_price(self, symbol: str) -> float:
        """Current reference price; raises PriceUnavailableError"""

    async def close(self):
        pass


class CcxtPriceOracle(PriceOracle):
    """
    Public ticker prices from a CCXT exchange

    Uses the last trade price, or the bid/ask mid when the exchange reports no
    last price. No retries here: a failing symbol is retried next cycle.
    """

    def __init__(self, exchange_id: str = "kraken", timeout_sec: float = 5.0, exchange=None):
        if exchange is None:
            exchange_class = getattr(ccxt, exchange_id, None)
            if exchange_class is None:
                raise ValueError(f"Unknown CCXT exchange: {exchange_id}")
            exchange = exchange_class({
                'enableRateLimit': True,
                'timeout': int(timeout_sec * 1000),  # milliseconds
            })
        self.exchange = exchange
        self.exchange_id = exchange_id
        self._symbol_cache: Dict[str, str] = {}

    def _ccxt_symbol(self, symbol: str) -> str:
        if symbol not in self._symbol_cache:
            try:
                self._symbol_cache[symbol] = normalize_symbol(symbol)[0]
            except ValueError as e:
                raise PriceUnavailableError(symbol, str(e))
        return self._symbol_cache[symbol]

    async def get_price(self, symbol: str) -> float:
        ccxt_symbol = self._ccxt_symbol(symbol)
        try:
            ticker = await self.exchange.fetch_ticker(ccxt_symbol)
        except (ccxt.NetworkError, ccxt.RequestTimeout) as e:
            raise PriceUnavailableError(symbol, f"network error: {e}")
        except ccxt.ExchangeError as e:
            raise PriceUnavailableError(symbol, f"exchange error: {e}")

        last = ticker.get('last')
        if _usable(last):
            return float(last)

        bid, ask = ticker.get('bid'), ticker.get('ask')
        if _usable(bid) and _usable(ask):
            return (float(bid) + float(ask)) / 2

        raise PriceUnavailableError(symbol, f"no usable price in ticker for {ccxt_symbol}")

    async def close(self):
        """Close exchange connection"""
        await self.exchange.close()
        logger.info(f"✅ {self.exchange_id} price oracle closed")


class StaticPriceOracle(PriceOracle):
    """In-memory prices for replays, demos and tests"""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices: Dict[str, float] = {k.upper(): v for k, v in (prices or {}).items()}

    def set_price(self, symbol: str, price: float):
        self.prices[symbol.upper()] = price

    async def get_price(self, symbol: str) -> float:
        price = self.prices.get(symbol.upper())
        if not _usable(price):
            raise PriceUnavailableError(symbol, "no price set")
        return float(price)
