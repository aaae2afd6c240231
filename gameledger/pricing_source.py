"""
pricing_source.py - Market quotes for order execution and valuation

Provides the quote providers and the oracle adapter the ledger prices against.

Classes:
- QuoteProvider: Protocol defining the external quote interface
- StaticQuoteProvider: In-process prices (tests, simulations, offline play)
- FmpQuoteProvider: Financial Modeling Prep quote endpoint over HTTP
- PriceOracle: Wraps a provider, turns failures into typed errors and owns
  the process-wide rate-limit cooldown

All prices are Decimal in the game currency.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Set, runtime_checkable
import logging

import requests

from .core import (
    RateLimited, SymbolNotFound, to_decimal,
    PROP_API_LIMIT_EXCEEDED, PROP_API_LIMIT_RESET_AT,
)
from .properties import GameProperties

logger = logging.getLogger(__name__)

FMP_QUOTE_URL = "https://financialmodelingprep.com/api/v3/quote/{symbol}"


class QuoteStatus(Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class Quote:
    """Outcome of a single quote request. price is set only when status is OK."""
    symbol: str
    status: QuoteStatus
    price: Optional[Decimal] = None

    @property
    def ok(self) -> bool:
        return self.status is QuoteStatus.OK


class PriceUnavailable(RateLimited):
    """Transient provider failure (network, 5xx). Reported like a rate limit, without the cooldown."""


@runtime_checkable
class QuoteProvider(Protocol):
    """
    Protocol for external quote services.

    Implementations never raise for expected outcomes; an unknown symbol or a
    throttled request is reported through Quote.status.
    """

    def quote(self, symbol: str) -> Quote:
        """Get the latest price for a symbol."""
        ...


class StaticQuoteProvider:
    """
    Quote provider backed by a price map.

    Symbols missing from the map are NOT_FOUND. Symbols can be marked as
    rate limited to exercise the cooldown path.
    """

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        """
        Initialize with a static price map.

        Args:
            prices: Dictionary mapping symbols to prices
        """
        self.prices: Dict[str, Decimal] = {
            sym: to_decimal(p) for sym, p in (prices or {}).items()
        }
        self.rate_limited: Set[str] = set()
        self.calls = 0

    def quote(self, symbol: str) -> Quote:
        self.calls += 1
        if symbol in self.rate_limited:
            return Quote(symbol, QuoteStatus.RATE_LIMITED)
        price = self.prices.get(symbol)
        if price is None:
            return Quote(symbol, QuoteStatus.NOT_FOUND)
        return Quote(symbol, QuoteStatus.OK, price)

    def update_price(self, symbol: str, price) -> None:
        """Update the price of a symbol."""
        self.prices[symbol] = to_decimal(price)

    def update_prices(self, prices: Dict[str, Decimal]) -> None:
        """Update multiple prices at once."""
        for symbol, price in prices.items():
            self.update_price(symbol, price)

    def remove(self, symbol: str) -> None:
        """Stop tracking a symbol (subsequent quotes are NOT_FOUND)."""
        self.prices.pop(symbol, None)

    def __repr__(self):
        return f"StaticQuoteProvider({len(self.prices)} prices)"


class FmpQuoteProvider:
    """
    Financial Modeling Prep quote endpoint.

    Response mapping:
        HTTP 429, or an error body mentioning the limit -> RATE_LIMITED
        non-empty list with a price                      -> OK
        empty list, or any other error body              -> NOT_FOUND
        network failure / 5xx                            -> UNAVAILABLE
    """

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        base_url: str = FMP_QUOTE_URL,
    ):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.base_url = base_url

    def quote(self, symbol: str) -> Quote:
        url = self.base_url.format(symbol=symbol.upper())
        try:
            resp = self.session.get(url, params={"apikey": self.api_key}, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("[QUOTE] :: %s request failed: %s", symbol, e)
            return Quote(symbol, QuoteStatus.UNAVAILABLE)

        if resp.status_code == 429:
            return Quote(symbol, QuoteStatus.RATE_LIMITED)
        if resp.status_code >= 500:
            logger.warning("[QUOTE] :: %s provider error HTTP %s", symbol, resp.status_code)
            return Quote(symbol, QuoteStatus.UNAVAILABLE)

        try:
            data = resp.json()
        except ValueError:
            logger.warning("[QUOTE] :: %s returned a non-JSON body", symbol)
            return Quote(symbol, QuoteStatus.UNAVAILABLE)

        if isinstance(data, list):
            if data and data[0].get("price") is not None:
                return Quote(symbol, QuoteStatus.OK, to_decimal(data[0]["price"]))
            return Quote(symbol, QuoteStatus.NOT_FOUND)

        message = ""
        if isinstance(data, dict):
            message = str(data.get("Error Message") or data.get("error") or "")
        if "limit" in message.lower():
            return Quote(symbol, QuoteStatus.RATE_LIMITED)
        return Quote(symbol, QuoteStatus.NOT_FOUND)

    def __repr__(self):
        return f"FmpQuoteProvider(timeout={self.timeout})"


class PriceOracle:
    """
    Oracle adapter used by the ledger and the settlement code.

    On a RATE_LIMITED answer the oracle trips a cooldown stored in the game
    properties (apiLimitExceeded + apiLimitResetAt). While the cooldown is
    active every request fails fast with RateLimited and the provider is not
    called. The cooldown clears itself on the first request after it expires.
    A flag stored without a reset time counts as expired.
    """

    def __init__(
        self,
        provider: QuoteProvider,
        properties: GameProperties,
        cooldown: timedelta = timedelta(days=1),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.provider = provider
        self.properties = properties
        self.cooldown = cooldown
        self.clock = clock

    def is_rate_limited(self) -> bool:
        """Check the cooldown, clearing it when the window has passed."""
        if self.properties.get(PROP_API_LIMIT_EXCEEDED, False) is not True:
            return False
        reset_at = self.properties.get(PROP_API_LIMIT_RESET_AT, None)
        if reset_at is None or self.clock() >= datetime.fromisoformat(reset_at):
            self.properties.set(PROP_API_LIMIT_EXCEEDED, False)
            self.properties.set(PROP_API_LIMIT_RESET_AT, None)
            logger.info("[API LIMIT] :: API limit reset at %s", self.clock().isoformat())
            return False
        return True

    def _trip_cooldown(self) -> None:
        reset_at = self.clock() + self.cooldown
        self.properties.set(PROP_API_LIMIT_EXCEEDED, True)
        self.properties.set(PROP_API_LIMIT_RESET_AT, reset_at.isoformat())
        logger.error("[API LIMIT] :: API limit exceeded, quotes paused until %s", reset_at.isoformat())

    def quote(self, symbol: str) -> Quote:
        """Non-raising quote that still honours and trips the cooldown."""
        if self.is_rate_limited():
            return Quote(symbol, QuoteStatus.RATE_LIMITED)
        result = self.provider.quote(symbol)
        if result.status is QuoteStatus.RATE_LIMITED:
            self._trip_cooldown()
        return result

    def get_price(self, symbol: str) -> Decimal:
        """
        Get the current price of a symbol.

        Raises:
            RateLimited: Cooldown active or provider throttled the request
            PriceUnavailable: Provider could not be reached
            SymbolNotFound: Provider does not track the symbol
        """
        result = self.quote(symbol)
        if result.status is QuoteStatus.OK:
            return result.price
        if result.status is QuoteStatus.NOT_FOUND:
            raise SymbolNotFound(f"Stock symbol {symbol} not tracked by this service.")
        if result.status is QuoteStatus.UNAVAILABLE:
            raise PriceUnavailable(f"Price for {symbol} is temporarily unavailable. Please try again later.")
        raise RateLimited("API limit exceeded. Please try again later.")

    def __repr__(self):
        return f"PriceOracle({self.provider!r}, cooldown={self.cooldown})"
