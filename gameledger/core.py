"""
Core types and pure functions for the trading game ledger.

This module provides the foundational data structures shared by every other module:
1. Immutable records: Holding, Account, Trade, AnnalsEntry
2. Exceptions: GameError and the domain-specific error kinds
3. OperationResult: the success/failure envelope returned to the command layer
4. Currency helpers: round_up_cents and to_decimal
5. Property keys for the singleton game state table

Records are frozen. Mutation happens by building a new record with
dataclasses.replace() and handing it to the store.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, ROUND_CEILING, getcontext
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Currency arithmetic runs on Decimal with enough precision that
# price * shares never rounds before round_up_cents() is applied.
#
_GAME_DECIMAL_CONTEXT = getcontext()
_GAME_DECIMAL_CONTEXT.prec = 50


# ============================================================================
# CONSTANTS
# ============================================================================

CENT = Decimal("0.01")
ZERO = Decimal("0")

# Property keys (singleton game state)
PROP_YEAR = "year"
PROP_GAME_STARTED = "gameStarted"
PROP_STARTED_DATE = "startedDate"
PROP_YEAR_FINALIZED = "currentYearFinalized"
PROP_LAST_DAY_OF_YEAR = "lastDayOfYear"
PROP_MONTH_FINALIZED = "monthFinalized"
PROP_END_OF_MONTH = "endOfMonthFlag"
PROP_LAST_DAY_OF_MONTH = "lastDayOfCurrentMonth"
PROP_PRIZE_POOL = "prizePool"
PROP_API_LIMIT_EXCEEDED = "apiLimitExceeded"
PROP_API_LIMIT_RESET_AT = "apiLimitResetAt"
PROP_HEARTBEAT_DATE = "heartbeatDate"

# Trade history filters
TIMEFRAMES = ("D", "W", "M", "Y", "ALL")
TRADE_SORT_FIELDS = ("date", "symbol", "shares", "price")


# ============================================================================
# CURRENCY HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """Convert a number or numeric string to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_up_cents(amount: Any) -> Decimal:
    """
    Round a currency amount up to the next cent.

    Always rounds toward positive infinity: 100.051 -> 100.06, 100.05 -> 100.05.
    Applied to every currency amount the ledger stores, so repeated operations
    land on the same cent grid and never drift.
    """
    return to_decimal(amount).quantize(CENT, rounding=ROUND_CEILING)


# ============================================================================
# ENUMS
# ============================================================================

class TradeKind(Enum):
    """Direction of a recorded trade."""
    BUY = "buy"
    SELL = "sell"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class GameError(Exception):
    """Base exception for all game ledger errors."""

    kind = "GameError"


class NotFound(GameError):
    """Raised when an account, symbol or annals year does not exist."""

    kind = "NotFound"


class AccountNotFound(NotFound):
    """Raised when no account exists for the given id."""


class SymbolNotFound(NotFound):
    """Raised when the quote provider does not track the symbol."""


class AnnalsNotFound(NotFound):
    """Raised when no annals entry exists for the requested year."""


class AlreadyExists(GameError):
    """Raised when creating an account whose id is already registered."""

    kind = "AlreadyExists"


class InsufficientFunds(GameError):
    """Raised when a buy would take the balance below zero."""

    kind = "InsufficientFunds"

    def __init__(self, message: str, cost: Decimal = ZERO, balance: Decimal = ZERO):
        super().__init__(message)
        self.cost = cost
        self.balance = balance


class InsufficientShares(GameError):
    """Raised when a sell asks for more shares than the portfolio holds."""

    kind = "InsufficientShares"

    def __init__(self, message: str, requested: int = 0, available: int = 0):
        super().__init__(message)
        self.requested = requested
        self.available = available


class RateLimited(GameError):
    """Raised while the quote provider's rate limit cooldown is active."""

    kind = "RateLimited"


class PreconditionFailed(GameError):
    """Raised when a settlement guard or a clock transition guard fails."""

    kind = "PreconditionFailed"

    def __init__(self, message: str, failed_checks: Optional[List[str]] = None):
        super().__init__(message)
        self.failed_checks = list(failed_checks or [])


class StoreUnavailable(GameError):
    """Raised when the persistent store cannot be read or written."""

    kind = "StoreUnavailable"


class InvalidRequest(GameError):
    """Raised for malformed requests (non-positive share counts, unknown filters)."""

    kind = "InvalidRequest"


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Holding:
    """
    A portfolio entry for one symbol.

    Attributes:
        shares: Whole shares held (always > 0 while the entry exists)
        avg_cost: Weighted average purchase price per share, rounded up to the cent
    """
    shares: int
    avg_cost: Decimal

    def __post_init__(self):
        if not isinstance(self.shares, int) or self.shares <= 0:
            raise ValueError(f"Holding shares must be a positive integer, got {self.shares!r}")
        if self.avg_cost < 0:
            raise ValueError(f"Holding avg_cost must be non-negative, got {self.avg_cost}")

    @property
    def cost_basis(self) -> Decimal:
        return self.avg_cost * self.shares


@dataclass(frozen=True, slots=True)
class Account:
    """
    A player account.

    Attributes:
        account_id: Stable unique identifier (the chat user id)
        display_name: Name shown on leaderboards
        balance: Cash balance
        portfolio: Mapping symbol -> Holding
        created_at: Creation time
        updated_at: Last time the display name changed
    """
    account_id: str
    display_name: str
    balance: Decimal
    portfolio: Mapping[str, Holding] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.account_id or not str(self.account_id).strip():
            raise ValueError("Account id cannot be empty")

    def holding(self, symbol: str) -> Optional[Holding]:
        return self.portfolio.get(symbol)

    def shares_of(self, symbol: str) -> int:
        held = self.portfolio.get(symbol)
        return held.shares if held else 0

    def with_holding(self, symbol: str, holding: Optional[Holding]) -> Dict[str, Holding]:
        """Return a copy of the portfolio with symbol set to holding (removed when None)."""
        portfolio = dict(self.portfolio)
        if holding is None:
            portfolio.pop(symbol, None)
        else:
            portfolio[symbol] = holding
        return portfolio

    def evolve(self, **changes) -> 'Account':
        return replace(self, **changes)


@dataclass(frozen=True, slots=True)
class Trade:
    """
    Immutable record of an executed order.

    The trade log is append-only. Ordering by timestamp defines history.
    """
    account_id: str
    symbol: str
    shares: int
    price: Decimal
    kind: TradeKind
    timestamp: datetime

    @property
    def amount(self) -> Decimal:
        return round_up_cents(self.price * self.shares)

    def __repr__(self) -> str:
        return (f"Trade({self.kind.value} {self.shares} {self.symbol} @ {self.price} "
                f"by {self.account_id} at {self.timestamp.isoformat()})")


@dataclass(frozen=True, slots=True)
class AnnalsEntry:
    """Results recorded for one game year."""
    year: int
    results: Tuple[Dict[str, Any], ...] = ()


# ============================================================================
# OPERATION RESULT
# ============================================================================

@dataclass(frozen=True, slots=True)
class OperationResult:
    """
    Discriminated success/failure envelope returned by the command layer.

    Attributes:
        success: True when the operation completed
        payload: Operation-specific data (empty on failure unless useful context exists)
        message: Human readable summary for the caller to render
        error: GameError.kind of the failure, None on success
    """
    success: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, message: str = "", **payload) -> 'OperationResult':
        return cls(success=True, payload=payload, message=message)

    @classmethod
    def fail(cls, error: GameError, **payload) -> 'OperationResult':
        return cls(success=False, payload=payload, message=str(error), error=error.kind)
