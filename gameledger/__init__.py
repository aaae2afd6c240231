"""
gameledger - Stock Trading Game Ledger

Accounts, market orders and a calendar-driven settlement cycle for a
multiplayer stock-trading game.

Usage:
    from gameledger import GameService, GameSettings, StaticQuoteProvider

    service = GameService.from_settings(
        GameSettings(), provider=StaticQuoteProvider({"X": 100}),
    )
    service.join("42", "alice")
    service.buy("42", "X", 10)        # OperationResult(success=True, ...)
    service.engine.step()             # one settlement heartbeat
"""

# Core types
from .core import (
    Account,
    Holding,
    Trade,
    TradeKind,
    AnnalsEntry,
    OperationResult,
    GameError,
    NotFound,
    AccountNotFound,
    SymbolNotFound,
    AnnalsNotFound,
    AlreadyExists,
    InsufficientFunds,
    InsufficientShares,
    RateLimited,
    PreconditionFailed,
    StoreUnavailable,
    InvalidRequest,
    round_up_cents,
    to_decimal,
)

# Storage
from .store import (
    GameStore,
    InMemoryStore,
    JsonFileStore,
    MISSING,
    VIEW_ALL_USER_TRANSACTIONS,
    VIEW_USER_BALANCES,
)

# Calendar automata and properties
from .clock import (
    YearPhase,
    YearRecord,
    MonthPhase,
    MonthRecord,
    days_left_in_year,
    last_day_of_month,
    last_day_of_year,
)
from .properties import GameProperties

# Pricing
from .pricing_source import (
    Quote,
    QuoteStatus,
    QuoteProvider,
    StaticQuoteProvider,
    FmpQuoteProvider,
    PriceOracle,
    PriceUnavailable,
)

# Ledger
from .ledger import (
    Ledger,
    BuyResult,
    SellResult,
    LiquidationResult,
    PositionValue,
    PortfolioValuation,
    Standing,
)

# Settlement
from .annals import AnnalsStore
from .month_settlement import (
    MonthSettlement,
    MonthResult,
    Score,
    NoWinner,
    SingleWinner,
    TiedWinners,
    fold_winners,
)
from .year_settlement import YearSettlement, YearResult
from .settlement_engine import SettlementEngine, TickReport

# Command layer and configuration
from .config import GameSettings, load_settings
from .service import GameService
from .log import setup_logging

__version__ = "0.1.0"

__all__ = [
    # Core
    'Account', 'Holding', 'Trade', 'TradeKind', 'AnnalsEntry', 'OperationResult',
    'GameError', 'NotFound', 'AccountNotFound', 'SymbolNotFound', 'AnnalsNotFound',
    'AlreadyExists', 'InsufficientFunds', 'InsufficientShares', 'RateLimited',
    'PreconditionFailed', 'StoreUnavailable', 'InvalidRequest',
    'round_up_cents', 'to_decimal',
    # Storage
    'GameStore', 'InMemoryStore', 'JsonFileStore', 'MISSING',
    'VIEW_ALL_USER_TRANSACTIONS', 'VIEW_USER_BALANCES',
    # Calendar
    'YearPhase', 'YearRecord', 'MonthPhase', 'MonthRecord',
    'days_left_in_year', 'last_day_of_month', 'last_day_of_year',
    'GameProperties',
    # Pricing
    'Quote', 'QuoteStatus', 'QuoteProvider', 'StaticQuoteProvider',
    'FmpQuoteProvider', 'PriceOracle', 'PriceUnavailable',
    # Ledger
    'Ledger', 'BuyResult', 'SellResult', 'LiquidationResult',
    'PositionValue', 'PortfolioValuation', 'Standing',
    # Settlement
    'AnnalsStore', 'MonthSettlement', 'MonthResult', 'Score',
    'NoWinner', 'SingleWinner', 'TiedWinners', 'fold_winners',
    'YearSettlement', 'YearResult', 'SettlementEngine', 'TickReport',
    # Service
    'GameSettings', 'load_settings', 'GameService', 'setup_logging',
]
