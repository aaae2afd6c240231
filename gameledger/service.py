"""
service.py - Command layer

GameService is the facade a chat front end talks to. Each command returns an
OperationResult; every GameError raised underneath is converted into a
failed result carrying the error kind, so callers never see exceptions for
expected outcomes (unknown account, insufficient funds, rate limit...).

Commands:
    join, buy, sell, balance, portfolio, transactions, leaderboard,
    annals, ceremony (M = monthly, Y = year-end)

join, leaderboard and annals work without an account; every other command
requires one. leaderboard and annals check the caller only when an account
id is passed.
"""

from __future__ import annotations
from dataclasses import asdict
from datetime import datetime, timedelta
from functools import wraps
from typing import Callable, Optional
import logging

from .core import (
    AccountNotFound, AlreadyExists, GameError, InvalidRequest, OperationResult,
)
from .annals import AnnalsStore
from .config import GameSettings
from .ledger import Ledger
from .month_settlement import MonthSettlement, winners_of
from .pricing_source import FmpQuoteProvider, PriceOracle, QuoteProvider, StaticQuoteProvider
from .properties import GameProperties
from .settlement_engine import SettlementEngine
from .store import GameStore, InMemoryStore, JsonFileStore
from .year_settlement import YearSettlement

logger = logging.getLogger(__name__)

NO_ACCOUNT_MESSAGE = "No account found. Run the join command and provide a username to begin trading!"


def _command(func):
    """Convert GameError into a failed OperationResult."""
    @wraps(func)
    def wrapper(self, *args, **kwargs) -> OperationResult:
        try:
            return func(self, *args, **kwargs)
        except GameError as e:
            logger.info("[COMMAND] :: %s failed: %s (%s)", func.__name__, e, e.kind)
            return OperationResult.fail(e)
    return wrapper


class GameService:
    """
    Facade over the ledger, settlements and annals.

    Example:
        service = GameService.from_settings(load_settings("gameledger.yaml"))
        service.join("42", "alice")
        service.buy("42", "AAPL", 10)
        service.engine.start()
    """

    def __init__(
        self,
        ledger: Ledger,
        properties: GameProperties,
        month: MonthSettlement,
        year: YearSettlement,
        annals: AnnalsStore,
        engine: Optional[SettlementEngine] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.ledger = ledger
        self.properties = properties
        self.month = month
        self.year = year
        self.annals_store = annals
        self.engine = engine
        self.clock = clock
        self.ledger.store.rebuild_views()

    @classmethod
    def from_settings(
        cls,
        settings: GameSettings,
        store: Optional[GameStore] = None,
        provider: Optional[QuoteProvider] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> 'GameService':
        """
        Wire a complete game from settings.

        Args:
            settings: Loaded GameSettings
            store: Backing store (default: JsonFileStore at store_path, else in-memory)
            provider: Quote provider (default: FMP when an API key is configured,
                      else an empty StaticQuoteProvider)
            clock: Source of wall-clock time shared by every component
        """
        if store is None:
            store = JsonFileStore(settings.store_path) if settings.store_path else InMemoryStore()
        if provider is None:
            if settings.fmp_api_key:
                provider = FmpQuoteProvider(settings.fmp_api_key)
            else:
                logger.warning("[CONFIG] :: No FMP API key configured, using an empty static quote provider")
                provider = StaticQuoteProvider()

        properties = GameProperties(store, clock=clock)
        oracle = PriceOracle(
            provider, properties,
            cooldown=timedelta(seconds=settings.api_cooldown_seconds), clock=clock,
        )
        ledger = Ledger(store, oracle, starting_balance=settings.starting_balance, clock=clock)
        annals = AnnalsStore(store)
        month = MonthSettlement(ledger, properties, monthly_award=settings.monthly_award, clock=clock)
        year = YearSettlement(ledger, properties, annals, end_of_year_award=settings.end_of_year_award)
        engine = SettlementEngine(
            properties, month, year, interval=settings.tick_interval_seconds, clock=clock,
        )
        return cls(ledger, properties, month, year, annals, engine=engine, clock=clock)

    def _require_account(self, account_id: str) -> None:
        if not self.ledger.exists(account_id):
            raise AccountNotFound(NO_ACCOUNT_MESSAGE)

    # ========================================================================
    # COMMANDS
    # ========================================================================

    @_command
    def join(self, account_id: str, username: str) -> OperationResult:
        """Create an account, or update the display name of an existing one."""
        try:
            account = self.ledger.create_account(account_id, username)
        except AlreadyExists:
            previous = self.ledger.get_account(account_id).display_name
            self.ledger.rename_account(account_id, username)
            changed = previous != username
            message = "Player already exists! Updating username." if changed else "Player already exists!"
            return OperationResult.fail(AlreadyExists(message), username=username if changed else None)
        return OperationResult.ok(
            "Player created successfully.",
            account_id=account.account_id, display_name=account.display_name, balance=account.balance,
        )

    @_command
    def buy(self, account_id: str, symbol: str, shares: int) -> OperationResult:
        self._require_account(account_id)
        result = self.ledger.buy(account_id, symbol, shares)
        return OperationResult.ok(
            f"Success - your transaction was approved! Total cost {result.cost} "
            f"({result.shares} shares @ {result.price}), remaining balance {result.balance}",
            **asdict(result),
        )

    @_command
    def sell(self, account_id: str, symbol: str, shares: int) -> OperationResult:
        self._require_account(account_id)
        result = self.ledger.sell(account_id, symbol, shares)
        return OperationResult.ok(
            f"Success - your transaction was approved! Total proceeds {result.proceeds}",
            **asdict(result),
        )

    @_command
    def balance(self, account_id: str) -> OperationResult:
        self._require_account(account_id)
        balance = self.ledger.balance(account_id)
        return OperationResult.ok(f"Account Balance :: {balance}", balance=balance)

    @_command
    def portfolio(self, account_id: str) -> OperationResult:
        self._require_account(account_id)
        valuation = self.ledger.value_portfolio(account_id)
        if not valuation.positions:
            return OperationResult.ok("You have no holdings - go and buy some stock!", positions=[])
        return OperationResult.ok(
            f"Total Value :: {valuation.total_value} | Total Gains :: {valuation.total_gain}",
            positions=[asdict(p) for p in valuation.positions],
            total_value=valuation.total_value,
            total_gain=valuation.total_gain,
            unpriced=valuation.unpriced,
        )

    @_command
    def transactions(
        self,
        account_id: str,
        timeframe: Optional[str] = None,
        sort: Optional[str] = None,
        order: Optional[str] = None,
    ) -> OperationResult:
        self._require_account(account_id)
        trades = self.ledger.trade_history(
            account_id, timeframe=timeframe or "W", sort=sort or "date", order=order or "asc",
        )
        rows = [
            {
                "symbol": t.symbol,
                "shares": t.shares,
                "price": t.price,
                "kind": t.kind.value,
                "amount": t.amount,
                "timestamp": t.timestamp,
            }
            for t in trades
        ]
        if not rows:
            return OperationResult.ok(
                "No transactions found - check your balance and start buying and selling TODAY!",
                transactions=[],
            )
        return OperationResult.ok(f"{len(rows)} transactions", transactions=rows)

    @_command
    def leaderboard(self, account_id: Optional[str] = None) -> OperationResult:
        if account_id is not None:
            self._require_account(account_id)
        standings = self.ledger.leaderboard()
        return OperationResult.ok(
            f"Year-to-date leaderboard for {self.properties.current_year()}",
            standings=[asdict(s) for s in standings],
        )

    @_command
    def annals(self, year: int, account_id: Optional[str] = None) -> OperationResult:
        if account_id is not None:
            self._require_account(account_id)
        results = self.annals_store.get_results(year)
        return OperationResult.ok(f"Results for {year}", year=int(year), results=results)

    @_command
    def ceremony(self, account_id: str, kind: str) -> OperationResult:
        """
        Run a ceremony on demand.

        kind M runs the monthly ceremony if the month has ended (otherwise
        returns the countdown); kind Y runs the guarded year-end settlement.
        """
        self._require_account(account_id)
        if kind == "M":
            now = self.clock()
            result = self.month.run_ceremony(now)
            if result is None:
                return OperationResult.ok(self.month.ceremony_preview(now), held=False)
            return OperationResult.ok(
                result.message,
                held=True,
                winners=[w.account_id for w in winners_of(result.outcome)],
                awards=result.awards,
                pool_transfer=result.pool_transfer,
                prize_pool=result.prize_pool,
            )
        if kind == "Y":
            result = self.year.finalize_year()
            return OperationResult.ok(
                result.message,
                year=result.year,
                winners=result.winners,
                bonus=result.bonus,
                leaderboard=result.leaderboard,
                top_ups=result.top_ups,
            )
        raise InvalidRequest(f"Unknown ceremony type {kind!r}, expected 'M' or 'Y'")
