"""
ledger.py - Player accounts, orders and valuation

The Ledger is the only component that mutates accounts and the trade log.
Settlement code orchestrates calls into it and never touches balances directly.

Key responsibilities:
    - Account registration and display-name updates
    - Market orders (buy/sell) priced through the PriceOracle
    - Liquidation and portfolio valuation
    - Bonus credits and the minimum-balance top-up used by settlement
    - Read models: trade history, balance ranking, year-to-date leaderboard

Every order validates before mutating. A failed validation raises a GameError
subclass and leaves balances, portfolios and the trade log untouched.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional
import calendar
import logging
import threading

from .core import (
    Account, Holding, Trade, TradeKind,
    AccountNotFound, GameError, InsufficientFunds,
    InsufficientShares, InvalidRequest, StoreUnavailable,
    ZERO, TIMEFRAMES, TRADE_SORT_FIELDS, round_up_cents, to_decimal,
)
from .pricing_source import PriceOracle
from .store import GameStore

logger = logging.getLogger(__name__)


# ============================================================================
# RESULT RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class BuyResult:
    account_id: str
    symbol: str
    shares: int
    price: Decimal
    cost: Decimal
    balance: Decimal


@dataclass(frozen=True, slots=True)
class SellResult:
    account_id: str
    symbol: str
    shares: int
    price: Decimal
    proceeds: Decimal
    shares_left: int
    balance: Decimal


@dataclass(frozen=True, slots=True)
class LiquidationResult:
    """Outcome of selling an account's entire portfolio."""
    account_id: str
    sold: List[SellResult] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def proceeds(self) -> Decimal:
        return sum((s.proceeds for s in self.sold), ZERO)


@dataclass(frozen=True, slots=True)
class PositionValue:
    """
    Live valuation of one holding.

    When the price cannot be fetched, price is None, priced is False and
    the position contributes zero value and zero gain.
    """
    symbol: str
    shares: int
    avg_cost: Decimal
    price: Optional[Decimal]
    market_value: Decimal
    unrealized_gain: Decimal
    priced: bool

    @property
    def pct_change(self) -> Optional[Decimal]:
        if not self.priced or self.avg_cost <= 0:
            return None
        return ((self.price - self.avg_cost) / self.avg_cost * 100).quantize(Decimal("0.01"))


@dataclass(frozen=True, slots=True)
class PortfolioValuation:
    account_id: str
    positions: List[PositionValue]
    total_value: Decimal
    total_gain: Decimal
    cost_basis: Decimal

    @property
    def unpriced(self) -> List[str]:
        return [p.symbol for p in self.positions if not p.priced]


@dataclass(frozen=True, slots=True)
class Standing:
    """One leaderboard row."""
    rank: int
    account_id: str
    display_name: str
    total_value: Decimal
    gains: Decimal
    pct_gain: Decimal


# ============================================================================
# LEDGER
# ============================================================================

class Ledger:
    """
    Account ledger over a GameStore, priced by a PriceOracle.

    Thread Safety:
        Each account mutation is a read-modify-write performed under a
        per-account lock, so a player's order and a settlement-driven
        liquidation of the same account cannot lose each other's update.
        Quotes are fetched before the lock is taken.

    Example:
        ledger = Ledger(store, oracle, starting_balance=Decimal("10000"))
        ledger.create_account("42", "alice")
        ledger.buy("42", "X", 10)     # BuyResult(cost=1000.00, balance=9000.00, ...)
        ledger.sell("42", "X", 10)    # SellResult(proceeds=1100.00, shares_left=0, ...)
    """

    def __init__(
        self,
        store: GameStore,
        oracle: PriceOracle,
        starting_balance: Decimal = Decimal("10000"),
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Create a ledger.

        Args:
            store: Backing store for accounts and trades
            oracle: Price oracle used for orders and valuation
            starting_balance: Balance credited to new accounts and the year-end floor
            clock: Source of wall-clock time for trade timestamps
        """
        self.store = store
        self.oracle = oracle
        self.starting_balance = round_up_cents(starting_balance)
        self.clock = clock
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _account_lock(self, account_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.RLock()
            return lock

    # ========================================================================
    # READS
    # ========================================================================

    def get_account(self, account_id: str) -> Account:
        """
        Raises:
            AccountNotFound: If no account exists for account_id
        """
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound(f"No account found for {account_id}")
        return account

    def exists(self, account_id: str) -> bool:
        return self.store.get_account(account_id) is not None

    def list_accounts(self) -> List[Account]:
        return self.store.list_accounts()

    def account_count(self) -> int:
        return self.store.count_accounts()

    def balance(self, account_id: str) -> Decimal:
        return self.get_account(account_id).balance

    def rank_by_balance(self) -> List[Account]:
        """All accounts by balance descending; equal balances ordered by account id."""
        return sorted(self.store.list_accounts(), key=lambda a: (-a.balance, a.account_id))

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def create_account(self, account_id: str, display_name: str) -> Account:
        """
        Register a new player with the starting balance and an empty portfolio.

        Raises:
            AlreadyExists: If the account id is already registered
        """
        now = self.clock()
        account = Account(
            account_id=account_id,
            display_name=display_name,
            balance=self.starting_balance,
            portfolio={},
            created_at=now,
        )
        self.store.insert_account(account)
        logger.info("[ACCOUNT] :: Created account %s (%s) with %s", account_id, display_name, self.starting_balance)
        return account

    def rename_account(self, account_id: str, display_name: str) -> Account:
        now = self.clock()
        with self._account_lock(account_id):
            return self.store.update_account(
                account_id, lambda a: a.evolve(display_name=display_name, updated_at=now),
            )

    # ========================================================================
    # ORDERS
    # ========================================================================

    @staticmethod
    def _validate_order(symbol: str, shares: int) -> str:
        if isinstance(shares, bool) or not isinstance(shares, int) or shares <= 0:
            raise InvalidRequest(f"Share count must be a positive whole number, got {shares!r}")
        if not symbol or not symbol.strip():
            raise InvalidRequest("Symbol cannot be empty")
        return symbol.strip().upper()

    def buy(self, account_id: str, symbol: str, shares: int) -> BuyResult:
        """
        Buy shares at the current market price.

        cost = price * shares rounded up to the cent. The holding's average
        cost becomes the share-weighted mean of the existing cost basis and
        the new cost.

        Raises:
            InvalidRequest: shares is not a positive integer
            AccountNotFound: No such account
            SymbolNotFound / RateLimited: Quote could not be obtained
            InsufficientFunds: Balance is below the cost
        """
        symbol = self._validate_order(symbol, shares)
        self.get_account(account_id)
        price = self.oracle.get_price(symbol)
        cost = round_up_cents(price * shares)
        now = self.clock()

        def _apply(account: Account) -> Account:
            if account.balance < cost:
                raise InsufficientFunds(
                    f"Insufficient funds: cost {cost} exceeds balance {account.balance}",
                    cost=cost, balance=account.balance,
                )
            held = account.holding(symbol)
            if held is None:
                updated = Holding(shares=shares, avg_cost=round_up_cents(price))
            else:
                total = held.shares + shares
                updated = Holding(
                    shares=total,
                    avg_cost=round_up_cents((held.avg_cost * held.shares + cost) / total),
                )
            return account.evolve(
                balance=account.balance - cost,
                portfolio=account.with_holding(symbol, updated),
            )

        with self._account_lock(account_id):
            before = self.store.get_account(account_id)
            try:
                account = self.store.update_account(account_id, _apply)
            except InsufficientFunds as e:
                logger.warning(
                    "[TRANSACTION CANCELLED] :: %s, balance %s, cost %s :: Insufficient funds!",
                    account_id, e.balance, e.cost,
                )
                raise
            self._record_trade(before, Trade(account_id, symbol, shares, price, TradeKind.BUY, now))

        logger.info("[BUY] :: %s bought %d %s @ %s for %s", account_id, shares, symbol, price, cost)
        return BuyResult(account_id, symbol, shares, price, cost, account.balance)

    def sell(self, account_id: str, symbol: str, shares: int) -> SellResult:
        """
        Sell shares at the current market price.

        Selling the whole position removes the symbol from the portfolio.
        A partial sale leaves the average cost unchanged.

        Raises:
            InvalidRequest: shares is not a positive integer
            AccountNotFound: No such account
            SymbolNotFound / RateLimited: Quote could not be obtained
            InsufficientShares: Symbol not held, or fewer shares held than requested
        """
        symbol = self._validate_order(symbol, shares)
        self.get_account(account_id)
        price = self.oracle.get_price(symbol)
        proceeds = round_up_cents(price * shares)
        now = self.clock()
        remaining: List[int] = []

        def _apply(account: Account) -> Account:
            available = account.shares_of(symbol)
            if available < shares:
                raise InsufficientShares(
                    f"Insufficient shares of {symbol}: requested {shares}, available {available}",
                    requested=shares, available=available,
                )
            held = account.holding(symbol)
            left = held.shares - shares
            remaining.append(left)
            updated = Holding(shares=left, avg_cost=held.avg_cost) if left > 0 else None
            return account.evolve(
                balance=account.balance + proceeds,
                portfolio=account.with_holding(symbol, updated),
            )

        with self._account_lock(account_id):
            before = self.store.get_account(account_id)
            try:
                account = self.store.update_account(account_id, _apply)
            except InsufficientShares as e:
                logger.warning(
                    "[TRANSACTION CANCELLED] :: Insufficient shares :: %s requested %d %s, available %d",
                    account_id, e.requested, symbol, e.available,
                )
                raise
            self._record_trade(before, Trade(account_id, symbol, shares, price, TradeKind.SELL, now))

        logger.info("[SELL] :: %s sold %d %s @ %s for %s", account_id, shares, symbol, price, proceeds)
        return SellResult(account_id, symbol, shares, price, proceeds, remaining[-1], account.balance)

    def _record_trade(self, before: Account, trade: Trade) -> None:
        """Append the trade; if the log cannot be written, put the account back. Caller holds the account lock."""
        try:
            self.store.append_trade(trade)
        except StoreUnavailable:
            logger.error(
                "[TRANSACTION CANCELLED] :: %s %s %s not logged, restoring account %s",
                trade.kind.value, trade.shares, trade.symbol, trade.account_id,
            )
            self.store.update_account(before.account_id, lambda _: before)
            raise

    def liquidate_all(self, account_id: str) -> LiquidationResult:
        """
        Sell every holding at the current price.

        Per-symbol failures are logged and skipped. Re-running after a partial
        failure only sells what is still held.
        """
        account = self.get_account(account_id)
        result = LiquidationResult(account_id)
        for symbol in sorted(account.portfolio):
            # Re-read so a concurrent order is respected
            shares = self.get_account(account_id).shares_of(symbol)
            if shares <= 0:
                continue
            try:
                result.sold.append(self.sell(account_id, symbol, shares))
            except GameError as e:
                result.failed[symbol] = str(e)
                logger.error("[AUTO-SELL] :: Error selling %s for %s: %s", symbol, account_id, e)
        return result

    # ========================================================================
    # VALUATION
    # ========================================================================

    def value_portfolio(self, account_id: str) -> PortfolioValuation:
        """
        Value every holding at a live price.

        Symbols whose price cannot be fetched value at zero and are flagged
        (priced=False) instead of failing the whole valuation.
        """
        account = self.get_account(account_id)
        positions: List[PositionValue] = []
        for symbol in sorted(account.portfolio):
            held = account.portfolio[symbol]
            quote = self.oracle.quote(symbol)
            if quote.ok:
                value = round_up_cents(quote.price * held.shares)
                gain = round_up_cents((quote.price - held.avg_cost) * held.shares)
                positions.append(PositionValue(
                    symbol, held.shares, held.avg_cost, quote.price, value, gain, True,
                ))
            else:
                logger.warning("[PORTFOLIO] :: Could not price %s for %s (%s)", symbol, account_id, quote.status.value)
                positions.append(PositionValue(symbol, held.shares, held.avg_cost, None, ZERO, ZERO, False))

        return PortfolioValuation(
            account_id=account_id,
            positions=positions,
            total_value=sum((p.market_value for p in positions), ZERO),
            total_gain=sum((p.unrealized_gain for p in positions), ZERO),
            cost_basis=sum((round_up_cents(p.avg_cost * p.shares) for p in positions), ZERO),
        )

    def leaderboard(self) -> List[Standing]:
        """
        Year-to-date standings ranked by total value (cash + live holdings).

        gains is the unrealized gain over cost basis; pct_gain is gains as a
        percentage of total value.
        """
        rows = []
        for account in self.store.list_accounts():
            valuation = self.value_portfolio(account.account_id)
            total = account.balance + valuation.total_value
            pct = (valuation.total_gain / total * 100) if total > 0 else ZERO
            rows.append((account, total, valuation.total_gain, pct.quantize(Decimal("0.01"))))

        rows.sort(key=lambda r: (-r[1], r[0].account_id))
        return [
            Standing(i + 1, acct.account_id, acct.display_name, total, gains, pct)
            for i, (acct, total, gains, pct) in enumerate(rows)
        ]

    # ========================================================================
    # SETTLEMENT PRIMITIVES
    # ========================================================================

    def credit(self, account_id: str, amount: Decimal, reason: str) -> Decimal:
        """
        Credit a bonus or prize to an account. Returns the new balance.

        Raises:
            ValueError: amount is not positive
            AccountNotFound: No such account
        """
        amount = round_up_cents(to_decimal(amount))
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")
        with self._account_lock(account_id):
            account = self.store.update_account(
                account_id, lambda a: a.evolve(balance=a.balance + amount),
            )
        logger.info("[CREDIT] :: %s credited %s (%s)", account_id, amount, reason)
        return account.balance

    def top_up(self, floor: Optional[Decimal] = None) -> Dict[str, Decimal]:
        """
        Raise every balance below floor (default: the starting balance) up to it.

        Returns:
            Mapping account id -> amount added, for accounts that were topped up
        """
        floor = self.starting_balance if floor is None else round_up_cents(floor)
        added: Dict[str, Decimal] = {}
        for account in self.store.list_accounts():
            with self._account_lock(account.account_id):
                current = self.get_account(account.account_id)
                if current.balance >= floor:
                    continue
                difference = floor - current.balance
                self.store.update_account(current.account_id, lambda a: a.evolve(balance=floor))
            added[account.account_id] = difference
            logger.info(
                "[FINALIZE] :: Added %s to %s's balance to ensure minimum balance of %s",
                difference, account.account_id, floor,
            )
        return added

    # ========================================================================
    # HISTORY
    # ========================================================================

    def trade_history(
        self,
        account_id: str,
        timeframe: str = "W",
        sort: str = "date",
        order: str = "asc",
        now: Optional[datetime] = None,
    ) -> List[Trade]:
        """
        Trades for one account within a timeframe.

        Args:
            account_id: Account whose trades to return
            timeframe: D (since yesterday), W (past week), M (past month),
                       Y (past year) or ALL
            sort: date, symbol, shares or price
            order: asc or desc
            now: Reference time (default: the ledger clock)

        Raises:
            InvalidRequest: Unknown timeframe, sort field or order
        """
        if timeframe not in TIMEFRAMES:
            raise InvalidRequest(f"Unknown timeframe {timeframe!r}, expected one of {TIMEFRAMES}")
        if sort not in TRADE_SORT_FIELDS:
            raise InvalidRequest(f"Unknown sort field {sort!r}, expected one of {TRADE_SORT_FIELDS}")
        if order not in ("asc", "desc"):
            raise InvalidRequest(f"Unknown sort order {order!r}, expected 'asc' or 'desc'")

        since = timeframe_start(timeframe, now or self.clock())
        trades = self.store.find_trades(account_id=account_id, since=since)
        keys = {
            "date": lambda t: t.timestamp,
            "symbol": lambda t: t.symbol,
            "shares": lambda t: t.shares,
            "price": lambda t: t.price,
        }
        return sorted(trades, key=keys[sort], reverse=(order == "desc"))

    def __repr__(self) -> str:
        return f"Ledger({self.store!r}, starting_balance={self.starting_balance})"


def _shift_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def timeframe_start(timeframe: str, now: datetime) -> Optional[datetime]:
    """Earliest trade timestamp included for a history timeframe (None for ALL)."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if timeframe == "D":
        return midnight - timedelta(days=1)
    if timeframe == "W":
        return midnight - timedelta(days=7)
    if timeframe == "M":
        return _shift_months(midnight, -1)
    if timeframe == "Y":
        return _shift_months(midnight, -12)
    return None
