"""
month_settlement.py - End-of-month awards ceremony

At the end of each month the account whose best holding gained the most
(in percent) since the month opened wins the monthly award plus whatever
has accumulated in the prize pool.

Scoring:
1. Opening price per (account, symbol) = price of the account's first buy of
   that symbol since the month started, else the holding's average cost
2. Score = max over holdings of (current - open) / open * 100
   (0 for an empty portfolio or when no symbol is tracked by the provider)
   A throttled or unavailable quote postpones the whole ceremony.
3. Only positive scores compete. Every account at the maximum wins.

Outcomes are folded into one of NoWinner | SingleWinner | TiedWinners:
    NoWinner      monthly award is added to the prize pool, balances unchanged
    SingleWinner  winner gets the award, then the whole prize pool
    TiedWinners   every winner gets the full award; the pool goes to the
                  first winner by account id
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from functools import reduce
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union
import logging
import math
import threading

from .core import RateLimited, TradeKind, ZERO, round_up_cents
from .clock import last_day_of_month
from .ledger import Ledger
from .pricing_source import PriceUnavailable, QuoteStatus
from .properties import GameProperties

logger = logging.getLogger(__name__)


# ============================================================================
# WINNER FOLD
# ============================================================================

@dataclass(frozen=True, slots=True)
class Score:
    account_id: str
    pct_gain: Decimal


@dataclass(frozen=True, slots=True)
class NoWinner:
    pass


@dataclass(frozen=True, slots=True)
class SingleWinner:
    winner: Score

    @property
    def winners(self) -> Tuple[Score, ...]:
        return (self.winner,)


@dataclass(frozen=True, slots=True)
class TiedWinners:
    winners: Tuple[Score, ...]


MonthOutcome = Union[NoWinner, SingleWinner, TiedWinners]


def _fold_step(outcome: MonthOutcome, score: Score) -> MonthOutcome:
    if score.pct_gain <= 0:
        return outcome
    if isinstance(outcome, NoWinner):
        return SingleWinner(score)
    best = outcome.winners[0].pct_gain
    if score.pct_gain > best:
        return SingleWinner(score)
    if score.pct_gain == best:
        return TiedWinners(outcome.winners + (score,))
    return outcome


def fold_winners(scores: Iterable[Score]) -> MonthOutcome:
    """Fold scores (in account id order) into the month's outcome."""
    ordered = sorted(scores, key=lambda s: s.account_id)
    return reduce(_fold_step, ordered, NoWinner())


def winners_of(outcome: MonthOutcome) -> Tuple[Score, ...]:
    if isinstance(outcome, NoWinner):
        return ()
    return outcome.winners


# ============================================================================
# RESULT
# ============================================================================

@dataclass(frozen=True, slots=True)
class MonthResult:
    """
    Outcome of one monthly ceremony.

    Attributes:
        month_start: First instant of the settled month
        outcome: NoWinner, SingleWinner or TiedWinners
        scores: Score per account
        awards: account id -> monthly award credited
        pool_recipient: Account that received the prize pool, if any
        pool_transfer: Amount moved out of the prize pool (zero when empty)
        prize_pool: Prize pool after the ceremony
        message: Announcement text
    """
    month_start: datetime
    outcome: MonthOutcome
    scores: List[Score] = field(default_factory=list)
    awards: Dict[str, Decimal] = field(default_factory=dict)
    pool_recipient: Optional[str] = None
    pool_transfer: Decimal = ZERO
    prize_pool: Decimal = ZERO
    message: str = ""


# ============================================================================
# SETTLEMENT
# ============================================================================

class MonthSettlement:
    """
    Runs the monthly ceremony against the ledger and the prize pool.

    run_ceremony() is the guarded entry point used by the engine and the
    command layer: it settles only when the stored month is at END_OF_MONTH,
    then marks it finalized so a month can never pay out twice.
    """

    def __init__(
        self,
        ledger: Ledger,
        properties: GameProperties,
        monthly_award: Decimal = Decimal("250"),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.ledger = ledger
        self.properties = properties
        self.monthly_award = round_up_cents(monthly_award)
        self.clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # scoring
    # ------------------------------------------------------------------

    def opening_prices(self, month_start: datetime) -> Dict[str, Dict[str, Decimal]]:
        """First buy price per account and symbol since month_start."""
        opens: Dict[str, Dict[str, Decimal]] = {}
        for trade in self.ledger.store.find_trades(since=month_start, kind=TradeKind.BUY):
            opens.setdefault(trade.account_id, {}).setdefault(trade.symbol, trade.price)
        return opens

    def score_accounts(self, month_start: datetime) -> List[Score]:
        """
        Best percentage gain per account. Symbols the provider does not track are skipped.

        Raises:
            RateLimited: A quote was throttled; no partial scores are returned
        """
        opens = self.opening_prices(month_start)
        scores = []
        for account in self.ledger.list_accounts():
            best: Optional[Decimal] = None
            for symbol in sorted(account.portfolio):
                open_price = opens.get(account.account_id, {}).get(symbol, account.portfolio[symbol].avg_cost)
                if open_price <= 0:
                    continue
                quote = self.ledger.oracle.quote(symbol)
                if quote.status is QuoteStatus.RATE_LIMITED:
                    raise RateLimited(f"Monthly ceremony postponed: quote API limit exceeded while pricing {symbol}.")
                if quote.status is QuoteStatus.UNAVAILABLE:
                    raise PriceUnavailable(f"Monthly ceremony postponed: price for {symbol} is temporarily unavailable.")
                if not quote.ok:
                    logger.warning(
                        "[MONTHLY GAINS] :: Skipping %s for %s, quote %s",
                        symbol, account.account_id, quote.status.value,
                    )
                    continue
                gain = (quote.price - open_price) / open_price * 100
                if best is None or gain > best:
                    best = gain
            score = Score(account.account_id, best if best is not None else ZERO)
            logger.info("[MONTHLY GAINS] :: User %s largest percentage gain: %.2f%%", score.account_id, score.pct_gain)
            scores.append(score)
        return scores

    # ------------------------------------------------------------------
    # payout
    # ------------------------------------------------------------------

    def settle(self, month_start: datetime) -> MonthResult:
        """
        Score, fold and pay out the month that began at month_start.

        Does not consult or update the month automaton; see run_ceremony().

        Raises:
            RateLimited: The quote cooldown is active or trips while scoring;
                nothing was paid
        """
        if self.ledger.oracle.is_rate_limited():
            raise RateLimited("Monthly ceremony postponed: quote API limit exceeded.")

        logger.info("[CEREMONY] :: Running end of the month tasks for %s...", month_start.strftime("%Y-%m"))
        scores = self.score_accounts(month_start)
        outcome = fold_winners(scores)

        if isinstance(outcome, NoWinner):
            pool = self.properties.add_to_prize_pool(self.monthly_award)
            logger.info("[MONTHLY GAINS] :: No gains this month, rolled %s into the prize pool (now %s)", self.monthly_award, pool)
            return MonthResult(
                month_start=month_start,
                outcome=outcome,
                scores=scores,
                prize_pool=pool,
                message=(
                    "It appears that it was a rough month; no gains were made, folks.\n"
                    f"The ${self.monthly_award} bonus will roll over into the next month."
                ),
            )

        awards: Dict[str, Decimal] = {}
        for winner in outcome.winners:
            self.ledger.credit(winner.account_id, self.monthly_award, "monthly award")
            awards[winner.account_id] = self.monthly_award
            logger.info(
                "[MONTHLY GAINS] :: Awarded $%s bonus to user %s with a gain of %.2f%%",
                self.monthly_award, winner.account_id, winner.pct_gain,
            )

        recipient = outcome.winners[0].account_id
        transfer = self.properties.drain_prize_pool()
        if transfer > 0:
            self.ledger.credit(recipient, transfer, "prize pool")
            logger.info("[PRIZE POOL] :: Transferred prize pool of $%s to %s", transfer, recipient)
        else:
            logger.info("[PRIZE POOL] :: Prize pool is empty, nothing to transfer")

        best = outcome.winners[0].pct_gain
        names = ", ".join(self.ledger.get_account(w.account_id).display_name for w in outcome.winners)
        message = f"Congratulations {names}! Top monthly gain of {best:.2f}% earns ${self.monthly_award}."
        if transfer > 0:
            message += f" The prize pool of ${transfer} goes to {self.ledger.get_account(recipient).display_name}."

        return MonthResult(
            month_start=month_start,
            outcome=outcome,
            scores=scores,
            awards=awards,
            pool_recipient=recipient if transfer > 0 else None,
            pool_transfer=transfer,
            prize_pool=self.properties.prize_pool(),
            message=message,
        )

    # ------------------------------------------------------------------
    # guarded entry point
    # ------------------------------------------------------------------

    def run_ceremony(self, now: Optional[datetime] = None) -> Optional[MonthResult]:
        """
        Settle the stored month if it has reached its last day and was not yet settled.

        Returns:
            MonthResult, or None when no settlement was due
        """
        now = now or self.clock()
        with self._lock:
            record = self.properties.month_record().observe(now)
            self.properties.save_month_record(record)
            if not record.settlement_due:
                return None
            result = self.settle(record.month_start)
            self.properties.save_month_record(record.finalize())
        logger.info("[CEREMONY] :: End of the month ceremony completed for %s", record.last_day.strftime("%Y-%m"))
        return result

    def ceremony_preview(self, now: Optional[datetime] = None) -> str:
        """Countdown message shown when the ceremony is requested before month end."""
        now = now or self.clock()
        record = self.properties.month_record()
        if record.finalized:
            return "This month's ceremony has already been held. See you next month!"
        end = datetime.combine(last_day_of_month(now), datetime.min.time())
        days_left = math.ceil((end - now) / timedelta(days=1))
        if days_left <= 1:
            return "The ceremony will be held tomorrow! Tell yo' friends."
        return f"It is not the end of the month yet - only **{days_left}** more sleeps!"
