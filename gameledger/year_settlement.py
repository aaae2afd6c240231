"""
year_settlement.py - Year-end finalization

Closes out a game year:
1. Guard checks (finalize_year_checks); any failure aborts with no mutation
2. Liquidate every portfolio at current prices
3. Rank accounts by cash balance
4. Award the year-end bonus to every account tied at the top balance
5. Record the standings in the annals
6. Mark the year finalized
7. Top up every balance below the starting balance

Once the year is finalized the guards reject a second run, so finalization
is idempotent.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List
import logging
import threading

from .core import (
    PreconditionFailed, ZERO, round_up_cents,
    PROP_LAST_DAY_OF_YEAR,
)
from .annals import AnnalsStore
from .clock import last_day_of_year
from .ledger import Ledger, LiquidationResult
from .properties import GameProperties

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class YearResult:
    """
    Outcome of a year-end settlement.

    Attributes:
        year: Game year that was finalized
        winners: Account ids that received the year-end bonus
        bonus: Bonus paid to each winner
        leaderboard: Annals rows (rank, accountId, displayName, balance, bonus)
        top_ups: account id -> amount added to reach the starting balance
        liquidations: Per-account liquidation outcomes
        message: Announcement text
    """
    year: int
    winners: List[str]
    bonus: Decimal
    leaderboard: List[Dict[str, Any]] = field(default_factory=list)
    top_ups: Dict[str, Decimal] = field(default_factory=dict)
    liquidations: List[LiquidationResult] = field(default_factory=list)
    message: str = ""


class YearSettlement:
    """Year-end settlement over the ledger, the game properties and the annals."""

    def __init__(
        self,
        ledger: Ledger,
        properties: GameProperties,
        annals: AnnalsStore,
        end_of_year_award: Decimal = Decimal("5000"),
    ):
        self.ledger = ledger
        self.properties = properties
        self.annals = annals
        self.end_of_year_award = round_up_cents(end_of_year_award)
        self._lock = threading.Lock()

    def finalize_year_checks(self) -> List[str]:
        """Return the guards that currently fail (empty list when finalization may run)."""
        failed = []
        year = self.properties.current_year()
        if not self.properties.is_game_started():
            failed.append("Game has not started yet.")
        if self.properties.is_year_finalized():
            failed.append("Current year is already finalized.")
        if self.ledger.account_count() == 0:
            failed.append("No players found in the game.")
        if self.properties.get(PROP_LAST_DAY_OF_YEAR) != last_day_of_year(year):
            failed.append(f"Last day of the year is not set to {last_day_of_year(year)}.")
        return failed

    def finalize_year(self) -> YearResult:
        """
        Finalize the current game year.

        Raises:
            PreconditionFailed: One or more guard checks failed; failed_checks names them
        """
        with self._lock:
            failed = self.finalize_year_checks()
            if failed:
                for check in failed:
                    logger.error("[FINALIZE] :: %s", check)
                raise PreconditionFailed(
                    "Finalize year checks failed: " + " ".join(failed), failed_checks=failed,
                )
            return self._finalize()

    def _finalize(self) -> YearResult:
        year = self.properties.current_year()
        logger.info("[FINALIZE] :: Finalizing the year %s...", year)

        liquidations = []
        for account in self.ledger.list_accounts():
            result = self.ledger.liquidate_all(account.account_id)
            if result.failed:
                logger.error(
                    "[AUTO-SELL] :: %s kept %s after liquidation",
                    account.account_id, ", ".join(sorted(result.failed)),
                )
            liquidations.append(result)

        ranked = self.ledger.rank_by_balance()
        top_balance = ranked[0].balance
        winners = [a.account_id for a in ranked if a.balance == top_balance]
        for account_id in winners:
            self.ledger.credit(account_id, self.end_of_year_award, f"{year} year-end award")
            logger.info("[FINALIZE] :: Awarding $%s to %s!", self.end_of_year_award, account_id)

        leaderboard = []
        for rank, account in enumerate(self.ledger.rank_by_balance(), start=1):
            leaderboard.append({
                "rank": rank,
                "accountId": account.account_id,
                "displayName": account.display_name,
                "balance": account.balance,
                "bonus": self.end_of_year_award if account.account_id in winners else ZERO,
            })
        self.annals.record_results(year, leaderboard)

        self.properties.finalize_year()
        top_ups = self.ledger.top_up(self.ledger.starting_balance)

        names = ", ".join(row["displayName"] for row in leaderboard if row["accountId"] in winners)
        message = (
            f"Year {year} has been finalized. The winner is {names} "
            f"with a total balance of ${top_balance + self.end_of_year_award}."
        )
        logger.info("[FINALIZE] :: %s", message)
        return YearResult(
            year=year,
            winners=winners,
            bonus=self.end_of_year_award,
            leaderboard=leaderboard,
            top_ups=top_ups,
            liquidations=liquidations,
            message=message,
        )
