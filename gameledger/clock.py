"""
clock.py - Calendar automata for the game

The game's durable state machine, modelled as two small immutable records
with named transitions:

1. YearRecord:  NOT_STARTED -> STARTED -> FINALIZED -> (rollover) -> NOT_STARTED
2. MonthRecord: IN_PROGRESS -> END_OF_MONTH -> FINALIZED -> (advance) -> IN_PROGRESS

Transitions are pure: each returns a new record or raises PreconditionFailed
listing the guards that did not hold. Persistence lives in properties.py.
Boundary checks compare the stored markers with a wall-clock instant, so a
late check still sees that a boundary has been crossed.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import List
import calendar
import math

from .core import PreconditionFailed


# ============================================================================
# CALENDAR HELPERS
# ============================================================================

def last_day_of_year(year: int) -> str:
    """The lastDayOfYear marker for a game year, e.g. '2025-12-31'."""
    return f"{year}-12-31"


def last_day_of_month(moment: datetime | date) -> date:
    return date(moment.year, moment.month, calendar.monthrange(moment.year, moment.month)[1])


def days_left_in_year(year: int, now: datetime) -> int:
    """
    Whole days from now until midnight starting December 31st of year.

    Never negative: any instant on or after that midnight returns 0.
    """
    remaining = datetime(year, 12, 31) - now
    days = math.ceil(remaining / timedelta(days=1))
    return days if days > 0 else 0


def _require(failed: List[str], transition: str) -> None:
    if failed:
        raise PreconditionFailed(
            f"{transition} not allowed: {', '.join(failed)}", failed_checks=failed,
        )


# ============================================================================
# YEAR AUTOMATON
# ============================================================================

class YearPhase(Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    FINALIZED = "finalized"


@dataclass(frozen=True, slots=True)
class YearRecord:
    """
    Stored state of the current game year.

    Attributes:
        year: Game year the record describes
        game_started: gameStarted property
        finalized: currentYearFinalized property
        last_day: lastDayOfYear property ('YYYY-12-31')
    """
    year: int
    game_started: bool = False
    finalized: bool = False
    last_day: str = ""

    @classmethod
    def fresh(cls, year: int) -> 'YearRecord':
        return cls(year=year, last_day=last_day_of_year(year))

    @property
    def phase(self) -> YearPhase:
        if self.finalized:
            return YearPhase.FINALIZED
        if self.game_started:
            return YearPhase.STARTED
        return YearPhase.NOT_STARTED

    # -- start ---------------------------------------------------------------

    def start_blockers(self, now: datetime) -> List[str]:
        failed = []
        if self.game_started:
            failed.append("game already started")
        if self.finalized:
            failed.append(f"year {self.year} is finalized and awaiting rollover")
        if self.year != now.year:
            failed.append(f"stored year {self.year} is not the current year {now.year}")
        return failed

    def start(self, now: datetime) -> 'YearRecord':
        _require(self.start_blockers(now), "start")
        return replace(self, game_started=True)

    # -- finalize ------------------------------------------------------------

    def settlement_due(self, now: datetime) -> bool:
        """True once the started year has reached (or passed) its last day."""
        if self.phase is not YearPhase.STARTED:
            return False
        try:
            boundary = date.fromisoformat(self.last_day)
        except ValueError:
            # A malformed marker still has to surface through the settlement guards.
            return True
        return now.date() >= boundary

    def finalize_blockers(self) -> List[str]:
        failed = []
        if not self.game_started:
            failed.append("game has not started")
        if self.finalized:
            failed.append("year already finalized")
        return failed

    def finalize(self) -> 'YearRecord':
        _require(self.finalize_blockers(), "finalize")
        return replace(self, finalized=True, game_started=False, last_day=last_day_of_year(self.year))

    # -- rollover ------------------------------------------------------------

    def rollover_blockers(self, now: datetime) -> List[str]:
        failed = []
        if not self.finalized:
            failed.append(f"year {self.year} is not finalized")
        if self.year == now.year:
            failed.append(f"calendar is still in {self.year}")
        if days_left_in_year(self.year, now) > 0:
            failed.append(f"{days_left_in_year(self.year, now)} days left in {self.year}")
        return failed

    def rollover(self, now: datetime) -> 'YearRecord':
        _require(self.rollover_blockers(now), "rollover")
        return YearRecord.fresh(now.year)


# ============================================================================
# MONTH AUTOMATON
# ============================================================================

class MonthPhase(Enum):
    IN_PROGRESS = "in_progress"
    END_OF_MONTH = "end_of_month"
    FINALIZED = "finalized"


@dataclass(frozen=True, slots=True)
class MonthRecord:
    """
    Stored state of the current game month.

    Attributes:
        last_day: lastDayOfCurrentMonth property
        end_of_month: endOfMonthFlag property
        finalized: monthFinalized property
    """
    last_day: date
    end_of_month: bool = False
    finalized: bool = False

    @classmethod
    def for_month(cls, now: datetime) -> 'MonthRecord':
        return cls(last_day=last_day_of_month(now))

    @property
    def phase(self) -> MonthPhase:
        if self.finalized:
            return MonthPhase.FINALIZED
        if self.end_of_month:
            return MonthPhase.END_OF_MONTH
        return MonthPhase.IN_PROGRESS

    @property
    def month_start(self) -> datetime:
        """Midnight on the first day of the month this record describes."""
        return datetime(self.last_day.year, self.last_day.month, 1)

    def observe(self, now: datetime) -> 'MonthRecord':
        """Refresh endOfMonthFlag against the wall clock."""
        return replace(self, end_of_month=now.date() >= self.last_day)

    @property
    def settlement_due(self) -> bool:
        return self.phase is MonthPhase.END_OF_MONTH

    def finalize(self) -> 'MonthRecord':
        failed = []
        if not self.end_of_month:
            failed.append(f"month ending {self.last_day.isoformat()} has not reached its last day")
        if self.finalized:
            failed.append("month already finalized")
        _require(failed, "finalize month")
        return replace(self, finalized=True)

    def is_stale(self, now: datetime) -> bool:
        """True when the wall clock has moved into a different month."""
        return (self.last_day.year, self.last_day.month) != (now.year, now.month)

    def advance(self, now: datetime) -> 'MonthRecord':
        if not self.is_stale(now):
            raise PreconditionFailed(
                "advance month not allowed: still in the recorded month",
                failed_checks=["still in the recorded month"],
            )
        return MonthRecord.for_month(now).observe(now)
