"""
properties.py - Game Clock & Properties Store

Singleton key/value facts that make up the game's durable memory: the game
year, started/finalized flags, month markers, prize pool, API cooldown and
heartbeat.

Every read lazily seeds a missing key with its default, so the store never
has to be pre-populated. Every write is an upsert.
"""

from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict
import logging

from .core import (
    ZERO, to_decimal,
    PROP_YEAR, PROP_GAME_STARTED, PROP_STARTED_DATE, PROP_YEAR_FINALIZED,
    PROP_LAST_DAY_OF_YEAR, PROP_MONTH_FINALIZED, PROP_END_OF_MONTH,
    PROP_LAST_DAY_OF_MONTH, PROP_PRIZE_POOL, PROP_API_LIMIT_EXCEEDED,
    PROP_API_LIMIT_RESET_AT, PROP_HEARTBEAT_DATE,
)
from .clock import YearRecord, MonthRecord, days_left_in_year, last_day_of_year, last_day_of_month
from .store import GameStore, MISSING

logger = logging.getLogger(__name__)


class GameProperties:
    """
    Game clock and singleton properties over a GameStore.

    Example:
        props = GameProperties(InMemoryStore())
        props.current_year()          # seeds 'year' with the wall-clock year
        props.set("gameStarted", True)
        props.is_game_started()       # True
    """

    def __init__(self, store: GameStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock
        self._seeds: Dict[str, Callable[[], Any]] = {
            PROP_YEAR: lambda: self.clock().year,
            PROP_GAME_STARTED: lambda: False,
            PROP_STARTED_DATE: lambda: None,
            PROP_YEAR_FINALIZED: lambda: False,
            PROP_LAST_DAY_OF_YEAR: lambda: last_day_of_year(self.current_year()),
            PROP_MONTH_FINALIZED: lambda: False,
            PROP_END_OF_MONTH: lambda: False,
            PROP_LAST_DAY_OF_MONTH: lambda: last_day_of_month(self.clock()).isoformat(),
            PROP_PRIZE_POOL: lambda: ZERO,
            PROP_API_LIMIT_EXCEEDED: lambda: False,
            PROP_API_LIMIT_RESET_AT: lambda: None,
            PROP_HEARTBEAT_DATE: lambda: None,
        }

    # ========================================================================
    # KEY/VALUE ACCESS
    # ========================================================================

    def get(self, key: str, default: Any = MISSING) -> Any:
        """
        Read a property, seeding it when absent.

        Args:
            key: Property key
            default: Seed value for a missing key. When omitted, the built-in
                     default for known keys is used (None for unknown keys).

        Returns:
            The stored (or freshly seeded) value
        """
        value = self.store.get_property(key)
        if value is not MISSING:
            return value

        if default is MISSING:
            seed = self._seeds.get(key)
            default = seed() if seed else None

        def _seed(current):
            return default if current is MISSING else current

        value = self.store.update_property(key, _seed)
        logger.info("[PROPERTIES] :: %s not set, initialized to %r", key, value)
        return value

    def set(self, key: str, value: Any) -> None:
        self.store.set_property(key, value)

    def snapshot(self) -> Dict[str, Any]:
        """All stored properties as a plain dict."""
        return self.store.all_properties()

    # ========================================================================
    # DERIVED HELPERS
    # ========================================================================

    def current_year(self) -> int:
        return int(self.get(PROP_YEAR))

    def days_left_in_year(self, now: datetime | None = None) -> int:
        return days_left_in_year(self.current_year(), now or self.clock())

    def is_game_started(self) -> bool:
        return self.get(PROP_GAME_STARTED) is True

    def is_year_finalized(self) -> bool:
        return self.get(PROP_YEAR_FINALIZED) is True

    def touch_heartbeat(self, now: datetime | None = None) -> None:
        self.set(PROP_HEARTBEAT_DATE, (now or self.clock()).isoformat())

    # ------------------------------------------------------------------
    # prize pool
    # ------------------------------------------------------------------

    def prize_pool(self) -> Decimal:
        return to_decimal(self.get(PROP_PRIZE_POOL))

    def add_to_prize_pool(self, amount: Decimal) -> Decimal:
        """Atomically increase the prize pool. Returns the new pool."""
        def _add(current):
            base = ZERO if current is MISSING or current is None else to_decimal(current)
            return base + amount
        return self.store.update_property(PROP_PRIZE_POOL, _add)

    def drain_prize_pool(self) -> Decimal:
        """
        Atomically empty the prize pool and return what it held.

        A missing or non-positive pool drains to zero and returns zero.
        """
        drained = []

        def _drain(current):
            value = ZERO if current is MISSING or current is None else to_decimal(current)
            drained.append(value if value > 0 else ZERO)
            return ZERO

        self.store.update_property(PROP_PRIZE_POOL, _drain)
        return drained[0]

    # ========================================================================
    # AUTOMATA PERSISTENCE
    # ========================================================================

    def year_record(self) -> YearRecord:
        return YearRecord(
            year=self.current_year(),
            game_started=self.is_game_started(),
            finalized=self.is_year_finalized(),
            last_day=str(self.get(PROP_LAST_DAY_OF_YEAR)),
        )

    def save_year_record(self, record: YearRecord) -> None:
        self.set(PROP_YEAR, record.year)
        self.set(PROP_GAME_STARTED, record.game_started)
        self.set(PROP_YEAR_FINALIZED, record.finalized)
        self.set(PROP_LAST_DAY_OF_YEAR, record.last_day)

    def month_record(self) -> MonthRecord:
        raw = self.get(PROP_LAST_DAY_OF_MONTH)
        # Older snapshots stored a full ISO timestamp
        last_day = date.fromisoformat(str(raw)[:10])
        return MonthRecord(
            last_day=last_day,
            end_of_month=self.get(PROP_END_OF_MONTH) is True,
            finalized=self.get(PROP_MONTH_FINALIZED) is True,
        )

    def save_month_record(self, record: MonthRecord) -> None:
        self.set(PROP_LAST_DAY_OF_MONTH, record.last_day.isoformat())
        self.set(PROP_END_OF_MONTH, record.end_of_month)
        self.set(PROP_MONTH_FINALIZED, record.finalized)

    # ========================================================================
    # NAMED TRANSITIONS
    # ========================================================================

    def start_game(self, now: datetime | None = None) -> YearRecord:
        """NOT_STARTED -> STARTED. Raises PreconditionFailed when not allowed."""
        now = now or self.clock()
        record = self.year_record().start(now)
        self.save_year_record(record)
        self.set(PROP_STARTED_DATE, now.isoformat())
        logger.info("[START] :: Game has started for %s", record.year)
        return record

    def finalize_year(self) -> YearRecord:
        """STARTED -> FINALIZED. Raises PreconditionFailed when not allowed."""
        record = self.year_record().finalize()
        self.save_year_record(record)
        return record

    def rollover_year(self, now: datetime | None = None) -> YearRecord:
        """FINALIZED -> NOT_STARTED in the next year. Raises PreconditionFailed when not allowed."""
        now = now or self.clock()
        previous = self.current_year()
        record = self.year_record().rollover(now)
        self.save_year_record(record)
        logger.info("[YEAR CHECK] :: Year rolled forward from %s to %s", previous, record.year)
        return record
