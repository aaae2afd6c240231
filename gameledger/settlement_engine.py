"""
settlement_engine.py - Settlement Engine

Drives the game calendar from a periodic heartbeat.

Execution order each step():
1. Month: run the monthly ceremony if the stored month reached its last day
   and was not settled, then advance the month marker once the wall clock
   has moved into a new month
2. Year: finalize the year once its last day is reached, roll over to the
   new calendar year, then start the new game year
3. Heartbeat: record the tick time

Boundaries are detected by comparing stored markers with the wall clock,
so a tick that arrives late (process down over midnight) still settles the
period it missed. Settlement runs before the marker moves, so the settled
period is always the one that ended.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional
import logging
import threading

from .core import GameError
from .clock import MonthPhase
from .month_settlement import MonthResult, MonthSettlement
from .properties import GameProperties
from .year_settlement import YearResult, YearSettlement

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickReport:
    """What one heartbeat did."""
    now: datetime
    skipped: bool = False
    month: Optional[MonthResult] = None
    month_advanced: bool = False
    year: Optional[YearResult] = None
    year_rolled_over: bool = False
    game_started: bool = False
    errors: List[str] = field(default_factory=list)


class SettlementEngine:
    """
    Serialized heartbeat over the month and year settlements.

    Ticks never overlap: a tick that arrives while another is running is
    skipped (reported with skipped=True) rather than queued.

    Example:
        engine = SettlementEngine(props, month, year, interval=3600)
        engine.start()      # immediate tick, then one per interval
        ...
        engine.stop()
    """

    def __init__(
        self,
        properties: GameProperties,
        month: MonthSettlement,
        year: YearSettlement,
        interval: float = 3600,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            properties: Game clock and properties
            month: Monthly ceremony
            year: Year-end settlement
            interval: Seconds between ticks when running on the timer thread
            clock: Source of wall-clock time
        """
        self.properties = properties
        self.month = month
        self.year = year
        self.interval = interval
        self.clock = clock
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ========================================================================
    # TICK
    # ========================================================================

    def step(self, now: Optional[datetime] = None) -> TickReport:
        """Run one heartbeat at now (default: the wall clock)."""
        now = now or self.clock()
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("[HEARTBEAT] :: Previous tick still running, skipping %s", now.isoformat())
            return TickReport(now=now, skipped=True)

        try:
            report = TickReport(now=now)
            logger.info("[HEARTBEAT] :: Tick at %s", now.isoformat())
            self._month_phase(now, report)
            self._year_phase(now, report)
            self.properties.touch_heartbeat(now)
            return report
        finally:
            self._tick_lock.release()

    def _month_phase(self, now: datetime, report: TickReport) -> None:
        try:
            report.month = self.month.run_ceremony(now)
        except GameError as e:
            logger.error("[CEREMONY] :: Monthly ceremony failed: %s", e)
            report.errors.append(f"month: {e}")

        record = self.properties.month_record()
        if record.is_stale(now) and record.phase is MonthPhase.FINALIZED:
            advanced = record.advance(now)
            self.properties.save_month_record(advanced)
            report.month_advanced = True
            logger.info("[MONTH CHECK] :: New month, last day is %s", advanced.last_day.isoformat())

    def _year_phase(self, now: datetime, report: TickReport) -> None:
        if self.properties.year_record().settlement_due(now):
            try:
                report.year = self.year.finalize_year()
            except GameError as e:
                logger.error("[FINALIZE] :: Year-end settlement failed: %s", e)
                report.errors.append(f"year: {e}")

        if not self.properties.year_record().rollover_blockers(now):
            self.properties.rollover_year(now)
            report.year_rolled_over = True

        if not self.properties.year_record().start_blockers(now):
            self.properties.start_game(now)
            report.game_started = True

    def run(self, timestamps: List[datetime]) -> List[TickReport]:
        """Replay heartbeats at the given instants, in order."""
        return [self.step(ts) for ts in timestamps]

    # ========================================================================
    # TIMER LIFECYCLE
    # ========================================================================

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Run an immediate tick, then tick every interval on a daemon thread."""
        if self.running:
            return
        self._stop_event.clear()
        self.step()
        self._thread = threading.Thread(target=self._loop, name="settlement-engine", daemon=True)
        self._thread.start()
        logger.info("[HEARTBEAT] :: Settlement engine started, interval %ss", self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("[HEARTBEAT] :: Settlement engine stopped")

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.step()
            except Exception:
                logger.exception("[HEARTBEAT] :: Tick failed")
