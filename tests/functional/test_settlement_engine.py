"""
test_settlement_engine.py - Functional tests for the settlement heartbeat

Tests:
- First tick starts the game
- Month end settles once, then the marker advances
- Late ticks settle the period they missed
- Year end: finalize, rollover, restart
- Failure isolation, overlap skipping and the timer lifecycle
"""

import pytest
from datetime import date, datetime
from decimal import Decimal

from gameledger import SingleWinner, MonthPhase, YearPhase


class TestFirstTick:

    def test_starts_game_and_beats(self, engine, properties, clock):
        report = engine.step()

        assert report.game_started is True
        assert report.month is None
        assert report.errors == []
        assert properties.is_game_started()
        assert properties.get("heartbeatDate") == clock().isoformat()

    def test_second_tick_is_quiet(self, engine, clock):
        engine.step()
        report = engine.step(clock.advance(hours=1))
        assert (report.game_started, report.month, report.year) == (False, None, None)


class TestMonthBoundary:

    def test_settles_once_then_advances(self, engine, ledger, players, prices, properties, clock):
        engine.step()
        ledger.buy("1", "X", 1)
        prices.update_price("X", 110)

        last_day = engine.step(datetime(2025, 6, 30, 1))
        later_same_day = engine.step(datetime(2025, 6, 30, 2))
        next_month = engine.step(datetime(2025, 7, 1, 0, 30))

        assert isinstance(last_day.month.outcome, SingleWinner)
        assert later_same_day.month is None
        assert next_month.month is None
        assert next_month.month_advanced is True
        assert ledger.balance("1") == Decimal("9900.00") + Decimal("250.00")
        record = properties.month_record()
        assert record.last_day == date(2025, 7, 31)
        assert record.phase is MonthPhase.IN_PROGRESS

    def test_late_tick_settles_missed_month(self, engine, ledger, players, prices, properties):
        """Process down over the month end: the next tick settles June, then moves to July."""
        engine.step()
        ledger.buy("2", "Y", 1)
        prices.update_price("Y", 220)

        report = engine.step(datetime(2025, 7, 2, 8))

        assert report.month.month_start == datetime(2025, 6, 1)
        assert report.month.awards == {"2": Decimal("250.00")}
        assert report.month_advanced is True
        assert properties.month_record().last_day == date(2025, 7, 31)
        assert engine.step(datetime(2025, 7, 2, 9)).month is None

    def test_failed_ceremony_keeps_month(self, engine, ledger, players, prices, properties, clock):
        """A postponed ceremony leaves the month marker in place for the next tick."""
        engine.step()
        prices.rate_limited.add("X")
        ledger.oracle.quote("X")

        report = engine.step(datetime(2025, 7, 1, 1))

        assert report.month is None
        assert report.month_advanced is False
        assert report.errors and report.errors[0].startswith("month:")
        assert properties.month_record().last_day == date(2025, 6, 30)

        # Cooldown expires once the wall clock moves past the reset time
        retry = engine.step(clock.set(datetime(2025, 7, 2, 2)))
        assert retry.month is not None
        assert retry.month_advanced is True


class TestYearBoundary:

    def test_finalize_rollover_restart(self, engine, ledger, players, prices, properties, annals):
        engine.step()
        ledger.buy("1", "X", 10)
        prices.update_price("X", 110)

        dec_1, dec_31, jan_1 = engine.run([
            datetime(2025, 12, 1, 0, 30),
            datetime(2025, 12, 31, 1),
            datetime(2026, 1, 1, 0, 30),
        ])

        assert dec_1.year is None
        # December's ceremony runs before the year-end liquidation
        assert dec_31.month is not None
        assert dec_31.year.winners == ["1"]
        assert ledger.balance("1") == Decimal("9000.00") + 2 * Decimal("250.00") + Decimal("1100.00") + Decimal("5000.00")
        assert annals.get_results(2025)[0]["accountId"] == "1"

        assert jan_1.year_rolled_over is True
        assert jan_1.game_started is True
        assert properties.current_year() == 2026
        assert properties.year_record().phase is YearPhase.STARTED
        assert properties.get("lastDayOfYear") == "2026-12-31"

    def test_finalized_year_waits_for_rollover(self, engine, players, properties):
        engine.step()
        engine.step(datetime(2025, 12, 31, 1))
        report = engine.step(datetime(2025, 12, 31, 2))

        assert report.year is None
        assert report.year_rolled_over is False
        assert report.game_started is False
        assert properties.year_record().phase is YearPhase.FINALIZED

    def test_guard_failure_is_logged_not_raised(self, engine, players, properties, caplog):
        engine.step()
        properties.set("lastDayOfYear", "2024-12-31")

        report = engine.step(datetime(2025, 6, 16))

        assert report.year is None
        assert report.errors[0].startswith("year:")
        assert "Year-end settlement failed" in caplog.text
        assert properties.get("heartbeatDate") == datetime(2025, 6, 16).isoformat()


class TestTickLifecycle:

    def test_overlapping_tick_skipped(self, engine, properties):
        engine._tick_lock.acquire()
        try:
            report = engine.step()
        finally:
            engine._tick_lock.release()

        assert report.skipped is True
        assert properties.is_game_started() is False

    def test_run_replays_in_order(self, engine, clock):
        reports = engine.run([clock(), clock.advance(hours=1)])
        assert [r.game_started for r in reports] == [True, False]

    def test_start_and_stop(self, engine, properties):
        engine.start()
        try:
            assert engine.running
            assert properties.is_game_started()
        finally:
            engine.stop(timeout=5)
        assert not engine.running
