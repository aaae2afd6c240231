"""
test_year_settlement.py - Functional tests for year-end finalization

Tests:
- Guard checks and the no-mutation guarantee
- Liquidation, award, annals, flags and balance floor
- Ties at the top balance
- Idempotency
"""

import pytest
from decimal import Decimal

from gameledger import PreconditionFailed


class TestGuards:
    """finalize_year_checks and its effect."""

    def test_all_checks_fail_on_empty_game(self, year):
        failed = year.finalize_year_checks()
        assert "Game has not started yet." in failed
        assert "No players found in the game." in failed

    def test_passes_when_ready(self, year, players, started_game):
        assert year.finalize_year_checks() == []

    def test_stale_last_day_of_year_blocks(self, year, players, started_game, ledger):
        """A lastDayOfYear that does not match the game year aborts with no mutation."""
        ledger.buy("1", "X", 10)
        started_game.set("lastDayOfYear", "2024-12-31")

        with pytest.raises(PreconditionFailed) as exc:
            year.finalize_year()

        assert exc.value.failed_checks == ["Last day of the year is not set to 2025-12-31."]
        assert ledger.get_account("1").portfolio["X"].shares == 10
        assert ledger.balance("1") == Decimal("9000.00")
        assert started_game.is_year_finalized() is False
        assert year.annals.years() == []


class TestFinalize:
    """The full year-end sequence."""

    def test_finalize_year(self, year, players, started_game, ledger, prices, annals):
        ledger.buy("1", "X", 10)
        ledger.buy("2", "Y", 10)
        prices.update_prices({"X": 150, "Y": 100})

        result = year.finalize_year()

        assert result.year == 2025
        assert result.winners == ["1"]
        assert ledger.get_account("1").portfolio == {}
        assert ledger.balance("1") == Decimal("10500.00") + Decimal("5000.00")
        # Account 2 lost 1000 on Y and is topped back up
        assert result.top_ups == {"2": Decimal("1000.00")}
        assert ledger.balance("2") == Decimal("10000.00")

        rows = annals.get_results(2025)
        assert [r["accountId"] for r in rows] == ["1", "3", "2"]
        assert rows[0] == {
            "rank": 1, "accountId": "1", "displayName": "alice",
            "balance": Decimal("15500.00"), "bonus": Decimal("5000.00"),
        }
        assert rows[2]["balance"] == Decimal("9000.00")

        assert started_game.is_year_finalized() is True
        assert started_game.is_game_started() is False
        assert started_game.get("lastDayOfYear") == "2025-12-31"

    def test_tied_top_balances_all_win(self, year, players, started_game, ledger):
        """Nobody traded: every account is tied at the top and gets the bonus."""
        result = year.finalize_year()
        assert result.winners == ["1", "2", "3"]
        assert all(a.balance == Decimal("15000.00") for a in ledger.list_accounts())

    def test_liquidation_failure_is_skipped(self, year, players, started_game, ledger, prices):
        ledger.buy("1", "X", 1)
        prices.remove("X")
        result = year.finalize_year()

        assert result.liquidations[0].failed.keys() == {"X"}
        assert ledger.get_account("1").portfolio["X"].shares == 1

    def test_idempotent(self, year, players, started_game, ledger):
        """A second run is rejected and changes nothing."""
        year.finalize_year()
        balances = {a.account_id: a.balance for a in ledger.list_accounts()}

        with pytest.raises(PreconditionFailed) as exc:
            year.finalize_year()

        assert "Current year is already finalized." in exc.value.failed_checks
        assert {a.account_id: a.balance for a in ledger.list_accounts()} == balances
