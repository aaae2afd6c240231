"""
test_ledger.py - Unit tests for Ledger operations

Tests:
- Account registration and renaming
- Buy / sell post-conditions and rejections
- Liquidation
- Portfolio valuation and leaderboard
- Credits and the balance floor
- Trade history filters
"""

import os

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from gameledger import (
    TradeKind, AccountNotFound, AlreadyExists, InsufficientFunds, InsufficientShares,
    InvalidRequest, RateLimited, SymbolNotFound, StoreUnavailable, JsonFileStore,
)


class TestRegistration:
    """Tests for account creation."""

    def test_create_account(self, ledger, clock):
        account = ledger.create_account("1", "alice")
        assert account.balance == Decimal("10000.00")
        assert account.portfolio == {}
        assert account.created_at == clock()
        assert ledger.account_count() == 1

    def test_duplicate_rejected(self, ledger):
        ledger.create_account("1", "alice")
        with pytest.raises(AlreadyExists):
            ledger.create_account("1", "alice2")

    def test_rename(self, ledger, clock):
        ledger.create_account("1", "alice")
        clock.advance(hours=1)
        renamed = ledger.rename_account("1", "alicia")
        assert renamed.display_name == "alicia"
        assert renamed.updated_at == clock()

    def test_missing_account(self, ledger):
        with pytest.raises(AccountNotFound):
            ledger.balance("nope")
        assert ledger.exists("nope") is False


class TestBuy:
    """Tests for market buys."""

    def test_buy_post_condition(self, ledger, players, store):
        """Balance drops by the rounded cost; shares and trade log grow."""
        result = ledger.buy("1", "X", 10)

        assert result.cost == Decimal("1000.00")
        assert result.balance == Decimal("9000.00")
        account = ledger.get_account("1")
        assert account.portfolio["X"].shares == 10
        assert account.portfolio["X"].avg_cost == Decimal("100.00")
        trades = store.find_trades(account_id="1")
        assert len(trades) == 1 and trades[0].kind is TradeKind.BUY

    def test_cost_rounds_up(self, ledger, players, prices):
        prices.update_price("X", "33.333")
        result = ledger.buy("1", "X", 3)
        assert result.cost == Decimal("100.00")
        assert ledger.get_account("1").portfolio["X"].avg_cost == Decimal("33.34")

    def test_average_cost_weighted(self, ledger, players, prices):
        ledger.buy("1", "X", 10)
        prices.update_price("X", 130)
        ledger.buy("1", "X", 5)
        holding = ledger.get_account("1").portfolio["X"]
        assert holding.shares == 15
        assert holding.avg_cost == Decimal("110.00")

    def test_symbol_normalized(self, ledger, players):
        ledger.buy("1", " x ", 1)
        assert "X" in ledger.get_account("1").portfolio

    def test_insufficient_funds_no_mutation(self, ledger, players, store):
        with pytest.raises(InsufficientFunds) as exc:
            ledger.buy("1", "X", 101)
        assert exc.value.cost == Decimal("10100.00")
        assert ledger.balance("1") == Decimal("10000.00")
        assert ledger.get_account("1").portfolio == {}
        assert store.find_trades() == []

    def test_can_spend_entire_balance(self, ledger, players):
        assert ledger.buy("1", "X", 100).balance == Decimal("0.00")

    @pytest.mark.parametrize("shares", [0, -3, 1.5, True])
    def test_invalid_share_count(self, ledger, players, shares):
        with pytest.raises(InvalidRequest):
            ledger.buy("1", "X", shares)

    def test_unknown_symbol(self, ledger, players, store):
        with pytest.raises(SymbolNotFound):
            ledger.buy("1", "NOPE", 1)
        assert store.find_trades() == []

    def test_rate_limited(self, ledger, players, prices):
        prices.rate_limited.add("X")
        with pytest.raises(RateLimited):
            ledger.buy("1", "X", 1)
        assert ledger.balance("1") == Decimal("10000.00")

    def test_unknown_account_checked_before_quote(self, ledger, prices):
        with pytest.raises(AccountNotFound):
            ledger.buy("nope", "X", 1)
        assert prices.calls == 0


class TestSell:
    """Tests for market sells."""

    def test_buy_then_sell_scenario(self, ledger, players, prices):
        """10000 -> buy 10 @ 100 -> 9000 -> sell 10 @ 110 -> 10100."""
        assert ledger.buy("1", "X", 10).balance == Decimal("9000.00")
        prices.update_price("X", 110)
        result = ledger.sell("1", "X", 10)

        assert result.proceeds == Decimal("1100.00")
        assert result.shares_left == 0
        assert result.balance == Decimal("10100.00")
        assert "X" not in ledger.get_account("1").portfolio

    def test_partial_sell_keeps_avg_cost(self, ledger, players, prices):
        ledger.buy("1", "X", 10)
        prices.update_price("X", 90)
        result = ledger.sell("1", "X", 4)

        assert result.shares_left == 6
        holding = ledger.get_account("1").portfolio["X"]
        assert holding.shares == 6
        assert holding.avg_cost == Decimal("100.00")

    def test_sell_without_holding(self, ledger, players, store):
        """Selling an unheld symbol fails and changes nothing."""
        with pytest.raises(InsufficientShares) as exc:
            ledger.sell("1", "X", 1)
        assert exc.value.available == 0
        assert ledger.balance("1") == Decimal("10000.00")
        assert store.find_trades() == []

    def test_sell_more_than_held(self, ledger, players):
        ledger.buy("1", "X", 2)
        with pytest.raises(InsufficientShares) as exc:
            ledger.sell("1", "X", 3)
        assert (exc.value.requested, exc.value.available) == (3, 2)
        assert ledger.get_account("1").portfolio["X"].shares == 2

    def test_sell_records_trade(self, ledger, players, store):
        ledger.buy("1", "X", 2)
        ledger.sell("1", "X", 1)
        assert [t.kind for t in store.find_trades()] == [TradeKind.BUY, TradeKind.SELL]


class TestLiquidation:
    """Tests for liquidate_all."""

    def test_sells_everything(self, ledger, players):
        ledger.buy("1", "X", 10)
        ledger.buy("1", "Y", 5)
        result = ledger.liquidate_all("1")

        assert [s.symbol for s in result.sold] == ["X", "Y"]
        assert result.proceeds == Decimal("2000.00")
        assert result.failed == {}
        assert ledger.get_account("1").portfolio == {}
        assert ledger.balance("1") == Decimal("10000.00")

    def test_failures_skipped(self, ledger, players, prices):
        """A symbol that cannot be priced stays held; the rest are sold."""
        ledger.buy("1", "X", 1)
        ledger.buy("1", "Y", 1)
        prices.remove("X")
        result = ledger.liquidate_all("1")

        assert [s.symbol for s in result.sold] == ["Y"]
        assert set(result.failed) == {"X"}
        assert set(ledger.get_account("1").portfolio) == {"X"}


class TestStoreFailures:
    """An order whose writes cannot be persisted leaves no partial charge."""

    @pytest.fixture
    def store(self, tmp_path):
        return JsonFileStore(tmp_path / "game.json")

    def test_buy_not_applied_when_disk_fails(self, ledger, players, monkeypatch):
        ledger.buy("1", "X", 1)

        def fail(src, dst):
            raise OSError("disk full")
        monkeypatch.setattr(os, "replace", fail)

        with pytest.raises(StoreUnavailable):
            ledger.buy("1", "X", 10)

        account = ledger.get_account("1")
        assert account.balance == Decimal("9900.00")
        assert account.shares_of("X") == 1
        assert len(ledger.store.find_trades(account_id="1")) == 1

    def test_account_restored_when_trade_log_fails(self, ledger, store, players, monkeypatch):
        """Balance and holding go back when the trade cannot be logged."""
        ledger.buy("1", "X", 2)

        def fail(trade):
            raise StoreUnavailable("trade log unavailable")
        monkeypatch.setattr(store, "append_trade", fail)

        with pytest.raises(StoreUnavailable):
            ledger.sell("1", "X", 2)

        account = ledger.get_account("1")
        assert account.balance == Decimal("9800.00")
        assert account.shares_of("X") == 2


class TestValuation:
    """Tests for value_portfolio and leaderboard."""

    def test_value_portfolio(self, ledger, players, prices):
        ledger.buy("1", "X", 10)
        prices.update_price("X", 110)
        valuation = ledger.value_portfolio("1")

        position = valuation.positions[0]
        assert position.market_value == Decimal("1100.00")
        assert position.unrealized_gain == Decimal("100.00")
        assert position.pct_change == Decimal("10.00")
        assert valuation.total_value == Decimal("1100.00")
        assert valuation.cost_basis == Decimal("1000.00")

    def test_unpriced_symbol_values_zero(self, ledger, players, prices):
        ledger.buy("1", "X", 10)
        ledger.buy("1", "Y", 1)
        prices.remove("X")
        valuation = ledger.value_portfolio("1")

        assert valuation.unpriced == ["X"]
        assert valuation.total_value == Decimal("200.00")

    def test_leaderboard_ranks_by_total_value(self, ledger, players, prices):
        ledger.buy("2", "X", 10)
        prices.update_price("X", 150)
        board = ledger.leaderboard()

        assert [s.account_id for s in board] == ["2", "1", "3"]
        assert board[0].total_value == Decimal("10500.00")
        assert board[0].gains == Decimal("500.00")
        assert board[0].rank == 1
        assert board[1].gains == Decimal("0")

    def test_rank_by_balance_ties_by_id(self, ledger, players):
        ledger.credit("3", Decimal("1"), "test")
        assert [a.account_id for a in ledger.rank_by_balance()] == ["3", "1", "2"]


class TestSettlementPrimitives:
    """Tests for credit and top_up."""

    def test_credit(self, ledger, players):
        assert ledger.credit("1", Decimal("250"), "award") == Decimal("10250.00")

    def test_credit_rejects_non_positive(self, ledger, players):
        with pytest.raises(ValueError):
            ledger.credit("1", Decimal("0"), "nothing")

    def test_top_up(self, ledger, players):
        ledger.buy("1", "X", 30)
        ledger.credit("2", Decimal("5"), "bonus")
        added = ledger.top_up()

        assert added == {"1": Decimal("3000.00")}
        assert ledger.balance("1") == Decimal("10000.00")
        assert ledger.balance("2") == Decimal("10005.00")


class TestTradeHistory:
    """Tests for trade_history filters."""

    @pytest.fixture
    def history(self, ledger, players, clock):
        start = clock()
        for days_ago, symbol, shares in ((40, "Y", 1), (5, "X", 3), (0, "Z", 2)):
            clock.set(start - timedelta(days=days_ago))
            ledger.buy("1", symbol, shares)
        clock.set(start)
        return ledger

    def test_default_week(self, history):
        assert [t.symbol for t in history.trade_history("1")] == ["X", "Z"]

    def test_day(self, history):
        assert [t.symbol for t in history.trade_history("1", timeframe="D")] == ["Z"]

    def test_all_sorted_desc(self, history):
        trades = history.trade_history("1", timeframe="ALL", sort="shares", order="desc")
        assert [t.shares for t in trades] == [3, 2, 1]

    def test_sort_by_symbol(self, history):
        trades = history.trade_history("1", timeframe="Y", sort="symbol")
        assert [t.symbol for t in trades] == ["X", "Y", "Z"]

    def test_month_boundary(self, history):
        assert [t.symbol for t in history.trade_history("1", timeframe="M")] == ["X", "Z"]

    @pytest.mark.parametrize("kwargs", [
        {"timeframe": "Q"}, {"sort": "colour"}, {"order": "sideways"},
    ])
    def test_invalid_filters(self, history, kwargs):
        with pytest.raises(InvalidRequest):
            history.trade_history("1", **kwargs)
