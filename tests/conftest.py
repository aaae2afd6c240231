"""
conftest.py - Shared pytest fixtures for gameledger tests

Provides common fixtures used across unit, functional and conformance tests:
- A controllable clock shared by every component
- In-memory store, properties and a static quote provider
- Ledger, settlements and engine wired together
- A GameService over the same components
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from gameledger import (
    InMemoryStore, GameProperties, StaticQuoteProvider, PriceOracle,
    Ledger, AnnalsStore, MonthSettlement, YearSettlement, SettlementEngine,
    GameService,
)


# =============================================================================
# HELPERS
# =============================================================================

class FakeClock:
    """Callable clock whose time only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


STARTING_BALANCE = Decimal("10000")
MONTHLY_AWARD = Decimal("250")
END_OF_YEAR_AWARD = Decimal("5000")


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    """Mid-month, mid-year, mid-morning."""
    return FakeClock(datetime(2025, 6, 15, 10, 0))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def prices():
    return StaticQuoteProvider({"X": Decimal("100"), "Y": Decimal("200"), "Z": Decimal("50")})


@pytest.fixture
def properties(store, clock):
    return GameProperties(store, clock=clock)


@pytest.fixture
def oracle(prices, properties, clock):
    return PriceOracle(prices, properties, cooldown=timedelta(days=1), clock=clock)


@pytest.fixture
def ledger(store, oracle, clock):
    return Ledger(store, oracle, starting_balance=STARTING_BALANCE, clock=clock)


@pytest.fixture
def annals(store):
    return AnnalsStore(store)


@pytest.fixture
def month(ledger, properties, clock):
    return MonthSettlement(ledger, properties, monthly_award=MONTHLY_AWARD, clock=clock)


@pytest.fixture
def year(ledger, properties, annals):
    return YearSettlement(ledger, properties, annals, end_of_year_award=END_OF_YEAR_AWARD)


@pytest.fixture
def engine(properties, month, year, clock):
    return SettlementEngine(properties, month, year, interval=3600, clock=clock)


@pytest.fixture
def service(ledger, properties, month, year, annals, engine, clock):
    return GameService(ledger, properties, month, year, annals, engine=engine, clock=clock)


@pytest.fixture
def players(ledger):
    """Three registered players with the starting balance."""
    for account_id, name in (("1", "alice"), ("2", "bob"), ("3", "carol")):
        ledger.create_account(account_id, name)
    return ["1", "2", "3"]


@pytest.fixture
def started_game(properties, clock):
    """Game year 2025 started."""
    properties.start_game(clock())
    return properties
