"""
store.py - Persistent store for the game ledger

Four logical tables back the game:
    accounts      one document per player (balance + portfolio)
    transactions  append-only trade log
    properties    singleton key/value game state
    annals        one results document per game year

Two derived read collections ("views") are rebuilt on demand, normally once at
start-up: allUserTransactions (trades joined with display names) and
userBalances (id, name, balance per account).

Classes:
- GameStore: Protocol describing what the ledger, clock and settlement code need
- InMemoryStore: Thread-safe in-process implementation
- JsonFileStore: InMemoryStore that persists every write to a JSON document

Every single-document operation is atomic with respect to the others.
Cross-document consistency (e.g. account update + trade append) is the
caller's responsibility.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable
import copy
import json
import logging
import os
import tempfile
import threading

from .core import (
    Account, Holding, Trade, TradeKind, AnnalsEntry,
    AccountNotFound, AlreadyExists, StoreUnavailable,
)

logger = logging.getLogger(__name__)


class _Missing:
    """Sentinel for absent property keys (None is a legal property value)."""

    def __repr__(self) -> str:
        return "MISSING"

    def __copy__(self) -> '_Missing':
        return self

    def __deepcopy__(self, memo) -> '_Missing':
        return self

    def __reduce__(self) -> str:
        return "MISSING"


MISSING = _Missing()

VIEW_ALL_USER_TRANSACTIONS = "allUserTransactions"
VIEW_USER_BALANCES = "userBalances"


# ============================================================================
# PROTOCOL
# ============================================================================

@runtime_checkable
class GameStore(Protocol):
    """Storage contract consumed by the Ledger, GameProperties and AnnalsStore."""

    # accounts
    def get_account(self, account_id: str) -> Optional[Account]: ...
    def insert_account(self, account: Account) -> None: ...
    def update_account(self, account_id: str, mutate: Callable[[Account], Account]) -> Account: ...
    def list_accounts(self) -> List[Account]: ...
    def count_accounts(self) -> int: ...

    # transactions
    def append_trade(self, trade: Trade) -> None: ...
    def find_trades(
        self,
        account_id: Optional[str] = None,
        since: Optional[datetime] = None,
        kind: Optional[TradeKind] = None,
    ) -> List[Trade]: ...

    # properties
    def get_property(self, key: str) -> Any: ...
    def set_property(self, key: str, value: Any) -> None: ...
    def update_property(self, key: str, mutate: Callable[[Any], Any]) -> Any: ...
    def all_properties(self) -> Dict[str, Any]: ...

    # annals
    def get_annals(self, year: int) -> Optional[AnnalsEntry]: ...
    def upsert_annals(self, entry: AnnalsEntry) -> None: ...
    def list_annals(self) -> List[AnnalsEntry]: ...

    # views
    def rebuild_views(self) -> None: ...
    def view(self, name: str) -> List[Dict[str, Any]]: ...


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class InMemoryStore:
    """
    Thread-safe in-process store.

    Returned records are immutable (frozen dataclasses) so callers can never
    mutate stored state by accident; property values are deep-copied on the
    way in and out.

    A write that fails to persist is undone in memory before StoreUnavailable
    propagates, so memory never runs ahead of the durable copy.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._accounts: Dict[str, Account] = {}
        self._trades: List[Trade] = []
        self._properties: Dict[str, Any] = {}
        self._annals: Dict[int, AnnalsEntry] = {}
        self._views: Dict[str, List[Dict[str, Any]]] = {}

    # ------------------------------------------------------------------
    # accounts
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(account_id)

    def insert_account(self, account: Account) -> None:
        with self._lock:
            if account.account_id in self._accounts:
                raise AlreadyExists(f"Account {account.account_id} already exists")
            self._accounts[account.account_id] = account
            self._persist_or_restore(self._accounts, account.account_id, MISSING)

    def update_account(self, account_id: str, mutate: Callable[[Account], Account]) -> Account:
        """
        Atomically read-modify-write one account.

        The mutate callback may raise to abort; nothing is written in that case.
        """
        with self._lock:
            current = self._accounts.get(account_id)
            if current is None:
                raise AccountNotFound(f"Account {account_id} not found")
            updated = mutate(current)
            if updated.account_id != account_id:
                raise ValueError("update_account cannot change the account id")
            self._accounts[account_id] = updated
            self._persist_or_restore(self._accounts, account_id, current)
            return updated

    def list_accounts(self) -> List[Account]:
        with self._lock:
            return [self._accounts[k] for k in sorted(self._accounts)]

    def count_accounts(self) -> int:
        with self._lock:
            return len(self._accounts)

    # ------------------------------------------------------------------
    # transactions
    # ------------------------------------------------------------------

    def append_trade(self, trade: Trade) -> None:
        with self._lock:
            self._trades.append(trade)
            try:
                self._persist()
            except StoreUnavailable:
                self._trades.pop()
                raise

    def find_trades(
        self,
        account_id: Optional[str] = None,
        since: Optional[datetime] = None,
        kind: Optional[TradeKind] = None,
    ) -> List[Trade]:
        """Return matching trades in timestamp order (stable for equal timestamps)."""
        with self._lock:
            found = [
                t for t in self._trades
                if (account_id is None or t.account_id == account_id)
                and (since is None or t.timestamp >= since)
                and (kind is None or t.kind == kind)
            ]
        return sorted(found, key=lambda t: t.timestamp)

    # ------------------------------------------------------------------
    # properties
    # ------------------------------------------------------------------

    def get_property(self, key: str) -> Any:
        """Return the stored value, or MISSING when the key was never set."""
        with self._lock:
            if key not in self._properties:
                return MISSING
            return copy.deepcopy(self._properties[key])

    def set_property(self, key: str, value: Any) -> None:
        with self._lock:
            previous = self._properties.get(key, MISSING)
            self._properties[key] = copy.deepcopy(value)
            self._persist_or_restore(self._properties, key, previous)

    def update_property(self, key: str, mutate: Callable[[Any], Any]) -> Any:
        """Atomically replace a property with mutate(current); current may be MISSING."""
        with self._lock:
            current = self._properties.get(key, MISSING)
            updated = mutate(current if current is MISSING else copy.deepcopy(current))
            self._properties[key] = copy.deepcopy(updated)
            self._persist_or_restore(self._properties, key, current)
            return updated

    def all_properties(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._properties)

    # ------------------------------------------------------------------
    # annals
    # ------------------------------------------------------------------

    def get_annals(self, year: int) -> Optional[AnnalsEntry]:
        with self._lock:
            return self._annals.get(year)

    def upsert_annals(self, entry: AnnalsEntry) -> None:
        with self._lock:
            previous = self._annals.get(entry.year, MISSING)
            self._annals[entry.year] = entry
            self._persist_or_restore(self._annals, entry.year, previous)

    def list_annals(self) -> List[AnnalsEntry]:
        with self._lock:
            return [self._annals[y] for y in sorted(self._annals)]

    # ------------------------------------------------------------------
    # views
    # ------------------------------------------------------------------

    def rebuild_views(self) -> None:
        """Recompute the derived read collections from the base tables."""
        with self._lock:
            names = {a.account_id: a.display_name for a in self._accounts.values()}
            self._views[VIEW_ALL_USER_TRANSACTIONS] = [
                {
                    "accountId": t.account_id,
                    "displayName": names[t.account_id],
                    "symbol": t.symbol,
                    "shares": t.shares,
                    "price": t.price,
                    "kind": t.kind.value,
                    "timestamp": t.timestamp,
                }
                for t in sorted(self._trades, key=lambda t: t.timestamp)
                if t.account_id in names
            ]
            self._views[VIEW_USER_BALANCES] = [
                {"accountId": a.account_id, "displayName": a.display_name, "balance": a.balance}
                for a in (self._accounts[k] for k in sorted(self._accounts))
            ]
        logger.info("[VIEW] :: Rebuilt %d views", len(self._views))

    def view(self, name: str) -> List[Dict[str, Any]]:
        with self._lock:
            if name not in self._views:
                raise KeyError(f"Unknown view {name!r}; call rebuild_views() first")
            return copy.deepcopy(self._views[name])

    def _persist(self) -> None:
        """Hook for durable subclasses. Called with the lock held after every write."""

    def _persist_or_restore(self, table: Dict[Any, Any], key: Any, previous: Any) -> None:
        """Persist, putting table[key] back to previous (MISSING = absent) on failure."""
        try:
            self._persist()
        except StoreUnavailable:
            if previous is MISSING:
                table.pop(key, None)
            else:
                table[key] = previous
            raise

    def __repr__(self) -> str:
        return (f"{type(self).__name__}({len(self._accounts)} accounts, "
                f"{len(self._trades)} trades, {len(self._properties)} properties)")


# ============================================================================
# JSON FILE STORE
# ============================================================================

def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return {"__decimal__": str(value)}
    if isinstance(value, datetime):
        return {"__datetime__": value.isoformat()}
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {"__decimal__"}:
            return Decimal(value["__decimal__"])
        if set(value) == {"__datetime__"}:
            return datetime.fromisoformat(value["__datetime__"])
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def _account_to_doc(account: Account) -> Dict[str, Any]:
    return {
        "accountId": account.account_id,
        "displayName": account.display_name,
        "balance": account.balance,
        "portfolio": {
            sym: {"shares": h.shares, "avgCost": h.avg_cost}
            for sym, h in account.portfolio.items()
        },
        "createdAt": account.created_at,
        "updatedAt": account.updated_at,
    }


def _account_from_doc(doc: Dict[str, Any]) -> Account:
    return Account(
        account_id=doc["accountId"],
        display_name=doc["displayName"],
        balance=doc["balance"],
        portfolio={
            sym: Holding(shares=h["shares"], avg_cost=h["avgCost"])
            for sym, h in doc.get("portfolio", {}).items()
        },
        created_at=doc.get("createdAt"),
        updated_at=doc.get("updatedAt"),
    )


def _trade_to_doc(trade: Trade) -> Dict[str, Any]:
    return {
        "accountId": trade.account_id,
        "symbol": trade.symbol,
        "shares": trade.shares,
        "price": trade.price,
        "kind": trade.kind.value,
        "timestamp": trade.timestamp,
    }


def _trade_from_doc(doc: Dict[str, Any]) -> Trade:
    return Trade(
        account_id=doc["accountId"],
        symbol=doc["symbol"],
        shares=doc["shares"],
        price=doc["price"],
        kind=TradeKind(doc["kind"]),
        timestamp=doc["timestamp"],
    )


class JsonFileStore(InMemoryStore):
    """
    InMemoryStore that writes a JSON snapshot after every mutation.

    Writes go to a temporary file in the same directory followed by
    os.replace(), so a crash mid-write leaves the previous snapshot intact.
    Any I/O or decode failure surfaces as StoreUnavailable.
    """

    def __init__(self, path: str | os.PathLike):
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.info("[STORE] :: No snapshot at %s, starting empty", self.path)
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreUnavailable(f"Cannot read store snapshot {self.path}: {e}") from e

        doc = _decode(raw)
        for acct in doc.get("accounts", []):
            account = _account_from_doc(acct)
            self._accounts[account.account_id] = account
        self._trades = [_trade_from_doc(t) for t in doc.get("transactions", [])]
        self._properties = dict(doc.get("properties", {}))
        for entry in doc.get("annals", []):
            self._annals[int(entry["year"])] = AnnalsEntry(
                year=int(entry["year"]), results=tuple(entry.get("results", [])),
            )
        logger.info("[STORE] :: Loaded %r from %s", self, self.path)

    def _persist(self) -> None:
        doc = {
            "accounts": [_account_to_doc(a) for a in self._accounts.values()],
            "transactions": [_trade_to_doc(t) for t in self._trades],
            "properties": self._properties,
            "annals": [
                {"year": e.year, "results": list(e.results)}
                for e in self._annals.values()
            ],
        }
        tmp = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(_encode(doc), fh, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except (OSError, TypeError) as e:
            if tmp is not None:
                Path(tmp).unlink(missing_ok=True)
            raise StoreUnavailable(f"Cannot write store snapshot {self.path}: {e}") from e
