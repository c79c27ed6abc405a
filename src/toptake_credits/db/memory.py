from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple

from .base import BaseDBManager
from ..models.credits import CreditHistoryEntry, CreditType
from ..models.ledger import LedgerEntry
from ..models.purchase import CreditPurchase, PurchaseStatus


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Units of work are serialized by a single asyncio lock and rolled back
    from a snapshot on error, which is enough to observe the same atomicity
    and race behaviour as the Mongo backend.
    """

    def __init__(self) -> None:
        self._balances: Dict[Tuple[str, CreditType], int] = {}
        self._history: List[CreditHistoryEntry] = []
        self._history_keys: Dict[str, CreditHistoryEntry] = {}
        self._purchases: Dict[str, CreditPurchase] = {}
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"memory_db_tx_{id(self)}", default=False
        )

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return

        async with self._lock:
            snapshot = self._snapshot()
            token = self._in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._in_transaction.reset(token)

    def _snapshot(self) -> dict:
        return {
            "balances": dict(self._balances),
            "history": list(self._history),
            "history_keys": dict(self._history_keys),
            "purchases": copy.deepcopy(self._purchases),
            "ledger": list(self._ledger),
        }

    def _restore(self, snapshot: dict) -> None:
        self._balances = snapshot["balances"]
        self._history = snapshot["history"]
        self._history_keys = snapshot["history_keys"]
        self._purchases = snapshot["purchases"]
        self._ledger = snapshot["ledger"]

    # Balance store
    async def get_balance(self, user_id: str, credit_type: CreditType) -> int:
        return self._balances.get((user_id, credit_type), 0)

    async def get_balances(self, user_id: str) -> Dict[CreditType, int]:
        return {
            credit_type: balance
            for (owner, credit_type), balance in self._balances.items()
            if owner == user_id
        }

    async def increment_balance(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> int:
        async with self.transaction():
            key = (user_id, credit_type)
            self._balances[key] = self._balances.get(key, 0) + amount
            return self._balances[key]

    async def decrement_balance_if_sufficient(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Optional[int]:
        async with self.transaction():
            key = (user_id, credit_type)
            current = self._balances.get(key, 0)
            if current < amount:
                return None
            self._balances[key] = current - amount
            return self._balances[key]

    async def decrement_balance_clamped(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Tuple[int, int]:
        async with self.transaction():
            key = (user_id, credit_type)
            current = self._balances.get(key, 0)
            removed = min(current, amount)
            # Rows are never deleted; reset to 0 is the only "delete"
            if key in self._balances:
                self._balances[key] = current - removed
            return removed, current - removed

    # History log
    async def insert_history_entry(
        self, entry: CreditHistoryEntry
    ) -> Tuple[CreditHistoryEntry, bool]:
        async with self.transaction():
            if entry.idempotency_key is not None:
                existing = self._history_keys.get(entry.idempotency_key)
                if existing is not None:
                    return existing.model_copy(), False
            stored = entry.model_copy()
            if stored.id is None:
                stored.id = self._next_id()
            self._history.append(stored)
            if stored.idempotency_key is not None:
                self._history_keys[stored.idempotency_key] = stored
            return stored.model_copy(), True

    async def get_history_entry(self, entry_id: str) -> Optional[CreditHistoryEntry]:
        for entry in self._history:
            if entry.id == entry_id:
                return entry.model_copy()
        return None

    async def get_history_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditHistoryEntry]:
        entry = self._history_keys.get(idempotency_key)
        return entry.model_copy() if entry is not None else None

    def _user_history(
        self, user_id: str, credit_type: Optional[CreditType]
    ) -> List[CreditHistoryEntry]:
        return [
            e
            for e in self._history
            if e.user_id == user_id and (credit_type is None or e.credit_type == credit_type)
        ]

    async def get_history(
        self,
        user_id: str,
        limit: int,
        offset: int,
        credit_type: Optional[CreditType] = None,
    ) -> List[CreditHistoryEntry]:
        # Insertion order breaks created_at ties
        newest_first = list(reversed(self._user_history(user_id, credit_type)))
        return [e.model_copy() for e in newest_first[offset : offset + limit]]

    async def count_history(
        self, user_id: str, credit_type: Optional[CreditType] = None
    ) -> int:
        return len(self._user_history(user_id, credit_type))

    # Purchases
    async def insert_purchase(
        self, purchase: CreditPurchase
    ) -> Tuple[CreditPurchase, bool]:
        async with self.transaction():
            existing = self._purchases.get(purchase.external_transaction_id)
            if existing is not None:
                return existing.model_copy(), False
            stored = purchase.model_copy()
            if stored.id is None:
                stored.id = self._next_id()
            self._purchases[stored.external_transaction_id] = stored
            return stored.model_copy(), True

    async def get_purchase_by_external_id(
        self, external_transaction_id: str
    ) -> Optional[CreditPurchase]:
        purchase = self._purchases.get(external_transaction_id)
        return purchase.model_copy() if purchase is not None else None

    async def mark_purchase_refunded(
        self, external_transaction_id: str, refunded_at: datetime
    ) -> Optional[CreditPurchase]:
        async with self.transaction():
            purchase = self._purchases.get(external_transaction_id)
            if purchase is None or purchase.status != PurchaseStatus.COMPLETED:
                return None
            purchase.status = PurchaseStatus.REFUNDED
            purchase.refunded_at = refunded_at
            return purchase.model_copy()

    async def mark_purchase_expired(
        self, external_transaction_id: str, expired_at: datetime
    ) -> Optional[CreditPurchase]:
        async with self.transaction():
            purchase = self._purchases.get(external_transaction_id)
            if (
                purchase is None
                or purchase.status != PurchaseStatus.COMPLETED
                or purchase.expired_at is not None
            ):
                return None
            purchase.expired_at = expired_at
            return purchase.model_copy()

    async def get_purchases(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[CreditPurchase]:
        owned = [p for p in self._purchases.values() if p.user_id == user_id]
        owned.reverse()
        owned.sort(key=lambda p: p.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return [p.model_copy() for p in owned[offset:end]]

    async def count_purchases(self, user_id: str) -> int:
        return sum(1 for p in self._purchases.values() if p.user_id == user_id)

    async def get_lapsed_purchases(self, as_of: datetime) -> List[CreditPurchase]:
        return [
            p.model_copy()
            for p in self._purchases.values()
            if p.status == PurchaseStatus.COMPLETED
            and p.expired_at is None
            and p.expires_at is not None
            and p.expires_at <= as_of
        ]

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)
