from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from ..models.credits import CreditHistoryEntry, CreditType
from ..models.ledger import LedgerEntry
from ..models.purchase import CreditPurchase


T = TypeVar("T")


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (MongoDB, in-memory) implement these methods.
    Every balance mutation is a single conditional write so concurrent
    mutations of the same (user, credit type) row serialize in the store;
    `run_transaction()` groups the balance write with its history insert.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic unit. Must rollback on exception and commit on
        success. Entering while a unit is already open joins it.
        """
        yield

    async def run_transaction(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` as one atomic unit and return its result.

        Backends whose units can abort on a write conflict re-run the whole
        operation, so it must only touch the store through this manager.
        Called inside an open unit, it joins that unit.
        """
        async with self.transaction():
            return await operation()

    # Balance store
    @abstractmethod
    async def get_balance(self, user_id: str, credit_type: CreditType) -> int: ...

    @abstractmethod
    async def get_balances(self, user_id: str) -> Dict[CreditType, int]:
        """Balances that have a row; missing types are left out."""
        ...

    @abstractmethod
    async def increment_balance(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> int:
        """Add `amount`, creating the row if needed. Returns the new balance."""
        ...

    @abstractmethod
    async def decrement_balance_if_sufficient(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Optional[int]:
        """
        Subtract `amount` only if the balance covers it, as one conditional
        update. Returns the new balance, or None when nothing was changed.
        """
        ...

    @abstractmethod
    async def decrement_balance_clamped(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Tuple[int, int]:
        """
        Subtract up to `amount`, stopping at zero.
        Returns (amount actually removed, new balance).
        """
        ...

    # History log
    @abstractmethod
    async def insert_history_entry(
        self, entry: CreditHistoryEntry
    ) -> Tuple[CreditHistoryEntry, bool]:
        """
        Insert unless another entry holds the same idempotency key.
        Returns (stored entry, created); on a duplicate key the existing
        entry is returned with created=False.
        """
        ...

    @abstractmethod
    async def get_history_entry(self, entry_id: str) -> Optional[CreditHistoryEntry]: ...

    @abstractmethod
    async def get_history_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditHistoryEntry]: ...

    @abstractmethod
    async def get_history(
        self,
        user_id: str,
        limit: int,
        offset: int,
        credit_type: Optional[CreditType] = None,
    ) -> List[CreditHistoryEntry]:
        """Newest first."""
        ...

    @abstractmethod
    async def count_history(
        self, user_id: str, credit_type: Optional[CreditType] = None
    ) -> int: ...

    # Purchases
    @abstractmethod
    async def insert_purchase(
        self, purchase: CreditPurchase
    ) -> Tuple[CreditPurchase, bool]:
        """Insert-if-absent keyed on external_transaction_id."""
        ...

    @abstractmethod
    async def get_purchase_by_external_id(
        self, external_transaction_id: str
    ) -> Optional[CreditPurchase]: ...

    @abstractmethod
    async def mark_purchase_refunded(
        self, external_transaction_id: str, refunded_at: datetime
    ) -> Optional[CreditPurchase]:
        """
        Move a completed purchase to refunded. Returns None when the purchase
        does not exist or is not in the completed state.
        """
        ...

    @abstractmethod
    async def mark_purchase_expired(
        self, external_transaction_id: str, expired_at: datetime
    ) -> Optional[CreditPurchase]:
        """
        Stamp `expired_at` on a completed, not yet expired purchase. Returns
        None when there is no such purchase, so each one expires once.
        """
        ...

    @abstractmethod
    async def get_purchases(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[CreditPurchase]:
        """Newest first."""
        ...

    @abstractmethod
    async def count_purchases(self, user_id: str) -> int: ...

    @abstractmethod
    async def get_lapsed_purchases(self, as_of: datetime) -> List[CreditPurchase]:
        """
        Completed, not yet expired purchases whose expires_at is at or
        before `as_of`.
        """
        ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
