from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

from ..cache.base import AsyncCacheBackend, balances_cache_key
from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.credits import CreditAction, CreditHistoryEntry, CreditType


logger = logging.getLogger(__name__)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError("amount must be a positive integer")


class CreditLedgerService:
    """
    The only writer of balances and credit history.

    `grant`, `spend` and `expire` each run as one unit of work: the balance
    write, the history entry and the ledger line commit together or not at
    all. Balance changes are single conditional updates in the store, never
    read-modify-write here.

    A unit aborted by a write conflict is re-run from the top by the store,
    so a spend that loses the race for the last credit ends up returning
    False once the retry sees the drained balance.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._cache = cache

    async def grant(
        self,
        user_id: str,
        credit_type: CreditType | str,
        amount: int,
        reason: str,
        related_purchase_id: str | None = None,
        idempotency_key: str | None = None,
        expires_at: datetime | None = None,
        action: CreditAction | str = CreditAction.PURCHASE,
        correlation_id: str | None = None,
    ) -> CreditHistoryEntry:
        """
        Add `amount` credits. A second call with an already applied
        `idempotency_key` returns the original entry and changes nothing.
        """
        credit_type = CreditType.parse(credit_type)
        action = CreditAction(action)
        if action not in (CreditAction.PURCHASE, CreditAction.REFUND):
            raise ValueError(f"grant cannot record action {action.value!r}")
        _check_amount(amount)

        async def unit() -> Tuple[CreditHistoryEntry, bool]:
            if idempotency_key is not None:
                existing = await self._db.get_history_by_idempotency_key(idempotency_key)
                if existing is not None:
                    logger.info(
                        "Duplicate grant ignored (key=%s, user=%s)", idempotency_key, user_id
                    )
                    return existing, False

            new_balance = await self._db.increment_balance(user_id, credit_type, amount)
            entry, created = await self._db.insert_history_entry(
                CreditHistoryEntry(
                    user_id=user_id,
                    credit_type=credit_type,
                    amount=amount,
                    action=action,
                    direction=1,
                    description=reason,
                    balance_after=new_balance,
                    expires_at=expires_at,
                    related_purchase_id=related_purchase_id,
                    idempotency_key=idempotency_key,
                )
            )
            if not created:
                # Key claimed since the lookup; undo within the same unit
                await self._db.decrement_balance_clamped(user_id, credit_type, amount)
                logger.info("Duplicate grant lost the race (key=%s)", idempotency_key)
                return entry, False

            await self._ledger.log_transaction(
                user_id=user_id,
                credit_type=credit_type,
                message="Credits granted",
                details={
                    "amount": amount,
                    "new_balance": new_balance,
                    "action": action.value,
                    "reason": reason,
                    "history_id": entry.id,
                    "related_purchase_id": related_purchase_id,
                },
                correlation_id=correlation_id,
            )
            return entry, True

        entry, applied = await self._db.run_transaction(unit)
        if applied:
            await self._invalidate_balances(user_id)
        return entry

    async def spend(
        self,
        user_id: str,
        credit_type: CreditType | str,
        amount: int = 1,
        reason: str | None = None,
        correlation_id: str | None = None,
    ) -> bool:
        """
        Consume `amount` credits if the balance covers them.

        Returns False, without touching balance or history, when it does not;
        running out of credits is an expected outcome, not an error.
        """
        credit_type = CreditType.parse(credit_type)
        _check_amount(amount)

        async def unit() -> bool:
            new_balance = await self._db.decrement_balance_if_sufficient(
                user_id, credit_type, amount
            )
            if new_balance is None:
                await self._ledger.log_rejected(
                    user_id=user_id,
                    credit_type=credit_type,
                    message="Insufficient credits for spend",
                    details={"requested": amount, "reason": reason or ""},
                    correlation_id=correlation_id,
                )
                return False

            entry, _ = await self._db.insert_history_entry(
                CreditHistoryEntry(
                    user_id=user_id,
                    credit_type=credit_type,
                    amount=amount,
                    action=CreditAction.USE,
                    direction=-1,
                    description=reason or f"Used {amount} {credit_type.value} credit(s)",
                    balance_after=new_balance,
                )
            )

            await self._ledger.log_transaction(
                user_id=user_id,
                credit_type=credit_type,
                message="Credits spent",
                details={
                    "amount": amount,
                    "new_balance": new_balance,
                    "reason": reason or "",
                    "history_id": entry.id,
                },
                correlation_id=correlation_id,
            )
            return True

        if not await self._db.run_transaction(unit):
            return False
        await self._invalidate_balances(user_id)
        return True

    async def expire(
        self,
        user_id: str,
        credit_type: CreditType | str,
        amount: int,
        related_history_id: str | None = None,
        description: str | None = None,
        idempotency_key: str | None = None,
        related_purchase_id: str | None = None,
        action: CreditAction | str = CreditAction.EXPIRE,
        correlation_id: str | None = None,
        already_removed: int = 0,
    ) -> CreditHistoryEntry:
        """
        Remove up to `amount` credits, stopping at zero.

        `already_removed` is the part of `amount` an earlier entry took back
        (a refund after the purchase expired); only the rest is removed.
        The history entry carries the amount actually removed. When that is
        less than requested the description says so: the shortfall was
        already spent and stays with the user.
        """
        credit_type = CreditType.parse(credit_type)
        action = CreditAction(action)
        if action not in (CreditAction.EXPIRE, CreditAction.REFUND):
            raise ValueError(f"expire cannot record action {action.value!r}")
        _check_amount(amount)
        if not 0 <= already_removed <= amount:
            raise ValueError("already_removed must be between 0 and amount")
        to_remove = amount - already_removed

        async def unit() -> Tuple[CreditHistoryEntry, int, bool]:
            if idempotency_key is not None:
                existing = await self._db.get_history_by_idempotency_key(idempotency_key)
                if existing is not None:
                    return existing, existing.amount, False

            if to_remove:
                removed, new_balance = await self._db.decrement_balance_clamped(
                    user_id, credit_type, to_remove
                )
            else:
                removed, new_balance = 0, await self._db.get_balance(user_id, credit_type)

            text = description or f"Expired {amount} {credit_type.value} credit(s)"
            if already_removed:
                text += f" ({already_removed} already expired)"
            if removed < to_remove:
                text += (
                    f" (partially reconciled: removed {removed} of {to_remove},"
                    f" {to_remove - removed} already used)"
                )

            entry, created = await self._db.insert_history_entry(
                CreditHistoryEntry(
                    user_id=user_id,
                    credit_type=credit_type,
                    amount=removed,
                    action=action,
                    direction=-1,
                    description=text,
                    balance_after=new_balance,
                    related_history_id=related_history_id,
                    related_purchase_id=related_purchase_id,
                    idempotency_key=idempotency_key,
                )
            )
            if not created:
                if removed:
                    await self._db.increment_balance(user_id, credit_type, removed)
                return entry, entry.amount, False

            await self._ledger.log_transaction(
                user_id=user_id,
                credit_type=credit_type,
                message="Credits expired" if action is CreditAction.EXPIRE else "Credits refunded",
                details={
                    "requested": amount,
                    "already_removed": already_removed,
                    "removed": removed,
                    "new_balance": new_balance,
                    "history_id": entry.id,
                    "related_history_id": related_history_id,
                    "related_purchase_id": related_purchase_id,
                },
                correlation_id=correlation_id,
            )
            return entry, removed, True

        entry, removed, applied = await self._db.run_transaction(unit)
        if not applied:
            return entry

        if removed < to_remove:
            logger.warning(
                "Clamped %s for user %s: removed %d of %d %s credits",
                action.value,
                user_id,
                removed,
                to_remove,
                credit_type.value,
            )
        await self._invalidate_balances(user_id)
        return entry

    async def has_enough_credits(
        self, user_id: str, credit_type: CreditType | str, amount: int = 1
    ) -> bool:
        """Advisory check for UI gating; `spend` is the authoritative one."""
        credit_type = CreditType.parse(credit_type)
        return await self._db.get_balance(user_id, credit_type) >= amount

    async def _invalidate_balances(self, user_id: str) -> None:
        if self._cache is not None:
            await self._cache.delete(balances_cache_key(user_id))
