from __future__ import annotations

import functools
import logging
from datetime import datetime
from typing import Optional

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.credits import CreditHistoryEntry
from .ledger_service import CreditLedgerService


logger = logging.getLogger(__name__)


def expiry_idempotency_key(external_transaction_id: str) -> str:
    return f"expire:{external_transaction_id}"


class ExpirationService:
    """
    Expiry sweep for time-boxed credits, invoked by an external scheduler.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        credit_service: CreditLedgerService,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._credit_service = credit_service

    async def expire_lapsed_purchases(self, as_of: Optional[datetime] = None) -> int:
        """
        Expire the credits of every completed purchase whose `expires_at`
        has passed. Each purchase expires at most once, so the sweep can run
        as often as the scheduler likes. Returns the number of credits removed.
        """
        as_of = as_of or utcnow()
        removed_total = 0
        expired_purchases = 0

        for lapsed in await self._db.get_lapsed_purchases(as_of):
            entry = await self._db.run_transaction(
                functools.partial(self._expire_purchase, lapsed.external_transaction_id)
            )
            if entry is None:
                continue
            removed_total += entry.amount
            expired_purchases += 1

        if expired_purchases:
            await self._ledger.log_system(
                message="Expiry sweep completed",
                details={
                    "as_of": as_of.isoformat(),
                    "purchases": expired_purchases,
                    "credits_removed": removed_total,
                },
            )
        logger.info(
            "Expiry sweep as of %s: %d purchases, %d credits removed",
            as_of.isoformat(),
            expired_purchases,
            removed_total,
        )
        return removed_total

    async def _expire_purchase(
        self, external_transaction_id: str
    ) -> Optional[CreditHistoryEntry]:
        # Stamping first means a purchase refunded or swept since the scan is skipped
        purchase = await self._db.mark_purchase_expired(external_transaction_id, utcnow())
        if purchase is None:
            return None

        grant_entry = await self._db.get_history_by_idempotency_key(external_transaction_id)
        return await self._credit_service.expire(
            user_id=purchase.user_id,
            credit_type=purchase.credit_type,
            amount=purchase.amount,
            related_history_id=grant_entry.id if grant_entry else None,
            description=(
                f"Expired {purchase.amount} {purchase.credit_type.value} credit(s)"
                f" from purchase {purchase.id}"
            ),
            idempotency_key=expiry_idempotency_key(external_transaction_id),
            related_purchase_id=purchase.id,
        )
