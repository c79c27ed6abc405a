from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

from ..db.base import BaseDBManager
from ..exceptions import ConfigurationError
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.credits import CreditAction, CreditType
from ..models.purchase import CreditPurchase, PurchaseStatus
from .expiration_service import expiry_idempotency_key
from .ledger_service import CreditLedgerService


logger = logging.getLogger(__name__)


def refund_idempotency_key(external_transaction_id: str) -> str:
    return f"refund:{external_transaction_id}"


class PurchaseRecorder:
    """
    Turns completed and refunded payments into purchase rows plus ledger
    mutations. Both entry points are safe to call repeatedly with the same
    external transaction id.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger_service: CreditLedgerService,
        ledger: LedgerLogger,
    ) -> None:
        self._db = db
        self._ledger_service = ledger_service
        self._ledger = ledger

    async def record_completed_purchase(
        self,
        external_transaction_id: str,
        user_id: str,
        credit_type: CreditType | str,
        amount: int,
        price: float,
        price_id: str | None = None,
        currency: str = "usd",
        expires_at: datetime | None = None,
        correlation_id: str | None = None,
    ) -> CreditPurchase:
        try:
            credit_type = CreditType.parse(credit_type)
        except ConfigurationError:
            await self._ledger.log_error(
                message="Completed purchase with unknown credit type",
                details={
                    "external_transaction_id": external_transaction_id,
                    "credit_type": str(credit_type),
                    "amount": amount,
                    "price": price,
                    "price_id": price_id,
                },
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise

        async def unit() -> Tuple[CreditPurchase, bool]:
            purchase, created = await self._db.insert_purchase(
                CreditPurchase(
                    user_id=user_id,
                    credit_type=credit_type,
                    amount=amount,
                    price=price,
                    currency=currency,
                    external_transaction_id=external_transaction_id,
                    price_id=price_id,
                    status=PurchaseStatus.COMPLETED,
                    expires_at=expires_at,
                )
            )
            if not created:
                return purchase, False

            await self._ledger_service.grant(
                user_id=user_id,
                credit_type=credit_type,
                amount=amount,
                reason=f"Purchased {amount} {credit_type.value} credit(s)",
                related_purchase_id=purchase.id,
                idempotency_key=external_transaction_id,
                expires_at=expires_at,
                correlation_id=correlation_id or external_transaction_id,
            )
            return purchase, True

        purchase, created = await self._db.run_transaction(unit)
        if not created:
            logger.info("Purchase %s already recorded; ignoring", external_transaction_id)
            return purchase

        logger.info(
            "Recorded purchase %s: %d %s credits for user %s",
            external_transaction_id,
            amount,
            credit_type.value,
            user_id,
        )
        return purchase

    async def record_refund(
        self, external_transaction_id: str, correlation_id: str | None = None
    ) -> Optional[CreditPurchase]:
        """
        Mark a completed purchase refunded and claw back its credits, clamped
        at the current balance. Credits the expiry sweep already took back
        are not removed a second time. Returns None (and changes nothing)
        when the purchase is unknown or not in the completed state.
        """

        async def unit() -> Optional[CreditPurchase]:
            purchase = await self._db.mark_purchase_refunded(external_transaction_id, utcnow())
            if purchase is None:
                return None

            grant_entry = await self._db.get_history_by_idempotency_key(external_transaction_id)
            expired_entry = await self._db.get_history_by_idempotency_key(
                expiry_idempotency_key(external_transaction_id)
            )
            already_expired = min(expired_entry.amount, purchase.amount) if expired_entry else 0
            await self._ledger_service.expire(
                user_id=purchase.user_id,
                credit_type=purchase.credit_type,
                amount=purchase.amount,
                related_history_id=grant_entry.id if grant_entry else None,
                description=(
                    f"Refund of {purchase.amount} {purchase.credit_type.value} credit(s)"
                ),
                idempotency_key=refund_idempotency_key(external_transaction_id),
                related_purchase_id=purchase.id,
                action=CreditAction.REFUND,
                correlation_id=correlation_id or external_transaction_id,
                already_removed=already_expired,
            )
            return purchase

        purchase = await self._db.run_transaction(unit)
        if purchase is None:
            logger.info(
                "Refund for unknown or already refunded purchase %s ignored",
                external_transaction_id,
            )
        return purchase
