from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from ..catalog import CreditCatalog
from ..exceptions import ConfigurationError, InvalidEventError
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.events import (
    PurchaseCompletedEvent,
    RefundIssuedEvent,
    WebhookEvent,
    webhook_event_adapter,
)
from ..models.purchase import CreditPurchase
from .purchase_service import PurchaseRecorder


logger = logging.getLogger(__name__)


class WebhookEventHandler:
    """
    Boundary between the (already signature-checked) payment webhook and the
    purchase recorder. Payloads are validated into one of the known event
    kinds before anything touches the ledger.
    """

    def __init__(
        self,
        recorder: PurchaseRecorder,
        catalog: CreditCatalog,
        ledger: LedgerLogger,
    ) -> None:
        self._recorder = recorder
        self._catalog = catalog
        self._ledger = ledger

    def parse(self, payload: Mapping[str, Any]) -> WebhookEvent:
        try:
            return webhook_event_adapter.validate_python(payload)
        except ValidationError as exc:
            raise InvalidEventError(str(exc)) from exc

    async def handle(self, payload: Mapping[str, Any]) -> Optional[CreditPurchase]:
        event = self.parse(payload)
        if isinstance(event, RefundIssuedEvent):
            return await self._recorder.record_refund(event.external_transaction_id)
        return await self._handle_purchase(event)

    async def _handle_purchase(self, event: PurchaseCompletedEvent) -> CreditPurchase:
        credit_type: str
        amount: int
        expires_at = None
        if event.price_id is not None:
            try:
                item = self._catalog.resolve(event.price_id)
            except ConfigurationError:
                await self._ledger.log_error(
                    message="Completed purchase with unknown price id",
                    details={
                        "external_transaction_id": event.external_transaction_id,
                        "price_id": event.price_id,
                        "price": event.price,
                    },
                    user_id=event.user_id,
                    correlation_id=event.external_transaction_id,
                )
                raise
            credit_type, amount = item.credit_type.value, item.amount
            expires_at = item.expires_at(utcnow())
        else:
            credit_type, amount = event.credit_type, event.amount  # type: ignore[assignment]

        return await self._recorder.record_completed_purchase(
            external_transaction_id=event.external_transaction_id,
            user_id=event.user_id,
            credit_type=credit_type,
            amount=amount,
            price=event.price,
            price_id=event.price_id,
            currency=event.currency,
            expires_at=expires_at,
        )
