from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


class PurchaseCompletedEvent(BaseModel):
    """
    Checkout completed at the payment provider.

    The product is identified either by the provider's `price_id` (resolved
    through the catalog) or directly by `credit_type` and `amount`.
    `credit_type` stays a plain string here so an unknown value surfaces as
    a ConfigurationError from the recorder, not as a validation error.
    """

    kind: Literal["purchase_completed"]
    external_transaction_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    price: float = Field(ge=0)
    currency: str = "usd"
    price_id: Optional[str] = None
    credit_type: Optional[str] = None
    amount: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _require_product(self) -> "PurchaseCompletedEvent":
        if self.price_id is None and (self.credit_type is None or self.amount is None):
            raise ValueError("either price_id or both credit_type and amount are required")
        return self


class RefundIssuedEvent(BaseModel):
    kind: Literal["refund_issued"]
    external_transaction_id: str = Field(min_length=1)


WebhookEvent = Annotated[
    Union[PurchaseCompletedEvent, RefundIssuedEvent],
    Field(discriminator="kind"),
]

webhook_event_adapter: TypeAdapter[WebhookEvent] = TypeAdapter(WebhookEvent)
