from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Tuple

from pydantic import Field

from .base import DBSerializableModel, utcnow
from .credits import CreditType


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class CreditPurchase(DBSerializableModel):
    """
    One external payment and the credits it granted.
    """

    collection_name: ClassVar[str] = "credit_purchases"
    unique_keys: ClassVar[Tuple[Tuple[str, ...], ...]] = (("external_transaction_id",),)
    # Second index serves the expiry sweep
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = (
        ("user_id", "-created_at"),
        ("status", "expired_at", "expires_at"),
    )

    id: Optional[str] = Field(default=None)
    user_id: str
    credit_type: CreditType
    amount: int = Field(gt=0, description="Credits granted by this purchase.")
    price: float = Field(ge=0, description="Currency amount paid.")
    currency: str = "usd"
    external_transaction_id: str = Field(
        description="Payment provider's payment/session id; idempotency key for the grant.",
    )
    price_id: Optional[str] = None
    status: PurchaseStatus = PurchaseStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    expired_at: Optional[datetime] = Field(
        default=None,
        description="Set by the expiry sweep once the credits were expired.",
    )
    refunded_at: Optional[datetime] = None
