from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Tuple

from pydantic import Field

from ..exceptions import ConfigurationError
from .base import DBSerializableModel, utcnow


class CreditType(str, Enum):
    ANONYMOUS = "anonymous"
    LATE_SUBMIT = "late_submit"
    SNEAK_PEEK = "sneak_peek"
    BOOST = "boost"
    EXTRA_TAKES = "extra_takes"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: "CreditType | str") -> "CreditType":
        """Map an inbound value to a CreditType, refusing to guess."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ConfigurationError(f"unknown credit type: {value!r}") from None


class CreditAction(str, Enum):
    PURCHASE = "purchase"
    USE = "use"
    EXPIRE = "expire"
    REFUND = "refund"


class CreditBalance(DBSerializableModel):
    """
    Current balance for one (user, credit type) pair.
    A missing row is read as a zero balance.
    """

    collection_name: ClassVar[str] = "credit_balances"
    unique_keys: ClassVar[Tuple[Tuple[str, ...], ...]] = (("user_id", "credit_type"),)

    id: Optional[str] = Field(default=None)
    user_id: str
    credit_type: CreditType
    balance: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)

    @staticmethod
    def key(user_id: str, credit_type: CreditType) -> str:
        return f"{user_id}:{credit_type.value}"


class CreditHistoryEntry(DBSerializableModel):
    """
    Immutable audit record of one balance mutation.

    `amount` is always a magnitude; `direction` (+1 or -1) says whether the
    balance went up or down, so a refund credited back by an admin and a
    refund clawed back from a purchase are both representable.
    """

    collection_name: ClassVar[str] = "credit_history"
    unique_keys: ClassVar[Tuple[Tuple[str, ...], ...]] = (("idempotency_key",),)
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = (
        ("user_id", "-created_at"),
        ("user_id", "credit_type", "-created_at"),
    )

    id: Optional[str] = Field(default=None)
    user_id: str
    credit_type: CreditType
    amount: int = Field(ge=0)
    action: CreditAction
    direction: int = Field(description="+1 when the balance grew, -1 when it shrank.")
    description: Optional[str] = None
    balance_after: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    related_purchase_id: Optional[str] = None
    related_history_id: Optional[str] = None
    idempotency_key: Optional[str] = Field(
        default=None,
        description="Caller or event supplied key; a second write with the same key is a no-op.",
    )

    @property
    def signed_amount(self) -> int:
        return self.amount * self.direction
