from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional, Tuple

from pydantic import Field

from .base import DBSerializableModel, utcnow
from .credits import CreditType


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"
    # Spend refused for lack of balance; expected, kept for support lookups
    REJECTED = "rejected"
    # Anomalies needing manual reconciliation (unknown price id, bad payload)
    ERROR = "error"
    SYSTEM = "system"


class LedgerEntry(DBSerializableModel):
    """
    Operational audit line, persisted to DB and mirrored to a JSONL file.

    Unlike CreditHistoryEntry this is not shown to users and also records
    events that changed nothing.
    """

    collection_name: ClassVar[str] = "credit_ledger"
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = (
        ("user_id", "-created_at"),
        ("event_type", "-created_at"),
    )

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    credit_type: Optional[CreditType] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
