from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .credits import CreditHistoryEntry
from .purchase import CreditPurchase


class SpendRequest(BaseModel):
    user_id: str
    credit_type: str
    amount: int = Field(default=1, gt=0)
    reason: Optional[str] = None


class SpendResponse(BaseModel):
    spent: bool
    balance: int


class GrantRequest(BaseModel):
    user_id: str
    credit_type: str
    amount: int = Field(gt=0)
    reason: str
    idempotency_key: Optional[str] = None
    action: Literal["purchase", "refund"] = "purchase"
    expires_at: Optional[datetime] = None


class CreditBalanceResponse(BaseModel):
    user_id: str
    credit_type: str
    balance: int


class CreditBalancesResponse(BaseModel):
    user_id: str
    balances: Dict[str, int]


class HistoryPageResponse(BaseModel):
    items: List[CreditHistoryEntry]
    total: int
    limit: int
    offset: int


class PurchaseListResponse(BaseModel):
    items: List[CreditPurchase]


class WebhookAckResponse(BaseModel):
    received: bool = True
    reconciliation_required: bool = False
