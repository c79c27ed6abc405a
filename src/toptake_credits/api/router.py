from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from ..exceptions import ConfigurationError, InvalidEventError, StorageError
from ..models.api_models import (
    CreditBalanceResponse,
    CreditBalancesResponse,
    GrantRequest,
    HistoryPageResponse,
    PurchaseListResponse,
    SpendRequest,
    SpendResponse,
    WebhookAckResponse,
)
from ..models.credits import CreditHistoryEntry
from .dependencies import CreditServices, get_services, require_admin


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/{user_id}/balances", response_model=CreditBalancesResponse)
async def get_balances(
    user_id: str, services: CreditServices = Depends(get_services)
) -> CreditBalancesResponse:
    balances = await services.query_service.get_all_balances(user_id)
    return CreditBalancesResponse(
        user_id=user_id, balances={k.value: v for k, v in balances.items()}
    )


@router.get("/{user_id}/balances/{credit_type}", response_model=CreditBalanceResponse)
async def get_balance(
    user_id: str, credit_type: str, services: CreditServices = Depends(get_services)
) -> CreditBalanceResponse:
    try:
        balance = await services.query_service.get_balance(user_id, credit_type)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return CreditBalanceResponse(user_id=user_id, credit_type=credit_type, balance=balance)


@router.get("/{user_id}/history", response_model=HistoryPageResponse)
async def get_history(
    user_id: str,
    limit: Optional[int] = Query(default=None),
    offset: int = Query(default=0),
    credit_type: Optional[str] = Query(default=None),
    services: CreditServices = Depends(get_services),
) -> HistoryPageResponse:
    limit = limit if limit is not None else services.settings.default_history_limit
    try:
        page = await services.query_service.get_history_page(
            user_id, limit=limit, offset=offset, credit_type=credit_type
        )
    except (ConfigurationError, ValueError) as exc:
        raise _bad_request(exc) from exc
    return HistoryPageResponse(
        items=page.items, total=page.total, limit=page.limit, offset=page.offset
    )


@router.get("/{user_id}/purchases", response_model=PurchaseListResponse)
async def get_purchases(
    user_id: str, services: CreditServices = Depends(get_services)
) -> PurchaseListResponse:
    return PurchaseListResponse(items=await services.query_service.get_purchases(user_id))


@router.post("/spend", response_model=SpendResponse)
async def spend_credits(
    payload: SpendRequest, services: CreditServices = Depends(get_services)
) -> SpendResponse:
    try:
        spent = await services.ledger_service.spend(
            user_id=payload.user_id,
            credit_type=payload.credit_type,
            amount=payload.amount,
            reason=payload.reason,
        )
    except ConfigurationError as exc:
        raise _bad_request(exc) from exc
    balance = await services.query_service.get_balance(payload.user_id, payload.credit_type)
    return SpendResponse(spent=spent, balance=balance)


@router.post(
    "/admin/grant",
    response_model=CreditHistoryEntry,
    dependencies=[Depends(require_admin)],
)
async def admin_grant(
    payload: GrantRequest, services: CreditServices = Depends(get_services)
) -> CreditHistoryEntry:
    # Without a caller key a retried request grants twice; admin tools that
    # need retry safety send their own key
    idempotency_key = payload.idempotency_key or f"admin:{uuid4().hex}"
    try:
        return await services.ledger_service.grant(
            user_id=payload.user_id,
            credit_type=payload.credit_type,
            amount=payload.amount,
            reason=payload.reason,
            idempotency_key=idempotency_key,
            expires_at=payload.expires_at,
            action=payload.action,
        )
    except ConfigurationError as exc:
        raise _bad_request(exc) from exc


@router.post("/webhook", response_model=WebhookAckResponse)
async def payment_webhook(
    payload: Dict[str, Any] = Body(...),
    services: CreditServices = Depends(get_services),
) -> WebhookAckResponse:
    """
    Receives payment events whose signature the gateway already verified.

    Unknown products are acknowledged so the provider stops retrying; they
    are in the ledger as errors for manual reconciliation. Storage failures
    return 503 so the provider re-delivers, which the idempotency keys make
    safe.
    """
    try:
        await services.webhook_handler.handle(payload)
    except InvalidEventError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except ConfigurationError as exc:
        logger.error("Webhook needs manual reconciliation: %s", exc)
        return WebhookAckResponse(received=True, reconciliation_required=True)
    except StorageError as exc:
        logger.warning("Webhook storage failure, asking provider to retry: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable"
        ) from exc
    return WebhookAckResponse(received=True)
