from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from ..cache.base import AsyncCacheBackend
from ..cache.memory import InMemoryAsyncCache
from ..catalog import CreditCatalog
from ..config import CreditSettings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..logging.ledger_logger import LedgerLogger
from ..services.expiration_service import ExpirationService
from ..services.ledger_service import CreditLedgerService
from ..services.purchase_service import PurchaseRecorder
from ..services.query_service import CreditQueryService
from ..services.webhook_service import WebhookEventHandler


@dataclass
class CreditServices:
    """Everything a request handler needs, built once per process."""

    settings: CreditSettings
    db: BaseDBManager
    ledger_service: CreditLedgerService
    query_service: CreditQueryService
    purchase_recorder: PurchaseRecorder
    webhook_handler: WebhookEventHandler
    expiration_service: ExpirationService


def create_db_manager(settings: CreditSettings) -> BaseDBManager:
    if settings.mongo_uri:
        return MongoDBManager.from_client_uri(settings.mongo_uri, settings.mongo_db)
    return InMemoryDBManager()


def build_services(
    settings: CreditSettings,
    db: Optional[BaseDBManager] = None,
    cache: Optional[AsyncCacheBackend] = None,
) -> CreditServices:
    db = db if db is not None else create_db_manager(settings)
    if cache is None:
        cache = InMemoryAsyncCache(max_entries=settings.balance_cache_max_entries)
    ledger = LedgerLogger(db=db, file_path=settings.ledger_log_path)
    catalog = CreditCatalog.from_settings(settings.price_catalog)

    ledger_service = CreditLedgerService(db=db, ledger=ledger, cache=cache)
    recorder = PurchaseRecorder(db=db, ledger_service=ledger_service, ledger=ledger)
    return CreditServices(
        settings=settings,
        db=db,
        ledger_service=ledger_service,
        query_service=CreditQueryService(
            db=db,
            cache=cache,
            cache_ttl_seconds=settings.balance_cache_ttl_seconds,
            max_page_size=settings.max_history_limit,
        ),
        purchase_recorder=recorder,
        webhook_handler=WebhookEventHandler(recorder=recorder, catalog=catalog, ledger=ledger),
        expiration_service=ExpirationService(db=db, ledger=ledger, credit_service=ledger_service),
    )


def get_services(request: Request) -> CreditServices:
    return request.app.state.credits


def require_admin(
    request: Request, x_admin_token: Optional[str] = Header(default=None)
) -> None:
    expected = get_services(request).settings.admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin grants disabled")
    if x_admin_token != expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin token")
