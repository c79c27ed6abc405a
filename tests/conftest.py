from __future__ import annotations

import pytest

from toptake_credits.cache.memory import InMemoryAsyncCache
from toptake_credits.catalog import CreditCatalog
from toptake_credits.db.memory import InMemoryDBManager
from toptake_credits.logging.ledger_logger import LedgerLogger
from toptake_credits.services.expiration_service import ExpirationService
from toptake_credits.services.ledger_service import CreditLedgerService
from toptake_credits.services.purchase_service import PurchaseRecorder
from toptake_credits.services.query_service import CreditQueryService
from toptake_credits.services.webhook_service import WebhookEventHandler


@pytest.fixture
def db():
    return InMemoryDBManager()


@pytest.fixture
def cache():
    return InMemoryAsyncCache()


@pytest.fixture
def ledger(db, tmp_path):
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def ledger_service(db, ledger, cache):
    return CreditLedgerService(db=db, ledger=ledger, cache=cache)


@pytest.fixture
def query_service(db, cache):
    return CreditQueryService(db=db, cache=cache)


@pytest.fixture
def recorder(db, ledger_service, ledger):
    return PurchaseRecorder(db=db, ledger_service=ledger_service, ledger=ledger)


@pytest.fixture
def webhook_handler(recorder, ledger):
    return WebhookEventHandler(recorder=recorder, catalog=CreditCatalog.default(), ledger=ledger)


@pytest.fixture
def expiration_service(db, ledger, ledger_service):
    return ExpirationService(db=db, ledger=ledger, credit_service=ledger_service)
