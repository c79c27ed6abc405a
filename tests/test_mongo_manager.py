from __future__ import annotations

import pytest
from pymongo.errors import AutoReconnect, OperationFailure, PyMongoError

from toptake_credits.db.mongo import MongoDBManager
from toptake_credits.exceptions import StorageError
from toptake_credits.logging.ledger_logger import LedgerLogger
from toptake_credits.models.credits import CreditType
from toptake_credits.models.ledger import LedgerEventType
from toptake_credits.services.ledger_service import CreditLedgerService


def write_conflict() -> OperationFailure:
    return OperationFailure(
        "WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]}
    )


class FakeCollection:
    """Replays queued results (or raises queued errors) and records sessions."""

    def __init__(self) -> None:
        self.results: dict[str, list] = {}
        self.sessions: list = []
        self.inserted: list = []

    def _next(self, op: str, session):
        self.sessions.append(session)
        result = self.results[op].pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def find_one(self, query, session=None):
        return self._next("find_one", session)

    async def find_one_and_update(self, query, update, session=None, **kwargs):
        return self._next("find_one_and_update", session)

    async def insert_one(self, doc, session=None):
        self.sessions.append(session)
        self.inserted.append(doc)


class FakeDatabase:
    def __init__(self) -> None:
        self.collection = FakeCollection()

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collection


class FakeSession:
    """Mirrors the driver's transaction runner: re-run on transient labels."""

    def __init__(self, max_attempts: int = 3) -> None:
        self.max_attempts = max_attempts
        self.attempts = 0

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    async def with_transaction(self, callback):
        while True:
            self.attempts += 1
            try:
                return await callback(self)
            except PyMongoError as exc:
                if (
                    exc.has_error_label("TransientTransactionError")
                    and self.attempts < self.max_attempts
                ):
                    continue
                raise


class FakeClient:
    def __init__(self) -> None:
        self.session = FakeSession()

    async def start_session(self) -> FakeSession:
        return self.session


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def mongo(fake_db, fake_client):
    return MongoDBManager(fake_db, client=fake_client)


@pytest.mark.asyncio
async def test_unit_is_rerun_after_write_conflict(mongo, fake_db, fake_client):
    fake_db.collection.results["find_one_and_update"] = [write_conflict(), {"balance": 4}]

    async def unit():
        return await mongo.decrement_balance_if_sufficient("u", CreditType.BOOST, 1)

    assert await mongo.run_transaction(unit) == 4
    assert fake_client.session.attempts == 2
    assert fake_db.collection.sessions == [fake_client.session, fake_client.session]


@pytest.mark.asyncio
async def test_spend_returns_false_when_retry_finds_balance_drained(
    mongo, fake_db, fake_client, tmp_path
):
    fake_db.collection.results["find_one_and_update"] = [write_conflict(), None]
    ledger = LedgerLogger(db=mongo, file_path=tmp_path / "ledger.log")
    service = CreditLedgerService(db=mongo, ledger=ledger)

    assert await service.spend("u", "boost", 1) is False
    assert fake_client.session.attempts == 2
    [rejected] = fake_db.collection.inserted
    assert rejected["event_type"] == LedgerEventType.REJECTED.value


@pytest.mark.asyncio
async def test_persistent_conflict_surfaces_as_storage_error(mongo, fake_db, fake_client):
    fake_db.collection.results["find_one_and_update"] = [write_conflict() for _ in range(3)]

    async def unit():
        return await mongo.increment_balance("u", CreditType.BOOST, 1)

    with pytest.raises(StorageError):
        await mongo.run_transaction(unit)
    assert fake_client.session.attempts == 3


@pytest.mark.asyncio
async def test_non_transient_failure_is_not_retried(mongo, fake_db, fake_client):
    fake_db.collection.results["find_one_and_update"] = [
        OperationFailure("document failed validation", code=121)
    ]

    async def unit():
        return await mongo.increment_balance("u", CreditType.BOOST, 1)

    with pytest.raises(StorageError):
        await mongo.run_transaction(unit)
    assert fake_client.session.attempts == 1


@pytest.mark.asyncio
async def test_reads_outside_a_unit_raise_storage_error(mongo, fake_db):
    fake_db.collection.results["find_one"] = [AutoReconnect("connection refused")]

    with pytest.raises(StorageError) as excinfo:
        await mongo.get_balance("u", CreditType.BOOST)

    assert isinstance(excinfo.value.__cause__, AutoReconnect)
    assert fake_db.collection.sessions == [None]


@pytest.mark.asyncio
async def test_reads_outside_a_unit_use_no_session(mongo, fake_db):
    fake_db.collection.results["find_one"] = [{"balance": 7}]

    assert await mongo.get_balance("u", CreditType.ANONYMOUS) == 7
    assert fake_db.collection.sessions == [None]
