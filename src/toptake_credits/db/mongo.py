from __future__ import annotations

import functools
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypeVar,
)
from uuid import uuid4

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from .base import BaseDBManager
from ..exceptions import StorageError
from ..models.base import DBSerializableModel, utcnow
from ..models.credits import CreditBalance, CreditHistoryEntry, CreditType
from ..models.ledger import LedgerEntry
from ..models.purchase import CreditPurchase, PurchaseStatus


TModel = TypeVar("TModel", bound=DBSerializableModel)
T = TypeVar("T")


def _storage_errors(method):
    """
    Surface driver failures as StorageError. Inside a unit the raw error is
    re-raised so the transaction runner can read its error labels.
    """

    @functools.wraps(method)
    async def wrapper(self: "MongoDBManager", *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except PyMongoError as exc:
            if self._s is not None:
                raise
            raise StorageError(f"credit storage operation failed: {exc}") from exc

    return wrapper


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    `transaction()` and `run_transaction()` open a client session with a
    multi-document transaction, so the deployment must be a replica set.
    Insert-if-absent writes are upserts with `$setOnInsert` against unique
    indexes: a plain insert that hits a duplicate key would abort the
    surrounding transaction.
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        client: Optional[AsyncIOMotorClient] = None,
    ) -> None:
        self._db = database
        self._client = client if client is not None else database.client
        self._session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
            f"mongo_session_{id(self)}", default=None
        )

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name], client=client)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._session.get() is not None:
            yield
            return

        try:
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    token = self._session.set(session)
                    try:
                        yield
                    finally:
                        self._session.reset(token)
        except PyMongoError as exc:
            raise StorageError(f"credit storage transaction failed: {exc}") from exc

    async def run_transaction(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` through the driver's transaction runner, which re-runs
        it on TransientTransactionError and retries the commit on
        UnknownTransactionCommitResult until its time limit runs out.
        """
        if self._s is not None:
            return await operation()

        async def callback(session: AsyncIOMotorClientSession) -> T:
            token = self._session.set(session)
            try:
                return await operation()
            finally:
                self._session.reset(token)

        try:
            async with await self._client.start_session() as session:
                return await session.with_transaction(callback)
        except PyMongoError as exc:
            raise StorageError(f"credit storage transaction failed: {exc}") from exc

    @_storage_errors
    async def ensure_indexes(self) -> None:
        """
        Create the indexes each model declares. The unique ones back the
        insert-if-absent upserts, so this must run before serving traffic.
        """
        for model_cls in (CreditBalance, CreditHistoryEntry, CreditPurchase, LedgerEntry):
            col = self._db[model_cls.collection_name]
            for spec in model_cls.index_specs():
                options: Dict[str, Any] = {"name": spec["name"], "unique": spec["unique"]}
                if spec["partial"]:
                    # None fields are never stored, so "present" means "set"
                    options["partialFilterExpression"] = {
                        field: {"$exists": True} for field in spec["partial"]
                    }
                await col.create_index(spec["keys"], **options)

    # Helper utilities
    @property
    def _s(self) -> Optional[AsyncIOMotorClientSession]:
        return self._session.get()

    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None) or uuid4().hex
        data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    def _decode_all(self, model_cls: Type[TModel], docs: List[Mapping[str, Any]]) -> List[TModel]:
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    async def _insert_if_absent(
        self, model_cls: Type[TModel], key_field: str, model: TModel
    ) -> Tuple[TModel, bool]:
        col = self._db[model_cls.collection_name]
        data = self._prepare_insert(model)
        key = data[key_field]
        result = await col.update_one(
            {key_field: key}, {"$setOnInsert": data}, upsert=True, session=self._s
        )
        if result.upserted_id is not None:
            return model.model_copy(update={"id": data["id"]}), True
        existing = await col.find_one({key_field: key}, session=self._s)
        return self._decode(model_cls, existing), False  # type: ignore[return-value]

    # Balance store
    @_storage_errors
    async def get_balance(self, user_id: str, credit_type: CreditType) -> int:
        col = self._db[CreditBalance.collection_name]
        doc = await col.find_one(
            {"_id": CreditBalance.key(user_id, credit_type)}, session=self._s
        )
        return int(doc["balance"]) if doc else 0

    @_storage_errors
    async def get_balances(self, user_id: str) -> Dict[CreditType, int]:
        col = self._db[CreditBalance.collection_name]
        docs = await col.find({"user_id": user_id}, session=self._s).to_list(length=None)
        return {CreditType(d["credit_type"]): int(d["balance"]) for d in docs}

    @_storage_errors
    async def increment_balance(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> int:
        col = self._db[CreditBalance.collection_name]
        doc = await col.find_one_and_update(
            {"_id": CreditBalance.key(user_id, credit_type)},
            {
                "$inc": {"balance": amount},
                "$set": {"updated_at": utcnow()},
                "$setOnInsert": {"user_id": user_id, "credit_type": credit_type.value},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._s,
        )
        return int(doc["balance"])

    @_storage_errors
    async def decrement_balance_if_sufficient(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Optional[int]:
        col = self._db[CreditBalance.collection_name]
        doc = await col.find_one_and_update(
            {"_id": CreditBalance.key(user_id, credit_type), "balance": {"$gte": amount}},
            {"$inc": {"balance": -amount}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=self._s,
        )
        return int(doc["balance"]) if doc else None

    @_storage_errors
    async def decrement_balance_clamped(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Tuple[int, int]:
        col = self._db[CreditBalance.collection_name]
        before = await col.find_one_and_update(
            {"_id": CreditBalance.key(user_id, credit_type)},
            [
                {
                    "$set": {
                        "balance": {"$max": [0, {"$subtract": ["$balance", amount]}]},
                        "updated_at": utcnow(),
                    }
                }
            ],
            return_document=ReturnDocument.BEFORE,
            session=self._s,
        )
        if before is None:
            return 0, 0
        previous = int(before["balance"])
        removed = min(previous, amount)
        return removed, previous - removed

    # History log
    @_storage_errors
    async def insert_history_entry(
        self, entry: CreditHistoryEntry
    ) -> Tuple[CreditHistoryEntry, bool]:
        if entry.idempotency_key is not None:
            return await self._insert_if_absent(CreditHistoryEntry, "idempotency_key", entry)
        col = self._db[CreditHistoryEntry.collection_name]
        data = self._prepare_insert(entry)
        await col.insert_one(data, session=self._s)
        return entry.model_copy(update={"id": data["id"]}), True

    @_storage_errors
    async def get_history_entry(self, entry_id: str) -> Optional[CreditHistoryEntry]:
        col = self._db[CreditHistoryEntry.collection_name]
        doc = await col.find_one({"_id": entry_id}, session=self._s)
        return self._decode(CreditHistoryEntry, doc)

    @_storage_errors
    async def get_history_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditHistoryEntry]:
        col = self._db[CreditHistoryEntry.collection_name]
        doc = await col.find_one({"idempotency_key": idempotency_key}, session=self._s)
        return self._decode(CreditHistoryEntry, doc)

    @staticmethod
    def _history_filter(user_id: str, credit_type: Optional[CreditType]) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": user_id}
        if credit_type is not None:
            query["credit_type"] = credit_type.value
        return query

    @_storage_errors
    async def get_history(
        self,
        user_id: str,
        limit: int,
        offset: int,
        credit_type: Optional[CreditType] = None,
    ) -> List[CreditHistoryEntry]:
        col = self._db[CreditHistoryEntry.collection_name]
        cursor = (
            col.find(self._history_filter(user_id, credit_type), session=self._s)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip(offset)
            .limit(limit)
        )
        return self._decode_all(CreditHistoryEntry, await cursor.to_list(length=limit))

    @_storage_errors
    async def count_history(
        self, user_id: str, credit_type: Optional[CreditType] = None
    ) -> int:
        col = self._db[CreditHistoryEntry.collection_name]
        return await col.count_documents(
            self._history_filter(user_id, credit_type), session=self._s
        )

    # Purchases
    @_storage_errors
    async def insert_purchase(
        self, purchase: CreditPurchase
    ) -> Tuple[CreditPurchase, bool]:
        return await self._insert_if_absent(CreditPurchase, "external_transaction_id", purchase)

    @_storage_errors
    async def get_purchase_by_external_id(
        self, external_transaction_id: str
    ) -> Optional[CreditPurchase]:
        col = self._db[CreditPurchase.collection_name]
        doc = await col.find_one(
            {"external_transaction_id": external_transaction_id}, session=self._s
        )
        return self._decode(CreditPurchase, doc)

    @_storage_errors
    async def mark_purchase_refunded(
        self, external_transaction_id: str, refunded_at: datetime
    ) -> Optional[CreditPurchase]:
        col = self._db[CreditPurchase.collection_name]
        doc = await col.find_one_and_update(
            {
                "external_transaction_id": external_transaction_id,
                "status": PurchaseStatus.COMPLETED.value,
            },
            {"$set": {"status": PurchaseStatus.REFUNDED.value, "refunded_at": refunded_at}},
            return_document=ReturnDocument.AFTER,
            session=self._s,
        )
        return self._decode(CreditPurchase, doc)

    @_storage_errors
    async def mark_purchase_expired(
        self, external_transaction_id: str, expired_at: datetime
    ) -> Optional[CreditPurchase]:
        col = self._db[CreditPurchase.collection_name]
        doc = await col.find_one_and_update(
            {
                "external_transaction_id": external_transaction_id,
                "status": PurchaseStatus.COMPLETED.value,
                "expired_at": None,
            },
            {"$set": {"expired_at": expired_at}},
            return_document=ReturnDocument.AFTER,
            session=self._s,
        )
        return self._decode(CreditPurchase, doc)

    @_storage_errors
    async def get_purchases(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[CreditPurchase]:
        col = self._db[CreditPurchase.collection_name]
        cursor = (
            col.find({"user_id": user_id}, session=self._s)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip(offset)
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        return self._decode_all(CreditPurchase, await cursor.to_list(length=limit))

    @_storage_errors
    async def count_purchases(self, user_id: str) -> int:
        col = self._db[CreditPurchase.collection_name]
        return await col.count_documents({"user_id": user_id}, session=self._s)

    @_storage_errors
    async def get_lapsed_purchases(self, as_of: datetime) -> List[CreditPurchase]:
        col = self._db[CreditPurchase.collection_name]
        cursor = col.find(
            {
                "status": PurchaseStatus.COMPLETED.value,
                # Matches missing fields too
                "expired_at": None,
                "expires_at": {"$ne": None, "$lte": as_of},
            },
            session=self._s,
        ).sort("expires_at", ASCENDING)
        return self._decode_all(CreditPurchase, await cursor.to_list(length=None))

    # Ledger
    @_storage_errors
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        await col.insert_one(data, session=self._s)
        entry.id = data["id"]
        return entry
