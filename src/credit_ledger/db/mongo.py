from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseLedgerStore
from ..errors import TransactionConflict, UserAlreadyExists, UserNotFound
from ..models.base import DBSerializableModel
from ..models.grant import CreditGrant
from ..models.ledger import LedgerEntry
from ..models.usage import UsageRecord
from ..models.user import UserAccount


TModel = TypeVar("TModel", bound=DBSerializableModel)

_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "credit_ledger_mongo_session", default=None
)


class MongoLedgerStore(BaseLedgerStore):
    """
    MongoDB implementation of BaseLedgerStore using motor (async driver).

    IDs are stored as string `_id` fields and mirrored in the `id` attribute
    of each Pydantic model, which keeps the services agnostic of MongoDB.

    `transaction()` opens a multi-document transaction on a client session,
    so the deployment must be a replica set. The active session travels in a
    context variable and every call made inside the transaction uses it.
    `lock_user` takes the user document's write lock by bumping a
    `lock_version` counter; a second transaction touching the same user then
    fails with a transient write conflict, surfaced as `TransactionConflict`.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoLedgerStore":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        for model in (UserAccount, CreditGrant, UsageRecord, LedgerEntry):
            col = self._db[model.collection_name]
            for index in model.indexes:
                await col.create_index([(name, ASCENDING) for name in index])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _session.get() is not None:
            yield
            return

        async with await self._db.client.start_session() as session:
            token = _session.set(session)
            try:
                async with session.start_transaction():
                    yield
            except PyMongoError as exc:
                if exc.has_error_label("TransientTransactionError"):
                    raise TransactionConflict(str(exc)) from exc
                raise
            finally:
                _session.reset(token)

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
        data = model.serialize_for_db()
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        data.pop("lock_version", None)
        return model_cls.model_validate(data)

    async def _insert(self, model: TModel) -> TModel:
        col = self._db[model.collection_name]
        await col.insert_one(self._prepare_insert(model), session=_session.get())
        return model

    # Users
    async def add_user(self, user: UserAccount) -> UserAccount:
        try:
            return await self._insert(user)
        except DuplicateKeyError as exc:
            raise UserAlreadyExists(user.id or "") from exc

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"_id": user_id}, session=_session.get())
        return self._decode(UserAccount, doc)

    async def get_all_user_ids(self) -> List[str]:
        col = self._db[UserAccount.collection_name]
        cursor = col.find({}, {"_id": 1}, session=_session.get())
        return [str(doc["_id"]) async for doc in cursor]

    async def lock_user(self, user_id: str) -> Optional[UserAccount]:
        session = _session.get()
        if session is None:
            raise RuntimeError("lock_user requires an open transaction")
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one_and_update(
            {"_id": user_id},
            {"$inc": {"lock_version": 1}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return self._decode(UserAccount, doc)

    async def set_user_balance(self, user_id: str, credits_balance: int) -> None:
        if credits_balance < 0:
            raise ValueError("credits_balance cannot be negative")
        col = self._db[UserAccount.collection_name]
        result = await col.update_one(
            {"_id": user_id},
            {"$set": {"credits_balance": credits_balance}},
            session=_session.get(),
        )
        if result.matched_count == 0:
            raise UserNotFound(user_id)

    # Grants
    async def add_grant(self, grant: CreditGrant) -> CreditGrant:
        data = self._prepare_insert(grant)
        # Stored explicitly as null so "never expires" is queryable
        data.setdefault("expires_at", None)
        col = self._db[CreditGrant.collection_name]
        await col.insert_one(data, session=_session.get())
        return grant

    async def get_grant(self, grant_id: str) -> Optional[CreditGrant]:
        col = self._db[CreditGrant.collection_name]
        doc = await col.find_one({"_id": grant_id}, session=_session.get())
        return self._decode(CreditGrant, doc)

    async def get_grants(self, user_id: str) -> Iterable[CreditGrant]:
        col = self._db[CreditGrant.collection_name]
        cursor = col.find({"user_id": user_id}, session=_session.get()).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        return [self._decode(CreditGrant, d) async for d in cursor]  # type: ignore[misc]

    async def get_live_grants(self, user_id: str) -> List[CreditGrant]:
        col = self._db[CreditGrant.collection_name]
        cursor = col.find(
            {"user_id": user_id, "remaining_amount": {"$gt": 0}},
            session=_session.get(),
        )
        return [self._decode(CreditGrant, d) async for d in cursor]  # type: ignore[misc]

    async def find_grant_by_description(
        self, user_id: str, description: str
    ) -> Optional[CreditGrant]:
        col = self._db[CreditGrant.collection_name]
        doc = await col.find_one(
            {"user_id": user_id, "description": description}, session=_session.get()
        )
        return self._decode(CreditGrant, doc)

    async def find_expired_grants(
        self, as_of: datetime, user_id: Optional[str] = None
    ) -> List[CreditGrant]:
        query: Dict[str, Any] = {
            "remaining_amount": {"$gt": 0},
            # $lt never matches null, so never-expiring grants are excluded
            "expires_at": {"$ne": None, "$lt": as_of},
        }
        if user_id is not None:
            query["user_id"] = user_id
        col = self._db[CreditGrant.collection_name]
        cursor = col.find(query, session=_session.get())
        return [self._decode(CreditGrant, d) async for d in cursor]  # type: ignore[misc]

    async def debit_grant(
        self, grant_id: str, expected_remaining: int, new_remaining: int
    ) -> None:
        if not 0 <= new_remaining <= expected_remaining:
            raise ValueError("a grant can only be debited towards zero")
        col = self._db[CreditGrant.collection_name]
        result = await col.update_one(
            {"_id": grant_id, "remaining_amount": expected_remaining},
            {"$set": {"remaining_amount": new_remaining}},
            session=_session.get(),
        )
        if result.matched_count == 0:
            raise TransactionConflict(
                f"grant {grant_id!r} no longer holds {expected_remaining} credits"
            )

    # Usage history
    async def add_usage_record(self, record: UsageRecord) -> UsageRecord:
        return await self._insert(record)

    async def get_usage_records(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[UsageRecord]:
        col = self._db[UsageRecord.collection_name]
        cursor = col.find({"user_id": user_id}, session=_session.get()).sort(
            "created_at", DESCENDING
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        return [self._decode(UsageRecord, d) async for d in cursor]  # type: ignore[misc]

    # Audit ledger, written outside any session so it survives rollbacks
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        await col.insert_one(self._prepare_insert(entry))
        return entry

    async def get_ledger_entries(self, user_id: str) -> List[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        cursor = col.find({"user_id": user_id}).sort("created_at", ASCENDING)
        return [self._decode(LedgerEntry, d) async for d in cursor]  # type: ignore[misc]
