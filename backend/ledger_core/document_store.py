"""
DOCUMENT STORE ADAPTERS

Every ledger component talks to persistence through the DocumentStore
contract only:

1. create(collection, doc)           -> stored doc (with id, created_at, updated_at)
2. get_by_id(collection, id)         -> doc, raises NotFoundError
3. query(collection, where, order_by, limit) -> [doc]
4. update(collection, id, patch)     -> None, raises NotFoundError
5. subscribe(collection, where, cb)  -> unsubscribe()
6. transaction()                     -> async context yielding a session

`where` uses the MongoDB filter subset: plain values are equality, and
operator dicts support $in, $nin, $ne, $gt, $gte, $lt, $lte, $exists.
`order_by` is a list of (field, direction) pairs, direction 1 or -1.

Two implementations:
- MotorDocumentStore: MongoDB via motor (transactions on replica sets)
- InMemoryDocumentStore: dict-backed, used by tests and local runs
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from bson import ObjectId
from bson.errors import InvalidId
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Tuple, Protocol
import asyncio
import copy
import inspect
import logging

from .clock import Clock, ensure_utc, utc_now
from .exceptions import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)

Where = Dict[str, Any]
OrderBy = List[Tuple[str, int]]
Subscriber = Callable[[Dict[str, Any]], Any]


class DocumentStore(Protocol):
    supports_transactions: bool

    async def create(self, collection: str, doc: Dict[str, Any], session=None) -> Dict[str, Any]:
        ...

    async def get_by_id(self, collection: str, doc_id: str, session=None) -> Dict[str, Any]:
        ...

    async def query(
        self,
        collection: str,
        where: Optional[Where] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
        session=None
    ) -> List[Dict[str, Any]]:
        ...

    async def update(self, collection: str, doc_id: str, patch: Dict[str, Any], session=None) -> None:
        ...

    def subscribe(self, collection: str, where: Optional[Where], callback: Subscriber) -> Callable[[], None]:
        ...

    def transaction(self):
        ...


# =============================================================================
# SHARED HELPERS
# =============================================================================

async def _deliver(callback: Subscriber, doc: Dict[str, Any], collection: str):
    """Invoke a subscriber; subscriber failures never reach the writer"""
    try:
        result = callback(doc)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"[STORE] Subscriber on {collection} failed: {str(e)}")


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "$in":
        return actual in expected
    if op == "$nin":
        return actual not in expected
    if op == "$ne":
        return actual != expected
    if op == "$exists":
        return (actual is not None) == bool(expected)
    if actual is None or expected is None:
        return False
    if op == "$gt":
        return actual > expected
    if op == "$gte":
        return actual >= expected
    if op == "$lt":
        return actual < expected
    if op == "$lte":
        return actual <= expected
    raise ValueError(f"Unsupported query operator: {op}")


def matches(doc: Dict[str, Any], where: Optional[Where]) -> bool:
    """Evaluate the supported filter subset against a plain document"""
    if not where:
        return True
    for field, condition in where.items():
        actual = doc.get(field)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, expected in condition.items():
                if not _compare(op, actual, expected):
                    return False
        elif actual != condition:
            return False
    return True


def _sort_documents(docs: List[Dict[str, Any]], order_by: Optional[OrderBy]) -> List[Dict[str, Any]]:
    if not order_by:
        return docs
    result = list(docs)
    # Stable sorts applied from the least significant key
    for field, direction in reversed(order_by):
        present = [d for d in result if d.get(field) is not None]
        missing = [d for d in result if d.get(field) is None]
        present.sort(key=lambda d: d[field], reverse=direction == DESCENDING)
        result = present + missing if direction == DESCENDING else missing + present
    return result


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryDocumentStore:
    """
    Dict-backed store with the same contract as MotorDocumentStore.

    No multi-document transactions: `transaction()` yields None and writes
    inside it are applied one by one.
    """

    supports_transactions = False

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._subscribers: Dict[str, List[Tuple[Optional[Where], Subscriber]]] = {}

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def create(self, collection: str, doc: Dict[str, Any], session=None) -> Dict[str, Any]:
        now = self.clock()
        stored = copy.deepcopy(doc)
        stored["id"] = stored.get("id") or str(ObjectId())
        stored.setdefault("created_at", now)
        stored["updated_at"] = now
        self._collection(collection)[stored["id"]] = stored
        await self._publish(collection, stored)
        return copy.deepcopy(stored)

    async def get_by_id(self, collection: str, doc_id: str, session=None) -> Dict[str, Any]:
        doc = self._collection(collection).get(doc_id)
        if doc is None:
            raise NotFoundError(collection, doc_id)
        return copy.deepcopy(doc)

    async def query(
        self,
        collection: str,
        where: Optional[Where] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
        session=None
    ) -> List[Dict[str, Any]]:
        docs = [d for d in self._collection(collection).values() if matches(d, where)]
        docs = _sort_documents(docs, order_by)
        if limit is not None:
            docs = docs[:limit]
        return [copy.deepcopy(d) for d in docs]

    async def update(self, collection: str, doc_id: str, patch: Dict[str, Any], session=None) -> None:
        docs = self._collection(collection)
        if doc_id not in docs:
            raise NotFoundError(collection, doc_id)
        docs[doc_id].update(copy.deepcopy(patch))
        docs[doc_id]["updated_at"] = self.clock()
        await self._publish(collection, docs[doc_id])

    def subscribe(self, collection: str, where: Optional[Where], callback: Subscriber) -> Callable[[], None]:
        entry = (where, callback)
        self._subscribers.setdefault(collection, []).append(entry)

        def unsubscribe():
            subscribers = self._subscribers.get(collection, [])
            if entry in subscribers:
                subscribers.remove(entry)

        return unsubscribe

    @asynccontextmanager
    async def transaction(self):
        yield None

    async def _publish(self, collection: str, doc: Dict[str, Any]):
        for where, callback in list(self._subscribers.get(collection, [])):
            if matches(doc, where):
                await _deliver(callback, copy.deepcopy(doc), collection)


# =============================================================================
# MONGODB STORE (motor)
# =============================================================================

def _object_id(doc_id: Any) -> Any:
    """Legacy collections use ObjectId keys; anything else is kept as-is"""
    if isinstance(doc_id, str):
        try:
            return ObjectId(doc_id)
        except InvalidId:
            return doc_id
    return doc_id


def _to_mongo_filter(where: Optional[Where]) -> Dict[str, Any]:
    query = dict(where or {})
    if "id" in query:
        condition = query.pop("id")
        if isinstance(condition, dict):
            condition = {
                op: [_object_id(v) for v in value] if isinstance(value, list) else _object_id(value)
                for op, value in condition.items()
            }
        else:
            condition = _object_id(condition)
        query["_id"] = condition
    return query


def _from_mongo(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Expose `_id` as a string `id`; naive datetimes from a non tz_aware client read as UTC"""
    doc = {key: ensure_utc(value) if isinstance(value, datetime) else value for key, value in doc.items()}
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


class MotorDocumentStore:
    """
    MongoDB-backed store.

    Driver errors are wrapped in PersistenceError and propagated. Call
    `detect_transaction_support()` once at startup: transactions (and
    change-stream subscriptions) need a replica set.
    """

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase, clock: Clock = utc_now):
        self.client = client
        self.db = db
        self.clock = clock
        self.supports_transactions = False

    async def detect_transaction_support(self) -> bool:
        try:
            hello = await self.db.command("hello")
        except PyMongoError as e:
            raise PersistenceError(f"MongoDB unavailable: {str(e)}")
        self.supports_transactions = bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"
        logger.info(f"[STORE] Multi-document transactions supported: {self.supports_transactions}")
        return self.supports_transactions

    async def create(self, collection: str, doc: Dict[str, Any], session=None) -> Dict[str, Any]:
        now = self.clock()
        stored = dict(doc)
        stored.pop("id", None)
        stored.setdefault("created_at", now)
        stored["updated_at"] = now
        try:
            result = await self.db[collection].insert_one(stored, session=session)
        except PyMongoError as e:
            raise PersistenceError(f"Insert into {collection} failed: {str(e)}")
        stored["_id"] = result.inserted_id
        return _from_mongo(stored)

    async def get_by_id(self, collection: str, doc_id: str, session=None) -> Dict[str, Any]:
        try:
            doc = await self.db[collection].find_one({"_id": _object_id(doc_id)}, session=session)
        except PyMongoError as e:
            raise PersistenceError(f"Read from {collection} failed: {str(e)}")
        if not doc:
            raise NotFoundError(collection, doc_id)
        return _from_mongo(doc)

    async def query(
        self,
        collection: str,
        where: Optional[Where] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
        session=None
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(_to_mongo_filter(where), session=session)
        if order_by:
            cursor = cursor.sort([
                ("_id" if field == "id" else field, direction) for field, direction in order_by
            ])
        if limit is not None:
            cursor = cursor.limit(limit)
        try:
            docs = await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise PersistenceError(f"Query on {collection} failed: {str(e)}")
        return [_from_mongo(d) for d in docs]

    async def update(self, collection: str, doc_id: str, patch: Dict[str, Any], session=None) -> None:
        fields = dict(patch)
        fields.pop("id", None)
        fields["updated_at"] = self.clock()
        try:
            result = await self.db[collection].update_one(
                {"_id": _object_id(doc_id)},
                {"$set": fields},
                session=session
            )
        except PyMongoError as e:
            raise PersistenceError(f"Update on {collection} failed: {str(e)}")
        if result.matched_count == 0:
            raise NotFoundError(collection, doc_id)

    def subscribe(self, collection: str, where: Optional[Where], callback: Subscriber) -> Callable[[], None]:
        """Watch inserts/updates through a change stream until unsubscribed"""
        pipeline = [{"$match": {"operationType": {"$in": ["insert", "update", "replace"]}}}]
        for field, condition in _to_mongo_filter(where).items():
            pipeline.append({"$match": {f"fullDocument.{field}": condition}})

        async def watch():
            try:
                async with self.db[collection].watch(pipeline, full_document="updateLookup") as stream:
                    async for change in stream:
                        full = change.get("fullDocument")
                        if full:
                            await _deliver(callback, _from_mongo(full), collection)
            except asyncio.CancelledError:
                raise
            except PyMongoError as e:
                logger.error(f"[STORE] Change stream on {collection} stopped: {str(e)}")

        task = asyncio.create_task(watch())
        return task.cancel

    @asynccontextmanager
    async def transaction(self):
        if not self.supports_transactions:
            raise PersistenceError("MongoDB deployment does not support transactions")
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield session
        except PyMongoError as e:
            raise PersistenceError(f"Transaction aborted: {str(e)}")

    async def ensure_indexes(self):
        """Create the indexes the ledger queries rely on"""
        await self.db.ledger_entries.create_index([("party", ASCENDING), ("status", ASCENDING)])
        await self.db.ledger_entries.create_index([("project_id", ASCENDING), ("date", DESCENDING)])
        await self.db.ledger_entries.create_index("payment_id")
        await self.db.ledger_entries.create_index("settlement_id")
        await self.db.settlements.create_index([("party", ASCENDING), ("settlement_date", DESCENDING)])
        await self.db.revenue_rules.create_index([("is_active", ASCENDING), ("is_default", ASCENDING)])
        await self.db.audit_logs.create_index([("timestamp", DESCENDING)])
        await self.db.audit_logs.create_index([("user_id", ASCENDING), ("timestamp", DESCENDING)])
        await self.db.migration_logs.create_index("payment_id")
        await self.db.settlement_repairs.create_index("status")
        logger.info("[STORE] Ledger indexes created")
