"""
Tests for the in-memory document store and the Mongo adapter.
"""
from datetime import datetime, timedelta
from types import SimpleNamespace
import copy

from bson import ObjectId
import pytest

from ledger_core import LedgerService, MotorDocumentStore, NotFoundError
from ledger_core.document_store import _from_mongo, _sort_documents, _to_mongo_filter, matches


def _naive(value):
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return value


class NaiveCursor:
    """Motor cursor stand-in over already-filtered documents"""

    def __init__(self, docs):
        self.docs = docs

    def sort(self, keys):
        self.docs = _sort_documents(self.docs, keys)
        return self

    def limit(self, n):
        self.docs = self.docs[:n]
        return self

    async def to_list(self, length=None):
        return self.docs[:length] if length else list(self.docs)


class NaiveCollection:
    """Motor collection stand-in; datetimes come back naive like a client without tz_aware"""

    def __init__(self):
        self.docs = []

    async def insert_one(self, doc, session=None):
        stored = {key: _naive(value) for key, value in copy.deepcopy(doc).items()}
        stored.setdefault("_id", ObjectId())
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    async def find_one(self, where, session=None):
        found = [d for d in self.docs if matches(d, where)]
        return copy.deepcopy(found[0]) if found else None

    def find(self, where, session=None):
        return NaiveCursor([copy.deepcopy(d) for d in self.docs if matches(d, where)])

    async def update_one(self, where, update, session=None):
        for doc in self.docs:
            if matches(doc, where):
                doc.update({key: _naive(value) for key, value in update["$set"].items()})
                return SimpleNamespace(matched_count=1)
        return SimpleNamespace(matched_count=0)


class NaiveDatabase(dict):

    def __missing__(self, name):
        self[name] = NaiveCollection()
        return self[name]


@pytest.fixture
def mongo_store(clock):
    return MotorDocumentStore(client=None, db=NaiveDatabase(), clock=clock)


class TestMatches:

    DOC = {"party": "team", "amount": 50, "status": "pending", "settlement_id": None}

    @pytest.mark.parametrize("where,expected", [
        (None, True),
        ({"party": "team"}, True),
        ({"party": "admin"}, False),
        ({"party": {"$in": ["team", "vendor"]}}, True),
        ({"party": {"$nin": ["team"]}}, False),
        ({"status": {"$ne": "cleared"}}, True),
        ({"amount": {"$gte": 50, "$lt": 60}}, True),
        ({"amount": {"$gt": 50}}, False),
        ({"settlement_id": {"$exists": False}}, True),
        ({"missing": {"$lte": 5}}, False),
        ({"party": "team", "status": "cleared"}, False),
    ])
    def test_operators(self, where, expected):
        assert matches(self.DOC, where) is expected

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            matches(self.DOC, {"amount": {"$regex": "5"}})


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_timestamps(self, store, clock):
        doc = await store.create("things", {"name": "a"})
        assert ObjectId.is_valid(doc["id"])
        assert doc["created_at"] == doc["updated_at"] == clock()

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, store):
        doc = await store.create("things", {"tags": ["a"]})
        doc["tags"].append("b")
        fetched = await store.get_by_id("things", doc["id"])
        fetched["tags"].append("c")
        assert (await store.get_by_id("things", doc["id"]))["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_update_and_not_found(self, store, clock):
        doc = await store.create("things", {"n": 1})
        clock.advance(seconds=5)
        await store.update("things", doc["id"], {"n": 2})
        updated = await store.get_by_id("things", doc["id"])
        assert updated["n"] == 2
        assert updated["updated_at"] > updated["created_at"]

        with pytest.raises(NotFoundError):
            await store.update("things", "missing", {"n": 3})
        with pytest.raises(NotFoundError) as exc:
            await store.get_by_id("things", "missing")
        assert exc.value.collection == "things"

    @pytest.mark.asyncio
    async def test_query_order_and_limit(self, store):
        for name, rank in (("b", 2), ("a", 2), ("c", 1), ("d", None)):
            await store.create("things", {"name": name, "rank": rank})

        ordered = await store.query("things", order_by=[("rank", -1), ("name", 1)])
        assert [d["name"] for d in ordered] == ["a", "b", "c", "d"]
        ascending = await store.query("things", order_by=[("rank", 1)], limit=2)
        assert [d["name"] for d in ascending] == ["d", "c"]

    @pytest.mark.asyncio
    async def test_subscribers(self, store):
        seen = []

        async def on_async(doc):
            seen.append(("async", doc["name"]))

        stop = store.subscribe("things", {"kind": "x"}, lambda doc: seen.append(("sync", doc["name"])))
        store.subscribe("things", None, on_async)

        await store.create("things", {"name": "one", "kind": "x"})
        await store.create("things", {"name": "two", "kind": "y"})
        stop()
        await store.create("things", {"name": "three", "kind": "x"})

        assert seen == [
            ("sync", "one"), ("async", "one"),
            ("async", "two"),
            ("async", "three"),
        ]

    @pytest.mark.asyncio
    async def test_transaction_is_a_passthrough(self, store):
        assert store.supports_transactions is False
        async with store.transaction() as session:
            await store.create("things", {"name": "t"}, session=session)
        assert session is None
        assert len(await store.query("things")) == 1


class TestMongoHelpers:

    def test_id_filter_becomes_object_id(self):
        oid = ObjectId()
        assert _to_mongo_filter({"id": str(oid)}) == {"_id": oid}
        assert _to_mongo_filter({"id": {"$in": [str(oid), "legacy-key"]}}) == {"_id": {"$in": [oid, "legacy-key"]}}
        assert _to_mongo_filter({"party": "team"}) == {"party": "team"}
        assert _to_mongo_filter(None) == {}

    def test_from_mongo_exposes_string_id(self):
        oid = ObjectId()
        assert _from_mongo({"_id": oid, "n": 1}) == {"id": str(oid), "n": 1}

    def test_from_mongo_reads_naive_datetimes_as_utc(self, clock):
        doc = _from_mongo({"_id": ObjectId(), "date": clock().replace(tzinfo=None), "note": "x"})
        assert doc["date"] == clock()
        assert doc["date"].tzinfo is not None


class TestMotorStore:

    @pytest.mark.asyncio
    async def test_round_trip_returns_aware_datetimes(self, mongo_store, clock):
        created = await mongo_store.create("things", {"name": "a", "when": clock()})
        fetched = await mongo_store.get_by_id("things", created["id"])
        assert fetched["when"] == clock()
        assert fetched["created_at"] == clock()

        with pytest.raises(NotFoundError):
            await mongo_store.update("things", str(ObjectId()), {"name": "b"})

    @pytest.mark.asyncio
    async def test_ledger_date_range_over_mongo(self, mongo_store, audit, notifier, validator, access, clock):
        ledger = LedgerService(mongo_store, audit, notifier, validator, access, clock)

        async def entry(amount):
            return (await ledger.create_entry({
                "payment_id": "payment-1", "project_id": "project-1", "type": "credit",
                "party": "team", "amount": amount, "currency": "USD", "date": clock(),
            })).unwrap()

        await entry(1)
        start = clock.advance(days=1)
        recent = await entry(2)

        ranged = await ledger.query_entries({"start_date": start - timedelta(hours=1)})
        assert [e.id for e in ranged] == [recent.id]
        both = await ledger.query_entries({"end_date": start.isoformat()})
        assert len(both) == 2
