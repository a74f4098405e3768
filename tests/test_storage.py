"""Tests for the storage backends and the query matcher."""

import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from database import MemoryStorage, MongoStorage, matches
from errors import ConflictError


@pytest.fixture()
def store():
    return MemoryStorage()


class TestQueries:
    def test_insert_assigns_string_id(self, store):
        doc_id = store.insert("product", {"name": "Mochi"})
        assert isinstance(doc_id, str)
        assert store.get("product", doc_id) == {"id": doc_id, "name": "Mochi"}

    def test_returned_documents_are_copies(self, store):
        doc_id = store.insert("cart", {"user_id": "u1", "items": []})
        doc = store.get("cart", doc_id)
        doc["items"].append({"product_id": "p1"})
        assert store.get("cart", doc_id)["items"] == []

    def test_get_unknown_id(self, store):
        assert store.get("product", "missing") is None

    def test_find_with_operators_sort_and_paging(self, store):
        for price in (300, 100, 200, 400):
            store.insert("product", {"price": price, "category": "Rolls"})
        store.insert("product", {"price": 50, "category": "Coffee"})

        docs = store.find(
            "product",
            {"category": "Rolls", "price": {"$gte": 200}},
            sort=[("price", -1)],
            skip=1,
            limit=2,
        )
        assert [d["price"] for d in docs] == [300, 200]
        assert store.count("product", {"price": {"$lt": 200}}) == 2

    def test_nested_list_fields(self):
        order = {"status": "delivered", "items": [{"product_id": "a"}, {"product_id": "b"}]}
        assert matches(order, {"items.product_id": "b", "status": {"$in": ["delivered", "completed"]}})
        assert not matches(order, {"items.product_id": "c"})

    def test_regex_and_or(self):
        product = {"name": "Spicy Tuna Roll", "description": "Chili mayo", "tags": ["tuna"]}
        assert matches(product, {"$or": [{"name": {"$regex": "tuna", "$options": "i"}}, {"tags": "x"}]})
        assert not matches(product, {"name": {"$regex": "tuna"}})

    def test_date_ranges(self):
        now = datetime.now(timezone.utc)
        doc = {"date": now}
        assert matches(doc, {"date": {"$gte": now - timedelta(hours=1), "$lt": now + timedelta(hours=1)}})
        assert not matches({"date": None}, {"date": {"$gte": now}})

    def test_delete(self, store):
        doc_id = store.insert("review", {"rating": 4})
        assert store.delete("review", doc_id) is True
        assert store.delete("review", doc_id) is False


class TestUpdates:
    def test_set_and_inc(self, store):
        doc_id = store.insert("user", {"email": "a@b.c", "total_orders": 1})
        assert store.update("user", doc_id, set_fields={"name": "A"}, inc={"total_orders": 2, "loyalty_points": 5})
        doc = store.get("user", doc_id)
        assert doc["total_orders"] == 3
        assert doc["loyalty_points"] == 5
        assert doc["name"] == "A"

    def test_compare_and_set(self, store):
        doc_id = store.insert("order", {"status": "pending"})
        assert store.update("order", doc_id, set_fields={"status": "cancelled"}, query={"status": "pending"})
        assert not store.update("order", doc_id, set_fields={"status": "cancelled"}, query={"status": "pending"})

    def test_increment_if_refuses_to_go_negative(self, store):
        doc_id = store.insert("product", {"stock": 3, "is_available": True})
        assert store.increment_if("product", doc_id, "stock", -2)
        assert not store.increment_if("product", doc_id, "stock", -2)
        assert store.get("product", doc_id)["stock"] == 1

    def test_increment_if_respects_query(self, store):
        doc_id = store.insert("product", {"stock": 3, "is_available": False})
        assert not store.increment_if("product", doc_id, "stock", -1, {"is_available": True})
        assert store.get("product", doc_id)["stock"] == 3

    def test_concurrent_decrements_never_oversell(self, store):
        doc_id = store.insert("product", {"stock": 5})
        results = []

        def take():
            results.append(store.increment_if("product", doc_id, "stock", -1))

        threads = [threading.Thread(target=take) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 5
        assert store.get("product", doc_id)["stock"] == 0


class TestUniqueIndexes:
    def test_duplicate_email_rejected(self, store):
        store.insert("user", {"email": "a@b.c"})
        with pytest.raises(ConflictError):
            store.insert("user", {"email": "a@b.c"})

    def test_compound_index(self, store):
        store.insert("review", {"product_id": "p", "user_id": "u"})
        store.insert("review", {"product_id": "p", "user_id": "v"})
        with pytest.raises(ConflictError):
            store.insert("review", {"product_id": "p", "user_id": "u"})


def test_lock_is_reentrant(store):
    with store.lock("cart:u1"):
        with store.lock("cart:u1"):
            pass


def test_lock_entries_are_released(store):
    with store.lock("cart:u1"):
        with store.lock("cart:u1"):
            assert len(store._locks) == 1
        assert len(store._locks) == 1
    assert store._locks == {}


def test_lock_entries_do_not_accumulate_per_user(storage, make_product):
    import cart

    pid = make_product(stock=1000)
    for n in range(50):
        cart.add_item(storage, f"user-{n}", pid, 1)
    assert storage._locks == {}


def test_lock_released_when_body_raises(store):
    with pytest.raises(RuntimeError):
        with store.lock("cart:u1"):
            raise RuntimeError("boom")
    assert store._locks == {}


class _RecordingCollection:
    def __init__(self):
        self.calls = []
        self.result = None

    def create_index(self, keys, unique=False):
        pass

    def find_one_and_update(self, flt, update, return_document=None):
        self.calls.append((flt, update))
        return self.result


class _RecordingClient:
    def __init__(self):
        self.db = defaultdict(_RecordingCollection)

    def __getitem__(self, name):
        return self.db


class TestMongoConditionalDecrement:
    """The filter MongoStorage sends; the live-server suite covers the round trip."""

    @pytest.fixture()
    def client(self):
        return _RecordingClient()

    @pytest.fixture()
    def mongo(self, client):
        return MongoStorage("mongodb://unused", "cafe", client=client)

    def test_decrement_requires_enough_stock(self, mongo, client):
        pid = str(ObjectId())
        assert not mongo.increment_if("product", pid, "stock", -2, {"is_available": True})

        flt, update = client.db["product"].calls[0]
        assert flt == {"_id": ObjectId(pid), "is_available": True, "stock": {"$gte": 2}}
        assert update == {"$inc": {"stock": -2}}

    def test_successful_decrement(self, mongo, client):
        client.db["product"].result = {"stock": 1}
        assert mongo.increment_if("product", str(ObjectId()), "stock", -1)

    def test_increment_has_no_floor(self, mongo, client):
        pid = str(ObjectId())
        mongo.increment_if("product", pid, "stock", 3)
        flt, _ = client.db["product"].calls[0]
        assert flt == {"_id": ObjectId(pid)}

    def test_invalid_id_never_reaches_server(self, mongo, client):
        assert not mongo.increment_if("product", "not-an-id", "stock", -1)
        assert client.db["product"].calls == []
