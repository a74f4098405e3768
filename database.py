"""
Document storage for the café backend.

Two implementations share one interface:

- MongoStorage   MongoDB through pymongo
- MemoryStorage  a dict of collections, for local development and tests

The backend is picked once at startup (see get_storage). Documents go in and
come out as plain dicts keyed by snake_case field names, with the identifier
exposed as a string under "id".
"""

import copy
import re
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from errors import ConflictError

logger = structlog.get_logger(__name__)

Query = Dict[str, Any]
Sort = Sequence[Tuple[str, int]]

# Unique constraints per collection, enforced by both backends
UNIQUE_INDEXES: Dict[str, List[Tuple[str, ...]]] = {
    "user": [("email",)],
    "cart": [("user_id",)],
    "order": [("order_number",)],
    "review": [("product_id", "user_id")],
    "reservation": [("confirmation_code",)],
}


class Storage(ABC):
    """Interface every backend implements."""

    def __init__(self):
        # key -> [lock, holders]; an entry is dropped once nobody holds or waits on it
        self._locks: Dict[str, List[Any]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        """Serialize units of work sharing `key` (e.g. one user's cart)."""
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if not entry[1]:
                    del self._locks[key]

    @abstractmethod
    def insert(self, collection: str, doc: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def find(
        self,
        collection: str,
        query: Optional[Query] = None,
        sort: Optional[Sort] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        ...

    def find_one(self, collection: str, query: Query) -> Optional[Dict[str, Any]]:
        docs = self.find(collection, query, limit=1)
        return docs[0] if docs else None

    @abstractmethod
    def count(self, collection: str, query: Optional[Query] = None) -> int:
        ...

    @abstractmethod
    def update(
        self,
        collection: str,
        doc_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, Any]] = None,
        query: Optional[Query] = None,
    ) -> bool:
        """Apply $set / $inc to one document.

        When `query` is given the update only happens if the document still
        matches it (compare-and-set). Returns whether a document was updated.
        """

    @abstractmethod
    def increment_if(
        self,
        collection: str,
        doc_id: str,
        field: str,
        amount: int,
        query: Optional[Query] = None,
    ) -> bool:
        """Atomically add `amount` to `field` unless the result would drop below zero.

        Returns False (and changes nothing) when the document is missing, does
        not match `query`, or holds too little.
        """

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        ...

    @abstractmethod
    def collections(self) -> List[str]:
        ...


# ----------------------------------------------------------------------------
# In-memory backend
# ----------------------------------------------------------------------------

def _field_values(doc: Dict[str, Any], path: str) -> List[Any]:
    values: List[Any] = [doc]
    for part in path.split("."):
        found: List[Any] = []
        for value in values:
            if isinstance(value, dict) and part in value:
                found.append(value[part])
            elif isinstance(value, list):
                found.extend(v[part] for v in value if isinstance(v, dict) and part in v)
        values = found
    flat: List[Any] = []
    for value in values:
        if isinstance(value, list):
            flat.extend(value)
        flat.append(value)
    return flat or [None]


def _comparable(value, arg) -> bool:
    if value is None or arg is None:
        return False
    if isinstance(value, (int, float)) and isinstance(arg, (int, float)):
        return True
    return type(value) is type(arg) or (isinstance(value, datetime) and isinstance(arg, datetime))


_OPERATORS = {
    "$in": lambda values, arg: any(v in arg for v in values),
    "$nin": lambda values, arg: all(v not in arg for v in values),
    "$ne": lambda values, arg: all(v != arg for v in values),
    "$gt": lambda values, arg: any(_comparable(v, arg) and v > arg for v in values),
    "$gte": lambda values, arg: any(_comparable(v, arg) and v >= arg for v in values),
    "$lt": lambda values, arg: any(_comparable(v, arg) and v < arg for v in values),
    "$lte": lambda values, arg: any(_comparable(v, arg) and v <= arg for v in values),
}


def _condition_matches(values: List[Any], condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$options":
                continue
            if op == "$regex":
                flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                pattern = re.compile(arg, flags)
                if not any(isinstance(v, str) and pattern.search(v) for v in values):
                    return False
                continue
            if not _OPERATORS[op](values, arg):
                return False
        return True
    return any(v == condition for v in values)


def matches(doc: Dict[str, Any], query: Optional[Query]) -> bool:
    """Evaluate the subset of MongoDB query syntax the application uses."""
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        if not _condition_matches(_field_values(doc, key), condition):
            return False
    return True


def _sort_key(field: str):
    def key(doc):
        value = doc
        for part in field.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        return (value is not None, value)
    return key


class MemoryStorage(Storage):
    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._write_lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(name, {})

    def _check_unique(self, collection: str, doc: Dict[str, Any], doc_id: Optional[str] = None) -> None:
        for fields in UNIQUE_INDEXES.get(collection, []):
            key = tuple(doc.get(f) for f in fields)
            if any(v is None for v in key):
                continue
            for other_id, other in self._collection(collection).items():
                if other_id != doc_id and tuple(other.get(f) for f in fields) == key:
                    raise ConflictError(f"Duplicate {collection}: {', '.join(fields)} already exists")

    def insert(self, collection, doc):
        with self._write_lock:
            doc_id = str(ObjectId())
            stored = copy.deepcopy(dict(doc))
            stored.pop("id", None)
            self._check_unique(collection, stored)
            stored["id"] = doc_id
            self._collection(collection)[doc_id] = stored
            return doc_id

    def get(self, collection, doc_id):
        doc = self._collection(collection).get(str(doc_id))
        return copy.deepcopy(doc) if doc else None

    def find(self, collection, query=None, sort=None, skip=0, limit=0):
        with self._write_lock:
            docs = [d for d in self._collection(collection).values() if matches(d, query)]
        for field, direction in reversed(list(sort or [])):
            docs.sort(key=_sort_key(field), reverse=direction < 0)
        docs = docs[skip:]
        if limit:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    def count(self, collection, query=None):
        with self._write_lock:
            return sum(1 for d in self._collection(collection).values() if matches(d, query))

    def update(self, collection, doc_id, set_fields=None, inc=None, query=None):
        with self._write_lock:
            doc = self._collection(collection).get(str(doc_id))
            if doc is None or not matches(doc, query):
                return False
            updated = copy.deepcopy(doc)
            updated.update(copy.deepcopy(set_fields or {}))
            for field, amount in (inc or {}).items():
                updated[field] = updated.get(field, 0) + amount
            self._check_unique(collection, updated, doc_id=str(doc_id))
            self._collection(collection)[str(doc_id)] = updated
            return True

    def increment_if(self, collection, doc_id, field, amount, query=None):
        with self._write_lock:
            doc = self._collection(collection).get(str(doc_id))
            if doc is None or not matches(doc, query):
                return False
            new_value = doc.get(field, 0) + amount
            if new_value < 0:
                return False
            doc[field] = new_value
            return True

    def delete(self, collection, doc_id):
        with self._write_lock:
            return self._collection(collection).pop(str(doc_id), None) is not None

    def collections(self):
        return sorted(self._data)


# ----------------------------------------------------------------------------
# MongoDB backend
# ----------------------------------------------------------------------------

def _oid(doc_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        return None


def _public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


class MongoStorage(Storage):
    def __init__(self, url: str, name: str, client: Optional[MongoClient] = None):
        super().__init__()
        self.client = client or MongoClient(url, tz_aware=True)
        self.db = self.client[name]
        self.ensure_indexes()

    def ensure_indexes(self) -> None:
        for collection, indexes in UNIQUE_INDEXES.items():
            for fields in indexes:
                self.db[collection].create_index([(f, 1) for f in fields], unique=True)

    def insert(self, collection, doc):
        doc = dict(doc)
        doc.pop("id", None)
        try:
            return str(self.db[collection].insert_one(doc).inserted_id)
        except DuplicateKeyError:
            raise ConflictError(f"Duplicate {collection}")

    def get(self, collection, doc_id):
        oid = _oid(doc_id)
        if oid is None:
            return None
        return _public(self.db[collection].find_one({"_id": oid}))

    def find(self, collection, query=None, sort=None, skip=0, limit=0):
        cursor = self.db[collection].find(query or {})
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return [_public(d) for d in cursor]

    def count(self, collection, query=None):
        return self.db[collection].count_documents(query or {})

    def update(self, collection, doc_id, set_fields=None, inc=None, query=None):
        oid = _oid(doc_id)
        if oid is None:
            return False
        operations: Dict[str, Any] = {}
        if set_fields:
            operations["$set"] = set_fields
        if inc:
            operations["$inc"] = inc
        if not operations:
            return self.db[collection].count_documents({"_id": oid, **(query or {})}) > 0
        try:
            res = self.db[collection].update_one({"_id": oid, **(query or {})}, operations)
        except DuplicateKeyError:
            raise ConflictError(f"Duplicate {collection}")
        return res.matched_count > 0

    def increment_if(self, collection, doc_id, field, amount, query=None):
        oid = _oid(doc_id)
        if oid is None:
            return False
        flt: Query = {"_id": oid, **(query or {})}
        if amount < 0:
            flt[field] = {"$gte": -amount}
        doc = self.db[collection].find_one_and_update(
            flt, {"$inc": {field: amount}}, return_document=ReturnDocument.AFTER
        )
        return doc is not None

    def delete(self, collection, doc_id):
        oid = _oid(doc_id)
        if oid is None:
            return False
        return self.db[collection].delete_one({"_id": oid}).deleted_count > 0

    def collections(self):
        return self.db.list_collection_names()


@lru_cache(maxsize=None)
def get_storage() -> Storage:
    """Build the configured backend once per process."""
    if config.STORAGE_BACKEND == "mongo":
        if not config.DATABASE_URL:
            raise RuntimeError("STORAGE_BACKEND=mongo requires DATABASE_URL")
        logger.info("storage_selected", backend="mongo", database=config.DATABASE_NAME)
        return MongoStorage(config.DATABASE_URL, config.DATABASE_NAME)
    logger.info("storage_selected", backend="memory")
    return MemoryStorage()
