"""
Persistence boundary.

Documents are plain dicts keyed by ``_id`` (the string form of a BSON
ObjectId). Collection names are the lowercase record names: ``user``,
``exam``, ``enrollment``, ``submission``, ``result``, ``auditlog`` and
``onetimecode``. Filters are equality matches on top-level fields.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError

from .errors import ErrorCode, PortalError

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
SortSpec = Sequence[Tuple[str, int]]

UNIQUE_KEYS: Dict[str, List[Tuple[str, ...]]] = {
    "user": [("username",), ("email",)],
    "enrollment": [("student_id", "exam_id")],
    "submission": [("student_id", "exam_id")],
}


def new_id() -> str:
    return str(ObjectId())


def _to_document(data: Union[BaseModel, Document]) -> Document:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def _conflict(collection: str) -> PortalError:
    return PortalError(ErrorCode.CONFLICT, f"Duplicate {collection} record")


class Store(ABC):
    @abstractmethod
    def create_document(self, collection: str, data: Union[BaseModel, Document]) -> str:
        ...

    @abstractmethod
    def get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def find_one(self, collection: str, filter_dict: Document) -> Optional[Document]:
        ...

    @abstractmethod
    def get_documents(
        self,
        collection: str,
        filter_dict: Optional[Document] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        ...

    @abstractmethod
    def update_document(self, collection: str, doc_id: str, values: Document) -> bool:
        ...

    @abstractmethod
    def put_document(self, collection: str, doc_id: str, data: Union[BaseModel, Document]) -> None:
        """Insert or wholly replace the document stored under ``doc_id``."""

    @abstractmethod
    def delete_documents(self, collection: str, filter_dict: Document) -> int:
        ...

    @abstractmethod
    def count_documents(self, collection: str, filter_dict: Optional[Document] = None) -> int:
        ...


class MemoryStore(Store):
    """Process-local store with the same unique keys as the Mongo indexes."""

    def __init__(self):
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Document]] = defaultdict(dict)

    @staticmethod
    def _matches(doc: Document, filter_dict: Optional[Document]) -> bool:
        return all(doc.get(k) == v for k, v in (filter_dict or {}).items())

    def _check_unique(self, collection: str, doc: Document) -> None:
        for fields in UNIQUE_KEYS.get(collection, []):
            key = tuple(doc.get(f) for f in fields)
            for other in self._collections[collection].values():
                if other["_id"] != doc["_id"] and tuple(other.get(f) for f in fields) == key:
                    raise _conflict(collection)

    def create_document(self, collection, data):
        doc = _to_document(data)
        doc["_id"] = doc.get("_id") or new_id()
        with self._lock:
            if doc["_id"] in self._collections[collection]:
                raise _conflict(collection)
            self._check_unique(collection, doc)
            self._collections[collection][doc["_id"]] = copy.deepcopy(doc)
        return doc["_id"]

    def get_document(self, collection, doc_id):
        with self._lock:
            doc = self._collections[collection].get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find_one(self, collection, filter_dict):
        with self._lock:
            for doc in self._collections[collection].values():
                if self._matches(doc, filter_dict):
                    return copy.deepcopy(doc)
        return None

    def get_documents(self, collection, filter_dict=None, sort=None, limit=None):
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._collections[collection].values() if self._matches(d, filter_dict)]
        for key, direction in reversed(list(sort or [])):
            docs.sort(key=lambda d: (d.get(key) is not None, d.get(key)), reverse=direction < 0)
        return docs[:limit] if limit else docs

    def update_document(self, collection, doc_id, values):
        with self._lock:
            current = self._collections[collection].get(doc_id)
            if current is None:
                return False
            updated = {**current, **copy.deepcopy(values)}
            self._check_unique(collection, updated)
            self._collections[collection][doc_id] = updated
            return True

    def put_document(self, collection, doc_id, data):
        doc = _to_document(data)
        doc["_id"] = doc_id
        with self._lock:
            self._check_unique(collection, doc)
            self._collections[collection][doc_id] = copy.deepcopy(doc)

    def delete_documents(self, collection, filter_dict):
        with self._lock:
            doomed = [k for k, d in self._collections[collection].items() if self._matches(d, filter_dict)]
            for k in doomed:
                del self._collections[collection][k]
            return len(doomed)

    def count_documents(self, collection, filter_dict=None):
        with self._lock:
            return sum(1 for d in self._collections[collection].values() if self._matches(d, filter_dict))


class MongoStore(Store):
    def __init__(self, database_url: str, database_name: str):
        self.client = MongoClient(database_url, tz_aware=True)
        self.db = self.client[database_name]
        self._ensure_indexes()

    def _ensure_indexes(self) -> None:
        for collection, keys in UNIQUE_KEYS.items():
            for fields in keys:
                self.db[collection].create_index([(f, ASCENDING) for f in fields], unique=True)
        self.db.auditlog.create_index([("user_id", ASCENDING), ("timestamp", -1)])
        self.db.auditlog.create_index([("action", ASCENDING), ("timestamp", -1)])

    def create_document(self, collection, data):
        doc = _to_document(data)
        doc["_id"] = doc.get("_id") or new_id()
        try:
            self.db[collection].insert_one(doc)
        except DuplicateKeyError:
            raise _conflict(collection)
        return doc["_id"]

    def get_document(self, collection, doc_id):
        return self.db[collection].find_one({"_id": doc_id})

    def find_one(self, collection, filter_dict):
        return self.db[collection].find_one(filter_dict)

    def get_documents(self, collection, filter_dict=None, sort=None, limit=None):
        cursor = self.db[collection].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def update_document(self, collection, doc_id, values):
        try:
            result = self.db[collection].update_one({"_id": doc_id}, {"$set": values})
        except DuplicateKeyError:
            raise _conflict(collection)
        return result.matched_count == 1

    def put_document(self, collection, doc_id, data):
        doc = _to_document(data)
        doc["_id"] = doc_id
        self.db[collection].replace_one({"_id": doc_id}, doc, upsert=True)

    def delete_documents(self, collection, filter_dict):
        return self.db[collection].delete_many(filter_dict).deleted_count

    def count_documents(self, collection, filter_dict=None):
        return self.db[collection].count_documents(filter_dict or {})


def create_store(database_url: Optional[str], database_name: str) -> Store:
    if database_url:
        logger.info("Using MongoDB store %s", database_name)
        return MongoStore(database_url, database_name)
    logger.warning("DATABASE_URL not set, using in-memory store")
    return MemoryStore()


def strip_fields(doc: Document, fields: Iterable[str]) -> Document:
    hidden = set(fields)
    return {k: v for k, v in doc.items() if k not in hidden}
