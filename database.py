"""
Document storage for SponsorConnect

Every record kind lives in a collection named after its schema class in
lowercase (see schemas.py). Two interchangeable backends implement
StorageBackend:

- RemoteBackend: MongoDB through pymongo
- LocalBackend: a single JSON file on disk, used for demo mode

The backend is picked once at startup by init_db(). Documents are returned
as plain dicts with a string "id" instead of Mongo's "_id".
"""
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings
from errors import StoreError

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]
Unsubscribe = Callable[[], None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


def serialize_doc(doc):
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def _as_dict(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        d = data.model_dump()
    else:
        d = dict(data)
    d.pop("id", None)
    return d


def _bson_safe(d: Dict[str, Any]) -> Dict[str, Any]:
    # BSON has no plain date type
    return {
        k: v.isoformat() if isinstance(v, date) and not isinstance(v, datetime) else v
        for k, v in d.items()
    }


def _matches(doc: Dict[str, Any], filter_dict: Optional[Dict[str, Any]]) -> bool:
    """Equality match; a scalar matches a list field that contains it (like Mongo)."""
    for key, expected in (filter_dict or {}).items():
        actual = doc.get(key)
        if isinstance(actual, list) and not isinstance(expected, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


class StorageBackend(ABC):
    name = "base"

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._listeners_lock = threading.Lock()

    # Reads

    @abstractmethod
    def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_documents(
        self,
        collection: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        pass

    # Writes

    @abstractmethod
    def create_document(self, collection: str, data: Union[BaseModel, Dict[str, Any]], doc_id: Optional[str] = None) -> str:
        pass

    @abstractmethod
    def insert_if_absent(self, collection: str, data: Union[BaseModel, Dict[str, Any]], unique: Dict[str, Any]) -> Optional[str]:
        """Insert unless a document matching unique already exists; returns the new id or None."""

    @abstractmethod
    def update_document(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    def update_document_if(self, collection: str, doc_id: str, expected: Dict[str, Any], fields: Dict[str, Any]) -> bool:
        """Apply fields only when every key in expected still holds; returns False otherwise."""

    @abstractmethod
    def increment_field(self, collection: str, doc_id: str, field: str, amount: int = 1) -> bool:
        pass

    @abstractmethod
    def delete_document(self, collection: str, doc_id: str) -> bool:
        pass

    @abstractmethod
    def ping(self) -> bool:
        pass

    @abstractmethod
    def list_collection_names(self) -> List[str]:
        pass

    # Change notifications

    def subscribe(self, collection: str, listener: Listener) -> Unsubscribe:
        with self._listeners_lock:
            self._listeners.setdefault(collection, []).append(listener)

        def unsubscribe():
            with self._listeners_lock:
                listeners = self._listeners.get(collection, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def _notify(self, collection: str, operation: str, doc: Dict[str, Any]) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.get(collection, []))
        for listener in listeners:
            try:
                listener(operation, doc)
            except Exception:
                logger.exception("Listener on %s failed", collection)


class RemoteBackend(StorageBackend):
    name = "remote"

    def __init__(self, url: str, database_name: str, timeout_ms: int = 5000, client: Optional[MongoClient] = None):
        super().__init__()
        self.client = client or MongoClient(url, serverSelectionTimeoutMS=timeout_ms, tz_aware=True)
        self.db = self.client[database_name]
        self._unique_indexes = set()

    @staticmethod
    def _oid(doc_id: str) -> Optional[ObjectId]:
        try:
            return ObjectId(doc_id)
        except (InvalidId, TypeError):
            return None

    def get_document(self, collection, doc_id):
        oid = self._oid(doc_id)
        if oid is None:
            return None
        try:
            return serialize_doc(self.db[collection].find_one({"_id": oid}))
        except PyMongoError as e:
            raise StoreError(f"Read from {collection} failed: {e}")

    def get_documents(self, collection, filter_dict=None, order_by=None, descending=False, limit=None):
        try:
            cursor = self.db[collection].find(filter_dict or {})
            if order_by:
                cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
            if limit:
                cursor = cursor.limit(int(limit))
            return [serialize_doc(d) for d in cursor]
        except PyMongoError as e:
            raise StoreError(f"Query on {collection} failed: {e}")

    def _prepare(self, data, doc_id=None):
        d = _bson_safe(_as_dict(data))
        now = utcnow()
        if not d.get("created_at"):
            d["created_at"] = now
        d["updated_at"] = now
        d["_id"] = ObjectId(doc_id) if doc_id else ObjectId()
        return d

    def create_document(self, collection, data, doc_id=None):
        d = self._prepare(data, doc_id)
        try:
            self.db[collection].insert_one(d)
        except PyMongoError as e:
            raise StoreError(f"Write to {collection} failed: {e}")
        return str(d["_id"])

    def _ensure_unique_index(self, collection, fields):
        key = (collection, tuple(sorted(fields)))
        if key in self._unique_indexes:
            return
        self.db[collection].create_index([(f, ASCENDING) for f in key[1]], unique=True)
        self._unique_indexes.add(key)

    def insert_if_absent(self, collection, data, unique):
        d = self._prepare(data)
        try:
            self._ensure_unique_index(collection, unique)
            self.db[collection].insert_one(d)
        except DuplicateKeyError:
            return None
        except PyMongoError as e:
            raise StoreError(f"Write to {collection} failed: {e}")
        return str(d["_id"])

    def update_document(self, collection, doc_id, fields):
        return self.update_document_if(collection, doc_id, {}, fields)

    def update_document_if(self, collection, doc_id, expected, fields):
        oid = self._oid(doc_id)
        if oid is None:
            return False
        query = {"_id": oid, **expected}
        try:
            result = self.db[collection].update_one(query, {"$set": {**_bson_safe(fields), "updated_at": utcnow()}})
        except PyMongoError as e:
            raise StoreError(f"Update on {collection} failed: {e}")
        return result.matched_count == 1

    def increment_field(self, collection, doc_id, field, amount=1):
        oid = self._oid(doc_id)
        if oid is None:
            return False
        try:
            result = self.db[collection].update_one({"_id": oid}, {"$inc": {field: amount}})
        except PyMongoError as e:
            raise StoreError(f"Update on {collection} failed: {e}")
        return result.matched_count == 1

    def delete_document(self, collection, doc_id):
        oid = self._oid(doc_id)
        if oid is None:
            return False
        try:
            return self.db[collection].delete_one({"_id": oid}).deleted_count == 1
        except PyMongoError as e:
            raise StoreError(f"Delete on {collection} failed: {e}")

    def ping(self):
        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    def list_collection_names(self):
        try:
            return self.db.list_collection_names()
        except PyMongoError as e:
            raise StoreError(str(e))

    def subscribe(self, collection, listener):
        # Change streams need a replica set; the stream thread logs and exits otherwise
        stop = threading.Event()

        def _run():
            try:
                with self.db[collection].watch(full_document="updateLookup") as stream:
                    while not stop.is_set():
                        change = stream.try_next()
                        if change is None:
                            stop.wait(0.5)
                            continue
                        doc = change.get("fullDocument") or {"_id": change["documentKey"]["_id"]}
                        listener(change["operationType"], serialize_doc(doc))
            except PyMongoError:
                logger.exception("Change stream on %s stopped", collection)

        threading.Thread(target=_run, name=f"watch-{collection}", daemon=True).start()
        return stop.set


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Cannot store {type(value).__name__}")


class LocalBackend(StorageBackend):
    """Demo-mode store kept in one JSON file.

    Not shared between processes and independent of the remote database, so the
    two record spaces can diverge.
    """

    name = "local"

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as fh:
                self._data = json.load(fh)

    def _normalize(self, d: Dict[str, Any]) -> Dict[str, Any]:
        return json.loads(json.dumps(d, default=_json_default))

    def _flush(self) -> None:
        tmp = f"{self.path}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, default=_json_default)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreError(f"Could not write {self.path}: {e}")

    def _collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(collection, {})

    def get_document(self, collection, doc_id):
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return {**doc, "id": doc_id} if doc is not None else None

    def get_documents(self, collection, filter_dict=None, order_by=None, descending=False, limit=None):
        filter_dict = self._normalize(filter_dict or {})
        with self._lock:
            docs = [
                {**doc, "id": doc_id}
                for doc_id, doc in self._collection(collection).items()
                if _matches(doc, filter_dict)
            ]
        if order_by:
            present = [d for d in docs if d.get(order_by) is not None]
            missing = [d for d in docs if d.get(order_by) is None]
            present.sort(key=lambda d: d[order_by], reverse=descending)
            docs = present + missing
        if limit:
            docs = docs[: int(limit)]
        return docs

    def _prepare(self, data):
        d = _as_dict(data)
        now = utcnow()
        if not d.get("created_at"):
            d["created_at"] = now
        d["updated_at"] = now
        return self._normalize(d)

    def create_document(self, collection, data, doc_id=None):
        d = self._prepare(data)
        doc_id = doc_id or new_id()
        with self._lock:
            self._collection(collection)[doc_id] = d
            self._flush()
        self._notify(collection, "insert", {**d, "id": doc_id})
        return doc_id

    def insert_if_absent(self, collection, data, unique):
        d = self._prepare(data)
        unique = self._normalize(unique)
        doc_id = new_id()
        with self._lock:
            docs = self._collection(collection)
            if any(_matches(existing, unique) for existing in docs.values()):
                return None
            docs[doc_id] = d
            self._flush()
        self._notify(collection, "insert", {**d, "id": doc_id})
        return doc_id

    def update_document(self, collection, doc_id, fields):
        return self.update_document_if(collection, doc_id, {}, fields)

    def update_document_if(self, collection, doc_id, expected, fields):
        expected = self._normalize(expected)
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None or not _matches(doc, expected):
                return False
            doc.update(self._normalize({**fields, "updated_at": utcnow()}))
            self._flush()
            snapshot = {**doc, "id": doc_id}
        self._notify(collection, "update", snapshot)
        return True

    def increment_field(self, collection, doc_id, field, amount=1):
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                return False
            doc[field] = (doc.get(field) or 0) + amount
            self._flush()
            snapshot = {**doc, "id": doc_id}
        self._notify(collection, "update", snapshot)
        return True

    def delete_document(self, collection, doc_id):
        with self._lock:
            doc = self._collection(collection).pop(doc_id, None)
            if doc is None:
                return False
            self._flush()
        self._notify(collection, "delete", {"id": doc_id})
        return True

    def ping(self):
        return True

    def list_collection_names(self):
        with self._lock:
            return sorted(self._data.keys())


def init_db(settings: Settings) -> StorageBackend:
    mode = settings.STORAGE_BACKEND.lower()
    if mode not in ("remote", "local", "auto"):
        raise ValueError(f"STORAGE_BACKEND must be remote, local or auto, not {mode!r}")

    if mode == "local":
        logger.info("Using local demo store at %s", settings.LOCAL_STORE_PATH)
        return LocalBackend(settings.LOCAL_STORE_PATH)

    if not settings.DATABASE_URL:
        if mode == "remote":
            raise StoreError("DATABASE_URL must be set when STORAGE_BACKEND=remote")
        logger.warning("DATABASE_URL not set, falling back to demo mode (%s)", settings.LOCAL_STORE_PATH)
        return LocalBackend(settings.LOCAL_STORE_PATH)

    remote = RemoteBackend(settings.DATABASE_URL, settings.DATABASE_NAME, settings.DB_TIMEOUT_MS)
    if mode == "auto" and not remote.ping():
        logger.warning("MongoDB unreachable, falling back to demo mode (%s)", settings.LOCAL_STORE_PATH)
        return LocalBackend(settings.LOCAL_STORE_PATH)
    logger.info("Using MongoDB database %s", settings.DATABASE_NAME)
    return remote
