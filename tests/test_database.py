import threading
from unittest.mock import MagicMock, patch

import pytest
from pymongo.errors import DuplicateKeyError

from config import Settings
from database import LocalBackend, RemoteBackend, StorageBackend, init_db
from errors import StoreError
from schemas import Sponsorship, load_record


def test_local_backend_persists_to_disk(tmp_path):
    path = str(tmp_path / "demo.json")
    store = LocalBackend(path)
    doc_id = store.create_document("user", {"name": "Demo Club", "role": "club"})

    reopened = LocalBackend(path)
    doc = reopened.get_document("user", doc_id)
    assert doc["name"] == "Demo Club"
    assert doc["id"] == doc_id
    assert doc["created_at"]


def test_local_backend_queries(store):
    store.create_document("conversation", {"participants": ["a", "b"], "n": 2})
    store.create_document("conversation", {"participants": ["b", "c"], "n": 1})
    store.create_document("conversation", {"participants": ["c", "d"], "n": 3})

    assert [d["n"] for d in store.get_documents("conversation", {"participants": "b"}, order_by="n")] == [1, 2]
    assert [d["n"] for d in store.get_documents("conversation", order_by="n", descending=True, limit=2)] == [3, 2]
    assert store.get_documents("missing") == []


def test_conditional_update_only_applies_when_expected_holds(store):
    doc_id = store.create_document("sponsorship", {"status": "active"})

    assert store.update_document_if("sponsorship", doc_id, {"status": "active"}, {"status": "funded"})
    assert not store.update_document_if("sponsorship", doc_id, {"status": "active"}, {"status": "funded"})
    assert store.get_document("sponsorship", doc_id)["status"] == "funded"
    assert not store.update_document_if("sponsorship", "nope", {}, {"status": "funded"})


def test_increment_and_delete(store):
    doc_id = store.create_document("sponsorship", {"view_count": 0})
    store.increment_field("sponsorship", doc_id, "view_count")
    store.increment_field("sponsorship", doc_id, "view_count", 2)
    assert store.get_document("sponsorship", doc_id)["view_count"] == 3

    assert store.delete_document("sponsorship", doc_id)
    assert not store.delete_document("sponsorship", doc_id)
    assert store.get_document("sponsorship", doc_id) is None


def test_subscribers_see_writes(store):
    events = []
    unsubscribe = store.subscribe("message", lambda op, doc: events.append((op, doc.get("text"))))
    doc_id = store.create_document("message", {"text": "hi"})
    store.update_document("message", doc_id, {"read": True})
    unsubscribe()
    store.delete_document("message", doc_id)

    assert events == [("insert", "hi"), ("update", "hi")]


def test_malformed_records_are_rejected(store):
    doc_id = store.create_document("sponsorship", {"title": "No amount", "status": "active"})
    with pytest.raises(StoreError):
        load_record(Sponsorship, store.get_document("sponsorship", doc_id))


def test_init_db_local_and_fallbacks(tmp_path):
    path = str(tmp_path / "demo.json")
    assert isinstance(init_db(Settings(STORAGE_BACKEND="local", LOCAL_STORE_PATH=path)), LocalBackend)
    assert isinstance(init_db(Settings(STORAGE_BACKEND="auto", DATABASE_URL="", LOCAL_STORE_PATH=path)), LocalBackend)
    with pytest.raises(StoreError):
        init_db(Settings(STORAGE_BACKEND="remote", DATABASE_URL=""))
    with pytest.raises(ValueError):
        init_db(Settings(STORAGE_BACKEND="sqlite"))


def test_init_db_auto_falls_back_when_mongo_unreachable(tmp_path):
    settings = Settings(STORAGE_BACKEND="auto", DATABASE_URL="mongodb://db:27017", LOCAL_STORE_PATH=str(tmp_path / "d.json"))
    with patch.object(RemoteBackend, "ping", return_value=False), patch("database.MongoClient"):
        assert isinstance(init_db(settings), LocalBackend)
    with patch.object(RemoteBackend, "ping", return_value=True), patch("database.MongoClient"):
        assert isinstance(init_db(settings), RemoteBackend)


def test_remote_backend_maps_ids_and_invalid_ids():
    client = MagicMock()
    backend = RemoteBackend("mongodb://db", "sponsorconnect", client=client)
    collection = client.__getitem__.return_value.__getitem__.return_value
    collection.find_one.return_value = {"_id": "65f000000000000000000001", "title": "Kit"}

    assert backend.get_document("sponsorship", "not-an-object-id") is None
    doc = backend.get_document("sponsorship", "65f000000000000000000001")
    assert doc == {"id": "65f000000000000000000001", "title": "Kit"}


def test_insert_if_absent_claims_a_key_once(store):
    first = store.insert_if_absent("agreement", {"payment_intent_id": "pi_1", "amount": 10}, {"payment_intent_id": "pi_1"})
    second = store.insert_if_absent("agreement", {"payment_intent_id": "pi_1", "amount": 20}, {"payment_intent_id": "pi_1"})
    other = store.insert_if_absent("agreement", {"payment_intent_id": "pi_2", "amount": 30}, {"payment_intent_id": "pi_2"})

    assert first and other
    assert second is None
    assert [d["amount"] for d in store.get_documents("agreement", {"payment_intent_id": "pi_1"})] == [10]


def test_insert_if_absent_under_concurrency(store):
    ids = []
    threads = [
        threading.Thread(target=lambda: ids.append(store.insert_if_absent("agreement", {"key": "k"}, {"key": "k"})))
        for _ in range(10)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len([i for i in ids if i is not None]) == 1
    assert len(store.get_documents("agreement")) == 1


def test_remote_insert_if_absent_uses_unique_index():
    client = MagicMock()
    backend = RemoteBackend("mongodb://db", "sponsorconnect", client=client)
    collection = client.__getitem__.return_value.__getitem__.return_value

    assert backend.insert_if_absent("agreement", {"payment_intent_id": "pi_1"}, {"payment_intent_id": "pi_1"})
    collection.create_index.assert_called_once_with([("payment_intent_id", 1)], unique=True)

    collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
    assert backend.insert_if_absent("agreement", {"payment_intent_id": "pi_1"}, {"payment_intent_id": "pi_1"}) is None
    assert collection.create_index.call_count == 1


def test_incomplete_backend_fails_at_construction():
    class HalfBackend(StorageBackend):
        def get_document(self, collection, doc_id):
            return None

    with pytest.raises(TypeError):
        HalfBackend()
