import threading

import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError, ExecutionTimeout, OperationFailure

from database import Store, object_id, to_public, translate_errors
from errors import AlreadyExists, Conflict, Internal, Timeout
from locks import KeyedLock


class TestTranslateErrors:
    def test_timeout(self):
        with pytest.raises(Timeout) as exc_info:
            with translate_errors("Error retrieving cart"):
                raise ExecutionTimeout("operation exceeded time limit")
        assert exc_info.value.status_code == 504
        assert exc_info.value.message == "Error retrieving cart"

    def test_duplicate_key(self):
        with pytest.raises(AlreadyExists):
            with translate_errors():
                raise DuplicateKeyError("E11000 duplicate key")

    def test_other_failures_are_internal(self):
        with pytest.raises(Internal) as exc_info:
            with translate_errors("Error saving cart"):
                raise OperationFailure("boom")
        assert "boom" in exc_info.value.error
        assert exc_info.value.to_dict()["message"] == "Error saving cart"

    def test_passes_through_other_exceptions(self):
        with pytest.raises(KeyError):
            with translate_errors():
                raise KeyError("x")


class TestDocumentHelpers:
    def test_object_id(self):
        oid = ObjectId()
        assert object_id(oid) is oid
        assert object_id(str(oid)) == oid
        assert object_id("nope") is None
        assert object_id(None) is None

    def test_to_public(self):
        oid, inner = ObjectId(), ObjectId()
        doc = {"_id": oid, "items": [{"_id": inner, "book_id": inner, "quantity": 1}]}
        assert to_public(doc) == {"id": str(oid), "items": [{"id": str(inner), "book_id": str(inner), "quantity": 1}]}

    def test_update_matches_unchanged_document(self, store):
        doc_id = store.create_document("category", {"name": "Poetry"})
        assert store.update_document("category", doc_id, {"name": "Poetry"}) is True
        assert store.update_document("category", ObjectId(), {"name": "Poetry"}) is False


class TestKeyedLock:
    def test_times_out_while_held(self):
        locks = KeyedLock(timeout=0.05)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold("cart:u1"):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        try:
            with pytest.raises(Timeout):
                with locks.hold("cart:u1"):
                    pass
            # other keys are independent
            with locks.hold("cart:u2"):
                pass
        finally:
            release.set()
            thread.join()

    def test_entries_are_dropped(self):
        locks = KeyedLock()
        with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0


class _Session:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def with_transaction(self, callback):
        return callback(self)


class _SessionClient(mongomock.MongoClient):
    def start_session(self, **kwargs):
        return _Session()


class TestRunInTransaction:
    def test_passes_session_and_returns_result(self):
        store = Store(_SessionClient(), "bookstore_test", use_transactions=True)
        session, result = store.run_in_transaction(lambda s: (s, 42))
        assert isinstance(session, _Session)
        assert result == 42

    def test_driver_failure_is_internal(self):
        store = Store(_SessionClient(), "bookstore_test", use_transactions=True)

        def fail(session):
            raise OperationFailure("commit failed")

        with pytest.raises(Internal, match="Transaction failed"):
            store.run_in_transaction(fail)

    def test_domain_errors_pass_through(self):
        store = Store(_SessionClient(), "bookstore_test", use_transactions=True)

        def conflict(session):
            raise Conflict("Cart was modified concurrently")

        with pytest.raises(Conflict):
            store.run_in_transaction(conflict)
