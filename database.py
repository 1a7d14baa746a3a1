"""
Database Store

MongoDB access for the whole application. A Store is built once at process
start, opened (indexes ensured), handed to every component, and closed at
shutdown. Driver failures are translated into the error taxonomy in errors.py.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import (
    DuplicateKeyError,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from config import Settings
from errors import AlreadyExists, Internal, Timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TIMEOUT_ERRORS = (ExecutionTimeout, NetworkTimeout, ServerSelectionTimeoutError, WTimeoutError)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def translate_errors(action: str = "Database operation failed") -> Iterator[None]:
    """Convert pymongo failures raised inside the block into BookstoreErrors"""
    try:
        yield
    except DuplicateKeyError as e:
        raise AlreadyExists("Duplicate entry", str(e)) from e
    except PyMongoError as e:
        if isinstance(e, _TIMEOUT_ERRORS) or getattr(e, "timeout", False):
            logger.warning("%s: storage timeout: %s", action, e)
            raise Timeout(action, str(e)) from e
        logger.error("%s: %s", action, e)
        raise Internal(action, str(e)) from e


def object_id(value: Any) -> Optional[ObjectId]:
    """Parse a client-supplied id; None when it is not a valid ObjectId"""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def to_public(value: Any) -> Any:
    """Render a stored document as JSON-ready data (`_id` -> `id`, ObjectId -> str)"""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [to_public(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            out["id" if key == "_id" else key] = to_public(item)
        return out
    return value


class Store:
    """Injected handle over one MongoDB database"""

    def __init__(self, client: MongoClient, database_name: str, use_transactions: bool = False):
        self.client = client
        self.db = client[database_name]
        self.use_transactions = use_transactions

    @classmethod
    def from_settings(cls, settings: Settings) -> "Store":
        if not settings.database_url:
            raise Internal(
                "Database not available",
                "Check DATABASE_URL and DATABASE_NAME environment variables.",
            )
        client = MongoClient(settings.database_url, timeoutMS=settings.db_timeout_ms, tz_aware=True)
        return cls(client, settings.database_name, use_transactions=settings.use_transactions)

    def __getitem__(self, collection_name: str) -> Collection:
        return self.db[collection_name]

    # ------------------------- Lifecycle ------------------------------
    def open(self) -> None:
        with translate_errors("Failed to prepare indexes"):
            self.db["cart"].create_index([("user_id", ASCENDING)], unique=True)
            self.db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
            self.db["user"].create_index([("email", ASCENDING)], unique=True)
            self.db["user"].create_index([("username", ASCENDING)], unique=True)
            self.db["book"].create_index([("categories", ASCENDING)])
            self.db["review"].create_index([("book_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
            self.db["savedbook"].create_index([("book_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        logger.info("Store opened on database %s", self.db.name)

    def close(self) -> None:
        self.client.close()
        logger.info("Store closed")

    def run_in_transaction(self, callback: Callable[[Any], T]) -> T:
        """Run callback(session) so its writes commit together or not at all.

        The driver retries the callback on transient transaction errors and
        retries the commit when its outcome is unknown.
        """
        with translate_errors("Transaction failed"):
            with self.client.start_session() as session:
                return session.with_transaction(callback)

    # ------------------------- Document helpers -----------------------
    def create_document(self, collection_name: str, data: Union[BaseModel, dict], session=None) -> ObjectId:
        """Insert a single document with timestamps"""
        if isinstance(data, BaseModel):
            data_dict = data.model_dump()
        else:
            data_dict = data.copy()

        now = utcnow()
        data_dict["created_at"] = now
        data_dict["updated_at"] = now

        with translate_errors(f"Error creating {collection_name}"):
            result = self.db[collection_name].insert_one(data_dict, session=session)
        return result.inserted_id

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[dict] = None,
        limit: Optional[int] = None,
        sort: Optional[list] = None,
        projection: Optional[dict] = None,
    ) -> List[Dict[str, Any]]:
        with translate_errors(f"Error retrieving {collection_name}"):
            cursor = self.db[collection_name].find(filter_dict or {}, projection)
            if sort:
                cursor = cursor.sort(sort)
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

    def get_document_by_id(
        self, collection_name: str, doc_id: Any, projection: Optional[dict] = None
    ) -> Optional[Dict[str, Any]]:
        oid = object_id(doc_id)
        if oid is None:
            return None
        with translate_errors(f"Error retrieving {collection_name}"):
            return self.db[collection_name].find_one({"_id": oid}, projection)

    def find_one(self, collection_name: str, filter_dict: dict, projection: Optional[dict] = None):
        with translate_errors(f"Error retrieving {collection_name}"):
            return self.db[collection_name].find_one(filter_dict, projection)

    def update_document(self, collection_name: str, doc_id: Any, data: dict, session=None) -> bool:
        """$set fields and updated_at; False when nothing matched"""
        oid = object_id(doc_id)
        if oid is None:
            return False
        data = data.copy()
        data["updated_at"] = utcnow()
        with translate_errors(f"Error updating {collection_name}"):
            res = self.db[collection_name].update_one({"_id": oid}, {"$set": data}, session=session)
        return res.matched_count > 0

    def delete_document(self, collection_name: str, doc_id: Any, session=None) -> bool:
        oid = object_id(doc_id)
        if oid is None:
            return False
        with translate_errors(f"Error deleting {collection_name}"):
            res = self.db[collection_name].delete_one({"_id": oid}, session=session)
        return res.deleted_count > 0

    def count(self, collection_name: str, filter_dict: Optional[dict] = None) -> int:
        with translate_errors(f"Error counting {collection_name}"):
            return self.db[collection_name].count_documents(filter_dict or {})

    def aggregate(self, collection_name: str, pipeline: List[dict]) -> List[Dict[str, Any]]:
        with translate_errors(f"Error aggregating {collection_name}"):
            return list(self.db[collection_name].aggregate(pipeline))

    def list_collections(self) -> List[str]:
        with translate_errors("Error listing collections"):
            return self.db.list_collection_names()
