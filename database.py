"""
MongoDB access layer.

A single ``Store`` wraps the shared ``MongoClient`` pool. It is created in the
app lifespan and handed to request handlers through ``get_store`` so tests can
substitute their own client.

Collection names are the lowercased entity names (Quote -> "quote").
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from bson import ObjectId
from fastapi import Request
from pydantic import BaseModel
from pymongo import MongoClient, monitoring
from pymongo.errors import ConnectionFailure, PyMongoError

from errors import GracelogError, InternalError, ServiceUnavailable
from schemas import utc_now

logger = logging.getLogger(__name__)

# (collection, field) pairs that carry a unique index
UNIQUE_INDEXES = (
    ("quote", "referenceNo"),
    ("newsletter", "email"),
)


class ConnectivityListener(monitoring.TopologyListener):
    """Tracks whether the driver currently knows a writable server."""

    def __init__(self):
        self.connected = False

    def opened(self, event):
        pass

    def description_changed(self, event):
        connected = event.new_description.has_writable_server()
        if connected != self.connected:
            if connected:
                logger.info("MongoDB connected")
            else:
                logger.warning("MongoDB disconnected")
        self.connected = connected

    def closed(self, event):
        self.connected = False


class Store:
    def __init__(
        self,
        client: Any,
        database_name: str,
        listener: Optional[ConnectivityListener] = None,
        connected: bool = True,
    ):
        self.client = client
        self.db = client[database_name]
        self._listener = listener
        self._connected = connected
        self._indexes_ready = False
        self._index_lock = threading.Lock()

    @classmethod
    def connect(cls, url: str, database_name: str, timeout_ms: int = 5000) -> "Store":
        """Build a store whose connectivity follows the driver's topology events."""
        listener = ConnectivityListener()
        client = MongoClient(url, serverSelectionTimeoutMS=timeout_ms, event_listeners=[listener])
        return cls(client, database_name, listener=listener, connected=False)

    @property
    def connected(self) -> bool:
        if self._listener is not None:
            return self._listener.connected
        return self._connected

    def ping(self) -> None:
        self.client.admin.command("ping")

    def ensure_indexes(self) -> None:
        with self._index_lock:
            if self._indexes_ready:
                return
            for name, field in UNIQUE_INDEXES:
                self.db[name].create_index(field, unique=True)
            self._indexes_ready = True

    def collection(self, name: str):
        if not self.connected:
            raise ServiceUnavailable()
        if not self._indexes_ready:
            self.ensure_indexes()
        return self.db[name]

    def close(self) -> None:
        self.client.close()


def get_store(request: Request) -> Store:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise ServiceUnavailable()
    return store


def isoformat_utc(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a trailing Z. Naive values are taken as UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


def to_dict(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {key: isoformat_utc(value) if isinstance(value, datetime) else value for key, value in doc.items()}
    _id = d.pop("_id", None)
    if isinstance(_id, ObjectId):
        d["id"] = str(_id)
    return d


def create_document(store: Store, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping ``createdAt`` when absent. Returns the new id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    doc.setdefault("createdAt", utc_now())
    result = store.collection(collection_name).insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    store: Store,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    """Newest-first page of documents matching ``filter_dict``."""
    cursor = store.collection(collection_name).find(filter_dict or {}).sort("createdAt", -1)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return [to_dict(doc) for doc in cursor]


def count_documents(store: Store, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
    return store.collection(collection_name).count_documents(filter_dict or {})


@contextmanager
def store_errors(message: str) -> Iterator[None]:
    """Translate driver failures raised inside the block into application errors."""
    try:
        yield
    except GracelogError:
        raise
    except ConnectionFailure as e:
        logger.error("%s: %s", message, e)
        raise ServiceUnavailable() from e
    except PyMongoError as e:
        logger.exception(message)
        raise InternalError(message, detail=str(e)) from e


def check_connection(store: Store) -> bool:
    """One bounded ping, used at startup. Failures are logged, never raised."""
    try:
        store.ping()
    except PyMongoError as e:
        logger.error("MongoDB connection error: %s", e)
        logger.error("Server will continue but database operations may fail")
        return False
    logger.info("MongoDB connected successfully")
    return True
