"""
MongoDB access layer.

``Database`` is the process-wide store collaborator. It is built once at app
start (``Database.connect``) and handed to every service, never imported as a
module global. Store writes that must commit together go through
``unit_of_work()``.
"""
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar, Union

import structlog
from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from errors import BadRequest

log = structlog.get_logger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: Union[str, ObjectId]) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except Exception:
        raise BadRequest(f"Invalid id: {id_str}")


def serialize(doc):
    if not doc:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


class UnitOfWork:
    """A group of store calls that commit or abort together."""

    def __init__(self, session=None):
        self.session = session

    @property
    def opts(self) -> Dict[str, Any]:
        # pass as **uow.opts to every collection call made inside the unit
        return {"session": self.session} if self.session is not None else {}


def opts(uow: Optional[UnitOfWork]) -> Dict[str, Any]:
    return uow.opts if uow is not None else {}


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, PyMongoError) and exc.has_error_label("TransientTransactionError")


class Database:
    def __init__(self, client: MongoClient, name: str, transactions: bool = True):
        self.client = client
        self.db = client[name]
        self.name = name
        self.use_transactions = transactions

    @classmethod
    def connect(cls, settings) -> "Database":
        client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=5000, tz_aware=True)
        log.info("database.connect", database=settings.DATABASE_NAME, transactions=settings.MONGO_TRANSACTIONS)
        if not settings.MONGO_TRANSACTIONS:
            log.error("database.transactions_disabled",
                      detail="checkout and payment units will not roll back on failure; run a replica set")
        return cls(client, settings.DATABASE_NAME, transactions=settings.MONGO_TRANSACTIONS)

    def close(self) -> None:
        self.client.close()

    def collection(self, name: str):
        return self.db[name]

    @property
    def users(self):
        return self.db["user"]

    @property
    def products(self):
        return self.db["product"]

    @property
    def carts(self):
        return self.db["cart"]

    @property
    def wishlists(self):
        return self.db["wishlist"]

    @property
    def orders(self):
        return self.db["order"]

    @property
    def transactions(self):
        return self.db["transaction"]

    @property
    def notifications(self):
        return self.db["notification"]

    def ensure_indexes(self) -> None:
        self.transactions.create_index([("reference", ASCENDING)], unique=True)
        self.transactions.create_index([("user_id", ASCENDING)])
        self.transactions.create_index([("created_at", DESCENDING)])
        self.carts.create_index([("user_id", ASCENDING)], unique=True)
        self.wishlists.create_index([("user_id", ASCENDING)], unique=True)
        self.orders.create_index([("customer_id", ASCENDING)])
        self.orders.create_index([("order_items.stylist_id", ASCENDING)])
        self.orders.create_index([("created_at", DESCENDING)])
        self.notifications.create_index([("recipient", ASCENDING), ("read", ASCENDING)])

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        """Begin on enter, commit on normal exit, abort on any exception.

        Without transactions each write commits on its own, so a unit that
        fails halfway keeps its earlier writes; that failure is logged as an
        error before it propagates.
        """
        if not self.use_transactions:
            try:
                yield UnitOfWork()
            except Exception as exc:
                log.error("database.unit_not_rolled_back", error=str(exc), exc_info=True)
                raise
            return
        with self.client.start_session() as session:
            with session.start_transaction():
                yield UnitOfWork(session)

    def insert_document(self, collection_name: str, data: Union[BaseModel, dict], uow: Optional[UnitOfWork] = None) -> dict:
        if isinstance(data, BaseModel):
            data_dict = data.model_dump()
        else:
            data_dict = dict(data)
        now = utcnow()
        data_dict.setdefault("created_at", now)
        data_dict["updated_at"] = now
        result = self.collection(collection_name).insert_one(data_dict, **opts(uow))
        data_dict["_id"] = result.inserted_id
        return data_dict

    def create_document(self, collection_name: str, data: Union[BaseModel, dict], uow: Optional[UnitOfWork] = None) -> str:
        return str(self.insert_document(collection_name, data, uow)["_id"])

    def get_documents(self, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
        cursor = self.collection(collection_name).find(filter_dict or {})
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def run_atomic(self, work: Callable[[UnitOfWork], T], attempts: int = 5, backoff: float = 0.05) -> T:
        """Run ``work`` inside one unit of work, re-running it on transient write conflicts."""
        for attempt in range(1, attempts + 1):
            try:
                with self.unit_of_work() as uow:
                    return work(uow)
            except PyMongoError as exc:
                if attempt == attempts or not is_transient(exc):
                    raise
                log.warning("database.unit_retry", attempt=attempt, error=str(exc))
                # the conflicting unit holds its writes until it commits
                time.sleep(backoff * attempt)
