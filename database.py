"""
Database helpers

MongoDB access for the storefront. Each entity lives in its own collection
(lowercase singular name) and uses integer ids drawn from the ``counters``
collection. Money is stored as integer minor units in ``*_cents`` fields.
"""
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from functools import partial, wraps
from typing import Any, Callable, Dict, Iterator, List, Optional

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern
from pydantic import BaseModel

from config import get_settings

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        settings = get_settings()
        _client = MongoClient(settings.database_url, tz_aware=True)
    return _client


def get_db():
    return get_client()[get_settings().database_name]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_id(db, name: str) -> int:
    counter = db["counters"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]


def new_document(db, collection_name: str, data: Any) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    now = utcnow()
    doc["_id"] = next_id(db, collection_name)
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    return doc


def create_document(db, collection_name: str, data: Any) -> int:
    doc = new_document(db, collection_name, data)
    db[collection_name].insert_one(doc)
    return doc["_id"]


def get_documents(db, collection_name: str, filter_dict: Optional[Dict] = None, limit: int = 0,
                  sort: Optional[List] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(db) -> None:
    db["product"].create_index([("slug", ASCENDING)], unique=True)
    db["product"].create_index([("category_id", ASCENDING)])
    db["category"].create_index([("slug", ASCENDING)], unique=True)
    db["cart_item"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    db["address"].create_index([("user_id", ASCENDING)])
    db["order"].create_index([("user_id", ASCENDING)])
    db["order"].create_index([("shipping_address_id", ASCENDING)])
    db["order_item"].create_index([("order_id", ASCENDING)])
    db["order_item"].create_index([("product_id", ASCENDING)])
    db["review"].create_index([("product_id", ASCENDING)])
    db["idempotency_key"].create_index([("user_id", ASCENDING), ("key", ASCENDING)], unique=True)


def to_cents(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1")))


def from_cents(cents: Optional[int]) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(Decimal("0.01"))


def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = v
        elif k.endswith("_cents"):
            out[k[:-len("_cents")]] = from_cents(v)
        elif hasattr(v, "isoformat"):
            out[k] = v.isoformat()
        else:
            out[k] = v
    return out


class UnitOfWork:
    """Writes made inside ``transaction()``.

    ``session`` is the MongoDB session to pass to every read and write, or
    ``None`` in compensation mode. Compensating actions are recorded for
    every write and only run in compensation mode.
    """

    def __init__(self, db, session=None):
        self.db = db
        self.session = session
        self._compensations: List[Callable[[], Any]] = []

    def insert_one(self, collection_name: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        collection = self.db[collection_name]
        collection.insert_one(doc, session=self.session)
        self.on_rollback(collection.delete_one, {"_id": doc["_id"]})
        return doc

    def on_rollback(self, fn: Callable, *args, **kwargs) -> None:
        self._compensations.append(partial(fn, *args, **kwargs))

    def rollback(self) -> None:
        while self._compensations:
            undo = self._compensations.pop()
            try:
                undo()
            except Exception:
                logger.exception("Compensating action failed during rollback")


@contextmanager
def transaction(db, use_sessions: Optional[bool] = None) -> Iterator[UnitOfWork]:
    """All-or-nothing unit of work.

    Commits only when the block exits normally; any exception rolls the
    unit back and is re-raised.
    """
    if use_sessions is None:
        use_sessions = get_settings().mongo_transactions
    if use_sessions:
        with db.client.start_session() as session:
            with session.start_transaction(
                read_concern=ReadConcern("snapshot"),
                write_concern=WriteConcern("majority"),
            ):
                yield UnitOfWork(db, session)
        return

    uow = UnitOfWork(db)
    try:
        yield uow
    except BaseException:
        uow.rollback()
        raise


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, PyMongoError) and exc.has_error_label("TransientTransactionError")


def retry_on_transient_abort(max_attempts: int = 3, backoff: float = 0.05):
    """Re-run a whole unit of work when MongoDB aborts it as transient.

    Only wrap functions that undo their own side effects before raising.
    """
    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                attempt += 1
                try:
                    return fn(*args, **kwargs)
                except PyMongoError as exc:
                    if attempt >= max_attempts or not is_transient(exc):
                        raise
                    logger.warning("Transient transaction abort in %s (attempt %d/%d), retrying",
                                   fn.__name__, attempt, max_attempts)
                    time.sleep(backoff * attempt)
        return wrapper
    return deco
