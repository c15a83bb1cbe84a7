"""
MongoDB record store for cargo shipments.

``CargoStore`` wraps a single pymongo collection handed in by the caller.
The unique index on ``awbNumber`` is the only serialization point: a
duplicate insert is rejected by MongoDB and surfaced as ``DuplicateKey``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence

from bson import ObjectId
from bson.errors import BSONError
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings
from errors import CargoError, DuplicateKey, InternalError, ValidationError
from schemas import CargoRecord, parse_cargo, parse_status, parse_update

logger = logging.getLogger(__name__)

FILTER_FIELDS = ("status", "origin", "destination", "specialHandling")


def connect(settings: Settings) -> MongoClient:
    # MongoClient connects lazily; nothing touches the network until the first command.
    return MongoClient(settings.database_url, serverSelectionTimeoutMS=settings.mongo_timeout_ms)


def to_bson_datetime(value: datetime) -> datetime:
    """Naive UTC with millisecond precision, which is what BSON stores."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def _to_document(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: to_bson_datetime(v) if isinstance(v, datetime) else v for k, v in values.items()}


def build_filter(criteria: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Translate optional criteria into a conjunctive Mongo filter.

    Empty values are ignored. ``specialHandling`` may be one code or a list;
    every listed code must be present on a matching record.
    """
    flt: Dict[str, Any] = {}
    if not criteria:
        return flt
    unknown = sorted(set(criteria) - set(FILTER_FIELDS))
    if unknown:
        raise ValidationError("Unsupported filter field(s): " + ", ".join(unknown))

    status = criteria.get("status")
    if status:
        flt["status"] = parse_status(str(getattr(status, "value", status))).value
    for key in ("origin", "destination"):
        if criteria.get(key):
            flt[key] = str(criteria[key]).strip().upper()

    codes = criteria.get("specialHandling")
    if isinstance(codes, str):
        codes = [codes]
    codes = [c.strip().upper() for c in (codes or []) if c and c.strip()]
    if len(codes) == 1:
        flt["specialHandling"] = codes[0]
    elif codes:
        flt["specialHandling"] = {"$all": codes}
    return flt


class BulkFailure(NamedTuple):
    index: int
    awbNumber: Optional[str]
    message: str


class BulkResult(NamedTuple):
    inserted: List[Dict[str, Any]]
    failed: List[BulkFailure]


class CargoStore:
    """Keyed storage of cargo records over one MongoDB collection."""

    def __init__(self, collection: Collection):
        self.collection = collection
        self.indexes_ready = False

    @property
    def name(self) -> str:
        return self.collection.name

    def ensure_indexes(self) -> None:
        self.collection.create_index([("awbNumber", ASCENDING)], unique=True)
        self.collection.create_index([("status", ASCENDING)])
        self.indexes_ready = True

    def _require_unique_index(self) -> None:
        # Without the unique index MongoDB would accept duplicate AWBs.
        if self.indexes_ready:
            return
        try:
            self.ensure_indexes()
        except PyMongoError as exc:
            logger.error("Unique AWB index unavailable: %s", exc)
            raise InternalError("Cargo store is not ready")

    def count(self) -> int:
        return self.collection.count_documents({})

    def insert(self, record) -> Dict[str, Any]:
        """Persist a new record and return the stored document.

        ``record`` is a ``CargoRecord`` or a raw mapping, which is validated
        first. Raises ``ValidationError``, ``DuplicateKey`` or, when MongoDB
        rejects the write for any other reason, ``InternalError``.
        """
        if not isinstance(record, CargoRecord):
            record = parse_cargo(record)
        self._require_unique_index()
        doc = _to_document(record.model_dump())
        doc["_id"] = ObjectId()
        try:
            self.collection.insert_one(doc)
        except DuplicateKeyError:
            logger.info("Rejected duplicate AWB %s", record.awbNumber)
            raise DuplicateKey(record.awbNumber)
        except (PyMongoError, BSONError, OverflowError) as exc:
            logger.error("Could not store cargo %s: %s", record.awbNumber, exc)
            raise InternalError(f"Could not store cargo {record.awbNumber}")
        logger.info("Inserted cargo %s (%s -> %s)", record.awbNumber, record.origin, record.destination)
        return doc

    def insert_many(self, records: Sequence[Any]) -> BulkResult:
        """Insert each element independently; failures do not stop the rest."""
        inserted: List[Dict[str, Any]] = []
        failed: List[BulkFailure] = []
        for index, item in enumerate(records):
            try:
                inserted.append(self.insert(item))
            except CargoError as exc:
                awb = item.get("awbNumber") if isinstance(item, Mapping) else None
                failed.append(BulkFailure(index, awb, exc.message))
        logger.info("Bulk insert finished: %d inserted, %d failed", len(inserted), len(failed))
        return BulkResult(inserted, failed)

    def find_all(self, criteria: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        return list(self.collection.find(build_filter(criteria)))

    def find_one(self, awb_number: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"awbNumber": awb_number})

    def update_by_key(self, awb_number: str, fields: Any) -> Optional[Dict[str, Any]]:
        """Apply a validated partial update; ``None`` when the key is absent."""
        changes = parse_update(fields, awb_number)
        doc = self.collection.find_one_and_update(
            {"awbNumber": awb_number},
            {"$set": _to_document(changes)},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.info("Update skipped, AWB %s not found", awb_number)
            return None
        logger.info("Updated cargo %s: %s", awb_number, ", ".join(sorted(changes)))
        return doc

    def seed(self, records: Sequence[Any]) -> int:
        """Insert ``records`` only when the collection is empty."""
        if self.count() > 0:
            return 0
        result = self.insert_many(records)
        logger.info("Seeded %d sample cargo records", len(result.inserted))
        return len(result.inserted)
