"""
Database Schemas for the Cargo Scan API

CargoRecord is the shape of a document in the "cargo" MongoDB collection.
Incoming payloads are checked by ``validate_cargo`` / ``validate_update``,
which return a ``Validation`` result instead of raising, so the HTTP layer
can report the first failing rule with a specific message.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError


AWB_PATTERN = re.compile(r"[0-9]{3}-[0-9]{8}")
AIRPORT_CODE_PATTERN = re.compile(r"[A-Za-z]{3}")
HANDLING_CODE_PATTERN = re.compile(r"[A-Za-z]{2,4}")
# Largest integer BSON can store.
MAX_PIECES = 2**63 - 1


class CargoStatus(str, Enum):
    AWAITING = "Awaiting"
    IN_PROGRESS = "In Progress"
    DONE = "Done"
    CANCELLED = "Cancelled"


STATUS_VALUES = [s.value for s in CargoStatus]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CargoRecord(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    awbNumber: str = Field(..., pattern=r"^[0-9]{3}-[0-9]{8}$", description="Air waybill number, e.g. 160-12345678")
    origin: str = Field(..., min_length=3, max_length=3, description="Origin IATA code")
    destination: str = Field(..., min_length=3, max_length=3, description="Destination IATA code")
    weight: str = Field("", description="Free text, e.g. '245.5 KG'")
    pieces: int = Field(..., ge=1, le=MAX_PIECES, description="Number of pieces")
    shipper: str = ""
    consignee: str = ""
    specialHandling: List[str] = Field(default_factory=list, description="Codes such as DGR, PER, VUN, CAO")
    status: CargoStatus = CargoStatus.AWAITING
    description: str = ""
    deadline: Optional[datetime] = None
    timestamp: datetime = Field(default_factory=utcnow, description="Creation time, set by the server")


class CargoUpdate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    origin: Optional[str] = Field(None, min_length=3, max_length=3)
    destination: Optional[str] = Field(None, min_length=3, max_length=3)
    weight: Optional[str] = None
    pieces: Optional[int] = Field(None, ge=1, le=MAX_PIECES)
    shipper: Optional[str] = None
    consignee: Optional[str] = None
    specialHandling: Optional[List[str]] = None
    status: Optional[CargoStatus] = None
    description: Optional[str] = None
    deadline: Optional[datetime] = None


# --------- Validation ---------
class ValidationFailure(str, Enum):
    NOT_AN_OBJECT = "not_an_object"
    MISSING_FIELDS = "missing_fields"
    INVALID_AWB = "invalid_awb"
    INVALID_AIRPORT_CODE = "invalid_airport_code"
    INVALID_PIECES = "invalid_pieces"
    INVALID_STATUS = "invalid_status"
    INVALID_HANDLING_CODE = "invalid_handling_code"
    IMMUTABLE_FIELD = "immutable_field"
    UNKNOWN_FIELD = "unknown_field"
    INVALID_FIELD = "invalid_field"
    EMPTY_UPDATE = "empty_update"


class Validation(NamedTuple):
    """Outcome of a validation run: either ``value`` or a failure."""

    value: Any = None
    failure: Optional[ValidationFailure] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None


REQUIRED_FIELDS = ("awbNumber", "origin", "destination", "pieces")
# Owned by the server; accepted on input so echoed records validate, then dropped.
SERVER_FIELDS = {"id", "_id", "__v", "timestamp"}
WRITABLE_FIELDS = set(CargoRecord.model_fields) - SERVER_FIELDS
NULLABLE_FIELDS = {"deadline"}

AWB_MESSAGE = "Invalid AWB number format. Expected XXX-XXXXXXXX"
AIRPORT_CODE_MESSAGE = "Origin and destination must be 3-letter airport codes"
PIECES_MESSAGE = f"Pieces must be a whole number between 1 and {MAX_PIECES}"
STATUS_MESSAGE = "Status must be one of: " + ", ".join(STATUS_VALUES)
HANDLING_MESSAGE = "Special handling must be a list of 2-4 letter codes"


def _fail(failure: ValidationFailure, message: str) -> Validation:
    return Validation(failure=failure, message=message)


def is_awb_number(value: Any) -> bool:
    return isinstance(value, str) and AWB_PATTERN.fullmatch(value) is not None


def is_airport_code(value: Any) -> bool:
    return isinstance(value, str) and AIRPORT_CODE_PATTERN.fullmatch(value) is not None


def _is_pieces(value: Any) -> bool:
    # bool is an int subclass; True must not count as one piece
    return isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= MAX_PIECES


def _is_handling_list(value: Any) -> bool:
    if not isinstance(value, list):
        return False
    return all(isinstance(c, str) and HANDLING_CODE_PATTERN.fullmatch(c) for c in value)


def _check_supplied(values: Mapping[str, Any]) -> Optional[Validation]:
    """Check every supplied field against its rule, in a fixed order."""
    if "awbNumber" in values and not is_awb_number(values["awbNumber"]):
        return _fail(ValidationFailure.INVALID_AWB, AWB_MESSAGE)
    for key in ("origin", "destination"):
        if key in values and not is_airport_code(values[key]):
            return _fail(ValidationFailure.INVALID_AIRPORT_CODE, AIRPORT_CODE_MESSAGE)
    if "pieces" in values and not _is_pieces(values["pieces"]):
        return _fail(ValidationFailure.INVALID_PIECES, PIECES_MESSAGE)
    if "status" in values and values["status"] not in STATUS_VALUES:
        return _fail(ValidationFailure.INVALID_STATUS, STATUS_MESSAGE)
    if "specialHandling" in values and not _is_handling_list(values["specialHandling"]):
        return _fail(ValidationFailure.INVALID_HANDLING_CODE, HANDLING_MESSAGE)

    unknown = sorted(set(values) - WRITABLE_FIELDS)
    if unknown:
        return _fail(ValidationFailure.UNKNOWN_FIELD, "Unknown field(s): " + ", ".join(unknown))
    for key, value in values.items():
        if value is None and key not in NULLABLE_FIELDS:
            return _fail(ValidationFailure.INVALID_FIELD, f"{key} cannot be null")
    return None


def _normalize(values: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(values)
    for key in ("origin", "destination"):
        if key in out:
            out[key] = out[key].upper()
    if "specialHandling" in out:
        codes: List[str] = []
        for code in out["specialHandling"]:
            code = code.upper()
            if code not in codes:
                codes.append(code)
        out["specialHandling"] = codes
    return out


def _describe(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err['msg']}" if loc else err["msg"]


def _strip_server_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k not in SERVER_FIELDS}


def validate_cargo(data: Any) -> Validation:
    """Validate a create payload.

    Checks run in order: required fields, AWB format, airport codes,
    pieces, status, special handling codes, then field types. On success
    ``value`` holds a ``CargoRecord``.
    """
    if not isinstance(data, Mapping):
        return _fail(ValidationFailure.NOT_AN_OBJECT, "Cargo record must be a JSON object")
    values = _strip_server_fields(data)

    missing = [f for f in REQUIRED_FIELDS if values.get(f) in (None, "")]
    if missing:
        return _fail(ValidationFailure.MISSING_FIELDS, "Missing required fields: " + ", ".join(missing))

    failed = _check_supplied(values)
    if failed is not None:
        return failed

    try:
        record = CargoRecord(**_normalize(values))
    except PydanticValidationError as exc:
        return _fail(ValidationFailure.INVALID_FIELD, _describe(exc))
    return Validation(value=record)


def validate_update(data: Any, awb_number: str) -> Validation:
    """Validate a partial update for the record keyed by ``awb_number``.

    Only the supplied fields are checked. On success ``value`` is a dict of
    normalized changes, ready for ``$set``.
    """
    if not isinstance(data, Mapping):
        return _fail(ValidationFailure.NOT_AN_OBJECT, "Cargo update must be a JSON object")
    values = _strip_server_fields(data)

    if "awbNumber" in values:
        if values["awbNumber"] != awb_number:
            return _fail(ValidationFailure.IMMUTABLE_FIELD, "AWB number cannot be changed")
        del values["awbNumber"]
    if not values:
        return _fail(ValidationFailure.EMPTY_UPDATE, "No fields to update")

    failed = _check_supplied(values)
    if failed is not None:
        return failed

    try:
        update = CargoUpdate(**_normalize(values))
    except PydanticValidationError as exc:
        return _fail(ValidationFailure.INVALID_FIELD, _describe(exc))
    return Validation(value=update.model_dump(exclude_unset=True))


def parse_cargo(data: Any) -> CargoRecord:
    result = validate_cargo(data)
    if not result.ok:
        raise ValidationError(result.message, result.failure)
    return result.value


def parse_update(data: Any, awb_number: str) -> Dict[str, Any]:
    result = validate_update(data, awb_number)
    if not result.ok:
        raise ValidationError(result.message, result.failure)
    return result.value


def parse_status(value: str) -> CargoStatus:
    """Resolve a status from a URL or query string, ignoring case."""
    for status in CargoStatus:
        if status.value.lower() == value.strip().lower():
            return status
    raise ValidationError(STATUS_MESSAGE, ValidationFailure.INVALID_STATUS)
