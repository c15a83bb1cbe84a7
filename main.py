import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, settings as default_settings
from database import CargoStore, connect
from errors import CargoError, InternalError, NotFound, ValidationError
from logging_config import setup_logging
from schemas import CargoStatus, parse_cargo, parse_status

logger = logging.getLogger(__name__)


def format_timestamp(value: datetime) -> str:
    """Render as ``yyyy-MM-ddTHH:mm:ss.SSSZ`` in UTC, the format the scanner app decodes."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def serialize_cargo(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    out: Dict[str, Any] = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        elif key == "__v":
            continue
        elif isinstance(value, datetime):
            out[key] = format_timestamp(value)
        else:
            out[key] = value
    return out


def _serialize_all(docs) -> List[Dict[str, Any]]:
    return [serialize_cargo(d) for d in docs]


# --------- Dependencies ---------
def get_store(request: Request) -> CargoStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise InternalError("Database not configured")
    return store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


# --------- Seed data ---------
def sample_cargo() -> List[Dict[str, Any]]:
    now = datetime.now(timezone.utc)
    return [
        {
            "awbNumber": "160-12345678",
            "origin": "HKG",
            "destination": "LAX",
            "weight": "245.5 KG",
            "pieces": 3,
            "shipper": "ABC Electronics Ltd",
            "consignee": "XYZ Trading Co",
            "specialHandling": ["PER", "VUN"],
            "status": CargoStatus.AWAITING.value,
            "description": "Electronic Components",
            "deadline": now + timedelta(hours=1),
        },
        {
            "awbNumber": "160-87654321",
            "origin": "PVG",
            "destination": "SIN",
            "weight": "1,240 KG",
            "pieces": 8,
            "shipper": "Global Tech Manufacturing",
            "consignee": "Singapore Electronics",
            "specialHandling": ["DGR", "CAO"],
            "status": CargoStatus.IN_PROGRESS.value,
            "description": "Industrial Equipment",
            "deadline": now + timedelta(hours=2),
        },
    ]


# --------- Basic endpoints ---------
meta = APIRouter()


@meta.get("/")
def root():
    return {"message": "Cargo Scan API ready"}


@meta.get("/health")
def health(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "timestamp": format_timestamp(datetime.now(timezone.utc)),
        "environment": settings.environment,
    }


@meta.get("/test")
def test_database(request: Request, settings: Settings = Depends(get_settings)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": settings.database_name,
        "connection_status": "Not Connected",
        "collection": None,
        "records": None,
    }
    store = getattr(request.app.state, "store", None)
    if store is None:
        return response
    try:
        response["records"] = store.count()
        response["collection"] = store.name
        response["database"] = "✅ Connected"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response


# --------- Cargo ---------
cargo = APIRouter(prefix="/api/cargo")


@cargo.get("")
def list_cargo(store: CargoStore = Depends(get_store)):
    return _serialize_all(store.find_all())


@cargo.get("/awaiting")
def list_awaiting(store: CargoStore = Depends(get_store)):
    return _serialize_all(store.find_all({"status": CargoStatus.AWAITING}))


@cargo.get("/history")
def list_history(store: CargoStore = Depends(get_store)):
    return _serialize_all(store.find_all({"status": CargoStatus.DONE}))


@cargo.get("/search")
def search_cargo(
    origin: Optional[str] = Query(None),
    destination: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    specialHandling: Optional[List[str]] = Query(None, description="Repeat or comma-separate codes"),
    store: CargoStore = Depends(get_store),
):
    codes: List[str] = []
    for value in specialHandling or []:
        codes.extend(c for c in value.split(",") if c.strip())
    criteria = {
        "origin": origin,
        "destination": destination,
        "status": status,
        "specialHandling": codes,
    }
    return _serialize_all(store.find_all(criteria))


@cargo.get("/awb/{awb_number}")
def get_cargo(awb_number: str, store: CargoStore = Depends(get_store)):
    doc = store.find_one(awb_number)
    if not doc:
        raise NotFound()
    return serialize_cargo(doc)


@cargo.get("/status/{status}")
def list_by_status(status: str, store: CargoStore = Depends(get_store)):
    return _serialize_all(store.find_all({"status": parse_status(status)}))


@cargo.post("", status_code=201)
def create_cargo(payload: Any = Body(...), store: CargoStore = Depends(get_store)):
    record = parse_cargo(payload)
    return serialize_cargo(store.insert(record))


@cargo.post("/bulk")
def bulk_create_cargo(payload: Any = Body(...), store: CargoStore = Depends(get_store)):
    if not isinstance(payload, list):
        raise ValidationError("Bulk insert expects a JSON array of cargo records")
    result = store.insert_many(payload)
    return {
        "insertedCount": len(result.inserted),
        "inserted": _serialize_all(result.inserted),
        "failed": [f._asdict() for f in result.failed],
    }


@cargo.put("/{awb_number}")
def update_cargo(awb_number: str, payload: Any = Body(...), store: CargoStore = Depends(get_store)):
    doc = store.update_by_key(awb_number, payload)
    if not doc:
        raise NotFound()
    return serialize_cargo(doc)


# --------- Application ---------
def _message(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


def create_app(store: Optional[CargoStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the API.

    When ``store`` is omitted, a MongoDB connection is opened at startup
    and closed at shutdown. Passing a store (tests do) skips the connection
    handling; the caller owns its lifetime.
    """
    settings = settings or default_settings
    setup_logging(settings.log_level)

    app = FastAPI(title=settings.project_name, version=settings.api_version)
    app.state.settings = settings
    app.state.store = store
    app.state.client = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CargoError)
    async def handle_cargo_error(request: Request, exc: CargoError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
            if settings.is_production:
                return _message(exc.status_code, "Internal server error")
        return _message(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_request_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = errors[0].get("msg", "") if errors else ""
        return _message(400, f"Invalid request: {detail}" if detail else "Invalid request")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        # A route is method plus path; a known path with the wrong method is still unmatched.
        if exc.status_code in (404, 405):
            return _message(404, "Route not found")
        return _message(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = "Internal server error" if settings.is_production else str(exc)
        return _message(500, message)

    @app.on_event("startup")
    def open_store():
        if app.state.store is None:
            client = connect(settings)
            app.state.client = client
            app.state.store = CargoStore(client[settings.database_name][settings.collection_name])
            logger.info("Using MongoDB database %s", settings.database_name)
        try:
            app.state.store.ensure_indexes()
            if settings.seed_sample_data:
                app.state.store.seed(sample_cargo())
        except PyMongoError:
            # Inserts retry the unique index and fail with 500 until it exists.
            logger.exception("Could not prepare the cargo collection")

    @app.on_event("shutdown")
    def close_store():
        client = app.state.client
        if client is not None:
            client.close()
            app.state.client = None
            app.state.store = None
            logger.info("MongoDB connection closed")

    app.include_router(meta)
    app.include_router(cargo)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=default_settings.port)
