import re
from datetime import datetime
from unittest import mock

import mongomock
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError

from config import Settings
from database import CargoStore
from main import create_app, format_timestamp

TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


def _awbs(response):
    return sorted(item["awbNumber"] for item in response.json())


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Cargo Scan API ready"}
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["environment"] == "test"
    assert TIMESTAMP.match(body["timestamp"])


def test_database_diagnostics(client, cargo):
    client.post("/api/cargo", json=cargo)
    body = client.get("/test").json()
    assert body["connection_status"] == "Connected"
    assert body["records"] == 1
    assert body["collection"] == "cargo"


def test_create_returns_normalized_record(client, cargo):
    cargo["deadline"] = "2025-03-01T10:30:00Z"
    response = client.post("/api/cargo", json=cargo)
    assert response.status_code == 201
    body = response.json()
    assert isinstance(body["id"], str)
    assert "_id" not in body
    assert body["status"] == "Awaiting"
    assert body["deadline"] == "2025-03-01T10:30:00.000Z"
    assert TIMESTAMP.match(body["timestamp"])


def test_create_then_fetch_by_awb(client, cargo):
    created = client.post("/api/cargo", json=cargo).json()
    response = client.get("/api/cargo/awb/160-12345678")
    assert response.status_code == 200
    assert response.json() == created


def test_fetch_unknown_awb(client):
    response = client.get("/api/cargo/awb/999-99999999")
    assert response.status_code == 404
    assert response.json() == {"message": "Cargo not found"}


def test_create_validation_messages(client, cargo):
    missing = client.post("/api/cargo", json={"awbNumber": "160-12345678"})
    assert missing.status_code == 400
    assert missing.json()["message"] == "Missing required fields: origin, destination, pieces"

    bad_awb = client.post("/api/cargo", json=dict(cargo, awbNumber="ABC-123"))
    assert bad_awb.status_code == 400
    assert bad_awb.json()["message"] == "Invalid AWB number format. Expected XXX-XXXXXXXX"

    bad_code = client.post("/api/cargo", json=dict(cargo, origin="HK"))
    assert bad_code.status_code == 400
    assert bad_code.json()["message"] == "Origin and destination must be 3-letter airport codes"

    bad_pieces = client.post("/api/cargo", json=dict(cargo, pieces=0))
    assert bad_pieces.status_code == 400
    assert client.get("/api/cargo").json() == []


def test_create_duplicate(client, cargo):
    assert client.post("/api/cargo", json=cargo).status_code == 201
    response = client.post("/api/cargo", json=dict(cargo, pieces=10))
    assert response.status_code == 400
    assert response.json()["message"] == "Cargo with AWB number 160-12345678 already exists"
    assert client.get("/api/cargo/awb/160-12345678").json()["pieces"] == 3


def test_malformed_body(client):
    response = client.post("/api/cargo", content=b"{not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["message"].startswith("Invalid request")


def test_awaiting_and_history_scenario(client):
    record = {"awbNumber": "160-12345678", "origin": "HKG", "destination": "LAX", "pieces": 3, "status": "Awaiting"}
    assert client.post("/api/cargo", json=record).status_code == 201
    assert _awbs(client.get("/api/cargo/awaiting")) == ["160-12345678"]
    assert client.get("/api/cargo/history").json() == []

    response = client.put("/api/cargo/160-12345678", json={"status": "Done"})
    assert response.status_code == 200
    assert response.json()["status"] == "Done"

    assert _awbs(client.get("/api/cargo/history")) == ["160-12345678"]
    assert client.get("/api/cargo/awaiting").json() == []


def test_update_changes_only_supplied_fields(client, cargo):
    created = client.post("/api/cargo", json=cargo).json()
    updated = client.put("/api/cargo/160-12345678", json={"status": "In Progress"}).json()
    assert updated == dict(created, status="In Progress")


def test_update_unknown_awb(client):
    response = client.put("/api/cargo/160-00000000", json={"status": "Done"})
    assert response.status_code == 404
    assert client.get("/api/cargo").json() == []


def test_update_validation(client, cargo):
    client.post("/api/cargo", json=cargo)
    response = client.put("/api/cargo/160-12345678", json={"awbNumber": "160-00000000"})
    assert response.status_code == 400
    assert response.json()["message"] == "AWB number cannot be changed"
    assert client.put("/api/cargo/160-12345678", json={"pieces": 0}).status_code == 400


def test_list_by_status(client, cargo, other_cargo):
    client.post("/api/cargo", json=cargo)
    client.post("/api/cargo", json=other_cargo)
    assert _awbs(client.get("/api/cargo/status/In Progress")) == ["160-87654321"]
    assert _awbs(client.get("/api/cargo/status/awaiting")) == ["160-12345678"]
    response = client.get("/api/cargo/status/Lost")
    assert response.status_code == 400
    assert response.json()["message"].startswith("Status must be one of")


def test_search(client, cargo, other_cargo):
    client.post("/api/cargo", json=cargo)
    client.post("/api/cargo", json=other_cargo)
    client.post("/api/cargo", json=dict(other_cargo, awbNumber="160-55555555", origin="HKG", status="Done"))

    assert len(client.get("/api/cargo/search").json()) == 3
    assert _awbs(client.get("/api/cargo/search", params={"origin": "hkg"})) == ["160-12345678", "160-55555555"]
    assert _awbs(client.get("/api/cargo/search", params={"destination": "SIN", "status": "Done"})) == ["160-55555555"]
    assert _awbs(client.get("/api/cargo/search", params={"specialHandling": "DGR"})) == ["160-55555555", "160-87654321"]
    assert _awbs(client.get("/api/cargo/search", params={"specialHandling": "PER,VUN"})) == ["160-12345678"]
    assert _awbs(client.get("/api/cargo/search", params=[("specialHandling", "DGR"), ("specialHandling", "CAO")])) == [
        "160-55555555",
        "160-87654321",
    ]


def test_bulk_insert_is_best_effort(client, cargo, other_cargo):
    client.post("/api/cargo", json=cargo)
    response = client.post("/api/cargo/bulk", json=[cargo, {"awbNumber": "bad"}, other_cargo])
    assert response.status_code == 200
    body = response.json()
    assert body["insertedCount"] == 1
    assert [r["awbNumber"] for r in body["inserted"]] == ["160-87654321"]
    assert [(f["index"], f["awbNumber"]) for f in body["failed"]] == [(0, "160-12345678"), (1, "bad")]
    assert "already exists" in body["failed"][0]["message"]
    assert len(client.get("/api/cargo").json()) == 2


def test_bulk_requires_array(client, cargo):
    response = client.post("/api/cargo/bulk", json=cargo)
    assert response.status_code == 400


def test_unknown_route(client):
    response = client.get("/api/nothing")
    assert response.status_code == 404
    assert response.json() == {"message": "Route not found"}


class ExplodingStore:
    name = "cargo"

    def ensure_indexes(self):
        pass

    def find_all(self, criteria=None):
        raise RuntimeError("disk on fire")


def test_unexpected_error_shows_message_outside_production():
    app = create_app(store=ExplodingStore(), settings=Settings(environment="development", seed_sample_data=False))
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/api/cargo")
    assert response.status_code == 500
    assert response.json() == {"message": "disk on fire"}


def test_unexpected_error_hidden_in_production():
    app = create_app(store=ExplodingStore(), settings=Settings(environment="production", seed_sample_data=False))
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/api/cargo")
    assert response.status_code == 500
    assert response.json() == {"message": "Internal server error"}


def test_missing_store_reports_internal_error(settings):
    # Without the startup hook no store is attached.
    client = TestClient(create_app(settings=settings), raise_server_exceptions=False)
    response = client.get("/api/cargo")
    assert response.status_code == 500
    assert response.json() == {"message": "Database not configured"}
    assert client.get("/test").json()["connection_status"] == "Not Connected"


def test_startup_seeds_sample_data(store):
    app = create_app(store=store, settings=Settings(environment="test", seed_sample_data=True))
    with TestClient(app) as client:
        assert _awbs(client.get("/api/cargo")) == ["160-12345678", "160-87654321"]
        assert _awbs(client.get("/api/cargo/awaiting")) == ["160-12345678"]


def test_format_timestamp():
    assert format_timestamp(datetime(2025, 1, 2, 3, 4, 5, 678000)) == "2025-01-02T03:04:05.678Z"


def test_unsupported_method_is_unknown_route(client, cargo):
    client.post("/api/cargo", json=cargo)
    response = client.delete("/api/cargo/160-12345678")
    assert response.status_code == 404
    assert response.json() == {"message": "Route not found"}
    assert client.get("/api/cargo/awb/160-12345678").status_code == 200


def test_oversized_pieces_rejected(client, cargo, other_cargo):
    response = client.post("/api/cargo", json=dict(cargo, pieces=10**20))
    assert response.status_code == 400
    assert response.json()["message"].startswith("Pieces must be a whole number")

    bulk = client.post("/api/cargo/bulk", json=[dict(cargo, pieces=10**20), other_cargo]).json()
    assert bulk["insertedCount"] == 1
    assert [f["index"] for f in bulk["failed"]] == [0]
    assert _awbs(client.get("/api/cargo")) == ["160-87654321"]


def test_writes_wait_for_unique_index(settings, cargo):
    collection = mongomock.MongoClient().cargo_startup_test.cargo
    store = CargoStore(collection)
    app = create_app(store=store, settings=settings)
    with mock.patch.object(collection, "create_index", side_effect=ServerSelectionTimeoutError("no servers")):
        with TestClient(app, raise_server_exceptions=False) as client:
            first = client.post("/api/cargo", json=cargo)
            second = client.post("/api/cargo", json=cargo)
    assert (first.status_code, second.status_code) == (500, 500)
    assert first.json() == {"message": "Cargo store is not ready"}
    assert collection.count_documents({}) == 0

    with TestClient(app, raise_server_exceptions=False) as client:
        assert client.post("/api/cargo", json=cargo).status_code == 201
        assert client.post("/api/cargo", json=cargo).status_code == 400
    assert collection.count_documents({}) == 1
    collection.drop()
