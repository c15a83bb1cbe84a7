import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import CargoStore
from main import create_app


@pytest.fixture
def settings():
    return Settings(environment="test", seed_sample_data=False)


@pytest.fixture
def store():
    collection = mongomock.MongoClient().cargo_test.cargo
    store = CargoStore(collection)
    store.ensure_indexes()
    yield store
    collection.drop()


@pytest.fixture
def client(store, settings):
    app = create_app(store=store, settings=settings)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def cargo():
    return {
        "awbNumber": "160-12345678",
        "origin": "HKG",
        "destination": "LAX",
        "weight": "245.5 KG",
        "pieces": 3,
        "shipper": "ABC Electronics Ltd",
        "consignee": "XYZ Trading Co",
        "specialHandling": ["PER", "VUN"],
        "status": "Awaiting",
        "description": "Electronic Components",
    }


@pytest.fixture
def other_cargo():
    return {
        "awbNumber": "160-87654321",
        "origin": "PVG",
        "destination": "SIN",
        "weight": "1,240 KG",
        "pieces": 8,
        "specialHandling": ["DGR", "CAO"],
        "status": "In Progress",
    }
