import mongomock
import pytest

from inventory import InventoryStore


@pytest.fixture
def database():
    # Fresh in-memory MongoDB per test
    client = mongomock.MongoClient()
    yield client["library_test"]
    client.close()


@pytest.fixture
def store(database):
    return InventoryStore(database, timeout=5)
