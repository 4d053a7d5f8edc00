import mongomock
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import OperationFailure

import inventory
import main
from inventory import InventoryStore


@pytest.fixture
def client(database):
    store = InventoryStore(database)
    main.app.dependency_overrides[main.get_store] = lambda: store
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def add(client, book_id, book_name="Dune", author="Frank Herbert", book_dept="Fiction"):
    return client.post("/books", json={
        "book_id": book_id, "book_name": book_name, "author": author, "book_dept": book_dept,
    })


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200


def test_add_and_get_book(client):
    response = add(client, "B-1")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "created"
    assert body["inventory"]["count"] == 1

    response = client.get("/books/B-1")
    assert response.status_code == 200
    assert response.json()["inventory_ref"]["book_name"] == "Dune"


def test_duplicate_book_is_conflict(client):
    add(client, "B-1")
    response = add(client, "B-1")
    assert response.status_code == 409


def test_empty_book_id_is_bad_request(client):
    response = add(client, "")
    assert response.status_code == 400


def test_missing_book_is_not_found(client):
    assert client.get("/books/B-404").status_code == 404
    assert client.delete("/books/B-404").status_code == 404


def test_counts_and_categories(client):
    add(client, "B-1")
    add(client, "B-2")
    add(client, "C-1", "SICP", "Abelson", "Computing")

    assert client.get("/inventory/Dune/count").json()["count"] == 2
    assert client.get("/inventory/Dune/available").json()["available"] is True
    assert client.get("/categories/Fiction/count").json()["count"] == 1
    books = client.get("/categories/Fiction").json()
    assert [b["book_name"] for b in books] == ["Dune"]


def test_patch_inventory(client):
    add(client, "B-1")
    response = client.patch("/inventory/Dune", json={"author": "F. Herbert"})
    assert response.status_code == 200
    assert response.json()["author"] == "F. Herbert"
    assert client.get("/books/B-1").json()["inventory_ref"]["author"] == "F. Herbert"

    assert client.patch("/inventory/Nope", json={"author": "x"}).status_code == 404


def test_delete_book(client):
    add(client, "B-1")
    add(client, "B-2")
    response = client.delete("/books/B-1")
    assert response.status_code == 200
    assert response.json()["inventory"]["count"] == 1


def test_borrow_and_return(client):
    add(client, "B-1")
    payload = {"book_id": "B-1", "student_id": "S-1"}

    response = client.post("/loans/borrow", json=payload)
    assert response.status_code == 200
    assert response.json()["returned_at"] is None

    assert client.post("/loans/borrow", json=payload).status_code == 409
    assert client.delete("/books/B-1").status_code == 409
    assert len(client.get("/loans", params={"active": True}).json()) == 1

    response = client.post("/loans/return", json=payload)
    assert response.status_code == 200
    assert response.json()["returned_at"] is not None
    assert client.post("/loans/return", json=payload).status_code == 409


def test_reconcile(client, database):
    add(client, "B-1")
    database["bookinventory"].update_one({"book_name": "Dune"}, {"$set": {"count": 5}})

    assert client.post("/inventory/Dune/reconcile").status_code == 409
    response = client.post("/inventory/Dune/reconcile", params={"repair": True})
    assert response.status_code == 200
    assert response.json()["copies"] == 1


def test_store_setup_failure_is_service_unavailable(monkeypatch):
    def broken_ensure_indexes(database):
        raise OperationFailure("not authorized")

    monkeypatch.setattr(inventory, "ensure_indexes", broken_ensure_indexes)
    monkeypatch.setattr(main, "db", mongomock.MongoClient()["library_test"])
    monkeypatch.setattr(main, "_store", None)

    response = TestClient(main.app).get("/inventory/Dune/count")

    assert response.status_code == 503
    assert main._store is None
