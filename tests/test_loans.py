from datetime import timedelta

import pytest
from pymongo.errors import OperationFailure

import inventory
from errors import BookUnavailable, NotBorrowed, NotFound, StoreFailure, ValidationFailure
from schemas import Student


@pytest.fixture
def shelf(store):
    store.add_book("B-1", "Dune", "Frank Herbert", "Fiction")
    store.add_book("B-2", "Dune", "Frank Herbert", "Fiction")
    return store


def test_borrow_then_return_restores_status(shelf, database):
    loan = shelf.borrow("B-1", Student(student_id="S-1", name="Ada"))

    assert loan.student_id == "S-1"
    assert loan.returned_at is None
    assert shelf.get_book("B-1").book_status is False
    assert shelf.count_available_copies("Dune") == 1

    returned = shelf.return_book("B-1", "S-1")

    assert returned.returned_at is not None
    assert shelf.get_book("B-1").book_status is True
    assert shelf.count_available_copies("Dune") == 2
    assert database["loan"].count_documents({}) == 1


def test_borrow_does_not_change_copy_count(shelf):
    shelf.borrow("B-1", "S-1")
    assert shelf.get_book_count("Dune") == 2
    assert shelf.reconcile("Dune") == 2


def test_due_date_uses_loan_period(database):
    store = inventory.InventoryStore(database, loan_days=7)
    store.add_book("B-1", "Dune", "Frank Herbert", "Fiction")

    loan = store.borrow("B-1", "S-1")

    assert loan.due_date - loan.borrowed_at == timedelta(days=7)


def test_borrow_already_borrowed_copy(shelf):
    shelf.borrow("B-1", "S-1")

    with pytest.raises(BookUnavailable):
        shelf.borrow("B-1", "S-2")

    assert len(shelf.list_loans(active=True)) == 1


def test_borrow_missing_copy(shelf):
    with pytest.raises(NotFound):
        shelf.borrow("B-404", "S-1")


def test_borrow_requires_student(shelf):
    with pytest.raises(ValidationFailure):
        shelf.borrow("B-1", "")
    assert shelf.get_book("B-1").book_status is True


def test_return_without_loan(shelf):
    with pytest.raises(NotBorrowed):
        shelf.return_book("B-1", "S-1")


def test_return_by_other_student(shelf):
    shelf.borrow("B-1", "S-1")

    with pytest.raises(NotBorrowed):
        shelf.return_book("B-1", "S-2")

    assert shelf.get_book("B-1").book_status is False


def test_return_missing_copy(shelf):
    with pytest.raises(NotFound):
        shelf.return_book("B-404", "S-1")


def test_copy_can_be_borrowed_again_after_return(shelf):
    shelf.borrow("B-1", "S-1")
    shelf.return_book("B-1", "S-1")
    shelf.borrow("B-1", "S-2")

    loans = shelf.list_loans()
    assert len(loans) == 2
    assert [l.student_id for l in shelf.list_loans(active=True)] == ["S-2"]
    assert [l.student_id for l in shelf.list_loans(active=False)] == ["S-1"]
    assert len(shelf.list_loans(student_id="S-1")) == 1


def test_failed_loan_insert_releases_copy(shelf, monkeypatch):
    def broken_create_document(*args, **kwargs):
        raise OperationFailure("write concern error")

    monkeypatch.setattr(inventory, "create_document", broken_create_document)

    with pytest.raises(StoreFailure):
        shelf.borrow("B-1", "S-1")

    assert shelf.get_book("B-1").book_status is True
