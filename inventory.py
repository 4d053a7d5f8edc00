"""
Inventory store for books, per-title aggregates and loans.

Three views must agree: the copies in "book", the per-title aggregate in
"bookinventory", and the snapshot of that aggregate embedded in every copy as
``inventory_ref``. MongoDB gives atomicity per document only, so every
multi-step operation records an undo action after each write and rolls back
in reverse order when a later step fails.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import pymongo
from pydantic import BaseModel, ValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import (
    BOOKS,
    INVENTORY,
    LOANS,
    LOAN_PERIOD_DAYS,
    OPERATION_TIMEOUT,
    create_document,
    ensure_indexes,
    get_documents,
)
from errors import (
    ActiveLoan,
    AlreadyExists,
    BookUnavailable,
    ConsistencyViolation,
    InventoryError,
    NotBorrowed,
    NotFound,
    StoreFailure,
    StoreTimeout,
    ValidationFailure,
)
from schemas import Book, BookInventory, InventoryPatch, Loan, Student

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = ("book_name", "author", "book_dept", "added_date", "count", "version")
FAN_OUT_PASSES = 5


class AddStatus(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


class AddResult(BaseModel):
    status: AddStatus
    book_id: str
    inventory: Optional[BookInventory] = None


def _snapshot(doc: Dict[str, Any]) -> Dict[str, Any]:
    snapshot = {k: doc.get(k) for k in SNAPSHOT_FIELDS}
    snapshot["version"] = snapshot["version"] or 0
    return snapshot


def _student_id(student: Union[Student, str]) -> str:
    student_id = student.student_id if isinstance(student, Student) else student
    if not student_id:
        raise ValidationFailure("student_id must not be empty")
    return student_id


def _now() -> datetime:
    # BSON datetimes keep millisecond precision
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


class InventoryStore:
    def __init__(self, database: Database, timeout: Optional[float] = OPERATION_TIMEOUT,
                 loan_days: int = LOAN_PERIOD_DAYS, create_indexes: bool = True):
        self.db = database
        self.timeout = timeout
        self.loan_days = loan_days
        self.books = database[BOOKS]
        self.inventory = database[INVENTORY]
        self.loans = database[LOANS]
        if create_indexes:
            with self._operation("ensure_indexes"):
                ensure_indexes(database)

    # ----------------------
    # Shared plumbing
    # ----------------------

    @contextmanager
    def _operation(self, name: str):
        """Run one store operation under the deadline, translating errors.

        Yields a list that the body appends undo callables to; they run in
        reverse order if the body raises.
        """
        undo: List[Callable[[], Any]] = []
        try:
            with pymongo.timeout(self.timeout):
                yield undo
        except PyMongoError as exc:
            self._rollback(name, undo)
            if exc.timeout:
                logger.error("%s timed out after %ss", name, self.timeout)
                raise StoreTimeout(name, str(exc)) from exc
            logger.exception("Store failure during %s", name)
            raise StoreFailure(name, str(exc)) from exc
        except InventoryError:
            self._rollback(name, undo)
            raise

    def _rollback(self, name: str, undo: List[Callable[[], Any]]) -> None:
        for action in reversed(undo):
            try:
                with pymongo.timeout(self.timeout):
                    action()
            except PyMongoError:
                logger.exception("Could not undo a step of %s; run reconcile on the affected title", name)

    def _fan_out(self, book_name: str, aggregate: Dict[str, Any]) -> None:
        """Copy the aggregate snapshot into every copy of the title stored under ``book_name``.

        Every aggregate write bumps ``version`` and a snapshot is only replaced
        by a newer one, so overlapping fan-outs cannot move copies backwards.
        After each pass the aggregate is re-read; another pass runs while any
        copy still lags behind it.
        """
        match_name = book_name
        for _ in range(FAN_OUT_PASSES):
            snapshot = _snapshot(aggregate)
            self.books.update_many(
                {
                    "inventory_ref.book_name": match_name,
                    "$or": [
                        {"inventory_ref.version": {"$lt": snapshot["version"]}},
                        {"inventory_ref.version": {"$exists": False}},
                    ],
                },
                {"$set": {"inventory_ref": snapshot}},
            )
            current = self.inventory.find_one({"_id": aggregate["_id"]})
            if current is None:
                return
            match_name = current["book_name"]
            lagging = self.books.count_documents({
                "inventory_ref.book_name": match_name,
                "inventory_ref.version": {"$ne": current.get("version") or 0},
            })
            if lagging == 0:
                return
            aggregate = current
        logger.warning("Snapshots of '%s' still lag after %d passes; run reconcile", match_name, FAN_OUT_PASSES)

    def _increment(self, book_name: str, author: str, book_dept: str, added_date: datetime) -> Optional[Any]:
        """Atomically add one copy to the title's aggregate, creating it if needed.

        Returns the id of the aggregate when this call created it, else None.
        """
        try:
            result = self.inventory.update_one(
                {"book_name": book_name},
                {
                    "$inc": {"count": 1, "version": 1},
                    "$setOnInsert": {"author": author, "book_dept": book_dept, "added_date": added_date},
                },
                upsert=True,
            )
        except DuplicateKeyError:
            # A concurrent upsert inserted the aggregate first; it matches now.
            logger.info("Lost upsert race for '%s'; incrementing existing aggregate", book_name)
            self.inventory.update_one({"book_name": book_name}, {"$inc": {"count": 1, "version": 1}})
            return None
        return result.upserted_id

    def _undo_increment(self, book_name: str, created_id: Optional[Any]) -> None:
        self.inventory.update_one({"book_name": book_name}, {"$inc": {"count": -1, "version": 1}})
        if created_id is not None:
            self.inventory.delete_one({"_id": created_id, "count": {"$lte": 0}})

    # ----------------------
    # Mutations
    # ----------------------

    def add_book(self, book_id: str, book_name: str, author: str = "", book_dept: str = "") -> AddResult:
        try:
            Book(book_id=book_id, inventory_ref=BookInventory(book_name=book_name, author=author, book_dept=book_dept))
        except ValidationError as exc:
            raise ValidationFailure(str(exc)) from exc

        with self._operation("add_book") as undo:
            if self.books.find_one({"book_id": book_id}, {"_id": 1}) is not None:
                logger.info("Book %s already exists; nothing added", book_id)
                return AddResult(status=AddStatus.ALREADY_EXISTS, book_id=book_id)

            added_date = _now()
            provisional = {"book_name": book_name, "author": author, "book_dept": book_dept,
                           "added_date": added_date, "count": 0, "version": 0}
            try:
                inserted = self.books.insert_one(
                    {"book_id": book_id, "book_status": True, "inventory_ref": provisional}
                )
            except DuplicateKeyError:
                logger.info("Book %s was added concurrently; nothing added", book_id)
                return AddResult(status=AddStatus.ALREADY_EXISTS, book_id=book_id)
            undo.append(lambda: self.books.delete_one({"_id": inserted.inserted_id}))

            created_id = self._increment(book_name, author, book_dept, added_date)
            undo.append(lambda: self._undo_increment(book_name, created_id))

            aggregate = self.inventory.find_one({"book_name": book_name})
            if aggregate is None:
                raise ConsistencyViolation(book_name)
            self._fan_out(book_name, aggregate)

        logger.info("Added book %s ('%s'), %d copies on record", book_id, book_name, aggregate["count"])
        return AddResult(status=AddStatus.CREATED, book_id=book_id, inventory=BookInventory(**aggregate))

    def update_book(self, current: Union[BookInventory, str], patch: InventoryPatch) -> BookInventory:
        """Apply the non-empty, changed fields of ``patch`` to the aggregate and its copies.

        Copies are matched by the name the aggregate had before this call, so
        a rename carries every existing copy along with it.
        """
        book_name = current.book_name if isinstance(current, BookInventory) else current
        if patch.count is not None and patch.count < 0:
            raise ValidationFailure("count must not be negative")

        with self._operation("update_book") as undo:
            existing = self.inventory.find_one({"book_name": book_name})
            if existing is None:
                raise NotFound(f"No inventory for '{book_name}'")

            changes: Dict[str, Any] = {}
            for field in ("book_name", "author", "book_dept", "count"):
                value = getattr(patch, field)
                if value is not None and value != "" and value != existing.get(field):
                    changes[field] = value
            if patch.added_date is not None:
                changes["added_date"] = patch.added_date

            if not changes:
                return BookInventory(**existing)

            new_name = changes.get("book_name")
            if new_name and self.inventory.find_one({"book_name": new_name}, {"_id": 1}) is not None:
                raise AlreadyExists(f"Inventory for '{new_name}' already exists")
            try:
                self.inventory.update_one({"_id": existing["_id"]}, {"$set": changes, "$inc": {"version": 1}})
            except DuplicateKeyError as exc:
                raise AlreadyExists(f"Inventory for '{changes['book_name']}' already exists") from exc
            previous = {k: existing.get(k) for k in changes}
            undo.append(lambda: self.inventory.update_one(
                {"_id": existing["_id"]}, {"$set": previous, "$inc": {"version": 1}}))

            updated = self.inventory.find_one({"_id": existing["_id"]})
            if updated is None:
                raise NotFound(f"Inventory for '{book_name}' disappeared during update")
            self._fan_out(book_name, updated)

        logger.info("Updated inventory '%s': %s", book_name, ", ".join(sorted(changes)))
        return BookInventory(**updated)

    def delete_book(self, book_id: str) -> BookInventory:
        with self._operation("delete_book") as undo:
            book = self.books.find_one({"book_id": book_id})
            if book is None:
                raise NotFound(f"Book {book_id} not found")
            if self.loans.find_one({"book_id": book_id, "returned_at": None}, {"_id": 1}) is not None:
                raise ActiveLoan(f"Book {book_id} is on loan")

            book_name = (book.get("inventory_ref") or {}).get("book_name")
            if not book_name:
                raise ConsistencyViolation(f"<copy {book_id}>")

            result = self.inventory.update_one(
                {"book_name": book_name, "count": {"$gt": 0}},
                {"$inc": {"count": -1, "version": 1}},
            )
            if result.matched_count == 0:
                aggregate = self.inventory.find_one({"book_name": book_name})
                recorded = aggregate["count"] if aggregate else 0
                actual = self.books.count_documents({"inventory_ref.book_name": book_name})
                logger.warning("Refusing to delete %s: '%s' records %d copies, %d exist",
                               book_id, book_name, recorded, actual)
                raise ConsistencyViolation(book_name, recorded, actual)
            undo.append(lambda: self.inventory.update_one(
                {"book_name": book_name}, {"$inc": {"count": 1, "version": 1}}))

            deleted = self.books.delete_one({"_id": book["_id"]})
            if deleted.deleted_count == 0:
                raise NotFound(f"Book {book_id} was deleted concurrently")
            undo.append(lambda: self.books.insert_one(book))

            aggregate = self.inventory.find_one({"book_name": book_name})
            if aggregate is None:
                raise ConsistencyViolation(book_name)
            self._fan_out(book_name, aggregate)

        logger.info("Deleted book %s ('%s'), %d copies left", book_id, book_name, aggregate["count"])
        return BookInventory(**aggregate)

    # ----------------------
    # Reads
    # ----------------------

    def get_book(self, book_id: str) -> Book:
        with self._operation("get_book"):
            doc = self.books.find_one({"book_id": book_id})
        if doc is None:
            raise NotFound(f"Book {book_id} not found")
        return Book(**doc)

    def get_book_count(self, book_name: str) -> int:
        """Copies on record for the title (the aggregate's ``count``), 0 when unknown."""
        with self._operation("get_book_count"):
            doc = self.inventory.find_one({"book_name": book_name}, {"count": 1})
        return int(doc.get("count", 0)) if doc else 0

    def get_category_count(self, book_dept: str) -> int:
        with self._operation("get_category_count"):
            return self.inventory.count_documents({"book_dept": book_dept})

    def find_category(self, book_dept: str) -> List[BookInventory]:
        with self._operation("find_category"):
            docs = get_documents(INVENTORY, {"book_dept": book_dept}, database=self.db)
        return [BookInventory(**d) for d in docs]

    def is_available(self, book_name: str) -> bool:
        return self.get_book_count(book_name) > 0

    def count_available_copies(self, book_name: str) -> int:
        with self._operation("count_available_copies"):
            return self.books.count_documents({"inventory_ref.book_name": book_name, "book_status": True})

    # ----------------------
    # Loans
    # ----------------------

    def borrow(self, book_id: str, student: Union[Student, str]) -> Loan:
        student_id = _student_id(student)
        with self._operation("borrow") as undo:
            result = self.books.update_one(
                {"book_id": book_id, "book_status": True},
                {"$set": {"book_status": False}},
            )
            if result.matched_count == 0:
                if self.books.find_one({"book_id": book_id}, {"_id": 1}) is None:
                    raise NotFound(f"Book {book_id} not found")
                raise BookUnavailable(f"Book {book_id} is already on loan")
            undo.append(lambda: self.books.update_one({"book_id": book_id}, {"$set": {"book_status": True}}))

            borrowed_at = _now()
            loan = Loan(
                book_id=book_id,
                student_id=student_id,
                borrowed_at=borrowed_at,
                due_date=borrowed_at + timedelta(days=max(1, self.loan_days)),
            )
            create_document(LOANS, loan, database=self.db)

        logger.info("Book %s borrowed by %s until %s", book_id, student_id, loan.due_date.date())
        return loan

    def return_book(self, book_id: str, student: Union[Student, str]) -> Loan:
        student_id = _student_id(student)
        with self._operation("return_book") as undo:
            returned_at = _now()
            loan = self.loans.find_one_and_update(
                {"book_id": book_id, "student_id": student_id, "returned_at": None},
                {"$set": {"returned_at": returned_at, "updated_at": returned_at}},
                return_document=pymongo.ReturnDocument.AFTER,
            )
            if loan is None:
                if self.books.find_one({"book_id": book_id}, {"_id": 1}) is None:
                    raise NotFound(f"Book {book_id} not found")
                raise NotBorrowed(f"Book {book_id} is not on loan to {student_id}")
            undo.append(lambda: self.loans.update_one({"_id": loan["_id"]}, {"$set": {"returned_at": None}}))

            self.books.update_one({"book_id": book_id}, {"$set": {"book_status": True}})

        logger.info("Book %s returned by %s", book_id, student_id)
        return Loan(**loan)

    def list_loans(self, student_id: Optional[str] = None, active: Optional[bool] = None) -> List[Loan]:
        filt: Dict[str, Any] = {}
        if student_id:
            filt["student_id"] = student_id
        if active is True:
            filt["returned_at"] = None
        elif active is False:
            filt["returned_at"] = {"$ne": None}
        with self._operation("list_loans"):
            docs = list(self.loans.find(filt).sort("borrowed_at", -1))
        return [Loan(**d) for d in docs]

    # ----------------------
    # Reconciliation
    # ----------------------

    def reconcile(self, book_name: str, repair: bool = False) -> int:
        """Compare the recorded count with the copies on file for one title.

        Returns the number of copies. A mismatch raises ConsistencyViolation
        unless ``repair`` is set, in which case the count is rewritten and the
        snapshot fanned out again.
        """
        with self._operation("reconcile"):
            aggregate = self.inventory.find_one({"book_name": book_name})
            actual = self.books.count_documents({"inventory_ref.book_name": book_name})
            if aggregate is None and actual == 0:
                raise NotFound(f"No inventory for '{book_name}'")

            recorded = aggregate.get("count", 0) if aggregate else 0
            if recorded == actual:
                return actual

            logger.warning("Inventory for '%s' records %d copies but %d exist", book_name, recorded, actual)
            if not repair:
                raise ConsistencyViolation(book_name, recorded, actual)

            on_insert: Dict[str, Any] = {}
            if aggregate is None:
                copy = self.books.find_one({"inventory_ref.book_name": book_name})
                ref = copy.get("inventory_ref") or {}
                on_insert = {k: ref.get(k) for k in ("author", "book_dept", "added_date")}
            update: Dict[str, Any] = {"$set": {"count": actual}, "$inc": {"version": 1}}
            if on_insert:
                update["$setOnInsert"] = on_insert
            self.inventory.update_one({"book_name": book_name}, update, upsert=True)

            aggregate = self.inventory.find_one({"book_name": book_name})
            self._fan_out(book_name, aggregate)

        logger.info("Repaired inventory for '%s': count set to %d", book_name, actual)
        return actual
