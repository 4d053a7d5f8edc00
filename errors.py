"""Errors raised by the inventory store."""

from typing import Optional


class InventoryError(Exception):
    pass


class NotFound(InventoryError):
    pass


class AlreadyExists(InventoryError):
    pass


class ValidationFailure(InventoryError):
    pass


class StoreFailure(InventoryError):
    """Any error reported by MongoDB, wrapped with the operation that hit it."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class StoreTimeout(StoreFailure):
    pass


class ConsistencyViolation(InventoryError):
    """The aggregate count and the copies that embed it disagree."""

    def __init__(self, book_name: str, recorded: Optional[int] = None, actual: Optional[int] = None):
        if recorded is None:
            message = f"Inventory for '{book_name}' is inconsistent"
        else:
            message = f"Inventory for '{book_name}' records {recorded} copies but {actual} exist"
        super().__init__(message)
        self.book_name = book_name
        self.recorded = recorded
        self.actual = actual


class BookUnavailable(InventoryError):
    pass


class NotBorrowed(InventoryError):
    pass


class ActiveLoan(InventoryError):
    pass
