import os
import logging
from typing import List, Optional
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from datetime import datetime, date

from database import db
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
from inventory import AddStatus, InventoryStore
from schemas import Book as BookSchema, BookInventory as BookInventorySchema, InventoryPatch, Loan as LoanSchema

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Library Inventory API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_store: Optional[InventoryStore] = None

# ----------------------
# Utility helpers
# ----------------------

def get_store() -> InventoryStore:
    global _store
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    if _store is None:
        try:
            _store = InventoryStore(db)
        except InventoryError as e:
            raise to_http(e)
    return _store

# First match wins, so subclasses come before their parents
ERROR_STATUS = [
    (NotFound, 404),
    (ValidationFailure, 400),
    (AlreadyExists, 409),
    (BookUnavailable, 409),
    (NotBorrowed, 409),
    (ActiveLoan, 409),
    (ConsistencyViolation, 409),
    (StoreTimeout, 504),
    (StoreFailure, 503),
]

def to_http(exc: InventoryError) -> HTTPException:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))

def serialize(model: BaseModel) -> dict:
    d = model.model_dump()
    # Convert datetime/date to isoformat for JSON
    for k, v in list(d.items()):
        if isinstance(v, (datetime, date)):
            d[k] = v.isoformat()
        elif isinstance(v, dict):
            d[k] = {ik: iv.isoformat() if isinstance(iv, (datetime, date)) else iv for ik, iv in v.items()}
    return d

# ----------------------
# Health & Schema
# ----------------------

@app.get("/")
def read_root():
    return {"message": "Library Inventory Backend is running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Set" if os.getenv("DATABASE_URL") else "Not Set",
        "database_name": None,
        "collections": [],
    }
    if db is None:
        return response
    response["database_name"] = db.name
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "Connected & Working"
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        response["database"] = f"Connected but Error: {str(e)[:50]}"
    return response

@app.get("/schema")
def get_schema():
    # Return JSON schema-like description for viewer tools
    return {
        "book": BookSchema.model_json_schema(),
        "bookinventory": BookInventorySchema.model_json_schema(),
        "loan": LoanSchema.model_json_schema(),
    }

# ----------------------
# Pydantic request models
# ----------------------

class CreateBook(BaseModel):
    book_id: str
    book_name: str
    author: str = ""
    book_dept: str = ""

class LoanRequest(BaseModel):
    book_id: str
    student_id: str

# ----------------------
# Books Endpoints
# ----------------------

@app.post("/books")
def create_book(book: CreateBook, store: InventoryStore = Depends(get_store)):
    try:
        result = store.add_book(book.book_id, book.book_name, book.author, book.book_dept)
    except InventoryError as e:
        raise to_http(e)
    if result.status == AddStatus.ALREADY_EXISTS:
        raise HTTPException(status_code=409, detail=f"Book with ID {book.book_id} already exists")
    return serialize(result)

@app.get("/books/{book_id}")
def get_book(book_id: str, store: InventoryStore = Depends(get_store)):
    try:
        return serialize(store.get_book(book_id))
    except InventoryError as e:
        raise to_http(e)

@app.delete("/books/{book_id}")
def delete_book(book_id: str, store: InventoryStore = Depends(get_store)):
    try:
        inventory = store.delete_book(book_id)
    except InventoryError as e:
        raise to_http(e)
    return {"status": "deleted", "id": book_id, "inventory": serialize(inventory)}

# ----------------------
# Inventory Endpoints
# ----------------------

@app.patch("/inventory/{book_name}")
def update_inventory(book_name: str, patch: InventoryPatch, store: InventoryStore = Depends(get_store)):
    try:
        return serialize(store.update_book(book_name, patch))
    except InventoryError as e:
        raise to_http(e)

@app.get("/inventory/{book_name}/count")
def book_count(book_name: str, store: InventoryStore = Depends(get_store)):
    try:
        return {"book_name": book_name, "count": store.get_book_count(book_name)}
    except InventoryError as e:
        raise to_http(e)

@app.get("/inventory/{book_name}/available")
def book_available(book_name: str, store: InventoryStore = Depends(get_store)):
    try:
        return {
            "book_name": book_name,
            "available": store.is_available(book_name),
            "copies_on_shelf": store.count_available_copies(book_name),
        }
    except InventoryError as e:
        raise to_http(e)

@app.post("/inventory/{book_name}/reconcile")
def reconcile_inventory(book_name: str, repair: bool = False, store: InventoryStore = Depends(get_store)):
    try:
        return {"book_name": book_name, "copies": store.reconcile(book_name, repair=repair)}
    except InventoryError as e:
        raise to_http(e)

@app.get("/categories/{dept}")
def category_books(dept: str, store: InventoryStore = Depends(get_store)) -> List[dict]:
    try:
        return [serialize(b) for b in store.find_category(dept)]
    except InventoryError as e:
        raise to_http(e)

@app.get("/categories/{dept}/count")
def category_count(dept: str, store: InventoryStore = Depends(get_store)):
    try:
        return {"book_dept": dept, "count": store.get_category_count(dept)}
    except InventoryError as e:
        raise to_http(e)

# ----------------------
# Loans Endpoints
# ----------------------

@app.get("/loans")
def list_loans(student_id: Optional[str] = None,
               active: Optional[bool] = Query(None, description="Only open (true) or returned (false) loans"),
               store: InventoryStore = Depends(get_store)):
    try:
        return [serialize(l) for l in store.list_loans(student_id=student_id, active=active)]
    except InventoryError as e:
        raise to_http(e)

@app.post("/loans/borrow")
def borrow_book(payload: LoanRequest, store: InventoryStore = Depends(get_store)):
    try:
        return serialize(store.borrow(payload.book_id, payload.student_id))
    except InventoryError as e:
        raise to_http(e)

@app.post("/loans/return")
def return_book(payload: LoanRequest, store: InventoryStore = Depends(get_store)):
    try:
        return serialize(store.return_book(payload.book_id, payload.student_id))
    except InventoryError as e:
        raise to_http(e)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
