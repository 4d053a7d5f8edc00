"""
Database Schemas for Library Inventory

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name:
- Book -> "book"
- BookInventory -> "bookinventory"
- Loan -> "loan"

InventoryPatch and Student are not stored; they describe arguments.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class BookInventory(BaseModel):
    book_name: str = Field(..., min_length=1, description="Title, natural key of the aggregate")
    author: str = Field("", description="Author name")
    book_dept: str = Field("", description="Department or category")
    added_date: Optional[datetime] = Field(None, description="When the title was first added")
    count: int = Field(0, description="Number of copies on record")
    version: int = Field(0, description="Bumped on every write to the aggregate")


class Book(BaseModel):
    book_id: str = Field(..., min_length=1, description="Externally assigned copy identifier")
    book_status: bool = Field(True, description="True when available, False when on loan")
    inventory_ref: Optional[BookInventory] = Field(None, description="Embedded snapshot of the aggregate")


class InventoryPatch(BaseModel):
    book_name: Optional[str] = None
    author: Optional[str] = None
    book_dept: Optional[str] = None
    added_date: Optional[datetime] = None
    count: Optional[int] = None


class Student(BaseModel):
    student_id: str = Field(..., min_length=1, description="Student identifier")
    name: Optional[str] = Field(None, description="Display name")


class Loan(BaseModel):
    book_id: str = Field(..., description="Copy identifier (Book.book_id)")
    student_id: str = Field(..., description="Borrowing student")
    borrowed_at: datetime = Field(..., description="When the copy left the shelf")
    due_date: datetime = Field(..., description="When the copy is due back")
    returned_at: Optional[datetime] = Field(None, description="Set when the copy is returned")
