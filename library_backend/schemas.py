"""
Request and response schemas for the HTTP API.

Each model mirrors one entity or payload; services receive plain values
taken from these, and responses are built from the entities' ``to_dict``.
"""

from datetime import date, datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from .models import BorrowStatus, Role


def describe_errors(errors: List[dict]) -> str:
    """Flatten pydantic errors into ``field: message`` pairs joined by '; '."""
    problems = []
    for err in errors:
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "; ".join(problems)


class MessageModel(BaseModel):
    message: str


# --- Identity ---

class RegisterModel(BaseModel):
    full_name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address, unique")
    password: str = Field(..., min_length=1, description="Plain-text password, hashed before storage")
    role: Optional[Role] = Field(None, description="Defaults to student")


class RegisteredModel(BaseModel):
    message: str
    id: int


class LoginModel(BaseModel):
    email: str
    password: str


class TokenModel(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Seconds until the token expires")


# --- Users ---

class UserModel(BaseModel):
    id: int
    full_name: str
    email: str
    role: Role
    created_at: Optional[datetime] = None


class UserCreateModel(BaseModel):
    full_name: str
    email: str
    role: Optional[Role] = None
    password: Optional[str] = Field(None, description="Optional; without it the account cannot log in")


class UserUpdateModel(BaseModel):
    full_name: str
    email: str
    role: Optional[Role] = None


class ProfileUpdateModel(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = Field(None, description="New password; leave out to keep the current one")


# --- Books ---

class BookCreateModel(BaseModel):
    title: str = Field(..., description="Book title")
    author: str = Field(..., description="Author name")
    published_year: Optional[int] = Field(None, description="Year published")
    isbn: Optional[str] = Field(None, description="ISBN number")
    copies_available: Optional[int] = Field(None, ge=0, description="Copies on the shelf, default 1")


class BookModel(BaseModel):
    id: int
    title: str
    author: str
    published_year: Optional[int] = None
    isbn: Optional[str] = None
    copies_available: int
    created_at: Optional[datetime] = None


class BulkBooksModel(BaseModel):
    # left untyped so one malformed entry does not reject the whole batch
    books: Any = None


class BulkItemModel(BaseModel):
    index: int
    ok: bool
    book: Optional[BookModel] = None
    error: Optional[dict] = None


class BulkResultModel(BaseModel):
    created: int
    failed: int
    results: List[BulkItemModel]


# --- Borrow records ---

class BorrowRecordCreateModel(BaseModel):
    user_id: int = Field(..., description="Borrowing user")
    book_id: int = Field(..., description="Borrowed book")
    due_date: date = Field(..., description="Due date (YYYY-MM-DD)")
    borrow_date: Optional[date] = Field(None, description="Defaults to today")


class BorrowRecordModel(BaseModel):
    id: int
    user_id: int
    user_name: Optional[str] = None
    book_id: int
    title: Optional[str] = None
    borrow_date: date
    due_date: date
    return_date: Optional[date] = None
    status: BorrowStatus
    created_at: Optional[datetime] = None


# --- Reports ---

class MostBorrowedModel(BaseModel):
    book_id: int
    title: str
    borrow_count: int


class ActiveUserModel(BaseModel):
    user_id: int
    user_name: str
    borrow_count: int


class OverdueModel(BaseModel):
    record_id: int
    user_id: int
    user_name: str
    book_id: int
    title: str
    due_date: date
    overdue_days: int
    fine: int


class StatsModel(BaseModel):
    day: date
    total_books: int
    total_users: int
    active_borrows: int
    overdue_books: int


class HealthModel(BaseModel):
    status: str
    database: bool
    version: str
