from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime


class Role(str, enum.Enum):
    """Roles a user can hold; carried inside every issued token."""
    STUDENT = "student"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


class BorrowStatus(str, enum.Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"


def _parse_date(value) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_datetime(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class User:
    """A registered library user. ``password_hash`` never leaves the backend."""

    id: int
    full_name: str
    email: str
    role: Role = Role.STUDENT
    created_at: datetime | None = None
    password_hash: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "role": self.role.value,
            "created_at": _iso(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data["id"],
            full_name=data["full_name"],
            email=data["email"],
            role=Role(data.get("role") or Role.STUDENT.value),
            created_at=_parse_datetime(data.get("created_at")),
            password_hash=data.get("password_hash"),
        )


@dataclass
class Book:
    id: int
    title: str
    author: str
    published_year: int | None = None
    isbn: str | None = None
    copies_available: int = 1
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "published_year": self.published_year,
            "isbn": self.isbn,
            "copies_available": self.copies_available,
            "created_at": _iso(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            published_year=data.get("published_year"),
            isbn=data.get("isbn"),
            copies_available=data.get("copies_available", 1),
            created_at=_parse_datetime(data.get("created_at")),
        )


@dataclass
class BorrowRecord:
    """One loan of a book to a user.

    ``status`` is derived from ``return_date``; the stored status column is
    written together with it and is ignored on read. ``user_name`` and
    ``book_title`` are filled in by the store's listing join.
    """

    id: int
    user_id: int
    book_id: int
    borrow_date: date
    due_date: date
    return_date: date | None = None
    created_at: datetime | None = None
    user_name: str | None = None
    book_title: str | None = None

    @property
    def status(self) -> BorrowStatus:
        return BorrowStatus.BORROWED if self.return_date is None else BorrowStatus.RETURNED

    def is_overdue(self, today: date) -> bool:
        return self.return_date is None and self.due_date < today

    def overdue_days(self, today: date) -> int:
        if not self.is_overdue(today):
            return 0
        return (today - self.due_date).days

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "book_id": self.book_id,
            "title": self.book_title,
            "borrow_date": _iso(self.borrow_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "status": self.status.value,
            "created_at": _iso(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "BorrowRecord":
        return BorrowRecord(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            borrow_date=_parse_date(data["borrow_date"]),
            due_date=_parse_date(data["due_date"]),
            return_date=_parse_date(data.get("return_date")),
            created_at=_parse_datetime(data.get("created_at")),
            user_name=data.get("user_name"),
            book_title=data.get("book_title"),
        )


@dataclass
class StatsSnapshot:
    """Daily counts kept in the stats history, one row per calendar day."""

    day: date
    total_books: int = 0
    total_users: int = 0
    active_borrows: int = 0
    overdue_books: int = 0

    def to_dict(self) -> dict:
        return {
            "day": _iso(self.day),
            "total_books": self.total_books,
            "total_users": self.total_users,
            "active_borrows": self.active_borrows,
            "overdue_books": self.overdue_books,
        }

    @staticmethod
    def from_dict(data: dict) -> "StatsSnapshot":
        return StatsSnapshot(
            day=_parse_date(data["day"]),
            total_books=data.get("total_books", 0),
            total_users=data.get("total_users", 0),
            active_borrows=data.get("active_borrows", 0),
            overdue_books=data.get("overdue_books", 0),
        )
