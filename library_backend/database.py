"""Data store layer.

``Store`` is the query/command interface every service talks to. Two
implementations ship with the package:

* ``SQLiteStore`` keeps everything in a SQLite file and relies on its
  UNIQUE / FOREIGN KEY constraints for email uniqueness, referential
  integrity and the one-snapshot-per-day rule.
* ``MemoryStore`` keeps everything in process memory and enforces the same
  constraints itself. It backs ``DATABASE_FILE=:memory:`` and the tests.

Stores are constructed explicitly and handed to the services; there is no
module-level connection.
"""

import dataclasses
import itertools
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from .config import Settings
from .errors import Conflict, InvalidInput, Unavailable
from .models import Book, BorrowRecord, BorrowStatus, StatsSnapshot, User

logger = logging.getLogger(__name__)

USER_COLUMNS = ("full_name", "email", "password_hash", "role")
BOOK_COLUMNS = ("title", "author", "published_year", "isbn", "copies_available")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Store(ABC):
    """Persistence interface shared by the SQLite and in-memory stores."""

    def initialize(self) -> None:
        """Create whatever schema the store needs. Safe to call repeatedly."""

    def close(self) -> None:
        """Release held resources."""

    @abstractmethod
    def ping(self) -> bool: ...

    # Users
    @abstractmethod
    def add_user(self, full_name: str, email: str, password_hash: Optional[str], role: str) -> User: ...

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]: ...

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    def list_users(self) -> List[User]: ...

    @abstractmethod
    def update_user(self, user_id: int, fields: Dict[str, Any]) -> Optional[User]: ...

    @abstractmethod
    def delete_user(self, user_id: int) -> bool: ...

    # Books
    @abstractmethod
    def add_book(self, fields: Dict[str, Any]) -> Book: ...

    @abstractmethod
    def get_book(self, book_id: int) -> Optional[Book]: ...

    @abstractmethod
    def list_books(self) -> List[Book]: ...

    @abstractmethod
    def update_book(self, book_id: int, fields: Dict[str, Any]) -> Optional[Book]: ...

    @abstractmethod
    def delete_book(self, book_id: int) -> bool: ...

    # Borrow records
    @abstractmethod
    def add_record(self, user_id: int, book_id: int, borrow_date: date, due_date: date) -> BorrowRecord: ...

    @abstractmethod
    def get_record(self, record_id: int) -> Optional[BorrowRecord]: ...

    @abstractmethod
    def list_records(self) -> List[BorrowRecord]: ...

    @abstractmethod
    def set_returned(self, record_id: int, return_date: date) -> Optional[BorrowRecord]: ...

    @abstractmethod
    def delete_record(self, record_id: int) -> bool: ...

    # Stats history
    @abstractmethod
    def save_snapshot(self, snapshot: StatsSnapshot) -> StatsSnapshot: ...

    @abstractmethod
    def get_snapshot(self, day: date) -> Optional[StatsSnapshot]: ...


def _integrity_error(exc: sqlite3.IntegrityError) -> Exception:
    message = str(exc)
    if "UNIQUE" in message and "email" in message:
        return Conflict("A user with this email already exists")
    if "UNIQUE" in message:
        return Conflict("Duplicate value for a unique field")
    if "FOREIGN KEY" in message:
        return InvalidInput("Referenced user or book does not exist")
    return InvalidInput("Value violates a data constraint")


class SQLiteStore(Store):
    """SQLite-backed store; opens one connection per operation."""

    def __init__(self, db_file: str) -> None:
        self.db_file = db_file

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_file)
        except sqlite3.Error as exc:
            logger.error("Could not open database %s: %s", self.db_file, exc)
            raise Unavailable() from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise _integrity_error(exc) from exc
        except sqlite3.Error as exc:
            conn.rollback()
            logger.exception("Database operation failed")
            raise Unavailable() from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the tables and indexes if they do not exist yet."""
        with self._connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    full_name TEXT NOT NULL,
                    email TEXT UNIQUE NOT NULL,
                    password_hash TEXT,
                    role TEXT NOT NULL DEFAULT 'student'
                        CHECK(role IN ('student', 'librarian', 'admin')),
                    created_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS books (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    author TEXT NOT NULL,
                    published_year INTEGER,
                    isbn TEXT,
                    copies_available INTEGER NOT NULL DEFAULT 1 CHECK(copies_available >= 0),
                    created_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS borrow_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
                    borrow_date TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    return_date TEXT,
                    status TEXT NOT NULL DEFAULT 'borrowed'
                        CHECK(status IN ('borrowed', 'returned')),
                    created_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS stats_history (
                    day TEXT PRIMARY KEY,
                    total_books INTEGER NOT NULL DEFAULT 0,
                    total_users INTEGER NOT NULL DEFAULT 0,
                    active_borrows INTEGER NOT NULL DEFAULT 0,
                    overdue_books INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_books_isbn ON books(isbn)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_borrow_records_user ON borrow_records(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_borrow_records_book ON borrow_records(book_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_borrow_records_status ON borrow_records(status)")
        logger.info("Database initialized at %s", self.db_file)

    def ping(self) -> bool:
        try:
            with self._connection() as conn:
                conn.execute("SELECT 1")
            return True
        except Unavailable:
            return False

    # ------------------------- Users ------------------------- #
    def add_user(self, full_name, email, password_hash, role) -> User:
        with self._connection() as conn:
            cursor = conn.execute(
                "INSERT INTO users (full_name, email, password_hash, role, created_at) VALUES (?, ?, ?, ?, ?)",
                (full_name, email, password_hash, role, _utcnow().isoformat()),
            )
            row = conn.execute("SELECT * FROM users WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return User.from_dict(dict(row))

    def get_user(self, user_id) -> Optional[User]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def find_user_by_email(self, email) -> Optional[User]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def list_users(self) -> List[User]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id ASC").fetchall()
        return [User.from_dict(dict(row)) for row in rows]

    def update_user(self, user_id, fields) -> Optional[User]:
        updates = {k: v for k, v in fields.items() if k in USER_COLUMNS}
        with self._connection() as conn:
            if updates:
                assignments = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(
                    f"UPDATE users SET {assignments} WHERE id = ?",
                    (*updates.values(), user_id),
                )
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def delete_user(self, user_id) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    # ------------------------- Books ------------------------- #
    def add_book(self, fields) -> Book:
        values = [fields.get(column) for column in BOOK_COLUMNS]
        with self._connection() as conn:
            cursor = conn.execute(
                "INSERT INTO books (title, author, published_year, isbn, copies_available, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (*values, _utcnow().isoformat()),
            )
            row = conn.execute("SELECT * FROM books WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return Book.from_dict(dict(row))

    def get_book(self, book_id) -> Optional[Book]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def list_books(self) -> List[Book]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY id ASC").fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def update_book(self, book_id, fields) -> Optional[Book]:
        updates = {k: v for k, v in fields.items() if k in BOOK_COLUMNS}
        with self._connection() as conn:
            if updates:
                assignments = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(
                    f"UPDATE books SET {assignments} WHERE id = ?",
                    (*updates.values(), book_id),
                )
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def delete_book(self, book_id) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            return cursor.rowcount > 0

    # ------------------------- Borrow records ------------------------- #
    _RECORD_SELECT = """
        SELECT br.id, br.user_id, br.book_id, br.borrow_date, br.due_date,
               br.return_date, br.created_at,
               u.full_name AS user_name, b.title AS book_title
        FROM borrow_records br
        LEFT JOIN users u ON u.id = br.user_id
        LEFT JOIN books b ON b.id = br.book_id
    """

    def add_record(self, user_id, book_id, borrow_date, due_date) -> BorrowRecord:
        with self._connection() as conn:
            cursor = conn.execute(
                "INSERT INTO borrow_records (user_id, book_id, borrow_date, due_date, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    user_id,
                    book_id,
                    borrow_date.isoformat(),
                    due_date.isoformat(),
                    BorrowStatus.BORROWED.value,
                    _utcnow().isoformat(),
                ),
            )
            row = conn.execute(self._RECORD_SELECT + " WHERE br.id = ?", (cursor.lastrowid,)).fetchone()
        return BorrowRecord.from_dict(dict(row))

    def get_record(self, record_id) -> Optional[BorrowRecord]:
        with self._connection() as conn:
            row = conn.execute(self._RECORD_SELECT + " WHERE br.id = ?", (record_id,)).fetchone()
        return BorrowRecord.from_dict(dict(row)) if row else None

    def list_records(self) -> List[BorrowRecord]:
        with self._connection() as conn:
            rows = conn.execute(self._RECORD_SELECT + " ORDER BY br.id ASC").fetchall()
        return [BorrowRecord.from_dict(dict(row)) for row in rows]

    def set_returned(self, record_id, return_date) -> Optional[BorrowRecord]:
        with self._connection() as conn:
            # return_date and status always change together
            cursor = conn.execute(
                "UPDATE borrow_records SET return_date = ?, status = ? WHERE id = ?",
                (return_date.isoformat(), BorrowStatus.RETURNED.value, record_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(self._RECORD_SELECT + " WHERE br.id = ?", (record_id,)).fetchone()
        return BorrowRecord.from_dict(dict(row))

    def delete_record(self, record_id) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM borrow_records WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    # ------------------------- Stats history ------------------------- #
    def save_snapshot(self, snapshot) -> StatsSnapshot:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO stats_history (day, total_books, total_users, active_borrows, overdue_books)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(day) DO UPDATE SET
                    total_books = excluded.total_books,
                    total_users = excluded.total_users,
                    active_borrows = excluded.active_borrows,
                    overdue_books = excluded.overdue_books
                """,
                (
                    snapshot.day.isoformat(),
                    snapshot.total_books,
                    snapshot.total_users,
                    snapshot.active_borrows,
                    snapshot.overdue_books,
                ),
            )
        return snapshot

    def get_snapshot(self, day) -> Optional[StatsSnapshot]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM stats_history WHERE day = ?", (day.isoformat(),)).fetchone()
        return StatsSnapshot.from_dict(dict(row)) if row else None


class MemoryStore(Store):
    """In-process store with the same constraints as ``SQLiteStore``.

    A single lock guards every method body; nothing is held between calls.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: Dict[int, User] = {}
        self._books: Dict[int, Book] = {}
        self._records: Dict[int, BorrowRecord] = {}
        self._snapshots: Dict[date, StatsSnapshot] = {}
        self._user_ids = itertools.count(1)
        self._book_ids = itertools.count(1)
        self._record_ids = itertools.count(1)

    def ping(self) -> bool:
        return True

    def _joined(self, record: BorrowRecord) -> BorrowRecord:
        user = self._users.get(record.user_id)
        book = self._books.get(record.book_id)
        return dataclasses.replace(
            record,
            user_name=user.full_name if user else None,
            book_title=book.title if book else None,
        )

    def _check_email_free(self, email: str, exclude_id: Optional[int] = None) -> None:
        for user in self._users.values():
            if user.email == email and user.id != exclude_id:
                raise Conflict("A user with this email already exists")

    # ------------------------- Users ------------------------- #
    def add_user(self, full_name, email, password_hash, role) -> User:
        with self._lock:
            self._check_email_free(email)
            user = User.from_dict({
                "id": next(self._user_ids),
                "full_name": full_name,
                "email": email,
                "password_hash": password_hash,
                "role": role,
                "created_at": _utcnow(),
            })
            self._users[user.id] = user
            return dataclasses.replace(user)

    def get_user(self, user_id) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return dataclasses.replace(user) if user else None

    def find_user_by_email(self, email) -> Optional[User]:
        with self._lock:
            for user in self._users.values():
                if user.email == email:
                    return dataclasses.replace(user)
            return None

    def list_users(self) -> List[User]:
        with self._lock:
            return [dataclasses.replace(self._users[k]) for k in sorted(self._users)]

    def update_user(self, user_id, fields) -> Optional[User]:
        updates = {k: v for k, v in fields.items() if k in USER_COLUMNS}
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            if "email" in updates:
                self._check_email_free(updates["email"], exclude_id=user_id)
            data = {**dataclasses.asdict(user), **updates}
            updated = User.from_dict(data)
            self._users[user_id] = updated
            return dataclasses.replace(updated)

    def delete_user(self, user_id) -> bool:
        with self._lock:
            if self._users.pop(user_id, None) is None:
                return False
            self._records = {k: r for k, r in self._records.items() if r.user_id != user_id}
            return True

    # ------------------------- Books ------------------------- #
    def add_book(self, fields) -> Book:
        with self._lock:
            data = {column: fields.get(column) for column in BOOK_COLUMNS}
            if data["copies_available"] is None:
                data["copies_available"] = 1
            if data["copies_available"] < 0:
                raise InvalidInput("Value violates a data constraint")
            book = Book.from_dict({**data, "id": next(self._book_ids), "created_at": _utcnow()})
            self._books[book.id] = book
            return dataclasses.replace(book)

    def get_book(self, book_id) -> Optional[Book]:
        with self._lock:
            book = self._books.get(book_id)
            return dataclasses.replace(book) if book else None

    def list_books(self) -> List[Book]:
        with self._lock:
            return [dataclasses.replace(self._books[k]) for k in sorted(self._books)]

    def update_book(self, book_id, fields) -> Optional[Book]:
        updates = {k: v for k, v in fields.items() if k in BOOK_COLUMNS}
        with self._lock:
            book = self._books.get(book_id)
            if book is None:
                return None
            updated = dataclasses.replace(book, **updates)
            if updated.copies_available is None or updated.copies_available < 0:
                raise InvalidInput("Value violates a data constraint")
            self._books[book_id] = updated
            return dataclasses.replace(updated)

    def delete_book(self, book_id) -> bool:
        with self._lock:
            if self._books.pop(book_id, None) is None:
                return False
            self._records = {k: r for k, r in self._records.items() if r.book_id != book_id}
            return True

    # ------------------------- Borrow records ------------------------- #
    def add_record(self, user_id, book_id, borrow_date, due_date) -> BorrowRecord:
        with self._lock:
            if user_id not in self._users or book_id not in self._books:
                raise InvalidInput("Referenced user or book does not exist")
            record = BorrowRecord(
                id=next(self._record_ids),
                user_id=user_id,
                book_id=book_id,
                borrow_date=borrow_date,
                due_date=due_date,
                created_at=_utcnow(),
            )
            self._records[record.id] = record
            return self._joined(record)

    def get_record(self, record_id) -> Optional[BorrowRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return self._joined(record) if record else None

    def list_records(self) -> List[BorrowRecord]:
        with self._lock:
            return [self._joined(self._records[k]) for k in sorted(self._records)]

    def set_returned(self, record_id, return_date) -> Optional[BorrowRecord]:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return None
            record = dataclasses.replace(record, return_date=return_date)
            self._records[record_id] = record
            return self._joined(record)

    def delete_record(self, record_id) -> bool:
        with self._lock:
            return self._records.pop(record_id, None) is not None

    # ------------------------- Stats history ------------------------- #
    def save_snapshot(self, snapshot) -> StatsSnapshot:
        with self._lock:
            self._snapshots[snapshot.day] = dataclasses.replace(snapshot)
            return snapshot

    def get_snapshot(self, day) -> Optional[StatsSnapshot]:
        with self._lock:
            snapshot = self._snapshots.get(day)
            return dataclasses.replace(snapshot) if snapshot else None


def open_store(settings: Settings) -> Store:
    """Build the store selected by ``settings.database_file``."""
    if settings.uses_memory_store:
        return MemoryStore()
    return SQLiteStore(settings.database_file)
