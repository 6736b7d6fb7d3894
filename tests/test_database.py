import sqlite3
from datetime import date

import pytest

from library_backend.config import Settings
from library_backend.database import MemoryStore, SQLiteStore, open_store
from library_backend.errors import Conflict, InvalidInput, Unavailable
from library_backend.models import StatsSnapshot


@pytest.fixture
def sqlite_store(settings):
    store = SQLiteStore(settings.database_file)
    store.initialize()
    return store


def _fields(title="Dune"):
    return {"title": title, "author": "Frank Herbert", "published_year": None, "isbn": None, "copies_available": 1}


def test_initialize_is_idempotent(sqlite_store):
    sqlite_store.add_book(_fields())
    sqlite_store.initialize()
    assert len(sqlite_store.list_books()) == 1


def test_ping(sqlite_store, tmp_path):
    assert sqlite_store.ping() is True
    assert SQLiteStore(str(tmp_path / "missing" / "library.db")).ping() is False


def test_unreachable_database_is_unavailable(tmp_path):
    store = SQLiteStore(str(tmp_path / "missing" / "library.db"))
    with pytest.raises(Unavailable):
        store.list_books()


def test_unique_email(sqlite_store):
    sqlite_store.add_user("One", "same@example.com", None, "student")
    with pytest.raises(Conflict, match="email"):
        sqlite_store.add_user("Two", "same@example.com", None, "student")
    assert len(sqlite_store.list_users()) == 1


def test_foreign_keys_are_enforced(sqlite_store):
    user = sqlite_store.add_user("One", "one@example.com", None, "student")
    with pytest.raises(InvalidInput):
        sqlite_store.add_record(user.id, 12345, date(2024, 5, 1), date(2024, 5, 15))


def test_negative_copies_rejected_by_schema(sqlite_store):
    with pytest.raises(InvalidInput):
        sqlite_store.add_book({**_fields(), "copies_available": -1})


def test_status_column_written_with_return_date(sqlite_store, settings):
    user = sqlite_store.add_user("One", "one@example.com", None, "student")
    book = sqlite_store.add_book(_fields())
    record = sqlite_store.add_record(user.id, book.id, date(2024, 5, 1), date(2024, 5, 15))
    sqlite_store.set_returned(record.id, date(2024, 5, 10))

    conn = sqlite3.connect(settings.database_file)
    try:
        row = conn.execute(
            "SELECT status, return_date FROM borrow_records WHERE id = ?", (record.id,)
        ).fetchone()
    finally:
        conn.close()
    assert row == ("returned", "2024-05-10")


def test_set_returned_on_missing_record(sqlite_store):
    assert sqlite_store.set_returned(99, date(2024, 5, 10)) is None


def test_cascade_on_user_delete(sqlite_store):
    user = sqlite_store.add_user("One", "one@example.com", None, "student")
    book = sqlite_store.add_book(_fields())
    sqlite_store.add_record(user.id, book.id, date(2024, 5, 1), date(2024, 5, 15))

    assert sqlite_store.delete_user(user.id) is True
    assert sqlite_store.list_records() == []
    assert len(sqlite_store.list_books()) == 1


def test_snapshot_upsert(sqlite_store):
    day = date(2024, 5, 14)
    sqlite_store.save_snapshot(StatsSnapshot(day=day, total_books=1))
    sqlite_store.save_snapshot(StatsSnapshot(day=day, total_books=7, total_users=2))

    assert sqlite_store.get_snapshot(day) == StatsSnapshot(day=day, total_books=7, total_users=2)
    assert sqlite_store.get_snapshot(date(2024, 5, 13)) is None


def test_memory_store_returns_copies():
    store = MemoryStore()
    book = store.add_book(_fields())
    book.title = "Changed locally"
    assert store.get_book(book.id).title == "Dune"


def test_open_store_picks_backend(tmp_path):
    assert isinstance(open_store(Settings(database_file=":memory:")), MemoryStore)
    store = open_store(Settings(database_file=str(tmp_path / "lib.db")))
    assert isinstance(store, SQLiteStore)
