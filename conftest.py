from datetime import date

import pytest
from fastapi.testclient import TestClient

from library_backend.api import create_app
from library_backend.config import Settings
from library_backend.database import MemoryStore, SQLiteStore
from library_backend.library import Library

TODAY = date(2024, 5, 15)
SECRET = "test-signing-key-which-is-long-enough-0123456789"


@pytest.fixture
def settings(tmp_path):
    # tmp_path is unique per test, so is the database file; bcrypt kept fast
    db_file = str(tmp_path / "library_test.db")
    return Settings(database_file=db_file, jwt_secret_key=SECRET, bcrypt_rounds=4)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, settings):
    if request.param == "memory":
        store = MemoryStore()
    else:
        store = SQLiteStore(settings.database_file)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def lib(settings, store):
    library = Library(settings, store=store, today=lambda: TODAY)
    yield library
    library.close()


@pytest.fixture
def client(settings):
    library = Library(settings, today=lambda: TODAY)
    with TestClient(create_app(library=library)) as test_client:
        yield test_client


@pytest.fixture
def login(client):
    """Register (if needed) and log in; returns the Authorization header."""

    def _login(email="reader@example.com", password="s3cret-pass", full_name="Reader One", role=None):
        payload = {"full_name": full_name, "email": email, "password": password}
        if role:
            payload["role"] = role
        client.post("/register", json=payload)
        response = client.post("/login", json={"email": email, "password": password})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['token']}"}

    return _login
