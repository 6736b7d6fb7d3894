from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from conftest import SECRET, TODAY
from library_backend.api import create_app
from library_backend.auth import TokenManager
from library_backend.library import Library
from library_backend.models import Role, User


def _error(response):
    return response.json()["error"]


def _book(client, headers, title="Dune", author="Frank Herbert", **extra):
    response = client.post("/books", headers=headers, json={"title": title, "author": author, **extra})
    assert response.status_code == 200, response.text
    return response.json()


def _me(client, headers):
    return client.get("/users/me", headers=headers).json()


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["database"] is True


def test_borrow_and_return_flow(client):
    response = client.post(
        "/register", json={"full_name": "Erin Example", "email": "erin@example.com", "password": "pw-123"}
    )
    assert response.status_code == 200
    assert response.json()["message"] == "User registered successfully"
    user_id = response.json()["id"]

    again = client.post(
        "/register", json={"full_name": "Erin Again", "email": "erin@example.com", "password": "other"}
    )
    assert again.status_code == 409
    assert _error(again)["kind"] == "conflict"

    login = client.post("/login", json={"email": "erin@example.com", "password": "pw-123"})
    assert login.status_code == 200
    body = login.json()
    assert body["token_type"] == "bearer"
    assert body["expires_in"] == 3600
    assert jwt.decode(body["token"], SECRET, algorithms=["HS256"])["sub"] == str(user_id)
    headers = {"Authorization": f"Bearer {body['token']}"}

    book = _book(client, headers)
    record = client.post(
        "/borrow_records",
        headers=headers,
        json={"user_id": user_id, "book_id": book["id"], "due_date": (TODAY - timedelta(days=3)).isoformat()},
    ).json()
    assert record["status"] == "borrowed"
    assert record["borrow_date"] == TODAY.isoformat()

    overdue = client.get("/reports/overdue")
    assert overdue.status_code == 200
    (entry,) = overdue.json()
    assert entry["record_id"] == record["id"]
    assert entry["user_name"] == "Erin Example"
    assert entry["title"] == "Dune"
    assert entry["overdue_days"] == 3
    assert entry["fine"] == 3

    returned = client.put(f"/borrow_records/{record['id']}/return", headers=headers)
    assert returned.status_code == 200
    assert returned.json()["status"] == "returned"
    assert returned.json()["return_date"] == TODAY.isoformat()

    assert client.get("/reports/overdue").json() == []


def test_login_with_wrong_password(client, login):
    login()
    response = client.post("/login", json={"email": "reader@example.com", "password": "nope"})
    assert response.status_code == 401
    assert _error(response) == {"kind": "unauthorized", "message": "Invalid email or password"}
    assert response.headers["www-authenticate"] == "Bearer"


@pytest.mark.parametrize("path", ["/books", "/users", "/borrow_records", "/reports/most-borrowed", "/stats"])
def test_protected_routes_need_a_token(client, path):
    response = client.get(path)
    assert response.status_code == 401
    assert _error(response)["kind"] == "unauthorized"


@pytest.mark.parametrize("header", ["Bearer not-a-token", "Token abc", "Bearer "])
def test_malformed_authorization_header(client, header):
    response = client.get("/books", headers={"Authorization": header})
    assert response.status_code == 401


def test_expired_token_is_rejected(client, login):
    user_id = _me(client, login())["id"]
    two_hours_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    expired = TokenManager(SECRET, now=lambda: two_hours_ago).issue(
        User(id=user_id, full_name="Reader One", email="reader@example.com", role=Role.STUDENT)
    )
    response = client.get("/books", headers={"Authorization": f"Bearer {expired}"})
    assert response.status_code == 401
    assert _error(response)["message"] == "Token has expired"


def test_validation_errors_use_the_error_envelope(client):
    response = client.post("/register", json={"full_name": "No Email", "password": "pw"})
    assert response.status_code == 400
    assert _error(response)["kind"] == "invalid_input"
    assert "email" in _error(response)["message"]


def test_register_rejects_unknown_role(client):
    response = client.post(
        "/register", json={"full_name": "X", "email": "x@example.com", "password": "pw", "role": "superuser"}
    )
    assert response.status_code == 400


def test_users_never_expose_passwords(client, login):
    headers = login()
    users = client.get("/users", headers=headers).json()
    assert len(users) == 1
    assert "password" not in users[0] and "password_hash" not in users[0]
    assert users[0]["role"] == "student"


def test_user_admin_routes(client, login):
    headers = login()
    created = client.post(
        "/users", headers=headers, json={"full_name": "Walk In", "email": "walkin@example.com"}
    )
    assert created.status_code == 200
    user_id = created.json()["id"]

    assert client.get(f"/users/{user_id}", headers=headers).json()["email"] == "walkin@example.com"
    updated = client.put(
        f"/users/{user_id}",
        headers=headers,
        json={"full_name": "Walk In", "email": "walkin@example.com", "role": "librarian"},
    )
    assert updated.json()["role"] == "librarian"

    deleted = client.delete(f"/users/{user_id}", headers=headers)
    assert deleted.json() == {"message": "User deleted"}
    missing = client.get(f"/users/{user_id}", headers=headers)
    assert missing.status_code == 404
    assert _error(missing)["kind"] == "not_found"


def test_update_user_without_role_keeps_it(client, login):
    headers = login()
    boss_id = client.post(
        "/register",
        json={"full_name": "Boss", "email": "boss@example.com", "password": "pw", "role": "admin"},
    ).json()["id"]

    response = client.put(
        f"/users/{boss_id}", headers=headers, json={"full_name": "Boss Renamed", "email": "boss@example.com"}
    )
    assert response.status_code == 200
    assert response.json()["full_name"] == "Boss Renamed"
    assert response.json()["role"] == "admin"


def test_bulk_books_coerce_numbers_like_single_create(client, login):
    headers = login()
    single = _book(client, headers, copies_available="3")
    bulk = client.post(
        "/bulk-books",
        headers=headers,
        json={"books": [{"title": "Emma", "author": "Jane Austen", "copies_available": "3"}]},
    ).json()
    assert bulk["created"] == 1
    assert bulk["results"][0]["book"]["copies_available"] == single["copies_available"] == 3


def test_update_own_profile(client, login):
    headers = login()
    response = client.put("/users/me", headers=headers, json={"full_name": "Reader Renamed"})
    assert response.status_code == 200
    assert response.json()["full_name"] == "Reader Renamed"
    assert response.json()["email"] == "reader@example.com"


def test_token_of_deleted_user(client, login):
    headers = login()
    me = _me(client, headers)
    client.delete(f"/users/{me['id']}", headers=headers)

    # the token stays valid until it expires; only the profile lookup fails
    assert client.get("/books", headers=headers).status_code == 200
    assert client.get("/users/me", headers=headers).status_code == 404


def test_book_routes(client, login):
    headers = login()
    book = _book(client, headers, published_year=1965, copies_available=2)
    assert book["copies_available"] == 2

    assert client.get(f"/books/{book['id']}", headers=headers).json()["title"] == "Dune"
    updated = client.put(
        f"/books/{book['id']}", headers=headers, json={"title": "Dune", "author": "F. Herbert"}
    ).json()
    assert updated["author"] == "F. Herbert"
    assert updated["copies_available"] == 1

    assert [b["id"] for b in client.get("/books", headers=headers).json()] == [book["id"]]
    assert client.delete(f"/books/{book['id']}", headers=headers).json() == {"message": "Book deleted"}
    assert client.get(f"/books/{book['id']}", headers=headers).status_code == 404


def test_create_book_rejects_negative_copies(client, login):
    response = client.post(
        "/books", headers=login(), json={"title": "Dune", "author": "Frank Herbert", "copies_available": -1}
    )
    assert response.status_code == 400


def test_bulk_books_partial_success(client, login):
    headers = login()
    response = client.post(
        "/bulk-books",
        headers=headers,
        json={"books": [
            {"title": "Dune", "author": "Frank Herbert"},
            {"title": "", "author": "Nobody"},
            {"title": "Emma", "author": "Jane Austen"},
        ]},
    )
    assert response.status_code == 200
    body = response.json()
    assert (body["created"], body["failed"]) == (2, 1)
    assert [r["ok"] for r in body["results"]] == [True, False, True]
    assert body["results"][1]["error"]["kind"] == "invalid_input"
    assert len(client.get("/books", headers=headers).json()) == 2


def test_bulk_books_requires_an_array(client, login):
    response = client.post("/bulk-books", headers=login(), json={"books": {"title": "Dune"}})
    assert response.status_code == 400
    assert _error(response)["message"] == "books must be an array"


def test_borrow_record_routes(client, login):
    headers = login()
    user_id = _me(client, headers)["id"]
    book = _book(client, headers)
    record = client.post(
        "/borrow_records",
        headers=headers,
        json={"user_id": user_id, "book_id": book["id"], "due_date": "2024-06-01"},
    ).json()

    listed = client.get("/borrow_records", headers=headers).json()
    assert [(r["id"], r["user_name"], r["title"]) for r in listed] == [(record["id"], "Reader One", "Dune")]
    assert client.get(f"/borrow_records/{record['id']}", headers=headers).json()["due_date"] == "2024-06-01"

    deleted = client.delete(f"/borrow_records/{record['id']}", headers=headers)
    assert deleted.json() == {"message": "Borrow record deleted"}
    # deleting a missing record is not an error
    assert client.delete(f"/borrow_records/{record['id']}", headers=headers).status_code == 200
    assert client.put(f"/borrow_records/{record['id']}/return", headers=headers).status_code == 404


def test_borrow_record_with_unknown_book(client, login):
    headers = login()
    user_id = _me(client, headers)["id"]
    response = client.post(
        "/borrow_records", headers=headers, json={"user_id": user_id, "book_id": 999, "due_date": "2024-06-01"}
    )
    assert response.status_code == 400
    assert _error(response)["kind"] == "invalid_input"


def test_borrow_record_with_bad_due_date(client, login):
    headers = login()
    response = client.post(
        "/borrow_records", headers=headers, json={"user_id": 1, "book_id": 1, "due_date": "next week"}
    )
    assert response.status_code == 400


def test_most_borrowed_and_active_users(client, login):
    headers = login()
    user_id = _me(client, headers)["id"]
    dune = _book(client, headers)
    emma = _book(client, headers, "Emma", "Jane Austen")
    for book in (dune, dune, emma):
        client.post(
            "/borrow_records",
            headers=headers,
            json={"user_id": user_id, "book_id": book["id"], "due_date": "2024-06-01"},
        )

    top = client.get("/reports/most-borrowed", headers=headers, params={"limit": 1}).json()
    assert top == [{"book_id": dune["id"], "title": "Dune", "borrow_count": 2}]

    active = client.get("/reports/active-users", headers=headers).json()
    assert active == [{"user_id": user_id, "user_name": "Reader One", "borrow_count": 3}]


@pytest.mark.parametrize("limit", [0, 101, "ten"])
def test_report_limit_bounds(client, login, limit):
    response = client.get("/reports/most-borrowed", headers=login(), params={"limit": limit})
    assert response.status_code == 400


def test_stats_routes(client, login):
    headers = login()
    _book(client, headers)

    current = client.get("/stats", headers=headers).json()
    assert current == {
        "day": TODAY.isoformat(),
        "total_books": 1,
        "total_users": 1,
        "active_borrows": 0,
        "overdue_books": 0,
    }
    assert client.post("/stats/recompute", headers=headers).json() == current

    previous = client.get("/stats/previous-day", headers=headers).json()
    assert previous["day"] == (TODAY - timedelta(days=1)).isoformat()
    assert previous["total_books"] == 0


def test_logout_is_stateless_by_default(client, login):
    headers = login()
    response = client.post("/logout", headers=headers)
    assert response.json() == {"message": "Logged out successfully"}
    assert client.get("/books", headers=headers).status_code == 200


def test_logout_revokes_token_when_enabled(settings):
    settings.revoke_tokens_on_logout = True
    with TestClient(create_app(library=Library(settings, today=lambda: TODAY))) as client:
        client.post("/register", json={"full_name": "R", "email": "r@example.com", "password": "pw"})
        token = client.post("/login", json={"email": "r@example.com", "password": "pw"}).json()["token"]
        headers = {"Authorization": f"Bearer {token}"}

        assert client.post("/logout", headers=headers).status_code == 200
        response = client.get("/books", headers=headers)
        assert response.status_code == 401
        assert _error(response)["message"] == "Token has been revoked"


def test_role_enforcement_when_enabled(settings):
    settings.enforce_roles = True
    with TestClient(create_app(library=Library(settings, today=lambda: TODAY))) as client:
        def token_for(email, role):
            client.post("/register", json={"full_name": email, "email": email, "password": "pw", "role": role})
            token = client.post("/login", json={"email": email, "password": "pw"}).json()["token"]
            return {"Authorization": f"Bearer {token}"}

        student = token_for("student@example.com", "student")
        librarian = token_for("librarian@example.com", "librarian")
        payload = {"title": "Dune", "author": "Frank Herbert"}

        denied = client.post("/books", headers=student, json=payload)
        assert denied.status_code == 403
        assert _error(denied)["kind"] == "forbidden"
        assert client.post("/books", headers=librarian, json=payload).status_code == 200
        assert client.get("/books", headers=student).status_code == 200


def test_unexpected_errors_become_internal(settings, monkeypatch):
    library = Library(settings, today=lambda: TODAY)
    app = create_app(library=library)
    with TestClient(app, raise_server_exceptions=False) as client:
        client.post("/register", json={"full_name": "R", "email": "r@example.com", "password": "pw"})
        token = client.post("/login", json={"email": "r@example.com", "password": "pw"}).json()["token"]

        def broken():
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(library.catalog, "list_books", broken)
        response = client.get("/books", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 500
        assert _error(response) == {"kind": "internal", "message": "Internal server error"}
