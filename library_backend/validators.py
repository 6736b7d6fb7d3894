"""Field-level validation shared by the catalog, identity and borrowing services.

Each helper returns the cleaned value(s) or raises ``InvalidInput``.
"""

from datetime import date, datetime
from typing import Any, Optional, Tuple

from .errors import InvalidInput
from .models import Role


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{field_name} is required")
    return value.strip()


def validate_email(email: Any) -> str:
    # stored exactly as given apart from surrounding whitespace
    email = _require_text(email, "email")
    local, _, domain = email.partition("@")
    if not local or not domain:
        raise InvalidInput("email must look like name@domain")
    return email


def validate_role(role: Any) -> Role:
    if role is None or role == "":
        return Role.STUDENT
    try:
        return Role(role)
    except ValueError:
        allowed = ", ".join(r.value for r in Role)
        raise InvalidInput(f"role must be one of: {allowed}") from None


def validate_user_fields(full_name: Any, email: Any, role: Any = None) -> Tuple[str, str, Role]:
    return _require_text(full_name, "full_name"), validate_email(email), validate_role(role)


def _optional_int(value: Any, field_name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{field_name} must be an integer")
    return value


def validate_book_fields(
    title: Any,
    author: Any,
    published_year: Any = None,
    isbn: Any = None,
    copies_available: Any = None,
) -> dict:
    """Clean a book's fields; ``copies_available`` defaults to 1."""
    copies = _optional_int(copies_available, "copies_available")
    if copies is None:
        copies = 1
    if copies < 0:
        raise InvalidInput("copies_available cannot be negative")
    if isbn is not None:
        if not isinstance(isbn, str):
            raise InvalidInput("isbn must be a string")
        isbn = isbn.strip() or None
    return {
        "title": _require_text(title, "title"),
        "author": _require_text(author, "author"),
        "published_year": _optional_int(published_year, "published_year"),
        "isbn": isbn,
        "copies_available": copies,
    }


def parse_due_date(value: Any) -> date:
    """Accept a ``date`` or an ISO ``YYYY-MM-DD`` string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    raise InvalidInput("due_date must be a calendar date (YYYY-MM-DD)")
