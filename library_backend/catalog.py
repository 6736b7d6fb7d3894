import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from .auth import hash_password
from .database import Store
from .errors import Conflict, InvalidInput, LibraryError, NotFound
from .models import Book, User
from .schemas import BookCreateModel, describe_errors
from .validators import validate_book_fields, validate_email, validate_role, validate_user_fields

logger = logging.getLogger(__name__)


@dataclass
class BulkItemResult:
    """Outcome of one entry in a bulk book import."""

    index: int
    book: Optional[Book] = None
    error: Optional[LibraryError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        if self.ok:
            return {"index": self.index, "ok": True, "book": self.book.to_dict()}
        return {"index": self.index, "ok": False, "error": self.error.to_dict()}


class CatalogService:
    """Users and books as independent records with field-level validation."""

    def __init__(self, store: Store, bcrypt_rounds: int = 10) -> None:
        self.store = store
        self.bcrypt_rounds = bcrypt_rounds

    # ------------------------- Users ------------------------- #
    def create_user(
        self,
        full_name: str,
        email: str,
        role: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        """Staff-side user creation. Without a password the account cannot log in."""
        full_name, email, role = validate_user_fields(full_name, email, role)
        password_hash = hash_password(password, rounds=self.bcrypt_rounds) if password else None
        user = self.store.add_user(full_name, email, password_hash, role.value)
        logger.info("Created user %s", user.id)
        return user

    def list_users(self) -> List[User]:
        return self.store.list_users()

    def get_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def update_profile(
        self,
        user_id: int,
        full_name: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        """Self-service update; only the given fields change."""
        fields: dict = {}
        if full_name is not None:
            if not full_name.strip():
                raise InvalidInput("full_name is required")
            fields["full_name"] = full_name.strip()
        if email is not None:
            fields["email"] = validate_email(email)
        if password:
            fields["password_hash"] = hash_password(password, rounds=self.bcrypt_rounds)
        user = self.store.update_user(user_id, fields)
        if user is None:
            raise NotFound("User not found")
        logger.info("User %s updated own profile (%s)", user_id, ", ".join(sorted(fields)) or "no changes")
        return user

    def update_user(self, user_id: int, full_name: str, email: str, role: Optional[str] = None) -> User:
        """Replace name and email; the role only changes when one is given."""
        full_name, email, _ = validate_user_fields(full_name, email)
        fields = {"full_name": full_name, "email": email}
        if role is not None:
            fields["role"] = validate_role(role).value
        user = self.store.update_user(user_id, fields)
        if user is None:
            raise NotFound("User not found")
        logger.info("Updated user %s", user_id)
        return user

    def delete_user(self, user_id: int) -> bool:
        removed = self.store.delete_user(user_id)
        if removed:
            logger.info("Deleted user %s and their borrow records", user_id)
        return removed

    # ------------------------- Books ------------------------- #
    def create_book(
        self,
        title: str,
        author: str,
        published_year: Optional[int] = None,
        isbn: Optional[str] = None,
        copies_available: Optional[int] = None,
    ) -> Book:
        fields = validate_book_fields(title, author, published_year, isbn, copies_available)
        book = self.store.add_book(fields)
        logger.info("Added book %s: %s", book.id, book.title)
        return book

    def list_books(self) -> List[Book]:
        return self.store.list_books()

    def get_book(self, book_id: int) -> Book:
        book = self.store.get_book(book_id)
        if book is None:
            raise NotFound("Book not found")
        return book

    def update_book(
        self,
        book_id: int,
        title: str,
        author: str,
        published_year: Optional[int] = None,
        isbn: Optional[str] = None,
        copies_available: Optional[int] = None,
    ) -> Book:
        """Replace every field of the book."""
        fields = validate_book_fields(title, author, published_year, isbn, copies_available)
        book = self.store.update_book(book_id, fields)
        if book is None:
            raise NotFound("Book not found")
        logger.info("Updated book %s", book_id)
        return book

    def delete_book(self, book_id: int) -> bool:
        removed = self.store.delete_book(book_id)
        if removed:
            logger.info("Deleted book %s and its borrow records", book_id)
        return removed

    def bulk_create_books(self, specs: Sequence[Mapping[str, Any]]) -> List[BulkItemResult]:
        """Insert each entry on its own; a failure never undoes earlier inserts."""
        if not isinstance(specs, (list, tuple)):
            raise InvalidInput("books must be an array")
        results: List[BulkItemResult] = []
        for index, spec in enumerate(specs):
            if not isinstance(spec, Mapping):
                results.append(BulkItemResult(index, error=InvalidInput("each book must be an object")))
                continue
            # same coercion and bounds as a single POST /books body
            try:
                payload = BookCreateModel.model_validate(dict(spec))
            except ValidationError as exc:
                results.append(BulkItemResult(index, error=InvalidInput(describe_errors(exc.errors()))))
                continue
            try:
                book = self.create_book(**payload.model_dump())
            except (InvalidInput, Conflict) as exc:
                results.append(BulkItemResult(index, error=exc))
            else:
                results.append(BulkItemResult(index, book=book))

        failed = sum(1 for r in results if not r.ok)
        if failed:
            logger.warning("Bulk import: %d of %d books rejected", failed, len(results))
        return results
