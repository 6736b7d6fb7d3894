import logging
from datetime import date
from typing import Callable, List, Optional, Union

from .database import Store
from .errors import NotFound
from .models import BorrowRecord
from .validators import parse_due_date

logger = logging.getLogger(__name__)


class BorrowingService:
    """Borrow-record lifecycle: borrowed -> returned, plus administrative delete.

    Creating a record checks nothing beyond the due date; referential
    integrity is left to the store. Copies available are never adjusted.
    """

    def __init__(self, store: Store, today: Callable[[], date] = date.today) -> None:
        self.store = store
        self.today = today

    def create_record(
        self,
        user_id: int,
        book_id: int,
        due_date: Union[date, str],
        borrow_date: Optional[Union[date, str]] = None,
    ) -> BorrowRecord:
        due = parse_due_date(due_date)
        borrowed_on = parse_due_date(borrow_date) if borrow_date is not None else self.today()
        record = self.store.add_record(user_id, book_id, borrowed_on, due)
        logger.info("User %s borrowed book %s (record %s, due %s)", user_id, book_id, record.id, due)
        return record

    def get_record(self, record_id: int) -> BorrowRecord:
        record = self.store.get_record(record_id)
        if record is None:
            raise NotFound("Borrow record not found")
        return record

    def list_records(self) -> List[BorrowRecord]:
        return self.store.list_records()

    def mark_returned(self, record_id: int) -> BorrowRecord:
        """Stamp today's date as the return date.

        Calling this on an already returned record stamps it again.
        """
        existing = self.store.get_record(record_id)
        if existing is None:
            raise NotFound("Borrow record not found")
        if existing.return_date is not None:
            logger.warning(
                "Record %s was already returned on %s; overwriting return date",
                record_id,
                existing.return_date,
            )
        record = self.store.set_returned(record_id, self.today())
        if record is None:
            # deleted between the two calls
            raise NotFound("Borrow record not found")
        logger.info("Record %s returned on %s", record_id, record.return_date)
        return record

    def delete_record(self, record_id: int) -> bool:
        removed = self.store.delete_record(record_id)
        if removed:
            logger.info("Deleted borrow record %s", record_id)
        return removed
