"""Read-only aggregate views over borrow records and the catalog."""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, List

from .database import Store
from .errors import InvalidInput

logger = logging.getLogger(__name__)


@dataclass
class BorrowCount:
    id: int
    name: str
    borrow_count: int


@dataclass
class OverdueEntry:
    record_id: int
    user_id: int
    user_name: str
    book_id: int
    title: str
    due_date: date
    overdue_days: int
    fine: int

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "book_id": self.book_id,
            "title": self.title,
            "due_date": self.due_date.isoformat(),
            "overdue_days": self.overdue_days,
            "fine": self.fine,
        }


def _check_limit(limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise InvalidInput("limit must be a positive integer")
    return limit


def _top(counts: Counter, names: Dict[int, str], limit: int) -> List[BorrowCount]:
    # Counter.most_common keeps first-seen order among equal counts
    return [BorrowCount(key, names.get(key) or "", count) for key, count in counts.most_common(limit)]


class ReportService:
    def __init__(self, store: Store, today: Callable[[], date] = date.today, fine_per_day: int = 1) -> None:
        self.store = store
        self.today = today
        self.fine_per_day = fine_per_day

    def most_borrowed(self, limit: int = 10) -> List[BorrowCount]:
        """Books ordered by how many times they were borrowed, returned or not."""
        limit = _check_limit(limit)
        counts: Counter = Counter()
        titles: Dict[int, str] = {}
        for record in self.store.list_records():
            counts[record.book_id] += 1
            titles.setdefault(record.book_id, record.book_title)
        return _top(counts, titles, limit)

    def most_active_borrowers(self, limit: int = 10) -> List[BorrowCount]:
        limit = _check_limit(limit)
        counts: Counter = Counter()
        names: Dict[int, str] = {}
        for record in self.store.list_records():
            counts[record.user_id] += 1
            names.setdefault(record.user_id, record.user_name)
        return _top(counts, names, limit)

    def overdue(self) -> List[OverdueEntry]:
        """Unreturned records whose due date is before today, with the fine owed."""
        today = self.today()
        entries = []
        for record in self.store.list_records():
            if not record.is_overdue(today):
                continue
            days = record.overdue_days(today)
            entries.append(OverdueEntry(
                record_id=record.id,
                user_id=record.user_id,
                user_name=record.user_name or "",
                book_id=record.book_id,
                title=record.book_title or "",
                due_date=record.due_date,
                overdue_days=days,
                fine=days * self.fine_per_day,
            ))
        entries.sort(key=lambda e: (e.due_date, e.record_id))
        logger.debug("Overdue report: %d records", len(entries))
        return entries
