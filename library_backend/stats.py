import logging
from datetime import date, timedelta
from typing import Callable, Optional

from .database import Store
from .models import StatsSnapshot

logger = logging.getLogger(__name__)


class StatsService:
    """Daily library counts and their history (one snapshot per calendar day)."""

    def __init__(self, store: Store, today: Callable[[], date] = date.today) -> None:
        self.store = store
        self.today = today

    def current(self, day: Optional[date] = None) -> StatsSnapshot:
        """Live counts, computed from the store without saving them."""
        day = day or self.today()
        records = self.store.list_records()
        return StatsSnapshot(
            day=day,
            total_books=len(self.store.list_books()),
            total_users=len(self.store.list_users()),
            active_borrows=sum(1 for r in records if r.return_date is None),
            overdue_books=sum(1 for r in records if r.is_overdue(day)),
        )

    def recompute(self, day: Optional[date] = None) -> StatsSnapshot:
        """Compute the counts and upsert them as the snapshot for ``day``."""
        snapshot = self.store.save_snapshot(self.current(day))
        logger.info("Stats snapshot saved for %s", snapshot.day)
        return snapshot

    def get(self, day: date) -> Optional[StatsSnapshot]:
        return self.store.get_snapshot(day)

    def previous_day(self, day: Optional[date] = None) -> StatsSnapshot:
        """Snapshot for the day before ``day``; all zeros when none was saved."""
        previous = (day or self.today()) - timedelta(days=1)
        return self.store.get_snapshot(previous) or StatsSnapshot(day=previous)
