from datetime import date, datetime, timezone
from typing import Callable, Optional

from .auth import IdentityService
from .borrowing import BorrowingService
from .catalog import CatalogService
from .config import Settings
from .database import Store, open_store
from .policy import STAFF_ONLY, Policy
from .reports import ReportService
from .stats import StatsService


class Library:
    """Wires one store into every service.

    Nothing here is global: the API and the CLI each build a ``Library``
    from their settings, and tests build one around a throwaway store.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[Store] = None,
        today: Callable[[], date] = date.today,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.settings = settings or Settings()
        self.store = store if store is not None else open_store(self.settings)
        self.today = today

        self.identity = IdentityService.from_settings(self.store, self.settings, now=now)
        self.policy = Policy(role_rules=STAFF_ONLY if self.settings.enforce_roles else None)
        self.catalog = CatalogService(self.store, bcrypt_rounds=self.settings.bcrypt_rounds)
        self.borrowing = BorrowingService(self.store, today=today)
        self.reports = ReportService(self.store, today=today, fine_per_day=self.settings.fine_per_day)
        self.stats = StatsService(self.store, today=today)

    def initialize(self) -> None:
        """Ensure the store's schema exists."""
        self.store.initialize()

    def close(self) -> None:
        self.store.close()
