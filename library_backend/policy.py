"""Access-control policy.

Every route names an operation and asks ``Policy.authorize`` whether the
caller may run it. The observed rule set only distinguishes public
operations from ones that need any valid token; role restrictions plug in
through ``role_rules`` without touching the routes.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Mapping, Optional

from .auth import Principal
from .errors import Forbidden, Unauthorized
from .models import Role

logger = logging.getLogger(__name__)


class Access(str, enum.Enum):
    PUBLIC = "public"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class Rule:
    access: Access
    roles: Optional[FrozenSet[Role]] = None  # None means any role


PUBLIC = Rule(Access.PUBLIC)
AUTHENTICATED = Rule(Access.AUTHENTICATED)

# operation name -> rule; api.py binds each name to one method and path
OPERATIONS: Dict[str, Rule] = {
    "health": PUBLIC,
    "register": PUBLIC,
    "login": PUBLIC,
    "logout": AUTHENTICATED,
    "users.list": AUTHENTICATED,
    "users.create": AUTHENTICATED,
    "users.get": AUTHENTICATED,
    "users.me": AUTHENTICATED,
    "users.update_me": AUTHENTICATED,
    "users.update": AUTHENTICATED,
    "users.delete": AUTHENTICATED,
    "books.list": AUTHENTICATED,
    "books.get": AUTHENTICATED,
    "books.create": AUTHENTICATED,
    "books.update": AUTHENTICATED,
    "books.delete": AUTHENTICATED,
    "books.bulk_create": AUTHENTICATED,
    "records.list": AUTHENTICATED,
    "records.get": AUTHENTICATED,
    "records.create": AUTHENTICATED,
    "records.return": AUTHENTICATED,
    "records.delete": AUTHENTICATED,
    "reports.most_borrowed": AUTHENTICATED,
    "reports.active_users": AUTHENTICATED,
    "reports.overdue": PUBLIC,
    "stats.current": AUTHENTICATED,
    "stats.recompute": AUTHENTICATED,
    "stats.previous_day": AUTHENTICATED,
}

STAFF = frozenset({Role.LIBRARIAN, Role.ADMIN})

# Ready-made per-role restrictions, switched on by Settings.enforce_roles.
STAFF_ONLY: Dict[str, FrozenSet[Role]] = {
    "users.list": STAFF,
    "users.create": STAFF,
    "users.get": STAFF,
    "users.update": frozenset({Role.ADMIN}),
    "users.delete": frozenset({Role.ADMIN}),
    "books.create": STAFF,
    "books.update": STAFF,
    "books.delete": STAFF,
    "books.bulk_create": STAFF,
    "records.create": STAFF,
    "records.return": STAFF,
    "records.delete": STAFF,
    "stats.recompute": STAFF,
}


class Policy:
    """Maps an operation and a caller to allow / deny."""

    def __init__(
        self,
        operations: Mapping[str, Rule] = OPERATIONS,
        role_rules: Optional[Mapping[str, FrozenSet[Role]]] = None,
    ) -> None:
        self.operations = dict(operations)
        self.role_rules = dict(role_rules or {})

    def rule_for(self, operation: str) -> Optional[Rule]:
        rule = self.operations.get(operation)
        if rule is None:
            return None
        roles = self.role_rules.get(operation, rule.roles)
        return Rule(rule.access, roles)

    def requires_token(self, operation: str) -> bool:
        rule = self.rule_for(operation)
        return rule is None or rule.access is Access.AUTHENTICATED

    def authorize(self, operation: str, principal: Optional[Principal]) -> None:
        """Raise ``Unauthorized`` or ``Forbidden`` unless the call is allowed."""
        rule = self.rule_for(operation)
        if rule is None:
            logger.warning("Denied unknown operation %r", operation)
            raise Forbidden(f"Unknown operation: {operation}")
        if rule.access is Access.PUBLIC:
            return
        if principal is None:
            raise Unauthorized("Access denied")
        if rule.roles is not None and principal.role not in rule.roles:
            logger.warning(
                "User %s with role %s denied %s", principal.user_id, principal.role.value, operation
            )
            raise Forbidden()
