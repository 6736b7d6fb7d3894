"""Authentication and credential helpers.

Passwords are hashed with bcrypt and never stored or returned in plain
text. A successful login yields a signed JWT carrying the user id and role;
every protected operation verifies it with ``TokenManager.verify`` before
anything else happens. Verification is purely in-memory.

Logout is stateless unless ``revoke_tokens_on_logout`` is enabled, in which
case the token id lands in a ``RevocationList`` until the token expires.
"""

import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import bcrypt
import jwt

from .config import Settings
from .database import Store
from .errors import InvalidInput, Unauthorized
from .models import Role, User
from .validators import validate_user_fields

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes of its input
MAX_PASSWORD_BYTES = 72


def hash_password(password: str, rounds: int = 10) -> str:
    encoded = password.encode("utf-8")
    if not password:
        raise InvalidInput("Password cannot be empty")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise InvalidInput(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password or not password_hash:
        return False
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, password_hash.encode("ascii"))
    except ValueError:
        # stored value is not a bcrypt hash
        return False


@dataclass(frozen=True)
class Principal:
    """The verified caller behind a bearer token."""

    user_id: int
    role: Role
    token_id: str
    expires_at: datetime


class RevocationList:
    """Token ids invalidated by logout, kept only until they would expire anyway."""

    def __init__(self, now: Callable[[], datetime]) -> None:
        self._now = now
        self._lock = threading.Lock()
        self._revoked: Dict[str, datetime] = {}

    def revoke(self, token_id: str, expires_at: datetime) -> None:
        with self._lock:
            self._revoked[token_id] = expires_at
            self._purge()

    def is_revoked(self, token_id: str) -> bool:
        with self._lock:
            return token_id in self._revoked

    def __len__(self) -> int:
        with self._lock:
            self._purge()
            return len(self._revoked)

    def _purge(self) -> None:
        now = self._now()
        for token_id in [t for t, exp in self._revoked.items() if exp <= now]:
            del self._revoked[token_id]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """Issues and verifies signed bearer tokens."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        expires_in: timedelta = timedelta(hours=1),
        now: Callable[[], datetime] = _utcnow,
        revocations: Optional[RevocationList] = None,
    ) -> None:
        if not secret_key:
            raise ValueError("A token signing key is required")
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expires_in = expires_in
        self._now = now
        self.revocations = revocations

    def issue(self, user: User) -> str:
        issued_at = self._now()
        claims = {
            "sub": str(user.id),
            "role": user.role.value,
            "iat": issued_at,
            "exp": issued_at + self.expires_in,
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> Principal:
        if not token:
            raise Unauthorized("Access denied")
        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp", "jti"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise Unauthorized("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthorized("Invalid token") from exc

        try:
            principal = Principal(
                user_id=int(claims["sub"]),
                role=Role(claims.get("role", Role.STUDENT.value)),
                token_id=str(claims["jti"]),
                expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            )
        except (TypeError, ValueError) as exc:
            raise Unauthorized("Invalid token") from exc

        if self.revocations is not None and self.revocations.is_revoked(principal.token_id):
            raise Unauthorized("Token has been revoked")
        return principal


class IdentityService:
    """Registration, login, token verification and logout."""

    def __init__(self, store: Store, tokens: TokenManager, bcrypt_rounds: int = 10) -> None:
        self.store = store
        self.tokens = tokens
        self.bcrypt_rounds = bcrypt_rounds

    @classmethod
    def from_settings(
        cls, store: Store, settings: Settings, now: Callable[[], datetime] = _utcnow
    ) -> "IdentityService":
        revocations = RevocationList(now) if settings.revoke_tokens_on_logout else None
        tokens = TokenManager(
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
            expires_in=timedelta(minutes=settings.jwt_expiration_minutes),
            now=now,
            revocations=revocations,
        )
        return cls(store, tokens, bcrypt_rounds=settings.bcrypt_rounds)

    def register(self, full_name: str, email: str, password: str, role: Optional[str] = None) -> User:
        full_name, email, role = validate_user_fields(full_name, email, role)
        password_hash = hash_password(password or "", rounds=self.bcrypt_rounds)
        user = self.store.add_user(full_name, email, password_hash, role.value)
        logger.info("Registered user %s with role %s", user.id, user.role.value)
        return user

    def authenticate(self, email: str, password: str) -> str:
        user = self.store.find_user_by_email(email or "")
        if user is None:
            logger.warning("Login failed: unknown email")
            raise Unauthorized("Invalid email or password")
        if not verify_password(password or "", user.password_hash):
            logger.warning("Login failed for user %s: bad password", user.id)
            raise Unauthorized("Invalid email or password")
        logger.info("User %s logged in", user.id)
        return self.tokens.issue(user)

    def verify(self, token: Optional[str]) -> Principal:
        return self.tokens.verify(token)

    def logout(self, principal: Principal) -> bool:
        """Returns True when the token was actually revoked."""
        if self.tokens.revocations is None:
            return False
        self.tokens.revocations.revoke(principal.token_id, principal.expires_at)
        logger.info("Revoked token for user %s", principal.user_id)
        return True

    @property
    def token_lifetime_seconds(self) -> int:
        return int(self.tokens.expires_in.total_seconds())
