import logging
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class Settings:
    # API Settings
    api_host: str = field(default_factory=lambda: _env("API_HOST", "127.0.0.1"))
    api_port: int = field(default_factory=lambda: int(_env("API_PORT", "8000")))
    cors_origins: List[str] = field(
        default_factory=lambda: _env_list("CORS_ORIGINS", "http://localhost:5173")
    )

    # Database Settings (":memory:" selects the in-process store)
    database_file: str = field(default_factory=lambda: _env("DATABASE_FILE", "library.db"))

    # Security Settings
    jwt_secret_key: str = field(
        default_factory=lambda: _env("JWT_SECRET_KEY", "change-this-secret-key-in-production-0000")
    )
    jwt_algorithm: str = field(default_factory=lambda: _env("JWT_ALGORITHM", "HS256"))
    jwt_expiration_minutes: int = field(default_factory=lambda: int(_env("JWT_EXPIRATION_MINUTES", "60")))
    bcrypt_rounds: int = field(default_factory=lambda: int(_env("BCRYPT_ROUNDS", "10")))
    revoke_tokens_on_logout: bool = field(default_factory=lambda: _env_bool("REVOKE_TOKENS_ON_LOGOUT"))
    enforce_roles: bool = field(default_factory=lambda: _env_bool("ENFORCE_ROLES"))

    # Lending Settings
    fine_per_day: int = field(default_factory=lambda: int(_env("FINE_PER_DAY", "1")))
    report_limit: int = field(default_factory=lambda: int(_env("REPORT_LIMIT", "10")))

    # Application Settings
    app_name: str = field(default_factory=lambda: _env("APP_NAME", "Library Management API"))
    app_version: str = field(default_factory=lambda: _env("APP_VERSION", "1.0.0"))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG"))
    environment: str = field(default_factory=lambda: _env("ENVIRONMENT", "development"))
    log_level: str = field(default_factory=lambda: _env("LOG_LEVEL", "INFO"))

    @classmethod
    def from_env(cls) -> "Settings":
        """Re-read the environment (and .env) into a fresh Settings."""
        load_dotenv(override=False)
        return cls()

    @property
    def uses_memory_store(self) -> bool:
        return self.database_file == ":memory:"


def configure_logging(settings: Settings) -> None:
    """Configure root logging once for the process."""
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
