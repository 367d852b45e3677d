"""Configuration module for the Expense Tracker service.

This module loads every tunable of the service into a single pydantic-settings object.

Config discovery:
-----------------
The config file is discovered in the following order: (1) via the `EXPENSE_TRACKER_CONFIG_PATH`
environment variable, (2) `.expense` in the project root, (3) `.env` in the project root, (4) fallback to
environment variables only. Running on environment variables alone is what containerized deployments do.

Secrets:
--------
Secrets (JWT key, MongoDB URL, Firebase service account key) are never hardcoded and must be set via
environment or config file. Validators reject empty values and obvious placeholders at startup.

Domain constants:
-----------------
Family capacity, alias length, join request throttling, expense limits and pagination bounds live here so
that managers and routes read one value each.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class with an inline comment.
- If you change the config discovery logic, update this docstring.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
EXPENSE_FILENAME: str = ".expense"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "EXPENSE_TRACKER_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable EXPENSE_TRACKER_CONFIG_PATH
    2. .expense in project root
    3. .env in project root
    4. None (fallback to environment variables only)
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    expense_path: Path = PROJECT_ROOT / EXPENSE_FILENAME
    if expense_path.exists():
        return str(expense_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Application settings with environment variable support.
    All fields are loaded from the environment or the .expense/.env file.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    # Server configuration
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    DEBUG: bool = True
    CORS_ORIGINS: str = "*"  # Comma separated list

    # JWT configuration
    SECRET_KEY: SecretStr = SecretStr("")  # Must be set in .expense or environment
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # MongoDB configuration
    MONGODB_URL: str = ""  # Must be set in .expense or environment
    MONGODB_DATABASE: str = "expense_tracker"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Redis configuration
    # REDIS_URL is the effective URL used by the app. It can be provided directly
    # or will be constructed from host/port/credentials below.
    REDIS_URL: Optional[str] = None
    REDIS_HOST: str = "127.0.0.1"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_USERNAME: Optional[str] = None
    REDIS_PASSWORD: Optional[SecretStr] = None

    # Rate limiting
    RATE_LIMIT_REQUESTS: int = 100
    RATE_LIMIT_PERIOD_SECONDS: int = 60
    BLACKLIST_THRESHOLD: int = 10  # Number of violations before blacklisting
    BLACKLIST_DURATION: int = 60 * 60  # 1 hour
    FAMILY_CREATE_RATE_LIMIT: int = 5  # Per hour
    FAMILY_INVITE_RATE_LIMIT: int = 10  # Per hour
    JOIN_REQUEST_RATE_LIMIT: int = 10  # Per hour

    # Firebase / FCM
    FIREBASE_PROJECT_ID: str = ""
    FIREBASE_CLIENT_EMAIL: str = ""
    FIREBASE_PRIVATE_KEY: Optional[SecretStr] = None  # PEM, "\n" escapes allowed
    FCM_ENABLED: bool = False
    FCM_TIMEOUT_SECONDS: float = 10.0

    # Family workflow
    FAMILY_MAX_SIZE: int = 10
    ALIAS_LENGTH: int = 6
    ALIAS_MAX_GENERATION_ATTEMPTS: int = 100
    JOIN_REQUEST_TTL_HOURS: int = 72
    JOIN_REQUEST_ATTEMPT_WINDOW_DAYS: int = 7
    JOIN_REQUEST_MAX_ATTEMPTS: int = 2

    # Expenses
    EXPENSE_MAX_AMOUNT: float = 1_000_000
    PAGE_SIZE_DEFAULT: int = 10
    PAGE_SIZE_MAX: int = 100
    DEFAULT_CURRENCY: str = "₹"

    # Periodic cleanup (seconds)
    FAMILY_CLEANUP_INTERVAL: int = 300
    JOIN_REQUEST_CLEANUP_INTERVAL: int = 3600
    EXPENSE_PURGE_INTERVAL: int = 86400
    EXPENSE_PURGE_RETENTION_DAYS: int = 90

    # Logging
    LOG_LEVEL: str = "INFO"
    APP_NAME: str = "expense-tracker"
    ENV: str = "dev"
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_COMPRESS: bool = True

    @field_validator("SECRET_KEY", mode="before")
    @classmethod
    def no_hardcoded_secrets(cls, v, info):
        if not v or "change" in str(v).lower() or "0000" in str(v) or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or .expense and not hardcoded!")
        return v

    @field_validator("MONGODB_URL", mode="before")
    @classmethod
    def no_empty_urls(cls, v, info):
        if not v or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or .expense and not empty!")
        return v

    @field_validator("FAMILY_MAX_SIZE", "PAGE_SIZE_DEFAULT", "PAGE_SIZE_MAX", "ALIAS_LENGTH", mode="before")
    @classmethod
    def validate_positive_integers(cls, v, info):
        """Validate that size settings are positive."""
        value = int(v)
        if value <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer")
        return value

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return not self.DEBUG

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def fcm_configured(self) -> bool:
        return bool(
            self.FCM_ENABLED and self.FIREBASE_PROJECT_ID and self.FIREBASE_CLIENT_EMAIL and self.FIREBASE_PRIVATE_KEY
        )


# Global settings instance
settings: Settings = Settings()

# Compute effective REDIS_URL if not explicitly provided.
if not settings.REDIS_URL:
    creds = ""
    if settings.REDIS_USERNAME or settings.REDIS_PASSWORD:
        username = settings.REDIS_USERNAME or ""
        password = settings.REDIS_PASSWORD.get_secret_value() if settings.REDIS_PASSWORD else ""
        if username and password:
            creds = f"{username}:{password}@"
        elif password and not username:
            creds = f":{password}@"
    settings.REDIS_URL = f"redis://{creds}{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
