"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (PostgreSQL or MySQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    # SQLite dev fallback stored under /db/app.db to keep repo tidy
    fallback_path = BASE_DIR / "db" / "app.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and CLI commands."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Electronics Storefront API")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    # Key for guest order access tokens
    APP_KEY: Final[str] = os.getenv("APP_KEY", "default-secret-change-in-production")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    # Flask run configuration (used by run.py)
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Checkout defaults; the Setting table overrides these per installation
    TAX_RATE_PERCENT: Final[float] = float(os.getenv("TAX_RATE_PERCENT", "19.0"))
    FREE_SHIPPING_THRESHOLD: Final[float] = float(os.getenv("FREE_SHIPPING_THRESHOLD", "100.00"))
    SHIPPING_COST: Final[float] = float(os.getenv("SHIPPING_COST", "9.99"))
    CURRENCY: Final[str] = os.getenv("CURRENCY", "EUR")
    ORDER_NUMBER_PREFIX: Final[str] = os.getenv("ORDER_NUMBER_PREFIX", "SF")
    ORDER_PAGE_SIZE: Final[int] = int(os.getenv("ORDER_PAGE_SIZE", "20"))
    CATALOG_PAGE_SIZE: Final[int] = int(os.getenv("CATALOG_PAGE_SIZE", "20"))
    ADMIN_PRODUCT_PAGE_SIZE: Final[int] = int(os.getenv("ADMIN_PRODUCT_PAGE_SIZE", "50"))

    # Carrier tracking (UPS OAuth client credentials)
    UPS_CLIENT_ID: Final[str] = os.getenv("UPS_CLIENT_ID", "")
    UPS_CLIENT_SECRET: Final[str] = os.getenv("UPS_CLIENT_SECRET", "")
    UPS_ENVIRONMENT: Final[str] = os.getenv("UPS_ENVIRONMENT", "sandbox")
    UPS_API_TIMEOUT: Final[int] = int(os.getenv("UPS_API_TIMEOUT", "30"))
    DEFAULT_CARRIER: Final[str] = os.getenv("DEFAULT_CARRIER", "UPS")

    # Vendor B2B API
    VENDOR_API_BASE_URL: Final[str] = os.getenv("VENDOR_API_BASE_URL", "https://vendor.example.com/api/")
    VENDOR_API_KEY: Final[str] = os.getenv("VENDOR_API_KEY", "")
    VENDOR_API_TIMEOUT: Final[int] = int(os.getenv("VENDOR_API_TIMEOUT", "60"))
    VENDOR_API_CONNECT_TIMEOUT: Final[int] = int(os.getenv("VENDOR_API_CONNECT_TIMEOUT", "10"))
    VENDOR_API_LOGGING_ENABLED: Final[bool] = _str_to_bool(os.getenv("VENDOR_API_LOGGING_ENABLED"), default=True)
    VENDOR_DEFAULT_WAREHOUSE: Final[str] = os.getenv("VENDOR_DEFAULT_WAREHOUSE", "BR001")
    VENDOR_PAY_WITH: Final[str] = os.getenv("VENDOR_PAY_WITH", "Wire")
    VENDOR_INSURANCE: Final[str] = os.getenv("VENDOR_INSURANCE", "no")

    # Admin auth & abuse protection
    ADMIN_TOKEN_EXPIRY: Final[int] = int(os.getenv("ADMIN_TOKEN_EXPIRY", "86400"))
    RATE_LIMIT_STORE_PATH: Final[Path] = Path(
        os.getenv("RATE_LIMIT_STORE_PATH", (BASE_DIR / "storage" / "rate_limit_cache.json").as_posix())
    )
    ADMIN_LOGIN_MAX_ATTEMPTS: Final[int] = int(os.getenv("ADMIN_LOGIN_MAX_ATTEMPTS", "3"))
    ADMIN_LOGIN_WINDOW_SECONDS: Final[int] = int(os.getenv("ADMIN_LOGIN_WINDOW_SECONDS", "900"))
    ORDER_CREATE_MAX_ATTEMPTS: Final[int] = int(os.getenv("ORDER_CREATE_MAX_ATTEMPTS", "10"))
    ORDER_CREATE_WINDOW_SECONDS: Final[int] = int(os.getenv("ORDER_CREATE_WINDOW_SECONDS", "300"))

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["JSON_SORT_KEYS"] = False
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        cls.RATE_LIMIT_STORE_PATH.parent.mkdir(parents=True, exist_ok=True)
        app.config["RATE_LIMIT_STORE_PATH"] = str(cls.RATE_LIMIT_STORE_PATH)
