"""Configuration helpers for the booking lifecycle service and its workers."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import os
import warnings
from typing import Dict, Optional

# Development-only fallbacks. Production deployments must set the variables explicitly.
_DEFAULT_DATABASE_URLS: Dict[str, str] = {
    "booking": "postgresql://booking:booking-dev@db_booking:5432/bookingdb",
}

_DEFAULT_REDIS_URL = "redis://redis:6379/0"
_DEFAULT_EVENT_STREAM = "booking-events"
_DEFAULT_HOST = "0.0.0.0"
_DEFAULT_PORT = 8000

_INSECURE_PASSWORDS = {"password", "123456", "admin", "root", "test", ""}

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DatabaseConfig:
    url: str


@dataclass(frozen=True)
class RedisConfig:
    url: str
    stream: str


@dataclass(frozen=True)
class ServiceConfig:
    name: str
    host: str
    port: int
    database: DatabaseConfig
    redis: RedisConfig


@dataclass(frozen=True)
class LifecycleSettings:
    """Business rules of the booking lifecycle.

    Every value can be overridden through environment variables, see
    :func:`load_lifecycle_settings`.
    """

    timezone: str = "UTC"
    max_daily_bookings: int = 6
    recurrence_horizon_days: int = 7
    cancellation_hard_block: bool = False
    cancellation_block_hours: int = 2
    check_in_early_minutes: int = 60
    check_in_late_minutes: int = 120
    min_service_minutes: int = 5
    min_duration_minutes: int = 30
    max_duration_minutes: int = 480
    duration_step_minutes: int = 15
    max_booking_amount: Decimal = Decimal("10000")


def _current_environment() -> str:
    return os.getenv("ENVIRONMENT", os.getenv("ENV", "development")).lower()


def _lookup_database_url(service_name: str) -> str:
    """Lookup database URL from environment variables with fallback to defaults.

    The fallback values only make sense on a developer machine; in production
    they raise instead of being used silently.
    """
    service_env = f"{service_name.upper()}_DATABASE_URL"
    db_url = (
        os.getenv(service_env)
        or os.getenv("DATABASE_URL")
        or _DEFAULT_DATABASE_URLS.get(service_name, "")
    )

    if db_url and db_url in _DEFAULT_DATABASE_URLS.values():
        if _current_environment() in ("production", "prod"):
            raise ValueError(
                "Default database URLs cannot be used in production. "
                f"Set {service_env} or DATABASE_URL."
            )
        warnings.warn(
            f"Using the default database URL for {service_name}. "
            f"Set {service_env} or DATABASE_URL outside development.",
            UserWarning,
            stacklevel=2,
        )

    return db_url


def _validate_no_insecure_password(password: Optional[str], context: str = "") -> None:
    if password and password.lower() in _INSECURE_PASSWORDS:
        if _current_environment() in ("production", "prod"):
            raise ValueError(f"Insecure password detected in {context}.")
        warnings.warn(
            f"Insecure password detected in {context}.",
            UserWarning,
            stacklevel=3,
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def load_service_config(service_name: str) -> ServiceConfig:
    """Aggregate configuration for a given service using env vars with sane fallbacks.

    Args:
        service_name: Service name (``booking``).

    Returns:
        ServiceConfig: the resolved configuration.

    Raises:
        ValueError: if no database URL is configured or insecure defaults are
            detected in production.
    """

    normalized_name = service_name.lower()
    db_url = _lookup_database_url(normalized_name)
    if not db_url:
        raise ValueError(
            f"DATABASE_URL not configured for service '{normalized_name}'. "
            f"Set DATABASE_URL or {normalized_name.upper()}_DATABASE_URL."
        )

    if ":" in db_url and "@" in db_url:
        try:
            auth_part = db_url.split("@")[0].split("://")[1]
            if ":" in auth_part:
                password = auth_part.split(":")[1]
                _validate_no_insecure_password(password, f"DATABASE_URL for {service_name}")
        except IndexError:
            pass

    host = os.getenv("APP_HOST", _DEFAULT_HOST)
    port = _env_int("APP_PORT", _DEFAULT_PORT)

    redis_url = os.getenv("REDIS_URL", _DEFAULT_REDIS_URL)
    stream_name = os.getenv("EVENT_STREAM", _DEFAULT_EVENT_STREAM)

    return ServiceConfig(
        name=normalized_name,
        host=host,
        port=port,
        database=DatabaseConfig(url=db_url),
        redis=RedisConfig(url=redis_url, stream=stream_name),
    )


def load_lifecycle_settings() -> LifecycleSettings:
    """Read the lifecycle business rules from the environment."""

    defaults = LifecycleSettings()
    raw_amount = os.getenv("MAX_BOOKING_AMOUNT")
    max_amount = Decimal(raw_amount) if raw_amount else defaults.max_booking_amount

    settings = LifecycleSettings(
        timezone=os.getenv("BOOKING_TIMEZONE", defaults.timezone),
        max_daily_bookings=_env_int("MAX_DAILY_BOOKINGS", defaults.max_daily_bookings),
        recurrence_horizon_days=_env_int("RECURRENCE_HORIZON_DAYS", defaults.recurrence_horizon_days),
        cancellation_hard_block=_env_bool("CANCELLATION_HARD_BLOCK", defaults.cancellation_hard_block),
        cancellation_block_hours=_env_int("CANCELLATION_BLOCK_HOURS", defaults.cancellation_block_hours),
        check_in_early_minutes=_env_int("CHECK_IN_EARLY_MINUTES", defaults.check_in_early_minutes),
        check_in_late_minutes=_env_int("CHECK_IN_LATE_MINUTES", defaults.check_in_late_minutes),
        min_service_minutes=_env_int("MIN_SERVICE_MINUTES", defaults.min_service_minutes),
        min_duration_minutes=_env_int("MIN_DURATION_MINUTES", defaults.min_duration_minutes),
        max_duration_minutes=_env_int("MAX_DURATION_MINUTES", defaults.max_duration_minutes),
        duration_step_minutes=_env_int("DURATION_STEP_MINUTES", defaults.duration_step_minutes),
        max_booking_amount=max_amount,
    )

    if settings.max_daily_bookings < 1:
        raise ValueError("MAX_DAILY_BOOKINGS must be at least 1")
    if settings.recurrence_horizon_days < 0:
        raise ValueError("RECURRENCE_HORIZON_DAYS cannot be negative")
    return settings
