"""Shared utilities used by the booking lifecycle service."""

from .cancellation import CancellationDecision, can_cancel_booking, evaluate_cancellation, evaluate_cancellation_at
from .config import LifecycleSettings, ServiceConfig, load_lifecycle_settings, load_service_config
from .logging import configure_logging, operation_context
from .messaging import EventPublisher
from .recurring import (
    BIWEEKLY,
    FREQUENCIES,
    MONTHLY,
    WEEKLY,
    get_next_occurrence,
    iter_occurrences,
    validate_recurring_pattern,
)
from .scheduling import (
    TimeWindow,
    combine,
    ensure_timezone,
    hours_until,
    interval,
    minutes_since_midnight,
    overlaps,
)

__all__ = [
    "ServiceConfig",
    "LifecycleSettings",
    "load_service_config",
    "load_lifecycle_settings",
    "EventPublisher",
    "configure_logging",
    "operation_context",
    "CancellationDecision",
    "evaluate_cancellation",
    "evaluate_cancellation_at",
    "can_cancel_booking",
    "WEEKLY",
    "BIWEEKLY",
    "MONTHLY",
    "FREQUENCIES",
    "get_next_occurrence",
    "iter_occurrences",
    "validate_recurring_pattern",
    "TimeWindow",
    "interval",
    "overlaps",
    "combine",
    "ensure_timezone",
    "hours_until",
    "minutes_since_midnight",
]
