"""Cancellation lead-time policy.

The policy is advisory: it tells the caller whether a cancellation is inside
the non-cancellable window and which penalty tier applies. Whether the
blocked tier actually stops the cancellation is a configuration choice of the
caller (``LifecycleSettings.cancellation_hard_block``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .scheduling import hours_until

BLOCK_HOURS = 2
HIGH_PENALTY_HOURS = 24
LOW_PENALTY_HOURS = 48

HIGH_PENALTY_PERCENTAGE = 50
LOW_PENALTY_PERCENTAGE = 25


@dataclass(frozen=True)
class CancellationDecision:
    can_cancel: bool
    has_penalty: bool
    penalty_percentage: int
    hours_until_booking: float
    message: str = field(default="")

    def as_dict(self) -> dict:
        return {
            "can_cancel": self.can_cancel,
            "has_penalty": self.has_penalty,
            "penalty_percentage": self.penalty_percentage,
            "hours_until_booking": round(self.hours_until_booking, 2),
            "message": self.message,
        }


def evaluate_cancellation(hours_until_start: float, *, block_hours: int = BLOCK_HOURS) -> CancellationDecision:
    """Map the lead time of a cancellation to its outcome.

    Args:
        hours_until_start: Hours between now and the scheduled start, may be negative.
        block_hours: Lower bound of the cancellable range.

    Returns:
        CancellationDecision for the matching tier.
    """
    if hours_until_start < block_hours:
        return CancellationDecision(
            can_cancel=False,
            has_penalty=False,
            penalty_percentage=0,
            hours_until_booking=hours_until_start,
            message=f"Cancellation is not possible less than {block_hours}h before the appointment",
        )
    if hours_until_start < HIGH_PENALTY_HOURS:
        return CancellationDecision(
            can_cancel=True,
            has_penalty=True,
            penalty_percentage=HIGH_PENALTY_PERCENTAGE,
            hours_until_booking=hours_until_start,
            message=f"Cancellation between {block_hours}h and {HIGH_PENALTY_HOURS}h: {HIGH_PENALTY_PERCENTAGE}% penalty",
        )
    if hours_until_start < LOW_PENALTY_HOURS:
        return CancellationDecision(
            can_cancel=True,
            has_penalty=True,
            penalty_percentage=LOW_PENALTY_PERCENTAGE,
            hours_until_booking=hours_until_start,
            message=f"Cancellation between {HIGH_PENALTY_HOURS}h and {LOW_PENALTY_HOURS}h: {LOW_PENALTY_PERCENTAGE}% penalty",
        )
    return CancellationDecision(
        can_cancel=True,
        has_penalty=False,
        penalty_percentage=0,
        hours_until_booking=hours_until_start,
        message=f"Free cancellation (more than {LOW_PENALTY_HOURS}h ahead)",
    )


def evaluate_cancellation_at(start: datetime, now: datetime, *, block_hours: int = BLOCK_HOURS) -> CancellationDecision:
    return evaluate_cancellation(hours_until(start, now), block_hours=block_hours)


def can_cancel_booking(start: datetime, now: datetime, *, block_hours: int = BLOCK_HOURS) -> bool:
    return evaluate_cancellation_at(start, now, block_hours=block_hours).can_cancel
