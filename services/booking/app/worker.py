"""Periodic jobs of the booking service: recurrence generation and reminders.

Run with ``python -m app.worker`` from ``services/booking``; ``--once`` runs a
single pass, which is what a cron-style scheduler should call.
"""

import argparse
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from app.services.availability import ScheduleAvailabilitySource
from app.services.lifecycle import BookingLifecycleOrchestrator
from app.services.notifications import NotificationSink, StreamNotificationSink
from app.services.recurrence import SweepReport, run_generation_sweep
from shared import EventPublisher, configure_logging, load_lifecycle_settings, load_service_config
from shared.config import LifecycleSettings

logger = structlog.get_logger(__name__)


@dataclass
class PassReport:
    sweep: SweepReport
    reminders: int


def run_once(
    session_factory: sessionmaker,
    *,
    settings: Optional[LifecycleSettings] = None,
    sink: Optional[NotificationSink] = None,
    clock: Optional[Callable] = None,
) -> PassReport:
    settings = settings or load_lifecycle_settings()
    sweep = run_generation_sweep(
        session_factory,
        settings=settings,
        availability_factory=lambda db: ScheduleAvailabilitySource(db, settings.timezone),
        sink=sink,
        clock=clock,
    )

    with session_factory() as db:
        orchestrator = BookingLifecycleOrchestrator(db, settings=settings, sink=sink, clock=clock)
        reminders = orchestrator.send_due_reminders()

    return PassReport(sweep=sweep, reminders=len(reminders.bookings))


def build_sink() -> NotificationSink:
    config = load_service_config("booking")
    return StreamNotificationSink(EventPublisher(config.redis.url, config.redis.stream))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Booking lifecycle periodic jobs")
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    parser.add_argument("--interval", type=int, default=300, help="seconds between passes")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args(argv)

    configure_logging("booking-worker", logging.DEBUG if args.debug else logging.INFO)

    from app.core.database import SessionLocal

    settings = load_lifecycle_settings()
    sink = build_sink()
    while True:
        try:
            report = run_once(SessionLocal, settings=settings, sink=sink)
            logger.info(
                "worker_pass_finished",
                generated=report.sweep.generated,
                skipped=report.sweep.skipped,
                reminders=report.reminders,
            )
        except Exception:
            if args.once:
                raise
            logger.exception("worker_pass_failed")
        if args.once:
            return 0
        time.sleep(args.interval)


if __name__ == "__main__":
    raise SystemExit(main())
