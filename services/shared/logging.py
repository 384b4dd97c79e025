"""Structured logging helpers for the lifecycle service and its workers."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional
from uuid import uuid4

import structlog


def configure_logging(
    service_name: str,
    level: int = logging.INFO,
    *,
    json_output: bool = True,
) -> structlog.stdlib.BoundLogger:
    """Configure structlog to emit JSON logs with contextual information."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger().bind(service=service_name)


@contextmanager
def operation_context(operation: str, *, correlation_id: Optional[str] = None, **values: Any) -> Iterator[str]:
    """Bind ``operation`` and a correlation id to every log line emitted inside the block."""
    correlation = correlation_id or str(uuid4())
    with structlog.contextvars.bound_contextvars(
        operation=operation,
        correlation_id=correlation,
        **{key: str(value) for key, value in values.items() if value is not None},
    ):
        yield correlation
