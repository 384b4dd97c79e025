"""Sources answering whether a provider declared itself open for a time slot."""

from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

import httpx
import structlog
from sqlalchemy.orm import Session

from app import crud
from shared.scheduling import ensure_timezone, minutes_since_midnight

logger = structlog.get_logger(__name__)


class AvailabilitySource(Protocol):
    def is_within_declared_availability(self, provider_id: UUID, start: datetime, duration: int) -> bool:
        ...


def _minutes(value) -> int:
    return value.hour * 60 + value.minute


class ScheduleAvailabilitySource:
    """Checks slots against the provider's weekly ``ProviderAvailability`` rows.

    A provider that declared no hours at all is considered open; once any row
    exists, a slot must fit entirely inside one declared block of its weekday.
    """

    def __init__(self, db: Session, tz_name: str = "UTC"):
        self.db = db
        self.tz_name = tz_name

    def _has_declared_schedule(self, provider_id: UUID) -> bool:
        return any(crud.list_availability(self.db, provider_id, day) for day in range(7))

    def is_within_declared_availability(self, provider_id: UUID, start: datetime, duration: int) -> bool:
        local_start = ensure_timezone(start, self.tz_name)
        blocks = crud.list_availability(self.db, provider_id, local_start.weekday())
        if not blocks:
            return not self._has_declared_schedule(provider_id)

        start_minutes = minutes_since_midnight(local_start, self.tz_name)
        end_minutes = start_minutes + duration
        return any(
            _minutes(block.start_time) <= start_minutes and end_minutes <= _minutes(block.end_time)
            for block in blocks
        )


class HttpAvailabilitySource:
    """Asks the remote planning service. Any failure answers "unavailable"."""

    def __init__(
        self,
        base_url: str,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = 5.0,
        auth_token: Optional[str] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._auth_token = auth_token

    def is_within_declared_availability(self, provider_id: UUID, start: datetime, duration: int) -> bool:
        url = f"{self.base_url}/providers/{provider_id}/availability/check"
        headers = {}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"

        try:
            resp = self._client.get(
                url,
                params={"start": ensure_timezone(start).isoformat(), "duration": duration},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("availability_check_failed", provider_id=str(provider_id), error=str(exc))
            return False

        if resp.status_code != 200:
            logger.warning(
                "availability_check_failed",
                provider_id=str(provider_id),
                status_code=resp.status_code,
            )
            return False

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning("availability_check_invalid_payload", provider_id=str(provider_id))
            return False
        return bool(payload.get("available", False))

    def close(self) -> None:
        self._client.close()
