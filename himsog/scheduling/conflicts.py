import datetime as dt

from loguru import logger

from himsog.domain.models import Appointment
from himsog.store.ports import AbstractSchedulingStore


def intervals_overlap(
    start_a: dt.datetime, end_a: dt.datetime, start_b: dt.datetime, end_b: dt.datetime
) -> bool:
    """Half-open overlap: ``[a)`` and ``[b)`` share at least one instant."""
    return start_a < end_b and end_a > start_b


class ConflictChecker:
    """Detects overlap between a candidate range and a provider's blocking appointments.

    This is the fast, user-facing pre-check.  The store repeats the same
    check inside the transaction that writes the row.
    """

    def __init__(self, store: AbstractSchedulingStore) -> None:
        self._store = store

    async def find_conflicts(
        self,
        provider_id: str,
        candidate_start: dt.datetime,
        candidate_end: dt.datetime,
        *,
        exclude_id: str | None = None,
    ) -> list[Appointment]:
        existing = await self._store.list_appointments(
            provider_id, candidate_start, candidate_end, exclude_id=exclude_id
        )
        return [
            a
            for a in existing
            if a.status.is_blocking
            and intervals_overlap(candidate_start, candidate_end, a.start_time, a.end_time)
        ]

    async def has_conflict(
        self,
        provider_id: str,
        candidate_start: dt.datetime,
        candidate_end: dt.datetime,
        *,
        exclude_id: str | None = None,
    ) -> bool:
        conflicts = await self.find_conflicts(
            provider_id, candidate_start, candidate_end, exclude_id=exclude_id
        )
        if conflicts:
            logger.debug(
                "Range {} - {} conflicts with {} appointment(s)",
                candidate_start.isoformat(),
                candidate_end.isoformat(),
                len(conflicts),
            )
        return bool(conflicts)
