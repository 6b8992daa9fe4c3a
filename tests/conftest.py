import datetime as dt
from collections.abc import Callable
from typing import Any

import pytest
import pytest_asyncio

from himsog.domain.models import BookingRequest, Principal, Provider, Role
from himsog.scheduling.service import SchedulingService
from himsog.store.adapters.memory import InMemorySchedulingStore
from helpers import (
    DEFAULT_NOW,
    MONDAY,
    PATIENT_USER_ID,
    PROVIDER_ID,
    PROVIDER_USER_ID,
    FrozenClock,
)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(DEFAULT_NOW)


@pytest.fixture
def store() -> InMemorySchedulingStore:
    return InMemorySchedulingStore()


@pytest.fixture
def service(store: InMemorySchedulingStore, clock: FrozenClock) -> SchedulingService:
    return SchedulingService(store, utc_offset="+08:00", clock=clock)


@pytest.fixture
def patient() -> Principal:
    return Principal(user_id=PATIENT_USER_ID, role=Role.USER)


@pytest.fixture
def doctor() -> Principal:
    return Principal(user_id=PROVIDER_USER_ID, role=Role.PROVIDER)


@pytest_asyncio.fixture
async def provider(service: SchedulingService) -> Provider:
    """Weekdays 09:00-17:00, lunch 12:00-13:00 on Mondays, 30-minute slots."""
    settings = service.settings
    provider = await settings.register_provider(
        PROVIDER_USER_ID, "Himsog Family Clinic", provider_id=PROVIDER_ID
    )
    for day in range(7):
        if day < 5:
            await settings.set_operating_hours(PROVIDER_ID, day, "09:00", "17:00")
        else:
            await settings.set_operating_hours(PROVIDER_ID, day, is_closed=True)
    await settings.add_break_time(PROVIDER_ID, "12:00", "13:00", day_of_week=0)

    await settings.add_service(PROVIDER_ID, "Consultation", "500.00", 30, service_id="svc-consult")
    await settings.add_service(PROVIDER_ID, "Physical Exam", "800.00", 60, service_id="svc-exam")
    await settings.add_service(PROVIDER_ID, "Medical Certificate", "150.00", service_id="svc-cert")
    await settings.add_service(
        PROVIDER_ID, "Retired Service", "100.00", 30, service_id="svc-retired", is_active=False
    )
    return provider


@pytest.fixture
def make_request() -> Callable[..., BookingRequest]:
    def _make(
        time: str = "10:00",
        date: dt.date = MONDAY,
        service_ids: list[str] | None = None,
        **overrides: Any,
    ) -> BookingRequest:
        fields: dict[str, Any] = {
            "provider_id": PROVIDER_ID,
            "service_ids": ["svc-consult"] if service_ids is None else service_ids,
            "date": date,
            "time": time,
            "patient_name": "Juan Dela Cruz",
            "patient_email": "juan@example.com",
            "patient_phone": "09171234567",
        }
        fields.update(overrides)
        return BookingRequest(**fields)

    return _make
