"""SQLAlchemy adapter tests against a temporary SQLite file (aiosqlite)."""

import asyncio
import datetime as dt
from collections.abc import AsyncGenerator
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
import sqlalchemy as sa

from himsog.domain.exceptions import (
    AppointmentNumberTakenError,
    SlotUnavailableError,
    StoreUnavailableError,
)
from himsog.domain.models import (
    Appointment,
    AppointmentStatus,
    BookingRequest,
    Principal,
    Role,
    SlotState,
)
from himsog.scheduling.service import SchedulingService
from himsog.store.adapters.sql import SqlSchedulingStore
from helpers import (
    DEFAULT_NOW,
    MONDAY,
    PROVIDER_ID,
    PROVIDER_USER_ID,
    FrozenClock,
    appointment,
    local,
)

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def sql_store(tmp_path: Path) -> AsyncGenerator[SqlSchedulingStore]:
    store = SqlSchedulingStore(f"sqlite+aiosqlite:///{tmp_path / 'himsog.db'}")
    await store.create_schema()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def sql_service(sql_store: SqlSchedulingStore) -> SchedulingService:
    service = SchedulingService(sql_store, utc_offset="+08:00", clock=FrozenClock(DEFAULT_NOW))
    settings = service.settings
    await settings.register_provider(PROVIDER_USER_ID, "Himsog Family Clinic", provider_id=PROVIDER_ID)
    for day in range(7):
        if day < 5:
            await settings.set_operating_hours(PROVIDER_ID, day, "09:00", "17:00")
        else:
            await settings.set_operating_hours(PROVIDER_ID, day, is_closed=True)
    await settings.add_break_time(PROVIDER_ID, "12:00", "13:00", day_of_week=0)
    await settings.add_service(PROVIDER_ID, "Consultation", "500.00", 30, service_id="svc-consult")
    await settings.add_service(PROVIDER_ID, "Physical Exam", "800.00", 60, service_id="svc-exam")
    return service


def _request(time: str = "10:00", service_ids: list[str] | None = None) -> BookingRequest:
    return BookingRequest(
        provider_id=PROVIDER_ID,
        service_ids=service_ids or ["svc-consult"],
        date=MONDAY,
        time=time,
        patient_name="Juan Dela Cruz",
        patient_email="juan@example.com",
    )


PATIENT = Principal(user_id="patient-1", role=Role.USER)
DOCTOR = Principal(user_id=PROVIDER_USER_ID, role=Role.PROVIDER)


class TestConfigurationRoundTrip:
    async def test_operating_hours(self, sql_service: SchedulingService) -> None:
        window = await sql_service.calendar.get_available_window(PROVIDER_ID, MONDAY)

        assert window.is_open
        assert window.open_time == dt.time(9, 0)
        assert window.close_time == dt.time(17, 0)
        assert [(b.start, b.end) for b in window.breaks] == [(dt.time(12, 0), dt.time(13, 0))]

    async def test_operating_hours_upsert(self, sql_service: SchedulingService) -> None:
        await sql_service.settings.set_operating_hours(PROVIDER_ID, 0, "08:00", "13:00")

        hours = await sql_service.store.list_operating_hours(PROVIDER_ID)

        assert len(hours) == 7
        assert hours[0].start_time == dt.time(8, 0)

    async def test_services(self, sql_service: SchedulingService) -> None:
        services = await sql_service.store.get_services(PROVIDER_ID, ["svc-exam", "svc-unknown"])

        assert [(s.service_id, s.price, s.duration_minutes) for s in services] == [
            ("svc-exam", Decimal("800.00"), 60)
        ]


class TestAppointments:
    async def test_book_and_list(self, sql_service: SchedulingService) -> None:
        booked = await sql_service.lifecycle.create(
            _request("10:00", ["svc-consult", "svc-exam"]), PATIENT
        )

        stored = await sql_service.store.get_appointment(booked.appointment_id)
        slots = {s.label: s.state for s in await sql_service.list_slots(PROVIDER_ID, MONDAY)}

        assert stored == booked
        assert stored.start_time.tzinfo is not None
        assert stored.start_time == local(MONDAY, "10:00")
        assert [s.name for s in stored.services] == ["Consultation", "Physical Exam"]
        assert stored.total_price == Decimal("1300.00")
        assert [slots[t] for t in ("10:00", "10:30", "11:00", "11:30")] == [
            SlotState.BOOKED,
            SlotState.BOOKED,
            SlotState.BOOKED,
            SlotState.OPEN,
        ]

    async def test_second_booking_is_rejected(self, sql_service: SchedulingService) -> None:
        await sql_service.lifecycle.create(_request("10:00"), PATIENT)

        with pytest.raises(SlotUnavailableError):
            await sql_service.lifecycle.create(_request("10:00"), PATIENT)

    async def test_concurrent_bookings_exactly_one_wins(
        self, sql_service: SchedulingService
    ) -> None:
        results = await asyncio.gather(
            sql_service.lifecycle.create(_request("10:00"), PATIENT),
            sql_service.lifecycle.create(_request("10:00"), Principal(user_id="p2", role=Role.USER)),
            sql_service.lifecycle.create(_request("10:00"), Principal(user_id="p3", role=Role.USER)),
            return_exceptions=True,
        )

        assert sum(isinstance(r, Appointment) for r in results) == 1
        assert sum(isinstance(r, SlotUnavailableError) for r in results) == 2
        live = await sql_service.store.list_appointments(
            PROVIDER_ID, local(MONDAY, "09:00"), local(MONDAY, "17:00")
        )
        assert len(live) == 1

    async def test_store_level_overlap_check(
        self, sql_store: SqlSchedulingStore, sql_service: SchedulingService
    ) -> None:
        await sql_store.insert_appointment(appointment(local(MONDAY, "10:00"), minutes=60))

        with pytest.raises(SlotUnavailableError):
            await sql_store.insert_appointment(
                appointment(local(MONDAY, "10:30"), appointment_id="appt-2")
            )

    async def test_duplicate_appointment_number_is_not_a_slot_clash(
        self, sql_store: SqlSchedulingStore, sql_service: SchedulingService
    ) -> None:
        first = await sql_store.insert_appointment(appointment(local(MONDAY, "10:00")))
        clash = appointment(local(MONDAY, "14:00"), appointment_id="appt-2").model_copy(
            update={"appointment_number": first.appointment_number}
        )

        with pytest.raises(AppointmentNumberTakenError):
            await sql_store.insert_appointment(clash)

        assert await sql_store.get_appointment("appt-2") is None

    async def test_set_review_writes_once(
        self, sql_store: SqlSchedulingStore, sql_service: SchedulingService
    ) -> None:
        await sql_store.insert_appointment(
            appointment(local(MONDAY, "10:00"), status=AppointmentStatus.COMPLETED)
        )

        results = await asyncio.gather(
            sql_store.set_review("appt-1", "review-A", updated_at=local(MONDAY, "11:00")),
            sql_store.set_review("appt-1", "review-B", updated_at=local(MONDAY, "11:00")),
        )

        winners = [r for r in results if r is not None]
        stored = await sql_store.get_appointment("appt-1")
        assert len(winners) == 1
        assert stored is not None
        assert stored.review_id == winners[0].review_id

    async def test_cancel_is_compare_and_set(self, sql_service: SchedulingService) -> None:
        booked = await sql_service.lifecycle.create(_request("10:00"), PATIENT)
        cancelled = await sql_service.lifecycle.cancel(
            booked.appointment_id, PATIENT, "SCHEDULE_CONFLICT", "Out of town"
        )

        stale = await sql_service.store.update_appointment(
            booked.model_copy(update={"status": AppointmentStatus.CONFIRMED}),
            expected_status=AppointmentStatus.PENDING,
        )

        assert cancelled.cancellation_reason == "Schedule conflict: Out of town"
        assert cancelled.cancelled_at == DEFAULT_NOW
        assert stale is None

    async def test_cancelled_row_frees_the_slot(self, sql_service: SchedulingService) -> None:
        booked = await sql_service.lifecycle.create(_request("10:00"), PATIENT)
        await sql_service.lifecycle.cancel(booked.appointment_id, PATIENT, "OTHER")

        rebooked = await sql_service.lifecycle.create(_request("10:00"), PATIENT)

        assert rebooked.status is AppointmentStatus.PENDING

    async def test_reschedule(self, sql_service: SchedulingService) -> None:
        booked = await sql_service.lifecycle.create(_request("10:00"), PATIENT)
        await sql_service.lifecycle.create(_request("11:00"), PATIENT)

        moved = await sql_service.lifecycle.reschedule(booked.appointment_id, DOCTOR, MONDAY, "14:30")
        with pytest.raises(SlotUnavailableError):
            await sql_service.lifecycle.reschedule(booked.appointment_id, DOCTOR, MONDAY, "11:00")

        assert moved.start_time == local(MONDAY, "14:30")
        assert moved.end_time == local(MONDAY, "15:00")

    async def test_sweep_overdue(self, sql_service: SchedulingService) -> None:
        booked = await sql_service.lifecycle.create(_request("09:00"), PATIENT)

        swept = await sql_service.lifecycle.sweep_overdue(local(MONDAY, "10:00"))

        assert [a.appointment_id for a in swept] == [booked.appointment_id]
        assert swept[0].status is AppointmentStatus.NO_SHOW


class TestFailures:
    async def test_health_check(self, sql_store: SqlSchedulingStore) -> None:
        assert await sql_store.health_check() is True

    async def test_missing_schema_is_store_unavailable(self, tmp_path: Path) -> None:
        store = SqlSchedulingStore(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        try:
            with pytest.raises(StoreUnavailableError):
                await store.get_provider(PROVIDER_ID)
        finally:
            await store.close()

    async def test_schema_has_partial_unique_index(self, sql_store: SqlSchedulingStore) -> None:
        async with sql_store.engine.connect() as conn:
            indexes = await conn.run_sync(
                lambda sync_conn: sa.inspect(sync_conn).get_indexes("appointments")
            )

        assert "uq_appointments_active_start" in {i["name"] for i in indexes}
