import datetime as dt
from collections.abc import AsyncIterator, Collection
from contextlib import asynccontextmanager
from typing import Any

import sqlalchemy as sa
from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from himsog.domain.exceptions import (
    AppointmentNumberTakenError,
    SchedulingError,
    SlotUnavailableError,
    StoreUnavailableError,
)
from himsog.domain.models import (
    BLOCKING_STATUSES,
    Appointment,
    AppointmentStatus,
    BookedService,
    BreakTime,
    OperatingHours,
    Provider,
    ProviderStatus,
    Service,
)
from himsog.store.adapters.tables import (
    AppointmentRow,
    AppointmentServiceRow,
    Base,
    BreakTimeRow,
    OperatingHoursRow,
    ProviderRow,
    ServiceRow,
)
from himsog.store.ports import AbstractSchedulingStore

_OVERDUE_STATUSES = (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value)


def _install_sqlite_write_locking(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    With ``BEGIN IMMEDIATE`` two check-then-insert transactions cannot both
    read before either writes; the second waits for the first to commit.
    """

    @sa.event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        # Stop the driver from emitting its own deferred BEGIN.
        dbapi_connection.isolation_level = None

    @sa.event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: sa.Connection) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlSchedulingStore(AbstractSchedulingStore):
    """Scheduling store backed by SQLAlchemy's asyncio engine.

    Supports PostgreSQL (``postgresql+asyncpg://``) and SQLite
    (``sqlite+aiosqlite://``).  On PostgreSQL an exclusion constraint rejects
    overlapping blocking appointments; on both backends the insert path
    locks, re-checks and writes inside a single transaction.
    """

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        self._engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True)
        self._dialect = self._engine.dialect.name
        if self._dialect == "sqlite":
            _install_sqlite_write_locking(self._engine)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_schema(self) -> None:
        """Create all tables (and the PostgreSQL exclusion constraint) if missing."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Scheduling schema ready on {}", self._dialect)

    async def drop_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions.begin() as session:
                yield session
        except (SchedulingError, IntegrityError):
            raise
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Scheduling store request failed: {exc}") from exc

    # -- provider configuration -------------------------------------------------

    async def get_provider(self, provider_id: str) -> Provider | None:
        async with self._transaction() as session:
            row = await session.get(ProviderRow, provider_id)
            return _provider_from_row(row) if row else None

    async def save_provider(self, provider: Provider) -> Provider:
        async with self._transaction() as session:
            await session.merge(
                ProviderRow(
                    id=provider.provider_id,
                    user_id=provider.user_id,
                    name=provider.name,
                    slot_duration_minutes=provider.slot_duration_minutes,
                    status=provider.status.value,
                )
            )
        return provider

    async def list_operating_hours(self, provider_id: str) -> list[OperatingHours]:
        async with self._transaction() as session:
            rows = await session.scalars(
                sa.select(OperatingHoursRow)
                .where(OperatingHoursRow.provider_id == provider_id)
                .order_by(OperatingHoursRow.day_of_week)
            )
            return [_hours_from_row(r) for r in rows]

    async def save_operating_hours(self, hours: OperatingHours) -> OperatingHours:
        async with self._transaction() as session:
            row = await session.scalar(
                sa.select(OperatingHoursRow).where(
                    OperatingHoursRow.provider_id == hours.provider_id,
                    OperatingHoursRow.day_of_week == hours.day_of_week,
                )
            )
            if row is None:
                row = OperatingHoursRow(provider_id=hours.provider_id, day_of_week=hours.day_of_week)
                session.add(row)
            row.start_time = hours.start_time
            row.end_time = hours.end_time
            row.is_closed = hours.is_closed
        return hours

    async def list_break_times(self, provider_id: str) -> list[BreakTime]:
        async with self._transaction() as session:
            rows = await session.scalars(
                sa.select(BreakTimeRow)
                .where(BreakTimeRow.provider_id == provider_id)
                .order_by(BreakTimeRow.start_time)
            )
            return [_break_from_row(r) for r in rows]

    async def save_break_time(self, break_time: BreakTime) -> BreakTime:
        async with self._transaction() as session:
            await session.merge(
                BreakTimeRow(
                    id=break_time.break_id,
                    provider_id=break_time.provider_id,
                    name=break_time.name,
                    day_of_week=break_time.day_of_week,
                    on_date=break_time.on_date,
                    start_time=break_time.start_time,
                    end_time=break_time.end_time,
                )
            )
        return break_time

    async def delete_break_time(self, provider_id: str, break_id: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                sa.delete(BreakTimeRow).where(
                    BreakTimeRow.id == break_id, BreakTimeRow.provider_id == provider_id
                )
            )
            return result.rowcount > 0

    async def get_services(self, provider_id: str, service_ids: Collection[str]) -> list[Service]:
        if not service_ids:
            return []
        async with self._transaction() as session:
            rows = await session.scalars(
                sa.select(ServiceRow).where(
                    ServiceRow.provider_id == provider_id, ServiceRow.id.in_(list(service_ids))
                )
            )
            return [_service_from_row(r) for r in rows]

    async def save_service(self, service: Service) -> Service:
        async with self._transaction() as session:
            await session.merge(
                ServiceRow(
                    id=service.service_id,
                    provider_id=service.provider_id,
                    name=service.name,
                    price=service.price,
                    duration_minutes=service.duration_minutes,
                    is_active=service.is_active,
                )
            )
        return service

    # -- appointments --------------------------------------------------------

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        async with self._transaction() as session:
            row = await session.get(AppointmentRow, appointment_id)
            return _appointment_from_row(row) if row else None

    async def list_appointments(
        self,
        provider_id: str,
        start: dt.datetime,
        end: dt.datetime,
        statuses: Collection[AppointmentStatus] = BLOCKING_STATUSES,
        *,
        exclude_id: str | None = None,
    ) -> list[Appointment]:
        async with self._transaction() as session:
            rows = await session.scalars(
                _overlap_query(provider_id, start, end, statuses, exclude_id).order_by(
                    AppointmentRow.start_time
                )
            )
            return [_appointment_from_row(r) for r in rows]

    async def insert_appointment(self, appointment: Appointment) -> Appointment:
        try:
            async with self._transaction() as session:
                await self._lock_provider(session, appointment.provider_id)
                clash = await session.scalar(
                    _overlap_query(
                        appointment.provider_id, appointment.start_time, appointment.end_time
                    ).limit(1)
                )
                if clash is not None:
                    raise SlotUnavailableError(
                        "This time slot is no longer available. Please select another time.",
                        provider_id=appointment.provider_id,
                    )
                session.add(_appointment_to_row(appointment))
                await session.flush()
        except IntegrityError as exc:
            if "appointment_number" in str(exc.orig):
                raise AppointmentNumberTakenError(appointment.appointment_number) from exc
            logger.warning("Insert rejected by storage constraint: {}", exc.orig)
            raise SlotUnavailableError(
                "This time slot is no longer available. Please select another time.",
                provider_id=appointment.provider_id,
            ) from exc
        return appointment

    async def move_appointment(
        self,
        appointment_id: str,
        start: dt.datetime,
        end: dt.datetime,
        *,
        expected_status: AppointmentStatus,
        updated_at: dt.datetime,
    ) -> Appointment | None:
        try:
            async with self._transaction() as session:
                provider_id = await session.scalar(
                    sa.select(AppointmentRow.provider_id).where(AppointmentRow.id == appointment_id)
                )
                if provider_id is None:
                    return None
                await self._lock_provider(session, provider_id)
                clash = await session.scalar(
                    _overlap_query(provider_id, start, end, exclude_id=appointment_id).limit(1)
                )
                if clash is not None:
                    raise SlotUnavailableError(
                        "There is a scheduling conflict with another appointment",
                        provider_id=provider_id,
                    )
                result = await session.execute(
                    sa.update(AppointmentRow)
                    .where(
                        AppointmentRow.id == appointment_id,
                        AppointmentRow.status == expected_status.value,
                    )
                    .values(start_time=start, end_time=end, updated_at=updated_at)
                )
                if result.rowcount == 0:
                    return None
                row = await session.get(AppointmentRow, appointment_id, populate_existing=True)
                return _appointment_from_row(row) if row else None
        except IntegrityError as exc:
            logger.warning("Move rejected by storage constraint: {}", exc.orig)
            raise SlotUnavailableError(
                "There is a scheduling conflict with another appointment"
            ) from exc

    async def update_appointment(
        self, appointment: Appointment, *, expected_status: AppointmentStatus
    ) -> Appointment | None:
        async with self._transaction() as session:
            result = await session.execute(
                sa.update(AppointmentRow)
                .where(
                    AppointmentRow.id == appointment.appointment_id,
                    AppointmentRow.status == expected_status.value,
                )
                .values(
                    status=appointment.status.value,
                    cancellation_reason=appointment.cancellation_reason,
                    cancelled_by=appointment.cancelled_by,
                    cancelled_at=appointment.cancelled_at,
                    activity_notes=appointment.activity_notes,
                    updated_at=appointment.updated_at,
                )
            )
            if result.rowcount == 0:
                return None
            row = await session.get(
                AppointmentRow, appointment.appointment_id, populate_existing=True
            )
            return _appointment_from_row(row) if row else None

    async def set_review(
        self, appointment_id: str, review_id: str, *, updated_at: dt.datetime
    ) -> Appointment | None:
        async with self._transaction() as session:
            result = await session.execute(
                sa.update(AppointmentRow)
                .where(
                    AppointmentRow.id == appointment_id,
                    AppointmentRow.status == AppointmentStatus.COMPLETED.value,
                    AppointmentRow.review_id.is_(None),
                )
                .values(review_id=review_id, updated_at=updated_at)
            )
            if result.rowcount == 0:
                return None
            row = await session.get(AppointmentRow, appointment_id, populate_existing=True)
            return _appointment_from_row(row) if row else None

    async def list_overdue(self, cutoff: dt.datetime) -> list[Appointment]:
        async with self._transaction() as session:
            rows = await session.scalars(
                sa.select(AppointmentRow)
                .where(
                    AppointmentRow.status.in_(_OVERDUE_STATUSES),
                    AppointmentRow.end_time <= cutoff,
                )
                .order_by(AppointmentRow.start_time)
            )
            return [_appointment_from_row(r) for r in rows]

    async def health_check(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(sa.text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Scheduling store health check failed: {}", exc)
            return False

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("Scheduling store closed")

    async def _lock_provider(self, session: AsyncSession, provider_id: str) -> None:
        # FOR UPDATE is a no-op on SQLite, where BEGIN IMMEDIATE already holds the write lock.
        await session.execute(
            sa.select(ProviderRow.id).where(ProviderRow.id == provider_id).with_for_update()
        )


def _overlap_query(
    provider_id: str,
    start: dt.datetime,
    end: dt.datetime,
    statuses: Collection[AppointmentStatus] = BLOCKING_STATUSES,
    exclude_id: str | None = None,
) -> sa.Select[tuple[AppointmentRow]]:
    query = sa.select(AppointmentRow).where(
        AppointmentRow.provider_id == provider_id,
        AppointmentRow.status.in_([s.value for s in statuses]),
        AppointmentRow.start_time < end,
        AppointmentRow.end_time > start,
    )
    if exclude_id is not None:
        query = query.where(AppointmentRow.id != exclude_id)
    return query


def _provider_from_row(row: ProviderRow) -> Provider:
    return Provider(
        provider_id=row.id,
        user_id=row.user_id,
        name=row.name,
        slot_duration_minutes=row.slot_duration_minutes,
        status=ProviderStatus(row.status),
    )


def _hours_from_row(row: OperatingHoursRow) -> OperatingHours:
    return OperatingHours(
        provider_id=row.provider_id,
        day_of_week=row.day_of_week,
        start_time=row.start_time,
        end_time=row.end_time,
        is_closed=row.is_closed,
    )


def _break_from_row(row: BreakTimeRow) -> BreakTime:
    return BreakTime(
        break_id=row.id,
        provider_id=row.provider_id,
        name=row.name,
        day_of_week=row.day_of_week,
        on_date=row.on_date,
        start_time=row.start_time,
        end_time=row.end_time,
    )


def _service_from_row(row: ServiceRow) -> Service:
    return Service(
        service_id=row.id,
        provider_id=row.provider_id,
        name=row.name,
        price=row.price,
        duration_minutes=row.duration_minutes,
        is_active=row.is_active,
    )


def _appointment_from_row(row: AppointmentRow) -> Appointment:
    return Appointment(
        appointment_id=row.id,
        appointment_number=row.appointment_number,
        user_id=row.user_id,
        provider_id=row.provider_id,
        start_time=row.start_time,
        end_time=row.end_time,
        status=AppointmentStatus(row.status),
        services=[
            BookedService(
                service_id=s.service_id,
                name=s.name,
                price_at_booking=s.price_at_booking,
                duration_minutes=s.duration_minutes,
            )
            for s in row.services
        ],
        total_price=row.total_price,
        patient_name=row.patient_name,
        patient_email=row.patient_email,
        patient_phone=row.patient_phone,
        notes=row.notes,
        cancellation_reason=row.cancellation_reason,
        cancelled_by=row.cancelled_by,
        cancelled_at=row.cancelled_at,
        activity_notes=row.activity_notes,
        review_id=row.review_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _appointment_to_row(appointment: Appointment) -> AppointmentRow:
    return AppointmentRow(
        id=appointment.appointment_id,
        appointment_number=appointment.appointment_number,
        user_id=appointment.user_id,
        provider_id=appointment.provider_id,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        status=appointment.status.value,
        total_price=appointment.total_price,
        patient_name=appointment.patient_name,
        patient_email=appointment.patient_email,
        patient_phone=appointment.patient_phone,
        notes=appointment.notes,
        cancellation_reason=appointment.cancellation_reason,
        cancelled_by=appointment.cancelled_by,
        cancelled_at=appointment.cancelled_at,
        activity_notes=appointment.activity_notes,
        review_id=appointment.review_id,
        created_at=appointment.created_at,
        updated_at=appointment.updated_at,
        services=[
            AppointmentServiceRow(
                service_id=s.service_id,
                name=s.name,
                price_at_booking=s.price_at_booking,
                duration_minutes=s.duration_minutes,
            )
            for s in appointment.services
        ],
    )
