import datetime as dt
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Kept in sync with ``himsog.domain.models.BLOCKING_STATUSES``.
BLOCKING_STATUS_SQL = "status IN ('PENDING', 'CONFIRMED', 'COMPLETED')"


class UTCDateTime(sa.TypeDecorator[dt.datetime]):
    """Timezone-aware UTC datetimes on every backend.

    SQLite has no timezone support, so values are stored there as naive UTC
    and re-tagged on the way out.
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: dt.datetime | None, dialect: sa.Dialect
    ) -> dt.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt.timezone.utc)
        value = value.astimezone(dt.timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(
        self, value: dt.datetime | None, dialect: sa.Dialect
    ) -> dt.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)


class Base(DeclarativeBase):
    pass


class ProviderRow(Base):
    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    slot_duration_minutes: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, server_default="30"
    )
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default="VERIFIED")


class OperatingHoursRow(Base):
    __tablename__ = "operating_hours"
    __table_args__ = (
        sa.UniqueConstraint("provider_id", "day_of_week", name="uq_operating_hours_provider_day"),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_operating_hours_day"),
    )

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    start_time: Mapped[dt.time | None] = mapped_column(sa.Time)
    end_time: Mapped[dt.time | None] = mapped_column(sa.Time)
    is_closed: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)


class BreakTimeRow(Base):
    __tablename__ = "break_times"
    __table_args__ = (sa.Index("ix_break_times_provider", "provider_id"),)

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    provider_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False, default="Lunch Break")
    day_of_week: Mapped[int | None] = mapped_column(sa.Integer)
    on_date: Mapped[dt.date | None] = mapped_column(sa.Date)
    start_time: Mapped[dt.time] = mapped_column(sa.Time, nullable=False)
    end_time: Mapped[dt.time] = mapped_column(sa.Time, nullable=False)


class ServiceRow(Base):
    __tablename__ = "services"
    __table_args__ = (sa.Index("ix_services_provider", "provider_id"),)

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    provider_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    duration_minutes: Mapped[int | None] = mapped_column(sa.Integer)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)


class AppointmentRow(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        sa.CheckConstraint("start_time < end_time", name="ck_appointments_time_order"),
        sa.Index("ix_appointments_provider_start", "provider_id", "start_time"),
        sa.Index("ix_appointments_user", "user_id"),
        # Two blocking bookings can never share a start instant, on any backend.
        sa.Index(
            "uq_appointments_active_start",
            "provider_id",
            "start_time",
            unique=True,
            sqlite_where=sa.text(BLOCKING_STATUS_SQL),
            postgresql_where=sa.text(BLOCKING_STATUS_SQL),
        ),
    )

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    appointment_number: Mapped[str] = mapped_column(sa.String(32), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    provider_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
    )
    start_time: Mapped[dt.datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[dt.datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default="PENDING")
    total_price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    patient_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    patient_email: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    patient_phone: Mapped[str | None] = mapped_column(sa.String(32))
    notes: Mapped[str | None] = mapped_column(sa.Text)
    cancellation_reason: Mapped[str | None] = mapped_column(sa.Text)
    cancelled_by: Mapped[str | None] = mapped_column(sa.String(64))
    cancelled_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime)
    activity_notes: Mapped[str | None] = mapped_column(sa.Text)
    review_id: Mapped[str | None] = mapped_column(sa.String(64))
    created_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime)
    updated_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime)

    services: Mapped[list["AppointmentServiceRow"]] = relationship(
        back_populates="appointment",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="AppointmentServiceRow.id",
    )


class AppointmentServiceRow(Base):
    __tablename__ = "appointment_services"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    service_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    name: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    price_at_booking: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    duration_minutes: Mapped[int | None] = mapped_column(sa.Integer)

    appointment: Mapped[AppointmentRow] = relationship(back_populates="services")


# PostgreSQL enforces no-overlap for blocking appointments at the storage level.
sa.event.listen(
    Base.metadata,
    "before_create",
    sa.DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
sa.event.listen(
    AppointmentRow.__table__,
    "after_create",
    sa.DDL(
        "ALTER TABLE appointments ADD CONSTRAINT appointments_no_overlap "
        "EXCLUDE USING gist (provider_id WITH =, tstzrange(start_time, end_time, '[)') WITH &&) "
        f"WHERE ({BLOCKING_STATUS_SQL})"
    ).execute_if(dialect="postgresql"),
)
