import datetime as dt
import secrets
import string
import uuid
from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import NoReturn

from loguru import logger

from himsog.domain.cancellation import compose_reason
from himsog.domain.exceptions import (
    AlreadyTerminalError,
    AppointmentNumberTakenError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    SchedulingError,
    SlotUnavailableError,
    StoreUnavailableError,
)
from himsog.domain.models import (
    Appointment,
    AppointmentStatus,
    AvailableWindow,
    BookedService,
    BookingRequest,
    BulkUpdateResult,
    Principal,
    Provider,
    Role,
    Service,
    SlotState,
)
from himsog.scheduling.calendar import AvailabilityCalendar
from himsog.scheduling.conflicts import ConflictChecker
from himsog.scheduling.slots import classify_range, is_on_grid, within_window
from himsog.scheduling.timezone import assemble_instant
from himsog.store.ports import AbstractSchedulingStore

Clock = Callable[[], dt.datetime]

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

_UNAVAILABLE_MESSAGES: dict[SlotState, str] = {
    SlotState.BREAK: "The requested time falls within the provider's break",
    SlotState.BOOKED: "This time slot is no longer available. Please select another time.",
    SlotState.PAST: "The requested time is in the past",
}

_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def already_terminal(appointment: Appointment) -> AlreadyTerminalError:
    state = appointment.status.value.lower().replace("_", "-")
    return AlreadyTerminalError(
        f"This appointment is already {state}", appointment_id=appointment.appointment_id
    )


def ensure_transition(appointment: Appointment, target: AppointmentStatus) -> None:
    """Raise unless ``appointment`` may move to ``target``.

    Raises:
        AlreadyTerminalError: If the appointment is cancelled, completed or a no-show.
        InvalidRequestError: If the move is not allowed from the current status.
    """
    current = appointment.status
    if current.is_terminal:
        raise already_terminal(appointment)
    if not can_transition(current, target):
        raise InvalidRequestError(
            f"Cannot change appointment status from {current.value} to {target.value}"
        )


def new_appointment_number(now: dt.datetime) -> str:
    """``APT`` + last 8 digits of the epoch milliseconds + 4 random characters."""
    millis = str(int(now.timestamp() * 1000))[-8:]
    suffix = "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(4))
    return f"APT{millis}{suffix}"


def booking_duration_minutes(services: Sequence[Service], slot_duration_minutes: int) -> int:
    """Length of a booking for ``services``.

    Each service counts for its declared duration, or for one slot of the
    provider when it declares none. With no services the booking is one slot.
    """
    if not services:
        return slot_duration_minutes
    return sum(
        slot_duration_minutes if s.duration_minutes is None else s.duration_minutes
        for s in services
    )


class AppointmentLifecycle:
    """Guarded operations over the appointment state machine.

    Every operation loads the current appointment, checks the actor and the
    transition, and commits with a compare-and-set on the status it saw, so a
    terminal appointment can never be reactivated.
    """

    def __init__(
        self,
        store: AbstractSchedulingStore,
        calendar: AvailabilityCalendar,
        conflicts: ConflictChecker,
        *,
        clock: Clock = utc_now,
        no_show_grace: dt.timedelta = dt.timedelta(minutes=15),
    ) -> None:
        self._store = store
        self._calendar = calendar
        self._conflicts = conflicts
        self._clock = clock
        self._no_show_grace = no_show_grace

    @property
    def no_show_grace(self) -> dt.timedelta:
        return self._no_show_grace

    # -- creation ------------------------------------------------------------

    async def create(self, request: BookingRequest, actor: Principal) -> Appointment:
        """Book an appointment in ``PENDING`` status.

        Raises:
            InvalidRequestError: No services, unknown/inactive services, a
                non-positive duration, or a start off the slot grid.
            NotFoundError: The provider does not exist or is not verified.
            SlotUnavailableError: The range is not open, or was taken first.
            ConfigurationMissingError: The provider has no operating hours.
        """
        if not request.service_ids:
            raise InvalidRequestError("At least one service must be selected")
        if len(set(request.service_ids)) != len(request.service_ids):
            raise InvalidRequestError("A service was selected more than once")

        provider = await self._store.get_provider(request.provider_id)
        if provider is None or not provider.accepts_bookings:
            raise NotFoundError("Provider not found or not available for appointments")

        services = await self._booked_services(provider, request.service_ids)
        duration = booking_duration_minutes(services, provider.slot_duration_minutes)
        if duration <= 0:
            raise InvalidRequestError("Total appointment duration must be positive")

        window = await self._calendar.get_available_window(provider.provider_id, request.date)
        start = assemble_instant(request.date, request.time, window.utc_offset)
        end = start + dt.timedelta(minutes=duration)
        now = self._clock()

        await self._ensure_bookable(window, provider, start, end, now)

        appointment = Appointment(
            appointment_id=str(uuid.uuid4()),
            appointment_number=new_appointment_number(now),
            user_id=actor.user_id,
            provider_id=provider.provider_id,
            start_time=start,
            end_time=end,
            status=AppointmentStatus.PENDING,
            services=[
                BookedService(
                    service_id=s.service_id,
                    name=s.name,
                    price_at_booking=s.price,
                    duration_minutes=s.duration_minutes,
                )
                for s in services
            ],
            total_price=sum((s.price for s in services), Decimal("0")),
            patient_name=request.patient_name,
            patient_email=request.patient_email,
            patient_phone=request.patient_phone,
            notes=request.notes,
            created_at=now,
            updated_at=now,
        )

        # The store re-runs the overlap check inside the insert transaction.
        stored = await self._insert(appointment, now)
        logger.info(
            "Appointment created: id={}, number={}, provider={}, start={}",
            stored.appointment_id,
            stored.appointment_number,
            stored.provider_id,
            stored.start_time.isoformat(),
        )
        return stored

    # -- transitions -----------------------------------------------------------

    async def cancel(
        self, appointment_id: str, actor: Principal, reason: str, notes: str | None = None
    ) -> Appointment:
        """Cancel as the booking user or the owning provider.

        ``reason`` is a code from the actor's own taxonomy; other codes are
        recorded as "Other".

        Raises:
            InvalidRequestError: If no reason is given.
            NotFoundError: If the appointment does not exist.
            ForbiddenError: If the actor neither booked nor owns the appointment.
            AlreadyTerminalError: If it is already cancelled, completed or a no-show.
        """
        if not reason or not reason.strip():
            raise InvalidRequestError("A cancellation reason is required")

        appointment = await self._load(appointment_id)
        match actor.role:
            case Role.USER:
                if appointment.user_id != actor.user_id:
                    raise ForbiddenError("You can only cancel your own appointments")
            case Role.PROVIDER:
                await self._require_owning_provider(appointment, actor)
            case Role.ADMIN:
                raise ForbiddenError("Only the patient or the provider can cancel an appointment")

        ensure_transition(appointment, AppointmentStatus.CANCELLED)

        now = self._clock()
        updated = appointment.model_copy(
            update={
                "status": AppointmentStatus.CANCELLED,
                "cancelled_at": now,
                "cancelled_by": actor.user_id,
                "cancellation_reason": compose_reason(actor.role, reason, notes),
                "updated_at": now,
            }
        )
        stored = await self._commit(appointment, updated)
        logger.info("Appointment cancelled: id={}, by={}", appointment_id, actor.role.value)
        return stored

    async def confirm(self, appointment_id: str, actor: Principal) -> Appointment:
        """Provider accepts a pending request: ``PENDING → CONFIRMED``."""
        appointment = await self._load(appointment_id)
        await self._require_owning_provider(appointment, actor)
        ensure_transition(appointment, AppointmentStatus.CONFIRMED)

        stored = await self._commit(
            appointment,
            appointment.model_copy(
                update={"status": AppointmentStatus.CONFIRMED, "updated_at": self._clock()}
            ),
        )
        logger.info("Appointment confirmed: id={}", appointment_id)
        return stored

    async def complete(
        self,
        appointment_id: str,
        actor: Principal | None,
        activity_notes: str | None = None,
    ) -> Appointment:
        """Mark a confirmed appointment as done: ``CONFIRMED → COMPLETED``.

        ``actor=None`` is the automatic path and only applies once the
        appointment has ended.
        """
        appointment = await self._load(appointment_id)
        now = self._clock()
        if actor is None:
            if now < appointment.end_time:
                raise InvalidRequestError("Appointment has not ended yet")
        else:
            await self._require_owning_provider(appointment, actor)
        ensure_transition(appointment, AppointmentStatus.COMPLETED)

        stored = await self._commit(
            appointment,
            appointment.model_copy(
                update={
                    "status": AppointmentStatus.COMPLETED,
                    "activity_notes": activity_notes or appointment.activity_notes,
                    "updated_at": now,
                }
            ),
        )
        logger.info(
            "Appointment completed: id={}, automatic={}", appointment_id, actor is None
        )
        return stored

    async def mark_no_show(self, appointment_id: str, actor: Principal) -> Appointment:
        """Provider records that the patient did not attend."""
        appointment = await self._load(appointment_id)
        await self._require_owning_provider(appointment, actor)
        ensure_transition(appointment, AppointmentStatus.NO_SHOW)

        now = self._clock()
        if now < appointment.start_time:
            raise InvalidRequestError("An appointment cannot be a no-show before it starts")

        stored = await self._commit(
            appointment,
            appointment.model_copy(update={"status": AppointmentStatus.NO_SHOW, "updated_at": now}),
        )
        logger.info("Appointment marked as no-show: id={}", appointment_id)
        return stored

    async def reschedule(
        self, appointment_id: str, actor: Principal, new_date: dt.date, new_time: dt.time | str
    ) -> Appointment:
        """Move a live appointment to a new start, keeping its duration.

        Raises:
            AlreadyTerminalError: If the appointment is terminal.
            SlotUnavailableError: If the new range is not open or is taken.
        """
        appointment = await self._load(appointment_id)
        provider = await self._require_owning_provider(appointment, actor)
        if appointment.status.is_terminal:
            raise already_terminal(appointment)

        window = await self._calendar.get_available_window(provider.provider_id, new_date)
        start = assemble_instant(new_date, new_time, window.utc_offset)
        end = start + appointment.duration
        now = self._clock()
        await self._ensure_bookable(
            window, provider, start, end, now, exclude_id=appointment.appointment_id
        )

        moved = await self._store.move_appointment(
            appointment_id,
            start,
            end,
            expected_status=appointment.status,
            updated_at=now,
        )
        if moved is None:
            await self._raise_concurrent_change(appointment)
        logger.info(
            "Appointment rescheduled: id={}, start={}", appointment_id, start.isoformat()
        )
        return moved

    async def attach_review(
        self, appointment_id: str, actor: Principal, review_id: str
    ) -> Appointment:
        """Link a review to a completed appointment; the only write allowed after completion."""
        appointment = await self._load(appointment_id)
        if actor.role is not Role.USER or appointment.user_id != actor.user_id:
            raise ForbiddenError("Only the patient can review this appointment")
        if appointment.status is not AppointmentStatus.COMPLETED:
            raise InvalidRequestError("Only completed appointments can be reviewed")
        if appointment.review_id is not None:
            raise InvalidRequestError("This appointment has already been reviewed")

        # Writes only while the stored review_id is still empty.
        stored = await self._store.set_review(appointment_id, review_id, updated_at=self._clock())
        if stored is None:
            logger.warning("Review rejected for appointment {}: already reviewed", appointment_id)
            raise InvalidRequestError("This appointment has already been reviewed")
        logger.info("Review attached: appointment={}", appointment_id)
        return stored

    async def bulk_update_status(
        self,
        appointment_ids: Sequence[str],
        actor: Principal,
        status: AppointmentStatus,
        reason: str | None = None,
        notes: str | None = None,
    ) -> BulkUpdateResult:
        """Apply one guarded transition to many of a provider's appointments.

        Each appointment goes through the same checks as the single-item
        operation; failures are counted, not raised.
        """
        if actor.role is not Role.PROVIDER:
            raise ForbiddenError("Only providers can update appointments in bulk")
        if not appointment_ids:
            raise InvalidRequestError("No appointments selected")

        succeeded: list[str] = []
        errors: list[str] = []
        for appointment_id in appointment_ids:
            try:
                match status:
                    case AppointmentStatus.CONFIRMED:
                        await self.confirm(appointment_id, actor)
                    case AppointmentStatus.COMPLETED:
                        await self.complete(appointment_id, actor)
                    case AppointmentStatus.CANCELLED:
                        await self.cancel(appointment_id, actor, reason or "OTHER", notes)
                    case AppointmentStatus.NO_SHOW:
                        await self.mark_no_show(appointment_id, actor)
                    case AppointmentStatus.PENDING:
                        raise InvalidRequestError("Appointments cannot be moved back to pending")
                succeeded.append(appointment_id)
            except SchedulingError as exc:
                errors.append(f"{appointment_id}: {exc.message}")

        logger.info(
            "Bulk status update to {}: {} succeeded, {} failed",
            status.value,
            len(succeeded),
            len(errors),
        )
        return BulkUpdateResult(succeeded=succeeded, failed=len(errors), errors=errors)

    async def sweep_overdue(self, now: dt.datetime | None = None) -> list[Appointment]:
        """Mark PENDING/CONFIRMED appointments that ended more than the grace period ago as NO_SHOW.

        Meant to be called periodically by the host; the cadence is up to it.
        """
        now = now or self._clock()
        overdue = await self._store.list_overdue(now - self._no_show_grace)

        swept: list[Appointment] = []
        for appointment in overdue:
            stored = await self._store.update_appointment(
                appointment.model_copy(update={"status": AppointmentStatus.NO_SHOW, "updated_at": now}),
                expected_status=appointment.status,
            )
            if stored is None:
                logger.debug("Skipping {}: status changed during sweep", appointment.appointment_id)
                continue
            swept.append(stored)

        if swept:
            logger.info("No-show sweep marked {} appointment(s)", len(swept))
        return swept

    # -- helpers ---------------------------------------------------------------

    async def _insert(self, appointment: Appointment, now: dt.datetime) -> Appointment:
        try:
            return await self._store.insert_appointment(appointment)
        except AppointmentNumberTakenError:
            logger.warning(
                "Appointment number {} already taken, drawing a new one",
                appointment.appointment_number,
            )
        retry = appointment.model_copy(update={"appointment_number": new_appointment_number(now)})
        try:
            return await self._store.insert_appointment(retry)
        except AppointmentNumberTakenError as exc:
            raise StoreUnavailableError("Could not allocate a unique appointment number") from exc

    async def _load(self, appointment_id: str) -> Appointment:
        appointment = await self._store.get_appointment(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment not found")
        return appointment

    async def _require_owning_provider(
        self, appointment: Appointment, actor: Principal
    ) -> Provider:
        if actor.role is not Role.PROVIDER:
            raise ForbiddenError("Only the provider can manage this appointment")
        provider = await self._store.get_provider(appointment.provider_id)
        if provider is None or provider.user_id != actor.user_id:
            raise ForbiddenError("You can only manage appointments for your practice")
        return provider

    async def _booked_services(
        self, provider: Provider, service_ids: Sequence[str]
    ) -> list[Service]:
        found = await self._store.get_services(provider.provider_id, service_ids)
        active = {s.service_id: s for s in found if s.is_active}
        if len(active) != len(service_ids):
            raise InvalidRequestError("Some selected services are not available")
        return [active[service_id] for service_id in service_ids]

    async def _ensure_bookable(
        self,
        window: AvailableWindow,
        provider: Provider,
        start: dt.datetime,
        end: dt.datetime,
        now: dt.datetime,
        *,
        exclude_id: str | None = None,
    ) -> None:
        if not window.is_open:
            raise SlotUnavailableError(
                f"The provider is closed on {window.date.isoformat()}",
                provider_id=provider.provider_id,
            )
        if not within_window(window, start, end):
            raise SlotUnavailableError(
                "The requested time is outside the provider's operating hours",
                provider_id=provider.provider_id,
            )
        if not is_on_grid(window, start, provider.slot_duration_minutes):
            raise InvalidRequestError("The requested time does not match an available slot")

        conflicts = await self._conflicts.find_conflicts(
            provider.provider_id, start, end, exclude_id=exclude_id
        )
        state = classify_range(window, start, end, conflicts, now)
        if state is not SlotState.OPEN:
            logger.warning(
                "Booking rejected for provider {} at {}: {}",
                provider.provider_id,
                start.isoformat(),
                state.value,
            )
            raise SlotUnavailableError(
                _UNAVAILABLE_MESSAGES[state], provider_id=provider.provider_id
            )

    async def _commit(self, current: Appointment, updated: Appointment) -> Appointment:
        stored = await self._store.update_appointment(updated, expected_status=current.status)
        if stored is None:
            await self._raise_concurrent_change(current)
        return stored

    async def _raise_concurrent_change(self, seen: Appointment) -> NoReturn:
        latest = await self._store.get_appointment(seen.appointment_id)
        logger.warning(
            "Appointment {} changed concurrently: expected {}, found {}",
            seen.appointment_id,
            seen.status.value,
            latest.status.value if latest else "nothing",
        )
        if latest is None:
            raise NotFoundError("Appointment not found")
        if latest.status.is_terminal:
            raise already_terminal(latest)
        raise InvalidRequestError("The appointment was changed by someone else. Please retry.")
