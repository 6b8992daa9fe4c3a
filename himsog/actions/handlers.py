import datetime as dt
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from loguru import logger
from pydantic import ValidationError

from himsog.domain.cancellation import reasons_for
from himsog.domain.draft import BookingDraft
from himsog.domain.exceptions import ErrorKind, SchedulingError, StoreUnavailableError
from himsog.domain.models import (
    Appointment,
    AppointmentStatus,
    AvailableWindow,
    BookingRequest,
    BulkUpdateResult,
    Principal,
    Slot,
)
from himsog.scheduling.service import SchedulingService
from himsog.scheduling.timezone import time_to_12h, time_to_24h, to_local

T = TypeVar("T")

Result = dict[str, Any]


def _parse_iso_date(value: object, field_name: str) -> tuple[dt.date | None, str | None]:
    """Parse an ISO 8601 date string. Returns ``(date, None)`` or ``(None, error_msg)``."""
    if not isinstance(value, str):
        return (
            None,
            f"Invalid date format for '{field_name}': must be a string in YYYY-MM-DD format.",
        )
    try:
        return dt.date.fromisoformat(value), None
    except (ValueError, TypeError):
        return None, f"Invalid date format for '{field_name}': '{value}'. Expected YYYY-MM-DD."


def _parse_hhmm(value: object, field_name: str) -> tuple[dt.time | None, str | None]:
    """Parse a 24-hour ``HH:MM`` string. Returns ``(time, None)`` or ``(None, error_msg)``."""
    if not isinstance(value, str):
        return None, f"Invalid time format for '{field_name}': must be a string in HH:MM format."
    try:
        return dt.datetime.strptime(value.strip(), "%H:%M").time(), None
    except ValueError:
        return None, f"Invalid time format for '{field_name}': '{value}'. Expected HH:MM."


def _failure(message: str, kind: ErrorKind) -> Result:
    return {"success": False, "error": message, "kind": kind.value}


def _success(data: Any) -> Result:
    return {"success": True, "data": data}


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "request"
    return f"Invalid value for '{location}': {first.get('msg', 'invalid')}"


def serialize_appointment(appointment: Appointment, utc_offset: dt.timedelta) -> dict[str, Any]:
    local_start = to_local(appointment.start_time, utc_offset)
    local_end = to_local(appointment.end_time, utc_offset)
    return {
        "appointment_id": appointment.appointment_id,
        "appointment_number": appointment.appointment_number,
        "provider_id": appointment.provider_id,
        "date": local_start.date().isoformat(),
        "start_time": time_to_24h(local_start.time()),
        "end_time": time_to_24h(local_end.time()),
        "display_time": time_to_12h(local_start.time()),
        "status": appointment.status.value,
        "services": [
            {
                "service_id": s.service_id,
                "name": s.name,
                "price": str(s.price_at_booking),
            }
            for s in appointment.services
        ],
        "total_price": str(appointment.total_price),
        "cancellation_reason": appointment.cancellation_reason,
    }


def serialize_slot(slot: Slot) -> dict[str, Any]:
    return {
        "time": slot.label,
        "available": slot.is_open,
        "state": slot.state.value,
    }


def serialize_window(window: AvailableWindow) -> dict[str, Any]:
    return {
        "date": window.date.isoformat(),
        "day_of_week": window.day_of_week,
        "is_operating": window.is_open,
        "operating_hours": (
            {"start": time_to_24h(window.open_time), "end": time_to_24h(window.close_time)}
            if window.open_time is not None and window.close_time is not None
            else None
        ),
        "break_times": [
            {"name": b.name, "start": time_to_24h(b.start), "end": time_to_24h(b.end)}
            for b in window.breaks
        ],
    }


def serialize_bulk_result(result: BulkUpdateResult) -> dict[str, Any]:
    return {
        "updated": len(result.succeeded),
        "failed": result.failed,
        "appointment_ids": list(result.succeeded),
        "errors": list(result.errors),
    }


class SchedulingActions:
    """String-in, dict-out operations for the booking and provider screens.

    Expected failures come back as ``{"success": False, "error", "kind"}``;
    store outages are logged and re-raised.
    """

    def __init__(self, service: SchedulingService) -> None:
        self._service = service

    @property
    def _offset(self) -> dt.timedelta:
        return self._service.calendar.utc_offset

    async def _run(
        self, action: str, operation: Callable[[], Awaitable[T]], serialize: Callable[[T], Any]
    ) -> Result:
        logger.debug("Action: {}", action)
        try:
            return _success(serialize(await operation()))
        except SchedulingError as exc:
            logger.warning("{} rejected ({}): {}", action, exc.kind.value, exc.message)
            return _failure(exc.message, exc.kind)
        except ValidationError as exc:
            return _failure(_describe_validation_error(exc), ErrorKind.INVALID_REQUEST)
        except StoreUnavailableError:
            logger.exception("Store unavailable during {}", action)
            raise

    # -- availability ----------------------------------------------------------

    async def get_available_slots(self, provider_id: str, date: str) -> Result:
        date_val, err = _parse_iso_date(date, "date")
        if err or date_val is None:
            return _failure(err or "Invalid date.", ErrorKind.INVALID_REQUEST)

        async def operation() -> tuple[AvailableWindow, list[Slot]]:
            return await self._service.get_day_availability(provider_id, date_val)

        def serialize(day: tuple[AvailableWindow, list[Slot]]) -> dict[str, Any]:
            window, slots = day
            return {**serialize_window(window), "time_slots": [serialize_slot(s) for s in slots]}

        return await self._run("get_available_slots", operation, serialize)

    async def get_operating_days(self, provider_id: str) -> Result:
        return await self._run(
            "get_operating_days",
            lambda: self._service.calendar.get_operating_days(provider_id),
            lambda days: {"operating_days": days},
        )

    async def check_booking_date(self, provider_id: str, date: str) -> Result:
        date_val, err = _parse_iso_date(date, "date")
        if err or date_val is None:
            return _failure(err or "Invalid date.", ErrorKind.INVALID_REQUEST)
        return await self._run(
            "check_booking_date",
            lambda: self._service.is_valid_booking_date(provider_id, date_val),
            lambda valid: {"date": date_val.isoformat(), "valid": valid},
        )

    def get_cancellation_reasons(self, principal: Principal) -> Result:
        try:
            return _success({"reasons": reasons_for(principal.role)})
        except KeyError:
            return _failure(
                f"No cancellation reasons for role {principal.role.value}", ErrorKind.FORBIDDEN
            )

    # -- booking ---------------------------------------------------------------

    async def create_appointment(self, principal: Principal, arguments: dict[str, Any]) -> Result:
        """Book from raw form arguments: ``provider_id``, ``service_ids``,
        ``date`` (YYYY-MM-DD), ``time`` (HH:MM) and the patient fields."""
        date_val, date_err = _parse_iso_date(arguments.get("date"), "date")
        time_val, time_err = _parse_hhmm(arguments.get("time"), "time")
        err = date_err or time_err
        if err or date_val is None or time_val is None:
            return _failure(err or "Invalid date/time format.", ErrorKind.INVALID_REQUEST)

        async def operation() -> Appointment:
            request = BookingRequest(
                provider_id=arguments.get("provider_id") or "",
                service_ids=list(arguments.get("service_ids") or []),
                date=date_val,
                time=time_val,
                patient_name=arguments.get("patient_name") or "",
                patient_email=arguments.get("patient_email") or "",
                patient_phone=arguments.get("patient_phone") or None,
                notes=arguments.get("notes") or None,
            )
            return await self._service.lifecycle.create(request, principal)

        return await self._run("create_appointment", operation, self._appointment)

    async def submit_draft(self, principal: Principal, draft: BookingDraft) -> Result:
        async def operation() -> Appointment:
            return await self._service.lifecycle.create(draft.to_request(), principal)

        return await self._run("submit_draft", operation, self._appointment)

    # -- transitions -------------------------------------------------------------

    async def cancel_appointment(
        self, principal: Principal, appointment_id: str, reason: str, notes: str | None = None
    ) -> Result:
        if not appointment_id:
            return _failure("'appointment_id' is required.", ErrorKind.INVALID_REQUEST)
        return await self._run(
            "cancel_appointment",
            lambda: self._service.lifecycle.cancel(appointment_id, principal, reason, notes),
            self._appointment,
        )

    async def confirm_appointment(self, principal: Principal, appointment_id: str) -> Result:
        return await self._run(
            "confirm_appointment",
            lambda: self._service.lifecycle.confirm(appointment_id, principal),
            self._appointment,
        )

    async def complete_appointment(
        self, principal: Principal, appointment_id: str, activity_notes: str | None = None
    ) -> Result:
        return await self._run(
            "complete_appointment",
            lambda: self._service.lifecycle.complete(appointment_id, principal, activity_notes),
            self._appointment,
        )

    async def mark_no_show(self, principal: Principal, appointment_id: str) -> Result:
        return await self._run(
            "mark_no_show",
            lambda: self._service.lifecycle.mark_no_show(appointment_id, principal),
            self._appointment,
        )

    async def reschedule_appointment(
        self, principal: Principal, appointment_id: str, date: str, time: str
    ) -> Result:
        date_val, date_err = _parse_iso_date(date, "date")
        time_val, time_err = _parse_hhmm(time, "time")
        err = date_err or time_err
        if err or date_val is None or time_val is None:
            return _failure(err or "Invalid date/time format.", ErrorKind.INVALID_REQUEST)
        return await self._run(
            "reschedule_appointment",
            lambda: self._service.lifecycle.reschedule(appointment_id, principal, date_val, time_val),
            self._appointment,
        )

    async def bulk_update_status(
        self,
        principal: Principal,
        appointment_ids: Sequence[str],
        status: str,
        reason: str | None = None,
    ) -> Result:
        try:
            target = AppointmentStatus(status.strip().upper())
        except (ValueError, AttributeError):
            return _failure(f"Unknown appointment status '{status}'", ErrorKind.INVALID_REQUEST)
        return await self._run(
            "bulk_update_status",
            lambda: self._service.lifecycle.bulk_update_status(
                list(appointment_ids), principal, target, reason
            ),
            serialize_bulk_result,
        )

    async def attach_review(
        self, principal: Principal, appointment_id: str, review_id: str
    ) -> Result:
        return await self._run(
            "attach_review",
            lambda: self._service.lifecycle.attach_review(appointment_id, principal, review_id),
            self._appointment,
        )

    def _appointment(self, appointment: Appointment) -> dict[str, Any]:
        return serialize_appointment(appointment, self._offset)
